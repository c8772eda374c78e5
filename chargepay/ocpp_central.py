"""OCPP 1.6 central system: the device side of a charging session.

Only what the session engine needs is handled here: remote start/stop going
out, and boot, status, meter values and start/stop transaction coming in.
"""

import asyncio
import itertools
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ocpp.routing import on
from ocpp.v16 import ChargePoint, call, call_result
from ocpp.v16.enums import Action, AuthorizationStatus, RegistrationStatus, RemoteStartStopStatus
from websockets import serve

from .errors import DeviceUnreachable

EnergyCallback = Callable[[str, Decimal], Awaitable[Any]]
StopCallback = Callable[[str], Awaitable[Any]]

ENERGY_REGISTER = "Energy.Active.Import.Register"

_tx_counter = itertools.count(1)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _parse_timestamp(ts: str) -> datetime:
    """Parse an ISO8601 timestamp and fall back to now on error."""
    try:
        return datetime.fromisoformat(ts.replace("Z", "+00:00"))
    except (AttributeError, ValueError):
        return datetime.now(timezone.utc)


def energy_register_wh(meter_value: List[Dict[str, Any]]) -> Optional[Decimal]:
    """Return the last Energy.Active.Import.Register sample in Wh, if any."""
    reading = None
    for entry in meter_value or []:
        samples = entry.get("sampled_value") or entry.get("sampledValue") or []
        for sample in samples:
            if sample.get("measurand", ENERGY_REGISTER) != ENERGY_REGISTER:
                continue
            try:
                value = Decimal(str(sample["value"]))
            except (KeyError, ArithmeticError):
                continue
            if sample.get("unit") == "kWh":
                value *= 1000
            reading = value
    return reading


class CentralSystem(ChargePoint):
    def __init__(
        self,
        id,
        connection,
        on_energy: Optional[EnergyCallback] = None,
        on_device_stop: Optional[StopCallback] = None,
    ):
        super().__init__(id, connection)
        self.on_energy = on_energy
        self.on_device_stop = on_device_stop
        self.active_tx: Dict[int, Dict[str, Any]] = {}
        self.connector_status: Dict[int, str] = {}
        self.remote_stops: set = set()

    async def remote_start(self, connector_id: int, id_tag: str):
        req = call.RemoteStartTransaction(id_tag=id_tag, connector_id=connector_id)
        logging.info(f"→ RemoteStartTransaction to {self.id} (connector={connector_id}, idTag={id_tag})")
        resp = await self.call(req)
        status = getattr(resp, "status", None)
        if status != RemoteStartStopStatus.accepted:
            logging.warning(f"RemoteStartTransaction rejected: {status}")
        return status

    async def remote_stop(self, transaction_id: int):
        req = call.RemoteStopTransaction(transaction_id=transaction_id)
        logging.info(f"→ RemoteStopTransaction to {self.id} (tx={transaction_id})")
        self.remote_stops.add(int(transaction_id))
        resp = await self.call(req)
        status = getattr(resp, "status", None)
        if status != RemoteStartStopStatus.accepted:
            self.remote_stops.discard(int(transaction_id))
            logging.warning(f"RemoteStopTransaction rejected: {status}")
        return status

    async def _report_energy(self, connector_id: int, meter_wh: Optional[Decimal]) -> None:
        info = self.active_tx.get(connector_id)
        if info is None or meter_wh is None or self.on_energy is None:
            return
        energy_kwh = (meter_wh - Decimal(str(info.get("meter_start", 0)))) / 1000
        if energy_kwh < 0:
            return
        try:
            await self.on_energy(self.id, energy_kwh)
        except Exception:
            logging.exception(f"Failed to record energy from {self.id}")

    @on(Action.boot_notification)
    async def on_boot_notification(self, charge_point_model, charge_point_vendor, **kwargs):
        logging.info(f"← BootNotification from vendor={charge_point_vendor}, model={charge_point_model}")
        return call_result.BootNotification(
            current_time=_now(),
            interval=300,
            status=RegistrationStatus.accepted,
        )

    @on(Action.authorize)
    async def on_authorize(self, id_tag, **kwargs):
        logging.info(f"← Authorize request, idTag={id_tag}")
        return call_result.Authorize(id_tag_info={"status": AuthorizationStatus.accepted})

    @on(Action.heartbeat)
    def on_heartbeat(self, **kwargs):
        logging.info("← Heartbeat received")
        return call_result.Heartbeat(current_time=_now())

    @on(Action.status_notification)
    async def on_status_notification(self, connector_id, error_code, status, **kwargs):
        logging.info(
            f"← StatusNotification: connector {connector_id} → status={status}, errorCode={error_code}"
        )
        self.connector_status[int(connector_id)] = status
        return call_result.StatusNotification()

    @on(Action.meter_values)
    async def on_meter_values(self, connector_id, meter_value, **kwargs):
        meter_wh = energy_register_wh(meter_value)
        logging.info(f"← MeterValues from {self.id} connector {connector_id}: energy(Wh)={meter_wh}")
        await self._report_energy(int(connector_id), meter_wh)
        return call_result.MeterValues()

    @on(Action.start_transaction)
    async def on_start_transaction(self, connector_id, id_tag, meter_start, timestamp, **kwargs):
        tx_id = next(_tx_counter)
        self.active_tx[int(connector_id)] = {
            "transaction_id": tx_id,
            "id_tag": id_tag,
            "meter_start": meter_start,
            "start_time": _parse_timestamp(timestamp),
        }
        logging.info(
            f"← StartTransaction from {self.id}: connector={connector_id}, idTag={id_tag}, meterStart={meter_start}"
        )
        logging.info(f"→ Assign transactionId={tx_id}")
        return call_result.StartTransaction(
            transaction_id=tx_id,
            id_tag_info={"status": AuthorizationStatus.accepted},
        )

    @on(Action.stop_transaction)
    async def on_stop_transaction(self, transaction_id, meter_stop, timestamp, **kwargs):
        logging.info(f"← StopTransaction from {self.id}: tx={transaction_id}, meterStop={meter_stop}")
        tx_id = int(transaction_id)
        for conn_id, info in list(self.active_tx.items()):
            if info.get("transaction_id") == tx_id:
                await self._report_energy(conn_id, Decimal(str(meter_stop)))
                self.active_tx.pop(conn_id, None)
                break
        if tx_id in self.remote_stops:
            self.remote_stops.discard(tx_id)
        elif self.on_device_stop is not None:
            # ended at the charger (unplug, local stop): settle in the background
            asyncio.create_task(self.on_device_stop(self.id))
        return call_result.StopTransaction(id_tag_info={"status": AuthorizationStatus.accepted})


class OcppDeviceGateway:
    """Device command adapter over the currently connected charge points."""

    def __init__(
        self,
        id_tag: str = "PREPAID",
        connector_id: int = 1,
        on_energy: Optional[EnergyCallback] = None,
        on_device_stop: Optional[StopCallback] = None,
    ):
        self.id_tag = id_tag
        self.connector_id = connector_id
        self.on_energy = on_energy
        self.on_device_stop = on_device_stop
        self.connected: Dict[str, CentralSystem] = {}

    def is_connected(self, station_id: str) -> bool:
        return station_id in self.connected

    async def send_remote_start(self, station_id: str) -> bool:
        cp = self.connected.get(station_id)
        if cp is None:
            raise DeviceUnreachable(f"{station_id} is not connected")
        status = await cp.remote_start(self.connector_id, self.id_tag)
        return status == RemoteStartStopStatus.accepted

    async def send_remote_stop(self, station_id: str) -> bool:
        cp = self.connected.get(station_id)
        if cp is None:
            raise DeviceUnreachable(f"{station_id} is not connected")
        if not cp.active_tx:
            logging.info(f"RemoteStop skipped: {station_id} reports no running transaction")
            return False
        info = cp.active_tx.get(self.connector_id) or next(iter(cp.active_tx.values()))
        status = await cp.remote_stop(info["transaction_id"])
        return status == RemoteStartStopStatus.accepted

    async def handle_connection(self, websocket, path=None):
        if path is None:
            try:
                path = websocket.request.path
            except AttributeError:
                path = websocket.path if hasattr(websocket, "path") else ""
        cp_id = path.rsplit("/", 1)[-1] if path else "UNKNOWN"
        logging.info(f"[Central] New connection for Charge Point ID: {cp_id}")

        central = CentralSystem(cp_id, websocket, self.on_energy, self.on_device_stop)
        self.connected[cp_id] = central
        try:
            await central.start()
        finally:
            if self.connected.get(cp_id) is central:
                self.connected.pop(cp_id, None)
            logging.info(f"[Central] Disconnected: {cp_id}")


async def serve_ocpp(gateway: OcppDeviceGateway, host: str, port: int) -> None:
    async with serve(gateway.handle_connection, host=host, port=port, subprotocols=["ocpp1.6"]):
        logging.info(f"Central listening on ws://{host}:{port}/ocpp/<ChargePointID>")
        await asyncio.Future()
