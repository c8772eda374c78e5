"""Charging session lifecycle and settlement.

A session moves PENDING -> CHARGING -> COMPLETED. Start never refuses service
once money is authorized: if the charge point does not answer, the session is
metered by the simulator instead. Stop always settles and always frees the
connector, whatever happens to the device command, the refund or the receipt.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Awaitable, Callable, Dict, List, Optional, Union

from .errors import (
    AlreadySettled,
    ConnectorBusy,
    NoActiveSession,
    NoPendingPayment,
    SettlementPersistenceFailed,
    StationNotFound,
)
from .models import MeterSource, StationStatus, Transaction, TransactionStatus, utcnow
from .notifications import Receipt
from .payments import to_minor_units
from .registry import StationRegistry, StationView
from .simulator import MeteringSimulator
from .store import SessionStore, conflicts
from .telemetry import EnergyUpdate, TelemetryPublisher

CENT = Decimal("0.01")


@dataclass
class LiveMetering:
    """Energy arrives from the charge point over OCPP."""

    station_id: str


@dataclass
class SimulatedMetering:
    """Energy is synthesized by a simulator task."""

    task: asyncio.Task


MeteringSource = Union[LiveMetering, SimulatedMetering]


@dataclass
class StartResult:
    transaction_id: str
    station_id: str
    connector_id: Optional[str]
    mode: str


@dataclass
class SettlementResult:
    transaction_id: str
    station_id: str
    connector_id: Optional[str]
    energy_kwh: Decimal
    prepaid: Decimal
    cost: Decimal
    refund_amount: Decimal
    refund_id: Optional[str]
    start_time: datetime
    end_time: datetime
    refund_succeeded: bool = True
    receipt_sent: bool = False
    email: Optional[str] = None
    device_stop_sent: bool = False
    warnings: List[str] = field(default_factory=list)
    status: str = TransactionStatus.COMPLETED


@dataclass
class LiveEnergy:
    transaction_id: str
    station_id: str
    status: str
    energy_kwh: Decimal
    price_per_kwh: Decimal
    cost: Decimal


class SessionEngine:
    def __init__(
        self,
        store: SessionStore,
        payments,
        devices,
        simulator: MeteringSimulator,
        publisher: TelemetryPublisher,
        notifier,
        currency: str = "pln",
        device_timeout: float = 5.0,
    ):
        self.store = store
        self.payments = payments
        self.devices = devices
        self.simulator = simulator
        self.publisher = publisher
        self.notifier = notifier
        self.registry = StationRegistry(store)
        self.currency = currency
        self.device_timeout = device_timeout
        # soft cache, lost on restart: duplicate start and missing stop are no-ops
        self._active: Dict[str, MeteringSource] = {}
        self._settling: set = set()

    def metering_source(self, transaction_id: str) -> Optional[MeteringSource]:
        return self._active.get(transaction_id)

    # -------- device commands --------
    async def _device_command(
        self,
        name: str,
        command: Callable[[str], Awaitable[bool]],
        station_id: str,
    ) -> bool:
        try:
            ok = await asyncio.wait_for(command(station_id), timeout=self.device_timeout)
        except asyncio.TimeoutError:
            logging.warning(f"{name} to {station_id} timed out after {self.device_timeout}s")
            return False
        except Exception as e:
            logging.warning(f"{name} to {station_id} failed: {e}")
            return False
        if ok is not True:
            logging.warning(f"{name} to {station_id} rejected by the charge point")
            return False
        return True

    # -------- start --------
    async def start_session(self, station_id: str, connector_id: Optional[str] = None) -> StartResult:
        pending = await self.store.list_transactions(
            station_id, {TransactionStatus.PENDING}, connector_id
        )
        if not pending:
            raise NoPendingPayment(
                f"no pending payment for station {station_id}"
                + (f" connector {connector_id}" if connector_id else "")
            )
        if len(pending) > 1:
            raise NoPendingPayment(
                f"{len(pending)} pending payments for station {station_id}; specify the connector"
            )
        tx = pending[0]

        charging = await self.store.list_transactions(station_id, {TransactionStatus.CHARGING})
        for other in charging:
            if conflicts(other, tx):
                raise ConnectorBusy(f"transaction {other.id} is already charging on station {station_id}")

        online = await self._device_command("RemoteStartTransaction", self.devices.send_remote_start, station_id)
        mode = MeterSource.LIVE if online else MeterSource.SIMULATED

        started = await self.store.update_transaction(
            tx.id,
            expected_statuses={TransactionStatus.PENDING},
            status=TransactionStatus.CHARGING,
            start_time=utcnow(),
            meter_source=mode,
        )
        if started is None:
            if online:
                # the charger accepted a session whose row was settled meanwhile
                await self._device_command(
                    "RemoteStopTransaction", self.devices.send_remote_stop, station_id
                )
            raise NoPendingPayment(f"transaction {tx.id} is no longer pending")
        await self.store.set_station_status(station_id, StationStatus.CHARGING)

        if online:
            self._active[tx.id] = LiveMetering(station_id)
        else:
            # payment is already authorized, so degrade to simulated billing
            logging.info(f"Station {station_id} unreachable, simulating metering for tx={tx.id}")
            self._active[tx.id] = SimulatedMetering(self.simulator.start(tx.id))

        logging.info(f"Session started: station={station_id}, tx={tx.id}, mode={mode}")
        return StartResult(
            transaction_id=tx.id,
            station_id=station_id,
            connector_id=tx.connector_id,
            mode=mode,
        )

    # -------- stop --------
    async def stop_session(
        self,
        station_id: str,
        customer_email: Optional[str] = None,
        connector_id: Optional[str] = None,
    ) -> SettlementResult:
        tx = await self.store.latest_transaction(station_id, TransactionStatus.ACTIVE, connector_id)
        if tx is None:
            raise NoActiveSession(f"no active transaction for station {station_id}")
        logging.info(
            f"Stopping session: station={station_id}, tx={tx.id}, status={tx.status}, energy={tx.energy_kwh} kWh"
        )
        live = await self._live_transaction(station_id)
        if live is not None and live.id != tx.id:
            # the transaction running on the charger belongs to another session
            device_stop_sent = False
        else:
            # the device outcome never gates settlement
            device_stop_sent = await self._device_command(
                "RemoteStopTransaction", self.devices.send_remote_stop, station_id
            )
        result = await self.settle(tx, customer_email=customer_email)
        result.device_stop_sent = device_stop_sent
        return result

    async def handle_device_stop(self, station_id: str) -> Optional[SettlementResult]:
        """Settle the live session the charge point ended on its own."""
        tx = await self._live_transaction(station_id)
        if tx is None:
            logging.info(f"Device stop on {station_id}: no live session to settle")
            return None
        try:
            return await self.settle(tx)
        except AlreadySettled:
            logging.info(f"Device stop on {station_id}: session already settled")
            return None

    # -------- settlement --------
    async def _price_for(self, tx: Transaction) -> Decimal:
        if tx.connector_id is not None:
            connector = await self.store.get_connector(tx.connector_id)
            if connector is not None and connector.price_per_kwh is not None:
                return connector.price_per_kwh
        station = await self.store.get_station(tx.station_id)
        if station is None:
            raise StationNotFound(f"station {tx.station_id} not found")
        return station.price_per_kwh

    async def settle(self, transaction: Transaction, customer_email: Optional[str] = None) -> SettlementResult:
        if transaction.id in self._settling:
            raise AlreadySettled(f"transaction {transaction.id} is already being settled")
        self._settling.add(transaction.id)
        try:
            return await self._settle(transaction.id, customer_email)
        finally:
            self._settling.discard(transaction.id)

    async def _settle(self, transaction_id: str, customer_email: Optional[str]) -> SettlementResult:
        # freeze metering first: the energy billed is the energy the row is closed with
        self._stop_metering(transaction_id)
        tx = await self.store.get_transaction(transaction_id)
        if tx is None:
            raise NoActiveSession(f"transaction {transaction_id} not found")
        if tx.status in TransactionStatus.TERMINAL:
            raise AlreadySettled(f"transaction {tx.id} is already {tx.status}")

        energy = tx.energy_kwh
        price = await self._price_for(tx)
        cost = (energy * price).quantize(CENT, rounding=ROUND_HALF_UP)
        # no overage billing: consumption above the prepaid amount is not charged
        refund_amount = max(Decimal("0.00"), tx.amount - cost).quantize(CENT)
        logging.info(
            f"Settlement tx={tx.id}: amount={tx.amount}, energy={energy} kWh, "
            f"price={price}/kWh, cost={cost}, refund={refund_amount}"
        )

        warnings: List[str] = []
        refund_id = None
        refund_succeeded = True
        if refund_amount > 0:
            try:
                refund = await self.payments.create_refund(
                    tx.payment_intent_id,
                    to_minor_units(refund_amount),
                    idempotency_key=f"refund-{tx.id}",
                )
                refund_id = refund.id
                logging.info(f"Refund {refund.id} created for tx={tx.id}, status={refund.status}")
            except Exception as e:
                # the connector must be released even without a refund
                refund_succeeded = False
                warnings.append(f"refund failed: {e}")
                logging.error(f"Refund for tx={tx.id} failed: {e}")

        end_time = utcnow()
        try:
            closed = await self.store.update_transaction(
                tx.id,
                expected_statuses=TransactionStatus.ACTIVE,
                status=TransactionStatus.COMPLETED,
                end_time=end_time,
                final_cost=cost,
                refund_id=refund_id,
            )
            if closed is None:
                latest = await self.store.get_transaction(tx.id)
                if latest is not None and latest.status in TransactionStatus.TERMINAL:
                    raise AlreadySettled(f"transaction {tx.id} was settled concurrently")
                raise RuntimeError(f"transaction {tx.id} could not be closed")
            await self._release(tx.station_id)
        except AlreadySettled:
            self._stop_metering(tx.id)
            raise
        except Exception as e:
            logging.exception(f"Settlement of tx={tx.id} could not be persisted")
            await self._force_release(tx)
            raise SettlementPersistenceFailed(tx.id, e) from e

        self._stop_metering(tx.id)

        email = customer_email or tx.customer_email
        receipt_sent = False
        if email:
            receipt = Receipt(
                transaction_id=tx.id,
                email=email,
                station_id=tx.station_id,
                energy_kwh=energy,
                cost=cost,
                prepaid=tx.amount,
                refund=refund_amount,
                currency=self.currency,
                start_time=tx.start_time,
                end_time=end_time,
                refund_id=refund_id,
            )
            try:
                receipt_sent = bool(await self.notifier.send_receipt(receipt))
            except Exception as e:
                warnings.append(f"receipt not sent: {e}")
                logging.warning(f"Receipt for tx={tx.id} to {email} failed: {e}")

        logging.info(
            f"Session settled: tx={tx.id}, cost={cost}, refund={refund_amount}, refund_id={refund_id or '-'}"
        )
        return SettlementResult(
            transaction_id=tx.id,
            station_id=tx.station_id,
            connector_id=tx.connector_id,
            energy_kwh=energy,
            prepaid=tx.amount,
            cost=cost,
            refund_amount=refund_amount,
            refund_id=refund_id,
            start_time=tx.start_time,
            end_time=end_time,
            refund_succeeded=refund_succeeded,
            receipt_sent=receipt_sent,
            email=email,
            warnings=warnings,
        )

    async def _release(self, station_id: str) -> None:
        remaining = await self.store.list_transactions(station_id, TransactionStatus.ACTIVE)
        status = StationStatus.CHARGING if remaining else StationStatus.AVAILABLE
        await self.store.set_station_status(station_id, status)
        logging.info(f"Station released: {station_id} -> status={status}")

    async def _force_release(self, tx: Transaction) -> None:
        self._stop_metering(tx.id)
        try:
            failed = await self.store.update_transaction(
                tx.id,
                expected_statuses=TransactionStatus.ACTIVE,
                status=TransactionStatus.FAILED,
                end_time=utcnow(),
            )
            if failed is not None:
                logging.warning(f"Transaction {tx.id} marked FAILED to free its connector")
        except Exception:
            logging.exception(f"Could not mark transaction {tx.id} FAILED")
        try:
            await self.store.set_station_status(tx.station_id, StationStatus.AVAILABLE)
            logging.info(f"Station {tx.station_id} released despite settlement error")
        except Exception:
            logging.exception(f"Could not release station {tx.station_id}")

    def _stop_metering(self, transaction_id: str) -> None:
        source = self._active.pop(transaction_id, None)
        if isinstance(source, LiveMetering):
            return
        # SimulatedMetering, or no entry at all after a restart; stop is idempotent
        self.simulator.stop(transaction_id)

    # -------- telemetry / queries --------
    async def _live_transaction(
        self,
        station_id: str,
        statuses=TransactionStatus.ACTIVE,
        connector_id: Optional[str] = None,
    ) -> Optional[Transaction]:
        """Newest session on ``station_id`` metered by the charge point itself."""
        for tx in await self.store.list_transactions(station_id, statuses, connector_id):
            if tx.meter_source == MeterSource.LIVE:
                return tx
        return None

    async def record_live_energy(
        self,
        station_id: str,
        energy_kwh,
        connector_id: Optional[str] = None,
    ) -> Optional[Decimal]:
        """Apply a device meter reading; readings never move energy backwards."""
        tx = await self._live_transaction(station_id, {TransactionStatus.CHARGING}, connector_id)
        if tx is None:
            logging.debug(f"Meter reading from {station_id} without a live session ignored")
            return None
        if tx.id in self._settling:
            return tx.energy_kwh
        energy = Decimal(str(energy_kwh))
        if energy <= tx.energy_kwh:
            return tx.energy_kwh
        updated = await self.store.update_transaction(
            tx.id,
            expected_statuses={TransactionStatus.CHARGING},
            energy_kwh=energy,
        )
        if updated is None:
            return None
        self.publisher.publish(
            EnergyUpdate(
                station_id=station_id,
                transaction_id=tx.id,
                energy_kwh=updated.energy_kwh,
                source=MeterSource.LIVE,
            )
        )
        return updated.energy_kwh

    async def get_live_energy(self, station_id: str) -> LiveEnergy:
        tx = await self.store.latest_transaction(station_id, TransactionStatus.ACTIVE)
        if tx is None:
            raise NoActiveSession(f"no active transaction for station {station_id}")
        price = await self._price_for(tx)
        return LiveEnergy(
            transaction_id=tx.id,
            station_id=station_id,
            status=tx.status,
            energy_kwh=tx.energy_kwh,
            price_per_kwh=price,
            cost=(tx.energy_kwh * price).quantize(CENT, rounding=ROUND_HALF_UP),
        )

    async def get_effective_station_view(self, station_id: str) -> StationView:
        return await self.registry.station_view(station_id)

    async def shutdown(self) -> None:
        self._active.clear()
        await self.simulator.stop_all()
