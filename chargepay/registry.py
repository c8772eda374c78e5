"""Effective station/connector status.

Connector rows only carry the operator-owned fault flag. Whether a connector
is busy is derived from the ledger on every read, because transactions start
and finish independently of the connector row.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Any, Collection, Dict, List

from .errors import ConnectorNotFound, InvalidRequest, StationNotFound
from .models import Connector, ConnectorStatus, Station, StationStatus, Transaction, TransactionStatus
from .store import SessionStore


def effective_status(connector: Connector, active_connector_ids: Collection[str]) -> str:
    if connector.status in ConnectorStatus.OPERATOR_FAULTS:
        return ConnectorStatus.FAULTED
    if connector.id in active_connector_ids:
        return ConnectorStatus.CHARGING
    return connector.status


def station_status(statuses: Collection[str], has_active_transaction: bool) -> str:
    if has_active_transaction:
        return StationStatus.CHARGING
    if statuses and all(s == ConnectorStatus.FAULTED for s in statuses):
        return StationStatus.FAULTED
    return StationStatus.AVAILABLE


@dataclass
class ConnectorView:
    id: str
    type: str
    power_kw: int
    price_per_kwh: Any
    status: str


@dataclass
class StationView:
    id: str
    name: str
    address: Any
    city: Any
    latitude: Any
    longitude: Any
    price_per_kwh: Any
    status: str
    connectors: List[ConnectorView]

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def build_station_view(
    station: Station,
    connectors: List[Connector],
    active: List[Transaction],
) -> StationView:
    active_ids = {t.connector_id for t in active if t.connector_id is not None}
    views = [
        ConnectorView(
            id=c.id,
            type=c.type,
            power_kw=c.power_kw,
            price_per_kwh=c.price_per_kwh if c.price_per_kwh is not None else station.price_per_kwh,
            status=effective_status(c, active_ids),
        )
        for c in connectors
    ]
    return StationView(
        id=station.id,
        name=station.name,
        address=station.address,
        city=station.city,
        latitude=station.latitude,
        longitude=station.longitude,
        price_per_kwh=station.price_per_kwh,
        status=station_status([v.status for v in views], bool(active)),
        connectors=views,
    )


class StationRegistry:
    def __init__(self, store: SessionStore):
        self.store = store

    async def station_view(self, station_id: str) -> StationView:
        station = await self.store.get_station(station_id)
        if station is None:
            raise StationNotFound(f"station {station_id} not found")
        connectors = await self.store.list_connectors(station_id)
        active = await self.store.list_transactions(station_id, TransactionStatus.ACTIVE)
        return build_station_view(station, connectors, active)

    async def list_station_views(self) -> List[StationView]:
        stations = await self.store.list_stations()
        connectors = await self.store.list_connectors()
        active = await self.store.list_transactions(statuses=TransactionStatus.ACTIVE)
        views = [
            build_station_view(
                s,
                [c for c in connectors if c.station_id == s.id],
                [t for t in active if t.station_id == s.id],
            )
            for s in stations
        ]
        views.sort(key=lambda v: v.name)
        return views

    async def connector_status(self, connector: Connector) -> str:
        active = await self.store.list_transactions(
            connector.station_id, TransactionStatus.ACTIVE, connector.id
        )
        return effective_status(connector, {connector.id} if active else set())

    async def set_connector_status(self, connector_id: str, status: str) -> str:
        """Operator override (fault, switch off, back in service).

        Returns the effective status afterwards, which stays CHARGING while a
        session is open on an AVAILABLE connector.
        """
        status = (status or "").upper()
        if status not in ConnectorStatus.OPERATOR_SETTABLE:
            raise InvalidRequest(
                f"status must be one of {', '.join(sorted(ConnectorStatus.OPERATOR_SETTABLE))}"
            )
        connector = await self.store.get_connector(connector_id)
        if connector is None:
            raise ConnectorNotFound(f"connector {connector_id} not found")
        await self.store.set_connector_status(connector_id, status)
        logging.info(f"Connector {connector_id} on {connector.station_id} set to {status} by operator")
        connector.status = status
        return await self.connector_status(connector)
