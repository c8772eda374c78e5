from __future__ import annotations

from dataclasses import replace
from itertools import count
from typing import Dict, Iterable, List, Optional

from .errors import ConnectorBusy
from .models import Connector, Station, Transaction, TransactionStatus

# NOTE: In-memory storage is used for now. Every read hands out a copy so that
# callers can only change a record through update_transaction().


def conflicts(a: Transaction, b: Transaction) -> bool:
    """Two transactions compete for the same hardware."""
    if a.station_id != b.station_id:
        return False
    if a.connector_id is None or b.connector_id is None:
        return True
    return a.connector_id == b.connector_id


class SessionStore:
    """Stations, connectors and the session ledger.

    Each public coroutine runs to completion without awaiting, so under a
    single event loop every call is one atomic read or write.
    """

    def __init__(self) -> None:
        self._stations: Dict[str, Station] = {}
        self._connectors: Dict[str, Connector] = {}
        self._transactions: Dict[str, Transaction] = {}
        self._order: Dict[str, int] = {}
        self._seq = count(1)

    # -------- stations / connectors --------
    async def add_station(self, station: Station) -> Station:
        self._stations[station.id] = replace(station)
        return replace(station)

    async def add_connector(self, connector: Connector) -> Connector:
        if connector.station_id not in self._stations:
            raise KeyError(f"unknown station {connector.station_id}")
        self._connectors[connector.id] = replace(connector)
        return replace(connector)

    async def get_station(self, station_id: str) -> Optional[Station]:
        station = self._stations.get(station_id)
        return replace(station) if station else None

    async def list_stations(self) -> List[Station]:
        return [replace(s) for s in self._stations.values()]

    async def get_connector(self, connector_id: str) -> Optional[Connector]:
        connector = self._connectors.get(connector_id)
        return replace(connector) if connector else None

    async def list_connectors(self, station_id: Optional[str] = None) -> List[Connector]:
        connectors = [
            c for c in self._connectors.values()
            if station_id is None or c.station_id == station_id
        ]
        connectors.sort(key=lambda c: c.created_at)
        return [replace(c) for c in connectors]

    async def set_station_status(self, station_id: str, status: str) -> None:
        station = self._stations.get(station_id)
        if station is None:
            raise KeyError(f"unknown station {station_id}")
        station.status = status

    async def set_connector_status(self, connector_id: str, status: str) -> None:
        connector = self._connectors.get(connector_id)
        if connector is None:
            raise KeyError(f"unknown connector {connector_id}")
        connector.status = status

    # -------- transactions --------
    def _newest_first(self, transactions: Iterable[Transaction]) -> List[Transaction]:
        return sorted(
            transactions,
            key=lambda t: (t.created_at, self._order[t.id]),
            reverse=True,
        )

    async def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        tx = self._transactions.get(transaction_id)
        return replace(tx) if tx else None

    async def list_transactions(
        self,
        station_id: Optional[str] = None,
        statuses: Optional[Iterable[str]] = None,
        connector_id: Optional[str] = None,
    ) -> List[Transaction]:
        """Matching transactions, newest first."""
        wanted = frozenset(statuses) if statuses is not None else None
        matches = [
            t for t in self._transactions.values()
            if (station_id is None or t.station_id == station_id)
            and (wanted is None or t.status in wanted)
            and (connector_id is None or t.connector_id == connector_id)
        ]
        return [replace(t) for t in self._newest_first(matches)]

    async def latest_transaction(
        self,
        station_id: str,
        statuses: Iterable[str],
        connector_id: Optional[str] = None,
    ) -> Optional[Transaction]:
        matches = await self.list_transactions(station_id, statuses, connector_id)
        return matches[0] if matches else None

    async def insert_transaction_if_idle(self, transaction: Transaction) -> Transaction:
        """Insert ``transaction`` unless its hardware already has an active one."""
        for existing in self._transactions.values():
            if existing.is_active and conflicts(existing, transaction):
                raise ConnectorBusy(
                    f"station {transaction.station_id} connector "
                    f"{transaction.connector_id or '*'} already has transaction "
                    f"{existing.id} in {existing.status}"
                )
        self._transactions[transaction.id] = replace(transaction)
        self._order[transaction.id] = next(self._seq)
        return replace(transaction)

    async def update_transaction(
        self,
        transaction_id: str,
        expected_statuses: Optional[Iterable[str]] = None,
        **changes,
    ) -> Optional[Transaction]:
        """Compare-and-set on status.

        Returns the updated record, or None when the transaction does not
        exist or its status is not in ``expected_statuses``.
        """
        tx = self._transactions.get(transaction_id)
        if tx is None:
            return None
        if expected_statuses is not None and tx.status not in frozenset(expected_statuses):
            return None
        if tx.status in TransactionStatus.TERMINAL and set(changes) - {"refund_id"}:
            return None
        for key, value in changes.items():
            if not hasattr(tx, key):
                raise AttributeError(f"Transaction has no field {key!r}")
            setattr(tx, key, value)
        return replace(tx)
