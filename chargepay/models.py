from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ConnectorStatus:
    AVAILABLE = "AVAILABLE"
    CHARGING = "CHARGING"
    FAULTED = "FAULTED"
    UNAVAILABLE = "UNAVAILABLE"
    OCCUPIED = "OCCUPIED"

    # set by operators, always win over ledger-derived status
    OPERATOR_FAULTS = frozenset({FAULTED, UNAVAILABLE})
    # CHARGING and OCCUPIED come from the ledger, never from an operator
    OPERATOR_SETTABLE = frozenset({AVAILABLE, FAULTED, UNAVAILABLE})


class StationStatus:
    AVAILABLE = "AVAILABLE"
    CHARGING = "CHARGING"
    FAULTED = "FAULTED"


class TransactionStatus:
    PENDING = "PENDING"
    CHARGING = "CHARGING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    ACTIVE = frozenset({PENDING, CHARGING})
    TERMINAL = frozenset({COMPLETED, FAILED})


class MeterSource:
    LIVE = "live"
    SIMULATED = "simulated"


@dataclass
class Station:
    id: str
    name: str
    price_per_kwh: Decimal
    address: Optional[str] = None
    city: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    connector_type: Optional[str] = None
    # occupancy hint written by the engine; decisions use the registry instead
    status: str = StationStatus.AVAILABLE
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Connector:
    id: str
    station_id: str
    type: str
    power_kw: int
    price_per_kwh: Optional[Decimal] = None
    status: str = ConnectorStatus.AVAILABLE
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Transaction:
    """One prepaid charging event; the single source of truth for billing."""

    station_id: str
    amount: Decimal
    payment_intent_id: str
    connector_id: Optional[str] = None
    customer_email: Optional[str] = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    energy_kwh: Decimal = Decimal("0")
    status: str = TransactionStatus.PENDING
    start_time: datetime = field(default_factory=utcnow)
    end_time: Optional[datetime] = None
    final_cost: Optional[Decimal] = None
    refund_id: Optional[str] = None
    meter_source: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    @property
    def is_active(self) -> bool:
        return self.status in TransactionStatus.ACTIVE
