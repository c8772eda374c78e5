from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest

from chargepay.errors import InvalidRequest
from chargepay.models import Connector, ConnectorStatus, Station, Transaction, TransactionStatus
from chargepay.reports import compute_stats

DAY = date(2024, 5, 10)


def _at(day, hour):
    return datetime(day.year, day.month, day.day, hour, tzinfo=timezone.utc)


def _completed(energy, cost=None, day=DAY, minutes=30, station="ST1"):
    start = _at(day, 10)
    return Transaction(
        station_id=station,
        connector_id="C1",
        amount=Decimal("50.00"),
        payment_intent_id="pi",
        status=TransactionStatus.COMPLETED,
        energy_kwh=Decimal(energy),
        final_cost=None if cost is None else Decimal(cost),
        start_time=start,
        end_time=start + timedelta(minutes=minutes),
        created_at=start,
    )


STATIONS = [Station(id="ST1", name="Hub", price_per_kwh=Decimal("2.00"))]
CONNECTORS = [
    Connector(id="C1", station_id="ST1", type="CCS", power_kw=50),
    Connector(id="C2", station_id="ST1", type="CCS", power_kw=50),
    Connector(id="C3", station_id="ST1", type="CCS", power_kw=50, status=ConnectorStatus.FAULTED),
]


def test_totals_and_averages():
    transactions = [
        _completed("10", cost="25.00"),
        _completed("5", minutes=90),  # priced from the station
        Transaction(station_id="ST1", connector_id="C2", amount=Decimal("5"), payment_intent_id="pi"),
    ]

    stats = compute_stats(STATIONS, CONNECTORS, transactions, DAY, DAY)

    assert stats["totalSessions"] == 2
    assert stats["totalRevenue"] == 35.0
    assert stats["totalEnergy"] == 15.0
    assert stats["avgCost"] == 17.5
    assert stats["avgKwh"] == 7.5
    assert stats["avgDuration"] == 60.0
    assert stats["statusCounts"] == {"available": 1, "charging": 1, "faulted": 1, "total": 3}


def test_chart_includes_empty_days():
    transactions = [_completed("4", cost="8.00", day=DAY + timedelta(days=2))]
    stats = compute_stats(STATIONS, CONNECTORS, transactions, DAY, DAY + timedelta(days=2))

    assert [p["date"] for p in stats["chartData"]] == ["2024-05-10", "2024-05-11", "2024-05-12"]
    assert stats["chartData"][0] == {"date": "2024-05-10", "revenue": 0, "energy": 0, "sessions": 0}
    assert stats["chartData"][2]["revenue"] == 8.0


def test_sessions_outside_window_ignored():
    transactions = [_completed("4", cost="8.00", day=DAY - timedelta(days=1))]
    stats = compute_stats(STATIONS, CONNECTORS, transactions, DAY, DAY)
    assert stats["totalSessions"] == 0
    assert stats["avgCost"] == 0


def test_inverted_window_rejected():
    with pytest.raises(InvalidRequest):
        compute_stats(STATIONS, CONNECTORS, [], DAY, DAY - timedelta(days=1))
