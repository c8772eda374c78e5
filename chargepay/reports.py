from __future__ import annotations

from collections import defaultdict
from datetime import date, datetime, time, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Optional

from .errors import InvalidRequest
from .models import Connector, ConnectorStatus, Station, Transaction, TransactionStatus
from .registry import effective_status


def _round(value) -> float:
    return float(Decimal(str(value)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def compute_stats(
    stations: List[Station],
    connectors: List[Connector],
    transactions: List[Transaction],
    start: Optional[date] = None,
    end: Optional[date] = None,
) -> Dict[str, Any]:
    """Revenue, energy and duration figures for completed sessions.

    ``start``/``end`` are whole days (UTC), both inclusive; today when omitted.
    """
    today = datetime.now(timezone.utc).date()
    start = start or today
    end = end or today
    if start > end:
        raise InvalidRequest("start must be before or equal to end")
    window_start = datetime.combine(start, time.min, tzinfo=timezone.utc)
    window_end = datetime.combine(end, time.max, tzinfo=timezone.utc)

    active_ids = {
        t.connector_id for t in transactions
        if t.status in TransactionStatus.ACTIVE and t.connector_id is not None
    }
    status_counts = {"available": 0, "charging": 0, "faulted": 0, "total": len(connectors)}
    for c in connectors:
        status = effective_status(c, active_ids)
        if status == ConnectorStatus.AVAILABLE:
            status_counts["available"] += 1
        elif status in (ConnectorStatus.CHARGING, ConnectorStatus.OCCUPIED):
            status_counts["charging"] += 1
        elif status == ConnectorStatus.FAULTED:
            status_counts["faulted"] += 1

    prices = {s.id: s.price_per_kwh for s in stations}
    completed = [
        t for t in transactions
        if t.status == TransactionStatus.COMPLETED and window_start <= t.created_at <= window_end
    ]

    total_revenue = Decimal("0")
    total_energy = Decimal("0")
    per_day: Dict[str, Dict[str, Any]] = defaultdict(
        lambda: {"revenue": Decimal("0"), "energy": Decimal("0"), "sessions": 0}
    )
    durations = []
    for t in completed:
        if t.final_cost is not None:
            revenue = t.final_cost
        else:
            revenue = t.energy_kwh * prices.get(t.station_id, Decimal("0"))
        total_revenue += revenue
        total_energy += t.energy_kwh
        day = per_day[t.created_at.date().isoformat()]
        day["revenue"] += revenue
        day["energy"] += t.energy_kwh
        day["sessions"] += 1
        if t.end_time is not None:
            minutes = (t.end_time - t.start_time).total_seconds() / 60
            if minutes > 0:
                durations.append(minutes)

    chart = []
    day = start
    while day <= end:
        key = day.isoformat()
        data = per_day.get(key)
        chart.append({
            "date": key,
            "revenue": _round(data["revenue"]) if data else 0,
            "energy": _round(data["energy"]) if data else 0,
            "sessions": data["sessions"] if data else 0,
        })
        day += timedelta(days=1)

    sessions = len(completed)
    return {
        "totalConnectors": len(connectors),
        "statusCounts": status_counts,
        "totalRevenue": _round(total_revenue),
        "totalEnergy": _round(total_energy),
        "totalSessions": sessions,
        "avgCost": _round(total_revenue / sessions) if sessions else 0,
        "avgKwh": _round(total_energy / sessions) if sessions else 0,
        "avgDuration": _round(sum(durations) / len(durations)) if durations else 0,
        "chartData": chart,
    }
