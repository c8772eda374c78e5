from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from .models import utcnow


@dataclass
class EnergyUpdate:
    station_id: str
    transaction_id: str
    energy_kwh: Decimal
    power_kw: Optional[float] = None
    source: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)

    def to_message(self) -> Dict[str, Any]:
        return {
            "type": "energy_update",
            "stationId": self.station_id,
            "transactionId": self.transaction_id,
            "energy": int(self.energy_kwh * 1000),  # Wh
            "energyKwh": float(self.energy_kwh),
            "powerKw": round(self.power_kw or 0.0, 2),
            "source": self.source,
            "timestamp": self.timestamp.isoformat(),
        }


class TelemetryPublisher:
    """Fan-out of energy updates with at-most-once delivery.

    Slow subscribers lose events instead of slowing publishers down; the
    ledger stays queryable for anyone who needs the exact value.
    """

    def __init__(self, queue_size: int = 100):
        self.queue_size = queue_size
        self._subscribers: List[asyncio.Queue] = []
        self._latest: Dict[str, EnergyUpdate] = {}

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def latest(self, station_id: str) -> Optional[EnergyUpdate]:
        return self._latest.get(station_id)

    def publish(self, update: EnergyUpdate) -> None:
        previous = self._latest.get(update.station_id)
        if update.power_kw is None:
            # implied power from the previous reading of the same session
            update.power_kw = 0.0
            if previous is not None and previous.transaction_id == update.transaction_id:
                elapsed = (update.timestamp - previous.timestamp).total_seconds()
                if elapsed > 0:
                    delta = float(update.energy_kwh - previous.energy_kwh)
                    update.power_kw = max(0.0, delta * 3600 / elapsed)
        self._latest[update.station_id] = update
        for queue in list(self._subscribers):
            try:
                queue.put_nowait(update)
            except asyncio.QueueFull:
                logging.debug(f"Telemetry subscriber full, dropped update for {update.station_id}")
