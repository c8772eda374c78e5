"""Synthetic metering for sessions whose charge point never answered.

One asyncio task per transaction adds a fixed energy quantum every tick,
which is what a constant power draw over the tick interval would deliver.
"""

from __future__ import annotations

import asyncio
import logging
from decimal import Decimal
from typing import Dict, Optional

from .models import MeterSource, TransactionStatus
from .store import SessionStore
from .telemetry import EnergyUpdate, TelemetryPublisher


class MeteringSimulator:
    def __init__(
        self,
        store: SessionStore,
        publisher: TelemetryPublisher,
        interval_sec: float = 2.0,
        power_kw: float = 22.0,
    ):
        self.store = store
        self.publisher = publisher
        self.interval_sec = interval_sec
        self.power_kw = power_kw
        # kept unrounded; only the settled cost is rounded
        self.quantum = Decimal(str(power_kw)) * Decimal(str(interval_sec)) / Decimal(3600)
        self._tasks: Dict[str, asyncio.Task] = {}

    def is_running(self, transaction_id: str) -> bool:
        task = self._tasks.get(transaction_id)
        return task is not None and not task.done()

    @property
    def running(self) -> int:
        return sum(1 for t in self._tasks.values() if not t.done())

    def start(self, transaction_id: str) -> asyncio.Task:
        """Start ticking for ``transaction_id``; a second start is a no-op."""
        task = self._tasks.get(transaction_id)
        if task is not None and not task.done():
            logging.info(f"Simulator already running for tx={transaction_id}")
            return task
        task = asyncio.create_task(self._run(transaction_id), name=f"sim-{transaction_id}")
        self._tasks[transaction_id] = task
        logging.info(
            f"Simulator started: tx={transaction_id}, +{self.quantum} kWh every {self.interval_sec}s"
        )
        return task

    def stop(self, transaction_id: str) -> bool:
        task = self._tasks.pop(transaction_id, None)
        if task is None:
            return False
        if not task.done():
            task.cancel()
        logging.info(f"Simulator stopped: tx={transaction_id}")
        return True

    async def stop_all(self) -> None:
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def tick(self, transaction_id: str) -> Optional[Decimal]:
        """Accrue one quantum for a running session.

        Returns the new cumulative energy, or None once the session was stopped
        or the transaction is no longer CHARGING (the caller must stop ticking).
        """
        if not self.is_running(transaction_id):
            return None
        tx = await self.store.get_transaction(transaction_id)
        if tx is None or tx.status != TransactionStatus.CHARGING:
            return None
        energy = tx.energy_kwh + self.quantum
        # guarded on CHARGING so a tick racing settlement cannot touch a closed row
        updated = await self.store.update_transaction(
            transaction_id,
            expected_statuses={TransactionStatus.CHARGING},
            energy_kwh=energy,
        )
        if updated is None:
            return None
        self.publisher.publish(
            EnergyUpdate(
                station_id=updated.station_id,
                transaction_id=updated.id,
                energy_kwh=updated.energy_kwh,
                power_kw=self.power_kw,
                source=MeterSource.SIMULATED,
            )
        )
        logging.debug(f"Simulated MeterValues: tx={transaction_id}, energy(kWh)={updated.energy_kwh}")
        return updated.energy_kwh

    async def _run(self, transaction_id: str) -> None:
        try:
            while True:
                await asyncio.sleep(self.interval_sec)
                if await self.tick(transaction_id) is None:
                    logging.info(f"Simulator for tx={transaction_id} found session closed, exiting")
                    return
        except Exception:
            logging.exception(f"Simulator for tx={transaction_id} crashed")
        finally:
            if self._tasks.get(transaction_id) is asyncio.current_task():
                self._tasks.pop(transaction_id, None)
