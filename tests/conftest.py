import asyncio
from decimal import Decimal

import pytest
import pytest_asyncio

from chargepay.engine import SessionEngine
from chargepay.errors import NotificationFailed, RefundFailed
from chargepay.models import Connector, ConnectorStatus, Station, Transaction
from chargepay.payments import PaymentIntent, Refund
from chargepay.prepayment import PrepaymentService
from chargepay.simulator import MeteringSimulator
from chargepay.store import SessionStore
from chargepay.telemetry import TelemetryPublisher


class DummyDevices:
    def __init__(self, online: bool = False, delay: float = 0.0, error: Exception | None = None):
        self.online = online
        self.delay = delay
        self.error = error
        self.starts: list[str] = []
        self.stops: list[str] = []

    async def _answer(self) -> bool:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.online

    async def send_remote_start(self, station_id: str) -> bool:
        self.starts.append(station_id)
        return await self._answer()

    async def send_remote_stop(self, station_id: str) -> bool:
        self.stops.append(station_id)
        return await self._answer()


class DummyPayments:
    def __init__(self):
        self.fail_refunds = False
        self.intents: list[PaymentIntent] = []
        self.refunds: list[tuple[str, int, str | None]] = []

    async def create_payment_intent(self, amount_minor: int, currency: str) -> PaymentIntent:
        intent = PaymentIntent(
            id=f"pi_{len(self.intents) + 1}",
            client_secret=f"pi_{len(self.intents) + 1}_secret",
            amount=amount_minor,
            currency=currency,
        )
        self.intents.append(intent)
        return intent

    async def create_refund(self, payment_intent_id: str, amount_minor: int, idempotency_key=None) -> Refund:
        if self.fail_refunds:
            raise RefundFailed("card_declined")
        self.refunds.append((payment_intent_id, amount_minor, idempotency_key))
        return Refund(id=f"re_{len(self.refunds)}", amount=amount_minor, status="succeeded")


class DummyNotifier:
    def __init__(self):
        self.fail = False
        self.receipts = []

    async def send_receipt(self, receipt) -> bool:
        if self.fail:
            raise NotificationFailed("smtp down")
        self.receipts.append(receipt)
        return True


@pytest_asyncio.fixture
async def store():
    s = SessionStore()
    await s.add_station(Station(id="ST1", name="Test Hub", price_per_kwh=Decimal("2.50")))
    await s.add_station(Station(id="ST2", name="Another Site", price_per_kwh=Decimal("1.80")))
    await s.add_connector(Connector(id="C1", station_id="ST1", type="CCS", power_kw=50))
    await s.add_connector(
        Connector(id="C2", station_id="ST1", type="Type2", power_kw=22, price_per_kwh=Decimal("3.00"))
    )
    await s.add_connector(
        Connector(id="C3", station_id="ST1", type="CCS", power_kw=50, status=ConnectorStatus.FAULTED)
    )
    await s.add_connector(Connector(id="C4", station_id="ST2", type="Type2", power_kw=11))
    return s


@pytest.fixture
def publisher():
    return TelemetryPublisher()


@pytest.fixture
def devices():
    return DummyDevices()


@pytest.fixture
def payments():
    return DummyPayments()


@pytest.fixture
def notifier():
    return DummyNotifier()


@pytest_asyncio.fixture
async def simulator(store, publisher):
    # one tick per hour at 10 kW: ticks only happen when a test calls tick()
    sim = MeteringSimulator(store, publisher, interval_sec=3600, power_kw=10)
    yield sim
    await sim.stop_all()


@pytest.fixture
def engine(store, payments, devices, simulator, publisher, notifier):
    return SessionEngine(
        store,
        payments,
        devices,
        simulator,
        publisher,
        notifier,
        currency="pln",
        device_timeout=0.05,
    )


@pytest.fixture
def prepayments(store, payments):
    return PrepaymentService(store, payments, currency="pln")


@pytest.fixture
def make_pending(store):
    async def _make(station_id="ST1", connector_id="C1", amount="50.00", email=None):
        return await store.insert_transaction_if_idle(
            Transaction(
                station_id=station_id,
                connector_id=connector_id,
                amount=Decimal(amount),
                payment_intent_id=f"pi_{station_id}_{connector_id}",
                customer_email=email,
            )
        )

    return _make
