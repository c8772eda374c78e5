import asyncio
import logging

import uvicorn

from . import config
from .api import build_app
from .engine import SessionEngine
from .notifications import LogReceiptNotifier, SmtpReceiptNotifier
from .ocpp_central import OcppDeviceGateway, serve_ocpp
from .payments import SimulatedGateway, StripeGateway
from .prepayment import PrepaymentService
from .seed import seed_demo_data
from .simulator import MeteringSimulator
from .store import SessionStore
from .telemetry import TelemetryPublisher


def build_payments():
    if config.STRIPE_SIMULATION:
        logging.info("Payments: simulated gateway (STRIPE_SIMULATION=1)")
        return SimulatedGateway()
    return StripeGateway(
        config.STRIPE_SECRET_KEY,
        api_url=config.STRIPE_API_URL,
        timeout=config.STRIPE_API_TIMEOUT,
    )


def build_notifier():
    if not config.SMTP_HOST:
        return LogReceiptNotifier()
    return SmtpReceiptNotifier(
        config.SMTP_HOST,
        config.SMTP_PORT,
        sender=config.RECEIPT_SENDER,
        username=config.SMTP_USER,
        password=config.SMTP_PASSWORD,
        starttls=config.SMTP_STARTTLS,
    )


def build_services(store: SessionStore):
    publisher = TelemetryPublisher()
    payments = build_payments()
    devices = OcppDeviceGateway(id_tag=config.DEFAULT_ID_TAG, connector_id=config.DEFAULT_OCPP_CONNECTOR)
    simulator = MeteringSimulator(
        store,
        publisher,
        interval_sec=config.SIM_TICK_INTERVAL_SEC,
        power_kw=config.SIM_POWER_KW,
    )
    engine = SessionEngine(
        store,
        payments,
        devices,
        simulator,
        publisher,
        build_notifier(),
        currency=config.CURRENCY,
        device_timeout=config.DEVICE_COMMAND_TIMEOUT_SEC,
    )
    # live telemetry and charger-side stops flow back into the engine
    devices.on_energy = engine.record_live_energy
    devices.on_device_stop = engine.handle_device_stop
    prepayments = PrepaymentService(store, payments, currency=config.CURRENCY)
    return engine, prepayments, publisher, devices


async def main():
    logging.basicConfig(
        level=config.LOG_LEVEL,
        format="%(asctime)s | %(levelname)s | %(message)s",
    )
    store = SessionStore()
    if config.SEED_DEMO_DATA:
        await seed_demo_data(store)
    engine, prepayments, publisher, devices = build_services(store)
    app = build_app(engine, prepayments, publisher)

    # run OCPP central system and HTTP API together
    server = uvicorn.Server(
        uvicorn.Config(app, host=config.HTTP_HOST, port=config.HTTP_PORT, loop="asyncio", log_level="info")
    )
    api_task = asyncio.create_task(server.serve())
    try:
        await serve_ocpp(devices, config.OCPP_HOST, config.OCPP_PORT)
    finally:
        api_task.cancel()
        await engine.shutdown()
        aclose = getattr(engine.payments, "aclose", None)
        if aclose is not None:
            await aclose()


if __name__ == "__main__":
    asyncio.run(main())
