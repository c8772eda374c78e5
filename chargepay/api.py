import logging
from datetime import date, datetime, timezone
from typing import Optional

from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, ConfigDict, Field

from .engine import SessionEngine, SettlementResult
from .errors import (
    AlreadySettled,
    ChargePayError,
    ConnectorBusy,
    ConnectorNotFound,
    ConnectorUnavailable,
    InvalidRequest,
    NoActiveSession,
    NoPendingPayment,
    PaymentError,
    SettlementPersistenceFailed,
    StationNotFound,
)
from .prepayment import PrepaymentService
from .reports import compute_stats
from .telemetry import TelemetryPublisher

STATUS_CODES = {
    InvalidRequest: 400,
    NoPendingPayment: 404,
    NoActiveSession: 404,
    StationNotFound: 404,
    ConnectorNotFound: 404,
    ConnectorBusy: 409,
    ConnectorUnavailable: 409,
    AlreadySettled: 409,
    PaymentError: 502,
    SettlementPersistenceFailed: 500,
}


def http_error(e: ChargePayError) -> HTTPException:
    for exc_type, code in STATUS_CODES.items():
        if isinstance(e, exc_type):
            return HTTPException(status_code=code, detail=str(e))
    return HTTPException(status_code=500, detail=str(e))


class PaymentIntentReq(BaseModel):
    amount: int  # minor units
    station_id: str = Field(alias="stationId")
    connector_id: Optional[str] = Field(default=None, alias="connectorId")
    email: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)


class StartReq(BaseModel):
    connector_id: Optional[str] = Field(default=None, alias="connectorId")

    model_config = ConfigDict(populate_by_name=True)


class StopReq(BaseModel):
    email: Optional[str] = None
    connector_id: Optional[str] = Field(default=None, alias="connectorId")

    model_config = ConfigDict(populate_by_name=True)


class ConnectorUpdateReq(BaseModel):
    status: str


def settlement_body(result: SettlementResult) -> dict:
    return {
        "success": True,
        "message": (
            f"Transaction completed. Cost: {result.cost:.2f}, Refund: {result.refund_amount:.2f}"
        ),
        "transactionId": result.transaction_id,
        "stationId": result.station_id,
        "energyKwh": float(result.energy_kwh),
        "finalCost": float(result.cost),
        "refundAmount": float(result.refund_amount),
        "refundId": result.refund_id,
        "refundSucceeded": result.refund_succeeded,
        "invoiceSent": result.receipt_sent,
        "email": result.email,
        "ocppCommandSent": result.device_stop_sent,
        "startTime": result.start_time.isoformat(),
        "endTime": result.end_time.isoformat(),
        "warnings": result.warnings,
    }


def build_app(
    engine: SessionEngine,
    prepayments: PrepaymentService,
    publisher: TelemetryPublisher,
) -> FastAPI:
    app = FastAPI(title="ChargePay Session API", version="1.0.0")
    store = engine.store

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        logging.info(f">>> {request.method} {request.url.path}")
        try:
            response = await call_next(request)
            logging.info(f"<<< {request.method} {request.url.path} -> {response.status_code}")
            return response
        except Exception:
            logging.exception("Handler crashed")
            raise

    @app.get("/api/v1/health")
    def health():
        return {"ok": True, "time": datetime.now(timezone.utc).isoformat()}

    @app.post("/api/v1/payment-intents")
    async def api_create_payment_intent(req: PaymentIntentReq):
        try:
            prepayment = await prepayments.create_prepayment(
                req.station_id,
                req.amount,
                connector_id=req.connector_id,
                customer_email=req.email,
            )
        except ChargePayError as e:
            raise http_error(e)
        return {
            "id": prepayment.payment_intent_id,
            "clientSecret": prepayment.client_secret,
            "transactionId": prepayment.transaction_id,
        }

    @app.post("/api/v1/start/{station_id}")
    async def api_start(station_id: str, req: Optional[StartReq] = None):
        connector_id = req.connector_id if req else None
        try:
            result = await engine.start_session(station_id, connector_id)
        except ChargePayError as e:
            raise http_error(e)
        return {
            "success": True,
            "message": f"Charging started on {station_id} ({result.mode})",
            "transactionId": result.transaction_id,
            "connectorId": result.connector_id,
            "mode": result.mode,
        }

    @app.post("/api/v1/stop/{station_id}")
    async def api_stop(station_id: str, req: Optional[StopReq] = None):
        try:
            result = await engine.stop_session(
                station_id,
                customer_email=req.email if req else None,
                connector_id=req.connector_id if req else None,
            )
        except ChargePayError as e:
            raise http_error(e)
        return settlement_body(result)

    @app.get("/api/v1/energy/{station_id}")
    async def api_energy(station_id: str):
        try:
            live = await engine.get_live_energy(station_id)
        except ChargePayError as e:
            raise http_error(e)
        return {
            "success": True,
            "transactionId": live.transaction_id,
            "status": live.status,
            "energyKwh": float(live.energy_kwh),
            "pricePerKwh": float(live.price_per_kwh),
            "cost": float(live.cost),
        }

    @app.get("/api/v1/stations")
    async def api_stations():
        views = await engine.registry.list_station_views()
        return {"success": True, "stations": [v.to_dict() for v in views]}

    @app.get("/api/v1/stations/{station_id}")
    async def api_station(station_id: str):
        try:
            view = await engine.get_effective_station_view(station_id)
        except ChargePayError as e:
            raise http_error(e)
        return {"success": True, "station": view.to_dict()}

    @app.put("/api/v1/connectors/{connector_id}")
    async def api_update_connector(connector_id: str, req: ConnectorUpdateReq):
        try:
            status = await engine.registry.set_connector_status(connector_id, req.status)
        except ChargePayError as e:
            raise http_error(e)
        return {"success": True, "connector": {"id": connector_id, "status": status}}

    @app.get("/api/v1/stats")
    async def api_stats(startDate: Optional[date] = None, endDate: Optional[date] = None):
        try:
            return compute_stats(
                await store.list_stations(),
                await store.list_connectors(),
                await store.list_transactions(),
                startDate,
                endDate,
            )
        except ChargePayError as e:
            raise http_error(e)

    @app.websocket("/ws/energy")
    async def ws_energy(websocket: WebSocket, stationId: Optional[str] = None):
        await websocket.accept()
        queue = publisher.subscribe()
        try:
            while True:
                update = await queue.get()
                if stationId is not None and update.station_id != stationId:
                    continue
                await websocket.send_json(update.to_message())
        except WebSocketDisconnect:
            logging.info("Energy stream client disconnected")
        finally:
            publisher.unsubscribe(queue)

    return app
