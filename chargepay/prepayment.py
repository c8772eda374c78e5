from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from .errors import ConnectorBusy, ConnectorUnavailable, InvalidRequest, StationNotFound
from .models import ConnectorStatus, Transaction, TransactionStatus
from .payments import from_minor_units
from .registry import StationRegistry
from .store import SessionStore, conflicts


@dataclass
class Prepayment:
    payment_intent_id: str
    client_secret: str
    transaction_id: str
    amount_minor: int
    currency: str


class PrepaymentService:
    """Takes the customer's money up front and opens a PENDING ledger entry."""

    def __init__(self, store: SessionStore, payments, currency: str = "pln"):
        self.store = store
        self.payments = payments
        self.currency = currency
        self.registry = StationRegistry(store)

    async def create_prepayment(
        self,
        station_id: str,
        amount_minor: int,
        connector_id: Optional[str] = None,
        customer_email: Optional[str] = None,
    ) -> Prepayment:
        if isinstance(amount_minor, bool) or not isinstance(amount_minor, int):
            raise InvalidRequest("amount is required and must be an integer number of minor units")
        if amount_minor <= 0:
            raise InvalidRequest("amount must be greater than 0")

        station = await self.store.get_station(station_id)
        if station is None:
            raise StationNotFound(f"station {station_id} not found")

        if connector_id is not None:
            connector = await self.store.get_connector(connector_id)
            if connector is None or connector.station_id != station_id:
                raise InvalidRequest(
                    f"connector {connector_id} not found or does not belong to station {station_id}"
                )
            if await self.registry.connector_status(connector) == ConnectorStatus.FAULTED:
                raise ConnectorUnavailable(f"connector {connector_id} is out of service")

        # check before charging the customer; the insert below re-checks atomically
        candidate = Transaction(
            station_id=station_id,
            connector_id=connector_id,
            amount=from_minor_units(amount_minor),
            payment_intent_id="",
            customer_email=customer_email,
        )
        for active in await self.store.list_transactions(station_id, TransactionStatus.ACTIVE):
            if conflicts(active, candidate):
                raise ConnectorBusy(
                    f"station {station_id} connector {connector_id or '*'} is busy (tx={active.id})"
                )

        logging.info(f"[Payment] Creating payment intent: amount={amount_minor}, station={station_id}, connector={connector_id}")
        intent = await self.payments.create_payment_intent(amount_minor, self.currency)
        candidate.payment_intent_id = intent.id
        try:
            tx = await self.store.insert_transaction_if_idle(candidate)
        except ConnectorBusy:
            logging.error(
                f"[Payment] Connector taken while paying; payment intent {intent.id} has no transaction"
            )
            raise
        logging.info(f"[Payment] Transaction {tx.id} created as PENDING for intent {intent.id}")
        return Prepayment(
            payment_intent_id=intent.id,
            client_secret=intent.client_secret,
            transaction_id=tx.id,
            amount_minor=amount_minor,
            currency=self.currency,
        )
