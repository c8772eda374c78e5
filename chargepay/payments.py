"""Payment gateway adapters.

The ledger keeps major currency units (e.g. 12.34 PLN); gateways only ever
see integral minor units (1234 grosze). Conversion happens here and nowhere
else.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from decimal import ROUND_FLOOR, Decimal
from typing import Any, Dict, List, Optional

import httpx

from .errors import PaymentError, RefundFailed


def to_minor_units(amount: Decimal) -> int:
    """Major -> minor units, rounding down so a refund never exceeds the balance."""
    return int((Decimal(amount) * 100).to_integral_value(rounding=ROUND_FLOOR))


def from_minor_units(amount_minor: int) -> Decimal:
    return (Decimal(int(amount_minor)) / 100).quantize(Decimal("0.01"))


@dataclass
class PaymentIntent:
    id: str
    client_secret: str
    amount: int
    currency: str


@dataclass
class Refund:
    id: str
    amount: int
    status: str


class StripeGateway:
    """Stripe REST API over httpx.

    Stripe takes application/x-www-form-urlencoded bodies and HTTP basic auth
    with the secret key as user name.
    """

    def __init__(
        self,
        secret_key: str,
        api_url: str = "https://api.stripe.com/v1",
        timeout: float = 15.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        if not secret_key:
            raise PaymentError("STRIPE_SECRET_KEY is not set")
        self.api_url = api_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._auth = httpx.BasicAuth(secret_key, "")

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _post(
        self,
        endpoint: str,
        params: Dict[str, Any],
        idempotency_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        url = f"{self.api_url}/{endpoint.lstrip('/')}"
        headers = {}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        logging.info(f"[STRIPE] POST {url}")
        try:
            resp = await self._client.post(url, data=params, headers=headers, auth=self._auth)
        except httpx.RequestError as e:
            logging.error(f"[STRIPE] Network error: {e}")
            raise PaymentError(f"Stripe network error: {e}") from e
        if resp.status_code >= 400:
            try:
                message = resp.json().get("error", {}).get("message", resp.text[:200])
            except ValueError:
                message = resp.text[:200]
            logging.error(f"[STRIPE] HTTP {resp.status_code}: {message}")
            raise PaymentError(f"Stripe API error {resp.status_code}: {message}")
        return resp.json()

    async def create_payment_intent(self, amount_minor: int, currency: str) -> PaymentIntent:
        if amount_minor <= 0:
            raise PaymentError("Amount must be greater than 0")
        data = await self._post(
            "payment_intents",
            {
                "amount": str(amount_minor),
                "currency": currency,
                "automatic_payment_methods[enabled]": "true",
            },
        )
        if not data.get("client_secret"):
            raise PaymentError("Failed to create payment intent: missing client_secret")
        return PaymentIntent(
            id=data["id"],
            client_secret=data["client_secret"],
            amount=int(data.get("amount", amount_minor)),
            currency=data.get("currency", currency),
        )

    async def create_refund(
        self,
        payment_intent_id: str,
        amount_minor: int,
        idempotency_key: Optional[str] = None,
    ) -> Refund:
        if not payment_intent_id:
            raise RefundFailed("payment_intent_id is required")
        if amount_minor <= 0:
            raise RefundFailed("Amount must be greater than 0")
        try:
            data = await self._post(
                "refunds",
                {"payment_intent": payment_intent_id, "amount": str(amount_minor)},
                idempotency_key=idempotency_key,
            )
        except PaymentError as e:
            raise RefundFailed(str(e)) from e
        return Refund(
            id=data["id"],
            amount=int(data.get("amount", amount_minor)),
            status=data.get("status") or "pending",
        )


@dataclass
class SimulatedGateway:
    """Approves every payment locally, for demos without Stripe keys."""

    intents: Dict[str, PaymentIntent] = field(default_factory=dict)
    refunds: Dict[str, List[Refund]] = field(default_factory=dict)
    _refund_keys: Dict[str, Refund] = field(default_factory=dict)

    async def create_payment_intent(self, amount_minor: int, currency: str) -> PaymentIntent:
        if amount_minor <= 0:
            raise PaymentError("Amount must be greater than 0")
        intent_id = f"pi_sim_{uuid.uuid4().hex[:24]}"
        intent = PaymentIntent(
            id=intent_id,
            client_secret=f"{intent_id}_secret_{uuid.uuid4().hex[:16]}",
            amount=amount_minor,
            currency=currency,
        )
        self.intents[intent.id] = intent
        logging.info(f"[SIM-PAY] PaymentIntent {intent.id} for {amount_minor} {currency}")
        return intent

    async def create_refund(
        self,
        payment_intent_id: str,
        amount_minor: int,
        idempotency_key: Optional[str] = None,
    ) -> Refund:
        if idempotency_key and idempotency_key in self._refund_keys:
            return self._refund_keys[idempotency_key]
        intent = self.intents.get(payment_intent_id)
        if intent is None:
            raise RefundFailed(f"No such payment_intent: {payment_intent_id}")
        refunded = sum(r.amount for r in self.refunds.get(payment_intent_id, []))
        if amount_minor <= 0 or refunded + amount_minor > intent.amount:
            raise RefundFailed(f"Refund of {amount_minor} exceeds charge {intent.amount}")
        refund = Refund(
            id=f"re_sim_{uuid.uuid4().hex[:24]}",
            amount=amount_minor,
            status="succeeded",
        )
        self.refunds.setdefault(payment_intent_id, []).append(refund)
        if idempotency_key:
            self._refund_keys[idempotency_key] = refund
        logging.info(f"[SIM-PAY] Refund {refund.id}: {amount_minor} against {payment_intent_id}")
        return refund
