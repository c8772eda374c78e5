from decimal import Decimal
from urllib.parse import parse_qs

import httpx
import pytest

from chargepay.errors import PaymentError, RefundFailed
from chargepay.payments import SimulatedGateway, StripeGateway, from_minor_units, to_minor_units


def test_minor_units_round_down():
    assert to_minor_units(Decimal("25.00")) == 2500
    assert to_minor_units(Decimal("25.009")) == 2500
    assert to_minor_units(Decimal("0.01")) == 1
    assert from_minor_units(5000) == Decimal("50.00")


def _stripe(handler):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return StripeGateway("sk_test_123", api_url="https://stripe.test/v1", client=client)


@pytest.mark.asyncio
async def test_stripe_payment_intent_form_request():
    seen = {}

    def handler(request: httpx.Request):
        seen["url"] = str(request.url)
        seen["auth"] = request.headers.get("authorization")
        seen["form"] = parse_qs(request.content.decode())
        return httpx.Response(
            200, json={"id": "pi_1", "client_secret": "pi_1_secret", "amount": 5000, "currency": "pln"}
        )

    gateway = _stripe(handler)
    intent = await gateway.create_payment_intent(5000, "pln")
    await gateway.aclose()

    assert intent.id == "pi_1"
    assert intent.client_secret == "pi_1_secret"
    assert seen["url"] == "https://stripe.test/v1/payment_intents"
    assert seen["auth"].startswith("Basic ")
    assert seen["form"]["amount"] == ["5000"]
    assert seen["form"]["automatic_payment_methods[enabled]"] == ["true"]


@pytest.mark.asyncio
async def test_stripe_refund_sends_idempotency_key():
    seen = {}

    def handler(request: httpx.Request):
        seen["key"] = request.headers.get("idempotency-key")
        seen["form"] = parse_qs(request.content.decode())
        return httpx.Response(200, json={"id": "re_1", "amount": 2500, "status": "succeeded"})

    gateway = _stripe(handler)
    refund = await gateway.create_refund("pi_1", 2500, idempotency_key="refund-tx1")

    assert refund.id == "re_1"
    assert refund.status == "succeeded"
    assert seen["key"] == "refund-tx1"
    assert seen["form"] == {"payment_intent": ["pi_1"], "amount": ["2500"]}


@pytest.mark.asyncio
async def test_stripe_error_becomes_refund_failed():
    def handler(request):
        return httpx.Response(400, json={"error": {"message": "Charge already refunded"}})

    gateway = _stripe(handler)
    with pytest.raises(RefundFailed, match="already refunded"):
        await gateway.create_refund("pi_1", 100)


@pytest.mark.asyncio
async def test_stripe_network_error():
    def handler(request):
        raise httpx.ConnectError("boom", request=request)

    gateway = _stripe(handler)
    with pytest.raises(PaymentError):
        await gateway.create_payment_intent(100, "pln")


def test_stripe_requires_secret_key():
    with pytest.raises(PaymentError):
        StripeGateway("")


@pytest.mark.asyncio
async def test_simulated_refund_bounded_and_idempotent():
    gateway = SimulatedGateway()
    intent = await gateway.create_payment_intent(5000, "pln")

    first = await gateway.create_refund(intent.id, 3000, idempotency_key="refund-a")
    again = await gateway.create_refund(intent.id, 3000, idempotency_key="refund-a")
    assert again is first
    assert len(gateway.refunds[intent.id]) == 1

    with pytest.raises(RefundFailed):
        await gateway.create_refund(intent.id, 2500)
    with pytest.raises(RefundFailed):
        await gateway.create_refund("pi_unknown", 100)
