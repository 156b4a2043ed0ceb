import time
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest
import stripe

from config import settings
from services.errors import PaymentProviderError
from services.payments import StripePaymentProvider, subscription_from_stripe, to_minor_units


def _provider(**overrides):
    options = {"secret_key": "sk_test_posters", "webhook_secret": "whsec_posters", "timeout_seconds": 1.0}
    options.update(overrides)
    return StripePaymentProvider(**options)


@pytest.mark.parametrize(
    "amount,expected",
    [(Decimal("29.95"), 2995), (Decimal("149.95"), 14995), (Decimal("0.005"), 1), (Decimal("100"), 10000)],
)
def test_to_minor_units(amount, expected):
    assert to_minor_units(amount) == expected


def test_subscription_from_stripe_reads_period_end_from_items():
    subscription = subscription_from_stripe(
        {
            "id": "sub_1",
            "customer": "cus_1",
            "status": "active",
            "cancel_at_period_end": True,
            "items": {"data": [{"current_period_end": 1893456000}]},
        }
    )

    assert subscription.ref == "sub_1"
    assert subscription.cancel_at_period_end is True
    assert subscription.current_period_end.year == 2030


@pytest.mark.asyncio
async def test_create_intent_forwards_idempotency_key():
    created = {
        "id": "pi_1",
        "client_secret": "pi_1_secret",
        "status": "requires_payment_method",
        "amount": 2995,
        "amount_received": 0,
        "currency": "chf",
        "metadata": {"confirmation_id": "CAT-1"},
    }

    with patch("stripe.PaymentIntent.create", return_value=created) as create:
        intent = await _provider().create_intent(
            amount_minor=2995,
            currency="chf",
            metadata={"confirmation_id": "CAT-1"},
            idempotency_key="checkout:CAT-1",
        )

    assert intent.ref == "pi_1"
    assert intent.metadata == {"confirmation_id": "CAT-1"}
    assert create.call_args.kwargs["idempotency_key"] == "checkout:CAT-1"
    assert create.call_args.kwargs["amount"] == 2995


@pytest.mark.asyncio
async def test_stripe_errors_become_provider_errors():
    with patch("stripe.PaymentIntent.retrieve", side_effect=stripe.StripeError("card network down")):
        with pytest.raises(PaymentProviderError) as exc_info:
            await _provider().retrieve_intent("pi_1")

    assert exc_info.value.status_code == 502


@pytest.mark.asyncio
async def test_slow_provider_calls_time_out():
    with patch("stripe.PaymentIntent.cancel", side_effect=lambda ref: time.sleep(0.3)):
        with pytest.raises(PaymentProviderError, match="timed out"):
            await _provider(timeout_seconds=0.05).cancel_intent("pi_1")


@pytest.mark.asyncio
async def test_unconfigured_provider_refuses_calls():
    with pytest.raises(PaymentProviderError):
        await _provider(secret_key="").retrieve_intent("pi_1")


def test_webhooks_require_a_secret():
    with pytest.raises(PaymentProviderError, match="STRIPE_WEBHOOK_SECRET"):
        _provider(webhook_secret="").construct_event(b"{}", "t=1,v1=abc")


def test_bad_webhook_signature_is_rejected():
    with patch(
        "stripe.Webhook.construct_event",
        side_effect=stripe.SignatureVerificationError("bad sig", "t=1,v1=abc"),
    ):
        with pytest.raises(PaymentProviderError, match="Invalid webhook signature"):
            _provider().construct_event(b"{}", "t=1,v1=abc")


@pytest.mark.asyncio
async def test_subscription_needs_configured_price():
    with pytest.raises(PaymentProviderError, match="price"):
        await _provider().create_subscription(
            customer_id="cus_1",
            payment_method_id="pm_1",
            discount_percent=0,
            metadata={},
            idempotency_key="subscription:seti_1",
        )


@pytest.mark.asyncio
async def test_liveness_and_readiness(client, monkeypatch):
    monkeypatch.setattr(settings, "STRIPE_SECRET_KEY", "")
    monkeypatch.setattr("routers.health._database_status", AsyncMock(return_value="up"))

    live = await client.get("/health/live")
    ready = await client.get("/health/ready")

    assert live.json() == {"alive": True}
    assert ready.status_code == 503
    assert "STRIPE_SECRET_KEY" in ready.json()["missing"]
