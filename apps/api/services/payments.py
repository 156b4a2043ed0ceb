"""Stripe payment provider adapter.

The engine consumes the provider only through ``StripePaymentProvider``; the
rest of the code never imports ``stripe``. Stripe's client is synchronous, so
every call runs in a worker thread bounded by
``PAYMENT_PROVIDER_TIMEOUT_SECONDS``.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Callable, Dict, Optional

from config import settings
from services.errors import PaymentProviderError

logger = logging.getLogger(__name__)


@dataclass
class PaymentIntent:
    ref: str
    client_secret: Optional[str]
    status: str
    amount: int
    amount_received: int
    currency: str
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SetupIntent:
    ref: str
    client_secret: Optional[str]
    status: str
    customer_id: Optional[str]
    payment_method_id: Optional[str]
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ProviderSubscription:
    ref: str
    customer_id: Optional[str]
    status: str
    current_period_end: Optional[datetime]
    cancel_at_period_end: bool = False


def to_minor_units(amount: Decimal) -> int:
    """Convert a currency amount to integer minor units (cents/rappen)."""
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _timestamp(value: Any) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _metadata(obj: Any) -> Dict[str, Any]:
    raw = obj.get("metadata") or {}
    return {str(key): raw[key] for key in raw}


def _intent_from_stripe(intent: Any) -> PaymentIntent:
    return PaymentIntent(
        ref=intent["id"],
        client_secret=intent.get("client_secret"),
        status=str(intent.get("status") or "unknown"),
        amount=int(intent.get("amount") or 0),
        amount_received=int(intent.get("amount_received") or 0),
        currency=str(intent.get("currency") or settings.CURRENCY),
        metadata=_metadata(intent),
    )


def subscription_from_stripe(subscription: Any) -> ProviderSubscription:
    """Normalise a Stripe subscription object or webhook payload."""
    period_end = subscription.get("current_period_end")
    if not period_end:
        items = (subscription.get("items") or {}).get("data") or []
        if items:
            period_end = items[0].get("current_period_end")
    return ProviderSubscription(
        ref=subscription["id"],
        customer_id=subscription.get("customer"),
        status=str(subscription.get("status") or "unknown"),
        current_period_end=_timestamp(period_end),
        cancel_at_period_end=bool(subscription.get("cancel_at_period_end", False)),
    )


class StripePaymentProvider:
    """Payment intents, setup intents, subscriptions and webhook verification."""

    def __init__(
        self,
        *,
        secret_key: str,
        webhook_secret: str = "",
        subscription_price_id: str = "",
        timeout_seconds: float = 15.0,
    ) -> None:
        self._secret_key = secret_key
        self._webhook_secret = webhook_secret
        self._subscription_price_id = subscription_price_id
        self._timeout_seconds = timeout_seconds

    def _get_stripe(self) -> Any:
        """Lazily import and configure the Stripe library."""
        import stripe

        if not self._secret_key:
            raise PaymentProviderError("Stripe is not configured.")
        stripe.api_key = self._secret_key
        return stripe

    async def _call(self, operation: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        stripe = self._get_stripe()
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(fn, *args, **kwargs),
                timeout=self._timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            logger.warning("Stripe %s timed out after %ss", operation, self._timeout_seconds)
            raise PaymentProviderError(f"Payment provider timed out during {operation}.") from exc
        except stripe.StripeError as exc:
            logger.warning("Stripe %s failed: %s", operation, exc)
            raise PaymentProviderError(f"Payment provider rejected {operation}.") from exc

    async def create_intent(
        self,
        *,
        amount_minor: int,
        currency: str,
        metadata: Dict[str, str],
        idempotency_key: str,
    ) -> PaymentIntent:
        stripe = self._get_stripe()
        intent = await self._call(
            "create_intent",
            stripe.PaymentIntent.create,
            amount=amount_minor,
            currency=currency,
            metadata=metadata,
            automatic_payment_methods={"enabled": True},
            idempotency_key=idempotency_key,
        )
        return _intent_from_stripe(intent)

    async def retrieve_intent(self, ref: str) -> PaymentIntent:
        stripe = self._get_stripe()
        intent = await self._call("retrieve_intent", stripe.PaymentIntent.retrieve, ref)
        return _intent_from_stripe(intent)

    async def cancel_intent(self, ref: str) -> PaymentIntent:
        stripe = self._get_stripe()
        intent = await self._call("cancel_intent", stripe.PaymentIntent.cancel, ref)
        return _intent_from_stripe(intent)

    async def get_or_create_customer(self, email: str) -> str:
        stripe = self._get_stripe()
        existing = await self._call("list_customers", stripe.Customer.list, email=email, limit=1)
        data = existing.get("data") or []
        if data:
            return data[0]["id"]
        customer = await self._call("create_customer", stripe.Customer.create, email=email)
        return customer["id"]

    async def create_setup_intent(self, *, customer_id: str, metadata: Dict[str, str]) -> SetupIntent:
        stripe = self._get_stripe()
        intent = await self._call(
            "create_setup_intent",
            stripe.SetupIntent.create,
            customer=customer_id,
            payment_method_types=["card"],
            usage="off_session",
            metadata=metadata,
        )
        return self._setup_intent(intent)

    async def retrieve_setup_intent(self, ref: str) -> SetupIntent:
        stripe = self._get_stripe()
        intent = await self._call("retrieve_setup_intent", stripe.SetupIntent.retrieve, ref)
        return self._setup_intent(intent)

    @staticmethod
    def _setup_intent(intent: Any) -> SetupIntent:
        payment_method = intent.get("payment_method")
        if payment_method is not None and not isinstance(payment_method, str):
            payment_method = payment_method.get("id")
        return SetupIntent(
            ref=intent["id"],
            client_secret=intent.get("client_secret"),
            status=str(intent.get("status") or "unknown"),
            customer_id=intent.get("customer"),
            payment_method_id=payment_method,
            metadata=_metadata(intent),
        )

    async def create_subscription(
        self,
        *,
        customer_id: str,
        payment_method_id: Optional[str],
        discount_percent: int,
        metadata: Dict[str, str],
        idempotency_key: str,
    ) -> ProviderSubscription:
        stripe = self._get_stripe()
        if not self._subscription_price_id:
            raise PaymentProviderError("Subscription price is not configured.")

        params: Dict[str, Any] = {
            "customer": customer_id,
            "items": [{"price": self._subscription_price_id}],
            "metadata": metadata,
            "idempotency_key": idempotency_key,
        }
        if payment_method_id:
            params["default_payment_method"] = payment_method_id
        if discount_percent > 0:
            # First billing cycle only.
            coupon = await self._call(
                "create_coupon",
                stripe.Coupon.create,
                percent_off=discount_percent,
                duration="once",
                idempotency_key=f"{idempotency_key}:coupon",
            )
            params["discounts"] = [{"coupon": coupon["id"]}]

        subscription = await self._call("create_subscription", stripe.Subscription.create, **params)
        return subscription_from_stripe(subscription)

    async def cancel_subscription_at_period_end(self, ref: str) -> ProviderSubscription:
        stripe = self._get_stripe()
        subscription = await self._call(
            "cancel_subscription",
            stripe.Subscription.modify,
            ref,
            cancel_at_period_end=True,
        )
        return subscription_from_stripe(subscription)

    def construct_event(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """Verify and parse a webhook payload."""
        if not self._webhook_secret:
            raise PaymentProviderError("STRIPE_WEBHOOK_SECRET is not configured.")

        stripe = self._get_stripe()
        try:
            event = stripe.Webhook.construct_event(payload, signature or "", self._webhook_secret)
        except (ValueError, stripe.SignatureVerificationError) as exc:
            raise PaymentProviderError("Invalid webhook signature.") from exc
        return event.to_dict() if hasattr(event, "to_dict") else dict(event)


_provider: Optional[StripePaymentProvider] = None


def get_payment_provider() -> StripePaymentProvider:
    """FastAPI dependency returning the configured provider."""
    global _provider
    if _provider is None:
        _provider = StripePaymentProvider(
            secret_key=settings.STRIPE_SECRET_KEY,
            webhook_secret=settings.STRIPE_WEBHOOK_SECRET,
            subscription_price_id=settings.STRIPE_SUBSCRIPTION_PRICE_ID,
            timeout_seconds=settings.PAYMENT_PROVIDER_TIMEOUT_SECONDS,
        )
    return _provider
