"""Subscription gatekeeper: unlimited-generation membership lifecycle."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.subscription import Subscription
from models.user import User
from services.accounts import ensure_account, normalize_email
from services.errors import InvalidTransition, NotFound, PaymentMismatch
from services.payments import ProviderSubscription, StripePaymentProvider

logger = logging.getLogger(__name__)

ACTIVE = "active"
PAST_DUE = "past_due"
CANCELED = "canceled"

_PROVIDER_STATUS_MAP = {
    "active": ACTIVE,
    "trialing": ACTIVE,
    "past_due": PAST_DUE,
    "unpaid": PAST_DUE,
    "incomplete": PAST_DUE,
    "canceled": CANCELED,
    "incomplete_expired": CANCELED,
}


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def map_provider_status(status: str) -> str:
    return _PROVIDER_STATUS_MAP.get(str(status or "").lower(), PAST_DUE)


def resolve_promo_discount(promo_code: Optional[str]) -> int:
    """Percentage discount for a promo code; 0 when absent or unknown."""
    code = str(promo_code or "").strip().upper()
    if not code:
        return 0
    return int(settings.PROMO_CODES.get(code, 0))


def is_entitled(subscription: Subscription, now: Optional[datetime] = None) -> bool:
    """Active, including cancel-at-period-end, until the period ends."""
    if subscription.status != ACTIVE:
        return False
    period_end = as_utc(subscription.current_period_end)
    if period_end is None:
        return True
    return period_end > (now or datetime.now(timezone.utc))


async def get_current_subscription(email: str, db: AsyncSession) -> Optional[Subscription]:
    result = await db.execute(
        select(Subscription)
        .where(Subscription.email == normalize_email(email))
        .order_by(Subscription.created_at.desc())
    )
    subscriptions = result.scalars().all()
    for subscription in subscriptions:
        if is_entitled(subscription):
            return subscription
    return subscriptions[0] if subscriptions else None


async def is_unlimited(email: str, db: AsyncSession) -> bool:
    """Re-read on every call; entitlement is never cached."""
    subscription = await get_current_subscription(email, db)
    return bool(subscription and is_entitled(subscription))


def serialize_subscription(subscription: Optional[Subscription]) -> Dict[str, Any]:
    if subscription is None:
        return {"is_subscribed": False, "status": None}
    period_end = as_utc(subscription.current_period_end)
    return {
        "is_subscribed": is_entitled(subscription),
        "subscription_id": subscription.id,
        "status": subscription.status,
        "cancel_at_period_end": bool(subscription.cancel_at_period_end),
        "current_period_end": period_end.isoformat() if period_end else None,
        "promo_code": subscription.promo_code,
        "discount_percent": int(subscription.discount_percent or 0),
    }


async def start_subscription(
    email: str,
    db: AsyncSession,
    provider: StripePaymentProvider,
    *,
    promo_code: Optional[str] = None,
) -> Dict[str, Any]:
    """Create a setup intent for the membership's payment method."""
    normalized = normalize_email(email)
    user = await ensure_account(normalized, db)
    current = await get_current_subscription(normalized, db)
    if current and is_entitled(current) and not current.cancel_at_period_end:
        raise InvalidTransition("An active subscription already exists for this account.")

    discount_percent = resolve_promo_discount(promo_code)
    customer_id = user.stripe_customer_id or await provider.get_or_create_customer(normalized)
    if user.stripe_customer_id != customer_id:
        user.stripe_customer_id = customer_id
    await db.commit()

    metadata = {"email": normalized, "discount_percent": str(discount_percent)}
    if discount_percent:
        metadata["promo_code"] = str(promo_code).strip().upper()
    setup_intent = await provider.create_setup_intent(customer_id=customer_id, metadata=metadata)

    base_price = Decimal(settings.SUBSCRIPTION_MONTHLY_PRICE)
    first_cycle_price = (base_price * (Decimal(100) - discount_percent) / Decimal(100)).quantize(Decimal("0.01"))
    logger.info("Subscription setup started email=%s setup_intent=%s discount=%s", normalized, setup_intent.ref, discount_percent)
    return {
        "client_secret": setup_intent.client_secret,
        "setup_intent_id": setup_intent.ref,
        "discount_applied": discount_percent > 0,
        "discount_percent": discount_percent,
        "monthly_price": str(base_price),
        "first_cycle_price": str(first_cycle_price),
        "currency": settings.CURRENCY,
    }


async def _subscription_by_setup_intent(setup_intent_id: str, db: AsyncSession) -> Optional[Subscription]:
    result = await db.execute(select(Subscription).where(Subscription.setup_intent_id == setup_intent_id))
    return result.scalar_one_or_none()


async def confirm_subscription(
    setup_intent_id: str,
    db: AsyncSession,
    provider: StripePaymentProvider,
    *,
    expected_email: Optional[str] = None,
) -> Subscription:
    """Turn a succeeded setup intent into a recorded, active membership.

    Idempotent on ``setup_intent_id``. The Subscription row and the account's
    ``user_type`` change commit together.
    """
    existing = await _subscription_by_setup_intent(setup_intent_id, db)
    if existing:
        return existing

    setup_intent = await provider.retrieve_setup_intent(setup_intent_id)
    if setup_intent.status != "succeeded":
        raise InvalidTransition(f"Payment method setup is {setup_intent.status}, not succeeded.")

    email = normalize_email(setup_intent.metadata.get("email"))
    if not email:
        raise PaymentMismatch("Setup intent is not linked to an account.")
    if expected_email and normalize_email(expected_email) != email:
        raise PaymentMismatch("Setup intent belongs to a different account.")

    discount_percent = int(setup_intent.metadata.get("discount_percent") or 0)
    promo_code = setup_intent.metadata.get("promo_code")
    provider_subscription = await provider.create_subscription(
        customer_id=str(setup_intent.customer_id or ""),
        payment_method_id=setup_intent.payment_method_id,
        discount_percent=discount_percent,
        metadata={"email": email, "setup_intent_id": setup_intent_id},
        idempotency_key=f"subscription:{setup_intent_id}",
    )

    try:
        user = await ensure_account(email, db)
        subscription = Subscription(
            user_id=user.id,
            email=email,
            provider_subscription_id=provider_subscription.ref,
            provider_customer_id=provider_subscription.customer_id or setup_intent.customer_id,
            setup_intent_id=setup_intent_id,
            status=map_provider_status(provider_subscription.status),
            current_period_end=provider_subscription.current_period_end,
            cancel_at_period_end=provider_subscription.cancel_at_period_end,
            promo_code=promo_code,
            discount_percent=discount_percent,
        )
        db.add(subscription)
        user.user_type = "artistic_collective"
        if setup_intent.customer_id and not user.stripe_customer_id:
            user.stripe_customer_id = setup_intent.customer_id
        await db.commit()
    except IntegrityError:
        await db.rollback()
        existing = await _subscription_by_setup_intent(setup_intent_id, db)
        if existing:
            return existing
        logger.exception(
            "Provider subscription %s created but not recorded for %s; needs operator reconciliation",
            provider_subscription.ref,
            email,
        )
        raise

    await db.refresh(subscription)
    logger.info("Subscription confirmed email=%s subscription=%s status=%s", email, subscription.provider_subscription_id, subscription.status)
    return subscription


async def cancel_subscription(email: str, db: AsyncSession, provider: StripePaymentProvider) -> Subscription:
    """Schedule cancellation at period end; the membership stays active until then."""
    subscription = await get_current_subscription(email, db)
    if subscription is None or subscription.status == CANCELED:
        raise NotFound("No active subscription for this account.")
    if subscription.cancel_at_period_end:
        return subscription

    provider_subscription = await provider.cancel_subscription_at_period_end(subscription.provider_subscription_id)
    subscription.cancel_at_period_end = True
    if provider_subscription.current_period_end:
        subscription.current_period_end = provider_subscription.current_period_end
    await db.commit()
    await db.refresh(subscription)
    logger.info("Subscription %s set to cancel at period end", subscription.provider_subscription_id)
    return subscription


async def sync_provider_subscription(
    provider_subscription: ProviderSubscription,
    db: AsyncSession,
    *,
    deleted: bool = False,
) -> Optional[Subscription]:
    """Apply a provider webhook update to the local record."""
    result = await db.execute(
        select(Subscription).where(Subscription.provider_subscription_id == provider_subscription.ref)
    )
    subscription = result.scalar_one_or_none()
    if subscription is None:
        logger.warning("Received subscription event for unknown subscription: %s", provider_subscription.ref)
        return None

    subscription.status = CANCELED if deleted else map_provider_status(provider_subscription.status)
    subscription.cancel_at_period_end = provider_subscription.cancel_at_period_end
    if provider_subscription.current_period_end:
        subscription.current_period_end = provider_subscription.current_period_end

    if subscription.status == CANCELED:
        user_result = await db.execute(select(User).where(User.id == subscription.user_id))
        user = user_result.scalar_one_or_none()
        if user is not None:
            user.user_type = "normal"

    await db.commit()
    return subscription
