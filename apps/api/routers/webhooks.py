"""Stripe webhook router."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from services.checkout import on_payment_confirmed
from services.errors import InvalidTransition, NotFound, PaymentMismatch, PaymentProviderError, SessionExpired
from services.payments import StripePaymentProvider, get_payment_provider, subscription_from_stripe
from services.subscriptions import confirm_subscription, sync_provider_subscription

router = APIRouter()
logger = logging.getLogger(__name__)


async def _handle_payment_succeeded(
    intent: Dict[str, Any],
    db: AsyncSession,
    provider: StripePaymentProvider,
) -> Dict[str, Any]:
    confirmation_id = (intent.get("metadata") or {}).get("confirmation_id")
    if not confirmation_id:
        return {"handled": False, "reason": "no_confirmation_id"}
    try:
        order, duplicate = await on_payment_confirmed(confirmation_id, intent.get("id"), db, provider)
    except NotFound:
        logger.warning("Payment %s succeeded for unknown checkout %s", intent.get("id"), confirmation_id)
        return {"handled": False, "reason": "unknown_checkout"}
    except (SessionExpired, PaymentMismatch) as exc:
        # Money moved but the checkout can't take it; an operator has to refund or fulfil.
        logger.error("Payment %s for %s needs operator review: %s", intent.get("id"), confirmation_id, exc.detail)
        return {"handled": False, "reason": exc.code}
    return {"handled": True, "order_id": order.id, "duplicate": duplicate}


async def _handle_setup_succeeded(
    setup_intent: Dict[str, Any],
    db: AsyncSession,
    provider: StripePaymentProvider,
) -> Dict[str, Any]:
    if not (setup_intent.get("metadata") or {}).get("email"):
        return {"handled": False, "reason": "not_a_subscription_setup"}
    try:
        subscription = await confirm_subscription(setup_intent["id"], db, provider)
    except (InvalidTransition, PaymentMismatch) as exc:
        logger.warning("Setup intent %s not confirmed from webhook: %s", setup_intent.get("id"), exc.detail)
        return {"handled": False, "reason": exc.code}
    return {"handled": True, "subscription_id": subscription.id}


@router.post("/stripe/webhook")
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(default=None, alias="Stripe-Signature"),
    db: AsyncSession = Depends(get_db),
    provider: StripePaymentProvider = Depends(get_payment_provider),
):
    payload = await request.body()
    try:
        event = provider.construct_event(payload, stripe_signature)
    except PaymentProviderError as exc:
        raise HTTPException(status_code=400, detail=exc.detail) from exc

    event_type = str(event.get("type") or "")
    data_object = (event.get("data") or {}).get("object") or {}
    logger.info("Stripe webhook %s (%s)", event_type, event.get("id"))

    result: Dict[str, Any] = {"handled": False}
    if event_type == "payment_intent.succeeded":
        result = await _handle_payment_succeeded(data_object, db, provider)
    elif event_type == "setup_intent.succeeded":
        result = await _handle_setup_succeeded(data_object, db, provider)
    elif event_type in ("customer.subscription.updated", "customer.subscription.created"):
        subscription = await sync_provider_subscription(subscription_from_stripe(data_object), db)
        result = {"handled": subscription is not None}
    elif event_type == "customer.subscription.deleted":
        subscription = await sync_provider_subscription(subscription_from_stripe(data_object), db, deleted=True)
        result = {"handled": subscription is not None}

    return {"received": True, "type": event_type, **result}
