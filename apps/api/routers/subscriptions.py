"""Artistic Collective subscription router."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, get_auth_context
from routers.rate_limit import rate_limit
from services.payments import StripePaymentProvider, get_payment_provider
from services.subscriptions import (
    cancel_subscription,
    confirm_subscription,
    get_current_subscription,
    serialize_subscription,
    start_subscription,
)

router = APIRouter()


class CreateSubscriptionRequest(BaseModel):
    promo_code: Optional[str] = Field(default=None, max_length=32)


class ConfirmSubscriptionRequest(BaseModel):
    setup_intent_id: str


@router.post("/create-subscription")
async def create_subscription(
    request: CreateSubscriptionRequest,
    _rate_limit: None = Depends(rate_limit("subscription", limit=20, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    provider: StripePaymentProvider = Depends(get_payment_provider),
):
    return await start_subscription(auth.email, db, provider, promo_code=request.promo_code)


@router.post("/confirm-subscription")
async def confirm(
    request: ConfirmSubscriptionRequest,
    _rate_limit: None = Depends(rate_limit("subscription", limit=20, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    provider: StripePaymentProvider = Depends(get_payment_provider),
):
    subscription = await confirm_subscription(
        request.setup_intent_id,
        db,
        provider,
        expected_email=auth.email,
    )
    return serialize_subscription(subscription)


@router.post("/cancel-subscription")
async def cancel(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    provider: StripePaymentProvider = Depends(get_payment_provider),
):
    subscription = await cancel_subscription(auth.email, db, provider)
    return serialize_subscription(subscription)


@router.get("/subscription-status")
async def subscription_status(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return serialize_subscription(await get_current_subscription(auth.email, db))
