"""Guest checkout router: reserve, pay, confirm."""

from __future__ import annotations

import logging
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.rate_limit import rate_limit
from services.checkout import cancel_checkout, get_checkout, on_payment_confirmed, start_checkout
from services.finalizer import serialize_order
from services.payments import StripePaymentProvider, get_payment_provider

router = APIRouter()
logger = logging.getLogger(__name__)


class ShippingInfo(BaseModel):
    first_name: str = Field(default="", max_length=100)
    last_name: str = Field(default="", max_length=100)
    email: str = Field(default="", max_length=254)
    address: str = Field(default="", max_length=300)
    city: str = Field(default="", max_length=120)
    state: str = Field(default="", max_length=120)
    zip_code: str = Field(default="", max_length=20)
    country: str = Field(default="", max_length=120)


class CartItem(BaseModel):
    image_id: Optional[str] = None
    poster_image_url: Optional[str] = Field(default=None, max_length=2048)
    original_image_url: Optional[str] = Field(default=None, max_length=2048)
    style: Optional[str] = Field(default=None, max_length=64)
    name: Optional[str] = Field(default=None, max_length=120)
    quantity: int = 1


class PrepareCheckoutRequest(BaseModel):
    order_type: Literal["direct", "catalogue"] = "catalogue"
    shipping: ShippingInfo
    items: List[CartItem] = Field(default_factory=list)


class CancelCheckoutRequest(BaseModel):
    confirmation_id: str


class CompleteOrderRequest(BaseModel):
    confirmation_id: str
    payment_intent_id: Optional[str] = None


@router.post("/prepare-checkout")
async def prepare_checkout(
    request: PrepareCheckoutRequest,
    _rate_limit: None = Depends(rate_limit("checkout", limit=30, window_seconds=3600)),
    db: AsyncSession = Depends(get_db),
    provider: StripePaymentProvider = Depends(get_payment_provider),
):
    return await start_checkout(
        db,
        provider,
        shipping=request.shipping.model_dump(),
        items=[item.model_dump() for item in request.items],
        order_type=request.order_type,
    )


@router.get("/checkout/{confirmation_id}")
async def checkout_status(confirmation_id: str, db: AsyncSession = Depends(get_db)):
    return await get_checkout(confirmation_id, db)


@router.post("/cancel-checkout")
async def cancel(
    request: CancelCheckoutRequest,
    db: AsyncSession = Depends(get_db),
    provider: StripePaymentProvider = Depends(get_payment_provider),
):
    return await cancel_checkout(request.confirmation_id, db, provider)


async def _complete(
    request: CompleteOrderRequest,
    order_type: str,
    db: AsyncSession,
    provider: StripePaymentProvider,
):
    order, duplicate = await on_payment_confirmed(
        request.confirmation_id,
        request.payment_intent_id,
        db,
        provider,
        order_type=order_type,
    )
    if duplicate:
        logger.info("Duplicate confirmation for %s returned existing order", request.confirmation_id)
    return {"success": True, "order": serialize_order(order, duplicate=duplicate)}


@router.post("/complete-order")
async def complete_order(
    request: CompleteOrderRequest,
    _rate_limit: None = Depends(rate_limit("complete_order", limit=60, window_seconds=3600)),
    db: AsyncSession = Depends(get_db),
    provider: StripePaymentProvider = Depends(get_payment_provider),
):
    return await _complete(request, "direct", db, provider)


@router.post("/complete-catalogue-order")
async def complete_catalogue_order(
    request: CompleteOrderRequest,
    _rate_limit: None = Depends(rate_limit("complete_order", limit=60, window_seconds=3600)),
    db: AsyncSession = Depends(get_db),
    provider: StripePaymentProvider = Depends(get_payment_provider),
):
    return await _complete(request, "catalogue", db, provider)
