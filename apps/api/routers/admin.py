"""Operator router: orders, edition overrides, review queue, credits, reconciliation."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, require_admin
from services.accounts import ensure_account
from services.checkout import expire_stale_checkouts
from services.credits import grant_paid_credits
from services.inventory import (
    approve_image,
    list_pending_review,
    reject_image,
    serialize_image,
    set_sold_count,
)
from services.orders_admin import export_orders_csv, get_order_detail, list_orders, set_order_status
from services.payments import StripePaymentProvider, get_payment_provider
from services.reconciliation import reconcile_order, reconcile_orders
from services.subscriptions import cancel_subscription, serialize_subscription

router = APIRouter()
logger = logging.getLogger(__name__)


class OrderStatusRequest(BaseModel):
    status: str


class EditionOverrideRequest(BaseModel):
    sold_count: int = Field(ge=0)


class CreditGrantRequest(BaseModel):
    email: str = Field(min_length=3, max_length=254)
    credits: int = Field(ge=1, le=10000)
    reference: str = Field(min_length=1, max_length=120)
    reason: Optional[str] = Field(default=None, max_length=200)


class ReconcileRequest(BaseModel):
    confirmation_id: Optional[str] = None


@router.get("/orders")
async def admin_orders(
    status: Optional[str] = Query(default=None),
    needs_reconciliation: Optional[bool] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    _admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await list_orders(
        db,
        status=status,
        needs_reconciliation=needs_reconciliation,
        limit=limit,
        offset=offset,
    )


@router.get("/orders/export/csv")
async def admin_orders_csv(
    status: Optional[str] = Query(default=None),
    _admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> StreamingResponse:
    content = await export_orders_csv(db, status=status)
    filename = f"orders-{datetime.now(timezone.utc).strftime('%Y%m%d')}.csv"
    return StreamingResponse(
        iter([content.encode("utf-8")]),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.get("/orders/{order_id}")
async def admin_order_detail(
    order_id: str,
    _admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await get_order_detail(order_id, db)


@router.patch("/orders/{order_id}/status")
async def admin_order_status(
    order_id: str,
    request: OrderStatusRequest,
    admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    logger.info("Admin %s setting order %s to %s", admin.email, order_id, request.status)
    return await set_order_status(order_id, request.status, db)


@router.patch("/images/{image_id}/edition")
async def admin_edition_override(
    image_id: str,
    request: EditionOverrideRequest,
    admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    logger.info("Admin %s overriding sold_count of %s to %s", admin.email, image_id, request.sold_count)
    return serialize_image(await set_sold_count(image_id, request.sold_count, db))


@router.get("/pending-review")
async def admin_pending_review(
    _admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    items = await list_pending_review(db)
    return {"items": items, "count": len(items)}


@router.post("/images/{image_id}/approve")
async def admin_approve(
    image_id: str,
    _admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return serialize_image(await approve_image(image_id, db))


@router.post("/images/{image_id}/reject")
async def admin_reject(
    image_id: str,
    _admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return serialize_image(await reject_image(image_id, db))


@router.post("/credits/grant")
async def admin_grant_credits(
    request: CreditGrantRequest,
    admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    await ensure_account(request.email, db)
    return await grant_paid_credits(
        request.email,
        db,
        credits=request.credits,
        provider="admin",
        billing_reference=request.reference,
        reason=request.reason or f"Granted by {admin.email}",
    )


@router.post("/subscriptions/{email}/cancel")
async def admin_cancel_subscription(
    email: str,
    _admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    provider: StripePaymentProvider = Depends(get_payment_provider),
):
    return serialize_subscription(await cancel_subscription(email, db, provider))


@router.post("/reconcile")
async def admin_reconcile(
    request: ReconcileRequest,
    _admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    provider: StripePaymentProvider = Depends(get_payment_provider),
):
    if request.confirmation_id:
        return await reconcile_order(request.confirmation_id, db)
    expired = await expire_stale_checkouts(db, provider)
    reconciled = await reconcile_orders(db)
    return {"expired": expired, "orders": reconciled}
