"""Operator views over orders: listing, status changes and CSV export."""

from __future__ import annotations

import csv
import io
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.order import Order
from services.errors import InvalidTransition, NotFound
from services.finalizer import get_order, serialize_order

logger = logging.getLogger(__name__)

ORDER_STATUSES = ("pending", "processing", "shipped", "delivered", "cancelled")
TERMINAL_ORDER_STATUSES = ("delivered", "cancelled")

CSV_FIELDS = [
    "confirmation_id",
    "order_type",
    "status",
    "created_at",
    "first_name",
    "last_name",
    "email",
    "address",
    "city",
    "state",
    "zip_code",
    "country",
    "quantity",
    "amount",
    "currency",
    "payment_intent_id",
    "needs_reconciliation",
    "items",
]


async def list_orders(
    db: AsyncSession,
    *,
    status: Optional[str] = None,
    needs_reconciliation: Optional[bool] = None,
    limit: int = 50,
    offset: int = 0,
) -> Dict[str, Any]:
    query = select(Order)
    count_query = select(func.count(Order.id))
    if status:
        query = query.where(Order.status == status)
        count_query = count_query.where(Order.status == status)
    if needs_reconciliation is not None:
        query = query.where(Order.needs_reconciliation.is_(needs_reconciliation))
        count_query = count_query.where(Order.needs_reconciliation.is_(needs_reconciliation))

    total = int((await db.execute(count_query)).scalar() or 0)
    result = await db.execute(query.order_by(Order.created_at.desc()).limit(limit).offset(offset))
    return {
        "items": [serialize_order(order) for order in result.scalars().all()],
        "total": total,
        "limit": limit,
        "offset": offset,
    }


async def get_order_detail(order_id: str, db: AsyncSession) -> Dict[str, Any]:
    result = await db.execute(select(Order).where(Order.id == order_id))
    order = result.scalar_one_or_none()
    if order is None:
        # Operators also paste confirmation ids.
        order = await get_order(order_id, db)
    if order is None:
        raise NotFound("Order not found.")
    return serialize_order(order)


async def set_order_status(order_id: str, status: str, db: AsyncSession) -> Dict[str, Any]:
    if status not in ORDER_STATUSES:
        raise InvalidTransition(f"Unknown order status '{status}'.", extra={"allowed": list(ORDER_STATUSES)})

    result = await db.execute(select(Order).where(Order.id == order_id))
    order = result.scalar_one_or_none()
    if order is None:
        raise NotFound("Order not found.")
    if order.status == status:
        return serialize_order(order)
    if order.status in TERMINAL_ORDER_STATUSES:
        raise InvalidTransition(f"Order is already {order.status}.")

    previous = order.status
    order.status = status
    await db.commit()
    await db.refresh(order)
    logger.info("Order %s status %s -> %s", order.confirmation_id, previous, status)
    return serialize_order(order)


def _csv_row(order: Order) -> Dict[str, Any]:
    items = "; ".join(
        f"{item.quantity}x {item.image_id or item.poster_image_url} @ {item.unit_price}"
        + (f" #{item.edition_numbers}" if item.edition_numbers else "")
        for item in (order.items or [])
    )
    return {
        "confirmation_id": order.confirmation_id,
        "order_type": order.order_type,
        "status": order.status,
        "created_at": order.created_at.isoformat() if order.created_at else "",
        "first_name": order.first_name,
        "last_name": order.last_name,
        "email": order.email,
        "address": order.address,
        "city": order.city,
        "state": order.state,
        "zip_code": order.zip_code,
        "country": order.country,
        "quantity": order.quantity,
        "amount": str(order.amount),
        "currency": order.currency,
        "payment_intent_id": order.payment_intent_id or "",
        "needs_reconciliation": "yes" if order.needs_reconciliation else "no",
        "items": items,
    }


async def export_orders_csv(db: AsyncSession, *, status: Optional[str] = None) -> str:
    query = select(Order).order_by(Order.created_at.asc())
    if status:
        query = query.where(Order.status == status)
    result = await db.execute(query)
    rows: List[Dict[str, Any]] = [_csv_row(order) for order in result.scalars().all()]

    buffer = io.StringIO()
    writer = csv.DictWriter(buffer, fieldnames=CSV_FIELDS)
    writer.writeheader()
    for row in rows:
        writer.writerow(row)
    return buffer.getvalue()
