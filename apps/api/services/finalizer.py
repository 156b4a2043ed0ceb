"""Order finalizer: the exactly-once step from confirmed payment to durable order.

The order row is written first; its unique ``confirmation_id`` makes re-entry
safe. Edition commits and the session's move to ``confirmed`` follow. A crash
or error after the order exists leaves the order flagged for reconciliation
instead of failing a buyer who has already paid.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.checkout_session import CheckoutSession
from models.edition_ticket import EditionTicket
from models.order import Order, OrderItem
from services.inventory import RESERVED, commit_edition
from services.jobs import enqueue_order_reconciliation

logger = logging.getLogger(__name__)

SESSION_RESERVED = "reserved"
SESSION_PAYMENT_PENDING = "payment_pending"
SESSION_CONFIRMED = "confirmed"
SESSION_ABANDONED = "abandoned"
OPEN_SESSION_STATUSES = (SESSION_RESERVED, SESSION_PAYMENT_PENDING)


async def get_order(confirmation_id: str, db: AsyncSession) -> Optional[Order]:
    result = await db.execute(
        select(Order)
        .where(Order.confirmation_id == confirmation_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


def serialize_order(order: Order, *, duplicate: bool = False) -> Dict[str, Any]:
    return {
        "id": order.id,
        "confirmation_id": order.confirmation_id,
        "order_type": order.order_type,
        "status": order.status,
        "amount": str(order.amount),
        "currency": order.currency,
        "email": order.email,
        "shipping": {
            "first_name": order.first_name,
            "last_name": order.last_name,
            "address": order.address,
            "city": order.city,
            "state": order.state,
            "zip_code": order.zip_code,
            "country": order.country,
        },
        "poster_image_url": order.poster_image_url,
        "original_image_url": order.original_image_url,
        "style": order.style,
        "quantity": order.quantity,
        "payment_intent_id": order.payment_intent_id,
        "needs_reconciliation": bool(order.needs_reconciliation),
        "created_at": order.created_at.isoformat() if order.created_at else None,
        "items": [
            {
                "id": item.id,
                "image_id": item.image_id,
                "poster_image_url": item.poster_image_url,
                "style": item.style,
                "quantity": item.quantity,
                "unit_price": str(item.unit_price),
                "edition_numbers": [int(value) for value in item.edition_numbers.split(",")]
                if item.edition_numbers
                else [],
            }
            for item in (order.items or [])
        ],
        "duplicate": duplicate,
    }


def _build_order(session: CheckoutSession, payment_intent_id: Optional[str]) -> Order:
    shipping = session.shipping_json or {}
    lines = session.cart_json or []
    first_line = lines[0] if lines else {}
    order = Order(
        confirmation_id=session.confirmation_id,
        order_type=session.order_type,
        first_name=shipping.get("first_name", ""),
        last_name=shipping.get("last_name", ""),
        email=session.email,
        address=shipping.get("address", ""),
        city=shipping.get("city", ""),
        state=shipping.get("state", ""),
        zip_code=shipping.get("zip_code", ""),
        country=shipping.get("country", ""),
        amount=session.amount,
        currency=session.currency,
        payment_intent_id=payment_intent_id or session.payment_intent_id,
        status="pending",
    )
    if session.order_type == "direct":
        order.poster_image_url = first_line.get("poster_image_url")
        order.original_image_url = first_line.get("original_image_url")
        order.style = first_line.get("style")
        order.quantity = int(first_line.get("quantity") or 1)
    else:
        order.quantity = sum(int(line.get("quantity") or 0) for line in lines)

    order.items = [
        OrderItem(
            image_id=line.get("image_id"),
            poster_image_url=line.get("poster_image_url") or "",
            style=line.get("style"),
            quantity=int(line.get("quantity") or 1),
            unit_price=Decimal(str(line.get("unit_price"))),
        )
        for line in lines
    ]
    return order


async def commit_order_editions(order: Order, session: CheckoutSession, db: AsyncSession) -> int:
    """Commit every ticket still reserved for the order. Returns how many were committed."""
    unit_prices = {
        line.get("image_id"): Decimal(str(line.get("unit_price")))
        for line in (session.cart_json or [])
        if line.get("image_id")
    }
    result = await db.execute(
        select(EditionTicket)
        .where(
            EditionTicket.confirmation_id == order.confirmation_id,
            EditionTicket.status == RESERVED,
        )
        .order_by(EditionTicket.reserved_at.asc(), EditionTicket.edition_number.asc())
    )
    # Plain values only: a failed commit rolls back and expires loaded objects.
    pending = [(ticket.id, ticket.image_id) for ticket in result.scalars().all()]
    confirmation_id = order.confirmation_id
    buyer_email = order.email
    for ticket_id, image_id in pending:
        await commit_edition(
            ticket_id,
            db,
            buyer_email=buyer_email,
            amount_paid=unit_prices.get(image_id, Decimal("0.00")),
            confirmation_id=confirmation_id,
        )

    await _record_edition_numbers(order, db)
    return len(pending)


async def _record_edition_numbers(order: Order, db: AsyncSession) -> None:
    result = await db.execute(
        select(EditionTicket.image_id, EditionTicket.committed_edition_number)
        .where(
            EditionTicket.confirmation_id == order.confirmation_id,
            EditionTicket.committed_edition_number.isnot(None),
        )
        .order_by(EditionTicket.committed_edition_number.asc())
    )
    numbers: Dict[str, List[str]] = {}
    for image_id, number in result.all():
        numbers.setdefault(image_id, []).append(str(int(number) + 1))
    if not numbers:
        return
    for item in order.items or []:
        if item.image_id in numbers:
            item.edition_numbers = ",".join(numbers[item.image_id])
    await db.commit()


async def mark_session_confirmed(confirmation_id: str, db: AsyncSession) -> bool:
    row = (
        await db.execute(
            update(CheckoutSession)
            .where(
                CheckoutSession.confirmation_id == confirmation_id,
                CheckoutSession.status.in_(OPEN_SESSION_STATUSES),
            )
            .values(status=SESSION_CONFIRMED, confirmed_at=datetime.now(timezone.utc))
            .returning(CheckoutSession.confirmation_id)
            .execution_options(synchronize_session=False)
        )
    ).first()
    await db.commit()
    return row is not None


async def _flag_for_reconciliation(confirmation_id: str, db: AsyncSession) -> None:
    try:
        await db.rollback()
        await db.execute(
            update(Order)
            .where(Order.confirmation_id == confirmation_id)
            .values(needs_reconciliation=True)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
    except Exception:
        logger.exception("Could not flag order %s for reconciliation", confirmation_id)
    enqueue_order_reconciliation(confirmation_id)


async def finalize(
    session: CheckoutSession,
    db: AsyncSession,
    *,
    payment_intent_id: Optional[str] = None,
) -> Tuple[Order, bool]:
    """Persist the order for a paid session and commit its editions.

    Returns ``(order, duplicate)``; ``duplicate`` is True when the order
    already existed, in which case nothing is written twice.
    """
    confirmation_id = session.confirmation_id
    order = await get_order(confirmation_id, db)
    if order is not None:
        return order, True

    order = _build_order(session, payment_intent_id)
    db.add(order)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        order = await get_order(confirmation_id, db)
        if order is None:
            raise
        logger.info("Order %s already finalized by a concurrent confirmation", confirmation_id)
        return order, True

    logger.info("Order %s persisted amount=%s %s", confirmation_id, order.amount, order.currency)

    try:
        await commit_order_editions(order, session, db)
        await mark_session_confirmed(confirmation_id, db)
    except Exception:
        # Payment already succeeded; the buyer still gets a confirmed order.
        logger.exception("Post-payment finalize failed for order %s; queued for reconciliation", confirmation_id)
        await _flag_for_reconciliation(confirmation_id, db)

    order = await get_order(confirmation_id, db)
    return order, False
