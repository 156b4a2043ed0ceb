"""Checkout orchestrator: server-held state machine for a purchase.

    reserved -> payment_pending -> confirmed
    reserved | payment_pending -> abandoned

Every transition is a conditional UPDATE on the current status, so a sweep
and a payment confirmation racing on the same session cannot both win.
"""

from __future__ import annotations

import logging
import re
import secrets
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import and_, delete, or_, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.checkout_session import CheckoutSession
from models.edition_ticket import EditionTicket
from models.order import Order
from services.accounts import normalize_email
from services.errors import (
    InvalidCart,
    InvalidShipping,
    InvalidTransition,
    NotFound,
    PaymentMismatch,
    PaymentProviderError,
    SessionExpired,
)
from services.finalizer import (
    OPEN_SESSION_STATUSES,
    SESSION_ABANDONED,
    SESSION_CONFIRMED,
    SESSION_PAYMENT_PENDING,
    SESSION_RESERVED,
    finalize,
    get_order,
    serialize_order,
)
from services.inventory import RESERVED, get_image, release_edition, reserve_edition
from services.payments import PaymentIntent, StripePaymentProvider, to_minor_units
from services.reconciliation import reconcile_order
from services.subscriptions import as_utc

logger = logging.getLogger(__name__)

ORDER_TYPES = ("direct", "catalogue")
SHIPPING_FIELDS = ("first_name", "last_name", "email", "address", "city", "state", "zip_code", "country")
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def new_confirmation_id(order_type: str) -> str:
    prefix = "ORD" if order_type == "direct" else "CAT"
    return f"{prefix}-{secrets.token_hex(8).upper()}"


def validate_shipping(shipping: Dict[str, Any]) -> Dict[str, str]:
    cleaned = {field: str(shipping.get(field) or "").strip() for field in SHIPPING_FIELDS}
    missing = [field for field, value in cleaned.items() if not value]
    if missing:
        raise InvalidShipping(
            f"Missing shipping fields: {', '.join(missing)}.",
            extra={"fields": missing},
        )
    cleaned["email"] = normalize_email(cleaned["email"])
    if not _EMAIL_RE.match(cleaned["email"]):
        raise InvalidShipping("Shipping email is not a valid address.", extra={"fields": ["email"]})
    return cleaned


async def _price_cart(items: Iterable[Dict[str, Any]], order_type: str, db: AsyncSession) -> List[Dict[str, Any]]:
    """Validate the cart and snapshot current unit prices into session lines."""
    raw_items = list(items or [])
    if not raw_items:
        raise InvalidCart("Cart is empty.")
    if order_type == "direct" and len(raw_items) != 1:
        raise InvalidCart("A direct order holds exactly one poster.")

    lines: List[Dict[str, Any]] = []
    by_image: Dict[str, Dict[str, Any]] = {}
    for item in raw_items:
        try:
            quantity = int(item.get("quantity") or 1)
        except (TypeError, ValueError):
            raise InvalidCart("Quantity must be a whole number.")
        if quantity < 1 or quantity > settings.MAX_CART_QUANTITY:
            raise InvalidCart(f"Quantity must be between 1 and {settings.MAX_CART_QUANTITY}.")

        image_id = item.get("image_id")
        if image_id:
            try:
                image = await get_image(str(image_id), db)
            except NotFound:
                raise InvalidCart("A poster in the cart no longer exists.", extra={"image_id": image_id})

            if image.is_limited_edition:
                if image_id in by_image:
                    merged = by_image[image_id]["quantity"] + quantity
                    if merged > settings.MAX_CART_QUANTITY:
                        raise InvalidCart(
                            f"Quantity must be between 1 and {settings.MAX_CART_QUANTITY}.",
                            extra={"image_id": image_id},
                        )
                    by_image[image_id]["quantity"] = merged
                    continue
                line = {
                    "image_id": image.id,
                    "poster_image_url": image.generated_path,
                    "original_image_url": image.original_path,
                    "style": image.style,
                    "name": image.name,
                    "quantity": quantity,
                    "unit_price": str(image.price_per_unit),
                    "limited_edition": True,
                    "ticket_ids": [],
                }
                by_image[image_id] = line
                lines.append(line)
                continue

            poster_url, original_url, style = image.generated_path, image.original_path, image.style
        else:
            poster_url = str(item.get("poster_image_url") or "").strip()
            if not poster_url:
                raise InvalidCart("Each cart item needs a poster image.")
            original_url = item.get("original_image_url")
            style = item.get("style")

        lines.append(
            {
                "image_id": image_id,
                "poster_image_url": poster_url,
                "original_image_url": original_url,
                "style": style,
                "name": item.get("name"),
                "quantity": quantity,
                "unit_price": str(settings.STANDARD_POSTER_PRICE),
                "limited_edition": False,
                "ticket_ids": [],
            }
        )
    return lines


def _cart_total(lines: List[Dict[str, Any]]) -> Decimal:
    subtotal = sum((Decimal(line["unit_price"]) * int(line["quantity"]) for line in lines), Decimal("0.00"))
    return (subtotal + Decimal(settings.SHIPPING_PRICE)).quantize(Decimal("0.01"))


async def _release_tickets(ticket_ids: Iterable[str], db: AsyncSession) -> int:
    released = 0
    for ticket_id in ticket_ids:
        if await release_edition(ticket_id, db):
            released += 1
    return released


async def get_session(confirmation_id: str, db: AsyncSession) -> CheckoutSession:
    result = await db.execute(
        select(CheckoutSession)
        .where(CheckoutSession.confirmation_id == confirmation_id)
        .execution_options(populate_existing=True)
    )
    session = result.scalar_one_or_none()
    if session is None:
        raise NotFound("Checkout not found.")
    return session


async def _transition(
    confirmation_id: str,
    db: AsyncSession,
    *,
    from_statuses: Tuple[str, ...],
    values: Dict[str, Any],
) -> bool:
    row = (
        await db.execute(
            update(CheckoutSession)
            .where(
                CheckoutSession.confirmation_id == confirmation_id,
                CheckoutSession.status.in_(from_statuses),
            )
            .values(**values)
            .returning(CheckoutSession.confirmation_id)
            .execution_options(synchronize_session=False)
        )
    ).first()
    await db.commit()
    return row is not None


def serialize_session(session: CheckoutSession) -> Dict[str, Any]:
    expires_at = as_utc(session.expires_at)
    return {
        "confirmation_id": session.confirmation_id,
        "order_type": session.order_type,
        "status": session.status,
        "amount": str(session.amount),
        "currency": session.currency,
        "expires_at": expires_at.isoformat() if expires_at else None,
        "abandon_reason": session.abandon_reason,
        "items": [
            {
                "image_id": line.get("image_id"),
                "poster_image_url": line.get("poster_image_url"),
                "style": line.get("style"),
                "quantity": line.get("quantity"),
                "unit_price": line.get("unit_price"),
                "limited_edition": bool(line.get("limited_edition")),
            }
            for line in (session.cart_json or [])
        ],
    }


async def start_checkout(
    db: AsyncSession,
    provider: StripePaymentProvider,
    *,
    shipping: Dict[str, Any],
    items: List[Dict[str, Any]],
    order_type: str = "catalogue",
) -> Dict[str, Any]:
    """Validate, reserve editions, and open a payment intent for the snapshotted total."""
    if order_type not in ORDER_TYPES:
        raise InvalidCart(f"Unknown order type '{order_type}'.")
    cleaned_shipping = validate_shipping(shipping)
    lines = await _price_cart(items, order_type, db)
    amount = _cart_total(lines)

    confirmation_id = new_confirmation_id(order_type)
    now = datetime.now(timezone.utc)
    expires_at = now + timedelta(minutes=max(int(settings.CHECKOUT_SESSION_TTL_MINUTES), 1))
    db.add(
        CheckoutSession(
            confirmation_id=confirmation_id,
            email=cleaned_shipping["email"],
            order_type=order_type,
            shipping_json=cleaned_shipping,
            cart_json=lines,
            amount=amount,
            currency=settings.CURRENCY,
            status=SESSION_RESERVED,
            expires_at=expires_at,
        )
    )
    await db.commit()

    held: List[str] = []
    try:
        for line in lines:
            if not line["limited_edition"]:
                continue
            for _ in range(int(line["quantity"])):
                ticket = await reserve_edition(line["image_id"], db, confirmation_id=confirmation_id)
                held.append(ticket.id)
                line["ticket_ids"].append(ticket.id)
    except Exception:
        # All-or-nothing: give back what was taken and leave no session behind.
        await db.rollback()
        await _release_tickets(held, db)
        await db.execute(delete(CheckoutSession).where(CheckoutSession.confirmation_id == confirmation_id))
        await db.commit()
        raise

    await db.execute(
        update(CheckoutSession)
        .where(CheckoutSession.confirmation_id == confirmation_id)
        .values(cart_json=lines)
        .execution_options(synchronize_session=False)
    )
    await db.commit()

    try:
        intent = await provider.create_intent(
            amount_minor=to_minor_units(amount),
            currency=settings.CURRENCY,
            metadata={
                "confirmation_id": confirmation_id,
                "order_type": order_type,
                "email": cleaned_shipping["email"],
            },
            idempotency_key=f"checkout:{confirmation_id}",
        )
    except PaymentProviderError:
        await _release_tickets(held, db)
        await _transition(
            confirmation_id,
            db,
            from_statuses=(SESSION_RESERVED,),
            values={"status": SESSION_ABANDONED, "abandon_reason": "payment_provider_error"},
        )
        raise

    moved = await _transition(
        confirmation_id,
        db,
        from_statuses=(SESSION_RESERVED,),
        values={"status": SESSION_PAYMENT_PENDING, "payment_intent_id": intent.ref},
    )
    if not moved:
        await _cancel_intent_quietly(intent.ref, provider)
        raise SessionExpired("Checkout expired before payment could start. Please try again.")

    logger.info(
        "Checkout %s payment_pending amount=%s %s editions=%s",
        confirmation_id,
        amount,
        settings.CURRENCY,
        len(held),
    )
    return {
        "confirmation_id": confirmation_id,
        "client_secret": intent.client_secret,
        "payment_intent_id": intent.ref,
        "amount": str(amount),
        "currency": settings.CURRENCY,
        "status": SESSION_PAYMENT_PENDING,
        "expires_at": expires_at.isoformat(),
        "items": [
            {
                "image_id": line["image_id"],
                "quantity": line["quantity"],
                "unit_price": line["unit_price"],
                "limited_edition": line["limited_edition"],
            }
            for line in lines
        ],
    }


async def get_checkout(confirmation_id: str, db: AsyncSession) -> Dict[str, Any]:
    session = await get_session(confirmation_id, db)
    payload = serialize_session(session)
    order = await get_order(confirmation_id, db)
    payload["order"] = serialize_order(order) if order else None
    return payload


def verify_intent(session: CheckoutSession, intent: PaymentIntent) -> None:
    """The provider's report must match what this session asked for."""
    if intent.ref != session.payment_intent_id:
        raise PaymentMismatch("Payment does not belong to this checkout.")
    if intent.status != "succeeded":
        raise PaymentMismatch(f"Payment is {intent.status}, not succeeded.")
    if intent.amount_received != to_minor_units(session.amount):
        raise PaymentMismatch("Payment amount does not match the checkout total.")
    if intent.currency.lower() != str(session.currency).lower():
        raise PaymentMismatch("Payment currency does not match the checkout.")
    reported = intent.metadata.get("confirmation_id")
    if reported and reported != session.confirmation_id:
        raise PaymentMismatch("Payment does not belong to this checkout.")


async def on_payment_confirmed(
    confirmation_id: str,
    payment_intent_id: Optional[str],
    db: AsyncSession,
    provider: StripePaymentProvider,
    *,
    order_type: Optional[str] = None,
) -> Tuple[Order, bool]:
    """Verify the payment with the provider and finalize once.

    Returns ``(order, duplicate)``. A repeated confirmation returns the
    existing order with ``duplicate=True``.
    """
    session = await get_session(confirmation_id, db)
    if order_type and session.order_type != order_type:
        raise InvalidCart(f"Checkout {confirmation_id} is not a {order_type} order.")

    existing = await get_order(confirmation_id, db)
    if existing is not None:
        return existing, True

    if session.status == SESSION_ABANDONED:
        raise SessionExpired("This checkout has expired. Your reserved editions were released.")
    if not session.payment_intent_id:
        raise InvalidTransition("Payment has not been started for this checkout.")
    if payment_intent_id and payment_intent_id != session.payment_intent_id:
        raise PaymentMismatch("Payment does not belong to this checkout.")

    intent = await provider.retrieve_intent(session.payment_intent_id)
    verify_intent(session, intent)
    return await finalize(session, db, payment_intent_id=intent.ref)


async def _cancel_intent_quietly(ref: str, provider: StripePaymentProvider) -> None:
    try:
        await provider.cancel_intent(ref)
    except PaymentProviderError as exc:
        logger.warning("Could not cancel payment intent %s: %s", ref, exc)


async def _settle_intent(session: CheckoutSession, provider: StripePaymentProvider) -> Optional[PaymentIntent]:
    """Cancel the session's intent. Returns the intent's final state, or None if unknown."""
    intent: Optional[PaymentIntent] = None
    try:
        intent = await provider.cancel_intent(session.payment_intent_id)
    except PaymentProviderError:
        # Cancelling a succeeded or processing intent fails; look at it instead.
        pass
    if intent is not None and intent.status == "canceled":
        return intent
    try:
        return await provider.retrieve_intent(session.payment_intent_id)
    except PaymentProviderError as exc:
        logger.warning("Could not read payment intent %s for %s: %s", session.payment_intent_id, session.confirmation_id, exc)
        return None


async def abandon_session(
    session: CheckoutSession,
    db: AsyncSession,
    provider: StripePaymentProvider,
    *,
    reason: str,
) -> str:
    """Release a session's holds, or finalize it if the buyer already paid.

    Returns one of ``abandoned``, ``finalized``, ``reconciled``, ``deferred``
    or ``skipped``.
    """
    confirmation_id = session.confirmation_id
    if await get_order(confirmation_id, db) is not None:
        await reconcile_order(confirmation_id, db)
        return "reconciled"
    if session.status not in OPEN_SESSION_STATUSES:
        return "skipped"

    if session.payment_intent_id:
        intent = await _settle_intent(session, provider)
        if intent is None:
            return "deferred"
        if intent.status == "succeeded":
            try:
                verify_intent(session, intent)
            except PaymentMismatch:
                logger.error("Checkout %s has a succeeded but mismatched payment %s; operator action required", confirmation_id, intent.ref)
                return "deferred"
            await finalize(session, db, payment_intent_id=intent.ref)
            return "finalized"
        if intent.status != "canceled":
            logger.info("Payment intent %s for %s is %s; retrying later", intent.ref, confirmation_id, intent.status)
            return "deferred"

    moved = await _transition(
        confirmation_id,
        db,
        from_statuses=OPEN_SESSION_STATUSES,
        values={"status": SESSION_ABANDONED, "abandon_reason": reason},
    )
    if not moved:
        return "skipped"

    ticket_ids = [ticket_id for line in (session.cart_json or []) for ticket_id in line.get("ticket_ids") or []]
    released = await _release_tickets(ticket_ids, db)
    logger.info("Checkout %s abandoned (%s); released %s editions", confirmation_id, reason, released)
    return "abandoned"


async def cancel_checkout(
    confirmation_id: str,
    db: AsyncSession,
    provider: StripePaymentProvider,
    *,
    reason: str = "cancelled",
) -> Dict[str, Any]:
    session = await get_session(confirmation_id, db)
    if session.status == SESSION_CONFIRMED:
        raise InvalidTransition("This checkout is already paid.")
    outcome = await abandon_session(session, db, provider, reason=reason)
    if outcome == "deferred":
        raise InvalidTransition("Payment is still being processed; the checkout cannot be cancelled yet.")
    payload = await get_checkout(confirmation_id, db)
    payload["outcome"] = outcome
    return payload


async def release_orphaned_tickets(db: AsyncSession, *, now: Optional[datetime] = None) -> int:
    """Release reserved tickets whose session was abandoned or never persisted."""
    cutoff = (now or datetime.now(timezone.utc)) - timedelta(minutes=max(int(settings.CHECKOUT_SESSION_TTL_MINUTES), 1))
    open_sessions = select(CheckoutSession.confirmation_id).where(CheckoutSession.status.in_(OPEN_SESSION_STATUSES))
    ordered = select(Order.confirmation_id)
    result = await db.execute(
        select(EditionTicket.id).where(
            EditionTicket.status == RESERVED,
            EditionTicket.reserved_at < cutoff,
            or_(
                EditionTicket.confirmation_id.is_(None),
                and_(
                    EditionTicket.confirmation_id.notin_(open_sessions),
                    EditionTicket.confirmation_id.notin_(ordered),
                ),
            ),
        )
    )
    ticket_ids = [row[0] for row in result.all()]
    await db.commit()
    return await _release_tickets(ticket_ids, db)


async def expire_stale_checkouts(
    db: AsyncSession,
    provider: StripePaymentProvider,
    *,
    now: Optional[datetime] = None,
    limit: int = 100,
) -> Dict[str, int]:
    """TTL sweep over open sessions past ``expires_at``."""
    current = now or datetime.now(timezone.utc)
    result = await db.execute(
        select(CheckoutSession.confirmation_id)
        .where(
            CheckoutSession.status.in_(OPEN_SESSION_STATUSES),
            CheckoutSession.expires_at < current,
        )
        .order_by(CheckoutSession.expires_at.asc())
        .limit(limit)
    )
    confirmation_ids = [row[0] for row in result.all()]
    await db.commit()

    counts: Dict[str, int] = {}
    for confirmation_id in confirmation_ids:
        # Reload per session; a failed one rolls back and expires whatever was loaded.
        try:
            session = await get_session(confirmation_id, db)
            outcome = await abandon_session(session, db, provider, reason="expired")
        except Exception:
            logger.exception("Expiry sweep failed for checkout %s", confirmation_id)
            await db.rollback()
            outcome = "failed"
        counts[outcome] = counts.get(outcome, 0) + 1

    counts["orphans_released"] = await release_orphaned_tickets(db, now=current)
    if confirmation_ids:
        logger.info("Checkout expiry sweep: %s", counts)
    return counts
