"""Inventory allocator for limited-edition posters.

``sold_count`` and ``committed_count`` on ``generated_images`` are only ever
changed here, and only through single conditional UPDATE statements. The
storage engine serialises those statements, so two buyers racing for the last
edition can never both win.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, func, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.edition_ticket import EditionTicket
from models.generated_image import GeneratedImage
from models.poster_purchase import PosterPurchase
from services.accounts import normalize_email
from services.errors import (
    AlreadyPublished,
    InvalidCart,
    InvalidSupply,
    InvalidTransition,
    NotFound,
    SoldOut,
    SubscriptionRequired,
)
from services.subscriptions import is_unlimited

logger = logging.getLogger(__name__)

RESERVED = "reserved"
COMMITTED = "committed"
RELEASED = "released"

REVIEW_PENDING = "pending"
REVIEW_APPROVED = "approved"
REVIEW_REJECTED = "rejected"


async def _end_unchanged(db: AsyncSession) -> None:
    """Close a transaction whose conditional UPDATE matched no row.

    Nothing was written, so commit instead of rollback: a rollback would expire
    every object the caller still holds from this session.
    """
    await db.commit()


def validate_edition_terms(total_supply: Any, price_per_unit: Any) -> Decimal:
    """Return the normalised price or raise ``InvalidSupply``."""
    try:
        supply = int(total_supply)
    except (TypeError, ValueError):
        raise InvalidSupply("Total supply must be a whole number.")
    if supply < settings.MIN_EDITION_SUPPLY or supply > settings.MAX_EDITION_SUPPLY:
        raise InvalidSupply(
            f"Total supply must be between {settings.MIN_EDITION_SUPPLY} and {settings.MAX_EDITION_SUPPLY}."
        )
    try:
        price = Decimal(str(price_per_unit)).quantize(Decimal("0.01"))
    except (InvalidOperation, TypeError, ValueError):
        raise InvalidSupply("Price per unit must be a number.")
    if price < settings.MIN_EDITION_PRICE:
        raise InvalidSupply(f"Price per unit must be at least {settings.MIN_EDITION_PRICE} {settings.CURRENCY.upper()}.")
    return price


async def get_image(image_id: str, db: AsyncSession, *, owner_email: Optional[str] = None) -> GeneratedImage:
    result = await db.execute(
        select(GeneratedImage)
        .where(GeneratedImage.id == image_id)
        .execution_options(populate_existing=True)
    )
    image = result.scalar_one_or_none()
    if image is None:
        raise NotFound("Image not found.")
    if owner_email is not None and image.owner_email != normalize_email(owner_email):
        # Same response as a missing image so ids can't be probed.
        raise NotFound("Image not found.")
    return image


async def count_public_editions(owner_email: str, db: AsyncSession) -> int:
    result = await db.execute(
        select(func.count(GeneratedImage.id)).where(
            GeneratedImage.owner_email == normalize_email(owner_email),
            GeneratedImage.is_public.is_(True),
            GeneratedImage.total_supply.isnot(None),
        )
    )
    return int(result.scalar() or 0)


async def get_poster_stats(owner_email: str, db: AsyncSession) -> Dict[str, Any]:
    """Selling allowance shown before the owner opens the publish form."""
    owner = normalize_email(owner_email)
    subscribed = await is_unlimited(owner, db)
    for_sale = await count_public_editions(owner, db)
    remaining = max(settings.FREE_PUBLIC_POSTER_LIMIT - for_sale, 0)
    return {
        "email": owner,
        "is_subscribed": subscribed,
        "posters_for_sale": for_sale,
        "free_poster_limit": settings.FREE_PUBLIC_POSTER_LIMIT,
        "remaining_free_posters": None if subscribed else remaining,
        "can_publish": subscribed or remaining > 0,
    }


async def publish(
    image_id: str,
    db: AsyncSession,
    *,
    owner_email: str,
    total_supply: Any,
    price_per_unit: Any,
    name: Optional[str] = None,
    city: Optional[str] = None,
    moment_link: Optional[str] = None,
) -> GeneratedImage:
    """Turn a private poster into a limited edition, exactly once."""
    price = validate_edition_terms(total_supply, price_per_unit)
    supply = int(total_supply)
    owner = normalize_email(owner_email)

    image = await get_image(image_id, db, owner_email=owner)
    if image.total_supply is not None:
        raise AlreadyPublished("This poster is already published as a limited edition.")

    unlimited = await is_unlimited(owner, db)
    if not unlimited and await count_public_editions(owner, db) >= settings.FREE_PUBLIC_POSTER_LIMIT:
        raise SubscriptionRequired(
            f"Without a subscription you can sell up to {settings.FREE_PUBLIC_POSTER_LIMIT} posters. "
            "Join the Artistic Collective to publish more.",
            extra={"limit": settings.FREE_PUBLIC_POSTER_LIMIT},
        )

    share_rate = settings.CREATOR_SHARE_COLLECTIVE if unlimited else settings.CREATOR_SHARE_STANDARD
    values: Dict[str, Any] = {
        "total_supply": supply,
        "price_per_unit": price,
        "creator_share_rate": share_rate,
        "is_public": True,
        "review_status": REVIEW_PENDING,
        "published_at": datetime.now(timezone.utc),
    }
    if name is not None:
        values["name"] = name.strip() or None
    if city is not None:
        values["city"] = city.strip() or None
    if moment_link is not None:
        values["moment_link"] = moment_link.strip() or None

    row = (
        await db.execute(
            update(GeneratedImage)
            .where(GeneratedImage.id == image_id, GeneratedImage.total_supply.is_(None))
            .values(**values)
            .returning(GeneratedImage.id)
            .execution_options(synchronize_session=False)
        )
    ).first()
    if row is None:
        await _end_unchanged(db)
        raise AlreadyPublished("This poster is already published as a limited edition.")
    await db.commit()

    logger.info("Published image %s supply=%s price=%s share=%s", image_id, supply, price, share_rate)
    return await get_image(image_id, db)


async def unpublish(image_id: str, db: AsyncSession, *, owner_email: str) -> GeneratedImage:
    """Withdraw an edition that has nothing sold or reserved.

    Terms are cleared so the poster can be published again with new ones.
    """
    image = await get_image(image_id, db, owner_email=owner_email)
    if image.total_supply is None and not image.is_public:
        return image

    row = (
        await db.execute(
            update(GeneratedImage)
            .where(GeneratedImage.id == image_id, GeneratedImage.sold_count == 0)
            .values(
                is_public=False,
                total_supply=None,
                price_per_unit=None,
                creator_share_rate=None,
                review_status=None,
                published_at=None,
            )
            .returning(GeneratedImage.id)
            .execution_options(synchronize_session=False)
        )
    ).first()
    if row is None:
        await _end_unchanged(db)
        raise InvalidTransition("Editions of this poster are already sold or reserved; it cannot be withdrawn.")

    await db.execute(
        delete(EditionTicket).where(EditionTicket.image_id == image_id, EditionTicket.status == RELEASED)
    )
    await db.commit()
    logger.info("Unpublished image %s", image_id)
    return await get_image(image_id, db)


async def reserve_edition(image_id: str, db: AsyncSession, *, confirmation_id: Optional[str] = None) -> EditionTicket:
    """Hold one edition. Raises ``SoldOut`` when every edition is held."""
    row = (
        await db.execute(
            update(GeneratedImage)
            .where(
                GeneratedImage.id == image_id,
                GeneratedImage.is_public.is_(True),
                GeneratedImage.total_supply.isnot(None),
                GeneratedImage.sold_count < GeneratedImage.total_supply,
            )
            .values(sold_count=GeneratedImage.sold_count + 1)
            .returning(GeneratedImage.sold_count, GeneratedImage.total_supply)
            .execution_options(synchronize_session=False)
        )
    ).first()

    if row is None:
        await _end_unchanged(db)
        image = await get_image(image_id, db)
        if not image.is_limited_edition:
            raise InvalidCart("This poster is not for sale as a limited edition.", extra={"image_id": image_id})
        raise SoldOut(
            "This edition is sold out.",
            extra={"image_id": image_id, "total_supply": image.total_supply},
        )

    sold_count, total_supply = int(row[0]), int(row[1])
    ticket = EditionTicket(
        image_id=image_id,
        edition_number=sold_count - 1,
        confirmation_id=confirmation_id,
        status=RESERVED,
    )
    db.add(ticket)
    await db.commit()
    logger.info("Reserved edition #%s/%s of image %s (%s)", sold_count, total_supply, image_id, confirmation_id)
    return ticket


async def release_edition(ticket_id: str, db: AsyncSession) -> bool:
    """Give a never-committed hold back. Returns False if it was not held."""
    row = (
        await db.execute(
            update(EditionTicket)
            .where(EditionTicket.id == ticket_id, EditionTicket.status == RESERVED)
            .values(status=RELEASED, released_at=datetime.now(timezone.utc))
            .returning(EditionTicket.image_id)
            .execution_options(synchronize_session=False)
        )
    ).first()
    if row is None:
        await _end_unchanged(db)
        return False

    await db.execute(
        update(GeneratedImage)
        .where(GeneratedImage.id == row[0], GeneratedImage.sold_count > GeneratedImage.committed_count)
        .values(sold_count=GeneratedImage.sold_count - 1)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    logger.info("Released edition ticket %s of image %s", ticket_id, row[0])
    return True


async def _purchase_for_ticket(ticket_id: str, db: AsyncSession) -> Optional[PosterPurchase]:
    result = await db.execute(select(PosterPurchase).where(PosterPurchase.ticket_id == ticket_id))
    return result.scalar_one_or_none()


async def commit_edition(
    ticket_id: str,
    db: AsyncSession,
    *,
    buyer_email: str,
    amount_paid: Decimal,
    confirmation_id: str,
) -> PosterPurchase:
    """Turn a held edition into a sale and issue its final number.

    Idempotent on ``ticket_id``: a second call returns the existing purchase.
    """
    existing = await _purchase_for_ticket(ticket_id, db)
    if existing is not None:
        return existing

    now = datetime.now(timezone.utc)
    claimed = (
        await db.execute(
            update(EditionTicket)
            .where(EditionTicket.id == ticket_id, EditionTicket.status == RESERVED)
            .values(status=COMMITTED, committed_at=now)
            .returning(EditionTicket.image_id)
            .execution_options(synchronize_session=False)
        )
    ).first()
    if claimed is None:
        await _end_unchanged(db)
        existing = await _purchase_for_ticket(ticket_id, db)
        if existing is not None:
            return existing
        raise InvalidTransition(f"Edition ticket {ticket_id} is not reserved and cannot be committed.")

    image_id = claimed[0]
    numbered = (
        await db.execute(
            update(GeneratedImage)
            .where(
                GeneratedImage.id == image_id,
                GeneratedImage.committed_count < GeneratedImage.total_supply,
            )
            .values(committed_count=GeneratedImage.committed_count + 1)
            .returning(GeneratedImage.committed_count, GeneratedImage.creator_share_rate)
            .execution_options(synchronize_session=False)
        )
    ).first()
    if numbered is None:
        await db.rollback()
        raise InvalidTransition(f"Image {image_id} has no edition numbers left to commit ticket {ticket_id}.")

    edition_number = int(numbered[0]) - 1
    share_rate = Decimal(numbered[1] if numbered[1] is not None else settings.CREATOR_SHARE_STANDARD)
    amount = Decimal(amount_paid).quantize(Decimal("0.01"))

    await db.execute(
        update(EditionTicket)
        .where(EditionTicket.id == ticket_id)
        .values(committed_edition_number=edition_number)
        .execution_options(synchronize_session=False)
    )
    purchase = PosterPurchase(
        ticket_id=ticket_id,
        image_id=image_id,
        edition_number=edition_number,
        buyer_email=normalize_email(buyer_email),
        confirmation_id=confirmation_id,
        amount_paid=amount,
        creator_earnings=(amount * share_rate).quantize(Decimal("0.01")),
    )
    db.add(purchase)
    await db.commit()
    logger.info("Committed edition #%s of image %s for %s", edition_number + 1, image_id, confirmation_id)
    return purchase


def _held_tickets(image_id: Any):
    """Tickets currently holding an edition: reserved or committed."""
    return (
        select(func.count(EditionTicket.id))
        .where(EditionTicket.image_id == image_id, EditionTicket.status.in_((RESERVED, COMMITTED)))
        .scalar_subquery()
    )


async def set_sold_count(image_id: str, value: int, db: AsyncSession) -> GeneratedImage:
    """Admin override, bounded by supply and by editions still held.

    Raising the count marks editions sold elsewhere. It can never drop below
    the reserved and committed tickets, so a live hold always keeps its slot.
    """
    if value < 0:
        raise InvalidSupply("Sold count cannot be negative.")

    row = (
        await db.execute(
            update(GeneratedImage)
            .where(
                GeneratedImage.id == image_id,
                GeneratedImage.total_supply.isnot(None),
                GeneratedImage.total_supply >= value,
                GeneratedImage.committed_count <= value,
                _held_tickets(GeneratedImage.id) <= value,
            )
            .values(sold_count=value)
            .returning(GeneratedImage.id)
            .execution_options(synchronize_session=False)
        )
    ).first()
    if row is None:
        await _end_unchanged(db)
        image = await get_image(image_id, db)
        if image.total_supply is None:
            raise InvalidTransition("Only limited editions have a sold count.")
        if value > image.total_supply:
            raise InvalidSupply(f"Sold count cannot exceed total supply ({image.total_supply}).")
        held = int((await db.execute(select(_held_tickets(image_id)))).scalar() or 0)
        raise InvalidSupply(
            f"Sold count cannot drop below editions already reserved or sold ({max(held, int(image.committed_count or 0))}).",
            extra={"held": held, "committed_count": int(image.committed_count or 0)},
        )

    await db.commit()
    logger.warning("Admin set sold_count=%s on image %s", value, image_id)
    return await get_image(image_id, db)


def serialize_image(image: GeneratedImage) -> Dict[str, Any]:
    remaining = None
    if image.total_supply is not None:
        remaining = max(int(image.total_supply) - int(image.sold_count or 0), 0)
    return {
        "id": image.id,
        "owner_email": image.owner_email,
        "name": image.name,
        "style": image.style,
        "city": image.city,
        "moment_link": image.moment_link,
        "original_path": image.original_path,
        "generated_path": image.generated_path,
        "thumbnail_path": image.thumbnail_path,
        "is_public": bool(image.is_public),
        "review_status": image.review_status,
        "total_supply": image.total_supply,
        "sold_count": int(image.sold_count or 0),
        "remaining": remaining,
        "price_per_unit": str(image.price_per_unit) if image.price_per_unit is not None else None,
        "published_at": image.published_at.isoformat() if image.published_at else None,
    }


async def get_availability(image_id: str, db: AsyncSession) -> Dict[str, Any]:
    image = await get_image(image_id, db)
    if not image.is_limited_edition:
        return {
            "image_id": image.id,
            "is_limited_edition": False,
            "available": True,
            "price_per_unit": str(settings.STANDARD_POSTER_PRICE),
        }

    sold = int(image.sold_count or 0)
    total = int(image.total_supply)
    remaining = max(total - sold, 0)
    return {
        "image_id": image.id,
        "is_limited_edition": True,
        "available": remaining > 0,
        "total_supply": total,
        "sold_count": sold,
        "remaining": remaining,
        # Display only; the final number is issued when payment commits.
        "next_edition_label": f"#{sold + 1}/{total}" if remaining else None,
        "price_per_unit": str(image.price_per_unit),
    }


async def list_public_images(db: AsyncSession, *, limit: int = 50, offset: int = 0) -> List[Dict[str, Any]]:
    result = await db.execute(
        select(GeneratedImage)
        .where(
            GeneratedImage.is_public.is_(True),
            GeneratedImage.total_supply.isnot(None),
            GeneratedImage.review_status != REVIEW_REJECTED,
        )
        .order_by(GeneratedImage.published_at.desc())
        .limit(limit)
        .offset(offset)
    )
    return [serialize_image(image) for image in result.scalars().all()]


async def list_pending_review(db: AsyncSession) -> List[Dict[str, Any]]:
    result = await db.execute(
        select(GeneratedImage)
        .where(GeneratedImage.is_public.is_(True), GeneratedImage.review_status == REVIEW_PENDING)
        .order_by(GeneratedImage.published_at.asc())
    )
    return [serialize_image(image) for image in result.scalars().all()]


async def approve_image(image_id: str, db: AsyncSession) -> GeneratedImage:
    row = (
        await db.execute(
            update(GeneratedImage)
            .where(GeneratedImage.id == image_id, GeneratedImage.is_public.is_(True))
            .values(review_status=REVIEW_APPROVED)
            .returning(GeneratedImage.id)
            .execution_options(synchronize_session=False)
        )
    ).first()
    if row is None:
        await _end_unchanged(db)
        await get_image(image_id, db)
        raise InvalidTransition("Only public posters can be approved.")
    await db.commit()
    return await get_image(image_id, db)


async def reject_image(image_id: str, db: AsyncSession) -> GeneratedImage:
    """Hide a public poster. Refused once any edition is held."""
    row = (
        await db.execute(
            update(GeneratedImage)
            .where(GeneratedImage.id == image_id, GeneratedImage.sold_count == 0)
            .values(review_status=REVIEW_REJECTED, is_public=False)
            .returning(GeneratedImage.id)
            .execution_options(synchronize_session=False)
        )
    ).first()
    if row is None:
        await _end_unchanged(db)
        await get_image(image_id, db)
        raise InvalidTransition("Editions of this poster are already sold or reserved; it cannot be rejected.")
    await db.commit()
    logger.info("Rejected image %s", image_id)
    return await get_image(image_id, db)
