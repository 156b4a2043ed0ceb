"""Credit ledger and generation usage accounting helpers."""

from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any, Dict, Optional
import uuid

from sqlalchemy import update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.credit_ledger import CreditLedger
from models.generation_credit import GenerationCredit
from services.accounts import normalize_email
from services.errors import InsufficientCredits
from services.subscriptions import is_unlimited

logger = logging.getLogger(__name__)


async def _ensure_balance_row(email: str, db: AsyncSession) -> None:
    """First-touch get-or-create, race free via INSERT ... ON CONFLICT DO NOTHING."""
    values = {
        "id": str(uuid.uuid4()),
        "email": email,
        "free_credits_total": max(int(settings.FREE_GENERATION_CREDITS), 0),
        "free_credits_used": 0,
        "paid_credits": 0,
    }
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        stmt = pg_insert(GenerationCredit).values(**values).on_conflict_do_nothing(index_elements=["email"])
    elif dialect == "sqlite":
        stmt = sqlite_insert(GenerationCredit).values(**values).on_conflict_do_nothing(index_elements=["email"])
    else:
        existing = await db.execute(select(GenerationCredit.id).where(GenerationCredit.email == email))
        if existing.scalar_one_or_none():
            return
        try:
            async with db.begin_nested():
                db.add(GenerationCredit(**values))
        except IntegrityError:
            pass
        return
    await db.execute(stmt)


def _balance_payload(row: Optional[GenerationCredit], unlimited: bool) -> Dict[str, Any]:
    free_total = int(row.free_credits_total or 0) if row else 0
    free_used = int(row.free_credits_used or 0) if row else 0
    paid = int(row.paid_credits or 0) if row else 0
    free_remaining = max(free_total - free_used, 0)
    return {
        "free_credits_total": free_total,
        "free_credits_used": free_used,
        "free_credits_remaining": free_remaining,
        "paid_credits": paid,
        "total_available": free_remaining + paid,
        "is_unlimited": unlimited,
        "last_generated_at": row.last_generated_at.isoformat() if row and row.last_generated_at else None,
    }


async def check_balance(email: str, db: AsyncSession) -> Dict[str, Any]:
    normalized = normalize_email(email)
    unlimited = await is_unlimited(normalized, db)
    await _ensure_balance_row(normalized, db)
    await db.commit()
    result = await db.execute(
        select(GenerationCredit)
        .where(GenerationCredit.email == normalized)
        .execution_options(populate_existing=True)
    )
    return _balance_payload(result.scalar_one_or_none(), unlimited)


async def try_consume(
    email: str,
    db: AsyncSession,
    *,
    reason: str = "Poster generation",
    reference_type: Optional[str] = None,
    reference_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Consume one generation credit, free before paid.

    Each decrement is a single conditional UPDATE, so concurrent consumers can
    never push ``free_credits_used`` past its total or ``paid_credits`` below
    zero. Subscribers are logged but not metered.
    """
    normalized = normalize_email(email)
    if await is_unlimited(normalized, db):
        db.add(
            CreditLedger(
                id=str(uuid.uuid4()),
                email=normalized,
                entry_type="unlimited_use",
                delta_credits=0,
                reason=reason,
                reference_type=reference_type,
                reference_id=reference_id,
            )
        )
        await db.commit()
        logger.info("Unmetered generation for subscriber %s", normalized)
        return {"consumed": True, "source": "unlimited", "is_unlimited": True}

    await _ensure_balance_row(normalized, db)
    now = datetime.now(timezone.utc)
    returning = (
        GenerationCredit.free_credits_total,
        GenerationCredit.free_credits_used,
        GenerationCredit.paid_credits,
    )

    source = "free"
    row = (
        await db.execute(
            update(GenerationCredit)
            .where(
                GenerationCredit.email == normalized,
                GenerationCredit.free_credits_used < GenerationCredit.free_credits_total,
            )
            .values(free_credits_used=GenerationCredit.free_credits_used + 1, last_generated_at=now)
            .returning(*returning)
            .execution_options(synchronize_session=False)
        )
    ).first()

    if row is None:
        source = "paid"
        row = (
            await db.execute(
                update(GenerationCredit)
                .where(GenerationCredit.email == normalized, GenerationCredit.paid_credits > 0)
                .values(paid_credits=GenerationCredit.paid_credits - 1, last_generated_at=now)
                .returning(*returning)
                .execution_options(synchronize_session=False)
            )
        ).first()

    if row is None:
        # Keep the first-touch row; nothing else was written.
        await db.commit()
        raise InsufficientCredits(
            "No generation credits left. Buy credits or join the Artistic Collective to continue.",
            extra={"free_credits_remaining": 0, "paid_credits": 0},
        )

    free_total, free_used, paid = int(row[0]), int(row[1]), int(row[2])
    db.add(
        CreditLedger(
            id=str(uuid.uuid4()),
            email=normalized,
            entry_type=f"{source}_use",
            delta_credits=-1,
            free_remaining_after=free_total - free_used,
            paid_credits_after=paid,
            reason=reason,
            reference_type=reference_type,
            reference_id=reference_id,
        )
    )
    await db.commit()
    return {
        "consumed": True,
        "source": source,
        "is_unlimited": False,
        "free_credits_remaining": free_total - free_used,
        "free_credits_used": free_used,
        "paid_credits": paid,
    }


async def grant_paid_credits(
    email: str,
    db: AsyncSession,
    *,
    credits: int,
    provider: str,
    billing_reference: str,
    reason: str = "Credit purchase",
) -> Dict[str, Any]:
    """Add paid credits once per ``(provider, billing_reference)``."""
    normalized = normalize_email(email)
    grant = max(int(credits), 0)
    if grant <= 0:
        raise ValueError("credits must be greater than 0")

    await _ensure_balance_row(normalized, db)
    try:
        async with db.begin_nested():
            db.add(
                CreditLedger(
                    id=str(uuid.uuid4()),
                    email=normalized,
                    entry_type="purchase" if provider != "admin" else "grant",
                    delta_credits=grant,
                    reason=reason,
                    billing_provider=provider,
                    billing_reference=billing_reference,
                )
            )
    except IntegrityError:
        await db.commit()
        logger.info("Credit grant %s:%s already applied", provider, billing_reference)
        return {"applied": False, **(await check_balance(normalized, db))}

    await db.execute(
        update(GenerationCredit)
        .where(GenerationCredit.email == normalized)
        .values(paid_credits=GenerationCredit.paid_credits + grant)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return {"applied": True, **(await check_balance(normalized, db))}


async def get_credit_summary(email: str, db: AsyncSession) -> Dict[str, Any]:
    normalized = normalize_email(email)
    balance = await check_balance(normalized, db)
    result = await db.execute(
        select(CreditLedger)
        .where(CreditLedger.email == normalized)
        .order_by(CreditLedger.created_at.desc())
        .limit(30)
    )
    entries = result.scalars().all()
    return {
        "email": normalized,
        **balance,
        "recent_entries": [
            {
                "id": entry.id,
                "entry_type": entry.entry_type,
                "delta_credits": entry.delta_credits,
                "reason": entry.reason,
                "created_at": entry.created_at.isoformat() if entry.created_at else None,
            }
            for entry in entries
        ],
    }
