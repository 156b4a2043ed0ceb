"""Reconciliation of orders whose post-payment steps did not finish."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List

from sqlalchemy import or_, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from database import async_session_maker
from models.checkout_session import CheckoutSession
from models.edition_ticket import EditionTicket
from models.order import Order
from services.finalizer import commit_order_editions, get_order, mark_session_confirmed
from services.inventory import RESERVED

logger = logging.getLogger(__name__)


async def reconcile_order(confirmation_id: str, db: AsyncSession) -> Dict[str, Any]:
    """Re-run the edition commit and session confirmation for one order."""
    order = await get_order(confirmation_id, db)
    if order is None:
        return {"confirmation_id": confirmation_id, "reconciled": False, "reason": "order_not_found"}

    result = await db.execute(select(CheckoutSession).where(CheckoutSession.confirmation_id == confirmation_id))
    session = result.scalar_one_or_none()
    if session is None:
        logger.error("Order %s has no checkout session; operator action required", confirmation_id)
        return {"confirmation_id": confirmation_id, "reconciled": False, "reason": "session_not_found"}

    committed = await commit_order_editions(order, session, db)
    await mark_session_confirmed(confirmation_id, db)
    await db.execute(
        update(Order)
        .where(Order.confirmation_id == confirmation_id)
        .values(needs_reconciliation=False)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    logger.info("Reconciled order %s (%s editions committed)", confirmation_id, committed)
    return {"confirmation_id": confirmation_id, "reconciled": True, "editions_committed": committed}


async def find_orders_needing_reconciliation(db: AsyncSession, *, limit: int = 100) -> List[str]:
    """Orders flagged, or whose tickets are still only reserved."""
    stuck_tickets = (
        select(EditionTicket.confirmation_id)
        .where(EditionTicket.status == RESERVED, EditionTicket.confirmation_id.isnot(None))
        .scalar_subquery()
    )
    result = await db.execute(
        select(Order.confirmation_id)
        .where(or_(Order.needs_reconciliation.is_(True), Order.confirmation_id.in_(stuck_tickets)))
        .order_by(Order.created_at.asc())
        .limit(limit)
    )
    return [row[0] for row in result.all()]


async def reconcile_orders(db: AsyncSession, *, limit: int = 100) -> Dict[str, Any]:
    confirmation_ids = await find_orders_needing_reconciliation(db, limit=limit)
    reconciled: List[str] = []
    failed: List[str] = []
    for confirmation_id in confirmation_ids:
        try:
            outcome = await reconcile_order(confirmation_id, db)
        except Exception:
            logger.exception("Reconciliation failed for order %s", confirmation_id)
            await db.rollback()
            failed.append(confirmation_id)
            continue
        (reconciled if outcome["reconciled"] else failed).append(confirmation_id)
    if confirmation_ids:
        logger.info("Reconciliation sweep: %s reconciled, %s failed", len(reconciled), len(failed))
    return {"checked": len(confirmation_ids), "reconciled": reconciled, "failed": failed}


async def reconcile_order_job_async(confirmation_id: str) -> Dict[str, Any]:
    async with async_session_maker() as db:
        return await reconcile_order(confirmation_id, db)


def reconcile_order_job(confirmation_id: str) -> Dict[str, Any]:
    """RQ worker entrypoint for order reconciliation jobs."""
    return asyncio.run(reconcile_order_job_async(confirmation_id))
