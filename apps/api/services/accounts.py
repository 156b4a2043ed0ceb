"""Account lookup helpers."""

from __future__ import annotations

from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.user import User


def normalize_email(email: Optional[str]) -> str:
    return str(email or "").strip().lower()


async def get_account(email: str, db: AsyncSession) -> Optional[User]:
    result = await db.execute(select(User).where(User.email == normalize_email(email)))
    return result.scalar_one_or_none()


async def ensure_account(email: str, db: AsyncSession) -> User:
    """Return the account for ``email``, creating it on first touch.

    The insert runs inside a savepoint so a concurrent first touch only loses
    the savepoint, not the caller's transaction.
    """
    normalized = normalize_email(email)
    user = await get_account(normalized, db)
    if user:
        return user

    try:
        async with db.begin_nested():
            user = User(email=normalized, user_type="normal")
            db.add(user)
    except IntegrityError:
        user = await get_account(normalized, db)
        if user is None:
            raise
    return user
