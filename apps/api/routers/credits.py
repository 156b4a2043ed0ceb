"""Generation credits router."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, ensure_email_scope, get_auth_context
from routers.rate_limit import rate_limit
from services.accounts import ensure_account
from services.credits import get_credit_summary, try_consume
from services.generation import generate_poster

router = APIRouter()
logger = logging.getLogger(__name__)


class UseCreditRequest(BaseModel):
    email: Optional[str] = None
    reason: str = Field(default="Poster generation", max_length=200)
    image_id: Optional[str] = None


class GenerateRequest(BaseModel):
    email: Optional[str] = None
    image_url: str = Field(min_length=1, max_length=2048)
    style: str = Field(min_length=1, max_length=64)


@router.get("/generation-credits")
async def generation_credits(
    email: Optional[str] = Query(default=None),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_email = ensure_email_scope(auth.email, email)
    await ensure_account(scoped_email, db)
    return await get_credit_summary(scoped_email, db)


@router.post("/use-generation-credit")
async def use_generation_credit(
    request: UseCreditRequest,
    _rate_limit: None = Depends(rate_limit("credit_use", limit=60, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_email = ensure_email_scope(auth.email, request.email)
    await ensure_account(scoped_email, db)
    return await try_consume(
        scoped_email,
        db,
        reason=request.reason,
        reference_type="generated_image" if request.image_id else None,
        reference_id=request.image_id,
    )


@router.post("/generate")
async def generate(
    request: GenerateRequest,
    _rate_limit: None = Depends(rate_limit("generate", limit=30, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_email = ensure_email_scope(auth.email, request.email)
    await ensure_account(scoped_email, db)
    return await generate_poster(
        email=scoped_email,
        image_url=request.image_url,
        style=request.style,
        db=db,
    )
