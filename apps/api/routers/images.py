"""Limited-edition publishing and public catalogue router."""

from __future__ import annotations

from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, ensure_email_scope, get_auth_context
from routers.rate_limit import rate_limit
from services.inventory import (
    get_availability,
    get_poster_stats,
    list_public_images,
    publish,
    serialize_image,
    unpublish,
)

router = APIRouter()


class PublicStatusRequest(BaseModel):
    is_public: bool
    total_supply: Optional[int] = None
    price_per_unit: Optional[Decimal] = None
    name: Optional[str] = Field(default=None, max_length=120)
    city: Optional[str] = Field(default=None, max_length=120)
    moment_link: Optional[str] = Field(default=None, max_length=2048)


@router.patch("/images/{image_id}/public")
async def set_public_status(
    image_id: str,
    request: PublicStatusRequest,
    _rate_limit: None = Depends(rate_limit("publish", limit=30, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Publish a poster as a limited edition, or withdraw an unsold one."""
    if request.is_public:
        image = await publish(
            image_id,
            db,
            owner_email=auth.email,
            total_supply=request.total_supply,
            price_per_unit=request.price_per_unit,
            name=request.name,
            city=request.city,
            moment_link=request.moment_link,
        )
    else:
        image = await unpublish(image_id, db, owner_email=auth.email)
    return serialize_image(image)


@router.get("/images/{image_id}/availability")
async def image_availability(image_id: str, db: AsyncSession = Depends(get_db)):
    return await get_availability(image_id, db)


@router.get("/public-images")
async def public_images(
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: AsyncSession = Depends(get_db),
):
    items = await list_public_images(db, limit=limit, offset=offset)
    return {"items": items, "count": len(items), "limit": limit, "offset": offset}


@router.get("/user-poster-stats")
async def user_poster_stats(
    email: Optional[str] = Query(default=None),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """How many posters the account sells and whether it may publish another."""
    scoped_email = ensure_email_scope(auth.email, email)
    return await get_poster_stats(scoped_email, db)
