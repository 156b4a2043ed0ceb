"""AI poster generation collaborator and the credit-metered generation flow."""

from __future__ import annotations

import logging
import uuid
from typing import Any, Dict

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from models.generated_image import GeneratedImage
from services.accounts import normalize_email
from services.credits import check_balance, try_consume
from services.errors import GenerationFailed, InsufficientCredits

logger = logging.getLogger(__name__)


async def transform_image(image_url: str, style: str) -> str:
    """Call the generation service once; no retries on the caller's behalf."""
    endpoint = f"{settings.GENERATION_SERVICE_URL.rstrip('/')}/transform"
    try:
        async with httpx.AsyncClient(timeout=settings.GENERATION_TIMEOUT_SECONDS) as client:
            response = await client.post(endpoint, json={"image_url": image_url, "style": style})
    except httpx.HTTPError as exc:
        logger.warning("Generation service unreachable: %s", exc)
        raise GenerationFailed("Poster generation is unavailable. Please try again.") from exc

    if response.status_code >= 400:
        logger.warning("Generation service returned %s: %s", response.status_code, response.text[:200])
        raise GenerationFailed("Poster generation failed. No credit was used.")

    poster_url = str((response.json() or {}).get("poster_url") or "").strip()
    if not poster_url:
        raise GenerationFailed("Poster generation returned no image. No credit was used.")
    return poster_url


async def generate_poster(
    *,
    email: str,
    image_url: str,
    style: str,
    db: AsyncSession,
) -> Dict[str, Any]:
    """Check credits, generate, then deduct. A failed generation never consumes a credit."""
    normalized = normalize_email(email)
    balance = await check_balance(normalized, db)
    if not balance["is_unlimited"] and balance["total_available"] <= 0:
        raise InsufficientCredits(
            "No generation credits left. Buy credits or join the Artistic Collective to continue.",
            extra={"free_credits_remaining": 0, "paid_credits": balance["paid_credits"]},
        )

    poster_url = await transform_image(image_url, style)

    image = GeneratedImage(
        id=str(uuid.uuid4()),
        owner_email=normalized,
        original_path=image_url,
        generated_path=poster_url,
        style=style,
    )
    db.add(image)
    await db.commit()

    credits: Dict[str, Any]
    try:
        credits = await try_consume(
            normalized,
            db,
            reason="Poster generation",
            reference_type="generated_image",
            reference_id=image.id,
        )
    except InsufficientCredits:
        # A concurrent generation took the last credit after our check.
        logger.warning("Credit deduction failed after successful generation for %s (image %s)", normalized, image.id)
        credits = {"consumed": False, "source": None, "is_unlimited": False}

    return {
        "image_id": image.id,
        "poster_url": poster_url,
        "style": style,
        "credits": credits,
    }
