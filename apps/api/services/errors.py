"""Commerce error taxonomy.

Each error carries the HTTP status and a stable ``code`` the storefront can
branch on. ``main`` registers a single handler that renders them as
``{"detail": ..., "code": ...}``.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class CommerceError(Exception):
    status_code = 400
    code = "commerce_error"

    def __init__(self, detail: str, *, extra: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(detail)
        self.detail = detail
        self.extra = extra or {}

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"detail": self.detail, "code": self.code}
        payload.update(self.extra)
        return payload


class InsufficientCredits(CommerceError):
    status_code = 402
    code = "insufficient_credits"


class SubscriptionRequired(CommerceError):
    status_code = 402
    code = "subscription_required"


class SoldOut(CommerceError):
    status_code = 409
    code = "sold_out"


class AlreadyPublished(CommerceError):
    status_code = 409
    code = "already_published"


class InvalidTransition(CommerceError):
    status_code = 409
    code = "invalid_transition"


class PaymentMismatch(CommerceError):
    status_code = 409
    code = "payment_mismatch"


class SessionExpired(CommerceError):
    status_code = 410
    code = "session_expired"


class InvalidSupply(CommerceError):
    status_code = 422
    code = "invalid_supply"


class InvalidShipping(CommerceError):
    status_code = 422
    code = "invalid_shipping"


class InvalidCart(CommerceError):
    status_code = 422
    code = "invalid_cart"


class NotFound(CommerceError):
    status_code = 404
    code = "not_found"


class PaymentProviderError(CommerceError):
    status_code = 502
    code = "payment_provider_error"


class GenerationFailed(CommerceError):
    status_code = 502
    code = "generation_failed"
