"""Bearer session token verification.

Tokens are issued by the storefront's identity layer and signed with the
shared ``JWT_SECRET``; this API only verifies them.
"""

from typing import Any, Dict

from jose import JWTError, jwt

from config import settings


SESSION_TOKEN_TYPE = "poster_session"
REQUIRED_CLAIMS = ("sub", "email")


def decode_session_token(token: str) -> Dict[str, Any]:
    """Return the claims of a valid storefront session token or raise ``ValueError``."""
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except JWTError as exc:
        raise ValueError("Invalid or expired session token.") from exc

    if payload.get("type") != SESSION_TOKEN_TYPE:
        raise ValueError("Invalid session token type.")
    for claim in REQUIRED_CLAIMS:
        if not str(payload.get(claim) or "").strip():
            raise ValueError(f"Session token missing {claim}.")
    return payload
