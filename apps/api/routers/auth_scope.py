"""Authentication dependencies for account scoping."""

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from config import settings
from services.session_token import decode_session_token


auth_scheme = HTTPBearer(auto_error=False)


@dataclass
class AuthContext:
    user_id: str
    email: str


def ensure_email_scope(auth_email: str, supplied_email: Optional[str]) -> str:
    """Return the authenticated email and reject cross-account attempts."""
    if supplied_email and supplied_email.strip().lower() != auth_email:
        raise HTTPException(status_code=403, detail="email does not match authenticated session.")
    return auth_email


async def get_auth_context(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
) -> AuthContext:
    """Resolve the authenticated account from a Bearer session token."""
    if not credentials or credentials.scheme.lower() != "bearer":
        raise HTTPException(status_code=401, detail="Missing Bearer session token.")

    try:
        payload = decode_session_token(credentials.credentials)
    except ValueError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc

    return AuthContext(
        user_id=str(payload["sub"]),
        email=str(payload["email"]).strip().lower(),
    )


async def require_admin(auth: AuthContext = Depends(get_auth_context)) -> AuthContext:
    """Allow only accounts listed in ADMIN_EMAILS."""
    admins = {email.strip().lower() for email in settings.ADMIN_EMAILS}
    if auth.email not in admins:
        raise HTTPException(status_code=403, detail="Admin access required.")
    return auth
