"""
Token verification.

Tokens are issued by the platform's auth service; this service only checks
them. Access tokens carry ``type: "access"`` and the user id in ``userId``
(``sub`` is accepted for tokens from the newer issuer).
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional
import logging

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import ExpiredSignatureError, JWTError, jwt

from .config import get_settings
from .services.orchestration.context import OrchestratorContext, get_orchestrator_context
from .services.orchestration.errors import AuthRejected

logger = logging.getLogger(__name__)

ACCESS_TOKEN = "access"
REFRESH_TOKEN = "refresh"

bearer_scheme = HTTPBearer(auto_error=False)


@dataclass
class TokenClaims:
    subject_id: str
    token_class: Optional[str]
    expiry: Optional[datetime]


def verify_token(token: str, secret_key: Optional[str] = None, algorithm: Optional[str] = None) -> TokenClaims:
    """
    Decode and check a bearer token.

    Raises:
        AuthRejected: Missing, malformed, expired or unsigned token, or one without
            a subject or an ``exp`` claim
    """
    if not token:
        raise AuthRejected("Missing token")

    settings = get_settings()
    try:
        payload = jwt.decode(
            token,
            secret_key or settings.secret_key,
            algorithms=[algorithm or settings.algorithm],
            options={"verify_aud": False, "require_exp": True},
        )
    except ExpiredSignatureError as e:
        raise AuthRejected("Token expired") from e
    except JWTError as e:
        raise AuthRejected("Invalid token") from e

    subject_id = payload.get("userId") or payload.get("sub")
    if not subject_id:
        raise AuthRejected("Token has no subject")

    exp = payload.get("exp")
    expiry = datetime.fromtimestamp(exp, tz=timezone.utc) if exp is not None else None

    return TokenClaims(
        subject_id=str(subject_id),
        token_class=payload.get("type"),
        expiry=expiry,
    )


def require_access_token(token: str) -> TokenClaims:
    """verify_token, then reject anything but an access token."""
    claims = verify_token(token)
    if claims.token_class != ACCESS_TOKEN:
        raise AuthRejected("Invalid token type")
    return claims


def is_locked(user, now: Optional[datetime] = None) -> bool:
    locked_until = getattr(user, "account_locked_until", None)
    if locked_until is None:
        return False
    now = now or datetime.now(timezone.utc)
    # SQLite hands back naive datetimes
    if locked_until.tzinfo is None:
        locked_until = locked_until.replace(tzinfo=timezone.utc)
    return locked_until > now


async def authenticate(store, token: str):
    """
    Resolve a token to an active, unlocked user.

    Raises:
        AuthRejected: On any failure
    """
    claims = require_access_token(token)
    user = await store.get_user(claims.subject_id)
    if user is None or not user.is_active:
        raise AuthRejected("User not found or inactive")
    if is_locked(user):
        raise AuthRejected("Account is locked")
    return user


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    context: OrchestratorContext = Depends(get_orchestrator_context),
):
    """FastAPI dependency for REST routes."""
    if credentials is None:
        raise AuthRejected("Missing bearer token")

    user = await authenticate(context.store, credentials.credentials)
    logger.debug(f"[AUTH] Authenticated user {user.id}")
    return user
