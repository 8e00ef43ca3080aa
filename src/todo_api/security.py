from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Dict, Optional

import bcrypt
import jwt
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from .deps import get_app_settings, get_user_repo
from .errors import AuthError
from .models import UserEntity, utcnow
from .repositories import UserRepository
from .settings import Settings

logger = logging.getLogger(__name__)

JWT_ALGORITHM = "HS256"

_bearer = HTTPBearer(auto_error=False)


# PUBLIC_INTERFACE
def hash_password(password: str, rounds: int = 12) -> str:
    """Return a salted bcrypt hash of ``password`` as text."""
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


# PUBLIC_INTERFACE
def verify_password(password: str, password_hash: str) -> bool:
    """Check ``password`` against a stored bcrypt hash. Malformed input never matches."""
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        return False


# PUBLIC_INTERFACE
def create_access_token(user_id: int, settings: Settings) -> str:
    """
    Issue a signed, time-limited bearer token for ``user_id``.

    The token carries ``sub`` (user id as text), ``iat`` and ``exp``. There is
    no server-side record of issued tokens; they stop working at expiry.
    """
    now = utcnow()
    payload: Dict[str, Any] = {
        "sub": str(user_id),
        "iat": now,
        "exp": now + timedelta(days=settings.jwt_expires_days),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=JWT_ALGORITHM)


def decode_access_token(token: str, settings: Settings) -> int:
    """
    Verify signature and expiry and return the user id.

    Raises:
        AuthError: expired, malformed or wrongly signed token.
    """
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[JWT_ALGORITHM],
            options={"require": ["exp", "sub"]},
        )
    except jwt.ExpiredSignatureError as exc:
        raise AuthError("Not authorized, token expired") from exc
    except jwt.InvalidTokenError as exc:
        raise AuthError("Not authorized, token failed") from exc
    try:
        return int(payload["sub"])
    except (TypeError, ValueError) as exc:
        raise AuthError("Not authorized, token failed") from exc


# PUBLIC_INTERFACE
def authenticate(token: Optional[str], users: UserRepository, settings: Settings) -> UserEntity:
    """
    Resolve a bearer token to the stored user it was issued for.

    Raises:
        AuthError: token missing or invalid, or its user no longer exists.
    """
    if not token:
        raise AuthError("Not authorized, no token")
    user_id = decode_access_token(token, settings)
    user = users.get(user_id)
    if user is None:
        logger.info("Token for missing user id=%s rejected", user_id)
        raise AuthError("Not authorized, user not found")
    return user


# PUBLIC_INTERFACE
def get_current_user(
    creds: Optional[HTTPAuthorizationCredentials] = Depends(_bearer),
    users: UserRepository = Depends(get_user_repo),
    settings: Settings = Depends(get_app_settings),
) -> UserEntity:
    """
    FastAPI dependency guarding protected routes.

    Reads ``Authorization: Bearer <token>``; any failure raises AuthError,
    which the app turns into a 401 envelope before the handler runs.
    """
    return authenticate(creds.credentials if creds else None, users, settings)
