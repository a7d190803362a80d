"""
Admin authentication: password hashing, bearer tokens and the bootstrap user.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import bcrypt
import jwt

from club_backend.config import DEFAULT_ADMIN_PASSWORD, DEFAULT_JWT_SECRET, Settings
from club_backend.db import AdminUserRecord, ContentStore

logger = logging.getLogger(__name__)

BCRYPT_ROUNDS = 10


@dataclass(frozen=True)
class TokenClaims:
    user_id: int
    username: str
    expires_at: datetime


def hash_password(password: str) -> str:
    hashed = bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=BCRYPT_ROUNDS))
    return hashed.decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        # Malformed stored hash or an over-long password.
        return False


def issue_token(
    user: AdminUserRecord,
    *,
    secret: str,
    algorithm: str = "HS256",
    ttl: timedelta = timedelta(hours=24),
    now: Optional[datetime] = None,
) -> tuple[str, datetime]:
    """Return a signed token for the user and the moment it expires."""
    issued_at = now or datetime.now(timezone.utc)
    expires_at = issued_at + ttl
    token = jwt.encode(
        {
            "sub": str(user.id),
            "username": user.username,
            "iat": issued_at,
            "exp": expires_at,
        },
        secret,
        algorithm=algorithm,
    )
    return token, expires_at


def decode_token(token: str, *, secret: str, algorithm: str = "HS256") -> TokenClaims:
    """
    Validate signature and expiry. Raises jwt.InvalidTokenError (including
    ExpiredSignatureError) when the token must be rejected.
    """
    payload = jwt.decode(
        token,
        secret,
        algorithms=[algorithm],
        options={"require": ["sub", "exp"]},
    )
    try:
        user_id = int(payload["sub"])
    except ValueError as exc:
        raise jwt.InvalidTokenError("Token subject is not a user id") from exc
    return TokenClaims(
        user_id=user_id,
        username=payload.get("username", ""),
        expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
    )


def authenticate(
    store: ContentStore, username: str, password: str
) -> Optional[AdminUserRecord]:
    user = store.get_admin_user(username)
    if user is None or not verify_password(password, user.password_hash):
        return None
    return user


def ensure_admin_user(store: ContentStore, settings: Settings) -> bool:
    """
    Seed the bootstrap admin when no admin exists. Returns True if a user
    was created.
    """
    if store.count_admin_users() > 0:
        return False
    store.create_admin_user(
        settings.admin_username, hash_password(settings.admin_password)
    )
    logger.info("Created bootstrap admin user %r", settings.admin_username)
    if settings.admin_password == DEFAULT_ADMIN_PASSWORD:
        logger.warning(
            "Bootstrap admin uses the default password; set ADMIN_PASSWORD and rotate it"
        )
    return True


def warn_on_default_secret(settings: Settings) -> None:
    if settings.jwt_secret == DEFAULT_JWT_SECRET:
        logger.warning("JWT_SECRET is not set; tokens are signed with the fallback key")
