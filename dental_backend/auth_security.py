"""
Password hashing and access tokens.

A token carries the user id (`sub`) plus the tenant claims the API checks on
every request: `org` (organization id, null for super admins), `role` and
`username`.
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

from jose import JWTError, jwt
from passlib.context import CryptContext

from .config import settings

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=settings.BCRYPT_ROUNDS)


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    return pwd_context.verify(password, password_hash)


def create_access_token(subject: str, extra: dict[str, Any] | None = None, expires_minutes: int | None = None) -> str:
    now = datetime.now(timezone.utc)
    expire = now + timedelta(minutes=settings.JWT_EXPIRE_MINUTES if expires_minutes is None else expires_minutes)

    payload: dict[str, Any] = {
        "sub": subject,
        "iat": int(now.timestamp()),
        "exp": int(expire.timestamp()),
    }
    if extra:
        payload.update(extra)

    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALG)


def user_claims(user) -> dict[str, Any]:
    return {"username": user.username, "role": user.role.value, "org": user.organization_id}


def issue_token(user) -> str:
    """Login token for a User row."""
    return create_access_token(subject=user.id, extra=user_claims(user))


def read_claims(token: str) -> dict[str, Any] | None:
    """Payload of a valid token; None when it is expired, tampered with or has no subject."""
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALG])
    except JWTError:
        return None
    if not payload.get("sub"):
        return None
    return payload
