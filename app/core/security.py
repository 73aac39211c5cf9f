"""Hashing, one-time codes and signed session tokens."""
from __future__ import annotations

import hashlib
import hmac
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import jwt

from app.core.settings import Settings

_JWT_ALGORITHM = "HS256"
_OTP_LOW = 100000
_OTP_HIGH = 999999


def hash_value(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def hash_with_salt(value: str, salt: str) -> str:
    payload = f"{salt}:{value}".encode("utf-8")
    return hashlib.sha256(payload).hexdigest()


def digests_match(left: str, right: str) -> bool:
    return hmac.compare_digest(left.encode("utf-8"), right.encode("utf-8"))


def generate_otp() -> str:
    """Uniform random 6-digit code in ``[100000, 999999]``."""
    return str(_OTP_LOW + secrets.randbelow(_OTP_HIGH - _OTP_LOW + 1))


@dataclass(frozen=True, slots=True)
class SessionClaims:
    subject: str
    institute_id: str | None
    is_parent: bool = False


def create_session_token(claims: SessionClaims, settings: Settings, *, now: datetime | None = None) -> str:
    """Sign a session JWT carrying the caller identity and institute scope."""
    issued_at = now or datetime.now(timezone.utc)
    payload = {
        "sub": claims.subject,
        "institute_id": claims.institute_id,
        "is_parent": claims.is_parent,
        "iat": issued_at,
        "exp": issued_at + timedelta(hours=settings.jwt_expires_hours),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=_JWT_ALGORITHM)


def decode_session_token(token: str, settings: Settings) -> SessionClaims:
    """Verify *token* and return its claims.

    Raises ``jwt.InvalidTokenError`` when the signature or expiry is invalid.
    """
    payload = jwt.decode(token, settings.jwt_secret, algorithms=[_JWT_ALGORITHM])
    return SessionClaims(
        subject=str(payload["sub"]),
        institute_id=payload.get("institute_id"),
        is_parent=bool(payload.get("is_parent", False)),
    )
