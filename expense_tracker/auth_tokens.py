from __future__ import annotations

import hashlib
import hmac
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import bcrypt
import jwt

from expense_tracker import settings
from expense_tracker.errors import AuthenticationError

ACCESS_PURPOSE = "access"
GMAIL_STATE_PURPOSE = "gmail_oauth"


@dataclass(frozen=True)
class IssuedRefreshToken:
    raw: str
    hashed: str
    expires_at: datetime


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, hashed_password: str) -> bool:
    return bcrypt.checkpw(password.encode("utf-8"), hashed_password.encode("utf-8"))


def create_access_token(
    user_id: int,
    email: str,
    role: str,
    now: datetime | None = None,
    ttl: timedelta | None = None,
) -> str:
    issued_at = now or datetime.now(timezone.utc)
    lifetime = ttl or timedelta(minutes=settings.ACCESS_TOKEN_TTL_MINUTES)
    payload = {
        "sub": str(user_id),
        "email": email,
        "role": role,
        "purpose": ACCESS_PURPOSE,
        "iat": issued_at,
        "exp": issued_at + lifetime,
    }
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def decode_token(token: str, purpose: str = ACCESS_PURPOSE) -> dict:
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except jwt.ExpiredSignatureError as exc:
        raise AuthenticationError("Token expired.") from exc
    except jwt.InvalidTokenError as exc:
        raise AuthenticationError("Invalid token.") from exc
    if payload.get("purpose") != purpose:
        raise AuthenticationError("Invalid token.")
    return payload


def user_id_from_token(token: str, purpose: str = ACCESS_PURPOSE) -> int:
    payload = decode_token(token, purpose)
    try:
        return int(payload["sub"])
    except (KeyError, TypeError, ValueError) as exc:
        raise AuthenticationError("Invalid token.") from exc


def create_gmail_state(user_id: int, now: datetime | None = None) -> str:
    issued_at = now or datetime.now(timezone.utc)
    payload = {
        "sub": str(user_id),
        "purpose": GMAIL_STATE_PURPOSE,
        "iat": issued_at,
        "exp": issued_at + timedelta(minutes=10),
    }
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def hash_refresh_token(raw_token: str) -> str:
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


def issue_refresh_token(now: datetime | None = None) -> IssuedRefreshToken:
    raw = secrets.token_hex(32)
    issued_at = now or utcnow()
    return IssuedRefreshToken(
        raw=raw,
        hashed=hash_refresh_token(raw),
        expires_at=issued_at + timedelta(days=settings.REFRESH_TOKEN_TTL_DAYS),
    )


def check_refresh_token(
    raw_token: str,
    stored_hash: str | None,
    expires_at: datetime | None,
    now: datetime | None = None,
) -> None:
    """Raise ``AuthenticationError`` unless ``raw_token`` matches an unexpired hash.

    Callers clear the stored hash on every failure, so a replayed
    (already rotated) token also revokes the session.
    """
    if not stored_hash or expires_at is None:
        raise AuthenticationError("Invalid refresh token.")
    if (now or utcnow()) > expires_at:
        raise AuthenticationError("Refresh token expired.")
    if not hmac.compare_digest(hash_refresh_token(raw_token), stored_hash):
        raise AuthenticationError("Invalid refresh token.")


def build_refresh_cookie(user_id: int, raw_token: str) -> str:
    return f"{user_id}:{raw_token}"


def parse_refresh_cookie(value: str) -> tuple[int, str]:
    user_part, separator, raw_token = value.partition(":")
    if not separator or not raw_token:
        raise AuthenticationError("Invalid refresh token format.")
    try:
        return int(user_part), raw_token
    except ValueError as exc:
        raise AuthenticationError("Invalid refresh token format.") from exc


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the ``DateTime`` columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
