# app/core/security.py
from __future__ import annotations

import hashlib
import hmac
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from jose import ExpiredSignatureError, JWTError, jwt
from passlib.context import CryptContext

from app.core.config import settings
from app.core.dates import utcnow
from app.core.errors import InvalidTokenError, TokenExpiredError

pwd_context = CryptContext(schemes=["argon2"], deprecated="auto")


# -------------------------
# Password hashing
# -------------------------
def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str | None) -> bool:
    """Mismatch, empty or unparseable hashes are all just False."""
    if not password_hash:
        return False
    try:
        return pwd_context.verify(password or "", password_hash)
    except (ValueError, TypeError):
        return False


# Verified against when the email is unknown so both login failures cost the same.
_DUMMY_PASSWORD_HASH = hash_password(secrets.token_urlsafe(16))


def verify_dummy_password(password: str) -> bool:
    verify_password(password, _DUMMY_PASSWORD_HASH)
    return False


# -------------------------
# Access tokens (JWT)
# -------------------------
@dataclass(frozen=True)
class AccessTokenClaims:
    user_id: int
    session_id: int | None
    issued_at: datetime
    expires_at: datetime


def _require_jwt_secret() -> str:
    if not settings.JWT_SECRET or not settings.JWT_SECRET.strip():
        raise RuntimeError("JWT_SECRET must be set (auth is required).")
    return settings.JWT_SECRET


def create_access_token(user_id: int, session_id: int | None = None) -> tuple[str, datetime]:
    """
    Access token used for API auth: Authorization: Bearer <token>
    Returns (token, expires_at). Stateless: nothing is stored.
    """
    secret = _require_jwt_secret()

    now = utcnow()
    exp = now + timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)

    payload: dict[str, Any] = {
        "sub": str(user_id),
        "purpose": "access",
        "iat": int(now.timestamp()),
        "exp": int(exp.timestamp()),
        "jti": uuid.uuid4().hex,
    }
    if session_id is not None:
        payload["sid"] = session_id

    token = jwt.encode(payload, secret, algorithm=settings.JWT_ALGORITHM)
    return token, exp.replace(microsecond=0)


def decode_token(token: str) -> dict[str, Any]:
    secret = _require_jwt_secret()
    # Let callers decide how to handle JWTError
    return jwt.decode(token, secret, algorithms=[settings.JWT_ALGORITHM])


def verify_access_token(token: str) -> AccessTokenClaims:
    """Signature and expiry only; never consults the session store."""
    try:
        payload = decode_token(token)
    except ExpiredSignatureError:
        raise TokenExpiredError()
    except JWTError:
        raise InvalidTokenError()

    if payload.get("purpose") != "access":
        raise InvalidTokenError("Invalid token purpose")

    try:
        user_id = int(payload["sub"])
        issued_at = datetime.fromtimestamp(int(payload["iat"]), tz=timezone.utc)
        expires_at = datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc)
        sid = payload.get("sid")
        session_id = int(sid) if sid is not None else None
    except (KeyError, TypeError, ValueError):
        raise InvalidTokenError("Invalid token payload")

    return AccessTokenClaims(
        user_id=user_id,
        session_id=session_id,
        issued_at=issued_at,
        expires_at=expires_at,
    )


# -------------------------
# Refresh token helpers
# -------------------------
def hash_refresh_token(raw_token: str) -> str:
    """
    Store only a hash in DB.
    HMAC keyed by JWT_SECRET so a DB leak can't be brute-forced offline.
    """
    secret = _require_jwt_secret().encode("utf-8")
    return hmac.new(secret, raw_token.encode("utf-8"), hashlib.sha256).hexdigest()


def generate_refresh_secret() -> tuple[str, str]:
    """
    Returns (raw, hash). The raw value goes to the client once; only the hash is persisted.
    """
    raw = secrets.token_urlsafe(48)
    return raw, hash_refresh_token(raw)


def refresh_token_matches(raw_token: str, token_hash: str | None) -> bool:
    if not raw_token or not token_hash:
        return False
    return hmac.compare_digest(hash_refresh_token(raw_token), token_hash)
