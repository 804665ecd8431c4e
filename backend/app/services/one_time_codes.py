from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from datetime import timedelta

from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.dates import as_utc, utcnow
from app.core.errors import CodeExpiredError, InvalidCodeError
from app.models.one_time_code import CodePurpose, OneTimeCode

logger = logging.getLogger(__name__)


def code_ttl_minutes() -> int:
    return max(int(getattr(settings, "OTP_EXPIRE_MINUTES", 15) or 0), 1)


def max_attempts() -> int:
    return max(int(getattr(settings, "OTP_MAX_ATTEMPTS", 5) or 0), 1)


def _generate_code() -> str:
    length = max(int(getattr(settings, "OTP_LENGTH", 6) or 0), 4)
    return "".join(secrets.choice("0123456789") for _ in range(length))


def _hash_code(code: str, salt: str) -> str:
    return hmac.new(salt.encode("utf-8"), code.strip().encode("utf-8"), hashlib.sha256).hexdigest()


def _active_code(db: Session, user_id: int, purpose: CodePurpose) -> OneTimeCode | None:
    return (
        db.query(OneTimeCode)
        .filter(
            OneTimeCode.user_id == user_id,
            OneTimeCode.purpose == purpose.value,
            OneTimeCode.consumed_at.is_(None),
        )
        .order_by(OneTimeCode.id.desc())
        .first()
    )


def issue(db: Session, user_id: int, purpose: CodePurpose) -> str:
    """
    Creates a fresh code for (user, purpose) and returns the plaintext for delivery.

    Any earlier unconsumed code of the same purpose is marked consumed first, so a
    resend never leaves two usable codes behind.
    """
    now = utcnow()
    (
        db.query(OneTimeCode)
        .filter(
            OneTimeCode.user_id == user_id,
            OneTimeCode.purpose == purpose.value,
            OneTimeCode.consumed_at.is_(None),
        )
        .update({OneTimeCode.consumed_at: now}, synchronize_session="evaluate")
    )

    code = _generate_code()
    salt = secrets.token_hex(16)
    db.add(
        OneTimeCode(
            user_id=user_id,
            purpose=purpose.value,
            code_hash=_hash_code(code, salt),
            code_salt=salt,
            expires_at=now + timedelta(minutes=code_ttl_minutes()),
            attempts=0,
            max_attempts=max_attempts(),
        )
    )
    db.flush()
    logger.info("Issued %s code for user_id=%s", purpose.value, user_id)
    return code


def consume(db: Session, user_id: int, purpose: CodePurpose, supplied_code: str) -> None:
    """
    Marks the active code consumed if supplied_code matches.

    Raises InvalidCodeError when there is no active code or the value differs, and
    CodeExpiredError when the matching code is past its expiry. A code that has
    absorbed max_attempts wrong guesses is burned and a new one must be issued.
    """
    record = _active_code(db, user_id, purpose)
    if record is None:
        raise InvalidCodeError()

    expected = record.code_hash or ""
    now = utcnow()
    if not hmac.compare_digest(_hash_code(supplied_code or "", record.code_salt), expected):
        if record.record_failed_attempt(now):
            logger.warning(
                "Burned %s code for user_id=%s after %s wrong attempts", purpose.value, user_id, record.attempts
            )
        db.add(record)
        db.flush()
        raise InvalidCodeError()

    if as_utc(record.expires_at) <= now:
        raise CodeExpiredError()

    record.mark_consumed(now)
    db.add(record)
    db.flush()
