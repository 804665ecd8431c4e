# app/services/sessions.py
"""
Device session persistence.

A session row is one login on one device. Its refresh token rotates in place:
rotate() is a single conditional UPDATE keyed on (id, current hash), so when two
refreshes race on the same token only one of them can advance the chain.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import update
from sqlalchemy.orm import Session

from app.core.dates import as_utc, utcnow
from app.models.session import DeviceSession, RotatedRefreshToken, SessionState

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionMatch:
    session: DeviceSession
    state: SessionState


@dataclass(frozen=True)
class SessionSummary:
    session_id: int
    device_label: str | None
    last_used_at: datetime
    expires_at: datetime


def create(
    db: Session,
    user_id: int,
    refresh_hash: str,
    ttl: timedelta,
    device_label: str | None = None,
) -> DeviceSession:
    now = utcnow()
    row = DeviceSession(
        user_id=user_id,
        refresh_token_hash=refresh_hash,
        device_label=(device_label or "").strip()[:255] or None,
        issued_at=now,
        last_used_at=now,
        expires_at=now + ttl,
        revoked_at=None,
    )
    db.add(row)
    db.flush()
    return row


def find_by_hash(db: Session, refresh_hash: str) -> SessionMatch | None:
    """
    None means the hash was never issued. A hash that was rotated away still
    resolves to its session with state ROTATED.
    """
    now = utcnow()
    row = db.query(DeviceSession).filter(DeviceSession.refresh_token_hash == refresh_hash).first()
    if row is not None:
        return SessionMatch(session=row, state=row.state_at(now))

    rotated = db.query(RotatedRefreshToken).filter(RotatedRefreshToken.token_hash == refresh_hash).first()
    if rotated is None:
        return None
    return SessionMatch(session=rotated.session, state=SessionState.ROTATED)


def get_for_user(db: Session, user_id: int, session_id: int) -> DeviceSession | None:
    return (
        db.query(DeviceSession)
        .filter(DeviceSession.id == session_id, DeviceSession.user_id == user_id)
        .first()
    )


def rotate(db: Session, session_id: int, old_hash: str, new_hash: str, ttl: timedelta) -> bool:
    """
    Swap the session's refresh hash from old_hash to new_hash and extend its expiry.

    Returns False when the row no longer holds old_hash (someone else rotated first)
    or the session was revoked meanwhile.
    """
    now = utcnow()
    result = db.execute(
        update(DeviceSession)
        .where(
            DeviceSession.id == session_id,
            DeviceSession.refresh_token_hash == old_hash,
            DeviceSession.revoked_at.is_(None),
        )
        .values(
            refresh_token_hash=new_hash,
            expires_at=now + ttl,
            last_used_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return False

    db.add(RotatedRefreshToken(session_id=session_id, token_hash=old_hash, rotated_at=now))
    db.flush()
    _expire_cached(db, session_id)
    return True


def touch(db: Session, session_id: int) -> None:
    db.execute(
        update(DeviceSession)
        .where(DeviceSession.id == session_id, DeviceSession.revoked_at.is_(None))
        .values(last_used_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    _expire_cached(db, session_id)


def revoke(db: Session, session_id: int) -> bool:
    """Idempotent. Returns True if this call did the revoking."""
    result = db.execute(
        update(DeviceSession)
        .where(DeviceSession.id == session_id, DeviceSession.revoked_at.is_(None))
        .values(revoked_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    _expire_cached(db, session_id)
    return result.rowcount == 1


def revoke_all_for_user(db: Session, user_id: int, except_session_id: int | None = None) -> int:
    stmt = update(DeviceSession).where(
        DeviceSession.user_id == user_id,
        DeviceSession.revoked_at.is_(None),
    )
    if except_session_id is not None:
        stmt = stmt.where(DeviceSession.id != except_session_id)

    result = db.execute(
        stmt.values(revoked_at=utcnow()).execution_options(synchronize_session=False)
    )
    # Bulk update bypasses the identity map.
    for obj in list(db.identity_map.values()):
        if isinstance(obj, DeviceSession):
            db.expire(obj)
    revoked = int(result.rowcount or 0)
    if revoked:
        logger.info("Revoked %s session(s) for user_id=%s", revoked, user_id)
    return revoked


def list_active_for_user(db: Session, user_id: int) -> list[SessionSummary]:
    now = utcnow()
    rows = (
        db.query(DeviceSession)
        .filter(DeviceSession.user_id == user_id, DeviceSession.revoked_at.is_(None))
        .order_by(DeviceSession.last_used_at.desc(), DeviceSession.id.desc())
        .all()
    )
    return [
        SessionSummary(
            session_id=row.id,
            device_label=row.device_label,
            last_used_at=as_utc(row.last_used_at),
            expires_at=as_utc(row.expires_at),
        )
        for row in rows
        if row.state_at(now) is SessionState.ACTIVE
    ]


def _expire_cached(db: Session, session_id: int) -> None:
    obj = db.identity_map.get(db.identity_key(DeviceSession, session_id))
    if obj is not None:
        db.expire(obj)
