# app/models/session.py
from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, func
from sqlalchemy.orm import relationship

from app.core.base import Base
from app.core.dates import as_utc


class SessionState(str, enum.Enum):
    ACTIVE = "active"
    # The presented refresh value was rotated away earlier in this session's chain.
    ROTATED = "rotated"
    REVOKED = "revoked"
    EXPIRED = "expired"


class DeviceSession(Base):
    """
    One device login: a chain of refresh tokens.

    Rotation swaps refresh_token_hash in place, so the id is stable for listing and
    revocation.
    """

    __tablename__ = "sessions"

    id = Column(Integer, primary_key=True, index=True)

    user_id = Column(
        Integer,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    # Store ONLY a hash of the current refresh token (never the raw value).
    # Kept after revocation so lookups can tell "revoked" from "never issued"; it no longer validates.
    refresh_token_hash = Column(String(255), unique=True, index=True, nullable=False)

    device_label = Column(String(255), nullable=True)

    issued_at = Column(DateTime(timezone=True), nullable=False)
    last_used_at = Column(DateTime(timezone=True), nullable=False)
    # Sliding window, pushed forward on every rotation
    expires_at = Column(DateTime(timezone=True), nullable=False)
    revoked_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    user = relationship("User", back_populates="sessions")
    rotated_tokens = relationship(
        "RotatedRefreshToken",
        back_populates="session",
        cascade="all, delete-orphan",
    )

    def state_at(self, now: datetime) -> SessionState:
        if self.revoked_at is not None:
            return SessionState.REVOKED
        if as_utc(self.expires_at) <= now:
            return SessionState.EXPIRED
        return SessionState.ACTIVE


class RotatedRefreshToken(Base):
    """Hashes a session has rotated away from; presenting one again is token reuse."""

    __tablename__ = "session_rotated_tokens"

    id = Column(Integer, primary_key=True)
    session_id = Column(
        Integer,
        ForeignKey("sessions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    token_hash = Column(String(255), unique=True, index=True, nullable=False)
    rotated_at = Column(DateTime(timezone=True), nullable=False)

    session = relationship("DeviceSession", back_populates="rotated_tokens")
