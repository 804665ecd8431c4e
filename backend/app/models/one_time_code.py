from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, String, func
from sqlalchemy.orm import relationship

from app.core.base import Base


class CodePurpose(str, enum.Enum):
    EMAIL_VERIFY = "email-verify"
    PASSWORD_RESET = "password-reset"


class OneTimeCode(Base):
    __tablename__ = "one_time_codes"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    purpose = Column(String(32), nullable=False)
    code_hash = Column(String(128), nullable=False)
    code_salt = Column(String(64), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    attempts = Column(Integer, nullable=False, default=0, server_default="0")
    max_attempts = Column(Integer, nullable=False, default=5, server_default="5")
    consumed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    user = relationship("User", back_populates="one_time_codes")

    __table_args__ = (
        Index("ix_one_time_codes_user_purpose", "user_id", "purpose"),
    )

    def mark_consumed(self, when: datetime) -> None:
        self.consumed_at = when

    def record_failed_attempt(self, when: datetime) -> bool:
        """Returns True when this attempt used up the code."""
        self.attempts = (self.attempts or 0) + 1
        if self.attempts >= self.max_attempts:
            self.consumed_at = when
            return True
        return False
