# app/services/auth.py
"""
Authentication and device-session lifecycle.

AuthService is the only place that ties passwords, one-time codes, access tokens
and device sessions together. It talks to storage through the SQLAlchemy Session it
is given and to mail through a code dispatcher callable, and reports every failure
as an AuthError subclass (see app.core.errors).

Each public method is one unit of work: it commits on success, commits corrective
writes (e.g. revoking a session after token reuse) before re-raising an AuthError,
and rolls back + raises UnavailableError on storage failures. One-time codes are
handed to the dispatcher only after the commit.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Iterator

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.dates import as_utc, utcnow
from app.core.errors import (
    AuthError,
    EmailNotVerifiedError,
    EmailTakenError,
    InvalidCodeError,
    InvalidCredentialsError,
    InvalidTokenError,
    NotFoundError,
    TokenReuseDetectedError,
    UnavailableError,
)
from app.core.security import (
    AccessTokenClaims,
    create_access_token,
    generate_refresh_secret,
    hash_password,
    hash_refresh_token,
    refresh_token_matches,
    verify_access_token,
    verify_dummy_password,
    verify_password,
)
from app.models.one_time_code import CodePurpose
from app.models.session import SessionState
from app.models.user import User
from app.services import one_time_codes
from app.services import sessions as session_store
from app.services.email import deliver_one_time_code
from app.services.sessions import SessionSummary

logger = logging.getLogger(__name__)

# (to_email, code, purpose, expires_minutes)
CodeDispatcher = Callable[[str, str, CodePurpose, int], None]


@dataclass(frozen=True)
class IssuedTokens:
    access_token: str
    access_expires_at: datetime
    refresh_token: str
    refresh_expires_at: datetime
    session_id: int


@dataclass(frozen=True)
class RefreshedTokens:
    access_token: str
    access_expires_at: datetime
    # None when the refresh token was not rotated; the client keeps its current one.
    refresh_token: str | None
    refresh_expires_at: datetime
    session_id: int


@dataclass(frozen=True)
class Principal:
    user: User
    claims: AccessTokenClaims

    @property
    def session_id(self) -> int | None:
        return self.claims.session_id


def normalize_email(email: str | None) -> str:
    return (email or "").strip().lower()


def refresh_ttl() -> timedelta:
    return timedelta(days=settings.REFRESH_TOKEN_EXPIRE_DAYS)


def rotation_threshold() -> timedelta:
    return timedelta(days=settings.REFRESH_ROTATION_THRESHOLD_DAYS)


class AuthService:
    def __init__(self, db: Session, dispatch_code: CodeDispatcher = deliver_one_time_code) -> None:
        self.db = db
        self._dispatch_code = dispatch_code

    # -----------------------------
    # Unit of work
    # -----------------------------
    @contextmanager
    def _unit_of_work(self) -> Iterator[None]:
        try:
            yield
        except AuthError:
            self._commit()
            raise
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.exception("Auth storage failure")
            raise UnavailableError() from e
        except Exception:
            self.db.rollback()
            raise
        else:
            self._commit()

    def _commit(self) -> None:
        try:
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.exception("Auth storage commit failed")
            raise UnavailableError() from e

    def _user_by_email(self, email: str) -> User | None:
        email = normalize_email(email)
        if not email:
            return None
        return self.db.query(User).filter(User.email == email).first()

    def _send_code(self, email: str, code: str, purpose: CodePurpose) -> None:
        self._dispatch_code(email, code, purpose, one_time_codes.code_ttl_minutes())

    # -----------------------------
    # Registration / verification
    # -----------------------------
    def register(self, email: str, password: str) -> int:
        """Creates an unverified user and mails a verification code. Returns the user id."""
        email = normalize_email(email)
        with self._unit_of_work():
            if self._user_by_email(email) is not None:
                raise EmailTakenError()

            user = User(
                email=email,
                password_hash=hash_password(password),
                is_email_verified=False,
                email_verified_at=None,
                password_changed_at=utcnow(),
            )
            self.db.add(user)
            try:
                self.db.flush()
            except IntegrityError as e:
                # Lost a race with a concurrent registration of the same address.
                self.db.rollback()
                raise EmailTakenError() from e

            user_id = user.id
            code = one_time_codes.issue(self.db, user_id, CodePurpose.EMAIL_VERIFY)

        logger.info("Registered user_id=%s", user_id)
        self._send_code(email, code, CodePurpose.EMAIL_VERIFY)
        return user_id

    def verify_email(self, email: str, code: str) -> None:
        with self._unit_of_work():
            user = self._user_by_email(email)
            if user is None or user.is_email_verified:
                raise InvalidCodeError()

            one_time_codes.consume(self.db, user.id, CodePurpose.EMAIL_VERIFY, code)
            user.is_email_verified = True
            user.email_verified_at = utcnow()
            self.db.add(user)
            logger.info("Email verified for user_id=%s", user.id)

    def resend_verification(self, email: str) -> None:
        """Same outcome whether or not the address exists or is already verified."""
        email = normalize_email(email)
        code: str | None = None
        with self._unit_of_work():
            user = self._user_by_email(email)
            if user is not None and not user.is_email_verified:
                code = one_time_codes.issue(self.db, user.id, CodePurpose.EMAIL_VERIFY)

        if code is not None:
            self._send_code(email, code, CodePurpose.EMAIL_VERIFY)

    # -----------------------------
    # Login / refresh / logout
    # -----------------------------
    def login(self, email: str, password: str, device_label: str | None = None) -> IssuedTokens:
        with self._unit_of_work():
            user = self._user_by_email(email)
            if user is None:
                verify_dummy_password(password)
                raise InvalidCredentialsError()
            if not verify_password(password, user.password_hash):
                raise InvalidCredentialsError()
            if not user.is_email_verified:
                raise EmailNotVerifiedError()

            user_id = user.id
            raw_refresh, refresh_hash = generate_refresh_secret()
            session = session_store.create(self.db, user_id, refresh_hash, refresh_ttl(), device_label)
            access_token, access_expires_at = create_access_token(user_id, session.id)
            tokens = IssuedTokens(
                access_token=access_token,
                access_expires_at=access_expires_at,
                refresh_token=raw_refresh,
                refresh_expires_at=as_utc(session.expires_at),
                session_id=session.id,
            )

        logger.info("Login user_id=%s session_id=%s", user_id, tokens.session_id)
        return tokens

    def refresh(self, refresh_token: str | None) -> RefreshedTokens:
        raw = (refresh_token or "").strip()
        if not raw:
            raise InvalidTokenError()
        presented_hash = hash_refresh_token(raw)

        with self._unit_of_work():
            try:
                return self._advance_session(raw, presented_hash)
            except TokenReuseDetectedError as reuse:
                session_store.revoke(self.db, reuse.session_id)
                logger.warning(
                    "Refresh token reuse detected; revoked session_id=%s (%s)",
                    reuse.session_id,
                    reuse.message,
                )
                raise InvalidTokenError() from None

    def _advance_session(self, raw: str, presented_hash: str) -> RefreshedTokens:
        match = session_store.find_by_hash(self.db, presented_hash)
        if match is None:
            raise InvalidTokenError()

        session = match.session
        session_id = session.id
        user_id = session.user_id
        if match.state is SessionState.ROTATED:
            raise TokenReuseDetectedError(session_id, "rotated-away refresh token presented")
        if match.state is not SessionState.ACTIVE or not refresh_token_matches(raw, session.refresh_token_hash):
            raise InvalidTokenError()

        expires_at = as_utc(session.expires_at)
        new_refresh: str | None = None
        if expires_at - utcnow() < rotation_threshold():
            new_refresh, new_hash = generate_refresh_secret()
            if not session_store.rotate(self.db, session_id, presented_hash, new_hash, refresh_ttl()):
                raise TokenReuseDetectedError(session_id, "lost rotation race")
            expires_at = as_utc(session_store.get_for_user(self.db, user_id, session_id).expires_at)
        else:
            session_store.touch(self.db, session_id)

        access_token, access_expires_at = create_access_token(user_id, session_id)
        return RefreshedTokens(
            access_token=access_token,
            access_expires_at=access_expires_at,
            refresh_token=new_refresh,
            refresh_expires_at=expires_at,
            session_id=session_id,
        )

    def logout(self, refresh_token: str | None) -> None:
        """Idempotent; unknown or already revoked tokens are fine."""
        raw = (refresh_token or "").strip()
        if not raw:
            return
        with self._unit_of_work():
            match = session_store.find_by_hash(self.db, hash_refresh_token(raw))
            if match is not None and match.state in (SessionState.ACTIVE, SessionState.EXPIRED):
                session_store.revoke(self.db, match.session.id)

    def authenticate(self, access_token: str) -> Principal:
        claims = verify_access_token(access_token)
        with self._unit_of_work():
            user = self.db.get(User, claims.user_id)
            if user is None:
                raise InvalidTokenError()
        return Principal(user=user, claims=claims)

    # -----------------------------
    # Sessions
    # -----------------------------
    def list_sessions(self, user_id: int) -> list[SessionSummary]:
        with self._unit_of_work():
            return session_store.list_active_for_user(self.db, user_id)

    def revoke_session(self, user_id: int, session_id: int) -> None:
        """Another user's session id looks exactly like a missing one."""
        with self._unit_of_work():
            row = session_store.get_for_user(self.db, user_id, session_id)
            if row is None:
                raise NotFoundError("Session not found")
            session_store.revoke(self.db, row.id)

    def revoke_other_sessions(self, user_id: int, current_session_id: int | None) -> int:
        with self._unit_of_work():
            return session_store.revoke_all_for_user(self.db, user_id, except_session_id=current_session_id)

    # -----------------------------
    # Passwords
    # -----------------------------
    def request_password_reset(self, email: str) -> None:
        """Same outcome whether or not the address exists."""
        email = normalize_email(email)
        code: str | None = None
        with self._unit_of_work():
            user = self._user_by_email(email)
            if user is not None:
                code = one_time_codes.issue(self.db, user.id, CodePurpose.PASSWORD_RESET)

        if code is not None:
            self._send_code(email, code, CodePurpose.PASSWORD_RESET)

    def reset_password(self, email: str, code: str, new_password: str) -> None:
        """Sets the new password and signs the user out everywhere."""
        with self._unit_of_work():
            user = self._user_by_email(email)
            if user is None:
                raise InvalidCodeError()

            one_time_codes.consume(self.db, user.id, CodePurpose.PASSWORD_RESET, code)
            user.password_hash = hash_password(new_password)
            user.password_changed_at = utcnow()
            self.db.add(user)
            session_store.revoke_all_for_user(self.db, user.id)
            logger.info("Password reset for user_id=%s", user.id)

    def change_password(
        self,
        user_id: int,
        current_password: str,
        new_password: str,
        current_session_id: int | None = None,
    ) -> None:
        """Keeps the calling session alive and revokes every other one."""
        with self._unit_of_work():
            user = self.db.get(User, user_id)
            if user is None or not verify_password(current_password, user.password_hash):
                raise InvalidCredentialsError("Current password is incorrect")

            user.password_hash = hash_password(new_password)
            user.password_changed_at = utcnow()
            self.db.add(user)
            session_store.revoke_all_for_user(self.db, user.id, except_session_id=current_session_id)
