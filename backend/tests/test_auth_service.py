from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import OperationalError

from app.core.errors import (
    CodeExpiredError,
    EmailNotVerifiedError,
    EmailTakenError,
    InvalidCodeError,
    InvalidCredentialsError,
    InvalidTokenError,
    NotFoundError,
    UnavailableError,
)
from app.core.security import verify_access_token
from app.models.one_time_code import CodePurpose, OneTimeCode
from app.models.session import DeviceSession
from app.models.user import User
from app.services import one_time_codes
from app.services import sessions as session_store

# Password of the `users` / `unverified_user` fixtures.
TEST_PASSWORD = "correct horse battery"


def _age_session(db_session, session_id: int, remaining: timedelta) -> None:
    row = db_session.get(DeviceSession, session_id)
    row.expires_at = datetime.now(timezone.utc) + remaining
    db_session.commit()


# -----------------------------
# Registration / verification
# -----------------------------
def test_register_creates_unverified_user_and_sends_code(service, db_session, sent_codes):
    user_id = service.register("  A@X.com ", "pw1")

    user = db_session.get(User, user_id)
    assert user.email == "a@x.com"
    assert user.is_email_verified is False
    assert user.password_hash != "pw1"

    assert len(sent_codes) == 1
    assert sent_codes[0]["email"] == "a@x.com"
    assert sent_codes[0]["purpose"] is CodePurpose.EMAIL_VERIFY
    assert sent_codes[0]["expires_minutes"] == 15
    # No session exists before verification.
    assert db_session.query(DeviceSession).count() == 0


def test_register_duplicate_email_is_case_insensitive(service):
    service.register("dup@example.com", "pw1")
    with pytest.raises(EmailTakenError):
        service.register("DUP@example.com", "other")


def test_login_blocked_until_email_verified(service, last_code):
    service.register("a@x.com", "pw1")

    with pytest.raises(EmailNotVerifiedError):
        service.login("a@x.com", "pw1")

    service.verify_email("a@x.com", last_code("a@x.com"))
    tokens = service.login("a@x.com", "pw1")
    assert tokens.access_token and tokens.refresh_token


def test_verify_email_flips_flag_once(service, db_session, last_code):
    user_id = service.register("a@x.com", "pw1")
    code = last_code("a@x.com")

    service.verify_email("a@x.com", code)
    user = db_session.get(User, user_id)
    assert user.is_email_verified is True
    assert user.email_verified_at is not None

    with pytest.raises(InvalidCodeError):
        service.verify_email("a@x.com", code)


def test_verify_email_unknown_address_is_invalid_code(service):
    with pytest.raises(InvalidCodeError):
        service.verify_email("nobody@x.com", "123456")


def test_verify_email_expired_code(service, db_session, last_code):
    user_id = service.register("a@x.com", "pw1")
    record = db_session.query(OneTimeCode).filter(OneTimeCode.user_id == user_id).one()
    record.expires_at = datetime.now(timezone.utc) - timedelta(minutes=1)
    db_session.commit()

    with pytest.raises(CodeExpiredError):
        service.verify_email("a@x.com", last_code("a@x.com"))


def test_resend_invalidates_first_code(service, sent_codes, monkeypatch):
    codes = iter(["111111", "222222"])
    monkeypatch.setattr(one_time_codes, "_generate_code", lambda: next(codes))

    service.register("a@x.com", "pw1")
    service.resend_verification("a@x.com")
    assert [c["code"] for c in sent_codes] == ["111111", "222222"]

    with pytest.raises(InvalidCodeError):
        service.verify_email("a@x.com", "111111")
    service.verify_email("a@x.com", "222222")


def test_resend_is_silent_for_unknown_and_verified(service, users, sent_codes):
    service.resend_verification("nobody@example.com")
    service.resend_verification("test@example.com")
    assert sent_codes == []


def test_verify_email_burns_code_after_repeated_wrong_guesses(service, last_code):
    service.register("a@x.com", "pw1")
    code = last_code("a@x.com")

    for _ in range(5):
        with pytest.raises(InvalidCodeError):
            service.verify_email("a@x.com", "not-the-code")

    with pytest.raises(InvalidCodeError):
        service.verify_email("a@x.com", code)

    # A resend issues a fresh, working code.
    service.resend_verification("a@x.com")
    service.verify_email("a@x.com", last_code("a@x.com"))


# -----------------------------
# Login
# -----------------------------
def test_login_failures_are_indistinguishable(service, users):
    with pytest.raises(InvalidCredentialsError) as unknown:
        service.login("nobody@example.com", TEST_PASSWORD)
    with pytest.raises(InvalidCredentialsError) as wrong:
        service.login("test@example.com", "wrong")
    assert unknown.value.message == wrong.value.message


def test_login_issues_access_and_refresh(service, db_session, users):
    user, _ = users
    tokens = service.login("TEST@example.com", TEST_PASSWORD, device_label="Firefox on Linux")

    claims = verify_access_token(tokens.access_token)
    assert claims.user_id == user.id
    assert claims.session_id == tokens.session_id

    row = db_session.get(DeviceSession, tokens.session_id)
    assert row.device_label == "Firefox on Linux"
    # Only the hash is stored.
    assert row.refresh_token_hash != tokens.refresh_token
    remaining = tokens.refresh_expires_at - datetime.now(timezone.utc)
    assert timedelta(days=29) < remaining <= timedelta(days=30)


def test_each_login_is_its_own_session(service, users):
    first = service.login("test@example.com", TEST_PASSWORD)
    second = service.login("test@example.com", TEST_PASSWORD)
    assert first.session_id != second.session_id
    assert len(service.list_sessions(users[0].id)) == 2


# -----------------------------
# Refresh
# -----------------------------
def test_refresh_far_from_expiry_does_not_rotate(service, users):
    tokens = service.login("test@example.com", TEST_PASSWORD)

    refreshed = service.refresh(tokens.refresh_token)
    assert refreshed.refresh_token is None
    assert refreshed.session_id == tokens.session_id
    assert verify_access_token(refreshed.access_token).user_id == users[0].id

    # Same refresh token keeps working.
    assert service.refresh(tokens.refresh_token).refresh_token is None


def test_refresh_near_expiry_rotates_and_old_token_dies(service, db_session, users):
    tokens = service.login("test@example.com", TEST_PASSWORD)
    _age_session(db_session, tokens.session_id, timedelta(days=3))

    rotated = service.refresh(tokens.refresh_token)
    assert rotated.refresh_token is not None
    assert rotated.refresh_token != tokens.refresh_token
    assert rotated.session_id == tokens.session_id
    assert rotated.refresh_expires_at - datetime.now(timezone.utc) > timedelta(days=29)

    with pytest.raises(InvalidTokenError):
        service.refresh(tokens.refresh_token)

    # Replay is treated as theft: the whole session is gone, new token included.
    with pytest.raises(InvalidTokenError):
        service.refresh(rotated.refresh_token)
    assert service.list_sessions(users[0].id) == []


def test_refresh_unknown_token(service, users):
    with pytest.raises(InvalidTokenError):
        service.refresh("not-a-real-token")
    with pytest.raises(InvalidTokenError):
        service.refresh("")


def test_refresh_expired_session(service, db_session, users):
    tokens = service.login("test@example.com", TEST_PASSWORD)
    _age_session(db_session, tokens.session_id, timedelta(seconds=-1))

    with pytest.raises(InvalidTokenError):
        service.refresh(tokens.refresh_token)


def _freeze_auth_clock(monkeypatch, db_session, session_id: int, remaining: timedelta) -> None:
    now = datetime.now(timezone.utc).replace(microsecond=0)
    row = db_session.get(DeviceSession, session_id)
    row.expires_at = now + remaining
    db_session.commit()
    monkeypatch.setattr("app.services.auth.utcnow", lambda: now)


def test_refresh_at_exact_threshold_does_not_rotate(service, db_session, users, monkeypatch):
    tokens = service.login("test@example.com", TEST_PASSWORD)
    _freeze_auth_clock(monkeypatch, db_session, tokens.session_id, timedelta(days=7))

    refreshed = service.refresh(tokens.refresh_token)
    assert refreshed.refresh_token is None


def test_refresh_just_under_threshold_rotates(service, db_session, users, monkeypatch):
    tokens = service.login("test@example.com", TEST_PASSWORD)
    _freeze_auth_clock(monkeypatch, db_session, tokens.session_id, timedelta(days=7) - timedelta(seconds=1))

    refreshed = service.refresh(tokens.refresh_token)
    assert refreshed.refresh_token is not None
    assert refreshed.refresh_token != tokens.refresh_token


def test_concurrent_refresh_only_one_wins(service, db_session, users, monkeypatch):
    """
    Interleave two refreshes of the same token: the second request runs to completion
    between the first one's lookup and its rotation write.
    """
    tokens = service.login("test@example.com", TEST_PASSWORD)
    _age_session(db_session, tokens.session_id, timedelta(days=3))

    real_rotate = session_store.rotate
    outcomes: dict[str, object] = {}

    def racing_rotate(*args, **kwargs):
        if "other" not in outcomes:
            outcomes["other"] = None
            outcomes["other"] = service.refresh(tokens.refresh_token)
        return real_rotate(*args, **kwargs)

    monkeypatch.setattr(session_store, "rotate", racing_rotate)

    with pytest.raises(InvalidTokenError):
        service.refresh(tokens.refresh_token)

    winner = outcomes["other"]
    assert winner.refresh_token is not None
    assert winner.refresh_token != tokens.refresh_token

    # The losing request is treated as a replay and the session is revoked.
    row = db_session.get(DeviceSession, tokens.session_id)
    assert row.revoked_at is not None


# -----------------------------
# Logout / sessions
# -----------------------------
def test_logout_revokes_and_is_idempotent(service, users):
    tokens = service.login("test@example.com", TEST_PASSWORD)

    service.logout(tokens.refresh_token)
    service.logout(tokens.refresh_token)
    service.logout("unknown")
    service.logout(None)

    with pytest.raises(InvalidTokenError):
        service.refresh(tokens.refresh_token)


def test_list_sessions_only_own(service, users):
    user_a, user_b = users
    a = service.login("test@example.com", TEST_PASSWORD, device_label="a-phone")
    service.login("other@example.com", TEST_PASSWORD, device_label="b-phone")

    summaries = service.list_sessions(user_a.id)
    assert [(s.session_id, s.device_label) for s in summaries] == [(a.session_id, "a-phone")]


def test_revoke_other_users_session_is_not_found(service, users):
    user_a, user_b = users
    b = service.login("other@example.com", TEST_PASSWORD)

    with pytest.raises(NotFoundError):
        service.revoke_session(user_a.id, b.session_id)
    with pytest.raises(NotFoundError):
        service.revoke_session(user_a.id, 999_999)

    # Untouched.
    assert service.refresh(b.refresh_token).session_id == b.session_id


def test_revoke_own_session(service, users):
    user_a, _ = users
    tokens = service.login("test@example.com", TEST_PASSWORD)
    service.revoke_session(user_a.id, tokens.session_id)

    with pytest.raises(InvalidTokenError):
        service.refresh(tokens.refresh_token)


def test_revoke_all_other_sessions(service, users):
    user_a, _ = users
    current = service.login("test@example.com", TEST_PASSWORD)
    other_1 = service.login("test@example.com", TEST_PASSWORD)
    other_2 = service.login("test@example.com", TEST_PASSWORD)

    assert service.revoke_other_sessions(user_a.id, current.session_id) == 2

    assert [s.session_id for s in service.list_sessions(user_a.id)] == [current.session_id]
    for tokens in (other_1, other_2):
        with pytest.raises(InvalidTokenError):
            service.refresh(tokens.refresh_token)
    service.refresh(current.refresh_token)


# -----------------------------
# Password reset / change
# -----------------------------
def test_password_reset_revokes_every_session(service, users, last_code):
    old_1 = service.login("test@example.com", TEST_PASSWORD)
    old_2 = service.login("test@example.com", TEST_PASSWORD)

    service.request_password_reset("test@example.com")
    service.reset_password("test@example.com", last_code("test@example.com", CodePurpose.PASSWORD_RESET), "new-pw")

    for tokens in (old_1, old_2):
        with pytest.raises(InvalidTokenError):
            service.refresh(tokens.refresh_token)

    with pytest.raises(InvalidCredentialsError):
        service.login("test@example.com", TEST_PASSWORD)
    assert service.login("test@example.com", "new-pw").access_token


def test_password_reset_code_is_single_use(service, users, last_code):
    service.request_password_reset("test@example.com")
    code = last_code("test@example.com", CodePurpose.PASSWORD_RESET)
    service.reset_password("test@example.com", code, "new-pw")

    with pytest.raises(InvalidCodeError):
        service.reset_password("test@example.com", code, "another-pw")


def test_password_reset_request_is_silent_for_unknown(service, sent_codes):
    service.request_password_reset("nobody@example.com")
    assert sent_codes == []
    with pytest.raises(InvalidCodeError):
        service.reset_password("nobody@example.com", "123456", "new-pw")


def test_password_reset_wrong_code_changes_nothing(service, users):
    service.request_password_reset("test@example.com")
    with pytest.raises(InvalidCodeError):
        service.reset_password("test@example.com", "not-the-code", "new-pw")
    assert service.login("test@example.com", TEST_PASSWORD).access_token


def test_change_password_keeps_current_session(service, users):
    user_a, _ = users
    current = service.login("test@example.com", TEST_PASSWORD)
    other = service.login("test@example.com", TEST_PASSWORD)

    with pytest.raises(InvalidCredentialsError):
        service.change_password(user_a.id, "wrong", "new-pw", current_session_id=current.session_id)

    service.change_password(user_a.id, TEST_PASSWORD, "new-pw", current_session_id=current.session_id)

    service.refresh(current.refresh_token)
    with pytest.raises(InvalidTokenError):
        service.refresh(other.refresh_token)


# -----------------------------
# Failure handling
# -----------------------------
def test_storage_failure_is_unavailable(service, users, monkeypatch):
    def broken_create(*args, **kwargs):
        raise OperationalError("INSERT INTO sessions", {}, Exception("database is locked"))

    monkeypatch.setattr(session_store, "create", broken_create)

    with pytest.raises(UnavailableError):
        service.login("test@example.com", TEST_PASSWORD)


def test_mail_is_sent_after_commit(db_session):
    from app.services.auth import AuthService

    seen: list[bool] = []

    def dispatch(to_email, code, purpose, expires_minutes):
        user = db_session.query(User).filter(User.email == to_email).first()
        seen.append(user is not None and not db_session.new)

    AuthService(db_session, dispatch_code=dispatch).register("a@x.com", "pw1")
    assert seen == [True]


# -----------------------------
# End-to-end scenario
# -----------------------------
def test_register_verify_login_refresh_rotate_scenario(service, db_session, monkeypatch):
    monkeypatch.setattr(one_time_codes, "_generate_code", lambda: "123456")

    service.register("a@x.com", "pw1")

    with pytest.raises(InvalidCodeError):
        service.verify_email("a@x.com", "000000")
    service.verify_email("a@x.com", "123456")

    t_a = service.login("a@x.com", "pw1")
    _age_session(db_session, t_a.session_id, timedelta(days=29))

    unchanged = service.refresh(t_a.refresh_token)
    assert unchanged.refresh_token is None

    _age_session(db_session, t_a.session_id, timedelta(days=6))
    rotated = service.refresh(t_a.refresh_token)
    t_b = rotated.refresh_token
    assert t_b is not None and t_b != t_a.refresh_token

    with pytest.raises(InvalidTokenError):
        service.refresh(t_a.refresh_token)
