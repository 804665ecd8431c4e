import os

# Settings and the engine are built at import time; point them at test values first.
os.environ.setdefault("JWT_SECRET", "test_jwt_secret")
os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("EMAIL_ENABLED", "false")

from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.core import config as app_config
from app.core.base import Base
from app.core.security import hash_password

# Import models so they register with SQLAlchemy metadata.
from app.models.user import User  # noqa: F401
from app.models.one_time_code import OneTimeCode  # noqa: F401
from app.models.session import DeviceSession, RotatedRefreshToken  # noqa: F401

from app.core.database import get_db
from app.services.auth import AuthService

TEST_PASSWORD = "correct horse battery"


@pytest.fixture(scope="session")
def db_engine():
    # In-memory SQLite for fast, isolated tests.
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    return engine


@pytest.fixture()
def db_session(db_engine):
    # The in-memory DB persists across tests (StaticPool); reset schema per test.
    Base.metadata.drop_all(bind=db_engine)
    Base.metadata.create_all(bind=db_engine)

    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture(autouse=True)
def _reset_mutable_settings():
    """
    Tests sometimes tweak global settings (app_config.settings.*). Restore them after each test.
    """
    keys = [
        "ACCESS_TOKEN_EXPIRE_MINUTES",
        "REFRESH_TOKEN_EXPIRE_DAYS",
        "REFRESH_ROTATION_THRESHOLD_DAYS",
        "OTP_EXPIRE_MINUTES",
        "OTP_LENGTH",
        "OTP_MAX_ATTEMPTS",
        "EMAIL_ENABLED",
        "EMAIL_PROVIDER",
        "FROM_EMAIL",
        "RESEND_API_KEY",
    ]
    original = {k: getattr(app_config.settings, k) for k in keys}
    try:
        yield
    finally:
        for k, v in original.items():
            setattr(app_config.settings, k, v)


@pytest.fixture()
def sent_codes():
    """Captures one-time codes instead of mailing them: list of dicts (email, code, purpose)."""
    return []


@pytest.fixture()
def capture_dispatch(sent_codes):
    def _dispatch(to_email, code, purpose, expires_minutes):
        sent_codes.append(
            {"email": to_email, "code": code, "purpose": purpose, "expires_minutes": expires_minutes}
        )

    return _dispatch


@pytest.fixture()
def service(db_session, capture_dispatch):
    return AuthService(db_session, dispatch_code=capture_dispatch)


def _make_user(db_session, email: str, *, verified: bool = True) -> User:
    user = User(
        email=email,
        password_hash=hash_password(TEST_PASSWORD),
        is_email_verified=verified,
        email_verified_at=datetime.now(timezone.utc) if verified else None,
        password_changed_at=datetime.now(timezone.utc),
    )
    db_session.add(user)
    db_session.commit()
    db_session.refresh(user)
    return user


@pytest.fixture()
def users(db_session):
    """
    Two distinct verified users for ownership / isolation tests.
    """
    return _make_user(db_session, "test@example.com"), _make_user(db_session, "other@example.com")


@pytest.fixture()
def unverified_user(db_session):
    return _make_user(db_session, "pending@example.com", verified=False)


@pytest.fixture()
def app(db_session, capture_dispatch, monkeypatch):
    import app.main as main

    monkeypatch.setattr("app.dependencies.auth.deliver_one_time_code", capture_dispatch)

    fastapi_app = main.app

    def override_get_db():
        yield db_session

    fastapi_app.dependency_overrides[get_db] = override_get_db
    yield fastapi_app
    fastapi_app.dependency_overrides.clear()


@pytest.fixture()
def client(app):
    with TestClient(app) as c:
        yield c


@pytest.fixture()
def last_code(sent_codes):
    def _last_code(email: str, purpose=None) -> str:
        for item in reversed(sent_codes):
            if item["email"] == email and (purpose is None or item["purpose"] == purpose):
                return item["code"]
        raise AssertionError(f"no code sent to {email}")

    return _last_code
