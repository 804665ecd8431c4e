# app/dependencies/auth.py
from __future__ import annotations

from fastapi import BackgroundTasks, Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.core.errors import AuthError, UnavailableError
from app.services.auth import AuthService, Principal
from app.services.email import deliver_one_time_code

bearer_scheme = HTTPBearer(auto_error=False)


def _unauthorized(detail: str = "Could not validate credentials") -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def get_auth_service(background: BackgroundTasks, db: Session = Depends(get_db)) -> AuthService:
    """
    Codes are mailed from a background task so the response never waits on the provider.
    """

    def dispatch(to_email, code, purpose, expires_minutes) -> None:
        background.add_task(deliver_one_time_code, to_email, code, purpose, expires_minutes)

    return AuthService(db, dispatch_code=dispatch)


def get_current_principal(
    creds: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    service: AuthService = Depends(get_auth_service),
) -> Principal:
    """
    Validates:
      - Authorization: Bearer <token>
      - token signature + exp
      - user exists
    """
    if not creds or creds.scheme.lower() != "bearer":
        raise _unauthorized("Missing Authorization header")

    try:
        return service.authenticate(creds.credentials)
    except UnavailableError:
        # Storage trouble is not a bad token; let the 503 handler answer.
        raise
    except AuthError as e:
        raise _unauthorized(e.message)
