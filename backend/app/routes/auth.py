# app/routes/auth.py
from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response

from app.dependencies.auth import get_auth_service, get_current_principal
from app.schemas.auth import (
    ChangePasswordIn,
    EmailIn,
    LoginIn,
    MeOut,
    MessageOut,
    PasswordResetIn,
    RefreshIn,
    RegisterIn,
    TokenOut,
    VerifyEmailIn,
)
from app.services.auth import AuthService, Principal
from app.services.refresh_cookies import (
    clear_refresh_cookie,
    read_refresh_cookie,
    set_refresh_cookie,
)

router = APIRouter(prefix="/auth", tags=["auth"])

_ENUMERATION_SAFE_MESSAGE = "If that email exists, a code was sent."


def _presented_refresh_token(request: Request, payload: RefreshIn | None) -> str | None:
    if payload is not None and payload.refresh_token:
        return payload.refresh_token
    return read_refresh_cookie(request)


@router.post("/register", response_model=MessageOut)
def register(payload: RegisterIn, service: AuthService = Depends(get_auth_service)):
    service.register(payload.email, payload.password)
    return {"message": "Registration successful. Please verify your email."}


@router.post("/verify", response_model=MessageOut)
def verify_email(payload: VerifyEmailIn, service: AuthService = Depends(get_auth_service)):
    service.verify_email(payload.email, payload.code)
    return {"message": "Email verified successfully. You can now log in."}


@router.post("/resend-verification", response_model=MessageOut)
def resend_verification(payload: EmailIn, service: AuthService = Depends(get_auth_service)):
    service.resend_verification(payload.email)
    return {"message": _ENUMERATION_SAFE_MESSAGE}


@router.post("/login", response_model=TokenOut)
def login(
    payload: LoginIn,
    request: Request,
    response: Response,
    service: AuthService = Depends(get_auth_service),
):
    device_label = payload.device_label or request.headers.get("user-agent")
    tokens = service.login(payload.email, payload.password, device_label=device_label)
    set_refresh_cookie(response, tokens.refresh_token, tokens.refresh_expires_at)
    return {
        "access_token": tokens.access_token,
        "token_type": "bearer",
        "access_expires_at": tokens.access_expires_at,
        "refresh_token": tokens.refresh_token,
        "refresh_expires_at": tokens.refresh_expires_at,
        "session_id": tokens.session_id,
    }


@router.post("/refresh", response_model=TokenOut)
def refresh(
    request: Request,
    response: Response,
    payload: RefreshIn | None = None,
    service: AuthService = Depends(get_auth_service),
):
    """
    Exchange a refresh token (cookie or body) for a new access token.
    A new refresh token is issued only when the session is close to expiry.
    """
    tokens = service.refresh(_presented_refresh_token(request, payload))
    if tokens.refresh_token is not None:
        set_refresh_cookie(response, tokens.refresh_token, tokens.refresh_expires_at)
    return {
        "access_token": tokens.access_token,
        "token_type": "bearer",
        "access_expires_at": tokens.access_expires_at,
        "refresh_token": tokens.refresh_token,
        "refresh_expires_at": tokens.refresh_expires_at,
        "session_id": tokens.session_id,
    }


@router.post("/logout", response_model=MessageOut)
def logout(
    request: Request,
    response: Response,
    payload: RefreshIn | None = None,
    service: AuthService = Depends(get_auth_service),
):
    service.logout(_presented_refresh_token(request, payload))
    clear_refresh_cookie(response)
    return {"message": "Logged out"}


@router.post("/password-reset/request", response_model=MessageOut)
def request_password_reset(payload: EmailIn, service: AuthService = Depends(get_auth_service)):
    service.request_password_reset(payload.email)
    return {"message": _ENUMERATION_SAFE_MESSAGE}


@router.post("/password-reset/confirm", response_model=MessageOut)
def reset_password(payload: PasswordResetIn, service: AuthService = Depends(get_auth_service)):
    service.reset_password(payload.email, payload.code, payload.new_password)
    return {"message": "Password updated. Please log in again."}


@router.get("/me", response_model=MeOut)
def me(principal: Principal = Depends(get_current_principal)):
    user = principal.user
    return {
        "id": user.id,
        "email": user.email,
        "is_email_verified": bool(user.is_email_verified),
        "session_id": principal.session_id,
    }


@router.post("/change-password", response_model=MessageOut)
def change_password(
    payload: ChangePasswordIn,
    principal: Principal = Depends(get_current_principal),
    service: AuthService = Depends(get_auth_service),
):
    service.change_password(
        principal.user.id,
        payload.current_password,
        payload.new_password,
        current_session_id=principal.session_id,
    )
    return {"message": "Password updated"}
