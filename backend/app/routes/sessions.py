# app/routes/sessions.py
from __future__ import annotations

from fastapi import APIRouter, Depends

from app.dependencies.auth import get_auth_service, get_current_principal
from app.schemas.auth import MessageOut, RevokedOut, SessionOut
from app.services.auth import AuthService, Principal

router = APIRouter(prefix="/auth/sessions", tags=["sessions"])


@router.get("", response_model=list[SessionOut])
def list_sessions(
    principal: Principal = Depends(get_current_principal),
    service: AuthService = Depends(get_auth_service),
):
    return [
        {
            "session_id": s.session_id,
            "device_label": s.device_label,
            "last_used_at": s.last_used_at,
            "expires_at": s.expires_at,
            "current": s.session_id == principal.session_id,
        }
        for s in service.list_sessions(principal.user.id)
    ]


@router.post("/revoke-others", response_model=RevokedOut)
def revoke_other_sessions(
    principal: Principal = Depends(get_current_principal),
    service: AuthService = Depends(get_auth_service),
):
    revoked = service.revoke_other_sessions(principal.user.id, principal.session_id)
    return {"message": "Other sessions revoked", "revoked": revoked}


@router.delete("/{session_id}", response_model=MessageOut)
def revoke_session(
    session_id: int,
    principal: Principal = Depends(get_current_principal),
    service: AuthService = Depends(get_auth_service),
):
    service.revoke_session(principal.user.id, session_id)
    return {"message": "Session revoked"}
