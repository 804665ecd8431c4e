# app/schemas/auth.py
from datetime import datetime

from pydantic import BaseModel, EmailStr, Field


class RegisterIn(BaseModel):
    email: EmailStr
    password: str = Field(min_length=1, max_length=128)


class LoginIn(BaseModel):
    email: EmailStr
    password: str
    device_label: str | None = Field(default=None, max_length=255)


class VerifyEmailIn(BaseModel):
    email: EmailStr
    code: str = Field(min_length=1, max_length=32)


class EmailIn(BaseModel):
    email: EmailStr


class PasswordResetIn(BaseModel):
    email: EmailStr
    code: str = Field(min_length=1, max_length=32)
    new_password: str = Field(min_length=1, max_length=128)


class ChangePasswordIn(BaseModel):
    current_password: str
    new_password: str = Field(min_length=1, max_length=128)


class RefreshIn(BaseModel):
    # Optional: browsers send the HttpOnly cookie instead.
    refresh_token: str | None = None


class TokenOut(BaseModel):
    access_token: str
    token_type: str = "bearer"
    access_expires_at: datetime
    # Only present when a new refresh token was issued (login or rotation).
    refresh_token: str | None = None
    refresh_expires_at: datetime
    session_id: int


class MessageOut(BaseModel):
    message: str


class MeOut(BaseModel):
    id: int
    email: str
    is_email_verified: bool
    session_id: int | None = None


class SessionOut(BaseModel):
    session_id: int
    device_label: str | None = None
    last_used_at: datetime
    expires_at: datetime
    current: bool = False


class RevokedOut(BaseModel):
    message: str
    revoked: int
