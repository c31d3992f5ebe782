from __future__ import annotations

from datetime import datetime
from typing import Any, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "validation_error",
    "conflict",
    "upstream_timeout",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(f"unknown error code: {value}")
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class LoginRequest(BaseModel):
    login: str = Field(..., min_length=1, max_length=320)
    password: str = Field(..., min_length=1, max_length=1024)
    mode: Literal["token", "session"] = "token"

    @field_validator("login")
    @classmethod
    def _normalize_login(cls, value: str) -> str:
        return value.strip().lower()


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., max_length=4096)


class LogoutRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=4096)


class AuthResponse(BaseModel):
    subject: str
    mode: Literal["token", "session"]
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    token_type: Optional[str] = None
    expires_at: Optional[datetime] = None
    refresh_expires_at: Optional[datetime] = None
    csrf_token: Optional[str] = None
    role: Optional[str] = None


class CsrfResponse(BaseModel):
    csrf_token: str


class PrincipalResponse(BaseModel):
    subject: str
    via: Literal["token", "session"]
    role: Optional[str] = None
    claims: dict[str, Any] = Field(default_factory=dict)
