from __future__ import annotations

from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "validation_error",
    "not_found",
    "server_error",
    "service_unavailable",
})

# Upper bound on request fields; the hasher enforces the configured limit
MAX_FIELD_LENGTH = 4096


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """Response envelope shared by every endpoint."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class LoginRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=256)
    password: str = Field(..., max_length=MAX_FIELD_LENGTH)

    @field_validator("username")
    @classmethod
    def _strip_username(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("username must not be blank")
        return stripped


class LoginResponse(BaseModel):
    subject_id: str
    access_token: str
    token_type: str = "bearer"
    expires_at: datetime
    csrf_token: str


class SessionResponse(BaseModel):
    subject_id: str
    state: str
    expires_at: Optional[datetime] = None


class PasswordChangeRequest(BaseModel):
    current_password: str = Field(..., max_length=MAX_FIELD_LENGTH)
    new_password: str = Field(..., max_length=MAX_FIELD_LENGTH)
