from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

_VALID_ERROR_CODES = frozenset({
    "validation_error",
    "conflict",
    "unauthorized",
    "token_expired",
    "token_revoked",
    "invalid_token",
    "forbidden",
    "not_found",
    "rate_limited",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable, machine-readable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """Uniform API response wrapper."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


# Shape and length rules live in the service layer so that direct callers and
# HTTP callers get the same errors; the request models only bound sizes.


class RegisterRequest(BaseModel):
    email: str = Field(..., max_length=320)
    name: str = Field(..., max_length=200)
    password: str = Field(..., max_length=1024)


class LoginRequest(BaseModel):
    email: str = Field(..., max_length=320)
    password: str = Field(..., max_length=1024)


class ProfileUpdateRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: Optional[str] = Field(default=None, max_length=200)
    profile_image_url: Optional[str] = Field(default=None, max_length=4096)


class RoleUpdateRequest(BaseModel):
    role: str = Field(..., max_length=32)


class UserResponse(BaseModel):
    id: str
    email: str
    name: str
    role: str
    profile_image_url: Optional[str] = None
    email_verified: bool = False
    created_at: datetime
    last_login: Optional[datetime] = None


class AdminUserResponse(UserResponse):
    is_active: bool = True


class UserListResponse(BaseModel):
    items: List[AdminUserResponse]


class AuthResponse(BaseModel):
    message: str
    user: UserResponse
    token: str


class TokenUserResponse(BaseModel):
    id: str
    email: str
    role: str


class VerifyResponse(BaseModel):
    valid: bool = True
    user: TokenUserResponse


class AuthStatusResponse(BaseModel):
    authenticated: bool
    user: Optional[TokenUserResponse] = None


class LogoutResponse(BaseModel):
    message: str
    revoked: int


class SessionResponse(BaseModel):
    id: str
    created_at: datetime
    expires_at: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    revoked_at: Optional[datetime] = None


class SessionListResponse(BaseModel):
    items: List[SessionResponse]


class ProfileUpdateResponse(BaseModel):
    message: str
    user: UserResponse
