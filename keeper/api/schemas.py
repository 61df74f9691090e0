from __future__ import annotations

from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from keeper.logging import get_correlation_id
from keeper.service.auth import MAX_PASSWORD_LENGTH, MAX_USERNAME_LENGTH, normalize_username
from keeper.service.otp import CHALLENGE_LENGTH


class ErrorBody(BaseModel):
    code: str
    message: str
    details: Optional[dict[str, Any] | list[Any]] = None


class Envelope(BaseModel):
    """API envelope format."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: get_correlation_id() or str(uuid4()))


class ChallengeRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=MAX_USERNAME_LENGTH)

    @field_validator("username")
    @classmethod
    def _validate_username(cls, value: str) -> str:
        return normalize_username(value)


class ProfileRequest(ChallengeRequest):
    password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)


class SignInRequest(ProfileRequest):
    challenge: str = Field(..., max_length=4 * CHALLENGE_LENGTH)


class RefreshRequest(BaseModel):
    refresh_token: str = Field(..., max_length=2048)


class ChallengeResponse(BaseModel):
    challenge: str


class TokenResponse(BaseModel):
    token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_at: datetime


class AccountResponse(BaseModel):
    id: int
    username: str
    account_type: str
    role: str
    created_at: datetime
    role_changed_at: Optional[datetime] = None
    updated_at: datetime


__all__ = [
    "ErrorBody",
    "Envelope",
    "ChallengeRequest",
    "ProfileRequest",
    "SignInRequest",
    "RefreshRequest",
    "ChallengeResponse",
    "TokenResponse",
    "AccountResponse",
]
