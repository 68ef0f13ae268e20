from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from harmonia.storage.models import Account, Role

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error payload with a stable, machine-readable code."""

    code: str
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
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = unicodedata.normalize("NFKC", value.strip().lower())
    if not 3 <= len(normalized) <= 254:
        raise ValueError("invalid email address length")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain or len(local) > 64:
        raise ValueError("invalid email address")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


class _EmailBody(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_body_email(cls, value: str) -> str:
        return _validate_email(value)


class RegisterRequest(_EmailBody):
    password: str = Field(..., min_length=8, max_length=128)
    first_name: str = Field(..., min_length=3, max_length=20)
    last_name: str = Field(..., min_length=3, max_length=20)


class LoginRequest(_EmailBody):
    password: str = Field(..., max_length=128)


class VerifyOtpRequest(_EmailBody):
    code: str = Field(..., min_length=4, max_length=10, pattern=r"^\d+$")


class SendOtpRequest(_EmailBody):
    pass


class TokenRefreshRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=4096)


class ChangePasswordRequest(BaseModel):
    old_password: str = Field(..., max_length=128)
    new_password: str = Field(..., min_length=8, max_length=128)


class AccountIdsRequest(BaseModel):
    account_ids: List[str] = Field(..., min_length=1, max_length=100)


class UpdateRolesRequest(AccountIdsRequest):
    roles: List[Role] = Field(..., min_length=1)

    @field_validator("roles", mode="before")
    @classmethod
    def _upper_roles(cls, value: Any) -> Any:
        if isinstance(value, list):
            return [v.upper() if isinstance(v, str) else v for v in value]
        return value


class AccountResponse(BaseModel):
    id: str
    email: str
    first_name: str
    last_name: str
    roles: List[Role]
    is_verified: bool
    created_at: datetime

    @classmethod
    def from_account(cls, account: Account) -> "AccountResponse":
        return cls(
            id=account.id,
            email=account.email,
            first_name=account.first_name,
            last_name=account.last_name,
            roles=list(account.roles),
            is_verified=account.is_verified,
            created_at=account.created_at,
        )


class AccountListResponse(BaseModel):
    items: List[AccountResponse]
    total: int
    limit: int
    offset: int


class AccountUpdateResponse(BaseModel):
    updated: List[AccountResponse]
    missing: List[str] = Field(default_factory=list)


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    access_expires_at: int
    refresh_expires_at: int


class AuthResponse(TokenResponse):
    account: AccountResponse


class RegisterResponse(BaseModel):
    account_id: str
    message: str = "Account created; check your email for the verification code"


class MessageResponse(BaseModel):
    message: str
