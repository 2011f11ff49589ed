from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from ticketdesk.service.errors import ErrorCode
from ticketdesk.storage.models import ApprovalStatus, Department, Role

_VALID_ERROR_CODES = frozenset(code.value for code in ErrorCode)


class CamelModel(BaseModel):
    """Snake_case in Python, camelCase on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


class ErrorBody(CamelModel):
    """Error envelope body with a stable code."""

    code: str
    message: str
    user_message: str
    details: Optional[Any] = None
    timestamp: datetime

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

    success: bool
    message: Optional[str] = None
    data: Optional[Any] = None
    error: Optional[Any] = None


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = unicodedata.normalize("NFKC", value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_password_strength(value: str) -> str:
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    return value


class LoginRequest(CamelModel):
    email: str
    password: str = Field(..., min_length=1, max_length=128)
    remember_me: bool = False

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class TokenRefreshRequest(CamelModel):
    refresh_token: str = Field(..., min_length=1, max_length=2048)


class LogoutRequest(CamelModel):
    session_id: Optional[str] = Field(default=None, max_length=64)
    all_devices: bool = False
    refresh_token: Optional[str] = Field(default=None, max_length=2048)


class RegisterRequest(CamelModel):
    name: str = Field(..., min_length=1, max_length=100)
    email: str
    password: str
    department: Optional[Department] = None
    is_head: bool = False

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("name must not be blank")
        return stripped


class RejectRequest(CamelModel):
    reason: str = Field(..., min_length=1, max_length=500)


class UserSummary(CamelModel):
    id: str
    name: str
    email: str
    role: Role
    department: Optional[Department] = None
    is_head: Optional[bool] = None


class LoginResponse(CamelModel):
    access_token: str
    refresh_token: str
    access_token_expiry: datetime
    refresh_token_expiry: datetime
    session_id: str
    remember_me: bool
    user: UserSummary


class RefreshResponse(CamelModel):
    access_token: str
    refresh_token: str
    access_token_expiry: datetime
    refresh_token_expiry: datetime
    session_id: str


class LogoutResponse(CamelModel):
    sessions_removed: int


class SessionEntry(CamelModel):
    id: str
    browser: str
    os: str
    device_type: str
    ip_address: str
    remember_me: bool
    created_at: datetime
    last_used_at: datetime
    expires_at: datetime
    is_current: bool


class SessionList(CamelModel):
    sessions: List[SessionEntry]
    total: int


class RegistrationStatusResponse(CamelModel):
    approval_status: ApprovalStatus
    rejection_reason: Optional[str] = None
    message: str


class AccountResponse(UserSummary):
    approval_status: ApprovalStatus
    rejection_reason: Optional[str] = None
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    created_at: datetime
