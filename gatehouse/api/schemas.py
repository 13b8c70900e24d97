from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from gatehouse.logging import get_correlation_id

MAX_STRING_LENGTH = 1024

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
    "configuration_error",
    "invalid_credentials",
    "invalid_password",
    "invalid_code",
    "account_locked",
    "account_disabled",
    "password_change_required",
})


class ErrorBody(BaseModel):
    """Error envelope body with a stable machine-readable code."""

    code: str
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


def _request_id() -> str:
    return get_correlation_id() or str(uuid4())


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=_request_id)


class RedirectData(BaseModel):
    redirect: str
    notice: Optional[str] = None


# -- auth ------------------------------------------------------------------


class LoginRequest(BaseModel):
    username: str = Field(..., max_length=64)
    password: str = Field(..., max_length=MAX_STRING_LENGTH)


class CodeRequest(BaseModel):
    code: str = Field(..., max_length=64)


class RegisterRequest(BaseModel):
    username: str = Field(..., max_length=64)
    email: str = Field(..., max_length=320)
    password: str = Field(..., max_length=MAX_STRING_LENGTH)
    first_name: Optional[str] = Field(default=None, max_length=100)
    last_name: Optional[str] = Field(default=None, max_length=100)


class PasswordResetRequest(BaseModel):
    email: str = Field(..., max_length=320)


class PasswordResetConfirm(BaseModel):
    token: str = Field(..., max_length=256)
    new_password: str = Field(..., max_length=MAX_STRING_LENGTH)


class EmailVerificationRequest(BaseModel):
    token: str = Field(..., max_length=256)


# -- self service ----------------------------------------------------------


class PasswordChangeRequest(BaseModel):
    current_password: str = Field(..., max_length=MAX_STRING_LENGTH)
    new_password: str = Field(..., max_length=MAX_STRING_LENGTH)


class ProfileUpdateRequest(BaseModel):
    username: Optional[str] = Field(default=None, max_length=64)
    first_name: Optional[str] = Field(default=None, max_length=100)
    last_name: Optional[str] = Field(default=None, max_length=100)


class EmailChangeRequest(BaseModel):
    new_email: str = Field(..., max_length=320)
    password: str = Field(..., max_length=MAX_STRING_LENGTH)


class PasswordConfirmRequest(BaseModel):
    password: str = Field(..., max_length=MAX_STRING_LENGTH)


class TwoFactorSetupResponse(BaseModel):
    secret: str
    uri: str
    qr_code: str


class BackupCodesResponse(BaseModel):
    backup_codes: List[str]


class SessionResponse(BaseModel):
    id: str
    created_at: datetime
    expires_at: datetime
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    current: bool = False


# -- admin -----------------------------------------------------------------


class AdminUserCreateRequest(BaseModel):
    username: str = Field(..., max_length=64)
    email: str = Field(..., max_length=320)
    password: str = Field(..., max_length=MAX_STRING_LENGTH)
    first_name: Optional[str] = Field(default=None, max_length=100)
    last_name: Optional[str] = Field(default=None, max_length=100)
    require_password_change: bool = True


class AdminUserUpdateRequest(BaseModel):
    username: Optional[str] = Field(default=None, max_length=64)
    email: Optional[str] = Field(default=None, max_length=320)
    first_name: Optional[str] = Field(default=None, max_length=100)
    last_name: Optional[str] = Field(default=None, max_length=100)
    require_password_change: Optional[bool] = None
    disabled: Optional[bool] = None
    disabled_reason: Optional[str] = Field(default=None, max_length=500)


class LockRequest(BaseModel):
    permanent: bool = True


class RoleCreateRequest(BaseModel):
    name: str = Field(..., max_length=50)
    description: Optional[str] = Field(default=None, max_length=500)
    permissions: List[str] = Field(default_factory=list, max_length=100)


class RoleUpdateRequest(BaseModel):
    permissions: Optional[List[str]] = Field(default=None, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)


class RoleAssignRequest(BaseModel):
    role_id: str = Field(..., max_length=64)


class NodePermissionRequest(BaseModel):
    node_path: str = Field(..., max_length=512)
    permissions: List[str] = Field(..., min_length=1, max_length=100)
    expires_at: Optional[datetime] = None


class ActivityCleanupRequest(BaseModel):
    older_than_days: int = Field(default=90, ge=1, le=3650)


class ConfigUpdateRequest(BaseModel):
    value: Any


class ConfigItem(BaseModel):
    key: str
    type: str
    value: Any
    default: Any
    description: str
    category: str
    is_default: bool


class ActivityStatsResponse(BaseModel):
    total: int
    successful: int
    failed: int
    by_category: Dict[str, int]
    by_severity: Dict[str, int]
