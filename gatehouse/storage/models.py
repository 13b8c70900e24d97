from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class User:
    id: str
    username: str
    email: str
    password_hash: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    # Plain base32 here; stores encrypt it at rest
    two_factor_secret: Optional[str] = None
    two_factor_enabled: bool = False
    two_factor_backup_codes: List[str] = field(default_factory=list)
    is_locked: bool = False
    locked_at: Optional[datetime] = None
    # None while is_locked means an administrator lock with no expiry
    locked_until: Optional[datetime] = None
    failed_login_attempts: int = 0
    last_failed_login: Optional[datetime] = None
    require_password_change: bool = False
    email_verified: bool = False
    email_verified_at: Optional[datetime] = None
    is_disabled: bool = False
    disabled_reason: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def public_dict(self) -> Dict[str, Any]:
        """Fields safe to hand to a client; no hashes, secrets or codes."""
        return {
            "id": self.id,
            "username": self.username,
            "email": self.email,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "two_factor_enabled": self.two_factor_enabled,
            "email_verified": self.email_verified,
            "require_password_change": self.require_password_change,
            "is_locked": self.is_locked,
            "locked_until": self.locked_until.isoformat() if self.locked_until else None,
            "is_disabled": self.is_disabled,
            "created_at": self.created_at.isoformat(),
        }


# Columns a caller may change through ``update_user``
USER_MUTABLE_FIELDS = frozenset(
    {
        "username",
        "email",
        "password_hash",
        "first_name",
        "last_name",
        "two_factor_secret",
        "two_factor_enabled",
        "two_factor_backup_codes",
        "is_locked",
        "locked_at",
        "locked_until",
        "failed_login_attempts",
        "last_failed_login",
        "require_password_change",
        "email_verified",
        "email_verified_at",
        "is_disabled",
        "disabled_reason",
    }
)


@dataclass
class Session:
    id: str
    user_id: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None

    @classmethod
    def new(
        cls,
        session_id: str,
        user_id: str,
        *,
        now: datetime,
        lifetime: timedelta,
        user_agent: str | None = None,
        ip_address: str | None = None,
    ) -> "Session":
        return cls(
            id=session_id,
            user_id=user_id,
            created_at=now,
            expires_at=now + lifetime,
            user_agent=user_agent,
            ip_address=ip_address,
        )

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


@dataclass
class Role:
    id: str
    name: str
    description: Optional[str] = None
    permissions: List[str] = field(default_factory=list)
    is_system_role: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class UserRole:
    id: str
    user_id: str
    role_id: str
    assigned_at: datetime = field(default_factory=utcnow)
    assigned_by: Optional[str] = None


@dataclass
class NodePermission:
    id: str
    user_id: str
    node_path: str
    permissions: List[str] = field(default_factory=list)
    granted_at: datetime = field(default_factory=utcnow)
    granted_by: Optional[str] = None
    expires_at: Optional[datetime] = None

    def is_active(self, now: datetime) -> bool:
        return self.expires_at is None or now < self.expires_at


TOKEN_PURPOSE_PASSWORD_RESET = "password_reset"
TOKEN_PURPOSE_EMAIL_VERIFICATION = "email_verification"


@dataclass
class AuthToken:
    """Single-use token row; only the SHA-256 of the raw token is kept."""

    id: str
    user_id: str
    purpose: str
    token_hash: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class ActivityLog:
    id: str
    action: str
    category: str
    severity: str = "info"
    success: bool = True
    created_at: datetime = field(default_factory=utcnow)
    user_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    message: Optional[str] = None
    error_message: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    duration_ms: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "action": self.action,
            "category": self.category,
            "severity": self.severity,
            "success": self.success,
            "created_at": self.created_at.isoformat(),
            "user_id": self.user_id,
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "resource_type": self.resource_type,
            "resource_id": self.resource_id,
            "message": self.message,
            "error_message": self.error_message,
            "metadata": dict(self.metadata),
            "duration_ms": self.duration_ms,
        }


@dataclass
class ConfigValue:
    key: str
    value: str
    value_type: str
    updated_at: datetime = field(default_factory=utcnow)
    updated_by: Optional[str] = None
