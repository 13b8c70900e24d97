from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Sequence, Tuple

from gatehouse.logging import get_logger, sanitize_error_message
from gatehouse.storage.models import ActivityLog, new_id, utcnow
from gatehouse.storage.query import Eq, Gte, Lt, Lte, Predicate, QuerySpec

if TYPE_CHECKING:
    from gatehouse.storage.protocol import AuthStore

logger = get_logger(__name__)


class ActivityCategory(str, Enum):
    AUTH = "auth"
    USER = "user"
    ROLE = "role"
    PERMISSION = "permission"
    SECURITY = "security"
    SYSTEM = "system"
    API = "api"
    DATABASE = "database"


class LogSeverity(str, Enum):
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class Actions:
    LOGIN = "user.login"
    LOGIN_FAILED = "user.login.failed"
    LOGOUT = "user.logout"
    REGISTER = "user.register"
    PASSWORD_RESET_REQUEST = "user.password_reset.request"
    PASSWORD_RESET_COMPLETE = "user.password_reset.complete"
    PASSWORD_CHANGE = "user.password.change"
    EMAIL_VERIFY = "user.email.verify"
    USER_CREATE = "user.create"
    USER_UPDATE = "user.update"
    USER_DELETE = "user.delete"
    USER_LOCK = "user.lock"
    USER_UNLOCK = "user.unlock"
    TWO_FACTOR_SETUP_START = "user.2fa.setup.start"
    TWO_FACTOR_ENABLE = "user.2fa.enable"
    TWO_FACTOR_DISABLE = "user.2fa.disable"
    TWO_FACTOR_CHALLENGE = "user.2fa.challenge"
    TWO_FACTOR_VERIFY_FAILED = "user.2fa.verify.failed"
    TWO_FACTOR_BACKUP_USED = "user.2fa.backup.used"
    TWO_FACTOR_BACKUP_FAILED = "user.2fa.backup.failed"
    TWO_FACTOR_BACKUP_REGENERATE = "user.2fa.backup.regenerate"
    ROLE_CREATE = "role.create"
    ROLE_UPDATE = "role.update"
    ROLE_DELETE = "role.delete"
    ROLE_ASSIGN = "role.assign"
    ROLE_REVOKE = "role.revoke"
    PERMISSION_GRANT = "permission.grant"
    PERMISSION_REVOKE = "permission.revoke"
    RATE_LIMIT_CHECK = "security.rate_limit.check"
    RATE_LIMIT_EXCEEDED = "security.rate_limit.exceeded"
    ACCOUNT_LOCKED = "security.account.locked"
    SUSPICIOUS_ACTIVITY = "security.suspicious"
    CONFIG_UPDATE = "system.config.update"
    SYSTEM_START = "system.start"
    SYSTEM_ERROR = "system.error"


@dataclass
class ActivityEvent:
    """What a caller hands to :meth:`ActivityLogService.log`."""

    action: str
    category: ActivityCategory | str
    severity: LogSeverity | str = LogSeverity.INFO
    success: bool = True
    user_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    message: Optional[str] = None
    error_message: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    duration_ms: Optional[int] = None


@dataclass
class ActivityFilter:
    user_id: Optional[str] = None
    ip_address: Optional[str] = None
    action: Optional[str] = None
    category: Optional[str] = None
    severity: Optional[str] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    success: Optional[bool] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    limit: int = 50
    offset: int = 0

    def predicates(self) -> List[Predicate]:
        found: List[Predicate] = []
        for name in (
            "user_id",
            "ip_address",
            "action",
            "category",
            "severity",
            "resource_type",
            "resource_id",
            "success",
        ):
            value = getattr(self, name)
            if value is not None:
                found.append(Eq(name, value.value if isinstance(value, Enum) else value))
        if self.start_date is not None:
            found.append(Gte("created_at", self.start_date))
        if self.end_date is not None:
            found.append(Lte("created_at", self.end_date))
        return found


def _enum_value(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


class ActivityLogService:
    """Audit sink.

    ``log`` never raises: a failing store is reported through structlog and
    the primary operation carries on.
    """

    def __init__(
        self, store: "AuthStore", *, clock: Optional[Callable[[], datetime]] = None
    ) -> None:
        self.store = store
        self._clock = clock or utcnow

    def _now(self) -> datetime:
        return self._clock()

    def _entry(self, event: ActivityEvent) -> ActivityLog:
        return ActivityLog(
            id=new_id(),
            action=event.action,
            category=_enum_value(event.category),
            severity=_enum_value(event.severity),
            success=event.success,
            created_at=self._now(),
            user_id=event.user_id,
            ip_address=event.ip_address,
            user_agent=event.user_agent,
            resource_type=event.resource_type,
            resource_id=event.resource_id,
            message=event.message,
            error_message=event.error_message,
            metadata=dict(event.metadata or {}),
            duration_ms=event.duration_ms,
        )

    async def log(self, event: ActivityEvent) -> Optional[str]:
        entry = self._entry(event)
        try:
            return self.store.add_activity(entry)
        except Exception as exc:
            logger.error(
                "activity_log_write_failed",
                action=event.action,
                error=sanitize_error_message(str(exc)),
            )
            return None

    async def log_if_below(
        self,
        event: ActivityEvent,
        predicates: Sequence[Predicate],
        limit: int,
        *,
        lock_key: str,
    ) -> Tuple[bool, int]:
        """Append ``event`` only while fewer than ``limit`` entries match.

        Counting and appending happen in one store operation serialized on
        ``lock_key``. Returns whether the entry was written and the count seen
        before it. Unlike :meth:`log`, store errors propagate.
        """
        return self.store.add_activity_if_below(
            self._entry(event), predicates, limit, lock_key=lock_key
        )

    async def log_success(
        self, action: str, category: ActivityCategory, **kwargs: Any
    ) -> Optional[str]:
        return await self.log(ActivityEvent(action=action, category=category, success=True, **kwargs))

    async def log_failure(
        self,
        action: str,
        category: ActivityCategory,
        error_message: Optional[str] = None,
        **kwargs: Any,
    ) -> Optional[str]:
        kwargs.setdefault("severity", LogSeverity.WARNING)
        return await self.log(
            ActivityEvent(
                action=action,
                category=category,
                success=False,
                error_message=error_message,
                **kwargs,
            )
        )

    async def log_security(
        self, action: str, severity: LogSeverity = LogSeverity.WARNING, **kwargs: Any
    ) -> Optional[str]:
        kwargs.setdefault("success", True)
        return await self.log(
            ActivityEvent(action=action, category=ActivityCategory.SECURITY, severity=severity, **kwargs)
        )

    async def log_config_change(
        self, key: str, previous: Any, value: Any, updated_by: Optional[str]
    ) -> Optional[str]:
        return await self.log_success(
            Actions.CONFIG_UPDATE,
            ActivityCategory.SYSTEM,
            user_id=updated_by,
            resource_type="config",
            resource_id=key,
            metadata={"previous": previous, "value": value},
        )

    async def query(self, filters: Optional[ActivityFilter] = None) -> List[ActivityLog]:
        filters = filters or ActivityFilter()
        spec = QuerySpec.of(filters.predicates(), limit=filters.limit, offset=filters.offset)
        return self.store.query_activity(spec)

    async def count(self, filters: Optional[ActivityFilter] = None) -> int:
        filters = filters or ActivityFilter()
        return self.store.count_activity(filters.predicates())

    async def recent_for_user(self, user_id: str, limit: int = 20) -> List[ActivityLog]:
        return await self.query(ActivityFilter(user_id=user_id, limit=limit))

    async def stats(self, filters: Optional[ActivityFilter] = None) -> Dict[str, Any]:
        filters = filters or ActivityFilter()
        predicates = filters.predicates()
        total = self.store.count_activity(predicates)
        successful = self.store.count_activity(predicates + [Eq("success", True)])
        return {
            "total": total,
            "successful": successful,
            "failed": total - successful,
            "by_category": self.store.group_activity(predicates, "category"),
            "by_severity": self.store.group_activity(predicates, "severity"),
        }

    async def cleanup(self, older_than_days: int = 90) -> int:
        if older_than_days < 1:
            raise ValueError("older_than_days must be positive")
        cutoff = self._now() - timedelta(days=older_than_days)
        removed = self.store.delete_activity([Lt("created_at", cutoff)])
        logger.info("activity_log_cleanup", removed=removed, older_than_days=older_than_days)
        return removed
