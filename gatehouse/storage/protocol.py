from __future__ import annotations

from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Protocol, Sequence, Tuple

from gatehouse.storage.models import (
    ActivityLog,
    AuthToken,
    ConfigValue,
    NodePermission,
    Role,
    Session,
    User,
    UserRole,
)
from gatehouse.storage.query import Predicate, QuerySpec


class AuthStore(Protocol):
    """Durable store contract shared by :class:`MemoryStore` and :class:`PostgresStore`.

    Every method reads or writes the backing store directly; nothing here is
    cached across calls. Methods documented as atomic must hold under
    concurrent callers without an application-level read-modify-write.
    """

    # users
    def create_user(
        self,
        username: str,
        email: str,
        password_hash: Optional[str],
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        email_verified: bool = False,
        require_password_change: bool = False,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_username(self, username: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def list_users(self, limit: int = 100, offset: int = 0) -> List[User]: ...

    def update_user(self, user_id: str, **fields) -> Optional[User]: ...

    def delete_user(self, user_id: str) -> bool: ...

    def register_failed_login(
        self,
        user_id: str,
        *,
        now: datetime,
        reset_after: timedelta,
        max_attempts: int,
        lock_duration: timedelta,
    ) -> Optional[Tuple[User, bool]]:
        """Atomically reset-if-stale, increment, and lock at the threshold.

        Returns the updated user and whether this call is the one that locked it.
        """
        ...

    def list_locked_users(self) -> List[User]: ...

    def remove_backup_code(self, user_id: str, code_hash: str) -> Optional[int]:
        """Atomically drop one stored hash; remaining count, or None if already gone."""
        ...

    # sessions
    def create_session(self, session: Session) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def extend_session(
        self, session_id: str, *, expires_at: datetime, now: datetime
    ) -> Optional[Session]:
        """Move expiry forward only while the session is still live."""
        ...

    def delete_session(self, session_id: str) -> bool: ...

    def delete_user_sessions(
        self, user_id: str, *, except_session_id: Optional[str] = None
    ) -> int: ...

    def list_user_sessions(self, user_id: str) -> List[Session]: ...

    # roles
    def create_role(
        self,
        name: str,
        *,
        description: Optional[str] = None,
        permissions: Iterable[str] = (),
        is_system_role: bool = False,
    ) -> Role: ...

    def get_role(self, role_id: str) -> Optional[Role]: ...

    def get_role_by_name(self, name: str) -> Optional[Role]: ...

    def list_roles(self) -> List[Role]: ...

    def update_role(
        self,
        role_id: str,
        *,
        permissions: Optional[Iterable[str]] = None,
        description: Optional[str] = None,
    ) -> Optional[Role]: ...

    def delete_role(self, role_id: str) -> bool: ...

    def count_role_users(self, role_id: str) -> int: ...

    def assign_role(
        self, user_id: str, role_id: str, *, assigned_by: Optional[str] = None
    ) -> UserRole: ...

    def remove_role(self, user_id: str, role_id: str) -> bool: ...

    def list_user_roles(self, user_id: str) -> List[Role]: ...

    # node-scoped grants
    def grant_node_permission(
        self,
        user_id: str,
        node_path: str,
        permissions: Iterable[str],
        *,
        granted_by: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> NodePermission: ...

    def list_node_permissions(
        self, user_id: str, node_path: Optional[str] = None
    ) -> List[NodePermission]: ...

    def revoke_node_permission(self, permission_id: str) -> bool: ...

    # single-use tokens
    def replace_token(
        self, user_id: str, purpose: str, token_hash: str, expires_at: datetime
    ) -> AuthToken:
        """Delete every token for (user, purpose) and insert the new one atomically."""
        ...

    def consume_token(self, purpose: str, token_hash: str) -> Optional[AuthToken]:
        """Delete and return the matching token; at most one caller wins."""
        ...

    # activity log
    def add_activity(self, entry: ActivityLog) -> str: ...

    def add_activity_if_below(
        self,
        entry: ActivityLog,
        predicates: Sequence[Predicate],
        limit: int,
        *,
        lock_key: str,
    ) -> Tuple[bool, int]:
        """Count matching entries and append ``entry`` if the count is below ``limit``.

        The count and the append are atomic for every caller sharing
        ``lock_key``. Returns ``(appended, count_before)``.
        """
        ...

    def query_activity(self, spec: QuerySpec) -> List[ActivityLog]: ...

    def count_activity(self, predicates: Sequence[Predicate]) -> int: ...

    def group_activity(self, predicates: Sequence[Predicate], field: str) -> Dict[str, int]: ...

    def delete_activity(self, predicates: Sequence[Predicate]) -> int: ...

    # runtime config values
    def get_config_value(self, key: str) -> Optional[ConfigValue]: ...

    def set_config_value(
        self, key: str, value: str, value_type: str, *, updated_by: Optional[str] = None
    ) -> ConfigValue: ...

    def delete_config_value(self, key: str) -> bool: ...

    def list_config_values(self) -> Dict[str, ConfigValue]: ...
