from __future__ import annotations

import json
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from gatehouse.logging import get_logger
from gatehouse.storage.common import (
    SecretCipher,
    normalize_email,
    normalize_permissions,
    normalize_username,
)
from gatehouse.storage.errors import ConstraintViolation
from gatehouse.storage.models import (
    USER_MUTABLE_FIELDS,
    ActivityLog,
    AuthToken,
    ConfigValue,
    NodePermission,
    Role,
    Session,
    User,
    UserRole,
    new_id,
)
from gatehouse.storage.query import Predicate, QuerySpec, compile_where

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS app_user (
    id TEXT PRIMARY KEY,
    username TEXT NOT NULL,
    email TEXT NOT NULL,
    password_hash TEXT,
    first_name TEXT,
    last_name TEXT,
    two_factor_secret TEXT,
    two_factor_enabled BOOLEAN NOT NULL DEFAULT FALSE,
    two_factor_backup_codes JSONB NOT NULL DEFAULT '[]'::jsonb,
    is_locked BOOLEAN NOT NULL DEFAULT FALSE,
    locked_at TIMESTAMPTZ,
    locked_until TIMESTAMPTZ,
    failed_login_attempts INTEGER NOT NULL DEFAULT 0,
    last_failed_login TIMESTAMPTZ,
    require_password_change BOOLEAN NOT NULL DEFAULT FALSE,
    email_verified BOOLEAN NOT NULL DEFAULT FALSE,
    email_verified_at TIMESTAMPTZ,
    is_disabled BOOLEAN NOT NULL DEFAULT FALSE,
    disabled_reason TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    CONSTRAINT app_user_username_key UNIQUE (username),
    CONSTRAINT app_user_email_key UNIQUE (email)
);

CREATE TABLE IF NOT EXISTS auth_session (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
    expires_at TIMESTAMPTZ NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    user_agent TEXT,
    ip_address TEXT
);
CREATE INDEX IF NOT EXISTS auth_session_user_idx ON auth_session (user_id);

CREATE TABLE IF NOT EXISTS role (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    description TEXT,
    permissions JSONB NOT NULL DEFAULT '[]'::jsonb,
    is_system_role BOOLEAN NOT NULL DEFAULT FALSE,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    CONSTRAINT role_name_key UNIQUE (name)
);

CREATE TABLE IF NOT EXISTS user_role (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
    role_id TEXT NOT NULL REFERENCES role(id) ON DELETE RESTRICT,
    assigned_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    assigned_by TEXT,
    CONSTRAINT user_role_user_role_key UNIQUE (user_id, role_id)
);

CREATE TABLE IF NOT EXISTS node_permission (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
    node_path TEXT NOT NULL,
    permissions JSONB NOT NULL DEFAULT '[]'::jsonb,
    granted_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    granted_by TEXT,
    expires_at TIMESTAMPTZ
);
CREATE INDEX IF NOT EXISTS node_permission_user_path_idx ON node_permission (user_id, node_path);

CREATE TABLE IF NOT EXISTS auth_token (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
    purpose TEXT NOT NULL,
    token_hash TEXT NOT NULL,
    expires_at TIMESTAMPTZ NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    CONSTRAINT auth_token_user_purpose_key UNIQUE (user_id, purpose)
);
CREATE INDEX IF NOT EXISTS auth_token_hash_idx ON auth_token (purpose, token_hash);

CREATE TABLE IF NOT EXISTS activity_log (
    id TEXT PRIMARY KEY,
    action TEXT NOT NULL,
    category TEXT NOT NULL,
    severity TEXT NOT NULL DEFAULT 'info',
    success BOOLEAN NOT NULL DEFAULT TRUE,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    user_id TEXT,
    ip_address TEXT,
    user_agent TEXT,
    resource_type TEXT,
    resource_id TEXT,
    message TEXT,
    error_message TEXT,
    metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
    duration_ms INTEGER
);
CREATE INDEX IF NOT EXISTS activity_log_created_idx ON activity_log (created_at DESC);
CREATE INDEX IF NOT EXISTS activity_log_ip_action_idx ON activity_log (ip_address, action, created_at);
CREATE INDEX IF NOT EXISTS activity_log_user_idx ON activity_log (user_id);

CREATE TABLE IF NOT EXISTS config_value (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    value_type TEXT NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_by TEXT
);
"""

_ACTIVITY_COLUMNS = frozenset(
    {
        "id",
        "action",
        "category",
        "severity",
        "success",
        "created_at",
        "user_id",
        "ip_address",
        "user_agent",
        "resource_type",
        "resource_id",
        "duration_ms",
    }
)

_UNIQUE_FIELDS = {
    "app_user_username_key": "username",
    "app_user_email_key": "email",
    "role_name_key": "name",
    "user_role_user_role_key": "role_id",
}


def _unique_violation(exc: errors.UniqueViolation) -> ConstraintViolation:
    constraint = getattr(exc.diag, "constraint_name", None) or ""
    field = _UNIQUE_FIELDS.get(constraint, "unknown")
    return ConstraintViolation(f"{field} already exists", {"field": field})


class PostgresStore:
    """Postgres-backed store; the schema is created on first start."""

    def __init__(self, dsn: str, *, secret_key: str, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self._cipher = SecretCipher(secret_key)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(SCHEMA_SQL)

    def close(self) -> None:
        self.pool.close()

    # -- row mapping -------------------------------------------------------

    def _row_to_user(self, row: Dict[str, Any]) -> User:
        return User(
            id=row["id"],
            username=row["username"],
            email=row["email"],
            password_hash=row.get("password_hash"),
            first_name=row.get("first_name"),
            last_name=row.get("last_name"),
            two_factor_secret=self._cipher.decrypt(row.get("two_factor_secret")),
            two_factor_enabled=bool(row.get("two_factor_enabled")),
            two_factor_backup_codes=list(row.get("two_factor_backup_codes") or []),
            is_locked=bool(row.get("is_locked")),
            locked_at=row.get("locked_at"),
            locked_until=row.get("locked_until"),
            failed_login_attempts=int(row.get("failed_login_attempts") or 0),
            last_failed_login=row.get("last_failed_login"),
            require_password_change=bool(row.get("require_password_change")),
            email_verified=bool(row.get("email_verified")),
            email_verified_at=row.get("email_verified_at"),
            is_disabled=bool(row.get("is_disabled")),
            disabled_reason=row.get("disabled_reason"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _row_to_session(row: Dict[str, Any]) -> Session:
        return Session(
            id=row["id"],
            user_id=row["user_id"],
            expires_at=row["expires_at"],
            created_at=row["created_at"],
            user_agent=row.get("user_agent"),
            ip_address=row.get("ip_address"),
        )

    @staticmethod
    def _row_to_role(row: Dict[str, Any]) -> Role:
        return Role(
            id=row["id"],
            name=row["name"],
            description=row.get("description"),
            permissions=list(row.get("permissions") or []),
            is_system_role=bool(row.get("is_system_role")),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _row_to_node_permission(row: Dict[str, Any]) -> NodePermission:
        return NodePermission(
            id=row["id"],
            user_id=row["user_id"],
            node_path=row["node_path"],
            permissions=list(row.get("permissions") or []),
            granted_at=row["granted_at"],
            granted_by=row.get("granted_by"),
            expires_at=row.get("expires_at"),
        )

    @staticmethod
    def _row_to_token(row: Dict[str, Any]) -> AuthToken:
        return AuthToken(
            id=row["id"],
            user_id=row["user_id"],
            purpose=row["purpose"],
            token_hash=row["token_hash"],
            expires_at=row["expires_at"],
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_activity(row: Dict[str, Any]) -> ActivityLog:
        return ActivityLog(
            id=row["id"],
            action=row["action"],
            category=row["category"],
            severity=row["severity"],
            success=bool(row["success"]),
            created_at=row["created_at"],
            user_id=row.get("user_id"),
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            resource_type=row.get("resource_type"),
            resource_id=row.get("resource_id"),
            message=row.get("message"),
            error_message=row.get("error_message"),
            metadata=dict(row.get("metadata") or {}),
            duration_ms=row.get("duration_ms"),
        )

    @staticmethod
    def _row_to_config(row: Dict[str, Any]) -> ConfigValue:
        return ConfigValue(
            key=row["key"],
            value=row["value"],
            value_type=row["value_type"],
            updated_at=row["updated_at"],
            updated_by=row.get("updated_by"),
        )

    # -- users -------------------------------------------------------------

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
    ) -> User:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (
                        id, username, email, password_hash, first_name, last_name,
                        email_verified, email_verified_at, require_password_change
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, CASE WHEN %s THEN now() END, %s)
                    RETURNING *
                    """,
                    (
                        new_id(),
                        normalize_username(username),
                        normalize_email(email),
                        password_hash,
                        first_name,
                        last_name,
                        email_verified,
                        email_verified,
                        require_password_change,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise _unique_violation(exc)
        return self._row_to_user(row)

    def _get_user_where(self, column: str, value: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT * FROM app_user WHERE {column} = %s", (value,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user(self, user_id: str) -> Optional[User]:
        return self._get_user_where("id", user_id)

    def get_user_by_username(self, username: str) -> Optional[User]:
        return self._get_user_where("username", normalize_username(username))

    def get_user_by_email(self, email: str) -> Optional[User]:
        return self._get_user_where("email", normalize_email(email))

    def list_users(self, limit: int = 100, offset: int = 0) -> List[User]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM app_user ORDER BY created_at LIMIT %s OFFSET %s",
                (limit, offset),
            ).fetchall()
        return [self._row_to_user(r) for r in rows]

    def update_user(self, user_id: str, **fields) -> Optional[User]:
        unknown = set(fields) - USER_MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"unknown user fields: {sorted(unknown)}")
        if not fields:
            return self.get_user(user_id)
        assignments: list[str] = []
        params: list[Any] = []
        for name, value in fields.items():
            if name == "username":
                value = normalize_username(value)
            elif name == "email":
                value = normalize_email(value)
            elif name == "two_factor_secret":
                value = self._cipher.encrypt(value)
            elif name == "two_factor_backup_codes":
                value = json.dumps(list(value or []))
            assignments.append(f"{name} = %s")
            params.append(value)
        params.append(user_id)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"UPDATE app_user SET {', '.join(assignments)}, updated_at = now() "
                    "WHERE id = %s RETURNING *",
                    params,
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise _unique_violation(exc)
        return self._row_to_user(row) if row else None

    def delete_user(self, user_id: str) -> bool:
        # Sessions, role assignments, node grants and tokens cascade
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM app_user WHERE id = %s", (user_id,))
            return cur.rowcount > 0

    def register_failed_login(
        self,
        user_id: str,
        *,
        now: datetime,
        reset_after: timedelta,
        max_attempts: int,
        lock_duration: timedelta,
    ) -> Optional[Tuple[User, bool]]:
        stale_before = now - reset_after
        locked_until = now + lock_duration
        with self._connect() as conn:
            row = conn.execute(
                """
                WITH next AS (
                    SELECT id, is_locked AS was_locked,
                           CASE WHEN last_failed_login IS NOT NULL AND last_failed_login < %s
                                THEN 1 ELSE failed_login_attempts + 1 END AS attempts
                    FROM app_user WHERE id = %s FOR UPDATE
                )
                UPDATE app_user u SET
                    failed_login_attempts = next.attempts,
                    last_failed_login = %s,
                    locked_at = CASE WHEN NOT u.is_locked AND next.attempts >= %s
                                     THEN %s ELSE u.locked_at END,
                    locked_until = CASE WHEN NOT u.is_locked AND next.attempts >= %s
                                        THEN %s ELSE u.locked_until END,
                    is_locked = u.is_locked OR next.attempts >= %s,
                    updated_at = now()
                FROM next
                WHERE u.id = next.id
                RETURNING u.*, (u.is_locked AND NOT next.was_locked) AS newly_locked
                """,
                (
                    stale_before,
                    user_id,
                    now,
                    max_attempts,
                    now,
                    max_attempts,
                    locked_until,
                    max_attempts,
                ),
            ).fetchone()
        if not row:
            return None
        return self._row_to_user(row), bool(row["newly_locked"])

    def list_locked_users(self) -> List[User]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM app_user WHERE is_locked ORDER BY locked_at DESC NULLS LAST"
            ).fetchall()
        return [self._row_to_user(r) for r in rows]

    def remove_backup_code(self, user_id: str, code_hash: str) -> Optional[int]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET two_factor_backup_codes = two_factor_backup_codes - %s, updated_at = now()
                WHERE id = %s AND two_factor_backup_codes ? %s
                RETURNING jsonb_array_length(two_factor_backup_codes) AS remaining
                """,
                (code_hash, user_id, code_hash),
            ).fetchone()
        return int(row["remaining"]) if row else None

    # -- sessions ----------------------------------------------------------

    def create_session(self, session: Session) -> Session:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO auth_session (id, user_id, expires_at, created_at, user_agent, ip_address)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        session.id,
                        session.user_id,
                        session.expires_at,
                        session.created_at,
                        session.user_agent,
                        session.ip_address,
                    ),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session user does not exist", {"field": "user_id"})
        return self._row_to_session(row)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        return self._row_to_session(row) if row else None

    def extend_session(
        self, session_id: str, *, expires_at: datetime, now: datetime
    ) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_session SET expires_at = GREATEST(expires_at, %s)
                WHERE id = %s AND expires_at > %s
                RETURNING *
                """,
                (expires_at, session_id, now),
            ).fetchone()
        return self._row_to_session(row) if row else None

    def delete_session(self, session_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM auth_session WHERE id = %s", (session_id,))
            return cur.rowcount > 0

    def delete_user_sessions(
        self, user_id: str, *, except_session_id: Optional[str] = None
    ) -> int:
        with self._connect() as conn:
            if except_session_id:
                cur = conn.execute(
                    "DELETE FROM auth_session WHERE user_id = %s AND id <> %s",
                    (user_id, except_session_id),
                )
            else:
                cur = conn.execute("DELETE FROM auth_session WHERE user_id = %s", (user_id,))
            return cur.rowcount

    def list_user_sessions(self, user_id: str) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM auth_session WHERE user_id = %s ORDER BY created_at DESC",
                (user_id,),
            ).fetchall()
        return [self._row_to_session(r) for r in rows]

    # -- roles -------------------------------------------------------------

    def create_role(
        self,
        name: str,
        *,
        description: Optional[str] = None,
        permissions: Iterable[str] = (),
        is_system_role: bool = False,
    ) -> Role:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO role (id, name, description, permissions, is_system_role)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        new_id(),
                        name,
                        description,
                        json.dumps(normalize_permissions(permissions)),
                        is_system_role,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise _unique_violation(exc)
        return self._row_to_role(row)

    def get_role(self, role_id: str) -> Optional[Role]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM role WHERE id = %s", (role_id,)).fetchone()
        return self._row_to_role(row) if row else None

    def get_role_by_name(self, name: str) -> Optional[Role]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM role WHERE name = %s", (name,)).fetchone()
        return self._row_to_role(row) if row else None

    def list_roles(self) -> List[Role]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM role ORDER BY name").fetchall()
        return [self._row_to_role(r) for r in rows]

    def update_role(
        self,
        role_id: str,
        *,
        permissions: Optional[Iterable[str]] = None,
        description: Optional[str] = None,
    ) -> Optional[Role]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE role SET
                    permissions = COALESCE(%s::jsonb, permissions),
                    description = COALESCE(%s, description),
                    updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (
                    json.dumps(normalize_permissions(permissions)) if permissions is not None else None,
                    description,
                    role_id,
                ),
            ).fetchone()
        return self._row_to_role(row) if row else None

    def delete_role(self, role_id: str) -> bool:
        try:
            with self._connect() as conn:
                cur = conn.execute("DELETE FROM role WHERE id = %s", (role_id,))
                return cur.rowcount > 0
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("role is still assigned", {"field": "role_id"})

    def count_role_users(self, role_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT count(*) AS n FROM user_role WHERE role_id = %s", (role_id,)
            ).fetchone()
        return int(row["n"])

    def assign_role(
        self, user_id: str, role_id: str, *, assigned_by: Optional[str] = None
    ) -> UserRole:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO user_role (id, user_id, role_id, assigned_by)
                    VALUES (%s, %s, %s, %s)
                    RETURNING *
                    """,
                    (new_id(), user_id, role_id, assigned_by),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("role already assigned", {"field": "role_id"}) from exc
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user or role does not exist", {"field": "role_id"})
        return UserRole(
            id=row["id"],
            user_id=row["user_id"],
            role_id=row["role_id"],
            assigned_at=row["assigned_at"],
            assigned_by=row.get("assigned_by"),
        )

    def remove_role(self, user_id: str, role_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM user_role WHERE user_id = %s AND role_id = %s",
                (user_id, role_id),
            )
            return cur.rowcount > 0

    def list_user_roles(self, user_id: str) -> List[Role]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT r.* FROM role r
                JOIN user_role ur ON ur.role_id = r.id
                WHERE ur.user_id = %s
                ORDER BY ur.assigned_at
                """,
                (user_id,),
            ).fetchall()
        return [self._row_to_role(r) for r in rows]

    # -- node permissions --------------------------------------------------

    def grant_node_permission(
        self,
        user_id: str,
        node_path: str,
        permissions: Iterable[str],
        *,
        granted_by: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> NodePermission:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO node_permission (id, user_id, node_path, permissions, granted_by, expires_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        new_id(),
                        user_id,
                        node_path,
                        json.dumps(normalize_permissions(permissions)),
                        granted_by,
                        expires_at,
                    ),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"field": "user_id"})
        return self._row_to_node_permission(row)

    def list_node_permissions(
        self, user_id: str, node_path: Optional[str] = None
    ) -> List[NodePermission]:
        with self._connect() as conn:
            if node_path is None:
                rows = conn.execute(
                    "SELECT * FROM node_permission WHERE user_id = %s ORDER BY granted_at",
                    (user_id,),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM node_permission WHERE user_id = %s AND node_path = %s ORDER BY granted_at",
                    (user_id, node_path),
                ).fetchall()
        return [self._row_to_node_permission(r) for r in rows]

    def revoke_node_permission(self, permission_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM node_permission WHERE id = %s", (permission_id,))
            return cur.rowcount > 0

    # -- single-use tokens -------------------------------------------------

    def replace_token(
        self, user_id: str, purpose: str, token_hash: str, expires_at: datetime
    ) -> AuthToken:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO auth_token (id, user_id, purpose, token_hash, expires_at)
                VALUES (%s, %s, %s, %s, %s)
                ON CONFLICT (user_id, purpose) DO UPDATE SET
                    id = EXCLUDED.id,
                    token_hash = EXCLUDED.token_hash,
                    expires_at = EXCLUDED.expires_at,
                    created_at = now()
                RETURNING *
                """,
                (new_id(), user_id, purpose, token_hash, expires_at),
            ).fetchone()
        return self._row_to_token(row)

    def consume_token(self, purpose: str, token_hash: str) -> Optional[AuthToken]:
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM auth_token WHERE purpose = %s AND token_hash = %s RETURNING *",
                (purpose, token_hash),
            ).fetchone()
        return self._row_to_token(row) if row else None

    # -- activity log ------------------------------------------------------

    @staticmethod
    def _insert_activity(conn, entry: ActivityLog) -> None:
        conn.execute(
            """
            INSERT INTO activity_log (
                id, action, category, severity, success, created_at, user_id,
                ip_address, user_agent, resource_type, resource_id, message,
                error_message, metadata, duration_ms
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                entry.id,
                entry.action,
                entry.category,
                entry.severity,
                entry.success,
                entry.created_at,
                entry.user_id,
                entry.ip_address,
                entry.user_agent,
                entry.resource_type,
                entry.resource_id,
                entry.message,
                entry.error_message,
                json.dumps(entry.metadata or {}, default=str),
                entry.duration_ms,
            ),
        )

    def add_activity(self, entry: ActivityLog) -> str:
        with self._connect() as conn:
            self._insert_activity(conn, entry)
        return entry.id

    def add_activity_if_below(
        self,
        entry: ActivityLog,
        predicates: Sequence[Predicate],
        limit: int,
        *,
        lock_key: str,
    ) -> Tuple[bool, int]:
        where, params = compile_where(predicates, _ACTIVITY_COLUMNS)
        with self._connect() as conn:
            # Transaction-scoped; released when the pool connection commits
            conn.execute("SELECT pg_advisory_xact_lock(hashtext(%s))", (lock_key,))
            row = conn.execute(
                f"SELECT count(*) AS n FROM activity_log WHERE {where}", params
            ).fetchone()
            count = int(row["n"])
            if count >= limit:
                return False, count
            self._insert_activity(conn, entry)
        return True, count

    def query_activity(self, spec: QuerySpec) -> List[ActivityLog]:
        where, params = compile_where(spec.predicates, _ACTIVITY_COLUMNS)
        order = "DESC" if spec.newest_first else "ASC"
        sql = f"SELECT * FROM activity_log WHERE {where} ORDER BY created_at {order}"
        if spec.limit is not None:
            sql += " LIMIT %s"
            params.append(spec.limit)
        if spec.offset:
            sql += " OFFSET %s"
            params.append(spec.offset)
        with self._connect() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [self._row_to_activity(r) for r in rows]

    def count_activity(self, predicates: Sequence[Predicate]) -> int:
        where, params = compile_where(predicates, _ACTIVITY_COLUMNS)
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT count(*) AS n FROM activity_log WHERE {where}", params
            ).fetchone()
        return int(row["n"])

    def group_activity(self, predicates: Sequence[Predicate], field: str) -> Dict[str, int]:
        if field not in _ACTIVITY_COLUMNS:
            raise ValueError(f"unknown query field: {field}")
        where, params = compile_where(predicates, _ACTIVITY_COLUMNS)
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {field} AS bucket, count(*) AS n FROM activity_log "
                f"WHERE {where} GROUP BY {field}",
                params,
            ).fetchall()
        return {str(r["bucket"]): int(r["n"]) for r in rows}

    def delete_activity(self, predicates: Sequence[Predicate]) -> int:
        where, params = compile_where(predicates, _ACTIVITY_COLUMNS)
        with self._connect() as conn:
            cur = conn.execute(f"DELETE FROM activity_log WHERE {where}", params)
            return cur.rowcount

    # -- runtime config ----------------------------------------------------

    def get_config_value(self, key: str) -> Optional[ConfigValue]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM config_value WHERE key = %s", (key,)).fetchone()
        return self._row_to_config(row) if row else None

    def set_config_value(
        self, key: str, value: str, value_type: str, *, updated_by: Optional[str] = None
    ) -> ConfigValue:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO config_value (key, value, value_type, updated_by)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (key) DO UPDATE SET
                    value = EXCLUDED.value,
                    value_type = EXCLUDED.value_type,
                    updated_by = EXCLUDED.updated_by,
                    updated_at = now()
                RETURNING *
                """,
                (key, value, value_type, updated_by),
            ).fetchone()
        return self._row_to_config(row)

    def delete_config_value(self, key: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM config_value WHERE key = %s", (key,))
            return cur.rowcount > 0

    def list_config_values(self) -> Dict[str, ConfigValue]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM config_value ORDER BY key").fetchall()
        return {r["key"]: self._row_to_config(r) for r in rows}
