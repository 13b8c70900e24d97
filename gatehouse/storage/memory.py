from __future__ import annotations

import copy
import threading
from dataclasses import fields as dataclass_fields
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

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
    utcnow,
)
from gatehouse.storage.query import Predicate, QuerySpec, matches

_ACTIVITY_FIELDS = frozenset(f.name for f in dataclass_fields(ActivityLog))


class MemoryStore:
    """In-process store for tests and single-node development.

    Every public method takes ``_data_lock`` for its whole body, which is what
    makes the counter, token and backup-code operations atomic here. Records
    handed back to callers are copies; mutating them never touches the store.
    """

    def __init__(self, *, secret_key: str = "dev-secret-key-change-me") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.sessions: Dict[str, Session] = {}
        self.roles: Dict[str, Role] = {}
        self.user_roles: Dict[str, UserRole] = {}
        self.node_permissions: Dict[str, NodePermission] = {}
        self.tokens: Dict[str, AuthToken] = {}
        self.activity: List[ActivityLog] = []
        self.config_values: Dict[str, ConfigValue] = {}
        self._cipher = SecretCipher(secret_key)
        self._data_lock = threading.RLock()

    # -- users -------------------------------------------------------------

    def _export_user(self, user: User) -> User:
        exported = copy.deepcopy(user)
        exported.two_factor_secret = self._cipher.decrypt(user.two_factor_secret)
        return exported

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
        username = normalize_username(username)
        email = normalize_email(email)
        with self._data_lock:
            for existing in self.users.values():
                if existing.username == username:
                    raise ConstraintViolation("username already exists", {"field": "username"})
                if existing.email == email:
                    raise ConstraintViolation("email already exists", {"field": "email"})
            now = utcnow()
            user = User(
                id=new_id(),
                username=username,
                email=email,
                password_hash=password_hash,
                first_name=first_name,
                last_name=last_name,
                email_verified=email_verified,
                email_verified_at=now if email_verified else None,
                require_password_change=require_password_change,
                created_at=now,
                updated_at=now,
            )
            self.users[user.id] = user
            return self._export_user(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return self._export_user(user) if user else None

    def get_user_by_username(self, username: str) -> Optional[User]:
        username = normalize_username(username)
        with self._data_lock:
            for user in self.users.values():
                if user.username == username:
                    return self._export_user(user)
        return None

    def get_user_by_email(self, email: str) -> Optional[User]:
        email = normalize_email(email)
        with self._data_lock:
            for user in self.users.values():
                if user.email == email:
                    return self._export_user(user)
        return None

    def list_users(self, limit: int = 100, offset: int = 0) -> List[User]:
        with self._data_lock:
            ordered = sorted(self.users.values(), key=lambda u: u.created_at)
            return [self._export_user(u) for u in ordered[offset : offset + limit]]

    def update_user(self, user_id: str, **fields) -> Optional[User]:
        unknown = set(fields) - USER_MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"unknown user fields: {sorted(unknown)}")
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if "username" in fields:
                fields["username"] = normalize_username(fields["username"])
            if "email" in fields:
                fields["email"] = normalize_email(fields["email"])
            for other in self.users.values():
                if other.id == user_id:
                    continue
                if "username" in fields and other.username == fields["username"]:
                    raise ConstraintViolation("username already exists", {"field": "username"})
                if "email" in fields and other.email == fields["email"]:
                    raise ConstraintViolation("email already exists", {"field": "email"})
            if "two_factor_secret" in fields:
                fields["two_factor_secret"] = self._cipher.encrypt(fields["two_factor_secret"])
            if "two_factor_backup_codes" in fields:
                fields["two_factor_backup_codes"] = list(fields["two_factor_backup_codes"] or [])
            for name, value in fields.items():
                setattr(user, name, value)
            user.updated_at = utcnow()
            return self._export_user(user)

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            if self.users.pop(user_id, None) is None:
                return False
            self.sessions = {k: s for k, s in self.sessions.items() if s.user_id != user_id}
            self.user_roles = {k: r for k, r in self.user_roles.items() if r.user_id != user_id}
            self.node_permissions = {
                k: p for k, p in self.node_permissions.items() if p.user_id != user_id
            }
            self.tokens = {k: t for k, t in self.tokens.items() if t.user_id != user_id}
            return True

    def register_failed_login(
        self,
        user_id: str,
        *,
        now: datetime,
        reset_after: timedelta,
        max_attempts: int,
        lock_duration: timedelta,
    ) -> Optional[Tuple[User, bool]]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            attempts = user.failed_login_attempts
            if user.last_failed_login and now - user.last_failed_login > reset_after:
                attempts = 0
            attempts += 1
            user.failed_login_attempts = attempts
            user.last_failed_login = now
            newly_locked = attempts >= max_attempts and not user.is_locked
            if newly_locked:
                user.is_locked = True
                user.locked_at = now
                user.locked_until = now + lock_duration
            user.updated_at = utcnow()
            return self._export_user(user), newly_locked

    def list_locked_users(self) -> List[User]:
        with self._data_lock:
            locked = [u for u in self.users.values() if u.is_locked]
            locked.sort(key=lambda u: u.locked_at or u.updated_at, reverse=True)
            return [self._export_user(u) for u in locked]

    def remove_backup_code(self, user_id: str, code_hash: str) -> Optional[int]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or code_hash not in user.two_factor_backup_codes:
                return None
            user.two_factor_backup_codes.remove(code_hash)
            user.updated_at = utcnow()
            return len(user.two_factor_backup_codes)

    # -- sessions ----------------------------------------------------------

    def create_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.user_id not in self.users:
                raise ConstraintViolation("session user does not exist", {"field": "user_id"})
            self.sessions[session.id] = copy.copy(session)
            return copy.copy(session)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            session = self.sessions.get(session_id)
            return copy.copy(session) if session else None

    def extend_session(
        self, session_id: str, *, expires_at: datetime, now: datetime
    ) -> Optional[Session]:
        with self._data_lock:
            session = self.sessions.get(session_id)
            if not session or session.expires_at <= now:
                return None
            if expires_at > session.expires_at:
                session.expires_at = expires_at
            return copy.copy(session)

    def delete_session(self, session_id: str) -> bool:
        with self._data_lock:
            return self.sessions.pop(session_id, None) is not None

    def delete_user_sessions(
        self, user_id: str, *, except_session_id: Optional[str] = None
    ) -> int:
        with self._data_lock:
            doomed = [
                sid
                for sid, s in self.sessions.items()
                if s.user_id == user_id and sid != except_session_id
            ]
            for sid in doomed:
                del self.sessions[sid]
            return len(doomed)

    def list_user_sessions(self, user_id: str) -> List[Session]:
        with self._data_lock:
            owned = [copy.copy(s) for s in self.sessions.values() if s.user_id == user_id]
        owned.sort(key=lambda s: s.created_at, reverse=True)
        return owned

    # -- roles -------------------------------------------------------------

    def create_role(
        self,
        name: str,
        *,
        description: Optional[str] = None,
        permissions: Iterable[str] = (),
        is_system_role: bool = False,
    ) -> Role:
        with self._data_lock:
            if any(r.name == name for r in self.roles.values()):
                raise ConstraintViolation("role name already exists", {"field": "name"})
            role = Role(
                id=new_id(),
                name=name,
                description=description,
                permissions=normalize_permissions(permissions),
                is_system_role=is_system_role,
            )
            self.roles[role.id] = role
            return copy.deepcopy(role)

    def get_role(self, role_id: str) -> Optional[Role]:
        with self._data_lock:
            role = self.roles.get(role_id)
            return copy.deepcopy(role) if role else None

    def get_role_by_name(self, name: str) -> Optional[Role]:
        with self._data_lock:
            for role in self.roles.values():
                if role.name == name:
                    return copy.deepcopy(role)
        return None

    def list_roles(self) -> List[Role]:
        with self._data_lock:
            return [copy.deepcopy(r) for r in sorted(self.roles.values(), key=lambda r: r.name)]

    def update_role(
        self,
        role_id: str,
        *,
        permissions: Optional[Iterable[str]] = None,
        description: Optional[str] = None,
    ) -> Optional[Role]:
        with self._data_lock:
            role = self.roles.get(role_id)
            if not role:
                return None
            if permissions is not None:
                role.permissions = normalize_permissions(permissions)
            if description is not None:
                role.description = description
            role.updated_at = utcnow()
            return copy.deepcopy(role)

    def delete_role(self, role_id: str) -> bool:
        with self._data_lock:
            if any(a.role_id == role_id for a in self.user_roles.values()):
                raise ConstraintViolation("role is still assigned", {"field": "role_id"})
            return self.roles.pop(role_id, None) is not None

    def count_role_users(self, role_id: str) -> int:
        with self._data_lock:
            return sum(1 for a in self.user_roles.values() if a.role_id == role_id)

    def assign_role(
        self, user_id: str, role_id: str, *, assigned_by: Optional[str] = None
    ) -> UserRole:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"field": "user_id"})
            if role_id not in self.roles:
                raise ConstraintViolation("role does not exist", {"field": "role_id"})
            for existing in self.user_roles.values():
                if existing.user_id == user_id and existing.role_id == role_id:
                    raise ConstraintViolation("role already assigned", {"field": "role_id"})
            assignment = UserRole(
                id=new_id(), user_id=user_id, role_id=role_id, assigned_by=assigned_by
            )
            self.user_roles[assignment.id] = assignment
            return copy.copy(assignment)

    def remove_role(self, user_id: str, role_id: str) -> bool:
        with self._data_lock:
            for key, existing in list(self.user_roles.items()):
                if existing.user_id == user_id and existing.role_id == role_id:
                    del self.user_roles[key]
                    return True
        return False

    def list_user_roles(self, user_id: str) -> List[Role]:
        with self._data_lock:
            assignments = sorted(
                (a for a in self.user_roles.values() if a.user_id == user_id),
                key=lambda a: a.assigned_at,
            )
            return [
                copy.deepcopy(self.roles[a.role_id])
                for a in assignments
                if a.role_id in self.roles
            ]

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
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"field": "user_id"})
            grant = NodePermission(
                id=new_id(),
                user_id=user_id,
                node_path=node_path,
                permissions=normalize_permissions(permissions),
                granted_by=granted_by,
                expires_at=expires_at,
            )
            self.node_permissions[grant.id] = grant
            return copy.deepcopy(grant)

    def list_node_permissions(
        self, user_id: str, node_path: Optional[str] = None
    ) -> List[NodePermission]:
        with self._data_lock:
            return [
                copy.deepcopy(p)
                for p in self.node_permissions.values()
                if p.user_id == user_id and (node_path is None or p.node_path == node_path)
            ]

    def revoke_node_permission(self, permission_id: str) -> bool:
        with self._data_lock:
            return self.node_permissions.pop(permission_id, None) is not None

    # -- single-use tokens -------------------------------------------------

    def replace_token(
        self, user_id: str, purpose: str, token_hash: str, expires_at: datetime
    ) -> AuthToken:
        with self._data_lock:
            self.tokens = {
                k: t
                for k, t in self.tokens.items()
                if not (t.user_id == user_id and t.purpose == purpose)
            }
            token = AuthToken(
                id=new_id(),
                user_id=user_id,
                purpose=purpose,
                token_hash=token_hash,
                expires_at=expires_at,
            )
            self.tokens[token.id] = token
            return copy.copy(token)

    def consume_token(self, purpose: str, token_hash: str) -> Optional[AuthToken]:
        with self._data_lock:
            for key, token in self.tokens.items():
                if token.purpose == purpose and token.token_hash == token_hash:
                    return self.tokens.pop(key)
        return None

    # -- activity log ------------------------------------------------------

    def add_activity(self, entry: ActivityLog) -> str:
        with self._data_lock:
            self.activity.append(copy.deepcopy(entry))
            return entry.id

    def add_activity_if_below(
        self,
        entry: ActivityLog,
        predicates: Sequence[Predicate],
        limit: int,
        *,
        lock_key: str,
    ) -> Tuple[bool, int]:
        # The store-wide lock covers every lock_key
        with self._data_lock:
            count = sum(1 for e in self.activity if matches(e, predicates))
            if count >= limit:
                return False, count
            self.activity.append(copy.deepcopy(entry))
            return True, count

    def query_activity(self, spec: QuerySpec) -> List[ActivityLog]:
        with self._data_lock:
            rows = [e for e in self.activity if matches(e, spec.predicates)]
        rows.sort(key=lambda e: e.created_at, reverse=spec.newest_first)
        rows = rows[spec.offset :]
        if spec.limit is not None:
            rows = rows[: spec.limit]
        return [copy.deepcopy(e) for e in rows]

    def count_activity(self, predicates: Sequence[Predicate]) -> int:
        with self._data_lock:
            return sum(1 for e in self.activity if matches(e, predicates))

    def group_activity(self, predicates: Sequence[Predicate], field: str) -> Dict[str, int]:
        if field not in _ACTIVITY_FIELDS:
            raise ValueError(f"unknown query field: {field}")
        counts: Dict[str, int] = {}
        with self._data_lock:
            for entry in self.activity:
                if matches(entry, predicates):
                    key = str(getattr(entry, field))
                    counts[key] = counts.get(key, 0) + 1
        return counts

    def delete_activity(self, predicates: Sequence[Predicate]) -> int:
        with self._data_lock:
            kept = [e for e in self.activity if not matches(e, predicates)]
            removed = len(self.activity) - len(kept)
            self.activity = kept
            return removed

    # -- runtime config ----------------------------------------------------

    def get_config_value(self, key: str) -> Optional[ConfigValue]:
        with self._data_lock:
            value = self.config_values.get(key)
            return copy.copy(value) if value else None

    def set_config_value(
        self, key: str, value: str, value_type: str, *, updated_by: Optional[str] = None
    ) -> ConfigValue:
        with self._data_lock:
            record = ConfigValue(key=key, value=value, value_type=value_type, updated_by=updated_by)
            self.config_values[key] = record
            return copy.copy(record)

    def delete_config_value(self, key: str) -> bool:
        with self._data_lock:
            return self.config_values.pop(key, None) is not None

    def list_config_values(self) -> Dict[str, ConfigValue]:
        with self._data_lock:
            return {k: copy.copy(v) for k, v in self.config_values.items()}
