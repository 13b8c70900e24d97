from __future__ import annotations

import re
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from gatehouse.logging import get_logger
from gatehouse.service.activity import ActivityCategory, ActivityLogService, Actions
from gatehouse.service.errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from gatehouse.storage.errors import ConstraintViolation
from gatehouse.storage.models import NodePermission, Role, UserRole, utcnow
from gatehouse.storage.protocol import AuthStore

logger = get_logger(__name__)

ADMIN_PERMISSION = "admin"

# Permissions the admin surface knows how to describe
PERMISSION_CATALOGUE: Dict[str, str] = {
    "admin": "Full administrative access (grants all permissions)",
    "manage_users": "Create, edit, lock and delete user accounts",
    "manage_roles": "Create and modify roles and assignments",
    "view_logs": "Read the activity log",
    "view_config": "Read runtime configuration",
    "edit_config": "Change runtime configuration",
    "read": "Basic signed-in access",
}

SYSTEM_ROLES: Dict[str, Tuple[List[str], str]] = {
    "super-admin": (
        ["admin", "manage_users", "manage_roles", "view_logs", "view_config", "edit_config"],
        "Full system access",
    ),
    "admin": (
        ["manage_users", "manage_roles", "view_logs", "view_config"],
        "Administrative access",
    ),
    "user": (["read"], "Default role for registered users"),
}
IMMUTABLE_ROLES = frozenset({"super-admin"})

_ROLE_NAME = re.compile(r"^[a-z][a-z0-9_-]{1,49}$")
_PERMISSION_NAME = re.compile(r"^[a-z][a-z0-9_.:-]{0,63}$")


def _clean_permissions(permissions: Iterable[str]) -> List[str]:
    cleaned: List[str] = []
    for perm in permissions or []:
        perm = (perm or "").strip()
        if not _PERMISSION_NAME.match(perm):
            raise ValidationError(f"Invalid permission name: {perm!r}", detail={"field": "permissions"})
        if perm not in cleaned:
            cleaned.append(perm)
    return cleaned


def _normalize_node_path(node_path: str) -> str:
    path = "/" + "/".join(p for p in (node_path or "").strip().split("/") if p)
    if path == "/" and not (node_path or "").strip():
        raise ValidationError("Node path is required", detail={"field": "node_path"})
    return path


class PermissionResolver:
    """Role-based permission checks with the ``admin`` override.

    Every check reads the user's roles from the store; nothing is cached, so
    a revoked role stops working on the next request.
    """

    def __init__(
        self,
        store: AuthStore,
        activity: ActivityLogService,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.activity = activity
        self._clock = clock or utcnow

    def _now(self) -> datetime:
        return self._clock()

    # -- checks ------------------------------------------------------------

    async def get_user_roles(self, user_id: str) -> List[Role]:
        return self.store.list_user_roles(user_id)

    async def get_user_permissions(self, user_id: str) -> Set[str]:
        permissions: Set[str] = set()
        for role in self.store.list_user_roles(user_id):
            permissions.update(role.permissions)
        return permissions

    async def has_permission(self, user_id: str, permission: str) -> bool:
        permissions = await self.get_user_permissions(user_id)
        return ADMIN_PERMISSION in permissions or permission in permissions

    async def has_any_permission(self, user_id: str, permissions: Iterable[str]) -> bool:
        held = await self.get_user_permissions(user_id)
        if ADMIN_PERMISSION in held:
            return True
        return any(p in held for p in permissions)

    async def has_all_permissions(self, user_id: str, permissions: Iterable[str]) -> bool:
        held = await self.get_user_permissions(user_id)
        if ADMIN_PERMISSION in held:
            return True
        return all(p in held for p in permissions)

    async def has_node_permission(self, user_id: str, node_path: str, permission: str) -> bool:
        """Global check first; then unexpired grants on exactly ``node_path``."""
        if await self.has_permission(user_id, permission):
            return True
        now = self._now()
        for grant in self.store.list_node_permissions(user_id, _normalize_node_path(node_path)):
            if grant.is_active(now) and (
                permission in grant.permissions or ADMIN_PERMISSION in grant.permissions
            ):
                return True
        return False

    # -- roles -------------------------------------------------------------

    def _require_role(self, role_id: str) -> Role:
        role = self.store.get_role(role_id)
        if not role:
            raise NotFoundError("Role not found", detail={"role_id": role_id})
        return role

    async def list_roles(self) -> List[Dict]:
        return [
            {
                "id": role.id,
                "name": role.name,
                "description": role.description,
                "permissions": role.permissions,
                "is_system_role": role.is_system_role,
                "user_count": self.store.count_role_users(role.id),
            }
            for role in self.store.list_roles()
        ]

    async def create_role(
        self,
        name: str,
        permissions: Iterable[str],
        *,
        description: Optional[str] = None,
        actor_id: Optional[str] = None,
    ) -> Role:
        name = (name or "").strip().lower()
        if not _ROLE_NAME.match(name):
            raise ValidationError(
                "Role name must be 2-50 characters: lowercase letters, digits, '-' or '_'",
                detail={"field": "name"},
            )
        try:
            role = self.store.create_role(
                name, description=description, permissions=_clean_permissions(permissions)
            )
        except ConstraintViolation:
            raise ConflictError("A role with that name already exists", detail={"field": "name"})
        await self.activity.log_success(
            Actions.ROLE_CREATE,
            ActivityCategory.ROLE,
            user_id=actor_id,
            resource_type="role",
            resource_id=role.id,
            metadata={"name": role.name, "permissions": role.permissions},
        )
        return role

    async def update_role_permissions(
        self,
        role_id: str,
        permissions: Optional[Iterable[str]],
        *,
        description: Optional[str] = None,
        actor_id: Optional[str] = None,
    ) -> Role:
        role = self._require_role(role_id)
        if role.name in IMMUTABLE_ROLES:
            raise ForbiddenError(f"The {role.name} role cannot be modified")
        cleaned = _clean_permissions(permissions) if permissions is not None else None
        updated = self.store.update_role(role_id, permissions=cleaned, description=description)
        if updated is None:
            raise NotFoundError("Role not found", detail={"role_id": role_id})
        await self.activity.log_success(
            Actions.ROLE_UPDATE,
            ActivityCategory.ROLE,
            user_id=actor_id,
            resource_type="role",
            resource_id=role_id,
            metadata={"before": role.permissions, "after": updated.permissions},
        )
        return updated

    async def delete_role(self, role_id: str, *, actor_id: Optional[str] = None) -> None:
        role = self._require_role(role_id)
        if role.is_system_role:
            raise ForbiddenError("System roles cannot be deleted")
        assigned = self.store.count_role_users(role_id)
        if assigned:
            raise ConflictError(
                "Role is assigned to users; remove it from them first",
                detail={"user_count": assigned},
            )
        try:
            self.store.delete_role(role_id)
        except ConstraintViolation:
            # An assignment landed between the count and the delete
            raise ConflictError("Role is assigned to users; remove it from them first")
        await self.activity.log_success(
            Actions.ROLE_DELETE,
            ActivityCategory.ROLE,
            user_id=actor_id,
            resource_type="role",
            resource_id=role_id,
            metadata={"name": role.name},
        )

    async def assign_role(
        self, user_id: str, role_id: str, *, actor_id: Optional[str] = None
    ) -> UserRole:
        if not self.store.get_user(user_id):
            raise NotFoundError("User not found", detail={"user_id": user_id})
        role = self._require_role(role_id)
        try:
            assignment = self.store.assign_role(user_id, role_id, assigned_by=actor_id)
        except ConstraintViolation:
            raise ConflictError("User already has this role", detail={"role_id": role_id})
        await self.activity.log_success(
            Actions.ROLE_ASSIGN,
            ActivityCategory.ROLE,
            user_id=actor_id,
            resource_type="user",
            resource_id=user_id,
            metadata={"role_id": role_id, "role": role.name},
        )
        return assignment

    async def remove_role(
        self, user_id: str, role_id: str, *, actor_id: Optional[str] = None
    ) -> bool:
        removed = self.store.remove_role(user_id, role_id)
        if removed:
            await self.activity.log_success(
                Actions.ROLE_REVOKE,
                ActivityCategory.ROLE,
                user_id=actor_id,
                resource_type="user",
                resource_id=user_id,
                metadata={"role_id": role_id},
            )
        return removed

    async def ensure_system_roles(self) -> List[Role]:
        """Create any missing system role; existing ones are left as they are."""
        roles = []
        for name, (permissions, description) in SYSTEM_ROLES.items():
            role = self.store.get_role_by_name(name)
            if role is None:
                try:
                    role = self.store.create_role(
                        name,
                        description=description,
                        permissions=permissions,
                        is_system_role=True,
                    )
                    logger.info("system_role_created", role=name)
                except ConstraintViolation:
                    role = self.store.get_role_by_name(name)
            roles.append(role)
        return roles

    # -- node-scoped grants ------------------------------------------------

    async def grant_node_permission(
        self,
        user_id: str,
        node_path: str,
        permissions: Iterable[str],
        *,
        granted_by: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> NodePermission:
        if not self.store.get_user(user_id):
            raise NotFoundError("User not found", detail={"user_id": user_id})
        cleaned = _clean_permissions(permissions)
        if not cleaned:
            raise ValidationError("At least one permission is required", detail={"field": "permissions"})
        if expires_at is not None and expires_at <= self._now():
            raise ValidationError("Expiry must be in the future", detail={"field": "expires_at"})
        grant = self.store.grant_node_permission(
            user_id,
            _normalize_node_path(node_path),
            cleaned,
            granted_by=granted_by,
            expires_at=expires_at,
        )
        await self.activity.log_success(
            Actions.PERMISSION_GRANT,
            ActivityCategory.PERMISSION,
            user_id=granted_by,
            resource_type="user",
            resource_id=user_id,
            metadata={
                "node_path": grant.node_path,
                "permissions": grant.permissions,
                "expires_at": expires_at.isoformat() if expires_at else None,
            },
        )
        return grant

    async def revoke_node_permission(
        self, permission_id: str, *, actor_id: Optional[str] = None
    ) -> None:
        if not self.store.revoke_node_permission(permission_id):
            raise NotFoundError("Permission grant not found", detail={"id": permission_id})
        await self.activity.log_success(
            Actions.PERMISSION_REVOKE,
            ActivityCategory.PERMISSION,
            user_id=actor_id,
            resource_type="node_permission",
            resource_id=permission_id,
        )
