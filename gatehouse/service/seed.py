from __future__ import annotations

import secrets
from typing import Any, Dict, Optional

from gatehouse.logging import get_logger
from gatehouse.service.permissions import PermissionResolver
from gatehouse.service.tokens import TokenCodec
from gatehouse.storage.models import utcnow
from gatehouse.storage.protocol import AuthStore

logger = get_logger(__name__)

DEFAULT_ADMIN_USERNAME = "admin"
DEFAULT_ADMIN_EMAIL = "admin@example.com"
ADMIN_ROLE = "super-admin"


def generate_admin_password() -> str:
    # token_urlsafe can come back without a digit or an uppercase letter
    return secrets.token_urlsafe(12) + "Aa1!"


async def seed_database(
    store: AuthStore,
    permissions: PermissionResolver,
    codec: TokenCodec,
    *,
    admin_username: str = DEFAULT_ADMIN_USERNAME,
    admin_email: str = DEFAULT_ADMIN_EMAIL,
    admin_password: Optional[str] = None,
) -> Dict[str, Any]:
    """Create missing system roles and the bootstrap administrator.

    Safe to run repeatedly: existing roles and an existing admin account are
    left untouched. The generated password is only returned when the account
    was created by this call.
    """
    roles = await permissions.ensure_system_roles()
    result: Dict[str, Any] = {
        "roles": [role.name for role in roles],
        "admin_created": False,
        "admin_password": None,
    }

    existing = store.get_user_by_username(admin_username)
    if existing is not None:
        logger.info("seed_admin_exists", user_id=existing.id)
        result["admin_user_id"] = existing.id
        return result

    password = admin_password or generate_admin_password()
    user = store.create_user(
        admin_username,
        admin_email,
        codec.hash_password(password),
        email_verified=True,
        require_password_change=True,
    )
    store.update_user(user.id, email_verified_at=utcnow())
    role = store.get_role_by_name(ADMIN_ROLE)
    store.assign_role(user.id, role.id)
    logger.info("seed_admin_created", user_id=user.id, role=ADMIN_ROLE)
    result.update(
        admin_created=True,
        admin_user_id=user.id,
        admin_password=None if admin_password else password,
    )
    return result
