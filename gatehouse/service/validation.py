from __future__ import annotations

import re
from typing import Any, Optional

from gatehouse.service.runtime_config import RuntimeConfig

USERNAME_PATTERN = re.compile(r"^[a-z0-9_-]{3,31}$")
EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
NAME_PATTERN = re.compile(r"^[A-Za-zÀ-ɏ' -]{1,50}$")
MAX_EMAIL_LENGTH = 255
MIN_LOGIN_PASSWORD = 6
MAX_PASSWORD_LENGTH = 255


def validate_username(username: Any) -> bool:
    return isinstance(username, str) and bool(USERNAME_PATTERN.match(username))


def validate_email(email: Any) -> bool:
    if not isinstance(email, str) or len(email) > MAX_EMAIL_LENGTH:
        return False
    return bool(EMAIL_PATTERN.match(email))


def validate_name(name: Any) -> bool:
    return isinstance(name, str) and bool(NAME_PATTERN.match(name))


def validate_login_password(password: Any) -> bool:
    """Shape check for a submitted password; policy is only applied when one is set."""
    return isinstance(password, str) and MIN_LOGIN_PASSWORD <= len(password) <= MAX_PASSWORD_LENGTH


async def validate_password_requirements(password: str, config: RuntimeConfig) -> Optional[str]:
    """First policy violation as a user-facing message, or None.

    The policy is read from runtime config on every call.
    """
    min_length = await config.get_int("security.password.min_length")
    if len(password) < min_length:
        return f"Password must be at least {min_length} characters long"
    if len(password) > MAX_PASSWORD_LENGTH:
        return f"Password cannot exceed {MAX_PASSWORD_LENGTH} characters"
    if await config.get_bool("security.password.require_uppercase") and not re.search(r"[A-Z]", password):
        return "Password must contain at least one uppercase letter"
    if await config.get_bool("security.password.require_lowercase") and not re.search(r"[a-z]", password):
        return "Password must contain at least one lowercase letter"
    if await config.get_bool("security.password.require_number") and not re.search(r"\d", password):
        return "Password must contain at least one number"
    if await config.get_bool("security.password.require_special") and not re.search(r"[^A-Za-z0-9]", password):
        return "Password must contain at least one special character"
    return None
