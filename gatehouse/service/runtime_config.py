"""Runtime configuration registry.

Definitions are registered in code with a type, a default and an optional
validator. Overrides are persisted through the store and read back on every
``get`` so an operator's change applies to the very next request.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterable, List, Optional

from gatehouse.logging import get_logger
from gatehouse.service.errors import ConfigurationError

if TYPE_CHECKING:
    from gatehouse.service.activity import ActivityLogService
    from gatehouse.storage.protocol import AuthStore

logger = get_logger(__name__)

CONFIG_TYPES = ("string", "number", "boolean", "json")

Validator = Callable[[Any], Optional[str]]


@dataclass(frozen=True)
class ConfigDefinition:
    key: str
    type: str
    default: Any
    description: str = ""
    category: str = "general"
    validator: Optional[Validator] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "type": self.type,
            "default": self.default,
            "description": self.description,
            "category": self.category,
        }


@dataclass
class ConfigUpdateResult:
    success: bool
    error: Optional[str] = None
    value: Any = None


def positive_int(value: Any) -> Optional[str]:
    if not isinstance(value, int) or isinstance(value, bool) or value < 1:
        return "Must be a positive integer"
    return None


def non_negative_int(value: Any) -> Optional[str]:
    if not isinstance(value, int) or isinstance(value, bool) or value < 0:
        return "Must be zero or a positive integer"
    return None


def int_range(low: int, high: int) -> Validator:
    def _check(value: Any) -> Optional[str]:
        if not isinstance(value, int) or isinstance(value, bool) or not low <= value <= high:
            return f"Must be an integer between {low} and {high}"
        return None

    return _check


def _coerce(definition: ConfigDefinition, value: Any) -> Any:
    """Coerce an incoming value (possibly a string from a form or env) to the declared type."""
    kind = definition.type
    if kind == "number":
        if isinstance(value, bool):
            raise ValueError("Expected a number")
        if isinstance(value, (int, float)):
            return int(value) if float(value).is_integer() else float(value)
        if isinstance(value, str):
            number = float(value.strip())
            return int(number) if number.is_integer() else number
        raise ValueError("Expected a number")
    if kind == "boolean":
        if isinstance(value, bool):
            return value
        if isinstance(value, str) and value.strip().lower() in {"true", "false", "1", "0"}:
            return value.strip().lower() in {"true", "1"}
        raise ValueError("Expected a boolean")
    if kind == "string":
        if not isinstance(value, str):
            raise ValueError("Expected a string")
        return value
    # json accepts anything serializable
    json.dumps(value)
    return value


def _serialize(definition: ConfigDefinition, value: Any) -> str:
    if definition.type == "string":
        return value
    return json.dumps(value)


def _deserialize(definition: ConfigDefinition, raw: str) -> Any:
    if definition.type == "string":
        return raw
    return json.loads(raw)


class RuntimeConfig:
    """``get`` / ``set`` / ``reset`` / ``list_definitions`` over the config store."""

    def __init__(
        self,
        store: "AuthStore",
        *,
        activity: Optional["ActivityLogService"] = None,
        definitions: Optional[Iterable[ConfigDefinition]] = None,
    ) -> None:
        self.store = store
        self.activity = activity
        self._definitions: Dict[str, ConfigDefinition] = {}
        for definition in definitions if definitions is not None else default_definitions():
            self.register(definition)

    def register(self, definition: ConfigDefinition) -> None:
        if definition.type not in CONFIG_TYPES:
            raise ValueError(f"unsupported config type {definition.type!r} for {definition.key}")
        if definition.validator:
            problem = definition.validator(definition.default)
            if problem:
                raise ValueError(f"default for {definition.key} is invalid: {problem}")
        self._definitions[definition.key] = definition

    def definition(self, key: str) -> ConfigDefinition:
        try:
            return self._definitions[key]
        except KeyError:
            raise ConfigurationError(
                f"Unknown configuration key: {key}", detail={"key": key}
            ) from None

    def list_definitions(self) -> List[ConfigDefinition]:
        return sorted(self._definitions.values(), key=lambda d: (d.category, d.key))

    async def get(self, key: str) -> Any:
        definition = self.definition(key)
        stored = self.store.get_config_value(key)
        if stored is None:
            return definition.default
        try:
            return _deserialize(definition, stored.value)
        except (ValueError, TypeError):
            logger.error("config_value_corrupt", key=key)
            return definition.default

    async def get_int(self, key: str) -> int:
        return int(await self.get(key))

    async def get_bool(self, key: str) -> bool:
        return bool(await self.get(key))

    async def set(
        self, key: str, value: Any, *, updated_by: Optional[str] = None
    ) -> ConfigUpdateResult:
        definition = self.definition(key)
        try:
            coerced = _coerce(definition, value)
        except (ValueError, TypeError) as exc:
            return ConfigUpdateResult(success=False, error=str(exc) or "Invalid value")
        if definition.validator:
            problem = definition.validator(coerced)
            if problem:
                return ConfigUpdateResult(success=False, error=problem)
        previous = await self.get(key)
        self.store.set_config_value(
            key, _serialize(definition, coerced), definition.type, updated_by=updated_by
        )
        logger.info("config_updated", key=key, updated_by=updated_by)
        if self.activity:
            await self.activity.log_config_change(key, previous, coerced, updated_by)
        return ConfigUpdateResult(success=True, value=coerced)

    async def reset(self, key: str, *, updated_by: Optional[str] = None) -> ConfigUpdateResult:
        definition = self.definition(key)
        previous = await self.get(key)
        self.store.delete_config_value(key)
        if self.activity:
            await self.activity.log_config_change(key, previous, definition.default, updated_by)
        return ConfigUpdateResult(success=True, value=definition.default)

    async def list_all(self) -> List[Dict[str, Any]]:
        stored = self.store.list_config_values()
        items = []
        for definition in self.list_definitions():
            value = await self.get(definition.key)
            items.append(
                {
                    **definition.to_dict(),
                    "value": value,
                    "is_default": definition.key not in stored,
                }
            )
        return items


def _rate_limit_definitions(
    action_key: str, label: str, max_attempts: int, window_minutes: int, block_minutes: int
) -> List[ConfigDefinition]:
    prefix = f"rate_limit.{action_key}"
    return [
        ConfigDefinition(
            f"{prefix}.max_attempts",
            "number",
            max_attempts,
            f"Maximum {label} attempts per window",
            "rate_limit",
            positive_int,
        ),
        ConfigDefinition(
            f"{prefix}.window_minutes",
            "number",
            window_minutes,
            f"Sliding window for {label} attempts, in minutes",
            "rate_limit",
            positive_int,
        ),
        ConfigDefinition(
            f"{prefix}.block_duration_minutes",
            "number",
            block_minutes,
            f"Block after the {label} limit is hit, in minutes (0 disables)",
            "rate_limit",
            non_negative_int,
        ),
    ]


def default_definitions() -> List[ConfigDefinition]:
    definitions: List[ConfigDefinition] = []
    definitions += _rate_limit_definitions("login", "login", 20, 15, 15)
    definitions += _rate_limit_definitions("register", "registration", 3, 60, 60)
    definitions += _rate_limit_definitions("password_reset", "password reset", 3, 60, 60)
    definitions += _rate_limit_definitions("api_general", "API", 100, 1, 0)
    definitions += [
        ConfigDefinition(
            "security.account_lockout.max_failed_attempts",
            "number",
            5,
            "Consecutive failed logins before the account locks",
            "security",
            positive_int,
        ),
        ConfigDefinition(
            "security.account_lockout.duration_minutes",
            "number",
            30,
            "How long an automatic lock lasts",
            "security",
            positive_int,
        ),
        ConfigDefinition(
            "security.account_lockout.reset_attempts_after_minutes",
            "number",
            60,
            "Idle gap after which the failed-login counter starts over",
            "security",
            positive_int,
        ),
        ConfigDefinition(
            "security.session.lifetime_days",
            "number",
            30,
            "Session lifetime in days",
            "security",
            positive_int,
        ),
        ConfigDefinition(
            "security.session.renewal_threshold_days",
            "number",
            15,
            "Renew a session when fewer than this many days remain",
            "security",
            positive_int,
        ),
        ConfigDefinition(
            "security.password.min_length",
            "number",
            8,
            "Minimum password length",
            "security",
            int_range(6, 128),
        ),
        ConfigDefinition(
            "security.password.require_uppercase", "boolean", True,
            "Require at least one uppercase letter", "security",
        ),
        ConfigDefinition(
            "security.password.require_lowercase", "boolean", True,
            "Require at least one lowercase letter", "security",
        ),
        ConfigDefinition(
            "security.password.require_number", "boolean", True,
            "Require at least one digit", "security",
        ),
        ConfigDefinition(
            "security.password.require_special", "boolean", False,
            "Require at least one special character", "security",
        ),
        ConfigDefinition(
            "security.password_reset.token_expiry_minutes",
            "number",
            60,
            "Password reset link lifetime in minutes",
            "security",
            positive_int,
        ),
        ConfigDefinition(
            "security.2fa.backup_codes_count",
            "number",
            10,
            "Backup codes issued when two-factor authentication is enabled",
            "security",
            int_range(5, 20),
        ),
        ConfigDefinition(
            "security.2fa.pending_ttl_minutes",
            "number",
            5,
            "Lifetime of the pending two-factor challenge after a correct password",
            "security",
            int_range(1, 30),
        ),
        ConfigDefinition(
            "email.verification.required", "boolean", True,
            "Send a verification email on registration", "email",
        ),
        ConfigDefinition(
            "email.verification.token_expiry_hours",
            "number",
            24,
            "Email verification link lifetime in hours",
            "email",
            positive_int,
        ),
    ]
    return definitions
