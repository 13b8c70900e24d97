from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from gatehouse.logging import get_logger
from gatehouse.service.activity import (
    ActivityCategory,
    ActivityLogService,
    Actions,
    LogSeverity,
)
from gatehouse.service.errors import NotFoundError
from gatehouse.service.runtime_config import RuntimeConfig
from gatehouse.storage.models import User, utcnow
from gatehouse.storage.protocol import AuthStore

logger = get_logger(__name__)

PERMANENT_LOCK_REASON = "Account has been locked by an administrator"
TEMPORARY_LOCK_REASON = "Account temporarily locked due to too many failed login attempts"


@dataclass
class LockStatus:
    locked: bool
    locked_until: Optional[datetime] = None
    reason: Optional[str] = None

    @property
    def permanent(self) -> bool:
        return self.locked and self.locked_until is None

    def remaining_minutes(self, now: datetime) -> Optional[int]:
        if not self.locked or self.locked_until is None:
            return None
        return max(1, math.ceil((self.locked_until - now).total_seconds() / 60))


@dataclass
class FailedLoginResult:
    locked: bool
    attempts_remaining: int
    locked_until: Optional[datetime] = None


class AccountLockoutEngine:
    """Per-user failed-login counter with a lazily expiring lock.

    Expiry is only evaluated in :meth:`is_account_locked`; there is no sweep.
    The increment itself is delegated to ``store.register_failed_login`` so
    concurrent failures are never under-counted.
    """

    def __init__(
        self,
        store: AuthStore,
        config: RuntimeConfig,
        activity: ActivityLogService,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.config = config
        self.activity = activity
        self._clock = clock or utcnow

    def _now(self) -> datetime:
        return self._clock()

    async def is_account_locked(self, user_id: str) -> LockStatus:
        user = self.store.get_user(user_id)
        if not user or not user.is_locked:
            return LockStatus(locked=False)
        if user.locked_until is None:
            return LockStatus(locked=True, reason=PERMANENT_LOCK_REASON)
        if user.locked_until <= self._now():
            self.store.update_user(
                user_id,
                is_locked=False,
                locked_at=None,
                locked_until=None,
                failed_login_attempts=0,
                last_failed_login=None,
            )
            logger.info("account_lock_expired", user_id=user_id)
            return LockStatus(locked=False)
        return LockStatus(locked=True, locked_until=user.locked_until, reason=TEMPORARY_LOCK_REASON)

    async def record_failed_login(
        self,
        user_id: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> FailedLoginResult:
        max_attempts = await self.config.get_int("security.account_lockout.max_failed_attempts")
        duration = timedelta(
            minutes=await self.config.get_int("security.account_lockout.duration_minutes")
        )
        reset_after = timedelta(
            minutes=await self.config.get_int(
                "security.account_lockout.reset_attempts_after_minutes"
            )
        )
        result = self.store.register_failed_login(
            user_id,
            now=self._now(),
            reset_after=reset_after,
            max_attempts=max_attempts,
            lock_duration=duration,
        )
        if result is None:
            raise NotFoundError("User not found", detail={"user_id": user_id})
        updated, newly_locked = result

        remaining = max(0, max_attempts - updated.failed_login_attempts)
        if updated.is_locked:
            if newly_locked:
                logger.warning(
                    "account_locked",
                    user_id=user_id,
                    attempts=updated.failed_login_attempts,
                    locked_until=updated.locked_until.isoformat() if updated.locked_until else None,
                )
                await self.activity.log_security(
                    Actions.ACCOUNT_LOCKED,
                    LogSeverity.WARNING,
                    user_id=user_id,
                    ip_address=ip_address,
                    user_agent=user_agent,
                    resource_type="user",
                    resource_id=user_id,
                    message=TEMPORARY_LOCK_REASON,
                    metadata={
                        "failed_attempts": updated.failed_login_attempts,
                        "locked_until": updated.locked_until.isoformat() if updated.locked_until else None,
                    },
                )
            return FailedLoginResult(
                locked=True, attempts_remaining=0, locked_until=updated.locked_until
            )
        return FailedLoginResult(locked=False, attempts_remaining=remaining)

    async def clear_failed_attempts(self, user_id: str) -> None:
        self.store.update_user(user_id, failed_login_attempts=0, last_failed_login=None)

    async def lock_account(
        self,
        user_id: str,
        *,
        permanent: bool = True,
        actor_id: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> LockStatus:
        now = self._now()
        locked_until = None
        if not permanent:
            locked_until = now + timedelta(
                minutes=await self.config.get_int("security.account_lockout.duration_minutes")
            )
        updated = self.store.update_user(
            user_id, is_locked=True, locked_at=now, locked_until=locked_until
        )
        if updated is None:
            raise NotFoundError("User not found", detail={"user_id": user_id})
        reason = PERMANENT_LOCK_REASON if permanent else TEMPORARY_LOCK_REASON
        await self.activity.log_success(
            Actions.USER_LOCK,
            ActivityCategory.USER,
            severity=LogSeverity.WARNING,
            user_id=actor_id,
            ip_address=ip_address,
            resource_type="user",
            resource_id=user_id,
            metadata={"permanent": permanent},
        )
        return LockStatus(locked=True, locked_until=locked_until, reason=reason)

    async def unlock_account(
        self,
        user_id: str,
        *,
        actor_id: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> None:
        updated = self.store.update_user(
            user_id,
            is_locked=False,
            locked_at=None,
            locked_until=None,
            failed_login_attempts=0,
            last_failed_login=None,
        )
        if updated is None:
            raise NotFoundError("User not found", detail={"user_id": user_id})
        await self.activity.log_success(
            Actions.USER_UNLOCK,
            ActivityCategory.USER,
            user_id=actor_id,
            ip_address=ip_address,
            resource_type="user",
            resource_id=user_id,
        )

    async def get_locked_accounts(self) -> List[User]:
        """Currently locked users; timed locks already past expiry are released first."""
        locked: List[User] = []
        for user in self.store.list_locked_users():
            status = await self.is_account_locked(user.id)
            if status.locked:
                locked.append(user)
        return locked
