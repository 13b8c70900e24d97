from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from gatehouse.logging import get_logger
from gatehouse.service.activity import (
    ActivityCategory,
    ActivityEvent,
    ActivityLogService,
    Actions,
    LogSeverity,
)
from gatehouse.service.errors import ConfigurationError
from gatehouse.service.runtime_config import RuntimeConfig
from gatehouse.storage.models import utcnow
from gatehouse.storage.query import Eq, Gte, MetaEq, QuerySpec

logger = get_logger(__name__)

# Public action name -> config key segment
RATE_LIMIT_ACTIONS: Dict[str, str] = {
    "login": "login",
    "register": "register",
    "password-reset": "password_reset",
    "api-general": "api_general",
}


@dataclass(frozen=True)
class RateLimitPolicy:
    max_attempts: int
    window: timedelta
    block_duration: Optional[timedelta] = None


@dataclass
class RateLimitDecision:
    allowed: bool
    limit: int
    attempts_remaining: int
    retry_after_seconds: Optional[int] = None


def _ceil_seconds(delta: timedelta) -> int:
    return max(0, math.ceil(delta.total_seconds()))


class RateLimiter:
    """Sliding-window limiter over the activity log.

    Each recorded attempt is a ``security.rate_limit.check`` entry whose
    ``ip_address`` is the identifier and whose metadata names the action, so
    the window is recomputed from durable rows on every check.
    """

    def __init__(
        self,
        activity: ActivityLogService,
        config: RuntimeConfig,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.activity = activity
        self.store = activity.store
        self.config = config
        self._clock = clock or utcnow

    def _now(self) -> datetime:
        return self._clock()

    async def policy(self, action: str) -> RateLimitPolicy:
        segment = RATE_LIMIT_ACTIONS.get(action)
        if segment is None:
            raise ConfigurationError(
                f"Unknown rate limit action: {action}", detail={"action": action}
            )
        prefix = f"rate_limit.{segment}"
        block_minutes = await self.config.get_int(f"{prefix}.block_duration_minutes")
        return RateLimitPolicy(
            max_attempts=await self.config.get_int(f"{prefix}.max_attempts"),
            window=timedelta(minutes=await self.config.get_int(f"{prefix}.window_minutes")),
            block_duration=timedelta(minutes=block_minutes) if block_minutes > 0 else None,
        )

    @staticmethod
    def _attempt_predicates(identifier: str, action: str, since: datetime) -> list:
        return [
            Eq("ip_address", identifier),
            Eq("action", Actions.RATE_LIMIT_CHECK),
            MetaEq("rate_limit_action", action),
            Gte("created_at", since),
        ]

    def _active_block_until(
        self, identifier: str, action: str, policy: RateLimitPolicy, now: datetime
    ) -> Optional[datetime]:
        if not policy.block_duration:
            return None
        latest = self.store.query_activity(
            QuerySpec.of(
                [
                    Eq("ip_address", identifier),
                    Eq("action", Actions.RATE_LIMIT_EXCEEDED),
                    MetaEq("rate_limit_action", action),
                    MetaEq("reason", "limit"),
                    Gte("created_at", now - policy.block_duration),
                ],
                limit=1,
                newest_first=True,
            )
        )
        if not latest:
            return None
        until = latest[0].created_at + policy.block_duration
        return until if until > now else None

    async def check_rate_limit(
        self, identifier: str, action: str, *, user_agent: Optional[str] = None
    ) -> RateLimitDecision:
        policy = await self.policy(action)
        now = self._now()
        predicates = self._attempt_predicates(identifier, action, now - policy.window)
        attempts = self.store.count_activity(predicates)
        blocked_until = self._active_block_until(identifier, action, policy, now)

        if attempts < policy.max_attempts and not blocked_until:
            return RateLimitDecision(
                allowed=True,
                limit=policy.max_attempts,
                attempts_remaining=policy.max_attempts - attempts,
            )
        return await self._deny(
            identifier, action, policy, now, attempts, predicates, blocked_until, user_agent
        )

    async def _deny(
        self,
        identifier: str,
        action: str,
        policy: RateLimitPolicy,
        now: datetime,
        attempts: int,
        predicates: list,
        blocked_until: Optional[datetime],
        user_agent: Optional[str],
    ) -> RateLimitDecision:
        released_at = now
        if attempts >= policy.max_attempts:
            oldest = self.store.query_activity(
                QuerySpec.of(predicates, limit=1, newest_first=False)
            )
            if oldest:
                released_at = oldest[0].created_at + policy.window
        if blocked_until:
            # An active block is reported, never extended
            reason = "blocked"
            released_at = max(released_at, blocked_until)
        else:
            reason = "limit"
            if policy.block_duration:
                released_at = max(released_at, now + policy.block_duration)
        retry_after = _ceil_seconds(released_at - now)
        await self._log_exceeded(identifier, action, attempts, policy, retry_after, reason, user_agent)
        return RateLimitDecision(
            allowed=False,
            limit=policy.max_attempts,
            attempts_remaining=0,
            retry_after_seconds=retry_after,
        )

    async def _log_exceeded(
        self,
        identifier: str,
        action: str,
        attempts: int,
        policy: RateLimitPolicy,
        retry_after: int,
        reason: str,
        user_agent: Optional[str],
    ) -> None:
        logger.warning(
            "rate_limit_exceeded",
            identifier=identifier,
            action=action,
            attempts=attempts,
            retry_after=retry_after,
            reason=reason,
        )
        await self.activity.log(
            ActivityEvent(
                action=Actions.RATE_LIMIT_EXCEEDED,
                category=ActivityCategory.SECURITY,
                severity=LogSeverity.WARNING,
                success=False,
                ip_address=identifier,
                user_agent=user_agent,
                message=f"Rate limit exceeded for {action}",
                metadata={
                    "rate_limit_action": action,
                    "attempts": attempts,
                    "max_attempts": policy.max_attempts,
                    "window_seconds": int(policy.window.total_seconds()),
                    "retry_after": retry_after,
                    "reason": reason,
                },
            )
        )

    @staticmethod
    def _attempt_event(
        identifier: str,
        action: str,
        *,
        user_id: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> ActivityEvent:
        return ActivityEvent(
            action=Actions.RATE_LIMIT_CHECK,
            category=ActivityCategory.SECURITY,
            severity=LogSeverity.DEBUG,
            ip_address=identifier,
            user_agent=user_agent,
            user_id=user_id,
            metadata={"rate_limit_action": action},
        )

    async def record_attempt(
        self,
        identifier: str,
        action: str,
        *,
        user_id: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        if action not in RATE_LIMIT_ACTIONS:
            raise ConfigurationError(
                f"Unknown rate limit action: {action}", detail={"action": action}
            )
        await self.activity.log(
            self._attempt_event(identifier, action, user_id=user_id, user_agent=user_agent)
        )

    async def attempt(
        self, identifier: str, action: str, *, user_agent: Optional[str] = None
    ) -> RateLimitDecision:
        """Check and, when allowed, record the attempt as one atomic store write.

        Concurrent callers for the same identifier and action, in this process
        or another worker, never record more than ``max_attempts`` in a window.
        """
        policy = await self.policy(action)
        now = self._now()
        predicates = self._attempt_predicates(identifier, action, now - policy.window)
        blocked_until = self._active_block_until(identifier, action, policy, now)
        if blocked_until:
            attempts = self.store.count_activity(predicates)
        else:
            recorded, attempts = await self.activity.log_if_below(
                self._attempt_event(identifier, action, user_agent=user_agent),
                predicates,
                policy.max_attempts,
                lock_key=f"rate_limit:{action}:{identifier}",
            )
            if recorded:
                return RateLimitDecision(
                    allowed=True,
                    limit=policy.max_attempts,
                    attempts_remaining=policy.max_attempts - attempts - 1,
                )
        return await self._deny(
            identifier, action, policy, now, attempts, predicates, blocked_until, user_agent
        )

    async def clear_attempts(self, identifier: str, action: Optional[str] = None) -> int:
        predicates = [Eq("ip_address", identifier), Eq("action", Actions.RATE_LIMIT_CHECK)]
        if action is not None:
            predicates.append(MetaEq("rate_limit_action", action))
        removed = self.store.delete_activity(predicates)
        logger.info("rate_limit_cleared", identifier=identifier, action=action, removed=removed)
        return removed
