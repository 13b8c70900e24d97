from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from gatehouse.logging import get_logger
from gatehouse.service.runtime_config import RuntimeConfig
from gatehouse.service.tokens import generate_token, hash_token
from gatehouse.storage.models import Session, User, utcnow
from gatehouse.storage.protocol import AuthStore

logger = get_logger(__name__)


@dataclass
class SessionValidation:
    session: Optional[Session] = None
    user: Optional[User] = None

    @property
    def valid(self) -> bool:
        return self.session is not None and self.user is not None


def session_id_for(token: str) -> str:
    """Session ids are the SHA-256 of the bearer token; the token itself is never stored."""
    return hash_token(token)


class SessionManager:
    def __init__(
        self,
        store: AuthStore,
        config: RuntimeConfig,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.config = config
        self._clock = clock or utcnow

    def _now(self) -> datetime:
        return self._clock()

    async def _lifetime(self) -> timedelta:
        return timedelta(days=await self.config.get_int("security.session.lifetime_days"))

    async def _renewal_threshold(self) -> timedelta:
        return timedelta(days=await self.config.get_int("security.session.renewal_threshold_days"))

    def generate_session_token(self) -> str:
        return generate_token()

    async def create_session(
        self,
        token: str,
        user_id: str,
        *,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> Session:
        session = Session.new(
            session_id_for(token),
            user_id,
            now=self._now(),
            lifetime=await self._lifetime(),
            user_agent=user_agent,
            ip_address=ip_address,
        )
        created = self.store.create_session(session)
        logger.info("session_created", user_id=user_id, expires_at=created.expires_at.isoformat())
        return created

    async def validate_session_token(self, token: Optional[str]) -> SessionValidation:
        """Resolve a presented token; never raises for a bad or stale token.

        A session inside the renewal threshold has its expiry moved to
        ``now + lifetime`` as part of this call.
        """
        if not token:
            return SessionValidation()
        session = self.store.get_session(session_id_for(token))
        if not session:
            return SessionValidation()
        now = self._now()
        if session.is_expired(now):
            self.store.delete_session(session.id)
            return SessionValidation()
        user = self.store.get_user(session.user_id)
        if not user or user.is_disabled:
            self.store.delete_session(session.id)
            return SessionValidation()

        if session.expires_at - now < await self._renewal_threshold():
            renewed = self.store.extend_session(
                session.id, expires_at=now + await self._lifetime(), now=now
            )
            if renewed is None:
                return SessionValidation()
            session = renewed
            logger.debug("session_renewed", user_id=user.id)
        return SessionValidation(session=session, user=user)

    async def invalidate_session(self, session_id: str) -> bool:
        return self.store.delete_session(session_id)

    async def invalidate_user_sessions(
        self, user_id: str, *, except_session_id: Optional[str] = None
    ) -> int:
        removed = self.store.delete_user_sessions(user_id, except_session_id=except_session_id)
        logger.info(
            "user_sessions_invalidated",
            user_id=user_id,
            removed=removed,
            kept_current=except_session_id is not None,
        )
        return removed

    async def list_user_sessions(self, user_id: str) -> List[Session]:
        now = self._now()
        return [s for s in self.store.list_user_sessions(user_id) if not s.is_expired(now)]
