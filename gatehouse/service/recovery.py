from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, Optional

from gatehouse.logging import get_logger
from gatehouse.service.activity import ActivityCategory, ActivityLogService, Actions
from gatehouse.service.email import EmailService, send_notification_safely
from gatehouse.service.errors import ValidationError
from gatehouse.service.runtime_config import RuntimeConfig
from gatehouse.service.sessions import SessionManager
from gatehouse.service.tokens import TokenCodec, generate_token, hash_token
from gatehouse.service.validation import validate_password_requirements
from gatehouse.storage.common import normalize_email
from gatehouse.storage.models import (
    TOKEN_PURPOSE_EMAIL_VERIFICATION,
    TOKEN_PURPOSE_PASSWORD_RESET,
    User,
    utcnow,
)
from gatehouse.storage.protocol import AuthStore

logger = get_logger(__name__)

PASSWORD_RESET_NOTICE = (
    "If an account exists with that email, a password reset link has been sent."
)
INVALID_RESET_LINK = "This password reset link is invalid or has expired"
INVALID_VERIFICATION_LINK = "This verification link is invalid or has expired"


class AccountRecovery:
    """Password-reset and email-verification tokens.

    Only the SHA-256 of a token is stored, at most one per user and purpose.
    Redeeming deletes the row in the same statement that finds it, so a link
    works exactly once.
    """

    def __init__(
        self,
        store: AuthStore,
        codec: TokenCodec,
        config: RuntimeConfig,
        activity: ActivityLogService,
        sessions: SessionManager,
        *,
        email: Optional[EmailService] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.codec = codec
        self.config = config
        self.activity = activity
        self.sessions = sessions
        self.email = email
        self._clock = clock or utcnow

    def _now(self) -> datetime:
        return self._clock()

    def _issue(self, user_id: str, purpose: str, ttl: timedelta) -> str:
        token = generate_token()
        self.store.replace_token(user_id, purpose, hash_token(token), self._now() + ttl)
        return token

    def _redeem(self, purpose: str, token: Optional[str]) -> Optional[str]:
        if not token:
            return None
        record = self.store.consume_token(purpose, hash_token(token.strip()))
        if record is None:
            return None
        if record.expires_at <= self._now():
            logger.info("auth_token_expired", purpose=purpose, user_id=record.user_id)
            return None
        return record.user_id

    # -- password reset ----------------------------------------------------

    async def create_password_reset_token(self, user_id: str) -> str:
        minutes = await self.config.get_int("security.password_reset.token_expiry_minutes")
        return self._issue(user_id, TOKEN_PURPOSE_PASSWORD_RESET, timedelta(minutes=minutes))

    async def send_password_reset_email(
        self,
        email: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> str:
        """Same notice whether or not the address belongs to an account."""
        user = self.store.get_user_by_email(normalize_email(email or ""))
        if user is None or user.is_disabled:
            logger.info("password_reset_unknown_email")
            return PASSWORD_RESET_NOTICE
        token = await self.create_password_reset_token(user.id)
        minutes = await self.config.get_int("security.password_reset.token_expiry_minutes")
        if self.email:
            await send_notification_safely(
                self.email.send_password_reset, user.email, token, expires_minutes=minutes
            )
        await self.activity.log_success(
            Actions.PASSWORD_RESET_REQUEST,
            ActivityCategory.AUTH,
            user_id=user.id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return PASSWORD_RESET_NOTICE

    async def reset_password(
        self,
        token: str,
        new_password: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> User:
        # Policy first so a weak password does not burn the link
        problem = await validate_password_requirements(new_password or "", self.config)
        if problem:
            raise ValidationError(problem, detail={"field": "password"})
        user_id = self._redeem(TOKEN_PURPOSE_PASSWORD_RESET, token)
        if user_id is None:
            await self.activity.log_failure(
                Actions.PASSWORD_RESET_COMPLETE,
                ActivityCategory.AUTH,
                "Invalid or expired reset token",
                ip_address=ip_address,
                user_agent=user_agent,
            )
            raise ValidationError(INVALID_RESET_LINK, detail={"field": "token"})

        current = self.store.get_user(user_id)
        fields = dict(
            password_hash=self.codec.hash_password(new_password),
            require_password_change=False,
            failed_login_attempts=0,
            last_failed_login=None,
        )
        if current and current.is_locked and current.locked_until is not None:
            # Timed lockouts end with a reset; administrator locks do not
            fields.update(is_locked=False, locked_at=None, locked_until=None)
        user = self.store.update_user(user_id, **fields)
        if user is None:
            raise ValidationError(INVALID_RESET_LINK, detail={"field": "token"})
        await self.sessions.invalidate_user_sessions(user_id)
        await self.activity.log_success(
            Actions.PASSWORD_RESET_COMPLETE,
            ActivityCategory.AUTH,
            user_id=user_id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        if self.email:
            await send_notification_safely(self.email.send_password_changed, user.email)
        return user

    # -- email verification ------------------------------------------------

    async def send_verification_email(self, user: User) -> bool:
        hours = await self.config.get_int("email.verification.token_expiry_hours")
        token = self._issue(user.id, TOKEN_PURPOSE_EMAIL_VERIFICATION, timedelta(hours=hours))
        if not self.email:
            return False
        return await send_notification_safely(
            self.email.send_email_verification, user.email, token, expires_hours=hours
        )

    async def verify_email(
        self,
        token: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> User:
        user_id = self._redeem(TOKEN_PURPOSE_EMAIL_VERIFICATION, token)
        user = None
        if user_id is not None:
            user = self.store.update_user(
                user_id, email_verified=True, email_verified_at=self._now()
            )
        if user is None:
            await self.activity.log_failure(
                Actions.EMAIL_VERIFY,
                ActivityCategory.AUTH,
                "Invalid or expired verification token",
                ip_address=ip_address,
                user_agent=user_agent,
            )
            raise ValidationError(INVALID_VERIFICATION_LINK, detail={"field": "token"})
        await self.activity.log_success(
            Actions.EMAIL_VERIFY,
            ActivityCategory.AUTH,
            user_id=user.id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return user
