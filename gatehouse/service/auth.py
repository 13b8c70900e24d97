from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, FrozenSet, Literal, Optional, Union

from gatehouse.logging import get_logger
from gatehouse.service.activity import (
    ActivityCategory,
    ActivityLogService,
    Actions,
    LogSeverity,
)
from gatehouse.service.email import EmailService, send_notification_safely
from gatehouse.service.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from gatehouse.service.lockout import (
    TEMPORARY_LOCK_REASON,
    AccountLockoutEngine,
    LockStatus,
)
from gatehouse.service.permissions import ADMIN_PERMISSION, PermissionResolver
from gatehouse.service.rate_limit import RateLimiter
from gatehouse.service.recovery import AccountRecovery
from gatehouse.service.runtime_config import RuntimeConfig
from gatehouse.service.sessions import SessionManager
from gatehouse.service.tokens import TokenCodec
from gatehouse.service.two_factor import PendingChallengeStore, TwoFactorEngine
from gatehouse.service.validation import (
    validate_email,
    validate_login_password,
    validate_name,
    validate_password_requirements,
    validate_username,
)
from gatehouse.storage.common import normalize_email, normalize_username
from gatehouse.storage.errors import ConstraintViolation
from gatehouse.storage.models import Role, Session, User, utcnow
from gatehouse.storage.protocol import AuthStore

logger = get_logger(__name__)

INVALID_CREDENTIALS = "Incorrect username or password"
INVALID_CODE = "Invalid verification code"
CHALLENGE_EXPIRED = "Your verification session has expired. Please sign in again."

LOGIN_PATH = "/login"
TWO_FACTOR_PATH = "/login/verify-2fa"
HOME_PATH = "/panel"
PASSWORD_CHANGE_PATH = "/profile/password"

USERNAME_RULES = "Invalid username (min 3, max 31 characters, lowercase letters, numbers, '-' and '_')"
NAME_RULES = "Names may only contain letters, spaces, apostrophes and hyphens (max 50)"


@dataclass
class RequestMeta:
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    @property
    def identifier(self) -> str:
        return self.ip_address or "unknown"


@dataclass(frozen=True)
class AuthContext:
    """Who is calling, resolved once per request and passed explicitly."""

    user_id: str
    session_id: str
    username: str
    permissions: FrozenSet[str] = frozenset()
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    require_password_change: bool = False
    email_verified: bool = False
    session_expires_at: Optional[datetime] = None

    def has(self, permission: str) -> bool:
        return ADMIN_PERMISSION in self.permissions or permission in self.permissions

    @property
    def meta(self) -> RequestMeta:
        return RequestMeta(ip_address=self.ip_address, user_agent=self.user_agent)


@dataclass
class IssuedSession:
    token: str
    session: Session

    @property
    def expires_at(self) -> datetime:
        return self.session.expires_at


@dataclass
class Redirect:
    target: str
    session: Optional[IssuedSession] = None
    pending_token: Optional[str] = None
    pending_expires_at: Optional[datetime] = None
    notice: Optional[str] = None
    clear_session: bool = False
    clear_pending: bool = False
    kind: Literal["redirect"] = field(default="redirect", init=False)


@dataclass
class Rendered:
    data: Dict[str, Any] = field(default_factory=dict)
    session: Optional[IssuedSession] = None
    kind: Literal["rendered"] = field(default="rendered", init=False)


@dataclass
class Failure:
    status_code: int
    code: str
    message: str
    retry_after: Optional[int] = None
    detail: Dict[str, Any] = field(default_factory=dict)
    kind: Literal["error"] = field(default="error", init=False)


Outcome = Union[Redirect, Rendered, Failure]


def _lock_message(status: LockStatus, now: datetime) -> str:
    if status.permanent:
        return f"{status.reason}. Please contact support."
    minutes = status.remaining_minutes(now)
    unit = "minute" if minutes == 1 else "minutes"
    return f"{status.reason}. Try again in {minutes} {unit}."


def _lock_failure(status: LockStatus, now: datetime) -> Failure:
    return Failure(
        403,
        "account_locked",
        _lock_message(status, now),
        detail={
            "permanent": status.permanent,
            "locked_until": status.locked_until.isoformat() if status.locked_until else None,
        },
    )


def _rate_limited(message: str, retry_after: Optional[int]) -> Failure:
    return Failure(429, "rate_limited", message, retry_after=retry_after or 0)


def _normalize_identity(fields: Dict[str, Any]) -> Dict[str, Any]:
    normalized = dict(fields)
    if isinstance(normalized.get("username"), str):
        normalized["username"] = normalize_username(normalized["username"])
    if isinstance(normalized.get("email"), str):
        normalized["email"] = normalize_email(normalized["email"])
    return normalized


def _invalid_identity(fields: Dict[str, Any]) -> Optional[Failure]:
    """First problem among the supplied identity fields; names may be absent."""
    if "username" in fields and not validate_username(fields["username"]):
        return Failure(400, "validation_error", USERNAME_RULES, detail={"field": "username"})
    if "email" in fields and not validate_email(fields["email"]):
        return Failure(400, "validation_error", "Invalid email address", detail={"field": "email"})
    for name in ("first_name", "last_name"):
        value = fields.get(name)
        if value is not None and not validate_name(value):
            return Failure(400, "validation_error", NAME_RULES, detail={"field": name})
    return None


def _raise_for(failure: Optional[Failure]) -> None:
    if failure is None:
        return
    if failure.status_code == 404:
        raise NotFoundError(failure.message, detail=failure.detail)
    if failure.status_code == 409:
        raise ConflictError(failure.message, detail=failure.detail)
    raise ValidationError(failure.message, detail=failure.detail)


class AuthService:
    """Request-level flows: login, two-factor completion, account changes.

    Every public flow returns an :data:`Outcome` instead of raising, so the
    HTTP layer only has to translate ``Redirect``/``Rendered``/``Failure``
    into a response. Administrative helpers at the bottom raise
    :class:`~gatehouse.service.errors.ServiceError` like the engines do.
    """

    def __init__(
        self,
        *,
        store: AuthStore,
        codec: TokenCodec,
        config: RuntimeConfig,
        activity: ActivityLogService,
        limiter: RateLimiter,
        lockout: AccountLockoutEngine,
        sessions: SessionManager,
        two_factor: TwoFactorEngine,
        pending: PendingChallengeStore,
        permissions: PermissionResolver,
        recovery: AccountRecovery,
        email: Optional[EmailService] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.codec = codec
        self.config = config
        self.activity = activity
        self.limiter = limiter
        self.lockout = lockout
        self.sessions = sessions
        self.two_factor = two_factor
        self.pending = pending
        self.permissions = permissions
        self.recovery = recovery
        self.email = email
        self._clock = clock or utcnow
        self._dummy_hash: Optional[str] = None

    def _now(self) -> datetime:
        return self._clock()

    def _burn_password_check(self, password: str) -> None:
        # Unknown usernames still pay for one argon2 verify
        if self._dummy_hash is None:
            self._dummy_hash = self.codec.hash_password("gatehouse-timing-equalizer")
        self.codec.verify_password(self._dummy_hash, password)

    async def _default_role(self) -> Role:
        role = self.store.get_role_by_name("user")
        if role is None:
            await self.permissions.ensure_system_roles()
            role = self.store.get_role_by_name("user")
        return role

    async def _issue_session(self, user: User, meta: RequestMeta) -> IssuedSession:
        token = self.sessions.generate_session_token()
        session = await self.sessions.create_session(
            token, user.id, user_agent=meta.user_agent, ip_address=meta.ip_address
        )
        return IssuedSession(token=token, session=session)

    async def _signed_in(
        self, user: User, meta: RequestMeta, *, method: str, notice: Optional[str] = None
    ) -> Redirect:
        issued = await self._issue_session(user, meta)
        await self.activity.log_success(
            Actions.LOGIN,
            ActivityCategory.AUTH,
            user_id=user.id,
            ip_address=meta.ip_address,
            user_agent=meta.user_agent,
            metadata={"method": method},
        )
        logger.info("login_succeeded", user_id=user.id, method=method)
        if user.require_password_change:
            return Redirect(
                PASSWORD_CHANGE_PATH,
                session=issued,
                notice=notice or "You must change your password before continuing.",
                clear_pending=True,
            )
        return Redirect(HOME_PATH, session=issued, notice=notice, clear_pending=True)

    async def _log_login_failure(
        self, meta: RequestMeta, reason: str, *, user_id: Optional[str] = None, **metadata: Any
    ) -> None:
        await self.activity.log_failure(
            Actions.LOGIN_FAILED,
            ActivityCategory.AUTH,
            INVALID_CREDENTIALS if reason in ("user_not_found", "invalid_password") else reason,
            user_id=user_id,
            ip_address=meta.ip_address,
            user_agent=meta.user_agent,
            metadata={"reason": reason, **metadata},
        )

    # -- authentication ----------------------------------------------------

    async def login(self, username: Any, password: Any, meta: RequestMeta) -> Outcome:
        decision = await self.limiter.attempt(meta.identifier, "login", user_agent=meta.user_agent)
        if not decision.allowed:
            return _rate_limited(
                "Too many login attempts. Please try again later.", decision.retry_after_seconds
            )

        if isinstance(username, str):
            username = normalize_username(username)
        if not validate_username(username):
            return Failure(
                400,
                "validation_error",
                "Invalid username (min 3, max 31 characters, lowercase letters, numbers, '-' and '_')",
            )
        if not validate_login_password(password):
            return Failure(400, "validation_error", "Invalid password (min 6, max 255 characters)")

        user = self.store.get_user_by_username(username)
        if user is None:
            self._burn_password_check(password)
            await self._log_login_failure(meta, "user_not_found", username=username)
            return Failure(400, "invalid_credentials", INVALID_CREDENTIALS)

        if user.is_disabled:
            await self._log_login_failure(meta, "account_disabled", user_id=user.id)
            return Failure(403, "account_disabled", "This account has been disabled")

        status = await self.lockout.is_account_locked(user.id)
        if status.locked:
            await self._log_login_failure(meta, "account_locked", user_id=user.id)
            return _lock_failure(status, self._now())

        if not self.codec.verify_password(user.password_hash, password):
            result = await self.lockout.record_failed_login(
                user.id, ip_address=meta.ip_address, user_agent=meta.user_agent
            )
            await self._log_login_failure(
                meta,
                "invalid_password",
                user_id=user.id,
                attempts_remaining=result.attempts_remaining,
            )
            if result.locked:
                status = LockStatus(
                    locked=True,
                    locked_until=result.locked_until,
                    reason=TEMPORARY_LOCK_REASON,
                )
                return _lock_failure(status, self._now())
            return Failure(400, "invalid_credentials", INVALID_CREDENTIALS)

        await self.lockout.clear_failed_attempts(user.id)
        if self.codec.needs_rehash(user.password_hash):
            self.store.update_user(user.id, password_hash=self.codec.hash_password(password))
            logger.info("password_rehashed", user_id=user.id)

        if user.two_factor_enabled:
            ttl = timedelta(minutes=await self.config.get_int("security.2fa.pending_ttl_minutes"))
            token, expires_at = await self.pending.issue(user.id, ttl)
            await self.activity.log_success(
                Actions.TWO_FACTOR_CHALLENGE,
                ActivityCategory.AUTH,
                user_id=user.id,
                ip_address=meta.ip_address,
                user_agent=meta.user_agent,
            )
            return Redirect(TWO_FACTOR_PATH, pending_token=token, pending_expires_at=expires_at)

        return await self._signed_in(user, meta, method="password")

    async def _pending_user(self, pending_token: Optional[str]) -> Union[User, Redirect]:
        challenge = await self.pending.peek(pending_token)
        if challenge is None:
            return Redirect(LOGIN_PATH, notice=CHALLENGE_EXPIRED, clear_pending=True)
        user = self.store.get_user(challenge.user_id)
        if user is None or user.is_disabled or not user.two_factor_enabled:
            await self.pending.consume(pending_token)
            return Redirect(LOGIN_PATH, notice=CHALLENGE_EXPIRED, clear_pending=True)
        return user

    async def _second_factor_failed(
        self, user: User, pending_token: str, meta: RequestMeta, action: str
    ) -> Failure:
        result = await self.lockout.record_failed_login(
            user.id, ip_address=meta.ip_address, user_agent=meta.user_agent
        )
        await self.activity.log_failure(
            action,
            ActivityCategory.AUTH,
            INVALID_CODE,
            user_id=user.id,
            ip_address=meta.ip_address,
            user_agent=meta.user_agent,
            metadata={"attempts_remaining": result.attempts_remaining},
        )
        if result.locked:
            await self.pending.consume(pending_token)
            status = LockStatus(
                locked=True,
                locked_until=result.locked_until,
                reason=TEMPORARY_LOCK_REASON,
            )
            return _lock_failure(status, self._now())
        return Failure(400, "invalid_code", INVALID_CODE)

    async def _begin_second_factor(
        self, pending_token: Optional[str], meta: RequestMeta
    ) -> Union[User, Outcome]:
        decision = await self.limiter.attempt(meta.identifier, "login", user_agent=meta.user_agent)
        if not decision.allowed:
            return _rate_limited(
                "Too many verification attempts. Please try again later.",
                decision.retry_after_seconds,
            )
        found = await self._pending_user(pending_token)
        if isinstance(found, Redirect):
            return found
        status = await self.lockout.is_account_locked(found.id)
        if status.locked:
            await self.pending.consume(pending_token)
            return _lock_failure(status, self._now())
        return found

    async def _complete_second_factor(
        self,
        user: User,
        pending_token: str,
        meta: RequestMeta,
        *,
        method: str,
        notice: Optional[str] = None,
    ) -> Redirect:
        if await self.pending.consume(pending_token) is None:
            # Another request completed this challenge first
            return Redirect(LOGIN_PATH, notice=CHALLENGE_EXPIRED, clear_pending=True)
        await self.lockout.clear_failed_attempts(user.id)
        return await self._signed_in(user, meta, method=method, notice=notice)

    async def verify_two_factor(
        self, pending_token: Optional[str], code: Any, meta: RequestMeta
    ) -> Outcome:
        found = await self._begin_second_factor(pending_token, meta)
        if not isinstance(found, User):
            return found
        if not isinstance(code, str) or not self.two_factor.verify_code(code, found.two_factor_secret):
            return await self._second_factor_failed(
                found, pending_token, meta, Actions.TWO_FACTOR_VERIFY_FAILED
            )
        return await self._complete_second_factor(found, pending_token, meta, method="totp")

    async def verify_backup_code(
        self, pending_token: Optional[str], code: Any, meta: RequestMeta
    ) -> Outcome:
        found = await self._begin_second_factor(pending_token, meta)
        if not isinstance(found, User):
            return found
        remaining = None
        if isinstance(code, str):
            remaining = await self.two_factor.consume_backup_code(found.id, code)
        if remaining is None:
            return await self._second_factor_failed(
                found, pending_token, meta, Actions.TWO_FACTOR_BACKUP_FAILED
            )
        await self.activity.log_security(
            Actions.TWO_FACTOR_BACKUP_USED,
            LogSeverity.INFO,
            user_id=found.id,
            ip_address=meta.ip_address,
            user_agent=meta.user_agent,
            metadata={"remaining": remaining},
        )
        notice = None
        if remaining == 0:
            notice = "You have used your last backup code. Generate new codes from your security settings."
        elif remaining <= 2:
            noun = "code" if remaining == 1 else "codes"
            notice = (
                f"Only {remaining} backup {noun} left. "
                "Generate new codes from your security settings."
            )
        return await self._complete_second_factor(
            found, pending_token, meta, method="backup_code", notice=notice
        )

    async def authenticate(
        self, session_token: Optional[str], meta: RequestMeta
    ) -> Optional[AuthContext]:
        """Resolve a presented session token into a context, or None."""
        validation = await self.sessions.validate_session_token(session_token)
        if not validation.valid:
            return None
        user = validation.user
        status = await self.lockout.is_account_locked(user.id)
        if status.permanent:
            # Administrator locks end sessions; a timed lockout from failed
            # logins only blocks new sign-ins
            await self.sessions.invalidate_session(validation.session.id)
            return None
        permissions = await self.permissions.get_user_permissions(user.id)
        return AuthContext(
            user_id=user.id,
            session_id=validation.session.id,
            username=user.username,
            permissions=frozenset(permissions),
            ip_address=meta.ip_address,
            user_agent=meta.user_agent,
            require_password_change=user.require_password_change,
            email_verified=user.email_verified,
            session_expires_at=validation.session.expires_at,
        )

    async def logout(self, ctx: Optional[AuthContext]) -> Redirect:
        if ctx is not None:
            await self.sessions.invalidate_session(ctx.session_id)
            await self.activity.log_success(
                Actions.LOGOUT,
                ActivityCategory.AUTH,
                user_id=ctx.user_id,
                ip_address=ctx.ip_address,
                user_agent=ctx.user_agent,
            )
        return Redirect(LOGIN_PATH, clear_session=True)

    # -- account lifecycle -------------------------------------------------

    async def register(
        self,
        username: Any,
        email: Any,
        password: Any,
        meta: RequestMeta,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> Outcome:
        decision = await self.limiter.attempt(
            meta.identifier, "register", user_agent=meta.user_agent
        )
        if not decision.allowed:
            return _rate_limited(
                "Too many registration attempts. Please try again later.",
                decision.retry_after_seconds,
            )
        identity = _normalize_identity(
            {"username": username, "email": email, "first_name": first_name, "last_name": last_name}
        )
        invalid = _invalid_identity(identity)
        if invalid:
            return invalid
        username, email = identity["username"], identity["email"]
        if not isinstance(password, str):
            return Failure(400, "validation_error", "Password is required", detail={"field": "password"})
        problem = await validate_password_requirements(password, self.config)
        if problem:
            return Failure(400, "validation_error", problem, detail={"field": "password"})

        if self.store.get_user_by_username(username):
            return Failure(409, "conflict", "Username already taken", detail={"field": "username"})
        if self.store.get_user_by_email(email):
            return Failure(409, "conflict", "Email already registered", detail={"field": "email"})
        try:
            user = self.store.create_user(
                username,
                email,
                self.codec.hash_password(password),
                first_name=first_name,
                last_name=last_name,
            )
        except ConstraintViolation as exc:
            return Failure(409, "conflict", "Username or email already in use", detail={"field": exc.field})

        self.store.assign_role(user.id, (await self._default_role()).id)

        await self.activity.log_success(
            Actions.REGISTER,
            ActivityCategory.AUTH,
            user_id=user.id,
            ip_address=meta.ip_address,
            user_agent=meta.user_agent,
            resource_type="user",
            resource_id=user.id,
        )
        notice = None
        if await self.config.get_bool("email.verification.required"):
            await self.recovery.send_verification_email(user)
            notice = "Check your inbox to verify your email address."
        issued = await self._issue_session(user, meta)
        return Redirect(HOME_PATH, session=issued, notice=notice)

    async def change_password(
        self, ctx: AuthContext, current_password: Any, new_password: Any
    ) -> Outcome:
        user = self.store.get_user(ctx.user_id)
        if user is None:
            return Redirect(LOGIN_PATH, clear_session=True)
        if not isinstance(current_password, str) or not self.codec.verify_password(
            user.password_hash, current_password
        ):
            await self.activity.log_failure(
                Actions.PASSWORD_CHANGE,
                ActivityCategory.USER,
                "Current password is incorrect",
                user_id=user.id,
                ip_address=ctx.ip_address,
                user_agent=ctx.user_agent,
            )
            return Failure(
                400, "invalid_password", "Current password is incorrect",
                detail={"field": "current_password"},
            )
        if not isinstance(new_password, str):
            return Failure(400, "validation_error", "New password is required", detail={"field": "new_password"})
        problem = await validate_password_requirements(new_password, self.config)
        if problem:
            return Failure(400, "validation_error", problem, detail={"field": "new_password"})
        if self.codec.verify_password(user.password_hash, new_password):
            return Failure(
                400,
                "validation_error",
                "New password must be different from the current password",
                detail={"field": "new_password"},
            )
        self.store.update_user(
            user.id,
            password_hash=self.codec.hash_password(new_password),
            require_password_change=False,
        )
        await self.sessions.invalidate_user_sessions(user.id, except_session_id=ctx.session_id)
        await self.activity.log_success(
            Actions.PASSWORD_CHANGE,
            ActivityCategory.USER,
            user_id=user.id,
            ip_address=ctx.ip_address,
            user_agent=ctx.user_agent,
        )
        if self.email:
            await send_notification_safely(self.email.send_password_changed, user.email)
        return Redirect(HOME_PATH, notice="Your password has been changed.")

    async def request_password_reset(self, email: Any, meta: RequestMeta) -> Outcome:
        decision = await self.limiter.attempt(
            meta.identifier, "password-reset", user_agent=meta.user_agent
        )
        if not decision.allowed:
            return _rate_limited(
                "Too many password reset requests. Please try again later.",
                decision.retry_after_seconds,
            )
        if not validate_email(email):
            return Failure(400, "validation_error", "Invalid email address", detail={"field": "email"})
        message = await self.recovery.send_password_reset_email(
            email, ip_address=meta.ip_address, user_agent=meta.user_agent
        )
        return Rendered({"message": message})

    async def reset_password(self, token: Any, new_password: Any, meta: RequestMeta) -> Outcome:
        if not isinstance(token, str) or not isinstance(new_password, str):
            return Failure(400, "validation_error", "Token and new password are required")
        try:
            await self.recovery.reset_password(
                token, new_password, ip_address=meta.ip_address, user_agent=meta.user_agent
            )
        except ValidationError as exc:
            return Failure(400, exc.error_code, exc.message, detail=exc.detail)
        return Redirect(
            LOGIN_PATH,
            notice="Your password has been reset. Please sign in.",
            clear_session=True,
        )

    async def verify_email(self, token: Any, meta: RequestMeta) -> Outcome:
        if not isinstance(token, str):
            return Failure(400, "validation_error", "Verification token is required")
        try:
            await self.recovery.verify_email(
                token, ip_address=meta.ip_address, user_agent=meta.user_agent
            )
        except ValidationError as exc:
            return Failure(400, exc.error_code, exc.message, detail=exc.detail)
        return Redirect(HOME_PATH, notice="Your email address has been verified.")

    async def resend_verification(self, ctx: AuthContext) -> Outcome:
        user = self.store.get_user(ctx.user_id)
        if user is None:
            return Redirect(LOGIN_PATH, clear_session=True)
        if user.email_verified:
            return Rendered({"message": "Your email address is already verified."})
        await self.recovery.send_verification_email(user)
        return Rendered({"message": "A new verification email has been sent."})

    async def update_profile(
        self,
        ctx: AuthContext,
        *,
        username: Any = None,
        first_name: Any = None,
        last_name: Any = None,
    ) -> Outcome:
        user = self.store.get_user(ctx.user_id)
        if user is None:
            return Redirect(LOGIN_PATH, clear_session=True)
        supplied = {
            name: value
            for name, value in (
                ("username", username),
                ("first_name", first_name),
                ("last_name", last_name),
            )
            if value is not None
        }
        changes = _normalize_identity(supplied)
        invalid = _invalid_identity(changes)
        if invalid:
            return invalid
        changes = {name: value for name, value in changes.items() if getattr(user, name) != value}
        if not changes:
            return Rendered({"message": "No changes to save.", "user": user.public_dict()})
        updated = self._apply_user_changes(user.id, changes)
        if isinstance(updated, Failure):
            return updated
        await self.activity.log_success(
            Actions.USER_UPDATE,
            ActivityCategory.USER,
            user_id=user.id,
            ip_address=ctx.ip_address,
            user_agent=ctx.user_agent,
            resource_type="user",
            resource_id=user.id,
            message="User updated their profile",
            metadata={"fields": sorted(changes)},
        )
        return Rendered({"message": "Profile updated successfully.", "user": updated.public_dict()})

    async def change_email(self, ctx: AuthContext, new_email: Any, password: Any) -> Outcome:
        """Move the account to a new address; it is unverified until confirmed again."""
        user = self.store.get_user(ctx.user_id)
        if user is None:
            return Redirect(LOGIN_PATH, clear_session=True)
        if not isinstance(password, str) or not self.codec.verify_password(user.password_hash, password):
            await self.activity.log_failure(
                Actions.USER_UPDATE,
                ActivityCategory.USER,
                "Password is incorrect",
                user_id=user.id,
                ip_address=ctx.ip_address,
                user_agent=ctx.user_agent,
                metadata={"fields": ["email"]},
            )
            return Failure(400, "invalid_password", "Password is incorrect", detail={"field": "password"})
        email = _normalize_identity({"email": new_email})["email"]
        invalid = _invalid_identity({"email": email})
        if invalid:
            return invalid
        if email == user.email:
            return Failure(
                400,
                "validation_error",
                "New email is the same as current email",
                detail={"field": "email"},
            )
        updated = self._apply_user_changes(
            user.id, {"email": email, "email_verified": False, "email_verified_at": None}
        )
        if isinstance(updated, Failure):
            return updated
        await self.activity.log_success(
            Actions.USER_UPDATE,
            ActivityCategory.USER,
            user_id=user.id,
            ip_address=ctx.ip_address,
            user_agent=ctx.user_agent,
            resource_type="user",
            resource_id=user.id,
            message="User changed their email address",
            metadata={"fields": ["email"], "old_email": user.email, "new_email": email},
        )
        await self.recovery.send_verification_email(updated)
        return Rendered(
            {
                "message": "Email address updated. Check your inbox to verify the new address.",
                "user": updated.public_dict(),
            }
        )

    def _apply_user_changes(self, user_id: str, changes: Dict[str, Any]) -> Union[User, Failure]:
        if "username" in changes:
            other = self.store.get_user_by_username(changes["username"])
            if other is not None and other.id != user_id:
                return Failure(409, "conflict", "Username already taken", detail={"field": "username"})
        if "email" in changes:
            other = self.store.get_user_by_email(changes["email"])
            if other is not None and other.id != user_id:
                return Failure(409, "conflict", "Email already registered", detail={"field": "email"})
        try:
            updated = self.store.update_user(user_id, **changes)
        except ConstraintViolation as exc:
            return Failure(409, "conflict", "Username or email already in use", detail={"field": exc.field})
        if updated is None:
            return Failure(404, "not_found", "User not found", detail={"user_id": user_id})
        return updated

    async def delete_account(self, ctx: AuthContext, password: Any) -> Outcome:
        user = self.store.get_user(ctx.user_id)
        if user is None:
            return Redirect(LOGIN_PATH, clear_session=True)
        if not isinstance(password, str) or not self.codec.verify_password(user.password_hash, password):
            return Failure(400, "invalid_password", "Incorrect password", detail={"field": "password"})
        self.store.delete_user(user.id)
        await self.activity.log_success(
            Actions.USER_DELETE,
            ActivityCategory.USER,
            severity=LogSeverity.WARNING,
            user_id=user.id,
            ip_address=ctx.ip_address,
            user_agent=ctx.user_agent,
            resource_type="user",
            resource_id=user.id,
            metadata={"self_service": True},
        )
        logger.info("account_deleted", user_id=user.id)
        return Redirect("/", clear_session=True, notice="Your account has been deleted.")

    # -- administration ----------------------------------------------------

    async def admin_delete_user(self, ctx: AuthContext, user_id: str) -> None:
        if user_id == ctx.user_id:
            raise ForbiddenError("Use account deletion to remove your own account")
        user = self.store.get_user(user_id)
        if user is None:
            raise NotFoundError("User not found", detail={"user_id": user_id})
        self.store.delete_user(user_id)
        await self.activity.log_success(
            Actions.USER_DELETE,
            ActivityCategory.USER,
            severity=LogSeverity.WARNING,
            user_id=ctx.user_id,
            ip_address=ctx.ip_address,
            user_agent=ctx.user_agent,
            resource_type="user",
            resource_id=user_id,
            metadata={"username": user.username},
        )

    async def admin_create_user(
        self,
        ctx: AuthContext,
        username: Any,
        email: Any,
        password: Any,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        require_password_change: bool = True,
    ) -> User:
        """Create an account on someone's behalf with the default ``user`` role.

        By default the new owner must pick their own password at first sign-in.
        """
        identity = _normalize_identity(
            {"username": username, "email": email, "first_name": first_name, "last_name": last_name}
        )
        _raise_for(_invalid_identity(identity))
        if not isinstance(password, str):
            raise ValidationError("Password is required", detail={"field": "password"})
        problem = await validate_password_requirements(password, self.config)
        if problem:
            raise ValidationError(problem, detail={"field": "password"})
        if self.store.get_user_by_username(identity["username"]):
            raise ConflictError("Username already taken", detail={"field": "username"})
        if self.store.get_user_by_email(identity["email"]):
            raise ConflictError("Email already registered", detail={"field": "email"})
        try:
            user = self.store.create_user(
                identity["username"],
                identity["email"],
                self.codec.hash_password(password),
                first_name=first_name,
                last_name=last_name,
                require_password_change=require_password_change,
            )
        except ConstraintViolation as exc:
            raise ConflictError("Username or email already in use", detail={"field": exc.field})

        self.store.assign_role(user.id, (await self._default_role()).id, assigned_by=ctx.user_id)
        await self.activity.log_success(
            Actions.USER_CREATE,
            ActivityCategory.USER,
            user_id=ctx.user_id,
            ip_address=ctx.ip_address,
            user_agent=ctx.user_agent,
            resource_type="user",
            resource_id=user.id,
            message=f"User created: {user.username}",
            metadata={
                "username": user.username,
                "email": user.email,
                "require_password_change": require_password_change,
                "created_by": ctx.user_id,
            },
        )
        return user

    async def admin_update_user(
        self,
        ctx: AuthContext,
        user_id: str,
        *,
        username: Optional[str] = None,
        email: Optional[str] = None,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        require_password_change: Optional[bool] = None,
        disabled: Optional[bool] = None,
        disabled_reason: Optional[str] = None,
    ) -> User:
        """Apply the supplied changes; ``None`` leaves a field as it is.

        A changed address is no longer verified, and disabling an account
        ends its sessions.
        """
        user = self.store.get_user(user_id)
        if user is None:
            raise NotFoundError("User not found", detail={"user_id": user_id})
        if disabled and user_id == ctx.user_id:
            raise ForbiddenError("You cannot disable your own account")
        supplied = {
            name: value
            for name, value in (
                ("username", username),
                ("email", email),
                ("first_name", first_name),
                ("last_name", last_name),
                ("require_password_change", require_password_change),
            )
            if value is not None
        }
        changes = _normalize_identity(supplied)
        _raise_for(_invalid_identity(changes))
        if disabled is not None:
            changes["is_disabled"] = disabled
            changes["disabled_reason"] = (disabled_reason or None) if disabled else None
        changes = {name: value for name, value in changes.items() if getattr(user, name) != value}
        if "email" in changes:
            changes.update(email_verified=False, email_verified_at=None)
        if not changes:
            return user
        updated = self._apply_user_changes(user_id, changes)
        if isinstance(updated, Failure):
            _raise_for(updated)
        if updated.is_disabled and not user.is_disabled:
            await self.sessions.invalidate_user_sessions(user_id)
        await self.activity.log_success(
            Actions.USER_UPDATE,
            ActivityCategory.USER,
            user_id=ctx.user_id,
            ip_address=ctx.ip_address,
            user_agent=ctx.user_agent,
            resource_type="user",
            resource_id=user_id,
            message=f"User updated: {updated.username}",
            metadata={"fields": sorted(changes), "updated_by": ctx.user_id},
        )
        return updated
