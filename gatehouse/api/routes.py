from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Query, Request, Response

from gatehouse.api.error_handling import error_response
from gatehouse.api.schemas import (
    ActivityCleanupRequest,
    ActivityStatsResponse,
    AdminUserCreateRequest,
    AdminUserUpdateRequest,
    BackupCodesResponse,
    CodeRequest,
    ConfigItem,
    ConfigUpdateRequest,
    EmailChangeRequest,
    EmailVerificationRequest,
    Envelope,
    LockRequest,
    LoginRequest,
    NodePermissionRequest,
    PasswordChangeRequest,
    PasswordConfirmRequest,
    PasswordResetConfirm,
    PasswordResetRequest,
    ProfileUpdateRequest,
    RedirectData,
    RegisterRequest,
    RoleAssignRequest,
    RoleCreateRequest,
    RoleUpdateRequest,
    SessionResponse,
    TwoFactorSetupResponse,
)
from gatehouse.config import get_settings
from gatehouse.logging import get_logger
from gatehouse.service.activity import ActivityFilter
from gatehouse.service.auth import AuthContext, IssuedSession, Outcome, RequestMeta
from gatehouse.service.errors import (
    ForbiddenError,
    NotFoundError,
    RateLimitedError,
    ValidationError,
)
from gatehouse.service.runtime import get_runtime
from gatehouse.storage.models import Role

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

PENDING_COOKIE_PATH = "/v1/auth/2fa"


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def _request_meta(request: Request) -> RequestMeta:
    return RequestMeta(
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if authorization and authorization.lower().startswith("bearer "):
        return authorization[7:].strip() or None
    return None


# -- cookies -----------------------------------------------------------------


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _set_session_cookie(response: Response, token: str, expires_at: datetime) -> None:
    settings = get_settings()
    expires_at = _aware(expires_at)
    response.set_cookie(
        settings.session_cookie_name,
        token,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="lax",
        max_age=max(0, int((expires_at - datetime.now(timezone.utc)).total_seconds())),
        expires=expires_at,
        path="/",
    )


def _clear_session_cookie(response: Response) -> None:
    settings = get_settings()
    response.delete_cookie(
        settings.session_cookie_name,
        path="/",
        secure=settings.cookie_secure,
        httponly=True,
        samesite="lax",
    )


def _set_pending_cookie(response: Response, token: str, expires_at: datetime) -> None:
    settings = get_settings()
    response.set_cookie(
        settings.pending_2fa_cookie_name,
        token,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="lax",
        max_age=max(1, int((_aware(expires_at) - datetime.now(timezone.utc)).total_seconds())),
        path=PENDING_COOKIE_PATH,
    )


def _clear_pending_cookie(response: Response) -> None:
    settings = get_settings()
    response.delete_cookie(
        settings.pending_2fa_cookie_name,
        path=PENDING_COOKIE_PATH,
        secure=settings.cookie_secure,
        httponly=True,
        samesite="lax",
    )


def _session_data(issued: Optional[IssuedSession]) -> dict:
    if issued is None:
        return {}
    # API clients without a cookie jar send this back as a bearer token
    return {
        "session_token": issued.token,
        "session_expires_at": issued.expires_at.isoformat(),
    }


def _render_outcome(outcome: Outcome, response: Response) -> Any:
    """Translate an orchestrator outcome into an envelope plus cookie changes."""
    if outcome.kind == "error":
        return error_response(
            outcome.status_code,
            outcome.message,
            outcome.detail or None,
            code=outcome.code,
            retry_after=outcome.retry_after if outcome.status_code == 429 else None,
        )
    if outcome.session is not None:
        _set_session_cookie(response, outcome.session.token, outcome.session.expires_at)
    if outcome.kind == "rendered":
        return Envelope(status="ok", data={**outcome.data, **_session_data(outcome.session)})

    if outcome.clear_session:
        _clear_session_cookie(response)
    if outcome.pending_token:
        _set_pending_cookie(response, outcome.pending_token, outcome.pending_expires_at)
    elif outcome.clear_pending:
        _clear_pending_cookie(response)
    data = RedirectData(redirect=outcome.target, notice=outcome.notice).model_dump()
    data.update(_session_data(outcome.session))
    return Envelope(status="ok", data=data)


# -- dependencies ------------------------------------------------------------


async def get_optional_context(
    request: Request,
    response: Response,
    authorization: Optional[str] = Header(None),
) -> Optional[AuthContext]:
    settings = get_settings()
    bearer = _bearer_token(authorization)
    token = bearer or request.cookies.get(settings.session_cookie_name)
    if not token:
        return None
    ctx = await get_runtime().auth.authenticate(token, _request_meta(request))
    if ctx is None:
        if not bearer:
            _clear_session_cookie(response)
        return None
    if not bearer and ctx.session_expires_at is not None:
        # Renewal moves the expiry; keep the cookie in step
        _set_session_cookie(response, token, ctx.session_expires_at)
    return ctx


async def get_auth_context(
    ctx: Optional[AuthContext] = Depends(get_optional_context),
) -> AuthContext:
    if ctx is None:
        raise _http_error("unauthorized", "invalid session", status_code=401)
    return ctx


async def get_active_context(ctx: AuthContext = Depends(get_auth_context)) -> AuthContext:
    """Authenticated and not parked on a forced password change."""
    if ctx.require_password_change:
        raise _http_error(
            "password_change_required",
            "You must change your password before continuing",
            status_code=403,
            details={"redirect": "/profile/password"},
        )
    return ctx


def require_permission(*permissions: str):
    """Dependency factory; permissions come from the store on every request."""

    async def _dependency(ctx: AuthContext = Depends(get_active_context)) -> AuthContext:
        if not all(ctx.has(permission) for permission in permissions):
            logger.warning(
                "permission_denied", user_id=ctx.user_id, required=list(permissions)
            )
            raise _http_error(
                "forbidden",
                "insufficient permissions",
                status_code=403,
                details={"required": list(permissions)},
            )
        return ctx

    return _dependency


async def enforce_api_rate_limit(request: Request) -> None:
    meta = _request_meta(request)
    decision = await get_runtime().limiter.attempt(
        meta.identifier, "api-general", user_agent=meta.user_agent
    )
    if not decision.allowed:
        raise RateLimitedError("rate limit exceeded", retry_after=decision.retry_after_seconds or 0)


# -- auth --------------------------------------------------------------------


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Password step of sign-in.

    Returns a redirect to the two-factor step (with the pending cookie) or a
    session cookie. Failures keep one message for unknown users and wrong
    passwords.
    """
    outcome = await get_runtime().auth.login(body.username, body.password, _request_meta(request))
    return _render_outcome(outcome, response)


@router.post("/auth/2fa/verify", response_model=Envelope, tags=["auth"])
async def verify_two_factor(body: CodeRequest, request: Request, response: Response):
    pending = request.cookies.get(get_settings().pending_2fa_cookie_name)
    outcome = await get_runtime().auth.verify_two_factor(pending, body.code, _request_meta(request))
    return _render_outcome(outcome, response)


@router.post("/auth/2fa/backup", response_model=Envelope, tags=["auth"])
async def verify_backup_code(body: CodeRequest, request: Request, response: Response):
    pending = request.cookies.get(get_settings().pending_2fa_cookie_name)
    outcome = await get_runtime().auth.verify_backup_code(pending, body.code, _request_meta(request))
    return _render_outcome(outcome, response)


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(response: Response, ctx: Optional[AuthContext] = Depends(get_optional_context)):
    outcome = await get_runtime().auth.logout(ctx)
    return _render_outcome(outcome, response)


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request, response: Response):
    outcome = await get_runtime().auth.register(
        body.username,
        body.email,
        body.password,
        _request_meta(request),
        first_name=body.first_name,
        last_name=body.last_name,
    )
    return _render_outcome(outcome, response)


@router.post("/auth/password-reset/request", response_model=Envelope, tags=["auth"])
async def request_password_reset(body: PasswordResetRequest, request: Request, response: Response):
    outcome = await get_runtime().auth.request_password_reset(body.email, _request_meta(request))
    return _render_outcome(outcome, response)


@router.post(
    "/auth/password-reset/confirm",
    response_model=Envelope,
    tags=["auth"],
    dependencies=[Depends(enforce_api_rate_limit)],
)
async def confirm_password_reset(body: PasswordResetConfirm, request: Request, response: Response):
    outcome = await get_runtime().auth.reset_password(
        body.token, body.new_password, _request_meta(request)
    )
    return _render_outcome(outcome, response)


@router.post(
    "/auth/verify-email",
    response_model=Envelope,
    tags=["auth"],
    dependencies=[Depends(enforce_api_rate_limit)],
)
async def verify_email(body: EmailVerificationRequest, request: Request, response: Response):
    outcome = await get_runtime().auth.verify_email(body.token, _request_meta(request))
    return _render_outcome(outcome, response)


# -- self service --------------------------------------------------------------

me_router = APIRouter(prefix="/me", tags=["me"], dependencies=[Depends(enforce_api_rate_limit)])


@me_router.get("", response_model=Envelope)
async def get_profile(ctx: AuthContext = Depends(get_auth_context)):
    runtime = get_runtime()
    user = runtime.store.get_user(ctx.user_id)
    if user is None:
        raise NotFoundError("User not found")
    roles = await runtime.permissions.get_user_roles(ctx.user_id)
    return Envelope(
        status="ok",
        data={
            **user.public_dict(),
            "roles": [role.name for role in roles],
            "permissions": sorted(ctx.permissions),
        },
    )


@me_router.patch("", response_model=Envelope)
async def update_profile(
    body: ProfileUpdateRequest, response: Response, ctx: AuthContext = Depends(get_active_context)
):
    outcome = await get_runtime().auth.update_profile(
        ctx, username=body.username, first_name=body.first_name, last_name=body.last_name
    )
    return _render_outcome(outcome, response)


@me_router.post("/email", response_model=Envelope)
async def change_email(
    body: EmailChangeRequest, response: Response, ctx: AuthContext = Depends(get_active_context)
):
    outcome = await get_runtime().auth.change_email(ctx, body.new_email, body.password)
    return _render_outcome(outcome, response)


@me_router.post("/password", response_model=Envelope)
async def change_password(
    body: PasswordChangeRequest, response: Response, ctx: AuthContext = Depends(get_auth_context)
):
    outcome = await get_runtime().auth.change_password(ctx, body.current_password, body.new_password)
    return _render_outcome(outcome, response)


@me_router.get("/2fa", response_model=Envelope)
async def two_factor_status(ctx: AuthContext = Depends(get_active_context)):
    return Envelope(status="ok", data=await get_runtime().two_factor.status(ctx.user_id))


@me_router.post("/2fa/setup", response_model=Envelope)
async def two_factor_setup(
    body: PasswordConfirmRequest, ctx: AuthContext = Depends(get_active_context)
):
    setup = await get_runtime().two_factor.begin_setup(
        ctx.user_id, body.password, ip_address=ctx.ip_address
    )
    return Envelope(
        status="ok",
        data=TwoFactorSetupResponse(secret=setup.secret, uri=setup.uri, qr_code=setup.qr_code),
    )


@me_router.post("/2fa/confirm", response_model=Envelope)
async def two_factor_confirm(body: CodeRequest, ctx: AuthContext = Depends(get_active_context)):
    codes = await get_runtime().two_factor.confirm_setup(
        ctx.user_id, body.code, ip_address=ctx.ip_address
    )
    return Envelope(status="ok", data=BackupCodesResponse(backup_codes=codes))


@me_router.post("/2fa/disable", response_model=Envelope)
async def two_factor_disable(
    body: PasswordConfirmRequest, ctx: AuthContext = Depends(get_active_context)
):
    await get_runtime().two_factor.disable(ctx.user_id, body.password, ip_address=ctx.ip_address)
    return Envelope(status="ok", data={"enabled": False})


@me_router.post("/2fa/backup-codes", response_model=Envelope)
async def two_factor_regenerate(
    body: PasswordConfirmRequest, ctx: AuthContext = Depends(get_active_context)
):
    codes = await get_runtime().two_factor.regenerate_backup_codes(
        ctx.user_id, body.password, ip_address=ctx.ip_address
    )
    return Envelope(status="ok", data=BackupCodesResponse(backup_codes=codes))


@me_router.get("/sessions", response_model=Envelope)
async def list_sessions(ctx: AuthContext = Depends(get_active_context)):
    sessions = await get_runtime().sessions.list_user_sessions(ctx.user_id)
    return Envelope(
        status="ok",
        data=[
            SessionResponse(
                id=s.id,
                created_at=s.created_at,
                expires_at=s.expires_at,
                user_agent=s.user_agent,
                ip_address=s.ip_address,
                current=s.id == ctx.session_id,
            )
            for s in sessions
        ],
    )


@me_router.delete("/sessions/{session_id}", response_model=Envelope)
async def revoke_session(
    session_id: str = Path(..., max_length=128),
    ctx: AuthContext = Depends(get_active_context),
):
    runtime = get_runtime()
    session = runtime.store.get_session(session_id)
    if session is None or session.user_id != ctx.user_id:
        raise NotFoundError("Session not found")
    await runtime.sessions.invalidate_session(session_id)
    return Envelope(status="ok", data={"revoked": session_id})


@me_router.post("/sessions/revoke-others", response_model=Envelope)
async def revoke_other_sessions(ctx: AuthContext = Depends(get_active_context)):
    removed = await get_runtime().sessions.invalidate_user_sessions(
        ctx.user_id, except_session_id=ctx.session_id
    )
    return Envelope(status="ok", data={"revoked": removed})


@me_router.get("/activity", response_model=Envelope)
async def my_activity(
    limit: int = Query(20, ge=1, le=100),
    ctx: AuthContext = Depends(get_active_context),
):
    entries = await get_runtime().activity.recent_for_user(ctx.user_id, limit=limit)
    return Envelope(status="ok", data=[entry.to_dict() for entry in entries])


@me_router.post("/verification/resend", response_model=Envelope)
async def resend_verification(response: Response, ctx: AuthContext = Depends(get_auth_context)):
    outcome = await get_runtime().auth.resend_verification(ctx)
    return _render_outcome(outcome, response)


@me_router.post("/delete", response_model=Envelope)
async def delete_account(
    body: PasswordConfirmRequest, response: Response, ctx: AuthContext = Depends(get_active_context)
):
    outcome = await get_runtime().auth.delete_account(ctx, body.password)
    return _render_outcome(outcome, response)


# -- administration ------------------------------------------------------------

admin_router = APIRouter(
    prefix="/admin", tags=["admin"], dependencies=[Depends(enforce_api_rate_limit)]
)


def _role_dict(role: Role) -> dict:
    return {
        "id": role.id,
        "name": role.name,
        "description": role.description,
        "permissions": role.permissions,
        "is_system_role": role.is_system_role,
    }


@admin_router.get("/users", response_model=Envelope)
async def list_users(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    ctx: AuthContext = Depends(require_permission("manage_users")),
):
    users = get_runtime().store.list_users(limit=limit, offset=offset)
    return Envelope(status="ok", data=[user.public_dict() for user in users])


@admin_router.post("/users", response_model=Envelope, status_code=201)
async def create_user(
    body: AdminUserCreateRequest, ctx: AuthContext = Depends(require_permission("manage_users"))
):
    user = await get_runtime().auth.admin_create_user(
        ctx,
        body.username,
        body.email,
        body.password,
        first_name=body.first_name,
        last_name=body.last_name,
        require_password_change=body.require_password_change,
    )
    return Envelope(status="ok", data=user.public_dict())


@admin_router.patch("/users/{user_id}", response_model=Envelope)
async def update_user(
    body: AdminUserUpdateRequest,
    user_id: str = Path(..., max_length=64),
    ctx: AuthContext = Depends(require_permission("manage_users")),
):
    user = await get_runtime().auth.admin_update_user(
        ctx, user_id, **body.model_dump(exclude_none=True)
    )
    return Envelope(status="ok", data=user.public_dict())


@admin_router.delete("/users/{user_id}", response_model=Envelope)
async def delete_user(
    user_id: str = Path(..., max_length=64),
    ctx: AuthContext = Depends(require_permission("manage_users")),
):
    await get_runtime().auth.admin_delete_user(ctx, user_id)
    return Envelope(status="ok", data={"deleted": user_id})


@admin_router.post("/users/{user_id}/lock", response_model=Envelope)
async def lock_user(
    body: LockRequest,
    user_id: str = Path(..., max_length=64),
    ctx: AuthContext = Depends(require_permission("manage_users")),
):
    if user_id == ctx.user_id:
        raise ForbiddenError("You cannot lock your own account")
    runtime = get_runtime()
    status = await runtime.lockout.lock_account(
        user_id, permanent=body.permanent, actor_id=ctx.user_id, ip_address=ctx.ip_address
    )
    await runtime.sessions.invalidate_user_sessions(user_id)
    return Envelope(
        status="ok",
        data={
            "locked": status.locked,
            "permanent": status.permanent,
            "locked_until": status.locked_until.isoformat() if status.locked_until else None,
            "reason": status.reason,
        },
    )


@admin_router.post("/users/{user_id}/unlock", response_model=Envelope)
async def unlock_user(
    user_id: str = Path(..., max_length=64),
    ctx: AuthContext = Depends(require_permission("manage_users")),
):
    await get_runtime().lockout.unlock_account(
        user_id, actor_id=ctx.user_id, ip_address=ctx.ip_address
    )
    return Envelope(status="ok", data={"locked": False})


@admin_router.get("/locked-accounts", response_model=Envelope)
async def locked_accounts(ctx: AuthContext = Depends(require_permission("manage_users"))):
    users = await get_runtime().lockout.get_locked_accounts()
    return Envelope(
        status="ok",
        data=[
            {
                **user.public_dict(),
                "locked_at": user.locked_at.isoformat() if user.locked_at else None,
                "failed_login_attempts": user.failed_login_attempts,
            }
            for user in users
        ],
    )


@admin_router.get("/roles", response_model=Envelope)
async def list_roles(ctx: AuthContext = Depends(require_permission("manage_roles"))):
    return Envelope(status="ok", data=await get_runtime().permissions.list_roles())


@admin_router.post("/roles", response_model=Envelope, status_code=201)
async def create_role(
    body: RoleCreateRequest, ctx: AuthContext = Depends(require_permission("manage_roles"))
):
    role = await get_runtime().permissions.create_role(
        body.name, body.permissions, description=body.description, actor_id=ctx.user_id
    )
    return Envelope(status="ok", data=_role_dict(role))


@admin_router.put("/roles/{role_id}", response_model=Envelope)
async def update_role(
    body: RoleUpdateRequest,
    role_id: str = Path(..., max_length=64),
    ctx: AuthContext = Depends(require_permission("manage_roles")),
):
    role = await get_runtime().permissions.update_role_permissions(
        role_id, body.permissions, description=body.description, actor_id=ctx.user_id
    )
    return Envelope(status="ok", data=_role_dict(role))


@admin_router.delete("/roles/{role_id}", response_model=Envelope)
async def delete_role(
    role_id: str = Path(..., max_length=64),
    ctx: AuthContext = Depends(require_permission("manage_roles")),
):
    await get_runtime().permissions.delete_role(role_id, actor_id=ctx.user_id)
    return Envelope(status="ok", data={"deleted": role_id})


@admin_router.post("/users/{user_id}/roles", response_model=Envelope, status_code=201)
async def assign_role(
    body: RoleAssignRequest,
    user_id: str = Path(..., max_length=64),
    ctx: AuthContext = Depends(require_permission("manage_roles")),
):
    assignment = await get_runtime().permissions.assign_role(
        user_id, body.role_id, actor_id=ctx.user_id
    )
    return Envelope(
        status="ok",
        data={"user_id": assignment.user_id, "role_id": assignment.role_id},
    )


@admin_router.delete("/users/{user_id}/roles/{role_id}", response_model=Envelope)
async def remove_role(
    user_id: str = Path(..., max_length=64),
    role_id: str = Path(..., max_length=64),
    ctx: AuthContext = Depends(require_permission("manage_roles")),
):
    removed = await get_runtime().permissions.remove_role(user_id, role_id, actor_id=ctx.user_id)
    if not removed:
        raise NotFoundError("Role assignment not found")
    return Envelope(status="ok", data={"removed": role_id})


@admin_router.post("/users/{user_id}/node-permissions", response_model=Envelope, status_code=201)
async def grant_node_permission(
    body: NodePermissionRequest,
    user_id: str = Path(..., max_length=64),
    ctx: AuthContext = Depends(require_permission("manage_roles")),
):
    grant = await get_runtime().permissions.grant_node_permission(
        user_id,
        body.node_path,
        body.permissions,
        granted_by=ctx.user_id,
        expires_at=_aware(body.expires_at) if body.expires_at else None,
    )
    return Envelope(
        status="ok",
        data={
            "id": grant.id,
            "user_id": grant.user_id,
            "node_path": grant.node_path,
            "permissions": grant.permissions,
            "expires_at": grant.expires_at.isoformat() if grant.expires_at else None,
        },
    )


@admin_router.delete("/node-permissions/{permission_id}", response_model=Envelope)
async def revoke_node_permission(
    permission_id: str = Path(..., max_length=64),
    ctx: AuthContext = Depends(require_permission("manage_roles")),
):
    await get_runtime().permissions.revoke_node_permission(permission_id, actor_id=ctx.user_id)
    return Envelope(status="ok", data={"revoked": permission_id})


def _activity_filter(
    user_id: Optional[str] = Query(None, max_length=64),
    action: Optional[str] = Query(None, max_length=100),
    category: Optional[str] = Query(None, max_length=32),
    severity: Optional[str] = Query(None, max_length=32),
    success: Optional[bool] = Query(None),
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
) -> ActivityFilter:
    return ActivityFilter(
        user_id=user_id,
        action=action,
        category=category,
        severity=severity,
        success=success,
        start_date=_aware(start_date) if start_date else None,
        end_date=_aware(end_date) if end_date else None,
        limit=limit,
        offset=offset,
    )


@admin_router.get("/activity", response_model=Envelope)
async def query_activity(
    filters: ActivityFilter = Depends(_activity_filter),
    ctx: AuthContext = Depends(require_permission("view_logs")),
):
    activity = get_runtime().activity
    entries = await activity.query(filters)
    return Envelope(
        status="ok",
        data={
            "items": [entry.to_dict() for entry in entries],
            "total": await activity.count(filters),
            "limit": filters.limit,
            "offset": filters.offset,
        },
    )


@admin_router.get("/activity/stats", response_model=Envelope)
async def activity_stats(
    filters: ActivityFilter = Depends(_activity_filter),
    ctx: AuthContext = Depends(require_permission("view_logs")),
):
    stats = await get_runtime().activity.stats(filters)
    return Envelope(status="ok", data=ActivityStatsResponse(**stats))


@admin_router.post("/activity/cleanup", response_model=Envelope)
async def activity_cleanup(
    body: ActivityCleanupRequest, ctx: AuthContext = Depends(require_permission("admin"))
):
    removed = await get_runtime().activity.cleanup(body.older_than_days)
    return Envelope(status="ok", data={"removed": removed})


def _known_config_key(key: str) -> None:
    if key not in {d.key for d in get_runtime().config.list_definitions()}:
        raise NotFoundError("Unknown configuration key", detail={"key": key})


@admin_router.get("/config", response_model=Envelope)
async def list_config(ctx: AuthContext = Depends(require_permission("view_config"))):
    items = await get_runtime().config.list_all()
    return Envelope(status="ok", data=[ConfigItem(**item) for item in items])


@admin_router.put("/config/{key}", response_model=Envelope)
async def update_config(
    body: ConfigUpdateRequest,
    key: str = Path(..., max_length=128),
    ctx: AuthContext = Depends(require_permission("edit_config")),
):
    _known_config_key(key)
    result = await get_runtime().config.set(key, body.value, updated_by=ctx.user_id)
    if not result.success:
        raise ValidationError(result.error or "Invalid value", detail={"key": key})
    return Envelope(status="ok", data={"key": key, "value": result.value})


@admin_router.delete("/config/{key}", response_model=Envelope)
async def reset_config(
    key: str = Path(..., max_length=128),
    ctx: AuthContext = Depends(require_permission("edit_config")),
):
    _known_config_key(key)
    result = await get_runtime().config.reset(key, updated_by=ctx.user_id)
    return Envelope(status="ok", data={"key": key, "value": result.value})


router.include_router(me_router)
router.include_router(admin_router)
