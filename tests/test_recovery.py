import asyncio

import pytest

from gatehouse.service.errors import ValidationError
from gatehouse.service.recovery import PASSWORD_RESET_NOTICE
from gatehouse.storage.models import TOKEN_PURPOSE_PASSWORD_RESET


async def _reset_token(services, user):
    notice = await services.recovery.send_password_reset_email(user.email)
    assert notice == PASSWORD_RESET_NOTICE
    return services.email.tokens("password_reset")[-1]


async def test_unknown_email_gets_the_same_notice(services):
    assert await services.recovery.send_password_reset_email("nobody@example.com") == PASSWORD_RESET_NOTICE
    assert services.email.sent == []


async def test_disabled_user_gets_no_email(services):
    user = services.create_user()
    services.store.update_user(user.id, is_disabled=True)
    await services.recovery.send_password_reset_email(user.email)
    assert services.email.sent == []


async def test_reset_password_consumes_token_once(services):
    user = services.create_user()
    token = await _reset_token(services, user)
    await services.recovery.reset_password(token, "NewPassword456")
    stored = services.store.get_user(user.id)
    assert services.codec.verify_password(stored.password_hash, "NewPassword456")

    with pytest.raises(ValidationError):
        await services.recovery.reset_password(token, "OtherPassword789")


async def test_only_the_latest_token_works(services):
    user = services.create_user()
    first = await _reset_token(services, user)
    second = await _reset_token(services, user)
    with pytest.raises(ValidationError):
        await services.recovery.reset_password(first, "NewPassword456")
    await services.recovery.reset_password(second, "NewPassword456")


async def test_expired_token_is_rejected(services, clock):
    user = services.create_user()
    token = await _reset_token(services, user)
    clock.advance(minutes=61)
    with pytest.raises(ValidationError):
        await services.recovery.reset_password(token, "NewPassword456")


async def test_weak_password_keeps_the_token(services):
    user = services.create_user()
    token = await _reset_token(services, user)
    with pytest.raises(ValidationError) as exc:
        await services.recovery.reset_password(token, "weak")
    assert exc.value.detail == {"field": "password"}
    await services.recovery.reset_password(token, "NewPassword456")


async def test_reset_clears_timed_lock_and_sessions(services):
    user = services.create_user()
    for _ in range(5):
        await services.lockout.record_failed_login(user.id)
    token = services.sessions.generate_session_token()
    await services.sessions.create_session(token, user.id)
    services.store.update_user(user.id, require_password_change=True)

    reset_token = await _reset_token(services, user)
    await services.recovery.reset_password(reset_token, "NewPassword456")

    stored = services.store.get_user(user.id)
    assert not stored.is_locked
    assert stored.failed_login_attempts == 0
    assert not stored.require_password_change
    assert not (await services.sessions.validate_session_token(token)).valid
    assert ("password_changed", user.email, None) in services.email.sent


async def test_reset_keeps_admin_lock(services):
    user = services.create_user()
    await services.lockout.lock_account(user.id)
    reset_token = await _reset_token(services, user)
    await services.recovery.reset_password(reset_token, "NewPassword456")
    assert (await services.lockout.is_account_locked(user.id)).permanent


async def test_email_verification(services, clock):
    user = services.create_user()
    await services.recovery.send_verification_email(user)
    token = services.email.tokens("verification")[-1]
    verified = await services.recovery.verify_email(token)
    assert verified.email_verified
    assert verified.email_verified_at == clock.now
    with pytest.raises(ValidationError):
        await services.recovery.verify_email(token)


async def test_verification_token_expires(services, clock):
    user = services.create_user()
    await services.recovery.send_verification_email(user)
    token = services.email.tokens("verification")[-1]
    clock.advance(hours=24, seconds=1)
    with pytest.raises(ValidationError):
        await services.recovery.verify_email(token)


async def test_token_lifetime_is_configurable(services, clock):
    await services.config.set("security.password_reset.token_expiry_minutes", 5)
    user = services.create_user()
    token = await _reset_token(services, user)
    clock.advance(minutes=5)
    with pytest.raises(ValidationError):
        await services.recovery.reset_password(token, "NewPassword456")


def test_parallel_reset_requests_leave_one_live_token(services, run_concurrently):
    user = services.create_user()
    run_concurrently(lambda: services.recovery.send_password_reset_email(user.email), 8)
    issued = services.email.tokens("password_reset")
    assert len(issued) == 8
    live = [t for t in services.store.tokens.values() if t.purpose == TOKEN_PURPOSE_PASSWORD_RESET]
    assert len(live) == 1

    redeemed = 0
    for token in issued:
        try:
            asyncio.run(services.recovery.reset_password(token, "NewPassword456"))
        except ValidationError:
            continue
        redeemed += 1
    assert redeemed == 1
