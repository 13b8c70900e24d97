import asyncio

import pytest

from gatehouse.service.activity import Actions, ActivityFilter
from gatehouse.service.errors import NotFoundError
from gatehouse.service.lockout import PERMANENT_LOCK_REASON, TEMPORARY_LOCK_REASON


async def test_locks_after_max_failures(services, clock):
    user = services.create_user()
    results = [await services.lockout.record_failed_login(user.id) for _ in range(5)]
    assert [r.attempts_remaining for r in results] == [4, 3, 2, 1, 0]
    assert [r.locked for r in results] == [False, False, False, False, True]
    assert results[-1].locked_until == clock.now.replace(minute=30)

    status = await services.lockout.is_account_locked(user.id)
    assert status.locked
    assert not status.permanent
    assert status.reason == TEMPORARY_LOCK_REASON
    assert status.remaining_minutes(clock.now) == 30

    locked_events = await services.activity.query(ActivityFilter(action=Actions.ACCOUNT_LOCKED))
    assert len(locked_events) == 1


async def test_timed_lock_expires_lazily(services, clock):
    user = services.create_user()
    for _ in range(5):
        await services.lockout.record_failed_login(user.id)
    clock.advance(minutes=30)
    status = await services.lockout.is_account_locked(user.id)
    assert not status.locked
    refreshed = services.store.get_user(user.id)
    assert refreshed.is_locked is False
    assert refreshed.failed_login_attempts == 0


async def test_counter_resets_after_idle_gap(services, clock):
    user = services.create_user()
    for _ in range(4):
        await services.lockout.record_failed_login(user.id)
    clock.advance(minutes=61)
    result = await services.lockout.record_failed_login(user.id)
    assert not result.locked
    assert result.attempts_remaining == 4


async def test_clear_failed_attempts(services):
    user = services.create_user()
    await services.lockout.record_failed_login(user.id)
    await services.lockout.clear_failed_attempts(user.id)
    assert services.store.get_user(user.id).failed_login_attempts == 0


async def test_admin_lock_is_permanent_until_unlocked(services, clock):
    user = services.create_user()
    status = await services.lockout.lock_account(user.id, actor_id="admin-1")
    assert status.permanent
    assert status.reason == PERMANENT_LOCK_REASON

    clock.advance(days=365)
    assert (await services.lockout.is_account_locked(user.id)).locked
    assert [u.id for u in await services.lockout.get_locked_accounts()] == [user.id]

    await services.lockout.unlock_account(user.id, actor_id="admin-1")
    assert not (await services.lockout.is_account_locked(user.id)).locked
    assert await services.lockout.get_locked_accounts() == []


async def test_temporary_admin_lock_uses_configured_duration(services, clock):
    user = services.create_user()
    await services.config.set("security.account_lockout.duration_minutes", 5)
    status = await services.lockout.lock_account(user.id, permanent=False)
    assert status.locked_until == clock.now.replace(minute=5)


async def test_get_locked_accounts_skips_expired_locks(services, clock):
    user = services.create_user()
    for _ in range(5):
        await services.lockout.record_failed_login(user.id)
    clock.advance(minutes=31)
    assert await services.lockout.get_locked_accounts() == []


async def test_unknown_user(services):
    with pytest.raises(NotFoundError):
        await services.lockout.record_failed_login("missing")
    with pytest.raises(NotFoundError):
        await services.lockout.lock_account("missing")
    assert not (await services.lockout.is_account_locked("missing")).locked


def test_parallel_failures_are_all_counted(services, run_concurrently):
    user = services.create_user()
    asyncio.run(services.config.set("security.account_lockout.max_failed_attempts", 100))
    results = run_concurrently(lambda: services.lockout.record_failed_login(user.id), 20)
    assert services.store.get_user(user.id).failed_login_attempts == 20
    assert sorted(r.attempts_remaining for r in results) == list(range(80, 100))


def test_parallel_failures_lock_exactly_once(services, run_concurrently):
    user = services.create_user()
    results = run_concurrently(lambda: services.lockout.record_failed_login(user.id), 8)
    assert services.store.get_user(user.id).is_locked
    locked_events = asyncio.run(
        services.activity.query(ActivityFilter(action=Actions.ACCOUNT_LOCKED))
    )
    assert len(locked_events) == 1
    assert any(r.locked for r in results)
