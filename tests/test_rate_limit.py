import asyncio
from datetime import timedelta

import pytest

from gatehouse.service.activity import Actions, ActivityFilter
from gatehouse.service.errors import ConfigurationError

IP = "198.51.100.1"


async def _configure(services, action_key, max_attempts, window, block):
    prefix = f"rate_limit.{action_key}"
    await services.config.set(f"{prefix}.max_attempts", max_attempts)
    await services.config.set(f"{prefix}.window_minutes", window)
    await services.config.set(f"{prefix}.block_duration_minutes", block)


async def test_attempts_within_limit_are_allowed(services):
    await _configure(services, "login", 3, 15, 0)
    remaining = []
    for _ in range(3):
        decision = await services.limiter.attempt(IP, "login")
        assert decision.allowed
        remaining.append(decision.attempts_remaining)
    assert remaining == [2, 1, 0]

    denied = await services.limiter.attempt(IP, "login")
    assert not denied.allowed
    assert denied.retry_after_seconds == 15 * 60


async def test_window_slides(services, clock):
    await _configure(services, "login", 2, 10, 0)
    await services.limiter.attempt(IP, "login")
    clock.advance(minutes=6)
    await services.limiter.attempt(IP, "login")
    assert not (await services.limiter.attempt(IP, "login")).allowed

    # First attempt falls out of the window four minutes later
    clock.advance(minutes=4, seconds=1)
    assert (await services.limiter.attempt(IP, "login")).allowed


async def test_identifiers_and_actions_are_independent(services):
    await _configure(services, "login", 1, 15, 0)
    assert (await services.limiter.attempt(IP, "login")).allowed
    assert not (await services.limiter.attempt(IP, "login")).allowed
    assert (await services.limiter.attempt("198.51.100.2", "login")).allowed
    assert (await services.limiter.attempt(IP, "register")).allowed


async def test_block_outlasts_window(services, clock):
    await _configure(services, "login", 2, 1, 30)
    await services.limiter.attempt(IP, "login")
    await services.limiter.attempt(IP, "login")
    denied = await services.limiter.attempt(IP, "login")
    assert not denied.allowed
    assert denied.retry_after_seconds == 30 * 60

    # Window has emptied but the block still applies
    clock.advance(minutes=5)
    blocked = await services.limiter.attempt(IP, "login")
    assert not blocked.allowed
    assert blocked.retry_after_seconds == 25 * 60

    clock.advance(minutes=25, seconds=1)
    assert (await services.limiter.attempt(IP, "login")).allowed


async def test_blocked_checks_do_not_extend_the_block(services, clock):
    await _configure(services, "login", 1, 1, 10)
    await services.limiter.attempt(IP, "login")
    await services.limiter.attempt(IP, "login")
    clock.advance(minutes=3)
    await services.limiter.attempt(IP, "login")
    clock.advance(minutes=7, seconds=1)
    assert (await services.limiter.attempt(IP, "login")).allowed


async def test_denials_are_audited_and_not_counted(services):
    await _configure(services, "login", 1, 15, 0)
    await services.limiter.attempt(IP, "login")
    await services.limiter.attempt(IP, "login")
    await services.limiter.attempt(IP, "login")
    checks = await services.activity.count(ActivityFilter(action=Actions.RATE_LIMIT_CHECK))
    exceeded = await services.activity.query(ActivityFilter(action=Actions.RATE_LIMIT_EXCEEDED))
    assert checks == 1
    assert len(exceeded) == 2
    assert exceeded[0].ip_address == IP
    assert exceeded[0].metadata["rate_limit_action"] == "login"


async def test_clear_attempts(services):
    await _configure(services, "login", 1, 15, 0)
    await services.limiter.attempt(IP, "login")
    assert await services.limiter.clear_attempts(IP, "login") == 1
    assert (await services.limiter.attempt(IP, "login")).allowed


async def test_unknown_action_is_a_configuration_error(services):
    with pytest.raises(ConfigurationError):
        await services.limiter.attempt(IP, "launch-missiles")


async def test_gathered_attempts_stay_within_limit(services):
    await _configure(services, "login", 3, 15, 0)
    decisions = await asyncio.gather(*(services.limiter.attempt(IP, "login") for _ in range(10)))
    assert sum(d.allowed for d in decisions) == 3
    assert sorted(d.attempts_remaining for d in decisions if d.allowed) == [0, 1, 2]


def test_attempts_from_parallel_workers_stay_within_limit(services, run_concurrently):
    asyncio.run(_configure(services, "login", 3, 15, 0))
    decisions = run_concurrently(lambda: services.limiter.attempt(IP, "login"), 12)
    assert sum(d.allowed for d in decisions) == 3
    recorded = services.store.count_activity(
        services.limiter._attempt_predicates(IP, "login", services.clock.now - timedelta(minutes=15))
    )
    assert recorded == 3
