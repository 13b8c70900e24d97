from gatehouse.service.activity import (
    ActivityCategory,
    ActivityFilter,
    Actions,
    LogSeverity,
)


async def test_log_and_query_newest_first(services, clock):
    activity = services.activity
    await activity.log_success(Actions.LOGIN, ActivityCategory.AUTH, user_id="u1")
    clock.advance(minutes=1)
    await activity.log_failure(
        Actions.LOGIN_FAILED, ActivityCategory.AUTH, "bad password", user_id="u1"
    )
    clock.advance(minutes=1)
    await activity.log_success(Actions.LOGOUT, ActivityCategory.AUTH, user_id="u2")

    mine = await activity.query(ActivityFilter(user_id="u1"))
    assert [e.action for e in mine] == [Actions.LOGIN_FAILED, Actions.LOGIN]
    assert mine[0].success is False
    assert mine[0].severity == "warning"
    assert mine[0].error_message == "bad password"
    assert await activity.count(ActivityFilter(success=False)) == 1


async def test_filters_by_date_range_and_paginates(services, clock):
    activity = services.activity
    start = clock.now
    for _ in range(5):
        await activity.log_success(Actions.LOGIN, ActivityCategory.AUTH)
        clock.advance(hours=1)
    window = ActivityFilter(
        start_date=start.replace(hour=13), end_date=start.replace(hour=15)
    )
    assert await activity.count(window) == 3
    page = await activity.query(ActivityFilter(limit=2, offset=1))
    assert len(page) == 2
    assert page[0].created_at == start.replace(hour=15)


async def test_stats_groups_by_category_and_severity(services):
    activity = services.activity
    await activity.log_success(Actions.LOGIN, ActivityCategory.AUTH)
    await activity.log_failure(Actions.LOGIN_FAILED, ActivityCategory.AUTH)
    await activity.log_security(Actions.ACCOUNT_LOCKED, LogSeverity.CRITICAL)
    stats = await activity.stats()
    assert stats["total"] == 3
    assert stats["successful"] == 2
    assert stats["failed"] == 1
    assert stats["by_category"] == {"auth": 2, "security": 1}
    assert stats["by_severity"] == {"info": 1, "warning": 1, "critical": 1}


async def test_cleanup_removes_only_old_entries(services, clock):
    activity = services.activity
    await activity.log_success(Actions.LOGIN, ActivityCategory.AUTH)
    clock.advance(days=100)
    await activity.log_success(Actions.LOGIN, ActivityCategory.AUTH)
    assert await activity.cleanup(90) == 1
    assert await activity.count() == 1


async def test_write_failure_is_swallowed(services, monkeypatch):
    def broken(entry):
        raise RuntimeError("disk full")

    monkeypatch.setattr(services.store, "add_activity", broken)
    assert await services.activity.log_success(Actions.LOGIN, ActivityCategory.AUTH) is None
