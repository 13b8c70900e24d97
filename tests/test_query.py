from datetime import datetime, timedelta, timezone

import pytest

from gatehouse.storage.models import ActivityLog
from gatehouse.storage.query import Eq, Gte, Lt, Lte, MetaEq, compile_where, matches

NOW = datetime(2024, 6, 1, tzinfo=timezone.utc)


def _entry(**kwargs):
    defaults = dict(id="1", action="user.login", category="auth", created_at=NOW)
    defaults.update(kwargs)
    return ActivityLog(**defaults)


def test_matches_combines_predicates():
    entry = _entry(user_id="u1", metadata={"rate_limit_action": "login"})
    assert matches(entry, [Eq("user_id", "u1"), MetaEq("rate_limit_action", "login")])
    assert not matches(entry, [Eq("user_id", "u2")])
    assert not matches(entry, [MetaEq("rate_limit_action", "register")])
    assert matches(entry, [])


def test_range_predicates():
    entry = _entry()
    assert matches(entry, [Gte("created_at", NOW), Lte("created_at", NOW)])
    assert not matches(entry, [Lt("created_at", NOW)])
    assert matches(entry, [Lt("created_at", NOW + timedelta(seconds=1))])


def test_none_columns_never_match():
    entry = _entry(user_id=None)
    assert not matches(entry, [Eq("user_id", None)])
    assert not matches(entry, [Gte("user_id", "a")])


def test_unknown_field_is_rejected():
    with pytest.raises(ValueError):
        matches(_entry(), [Eq("nope", 1)])


def test_compile_where_parameterizes_values():
    where, params = compile_where(
        [Eq("action", "user.login"), Gte("created_at", NOW), MetaEq("reason", "limit")],
        frozenset({"action", "created_at"}),
    )
    assert where == "action = %s AND created_at >= %s AND metadata ->> %s = %s"
    assert params == ["user.login", NOW, "reason", "limit"]


def test_compile_where_rejects_unknown_columns_and_handles_empty():
    with pytest.raises(ValueError):
        compile_where([Eq("action; DROP TABLE x", 1)], frozenset({"action"}))
    assert compile_where([], frozenset()) == ("TRUE", [])
