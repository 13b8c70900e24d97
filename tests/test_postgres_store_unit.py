from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

from gatehouse.storage.common import SecretCipher
from gatehouse.storage.errors import ConstraintViolation
from gatehouse.storage.models import ActivityLog
from gatehouse.storage.postgres import PostgresStore, _unique_violation
from gatehouse.storage.query import Eq, Gte, QuerySpec

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


class DummyPool:
    def connection(self):
        raise AssertionError("database access should be stubbed in unit tests")


class RecordingCursor:
    def __init__(self, rows):
        self.rows = rows
        self.rowcount = len(rows)

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return list(self.rows)


class RecordingPool:
    """Captures SQL and parameters; every statement returns ``rows``."""

    def __init__(self, rows=None):
        self.rows = rows or []
        self.calls = []

    @contextmanager
    def connection(self):
        yield self

    def execute(self, sql, params=None):
        self.calls.append((sql, params))
        return RecordingCursor(self.rows)


def _store(pool=None) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = pool or DummyPool()
    store._cipher = SecretCipher("unit-test-secret")
    return store


def _user_row(**overrides):
    row = {
        "id": "user-1",
        "username": "alice",
        "email": "alice@example.com",
        "password_hash": "$argon2id$stub",
        "two_factor_secret": None,
        "two_factor_enabled": False,
        "two_factor_backup_codes": None,
        "failed_login_attempts": None,
        "created_at": NOW,
        "updated_at": NOW,
    }
    row.update(overrides)
    return row


def test_row_to_user_decrypts_secret_and_fills_defaults():
    store = _store()
    encrypted = store._cipher.encrypt("JBSWY3DPEHPK3PXP")
    user = store._row_to_user(
        _user_row(two_factor_secret=encrypted, two_factor_backup_codes=["h1", "h2"])
    )
    assert user.two_factor_secret == "JBSWY3DPEHPK3PXP"
    assert user.two_factor_backup_codes == ["h1", "h2"]
    assert user.failed_login_attempts == 0
    assert user.is_locked is False


def test_row_to_user_with_foreign_ciphertext_has_no_secret():
    store = _store()
    foreign = SecretCipher("another-deployment").encrypt("JBSWY3DPEHPK3PXP")
    assert store._row_to_user(_user_row(two_factor_secret=foreign)).two_factor_secret is None


def test_unique_violation_maps_constraint_to_field():
    exc = SimpleNamespace(diag=SimpleNamespace(constraint_name="app_user_email_key"))
    violation = _unique_violation(exc)
    assert isinstance(violation, ConstraintViolation)
    assert violation.detail == {"field": "email"}

    unknown = _unique_violation(SimpleNamespace(diag=SimpleNamespace(constraint_name=None)))
    assert unknown.detail == {"field": "unknown"}


def test_update_user_rejects_unknown_fields_before_querying():
    store = _store()
    with pytest.raises(ValueError):
        store.update_user("user-1", is_admin=True)


def test_update_user_encrypts_secret_and_normalizes():
    pool = RecordingPool([_user_row()])
    store = _store(pool)
    store.update_user("user-1", two_factor_secret="JBSWY3DPEHPK3PXP", email=" Alice@Example.COM ")

    sql, params = pool.calls[0]
    assert sql.startswith("UPDATE app_user SET two_factor_secret = %s, email = %s")
    assert params[0] != "JBSWY3DPEHPK3PXP"
    assert store._cipher.decrypt(params[0]) == "JBSWY3DPEHPK3PXP"
    assert params[1:] == ["alice@example.com", "user-1"]


def test_query_activity_compiles_parameters():
    pool = RecordingPool([])
    store = _store(pool)
    spec = QuerySpec.of([Eq("action", "login"), Gte("created_at", NOW)], limit=10, offset=5)
    assert store.query_activity(spec) == []

    sql, params = pool.calls[0]
    assert "action = %s AND created_at >= %s" in sql
    assert "ORDER BY created_at DESC LIMIT %s OFFSET %s" in sql
    assert params == ["login", NOW, 10, 5]


def test_query_activity_refuses_unknown_columns():
    store = _store()
    with pytest.raises(ValueError):
        store.query_activity(QuerySpec.of([Eq("password_hash; --", "x")]))


def test_remove_backup_code_reports_remaining():
    pool = RecordingPool([{"remaining": 3}])
    store = _store(pool)
    assert store.remove_backup_code("user-1", "hash") == 3
    assert _store(RecordingPool([])).remove_backup_code("user-1", "hash") is None


def _rate_limit_entry():
    return ActivityLog(
        id="log-1", action="security.rate_limit.check", category="security", ip_address="198.51.100.1"
    )


def test_add_activity_if_below_serializes_on_advisory_lock():
    pool = RecordingPool([{"n": 2}])
    store = _store(pool)
    predicates = [Eq("ip_address", "198.51.100.1"), Gte("created_at", NOW)]
    assert store.add_activity_if_below(
        _rate_limit_entry(), predicates, 3, lock_key="rate_limit:login:198.51.100.1"
    ) == (True, 2)

    statements = [sql.strip() for sql, _ in pool.calls]
    assert statements[0] == "SELECT pg_advisory_xact_lock(hashtext(%s))"
    assert pool.calls[0][1] == ("rate_limit:login:198.51.100.1",)
    assert statements[1].startswith("SELECT count(*) AS n FROM activity_log WHERE")
    assert pool.calls[1][1] == ["198.51.100.1", NOW]
    assert statements[2].startswith("INSERT INTO activity_log")
    assert len(pool.calls) == 3


def test_add_activity_if_below_skips_insert_at_limit():
    pool = RecordingPool([{"n": 3}])
    store = _store(pool)
    result = store.add_activity_if_below(
        _rate_limit_entry(), [Eq("ip_address", "198.51.100.1")], 3, lock_key="k"
    )
    assert result == (False, 3)
    assert not any("INSERT" in sql for sql, _ in pool.calls)


def test_register_failed_login_locks_row_and_reports_transition():
    pool = RecordingPool([_user_row(failed_login_attempts=5, is_locked=True, newly_locked=True)])
    store = _store(pool)
    user, newly_locked = store.register_failed_login(
        "user-1",
        now=NOW,
        reset_after=timedelta(minutes=60),
        max_attempts=5,
        lock_duration=timedelta(minutes=30),
    )
    assert user.failed_login_attempts == 5
    assert newly_locked is True

    sql, params = pool.calls[0]
    assert "FOR UPDATE" in sql
    assert "newly_locked" in sql
    assert params[:2] == (NOW - timedelta(minutes=60), "user-1")
    assert _store(RecordingPool([])).register_failed_login(
        "missing",
        now=NOW,
        reset_after=timedelta(minutes=60),
        max_attempts=5,
        lock_duration=timedelta(minutes=30),
    ) is None


def test_replace_token_is_a_single_upsert():
    pool = RecordingPool(
        [
            {
                "id": "tok-1",
                "user_id": "user-1",
                "purpose": "password_reset",
                "token_hash": "hash",
                "expires_at": NOW,
                "created_at": NOW,
            }
        ]
    )
    store = _store(pool)
    token = store.replace_token("user-1", "password_reset", "hash", NOW)
    assert token.user_id == "user-1"
    assert len(pool.calls) == 1
    assert "ON CONFLICT (user_id, purpose) DO UPDATE" in pool.calls[0][0]
