import contextlib
import time
import uuid
from datetime import datetime, timedelta, timezone

import pytest
from psycopg import errors

from authcore.logging import get_logger
from authcore.storage.errors import ConstraintViolation, StoreUnavailable
from authcore.storage.postgres import PostgresRevocationStore, PostgresStore


class DummyCursor:
    def __init__(self, rows=None, rowcount=0):
        self._rows = rows or []
        self.rowcount = rowcount

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def fetchall(self):
        return list(self._rows)


class DummyConnection:
    """Records statements and answers them from a queue of prepared results."""

    def __init__(self, results):
        self.results = results
        self.statements = []

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        result = self.results.pop(0) if self.results else DummyCursor()
        if isinstance(result, Exception):
            raise result
        return result


class DummyPool:
    def __init__(self, *results):
        self.conn = DummyConnection(list(results))

    @contextlib.contextmanager
    def connection(self):
        yield self.conn


class FailingPool:
    def __init__(self, exc):
        self.exc = exc

    def connection(self):
        raise self.exc


def make_store(pool, now=None):
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.dsn = "postgresql://unit-test"
    store.pool = pool
    store.logger = get_logger("test")
    fixed = now or datetime(2026, 1, 1, tzinfo=timezone.utc)
    store._clock = lambda: fixed
    return store


def test_schema_check_reports_missing_tables():
    pool = DummyPool(DummyCursor(rows=[{"table_name": "app_user"}]))
    store = make_store(pool)
    with pytest.raises(RuntimeError) as excinfo:
        store._verify_required_schema()
    assert "refresh_token" in str(excinfo.value)
    assert "revoked_access_token" in str(excinfo.value)


def test_create_user_duplicate_email_maps_to_constraint_violation():
    store = make_store(DummyPool(errors.UniqueViolation("duplicate key")))
    with pytest.raises(ConstraintViolation):
        store.create_user("a@x.com", "$argon2id$hash")


def test_get_user_by_email_strips_password():
    user_id = uuid.uuid4()
    row = {"id": user_id, "email": "a@x.com", "created_at": datetime(2026, 1, 1)}
    store = make_store(DummyPool(DummyCursor(rows=[row])))
    user = store.get_user_by_email("a@x.com")
    assert user.id == str(user_id)
    assert user.password_hash is None
    assert user.created_at.tzinfo is not None


def test_put_refresh_token_upserts_on_user_id():
    pool = DummyPool(DummyCursor(rowcount=1))
    store = make_store(pool)
    record = store.put_refresh_token("user-1", "digest", datetime(2026, 1, 4, tzinfo=timezone.utc))
    sql, params = pool.conn.statements[0]
    assert "ON CONFLICT (user_id) DO UPDATE" in sql
    assert params[:2] == ("user-1", "digest")
    assert record.token_hash == "digest"


def test_put_refresh_token_for_unknown_user_maps_to_constraint_violation():
    store = make_store(DummyPool(errors.ForeignKeyViolation("no such user")))
    with pytest.raises(ConstraintViolation):
        store.put_refresh_token("ghost", "digest", datetime(2026, 1, 4, tzinfo=timezone.utc))


@pytest.mark.parametrize("rowcount,expected", [(1, True), (0, False)])
def test_replace_refresh_token_reports_swap(rowcount, expected):
    pool = DummyPool(DummyCursor(rowcount=rowcount))
    store = make_store(pool)
    swapped = store.replace_refresh_token(
        "user-1", "old-digest", "new-digest", datetime(2026, 1, 4, tzinfo=timezone.utc)
    )
    assert swapped is expected
    sql, params = pool.conn.statements[0]
    assert "WHERE user_id = %s AND token_hash = %s" in sql
    assert params[-2:] == ("user-1", "old-digest")


def test_replace_refresh_token_bounds_update_by_deadline():
    pool = DummyPool(DummyCursor(), DummyCursor(rowcount=1))
    store = make_store(pool)
    swapped = store.replace_refresh_token(
        "user-1",
        "old-digest",
        "new-digest",
        datetime(2026, 1, 4, tzinfo=timezone.utc),
        time.monotonic() + 5,
    )
    assert swapped is True
    sql, params = pool.conn.statements[0]
    assert "set_config('statement_timeout', %s, true)" in sql
    assert params[0].endswith("ms")
    assert pool.conn.statements[1][0].startswith("UPDATE refresh_token")


def test_replace_refresh_token_past_deadline_sends_nothing():
    pool = DummyPool(DummyCursor(rowcount=1))
    store = make_store(pool)
    with pytest.raises(StoreUnavailable):
        store.replace_refresh_token(
            "user-1",
            "old-digest",
            "new-digest",
            datetime(2026, 1, 4, tzinfo=timezone.utc),
            time.monotonic() - 1,
        )
    assert pool.conn.statements == []


def test_cancelled_swap_is_store_unavailable():
    pool = DummyPool(
        DummyCursor(), errors.QueryCanceled("canceling statement due to statement timeout")
    )
    store = make_store(pool)
    with pytest.raises(StoreUnavailable) as excinfo:
        store.replace_refresh_token(
            "user-1",
            "old-digest",
            "new-digest",
            datetime(2026, 1, 4, tzinfo=timezone.utc),
            time.monotonic() + 5,
        )
    assert excinfo.value.operation == "replace_refresh_token"


def test_get_refresh_token_normalizes_row():
    row = {
        "user_id": uuid.UUID(int=1),
        "token_hash": "digest",
        "expires_at": datetime(2026, 1, 4),
        "created_at": datetime(2026, 1, 1),
    }
    store = make_store(DummyPool(DummyCursor(rows=[row])))
    record = store.get_refresh_token(str(uuid.UUID(int=1)))
    assert record.user_id == str(uuid.UUID(int=1))
    assert record.expires_at == datetime(2026, 1, 4, tzinfo=timezone.utc)


def test_missing_refresh_token_is_none():
    store = make_store(DummyPool(DummyCursor(rows=[])))
    assert store.get_refresh_token("user-1") is None


def test_connectivity_failure_maps_to_store_unavailable():
    store = make_store(FailingPool(errors.OperationalError("connection refused")))
    with pytest.raises(StoreUnavailable) as excinfo:
        store.get_user("user-1")
    assert excinfo.value.backend == "postgres"
    assert excinfo.value.operation == "get_user"


class TestPostgresRevocationStore:
    async def test_add_skips_expired_tokens(self):
        now = datetime(2026, 1, 1, tzinfo=timezone.utc)
        pool = DummyPool()
        revocations = PostgresRevocationStore(make_store(pool, now), clock=lambda: now)

        assert not await revocations.add("jti-1", "user-1", now - timedelta(seconds=1))
        assert pool.conn.statements == []

        assert await revocations.add("jti-2", "user-1", now + timedelta(minutes=5))
        sql, params = pool.conn.statements[0]
        assert "ON CONFLICT (token_id) DO NOTHING" in sql
        assert params[0] == "jti-2"

    async def test_contains_filters_expired_rows(self):
        now = datetime(2026, 1, 1, tzinfo=timezone.utc)
        pool = DummyPool(DummyCursor(rows=[{"?column?": 1}]), DummyCursor(rows=[]))
        revocations = PostgresRevocationStore(make_store(pool, now), clock=lambda: now)

        assert await revocations.contains("jti-1")
        assert not await revocations.contains("jti-2")
        sql, params = pool.conn.statements[0]
        assert "expires_at > %s" in sql
        assert params == ("jti-1", now)

    def test_sweep_returns_deleted_count(self):
        now = datetime(2026, 1, 1, tzinfo=timezone.utc)
        pool = DummyPool(DummyCursor(rowcount=3))
        revocations = PostgresRevocationStore(make_store(pool, now), clock=lambda: now)
        assert revocations.sweep() == 3
