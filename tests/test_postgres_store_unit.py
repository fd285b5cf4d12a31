from datetime import timedelta
from pathlib import Path

from taskverse.storage.models import TaskQuery, utcnow
from taskverse.storage.postgres import PostgresStore, _violation


class FakeCursor:
    def __init__(self, row=None, rowcount=0):
        self._row = row
        self.rowcount = rowcount

    def fetchone(self):
        return self._row

    def fetchall(self):
        return [self._row] if self._row else []


class FakeConnection:
    def __init__(self, cursor):
        self.cursor_result = cursor
        self.executed = []

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def execute(self, sql, params=None):
        self.executed.append((" ".join(sql.split()), params))
        return self.cursor_result


class FakePool:
    def __init__(self, conn):
        self.conn = conn

    def connection(self):
        return self.conn


def _store(tmp_path: Path, cursor: FakeCursor):
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    conn = FakeConnection(cursor)
    store.pool = FakePool(conn)
    store.fs_root = tmp_path
    return store, conn


def _session_row(now):
    return {
        "id": "s1",
        "user_id": "u1",
        "token": "tok",
        "token_id": "tid",
        "created_at": now,
        "expires_at": now + timedelta(days=7),
        "is_revoked": True,
        "revoked_at": now,
        "device_info": None,
        "ip_address": "10.0.0.1",
    }


def test_revoke_if_active_is_one_conditional_update(tmp_path: Path):
    now = utcnow()
    store, conn = _store(tmp_path, FakeCursor(_session_row(now)))
    session = store.revoke_session_if_active("tok", now)
    assert session.id == "s1" and session.is_revoked
    sql, params = conn.executed[0]
    assert sql.startswith("UPDATE refresh_session")
    assert "WHERE token = %s AND NOT is_revoked AND expires_at > %s RETURNING *" in sql
    assert params == (now, "tok", now)
    assert len(conn.executed) == 1


def test_revoke_if_active_no_row(tmp_path: Path):
    store, _ = _store(tmp_path, FakeCursor(None))
    assert store.revoke_session_if_active("tok", utcnow()) is None


def test_revoke_by_token_uses_rowcount(tmp_path: Path):
    store, _ = _store(tmp_path, FakeCursor(rowcount=1))
    assert store.revoke_session_by_token("tok", utcnow()) is True


def test_task_where_builds_filters():
    query = TaskQuery(user_id="u1", status="todo", tags=["a", "b"], search="bug")
    where, params = PostgresStore._task_where(query)
    assert where.startswith("(created_by = %s OR assigned_to = %s) AND is_archived = %s")
    assert "status = %s" in where
    assert "tags && %s::text[]" in where
    assert params[:3] == ["u1", "u1", False]
    assert params[3] == "todo"
    assert params[4] == ["a", "b"]
    assert params[-3:] == ["%bug%"] * 3


class _Diag:
    def __init__(self, name):
        self.constraint_name = name


class _UniqueViolation(Exception):
    def __init__(self, name):
        super().__init__(name)
        self.diag = _Diag(name)


def test_violation_maps_constraint_to_field():
    assert _violation(_UniqueViolation("app_user_email_key")).detail == {"field": "email"}
    assert _violation(_UniqueViolation("category_owner_name_key")).detail == {"field": "name"}
    assert _violation(_UniqueViolation("other")).detail == {"field": "value"}
