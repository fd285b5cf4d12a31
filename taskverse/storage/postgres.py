from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from taskverse.logging import get_logger
from taskverse.storage.common import (
    dump_embedded,
    parse_json_field,
    safe_row_value,
    task_from_storage,
)
from taskverse.storage.errors import ConstraintViolation
from taskverse.storage.models import (
    TASK_SORT_FIELDS,
    Category,
    RefreshSession,
    Task,
    TaskQuery,
    User,
    default_preferences,
    new_id,
)

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id TEXT PRIMARY KEY,
        username TEXT NOT NULL,
        email TEXT NOT NULL,
        first_name TEXT,
        last_name TEXT,
        avatar TEXT,
        bio TEXT,
        timezone TEXT NOT NULL DEFAULT 'UTC',
        preferences JSONB NOT NULL DEFAULT '{}'::jsonb,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        last_login_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS app_user_email_key ON app_user (lower(email))",
    "CREATE UNIQUE INDEX IF NOT EXISTS app_user_username_key ON app_user (lower(username))",
    """
    CREATE TABLE IF NOT EXISTS user_credential (
        user_id TEXT PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        last_updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_session (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        token TEXT NOT NULL,
        token_id TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        expires_at TIMESTAMPTZ NOT NULL,
        is_revoked BOOLEAN NOT NULL DEFAULT FALSE,
        revoked_at TIMESTAMPTZ,
        device_info VARCHAR(500),
        ip_address TEXT
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS refresh_session_token_key ON refresh_session (token)",
    "CREATE INDEX IF NOT EXISTS refresh_session_user_idx ON refresh_session (user_id, created_at DESC)",
    "CREATE INDEX IF NOT EXISTS refresh_session_expires_idx ON refresh_session (expires_at)",
    """
    CREATE TABLE IF NOT EXISTS category (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        description TEXT,
        color TEXT NOT NULL,
        icon TEXT,
        created_by TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        is_default BOOLEAN NOT NULL DEFAULT FALSE,
        sort_order INTEGER NOT NULL DEFAULT 0,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS category_owner_name_key
        ON category (created_by, lower(name)) WHERE is_active
    """,
    """
    CREATE TABLE IF NOT EXISTS task (
        id TEXT PRIMARY KEY,
        title TEXT NOT NULL,
        description TEXT,
        status TEXT NOT NULL DEFAULT 'todo',
        priority TEXT NOT NULL DEFAULT 'medium',
        category_id TEXT REFERENCES category(id) ON DELETE SET NULL,
        assigned_to TEXT REFERENCES app_user(id) ON DELETE SET NULL,
        created_by TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        due_date TIMESTAMPTZ,
        start_date TIMESTAMPTZ,
        completed_at TIMESTAMPTZ,
        estimated_hours DOUBLE PRECISION,
        actual_hours DOUBLE PRECISION,
        tags TEXT[] NOT NULL DEFAULT '{}',
        subtasks JSONB NOT NULL DEFAULT '[]'::jsonb,
        comments JSONB NOT NULL DEFAULT '[]'::jsonb,
        attachments JSONB NOT NULL DEFAULT '[]'::jsonb,
        is_archived BOOLEAN NOT NULL DEFAULT FALSE,
        position INTEGER NOT NULL DEFAULT 0,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS task_created_by_idx ON task (created_by, status)",
    "CREATE INDEX IF NOT EXISTS task_assigned_to_idx ON task (assigned_to, status)",
    "CREATE INDEX IF NOT EXISTS task_due_date_idx ON task (due_date)",
)

_CONSTRAINT_FIELDS = {
    "app_user_email_key": "email",
    "app_user_username_key": "username",
    "refresh_session_token_key": "token",
    "category_owner_name_key": "name",
}

_TASK_COLUMNS = (
    "id, title, description, status, priority, category_id, assigned_to, created_by, "
    "due_date, start_date, completed_at, estimated_hours, actual_hours, tags, "
    "subtasks, comments, attachments, is_archived, position, created_at, updated_at"
)

_PRIORITY_ORDER_SQL = (
    "CASE priority WHEN 'low' THEN 0 WHEN 'medium' THEN 1 "
    "WHEN 'high' THEN 2 WHEN 'urgent' THEN 3 ELSE 0 END"
)


def _violation(exc: errors.UniqueViolation) -> ConstraintViolation:
    constraint = getattr(exc.diag, "constraint_name", None) or ""
    field = _CONSTRAINT_FIELDS.get(constraint, "value")
    return ConstraintViolation(f"{field} already exists", {"field": field})


class PostgresStore:
    """Postgres-backed store with the same surface as ``MemoryStore``."""

    def __init__(self, dsn: str, fs_root: str) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create tables and indexes that are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # ------------------------------------------------------------------
    # row mapping
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_user(row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            username=row["username"],
            email=row["email"],
            first_name=row.get("first_name"),
            last_name=row.get("last_name"),
            avatar=row.get("avatar"),
            bio=row.get("bio"),
            timezone=safe_row_value(row, "timezone", "UTC"),
            preferences=parse_json_field(row.get("preferences")) or default_preferences(),
            is_active=safe_row_value(row, "is_active", True),
            last_login_at=row.get("last_login_at"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _row_to_session(row: Dict[str, Any]) -> RefreshSession:
        return RefreshSession(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            token=row["token"],
            token_id=row["token_id"],
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            is_revoked=bool(row.get("is_revoked")),
            revoked_at=row.get("revoked_at"),
            device_info=row.get("device_info"),
            ip_address=row.get("ip_address"),
        )

    @staticmethod
    def _row_to_category(row: Dict[str, Any]) -> Category:
        return Category(
            id=str(row["id"]),
            name=row["name"],
            created_by=str(row["created_by"]),
            description=row.get("description"),
            color=row["color"],
            icon=row.get("icon"),
            is_default=bool(row.get("is_default")),
            sort_order=safe_row_value(row, "sort_order", 0),
            is_active=bool(row.get("is_active")),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    # ------------------------------------------------------------------
    # users
    # ------------------------------------------------------------------

    def create_user(
        self,
        username: str,
        email: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> User:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, username, email, first_name, last_name, preferences)
                    VALUES (%s, %s, %s, %s, %s, %s::jsonb)
                    RETURNING *
                    """,
                    (
                        new_id(),
                        username,
                        email.lower(),
                        first_name,
                        last_name,
                        json.dumps(default_preferences()),
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise _violation(exc) from exc
        return self._row_to_user(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE lower(email) = lower(%s)", (email,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def find_user_by_identity(self, email: str, username: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM app_user
                WHERE lower(email) = lower(%s) OR lower(username) = lower(%s)
                LIMIT 1
                """,
                (email, username),
            ).fetchone()
        return self._row_to_user(row) if row else None

    _USER_UPDATABLE = {
        "username",
        "email",
        "first_name",
        "last_name",
        "avatar",
        "bio",
        "timezone",
        "preferences",
        "is_active",
        "last_login_at",
    }

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]:
        unknown = set(fields) - self._USER_UPDATABLE
        if unknown:
            raise ValueError(f"unsupported user fields: {sorted(unknown)}")
        assignments = []
        params: List[Any] = []
        for key, value in fields.items():
            if key == "preferences":
                assignments.append("preferences = %s::jsonb")
                params.append(json.dumps(value))
            else:
                assignments.append(f"{key} = %s")
                params.append(value)
        assignments.append("updated_at = now()")
        params.append(user_id)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"UPDATE app_user SET {', '.join(assignments)} WHERE id = %s RETURNING *",
                    params,
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise _violation(exc) from exc
        return self._row_to_user(row) if row else None

    def search_users(
        self, query: Optional[str], *, offset: int = 0, limit: int = 20
    ) -> Tuple[List[User], int]:
        where = "is_active"
        params: List[Any] = []
        if query:
            where += (
                " AND (username ILIKE %s OR first_name ILIKE %s"
                " OR last_name ILIKE %s OR email ILIKE %s)"
            )
            pattern = f"%{query}%"
            params.extend([pattern] * 4)
        with self._connect() as conn:
            total = conn.execute(
                f"SELECT count(*) AS n FROM app_user WHERE {where}", params
            ).fetchone()["n"]
            rows = conn.execute(
                f"SELECT * FROM app_user WHERE {where} ORDER BY username LIMIT %s OFFSET %s",
                [*params, limit, offset],
            ).fetchall()
        return [self._row_to_user(r) for r in rows], int(total)

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO user_credential (user_id, password_hash, password_algo, last_updated_at)
                VALUES (%s, %s, %s, now())
                ON CONFLICT (user_id) DO UPDATE
                SET password_hash = EXCLUDED.password_hash,
                    password_algo = EXCLUDED.password_algo,
                    last_updated_at = now()
                """,
                (user_id, password_hash, password_algo),
            )

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return str(row["password_hash"]), str(row["password_algo"])

    # ------------------------------------------------------------------
    # refresh sessions
    # ------------------------------------------------------------------

    def create_session(self, session: RefreshSession) -> RefreshSession:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO refresh_session
                        (id, user_id, token, token_id, created_at, expires_at, device_info, ip_address)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        session.id,
                        session.user_id,
                        session.token,
                        session.token_id,
                        session.created_at,
                        session.expires_at,
                        session.device_info,
                        session.ip_address,
                    ),
                )
        except errors.UniqueViolation as exc:
            raise _violation(exc) from exc
        return session

    def get_session_by_token(self, token: str) -> Optional[RefreshSession]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_session WHERE token = %s", (token,)
            ).fetchone()
        return self._row_to_session(row) if row else None

    def revoke_session_if_active(
        self, token: str, now: datetime
    ) -> Optional[RefreshSession]:
        """Single conditional UPDATE so concurrent redeemers cannot both win."""
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE refresh_session
                SET is_revoked = TRUE, revoked_at = %s
                WHERE token = %s AND NOT is_revoked AND expires_at > %s
                RETURNING *
                """,
                (now, token, now),
            ).fetchone()
        return self._row_to_session(row) if row else None

    def revoke_session_by_token(self, token: str, now: datetime) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE refresh_session SET is_revoked = TRUE, revoked_at = %s
                WHERE token = %s AND NOT is_revoked
                """,
                (now, token),
            )
            return cur.rowcount > 0

    def revoke_session_for_user(
        self, user_id: str, session_id: str, now: datetime
    ) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE refresh_session SET is_revoked = TRUE, revoked_at = %s
                WHERE id = %s AND user_id = %s AND NOT is_revoked AND expires_at > %s
                """,
                (now, session_id, user_id, now),
            )
            return cur.rowcount > 0

    def revoke_user_sessions(self, user_id: str, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE refresh_session SET is_revoked = TRUE, revoked_at = %s
                WHERE user_id = %s AND NOT is_revoked
                """,
                (now, user_id),
            )
            return cur.rowcount

    def list_active_sessions(self, user_id: str, now: datetime) -> List[RefreshSession]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM refresh_session
                WHERE user_id = %s AND NOT is_revoked AND expires_at > %s
                ORDER BY created_at DESC
                """,
                (user_id, now),
            ).fetchall()
        return [self._row_to_session(r) for r in rows]

    def delete_stale_sessions(self, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM refresh_session WHERE is_revoked OR expires_at <= %s",
                (now,),
            )
            return cur.rowcount

    # ------------------------------------------------------------------
    # categories
    # ------------------------------------------------------------------

    def create_category(self, category: Category) -> Category:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO category
                        (id, name, description, color, icon, created_by, is_default,
                         sort_order, is_active, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        category.id,
                        category.name,
                        category.description,
                        category.color,
                        category.icon,
                        category.created_by,
                        category.is_default,
                        category.sort_order,
                        category.is_active,
                        category.created_at,
                        category.updated_at,
                    ),
                )
        except errors.UniqueViolation as exc:
            raise _violation(exc) from exc
        return category

    def get_category(self, category_id: str, owner_id: str) -> Optional[Category]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM category WHERE id = %s AND created_by = %s AND is_active",
                (category_id, owner_id),
            ).fetchone()
        return self._row_to_category(row) if row else None

    def list_categories(self, owner_id: str) -> List[Category]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM category WHERE created_by = %s AND is_active
                ORDER BY sort_order, created_at
                """,
                (owner_id,),
            ).fetchall()
        return [self._row_to_category(r) for r in rows]

    def save_category(self, category: Category) -> Category:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    UPDATE category
                    SET name = %s, description = %s, color = %s, icon = %s,
                        sort_order = %s, is_active = %s, updated_at = now()
                    WHERE id = %s
                    RETURNING *
                    """,
                    (
                        category.name,
                        category.description,
                        category.color,
                        category.icon,
                        category.sort_order,
                        category.is_active,
                        category.id,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise _violation(exc) from exc
        return self._row_to_category(row) if row else category

    def deactivate_category(self, category_id: str, owner_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE category SET is_active = FALSE, updated_at = now()
                WHERE id = %s AND created_by = %s AND is_active
                """,
                (category_id, owner_id),
            )
            if cur.rowcount == 0:
                return False
            conn.execute(
                "UPDATE task SET category_id = NULL WHERE category_id = %s",
                (category_id,),
            )
            return True

    def reorder_categories(
        self, owner_id: str, orders: Sequence[Tuple[str, int]]
    ) -> int:
        ids = [cid for cid, _ in orders]
        with self._connect() as conn:
            found = conn.execute(
                """
                SELECT count(*) AS n FROM category
                WHERE id = ANY(%s) AND created_by = %s AND is_active
                """,
                (ids, owner_id),
            ).fetchone()["n"]
            if found != len(set(ids)):
                return -1
            with conn.cursor() as cur:
                cur.executemany(
                    "UPDATE category SET sort_order = %s, updated_at = now() WHERE id = %s",
                    [(sort_order, cid) for cid, sort_order in orders],
                )
        return len(orders)

    # ------------------------------------------------------------------
    # tasks
    # ------------------------------------------------------------------

    @staticmethod
    def _task_params(task: Task) -> Tuple[Any, ...]:
        return (
            task.title,
            task.description,
            task.status,
            task.priority,
            task.category_id,
            task.assigned_to,
            task.due_date,
            task.start_date,
            task.completed_at,
            task.estimated_hours,
            task.actual_hours,
            list(task.tags),
            dump_embedded(task.subtasks),
            dump_embedded(task.comments),
            dump_embedded(task.attachments),
            task.is_archived,
            task.position,
        )

    def create_task(self, task: Task) -> Task:
        with self._connect() as conn:
            conn.execute(
                f"""
                INSERT INTO task ({_TASK_COLUMNS})
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s,
                        %s::jsonb, %s::jsonb, %s::jsonb, %s, %s, %s, %s, %s)
                """,
                (
                    task.id,
                    task.title,
                    task.description,
                    task.status,
                    task.priority,
                    task.category_id,
                    task.assigned_to,
                    task.created_by,
                    task.due_date,
                    task.start_date,
                    task.completed_at,
                    task.estimated_hours,
                    task.actual_hours,
                    list(task.tags),
                    dump_embedded(task.subtasks),
                    dump_embedded(task.comments),
                    dump_embedded(task.attachments),
                    task.is_archived,
                    task.position,
                    task.created_at,
                    task.updated_at,
                ),
            )
        return task

    def get_task(self, task_id: str) -> Optional[Task]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_TASK_COLUMNS} FROM task WHERE id = %s", (task_id,)
            ).fetchone()
        return task_from_storage(row) if row else None

    def save_task(self, task: Task) -> Task:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE task
                SET title = %s, description = %s, status = %s, priority = %s,
                    category_id = %s, assigned_to = %s, due_date = %s, start_date = %s,
                    completed_at = %s, estimated_hours = %s, actual_hours = %s, tags = %s,
                    subtasks = %s::jsonb, comments = %s::jsonb, attachments = %s::jsonb,
                    is_archived = %s, position = %s, updated_at = now()
                WHERE id = %s
                RETURNING updated_at
                """,
                (*self._task_params(task), task.id),
            ).fetchone()
        if row:
            task.updated_at = row["updated_at"]
        return task

    def delete_task(self, task_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM task WHERE id = %s", (task_id,))
            return cur.rowcount > 0

    @staticmethod
    def _task_where(query: TaskQuery) -> Tuple[str, List[Any]]:
        clauses = ["(created_by = %s OR assigned_to = %s)", "is_archived = %s"]
        params: List[Any] = [query.user_id, query.user_id, query.archived]
        if query.status:
            clauses.append("status = %s")
            params.append(query.status)
        if query.priority:
            clauses.append("priority = %s")
            params.append(query.priority)
        if query.category_id:
            clauses.append("category_id = %s")
            params.append(query.category_id)
        if query.assigned_to:
            clauses.append("assigned_to = %s")
            params.append(query.assigned_to)
        if query.tags:
            clauses.append("tags && %s::text[]")
            params.append(list(query.tags))
        if query.due_after:
            clauses.append("due_date >= %s")
            params.append(query.due_after)
        if query.due_before:
            clauses.append("due_date <= %s")
            params.append(query.due_before)
        if query.search:
            pattern = f"%{query.search}%"
            clauses.append(
                "(title ILIKE %s OR description ILIKE %s"
                " OR EXISTS (SELECT 1 FROM unnest(tags) AS tag WHERE tag ILIKE %s))"
            )
            params.extend([pattern, pattern, pattern])
        return " AND ".join(clauses), params

    def list_tasks(
        self, query: TaskQuery, *, offset: int = 0, limit: int = 20
    ) -> Tuple[List[Task], int]:
        where, params = self._task_where(query)
        column = TASK_SORT_FIELDS.get(query.sort_by, "position")
        order_expr = _PRIORITY_ORDER_SQL if column == "priority" else column
        direction = "DESC" if query.sort_order == "desc" else "ASC"
        with self._connect() as conn:
            total = conn.execute(
                f"SELECT count(*) AS n FROM task WHERE {where}", params
            ).fetchone()["n"]
            rows = conn.execute(
                f"""
                SELECT {_TASK_COLUMNS} FROM task WHERE {where}
                ORDER BY {order_expr} {direction} NULLS LAST, id
                LIMIT %s OFFSET %s
                """,
                [*params, limit, offset],
            ).fetchall()
        return [task_from_storage(r) for r in rows], int(total)

    def visible_tasks(self, user_id: str) -> List[Task]:
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT {_TASK_COLUMNS} FROM task
                WHERE (created_by = %s OR assigned_to = %s) AND NOT is_archived
                """,
                (user_id, user_id),
            ).fetchall()
        return [task_from_storage(r) for r in rows]
