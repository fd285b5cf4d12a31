from __future__ import annotations

import json
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from taskverse.logging import get_logger
from taskverse.storage.common import (
    from_storage,
    storage_dict,
    task_from_storage,
)
from taskverse.storage.errors import ConstraintViolation
from taskverse.storage.models import (
    PRIORITY_RANK,
    TASK_SORT_FIELDS,
    Category,
    RefreshSession,
    Task,
    TaskQuery,
    User,
    new_id,
    utcnow,
)


class MemoryStore:
    """In-process backing store persisted as JSON under ``fs_root/state``.

    Every read and write holds ``_data_lock`` so compound operations such as
    ``revoke_session_if_active`` are a single atomic check-and-set.
    """

    def __init__(self, fs_root: str = "/tmp/taskverse") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.sessions: Dict[str, RefreshSession] = {}
        self.categories: Dict[str, Category] = {}
        self.tasks: Dict[str, Task] = {}
        # RLock so helpers can be called while a public method holds the lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)

        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    # ------------------------------------------------------------------
    # users
    # ------------------------------------------------------------------

    def _check_identity_free(
        self, email: str, username: str, *, ignore_user_id: str | None = None
    ) -> None:
        for existing in self.users.values():
            if existing.id == ignore_user_id:
                continue
            if existing.email.lower() == email.lower():
                raise ConstraintViolation("email already exists", {"field": "email"})
            if existing.username.lower() == username.lower():
                raise ConstraintViolation(
                    "username already exists", {"field": "username"}
                )

    def create_user(
        self,
        username: str,
        email: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> User:
        with self._data_lock:
            self._check_identity_free(email, username)
            user = User(
                id=new_id(),
                username=username,
                email=email.lower(),
                first_name=first_name,
                last_name=last_name,
            )
            self.users[user.id] = user
            self._persist_state()
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        needle = email.lower()
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == needle), None)

    def find_user_by_identity(self, email: str, username: str) -> Optional[User]:
        """Return any user whose email or username collides, case-insensitively."""
        with self._data_lock:
            for user in self.users.values():
                if (
                    user.email.lower() == email.lower()
                    or user.username.lower() == username.lower()
                ):
                    return user
            return None

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if "email" in fields or "username" in fields:
                self._check_identity_free(
                    fields.get("email", user.email),
                    fields.get("username", user.username),
                    ignore_user_id=user_id,
                )
            for key, value in fields.items():
                setattr(user, key, value)
            user.updated_at = utcnow()
            self._persist_state()
            return user

    def search_users(
        self, query: Optional[str], *, offset: int = 0, limit: int = 20
    ) -> Tuple[List[User], int]:
        with self._data_lock:
            results = [u for u in self.users.values() if u.is_active]
            if query:
                needle = query.lower()
                results = [
                    u
                    for u in results
                    if any(
                        needle in (value or "").lower()
                        for value in (u.username, u.first_name, u.last_name, u.email)
                    )
                ]
            results.sort(key=lambda u: u.username)
            return results[offset : offset + limit], len(results)

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)
            self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # ------------------------------------------------------------------
    # refresh sessions
    # ------------------------------------------------------------------

    def create_session(self, session: RefreshSession) -> RefreshSession:
        with self._data_lock:
            if any(s.token == session.token for s in self.sessions.values()):
                raise ConstraintViolation("token already exists", {"field": "token"})
            self.sessions[session.id] = session
            self._persist_state()
            return session

    def _session_by_token(self, token: str) -> Optional[RefreshSession]:
        return next((s for s in self.sessions.values() if s.token == token), None)

    def get_session_by_token(self, token: str) -> Optional[RefreshSession]:
        with self._data_lock:
            return self._session_by_token(token)

    def revoke_session_if_active(
        self, token: str, now: datetime
    ) -> Optional[RefreshSession]:
        """Revoke the session for ``token`` only if it is still valid.

        Returns the revoked record, or None when no active record matched.
        Exactly one of several concurrent callers can win.
        """
        with self._data_lock:
            session = self._session_by_token(token)
            if not session or not session.is_valid(now):
                return None
            session.is_revoked = True
            session.revoked_at = now
            self._persist_state()
            return session

    def revoke_session_by_token(self, token: str, now: datetime) -> bool:
        with self._data_lock:
            session = self._session_by_token(token)
            if not session or session.is_revoked:
                return False
            session.is_revoked = True
            session.revoked_at = now
            self._persist_state()
            return True

    def revoke_session_for_user(
        self, user_id: str, session_id: str, now: datetime
    ) -> bool:
        with self._data_lock:
            session = self.sessions.get(session_id)
            if not session or session.user_id != user_id or not session.is_valid(now):
                return False
            session.is_revoked = True
            session.revoked_at = now
            self._persist_state()
            return True

    def revoke_user_sessions(self, user_id: str, now: datetime) -> int:
        with self._data_lock:
            revoked = 0
            for session in self.sessions.values():
                if session.user_id == user_id and not session.is_revoked:
                    session.is_revoked = True
                    session.revoked_at = now
                    revoked += 1
            if revoked:
                self._persist_state()
            return revoked

    def list_active_sessions(self, user_id: str, now: datetime) -> List[RefreshSession]:
        with self._data_lock:
            active = [
                s
                for s in self.sessions.values()
                if s.user_id == user_id and s.is_valid(now)
            ]
            return sorted(active, key=lambda s: s.created_at, reverse=True)

    def delete_stale_sessions(self, now: datetime) -> int:
        with self._data_lock:
            stale = [sid for sid, s in self.sessions.items() if s.is_stale(now)]
            for sid in stale:
                self.sessions.pop(sid, None)
            if stale:
                self._persist_state()
            return len(stale)

    # ------------------------------------------------------------------
    # categories
    # ------------------------------------------------------------------

    def _check_category_name_free(
        self, owner_id: str, name: str, *, ignore_id: str | None = None
    ) -> None:
        for existing in self.categories.values():
            if (
                existing.id != ignore_id
                and existing.created_by == owner_id
                and existing.is_active
                and existing.name.lower() == name.lower()
            ):
                raise ConstraintViolation("name already exists", {"field": "name"})

    def create_category(self, category: Category) -> Category:
        with self._data_lock:
            self._check_category_name_free(category.created_by, category.name)
            self.categories[category.id] = category
            self._persist_state()
            return category

    def get_category(self, category_id: str, owner_id: str) -> Optional[Category]:
        with self._data_lock:
            category = self.categories.get(category_id)
            if not category or category.created_by != owner_id or not category.is_active:
                return None
            return category

    def list_categories(self, owner_id: str) -> List[Category]:
        with self._data_lock:
            owned = [
                c
                for c in self.categories.values()
                if c.created_by == owner_id and c.is_active
            ]
            return sorted(owned, key=lambda c: (c.sort_order, c.created_at))

    def save_category(self, category: Category) -> Category:
        with self._data_lock:
            if category.is_active:
                self._check_category_name_free(
                    category.created_by, category.name, ignore_id=category.id
                )
            category.updated_at = utcnow()
            self.categories[category.id] = category
            self._persist_state()
            return category

    def deactivate_category(self, category_id: str, owner_id: str) -> bool:
        """Soft-delete a category and detach it from the owner's tasks."""
        with self._data_lock:
            category = self.get_category(category_id, owner_id)
            if not category:
                return False
            category.is_active = False
            category.updated_at = utcnow()
            for task in self.tasks.values():
                if task.category_id == category_id:
                    task.category_id = None
            self._persist_state()
            return True

    def reorder_categories(
        self, owner_id: str, orders: Sequence[Tuple[str, int]]
    ) -> int:
        with self._data_lock:
            targets = [self.get_category(cid, owner_id) for cid, _ in orders]
            if any(t is None for t in targets):
                return -1
            now = utcnow()
            for category, (_, sort_order) in zip(targets, orders):
                category.sort_order = sort_order
                category.updated_at = now
            self._persist_state()
            return len(targets)

    # ------------------------------------------------------------------
    # tasks
    # ------------------------------------------------------------------

    def create_task(self, task: Task) -> Task:
        with self._data_lock:
            self.tasks[task.id] = task
            self._persist_state()
            return task

    def get_task(self, task_id: str) -> Optional[Task]:
        with self._data_lock:
            return self.tasks.get(task_id)

    def save_task(self, task: Task) -> Task:
        with self._data_lock:
            task.updated_at = utcnow()
            self.tasks[task.id] = task
            self._persist_state()
            return task

    def delete_task(self, task_id: str) -> bool:
        with self._data_lock:
            removed = self.tasks.pop(task_id, None)
            if removed:
                self._persist_state()
            return removed is not None

    def list_tasks(
        self, query: TaskQuery, *, offset: int = 0, limit: int = 20
    ) -> Tuple[List[Task], int]:
        with self._data_lock:
            matches = [t for t in self.tasks.values() if query.matches(t)]
        attr = TASK_SORT_FIELDS.get(query.sort_by, "position")
        reverse = query.sort_order == "desc"
        if attr == "priority":
            matches.sort(key=lambda t: PRIORITY_RANK.get(t.priority, 0), reverse=reverse)
        else:
            # None sorts last regardless of direction
            present = [t for t in matches if getattr(t, attr) is not None]
            missing = [t for t in matches if getattr(t, attr) is None]
            present.sort(key=lambda t: getattr(t, attr), reverse=reverse)
            matches = present + missing
        return matches[offset : offset + limit], len(matches)

    def visible_tasks(self, user_id: str) -> Iterable[Task]:
        with self._data_lock:
            return [
                t
                for t in self.tasks.values()
                if t.visible_to(user_id) and not t.is_archived
            ]

    # ------------------------------------------------------------------
    # persistence
    # ------------------------------------------------------------------

    def _persist_state(self) -> None:
        state = {
            "users": [storage_dict(u) for u in self.users.values()],
            "credentials": [
                {
                    "user_id": user_id,
                    "password_hash": creds[0],
                    "password_algo": creds[1],
                }
                for user_id, creds in self.credentials.items()
            ],
            "sessions": [storage_dict(s) for s in self.sessions.values()],
            "categories": [storage_dict(c) for c in self.categories.values()],
            "tasks": [storage_dict(t) for t in self.tasks.values()],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: from_storage(User, u) for u in data.get("users", [])}
        self.credentials = {
            entry["user_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.sessions = {
            s["id"]: from_storage(RefreshSession, s) for s in data.get("sessions", [])
        }
        self.categories = {
            c["id"]: from_storage(Category, c) for c in data.get("categories", [])
        }
        self.tasks = {t["id"]: task_from_storage(t) for t in data.get("tasks", [])}
        self.logger.info(
            "memory_store_loaded",
            users=len(self.users),
            sessions=len(self.sessions),
            tasks=len(self.tasks),
        )
        return True
