"""MemoryStore behaviour: uniqueness, atomic revocation, persistence and task queries."""

import threading
from datetime import timedelta

import pytest

from taskverse.storage.errors import ConstraintViolation
from taskverse.storage.memory import MemoryStore
from taskverse.storage.models import Category, RefreshSession, Subtask, Task, TaskQuery, new_id, utcnow


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


def _session(user_id, token, *, expires_in=timedelta(days=1)):
    return RefreshSession.new(user_id, token, new_id(), utcnow() + expires_in)


class TestUsers:
    def test_duplicate_email_reports_field(self, store):
        store.create_user("alice", "alice@example.com")
        with pytest.raises(ConstraintViolation) as exc:
            store.create_user("alice2", "ALICE@example.com")
        assert exc.value.detail["field"] == "email"

    def test_duplicate_username_reports_field(self, store):
        store.create_user("alice", "alice@example.com")
        with pytest.raises(ConstraintViolation) as exc:
            store.create_user("ALICE", "other@example.com")
        assert exc.value.detail["field"] == "username"

    def test_search_active_users_only(self, store):
        store.create_user("zed", "zed@example.com", first_name="Zed")
        hidden = store.create_user("zara", "zara@example.com")
        store.create_user("bob", "bob@example.com")
        store.update_user(hidden.id, is_active=False)

        users, total = store.search_users("z")
        assert total == 1
        assert [u.username for u in users] == ["zed"]

        users, total = store.search_users(None, offset=0, limit=1)
        assert total == 2
        assert [u.username for u in users] == ["bob"]

    def test_state_survives_reload(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        user = store.create_user("alice", "alice@example.com")
        store.save_password(user.id, "hash", "argon2id")
        store.create_session(_session(user.id, "tok"))

        reloaded = MemoryStore(fs_root=str(tmp_path))
        assert reloaded.get_user(user.id).email == "alice@example.com"
        assert reloaded.get_password_record(user.id) == ("hash", "argon2id")
        assert reloaded.get_session_by_token("tok").user_id == user.id


class TestSessions:
    def test_revoke_if_active_has_single_winner(self, store):
        user = store.create_user("alice", "alice@example.com")
        store.create_session(_session(user.id, "tok"))
        results = []
        barrier = threading.Barrier(8)

        def redeem():
            barrier.wait()
            results.append(store.revoke_session_if_active("tok", utcnow()))

        threads = [threading.Thread(target=redeem) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert sum(1 for r in results if r is not None) == 1

    def test_revoke_if_active_ignores_expired(self, store):
        user = store.create_user("alice", "alice@example.com")
        store.create_session(_session(user.id, "old", expires_in=timedelta(seconds=-1)))
        assert store.revoke_session_if_active("old", utcnow()) is None

    def test_duplicate_token_rejected(self, store):
        user = store.create_user("alice", "alice@example.com")
        store.create_session(_session(user.id, "tok"))
        with pytest.raises(ConstraintViolation):
            store.create_session(_session(user.id, "tok"))

    def test_list_active_newest_first(self, store):
        user = store.create_user("alice", "alice@example.com")
        older = _session(user.id, "a")
        older.created_at = utcnow() - timedelta(hours=1)
        store.create_session(older)
        newer = store.create_session(_session(user.id, "b"))
        store.create_session(_session(user.id, "c"))
        store.revoke_session_by_token("c", utcnow())
        assert [s.id for s in store.list_active_sessions(user.id, utcnow())] == [
            newer.id,
            older.id,
        ]


class TestCategories:
    def test_name_unique_per_owner_among_active(self, store):
        cat = store.create_category(Category(id=new_id(), name="Work", created_by="u1"))
        store.create_category(Category(id=new_id(), name="Work", created_by="u2"))
        with pytest.raises(ConstraintViolation) as exc:
            store.create_category(Category(id=new_id(), name="work", created_by="u1"))
        assert exc.value.detail["field"] == "name"

        store.deactivate_category(cat.id, "u1")
        store.create_category(Category(id=new_id(), name="Work", created_by="u1"))

    def test_deactivate_detaches_tasks(self, store):
        cat = store.create_category(Category(id=new_id(), name="Work", created_by="u1"))
        task = store.create_task(Task(id=new_id(), title="T", created_by="u1", category_id=cat.id))
        assert store.deactivate_category(cat.id, "u1")
        assert store.get_task(task.id).category_id is None
        assert store.get_category(cat.id, "u1") is None

    def test_reorder_rejects_foreign_ids(self, store):
        mine = store.create_category(Category(id=new_id(), name="A", created_by="u1"))
        theirs = store.create_category(Category(id=new_id(), name="B", created_by="u2"))
        assert store.reorder_categories("u1", [(mine.id, 2), (theirs.id, 1)]) == -1
        assert store.get_category(mine.id, "u1").sort_order == 0

    def test_list_ordered_by_sort_order(self, store):
        a = store.create_category(Category(id=new_id(), name="A", created_by="u1", sort_order=2))
        b = store.create_category(Category(id=new_id(), name="B", created_by="u1", sort_order=1))
        assert [c.id for c in store.list_categories("u1")] == [b.id, a.id]


class TestTaskQueries:
    @pytest.fixture
    def seeded(self, store):
        now = utcnow()
        store.create_task(Task(id="t1", title="Write docs", created_by="u1", priority="low",
                               tags=["docs"], due_date=now + timedelta(days=3)))
        store.create_task(Task(id="t2", title="Fix bug", created_by="u1", priority="urgent",
                               description="Crash on LOGIN", due_date=now + timedelta(days=1)))
        store.create_task(Task(id="t3", title="Review", created_by="u2", assigned_to="u1",
                               priority="high"))
        store.create_task(Task(id="t4", title="Old", created_by="u1", is_archived=True))
        store.create_task(Task(id="t5", title="Not mine", created_by="u2"))
        return store

    def test_visibility_and_archive_filter(self, seeded):
        tasks, total = seeded.list_tasks(TaskQuery(user_id="u1"))
        assert total == 3
        assert {t.id for t in tasks} == {"t1", "t2", "t3"}
        archived, _ = seeded.list_tasks(TaskQuery(user_id="u1", archived=True))
        assert [t.id for t in archived] == ["t4"]

    def test_priority_sorts_by_rank(self, seeded):
        tasks, _ = seeded.list_tasks(
            TaskQuery(user_id="u1", sort_by="priority", sort_order="desc")
        )
        assert [t.id for t in tasks] == ["t2", "t3", "t1"]

    def test_due_date_sort_puts_missing_last(self, seeded):
        tasks, _ = seeded.list_tasks(TaskQuery(user_id="u1", sort_by="dueDate"))
        assert [t.id for t in tasks] == ["t2", "t1", "t3"]

    def test_search_is_case_insensitive_across_fields(self, seeded):
        tasks, _ = seeded.list_tasks(TaskQuery(user_id="u1", search="login"))
        assert [t.id for t in tasks] == ["t2"]
        tasks, _ = seeded.list_tasks(TaskQuery(user_id="u1", search="DOCS"))
        assert [t.id for t in tasks] == ["t1"]

    def test_tag_and_assignee_filters(self, seeded):
        tasks, _ = seeded.list_tasks(TaskQuery(user_id="u1", tags=["docs", "misc"]))
        assert [t.id for t in tasks] == ["t1"]
        tasks, _ = seeded.list_tasks(TaskQuery(user_id="u1", assigned_to="u1"))
        assert [t.id for t in tasks] == ["t3"]

    def test_pagination_window(self, seeded):
        tasks, total = seeded.list_tasks(TaskQuery(user_id="u1", sort_by="title"), offset=1, limit=1)
        assert total == 3
        assert [t.title for t in tasks] == ["Review"]

    def test_embedded_subtasks_persist(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        store.create_task(
            Task(id="t1", title="T", created_by="u1", subtasks=[Subtask(id="s1", title="step")])
        )
        reloaded = MemoryStore(fs_root=str(tmp_path))
        task = reloaded.get_task("t1")
        assert task.subtasks[0].title == "step"
        assert task.created_at.tzinfo is not None
