"""Tests for the events TaskService announces on each mutation."""

import pytest

from taskverse.service.auth import AuthContext
from taskverse.service.errors import NotFoundError
from taskverse.service.tasks import TaskService
from taskverse.storage.memory import MemoryStore


class RecordingSink:
    def __init__(self):
        self.events = []

    async def publish_task_event(self, event, task_id, data, *, snapshot=None):
        self.events.append((event, task_id, data, snapshot))

    def named(self, event):
        return [entry for entry in self.events if entry[0] == event]


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def service(store, sink):
    return TaskService(store, sink)


def _principal(store, username):
    user = store.create_user(username, f"{username}@example.com")
    return AuthContext(user_id=user.id, email=user.email, username=username)


@pytest.fixture
def alice(store):
    return _principal(store, "alice")


@pytest.fixture
def bob(store):
    return _principal(store, "bob")


def _who(ctx):
    return {"id": ctx.user_id, "username": ctx.username}


class TestCreate:
    async def test_created_only_for_own_task(self, service, sink, alice):
        task = await service.create_task(alice, {"title": "Ship"})
        assert [e[0] for e in sink.events] == ["task:created"]
        _, task_id, data, _ = sink.events[0]
        assert task_id == task.id
        assert data["createdBy"] == _who(alice)
        assert data["task"]["title"] == "Ship"

    async def test_assigned_when_created_for_someone_else(self, service, sink, alice, bob):
        task = await service.create_task(alice, {"title": "Ship", "assigned_to": bob.user_id})
        assert [e[0] for e in sink.events] == ["task:created", "task:assigned"]
        assert sink.named("task:assigned")[0][1:3] == (
            task.id,
            {"assignedTo": bob.user_id, "assignedBy": _who(alice)},
        )


class TestUpdate:
    async def test_status_change_announced(self, service, sink, alice):
        task = await service.create_task(alice, {"title": "Ship"})
        sink.events.clear()
        await service.update_task(alice, task.id, {"status": "in_progress"})

        assert [e[0] for e in sink.events] == ["task:updated", "task:status_changed"]
        updated = sink.named("task:updated")[0][2]
        assert updated["changes"] == {"status": "in_progress"}
        assert updated["updatedBy"] == _who(alice)
        assert sink.named("task:status_changed")[0][2] == {
            "oldStatus": "todo",
            "newStatus": "in_progress",
            "changedBy": _who(alice),
        }

    async def test_same_status_is_not_a_change(self, service, sink, alice):
        task = await service.create_task(alice, {"title": "Ship"})
        sink.events.clear()
        await service.update_task(alice, task.id, {"status": "todo", "title": "Ship it"})
        assert [e[0] for e in sink.events] == ["task:updated"]

    async def test_reassignment_announced(self, service, sink, alice, bob):
        task = await service.create_task(alice, {"title": "Ship"})
        sink.events.clear()
        await service.update_task(alice, task.id, {"assigned_to": bob.user_id})

        assert [e[0] for e in sink.events] == ["task:updated", "task:assigned"]
        _, task_id, data, _ = sink.named("task:assigned")[0]
        assert task_id == task.id
        assert data == {"assignedTo": bob.user_id, "assignedBy": _who(alice)}

    async def test_rejected_update_emits_nothing(self, service, sink, alice, bob):
        task = await service.create_task(alice, {"title": "Ship"})
        sink.events.clear()
        with pytest.raises(NotFoundError):
            await service.update_task(bob, task.id, {"title": "Mine"})
        assert sink.events == []


class TestChildren:
    async def test_comment_added(self, service, sink, alice, bob):
        task = await service.create_task(alice, {"title": "Ship", "assigned_to": bob.user_id})
        sink.events.clear()
        comment = await service.add_comment(bob, task.id, "On it")

        _, task_id, data, _ = sink.named("task:comment_added")[0]
        assert task_id == task.id
        assert data["author"] == _who(bob)
        assert data["comment"]["id"] == comment.id
        assert data["comment"]["content"] == "On it"

    async def test_subtask_updated(self, service, sink, alice):
        task = await service.create_task(
            alice, {"title": "Ship", "subtasks": [{"title": "Write notes"}]}
        )
        subtask_id = task.subtasks[0].id
        sink.events.clear()
        await service.update_subtask(alice, task.id, subtask_id, True)

        assert [e[0] for e in sink.events] == ["task:subtask_updated"]
        _, task_id, data, _ = sink.events[0]
        assert task_id == task.id
        assert data["subtask"]["id"] == subtask_id
        assert data["subtask"]["isCompleted"] is True
        assert data["updatedBy"] == _who(alice)

    async def test_missing_subtask_emits_nothing(self, service, sink, alice):
        task = await service.create_task(alice, {"title": "Ship"})
        sink.events.clear()
        with pytest.raises(NotFoundError, match="Task or subtask not found"):
            await service.update_subtask(alice, task.id, "nope", True)
        assert sink.events == []

    async def test_attachment_added(self, service, sink, alice):
        task = await service.create_task(alice, {"title": "Ship"})
        sink.events.clear()
        attachment = await service.add_attachment(
            alice,
            task.id,
            {
                "filename": "design.pdf",
                "mime_type": "application/pdf",
                "size": 1024,
                "url": "https://files.example.com/design.pdf",
            },
        )

        _, task_id, data, _ = sink.named("task:attachment_added")[0]
        assert task_id == task.id
        assert data["uploadedBy"] == _who(alice)
        assert data["attachment"]["id"] == attachment.id
        assert data["attachment"]["filename"] == "design.pdf"


class TestDelete:
    async def test_deleted_carries_snapshot(self, service, store, sink, alice, bob):
        task = await service.create_task(alice, {"title": "Ship", "assigned_to": bob.user_id})
        sink.events.clear()
        await service.delete_task(alice, task.id)

        assert store.get_task(task.id) is None
        event, task_id, data, snapshot = sink.events[0]
        assert (event, task_id) == ("task:deleted", task.id)
        assert data == {"deletedBy": _who(alice)}
        assert snapshot.id == task.id
        assert snapshot.assigned_to == bob.user_id

    async def test_assignee_cannot_delete(self, service, sink, alice, bob):
        task = await service.create_task(alice, {"title": "Ship", "assigned_to": bob.user_id})
        sink.events.clear()
        with pytest.raises(NotFoundError, match="Task not found or access denied"):
            await service.delete_task(bob, task.id)
        assert sink.events == []
