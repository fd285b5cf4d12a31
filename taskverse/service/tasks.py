from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol, Tuple

from pydantic.alias_generators import to_camel

from taskverse.logging import get_logger
from taskverse.service.auth import AuthContext
from taskverse.service.errors import BadRequestError, NotFoundError
from taskverse.service.pagination import page_window, pagination_meta
from taskverse.service.realtime import NullTaskEventSink, TaskEventSink
from taskverse.storage.common import isoformat, public_dict, task_public
from taskverse.storage.models import (
    TASK_STATUSES,
    Attachment,
    Category,
    Comment,
    Subtask,
    Task,
    TaskQuery,
    User,
    new_id,
)

logger = get_logger(__name__)

# Fields a client may set on create/update
EDITABLE_FIELDS = (
    "title",
    "description",
    "status",
    "priority",
    "category_id",
    "assigned_to",
    "due_date",
    "start_date",
    "estimated_hours",
    "actual_hours",
    "tags",
    "subtasks",
    "is_archived",
    "position",
)


class TaskStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_category(self, category_id: str, owner_id: str) -> Optional[Category]: ...

    def create_task(self, task: Task) -> Task: ...

    def get_task(self, task_id: str) -> Optional[Task]: ...

    def save_task(self, task: Task) -> Task: ...

    def delete_task(self, task_id: str) -> bool: ...

    def list_tasks(
        self, query: TaskQuery, *, offset: int = 0, limit: int = 20
    ) -> Tuple[List[Task], int]: ...

    def visible_tasks(self, user_id: str) -> List[Task]: ...


def actor(ctx: AuthContext) -> Dict[str, str]:
    return {"id": ctx.user_id, "username": ctx.username}


def _wire_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return isoformat(value)
    if isinstance(value, list):
        return [public_dict(v) if hasattr(v, "__dataclass_fields__") else v for v in value]
    return value


class TaskService:
    """Task CRUD scoped to creator/assignee, announcing changes via a sink."""

    def __init__(self, store: TaskStore, events: Optional[TaskEventSink] = None) -> None:
        self.store = store
        self.events: TaskEventSink = events or NullTaskEventSink()
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _visible_task(self, ctx: AuthContext, task_id: str, message: str = "Task not found") -> Task:
        task = self.store.get_task(task_id)
        if not task or not task.visible_to(ctx.user_id):
            raise NotFoundError(message)
        return task

    def _check_references(self, ctx: AuthContext, fields: Dict[str, Any]) -> None:
        category_id = fields.get("category_id")
        if category_id and not self.store.get_category(category_id, ctx.user_id):
            raise BadRequestError("Category not found")
        assignee = fields.get("assigned_to")
        if assignee:
            user = self.store.get_user(assignee)
            if not user or not user.is_active:
                raise BadRequestError("Assigned user not found")

    @staticmethod
    def _build_subtasks(items: List[Dict[str, Any]]) -> List[Subtask]:
        return [
            Subtask(
                id=item.get("id") or new_id(),
                title=item["title"],
                is_completed=bool(item.get("is_completed", False)),
            )
            for item in items
        ]

    # ------------------------------------------------------------------
    # queries
    # ------------------------------------------------------------------

    def list_tasks(
        self, query: TaskQuery, *, page: int = 1, limit: int = 20
    ) -> Tuple[List[Task], Dict[str, Any]]:
        offset, page, limit = page_window(page, limit)
        tasks, total = self.store.list_tasks(query, offset=offset, limit=limit)
        return tasks, pagination_meta(page, limit, total)

    def get_task(self, ctx: AuthContext, task_id: str) -> Task:
        return self._visible_task(ctx, task_id)

    def stats(self, ctx: AuthContext) -> Dict[str, int]:
        """Count non-archived visible tasks per status, plus overdue ones."""
        counts = {status: 0 for status in TASK_STATUSES}
        overdue = 0
        now = self._now()
        tasks = self.store.visible_tasks(ctx.user_id)
        for task in tasks:
            counts[task.status] = counts.get(task.status, 0) + 1
            if task.is_overdue(now):
                overdue += 1
        return {
            "total": len(tasks),
            "todo": counts["todo"],
            "inProgress": counts["in_progress"],
            "completed": counts["completed"],
            "cancelled": counts["cancelled"],
            "overdue": overdue,
        }

    # ------------------------------------------------------------------
    # mutations
    # ------------------------------------------------------------------

    async def create_task(self, ctx: AuthContext, fields: Dict[str, Any]) -> Task:
        self._check_references(ctx, fields)
        data = {k: v for k, v in fields.items() if k in EDITABLE_FIELDS}
        subtasks = self._build_subtasks(data.pop("subtasks", None) or [])
        status = data.pop("status", None) or "todo"
        task = Task(id=new_id(), created_by=ctx.user_id, subtasks=subtasks, **data)
        task.set_status(status, self._now())
        self.store.create_task(task)
        self.logger.info("task_created", task_id=task.id, user_id=ctx.user_id)

        await self.events.publish_task_event(
            "task:created",
            task.id,
            {"task": task_public(task), "createdBy": actor(ctx)},
        )
        if task.assigned_to and task.assigned_to != ctx.user_id:
            await self.events.publish_task_event(
                "task:assigned",
                task.id,
                {"assignedTo": task.assigned_to, "assignedBy": actor(ctx)},
            )
        return task

    async def update_task(
        self, ctx: AuthContext, task_id: str, fields: Dict[str, Any]
    ) -> Task:
        task = self._visible_task(ctx, task_id, "Task not found or access denied")
        self._check_references(ctx, fields)
        old_status = task.status
        old_assignee = task.assigned_to

        changes: Dict[str, Any] = {}
        for key, value in fields.items():
            if key not in EDITABLE_FIELDS:
                continue
            if key == "subtasks":
                value = self._build_subtasks(value or [])
            if key == "status":
                task.set_status(value, self._now())
            else:
                setattr(task, key, value)
            changes[to_camel(key)] = _wire_value(getattr(task, key))
        self.store.save_task(task)
        self.logger.info(
            "task_updated", task_id=task.id, user_id=ctx.user_id, fields=sorted(changes)
        )

        await self.events.publish_task_event(
            "task:updated",
            task.id,
            {"task": task_public(task), "changes": changes, "updatedBy": actor(ctx)},
        )
        if task.status != old_status:
            await self.events.publish_task_event(
                "task:status_changed",
                task.id,
                {"oldStatus": old_status, "newStatus": task.status, "changedBy": actor(ctx)},
            )
        if task.assigned_to != old_assignee:
            await self.events.publish_task_event(
                "task:assigned",
                task.id,
                {"assignedTo": task.assigned_to, "assignedBy": actor(ctx)},
            )
        return task

    async def delete_task(self, ctx: AuthContext, task_id: str) -> None:
        """Delete a task; only its creator may do so."""
        task = self.store.get_task(task_id)
        if not task or task.created_by != ctx.user_id:
            raise NotFoundError("Task not found or access denied")
        self.store.delete_task(task_id)
        self.logger.info("task_deleted", task_id=task_id, user_id=ctx.user_id)
        await self.events.publish_task_event(
            "task:deleted", task_id, {"deletedBy": actor(ctx)}, snapshot=task
        )

    async def add_comment(self, ctx: AuthContext, task_id: str, content: str) -> Comment:
        task = self._visible_task(ctx, task_id, "Task not found or access denied")
        comment = Comment(id=new_id(), content=content, author_id=ctx.user_id)
        task.comments.append(comment)
        self.store.save_task(task)
        await self.events.publish_task_event(
            "task:comment_added",
            task.id,
            {"comment": public_dict(comment), "author": actor(ctx)},
        )
        return comment

    async def update_subtask(
        self, ctx: AuthContext, task_id: str, subtask_id: str, is_completed: bool
    ) -> Task:
        task = self.store.get_task(task_id)
        subtask = None
        if task and task.visible_to(ctx.user_id):
            subtask = next((s for s in task.subtasks if s.id == subtask_id), None)
        if not task or subtask is None:
            raise NotFoundError("Task or subtask not found")
        subtask.is_completed = is_completed
        self.store.save_task(task)
        await self.events.publish_task_event(
            "task:subtask_updated",
            task.id,
            {"subtask": public_dict(subtask), "updatedBy": actor(ctx)},
        )
        return task

    async def add_attachment(
        self, ctx: AuthContext, task_id: str, fields: Dict[str, Any]
    ) -> Attachment:
        """Record metadata for a file already stored elsewhere."""
        task = self._visible_task(ctx, task_id, "Task not found or access denied")
        attachment = Attachment(
            id=new_id(),
            filename=fields["filename"],
            original_name=fields.get("original_name") or fields["filename"],
            mime_type=fields["mime_type"],
            size=fields["size"],
            url=fields["url"],
            uploaded_by=ctx.user_id,
        )
        task.attachments.append(attachment)
        self.store.save_task(task)
        await self.events.publish_task_event(
            "task:attachment_added",
            task.id,
            {"attachment": public_dict(attachment), "uploadedBy": actor(ctx)},
        )
        return attachment
