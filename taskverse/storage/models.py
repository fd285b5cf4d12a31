from __future__ import annotations

import copy
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional

TASK_STATUSES = ("todo", "in_progress", "completed", "cancelled")
TASK_PRIORITIES = ("low", "medium", "high", "urgent")
PRIORITY_RANK = {name: rank for rank, name in enumerate(TASK_PRIORITIES)}

DEFAULT_CATEGORY_COLOR = "#6366f1"

DEFAULT_PREFERENCES: Dict = {
    "theme": "system",
    "notifications": {
        "email": True,
        "push": True,
        "taskReminders": True,
        "taskAssignments": True,
    },
    "defaultView": "list",
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def default_preferences() -> Dict:
    return copy.deepcopy(DEFAULT_PREFERENCES)


@dataclass
class User:
    id: str
    username: str
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    avatar: Optional[str] = None
    bio: Optional[str] = None
    timezone: str = "UTC"
    preferences: Dict = field(default_factory=default_preferences)
    is_active: bool = True
    last_login_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def full_name(self) -> str:
        parts = [p for p in (self.first_name, self.last_name) if p]
        return " ".join(parts) or self.username


@dataclass
class RefreshSession:
    """Server-side record backing one refresh grant."""

    id: str
    user_id: str
    token: str
    token_id: str
    created_at: datetime
    expires_at: datetime
    is_revoked: bool = False
    revoked_at: Optional[datetime] = None
    device_info: Optional[str] = None
    ip_address: Optional[str] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        token: str,
        token_id: str,
        expires_at: datetime,
        *,
        device_info: str | None = None,
        ip_address: str | None = None,
        created_at: datetime | None = None,
    ) -> "RefreshSession":
        return cls(
            id=new_id(),
            user_id=user_id,
            token=token,
            token_id=token_id,
            created_at=created_at or utcnow(),
            expires_at=expires_at,
            device_info=device_info[:500] if device_info else None,
            ip_address=ip_address,
        )

    def is_valid(self, now: datetime) -> bool:
        return not self.is_revoked and self.expires_at > now

    def is_stale(self, now: datetime) -> bool:
        return self.is_revoked or self.expires_at <= now


@dataclass
class Category:
    id: str
    name: str
    created_by: str
    description: Optional[str] = None
    color: str = DEFAULT_CATEGORY_COLOR
    icon: Optional[str] = None
    is_default: bool = False
    sort_order: int = 0
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Subtask:
    id: str
    title: str
    is_completed: bool = False
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Comment:
    id: str
    content: str
    author_id: str
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Attachment:
    id: str
    filename: str
    original_name: str
    mime_type: str
    size: int
    url: str
    uploaded_by: str
    uploaded_at: datetime = field(default_factory=utcnow)


@dataclass
class Task:
    id: str
    title: str
    created_by: str
    description: Optional[str] = None
    status: str = "todo"
    priority: str = "medium"
    category_id: Optional[str] = None
    assigned_to: Optional[str] = None
    due_date: Optional[datetime] = None
    start_date: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    estimated_hours: Optional[float] = None
    actual_hours: Optional[float] = None
    tags: List[str] = field(default_factory=list)
    subtasks: List[Subtask] = field(default_factory=list)
    comments: List[Comment] = field(default_factory=list)
    attachments: List[Attachment] = field(default_factory=list)
    is_archived: bool = False
    position: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def visible_to(self, user_id: str) -> bool:
        return self.created_by == user_id or self.assigned_to == user_id

    def interested_users(self) -> List[str]:
        users = [self.created_by]
        if self.assigned_to and self.assigned_to != self.created_by:
            users.append(self.assigned_to)
        return users

    def set_status(self, status: str, now: datetime | None = None) -> None:
        if status == "completed" and self.status != "completed":
            self.completed_at = now or utcnow()
        elif status != "completed":
            self.completed_at = None
        self.status = status

    @property
    def completion_percentage(self) -> int:
        if not self.subtasks:
            return 100 if self.status == "completed" else 0
        done = sum(1 for s in self.subtasks if s.is_completed)
        return round(done / len(self.subtasks) * 100)

    def is_overdue(self, now: datetime | None = None) -> bool:
        if not self.due_date or self.status in {"completed", "cancelled"}:
            return False
        return self.due_date < (now or utcnow())


TASK_SORT_FIELDS = {
    "createdAt": "created_at",
    "updatedAt": "updated_at",
    "dueDate": "due_date",
    "priority": "priority",
    "title": "title",
    "position": "position",
}


@dataclass
class TaskQuery:
    """Filters for listing tasks visible to ``user_id``."""

    user_id: str
    status: Optional[str] = None
    priority: Optional[str] = None
    category_id: Optional[str] = None
    assigned_to: Optional[str] = None
    search: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    due_after: Optional[datetime] = None
    due_before: Optional[datetime] = None
    archived: bool = False
    sort_by: str = "position"
    sort_order: str = "asc"

    def matches(self, task: Task) -> bool:
        if not task.visible_to(self.user_id):
            return False
        if task.is_archived != self.archived:
            return False
        if self.status and task.status != self.status:
            return False
        if self.priority and task.priority != self.priority:
            return False
        if self.category_id and task.category_id != self.category_id:
            return False
        if self.assigned_to and task.assigned_to != self.assigned_to:
            return False
        if self.tags and not set(self.tags) & set(task.tags):
            return False
        if self.due_after and (not task.due_date or task.due_date < self.due_after):
            return False
        if self.due_before and (not task.due_date or task.due_date > self.due_before):
            return False
        if self.search:
            needle = self.search.lower()
            haystack = [task.title, task.description or "", *task.tags]
            if not any(needle in value.lower() for value in haystack):
                return False
        return True
