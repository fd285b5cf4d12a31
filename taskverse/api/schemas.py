from __future__ import annotations

import re
import unicodedata
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

TaskStatus = Literal["todo", "in_progress", "completed", "cancelled"]
TaskPriority = Literal["low", "medium", "high", "urgent"]
SortField = Literal["createdAt", "updatedAt", "dueDate", "priority", "title", "position"]

_HEX_COLOR = re.compile(r"^#([A-Fa-f0-9]{6}|[A-Fa-f0-9]{3})$")
_USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9_-]+$")
_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


class _WireModel(BaseModel):
    """Request bodies use camelCase on the wire and snake_case in Python."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="ignore"
    )


class Envelope(BaseModel):
    """Success body shared by every JSON route."""

    success: bool = True
    message: Optional[str] = None
    data: Optional[Any] = None


class ErrorBody(BaseModel):
    """Error body produced by the exception handlers."""

    error: str
    message: str
    details: Optional[Any] = None
    stack: Optional[str] = None


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and strip zero-width characters."""
    zero_width = "​‌‍﻿"
    cleaned = "".join(c for c in value if c not in zero_width)
    return unicodedata.normalize("NFKC", cleaned)


def _validate_email(value: str) -> str:
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("Invalid email")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("Invalid email")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("Invalid email")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("Invalid email")
    return normalized


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ----------------------------------------------------------------------
# auth
# ----------------------------------------------------------------------


class RegisterRequest(_WireModel):
    username: str = Field(..., min_length=3, max_length=20)
    email: str
    password: str = Field(..., min_length=6, max_length=128)
    first_name: Optional[str] = Field(default=None, min_length=1, max_length=50)
    last_name: Optional[str] = Field(default=None, min_length=1, max_length=50)

    @field_validator("username")
    @classmethod
    def _validate_username(cls, value: str) -> str:
        if not _USERNAME_PATTERN.match(value):
            raise ValueError(
                "username may only contain letters, numbers, underscores and hyphens"
            )
        return value

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)


class LoginRequest(_WireModel):
    email: str
    password: str = Field(..., min_length=1)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class RefreshTokenRequest(_WireModel):
    refresh_token: str = Field(..., min_length=1, max_length=4096)


class ChangePasswordRequest(_WireModel):
    current_password: str = Field(..., min_length=1)
    new_password: str = Field(..., min_length=6, max_length=128)


# ----------------------------------------------------------------------
# users
# ----------------------------------------------------------------------


class UpdateProfileRequest(_WireModel):
    first_name: Optional[str] = Field(default=None, min_length=1, max_length=50)
    last_name: Optional[str] = Field(default=None, min_length=1, max_length=50)
    bio: Optional[str] = Field(default=None, max_length=500)
    avatar: Optional[str] = Field(default=None, max_length=2048)
    timezone: Optional[str] = Field(default=None, max_length=64)

    @field_validator("avatar")
    @classmethod
    def _validate_avatar(cls, value: Optional[str]) -> Optional[str]:
        if value and not value.startswith(("http://", "https://")):
            raise ValueError("avatar must be an http(s) URL")
        return value


class NotificationPreferences(_WireModel):
    email: Optional[bool] = None
    push: Optional[bool] = None
    task_reminders: Optional[bool] = None
    task_assignments: Optional[bool] = None


class UpdatePreferencesRequest(_WireModel):
    theme: Optional[Literal["light", "dark", "system"]] = None
    notifications: Optional[NotificationPreferences] = None
    default_view: Optional[Literal["list", "kanban", "calendar"]] = None

    def as_preferences(self) -> Dict[str, Any]:
        """Stored preferences use the camelCase keys clients send."""
        return self.model_dump(by_alias=True, exclude_none=True)


# ----------------------------------------------------------------------
# categories
# ----------------------------------------------------------------------


def _validate_color(value: Optional[str]) -> Optional[str]:
    if value is not None and not _HEX_COLOR.match(value):
        raise ValueError("color must be a hex value like #6366f1")
    return value


class CategoryCreateRequest(_WireModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    color: str = "#6366f1"
    icon: Optional[str] = Field(default=None, max_length=50)
    sort_order: int = 0

    @field_validator("name", mode="before")
    @classmethod
    def _strip_name(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) else value

    @field_validator("color")
    @classmethod
    def _check_color(cls, value: str) -> str:
        return _validate_color(value)


class CategoryUpdateRequest(_WireModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    color: Optional[str] = None
    icon: Optional[str] = Field(default=None, max_length=50)
    sort_order: Optional[int] = None

    @field_validator("name", mode="before")
    @classmethod
    def _strip_name(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) else value

    @field_validator("color")
    @classmethod
    def _check_color(cls, value: Optional[str]) -> Optional[str]:
        return _validate_color(value)


class CategoryOrder(_WireModel):
    id: str
    sort_order: int


class ReorderCategoriesRequest(_WireModel):
    categories: List[CategoryOrder] = Field(..., min_length=1)


# ----------------------------------------------------------------------
# tasks
# ----------------------------------------------------------------------


class SubtaskInput(_WireModel):
    id: Optional[str] = None
    title: str = Field(..., min_length=1, max_length=200)
    is_completed: bool = False

    @field_validator("title", mode="before")
    @classmethod
    def _strip_title(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) else value


class _TaskFields(_WireModel):
    description: Optional[str] = Field(default=None, max_length=5000)
    category_id: Optional[str] = Field(default=None, alias="category")
    assigned_to: Optional[str] = None
    due_date: Optional[datetime] = None
    start_date: Optional[datetime] = None
    estimated_hours: Optional[float] = Field(default=None, ge=0)
    actual_hours: Optional[float] = Field(default=None, ge=0)

    @field_validator("due_date", "start_date")
    @classmethod
    def _normalize_dates(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value)

    @field_validator("title", mode="before", check_fields=False)
    @classmethod
    def _strip_title(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) else value

    @field_validator("tags", check_fields=False)
    @classmethod
    def _validate_tags(cls, value: Optional[List[str]]) -> Optional[List[str]]:
        if value is None:
            return None
        cleaned = [tag.strip() for tag in value if tag and tag.strip()]
        if any(len(tag) > 50 for tag in cleaned):
            raise ValueError("tags must be at most 50 characters")
        return cleaned


class TaskCreateRequest(_TaskFields):
    title: str = Field(..., min_length=1, max_length=200)
    status: TaskStatus = "todo"
    priority: TaskPriority = "medium"
    tags: List[str] = Field(default_factory=list)
    subtasks: List[SubtaskInput] = Field(default_factory=list)
    position: int = 0

    def to_fields(self) -> Dict[str, Any]:
        return self.model_dump()


# Fields that may be cleared by sending null
_NULLABLE_TASK_FIELDS = {
    "description",
    "category_id",
    "assigned_to",
    "due_date",
    "start_date",
    "estimated_hours",
    "actual_hours",
}


class TaskUpdateRequest(_TaskFields):
    title: Optional[str] = Field(default=None, min_length=1, max_length=200)
    status: Optional[TaskStatus] = None
    priority: Optional[TaskPriority] = None
    tags: Optional[List[str]] = None
    subtasks: Optional[List[SubtaskInput]] = None
    is_archived: Optional[bool] = None
    position: Optional[int] = None

    def to_fields(self) -> Dict[str, Any]:
        """Only fields the client sent; null clears nullable fields only."""
        data = self.model_dump(exclude_unset=True)
        return {
            key: value
            for key, value in data.items()
            if value is not None or key in _NULLABLE_TASK_FIELDS
        }


class CommentRequest(_WireModel):
    content: str = Field(..., min_length=1, max_length=2000)

    @field_validator("content", mode="before")
    @classmethod
    def _strip_content(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) else value


class SubtaskUpdateRequest(_WireModel):
    is_completed: bool


class AttachmentRequest(_WireModel):
    filename: str = Field(..., min_length=1, max_length=255)
    original_name: Optional[str] = Field(default=None, max_length=255)
    mime_type: str = Field(..., min_length=1, max_length=255)
    size: int = Field(..., ge=0)
    url: str = Field(..., min_length=1, max_length=2048)
