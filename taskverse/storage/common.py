"""Serialization helpers shared by the memory and postgres stores and the API.

Storage dicts keep snake_case keys and ISO-8601 timestamps. Public dicts
(the wire and event shape) use camelCase keys.
"""

from __future__ import annotations

import dataclasses
import json
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional, Type, TypeVar

from pydantic.alias_generators import to_camel

from taskverse.storage.models import Attachment, Comment, Subtask, Task

T = TypeVar("T")


# ============================================================================
# TIMESTAMPS
# ============================================================================

def isoformat(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse ISO strings (or pass through datetimes), always returning aware UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _is_datetime_field(f: dataclasses.Field) -> bool:
    # Annotations are strings under postponed evaluation
    return "datetime" in str(f.type)


# ============================================================================
# STORAGE SHAPE (snake_case)
# ============================================================================

def storage_dict(obj: Any) -> Dict[str, Any]:
    """Convert a model dataclass into a JSON-safe dict with snake_case keys."""
    out: Dict[str, Any] = {}
    for f in dataclasses.fields(obj):
        value = getattr(obj, f.name)
        if isinstance(value, datetime):
            out[f.name] = isoformat(value)
        elif isinstance(value, list) and value and dataclasses.is_dataclass(value[0]):
            out[f.name] = [storage_dict(item) for item in value]
        else:
            out[f.name] = value
    return out


def from_storage(cls: Type[T], data: Dict[str, Any]) -> T:
    """Rebuild a flat model dataclass from a storage dict, ignoring unknown keys."""
    kwargs: Dict[str, Any] = {}
    for f in dataclasses.fields(cls):
        if f.name not in data:
            continue
        value = data[f.name]
        kwargs[f.name] = parse_datetime(value) if _is_datetime_field(f) else value
    return cls(**kwargs)


def parse_json_field(raw: Any) -> Any:
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode()
    if isinstance(raw, str):
        return json.loads(raw) if raw else None
    return raw


def dump_embedded(items: Iterable[Any]) -> str:
    return json.dumps([storage_dict(item) for item in items])


def task_from_storage(data: Dict[str, Any]) -> Task:
    """Rebuild a task including its embedded subtasks, comments and attachments."""
    flat = dict(data)
    subtasks = parse_json_field(flat.pop("subtasks", None)) or []
    comments = parse_json_field(flat.pop("comments", None)) or []
    attachments = parse_json_field(flat.pop("attachments", None)) or []
    task = from_storage(Task, flat)
    task.tags = list(flat.get("tags") or [])
    task.subtasks = [from_storage(Subtask, s) for s in subtasks]
    task.comments = [from_storage(Comment, c) for c in comments]
    task.attachments = [from_storage(Attachment, a) for a in attachments]
    return task


# ============================================================================
# PUBLIC SHAPE (camelCase)
# ============================================================================

def public_dict(obj: Any, *, exclude: Iterable[str] = ()) -> Dict[str, Any]:
    """Convert a model dataclass to the camelCase shape sent to clients."""
    skip = set(exclude)
    out: Dict[str, Any] = {}
    for f in dataclasses.fields(obj):
        if f.name in skip:
            continue
        value = getattr(obj, f.name)
        if isinstance(value, datetime):
            value = isoformat(value)
        elif isinstance(value, list):
            value = [
                public_dict(item) if dataclasses.is_dataclass(item) else item
                for item in value
            ]
        elif isinstance(value, dict):
            value = json.loads(json.dumps(value))
        out[to_camel(f.name)] = value
    return out


def user_public(user: Any) -> Dict[str, Any]:
    data = public_dict(user)
    data["fullName"] = user.full_name
    return data


def user_summary(user: Any) -> Dict[str, Any]:
    """Reduced user shape used for search results and other users' profiles."""
    return {
        "id": user.id,
        "username": user.username,
        "firstName": user.first_name,
        "lastName": user.last_name,
        "fullName": user.full_name,
        "avatar": user.avatar,
        "bio": user.bio,
        "createdAt": isoformat(user.created_at),
    }


def task_public(task: Task, now: Optional[datetime] = None) -> Dict[str, Any]:
    data = public_dict(task)
    data["completionPercentage"] = task.completion_percentage
    data["isOverdue"] = task.is_overdue(now)
    return data


def session_public(session: Any) -> Dict[str, Any]:
    """Session listing shape; the raw refresh token is never exposed."""
    return public_dict(session, exclude=("token", "token_id"))


def safe_row_value(row: Any, key: str, default: Optional[Any] = None) -> Optional[Any]:
    """Read a column from a dict row, tolerating missing keys."""
    if row is None:
        return default
    try:
        value = row[key]
    except (KeyError, IndexError, TypeError):
        return default
    return default if value is None else value

