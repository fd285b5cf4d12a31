from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol, Set

from taskverse.logging import get_logger
from taskverse.service.auth import AuthContext
from taskverse.storage.models import Task

logger = get_logger(__name__)

TASK_EVENTS = frozenset(
    {
        "task:created",
        "task:updated",
        "task:status_changed",
        "task:assigned",
        "task:comment_added",
        "task:attachment_added",
        "task:deleted",
        "task:subtask_updated",
    }
)


def user_room(user_id: str) -> str:
    return f"user:{user_id}"


def task_room(task_id: str) -> str:
    return f"task:{task_id}"


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


class TaskEventSink(Protocol):
    """Outbound port used by task handlers to announce changes."""

    async def publish_task_event(
        self,
        event: str,
        task_id: str,
        data: Dict[str, Any],
        *,
        snapshot: Optional[Task] = None,
    ) -> None: ...


class NullTaskEventSink:
    """Sink that drops every event."""

    async def publish_task_event(
        self,
        event: str,
        task_id: str,
        data: Dict[str, Any],
        *,
        snapshot: Optional[Task] = None,
    ) -> None:
        return None


class FrameSocket(Protocol):
    async def send_json(self, data: Any) -> None: ...


@dataclass(eq=False)
class ClientConnection:
    socket: FrameSocket
    principal: AuthContext
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    rooms: Set[str] = field(default_factory=set)

    @property
    def user_id(self) -> str:
        return self.principal.user_id


class RealtimeNotifier:
    """Room registry and fan-out for authenticated WebSocket connections.

    All methods run on the event loop; the registry is never touched from
    worker threads, so it needs no lock. A connection whose send fails is
    dropped without affecting delivery to the others.
    """

    def __init__(self, task_lookup: Callable[[str], Optional[Task]]) -> None:
        self._task_lookup = task_lookup
        self._rooms: Dict[str, Set[ClientConnection]] = {}
        self._connections: Dict[str, ClientConnection] = {}
        self.logger = logger

    # ------------------------------------------------------------------
    # registry
    # ------------------------------------------------------------------

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    def room_members(self, room: str) -> Set[ClientConnection]:
        return set(self._rooms.get(room, ()))

    def _user_connections(self, user_id: str) -> List[ClientConnection]:
        return [c for c in self._connections.values() if c.user_id == user_id]

    def join(self, conn: ClientConnection, room: str) -> None:
        self._rooms.setdefault(room, set()).add(conn)
        conn.rooms.add(room)

    def leave(self, conn: ClientConnection, room: str) -> None:
        members = self._rooms.get(room)
        if members is not None:
            members.discard(conn)
            if not members:
                self._rooms.pop(room, None)
        conn.rooms.discard(room)

    def _drop(self, conn: ClientConnection) -> bool:
        """Remove ``conn`` everywhere; True if it was still registered."""
        if self._connections.pop(conn.id, None) is None:
            return False
        for room in list(conn.rooms):
            self.leave(conn, room)
        return True

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------

    async def connect(self, socket: FrameSocket, principal: AuthContext) -> ClientConnection:
        conn = ClientConnection(socket=socket, principal=principal)
        first_for_user = not self._user_connections(principal.user_id)
        self._connections[conn.id] = conn
        self.join(conn, user_room(principal.user_id))
        self.logger.info(
            "ws_connected", user_id=principal.user_id, connection_id=conn.id
        )
        await self._deliver(
            [conn],
            "connected",
            {"userId": principal.user_id, "username": principal.username},
        )
        if first_for_user:
            await self._broadcast_status(conn, "online")
        return conn

    async def disconnect(self, conn: ClientConnection) -> None:
        if not self._drop(conn):
            return
        self.logger.info("ws_disconnected", user_id=conn.user_id, connection_id=conn.id)
        if not self._user_connections(conn.user_id):
            await self._broadcast_status(conn, "offline")

    async def _broadcast_status(self, conn: ClientConnection, status: str) -> None:
        await self.broadcast(
            "user:status",
            {"userId": conn.user_id, "status": status, "timestamp": _timestamp()},
            exclude=conn,
        )

    # ------------------------------------------------------------------
    # delivery
    # ------------------------------------------------------------------

    async def _deliver(
        self, targets: Iterable[ClientConnection], event: str, data: Any
    ) -> int:
        frame = {"event": event, "data": data}
        delivered = 0
        for conn in list(targets):
            try:
                await conn.socket.send_json(frame)
                delivered += 1
            except Exception as exc:
                self.logger.warning(
                    "ws_send_failed",
                    event_name=event,
                    connection_id=conn.id,
                    user_id=conn.user_id,
                    error=str(exc),
                )
                self._drop(conn)
        return delivered

    async def emit_to_room(
        self,
        room: str,
        event: str,
        data: Any,
        *,
        exclude: Optional[ClientConnection] = None,
    ) -> int:
        targets = [c for c in self._rooms.get(room, ()) if c is not exclude]
        return await self._deliver(targets, event, data)

    async def broadcast(
        self, event: str, data: Any, *, exclude: Optional[ClientConnection] = None
    ) -> int:
        targets = [c for c in self._connections.values() if c is not exclude]
        return await self._deliver(targets, event, data)

    async def publish_task_event(
        self,
        event: str,
        task_id: str,
        data: Dict[str, Any],
        *,
        snapshot: Optional[Task] = None,
    ) -> None:
        """Fan a task event out to the task room and the interested users.

        ``snapshot`` supplies the creator/assignee when the task no longer
        exists (deletion). Without either, or for an event name outside
        ``TASK_EVENTS``, the event is logged and dropped.
        """
        if event not in TASK_EVENTS:
            self.logger.warning("task_event_unknown", event_name=event, task_id=task_id)
            return
        task = snapshot or self._task_lookup(task_id)
        if task is None:
            self.logger.warning("task_event_dropped", event_name=event, task_id=task_id)
            return

        rooms = [task_room(task_id)] + [user_room(uid) for uid in task.interested_users()]
        targets: Set[ClientConnection] = set()
        for room in rooms:
            targets.update(self._rooms.get(room, ()))
        payload = {"taskId": task_id, **data, "timestamp": _timestamp()}
        delivered = await self._deliver(targets, event, payload)
        self.logger.debug(
            "task_event_published", event_name=event, task_id=task_id, delivered=delivered
        )

    # ------------------------------------------------------------------
    # inbound frames
    # ------------------------------------------------------------------

    async def _send_error(self, conn: ClientConnection, message: str) -> None:
        await self._deliver([conn], "error", {"message": message})

    @staticmethod
    def _task_id_from(data: Any) -> Optional[str]:
        if isinstance(data, str):
            return data or None
        if isinstance(data, dict):
            value = data.get("taskId")
            return value if isinstance(value, str) and value else None
        return None

    async def handle_frame(self, conn: ClientConnection, raw: str) -> None:
        """Dispatch one client frame. Bad frames get an ``error`` reply."""
        try:
            frame = json.loads(raw)
        except ValueError:
            await self._send_error(conn, "Malformed frame")
            return
        if not isinstance(frame, dict) or not isinstance(frame.get("event"), str):
            await self._send_error(conn, "Malformed frame")
            return
        event = frame["event"]
        data = frame.get("data")

        if event == "user:online":
            await self._broadcast_status(conn, "online")
            return

        if event in {"typing:start", "typing:stop", "task:join", "task:leave"}:
            task_id = self._task_id_from(data)
            if not task_id:
                await self._send_error(conn, "taskId is required")
                return
            if event == "typing:start":
                await self.emit_to_room(
                    task_room(task_id),
                    "typing:start",
                    {"userId": conn.user_id, "username": conn.principal.username, "taskId": task_id},
                    exclude=conn,
                )
            elif event == "typing:stop":
                await self.emit_to_room(
                    task_room(task_id),
                    "typing:stop",
                    {"userId": conn.user_id, "taskId": task_id},
                    exclude=conn,
                )
            elif event == "task:join":
                task = self._task_lookup(task_id)
                if task is None or not task.visible_to(conn.user_id):
                    await self._send_error(conn, "Task not found")
                    return
                self.join(conn, task_room(task_id))
                self.logger.debug("ws_task_joined", user_id=conn.user_id, task_id=task_id)
            else:
                self.leave(conn, task_room(task_id))
            return

        await self._send_error(conn, f"Unknown event: {event}")
