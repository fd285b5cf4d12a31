from __future__ import annotations

from datetime import datetime
from typing import Literal, Optional

from fastapi import (
    APIRouter,
    Depends,
    Header,
    Path,
    Query,
    Request,
    Response,
    WebSocket,
    WebSocketDisconnect,
)

from taskverse.api.schemas import (
    AttachmentRequest,
    CategoryCreateRequest,
    CategoryUpdateRequest,
    ChangePasswordRequest,
    CommentRequest,
    Envelope,
    LoginRequest,
    RefreshTokenRequest,
    RegisterRequest,
    ReorderCategoriesRequest,
    SortField,
    SubtaskUpdateRequest,
    TaskCreateRequest,
    TaskPriority,
    TaskStatus,
    TaskUpdateRequest,
    UpdatePreferencesRequest,
    UpdateProfileRequest,
    as_utc,
)
from taskverse.logging import get_logger
from taskverse.service.auth import AuthContext
from taskverse.service.errors import (
    AuthenticationError,
    ForbiddenError,
    RateLimitedError,
    ServiceError,
)
from taskverse.service.runtime import check_rate_limit, get_runtime
from taskverse.service.tokens import extract_bearer
from taskverse.storage.common import (
    public_dict,
    session_public,
    task_public,
    user_public,
    user_summary,
)
from taskverse.storage.models import TaskQuery

logger = get_logger(__name__)

router = APIRouter(prefix="/api")

AUTH_RATE_LIMIT_MESSAGE = "Too many authentication attempts, please try again later."


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    @property
    def headers(self) -> dict:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(max(0, self.remaining)),
            "X-RateLimit-Reset": str(self.reset_seconds),
        }

    def apply_headers(self, response: Response) -> None:
        response.headers.update(self.headers)


def client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


async def enforce_rate_limit(
    runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    message: str = "Too many requests from this IP, please try again later.",
    response: Optional[Response] = None,
    consume: bool = True,
) -> RateLimitInfo:
    """Consume one request from ``key``'s bucket, or only check it with ``consume=False``.

    Raises:
        RateLimitedError with ``X-RateLimit-*`` headers if exhausted
    """
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True, consume=consume
    )
    info = RateLimitInfo(limit, remaining, reset_seconds or window_seconds)
    if response is not None:
        info.apply_headers(response)
    if not allowed:
        logger.warning("rate_limited", key=key, limit=limit)
        headers = dict(info.headers, **{"Retry-After": str(info.reset_seconds)})
        raise RateLimitedError(message, headers=headers)
    return info


async def _enforce_auth_rate_limit(request: Request, response: Response):
    # Only rejected attempts are charged to the bucket
    runtime = get_runtime()
    key = f"auth:{client_ip(request)}"
    limit = runtime.settings.auth_rate_limit_max
    window_seconds = runtime.settings.auth_rate_limit_window_seconds
    await enforce_rate_limit(
        runtime,
        key,
        limit,
        window_seconds,
        message=AUTH_RATE_LIMIT_MESSAGE,
        response=response,
        consume=False,
    )
    try:
        yield
    except ServiceError:
        await check_rate_limit(runtime, key, limit, window_seconds)
        raise


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    return get_runtime().auth.authenticate(authorization)


async def get_optional_user(
    authorization: Optional[str] = Header(None),
) -> Optional[AuthContext]:
    return get_runtime().auth.authenticate_optional(authorization)


# ----------------------------------------------------------------------
# auth
# ----------------------------------------------------------------------


@router.post(
    "/auth/register",
    response_model=Envelope,
    status_code=201,
    tags=["auth"],
    dependencies=[Depends(_enforce_auth_rate_limit)],
)
async def register(
    body: RegisterRequest,
    request: Request,
    user_agent: Optional[str] = Header(None),
):
    """Create an account and return a token pair for it.

    Raises:
        400: validation failure
        409: email or username already taken
        429: auth rate limit exceeded
    """
    runtime = get_runtime()
    user, tokens = await runtime.sessions.register(
        body.username,
        body.email,
        body.password,
        first_name=body.first_name,
        last_name=body.last_name,
        device_info=user_agent,
        ip_address=client_ip(request),
    )
    return Envelope(
        message="User registered successfully",
        data={"user": user_public(user), "tokens": tokens.to_dict()},
    )


@router.post(
    "/auth/login",
    response_model=Envelope,
    tags=["auth"],
    dependencies=[Depends(_enforce_auth_rate_limit)],
)
async def login(
    body: LoginRequest,
    request: Request,
    user_agent: Optional[str] = Header(None),
):
    runtime = get_runtime()
    user, tokens = await runtime.sessions.login(
        body.email,
        body.password,
        device_info=user_agent,
        ip_address=client_ip(request),
    )
    return Envelope(
        message="Login successful",
        data={"user": user_public(user), "tokens": tokens.to_dict()},
    )


@router.post(
    "/auth/refresh",
    response_model=Envelope,
    tags=["auth"],
    dependencies=[Depends(_enforce_auth_rate_limit)],
)
async def refresh_tokens(body: RefreshTokenRequest):
    """Rotate a refresh token; the presented token is single-use."""
    tokens = await get_runtime().sessions.refresh(body.refresh_token)
    return Envelope(message="Token refreshed successfully", data={"tokens": tokens.to_dict()})


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(body: RefreshTokenRequest):
    await get_runtime().sessions.logout(body.refresh_token)
    return Envelope(message="Logout successful")


@router.get("/auth/profile", response_model=Envelope, tags=["auth"])
async def auth_profile(principal: AuthContext = Depends(get_user)):
    user = get_runtime().users.get_profile(principal)
    return Envelope(data={"user": user_public(user)})


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(principal: AuthContext = Depends(get_user)):
    revoked = await get_runtime().sessions.logout_all_devices(principal.user_id)
    return Envelope(message="Logged out from all devices", data={"revoked": revoked})


@router.post("/auth/change-password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: ChangePasswordRequest, principal: AuthContext = Depends(get_user)
):
    """Change the password; every session is revoked afterwards."""
    await get_runtime().sessions.change_password(
        principal.user_id, body.current_password, body.new_password
    )
    return Envelope(message="Password changed successfully. Please log in again.")


@router.get("/auth/sessions", response_model=Envelope, tags=["auth"])
async def list_sessions(principal: AuthContext = Depends(get_user)):
    sessions = get_runtime().sessions.list_sessions(principal.user_id)
    return Envelope(data={"sessions": [session_public(s) for s in sessions]})


@router.delete("/auth/sessions/{session_id}", response_model=Envelope, tags=["auth"])
async def revoke_session(
    session_id: str = Path(...), principal: AuthContext = Depends(get_user)
):
    await get_runtime().sessions.revoke_session(principal.user_id, session_id)
    return Envelope(message="Session revoked successfully")


# ----------------------------------------------------------------------
# users
# ----------------------------------------------------------------------


@router.get("/users/profile", response_model=Envelope, tags=["users"])
async def get_profile(principal: AuthContext = Depends(get_user)):
    user = get_runtime().users.get_profile(principal)
    return Envelope(data={"user": user_public(user)})


@router.put("/users/profile", response_model=Envelope, tags=["users"])
async def update_profile(
    body: UpdateProfileRequest, principal: AuthContext = Depends(get_user)
):
    user = get_runtime().users.update_profile(
        principal, body.model_dump(exclude_unset=True)
    )
    return Envelope(message="Profile updated successfully", data={"user": user_public(user)})


@router.put("/users/preferences", response_model=Envelope, tags=["users"])
async def update_preferences(
    body: UpdatePreferencesRequest, principal: AuthContext = Depends(get_user)
):
    user = get_runtime().users.update_preferences(principal, body.as_preferences())
    return Envelope(
        message="Preferences updated successfully",
        data={"preferences": user.preferences},
    )


@router.get("/users/search", response_model=Envelope, tags=["users"])
async def search_users(
    q: Optional[str] = Query(None, max_length=100),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=50),
    principal: AuthContext = Depends(get_user),
):
    users, meta = get_runtime().users.search_users(q, page=page, limit=limit)
    return Envelope(data={"users": [user_summary(u) for u in users], "pagination": meta})


@router.delete("/users/account", response_model=Envelope, tags=["users"])
async def delete_account(principal: AuthContext = Depends(get_user)):
    await get_runtime().users.deactivate_account(principal)
    return Envelope(message="Account deactivated successfully")


@router.get("/users/{user_id}", response_model=Envelope, tags=["users"])
async def get_user_by_id(
    user_id: str = Path(...),
    principal: Optional[AuthContext] = Depends(get_optional_user),
):
    user = get_runtime().users.get_user(user_id)
    if principal and principal.user_id == user.id:
        return Envelope(data={"user": user_public(user)})
    return Envelope(data={"user": user_summary(user)})


# ----------------------------------------------------------------------
# categories
# ----------------------------------------------------------------------


@router.get("/categories", response_model=Envelope, tags=["categories"])
async def list_categories(principal: AuthContext = Depends(get_user)):
    categories = get_runtime().categories.list_categories(principal)
    return Envelope(data={"categories": [public_dict(c) for c in categories]})


@router.post("/categories", response_model=Envelope, status_code=201, tags=["categories"])
async def create_category(
    body: CategoryCreateRequest, principal: AuthContext = Depends(get_user)
):
    category = get_runtime().categories.create_category(principal, body.model_dump())
    return Envelope(
        message="Category created successfully", data={"category": public_dict(category)}
    )


@router.put("/categories/reorder", response_model=Envelope, tags=["categories"])
async def reorder_categories(
    body: ReorderCategoriesRequest, principal: AuthContext = Depends(get_user)
):
    orders = [(item.id, item.sort_order) for item in body.categories]
    updated = get_runtime().categories.reorder_categories(principal, orders)
    return Envelope(message="Categories reordered successfully", data={"updated": updated})


@router.get("/categories/{category_id}", response_model=Envelope, tags=["categories"])
async def get_category(
    category_id: str = Path(...), principal: AuthContext = Depends(get_user)
):
    category = get_runtime().categories.get_category(principal, category_id)
    return Envelope(data={"category": public_dict(category)})


@router.put("/categories/{category_id}", response_model=Envelope, tags=["categories"])
async def update_category(
    body: CategoryUpdateRequest,
    category_id: str = Path(...),
    principal: AuthContext = Depends(get_user),
):
    category = get_runtime().categories.update_category(
        principal, category_id, body.model_dump(exclude_unset=True)
    )
    return Envelope(
        message="Category updated successfully", data={"category": public_dict(category)}
    )


@router.delete("/categories/{category_id}", response_model=Envelope, tags=["categories"])
async def delete_category(
    category_id: str = Path(...), principal: AuthContext = Depends(get_user)
):
    get_runtime().categories.delete_category(principal, category_id)
    return Envelope(message="Category deleted successfully")


# ----------------------------------------------------------------------
# tasks
# ----------------------------------------------------------------------


@router.get("/tasks", response_model=Envelope, tags=["tasks"])
async def list_tasks(
    status: Optional[TaskStatus] = Query(None),
    priority: Optional[TaskPriority] = Query(None),
    category: Optional[str] = Query(None),
    assigned_to: Optional[str] = Query(None, alias="assignedTo"),
    search: Optional[str] = Query(None, max_length=200),
    tags: Optional[str] = Query(None),
    due_after: Optional[datetime] = Query(None, alias="dueAfter"),
    due_before: Optional[datetime] = Query(None, alias="dueBefore"),
    archived: bool = Query(False),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    sort_by: SortField = Query("position", alias="sortBy"),
    sort_order: Literal["asc", "desc"] = Query("asc", alias="sortOrder"),
    principal: AuthContext = Depends(get_user),
):
    """List tasks the caller created or is assigned, filtered and paginated."""
    query = TaskQuery(
        user_id=principal.user_id,
        status=status,
        priority=priority,
        category_id=category,
        assigned_to=assigned_to,
        search=search.strip() if search else None,
        tags=[t.strip() for t in tags.split(",") if t.strip()] if tags else [],
        due_after=as_utc(due_after),
        due_before=as_utc(due_before),
        archived=archived,
        sort_by=sort_by,
        sort_order=sort_order,
    )
    tasks, meta = get_runtime().tasks.list_tasks(query, page=page, limit=limit)
    return Envelope(data={"tasks": [task_public(t) for t in tasks], "pagination": meta})


@router.get("/tasks/stats", response_model=Envelope, tags=["tasks"])
async def task_stats(principal: AuthContext = Depends(get_user)):
    return Envelope(data={"stats": get_runtime().tasks.stats(principal)})


@router.post("/tasks", response_model=Envelope, status_code=201, tags=["tasks"])
async def create_task(body: TaskCreateRequest, principal: AuthContext = Depends(get_user)):
    task = await get_runtime().tasks.create_task(principal, body.to_fields())
    return Envelope(message="Task created successfully", data={"task": task_public(task)})


@router.get("/tasks/{task_id}", response_model=Envelope, tags=["tasks"])
async def get_task(task_id: str = Path(...), principal: AuthContext = Depends(get_user)):
    task = get_runtime().tasks.get_task(principal, task_id)
    return Envelope(data={"task": task_public(task)})


@router.put("/tasks/{task_id}", response_model=Envelope, tags=["tasks"])
async def update_task(
    body: TaskUpdateRequest,
    task_id: str = Path(...),
    principal: AuthContext = Depends(get_user),
):
    task = await get_runtime().tasks.update_task(principal, task_id, body.to_fields())
    return Envelope(message="Task updated successfully", data={"task": task_public(task)})


@router.delete("/tasks/{task_id}", response_model=Envelope, tags=["tasks"])
async def delete_task(task_id: str = Path(...), principal: AuthContext = Depends(get_user)):
    await get_runtime().tasks.delete_task(principal, task_id)
    return Envelope(message="Task deleted successfully")


@router.post(
    "/tasks/{task_id}/comments", response_model=Envelope, status_code=201, tags=["tasks"]
)
async def add_comment(
    body: CommentRequest,
    task_id: str = Path(...),
    principal: AuthContext = Depends(get_user),
):
    comment = await get_runtime().tasks.add_comment(principal, task_id, body.content)
    return Envelope(message="Comment added successfully", data={"comment": public_dict(comment)})


@router.put("/tasks/{task_id}/subtasks/{subtask_id}", response_model=Envelope, tags=["tasks"])
async def update_subtask(
    body: SubtaskUpdateRequest,
    task_id: str = Path(...),
    subtask_id: str = Path(...),
    principal: AuthContext = Depends(get_user),
):
    task = await get_runtime().tasks.update_subtask(
        principal, task_id, subtask_id, body.is_completed
    )
    return Envelope(message="Subtask updated successfully", data={"task": task_public(task)})


@router.post(
    "/tasks/{task_id}/attachments", response_model=Envelope, status_code=201, tags=["tasks"]
)
async def add_attachment(
    body: AttachmentRequest,
    task_id: str = Path(...),
    principal: AuthContext = Depends(get_user),
):
    attachment = await get_runtime().tasks.add_attachment(
        principal, task_id, body.model_dump()
    )
    return Envelope(
        message="Attachment added successfully",
        data={"attachment": public_dict(attachment)},
    )


# ----------------------------------------------------------------------
# realtime
# ----------------------------------------------------------------------


def _ws_token(ws: WebSocket) -> Optional[str]:
    token = ws.query_params.get("token")
    if token:
        return token
    return extract_bearer(ws.headers.get("authorization"))


@router.websocket("/ws")
async def realtime_socket(ws: WebSocket):
    """Task event stream. The token is verified before the handshake completes."""
    runtime = get_runtime()
    token = _ws_token(ws)
    if not token:
        await ws.close(code=4401, reason="Authentication token required")
        return
    try:
        principal = runtime.auth.authenticate_token(token)
    except AuthenticationError:
        await ws.close(code=4401, reason="Authentication token required")
        return
    except ForbiddenError as exc:
        logger.info("ws_handshake_rejected", reason=exc.message)
        await ws.close(code=4403, reason=exc.message)
        return

    await ws.accept()
    conn = await runtime.notifier.connect(ws, principal)
    try:
        while True:
            raw = await ws.receive_text()
            await runtime.notifier.handle_frame(conn, raw)
    except WebSocketDisconnect:
        pass
    finally:
        await runtime.notifier.disconnect(conn)
