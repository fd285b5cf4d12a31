from __future__ import annotations

import copy
import time
from typing import Any, Dict, List, Optional, Protocol, Tuple

from taskverse.logging import get_logger
from taskverse.service.auth import AuthContext
from taskverse.service.errors import NotFoundError
from taskverse.service.pagination import page_window, pagination_meta
from taskverse.service.sessions import SessionManager
from taskverse.storage.models import User

logger = get_logger(__name__)

PROFILE_FIELDS = ("first_name", "last_name", "avatar", "bio", "timezone")
SEARCH_MAX_LIMIT = 50


class UserStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]: ...

    def search_users(
        self, query: Optional[str], *, offset: int = 0, limit: int = 20
    ) -> Tuple[List[User], int]: ...


def merge_preferences(current: Dict[str, Any], update: Dict[str, Any]) -> Dict[str, Any]:
    """Deep-merge ``update`` into a copy of ``current``; None values are skipped."""
    merged = copy.deepcopy(current)
    for key, value in update.items():
        if value is None:
            continue
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_preferences(merged[key], value)
        else:
            merged[key] = value
    return merged


class UserService:
    def __init__(self, store: UserStore, sessions: SessionManager) -> None:
        self.store = store
        self.sessions = sessions

    def get_profile(self, ctx: AuthContext) -> User:
        user = self.store.get_user(ctx.user_id)
        if not user:
            raise NotFoundError("User not found")
        return user

    def update_profile(self, ctx: AuthContext, fields: Dict[str, Any]) -> User:
        updates = {k: v for k, v in fields.items() if k in PROFILE_FIELDS}
        user = self.store.update_user(ctx.user_id, **updates)
        if not user:
            raise NotFoundError("User not found")
        return user

    def update_preferences(self, ctx: AuthContext, preferences: Dict[str, Any]) -> User:
        user = self.get_profile(ctx)
        merged = merge_preferences(user.preferences or {}, preferences)
        updated = self.store.update_user(ctx.user_id, preferences=merged)
        if not updated:
            raise NotFoundError("User not found")
        return updated

    def search_users(
        self, query: Optional[str], *, page: int = 1, limit: int = 20
    ) -> Tuple[List[User], Dict[str, Any]]:
        offset, page, limit = page_window(page, limit, max_limit=SEARCH_MAX_LIMIT)
        users, total = self.store.search_users(query, offset=offset, limit=limit)
        return users, pagination_meta(page, limit, total)

    def get_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if not user or not user.is_active:
            raise NotFoundError("User not found")
        return user

    async def deactivate_account(self, ctx: AuthContext) -> None:
        """Soft-delete the account, freeing its email and username."""
        user = self.get_profile(ctx)
        stamp = int(time.time())
        self.store.update_user(
            user.id,
            is_active=False,
            email=f"deleted_{stamp}_{user.email}",
            username=f"deleted_{stamp}_{user.username}",
        )
        await self.sessions.logout_all_devices(user.id)
        logger.info("account_deactivated", user_id=user.id)
