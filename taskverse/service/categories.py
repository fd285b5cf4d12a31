from __future__ import annotations

import dataclasses
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple

from taskverse.logging import get_logger
from taskverse.service.auth import AuthContext
from taskverse.service.errors import BadRequestError, NotFoundError
from taskverse.storage.models import DEFAULT_CATEGORY_COLOR, Category, new_id

logger = get_logger(__name__)

EDITABLE_FIELDS = ("name", "description", "color", "icon", "sort_order")


class CategoryStore(Protocol):
    def create_category(self, category: Category) -> Category: ...

    def get_category(self, category_id: str, owner_id: str) -> Optional[Category]: ...

    def list_categories(self, owner_id: str) -> List[Category]: ...

    def save_category(self, category: Category) -> Category: ...

    def deactivate_category(self, category_id: str, owner_id: str) -> bool: ...

    def reorder_categories(
        self, owner_id: str, orders: Sequence[Tuple[str, int]]
    ) -> int: ...


class CategoryService:
    """Per-user categories. Duplicate names surface as storage ConstraintViolation."""

    def __init__(self, store: CategoryStore) -> None:
        self.store = store

    def list_categories(self, ctx: AuthContext) -> List[Category]:
        return self.store.list_categories(ctx.user_id)

    def get_category(self, ctx: AuthContext, category_id: str) -> Category:
        category = self.store.get_category(category_id, ctx.user_id)
        if not category:
            raise NotFoundError("Category not found")
        return category

    def create_category(self, ctx: AuthContext, fields: Dict[str, Any]) -> Category:
        category = Category(
            id=new_id(),
            name=fields["name"],
            created_by=ctx.user_id,
            description=fields.get("description"),
            color=fields.get("color") or DEFAULT_CATEGORY_COLOR,
            icon=fields.get("icon"),
            sort_order=fields.get("sort_order") or 0,
        )
        self.store.create_category(category)
        logger.info("category_created", category_id=category.id, user_id=ctx.user_id)
        return category

    def update_category(
        self, ctx: AuthContext, category_id: str, fields: Dict[str, Any]
    ) -> Category:
        category = dataclasses.replace(self.get_category(ctx, category_id))
        for key, value in fields.items():
            if key in EDITABLE_FIELDS and value is not None:
                setattr(category, key, value)
        return self.store.save_category(category)

    def delete_category(self, ctx: AuthContext, category_id: str) -> None:
        if not self.store.deactivate_category(category_id, ctx.user_id):
            raise NotFoundError("Category not found")
        logger.info("category_deleted", category_id=category_id, user_id=ctx.user_id)

    def reorder_categories(
        self, ctx: AuthContext, orders: Sequence[Tuple[str, int]]
    ) -> int:
        updated = self.store.reorder_categories(ctx.user_id, orders)
        if updated < 0:
            raise BadRequestError("Some categories not found or do not belong to user")
        return updated
