from __future__ import annotations

import math
from typing import Dict, Tuple

MAX_PAGE_SIZE = 100
DEFAULT_PAGE_SIZE = 20


def page_window(page: int = 1, limit: int = DEFAULT_PAGE_SIZE, *, max_limit: int = MAX_PAGE_SIZE) -> Tuple[int, int, int]:
    """Clamp ``page``/``limit`` and return ``(offset, page, limit)``."""

    page = max(1, int(page))
    limit = max(1, min(max_limit, int(limit)))
    return (page - 1) * limit, page, limit


def pagination_meta(page: int, limit: int, total: int) -> Dict[str, int | bool]:
    total_pages = math.ceil(total / limit) if limit else 0
    return {
        "page": page,
        "limit": limit,
        "total": total,
        "totalPages": total_pages,
        "hasNext": page < total_pages,
        "hasPrev": page > 1,
    }
