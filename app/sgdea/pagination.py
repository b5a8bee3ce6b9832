from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from sqlalchemy.orm import Query

DEFAULT_PER_PAGE = 50
MAX_PER_PAGE = 200


@dataclass(frozen=True)
class Page:
    items: list[Any]
    page: int
    per_page: int
    total: int

    @property
    def pages(self) -> int:
        return (self.total + self.per_page - 1) // self.per_page

    @property
    def from_(self) -> int:
        """1-based index of the first item on this page (0 when empty)."""
        if not self.items:
            return 0
        return (self.page - 1) * self.per_page + 1

    @property
    def to(self) -> int:
        if not self.items:
            return 0
        return self.from_ + len(self.items) - 1

    @property
    def has_next(self) -> bool:
        return self.page * self.per_page < self.total

    @property
    def has_prev(self) -> bool:
        return self.page > 1


def parse_page_args(args: Any, *, default_per_page: int = DEFAULT_PER_PAGE) -> tuple[int, int]:
    try:
        page = max(1, int(args.get("page") or 1))
    except (TypeError, ValueError):
        page = 1
    try:
        per_page = int(args.get("per_page") or default_per_page)
    except (TypeError, ValueError):
        per_page = default_per_page
    per_page = min(max(1, per_page), MAX_PER_PAGE)
    return page, per_page


def paginate(q: Query, page: int, per_page: int) -> Page:
    total = q.order_by(None).count()
    items = q.offset((page - 1) * per_page).limit(per_page).all()
    return Page(items=items, page=page, per_page=per_page, total=total)
