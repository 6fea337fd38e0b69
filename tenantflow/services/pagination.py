from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Callable, Generic, TypeVar

from tenantflow.core.config import get_settings


T = TypeVar("T")
U = TypeVar("U")


@dataclass(frozen=True)
class Page(Generic[T]):
    items: list[T] = field(default_factory=list)
    total: int = 0
    page: int = 1
    limit: int = 20

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0

    @property
    def has_next_page(self) -> bool:
        return self.page < self.total_pages

    @property
    def has_previous_page(self) -> bool:
        return self.page > 1

    def map(self, fn: Callable[[T], U]) -> "Page[U]":
        return Page(items=[fn(item) for item in self.items], total=self.total, page=self.page, limit=self.limit)

    def meta(self) -> dict[str, int | bool]:
        return {
            "current_page": self.page,
            "items_per_page": self.limit,
            "total_items": self.total,
            "total_pages": self.total_pages,
            "has_next_page": self.has_next_page,
            "has_previous_page": self.has_previous_page,
        }


def resolve_page(page: int | None, limit: int | None) -> tuple[int, int, int]:
    # Clamp to configured bounds and return (page, limit, offset).
    settings = get_settings()
    resolved_page = max(1, int(page or 1))
    resolved_limit = int(limit or settings.workflow_page_size_default)
    resolved_limit = max(1, min(resolved_limit, settings.workflow_page_size_max))
    return resolved_page, resolved_limit, (resolved_page - 1) * resolved_limit
