"""Pagination envelope shared by task and automation listings."""

from __future__ import annotations

from typing import Generic, TypeVar

from pydantic import BaseModel, computed_field

T = TypeVar("T")


class Page(BaseModel, Generic[T]):
    """One page of a listing sorted newest first."""

    items: list[T]
    total: int
    page: int
    limit: int

    @computed_field
    @property
    def total_pages(self) -> int:
        if self.limit <= 0:
            return 0
        return -(-self.total // self.limit)


def normalize_page(page: int, limit: int, max_limit: int = 100) -> tuple[int, int, int]:
    """Clamp page/limit and return (page, limit, offset)."""
    page = max(1, int(page))
    limit = min(max(1, int(limit)), max_limit)
    return page, limit, (page - 1) * limit
