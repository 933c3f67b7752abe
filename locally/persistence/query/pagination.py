from __future__ import annotations

from dataclasses import dataclass
import math

from sqlalchemy.sql import Select

from locally.core.config import get_settings
from locally.persistence.query.params import PAGE_KEYS, PAGE_SIZE_KEYS, extract_param


def _positive_int(value: str | None) -> int | None:
    if value is None:
        return None
    try:
        parsed = int(value)
    except ValueError:
        return None
    return parsed if parsed > 0 else None


@dataclass
class Pagination:
    page: int = 1
    page_size: int = 20
    total: int = 0

    @classmethod
    def parse(cls, raw: str | None, *, default_page_size: int | None = None) -> Pagination:
        settings = get_settings()
        page_size = default_page_size or settings.pagination_default_page_size
        pagination = cls(page=1, page_size=page_size)
        if raw is None or not raw.strip():
            return pagination
        # Invalid or non-positive values keep the defaults.
        page = _positive_int(extract_param(raw, PAGE_KEYS))
        if page is not None:
            pagination.page = page
        size = _positive_int(extract_param(raw, PAGE_SIZE_KEYS))
        if size is not None:
            pagination.page_size = min(size, settings.pagination_max_page_size)
        return pagination

    def is_valid(self) -> bool:
        return self.page > 0 and self.page_size > 0

    @property
    def page_index(self) -> int:
        return self.page - 1

    @property
    def total_pages(self) -> int:
        if self.total <= 0 or self.page_size <= 0:
            return 0
        return math.ceil(self.total / self.page_size)

    def set_total(self, total: int) -> None:
        self.total = max(0, int(total))

    @property
    def offset(self) -> int:
        # A page past the end clamps to the last page; page and offset stay consistent.
        offset = self.page_index * self.page_size
        if self.total > 0 and offset >= self.total:
            self.page = self.total_pages
            offset = (self.page - 1) * self.page_size
        return max(0, offset)

    def apply(self, stmt: Select) -> Select:
        if not self.is_valid():
            return stmt
        return stmt.offset(self.offset).limit(self.page_size)
