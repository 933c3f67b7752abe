from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Generic, Mapping, TypeVar

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql import ColumnElement, Select

from locally.persistence.query.filters import FilterQuery
from locally.persistence.query.order_by import OrderBy, OrderByClause, SortDirection
from locally.persistence.query.pagination import Pagination
from locally.persistence.query.params import looks_like_query_string


T = TypeVar("T")

DEFAULT_ORDER = OrderBy(clauses=[OrderByClause(column="created_at", direction=SortDirection.DESC)])


def columns_for(model: Any, *names: str) -> dict[str, ColumnElement[Any]]:
    # Build an allow-list of filterable/sortable columns from model attributes.
    return {name: getattr(model, name) for name in names}


@dataclass
class Page(Generic[T]):
    items: list[T]
    page: int
    page_size: int
    total_pages: int
    total: int

    def to_dict(self, serializer: Callable[[T], Any]) -> dict[str, Any]:
        return {
            "items": [serializer(item) for item in self.items],
            "page": self.page,
            "page_size": self.page_size,
            "total_pages": self.total_pages,
            "total": self.total,
        }


@dataclass
class QueryBuilder:
    """Filter, ordering and pagination parsed from one query string.

    Accepts ``filter=...&order_by=...&page=..&page_size=..`` (plus the alias
    keys) or a bare filter expression. Application order is always filter,
    then ordering, then pagination.
    """

    filter: FilterQuery = field(default_factory=FilterQuery)
    order_by: OrderBy = field(default_factory=OrderBy)
    pagination: Pagination = field(default_factory=Pagination)

    @classmethod
    def parse(cls, raw: str | None, *, default_page_size: int | None = None) -> QueryBuilder:
        raw = raw or ""
        if raw.strip() and not looks_like_query_string(raw):
            # Bare expressions only carry a filter.
            return cls(
                filter=FilterQuery.parse(raw),
                order_by=OrderBy(),
                pagination=Pagination.parse(None, default_page_size=default_page_size),
            )
        return cls(
            filter=FilterQuery.parse(raw),
            order_by=OrderBy.parse(raw),
            pagination=Pagination.parse(raw, default_page_size=default_page_size),
        )

    def _ordering(self, columns: Mapping[str, ColumnElement[Any]]) -> OrderBy:
        if not self.order_by.is_empty():
            return self.order_by
        if "created_at" in columns:
            return DEFAULT_ORDER
        return self.order_by

    def has_filters(self) -> bool:
        return not self.filter.is_empty()

    def apply(self, stmt: Select, columns: Mapping[str, ColumnElement[Any]]) -> Select:
        stmt = self.filter.apply(stmt, columns)
        stmt = self._ordering(columns).apply(stmt, columns)
        return self.pagination.apply(stmt)

    async def paginate(
        self,
        session: AsyncSession,
        stmt: Select,
        columns: Mapping[str, ColumnElement[Any]],
    ) -> Page[Any]:
        # Count after filtering, then order and page the same statement.
        filtered = self.filter.apply(stmt, columns)
        count_stmt = select(func.count()).select_from(filtered.order_by(None).subquery())
        total = int((await session.execute(count_stmt)).scalar_one())
        self.pagination.set_total(total)
        ordered = self._ordering(columns).apply(filtered, columns)
        result = await session.execute(self.pagination.apply(ordered))
        items = list(result.scalars().all())
        return Page(
            items=items,
            page=self.pagination.page,
            page_size=self.pagination.page_size,
            total_pages=self.pagination.total_pages,
            total=total,
        )
