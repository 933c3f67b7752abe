from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping

from sqlalchemy.sql import ColumnElement, Select

from locally.core.errors import QueryParseError
from locally.persistence.query.params import ORDER_KEYS, extract_param, looks_like_query_string


class SortDirection(str, Enum):
    ASC = "asc"
    DESC = "desc"


@dataclass(frozen=True)
class OrderByClause:
    column: str
    direction: SortDirection = SortDirection.ASC


def _parse_part(part: str) -> OrderByClause:
    # Accept "name desc", "name:desc", and "-name"; a missing direction means asc.
    name = part
    direction = SortDirection.ASC
    raw_direction: str | None = None
    if " " in part:
        name, _, raw_direction = part.partition(" ")
    elif ":" in part:
        name, _, raw_direction = part.partition(":")
    name = name.strip()
    if raw_direction is not None and raw_direction.strip():
        try:
            direction = SortDirection(raw_direction.strip().lower())
        except ValueError as exc:
            raise QueryParseError(f"Unsupported sort direction: {raw_direction.strip()}") from exc
    if name.startswith("-"):
        name = name[1:].strip()
        direction = SortDirection.DESC
    if not name:
        raise QueryParseError(f"Missing sort field in: {part}")
    return OrderByClause(column=name, direction=direction)


@dataclass
class OrderBy:
    clauses: list[OrderByClause] = field(default_factory=list)

    @classmethod
    def parse(cls, raw: str | None) -> OrderBy:
        if raw is None or not raw.strip():
            return cls()
        expression = raw.strip()
        if looks_like_query_string(expression):
            expression = extract_param(expression, ORDER_KEYS) or ""
        clauses: list[OrderByClause] = []
        seen: set[str] = set()
        for part in expression.split(","):
            part = " ".join(part.split())
            if not part:
                continue
            clause = _parse_part(part)
            key = clause.column.lower()
            if key in seen:
                continue
            seen.add(key)
            clauses.append(clause)
        return cls(clauses=clauses)

    def is_empty(self) -> bool:
        return not self.clauses

    def render(self) -> str:
        # Emit the compact "-field" form used for cursor and link building.
        return ",".join(
            f"-{clause.column}" if clause.direction is SortDirection.DESC else clause.column
            for clause in self.clauses
        )

    def apply(self, stmt: Select, columns: Mapping[str, ColumnElement[Any]]) -> Select:
        lowered = {key.lower(): column for key, column in columns.items()}
        for clause in self.clauses:
            column = lowered.get(clause.column.lower())
            if column is None:
                raise QueryParseError(f"Unsupported sort field: {clause.column}")
            stmt = stmt.order_by(column.desc() if clause.direction is SortDirection.DESC else column.asc())
        return stmt
