from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
import re
from typing import Any, Mapping

from sqlalchemy import and_, or_
from sqlalchemy.sql import ColumnElement, Select

from locally.core.errors import QueryParseError
from locally.persistence.query.params import FILTER_KEYS, extract_param, looks_like_query_string


class FilterOperator(str, Enum):
    EQUAL = "="
    NOT_EQUAL = "!="
    GREATER_THAN = ">"
    GREATER_THAN_OR_EQUAL = ">="
    LESS_THAN = "<"
    LESS_THAN_OR_EQUAL = "<="
    LIKE = "LIKE"
    IN = "IN"
    NOT_IN = "NOT IN"
    IS_NULL = "IS NULL"
    IS_NOT_NULL = "IS NOT NULL"
    BETWEEN = "BETWEEN"
    NOT_BETWEEN = "NOT BETWEEN"
    CONTAINS = "CONTAINS"


class LogicalOperator(str, Enum):
    NONE = ""
    AND = "AND"
    OR = "OR"


_SYMBOL_OPERATORS = {
    FilterOperator.EQUAL,
    FilterOperator.NOT_EQUAL,
    FilterOperator.GREATER_THAN,
    FilterOperator.GREATER_THAN_OR_EQUAL,
    FilterOperator.LESS_THAN,
    FilterOperator.LESS_THAN_OR_EQUAL,
}
_LIST_OPERATORS = {FilterOperator.IN, FilterOperator.NOT_IN}
_RANGE_OPERATORS = {FilterOperator.BETWEEN, FilterOperator.NOT_BETWEEN}
_NULL_OPERATORS = {FilterOperator.IS_NULL, FilterOperator.IS_NOT_NULL}

_FIELD = r"(?P<field>[A-Za-z_][A-Za-z0-9_.]*)"
_KEYWORD_RE = re.compile(
    _FIELD
    + r"\s+(?P<op>IS\s+NOT\s+NULL|IS\s+NULL|NOT\s+BETWEEN|NOT\s+IN|BETWEEN|CONTAINS|LIKE|IN)"
    + r"(?:\s+(?P<value>.*?))?\s*$",
    re.IGNORECASE | re.DOTALL,
)
_SYMBOL_RE = re.compile(_FIELD + r"\s*(?P<op>>=|<=|!=|=|>|<)\s*(?P<value>.*?)\s*$", re.DOTALL)
_INT_RE = re.compile(r"^[+-]?\d+$")
_FLOAT_RE = re.compile(r"^[+-]?(\d+\.\d*|\.\d+|\d+)([eE][+-]?\d+)?$")
_QUOTES = "\"'"
# A quote only opens a literal at the start of a value, never inside a word like O'Brien.
_QUOTE_OPENERS = set("=<>!(, ")


@dataclass(frozen=True)
class Condition:
    field: str
    operator: FilterOperator
    value: Any = None
    values: tuple[Any, ...] = ()


@dataclass(frozen=True)
class FilterClause:
    condition: Condition
    # Joins this clause to the previous one; NONE on the first clause.
    logical: LogicalOperator = LogicalOperator.NONE


def _split_outside(text: str, *, on_space: bool, on_comma: bool) -> list[str]:
    # Split on separators that are not inside quotes or parentheses.
    parts: list[str] = []
    current: list[str] = []
    quote: str | None = None
    depth = 0
    for ch in text:
        if quote:
            current.append(ch)
            if ch == quote:
                quote = None
            continue
        if ch in _QUOTES and (not current or current[-1] in _QUOTE_OPENERS):
            quote = ch
            current.append(ch)
            continue
        if ch == "(":
            depth += 1
        elif ch == ")" and depth:
            depth -= 1
        is_separator = (on_space and ch.isspace()) or (on_comma and ch == ",")
        if is_separator and depth == 0:
            if current:
                parts.append("".join(current).strip())
            current = []
            continue
        current.append(ch)
    if quote or depth:
        raise QueryParseError("Unbalanced quotes or parentheses in filter expression")
    if current and "".join(current).strip():
        parts.append("".join(current).strip())
    return [part for part in parts if part]


def _unquote(text: str) -> tuple[str, bool]:
    if len(text) >= 2 and text[0] in _QUOTES and text[-1] == text[0]:
        return text[1:-1], True
    return text, False


def coerce_value(raw: str) -> Any:
    # Quoted literals stay strings; bare numbers and booleans are typed.
    text, quoted = _unquote(raw.strip())
    if quoted:
        return text
    if _INT_RE.match(text):
        return int(text)
    if _FLOAT_RE.match(text):
        return float(text)
    lowered = text.lower()
    if lowered == "true":
        return True
    if lowered == "false":
        return False
    return text


def _parse_list(raw: str) -> tuple[Any, ...]:
    text = raw.strip()
    if text.startswith("(") and text.endswith(")"):
        text = text[1:-1]
    values = tuple(coerce_value(part) for part in _split_outside(text, on_space=False, on_comma=True))
    if not values:
        raise QueryParseError("IN requires at least one value")
    return values


def _parse_range(raw: str) -> tuple[Any, Any]:
    text = raw.strip()
    if text.startswith("(") and text.endswith(")"):
        parts = _split_outside(text[1:-1], on_space=False, on_comma=True)
    else:
        words = _split_outside(text, on_space=True, on_comma=False)
        if len(words) == 3 and words[1].upper() == "AND":
            parts = [words[0], words[2]]
        else:
            parts = _split_outside(text, on_space=False, on_comma=True)
    if len(parts) != 2:
        raise QueryParseError(f"BETWEEN requires two values: {raw}")
    return coerce_value(parts[0]), coerce_value(parts[1])


def parse_condition(text: str) -> Condition:
    match = _KEYWORD_RE.match(text.strip())
    if match:
        operator = FilterOperator(" ".join(match.group("op").upper().split()))
        value = match.group("value") or ""
        field_name = match.group("field")
        if operator in _NULL_OPERATORS:
            if value:
                raise QueryParseError(f"{operator.value} does not take a value: {text}")
            return Condition(field=field_name, operator=operator)
        if not value:
            raise QueryParseError(f"Missing value for {operator.value}: {text}")
        if operator in _LIST_OPERATORS:
            return Condition(field=field_name, operator=operator, values=_parse_list(value))
        if operator in _RANGE_OPERATORS:
            return Condition(field=field_name, operator=operator, values=_parse_range(value))
        if operator is FilterOperator.CONTAINS:
            # CONTAINS lowers to a LIKE with wildcards on both sides.
            inner, _quoted = _unquote(value)
            return Condition(field=field_name, operator=FilterOperator.LIKE, value=f"%{inner}%")
        inner, _quoted = _unquote(value)
        return Condition(field=field_name, operator=operator, value=inner)

    match = _SYMBOL_RE.match(text.strip())
    if match:
        value = match.group("value")
        if value == "":
            raise QueryParseError(f"Missing value in filter condition: {text}")
        return Condition(
            field=match.group("field"),
            operator=FilterOperator(match.group("op")),
            value=coerce_value(value),
        )
    raise QueryParseError(f"Invalid filter condition: {text}")


def _group_logical(words: list[str]) -> list[tuple[LogicalOperator, str]]:
    # Rebuild condition texts from words, keeping "BETWEEN a AND b" together.
    groups: list[tuple[LogicalOperator, list[str]]] = []
    pending = LogicalOperator.NONE
    current: list[str] = []
    for word in words:
        upper = word.upper()
        if upper in ("AND", "OR"):
            upper_current = [item.upper() for item in current]
            if upper == "AND" and "BETWEEN" in upper_current:
                after = len(current) - upper_current.index("BETWEEN") - 1
                if after == 1:
                    current.append(word)
                    continue
            if not current:
                raise QueryParseError(f"Dangling logical operator: {word}")
            groups.append((pending, current))
            pending = LogicalOperator(upper)
            current = []
            continue
        current.append(word)
    if not current:
        raise QueryParseError("Filter expression ends with a logical operator")
    groups.append((pending, current))
    return [(logical, " ".join(items)) for logical, items in groups]


def _render_scalar(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return repr(value)
    text = str(value)
    quote = "'" if '"' in text else '"'
    return f"{quote}{text}{quote}"


def render_condition(condition: Condition) -> str:
    op = condition.operator
    if op in _NULL_OPERATORS:
        return f"{condition.field} {op.value}"
    if op in _LIST_OPERATORS:
        inner = ", ".join(_render_scalar(value) for value in condition.values)
        return f"{condition.field} {op.value} ({inner})"
    if op in _RANGE_OPERATORS:
        low, high = condition.values
        return f"{condition.field} {op.value} {_render_scalar(low)} AND {_render_scalar(high)}"
    if op in _SYMBOL_OPERATORS:
        return f"{condition.field}{op.value}{_render_scalar(condition.value)}"
    return f"{condition.field} {op.value} {_render_scalar(condition.value)}"


def _coerce_for_column(column: ColumnElement[Any], value: Any) -> Any:
    # Keep bare numerics comparable against text columns on strict drivers.
    try:
        python_type = column.type.python_type
    except NotImplementedError:
        return value
    if python_type is str and value is not None and not isinstance(value, str):
        if isinstance(value, bool):
            return "true" if value else "false"
        return str(value)
    return value


def _condition_expression(condition: Condition, column: ColumnElement[Any]) -> ColumnElement[bool]:
    op = condition.operator
    value = _coerce_for_column(column, condition.value)
    values = tuple(_coerce_for_column(column, item) for item in condition.values)
    if op is FilterOperator.EQUAL:
        return column == value
    if op is FilterOperator.NOT_EQUAL:
        return column != value
    if op is FilterOperator.GREATER_THAN:
        return column > value
    if op is FilterOperator.GREATER_THAN_OR_EQUAL:
        return column >= value
    if op is FilterOperator.LESS_THAN:
        return column < value
    if op is FilterOperator.LESS_THAN_OR_EQUAL:
        return column <= value
    if op is FilterOperator.LIKE:
        return column.like(value)
    if op is FilterOperator.IN:
        return column.in_(values)
    if op is FilterOperator.NOT_IN:
        return column.not_in(values)
    if op is FilterOperator.IS_NULL:
        return column.is_(None)
    if op is FilterOperator.IS_NOT_NULL:
        return column.is_not(None)
    if op is FilterOperator.BETWEEN:
        return column.between(values[0], values[1])
    if op is FilterOperator.NOT_BETWEEN:
        return ~column.between(values[0], values[1])
    raise QueryParseError(f"Unsupported filter operator: {op.value}")


def resolve_column(columns: Mapping[str, ColumnElement[Any]], name: str) -> ColumnElement[Any]:
    # Column names are checked against the caller's allow-list; values are always bound.
    lowered = {key.lower(): column for key, column in columns.items()}
    column = lowered.get(name.strip().lower())
    if column is None:
        raise QueryParseError(f"Unsupported filter field: {name}")
    return column


@dataclass
class FilterQuery:
    """Parsed filter expression.

    Two grammars are accepted: comma-separated conditions joined by AND
    (``name=john,age>25``), or conditions joined by explicit ``AND``/``OR``
    keywords (``status=active AND age>25 OR tier IN (gold,silver)``). When the
    raw value looks like a full query string the ``filter``/``filters``/``where``
    parameter is extracted first.
    """

    clauses: list[FilterClause] = field(default_factory=list)

    @classmethod
    def parse(cls, raw: str | None) -> FilterQuery:
        if raw is None or not raw.strip():
            return cls()
        expression = raw.strip()
        if looks_like_query_string(expression):
            expression = extract_param(expression, FILTER_KEYS) or ""
            if not expression:
                return cls()
        return cls(clauses=cls._parse_expression(expression))

    @staticmethod
    def _parse_expression(expression: str) -> list[FilterClause]:
        words = _split_outside(expression, on_space=True, on_comma=False)
        if any(word.upper() in ("AND", "OR") for word in words):
            segments = _group_logical(words)
        else:
            segments = [(LogicalOperator.NONE, expression)]

        clauses: list[FilterClause] = []
        for logical, segment in segments:
            for index, part in enumerate(_split_outside(segment, on_space=False, on_comma=True)):
                joiner = logical if index == 0 else LogicalOperator.AND
                if not clauses:
                    joiner = LogicalOperator.NONE
                elif joiner is LogicalOperator.NONE:
                    joiner = LogicalOperator.AND
                clauses.append(FilterClause(condition=parse_condition(part), logical=joiner))
        return clauses

    def is_empty(self) -> bool:
        return not self.clauses

    def fields(self) -> list[str]:
        return [clause.condition.field for clause in self.clauses]

    def render(self) -> str:
        parts: list[str] = []
        for clause in self.clauses:
            if parts:
                parts.append(clause.logical.value or LogicalOperator.AND.value)
            parts.append(render_condition(clause.condition))
        return " ".join(parts)

    def expression(self, columns: Mapping[str, ColumnElement[Any]]) -> ColumnElement[bool] | None:
        # AND binds tighter than OR, matching SQL precedence for "a AND b OR c".
        if not self.clauses:
            return None
        groups: list[list[ColumnElement[bool]]] = []
        for clause in self.clauses:
            expr = _condition_expression(clause.condition, resolve_column(columns, clause.condition.field))
            if not groups or clause.logical is LogicalOperator.OR:
                groups.append([expr])
            else:
                groups[-1].append(expr)
        conjunctions = [group[0] if len(group) == 1 else and_(*group) for group in groups]
        return conjunctions[0] if len(conjunctions) == 1 else or_(*conjunctions)

    def apply(self, stmt: Select, columns: Mapping[str, ColumnElement[Any]]) -> Select:
        expr = self.expression(columns)
        if expr is None:
            return stmt
        return stmt.where(expr)
