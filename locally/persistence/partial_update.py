from __future__ import annotations

from datetime import datetime, timezone
import json
from typing import Any, Iterable, Mapping

from pydantic import BaseModel
from sqlalchemy import inspect

from locally.core.slug import slugify


# Identity and creation metadata are never rewritten by partial updates.
_SYSTEM_FIELDS = frozenset({"id", "created_at", "deleted_at"})
_EMPTY_JSON = frozenset({"", "[]", "{}", "null"})


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _column_names(entity: Any) -> list[str]:
    return [attr.key for attr in inspect(type(entity)).mapper.column_attrs]


def _submitted_values(updated: Any, columns: Iterable[str]) -> dict[str, Any]:
    # Accept ORM rows, pydantic models (only explicitly set fields), or plain mappings.
    if isinstance(updated, BaseModel):
        return updated.model_dump(exclude_unset=True)
    if isinstance(updated, Mapping):
        return dict(updated)
    return {name: getattr(updated, name) for name in columns if hasattr(updated, name)}


def _is_unset(value: Any) -> bool:
    # Zero values never overwrite stored data; booleans are always meaningful.
    if isinstance(value, bool):
        return False
    if value is None:
        return True
    if isinstance(value, str):
        stripped = value.strip()
        if stripped in _EMPTY_JSON:
            return True
        if stripped[:1] in {"[", "{"}:
            try:
                return not json.loads(stripped)
            except ValueError:
                return False
        return False
    if isinstance(value, (int, float)):
        return value == 0
    if isinstance(value, (list, tuple, dict, set)):
        return len(value) == 0
    return False


def partial_update_values(
    original: Any,
    updated: Any,
    *,
    exclude: Iterable[str] = (),
    always: Iterable[str] = ("updated_at",),
) -> dict[str, Any]:
    """Build the column -> value map for a partial update of ``original``.

    Only columns whose submitted value differs from the stored row and is not a
    zero value are included. JSON text columns whose content is empty count as
    unset. ``updated_at`` is always refreshed and ``slug`` is recomputed from
    ``name`` on models that carry both.
    """
    columns = _column_names(original)
    column_set = set(columns)
    excluded = set(exclude) | _SYSTEM_FIELDS
    values: dict[str, Any] = {}
    for name, new_value in _submitted_values(updated, columns).items():
        if name not in column_set or name in excluded:
            continue
        if _is_unset(new_value):
            continue
        if getattr(original, name) == new_value:
            continue
        values[name] = new_value

    for name in always:
        if name == "updated_at" and "updated_at" in column_set:
            values["updated_at"] = _utc_now()
    if "slug" in column_set and "name" in column_set:
        source_name = values.get("name", getattr(original, "name", None))
        if source_name:
            values["slug"] = slugify(source_name)
    return values


def apply_partial_update(original: Any, values: Mapping[str, Any]) -> Any:
    for name, value in values.items():
        setattr(original, name, value)
    return original
