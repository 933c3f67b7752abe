from __future__ import annotations

import re
from typing import Iterable
from urllib.parse import unquote_plus


FILTER_KEYS = ("filter", "filters", "where")
ORDER_KEYS = ("order_by", "orderby", "sort")
PAGE_KEYS = ("page",)
PAGE_SIZE_KEYS = ("page_size", "pagesize", "limit", "per_page", "perpage")
_ALL_KEYS = frozenset(FILTER_KEYS + ORDER_KEYS + PAGE_KEYS + PAGE_SIZE_KEYS)
_PARAM_SHAPE = re.compile(r"^\s*[A-Za-z_][\w.]*\s*=")


def _pairs(raw: str) -> list[tuple[str, str]]:
    pairs: list[tuple[str, str]] = []
    for part in raw.strip().lstrip("?").split("&"):
        part = part.strip()
        if not part or "=" not in part:
            continue
        key, value = part.split("=", 1)
        pairs.append((unquote_plus(key).strip().lower(), unquote_plus(value).strip()))
    return pairs


def looks_like_query_string(raw: str) -> bool:
    # Distinguish "filter=a=1&page=2" from a bare expression such as "a=1 AND b>2".
    trimmed = raw.strip()
    if not trimmed:
        return False
    if trimmed.startswith("?"):
        return True
    # An "&" only separates parameters when every part is a key=value pair
    # and at least one key is a known alias; "name CONTAINS 'a&b'" stays a filter.
    parts = [part for part in trimmed.split("&") if part.strip()]
    if not parts or not all(_PARAM_SHAPE.match(part) for part in parts):
        return False
    return any(part.split("=", 1)[0].strip().lower() in _ALL_KEYS for part in parts)


def extract_param(raw: str, keys: Iterable[str]) -> str | None:
    # Return the first value whose key matches one of the accepted aliases.
    wanted = {key.lower() for key in keys}
    for key, value in _pairs(raw):
        if key in wanted:
            return value
    return None
