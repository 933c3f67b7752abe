from __future__ import annotations

import re


_NON_ALNUM = re.compile(r"[^a-z0-9]+")


def slugify(value: str) -> str:
    # Lower-case and collapse every run of non-alphanumerics into a single dash.
    return _NON_ALNUM.sub("-", value.strip().lower()).strip("-")
