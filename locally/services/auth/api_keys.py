from __future__ import annotations

import base64
from datetime import datetime
import secrets

from sqlalchemy.ext.asyncio import AsyncSession

from locally.core.config import get_settings
from locally.core.diagnostics import Diagnostics
from locally.domain.models import ApiKey
from locally.persistence.repos import api_keys as api_keys_repo


# Random characters after the literal prefix that form the lookup index.
LOOKUP_CHARS = 8
SECRET_BYTES = 32


def generate_api_key(prefix: str | None = None) -> str:
    # 32 random bytes, url-safe base64 without padding, behind the configured literal.
    literal = prefix if prefix is not None else get_settings().auth_api_key_prefix
    body = base64.urlsafe_b64encode(secrets.token_bytes(SECRET_BYTES)).rstrip(b"=").decode("ascii")
    return f"{literal}{body}"


def lookup_prefix(raw_key: str, prefix: str | None = None) -> str | None:
    # Return the indexed prefix, or None when the key cannot carry one.
    literal = prefix if prefix is not None else get_settings().auth_api_key_prefix
    if not raw_key.startswith(literal):
        return None
    size = len(literal) + LOOKUP_CHARS
    if len(raw_key) < size:
        return None
    return raw_key[:size]


async def issue_api_key(
    session: AsyncSession,
    *,
    tenant_id: str,
    user_id: str,
    name: str,
    permissions: list[str] | None = None,
    expires_at: datetime | None = None,
    created_by: str | None = None,
) -> tuple[str | None, ApiKey | None, Diagnostics]:
    """Create a key record and return the raw secret exactly once."""
    diag = Diagnostics("issue_api_key")
    raw_key = generate_api_key()
    prefix = lookup_prefix(raw_key)
    api_key, create_diag = await api_keys_repo.create_api_key(
        session,
        tenant_id=tenant_id,
        user_id=user_id,
        name=name,
        raw_key=raw_key,
        key_prefix=prefix or raw_key,
        permissions=permissions,
        expires_at=expires_at,
        created_by=created_by or user_id,
    )
    diag.append(create_diag)
    if api_key is None:
        return None, None, diag
    return raw_key, api_key, diag
