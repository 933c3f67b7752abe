from __future__ import annotations

from datetime import datetime, timezone
import json
from typing import Any

import bcrypt
from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from locally.core.config import get_settings
from locally.core.diagnostics import Diagnostics, ErrorKind
from locally.domain.models import ApiKey, ApiKeyClaim
from locally.persistence.guards import require_tenant_id, tenant_predicate
from locally.persistence.query.builder import Page, QueryBuilder, columns_for


_COMPONENT = "api_key_store"
LIST_COLUMNS = ("name", "key_prefix", "is_active", "user_id", "created_at", "expires_at", "last_used_at")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def hash_api_key(raw_key: str) -> str:
    rounds = get_settings().auth_bcrypt_rounds
    return bcrypt.hashpw(raw_key.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_api_key_hash(raw_key: str, key_hash: str) -> bool:
    try:
        return bcrypt.checkpw(raw_key.encode("utf-8"), key_hash.encode("utf-8"))
    except ValueError:
        # Malformed stored hashes never verify.
        return False


def is_revoked(api_key: ApiKey) -> bool:
    return api_key.revoked_at is not None or not api_key.is_active


async def create_api_key(
    session: AsyncSession,
    *,
    tenant_id: str,
    user_id: str,
    name: str,
    raw_key: str,
    key_prefix: str,
    permissions: list[str] | None = None,
    expires_at: datetime | None = None,
    created_by: str | None = None,
) -> tuple[ApiKey | None, Diagnostics]:
    # Persist only the bcrypt hash of the full key; the raw key is shown once.
    diag = Diagnostics("create_api_key")
    require_tenant_id(tenant_id, scope="api_keys")
    if await find_api_key_by_prefix(session, key_prefix) is not None:
        diag.add_error(
            "api_key_prefix_conflict",
            "api key prefix already exists",
            _COMPONENT,
            {"key_prefix": key_prefix},
            kind=ErrorKind.CONFLICT,
        )
        return None, diag
    now = _utc_now()
    api_key = ApiKey(
        tenant_id=tenant_id,
        user_id=user_id,
        name=name,
        key_hash=hash_api_key(raw_key),
        key_prefix=key_prefix,
        permissions=json.dumps(permissions) if permissions else None,
        expires_at=expires_at,
        is_active=True,
        created_by=created_by,
        created_at=now,
        updated_at=now,
    )
    session.add(api_key)
    await session.flush()
    return api_key, diag


async def get_api_key(session: AsyncSession, *, tenant_id: str, api_key_id: str) -> ApiKey | None:
    result = await session.execute(
        select(ApiKey).where(tenant_predicate(ApiKey, tenant_id), ApiKey.id == api_key_id)
    )
    return result.scalar_one_or_none()




async def find_api_key_by_prefix(session: AsyncSession, prefix: str) -> ApiKey | None:
    # Prefixes are unique across tenants; callers enforce the tenant match.
    result = await session.execute(select(ApiKey).where(ApiKey.key_prefix == prefix))
    return result.scalar_one_or_none()


async def list_api_keys(
    session: AsyncSession,
    *,
    tenant_id: str,
    query: QueryBuilder | None = None,
    user_id: str | None = None,
) -> Page[ApiKey]:
    stmt = select(ApiKey).where(tenant_predicate(ApiKey, tenant_id))
    if user_id is not None:
        stmt = stmt.where(ApiKey.user_id == user_id)
    builder = query or QueryBuilder.parse(None)
    return await builder.paginate(session, stmt, columns_for(ApiKey, *LIST_COLUMNS))


async def update_api_key_last_used(session: AsyncSession, *, api_key_id: str) -> None:
    now = _utc_now()
    await session.execute(update(ApiKey).where(ApiKey.id == api_key_id).values(last_used_at=now))


async def revoke_api_key(
    session: AsyncSession,
    *,
    api_key: ApiKey,
    revoked_by: str | None,
    reason: str | None = None,
) -> ApiKey:
    now = _utc_now()
    api_key.is_active = False
    api_key.revoked_at = now
    api_key.revoked_by = revoked_by
    api_key.revocation_reason = reason
    api_key.updated_at = now
    await session.flush()
    return api_key


async def delete_api_key(session: AsyncSession, *, tenant_id: str, api_key_id: str) -> bool:
    await session.execute(delete(ApiKeyClaim).where(ApiKeyClaim.api_key_id == api_key_id))
    result = await session.execute(
        delete(ApiKey).where(tenant_predicate(ApiKey, tenant_id), ApiKey.id == api_key_id)
    )
    return (result.rowcount or 0) > 0


def api_key_permissions(api_key: ApiKey) -> list[str]:
    if not api_key.permissions:
        return []
    try:
        value: Any = json.loads(api_key.permissions)
    except ValueError:
        return []
    return [str(item) for item in value] if isinstance(value, list) else []
