from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from locally.core.diagnostics import Diagnostics, ErrorKind
from locally.core.slug import slugify
from locally.domain.models import Tenant
from locally.persistence.partial_update import apply_partial_update, partial_update_values


_COMPONENT = "tenant_store"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def get_tenant_by_id_or_slug(session: AsyncSession, value: str) -> Tenant | None:
    # Accept either form so callers can pass the "global" literal or a concrete id.
    needle = value.strip()
    if not needle:
        return None
    result = await session.execute(
        select(Tenant).where(or_(Tenant.id == needle, Tenant.slug == needle.lower())).limit(1)
    )
    return result.scalar_one_or_none()


async def get_tenant_by_slug(session: AsyncSession, slug: str) -> Tenant | None:
    result = await session.execute(select(Tenant).where(Tenant.slug == slugify(slug)))
    return result.scalar_one_or_none()




async def create_tenant(
    session: AsyncSession,
    *,
    name: str,
    tenant_id: str | None = None,
    description: str | None = None,
    domain: str | None = None,
    contact_email: str | None = None,
    status: str = "active",
) -> tuple[Tenant | None, Diagnostics]:
    diag = Diagnostics("create_tenant")
    slug = slugify(name)
    if not slug:
        diag.add_error("tenant_name_required", "tenant name is required", _COMPONENT, kind=ErrorKind.INPUT)
        return None, diag
    if await get_tenant_by_slug(session, slug) is not None:
        diag.add_error(
            "tenant_slug_conflict",
            f"tenant with slug '{slug}' already exists",
            _COMPONENT,
            {"slug": slug},
            kind=ErrorKind.CONFLICT,
        )
        return None, diag
    now = _utc_now()
    tenant = Tenant(
        slug=slug,
        name=name,
        description=description,
        domain=domain,
        contact_email=contact_email,
        status=status,
        activated_at=now if status == "active" else None,
        created_at=now,
        updated_at=now,
    )
    if tenant_id:
        tenant.id = tenant_id
    session.add(tenant)
    try:
        await session.flush()
    except IntegrityError as exc:
        await session.rollback()
        diag.add_error("tenant_slug_conflict", str(exc.orig), _COMPONENT, {"slug": slug}, kind=ErrorKind.CONFLICT)
        return None, diag
    return tenant, diag


async def update_tenant(
    session: AsyncSession,
    *,
    tenant: Tenant,
    changes: Any,
) -> tuple[Tenant, Diagnostics]:
    # Only differing, non-empty fields are written; slug follows the name.
    diag = Diagnostics("update_tenant")
    values = partial_update_values(tenant, changes)
    new_slug = values.get("slug")
    if new_slug and new_slug != tenant.slug:
        existing = await get_tenant_by_slug(session, new_slug)
        if existing is not None and existing.id != tenant.id:
            diag.add_error(
                "tenant_slug_conflict",
                f"tenant with slug '{new_slug}' already exists",
                _COMPONENT,
                {"slug": new_slug},
                kind=ErrorKind.CONFLICT,
            )
            return tenant, diag
    apply_partial_update(tenant, values)
    await session.flush()
    return tenant, diag
