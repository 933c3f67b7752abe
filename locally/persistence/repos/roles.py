from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import delete, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from locally.core.diagnostics import Diagnostics, ErrorKind
from locally.core.slug import slugify
from locally.domain.models import Claim, Role, RoleClaim, User, UserRole
from locally.domain.security import SecurityLevel
from locally.persistence.guards import tenant_predicate


_COMPONENT = "role_store"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def get_role_by_id_or_slug(session: AsyncSession, *, tenant_id: str, value: str) -> Role | None:
    result = await session.execute(
        select(Role).where(
            tenant_predicate(Role, tenant_id),
            or_(Role.id == value, Role.slug == slugify(value)),
        )
    )
    return result.scalar_one_or_none()




async def create_role(
    session: AsyncSession,
    *,
    tenant_id: str,
    name: str,
    security_level: SecurityLevel = SecurityLevel.USER,
    description: str | None = None,
) -> tuple[Role | None, Diagnostics]:
    diag = Diagnostics("create_role")
    slug = slugify(name)
    if await get_role_by_id_or_slug(session, tenant_id=tenant_id, value=slug) is not None:
        diag.add_error(
            "role_slug_conflict",
            f"role with slug '{slug}' already exists",
            _COMPONENT,
            {"slug": slug},
            kind=ErrorKind.CONFLICT,
        )
        return None, diag
    now = _utc_now()
    role = Role(
        tenant_id=tenant_id,
        name=name,
        slug=slug,
        description=description,
        security_level=security_level.value,
        created_at=now,
        updated_at=now,
    )
    session.add(role)
    await session.flush()
    return role, diag






def _tenant_mismatch(diag: Diagnostics, owner_tenant: str, target_tenant: str) -> Diagnostics:
    diag.add_error(
        "tenant_mismatch",
        "linked entities must belong to the same tenant",
        _COMPONENT,
        {"owner_tenant_id": owner_tenant, "target_tenant_id": target_tenant},
        kind=ErrorKind.INPUT,
    )
    return diag


async def add_user_to_role(session: AsyncSession, *, user: User, role: Role) -> Diagnostics:
    # Link writes are idempotent; a duplicate reports already_associated.
    diag = Diagnostics("add_user_to_role")
    if user.tenant_id != role.tenant_id:
        return _tenant_mismatch(diag, user.tenant_id, role.tenant_id)
    existing = await session.get(UserRole, (user.id, role.id))
    if existing is not None:
        diag.add_error(
            "already_associated",
            "user already has this role",
            _COMPONENT,
            {"user_id": user.id, "role_id": role.id},
            kind=ErrorKind.CONFLICT,
        )
        return diag
    session.add(UserRole(user_id=user.id, role_id=role.id, created_at=_utc_now()))
    await session.flush()
    return diag


async def remove_user_from_role(session: AsyncSession, *, user_id: str, role_id: str) -> bool:
    result = await session.execute(
        delete(UserRole).where(UserRole.user_id == user_id, UserRole.role_id == role_id)
    )
    return (result.rowcount or 0) > 0


async def add_claim_to_role(session: AsyncSession, *, role: Role, claim: Claim) -> Diagnostics:
    diag = Diagnostics("add_claim_to_role")
    if role.tenant_id != claim.tenant_id:
        return _tenant_mismatch(diag, role.tenant_id, claim.tenant_id)
    existing = await session.get(RoleClaim, (role.id, claim.id))
    if existing is not None:
        diag.add_error(
            "already_associated",
            "role already has this claim",
            _COMPONENT,
            {"role_id": role.id, "claim_id": claim.id},
            kind=ErrorKind.CONFLICT,
        )
        return diag
    session.add(RoleClaim(role_id=role.id, claim_id=claim.id, created_at=_utc_now()))
    await session.flush()
    return diag
