from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import delete, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from locally.core.diagnostics import Diagnostics, ErrorKind
from locally.domain.models import ApiKey, ApiKeyClaim, Claim, User, UserClaim
from locally.domain.security import ClaimSpec
from locally.persistence.guards import tenant_predicate


_COMPONENT = "claim_store"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_claim_spec(claim: Claim) -> ClaimSpec:
    return ClaimSpec.parse(claim.slug)


async def get_claim_by_id_or_slug(session: AsyncSession, *, tenant_id: str, value: str) -> Claim | None:
    candidates = [Claim.id == value]
    try:
        candidates.append(Claim.slug == ClaimSpec.parse(value).slug)
    except ValueError:
        pass
    result = await session.execute(select(Claim).where(tenant_predicate(Claim, tenant_id), or_(*candidates)))
    return result.scalar_one_or_none()




async def create_claim(session: AsyncSession, *, tenant_id: str, slug: str) -> tuple[Claim | None, Diagnostics]:
    diag = Diagnostics("create_claim")
    try:
        spec = ClaimSpec.parse(slug)
    except ValueError as exc:
        diag.add_error("invalid_claim", str(exc), _COMPONENT, {"slug": slug}, kind=ErrorKind.INPUT)
        return None, diag
    if await get_claim_by_id_or_slug(session, tenant_id=tenant_id, value=spec.slug) is not None:
        diag.add_error(
            "claim_slug_conflict",
            f"claim '{spec.slug}' already exists",
            _COMPONENT,
            {"slug": spec.slug},
            kind=ErrorKind.CONFLICT,
        )
        return None, diag
    now = _utc_now()
    claim = Claim(
        tenant_id=tenant_id,
        slug=spec.slug,
        service=spec.service,
        module=spec.module,
        action=spec.action.value,
        created_at=now,
        updated_at=now,
    )
    session.add(claim)
    await session.flush()
    return claim, diag




def _already_associated(diag: Diagnostics, owner: str, owner_id: str, claim_id: str) -> Diagnostics:
    diag.add_error(
        "already_associated",
        f"{owner} already has this claim",
        _COMPONENT,
        {f"{owner}_id": owner_id, "claim_id": claim_id},
        kind=ErrorKind.CONFLICT,
    )
    return diag


def _tenant_mismatch(diag: Diagnostics, owner_tenant: str, claim_tenant: str) -> Diagnostics:
    diag.add_error(
        "tenant_mismatch",
        "claim belongs to a different tenant",
        _COMPONENT,
        {"owner_tenant_id": owner_tenant, "claim_tenant_id": claim_tenant},
        kind=ErrorKind.INPUT,
    )
    return diag


async def add_claim_to_user(session: AsyncSession, *, user: User, claim: Claim) -> Diagnostics:
    diag = Diagnostics("add_claim_to_user")
    if user.tenant_id != claim.tenant_id:
        return _tenant_mismatch(diag, user.tenant_id, claim.tenant_id)
    result = await session.execute(
        select(UserClaim).where(UserClaim.user_id == user.id, UserClaim.claim_id == claim.id)
    )
    if result.scalar_one_or_none() is not None:
        return _already_associated(diag, "user", user.id, claim.id)
    session.add(UserClaim(user_id=user.id, claim_id=claim.id, created_at=_utc_now()))
    await session.flush()
    return diag


async def remove_claim_from_user(session: AsyncSession, *, user_id: str, claim_id: str) -> bool:
    result = await session.execute(
        delete(UserClaim).where(UserClaim.user_id == user_id, UserClaim.claim_id == claim_id)
    )
    return (result.rowcount or 0) > 0


async def add_claim_to_api_key(session: AsyncSession, *, api_key: ApiKey, claim: Claim) -> Diagnostics:
    diag = Diagnostics("add_claim_to_api_key")
    if api_key.tenant_id != claim.tenant_id:
        return _tenant_mismatch(diag, api_key.tenant_id, claim.tenant_id)
    result = await session.execute(
        select(ApiKeyClaim).where(ApiKeyClaim.api_key_id == api_key.id, ApiKeyClaim.claim_id == claim.id)
    )
    if result.scalar_one_or_none() is not None:
        return _already_associated(diag, "api_key", api_key.id, claim.id)
    session.add(ApiKeyClaim(api_key_id=api_key.id, claim_id=claim.id, created_at=_utc_now()))
    await session.flush()
    return diag


async def remove_claim_from_api_key(session: AsyncSession, *, api_key_id: str, claim_id: str) -> bool:
    result = await session.execute(
        delete(ApiKeyClaim).where(ApiKeyClaim.api_key_id == api_key_id, ApiKeyClaim.claim_id == claim_id)
    )
    return (result.rowcount or 0) > 0


async def get_api_key_claims(session: AsyncSession, *, api_key_id: str) -> list[Claim]:
    result = await session.execute(
        select(Claim).join(ApiKeyClaim, ApiKeyClaim.claim_id == Claim.id).where(ApiKeyClaim.api_key_id == api_key_id)
    )
    return list(result.scalars().all())
