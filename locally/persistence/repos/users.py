from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from locally.core.diagnostics import Diagnostics, ErrorKind
from locally.domain.models import Claim, Role, RoleClaim, User, UserClaim, UserRole
from locally.persistence.guards import tenant_predicate


_COMPONENT = "user_store"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def get_user_by_username(session: AsyncSession, *, tenant_id: str, username: str) -> User | None:
    result = await session.execute(
        select(User).where(tenant_predicate(User, tenant_id), User.username == username)
    )
    return result.scalar_one_or_none()


async def get_user_by_id(session: AsyncSession, *, tenant_id: str, user_id: str) -> User | None:
    result = await session.execute(
        select(User).where(tenant_predicate(User, tenant_id), User.id == user_id)
    )
    return result.scalar_one_or_none()




async def create_user(
    session: AsyncSession,
    *,
    tenant_id: str,
    username: str,
    password_hash: str,
    name: str | None = None,
    email: str | None = None,
    blocked: bool = False,
) -> tuple[User | None, Diagnostics]:
    diag = Diagnostics("create_user")
    if await get_user_by_username(session, tenant_id=tenant_id, username=username) is not None:
        diag.add_error(
            "user_already_exists",
            f"user '{username}' already exists in tenant",
            _COMPONENT,
            {"tenant_id": tenant_id, "username": username},
            kind=ErrorKind.CONFLICT,
        )
        return None, diag
    now = _utc_now()
    user = User(
        tenant_id=tenant_id,
        username=username,
        password_hash=password_hash,
        name=name,
        email=email,
        blocked=blocked,
        created_at=now,
        updated_at=now,
    )
    session.add(user)
    await session.flush()
    return user, diag








async def set_refresh_token(
    session: AsyncSession,
    *,
    tenant_id: str,
    user_id: str,
    token: str,
    expires_at: datetime,
) -> None:
    await session.execute(
        update(User)
        .where(tenant_predicate(User, tenant_id), User.id == user_id)
        .values(refresh_token=token, refresh_token_expires_at=expires_at, updated_at=_utc_now())
    )


async def get_user_roles(session: AsyncSession, *, user_id: str) -> list[Role]:
    result = await session.execute(
        select(Role)
        .join(UserRole, UserRole.role_id == Role.id)
        .where(UserRole.user_id == user_id)
        .order_by(Role.slug)
    )
    return list(result.scalars().all())


async def get_user_claims(session: AsyncSession, *, user_id: str) -> list[Claim]:
    # Direct grants plus everything inherited through the user's roles.
    direct = select(Claim).join(UserClaim, UserClaim.claim_id == Claim.id).where(UserClaim.user_id == user_id)
    inherited = (
        select(Claim)
        .join(RoleClaim, RoleClaim.claim_id == Claim.id)
        .join(UserRole, UserRole.role_id == RoleClaim.role_id)
        .where(UserRole.user_id == user_id)
    )
    claims: dict[str, Claim] = {}
    for stmt in (direct, inherited):
        result = await session.execute(stmt)
        for claim in result.scalars().all():
            claims.setdefault(claim.id, claim)
    return sorted(claims.values(), key=lambda claim: claim.slug)
