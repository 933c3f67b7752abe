from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from locally.core.config import (
    GLOBAL_TENANT_ID,
    GLOBAL_TENANT_NAME,
    SUPERUSER_ROLE_SLUG,
    get_settings,
)
from locally.core.diagnostics import Diagnostics
from locally.domain.models import Role, Tenant, User
from locally.domain.security import SecurityLevel
from locally.persistence.repos import roles as roles_repo
from locally.persistence.repos import tenants as tenants_repo
from locally.persistence.repos import users as users_repo
from locally.services.crypto.encryption import get_encryption_service


logger = logging.getLogger(__name__)


async def ensure_global_tenant(session: AsyncSession, diag: Diagnostics) -> Tenant | None:
    tenant = await tenants_repo.get_tenant_by_id_or_slug(session, GLOBAL_TENANT_ID)
    if tenant is not None:
        return tenant
    tenant, create_diag = await tenants_repo.create_tenant(
        session,
        name=GLOBAL_TENANT_NAME,
        tenant_id=GLOBAL_TENANT_ID,
        description="Spans every tenant; home of superusers.",
    )
    diag.append(create_diag)
    return tenant


async def ensure_superuser_role(session: AsyncSession, diag: Diagnostics) -> Role | None:
    role = await roles_repo.get_role_by_id_or_slug(session, tenant_id=GLOBAL_TENANT_ID, value=SUPERUSER_ROLE_SLUG)
    if role is not None:
        return role
    role, create_diag = await roles_repo.create_role(
        session,
        tenant_id=GLOBAL_TENANT_ID,
        name=SUPERUSER_ROLE_SLUG,
        security_level=SecurityLevel.SUPERUSER,
        description="Unrestricted access across tenants.",
    )
    diag.append(create_diag)
    return role


async def ensure_root_user(session: AsyncSession, diag: Diagnostics, role: Role) -> User | None:
    settings = get_settings()
    if not settings.root_user_password:
        diag.add_warning("root_password_missing", "root user not seeded: no password configured", "seed")
        return None
    user = await users_repo.get_user_by_username(
        session,
        tenant_id=GLOBAL_TENANT_ID,
        username=settings.root_user_username,
    )
    if user is None:
        password_hash = get_encryption_service().hash_password(settings.root_user_password)
        user, create_diag = await users_repo.create_user(
            session,
            tenant_id=GLOBAL_TENANT_ID,
            username=settings.root_user_username,
            password_hash=password_hash,
            name="Root",
        )
        diag.append(create_diag)
        if user is None:
            return None
    roles = await users_repo.get_user_roles(session, user_id=user.id)
    if all(existing.id != role.id for existing in roles):
        diag.append(await roles_repo.add_user_to_role(session, user=user, role=role))
    return user


async def seed_defaults(session: AsyncSession) -> Diagnostics:
    """Ensure the global tenant, the superuser role and the root account exist.

    Safe to run on every start; existing rows are left untouched.
    """
    diag = Diagnostics("seed_defaults")
    tenant = await ensure_global_tenant(session, diag)
    if tenant is None:
        return diag
    role = await ensure_superuser_role(session, diag)
    if role is None:
        return diag
    await ensure_root_user(session, diag, role)
    await session.commit()
    if diag.has_errors():
        logger.error("seed_failed %s", diag.summary())
    else:
        logger.info("seed_complete warnings=%s", len(diag.warnings))
    return diag
