from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from locally.core.config import GLOBAL_TENANT_ID, GLOBAL_TENANT_NAME
from locally.domain.models import ApiKey, Role, Tenant, User
from locally.domain.security import SecurityLevel
from locally.persistence.db import SessionLocal
from locally.persistence.repos import claims as claims_repo
from locally.persistence.repos import roles as roles_repo
from locally.persistence.repos import tenants as tenants_repo
from locally.persistence.repos import users as users_repo
from locally.services.auth.api_keys import issue_api_key
from locally.services.auth.models import AuthType
from locally.services.auth.service import get_auth_service
from locally.services.crypto.encryption import get_encryption_service


DEFAULT_PASSWORD = "correct horse battery staple"


@dataclass
class Principal:
    tenant: Tenant
    user: User
    role: Role | None
    token: str

    @property
    def headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"}


async def create_test_tenant(name: str = "Acme") -> Tenant:
    async with SessionLocal() as session:
        tenant, diag = await tenants_repo.create_tenant(session, name=name)
        assert tenant is not None, diag.summary()
        await session.commit()
        return tenant


async def create_global_tenant() -> Tenant:
    async with SessionLocal() as session:
        tenant = await tenants_repo.get_tenant_by_id_or_slug(session, GLOBAL_TENANT_ID)
        if tenant is None:
            tenant, diag = await tenants_repo.create_tenant(
                session, name=GLOBAL_TENANT_NAME, tenant_id=GLOBAL_TENANT_ID
            )
            assert tenant is not None, diag.summary()
            await session.commit()
        return tenant


async def create_test_user(
    *,
    tenant_id: str,
    username: str = "alice",
    password: str = DEFAULT_PASSWORD,
    security_level: SecurityLevel | None = SecurityLevel.USER,
    role_name: str | None = None,
    claims: list[str] | None = None,
    blocked: bool = False,
) -> tuple[User, Role | None]:
    # Provision a user plus an optional role carrying the requested level and claims.
    async with SessionLocal() as session:
        user, diag = await users_repo.create_user(
            session,
            tenant_id=tenant_id,
            username=username,
            password_hash=get_encryption_service().hash_password(password),
            blocked=blocked,
        )
        assert user is not None, diag.summary()
        role = None
        if security_level is not None:
            name = role_name or f"{username}-{security_level.value}"
            role, role_diag = await roles_repo.create_role(
                session, tenant_id=tenant_id, name=name, security_level=security_level
            )
            assert role is not None, role_diag.summary()
            link_diag = await roles_repo.add_user_to_role(session, user=user, role=role)
            assert not link_diag.has_errors(), link_diag.summary()
            for slug in claims or []:
                claim = await claims_repo.get_claim_by_id_or_slug(session, tenant_id=tenant_id, value=slug)
                if claim is None:
                    claim, claim_diag = await claims_repo.create_claim(session, tenant_id=tenant_id, slug=slug)
                    assert claim is not None, claim_diag.summary()
                await roles_repo.add_claim_to_role(session, role=role, claim=claim)
        await session.commit()
        return user, role


async def issue_token(*, user: User, role: Role | None, tenant_id: str) -> str:
    async with SessionLocal() as session:
        response, diag = await get_auth_service().generate_token(
            session,
            user=user,
            roles=[role] if role is not None else [],
            tenant_id=tenant_id,
            auth_type=AuthType.PASSWORD,
        )
        assert not diag.has_errors(), diag.summary()
        await session.commit()
        return response.token


async def create_principal(
    *,
    tenant_name: str = "Acme",
    username: str = "alice",
    security_level: SecurityLevel | None = SecurityLevel.USER,
    claims: list[str] | None = None,
    tenant: Tenant | None = None,
) -> Principal:
    tenant = tenant or await create_test_tenant(tenant_name)
    user, role = await create_test_user(
        tenant_id=tenant.id,
        username=username,
        security_level=security_level,
        claims=claims,
    )
    token = await issue_token(user=user, role=role, tenant_id=tenant.id)
    return Principal(tenant=tenant, user=user, role=role, token=token)


async def create_test_api_key(
    *,
    tenant_id: str,
    user_id: str,
    name: str = "test-key",
    expires_at: datetime | None = None,
) -> tuple[str, ApiKey]:
    async with SessionLocal() as session:
        raw_key, api_key, diag = await issue_api_key(
            session,
            tenant_id=tenant_id,
            user_id=user_id,
            name=name,
            expires_at=expires_at,
        )
        assert raw_key is not None and api_key is not None, diag.summary()
        await session.commit()
        return raw_key, api_key
