from __future__ import annotations

import argparse

import pytest
from sqlalchemy import select

from locally.domain.models import ApiKey, AuditEvent
from locally.domain.security import SecurityLevel
from locally.persistence.db import SessionLocal
from locally.persistence.repos import roles as roles_repo
from locally.persistence.repos import users as users_repo
from locally.tests.utils.auth import create_test_tenant, create_test_user
from scripts import create_api_key as create_api_key_script
from scripts import grant_access as grant_access_script
from scripts import revoke_api_key as revoke_api_key_script


@pytest.mark.asyncio
async def test_key_scripts_emit_audit_events() -> None:
    tenant = await create_test_tenant("Acme")
    user, _ = await create_test_user(tenant_id=tenant.id)

    args = argparse.Namespace(tenant="acme", username="alice", name="script-key", expires_in_days=30)
    assert await create_api_key_script._create_key(args) == 0

    async with SessionLocal() as session:
        api_key = (await session.execute(select(ApiKey).where(ApiKey.name == "script-key"))).scalar_one()
    assert api_key.user_id == user.id
    assert api_key.expires_at is not None

    assert await revoke_api_key_script._revoke_key(api_key.id, "leaked") == 0

    async with SessionLocal() as session:
        revoked = (await session.execute(select(ApiKey).where(ApiKey.id == api_key.id))).scalar_one()
        events = (
            await session.execute(select(AuditEvent.event_type).where(AuditEvent.tenant_id == tenant.id))
        ).scalars().all()
    assert revoked.revocation_reason == "leaked"
    assert revoked.is_active is False
    assert {"api_key.created", "api_key.revoked"} <= set(events)


@pytest.mark.asyncio
async def test_create_key_script_rejects_unknown_user() -> None:
    await create_test_tenant("Acme")
    args = argparse.Namespace(tenant="acme", username="ghost", name="k", expires_in_days=None)
    with pytest.raises(ValueError):
        await create_api_key_script._create_key(args)


def _grant_args(**overrides: object) -> argparse.Namespace:
    values: dict[str, object] = {"tenant": "acme", "username": "alice", "role": None, "claim": None, "revoke": False}
    values.update(overrides)
    return argparse.Namespace(**values)


@pytest.mark.asyncio
async def test_grant_access_script_links_roles_and_claims(capsys: pytest.CaptureFixture[str]) -> None:
    tenant = await create_test_tenant("Acme")
    user, _ = await create_test_user(tenant_id=tenant.id, security_level=None)
    async with SessionLocal() as session:
        role, diag = await roles_repo.create_role(
            session, tenant_id=tenant.id, name="Auditors", security_level=SecurityLevel.ADMIN
        )
        assert role is not None, diag.summary()
        await session.commit()

    assert await grant_access_script._grant(_grant_args(role="auditors")) == 0
    assert await grant_access_script._grant(_grant_args(claim="docs::files::read")) == 0
    async with SessionLocal() as session:
        roles = await users_repo.get_user_roles(session, user_id=user.id)
        claims = await users_repo.get_user_claims(session, user_id=user.id)
    assert [item.slug for item in roles] == ["auditors"]
    assert [item.slug for item in claims] == ["docs::files::read"]

    # A second grant of the same link is a conflict, not a silent no-op.
    with pytest.raises(ValueError, match="already_associated"):
        await grant_access_script._grant(_grant_args(role="auditors"))
    with pytest.raises(ValueError, match="already_associated"):
        await grant_access_script._grant(_grant_args(claim="docs::files::read"))

    assert await grant_access_script._grant(_grant_args(claim="docs::files::read", revoke=True)) == 0
    assert await grant_access_script._grant(_grant_args(role="auditors", revoke=True)) == 0
    capsys.readouterr()
    assert await grant_access_script._grant(_grant_args(role="auditors", revoke=True)) == 0
    assert "did not hold role auditors" in capsys.readouterr().out

    async with SessionLocal() as session:
        assert await users_repo.get_user_roles(session, user_id=user.id) == []
        assert await users_repo.get_user_claims(session, user_id=user.id) == []


@pytest.mark.asyncio
async def test_grant_access_script_rejects_unknown_targets() -> None:
    tenant = await create_test_tenant("Acme")
    await create_test_user(tenant_id=tenant.id)
    with pytest.raises(ValueError, match="role not found"):
        await grant_access_script._grant(_grant_args(role="ghosts"))
    with pytest.raises(ValueError, match="claim not found"):
        await grant_access_script._grant(_grant_args(claim="docs::files::read", revoke=True))
    with pytest.raises(ValueError, match="user not found"):
        await grant_access_script._grant(_grant_args(username="ghost", role="alice-user"))
