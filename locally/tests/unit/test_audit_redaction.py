from __future__ import annotations

import pytest
from sqlalchemy import select

from locally.domain.models import AuditEvent
from locally.persistence.db import SessionLocal
from locally.services.audit import record_api_key_event, sanitize_metadata
from locally.tests.utils.auth import create_test_api_key, create_test_tenant, create_test_user


def test_audit_redacts_credentials_recursively() -> None:
    # Redact credential fields while keeping the metadata shape.
    payload = {
        "api_key": "sk-locally-abc",
        "refresh_token": "eyJ...",
        "password": "hunter2",
        "nested": {"Authorization": "Bearer abc", "items": [{"client_secret": "s"}, {"name": "ok"}]},
        "safe": "value",
    }
    sanitized = sanitize_metadata(payload)
    assert sanitized["api_key"] == "[REDACTED]"
    assert sanitized["refresh_token"] == "[REDACTED]"
    assert sanitized["password"] == "[REDACTED]"
    assert sanitized["nested"]["Authorization"] == "[REDACTED]"
    assert sanitized["nested"]["items"] == [{"client_secret": "[REDACTED]"}, {"name": "ok"}]
    assert sanitized["safe"] == "value"


@pytest.mark.asyncio
async def test_api_key_event_persists_sanitized_row() -> None:
    tenant = await create_test_tenant("Acme")
    user, _ = await create_test_user(tenant_id=tenant.id)
    _raw, api_key = await create_test_api_key(tenant_id=tenant.id, user_id=user.id, name="ci")

    async with SessionLocal() as session:
        await record_api_key_event(
            session,
            api_key=api_key,
            event_type="api_key.rotated",
            actor_type="user",
            actor_id=user.id,
            metadata={"token": "abc", "reason": "scheduled"},
        )
        await session.commit()

    async with SessionLocal() as session:
        rows = list((await session.execute(select(AuditEvent))).scalars().all())
    assert len(rows) == 1
    assert rows[0].event_type == "api_key.rotated"
    assert rows[0].tenant_id == tenant.id
    assert rows[0].resource_id == api_key.id
    assert rows[0].metadata_json == {
        "key_name": "ci",
        "key_prefix": api_key.key_prefix,
        "owner": user.id,
        "token": "[REDACTED]",
        "reason": "scheduled",
    }
    assert rows[0].request_id is None
