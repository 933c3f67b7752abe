from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select

from locally.apps.api.main import create_app
from locally.domain.models import AuditEvent, Message
from locally.domain.security import SecurityLevel
from locally.persistence.db import SessionLocal
from locally.tests.utils.auth import create_principal, create_test_user, issue_token


@pytest.mark.asyncio
async def test_admin_enqueues_and_inspects_messages() -> None:
    admin = await create_principal(username="admin", security_level=SecurityLevel.ADMIN)

    app = create_app()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        created = await client.post(
            "/v1/messages",
            json={"type": "email", "payload": {"to": "a@b"}, "max_retries": 2, "priority": 5},
            headers=admin.headers,
        )
        assert created.status_code == 201
        message = created.json()["data"]
        assert message["status"] == "pending"
        assert message["payload"] == {"to": "a@b"}
        assert message["priority"] == 5
        assert message["max_retries"] == 2
        assert message["tenant_id"] == admin.tenant.id

        listed = await client.get("/v1/messages?filter=type=email", headers=admin.headers)
        assert listed.status_code == 200
        assert listed.json()["data"]["total"] == 1

        stats = await client.get("/v1/messages/stats", headers=admin.headers)
        assert stats.status_code == 200
        assert stats.json()["data"]["tenant_id"] == admin.tenant.id
        assert stats.json()["data"]["counts"]["pending"] == 1
        assert stats.json()["data"]["counts"]["total"] == 1

        detail = await client.get(f"/v1/messages/{message['id']}", headers=admin.headers)
        assert detail.status_code == 200
        assert [event["event_type"] for event in detail.json()["data"]["events"]] == ["created"]

        missing = await client.get("/v1/messages/does-not-exist", headers=admin.headers)
        assert missing.status_code == 404
        assert missing.json()["error"]["code"] == "MESSAGE_NOT_FOUND"

        invalid = await client.post(
            "/v1/messages",
            json={"type": "email", "priority": -1},
            headers=admin.headers,
        )
        assert invalid.status_code == 400

    async with SessionLocal() as session:
        rows = (
            await session.execute(select(AuditEvent).where(AuditEvent.event_type == "message.enqueued"))
        ).scalars().all()
    assert len(rows) == 1
    assert rows[0].resource_id == message["id"]
    assert rows[0].actor_id == admin.user.id
    assert rows[0].metadata_json == {"type": "email", "status": "pending", "priority": 5, "retry_count": 0}


@pytest.mark.asyncio
async def test_messages_require_admin() -> None:
    member = await create_principal(username="alice")
    app = create_app()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        forbidden = await client.post(
            "/v1/messages",
            json={"type": "email", "payload": {"to": "a@b"}},
            headers=member.headers,
        )
        assert forbidden.status_code == 403
        assert forbidden.json()["error"]["code"] == "AUTH_FORBIDDEN"

        listed = await client.get("/v1/messages", headers=member.headers)
        assert listed.status_code == 403


@pytest.mark.asyncio
async def test_messages_are_tenant_scoped() -> None:
    first = await create_principal(tenant_name="Acme", username="admin", security_level=SecurityLevel.ADMIN)
    second = await create_principal(tenant_name="Globex", username="admin", security_level=SecurityLevel.ADMIN)

    app = create_app()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        created = await client.post(
            "/v1/messages",
            json={"type": "notification", "payload": {"user_id": "u1"}},
            headers=first.headers,
        )
        message_id = created.json()["data"]["id"]

        hidden = await client.get(f"/v1/messages/{message_id}", headers=second.headers)
        assert hidden.status_code == 404
        listed = await client.get("/v1/messages", headers=second.headers)
        assert listed.json()["data"]["total"] == 0


@pytest.mark.asyncio
async def test_dispatch_is_notified_after_the_row_commits(monkeypatch: pytest.MonkeyPatch) -> None:
    admin = await create_principal(username="admin", security_level=SecurityLevel.ADMIN)
    visible: list[list[str]] = []

    async def _notify() -> bool:
        # A worker woken here must already see the message and its audit row.
        async with SessionLocal() as session:
            ids = (await session.execute(select(Message.id))).scalars().all()
            audited = (
                await session.execute(select(AuditEvent.resource_id).where(AuditEvent.event_type == "message.enqueued"))
            ).scalars().all()
        visible.append(list(ids))
        assert list(audited) == list(ids)
        return True

    monkeypatch.setattr("locally.apps.api.routes.messages.notify_dispatch", _notify)

    app = create_app()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        created = await client.post("/v1/messages", json={"type": "email", "payload": {"to": "a@b"}}, headers=admin.headers)
        assert created.status_code == 201

    assert visible == [[created.json()["data"]["id"]]]
