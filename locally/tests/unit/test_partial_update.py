from __future__ import annotations

from datetime import datetime, timezone

from locally.domain.models import Tenant
from locally.persistence.partial_update import apply_partial_update, partial_update_values


def _tenant() -> Tenant:
    now = datetime(2024, 1, 1, tzinfo=timezone.utc)
    return Tenant(
        id="t1",
        slug="acme",
        name="Acme",
        description="old",
        domain="acme.test",
        status="active",
        created_at=now,
        updated_at=now,
    )


def test_only_changed_non_empty_fields_are_written() -> None:
    tenant = _tenant()
    values = partial_update_values(
        tenant,
        {"description": "new", "domain": "", "status": "active", "contact_email": None},
    )
    assert values["description"] == "new"
    assert "domain" not in values
    assert "status" not in values
    assert "contact_email" not in values
    assert values["updated_at"] > tenant.updated_at


def test_slug_follows_name() -> None:
    tenant = _tenant()
    values = partial_update_values(tenant, {"name": "Acme Labs Inc."})
    assert values["name"] == "Acme Labs Inc."
    assert values["slug"] == "acme-labs-inc"


def test_system_fields_and_empty_json_are_ignored() -> None:
    tenant = _tenant()
    values = partial_update_values(tenant, {"id": "other", "created_at": datetime.now(timezone.utc), "description": "{}"})
    assert "id" not in values
    assert "created_at" not in values
    assert "description" not in values


def test_apply_partial_update_sets_attributes() -> None:
    tenant = _tenant()
    apply_partial_update(tenant, partial_update_values(tenant, {"description": "applied"}))
    assert tenant.description == "applied"
    assert tenant.slug == "acme"
