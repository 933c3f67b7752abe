from __future__ import annotations

from datetime import datetime, timedelta, timezone

from locally.domain.security import (
    ClaimSpec,
    Relation,
    RouteSecurity,
    SecurityLevel,
    SecurityRequirement,
    require_claims,
    require_roles,
)
from locally.services.auth.models import AuthClaims, AuthType
from locally.services.authz.evaluator import claims_satisfied, evaluate, roles_satisfied


def _principal(
    level: SecurityLevel = SecurityLevel.USER,
    roles: list[str] | None = None,
    auth_type: AuthType = AuthType.PASSWORD,
) -> AuthClaims:
    now = datetime.now(timezone.utc)
    return AuthClaims(
        username="alice",
        user_id="u1",
        tenant_id="t1",
        issuer="locally",
        issued_at=now,
        expires_at=now + timedelta(hours=1),
        auth_type=auth_type,
        security_level=level,
        roles=roles or [],
    )


def test_public_routes_allow_anonymous_callers() -> None:
    assert evaluate(SecurityRequirement(level=RouteSecurity.NONE), None).allowed


def test_protected_routes_need_a_principal() -> None:
    decision = evaluate(SecurityRequirement(level=RouteSecurity.ANY), None)
    assert not decision.allowed
    assert decision.code == "AUTH_REQUIRED"


def test_min_level_is_enforced() -> None:
    requirement = SecurityRequirement(min_level=SecurityLevel.ADMIN)
    assert not evaluate(requirement, _principal(SecurityLevel.USER)).allowed
    assert evaluate(requirement, _principal(SecurityLevel.ADMIN)).allowed


def test_superuser_bypasses_role_and_claim_checks() -> None:
    requirement = SecurityRequirement(
        level=RouteSecurity.SUPERUSER,
        roles=require_roles("auditor"),
        claims=require_claims("billing::invoices::approve"),
    )
    assert evaluate(requirement, _principal(SecurityLevel.SUPERUSER)).allowed
    assert not evaluate(requirement, _principal(SecurityLevel.ADMIN, roles=["auditor"])).allowed


def test_auth_type_restrictions() -> None:
    api_only = SecurityRequirement(level=RouteSecurity.API_KEY)
    assert not evaluate(api_only, _principal()).allowed
    assert evaluate(api_only, _principal(auth_type=AuthType.API_KEY)).allowed


def test_roles_compare_by_slug_with_relations() -> None:
    assert roles_satisfied(require_roles("Team Admin"), ["team-admin"])
    assert not roles_satisfied(require_roles("a", "b"), ["a"])
    assert roles_satisfied(require_roles("a", "b", relation=Relation.OR), ["b"])


def test_claims_with_and_or_relations() -> None:
    held = [ClaimSpec.parse("events::stream::read")]
    assert claims_satisfied(require_claims("events::stream::read"), held)
    assert not claims_satisfied(require_claims("events::stream::read", "events::push::write"), held)
    assert claims_satisfied(
        require_claims("events::stream::read", "events::push::write", relation=Relation.OR),
        held,
    )


def test_missing_claim_is_forbidden() -> None:
    requirement = SecurityRequirement(claims=require_claims("events::push::write"))
    decision = evaluate(requirement, _principal(), [ClaimSpec.parse("events::stream::read")])
    assert not decision.allowed
    assert decision.code == "FORBIDDEN"
