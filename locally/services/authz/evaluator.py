from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from locally.core.slug import slugify
from locally.domain.security import (
    ClaimRequirement,
    ClaimSpec,
    Relation,
    RoleRequirement,
    RouteSecurity,
    SecurityLevel,
    SecurityRequirement,
)
from locally.services.auth.models import AuthClaims, AuthType


@dataclass(frozen=True)
class AuthzDecision:
    allowed: bool
    code: str = "OK"
    reason: str = ""


ALLOW = AuthzDecision(allowed=True)


def _combine(results: Iterable[bool], relation: Relation) -> bool:
    values = list(results)
    if not values:
        return True
    if relation is Relation.OR:
        return any(values)
    return all(values)


def roles_satisfied(requirement: RoleRequirement | None, roles: Iterable[str]) -> bool:
    # Role names compare through their slug so "Admin" matches "admin".
    if requirement is None or not requirement.items:
        return True
    held = {slugify(role) for role in roles}
    return _combine((slugify(item) in held for item in requirement.items), requirement.relation)


def claims_satisfied(requirement: ClaimRequirement | None, held: Iterable[ClaimSpec]) -> bool:
    if requirement is None or not requirement.items:
        return True
    granted = list(held)
    return _combine(
        (any(claim.can_access(item) for claim in granted) for item in requirement.items),
        requirement.relation,
    )


def evaluate(
    requirement: SecurityRequirement,
    principal: AuthClaims | None,
    held_claims: Iterable[ClaimSpec] = (),
) -> AuthzDecision:
    """Decide whether ``principal`` satisfies a route requirement.

    ``NONE`` routes always pass. Every other level needs a validated token;
    superusers pass every predicate, other callers must meet the minimum
    security level and the role and claim predicates.
    """
    if requirement.level is RouteSecurity.NONE:
        return ALLOW
    if principal is None:
        return AuthzDecision(False, "AUTH_REQUIRED", "authentication required")
    if requirement.level is RouteSecurity.API_KEY and principal.auth_type is not AuthType.API_KEY:
        return AuthzDecision(False, "FORBIDDEN", "api key authentication required")
    if requirement.level is RouteSecurity.BEARER and principal.auth_type is not AuthType.PASSWORD:
        return AuthzDecision(False, "FORBIDDEN", "bearer authentication required")
    if principal.is_superuser():
        return ALLOW
    if requirement.level is RouteSecurity.SUPERUSER:
        return AuthzDecision(False, "FORBIDDEN", "superuser required")
    if requirement.min_level is not SecurityLevel.NONE and not principal.security_level.is_at_least(requirement.min_level):
        return AuthzDecision(False, "FORBIDDEN", f"security level {requirement.min_level.value} required")
    if not roles_satisfied(requirement.roles, principal.roles):
        return AuthzDecision(False, "FORBIDDEN", "required role missing")
    if not claims_satisfied(requirement.claims, held_claims):
        return AuthzDecision(False, "FORBIDDEN", "required claim missing")
    return ALLOW
