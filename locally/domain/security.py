from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable


class SecurityLevel(str, Enum):
    NONE = "none"
    GUEST = "guest"
    USER = "user"
    ADMIN = "admin"
    SUPERUSER = "superuser"

    @property
    def rank(self) -> int:
        return _LEVEL_RANK[self]

    def is_at_least(self, other: SecurityLevel) -> bool:
        return self.rank >= other.rank


_LEVEL_RANK = {
    SecurityLevel.NONE: 0,
    SecurityLevel.GUEST: 1,
    SecurityLevel.USER: 2,
    SecurityLevel.ADMIN: 3,
    SecurityLevel.SUPERUSER: 4,
}


def parse_security_level(value: str | None) -> SecurityLevel:
    # Unknown or empty levels collapse to NONE rather than failing token parsing.
    if not value:
        return SecurityLevel.NONE
    try:
        return SecurityLevel(value.strip().lower())
    except ValueError:
        return SecurityLevel.NONE


def highest_level(levels: Iterable[SecurityLevel | str]) -> SecurityLevel:
    best = SecurityLevel.NONE
    for raw in levels:
        level = raw if isinstance(raw, SecurityLevel) else parse_security_level(raw)
        if level.rank > best.rank:
            best = level
    return best


class ClaimAction(str, Enum):
    READ = "read"
    WRITE = "write"
    APPROVE = "approve"
    LOCK = "lock"
    ALL = "all"

    def can_access(self, required: ClaimAction) -> bool:
        # "all" subsumes every action; otherwise the action must match exactly.
        if self is ClaimAction.ALL:
            return True
        return self is required


def parse_claim_action(value: str) -> ClaimAction:
    normalized = value.strip().lower()
    if normalized == "*":
        return ClaimAction.ALL
    return ClaimAction(normalized)


WILDCARD = "*"


@dataclass(frozen=True)
class ClaimSpec:
    """Capability triple granted to users, roles, and API keys.

    Claims are written as ``service::module::action`` slugs. ``*`` may be used
    for the service or module to match any value, and the ``all`` action (also
    written ``*``) grants every action.
    """

    service: str
    module: str
    action: ClaimAction

    @property
    def slug(self) -> str:
        return f"{self.service}::{self.module}::{self.action.value}"

    @classmethod
    def parse(cls, slug: str) -> ClaimSpec:
        parts = slug.strip().split("::")
        if len(parts) != 3 or not all(part.strip() for part in parts):
            raise ValueError(f"invalid claim format: expected 'service::module::action', got '{slug}'")
        service, module, action = (part.strip() for part in parts)
        try:
            parsed_action = parse_claim_action(action)
        except ValueError as exc:
            raise ValueError(f"invalid claim action: {action}") from exc
        return cls(service=service.lower(), module=module.lower(), action=parsed_action)

    def can_access(self, required: ClaimSpec) -> bool:
        if self.service != WILDCARD and required.service != WILDCARD and self.service != required.service:
            return False
        if self.module != WILDCARD and required.module != WILDCARD and self.module != required.module:
            return False
        return self.action.can_access(required.action)


class Relation(str, Enum):
    AND = "and"
    OR = "or"


class RouteSecurity(str, Enum):
    # How a route authenticates; NONE skips token validation entirely.
    NONE = "none"
    ANY = "any"
    BEARER = "bearer"
    API_KEY = "api_key"
    SUPERUSER = "superuser"


@dataclass(frozen=True)
class ClaimRequirement:
    items: tuple[ClaimSpec, ...] = ()
    relation: Relation = Relation.AND


@dataclass(frozen=True)
class RoleRequirement:
    items: tuple[str, ...] = ()
    relation: Relation = Relation.AND


@dataclass(frozen=True)
class SecurityRequirement:
    level: RouteSecurity = RouteSecurity.ANY
    claims: ClaimRequirement | None = None
    roles: RoleRequirement | None = None
    # Minimum token security level; NONE disables the check.
    min_level: SecurityLevel = SecurityLevel.NONE
    tags: tuple[str, ...] = field(default_factory=tuple)


def require_claims(*slugs: str, relation: Relation = Relation.AND) -> ClaimRequirement:
    return ClaimRequirement(items=tuple(ClaimSpec.parse(slug) for slug in slugs), relation=relation)


def require_roles(*names: str, relation: Relation = Relation.AND) -> RoleRequirement:
    return RoleRequirement(items=tuple(names), relation=relation)
