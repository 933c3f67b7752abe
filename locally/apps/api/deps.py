from __future__ import annotations

from typing import AsyncGenerator, Awaitable, Callable

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from locally.domain.security import ClaimSpec, RouteSecurity, SecurityLevel, SecurityRequirement
from locally.persistence.db import get_session
from locally.persistence.repos import claims as claims_repo
from locally.persistence.repos import users as users_repo
from locally.services.auth.models import AuthClaims
from locally.services.auth.service import get_auth_service
from locally.services.authz.evaluator import evaluate


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; the context manager closes it on success or error.
    async with get_session() as session:
        yield session


def _auth_error(message: str) -> HTTPException:
    # Uniform auth failures; the precise reason stays in logs and audit rows.
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


def _forbidden_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={"code": "AUTH_FORBIDDEN", "message": message},
    )


def parse_bearer_token(header_value: str | None) -> str:
    if not header_value:
        raise _auth_error("Missing or invalid bearer token")
    parts = header_value.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise _auth_error("Missing or invalid bearer token")
    return parts[1]


async def get_current_claims(request: Request) -> AuthClaims:
    token = parse_bearer_token(request.headers.get("Authorization"))
    claims, diag = get_auth_service().validate_token(token)
    if claims is None or diag.has_errors():
        raise _auth_error("Invalid or expired token")
    request.state.auth_claims = claims
    return claims


async def load_held_claims(session: AsyncSession, principal: AuthClaims) -> list[ClaimSpec]:
    # API keys with their own claims are limited to them; otherwise the user's grants apply.
    rows = []
    if principal.api_key_id:
        rows = await claims_repo.get_api_key_claims(session, api_key_id=principal.api_key_id)
    if not rows:
        rows = await users_repo.get_user_claims(session, user_id=principal.user_id)
    return [claims_repo.to_claim_spec(row) for row in rows]


def require_security(requirement: SecurityRequirement) -> Callable[..., Awaitable[AuthClaims | None]]:
    """Build a dependency that enforces ``requirement`` for the route.

    Returns the validated claims, or None for routes that need no auth.
    """

    async def _dependency(request: Request, db: AsyncSession = Depends(get_db)) -> AuthClaims | None:
        if requirement.level is RouteSecurity.NONE:
            return None
        principal = await get_current_claims(request)
        held: list[ClaimSpec] = []
        if requirement.claims is not None and requirement.claims.items and not principal.is_superuser():
            held = await load_held_claims(db, principal)
        decision = evaluate(requirement, principal, held)
        if not decision.allowed:
            raise _forbidden_error(decision.reason)
        return principal

    return _dependency


# Common route requirements.
AUTHENTICATED = SecurityRequirement(level=RouteSecurity.ANY)
ADMIN = SecurityRequirement(level=RouteSecurity.ANY, min_level=SecurityLevel.ADMIN)
SUPERUSER = SecurityRequirement(level=RouteSecurity.SUPERUSER)
