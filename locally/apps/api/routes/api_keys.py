from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from locally.apps.api.deps import AUTHENTICATED, get_db, require_security
from locally.apps.api.errors import diagnostics_exception
from locally.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from locally.apps.api.response import success_response
from locally.core.config import get_settings
from locally.domain.models import ApiKey
from locally.domain.security import SecurityLevel
from locally.persistence.query.builder import QueryBuilder
from locally.persistence.repos import api_keys as api_keys_repo
from locally.persistence.repos import claims as claims_repo
from locally.persistence.repos import users as users_repo
from locally.services.audit import record_api_key_event
from locally.services.auth.api_keys import issue_api_key
from locally.services.auth.models import AuthClaims


router = APIRouter(prefix="/api-keys", tags=["api-keys"], responses=DEFAULT_ERROR_RESPONSES)


class ApiKeyCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    # Admins may issue keys for another user of the tenant.
    user_id: str | None = None
    permissions: list[str] = Field(default_factory=list)
    claims: list[str] = Field(default_factory=list)
    expires_at: datetime | None = None


class ApiKeyRevokeRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=500)


class ApiKeyClaimRequest(BaseModel):
    claim: str = Field(min_length=1)


def _is_admin(principal: AuthClaims) -> bool:
    return principal.security_level.is_at_least(SecurityLevel.ADMIN)


def _not_found(api_key_id: str) -> HTTPException:
    return HTTPException(
        status_code=404,
        detail={"code": "API_KEY_NOT_FOUND", "message": f"API key not found: {api_key_id}"},
    )


def _serialize(api_key: ApiKey, *, claims: list[str] | None = None) -> dict[str, Any]:
    # The bcrypt hash never leaves the store.
    payload: dict[str, Any] = {
        "id": api_key.id,
        "tenant_id": api_key.tenant_id,
        "user_id": api_key.user_id,
        "name": api_key.name,
        "key_prefix": api_key.key_prefix,
        "permissions": api_keys_repo.api_key_permissions(api_key),
        "is_active": api_key.is_active,
        "expires_at": api_key.expires_at.isoformat() if api_key.expires_at else None,
        "last_used_at": api_key.last_used_at.isoformat() if api_key.last_used_at else None,
        "created_by": api_key.created_by,
        "created_at": api_key.created_at.isoformat() if api_key.created_at else None,
        "revoked_at": api_key.revoked_at.isoformat() if api_key.revoked_at else None,
        "revocation_reason": api_key.revocation_reason,
    }
    if claims is not None:
        payload["claims"] = claims
    return payload


async def _load_owned_key(db: AsyncSession, principal: AuthClaims, api_key_id: str) -> ApiKey:
    # Non-admins only see their own keys; other keys look absent.
    api_key = await api_keys_repo.get_api_key(db, tenant_id=principal.tenant_id, api_key_id=api_key_id)
    if api_key is None or (api_key.user_id != principal.user_id and not _is_admin(principal)):
        raise _not_found(api_key_id)
    return api_key


async def _claim_slugs(db: AsyncSession, api_key_id: str) -> list[str]:
    return sorted(claim.slug for claim in await claims_repo.get_api_key_claims(db, api_key_id=api_key_id))


@router.post("", status_code=201)
async def create_api_key(
    request: Request,
    payload: ApiKeyCreateRequest,
    principal: AuthClaims = Depends(require_security(AUTHENTICATED)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    user_id = payload.user_id or principal.user_id
    if user_id != principal.user_id and not _is_admin(principal):
        raise HTTPException(
            status_code=403,
            detail={"code": "AUTH_FORBIDDEN", "message": "Only admins can issue keys for other users"},
        )
    if user_id != principal.user_id:
        owner = await users_repo.get_user_by_id(db, tenant_id=principal.tenant_id, user_id=user_id)
        if owner is None:
            raise HTTPException(
                status_code=404,
                detail={"code": "USER_NOT_FOUND", "message": f"User not found: {user_id}"},
            )
    raw_key, api_key, diag = await issue_api_key(
        db,
        tenant_id=principal.tenant_id,
        user_id=user_id,
        name=payload.name,
        permissions=payload.permissions,
        expires_at=payload.expires_at,
        created_by=principal.user_id,
    )
    if api_key is None or diag.has_errors():
        await db.rollback()
        raise diagnostics_exception(diag)

    for slug in payload.claims:
        claim = await claims_repo.get_claim_by_id_or_slug(db, tenant_id=principal.tenant_id, value=slug)
        if claim is None:
            claim, claim_diag = await claims_repo.create_claim(db, tenant_id=principal.tenant_id, slug=slug)
            if claim is None:
                await db.rollback()
                raise diagnostics_exception(claim_diag)
        attach_diag = await claims_repo.add_claim_to_api_key(db, api_key=api_key, claim=claim)
        if attach_diag.has_errors():
            await db.rollback()
            raise diagnostics_exception(attach_diag)

    await record_api_key_event(
        db,
        api_key=api_key,
        event_type="api_key.created",
        actor_type="user",
        actor_id=principal.user_id,
        request=request,
        metadata={"claims": sorted(payload.claims)},
    )
    await db.commit()
    data = _serialize(api_key, claims=await _claim_slugs(db, api_key.id))
    # Shown once; only the hash is stored.
    data["api_key"] = raw_key
    return success_response(request=request, data=data)


@router.get("")
async def list_api_keys(
    request: Request,
    principal: AuthClaims = Depends(require_security(AUTHENTICATED)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    query = QueryBuilder.parse(request.url.query, default_page_size=get_settings().pagination_default_page_size)
    page = await api_keys_repo.list_api_keys(
        db,
        tenant_id=principal.tenant_id,
        query=query,
        user_id=None if _is_admin(principal) else principal.user_id,
    )
    return success_response(request=request, data=page.to_dict(_serialize))


@router.get("/{api_key_id}")
async def get_api_key(
    request: Request,
    api_key_id: str,
    principal: AuthClaims = Depends(require_security(AUTHENTICATED)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    api_key = await _load_owned_key(db, principal, api_key_id)
    return success_response(request=request, data=_serialize(api_key, claims=await _claim_slugs(db, api_key.id)))


@router.post("/{api_key_id}/revoke")
async def revoke_api_key(
    request: Request,
    api_key_id: str,
    payload: ApiKeyRevokeRequest | None = None,
    principal: AuthClaims = Depends(require_security(AUTHENTICATED)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    api_key = await _load_owned_key(db, principal, api_key_id)
    reason = payload.reason if payload else None
    if not api_keys_repo.is_revoked(api_key):
        await api_keys_repo.revoke_api_key(db, api_key=api_key, revoked_by=principal.user_id, reason=reason)
        await record_api_key_event(
            db,
            api_key=api_key,
            event_type="api_key.revoked",
            actor_type="user",
            actor_id=principal.user_id,
            request=request,
            metadata={"reason": reason},
        )
        await db.commit()
    return success_response(request=request, data=_serialize(api_key))


@router.delete("/{api_key_id}", status_code=204)
async def delete_api_key(
    request: Request,
    api_key_id: str,
    principal: AuthClaims = Depends(require_security(AUTHENTICATED)),
    db: AsyncSession = Depends(get_db),
) -> Response:
    api_key = await _load_owned_key(db, principal, api_key_id)
    await record_api_key_event(
        db,
        api_key=api_key,
        event_type="api_key.deleted",
        actor_type="user",
        actor_id=principal.user_id,
        request=request,
    )
    await api_keys_repo.delete_api_key(db, tenant_id=principal.tenant_id, api_key_id=api_key.id)
    await db.commit()
    return Response(status_code=204)


@router.post("/{api_key_id}/claims", status_code=201)
async def attach_claim(
    request: Request,
    api_key_id: str,
    payload: ApiKeyClaimRequest,
    principal: AuthClaims = Depends(require_security(AUTHENTICATED)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    api_key = await _load_owned_key(db, principal, api_key_id)
    claim = await claims_repo.get_claim_by_id_or_slug(db, tenant_id=principal.tenant_id, value=payload.claim)
    if claim is None:
        raise HTTPException(
            status_code=404,
            detail={"code": "CLAIM_NOT_FOUND", "message": f"Claim not found: {payload.claim}"},
        )
    diag = await claims_repo.add_claim_to_api_key(db, api_key=api_key, claim=claim)
    if diag.has_errors():
        raise diagnostics_exception(diag)
    await db.commit()
    return success_response(request=request, data=_serialize(api_key, claims=await _claim_slugs(db, api_key.id)))


@router.delete("/{api_key_id}/claims/{claim}")
async def detach_claim(
    request: Request,
    api_key_id: str,
    claim: str,
    principal: AuthClaims = Depends(require_security(AUTHENTICATED)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    api_key = await _load_owned_key(db, principal, api_key_id)
    row = await claims_repo.get_claim_by_id_or_slug(db, tenant_id=principal.tenant_id, value=claim)
    if row is None or not await claims_repo.remove_claim_from_api_key(db, api_key_id=api_key.id, claim_id=row.id):
        raise HTTPException(
            status_code=404,
            detail={"code": "CLAIM_NOT_FOUND", "message": f"Claim not attached: {claim}"},
        )
    await db.commit()
    return success_response(request=request, data=_serialize(api_key, claims=await _claim_slugs(db, api_key.id)))
