from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from locally.apps.api.deps import get_db
from locally.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from locally.apps.api.response import SuccessEnvelope, success_response
from locally.services.audit import record_auth_attempt
from locally.services.auth.models import APIKeyCredentials, AuthCredentials, AuthType, TokenResponse
from locally.services.auth.service import get_auth_service


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"], responses=DEFAULT_ERROR_RESPONSES)


def _unauthorized(message: str) -> HTTPException:
    # Every auth failure looks the same to the caller; the reason is audited.
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


@router.post("/login", response_model=SuccessEnvelope[TokenResponse] | TokenResponse)
async def login(
    request: Request,
    payload: AuthCredentials,
    db: AsyncSession = Depends(get_db),
) -> dict:
    response, diag = await get_auth_service().authenticate_with_password(db, payload)
    if diag.has_errors():
        # Drop any partial writes before the audit row commits.
        await db.rollback()
        await record_auth_attempt(
            db, request=request, event_type="auth.login", auth_type=AuthType.PASSWORD, response=response, diag=diag
        )
        logger.info("auth_login_failed username=%s reason=%s", payload.username, response.error)
        raise _unauthorized("Invalid credentials")
    await db.commit()
    await record_auth_attempt(
        db, request=request, event_type="auth.login", auth_type=AuthType.PASSWORD, response=response, diag=diag
    )
    return success_response(request=request, data=response.model_dump(mode="json"))


@router.post("/login/api-key", response_model=SuccessEnvelope[TokenResponse] | TokenResponse)
async def login_with_api_key(
    request: Request,
    payload: APIKeyCredentials,
    db: AsyncSession = Depends(get_db),
) -> dict:
    response, diag = await get_auth_service().authenticate_with_api_key(db, payload)
    if diag.has_errors():
        await db.rollback()
        await record_auth_attempt(
            db, request=request, event_type="auth.login.api_key", auth_type=AuthType.API_KEY, response=response, diag=diag
        )
        logger.info("auth_api_key_login_failed api_key_id=%s reason=%s", response.api_key_id, response.error)
        raise _unauthorized("Invalid API key")
    await db.commit()
    await record_auth_attempt(
        db, request=request, event_type="auth.login.api_key", auth_type=AuthType.API_KEY, response=response, diag=diag
    )
    return success_response(request=request, data=response.model_dump(mode="json"))


@router.post("/refresh", response_model=SuccessEnvelope[TokenResponse] | TokenResponse)
async def refresh(request: Request, db: AsyncSession = Depends(get_db)) -> dict:
    # The refresh token travels in the Authorization header, with or without "Bearer".
    raw = request.headers.get("Authorization")
    if not raw or not raw.strip():
        raise _unauthorized("Missing refresh token")
    response, diag = await get_auth_service().refresh_token(db, raw)
    if diag.has_errors():
        await db.rollback()
        await record_auth_attempt(
            db, request=request, event_type="auth.refresh", auth_type=AuthType.PASSWORD, response=response, diag=diag
        )
        raise _unauthorized("Invalid refresh token")
    await db.commit()
    await record_auth_attempt(
        db, request=request, event_type="auth.refresh", auth_type=AuthType.PASSWORD, response=response, diag=diag
    )
    return success_response(request=request, data=response.model_dump(mode="json"))
