from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from locally.apps.api.deps import get_db
from locally.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from locally.apps.api.response import SuccessEnvelope, success_response
from locally.core.config import get_settings

router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)


class HealthResponse(BaseModel):
    status: str
    version: str
    database: str


@router.get("/health", response_model=SuccessEnvelope[HealthResponse] | HealthResponse)
async def health(request: Request, db: AsyncSession = Depends(get_db)) -> dict:
    # Report degraded instead of failing so health checks can tell the process is up.
    database = "ok"
    try:
        await db.execute(text("SELECT 1"))
    except SQLAlchemyError:
        database = "unavailable"
    payload = HealthResponse(
        status="ok" if database == "ok" else "degraded",
        version=get_settings().app_version,
        database=database,
    )
    return success_response(request=request, data=payload.model_dump())
