from __future__ import annotations

from fastapi import APIRouter, Request
from pydantic import BaseModel

from eventrelay.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from eventrelay.apps.api.response import SuccessEnvelope, success_response
from eventrelay.persistence.db import pool_stats

router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)


class HealthResponse(BaseModel):
    status: str
    db_pool: dict[str, int | None]


@router.get("/health", response_model=SuccessEnvelope[HealthResponse])
async def health(request: Request) -> dict:
    # Liveness only; does not touch the database.
    payload = HealthResponse(status="ok", db_pool=pool_stats())
    return success_response(request=request, data=payload.model_dump())
