from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, Request, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from eventrelay.apps.api.deps import Principal, get_db, require_principal
from eventrelay.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from eventrelay.apps.api.response import SuccessEnvelope, success_response
from eventrelay.domain.models import Endpoint, as_utc
from eventrelay.persistence.repos.endpoints import (
    create_endpoint,
    delete_endpoint,
    list_endpoints,
    require_endpoint,
    update_endpoint,
)
from eventrelay.services.delivery.circuit_breaker import reenable_endpoint
from eventrelay.services.delivery.stats import endpoint_stats, tenant_stats

router = APIRouter(tags=["endpoints"], responses=DEFAULT_ERROR_RESPONSES)


class EndpointCreateRequest(BaseModel):
    url: str = Field(..., min_length=1, max_length=2048)
    # Write-only; never echoed back.
    secret: str = Field(..., min_length=16, max_length=512)
    event_types: list[str] = Field(..., min_length=1)
    headers: dict[str, str] | None = None
    max_retries: int | None = Field(default=None, ge=1, le=100)
    description: str | None = Field(default=None, max_length=512)
    active: bool = True


class EndpointPatchRequest(BaseModel):
    url: str | None = Field(default=None, min_length=1, max_length=2048)
    secret: str | None = Field(default=None, min_length=16, max_length=512)
    event_types: list[str] | None = None
    headers: dict[str, str] | None = None
    max_retries: int | None = Field(default=None, ge=1, le=100)
    description: str | None = Field(default=None, max_length=512)
    active: bool | None = None


def _iso(value) -> str | None:
    value = as_utc(value)
    return value.isoformat() if value else None


def endpoint_payload(row: Endpoint) -> dict[str, Any]:
    return {
        "id": row.id,
        "tenant_id": row.tenant_id,
        "url": row.url,
        "description": row.description,
        "event_types": list(row.event_types or []),
        "headers": dict(row.headers_json or {}),
        "max_retries": row.max_retries,
        "active": row.active,
        "auto_disabled": row.is_auto_disabled,
        "auto_disabled_at": _iso(row.auto_disabled_at),
        "consecutive_failures": row.consecutive_failures,
        "last_success_at": _iso(row.last_success_at),
        "last_failure_at": _iso(row.last_failure_at),
        "last_failure_reason": row.last_failure_reason,
        "created_at": _iso(row.created_at),
        "updated_at": _iso(row.updated_at),
    }


@router.get("/endpoints", response_model=SuccessEnvelope[dict[str, list[dict[str, Any]]]])
async def get_endpoints(
    request: Request,
    active: bool | None = Query(default=None),
    principal: Principal = Depends(require_principal),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    rows = await list_endpoints(db, tenant_id=principal.tenant_id, active=active)
    return success_response(request=request, data={"items": [endpoint_payload(row) for row in rows]})


@router.post(
    "/endpoints",
    status_code=status.HTTP_201_CREATED,
    response_model=SuccessEnvelope[dict[str, Any]],
)
async def create_endpoint_handler(
    payload: EndpointCreateRequest,
    request: Request,
    principal: Principal = Depends(require_principal),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    row = await create_endpoint(
        db,
        tenant_id=principal.tenant_id,
        url=payload.url,
        secret=payload.secret,
        event_types=payload.event_types,
        headers=payload.headers,
        max_retries=payload.max_retries,
        description=payload.description,
        active=payload.active,
    )
    return success_response(request=request, data=endpoint_payload(row))


@router.get("/endpoints/{endpoint_id}", response_model=SuccessEnvelope[dict[str, Any]])
async def get_endpoint_handler(
    endpoint_id: str,
    request: Request,
    principal: Principal = Depends(require_principal),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    row = await require_endpoint(db, tenant_id=principal.tenant_id, endpoint_id=endpoint_id)
    return success_response(request=request, data=endpoint_payload(row))


@router.patch("/endpoints/{endpoint_id}", response_model=SuccessEnvelope[dict[str, Any]])
async def patch_endpoint_handler(
    endpoint_id: str,
    payload: EndpointPatchRequest,
    request: Request,
    principal: Principal = Depends(require_principal),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    row = await update_endpoint(
        db,
        tenant_id=principal.tenant_id,
        endpoint_id=endpoint_id,
        url=payload.url,
        secret=payload.secret,
        event_types=payload.event_types,
        headers=payload.headers,
        max_retries=payload.max_retries,
        description=payload.description,
        active=payload.active,
    )
    return success_response(request=request, data=endpoint_payload(row))


@router.delete("/endpoints/{endpoint_id}", response_model=SuccessEnvelope[dict[str, Any]])
async def delete_endpoint_handler(
    endpoint_id: str,
    request: Request,
    principal: Principal = Depends(require_principal),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    await delete_endpoint(db, tenant_id=principal.tenant_id, endpoint_id=endpoint_id)
    return success_response(request=request, data={"id": endpoint_id, "deleted": True})


@router.post("/endpoints/{endpoint_id}/enable", response_model=SuccessEnvelope[dict[str, Any]])
async def enable_endpoint_handler(
    endpoint_id: str,
    request: Request,
    principal: Principal = Depends(require_principal),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    # Lifts an auto-disable; the manual active flag is left as is.
    row = await reenable_endpoint(db, tenant_id=principal.tenant_id, endpoint_id=endpoint_id)
    return success_response(request=request, data=endpoint_payload(row))


@router.get("/endpoints/{endpoint_id}/stats", response_model=SuccessEnvelope[dict[str, Any]])
async def get_endpoint_stats(
    endpoint_id: str,
    request: Request,
    principal: Principal = Depends(require_principal),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    stats = await endpoint_stats(db, tenant_id=principal.tenant_id, endpoint_id=endpoint_id)
    return success_response(request=request, data=stats.as_dict())


@router.get("/stats", response_model=SuccessEnvelope[dict[str, list[dict[str, Any]]]])
async def get_tenant_stats(
    request: Request,
    principal: Principal = Depends(require_principal),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    rows = await tenant_stats(db, tenant_id=principal.tenant_id)
    return success_response(request=request, data={"items": [row.as_dict() for row in rows]})
