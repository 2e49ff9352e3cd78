from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from eventrelay.apps.api.deps import Principal, get_db, require_principal
from eventrelay.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from eventrelay.apps.api.response import Pagination, SuccessEnvelope, success_response
from eventrelay.domain.models import Delivery, DeliveryAttempt, as_utc
from eventrelay.domain.state import TERMINAL_STATUSES, parse_status
from eventrelay.persistence.repos.deliveries import list_attempts, list_deliveries, require_delivery
from eventrelay.services.delivery.dead_letters import requeue, requeue_dead_letters

router = APIRouter(prefix="/deliveries", tags=["deliveries"], responses=DEFAULT_ERROR_RESPONSES)


class BulkRequeueRequest(BaseModel):
    endpoint_id: str | None = None
    limit: int = Field(default=100, ge=1, le=1000)


def _iso(value) -> str | None:
    value = as_utc(value)
    return value.isoformat() if value else None


def delivery_payload(row: Delivery, *, include_payload: bool = False) -> dict[str, Any]:
    data: dict[str, Any] = {
        "id": row.id,
        "tenant_id": row.tenant_id,
        "endpoint_id": row.endpoint_id,
        "event_id": row.event_id,
        "event_type": row.event_type,
        "status": row.status,
        # Terminal rows are never claimed again; only dead letters can be requeued.
        "terminal": row.status in TERMINAL_STATUSES,
        "attempt_count": row.attempt_count,
        "max_attempts": row.max_attempts,
        "last_attempt_at": _iso(row.last_attempt_at),
        "next_attempt_at": _iso(row.next_attempt_at),
        "last_response_code": row.last_response_code,
        "last_response_body": row.last_response_body,
        "last_error": row.last_error,
        "delivered_at": _iso(row.delivered_at),
        "created_at": _iso(row.created_at),
        "updated_at": _iso(row.updated_at),
    }
    if include_payload:
        data["payload"] = row.payload_json
        data["signature"] = row.signature
        data["signed_at"] = row.signed_at
    return data


def attempt_payload(row: DeliveryAttempt) -> dict[str, Any]:
    return {
        "attempt_no": row.attempt_no,
        "outcome": row.outcome,
        "response_code": row.response_code,
        "error": row.error,
        "started_at": _iso(row.started_at),
        "finished_at": _iso(row.finished_at),
        "duration_ms": row.duration_ms,
    }


@router.get("", response_model=SuccessEnvelope[dict[str, list[dict[str, Any]]]])
async def get_deliveries(
    request: Request,
    status: str | None = Query(default=None),
    endpoint_id: str | None = Query(default=None),
    event_id: str | None = Query(default=None),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=500),
    principal: Principal = Depends(require_principal),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    # status=dead_letter doubles as the dead-letter listing.
    if status is not None:
        try:
            status = parse_status(status).value
        except ValueError as exc:
            raise HTTPException(status_code=422, detail={"code": "INVALID_STATUS", "message": str(exc)}) from exc
    rows = await list_deliveries(
        db,
        tenant_id=principal.tenant_id,
        status=status,
        endpoint_id=endpoint_id,
        event_id=event_id,
        offset=offset,
        limit=limit,
    )
    return success_response(
        request=request,
        data={"items": [delivery_payload(row) for row in rows]},
        pagination=Pagination(offset=offset, limit=limit, returned=len(rows)),
    )


@router.post("/requeue", response_model=SuccessEnvelope[dict[str, Any]])
async def bulk_requeue_handler(
    payload: BulkRequeueRequest,
    request: Request,
    principal: Principal = Depends(require_principal),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    delivery_ids = await requeue_dead_letters(
        db,
        tenant_id=principal.tenant_id,
        endpoint_id=payload.endpoint_id,
        limit=payload.limit,
    )
    return success_response(request=request, data={"requeued": delivery_ids, "count": len(delivery_ids)})


@router.get("/{delivery_id}", response_model=SuccessEnvelope[dict[str, Any]])
async def get_delivery_handler(
    delivery_id: str,
    request: Request,
    principal: Principal = Depends(require_principal),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    row = await require_delivery(db, tenant_id=principal.tenant_id, delivery_id=delivery_id)
    return success_response(request=request, data=delivery_payload(row, include_payload=True))


@router.get("/{delivery_id}/attempts", response_model=SuccessEnvelope[dict[str, list[dict[str, Any]]]])
async def get_delivery_attempts(
    delivery_id: str,
    request: Request,
    principal: Principal = Depends(require_principal),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    rows = await list_attempts(db, tenant_id=principal.tenant_id, delivery_id=delivery_id)
    return success_response(request=request, data={"items": [attempt_payload(row) for row in rows]})


@router.post("/{delivery_id}/requeue", response_model=SuccessEnvelope[dict[str, Any]])
async def requeue_delivery_handler(
    delivery_id: str,
    request: Request,
    principal: Principal = Depends(require_principal),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    row = await requeue(db, tenant_id=principal.tenant_id, delivery_id=delivery_id)
    return success_response(request=request, data=delivery_payload(row))
