from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from eventrelay.apps.api.deps import Principal, get_db, require_principal
from eventrelay.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from eventrelay.apps.api.response import SuccessEnvelope, success_response
from eventrelay.services.delivery.enqueue import publish

router = APIRouter(prefix="/events", tags=["events"], responses=DEFAULT_ERROR_RESPONSES)


class PublishEventRequest(BaseModel):
    event_id: str = Field(..., min_length=1, max_length=255)
    event_type: str = Field(..., min_length=1, max_length=255)
    payload: dict[str, Any] | list[Any]


class PublishEventResponse(BaseModel):
    event_id: str
    delivery_ids: list[str]


@router.post(
    "",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=SuccessEnvelope[PublishEventResponse],
)
async def publish_event(
    payload: PublishEventRequest,
    request: Request,
    principal: Principal = Depends(require_principal),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    # Accepted means enqueued; delivery happens in the worker pool.
    delivery_ids = await publish(
        db,
        tenant_id=principal.tenant_id,
        event_id=payload.event_id,
        event_type=payload.event_type,
        payload=payload.payload,
    )
    return success_response(
        request=request,
        data={"event_id": payload.event_id, "delivery_ids": delivery_ids},
    )
