from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from eventrelay.core.errors import DeliveryNotFoundError
from eventrelay.domain.models import Delivery, DeliveryAttempt
from eventrelay.domain.state import parse_status
from eventrelay.persistence.guards import tenant_predicate


async def get_delivery(
    session: AsyncSession,
    *,
    tenant_id: str,
    delivery_id: str,
) -> Delivery | None:
    result = await session.execute(
        select(Delivery).where(tenant_predicate(Delivery, tenant_id), Delivery.id == delivery_id)
    )
    return result.scalar_one_or_none()


async def require_delivery(
    session: AsyncSession,
    *,
    tenant_id: str,
    delivery_id: str,
) -> Delivery:
    row = await get_delivery(session, tenant_id=tenant_id, delivery_id=delivery_id)
    if row is None:
        raise DeliveryNotFoundError(f"delivery {delivery_id} not found")
    return row


async def list_deliveries(
    session: AsyncSession,
    *,
    tenant_id: str,
    status: str | None = None,
    endpoint_id: str | None = None,
    event_id: str | None = None,
    offset: int = 0,
    limit: int = 50,
) -> list[Delivery]:
    # Newest first; status=dead_letter is the dead-letter listing.
    stmt = select(Delivery).where(tenant_predicate(Delivery, tenant_id))
    if status:
        stmt = stmt.where(Delivery.status == parse_status(status).value)
    if endpoint_id:
        stmt = stmt.where(Delivery.endpoint_id == endpoint_id)
    if event_id:
        stmt = stmt.where(Delivery.event_id == event_id)
    stmt = stmt.order_by(Delivery.created_at.desc(), Delivery.id.desc())
    stmt = stmt.offset(max(0, offset)).limit(max(1, limit))
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def list_attempts(
    session: AsyncSession,
    *,
    tenant_id: str,
    delivery_id: str,
) -> list[DeliveryAttempt]:
    await require_delivery(session, tenant_id=tenant_id, delivery_id=delivery_id)
    result = await session.execute(
        select(DeliveryAttempt)
        .where(
            tenant_predicate(DeliveryAttempt, tenant_id),
            DeliveryAttempt.delivery_id == delivery_id,
        )
        .order_by(DeliveryAttempt.attempt_no.asc(), DeliveryAttempt.id.asc())
    )
    return list(result.scalars().all())


def add_attempt(
    session: AsyncSession,
    *,
    delivery: Delivery,
    attempt_no: int,
    outcome: str,
    started_at,
    finished_at,
    response_code: int | None,
    error: str | None,
    duration_ms: int | None,
) -> DeliveryAttempt:
    # Caller owns the transaction; attempt rows are written alongside the outcome.
    row = DeliveryAttempt(
        delivery_id=delivery.id,
        tenant_id=delivery.tenant_id,
        endpoint_id=delivery.endpoint_id,
        attempt_no=attempt_no,
        started_at=started_at,
        finished_at=finished_at,
        outcome=outcome,
        response_code=response_code,
        error=error,
        duration_ms=duration_ms,
    )
    session.add(row)
    return row
