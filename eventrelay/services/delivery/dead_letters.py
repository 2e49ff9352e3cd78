from __future__ import annotations

from datetime import datetime, timezone
import logging

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from eventrelay.core.errors import InvalidDeliveryStateError
from eventrelay.domain.models import Delivery
from eventrelay.domain.state import DeliveryStatus
from eventrelay.persistence.guards import tenant_predicate
from eventrelay.persistence.repos.deliveries import require_delivery


logger = logging.getLogger(__name__)

_REQUEUE_VALUES = {
    "status": DeliveryStatus.PENDING.value,
    "attempt_count": 0,
    "claim_token": None,
}


async def requeue(
    session: AsyncSession,
    *,
    tenant_id: str,
    delivery_id: str,
    now: datetime | None = None,
) -> Delivery:
    """Give a dead-lettered delivery a fresh retry budget.

    Response/error history and attempt rows are kept; endpoint health is not
    touched, so requeueing against an auto-disabled endpoint still delivers
    (it is only excluded from new fan-out).
    """
    now = now or datetime.now(timezone.utc)
    row = await require_delivery(session, tenant_id=tenant_id, delivery_id=delivery_id)
    if row.status != DeliveryStatus.DEAD_LETTER.value:
        raise InvalidDeliveryStateError(
            f"delivery {delivery_id} is {row.status}; only dead_letter deliveries can be requeued",
            status=row.status,
        )
    result = await session.execute(
        update(Delivery)
        .where(
            tenant_predicate(Delivery, tenant_id),
            Delivery.id == delivery_id,
            Delivery.status == DeliveryStatus.DEAD_LETTER.value,
        )
        .values(**_REQUEUE_VALUES, next_attempt_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if not result.rowcount:
        # Another operator requeued it between the read and the update.
        await session.rollback()
        raise InvalidDeliveryStateError(f"delivery {delivery_id} is no longer dead_letter")
    await session.commit()
    await session.refresh(row)
    logger.info(
        "delivery_requeued",
        extra={"tenant_id": tenant_id, "delivery_id": delivery_id, "endpoint_id": row.endpoint_id},
    )
    return row


async def requeue_dead_letters(
    session: AsyncSession,
    *,
    tenant_id: str,
    endpoint_id: str | None = None,
    limit: int = 100,
    now: datetime | None = None,
) -> list[str]:
    now = now or datetime.now(timezone.utc)
    stmt = select(Delivery.id).where(
        tenant_predicate(Delivery, tenant_id),
        Delivery.status == DeliveryStatus.DEAD_LETTER.value,
    )
    if endpoint_id:
        stmt = stmt.where(Delivery.endpoint_id == endpoint_id)
    stmt = stmt.order_by(Delivery.created_at.asc(), Delivery.id.asc()).limit(max(1, limit))
    candidate_ids = list((await session.execute(stmt)).scalars().all())
    if not candidate_ids:
        return []
    requeued: list[str] = []
    for delivery_id in candidate_ids:
        result = await session.execute(
            update(Delivery)
            .where(Delivery.id == delivery_id, Delivery.status == DeliveryStatus.DEAD_LETTER.value)
            .values(**_REQUEUE_VALUES, next_attempt_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            requeued.append(delivery_id)
    await session.commit()
    logger.info(
        "dead_letters_requeued",
        extra={"tenant_id": tenant_id, "endpoint_id": endpoint_id, "count": len(requeued)},
    )
    return requeued
