from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging
from uuid import uuid4

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from eventrelay.domain.models import Delivery
from eventrelay.domain.state import READY_STATUSES, DeliveryStatus


logger = logging.getLogger(__name__)


async def claim_due(
    session: AsyncSession,
    *,
    limit: int,
    now: datetime | None = None,
) -> list[Delivery]:
    """Atomically move up to ``limit`` due deliveries to ``sending``.

    The status re-check in the outer UPDATE makes the claim safe even where
    ``SKIP LOCKED`` is unavailable: a row already taken by another worker no
    longer matches and is simply not returned. Losing every race yields an
    empty list.
    """
    if limit <= 0:
        return []
    now = now or datetime.now(timezone.utc)
    claim_token = uuid4().hex
    due_ids = (
        select(Delivery.id)
        .where(Delivery.status.in_(READY_STATUSES), Delivery.next_attempt_at <= now)
        .order_by(Delivery.next_attempt_at.asc(), Delivery.id.asc())
        .limit(limit)
        .with_for_update(skip_locked=True)
    )
    result = await session.execute(
        update(Delivery)
        .where(Delivery.id.in_(due_ids), Delivery.status.in_(READY_STATUSES))
        .values(
            status=DeliveryStatus.SENDING.value,
            last_attempt_at=now,
            claim_token=claim_token,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    if not result.rowcount:
        return []
    rows = await session.execute(
        select(Delivery)
        .where(Delivery.claim_token == claim_token)
        .order_by(Delivery.next_attempt_at.asc(), Delivery.id.asc())
        .execution_options(populate_existing=True)
    )
    claimed = list(rows.scalars().all())
    logger.debug("deliveries_claimed", extra={"count": len(claimed), "claim_token": claim_token})
    return claimed


async def sweep_stale_claims(
    session: AsyncSession,
    *,
    stale_after: timedelta,
    now: datetime | None = None,
) -> int:
    # Release rows whose worker died mid-attempt; the attempt is not counted.
    now = now or datetime.now(timezone.utc)
    cutoff = now - stale_after
    result = await session.execute(
        update(Delivery)
        .where(
            Delivery.status == DeliveryStatus.SENDING.value,
            Delivery.last_attempt_at <= cutoff,
        )
        .values(
            status=DeliveryStatus.RETRYING.value,
            next_attempt_at=now,
            claim_token=None,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    released = int(result.rowcount or 0)
    if released:
        logger.warning("stale_claims_released", extra={"count": released, "cutoff": cutoff.isoformat()})
    return released


async def renew_claim(
    session: AsyncSession,
    *,
    delivery: Delivery,
    now: datetime | None = None,
) -> bool:
    """Re-check ownership of a claimed row and restamp ``last_attempt_at``.

    Called right before each send so a row that waited behind earlier sends
    in its batch is not mistaken for abandoned. Returns False when the claim
    was swept or taken by another worker; the caller must not send.
    """
    now = now or datetime.now(timezone.utc)
    result = await session.execute(
        update(Delivery)
        .where(
            Delivery.id == delivery.id,
            Delivery.status == DeliveryStatus.SENDING.value,
            Delivery.claim_token == delivery.claim_token,
        )
        .values(last_attempt_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    return bool(result.rowcount)
