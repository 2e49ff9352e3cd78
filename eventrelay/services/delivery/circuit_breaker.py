from __future__ import annotations

from datetime import datetime, timezone
import logging

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from eventrelay.domain.models import Endpoint
from eventrelay.persistence.repos.endpoints import require_endpoint


logger = logging.getLogger(__name__)


async def apply_success(session: AsyncSession, *, endpoint_id: str, now: datetime) -> None:
    # A success resets the streak but never lifts an auto-disable.
    await session.execute(
        update(Endpoint)
        .where(Endpoint.id == endpoint_id)
        .values(consecutive_failures=0, last_success_at=now)
        .execution_options(synchronize_session=False)
    )


async def apply_failure(
    session: AsyncSession,
    *,
    endpoint_id: str,
    now: datetime,
    reason: str | None,
    threshold: int,
) -> bool:
    """Count one failure against the endpoint and trip the breaker at ``threshold``.

    Both statements run in the caller's transaction. The increment is done in
    SQL so concurrent workers recording failures for the same endpoint never
    lose an update. Returns True only for the call that actually tripped it.
    """
    await session.execute(
        update(Endpoint)
        .where(Endpoint.id == endpoint_id)
        .values(
            consecutive_failures=Endpoint.consecutive_failures + 1,
            last_failure_at=now,
            last_failure_reason=reason,
        )
        .execution_options(synchronize_session=False)
    )
    tripped = await session.execute(
        update(Endpoint)
        .where(
            Endpoint.id == endpoint_id,
            Endpoint.consecutive_failures >= threshold,
            Endpoint.auto_disabled_at.is_(None),
        )
        .values(auto_disabled_at=now)
        .execution_options(synchronize_session=False)
    )
    if tripped.rowcount:
        logger.warning(
            "endpoint_auto_disabled",
            extra={"endpoint_id": endpoint_id, "threshold": threshold, "reason": reason},
        )
        return True
    return False


async def reenable_endpoint(
    session: AsyncSession,
    *,
    tenant_id: str,
    endpoint_id: str,
    now: datetime | None = None,
) -> Endpoint:
    row = await require_endpoint(session, tenant_id=tenant_id, endpoint_id=endpoint_id)
    was_disabled = row.auto_disabled_at is not None
    row.auto_disabled_at = None
    row.consecutive_failures = 0
    row.updated_at = now or datetime.now(timezone.utc)
    await session.commit()
    await session.refresh(row)
    logger.info(
        "endpoint_reenabled",
        extra={"tenant_id": tenant_id, "endpoint_id": endpoint_id, "was_auto_disabled": was_disabled},
    )
    return row
