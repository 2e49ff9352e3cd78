from __future__ import annotations

import logging
from typing import Any

from arq import cron
from arq.connections import RedisSettings

from eventrelay.core.config import get_settings
from eventrelay.core.logging import configure_logging
from eventrelay.persistence.db import SessionLocal
from eventrelay.services.delivery.enqueue import publish
from eventrelay.services.delivery.pool import DeliveryPool, run_stale_sweep

logger = logging.getLogger(__name__)


async def publish_event(ctx, tenant_id: str, event_id: str, event_type: str, payload: Any) -> list[str]:
    # Lets other services publish through Redis instead of importing the package.
    async with SessionLocal() as session:
        return await publish(
            session,
            tenant_id=tenant_id,
            event_id=event_id,
            event_type=event_type,
            payload=payload,
        )


def sweep_schedule(interval_s: int) -> dict[str, Any]:
    """cron() fields that fire the stale sweep every ``interval_s`` seconds.

    Cron fields only step within one unit: intervals round down to whole
    minutes past 60s and whole hours past 3600s, and a step that does not
    divide the unit restarts at the unit boundary.
    """
    interval_s = max(1, int(interval_s))
    if interval_s < 60:
        return {"second": set(range(0, 60, interval_s))}
    minutes = interval_s // 60
    if minutes < 60:
        return {"second": 0, "minute": set(range(0, 60, minutes))}
    hours = min(24, minutes // 60)
    return {"second": 0, "minute": 0, "hour": set(range(0, 24, hours))}


async def sweep_stale_deliveries(ctx) -> int:
    return await run_stale_sweep()


async def _startup(ctx) -> None:
    # The pool polls the database itself; arq only hosts it and the sweep cron.
    configure_logging()
    pool = DeliveryPool(run_sweeper=False)
    await pool.start()
    ctx["delivery_pool"] = pool


async def _shutdown(ctx) -> None:
    pool = ctx.get("delivery_pool")
    if pool:
        await pool.stop()


class WorkerSettings:
    # Keep worker settings as class attributes for ARQ CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.delivery_queue_name
    functions = [publish_event]
    cron_jobs = [
        cron(
            sweep_stale_deliveries,
            run_at_startup=True,
            **sweep_schedule(settings.delivery_sweep_interval_s),
        )
    ]
    on_startup = _startup
    on_shutdown = _shutdown
