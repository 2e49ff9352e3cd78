from __future__ import annotations

import asyncio
from datetime import timedelta
import logging
from typing import Callable

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from eventrelay.core.config import Settings, get_settings
from eventrelay.persistence.db import SessionLocal
from eventrelay.services.delivery.scheduler import claim_due, sweep_stale_claims
from eventrelay.services.delivery.worker import process_claimed


logger = logging.getLogger(__name__)


async def run_delivery_cycle(
    *,
    client: httpx.AsyncClient,
    session_factory: Callable[[], AsyncSession] = SessionLocal,
    settings: Settings | None = None,
) -> dict[str, int]:
    # Claim one batch and attempt each row in order.
    settings = settings or get_settings()
    async with session_factory() as session:
        claimed = await claim_due(session, limit=settings.delivery_claim_batch_size)
    recorded = 0
    for delivery in claimed:
        try:
            if await process_claimed(session_factory, client, delivery, settings=settings):
                recorded += 1
        except Exception:  # noqa: BLE001 - one bad row must not strand the rest of the batch.
            logger.exception("delivery processing failed", extra={"delivery_id": delivery.id})
    return {"claimed": len(claimed), "recorded": recorded}


async def run_stale_sweep(
    *,
    session_factory: Callable[[], AsyncSession] = SessionLocal,
    settings: Settings | None = None,
) -> int:
    settings = settings or get_settings()
    async with session_factory() as session:
        return await sweep_stale_claims(
            session, stale_after=timedelta(seconds=settings.delivery_stale_claim_after_s)
        )


class DeliveryPool:
    """Fixed set of asyncio workers polling for due deliveries.

    Workers share one ``httpx.AsyncClient``; a separate task releases stale
    claims on its own interval. Both loops log and continue on errors and exit
    on ``stop()``.
    """

    def __init__(
        self,
        *,
        session_factory: Callable[[], AsyncSession] = SessionLocal,
        client: httpx.AsyncClient | None = None,
        settings: Settings | None = None,
        concurrency: int | None = None,
        run_sweeper: bool = True,
    ) -> None:
        self.settings = settings or get_settings()
        self.session_factory = session_factory
        self.concurrency = max(1, int(concurrency or self.settings.delivery_worker_concurrency))
        self.run_sweeper = run_sweeper
        self._client = client
        self._owns_client = client is None
        self._stopping = asyncio.Event()
        self._tasks: list[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("DeliveryPool has not been started")
        return self._client

    async def run_delivery_cycle(self) -> dict[str, int]:
        return await run_delivery_cycle(
            client=self.client, session_factory=self.session_factory, settings=self.settings
        )

    async def _wait(self, seconds: float) -> None:
        # Sleep that wakes early on stop().
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _worker_loop(self, index: int) -> None:
        logger.info("delivery worker started", extra={"worker": index})
        while not self._stopping.is_set():
            try:
                result = await self.run_delivery_cycle()
            except Exception:  # noqa: BLE001 - keep loop alive while surfacing errors in logs.
                logger.exception("delivery cycle failed", extra={"worker": index})
                await self._wait(self.settings.delivery_poll_interval_s)
                continue
            if not result["claimed"]:
                await self._wait(self.settings.delivery_poll_interval_s)
        logger.info("delivery worker stopped", extra={"worker": index})

    async def _sweep_loop(self) -> None:
        while not self._stopping.is_set():
            try:
                await run_stale_sweep(session_factory=self.session_factory, settings=self.settings)
            except Exception:  # noqa: BLE001 - keep loop alive while surfacing errors in logs.
                logger.exception("stale claim sweep failed")
            await self._wait(self.settings.delivery_sweep_interval_s)

    async def start(self) -> None:
        if self.running:
            return
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self.settings.delivery_attempt_timeout_s))
        self._stopping.clear()
        self._tasks = [
            asyncio.create_task(self._worker_loop(index), name=f"delivery-worker-{index}")
            for index in range(self.concurrency)
        ]
        if self.run_sweeper:
            self._tasks.append(asyncio.create_task(self._sweep_loop(), name="delivery-sweeper"))
        logger.info("delivery pool started", extra={"concurrency": self.concurrency})

    async def stop(self, *, timeout: float = 10.0) -> None:
        self._stopping.set()
        if self._tasks:
            _, pending = await asyncio.wait(self._tasks, timeout=timeout)
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
        self._tasks = []
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None
        logger.info("delivery pool stopped")

    async def serve_forever(self) -> None:
        await self.start()
        try:
            await self._stopping.wait()
        finally:
            await self.stop()

    async def __aenter__(self) -> "DeliveryPool":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.stop()
