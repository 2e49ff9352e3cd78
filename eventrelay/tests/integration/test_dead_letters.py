from __future__ import annotations

import pytest
from sqlalchemy import update

from eventrelay.core.errors import DeliveryNotFoundError, InvalidDeliveryStateError
from eventrelay.domain.models import Delivery
from eventrelay.persistence.db import SessionLocal
from eventrelay.services.delivery.dead_letters import requeue, requeue_dead_letters
from eventrelay.services.delivery.enqueue import publish
from eventrelay.tests.utils.factories import load_delivery, make_endpoint


async def _dead_letters(count: int, *, endpoint_url: str = "https://hooks.example.com/receive") -> list[str]:
    endpoint = await make_endpoint(url=endpoint_url)
    delivery_ids: list[str] = []
    for index in range(count):
        async with SessionLocal() as session:
            delivery_ids += await publish(
                session,
                tenant_id="t1",
                event_id=f"{endpoint.id}_{index}",
                event_type="order.created",
                payload={"n": index},
            )
    async with SessionLocal() as session:
        await session.execute(
            update(Delivery)
            .where(Delivery.id.in_(delivery_ids))
            .values(status="dead_letter", attempt_count=3, next_attempt_at=None, last_error="http_500")
        )
        await session.commit()
    return delivery_ids


async def test_requeue_only_accepts_dead_letters() -> None:
    await make_endpoint()
    async with SessionLocal() as session:
        (pending_id,) = await publish(
            session, tenant_id="t1", event_id="evt_1", event_type="order.created", payload={}
        )
    async with SessionLocal() as session:
        with pytest.raises(InvalidDeliveryStateError) as excinfo:
            await requeue(session, tenant_id="t1", delivery_id=pending_id)
    assert excinfo.value.status == "pending"
    assert (await load_delivery(pending_id)).status == "pending"


async def test_requeue_is_tenant_scoped() -> None:
    (delivery_id,) = await _dead_letters(1)
    async with SessionLocal() as session:
        with pytest.raises(DeliveryNotFoundError):
            await requeue(session, tenant_id="t2", delivery_id=delivery_id)
        with pytest.raises(DeliveryNotFoundError):
            await requeue(session, tenant_id="t1", delivery_id="missing")
    assert (await load_delivery(delivery_id)).status == "dead_letter"


async def test_requeue_keeps_error_history() -> None:
    (delivery_id,) = await _dead_letters(1)
    async with SessionLocal() as session:
        row = await requeue(session, tenant_id="t1", delivery_id=delivery_id)
    assert row.status == "pending"
    assert row.attempt_count == 0
    assert row.last_error == "http_500"

    async with SessionLocal() as session:
        with pytest.raises(InvalidDeliveryStateError):
            await requeue(session, tenant_id="t1", delivery_id=delivery_id)


async def test_bulk_requeue_filters_by_endpoint_and_honours_limit() -> None:
    first = await _dead_letters(3, endpoint_url="https://a.example.com/hook")
    second = await _dead_letters(2, endpoint_url="https://b.example.com/hook")
    second_endpoint_id = (await load_delivery(second[0])).endpoint_id

    async with SessionLocal() as session:
        scoped = await requeue_dead_letters(session, tenant_id="t1", endpoint_id=second_endpoint_id)
    assert sorted(scoped) == sorted(second)
    for delivery_id in first:
        assert (await load_delivery(delivery_id)).status == "dead_letter"

    async with SessionLocal() as session:
        limited = await requeue_dead_letters(session, tenant_id="t1", limit=2)
    assert len(limited) == 2
    assert set(limited) <= set(first)

    async with SessionLocal() as session:
        assert await requeue_dead_letters(session, tenant_id="t2") == []
