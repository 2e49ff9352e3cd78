from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import func, select, update

from eventrelay.core.errors import EventValidationError
from eventrelay.domain.models import Delivery, Endpoint
from eventrelay.persistence.db import SessionLocal
from eventrelay.persistence.repos.endpoints import update_endpoint
from eventrelay.services.delivery.enqueue import publish
from eventrelay.services.delivery.scheduler import claim_due
from eventrelay.services.delivery.worker import process_claimed
from eventrelay.tests.utils.factories import StubReceiver, load_delivery, make_endpoint, utc_now


async def _count_deliveries() -> int:
    async with SessionLocal() as session:
        return int(await session.scalar(select(func.count(Delivery.id))))


async def test_publish_fans_out_to_every_matching_endpoint() -> None:
    exact = await make_endpoint(event_types=["order.created"], max_retries=4)
    wildcard = await make_endpoint(event_types=["*"], max_retries=2)
    multi = await make_endpoint(event_types=["order.refunded", "order.created"])
    await make_endpoint(event_types=["order.refunded"])
    await make_endpoint(event_types=["order.created"], active=False)
    tripped = await make_endpoint(event_types=["order.created"])
    await make_endpoint(tenant_id="t2", event_types=["order.created"])
    async with SessionLocal() as session:
        await session.execute(update(Endpoint).where(Endpoint.id == tripped.id).values(auto_disabled_at=utc_now()))
        await session.commit()

    async with SessionLocal() as session:
        delivery_ids = await publish(
            session,
            tenant_id="t1",
            event_id="evt_1",
            event_type="order.created",
            payload={"order_id": 7},
        )

    assert len(delivery_ids) == 3
    assert len(set(delivery_ids)) == 3
    rows = [await load_delivery(delivery_id) for delivery_id in delivery_ids]
    assert {row.endpoint_id for row in rows} == {exact.id, wildcard.id, multi.id}
    max_attempts = {row.endpoint_id: row.max_attempts for row in rows}
    assert max_attempts[exact.id] == 4
    assert max_attempts[wildcard.id] == 2
    for row in rows:
        assert row.status == "pending"
        assert row.attempt_count == 0
        assert row.next_attempt_at is not None
        assert row.tenant_id == "t1"
        assert row.payload_json == {"order_id": 7}
        assert row.signature is not None and row.signature.startswith("sha256=")
        assert row.signed_at is not None


async def test_publish_without_subscribers_returns_empty_list() -> None:
    await make_endpoint(event_types=["order.refunded"])
    async with SessionLocal() as session:
        delivery_ids = await publish(
            session, tenant_id="t1", event_id="evt_2", event_type="order.created", payload={}
        )
    assert delivery_ids == []
    assert await _count_deliveries() == 0


async def test_republishing_an_event_never_duplicates_endpoint_deliveries() -> None:
    await make_endpoint()
    async with SessionLocal() as session:
        first = await publish(session, tenant_id="t1", event_id="evt_3", event_type="order.created", payload={})
    async with SessionLocal() as session:
        second = await publish(session, tenant_id="t1", event_id="evt_3", event_type="order.created", payload={})

    assert len(first) == 1
    assert second == []
    assert await _count_deliveries() == 1


@pytest.mark.parametrize(
    "kwargs",
    [
        {"event_id": "", "event_type": "order.created", "payload": {}},
        {"event_id": "evt", "event_type": " ", "payload": {}},
        {"event_id": "evt", "event_type": "order.created", "payload": "not-json-object"},
        {"event_id": "evt", "event_type": "order.created", "payload": {"when": object()}},
    ],
)
async def test_publish_rejects_malformed_events(kwargs: dict) -> None:
    await make_endpoint()
    async with SessionLocal() as session:
        with pytest.raises(EventValidationError):
            await publish(session, tenant_id="t1", **kwargs)
    assert await _count_deliveries() == 0


async def test_delivery_keeps_retry_budget_from_publish_time() -> None:
    endpoint = await make_endpoint(max_retries=2)
    async with SessionLocal() as session:
        (delivery_id,) = await publish(
            session, tenant_id="t1", event_id="evt_5", event_type="order.created", payload={}
        )
    async with SessionLocal() as session:
        await update_endpoint(session, tenant_id="t1", endpoint_id=endpoint.id, max_retries=5)

    assert (await load_delivery(delivery_id)).max_attempts == 2
    receiver = StubReceiver([500])
    async with receiver.client() as client:
        for _ in range(2):
            async with SessionLocal() as session:
                (claimed,) = await claim_due(session, limit=1, now=utc_now() + timedelta(hours=2))
            await process_claimed(SessionLocal, client, claimed)

    dead = await load_delivery(delivery_id)
    assert dead.status == "dead_letter"
    assert dead.attempt_count == 2
    assert len(receiver.requests) == 2

    async with SessionLocal() as session:
        (later_id,) = await publish(
            session, tenant_id="t1", event_id="evt_6", event_type="order.created", payload={}
        )
    assert (await load_delivery(later_id)).max_attempts == 5
