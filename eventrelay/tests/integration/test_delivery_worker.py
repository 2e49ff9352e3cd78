from __future__ import annotations

from datetime import timedelta
import json

import httpx
from sqlalchemy import update

from eventrelay.domain.models import Delivery, Endpoint
from eventrelay.persistence.db import SessionLocal
from eventrelay.services.delivery.dead_letters import requeue
from eventrelay.services.delivery.enqueue import publish
from eventrelay.services.delivery.outcome import DeliveryOutcome
from eventrelay.services.delivery.pool import run_delivery_cycle
from eventrelay.services.delivery.scheduler import claim_due, renew_claim, sweep_stale_claims
from eventrelay.services.delivery.signing import (
    HEADER_ATTEMPT,
    HEADER_DELIVERY_ID,
    serialize_payload,
    verify_signature,
)
from eventrelay.services.delivery.worker import attempt_delivery, process_claimed, record_outcome
from eventrelay.tests.utils.factories import (
    TEST_SECRET,
    StubReceiver,
    load_attempts,
    load_delivery,
    load_endpoint,
    make_endpoint,
    settings_with,
    utc_now,
)


async def _publish(event_id: str = "evt_1", payload: dict | None = None) -> str:
    async with SessionLocal() as session:
        (delivery_id,) = await publish(
            session,
            tenant_id="t1",
            event_id=event_id,
            event_type="order.created",
            payload=payload or {"order_id": 1},
        )
    return delivery_id


async def _claim_one(*, ahead: timedelta = timedelta(hours=2)) -> Delivery:
    # Claim as if the clock had moved past any scheduled backoff.
    async with SessionLocal() as session:
        (claimed,) = await claim_due(session, limit=1, now=utc_now() + ahead)
    return claimed


async def test_failures_exhaust_budget_then_requeue_restores_it() -> None:
    endpoint = await make_endpoint(max_retries=3)
    delivery_id = await _publish()
    receiver = StubReceiver([500])
    settings = settings_with(delivery_backoff_jitter=0.0)

    async with receiver.client() as client:
        before = utc_now()
        await process_claimed(SessionLocal, client, await _claim_one(ahead=timedelta(0)), settings=settings)
        first = await load_delivery(delivery_id)
        assert first.status == "retrying"
        assert first.attempt_count == 1
        first_delay = (first.next_attempt_at.replace(tzinfo=None) - before.replace(tzinfo=None)).total_seconds()
        assert 30 <= first_delay <= 35

        before = utc_now()
        await process_claimed(SessionLocal, client, await _claim_one(), settings=settings)
        second = await load_delivery(delivery_id)
        assert second.status == "retrying"
        assert second.attempt_count == 2
        second_delay = (second.next_attempt_at.replace(tzinfo=None) - before.replace(tzinfo=None)).total_seconds()
        assert 60 <= second_delay <= 65

        await process_claimed(SessionLocal, client, await _claim_one(), settings=settings)

    dead = await load_delivery(delivery_id)
    assert dead.status == "dead_letter"
    assert dead.attempt_count == 3
    assert dead.next_attempt_at is None
    assert dead.last_response_code == 500
    assert dead.claim_token is None
    assert len(receiver.requests) == 3
    assert [int(request.headers[HEADER_ATTEMPT]) for request in receiver.requests] == [1, 2, 3]

    attempts = await load_attempts(delivery_id)
    assert [attempt.attempt_no for attempt in attempts] == [1, 2, 3]
    assert {attempt.outcome for attempt in attempts} == {"failure"}
    assert all(attempt.response_code == 500 for attempt in attempts)

    health = await load_endpoint(endpoint.id)
    assert health.consecutive_failures == 3
    assert health.last_failure_reason == "http_500"

    async with SessionLocal() as session:
        requeued = await requeue(session, tenant_id="t1", delivery_id=delivery_id)
    assert requeued.status == "pending"
    assert requeued.attempt_count == 0
    assert requeued.next_attempt_at is not None
    assert requeued.last_response_code == 500
    assert (await load_endpoint(endpoint.id)).consecutive_failures == 3
    assert len(await load_attempts(delivery_id)) == 3


async def test_success_delivers_and_resets_failure_streak() -> None:
    endpoint = await make_endpoint(max_retries=5)
    async with SessionLocal() as session:
        await session.execute(
            update(Endpoint).where(Endpoint.id == endpoint.id).values(consecutive_failures=4)
        )
        await session.commit()
    delivery_id = await _publish()
    receiver = StubReceiver([500, 200])

    async with receiver.client() as client:
        await process_claimed(SessionLocal, client, await _claim_one(ahead=timedelta(0)))
        await process_claimed(SessionLocal, client, await _claim_one())

    delivered = await load_delivery(delivery_id)
    assert delivered.status == "delivered"
    assert delivered.delivered_at is not None
    assert delivered.next_attempt_at is None
    assert delivered.attempt_count == 2
    assert delivered.last_response_code == 200
    assert delivered.last_error is None

    health = await load_endpoint(endpoint.id)
    assert health.consecutive_failures == 0
    assert health.last_success_at is not None
    assert [attempt.outcome for attempt in await load_attempts(delivery_id)] == ["failure", "success"]


async def test_request_is_signed_json_with_custom_headers() -> None:
    await make_endpoint(headers={"X-Team": "billing"})
    delivery_id = await _publish(payload={"order_id": 9, "amount": "10.00"})
    receiver = StubReceiver([204])

    async with receiver.client() as client:
        await process_claimed(SessionLocal, client, await _claim_one(ahead=timedelta(0)))

    (request,) = receiver.requests
    assert request.method == "POST"
    assert str(request.url) == "https://hooks.example.com/receive"
    assert request.headers["content-type"] == "application/json"
    assert request.headers["x-team"] == "billing"
    assert request.headers[HEADER_DELIVERY_ID] == delivery_id
    assert request.content == serialize_payload({"order_id": 9, "amount": "10.00"})
    assert json.loads(request.content) == {"order_id": 9, "amount": "10.00"}
    verification = verify_signature(request.headers, request.content, TEST_SECRET.encode("utf-8"))
    assert verification.ok, verification.reason

    stored = await load_delivery(delivery_id)
    assert stored.status == "delivered"
    assert stored.signature == request.headers["x-webhook-signature"]
    assert stored.signed_at == int(request.headers["x-webhook-timestamp"])


async def test_timeouts_are_failures_without_response_code() -> None:
    endpoint = await make_endpoint()
    delivery_id = await _publish()
    receiver = StubReceiver(error=httpx.ConnectTimeout("timed out"))

    async with receiver.client() as client:
        await process_claimed(SessionLocal, client, await _claim_one(ahead=timedelta(0)))

    row = await load_delivery(delivery_id)
    assert row.status == "retrying"
    assert row.last_response_code is None
    assert row.last_error.startswith("timeout")
    assert (await load_endpoint(endpoint.id)).consecutive_failures == 1


async def test_connection_errors_are_retried() -> None:
    await make_endpoint()
    delivery_id = await _publish()
    receiver = StubReceiver(error=httpx.ConnectError("connection refused"))

    async with receiver.client() as client:
        await process_claimed(SessionLocal, client, await _claim_one(ahead=timedelta(0)))

    row = await load_delivery(delivery_id)
    assert row.status == "retrying"
    assert row.last_error.startswith("connection_error")


async def test_undecryptable_secret_is_a_transient_failure() -> None:
    endpoint = await make_endpoint()
    delivery_id = await _publish()
    async with SessionLocal() as session:
        await session.execute(
            update(Endpoint).where(Endpoint.id == endpoint.id).values(secret_encrypted="not-a-fernet-token")
        )
        await session.commit()
    receiver = StubReceiver([200])

    async with receiver.client() as client:
        await process_claimed(SessionLocal, client, await _claim_one(ahead=timedelta(0)))

    assert receiver.requests == []
    row = await load_delivery(delivery_id)
    assert row.status == "retrying"
    assert row.last_error == "secret_unavailable"
    assert (await load_endpoint(endpoint.id)).last_failure_reason == "secret_unavailable"


async def test_outcome_for_a_swept_claim_is_discarded() -> None:
    await make_endpoint()
    delivery_id = await _publish()
    stale_claim = await _claim_one(ahead=timedelta(0))
    async with SessionLocal() as session:
        released = await sweep_stale_claims(session, stale_after=timedelta(0), now=utc_now() + timedelta(seconds=1))
    assert released == 1
    fresh_claim = await _claim_one()
    assert fresh_claim.claim_token != stale_claim.claim_token

    async with SessionLocal() as session:
        recorded = await record_outcome(
            session,
            delivery=stale_claim,
            outcome=DeliveryOutcome(success=True, response_code=200),
        )
    assert recorded is False
    row = await load_delivery(delivery_id)
    assert row.status == "sending"
    assert row.claim_token == fresh_claim.claim_token
    assert await load_attempts(delivery_id) == []


async def test_retries_are_resigned_with_a_fresh_timestamp() -> None:
    await make_endpoint()
    await _publish(payload={"order_id": 3})
    delivery = await _claim_one(ahead=timedelta(0))
    endpoint = await load_endpoint(delivery.endpoint_id)
    receiver = StubReceiver([500, 200])
    first_at = utc_now()
    retry_at = first_at + timedelta(seconds=90)

    async with receiver.client() as client:
        first = await attempt_delivery(
            client, delivery=delivery, endpoint=endpoint, secret=TEST_SECRET.encode("utf-8"), now=first_at
        )
        retry = await attempt_delivery(
            client, delivery=delivery, endpoint=endpoint, secret=TEST_SECRET.encode("utf-8"), now=retry_at
        )

    assert first.signed_at == int(first_at.timestamp())
    assert retry.signed_at == first.signed_at + 90
    assert retry.signature != first.signature
    first_request, retry_request = receiver.requests
    assert first_request.content == retry_request.content
    assert int(retry_request.headers["x-webhook-timestamp"]) - int(first_request.headers["x-webhook-timestamp"]) == 90
    for request, sent_at in ((first_request, first_at), (retry_request, retry_at)):
        verification = verify_signature(
            request.headers, request.content, TEST_SECRET.encode("utf-8"), now=sent_at
        )
        assert verification.ok, verification.reason


async def test_row_swept_while_queued_in_batch_is_not_sent_twice() -> None:
    await make_endpoint()
    first_id = await _publish("evt_1")
    second_id = await _publish("evt_2")
    async with SessionLocal() as session:
        batch = await claim_due(session, limit=2)
    assert {row.id for row in batch} == {first_id, second_id}
    by_id = {row.id: row for row in batch}
    receiver = StubReceiver([200])

    async with receiver.client() as client:
        assert await process_claimed(SessionLocal, client, by_id[first_id])

        # The second row waits behind the first long enough to look abandoned.
        async with SessionLocal() as session:
            await session.execute(
                update(Delivery)
                .where(Delivery.id == second_id)
                .values(last_attempt_at=utc_now() - timedelta(minutes=10))
            )
            await session.commit()
        async with SessionLocal() as session:
            assert await sweep_stale_claims(session, stale_after=timedelta(minutes=5)) == 1
        assert await run_delivery_cycle(client=client) == {"claimed": 1, "recorded": 1}

        assert await process_claimed(SessionLocal, client, by_id[second_id]) is False

    sent = [request.headers[HEADER_DELIVERY_ID] for request in receiver.requests]
    assert sorted(sent) == sorted([first_id, second_id])
    assert (await load_delivery(second_id)).status == "delivered"
    assert len(await load_attempts(second_id)) == 1


async def test_renewed_claim_survives_the_stale_sweep() -> None:
    await make_endpoint()
    waiting_id = await _publish("evt_1")
    abandoned_id = await _publish("evt_2")
    async with SessionLocal() as session:
        batch = {row.id: row for row in await claim_due(session, limit=2)}
    async with SessionLocal() as session:
        await session.execute(
            update(Delivery)
            .where(Delivery.id.in_([waiting_id, abandoned_id]))
            .values(last_attempt_at=utc_now() - timedelta(minutes=10))
        )
        await session.commit()

    async with SessionLocal() as session:
        assert await renew_claim(session, delivery=batch[waiting_id])
    async with SessionLocal() as session:
        assert await sweep_stale_claims(session, stale_after=timedelta(minutes=5)) == 1

    assert (await load_delivery(waiting_id)).status == "sending"
    assert (await load_delivery(abandoned_id)).status == "retrying"
    async with SessionLocal() as session:
        assert await renew_claim(session, delivery=batch[abandoned_id]) is False
