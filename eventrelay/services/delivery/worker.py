from __future__ import annotations

from datetime import datetime, timezone
import logging
import random
from typing import Callable

import httpx
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from eventrelay.core.config import Settings, get_settings
from eventrelay.core.errors import SecretUnavailableError
from eventrelay.domain.models import Delivery, Endpoint
from eventrelay.domain.state import DeliveryStatus
from eventrelay.persistence.repos.deliveries import add_attempt
from eventrelay.services.delivery.circuit_breaker import apply_failure, apply_success
from eventrelay.services.delivery.outcome import DeliveryOutcome
from eventrelay.services.delivery.retry_policy import RetryPolicy, next_attempt
from eventrelay.services.delivery.scheduler import renew_claim
from eventrelay.services.delivery.signing import serialize_payload, sign, signature_headers
from eventrelay.services.security.secrets import decrypt_secret


logger = logging.getLogger(__name__)

SECRET_UNAVAILABLE = "secret_unavailable"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _truncate(value: str | None, limit: int) -> str | None:
    if value is None:
        return None
    return value[: max(0, limit)]


async def attempt_delivery(
    client: httpx.AsyncClient,
    *,
    delivery: Delivery,
    endpoint: Endpoint,
    secret: bytes,
    now: datetime | None = None,
    timeout: httpx.Timeout | float | None = None,
    body_max_chars: int | None = None,
) -> DeliveryOutcome:
    """POST one signed delivery and classify the result.

    Any 2xx is a success. Other status codes, timeouts and transport errors are
    failures; the latter carry no response code. Never raises for network
    problems.
    """
    settings = get_settings()
    body_limit = body_max_chars if body_max_chars is not None else settings.delivery_response_body_max_chars
    started_at = now or _utc_now()
    timestamp = int(started_at.timestamp())
    payload_bytes = serialize_payload(delivery.payload_json)
    signature = sign(secret, delivery.event_id, delivery.event_type, payload_bytes, timestamp)

    headers = dict(endpoint.headers_json or {})
    headers.update(
        signature_headers(
            signature=signature,
            timestamp=timestamp,
            event_id=delivery.event_id,
            event_type=delivery.event_type,
            delivery_id=delivery.id,
            attempt=int(delivery.attempt_count) + 1,
        )
    )
    headers["Content-Type"] = "application/json"
    request_timeout = timeout if timeout is not None else httpx.Timeout(settings.delivery_attempt_timeout_s)

    try:
        response = await client.post(endpoint.url, content=payload_bytes, headers=headers, timeout=request_timeout)
    except httpx.TimeoutException as exc:
        return DeliveryOutcome(
            success=False,
            error=_truncate(f"timeout: {exc.__class__.__name__}", 1024),
            started_at=started_at,
            finished_at=_utc_now(),
            signature=signature,
            signed_at=timestamp,
        )
    except (httpx.HTTPError, httpx.InvalidURL) as exc:
        return DeliveryOutcome(
            success=False,
            error=_truncate(f"connection_error: {exc.__class__.__name__}: {exc}", 1024),
            started_at=started_at,
            finished_at=_utc_now(),
            signature=signature,
            signed_at=timestamp,
        )

    status_code = int(response.status_code)
    success = 200 <= status_code < 300
    return DeliveryOutcome(
        success=success,
        response_code=status_code,
        response_body=_truncate(response.text, body_limit),
        error=None if success else f"http_{status_code}",
        started_at=started_at,
        finished_at=_utc_now(),
        signature=signature,
        signed_at=timestamp,
    )


async def record_outcome(
    session: AsyncSession,
    *,
    delivery: Delivery,
    outcome: DeliveryOutcome,
    settings: Settings | None = None,
    now: datetime | None = None,
    rng: random.Random | None = None,
) -> bool:
    """Persist one attempt: delivery state, attempt history and endpoint health.

    All three writes share one transaction. The delivery update only applies
    while the row is still ``sending`` under the same claim; if the claim was
    swept and taken by another worker the outcome is dropped and False is
    returned.
    """
    settings = settings or get_settings()
    now = now or outcome.finished_at or _utc_now()
    decision = next_attempt(delivery, outcome, now=now, policy=RetryPolicy.from_settings(settings), rng=rng)

    values: dict[str, object] = {
        "status": decision.status,
        "attempt_count": decision.attempt_count,
        "next_attempt_at": decision.next_attempt_at,
        "last_response_code": outcome.response_code,
        "last_response_body": outcome.response_body,
        "last_error": outcome.error,
        "claim_token": None,
        "updated_at": now,
    }
    if decision.delivered_at is not None:
        values["delivered_at"] = decision.delivered_at
    if outcome.signature is not None:
        values["signature"] = outcome.signature
        values["signed_at"] = outcome.signed_at

    result = await session.execute(
        update(Delivery)
        .where(
            Delivery.id == delivery.id,
            Delivery.status == DeliveryStatus.SENDING.value,
            Delivery.claim_token == delivery.claim_token,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if not result.rowcount:
        await session.rollback()
        logger.warning(
            "delivery_outcome_discarded",
            extra={"delivery_id": delivery.id, "endpoint_id": delivery.endpoint_id, "claim_token": delivery.claim_token},
        )
        return False

    add_attempt(
        session,
        delivery=delivery,
        attempt_no=int(delivery.attempt_count) + 1,
        outcome="success" if outcome.success else "failure",
        started_at=outcome.started_at or now,
        finished_at=outcome.finished_at or now,
        response_code=outcome.response_code,
        error=outcome.error,
        duration_ms=outcome.duration_ms,
    )
    if outcome.success:
        await apply_success(session, endpoint_id=delivery.endpoint_id, now=now)
    else:
        await apply_failure(
            session,
            endpoint_id=delivery.endpoint_id,
            now=now,
            reason=outcome.failure_summary(),
            threshold=settings.delivery_breaker_threshold,
        )
    await session.commit()

    log_extra = {
        "delivery_id": delivery.id,
        "endpoint_id": delivery.endpoint_id,
        "tenant_id": delivery.tenant_id,
        "status": decision.status,
        "attempt": decision.attempt_count,
        "response_code": outcome.response_code,
    }
    if decision.status == DeliveryStatus.DELIVERED.value:
        logger.info("delivery_succeeded", extra=log_extra)
    elif decision.status == DeliveryStatus.DEAD_LETTER.value:
        logger.warning("delivery_dead_lettered", extra={**log_extra, "error": outcome.error})
    else:
        logger.info(
            "delivery_retry_scheduled",
            extra={**log_extra, "next_attempt_at": decision.next_attempt_at.isoformat()},
        )
    return True


async def process_claimed(
    session_factory: Callable[[], AsyncSession],
    client: httpx.AsyncClient,
    delivery: Delivery,
    *,
    settings: Settings | None = None,
) -> bool:
    # No database transaction is held open across the HTTP call.
    settings = settings or get_settings()
    async with session_factory() as session:
        if not await renew_claim(session, delivery=delivery):
            logger.warning(
                "delivery_claim_lost",
                extra={
                    "delivery_id": delivery.id,
                    "endpoint_id": delivery.endpoint_id,
                    "claim_token": delivery.claim_token,
                },
            )
            return False
        endpoint = await session.get(Endpoint, delivery.endpoint_id)
    if endpoint is None:
        logger.warning("delivery_endpoint_missing", extra={"delivery_id": delivery.id, "endpoint_id": delivery.endpoint_id})
        return False

    try:
        secret = decrypt_secret(endpoint.secret_encrypted)
    except SecretUnavailableError:
        now = _utc_now()
        outcome = DeliveryOutcome(success=False, error=SECRET_UNAVAILABLE, started_at=now, finished_at=now)
    else:
        outcome = await attempt_delivery(
            client,
            delivery=delivery,
            endpoint=endpoint,
            secret=secret,
            timeout=httpx.Timeout(settings.delivery_attempt_timeout_s),
            body_max_chars=settings.delivery_response_body_max_chars,
        )

    async with session_factory() as session:
        return await record_outcome(session, delivery=delivery, outcome=outcome, settings=settings)
