from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from eventrelay.core.errors import EventValidationError, SecretUnavailableError
from eventrelay.domain.models import Delivery, Endpoint
from eventrelay.domain.state import DeliveryStatus
from eventrelay.persistence.repos.endpoints import list_fanout_endpoints
from eventrelay.services.delivery.signing import serialize_payload, sign
from eventrelay.services.security.secrets import decrypt_secret


logger = logging.getLogger(__name__)

# One retry covers a concurrent publish of the same event id racing on the unique key.
_FANOUT_PASSES = 2


def _validate_event(*, tenant_id: str, event_id: str, event_type: str, payload: Any) -> bytes:
    for field, value in (("tenant_id", tenant_id), ("event_id", event_id), ("event_type", event_type)):
        if not isinstance(value, str) or not value.strip():
            raise EventValidationError(f"{field} must be a non-empty string")
    if not isinstance(payload, (dict, list)):
        raise EventValidationError("payload must be a JSON object or array")
    try:
        return serialize_payload(payload)
    except (TypeError, ValueError) as exc:
        raise EventValidationError(f"payload is not JSON serializable: {exc}") from exc


def _initial_signature(
    endpoint: Endpoint,
    *,
    event_id: str,
    event_type: str,
    payload_bytes: bytes,
    timestamp: int,
) -> str | None:
    # Workers re-sign on every send, so a missing key only blanks the stored copy.
    try:
        secret = decrypt_secret(endpoint.secret_encrypted)
    except SecretUnavailableError:
        logger.warning(
            "enqueue_signature_skipped",
            extra={"endpoint_id": endpoint.id, "event_id": event_id},
        )
        return None
    return sign(secret, event_id, event_type, payload_bytes, timestamp)


async def _existing_endpoint_ids(
    session: AsyncSession, *, endpoint_ids: list[str], event_id: str
) -> set[str]:
    if not endpoint_ids:
        return set()
    rows = await session.execute(
        select(Delivery.endpoint_id).where(
            Delivery.endpoint_id.in_(endpoint_ids),
            Delivery.event_id == event_id,
        )
    )
    return set(rows.scalars().all())


async def publish(
    session: AsyncSession,
    *,
    tenant_id: str,
    event_id: str,
    event_type: str,
    payload: Any,
    now: datetime | None = None,
) -> list[str]:
    """Fan an event out into one pending delivery per matching endpoint.

    Returns the ids of the deliveries created by this call. No network I/O
    happens here; all rows are written in a single transaction.
    """
    payload_bytes = _validate_event(
        tenant_id=tenant_id, event_id=event_id, event_type=event_type, payload=payload
    )
    now = now or datetime.now(timezone.utc)
    timestamp = int(now.timestamp())

    for pass_no in range(1, _FANOUT_PASSES + 1):
        endpoints = await list_fanout_endpoints(session, tenant_id=tenant_id, event_type=event_type)
        already = await _existing_endpoint_ids(
            session, endpoint_ids=[endpoint.id for endpoint in endpoints], event_id=event_id
        )
        rows: list[Delivery] = []
        for endpoint in endpoints:
            if endpoint.id in already:
                continue
            signature = _initial_signature(
                endpoint,
                event_id=event_id,
                event_type=event_type,
                payload_bytes=payload_bytes,
                timestamp=timestamp,
            )
            rows.append(
                Delivery(
                    id=uuid4().hex,
                    tenant_id=tenant_id,
                    endpoint_id=endpoint.id,
                    event_id=event_id,
                    event_type=event_type,
                    payload_json=payload,
                    signature=signature,
                    signed_at=timestamp if signature else None,
                    status=DeliveryStatus.PENDING.value,
                    attempt_count=0,
                    max_attempts=endpoint.max_retries,
                    next_attempt_at=now,
                    created_at=now,
                    updated_at=now,
                )
            )
        if not rows:
            # Nothing to write; end the read transaction.
            await session.rollback()
            logger.info(
                "event_published",
                extra={"tenant_id": tenant_id, "event_id": event_id, "event_type": event_type, "deliveries": 0},
            )
            return []
        session.add_all(rows)
        try:
            await session.commit()
        except IntegrityError:
            await session.rollback()
            if pass_no == _FANOUT_PASSES:
                raise
            continue
        delivery_ids = [row.id for row in rows]
        logger.info(
            "event_published",
            extra={
                "tenant_id": tenant_id,
                "event_id": event_id,
                "event_type": event_type,
                "deliveries": len(delivery_ids),
            },
        )
        return delivery_ids
    return []
