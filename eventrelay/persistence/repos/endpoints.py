from __future__ import annotations

from typing import Any, Iterable
from urllib.parse import urlsplit
from uuid import uuid4

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from eventrelay.core.config import get_settings
from eventrelay.core.errors import EndpointNotFoundError, EndpointValidationError
from eventrelay.domain.models import Delivery, DeliveryAttempt, Endpoint
from eventrelay.persistence.guards import require_tenant_id, tenant_predicate
from eventrelay.services.delivery.signing import RESERVED_HEADERS
from eventrelay.services.security.secrets import encrypt_secret


def validate_url(url: str) -> str:
    normalized = (url or "").strip()
    parts = urlsplit(normalized)
    if parts.scheme not in {"http", "https"} or not parts.netloc:
        raise EndpointValidationError("url must be an absolute http:// or https:// URL")
    return normalized


def normalize_headers(headers: dict[str, Any] | None) -> dict[str, str]:
    # Custom headers may not shadow the signature contract.
    if headers is None:
        return {}
    if not isinstance(headers, dict):
        raise EndpointValidationError("headers must be an object")
    normalized: dict[str, str] = {}
    for raw_key, raw_value in headers.items():
        key = str(raw_key).strip()
        if not key:
            raise EndpointValidationError("header names must be non-empty")
        if key.lower() in RESERVED_HEADERS:
            raise EndpointValidationError(f"header '{key}' is reserved")
        normalized[key] = str(raw_value).strip()
    return normalized


def normalize_event_types(event_types: Iterable[str] | None) -> list[str]:
    if event_types is None or isinstance(event_types, str):
        raise EndpointValidationError("event_types must be a list of event type names")
    normalized: list[str] = []
    for raw in event_types:
        value = str(raw).strip()
        if not value:
            raise EndpointValidationError("event_types entries must be non-empty")
        if value not in normalized:
            normalized.append(value)
    if not normalized:
        raise EndpointValidationError("event_types must subscribe to at least one event type")
    return normalized


def validate_max_retries(max_retries: int | None) -> int:
    if max_retries is None:
        return int(get_settings().delivery_default_max_retries)
    if isinstance(max_retries, bool) or not isinstance(max_retries, int) or max_retries < 1:
        raise EndpointValidationError("max_retries must be an integer >= 1")
    return max_retries


async def create_endpoint(
    session: AsyncSession,
    *,
    tenant_id: str,
    url: str,
    secret: bytes | str,
    event_types: Iterable[str],
    headers: dict[str, Any] | None = None,
    max_retries: int | None = None,
    description: str | None = None,
    active: bool = True,
) -> Endpoint:
    row = Endpoint(
        id=uuid4().hex,
        tenant_id=require_tenant_id(tenant_id),
        url=validate_url(url),
        description=description,
        secret_encrypted=encrypt_secret(secret),
        event_types=normalize_event_types(event_types),
        headers_json=normalize_headers(headers),
        max_retries=validate_max_retries(max_retries),
        active=bool(active),
        consecutive_failures=0,
    )
    session.add(row)
    await session.commit()
    await session.refresh(row)
    return row


async def get_endpoint(
    session: AsyncSession,
    *,
    tenant_id: str,
    endpoint_id: str,
) -> Endpoint | None:
    result = await session.execute(
        select(Endpoint).where(tenant_predicate(Endpoint, tenant_id), Endpoint.id == endpoint_id)
    )
    return result.scalar_one_or_none()


async def require_endpoint(
    session: AsyncSession,
    *,
    tenant_id: str,
    endpoint_id: str,
) -> Endpoint:
    row = await get_endpoint(session, tenant_id=tenant_id, endpoint_id=endpoint_id)
    if row is None:
        raise EndpointNotFoundError(f"endpoint {endpoint_id} not found")
    return row


async def list_endpoints(
    session: AsyncSession,
    *,
    tenant_id: str,
    active: bool | None = None,
) -> list[Endpoint]:
    stmt = select(Endpoint).where(tenant_predicate(Endpoint, tenant_id))
    if active is not None:
        stmt = stmt.where(Endpoint.active.is_(active))
    stmt = stmt.order_by(Endpoint.created_at.asc(), Endpoint.id.asc())
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def list_fanout_endpoints(
    session: AsyncSession,
    *,
    tenant_id: str,
    event_type: str,
) -> list[Endpoint]:
    """Endpoints that should receive a delivery for ``event_type``.

    Active and not auto-disabled rows are filtered in SQL. Subscription
    matching happens here because JSON containment differs across dialects.
    """
    result = await session.execute(
        select(Endpoint)
        .where(
            tenant_predicate(Endpoint, tenant_id),
            Endpoint.active.is_(True),
            Endpoint.auto_disabled_at.is_(None),
        )
        .order_by(Endpoint.created_at.asc(), Endpoint.id.asc())
    )
    return [row for row in result.scalars().all() if row.subscribes_to(event_type)]


async def update_endpoint(
    session: AsyncSession,
    *,
    tenant_id: str,
    endpoint_id: str,
    url: str | None = None,
    secret: bytes | str | None = None,
    event_types: Iterable[str] | None = None,
    headers: dict[str, Any] | None = None,
    max_retries: int | None = None,
    description: str | None = None,
    active: bool | None = None,
) -> Endpoint:
    # Configuration only; health fields belong to outcome recording and re-enable.
    row = await require_endpoint(session, tenant_id=tenant_id, endpoint_id=endpoint_id)
    if url is not None:
        row.url = validate_url(url)
    if secret is not None:
        row.secret_encrypted = encrypt_secret(secret)
    if event_types is not None:
        row.event_types = normalize_event_types(event_types)
    if headers is not None:
        row.headers_json = normalize_headers(headers)
    if max_retries is not None:
        row.max_retries = validate_max_retries(max_retries)
    if description is not None:
        row.description = description
    if active is not None:
        row.active = bool(active)
    await session.commit()
    await session.refresh(row)
    return row


async def delete_endpoint(
    session: AsyncSession,
    *,
    tenant_id: str,
    endpoint_id: str,
) -> None:
    row = await require_endpoint(session, tenant_id=tenant_id, endpoint_id=endpoint_id)
    # Explicit child deletes; SQLite does not enforce ON DELETE CASCADE by default.
    await session.execute(delete(DeliveryAttempt).where(DeliveryAttempt.endpoint_id == row.id))
    await session.execute(delete(Delivery).where(Delivery.endpoint_id == row.id))
    await session.delete(row)
    await session.commit()
