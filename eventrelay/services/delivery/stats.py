from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from eventrelay.domain.models import Delivery, Endpoint, as_utc
from eventrelay.domain.state import PERSISTED_STATUSES, DeliveryStatus
from eventrelay.persistence.guards import tenant_predicate
from eventrelay.persistence.repos.endpoints import list_endpoints, require_endpoint


def _empty_counts() -> dict[str, int]:
    return {status.value: 0 for status in PERSISTED_STATUSES}


@dataclass
class EndpointStats:
    endpoint_id: str
    url: str
    active: bool
    auto_disabled: bool
    auto_disabled_at: datetime | None
    consecutive_failures: int
    last_success_at: datetime | None
    last_failure_at: datetime | None
    last_failure_reason: str | None
    counts: dict[str, int] = field(default_factory=_empty_counts)
    avg_time_to_delivery_s: float | None = None

    @property
    def total(self) -> int:
        return sum(self.counts.values())

    def as_dict(self) -> dict[str, Any]:
        return {
            "endpoint_id": self.endpoint_id,
            "url": self.url,
            "active": self.active,
            "auto_disabled": self.auto_disabled,
            "auto_disabled_at": self.auto_disabled_at.isoformat() if self.auto_disabled_at else None,
            "consecutive_failures": self.consecutive_failures,
            "last_success_at": self.last_success_at.isoformat() if self.last_success_at else None,
            "last_failure_at": self.last_failure_at.isoformat() if self.last_failure_at else None,
            "last_failure_reason": self.last_failure_reason,
            "counts": dict(self.counts),
            "total": self.total,
            "avg_time_to_delivery_s": self.avg_time_to_delivery_s,
        }


def _delivery_seconds(dialect_name: str):
    if dialect_name == "sqlite":
        return (func.julianday(Delivery.delivered_at) - func.julianday(Delivery.created_at)) * 86400.0
    return func.extract("epoch", Delivery.delivered_at - Delivery.created_at)


def _from_endpoint(endpoint: Endpoint) -> EndpointStats:
    return EndpointStats(
        endpoint_id=endpoint.id,
        url=endpoint.url,
        active=bool(endpoint.active),
        auto_disabled=endpoint.auto_disabled_at is not None,
        auto_disabled_at=as_utc(endpoint.auto_disabled_at),
        consecutive_failures=int(endpoint.consecutive_failures or 0),
        last_success_at=as_utc(endpoint.last_success_at),
        last_failure_at=as_utc(endpoint.last_failure_at),
        last_failure_reason=endpoint.last_failure_reason,
    )


async def _aggregate(
    session: AsyncSession,
    *,
    tenant_id: str,
    stats_by_endpoint: dict[str, EndpointStats],
    endpoint_id: str | None = None,
) -> None:
    count_stmt = (
        select(Delivery.endpoint_id, Delivery.status, func.count(Delivery.id))
        .where(tenant_predicate(Delivery, tenant_id))
        .group_by(Delivery.endpoint_id, Delivery.status)
    )
    dialect_name = session.get_bind().dialect.name
    avg_stmt = (
        select(Delivery.endpoint_id, func.avg(_delivery_seconds(dialect_name)))
        .where(
            tenant_predicate(Delivery, tenant_id),
            Delivery.status == DeliveryStatus.DELIVERED.value,
            Delivery.delivered_at.is_not(None),
        )
        .group_by(Delivery.endpoint_id)
    )
    if endpoint_id is not None:
        count_stmt = count_stmt.where(Delivery.endpoint_id == endpoint_id)
        avg_stmt = avg_stmt.where(Delivery.endpoint_id == endpoint_id)

    for row_endpoint_id, status, count in (await session.execute(count_stmt)).all():
        stats = stats_by_endpoint.get(row_endpoint_id)
        if stats is not None and status in stats.counts:
            stats.counts[status] = int(count)
    for row_endpoint_id, average in (await session.execute(avg_stmt)).all():
        stats = stats_by_endpoint.get(row_endpoint_id)
        if stats is not None and average is not None:
            stats.avg_time_to_delivery_s = max(0.0, float(average))


async def endpoint_stats(
    session: AsyncSession,
    *,
    tenant_id: str,
    endpoint_id: str,
) -> EndpointStats:
    endpoint = await require_endpoint(session, tenant_id=tenant_id, endpoint_id=endpoint_id)
    stats = _from_endpoint(endpoint)
    await _aggregate(
        session, tenant_id=tenant_id, stats_by_endpoint={endpoint.id: stats}, endpoint_id=endpoint.id
    )
    return stats


async def tenant_stats(session: AsyncSession, *, tenant_id: str) -> list[EndpointStats]:
    endpoints = await list_endpoints(session, tenant_id=tenant_id)
    stats_by_endpoint = {endpoint.id: _from_endpoint(endpoint) for endpoint in endpoints}
    if stats_by_endpoint:
        await _aggregate(session, tenant_id=tenant_id, stats_by_endpoint=stats_by_endpoint)
    return [stats_by_endpoint[endpoint.id] for endpoint in endpoints]
