from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime


@dataclass(frozen=True)
class DeliveryOutcome:
    success: bool
    response_code: int | None = None
    response_body: str | None = None
    error: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    # Signature and epoch timestamp actually sent, when the request was signed.
    signature: str | None = None
    signed_at: int | None = None

    @property
    def duration_ms(self) -> int | None:
        if self.started_at is None or self.finished_at is None:
            return None
        return max(0, int((self.finished_at - self.started_at).total_seconds() * 1000))

    def failure_summary(self) -> str | None:
        # Short reason stored on the endpoint; the full error stays on the delivery.
        if self.success:
            return None
        if self.response_code is not None:
            return f"http_{self.response_code}"
        return (self.error or "delivery_failed")[:255]


@dataclass(frozen=True)
class RetryDecision:
    status: str
    attempt_count: int
    next_attempt_at: datetime | None
    delivered_at: datetime | None = None
