from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
import random
from typing import Protocol

from eventrelay.core.config import Settings, get_settings
from eventrelay.domain.state import DeliveryStatus
from eventrelay.services.delivery.outcome import DeliveryOutcome, RetryDecision


class AttemptState(Protocol):
    attempt_count: int
    max_attempts: int


@dataclass(frozen=True)
class RetryPolicy:
    base_s: float = 30.0
    cap_s: float = 3600.0
    jitter: float = 0.2

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "RetryPolicy":
        settings = settings or get_settings()
        return cls(
            base_s=settings.delivery_backoff_base_s,
            cap_s=settings.delivery_backoff_cap_s,
            jitter=settings.delivery_backoff_jitter,
        )


def base_delay_seconds(attempt_count: int, policy: RetryPolicy) -> float:
    # Un-jittered delay; the first retry (attempt_count=1) waits base_s.
    exponent = max(0, int(attempt_count) - 1)
    # Bound the exponent so huge attempt counts cannot overflow the float.
    if exponent > 62:
        return policy.cap_s
    return min(policy.base_s * (2**exponent), policy.cap_s)


def backoff_delay(
    attempt_count: int,
    policy: RetryPolicy,
    rng: random.Random | None = None,
) -> timedelta:
    delay = base_delay_seconds(attempt_count, policy)
    if policy.jitter > 0:
        factor = (rng or random).uniform(1.0 - policy.jitter, 1.0 + policy.jitter)
        delay *= factor
    return timedelta(seconds=min(delay, policy.cap_s))


def next_attempt(
    delivery: AttemptState,
    outcome: DeliveryOutcome,
    *,
    now: datetime,
    policy: RetryPolicy,
    rng: random.Random | None = None,
) -> RetryDecision:
    """Decide the state a delivery moves to after one attempt.

    Pure apart from the jitter draw; pass a seeded ``random.Random`` for
    reproducible results.
    """
    max_attempts = max(1, int(delivery.max_attempts))
    attempt_count = min(int(delivery.attempt_count) + 1, max_attempts)
    if outcome.success:
        return RetryDecision(
            status=DeliveryStatus.DELIVERED.value,
            attempt_count=attempt_count,
            next_attempt_at=None,
            delivered_at=now,
        )
    if attempt_count >= max_attempts:
        return RetryDecision(
            status=DeliveryStatus.DEAD_LETTER.value,
            attempt_count=attempt_count,
            next_attempt_at=None,
        )
    return RetryDecision(
        status=DeliveryStatus.RETRYING.value,
        attempt_count=attempt_count,
        next_attempt_at=now + backoff_delay(attempt_count, policy, rng),
    )
