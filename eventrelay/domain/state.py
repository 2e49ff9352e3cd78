from __future__ import annotations

from enum import Enum


class DeliveryStatus(str, Enum):
    PENDING = "pending"
    SENDING = "sending"
    DELIVERED = "delivered"
    RETRYING = "retrying"
    DEAD_LETTER = "dead_letter"
    # Transient: handed to the retry policy, never persisted.
    FAILED = "failed"


PERSISTED_STATUSES: tuple[DeliveryStatus, ...] = (
    DeliveryStatus.PENDING,
    DeliveryStatus.SENDING,
    DeliveryStatus.DELIVERED,
    DeliveryStatus.RETRYING,
    DeliveryStatus.DEAD_LETTER,
)
READY_STATUSES: tuple[str, ...] = (DeliveryStatus.PENDING.value, DeliveryStatus.RETRYING.value)
TERMINAL_STATUSES: frozenset[str] = frozenset(
    {DeliveryStatus.DELIVERED.value, DeliveryStatus.DEAD_LETTER.value}
)


def parse_status(value: str) -> DeliveryStatus:
    normalized = value.strip().lower()
    try:
        status = DeliveryStatus(normalized)
    except ValueError as exc:
        raise ValueError(f"Unknown delivery status: {value}") from exc
    if status is DeliveryStatus.FAILED:
        raise ValueError("failed is not a stored delivery status")
    return status
