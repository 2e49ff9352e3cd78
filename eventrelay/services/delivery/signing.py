from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import hashlib
import hmac
import json
from typing import Any, Mapping


HEADER_SIGNATURE = "X-Webhook-Signature"
HEADER_TIMESTAMP = "X-Webhook-Timestamp"
HEADER_EVENT_ID = "X-Webhook-Event-Id"
HEADER_EVENT_TYPE = "X-Webhook-Event-Type"
HEADER_DELIVERY_ID = "X-Webhook-Delivery-Id"
HEADER_ATTEMPT = "X-Webhook-Attempt"

# Lower-cased; endpoint custom headers may not override these.
RESERVED_HEADERS = frozenset(
    name.lower()
    for name in (
        HEADER_SIGNATURE,
        HEADER_TIMESTAMP,
        HEADER_EVENT_ID,
        HEADER_EVENT_TYPE,
        HEADER_DELIVERY_ID,
        HEADER_ATTEMPT,
        "Content-Type",
        "Content-Length",
        "Host",
    )
)

SIGNATURE_ALGORITHM = "sha256"


@dataclass(frozen=True)
class VerificationResult:
    ok: bool
    reason: str


def serialize_payload(payload: Any) -> bytes:
    # The bytes signed are the bytes sent, so serialization must be deterministic.
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def _signing_input(*, event_id: str, event_type: str, payload: bytes, timestamp: int) -> bytes:
    return f"{int(timestamp)}.{event_id}.{event_type}.".encode("utf-8") + payload


def sign(secret: bytes, event_id: str, event_type: str, payload: bytes, timestamp: int) -> str:
    digest = hmac.new(
        secret,
        _signing_input(event_id=event_id, event_type=event_type, payload=payload, timestamp=timestamp),
        hashlib.sha256,
    ).hexdigest()
    return f"{SIGNATURE_ALGORITHM}={digest}"


def signature_headers(
    *,
    signature: str,
    timestamp: int,
    event_id: str,
    event_type: str,
    delivery_id: str,
    attempt: int,
) -> dict[str, str]:
    return {
        HEADER_SIGNATURE: signature,
        HEADER_TIMESTAMP: str(int(timestamp)),
        HEADER_EVENT_ID: event_id,
        HEADER_EVENT_TYPE: event_type,
        HEADER_DELIVERY_ID: delivery_id,
        HEADER_ATTEMPT: str(int(attempt)),
    }


def _parse_signature(header_value: str) -> str | None:
    algorithm, separator, digest = header_value.strip().partition("=")
    if separator != "=" or algorithm.strip().lower() != SIGNATURE_ALGORITHM:
        return None
    digest_hex = digest.strip().lower()
    if len(digest_hex) != 64:
        return None
    try:
        int(digest_hex, 16)
    except ValueError:
        return None
    return digest_hex


def verify_signature(
    headers: Mapping[str, str],
    raw_body: bytes,
    secret: bytes,
    *,
    max_timestamp_skew_seconds: int | None = 300,
    now: datetime | None = None,
) -> VerificationResult:
    """Receiver-side check of a signed delivery.

    Headers are matched case-insensitively. A skew of ``None`` or ``0`` disables
    the freshness check.
    """
    normalized = {str(key).strip().lower(): str(value).strip() for key, value in headers.items()}
    provided = normalized.get(HEADER_SIGNATURE.lower())
    raw_timestamp = normalized.get(HEADER_TIMESTAMP.lower())
    event_id = normalized.get(HEADER_EVENT_ID.lower())
    event_type = normalized.get(HEADER_EVENT_TYPE.lower())
    if not provided:
        return VerificationResult(ok=False, reason="missing_signature")
    if not raw_timestamp or not event_id or not event_type:
        return VerificationResult(ok=False, reason="missing_required_headers")
    try:
        timestamp = int(raw_timestamp)
    except ValueError:
        return VerificationResult(ok=False, reason="invalid_timestamp")
    digest_hex = _parse_signature(provided)
    if digest_hex is None:
        return VerificationResult(ok=False, reason="invalid_signature_format")
    expected = sign(secret, event_id, event_type, raw_body, timestamp).partition("=")[2]
    if not hmac.compare_digest(expected, digest_hex):
        return VerificationResult(ok=False, reason="signature_mismatch")
    if max_timestamp_skew_seconds:
        reference = now or datetime.now(timezone.utc)
        if abs(reference.timestamp() - timestamp) > max_timestamp_skew_seconds:
            return VerificationResult(ok=False, reason="timestamp_skew")
    return VerificationResult(ok=True, reason="ok")
