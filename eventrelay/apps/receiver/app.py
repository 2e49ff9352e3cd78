from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import json
import logging
import os
from threading import Lock
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from eventrelay.services.delivery.signing import (
    HEADER_ATTEMPT,
    HEADER_DELIVERY_ID,
    HEADER_EVENT_ID,
    HEADER_EVENT_TYPE,
    verify_signature,
)


logger = logging.getLogger("eventrelay.receiver")


@dataclass(frozen=True)
class ReceiverSettings:
    shared_secret: str | None
    require_signature: bool
    max_timestamp_skew_seconds: int
    fail_mode: str
    fail_n: int
    port: int


class ReceiverHealth(BaseModel):
    status: str
    require_signature: bool
    fail_mode: str
    fail_n: int


class ReceiverError(BaseModel):
    accepted: bool = False
    reason: str


class ReceiverWebhookResponse(BaseModel):
    accepted: bool
    duplicate: bool = False
    event_id: str | None = None
    delivery_id: str | None = None


class ReceiptItem(BaseModel):
    event_id: str | None
    event_type: str | None
    delivery_id: str | None
    attempt: int | None
    received_at: str
    response_status: int
    signature_valid: bool
    failure_reason: str | None = None
    duplicate: bool = False


class ReceivedResponse(BaseModel):
    items: list[ReceiptItem]


def _parse_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _parse_int(value: str | None, default: int, *, minimum: int = 0) -> int:
    try:
        parsed = int(value or str(default))
    except (TypeError, ValueError):
        parsed = default
    return max(minimum, parsed)


def load_receiver_settings() -> ReceiverSettings:
    fail_mode = (os.getenv("RECEIVER_FAIL_MODE") or "never").strip().lower()
    if fail_mode not in {"never", "always", "first_n"}:
        fail_mode = "never"
    return ReceiverSettings(
        shared_secret=(os.getenv("RECEIVER_SHARED_SECRET") or "").strip() or None,
        require_signature=_parse_bool(os.getenv("RECEIVER_REQUIRE_SIGNATURE"), default=True),
        max_timestamp_skew_seconds=_parse_int(
            os.getenv("RECEIVER_MAX_TIMESTAMP_SKEW_SECONDS"), default=300, minimum=1
        ),
        fail_mode=fail_mode,
        fail_n=_parse_int(os.getenv("RECEIVER_FAIL_N"), default=0),
        port=_parse_int(os.getenv("RECEIVER_PORT"), default=9001, minimum=1),
    )


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _log_event(event: str, **fields: Any) -> None:
    payload = {"event": event, **fields, "ts": _utc_now().isoformat()}
    logger.info(json.dumps(payload, sort_keys=True))


@dataclass
class ReceiverStore:
    """In-memory receipts, forced-failure counters and seen delivery ids."""

    receipts: list[dict[str, Any]] = field(default_factory=list)
    failures: dict[str, int] = field(default_factory=dict)
    seen: set[str] = field(default_factory=set)
    _lock: Lock = field(default_factory=Lock)

    def record(self, **receipt: Any) -> None:
        with self._lock:
            self.receipts.append({"received_at": _utc_now().isoformat(), **receipt})

    def bump_failures(self, key: str) -> int:
        with self._lock:
            self.failures[key] = self.failures.get(key, 0) + 1
            return self.failures[key]

    def mark_seen(self, key: str) -> bool:
        with self._lock:
            if key in self.seen:
                return False
            self.seen.add(key)
            return True


def _status_for_reason(reason: str) -> int:
    if reason in {"missing_signature", "signature_mismatch", "timestamp_skew"}:
        return 401
    if reason == "secret_missing":
        return 500
    return 400


def create_app(settings: ReceiverSettings | None = None) -> FastAPI:
    # Reference receiver for local runs and end-to-end checks of the signing contract.
    resolved = settings or load_receiver_settings()
    store = ReceiverStore()
    app = FastAPI(title="eventrelay reference receiver", version="1.0.0")
    app.state.store = store

    @app.get("/health", response_model=ReceiverHealth)
    async def health() -> ReceiverHealth:
        return ReceiverHealth(
            status="ok",
            require_signature=resolved.require_signature,
            fail_mode=resolved.fail_mode,
            fail_n=resolved.fail_n,
        )

    @app.get("/received", response_model=ReceivedResponse)
    async def received(limit: int = 50) -> ReceivedResponse:
        items = list(reversed(store.receipts))[: max(1, min(limit, 500))]
        return ReceivedResponse(items=[ReceiptItem(**item) for item in items])

    @app.post("/webhook", response_model=ReceiverWebhookResponse)
    async def webhook(request: Request) -> JSONResponse:
        raw_body = await request.body()
        event_id = request.headers.get(HEADER_EVENT_ID)
        delivery_id = request.headers.get(HEADER_DELIVERY_ID)
        raw_attempt = request.headers.get(HEADER_ATTEMPT)
        receipt = {
            "event_id": event_id,
            "event_type": request.headers.get(HEADER_EVENT_TYPE),
            "delivery_id": delivery_id,
            "attempt": int(raw_attempt) if raw_attempt and raw_attempt.isdigit() else None,
        }

        signature_valid = False
        if resolved.require_signature:
            if not resolved.shared_secret:
                reason = "secret_missing"
            else:
                verification = verify_signature(
                    request.headers,
                    raw_body,
                    resolved.shared_secret.encode("utf-8"),
                    max_timestamp_skew_seconds=resolved.max_timestamp_skew_seconds,
                    now=_utc_now(),
                )
                reason = verification.reason
                signature_valid = verification.ok
            if not signature_valid:
                status_code = _status_for_reason(reason)
                store.record(**receipt, response_status=status_code, signature_valid=False, failure_reason=reason)
                _log_event("receiver.webhook.rejected", reason=reason, event_id=event_id)
                return JSONResponse(status_code=status_code, content=ReceiverError(reason=reason).model_dump())

        forced = resolved.fail_mode == "always" or (
            resolved.fail_mode == "first_n"
            and resolved.fail_n > 0
            and store.bump_failures(delivery_id or event_id or "unknown") <= resolved.fail_n
        )
        if forced:
            store.record(**receipt, response_status=500, signature_valid=signature_valid, failure_reason="forced_failure")
            _log_event("receiver.webhook.forced_failure", event_id=event_id, delivery_id=delivery_id)
            return JSONResponse(status_code=500, content=ReceiverError(reason="forced_failure").model_dump())

        first_seen = store.mark_seen(delivery_id or event_id or "unknown")
        store.record(**receipt, response_status=200, signature_valid=signature_valid, duplicate=not first_seen)
        _log_event("receiver.webhook.accepted", event_id=event_id, delivery_id=delivery_id, duplicate=not first_seen)
        return JSONResponse(
            status_code=200,
            content=ReceiverWebhookResponse(
                accepted=True,
                duplicate=not first_seen,
                event_id=event_id,
                delivery_id=delivery_id,
            ).model_dump(),
        )

    return app
