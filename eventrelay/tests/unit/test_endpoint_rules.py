from __future__ import annotations

from cryptography.fernet import Fernet
from pydantic import ValidationError
import pytest

from eventrelay.core.config import Settings
from eventrelay.core.errors import EndpointValidationError, SecretUnavailableError
from eventrelay.domain.models import Endpoint
from eventrelay.domain.state import TERMINAL_STATUSES, parse_status
from eventrelay.persistence.repos.endpoints import (
    normalize_event_types,
    normalize_headers,
    validate_max_retries,
    validate_url,
)
from eventrelay.services.security.secrets import decrypt_secret, encrypt_secret


def test_validate_url_requires_http_scheme_and_host() -> None:
    assert validate_url("  https://hooks.example.com/x ") == "https://hooks.example.com/x"
    assert validate_url("http://localhost:9001/webhook") == "http://localhost:9001/webhook"
    for bad in ("ftp://example.com", "hooks.example.com/x", "https://", ""):
        with pytest.raises(EndpointValidationError):
            validate_url(bad)


def test_custom_headers_cannot_override_signature_contract() -> None:
    assert normalize_headers({" X-Team ": " billing "}) == {"X-Team": "billing"}
    assert normalize_headers(None) == {}
    for reserved in ("X-Webhook-Signature", "x-webhook-timestamp", "Content-Type", "HOST"):
        with pytest.raises(EndpointValidationError):
            normalize_headers({reserved: "spoofed"})
    with pytest.raises(EndpointValidationError):
        normalize_headers({"": "value"})


def test_event_types_must_be_non_empty_and_are_deduplicated() -> None:
    assert normalize_event_types(["a.b", " a.b ", "c.d"]) == ["a.b", "c.d"]
    for bad in ([], None, "order.created", ["  "]):
        with pytest.raises(EndpointValidationError):
            normalize_event_types(bad)


def test_max_retries_validation() -> None:
    assert validate_max_retries(1) == 1
    assert validate_max_retries(None) >= 1
    for bad in (0, -1, True, 2.5):
        with pytest.raises(EndpointValidationError):
            validate_max_retries(bad)


def test_wildcard_subscription_matches_every_type() -> None:
    endpoint = Endpoint(event_types=["*"])
    assert endpoint.subscribes_to("order.created")
    scoped = Endpoint(event_types=["order.created"])
    assert scoped.subscribes_to("order.created")
    assert not scoped.subscribes_to("order.refunded")


def test_secret_round_trip_and_tamper_detection() -> None:
    token = encrypt_secret("whsec-test-0123456789abcdef")
    assert "whsec" not in token
    assert decrypt_secret(token) == b"whsec-test-0123456789abcdef"

    foreign = Fernet(Fernet.generate_key()).encrypt(b"0123456789abcdef").decode("utf-8")
    with pytest.raises(SecretUnavailableError):
        decrypt_secret(foreign)
    with pytest.raises(SecretUnavailableError):
        decrypt_secret(None)
    with pytest.raises(EndpointValidationError):
        encrypt_secret("short")


def test_parse_status_rejects_unknown_and_transient_values() -> None:
    assert parse_status(" Dead_Letter ").value == "dead_letter"
    for bad in ("failed", "queued"):
        with pytest.raises(ValueError):
            parse_status(bad)
    assert TERMINAL_STATUSES == {"delivered", "dead_letter"}


def test_settings_reject_out_of_range_values() -> None:
    with pytest.raises(ValidationError):
        Settings(delivery_backoff_jitter=1.0)
    with pytest.raises(ValidationError):
        Settings(delivery_breaker_threshold=0)
    with pytest.raises(ValidationError):
        Settings(delivery_backoff_base_s=0)


def test_stale_claim_window_must_outlive_a_serial_batch() -> None:
    # Ten rows of up to ten seconds each keep the last row claimed for 100s.
    with pytest.raises(ValidationError, match="delivery_stale_claim_after_s"):
        Settings(delivery_stale_claim_after_s=100, delivery_claim_batch_size=10, delivery_attempt_timeout_s=10)
    settings = Settings(delivery_stale_claim_after_s=101, delivery_claim_batch_size=10, delivery_attempt_timeout_s=10)
    assert settings.delivery_stale_claim_after_s == 101
