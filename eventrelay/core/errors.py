from __future__ import annotations


class EventRelayError(Exception):
    """Base error for eventrelay."""


class EventValidationError(EventRelayError):
    """Published event is malformed and was not enqueued."""


class EndpointValidationError(EventRelayError):
    """Endpoint configuration is invalid (URL, headers, subscriptions, retry budget)."""


class EndpointNotFoundError(EventRelayError):
    """Endpoint does not exist for the requesting tenant."""


class DeliveryNotFoundError(EventRelayError):
    """Delivery does not exist for the requesting tenant."""


class InvalidDeliveryStateError(EventRelayError):
    """Operation is not allowed for the delivery's current status."""

    def __init__(self, message: str, *, status: str | None = None) -> None:
        super().__init__(message)
        self.status = status


class SecretUnavailableError(EventRelayError):
    """Endpoint signing secret could not be decrypted."""
