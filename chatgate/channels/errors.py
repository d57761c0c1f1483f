"""Exception types raised by channel adapters and platform clients."""

from __future__ import annotations


class ChannelError(Exception):
    """Base class for gateway errors."""


class AuthError(ChannelError):
    """Webhook signature, secret or API key could not be verified."""


class ValidationError(ChannelError):
    """Inbound payload is malformed or missing required fields."""


class PolicyDenied(ChannelError):
    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class DeliveryError(ChannelError):
    """A platform API call failed."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class RateLimitError(DeliveryError):
    def __init__(self, message: str = "Rate limited (429)", retry_after: float | None = None):
        super().__init__(message, status_code=429)
        self.retry_after = retry_after


class InternalError(ChannelError):
    """Unexpected failure inside the gateway itself."""
