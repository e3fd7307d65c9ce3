"""Error taxonomy for the unified event layer.

Store-level errors (``NotFoundError``, ``UserNotFoundError``) always propagate
to the caller.  Provider errors propagate only from explicit provider-targeted
mutations; aggregated reads swallow them and degrade to zero external events.

HTTP mapping used by :mod:`almanac.api.middleware`:

- ``NotFoundError`` → 404
- ``UserNotFoundError`` / ``EventParseError`` → 422
- ``InvalidEventIdError`` → 400
- ``ProviderApiError`` / ``MissingAccessTokenError`` → 502
- ``ProviderUnavailableError`` → 503
"""

from __future__ import annotations


class AlmanacError(RuntimeError):
    """Base error for all almanac domain failures."""


class NotFoundError(AlmanacError):
    """Raised when an event does not exist or is owned by another user."""

    def __init__(self, message: str = "Event not found") -> None:
        super().__init__(message)


class UserNotFoundError(AlmanacError):
    """Raised when a local event is created for a user row that does not exist."""

    def __init__(self, user_id: str) -> None:
        self.user_id = user_id
        super().__init__(f"User not found: {user_id}")


class InvalidEventIdError(AlmanacError, ValueError):
    """Raised when a unified event id carries no recognized origin prefix."""

    def __init__(self, event_id: str) -> None:
        self.event_id = event_id
        super().__init__(f"Invalid event id: {event_id!r}")


class EventParseError(AlmanacError):
    """Raised when natural-language input cannot be turned into an event."""


class ProviderError(AlmanacError):
    """Base error for external calendar provider failures."""


class MissingAccessTokenError(ProviderError):
    """Raised when the OAuth token endpoint answers without an access token."""


class ProviderApiError(ProviderError):
    """Raised when the provider answers a request with a non-success status."""

    def __init__(self, *, status_code: int, message: str) -> None:
        self.status_code = status_code
        self.message = message
        super().__init__(f"Google Calendar API request failed ({status_code}): {message}")


class ProviderUnavailableError(ProviderError):
    """Raised when no authenticated provider session can be obtained."""


class ProviderTimeoutError(ProviderUnavailableError):
    """Raised when a provider call exceeds its per-call timeout."""
