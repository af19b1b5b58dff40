"""Domain exception hierarchy for the polychat orchestrator."""

from __future__ import annotations


class PolychatError(RuntimeError):
    """Base class for all domain-level chat errors."""


class ProviderUnreachableError(PolychatError):
    """Raised when a provider endpoint cannot be contacted."""


class ProviderProtocolError(PolychatError):
    """Raised when a provider response fragment has an unexpected shape."""


class StreamFailureError(PolychatError):
    """Raised when a stream fails after the request was sent."""


class TranscriptValidationError(PolychatError):
    """Raised when a transcript cannot be sent to the selected provider."""


class StreamStateError(PolychatError):
    """Raised when a stream controller is driven through an invalid transition."""


class StreamAlreadyActiveError(StreamStateError):
    """Raised when a session already has an in-flight generation."""


class SessionNotFoundError(PolychatError):
    """Raised when a session id is unknown to the store."""


class ConfigValidationError(PolychatError):
    """Raised when configuration cannot be validated safely."""
