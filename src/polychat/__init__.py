"""Top-level package for polychat."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .config import ProviderSettings, ensure_config_dir, load_config
    from .exceptions import (
        ConfigValidationError,
        PolychatError,
        ProviderProtocolError,
        ProviderUnreachableError,
        SessionNotFoundError,
        StreamAlreadyActiveError,
        StreamFailureError,
        StreamStateError,
        TranscriptValidationError,
    )
    from .orchestrator import ChatOrchestrator
    from .prober import ConnectionProber
    from .selector import ProviderSelector
    from .session_store import SessionStore
    from .stream_controller import StreamController, StreamState

__all__ = [
    "ChatOrchestrator",
    "ConfigValidationError",
    "ConnectionProber",
    "PolychatError",
    "ProviderProtocolError",
    "ProviderSelector",
    "ProviderSettings",
    "ProviderUnreachableError",
    "SessionNotFoundError",
    "SessionStore",
    "StreamAlreadyActiveError",
    "StreamController",
    "StreamFailureError",
    "StreamState",
    "StreamStateError",
    "TranscriptValidationError",
    "ensure_config_dir",
    "load_config",
]

_EXCEPTIONS = {
    "ConfigValidationError",
    "PolychatError",
    "ProviderProtocolError",
    "ProviderUnreachableError",
    "SessionNotFoundError",
    "StreamAlreadyActiveError",
    "StreamFailureError",
    "StreamStateError",
    "TranscriptValidationError",
}


def __getattr__(name: str) -> Any:
    """Lazily import symbols so provider SDKs load only when first needed."""
    if name in {"ProviderSettings", "ensure_config_dir", "load_config"}:
        from . import config

        return getattr(config, name)
    if name in _EXCEPTIONS:
        from . import exceptions

        return getattr(exceptions, name)
    if name == "ChatOrchestrator":
        from .orchestrator import ChatOrchestrator

        return ChatOrchestrator
    if name == "ConnectionProber":
        from .prober import ConnectionProber

        return ConnectionProber
    if name == "ProviderSelector":
        from .selector import ProviderSelector

        return ProviderSelector
    if name == "SessionStore":
        from .session_store import SessionStore

        return SessionStore
    if name in {"StreamController", "StreamState"}:
        from .stream_controller import StreamController, StreamState

        return {"StreamController": StreamController, "StreamState": StreamState}[name]
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
