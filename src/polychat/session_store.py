"""Mutable conversation state: ordered sessions of append-growing messages.

Every operation is addressed by session id and message id, never by
position, because a stream may keep writing into its placeholder while new
messages land after it. All mutations are synchronous, so under asyncio they
are atomic with respect to each other.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass
import logging
from typing import Literal

from .exceptions import SessionNotFoundError
from .models import TITLE_MAX_CHARS, Attachment, Message, Role, Session

LOGGER = logging.getLogger(__name__)

StoreEventKind = Literal[
    "session.created",
    "session.selected",
    "message.appended",
    "message.updated",
    "message.finalized",
]


@dataclass(frozen=True)
class StoreEvent:
    """Change notification delivered to store listeners."""

    kind: StoreEventKind
    session_id: str
    message_id: str | None = None


StoreListener = Callable[[StoreEvent], None]


class SessionStore:
    """Own all sessions and route every transcript mutation."""

    def __init__(self) -> None:
        self._sessions: list[Session] = []
        self._current_id: str | None = None
        self._listeners: list[StoreListener] = []

    # -- observation -------------------------------------------------------

    def subscribe(self, listener: StoreListener) -> None:
        self._listeners.append(listener)

    def unsubscribe(self, listener: StoreListener) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    def _notify(self, event: StoreEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as exc:  # noqa: BLE001 - a broken view must not break the store.
                LOGGER.error(
                    "store.listener.failed",
                    extra={
                        "event": "store.listener.failed",
                        "kind": event.kind,
                        "error": str(exc),
                    },
                )

    # -- sessions ----------------------------------------------------------

    @property
    def sessions(self) -> list[Session]:
        """Sessions newest first (shallow copy of the ordering)."""
        return list(self._sessions)

    @property
    def current_session_id(self) -> str | None:
        return self._current_id

    @property
    def current_session(self) -> Session | None:
        if self._current_id is None:
            return None
        return self.get_session(self._current_id)

    def get_session(self, session_id: str) -> Session | None:
        for session in self._sessions:
            if session.id == session_id:
                return session
        return None

    def _require_session(self, session_id: str) -> Session:
        session = self.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(f"Unknown session {session_id!r}")
        return session

    def create_session(self, model_id: str = "") -> Session:
        """Prepend a fresh session and make it current."""
        session = Session(model_id=model_id)
        self._sessions.insert(0, session)
        self._current_id = session.id
        LOGGER.info(
            "store.session.created",
            extra={"event": "store.session.created", "session_id": session.id},
        )
        self._notify(StoreEvent("session.created", session.id))
        return session

    def select_session(self, session_id: str) -> Session:
        session = self._require_session(session_id)
        self._current_id = session.id
        self._notify(StoreEvent("session.selected", session.id))
        return session

    # -- messages ----------------------------------------------------------

    def append_user_message(
        self,
        session_id: str,
        content: str,
        attachments: Iterable[Attachment] = (),
    ) -> Message:
        """Append a user turn; the first one also names the session."""
        session = self._require_session(session_id)
        message = Message(role=Role.USER, content=content, attachments=tuple(attachments))
        if not session.messages:
            session.title = content[:TITLE_MAX_CHARS]
        session.messages.append(message)
        self._notify(StoreEvent("message.appended", session.id, message.id))
        return message

    def append_placeholder(self, session_id: str) -> str:
        """Append an empty thinking model message and return its id."""
        session = self._require_session(session_id)
        message = Message(role=Role.MODEL, is_thinking=True)
        session.messages.append(message)
        self._notify(StoreEvent("message.appended", session.id, message.id))
        return message.id

    def _find(self, session_id: str, message_id: str) -> tuple[Session, Message] | None:
        session = self.get_session(session_id)
        if session is None:
            return None
        message = session.find_message(message_id)
        if message is None:
            return None
        return session, message

    def append_to_message(self, session_id: str, message_id: str, fragment: str) -> None:
        """Append a streamed fragment; silently ignore messages that are gone."""
        found = self._find(session_id, message_id)
        if found is None or not fragment:
            return
        session, message = found
        message.content += fragment
        self._notify(StoreEvent("message.updated", session.id, message.id))

    def finalize_message(
        self,
        session_id: str,
        message_id: str,
        final_content_override: str | None = None,
    ) -> None:
        """Close out a placeholder, optionally replacing its content."""
        found = self._find(session_id, message_id)
        if found is None:
            return
        session, message = found
        if final_content_override is not None:
            message.content = final_content_override
        message.is_thinking = False
        self._notify(StoreEvent("message.finalized", session.id, message.id))

    def snapshot(self, session_id: str) -> tuple[Message, ...]:
        """Copies of the finished messages, safe to hand to an adapter."""
        session = self._require_session(session_id)
        return tuple(m.copy() for m in session.messages if not m.is_thinking)
