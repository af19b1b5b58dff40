"""Conversation data model shared by the store, adapters and controller."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
import time
from typing import Literal
from uuid import uuid4

NEW_SESSION_TITLE = "New Conversation"
TITLE_MAX_CHARS = 30


class Role(str, Enum):
    """Author of a message inside a session transcript."""

    USER = "user"
    MODEL = "model"
    SYSTEM = "system"


class Provider(str, Enum):
    """Backends the orchestrator knows how to talk to."""

    FOUNDRY = "foundry"
    OLLAMA = "ollama"
    GEMINI = "gemini"


def new_id() -> str:
    """Return an opaque identifier that is never reused."""
    return uuid4().hex


def now_ms() -> float:
    return time.time() * 1000.0


@dataclass(frozen=True)
class Attachment:
    """Attachment metadata; file contents are owned by the UI layer."""

    name: str
    kind: Literal["image", "file", "link"] = "file"


@dataclass
class Message:
    """A single transcript entry. ``content`` grows while the model streams."""

    role: Role
    content: str = ""
    id: str = field(default_factory=new_id)
    timestamp: float = field(default_factory=now_ms)
    attachments: tuple[Attachment, ...] = ()
    is_thinking: bool = False

    def copy(self) -> Message:
        return Message(
            role=self.role,
            content=self.content,
            id=self.id,
            timestamp=self.timestamp,
            attachments=self.attachments,
            is_thinking=self.is_thinking,
        )


@dataclass
class Session:
    """One independent conversation thread."""

    id: str = field(default_factory=new_id)
    title: str = NEW_SESSION_TITLE
    messages: list[Message] = field(default_factory=list)
    created_at: float = field(default_factory=now_ms)
    model_id: str = ""

    def find_message(self, message_id: str) -> Message | None:
        for message in self.messages:
            if message.id == message_id:
                return message
        return None

    @property
    def thinking_message(self) -> Message | None:
        """Return the in-progress placeholder, if any."""
        for message in reversed(self.messages):
            if message.is_thinking:
                return message
        return None


@dataclass(frozen=True)
class ModelDescriptor:
    """Read-only description of a model offered by a provider."""

    id: str
    name: str
    provider: Provider
    description: str | None = None
    context_window: int | None = None
