"""Provider adapter capability interface and the shared streaming contract."""

from __future__ import annotations

from abc import ABC, abstractmethod
import asyncio
from collections.abc import AsyncIterator, Callable
from contextlib import aclosing
from dataclasses import dataclass
import logging
from typing import TYPE_CHECKING, Any, ClassVar, Literal

from ..models import Attachment, Message, ModelDescriptor, Provider, Role

if TYPE_CHECKING:
    from ..config import ProviderSettings
    from ..prober import ConnectionProber

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChatChunk:
    """A single normalized fragment of a streamed reply."""

    kind: Literal["content", "error"]
    text: str = ""


@dataclass(frozen=True)
class ChatRequest:
    """Everything an adapter needs for one generation."""

    endpoint: str
    messages: tuple[Message, ...]
    model_id: str
    system_prompt: str = ""
    attachments: tuple[Attachment, ...] = ()
    api_key: str = ""


class StreamHandle:
    """Cancellation handle for one callback-style stream.

    ``cancel()`` aborts the transport and suppresses any further callbacks. It
    is idempotent and does nothing once the stream completed on its own.
    """

    def __init__(self, message_id: str | None = None) -> None:
        self.message_id = message_id
        self.failed = False
        self._task: asyncio.Task[None] | None = None
        self._cancelled = False
        self._done = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def done(self) -> bool:
        return self._done or self._cancelled

    def cancel(self) -> None:
        if self.done:
            return
        self._cancelled = True
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def wait(self) -> None:
        """Wait for the relay task to finish; cancellation is not an error here."""
        task = self._task
        if task is None:
            return
        try:
            await task
        except asyncio.CancelledError:
            pass


class ProviderAdapter(ABC):
    """One capability interface, implemented once per backend."""

    provider: ClassVar[Provider]
    error_label: ClassVar[str] = "Error"
    assistant_role: ClassVar[str] = "assistant"

    @abstractmethod
    async def list_models(self, settings: ProviderSettings) -> list[ModelDescriptor]:
        """Return the models on offer; an empty list on any failure."""

    @abstractmethod
    def _iter_fragments(self, request: ChatRequest) -> AsyncIterator[str]:
        """Yield raw text fragments from the provider, raising on failure."""

    def validate(self, request: ChatRequest) -> None:
        """Reject a request before any network traffic. No-op by default."""

    async def resolve_endpoint(
        self, prober: ConnectionProber, endpoint: str, timeout: float
    ) -> str | None:
        """Return a usable endpoint, or ``None`` when the server is unreachable.

        Cloud providers have nothing to probe and pass the endpoint through.
        """
        return endpoint

    def wire_role(self, role: Role) -> str:
        return self.assistant_role if role is Role.MODEL else role.value

    def build_wire_messages(self, request: ChatRequest) -> list[dict[str, Any]]:
        """System prompt first, then the transcript in the provider's vocabulary."""
        wire: list[dict[str, Any]] = []
        if request.system_prompt:
            wire.append({"role": "system", "content": request.system_prompt})
        for message in request.messages:
            wire.append({"role": self.wire_role(message.role), "content": message.content})
        return wire

    def diagnostic(self, exc: BaseException) -> str:
        detail = str(exc).strip() or type(exc).__name__
        return f"\n\n[{self.error_label}: {detail}]"

    async def stream(self, request: ChatRequest) -> AsyncIterator[ChatChunk]:
        """Yield content chunks in generation order.

        Any failure becomes exactly one ``error`` chunk, after which the
        sequence ends. Cancellation propagates so the transport is torn down.
        """
        LOGGER.info(
            "stream.start",
            extra={
                "event": "stream.start",
                "provider": self.provider.value,
                "model": request.model_id,
                "messages": len(request.messages),
            },
        )
        try:
            async with aclosing(self._iter_fragments(request)) as fragments:
                async for text in fragments:
                    if text:
                        yield ChatChunk(kind="content", text=text)
        except asyncio.CancelledError:
            LOGGER.info(
                "stream.cancelled",
                extra={"event": "stream.cancelled", "provider": self.provider.value},
            )
            raise
        except Exception as exc:  # noqa: BLE001 - every provider failure becomes inline text.
            LOGGER.warning(
                "stream.failed",
                extra={
                    "event": "stream.failed",
                    "provider": self.provider.value,
                    "error_type": type(exc).__name__,
                    "error": str(exc),
                },
            )
            yield ChatChunk(kind="error", text=self.diagnostic(exc))
            return
        LOGGER.info(
            "stream.complete",
            extra={"event": "stream.complete", "provider": self.provider.value},
        )

    def stream_chat(
        self,
        request: ChatRequest,
        on_chunk: Callable[[str], Any],
        on_complete: Callable[[], Any],
        message_id: str | None = None,
    ) -> StreamHandle:
        """Callback facade over :meth:`stream`.

        Validation errors are raised here, synchronously. Otherwise
        ``on_chunk`` fires once per fragment in order and ``on_complete``
        fires exactly once, unless the handle is cancelled first.
        """
        self.validate(request)
        handle = StreamHandle(message_id)

        async def _relay() -> None:
            try:
                async with aclosing(self.stream(request)) as chunks:
                    async for chunk in chunks:
                        if handle.cancelled:
                            break
                        if chunk.kind == "error":
                            handle.failed = True
                        on_chunk(chunk.text)
            finally:
                if not handle.cancelled:
                    handle._done = True
                    on_complete()

        handle._task = asyncio.create_task(_relay())
        return handle

