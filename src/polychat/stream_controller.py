"""Cancellable lifetime of one in-flight generation.

States::

    IDLE -> REQUESTING -> STREAMING -> COMPLETED | CANCELLED | FAILED

``REQUESTING`` covers endpoint probing and the wait for the first chunk.
Every terminal state finalizes the placeholder message; cancellation keeps
whatever content already arrived.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from contextlib import aclosing
from dataclasses import replace
from enum import Enum
import logging
from typing import TYPE_CHECKING

from .exceptions import ProviderUnreachableError, StreamStateError

if TYPE_CHECKING:
    from .prober import ConnectionProber
    from .providers import ChatRequest, ProviderAdapter
    from .session_store import SessionStore
    from .task_manager import TaskManager

LOGGER = logging.getLogger(__name__)


class StreamState(str, Enum):
    """Lifecycle of a single generation."""

    IDLE = "IDLE"
    REQUESTING = "REQUESTING"
    STREAMING = "STREAMING"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    FAILED = "FAILED"

    @property
    def terminal(self) -> bool:
        return self in (StreamState.COMPLETED, StreamState.CANCELLED, StreamState.FAILED)


class StreamController:
    """Relay one adapter stream into one placeholder message."""

    def __init__(
        self,
        store: SessionStore,
        adapter: ProviderAdapter,
        request: ChatRequest,
        session_id: str,
        message_id: str,
        *,
        prober: ConnectionProber | None = None,
        probe_timeout: float = 3.0,
        task_manager: TaskManager | None = None,
        on_finished: Callable[[StreamController], None] | None = None,
    ) -> None:
        self.store = store
        self.adapter = adapter
        self.request = request
        self.session_id = session_id
        self.message_id = message_id
        self.task_name = f"stream:{session_id}:{message_id}"
        self.prober = prober
        self.probe_timeout = probe_timeout
        self.task_manager = task_manager
        self._on_finished = on_finished
        self._state = StreamState.IDLE
        self._task: asyncio.Task[None] | None = None
        self._finished = asyncio.Event()

    @property
    def state(self) -> StreamState:
        return self._state

    @property
    def active(self) -> bool:
        return self._state in (StreamState.REQUESTING, StreamState.STREAMING)

    def start(self) -> None:
        """Launch the generation task. Must be called from a running loop."""
        if self._state is not StreamState.IDLE:
            raise StreamStateError(
                f"Stream for message {self.message_id!r} already started ({self._state.value})."
            )
        self._state = StreamState.REQUESTING
        self._task = asyncio.create_task(self._run(), name=self.task_name)
        if self.task_manager is not None:
            self.task_manager.add(self.task_name, self._task)

    def cancel(self) -> bool:
        """Abort the transport and finalize now. Returns False when already finished."""
        if self._state.terminal:
            return False
        task = self._task
        self._finish(StreamState.CANCELLED)
        if task is not None and not task.done():
            task.cancel()
        return True

    async def wait(self) -> StreamState:
        """Wait for a terminal state and return it."""
        await self._finished.wait()
        return self._state

    async def _resolve_request(self) -> ChatRequest:
        if self.prober is None:
            return self.request
        endpoint = await self.adapter.resolve_endpoint(
            self.prober, self.request.endpoint, self.probe_timeout
        )
        if endpoint is None:
            raise ProviderUnreachableError(
                f"Error: Server at {self.request.endpoint} is unreachable."
            )
        return replace(self.request, endpoint=endpoint)

    async def _run(self) -> None:
        try:
            try:
                request = await self._resolve_request()
            except ProviderUnreachableError as exc:
                self._finish(StreamState.FAILED, str(exc))
                return
            failed = False
            async with aclosing(self.adapter.stream(request)) as chunks:
                async for chunk in chunks:
                    if self._state.terminal:
                        break
                    self._state = StreamState.STREAMING
                    if chunk.kind == "error":
                        failed = True
                    self.store.append_to_message(self.session_id, self.message_id, chunk.text)
            self._finish(StreamState.FAILED if failed else StreamState.COMPLETED)
        except asyncio.CancelledError:
            self._finish(StreamState.CANCELLED)
            raise
        except Exception as exc:  # noqa: BLE001 - the placeholder must never stay open.
            LOGGER.exception(
                "stream.controller.crashed",
                extra={"event": "stream.controller.crashed", "session_id": self.session_id},
            )
            self.store.append_to_message(
                self.session_id, self.message_id, self.adapter.diagnostic(exc)
            )
            self._finish(StreamState.FAILED)

    def _finish(self, state: StreamState, override: str | None = None) -> None:
        if self._state.terminal:
            return
        self._state = state
        self._task = None
        self.store.finalize_message(self.session_id, self.message_id, override)
        self._finished.set()
        LOGGER.info(
            "stream.finished",
            extra={
                "event": "stream.finished",
                "session_id": self.session_id,
                "message_id": self.message_id,
                "state": state.value,
            },
        )
        if self._on_finished is not None:
            self._on_finished(self)
