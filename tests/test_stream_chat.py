"""Tests for the callback-style ``stream_chat`` facade and its handle."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
import unittest

from polychat.models import Message, ModelDescriptor, Provider, Role
from polychat.providers import ChatRequest, ProviderAdapter


class ScriptedAdapter(ProviderAdapter):
    """Adapter that yields canned fragments, optionally pausing on a gate."""

    provider = Provider.FOUNDRY

    def __init__(
        self,
        fragments: list[str],
        error: Exception | None = None,
        gate: asyncio.Event | None = None,
        pause_after: int = 0,
    ) -> None:
        self.fragments = fragments
        self.error = error
        self.gate = gate
        self.pause_after = pause_after
        self.closed = False

    async def list_models(self, settings: object) -> list[ModelDescriptor]:
        return []

    async def _iter_fragments(self, request: ChatRequest) -> AsyncIterator[str]:
        try:
            for index, fragment in enumerate(self.fragments):
                if self.gate is not None and index == self.pause_after:
                    await self.gate.wait()
                yield fragment
                await asyncio.sleep(0)
            if self.error is not None:
                raise self.error
        finally:
            self.closed = True


def _request() -> ChatRequest:
    return ChatRequest(
        endpoint="http://127.0.0.1:8000/v1",
        messages=(Message(role=Role.USER, content="hi"),),
        model_id="phi-4",
    )


class StreamChatTests(unittest.IsolatedAsyncioTestCase):
    """Validate callback ordering, completion and cancellation."""

    async def test_chunks_in_order_then_single_completion(self) -> None:
        adapter = ScriptedAdapter(["a", "b", "c"])
        received: list[str] = []
        completions: list[bool] = []

        handle = adapter.stream_chat(
            _request(), received.append, lambda: completions.append(True), message_id="m1"
        )
        await handle.wait()

        self.assertEqual(received, ["a", "b", "c"])
        self.assertEqual(completions, [True])
        self.assertEqual(handle.message_id, "m1")
        self.assertTrue(handle.done)
        self.assertFalse(handle.failed)

    async def test_failure_delivers_diagnostic_then_completion(self) -> None:
        adapter = ScriptedAdapter(["ok"], error=RuntimeError("boom"))
        received: list[str] = []
        completions: list[bool] = []

        handle = adapter.stream_chat(_request(), received.append, lambda: completions.append(True))
        await handle.wait()

        self.assertEqual(received, ["ok", "\n\n[Error: boom]"])
        self.assertEqual(completions, [True])
        self.assertTrue(handle.failed)

    async def test_cancel_suppresses_further_callbacks(self) -> None:
        gate = asyncio.Event()
        adapter = ScriptedAdapter(["one", "two", "three"], gate=gate, pause_after=1)
        received: list[str] = []
        completions: list[bool] = []

        handle = adapter.stream_chat(_request(), received.append, lambda: completions.append(True))
        while not received:
            await asyncio.sleep(0)
        handle.cancel()
        gate.set()
        await handle.wait()
        await asyncio.sleep(0)

        self.assertEqual(received, ["one"])
        self.assertEqual(completions, [])
        self.assertTrue(handle.cancelled)
        self.assertTrue(adapter.closed)

    async def test_cancel_is_idempotent_and_noop_after_completion(self) -> None:
        adapter = ScriptedAdapter(["x"])
        completions: list[bool] = []
        handle = adapter.stream_chat(_request(), lambda text: None, lambda: completions.append(True))
        await handle.wait()
        handle.cancel()
        handle.cancel()
        self.assertFalse(handle.cancelled)
        self.assertEqual(completions, [True])

    async def test_cancel_twice_before_completion(self) -> None:
        gate = asyncio.Event()
        adapter = ScriptedAdapter(["x"], gate=gate, pause_after=0)
        completions: list[bool] = []
        handle = adapter.stream_chat(_request(), lambda text: None, lambda: completions.append(True))
        await asyncio.sleep(0)
        handle.cancel()
        handle.cancel()
        await handle.wait()
        self.assertTrue(handle.cancelled)
        self.assertEqual(completions, [])


if __name__ == "__main__":
    unittest.main()
