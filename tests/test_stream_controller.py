"""Tests for the per-generation stream controller state machine."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
import unittest

import httpx

from polychat.exceptions import StreamStateError
from polychat.models import ModelDescriptor, Provider
from polychat.providers import ChatRequest, OllamaAdapter, ProviderAdapter
from polychat.session_store import SessionStore
from polychat.stream_controller import StreamController, StreamState
from polychat.task_manager import TaskManager

ENDPOINT = "http://127.0.0.1:8000/v1"


class ScriptedAdapter(ProviderAdapter):
    """Probing adapter with canned fragments and an optional pause gate."""

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
        self.requests: list[ChatRequest] = []
        self.closed = False

    async def resolve_endpoint(self, prober: object, endpoint: str, timeout: float) -> str | None:
        return await prober.probe(endpoint, timeout)  # type: ignore[attr-defined]

    async def list_models(self, settings: object) -> list[ModelDescriptor]:
        return []

    async def _iter_fragments(self, request: ChatRequest) -> AsyncIterator[str]:
        self.requests.append(request)
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


class FakeProber:
    def __init__(self, result: str | None) -> None:
        self.result = result
        self.calls: list[tuple[str, float]] = []

    async def probe(self, url: str, timeout: float) -> str | None:
        self.calls.append((url, timeout))
        return self.result


class ExplodingProber:
    async def probe(self, url: str, timeout: float) -> str | None:
        raise RuntimeError("resolver bug")


class StalledBody(httpx.AsyncByteStream):
    """NDJSON response body that stops sending after its lines but stays open."""

    def __init__(self, lines: list[bytes]) -> None:
        self.lines = lines
        self.release = asyncio.Event()
        self.closed = False

    async def __aiter__(self) -> AsyncIterator[bytes]:
        for line in self.lines:
            yield line
        await self.release.wait()

    async def aclose(self) -> None:
        self.closed = True


class ControllerFixture:
    def __init__(self) -> None:
        self.store = SessionStore()
        self.session = self.store.create_session()
        self.store.append_user_message(self.session.id, "hi")
        self.message_id = self.store.append_placeholder(self.session.id)
        self.finished: list[StreamController] = []
        self.task_manager = TaskManager()

    def controller(self, adapter: ProviderAdapter, prober: object | None = None) -> StreamController:
        request = ChatRequest(
            endpoint=ENDPOINT,
            messages=self.store.snapshot(self.session.id),
            model_id="phi-4",
        )
        return StreamController(
            self.store,
            adapter,
            request,
            self.session.id,
            self.message_id,
            prober=prober,  # type: ignore[arg-type]
            probe_timeout=0.5,
            task_manager=self.task_manager,
            on_finished=self.finished.append,
        )

    @property
    def message(self):
        message = self.session.find_message(self.message_id)
        assert message is not None
        return message


class StreamControllerTests(unittest.IsolatedAsyncioTestCase):
    """Validate terminal states and placeholder finalization."""

    async def test_completion_concatenates_and_finalizes(self) -> None:
        fixture = ControllerFixture()
        controller = fixture.controller(ScriptedAdapter(["Hel", "lo"]))
        self.assertIs(controller.state, StreamState.IDLE)

        controller.start()
        self.assertIs(controller.state, StreamState.REQUESTING)
        state = await controller.wait()

        self.assertIs(state, StreamState.COMPLETED)
        self.assertEqual(fixture.message.content, "Hello")
        self.assertFalse(fixture.message.is_thinking)
        self.assertEqual(fixture.finished, [controller])

    async def test_placeholder_stays_thinking_while_streaming(self) -> None:
        fixture = ControllerFixture()
        gate = asyncio.Event()
        controller = fixture.controller(ScriptedAdapter(["a", "b"], gate=gate, pause_after=1))
        controller.start()
        while fixture.message.content != "a":
            await asyncio.sleep(0)
        self.assertIs(controller.state, StreamState.STREAMING)
        self.assertTrue(fixture.message.is_thinking)
        gate.set()
        await controller.wait()
        self.assertFalse(fixture.message.is_thinking)

    async def test_cancel_keeps_partial_content(self) -> None:
        fixture = ControllerFixture()
        gate = asyncio.Event()
        adapter = ScriptedAdapter(["one ", "two ", "three"], gate=gate, pause_after=2)
        controller = fixture.controller(adapter)
        controller.start()
        while fixture.message.content != "one two ":
            await asyncio.sleep(0)

        self.assertTrue(controller.cancel())
        self.assertIs(controller.state, StreamState.CANCELLED)
        self.assertFalse(fixture.message.is_thinking)

        gate.set()
        await fixture.task_manager.await_all()
        self.assertEqual(fixture.message.content, "one two ")
        self.assertTrue(adapter.closed)
        self.assertEqual(fixture.finished, [controller])

    async def test_cancel_is_idempotent(self) -> None:
        fixture = ControllerFixture()
        gate = asyncio.Event()
        controller = fixture.controller(ScriptedAdapter(["x"], gate=gate))
        controller.start()
        await asyncio.sleep(0)
        self.assertTrue(controller.cancel())
        self.assertFalse(controller.cancel())
        await fixture.task_manager.await_all()
        self.assertEqual(len(fixture.finished), 1)

    async def test_cancel_after_completion_is_noop(self) -> None:
        fixture = ControllerFixture()
        controller = fixture.controller(ScriptedAdapter(["done"]))
        controller.start()
        await controller.wait()
        self.assertFalse(controller.cancel())
        self.assertIs(controller.state, StreamState.COMPLETED)
        self.assertEqual(fixture.message.content, "done")

    async def test_failure_appends_diagnostic(self) -> None:
        fixture = ControllerFixture()
        controller = fixture.controller(
            ScriptedAdapter(["partial"], error=ConnectionError("reset"))
        )
        controller.start()
        state = await controller.wait()
        self.assertIs(state, StreamState.FAILED)
        self.assertEqual(fixture.message.content, "partial\n\n[Error: reset]")
        self.assertFalse(fixture.message.is_thinking)

    async def test_unreachable_endpoint_overrides_placeholder(self) -> None:
        fixture = ControllerFixture()
        adapter = ScriptedAdapter(["never"])
        prober = FakeProber(None)
        controller = fixture.controller(adapter, prober)
        controller.start()
        state = await controller.wait()

        self.assertIs(state, StreamState.FAILED)
        self.assertEqual(
            fixture.message.content, f"Error: Server at {ENDPOINT} is unreachable."
        )
        self.assertFalse(fixture.message.is_thinking)
        self.assertEqual(adapter.requests, [])
        self.assertEqual(prober.calls, [(ENDPOINT, 0.5)])

    async def test_probed_endpoint_is_used_for_request(self) -> None:
        fixture = ControllerFixture()
        adapter = ScriptedAdapter(["ok"])
        controller = fixture.controller(adapter, FakeProber("http://localhost:8000/v1"))
        controller.start()
        await controller.wait()
        self.assertEqual(adapter.requests[0].endpoint, "http://localhost:8000/v1")

    async def test_unexpected_error_still_finalizes(self) -> None:
        fixture = ControllerFixture()
        controller = fixture.controller(ScriptedAdapter(["x"]), ExplodingProber())
        with self.assertLogs("polychat.stream_controller", level="ERROR"):
            controller.start()
            state = await controller.wait()
        self.assertIs(state, StreamState.FAILED)
        self.assertEqual(fixture.message.content, "\n\n[Error: resolver bug]")
        self.assertFalse(fixture.message.is_thinking)

    async def test_start_twice_raises(self) -> None:
        fixture = ControllerFixture()
        controller = fixture.controller(ScriptedAdapter(["x"]))
        controller.start()
        with self.assertRaises(StreamStateError):
            controller.start()
        await controller.wait()

    async def test_task_is_tracked_until_done(self) -> None:
        fixture = ControllerFixture()
        gate = asyncio.Event()
        controller = fixture.controller(ScriptedAdapter(["x"], gate=gate))
        controller.start()
        self.assertEqual(
            fixture.task_manager.names, [f"stream:{fixture.session.id}:{fixture.message_id}"]
        )
        gate.set()
        await fixture.task_manager.await_all()
        await asyncio.sleep(0)
        self.assertEqual(fixture.task_manager.names, [])


class StreamControllerTransportTests(unittest.IsolatedAsyncioTestCase):
    """Cancellation must reach a real adapter's HTTP transport."""

    async def test_cancel_closes_ollama_response_and_keeps_received_text(self) -> None:
        body = StalledBody(
            [b'{"message":{"content":"one "}}\n', b'{"message":{"content":"two "}}\n']
        )
        urls: list[str] = []

        def _handler(request: httpx.Request) -> httpx.Response:
            urls.append(str(request.url))
            return httpx.Response(200, stream=body)

        fixture = ControllerFixture()
        controller = fixture.controller(OllamaAdapter(transport=httpx.MockTransport(_handler)))
        controller.start()
        for _ in range(1000):
            if fixture.message.content == "one two ":
                break
            await asyncio.sleep(0)
        self.assertEqual(fixture.message.content, "one two ")
        self.assertFalse(body.closed)

        self.assertTrue(controller.cancel())
        await fixture.task_manager.await_all()

        self.assertIs(controller.state, StreamState.CANCELLED)
        self.assertEqual(fixture.message.content, "one two ")
        self.assertFalse(fixture.message.is_thinking)
        self.assertTrue(body.closed)
        self.assertFalse(body.release.is_set())
        self.assertEqual(urls, [f"{ENDPOINT}/api/chat"])


if __name__ == "__main__":
    unittest.main()
