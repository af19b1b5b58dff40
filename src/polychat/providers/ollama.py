"""Adapter for Ollama servers: newline-delimited JSON chat streaming."""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable
import json
import logging
from typing import TYPE_CHECKING, Any

import httpx
from ollama import AsyncClient

from ..exceptions import ProviderProtocolError, StreamFailureError
from ..models import ModelDescriptor, Provider
from .base import ChatRequest, ProviderAdapter

if TYPE_CHECKING:
    from ..config import ProviderSettings
    from ..prober import ConnectionProber

LOGGER = logging.getLogger(__name__)

DEFAULT_CONTEXT_WINDOW = 4096


def _default_client_factory(host: str) -> AsyncClient:
    return AsyncClient(host=host)


def _field(item: Any, name: str) -> Any:
    """Read ``name`` from an SDK object or a plain dict."""
    if isinstance(item, dict):
        return item.get(name)
    return getattr(item, name, None)


class OllamaAdapter(ProviderAdapter):
    """Talks to ``/api/chat`` and ``/api/tags`` on an Ollama host."""

    provider = Provider.OLLAMA
    error_label = "Ollama Error"

    def __init__(
        self,
        client_factory: Callable[[str], Any] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._client_factory = client_factory or _default_client_factory
        self._transport = transport

    async def resolve_endpoint(
        self, prober: ConnectionProber, endpoint: str, timeout: float
    ) -> str | None:
        return await prober.probe_ollama(endpoint, timeout)

    async def list_models(self, settings: ProviderSettings) -> list[ModelDescriptor]:
        host = settings.ollama_url.strip().rstrip("/")
        try:
            async with self._client_factory(host) as client:
                response = await client.list()
        except Exception as exc:  # noqa: BLE001 - listing must never block chat.
            LOGGER.warning(
                "models.list.failed",
                extra={
                    "event": "models.list.failed",
                    "provider": self.provider.value,
                    "error_type": type(exc).__name__,
                },
            )
            return []

        models: list[ModelDescriptor] = []
        raw_models = _field(response, "models")
        if not isinstance(raw_models, list):
            return models
        for model in raw_models:
            name: str | None = None
            for key in ("model", "name"):
                value = _field(model, key)
                if isinstance(value, str) and value.strip():
                    name = value.strip()
                    break
            if name is None:
                continue
            details = _field(model, "details")
            parameter_size = _field(details, "parameter_size") if details else None
            models.append(
                ModelDescriptor(
                    id=name,
                    name=name,
                    provider=self.provider,
                    description=f"Ollama Model - {parameter_size or 'Unknown size'}",
                    context_window=DEFAULT_CONTEXT_WINDOW,
                )
            )
        return models

    @staticmethod
    def parse_line(line: str) -> dict[str, Any]:
        """Decode one NDJSON line into an object, or raise ``ProviderProtocolError``."""
        try:
            data = json.loads(line)
        except json.JSONDecodeError as exc:
            raise ProviderProtocolError(f"invalid JSON line: {exc.msg}") from exc
        if not isinstance(data, dict):
            raise ProviderProtocolError("stream line is not a JSON object")
        return data

    async def _iter_fragments(self, request: ChatRequest) -> AsyncIterator[str]:
        base = request.endpoint.strip().rstrip("/")
        payload = {
            "model": request.model_id,
            "messages": self.build_wire_messages(request),
            "stream": True,
        }
        async with httpx.AsyncClient(
            timeout=httpx.Timeout(None), transport=self._transport
        ) as client:
            async with client.stream("POST", f"{base}/api/chat", json=payload) as response:
                if not response.is_success:
                    await response.aread()
                    raise StreamFailureError(
                        f"{response.status_code} {response.reason_phrase}".strip()
                    )
                async for line in response.aiter_lines():
                    if not line.strip():
                        continue
                    try:
                        data = self.parse_line(line)
                    except ProviderProtocolError as exc:
                        LOGGER.warning(
                            "stream.chunk.malformed",
                            extra={
                                "event": "stream.chunk.malformed",
                                "provider": self.provider.value,
                                "reason": str(exc),
                            },
                        )
                        continue
                    error = data.get("error")
                    if isinstance(error, str) and error:
                        raise StreamFailureError(error)
                    message = data.get("message")
                    content = message.get("content") if isinstance(message, dict) else None
                    if isinstance(content, str) and content:
                        yield content
                    if data.get("done") is True:
                        return
