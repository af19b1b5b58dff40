"""Adapter for local OpenAI-compatible servers (Foundry Local, llama.cpp, vLLM...)."""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable
import logging
from typing import TYPE_CHECKING, Any

import httpx
from openai import AsyncOpenAI

from ..exceptions import ProviderProtocolError
from ..models import ModelDescriptor, Provider
from ..prober import DEFAULT_API_KEY, normalize_openai_endpoint
from .base import ChatRequest, ProviderAdapter

if TYPE_CHECKING:
    from ..config import ProviderSettings
    from ..prober import ConnectionProber

LOGGER = logging.getLogger(__name__)

LIST_MODELS_TIMEOUT = 10.0
DEFAULT_CONTEXT_WINDOW = 4096


def _default_client_factory(endpoint: str, api_key: str) -> AsyncOpenAI:
    # Streams run until completion or cancellation; no read deadline.
    return AsyncOpenAI(base_url=endpoint, api_key=api_key, timeout=None)


class OpenAICompatibleAdapter(ProviderAdapter):
    """Streams ``chat.completions`` deltas from an OpenAI-style endpoint."""

    provider = Provider.FOUNDRY
    error_label = "Error"

    def __init__(
        self,
        client_factory: Callable[[str, str], Any] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._client_factory = client_factory or _default_client_factory
        self._transport = transport

    async def resolve_endpoint(
        self, prober: ConnectionProber, endpoint: str, timeout: float
    ) -> str | None:
        return await prober.probe(endpoint, timeout)

    async def list_models(self, settings: ProviderSettings) -> list[ModelDescriptor]:
        base = settings.foundry_url.strip().rstrip("/")
        headers = {"Authorization": f"Bearer {settings.api_key or DEFAULT_API_KEY}"}
        candidates = [f"{base}/models"]
        if not base.endswith("/v1"):
            candidates.append(f"{normalize_openai_endpoint(base)}/models")
        payload: Any = None
        error: Exception | None = None
        async with httpx.AsyncClient(
            timeout=LIST_MODELS_TIMEOUT, transport=self._transport
        ) as client:
            for candidate in candidates:
                try:
                    response = await client.get(candidate, headers=headers)
                    response.raise_for_status()
                    payload = response.json()
                except (httpx.HTTPError, httpx.InvalidURL, ValueError) as exc:
                    error = exc
                    continue
                break
        if payload is None:
            LOGGER.warning(
                "models.list.failed",
                extra={
                    "event": "models.list.failed",
                    "provider": self.provider.value,
                    "error_type": type(error).__name__,
                },
            )
            return []

        items = payload.get("data", payload) if isinstance(payload, dict) else payload
        if not isinstance(items, list):
            return []
        models: list[ModelDescriptor] = []
        for item in items:
            if not isinstance(item, dict):
                continue
            model_id = item.get("id")
            if not isinstance(model_id, str) or not model_id.strip():
                continue
            context_window = item.get("context_window")
            models.append(
                ModelDescriptor(
                    id=model_id,
                    name=model_id,
                    provider=self.provider,
                    description="Local LLM",
                    context_window=(
                        context_window
                        if isinstance(context_window, int)
                        else DEFAULT_CONTEXT_WINDOW
                    ),
                )
            )
        return models

    @staticmethod
    def _extract_delta(chunk: Any) -> str:
        """Return ``choices[0].delta.content`` or raise ``ProviderProtocolError``."""
        try:
            choices = chunk.choices
        except AttributeError as exc:
            raise ProviderProtocolError("chunk has no choices") from exc
        if not choices:
            # Usage and keep-alive chunks carry no choices.
            return ""
        try:
            content = choices[0].delta.content
        except (AttributeError, IndexError, TypeError) as exc:
            raise ProviderProtocolError("chunk has no delta") from exc
        return content if isinstance(content, str) else ""

    async def _iter_fragments(self, request: ChatRequest) -> AsyncIterator[str]:
        client = self._client_factory(
            request.endpoint, request.api_key or DEFAULT_API_KEY
        )
        async with client:
            stream = await client.chat.completions.create(
                model=request.model_id,
                messages=self.build_wire_messages(request),
                stream=True,
            )
            async with stream:
                async for chunk in stream:
                    try:
                        text = self._extract_delta(chunk)
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
                    if text:
                        yield text
