"""Provider adapters: one capability interface, one implementation per backend."""

from __future__ import annotations

from .base import ChatChunk, ChatRequest, ProviderAdapter, StreamHandle
from .gemini import GeminiAdapter
from .ollama import OllamaAdapter
from .openai_compatible import OpenAICompatibleAdapter


def default_adapters() -> list[ProviderAdapter]:
    """Return one fresh adapter per built-in provider."""
    return [OpenAICompatibleAdapter(), OllamaAdapter(), GeminiAdapter()]


__all__ = [
    "ChatChunk",
    "ChatRequest",
    "GeminiAdapter",
    "OllamaAdapter",
    "OpenAICompatibleAdapter",
    "ProviderAdapter",
    "StreamHandle",
    "default_adapters",
]
