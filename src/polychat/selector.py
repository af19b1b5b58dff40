"""Provider selection policy.

Dispatch on the active provider happens here, once per request; everything
downstream talks to the chosen adapter through the common interface.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
import logging

from .config import ProviderSettings
from .models import Provider
from .providers import ProviderAdapter, default_adapters
from .providers.gemini import DEFAULT_GEMINI_MODEL

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProviderSelection:
    """The adapter plus the provider-specific parameters for one request."""

    adapter: ProviderAdapter
    provider: Provider
    endpoint: str
    model_id: str
    system_prompt: str
    api_key: str


class ProviderSelector:
    """Registry of adapters keyed by provider."""

    def __init__(self, adapters: Iterable[ProviderAdapter] | None = None) -> None:
        self._adapters: dict[Provider, ProviderAdapter] = {}
        for adapter in default_adapters() if adapters is None else adapters:
            self.register(adapter)

    def register(self, adapter: ProviderAdapter) -> None:
        """Register an adapter, replacing any previous one for its provider."""
        self._adapters[adapter.provider] = adapter

    def adapter_for(self, provider: Provider) -> ProviderAdapter:
        try:
            return self._adapters[provider]
        except KeyError:
            raise KeyError(f"No adapter registered for provider {provider.value!r}") from None

    @staticmethod
    def resolve_provider(settings: ProviderSettings) -> Provider:
        """The direct-cloud flag wins over the configured active provider."""
        if settings.use_gemini_direct:
            return Provider.GEMINI
        return settings.active_provider

    def select(
        self, settings: ProviderSettings, model_id: str | None = None
    ) -> ProviderSelection:
        provider = self.resolve_provider(settings)
        adapter = self.adapter_for(provider)

        if provider is Provider.FOUNDRY:
            endpoint, api_key = settings.foundry_url, settings.api_key
        elif provider is Provider.OLLAMA:
            endpoint, api_key = settings.ollama_url, ""
        else:
            endpoint, api_key = "", settings.resolved_gemini_api_key()

        resolved_model = (model_id or "").strip() or settings.default_model
        if not resolved_model and provider is Provider.GEMINI:
            resolved_model = DEFAULT_GEMINI_MODEL

        LOGGER.debug(
            "selector.selected",
            extra={
                "event": "selector.selected",
                "provider": provider.value,
                "model": resolved_model,
            },
        )
        return ProviderSelection(
            adapter=adapter,
            provider=provider,
            endpoint=endpoint,
            model_id=resolved_model,
            system_prompt=settings.system_prompt,
            api_key=api_key,
        )
