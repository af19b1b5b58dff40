"""Adapter for the Gemini cloud API via the SDK's native async chat sessions."""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable
import logging
from typing import TYPE_CHECKING, Any

from google import genai
from google.genai import types

from ..exceptions import TranscriptValidationError
from ..models import ModelDescriptor, Provider, Role
from .base import ChatRequest, ProviderAdapter

if TYPE_CHECKING:
    from ..config import ProviderSettings

LOGGER = logging.getLogger(__name__)

DEFAULT_GEMINI_MODEL = "gemini-2.5-flash"

GEMINI_MODELS: tuple[ModelDescriptor, ...] = (
    ModelDescriptor(id="gemini-2.5-flash", name="Gemini 2.5 Flash", provider=Provider.GEMINI),
    ModelDescriptor(
        id="gemini-2.5-flash-lite-latest",
        name="Gemini 2.5 Flash Lite",
        provider=Provider.GEMINI,
    ),
    ModelDescriptor(id="gemini-3-pro-preview", name="Gemini 3.0 Pro", provider=Provider.GEMINI),
)


def _default_client_factory(api_key: str | None) -> genai.Client:
    return genai.Client(api_key=api_key)


class GeminiAdapter(ProviderAdapter):
    """History goes into ``chats.create``; the last user turn is streamed."""

    provider = Provider.GEMINI
    error_label = "Gemini Error"
    assistant_role = "model"

    def __init__(self, client_factory: Callable[[str | None], Any] | None = None) -> None:
        self._client_factory = client_factory or _default_client_factory

    async def list_models(self, settings: ProviderSettings) -> list[ModelDescriptor]:
        return list(GEMINI_MODELS)

    def validate(self, request: ChatRequest) -> None:
        if not request.messages or request.messages[-1].role is not Role.USER:
            raise TranscriptValidationError("Last message must be from user")

    @staticmethod
    def resolve_model(model_id: str) -> str:
        return model_id if "gemini" in model_id else DEFAULT_GEMINI_MODEL

    def build_history(self, request: ChatRequest) -> list[types.Content]:
        """Every turn except the last, as user/model contents.

        System messages travel as the system instruction, and empty turns
        (e.g. a reply cancelled before its first token) are left out.
        """
        history: list[types.Content] = []
        for message in request.messages[:-1]:
            if message.role is Role.SYSTEM or not message.content:
                continue
            history.append(
                types.Content(
                    role="user" if message.role is Role.USER else "model",
                    parts=[types.Part(text=message.content)],
                )
            )
        return history

    async def _iter_fragments(self, request: ChatRequest) -> AsyncIterator[str]:
        client = self._client_factory(request.api_key or None)
        async with client.aio as aio:
            chat = aio.chats.create(
                model=self.resolve_model(request.model_id),
                config=types.GenerateContentConfig(
                    system_instruction=request.system_prompt or None
                ),
                history=self.build_history(request),
            )
            stream = await chat.send_message_stream(message=request.messages[-1].content)
            async for response in stream:
                text = getattr(response, "text", None)
                if isinstance(text, str) and text:
                    yield text
