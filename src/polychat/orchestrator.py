"""Chat orchestration: one entry point for sending, regenerating and cancelling."""

from __future__ import annotations

from collections.abc import Callable, Iterable
import logging

from .config import ProviderSettings
from .exceptions import SessionNotFoundError, StreamAlreadyActiveError
from .models import Attachment, ModelDescriptor, Session
from .prober import DEFAULT_PROBE_TIMEOUT, ConnectionProber
from .providers import ChatRequest
from .selector import ProviderSelector
from .session_store import SessionStore
from .stream_controller import StreamController
from .task_manager import TaskManager

LOGGER = logging.getLogger(__name__)

SettingsProvider = Callable[[], ProviderSettings]


class ChatOrchestrator:
    """Route user input through the selected provider into the store.

    Each session may have at most one active generation; different sessions
    stream independently.
    """

    def __init__(
        self,
        store: SessionStore,
        settings_provider: SettingsProvider,
        selector: ProviderSelector | None = None,
        prober: ConnectionProber | None = None,
        probe_timeout: float = DEFAULT_PROBE_TIMEOUT,
    ) -> None:
        self.store = store
        self.settings_provider = settings_provider
        self.selector = selector or ProviderSelector()
        self.prober = prober or ConnectionProber()
        self.probe_timeout = probe_timeout
        self.task_manager = TaskManager()
        self.models: list[ModelDescriptor] = []
        self._selected_model_id = ""
        self._controllers: dict[str, StreamController] = {}

    # -- models ------------------------------------------------------------

    @property
    def selected_model_id(self) -> str:
        return self._selected_model_id

    def select_model(self, model_id: str) -> None:
        self._selected_model_id = model_id.strip()

    async def refresh_models(self) -> list[ModelDescriptor]:
        """Replace the model list for the active provider."""
        settings = self.settings_provider()
        adapter = self.selector.adapter_for(self.selector.resolve_provider(settings))
        self.models = await adapter.list_models(settings)
        if self.models and not self._selected_model_id:
            self._selected_model_id = self.models[0].id
        LOGGER.info(
            "models.refreshed",
            extra={
                "event": "models.refreshed",
                "provider": adapter.provider.value,
                "count": len(self.models),
            },
        )
        return list(self.models)

    # -- sessions ----------------------------------------------------------

    def new_chat(self) -> Session:
        return self.store.create_session(model_id=self._selected_model_id)

    def send_message(
        self,
        content: str,
        attachments: Iterable[Attachment] = (),
        session_id: str | None = None,
    ) -> StreamController:
        """Append a user turn and start streaming the reply into a placeholder."""
        target = session_id or self.store.current_session_id
        if target is None:
            target = self.new_chat().id
        self._ensure_idle(target)
        attachment_list = tuple(attachments)
        self.store.append_user_message(target, content, attachment_list)
        return self.regenerate(target, attachment_list)

    def regenerate(
        self, session_id: str, attachments: Iterable[Attachment] = ()
    ) -> StreamController:
        """Start a generation over the session's current transcript.

        Raises ``TranscriptValidationError`` before any state is created when
        the selected provider rejects the transcript.
        """
        session = self.store.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(f"Unknown session {session_id!r}")
        self._ensure_idle(session_id)

        settings = self.settings_provider()
        selection = self.selector.select(
            settings, self._selected_model_id or session.model_id
        )
        request = ChatRequest(
            endpoint=selection.endpoint,
            messages=self.store.snapshot(session_id),
            model_id=selection.model_id,
            system_prompt=selection.system_prompt,
            attachments=tuple(attachments),
            api_key=selection.api_key,
        )
        selection.adapter.validate(request)

        message_id = self.store.append_placeholder(session_id)
        controller = StreamController(
            self.store,
            selection.adapter,
            request,
            session_id,
            message_id,
            prober=self.prober,
            probe_timeout=self.probe_timeout,
            task_manager=self.task_manager,
            on_finished=self._release,
        )
        self._controllers[session_id] = controller
        controller.start()
        return controller

    def _ensure_idle(self, session_id: str) -> None:
        if session_id in self._controllers:
            raise StreamAlreadyActiveError(
                f"Session {session_id!r} already has a generation in progress."
            )

    def _release(self, controller: StreamController) -> None:
        if self._controllers.get(controller.session_id) is controller:
            del self._controllers[controller.session_id]

    # -- lifecycle ---------------------------------------------------------

    def is_streaming(self, session_id: str) -> bool:
        return session_id in self._controllers

    def cancel(self, session_id: str) -> bool:
        """Stop the session's generation. Returns False when nothing was running."""
        controller = self._controllers.get(session_id)
        if controller is None:
            return False
        return controller.cancel()

    async def wait_idle(self) -> None:
        """Wait until every generation task has finished."""
        await self.task_manager.await_all()

    async def aclose(self) -> None:
        """Cancel all generations and wait for their transports to close."""
        for controller in list(self._controllers.values()):
            controller.cancel()
        await self.task_manager.cancel_all()
