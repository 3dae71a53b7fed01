"""Conversation session manager.

Owns the working chat state, drives request/response cycles against the
Ollama server and persists conversation history through a
``ConversationStore``. Every operation is a coroutine expected to run on a
single event loop; network calls are the only suspension points, so the
working state needs no lock. The connection check guard is the exception and
lives in ``ConnectionStateManager``.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterable
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any
from uuid import UUID

from .attachments import (
    AttachmentValidator,
    compose_file_prompt,
    compose_image_prompt,
    encode_image,
    read_text_attachment,
)
from .capabilities import (
    FILE_MODELS,
    VISION_MODELS,
    ModelCapabilities,
    normalize_model_list,
)
from .events import SESSION_CHANGED, EventBus
from .exceptions import OllamaSessionError, PersistenceError
from .models import AppTheme, Conversation, Message
from .reporting import AppError, ErrorReporter
from .state import ConnectionStateManager, ConnectionStatus, SessionState
from .tasks import BackgroundTasks

if TYPE_CHECKING:
    from .client import OllamaClient
    from .persistence import ConversationStore

LOGGER = logging.getLogger(__name__)

CONNECTION_CHECK_TASK = "connection-check"

ALREADY_NEWEST_NOTICE = "Already at the newest conversation"
FILES_UNSUPPORTED_NOTICE = "The current model does not support file analysis"
IMAGES_UNSUPPORTED_NOTICE = "The current model does not support image analysis"


class SessionManager:
    """Mediate between a chat UI, the Ollama client and durable storage."""

    def __init__(
        self,
        client: OllamaClient,
        store: ConversationStore,
        reporter: ErrorReporter | None = None,
        events: EventBus | None = None,
        *,
        attachments: AttachmentValidator | None = None,
        vision_models: Iterable[str] = VISION_MODELS,
        file_models: Iterable[str] = FILE_MODELS,
    ) -> None:
        self.client = client
        self.store = store
        self.reporter = reporter or ErrorReporter()
        self.events = events or EventBus()
        self.attachments = attachments or AttachmentValidator()
        self.tasks = BackgroundTasks()
        self._connection = ConnectionStateManager()
        self._vision_models = normalize_model_list(vision_models)
        self._file_models = normalize_model_list(file_models)

        self.messages: list[Message] = []
        self.conversations: list[Conversation] = []
        self.current_conversation_id: UUID | None = None
        self.selected_model: str | None = None
        self.available_models: set[str] = set()
        self.capabilities = ModelCapabilities()
        self.input_text = ""
        self.notice: str | None = None
        self.theme = AppTheme.SYSTEM
        self._pending_replies = 0

    # -- observable state -------------------------------------------------

    @property
    def connection_status(self) -> ConnectionStatus:
        return self._connection.status

    @property
    def is_checking_connection(self) -> bool:
        return self._connection.checking

    @property
    def current_model_supports_files(self) -> bool:
        return self.capabilities.supports_files

    @property
    def current_model_supports_vision(self) -> bool:
        return self.capabilities.supports_vision

    @property
    def is_thinking(self) -> bool:
        return self._pending_replies > 0

    def snapshot(self) -> SessionState:
        """Return an immutable copy of the state a UI renders."""
        return SessionState(
            messages=tuple(self.messages),
            conversations=tuple(self.conversations),
            current_conversation_id=self.current_conversation_id,
            connection_status=self.connection_status,
            is_checking_connection=self.is_checking_connection,
            selected_model=self.selected_model,
            available_models=frozenset(self.available_models),
            current_model_supports_files=self.current_model_supports_files,
            current_model_supports_vision=self.current_model_supports_vision,
            input_text=self.input_text,
            is_thinking=self.is_thinking,
            notice=self.notice,
            theme=self.theme,
        )

    async def _publish(self, reason: str) -> None:
        await self.events.publish(
            SESSION_CHANGED,
            {"reason": reason, "state": self.snapshot()},
            source="session",
        )

    # -- lifecycle --------------------------------------------------------

    async def start(self) -> None:
        """Restore saved settings and history, then check the server in the background."""
        self.client.set_base_url(self.store.get_ollama_url())
        self._set_selected_model(self.store.get_selected_model())
        self.theme = self.store.get_theme()
        self.load_conversations()
        LOGGER.info(
            "session.started",
            extra={
                "event": "session.started",
                "conversations": len(self.conversations),
                "selected_model": self.selected_model,
            },
        )
        await self._publish("started")
        self.schedule_connection_check()

    def load_conversations(self) -> None:
        """Load the persisted list and make the newest conversation current."""
        self.conversations = self.store.get_conversations()
        if not self.conversations:
            return
        latest = self.conversations[-1]
        self.current_conversation_id = latest.id
        self.messages = [message.as_history() for message in latest.messages]

    def schedule_connection_check(self) -> asyncio.Task[ConnectionStatus]:
        return self.tasks.spawn(self.check_connection(), name=CONNECTION_CHECK_TASK)

    def on_app_resume(self) -> asyncio.Task[ConnectionStatus]:
        """Re-check the server when the application becomes active again."""
        return self.schedule_connection_check()

    async def aclose(self) -> None:
        await self.tasks.cancel_all()
        await self.client.aclose()

    # -- connection and models ---------------------------------------------

    async def check_connection(self) -> ConnectionStatus:
        """Probe the server; a call made while another check runs is a no-op."""
        if not await self._connection.begin_check():
            LOGGER.debug(
                "session.connection.check_skipped",
                extra={"event": "session.connection.check_skipped"},
            )
            return self.connection_status

        try:
            await self._publish("connection")
            try:
                connected = await self.client.check_health()
            except OllamaSessionError as exc:
                LOGGER.warning(
                    "session.connection.check_failed",
                    extra={
                        "event": "session.connection.check_failed",
                        "error_type": exc.__class__.__name__,
                    },
                )
                connected = False

            if connected:
                await self._connection.set_status(ConnectionStatus.CONNECTED)
                LOGGER.info(
                    "session.connection.online",
                    extra={"event": "session.connection.online", "host": self.client.host},
                )
                await self._publish("connection")
                await self.fetch_available_models()
            else:
                await self._connection.set_status(ConnectionStatus.DISCONNECTED)
                self.reporter.report(
                    AppError.network("Unable to connect to the Ollama server")
                )
        finally:
            await self._connection.end_check()
        await self._publish("connection")
        return self.connection_status

    async def fetch_available_models(self) -> None:
        """Refresh the model list; never leave the selection on a missing model."""
        if self.connection_status != ConnectionStatus.CONNECTED:
            return

        try:
            models = await self.client.list_models()
        except OllamaSessionError as exc:
            LOGGER.warning(
                "session.models.fetch_failed",
                extra={
                    "event": "session.models.fetch_failed",
                    "error_type": exc.__class__.__name__,
                },
            )
            self.reporter.report(AppError.network("Failed to fetch the model list"))
            return

        self.available_models = set(models)
        if self.selected_model is not None and self.selected_model not in models:
            LOGGER.warning(
                "session.models.selection_missing",
                extra={
                    "event": "session.models.selection_missing",
                    "model": self.selected_model,
                },
            )
            self._set_selected_model(None)
            self._persist(self.store.save_selected_model, None)
            self.reporter.report(
                AppError.model("The previously selected model is no longer available")
            )
        await self._publish("models")

    def _set_selected_model(self, model: str | None) -> None:
        self.selected_model = model
        self.capabilities = ModelCapabilities.for_model(
            model, vision_models=self._vision_models, file_models=self._file_models
        )

    # -- message exchange ---------------------------------------------------

    async def send_message(self, text: str | None = None) -> Message | None:
        """Send ``input_text`` (or ``text``) and return the assistant reply, if any.

        Input that is empty or only whitespace is ignored without an error.
        """
        if text is not None:
            self.input_text = text
        if not self.input_text.strip():
            return None
        if self.connection_status != ConnectionStatus.CONNECTED:
            self.reporter.report(AppError.network("Connect to the Ollama server first"))
            return None
        model = self.selected_model
        if model is None:
            self.reporter.report(AppError.model("Select a model first"))
            return None

        prompt = Message.user(self.input_text)
        self.messages.append(prompt)
        self.input_text = ""
        return await self._exchange(prompt, model)

    async def handle_file_upload(self, path: str | Path) -> Message | None:
        """Submit a text file's contents for analysis by the selected model."""
        model = self.selected_model
        if model is None or not self.current_model_supports_files:
            await self._set_notice(FILES_UNSUPPORTED_NOTICE)
            return None

        ok, reason, resolved = self.attachments.validate_file(path)
        if not ok or resolved is None:
            await self._set_notice(f"File read failed: {reason}")
            return None
        try:
            content = read_text_attachment(resolved)
        except OSError as exc:
            await self._set_notice(f"File read failed: {exc}")
            return None

        prompt = Message.user(compose_file_prompt(content))
        self.messages.append(prompt)
        return await self._exchange(prompt, model)

    async def handle_image_upload(self, image: bytes | str | Path) -> Message | None:
        """Submit an image, given as raw bytes or a path, inline as base64."""
        model = self.selected_model
        if model is None or not self.current_model_supports_vision:
            await self._set_notice(IMAGES_UNSUPPORTED_NOTICE)
            return None

        if isinstance(image, bytes):
            ok, reason = self.attachments.validate_image_bytes(image)
            data = image
        else:
            ok, reason, resolved = self.attachments.validate_image(image)
            data = b""
            if ok and resolved is not None:
                try:
                    data = resolved.read_bytes()
                except OSError as exc:
                    ok, reason = False, str(exc)
        if not ok:
            await self._set_notice(f"Image processing failed: {reason}")
            return None

        prompt = Message.user(compose_image_prompt(encode_image(data)))
        self.messages.append(prompt)
        return await self._exchange(prompt, model)

    async def _exchange(self, prompt: Message, model: str) -> Message | None:
        """Show a thinking placeholder, generate, then replace it or report."""
        placeholder = Message.thinking_placeholder()
        self.messages.append(placeholder)
        self._pending_replies += 1
        conversation_id = self.current_conversation_id
        await self._publish("thinking")

        try:
            reply_text = await self.client.generate(prompt.content, model)
        except OllamaSessionError as exc:
            self._retire_placeholder(placeholder)
            LOGGER.warning(
                "session.reply.failed",
                extra={
                    "event": "session.reply.failed",
                    "model": model,
                    "error_type": exc.__class__.__name__,
                },
            )
            self.reporter.report(AppError.network("Failed to generate a reply"))
            await self._publish("messages")
            return None
        except asyncio.CancelledError:
            self._retire_placeholder(placeholder)
            raise

        self._retire_placeholder(placeholder)
        if self.current_conversation_id != conversation_id:
            LOGGER.warning(
                "session.response.conversation_switched",
                extra={
                    "event": "session.response.conversation_switched",
                    "requested_in": str(conversation_id),
                    "appended_to": str(self.current_conversation_id),
                },
            )
        reply = Message.assistant(reply_text)
        self.messages.append(reply)
        self.save_current_conversation()
        await self._publish("messages")
        return reply

    def _retire_placeholder(self, placeholder: Message) -> None:
        self._pending_replies -= 1
        for index in range(len(self.messages) - 1, -1, -1):
            if self.messages[index].id == placeholder.id:
                del self.messages[index]
                return

    # -- conversations --------------------------------------------------------

    def _conversation_index(self, conversation_id: UUID | None) -> int | None:
        if conversation_id is None:
            return None
        for index, conversation in enumerate(self.conversations):
            if conversation.id == conversation_id:
                return index
        return None

    def save_current_conversation(self) -> Conversation:
        """Write the working messages into the current conversation and persist all.

        The stored entry is replaced by an updated copy, never edited in place,
        so conversations held by earlier snapshots keep their contents.
        """
        persisted = [message for message in self.messages if not message.is_thinking]
        index = self._conversation_index(self.current_conversation_id)
        if index is not None:
            conversation = self.conversations[index].model_copy(
                update={"messages": persisted}
            )
            self.conversations[index] = conversation
        else:
            conversation = Conversation(messages=persisted)
            self.conversations.append(conversation)
            self.current_conversation_id = conversation.id
        self._persist(self.store.save_conversations, self.conversations)
        LOGGER.debug(
            "session.conversation.saved",
            extra={
                "event": "session.conversation.saved",
                "conversation_id": str(conversation.id),
                "messages": len(persisted),
            },
        )
        return conversation

    async def clear_chat(self) -> Conversation | None:
        """Start a new empty conversation, saving the current one first."""
        newest = self.conversations[-1] if self.conversations else None
        if (
            self.current_conversation_id is not None
            and newest is not None
            and newest.id == self.current_conversation_id
            and not self.messages
        ):
            await self._set_notice(ALREADY_NEWEST_NOTICE)
            return None

        if self.messages:
            self.save_current_conversation()

        conversation = Conversation()
        self.conversations.append(conversation)
        self.current_conversation_id = conversation.id
        self.messages = []
        self._persist(self.store.save_conversations, self.conversations)
        LOGGER.info(
            "session.conversation.created",
            extra={
                "event": "session.conversation.created",
                "conversation_id": str(conversation.id),
            },
        )
        await self._publish("conversations")
        return conversation

    # -- settings ---------------------------------------------------------------

    async def update_model(self, model: str) -> None:
        self._set_selected_model(model)
        self._persist(self.store.save_selected_model, model)
        await self._publish("model")

    async def update_ollama_url(self, url: str) -> asyncio.Task[ConnectionStatus]:
        """Retarget the client, remember the URL and re-check in the background."""
        self.client.set_base_url(url)
        self._persist(self.store.save_ollama_url, url)
        await self._publish("url")
        return self.schedule_connection_check()

    async def update_theme(self, theme: AppTheme | str) -> None:
        self.theme = AppTheme.parse(theme)
        self._persist(self.store.save_theme, self.theme)
        await self._publish("theme")

    async def _set_notice(self, text: str) -> None:
        self.notice = text
        LOGGER.info("session.notice", extra={"event": "session.notice", "notice": text})
        await self._publish("notice")

    async def dismiss_notice(self) -> None:
        self.notice = None
        await self._publish("notice")

    def _persist(self, write: Callable[..., None], *args: Any) -> None:
        try:
            write(*args)
        except PersistenceError as exc:
            LOGGER.error(
                "session.persist.failed",
                extra={"event": "session.persist.failed", "reason": str(exc)},
            )
