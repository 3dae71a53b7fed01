"""Durable key-value storage for conversations, model selection, server URL and theme."""

from __future__ import annotations

from abc import ABC, abstractmethod
from copy import deepcopy
import json
import logging
import os
from pathlib import Path
from typing import Any, Protocol

from pydantic import ValidationError

from .exceptions import PersistenceError, PersistenceFormatError
from .models import AppTheme, Conversation, dump_conversations, load_conversations

LOGGER = logging.getLogger(__name__)

DEFAULT_OLLAMA_URL = "http://127.0.0.1:11434"

URL_KEY = "ollama_url"
SELECTED_MODEL_KEY = "selected_model"
CONVERSATIONS_KEY = "conversations"
THEME_KEY = "app_theme"


class ConversationStore(Protocol):
    """Sole persistence path of the session. Writes are full overwrites."""

    def get_ollama_url(self) -> str: ...

    def save_ollama_url(self, url: str) -> None: ...

    def get_selected_model(self) -> str | None: ...

    def save_selected_model(self, model: str | None) -> None: ...

    def get_conversations(self) -> list[Conversation]: ...

    def save_conversations(self, conversations: list[Conversation]) -> None: ...

    def get_theme(self) -> AppTheme: ...

    def save_theme(self, theme: AppTheme) -> None: ...


class _KeyValueConversationStore(ABC):
    """Typed accessors shared by the concrete stores."""

    def __init__(self, default_ollama_url: str = DEFAULT_OLLAMA_URL) -> None:
        self.default_ollama_url = default_ollama_url

    @abstractmethod
    def _read(self, key: str) -> Any:
        """Return the raw JSON-compatible value stored under ``key``, or None."""

    @abstractmethod
    def _write(self, key: str, value: Any) -> None: ...

    @abstractmethod
    def _remove(self, key: str) -> None: ...

    def get_ollama_url(self) -> str:
        value = self._read(URL_KEY)
        if isinstance(value, str) and value.strip():
            return value
        return self.default_ollama_url

    def save_ollama_url(self, url: str) -> None:
        self._write(URL_KEY, url)

    def get_selected_model(self) -> str | None:
        value = self._read(SELECTED_MODEL_KEY)
        return value if isinstance(value, str) and value else None

    def save_selected_model(self, model: str | None) -> None:
        if model is None:
            self._remove(SELECTED_MODEL_KEY)
        else:
            self._write(SELECTED_MODEL_KEY, model)

    def get_conversations(self) -> list[Conversation]:
        payload = self._read(CONVERSATIONS_KEY)
        if payload is None:
            return []
        try:
            return load_conversations(payload)
        except ValidationError as exc:
            LOGGER.warning(
                "store.conversations.undecodable",
                extra={
                    "event": "store.conversations.undecodable",
                    "errors": exc.error_count(),
                },
            )
            return []

    def save_conversations(self, conversations: list[Conversation]) -> None:
        self._write(CONVERSATIONS_KEY, dump_conversations(conversations))

    def get_theme(self) -> AppTheme:
        return AppTheme.parse(self._read(THEME_KEY) or AppTheme.SYSTEM.value)

    def save_theme(self, theme: AppTheme) -> None:
        self._write(THEME_KEY, AppTheme.parse(theme).value)


class InMemoryConversationStore(_KeyValueConversationStore):
    """Process-local store; values are kept in their JSON-compatible form."""

    def __init__(self, default_ollama_url: str = DEFAULT_OLLAMA_URL) -> None:
        super().__init__(default_ollama_url)
        self._values: dict[str, Any] = {}

    def _read(self, key: str) -> Any:
        return deepcopy(self._values.get(key))

    def _write(self, key: str, value: Any) -> None:
        self._values[key] = deepcopy(value)

    def _remove(self, key: str) -> None:
        self._values.pop(key, None)


class JsonConversationStore(_KeyValueConversationStore):
    """Keep every key in one private JSON document on disk.

    Each write rewrites the whole document. There is no integrity check, so
    a crash mid-write can leave a corrupt file, which later reads treat as
    empty.
    """

    def __init__(
        self, path: str | Path, default_ollama_url: str = DEFAULT_OLLAMA_URL
    ) -> None:
        super().__init__(default_ollama_url)
        self.path = Path(path).expanduser()

    def _enforce_permissions(self, path: Path, mode: int = 0o600) -> None:
        """Set POSIX permissions on a file or directory; silently ignores failures."""
        if os.name != "posix":
            return
        try:
            path.chmod(mode)
        except OSError:
            pass

    def _load_document(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            return self._decode(self.path.read_text(encoding="utf-8"))
        except (OSError, PersistenceFormatError) as exc:
            LOGGER.warning(
                "store.document.unreadable",
                extra={
                    "event": "store.document.unreadable",
                    "path": str(self.path),
                    "reason": str(exc),
                },
            )
            return {}

    @staticmethod
    def _decode(text: str) -> dict[str, Any]:
        try:
            payload = json.loads(text)
        except json.JSONDecodeError as exc:
            raise PersistenceFormatError(f"Store document is not JSON: {exc}") from exc
        if not isinstance(payload, dict):
            raise PersistenceFormatError("Store document must be a JSON object.")
        return payload

    def _write_document(self, document: dict[str, Any]) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._enforce_permissions(self.path.parent, 0o700)
            self.path.write_text(
                json.dumps(document, ensure_ascii=False, indent=2, sort_keys=True),
                encoding="utf-8",
            )
        except OSError as exc:
            raise PersistenceError(f"Unable to write {self.path}: {exc}") from exc
        self._enforce_permissions(self.path)

    def _read(self, key: str) -> Any:
        return self._load_document().get(key)

    def _write(self, key: str, value: Any) -> None:
        document = self._load_document()
        document[key] = value
        self._write_document(document)

    def _remove(self, key: str) -> None:
        document = self._load_document()
        if key in document:
            del document[key]
            self._write_document(document)
