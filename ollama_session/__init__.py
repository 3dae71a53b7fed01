"""Conversation session core for a desktop Ollama chat client."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .bootstrap import build_session
    from .client import OllamaClient
    from .config import ensure_config_dir, load_config
    from .exceptions import (
        ConfigValidationError,
        OllamaModelNotFoundError,
        OllamaSessionError,
        OllamaTransportError,
        PersistenceError,
    )
    from .models import AppTheme, Conversation, Message
    from .persistence import (
        ConversationStore,
        InMemoryConversationStore,
        JsonConversationStore,
    )
    from .reporting import AppError, ErrorKind, ErrorReporter
    from .session import SessionManager
    from .state import ConnectionStatus, SessionState

__all__ = [
    "AppError",
    "AppTheme",
    "ConfigValidationError",
    "ConnectionStatus",
    "Conversation",
    "ConversationStore",
    "ErrorKind",
    "ErrorReporter",
    "InMemoryConversationStore",
    "JsonConversationStore",
    "Message",
    "OllamaClient",
    "OllamaModelNotFoundError",
    "OllamaSessionError",
    "OllamaTransportError",
    "PersistenceError",
    "SessionManager",
    "SessionState",
    "build_session",
    "ensure_config_dir",
    "load_config",
]

_LAZY_EXPORTS = {
    "AppError": "reporting",
    "AppTheme": "models",
    "ConfigValidationError": "exceptions",
    "ConnectionStatus": "state",
    "Conversation": "models",
    "ConversationStore": "persistence",
    "ErrorKind": "reporting",
    "ErrorReporter": "reporting",
    "InMemoryConversationStore": "persistence",
    "JsonConversationStore": "persistence",
    "Message": "models",
    "OllamaClient": "client",
    "OllamaModelNotFoundError": "exceptions",
    "OllamaSessionError": "exceptions",
    "OllamaTransportError": "exceptions",
    "PersistenceError": "exceptions",
    "SessionManager": "session",
    "SessionState": "state",
    "build_session": "bootstrap",
    "ensure_config_dir": "config",
    "load_config": "config",
}


def __getattr__(name: str) -> Any:
    """Lazily import symbols so the SDK client is only loaded when used."""
    module_name = _LAZY_EXPORTS.get(name)
    if module_name is None:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
    from importlib import import_module

    return getattr(import_module(f".{module_name}", __name__), name)
