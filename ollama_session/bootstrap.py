"""Wire configuration, logging, storage and the client into a session."""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

from .attachments import AttachmentValidator
from .client import OllamaClient
from .config import load_config
from .logging_utils import configure_logging
from .persistence import JsonConversationStore
from .session import SessionManager

if TYPE_CHECKING:
    from .persistence import ConversationStore


def build_session(
    config_path: Path | None = None,
    *,
    client: OllamaClient | None = None,
    store: ConversationStore | None = None,
) -> SessionManager:
    """Build an unstarted ``SessionManager`` from the user's configuration.

    Call ``await session.start()`` on the UI's event loop afterwards.
    """
    config = load_config(config_path)
    configure_logging(config["logging"])

    ollama_cfg = config["ollama"]
    if client is None:
        client = OllamaClient(
            host=ollama_cfg["host"],
            health_timeout=ollama_cfg["health_timeout"],
            generate_timeout=ollama_cfg["generate_timeout"],
        )
    if store is None:
        store = JsonConversationStore(
            config["persistence"]["path"], default_ollama_url=ollama_cfg["host"]
        )

    attachments_cfg = config["attachments"]
    return SessionManager(
        client,
        store,
        attachments=AttachmentValidator(
            max_image_bytes=attachments_cfg["max_image_bytes"],
            max_file_bytes=attachments_cfg["max_file_bytes"],
        ),
        vision_models=config["capabilities"]["vision_models"],
        file_models=config["capabilities"]["file_models"],
    )
