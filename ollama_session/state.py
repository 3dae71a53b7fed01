"""Connection state machine and immutable session snapshots."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from uuid import UUID

from .models import AppTheme, Conversation, Message


class ConnectionStatus(str, Enum):
    """Reachability of the Ollama server as last observed."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class ConnectionStateManager:
    """Lock-protected connection status with a non re-entrant check guard."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._status = ConnectionStatus.DISCONNECTED
        self._checking = False

    @property
    def status(self) -> ConnectionStatus:
        return self._status

    @property
    def checking(self) -> bool:
        return self._checking

    async def begin_check(self) -> bool:
        """Enter the checking phase; return False when a check is already running."""
        async with self._lock:
            if self._checking:
                return False
            self._checking = True
            self._status = ConnectionStatus.CONNECTING
            return True

    async def set_status(self, status: ConnectionStatus) -> ConnectionStatus:
        async with self._lock:
            self._status = status
            return self._status

    async def end_check(self) -> ConnectionStatus:
        """Release the guard. A check that never resolved counts as disconnected."""
        async with self._lock:
            if self._status == ConnectionStatus.CONNECTING:
                self._status = ConnectionStatus.DISCONNECTED
            self._checking = False
            return self._status


@dataclass(frozen=True)
class SessionState:
    """Point-in-time copy of everything a chat UI renders."""

    messages: tuple[Message, ...]
    conversations: tuple[Conversation, ...]
    current_conversation_id: UUID | None
    connection_status: ConnectionStatus
    is_checking_connection: bool
    selected_model: str | None
    available_models: frozenset[str]
    current_model_supports_files: bool
    current_model_supports_vision: bool
    input_text: str
    is_thinking: bool
    notice: str | None
    theme: AppTheme

    @property
    def thinking_placeholders(self) -> int:
        return sum(1 for message in self.messages if message.is_thinking)
