"""Persisted chat data model: messages, conversations and the theme preference."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

THINKING_PLACEHOLDER_TEXT = "Thinking..."


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Message(BaseModel):
    """One chat turn as shown in the transcript and written to disk."""

    model_config = ConfigDict(populate_by_name=True)

    id: UUID = Field(default_factory=uuid4, frozen=True)
    content: str
    is_user: bool = Field(alias="isUser")
    timestamp: datetime = Field(default_factory=_utcnow, frozen=True)
    is_thinking: bool = Field(default=False, alias="isThinking")
    is_from_history: bool = Field(default=False, alias="isFromHistory")

    @classmethod
    def user(cls, content: str) -> Message:
        """Build a freshly authored user message."""
        return cls(content=content, is_user=True)

    @classmethod
    def assistant(cls, content: str) -> Message:
        """Build a freshly received model reply."""
        return cls(content=content, is_user=False)

    @classmethod
    def thinking_placeholder(cls) -> Message:
        """Build the transient bubble shown while a reply is pending."""
        return cls(content=THINKING_PLACEHOLDER_TEXT, is_user=False, is_thinking=True)

    def as_history(self) -> Message:
        """Return a copy flagged as restored from durable storage."""
        return self.model_copy(update={"is_from_history": True})


class Conversation(BaseModel):
    """A named session of messages persisted as one unit."""

    model_config = ConfigDict(populate_by_name=True)

    id: UUID = Field(default_factory=uuid4, frozen=True)
    messages: list[Message] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_utcnow, alias="createdAt", frozen=True)


class AppTheme(str, Enum):
    """Appearance preference stored alongside the conversations."""

    LIGHT = "light"
    DARK = "dark"
    SYSTEM = "system"

    @classmethod
    def parse(cls, value: Any) -> AppTheme:
        """Return the matching theme, falling back to ``SYSTEM`` for unknown values."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.SYSTEM


CONVERSATION_LIST = TypeAdapter(list[Conversation])


def dump_conversations(conversations: list[Conversation]) -> list[dict[str, Any]]:
    """Encode conversations to their JSON-compatible persisted form."""
    return CONVERSATION_LIST.dump_python(conversations, mode="json", by_alias=True)


def load_conversations(payload: Any) -> list[Conversation]:
    """Decode a persisted conversation list; raises ``pydantic.ValidationError``."""
    return CONVERSATION_LIST.validate_python(payload)
