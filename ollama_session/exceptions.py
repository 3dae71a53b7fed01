"""Domain exception hierarchy for the Ollama session core."""

from __future__ import annotations


class OllamaSessionError(RuntimeError):
    """Base class for all domain-level session errors."""


class OllamaTransportError(OllamaSessionError):
    """Raised when a request fails in transit or returns a malformed body."""


class OllamaModelNotFoundError(OllamaSessionError):
    """Raised when the server reports that the requested model does not exist."""


class ConfigValidationError(OllamaSessionError):
    """Raised when configuration cannot be validated safely."""


class PersistenceError(OllamaSessionError):
    """Raised when the durable store cannot be written."""


class PersistenceFormatError(PersistenceError):
    """Raised when a persisted payload cannot be decoded safely."""
