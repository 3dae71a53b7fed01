"""Single-slot sink for the most recent user-facing error."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
import logging

LOGGER = logging.getLogger(__name__)


class ErrorKind(str, Enum):
    """Category of a reported error."""

    NETWORK = "network"
    MODEL = "model"
    SYSTEM = "system"


_KIND_LABELS = {
    ErrorKind.NETWORK: "Network error",
    ErrorKind.MODEL: "Model error",
    ErrorKind.SYSTEM: "System error",
}


@dataclass(frozen=True)
class AppError:
    """A user-facing, non-fatal error."""

    kind: ErrorKind
    message: str

    @property
    def description(self) -> str:
        """Human readable text for an alert."""
        return f"{_KIND_LABELS[self.kind]}: {self.message}"

    @classmethod
    def network(cls, message: str) -> AppError:
        return cls(ErrorKind.NETWORK, message)

    @classmethod
    def model(cls, message: str) -> AppError:
        return cls(ErrorKind.MODEL, message)

    @classmethod
    def system(cls, message: str) -> AppError:
        return cls(ErrorKind.SYSTEM, message)


ErrorListener = Callable[[AppError | None], None]


class ErrorReporter:
    """Hold at most one active error; newer reports overwrite older ones.

    Listeners are called synchronously with the new error on ``report`` and
    with ``None`` on ``dismiss``.
    """

    def __init__(self) -> None:
        self._current: AppError | None = None
        self._showing = False
        self._listeners: list[ErrorListener] = []

    @property
    def current(self) -> AppError | None:
        return self._current

    @property
    def showing(self) -> bool:
        return self._showing

    def subscribe(self, listener: ErrorListener) -> None:
        """Register a callback for report/dismiss notifications."""
        self._listeners.append(listener)

    def unsubscribe(self, listener: ErrorListener) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    def report(self, error: AppError) -> None:
        """Replace the active error and mark it as displayed."""
        self._current = error
        self._showing = True
        LOGGER.warning(
            "error.reported",
            extra={
                "event": "error.reported",
                "kind": error.kind.value,
                "error_message": error.message,
            },
        )
        self._notify(error)

    def dismiss(self) -> None:
        """Clear the active error."""
        self._showing = False
        self._current = None
        self._notify(None)

    def _notify(self, error: AppError | None) -> None:
        for listener in list(self._listeners):
            try:
                listener(error)
            except Exception:
                LOGGER.exception(
                    "error.listener.failed", extra={"event": "error.listener.failed"}
                )
