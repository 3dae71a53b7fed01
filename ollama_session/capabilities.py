"""Fixed capability lists gating file and image submissions."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

VISION_MODELS: frozenset[str] = frozenset({"llava", "bakllava", "llava-chinese"})
FILE_MODELS: frozenset[str] = frozenset(
    {"llava", "bakllava", "llava-chinese", "claude-3"}
)


def normalize_model_list(models: Iterable[str]) -> frozenset[str]:
    """Lower-case and strip model identifiers, dropping blanks."""
    return frozenset(name.strip().lower() for name in models if name.strip())


@dataclass(frozen=True)
class ModelCapabilities:
    """Derived upload flags for the currently selected model."""

    supports_files: bool = False
    supports_vision: bool = False

    @classmethod
    def for_model(
        cls,
        model: str | None,
        *,
        vision_models: frozenset[str] = VISION_MODELS,
        file_models: frozenset[str] = FILE_MODELS,
    ) -> ModelCapabilities:
        """Recompute both flags by membership of the lower-cased identifier."""
        if not model:
            return cls()
        key = model.strip().lower()
        return cls(supports_files=key in file_models, supports_vision=key in vision_models)
