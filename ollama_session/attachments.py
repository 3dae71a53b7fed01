"""Validation and prompt composition for file and image submissions."""

from __future__ import annotations

import base64
import logging
from pathlib import Path

LOGGER = logging.getLogger(__name__)

# Image file extensions accepted for vision submissions
IMAGE_EXTENSIONS: frozenset[str] = frozenset(
    {".png", ".jpg", ".jpeg", ".gif", ".bmp", ".webp", ".tiff", ".tif", ".heic"}
)

FILE_PROMPT_PREFIX = "Please analyze the following file content:"
IMAGE_PROMPT_PREFIX = "Please analyze this image:"
UNREADABLE_FILE_TEXT = "Unable to read file contents"


def compose_file_prompt(content: str) -> str:
    """Embed decoded file text into an analysis prompt."""
    return f"{FILE_PROMPT_PREFIX}\n\n{content}"


def compose_image_prompt(encoded_image: str) -> str:
    """Embed a base64 image payload inline into an analysis prompt."""
    return f"{IMAGE_PROMPT_PREFIX}\n[Image data: {encoded_image}]"


def encode_image(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def read_text_attachment(path: Path) -> str:
    """Read ``path`` as UTF-8, substituting a fixed notice for undecodable bytes.

    Raises ``OSError`` when the file cannot be read at all.
    """
    raw = path.read_bytes()
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError:
        LOGGER.info(
            "attachments.file.undecodable",
            extra={"event": "attachments.file.undecodable", "path": str(path)},
        )
        return UNREADABLE_FILE_TEXT


class AttachmentValidator:
    """Check that a picked file or image exists, has an allowed type and fits."""

    def __init__(
        self,
        *,
        max_image_bytes: int = 10 * 1024 * 1024,  # 10 MB
        max_file_bytes: int = 2 * 1024 * 1024,  # 2 MB
    ) -> None:
        self.max_image_bytes = max_image_bytes
        self.max_file_bytes = max_file_bytes

    @staticmethod
    def is_image_path(path: str | Path) -> bool:
        return Path(path).suffix.lower() in IMAGE_EXTENSIONS

    def validate_file(self, path: str | Path) -> tuple[bool, str, Path | None]:
        return self.validate_attachment(
            path, kind="file", max_bytes=self.max_file_bytes, allowed_extensions=None
        )

    def validate_image(self, path: str | Path) -> tuple[bool, str, Path | None]:
        return self.validate_attachment(
            path,
            kind="image",
            max_bytes=self.max_image_bytes,
            allowed_extensions=IMAGE_EXTENSIONS,
        )

    def validate_image_bytes(self, data: bytes) -> tuple[bool, str]:
        if not data:
            return False, "Image is empty"
        if len(data) > self.max_image_bytes:
            max_mb = self.max_image_bytes / (1024 * 1024)
            return False, f"Image too large (max {max_mb:.1f}MB)"
        return True, ""

    @staticmethod
    def validate_attachment(
        path: str | Path,
        *,
        kind: str,  # "image" or "file"
        max_bytes: int,
        allowed_extensions: frozenset[str] | None,
    ) -> tuple[bool, str, Path | None]:
        """Validate attachment path, size, and type.

        Returns:
            Tuple of (success, error_message, resolved_path)
        """
        try:
            resolved = Path(path).expanduser().resolve()

            if not resolved.exists():
                return False, f"{kind.capitalize()} not found: {path}", None

            if not resolved.is_file():
                return False, f"Not a file: {path}", None

            if allowed_extensions:
                if resolved.suffix.lower() not in allowed_extensions:
                    exts = ", ".join(sorted(allowed_extensions))
                    return False, f"Invalid {kind} type. Allowed: {exts}", None

            size = resolved.stat().st_size
            if size > max_bytes:
                max_mb = max_bytes / (1024 * 1024)
                return (
                    False,
                    f"{kind.capitalize()} too large (max {max_mb:.1f}MB)",
                    None,
                )

            return True, "", resolved

        except OSError as exc:
            return False, f"Error validating {kind}: {exc}", None
