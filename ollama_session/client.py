"""Async client for the Ollama REST surface: health, model listing and generation."""

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import urlsplit, urlunsplit

import httpx
from ollama import AsyncClient, ResponseError

from .exceptions import (
    OllamaModelNotFoundError,
    OllamaSessionError,
    OllamaTransportError,
)

LOGGER = logging.getLogger(__name__)

DEFAULT_HOST = "http://127.0.0.1:11434"
HEALTH_TIMEOUT_SECONDS = 5.0
GENERATE_TIMEOUT_SECONDS = 30.0
TAGS_PATH = "/api/tags"

_LOOPBACK_NAME = "localhost"
_LOOPBACK_ADDRESS = "127.0.0.1"


def normalize_base_url(url: str) -> str:
    """Strip trailing slashes and pin a ``localhost`` host to ``127.0.0.1``.

    Only the host component is rewritten; scheme, port, credentials and path
    are left untouched.
    """
    try:
        parts = urlsplit(url.strip())
    except ValueError:
        return url.strip().rstrip("/")
    if parts.hostname == _LOOPBACK_NAME:
        userinfo, sep, hostport = parts.netloc.rpartition("@")
        hostport = _LOOPBACK_ADDRESS + hostport[len(_LOOPBACK_NAME) :]
        parts = parts._replace(netloc=f"{userinfo}{sep}{hostport}")
    return urlunsplit(parts).rstrip("/")


def _invalid_host_reason(host: str) -> str | None:
    """Return why ``host`` cannot be dialled, or None when it parses."""
    try:
        parts = urlsplit(host)
        parts.port  # raises on a non-numeric or out-of-range port
    except ValueError as exc:
        return str(exc)
    if not parts.hostname:
        return "missing hostname"
    return None


def _field(payload: Any, name: str) -> Any:
    """Read ``name`` from an SDK response object or a plain dict."""
    if isinstance(payload, dict):
        return payload.get(name)
    return getattr(payload, name, None)


class OllamaClient:
    """Stateless wrapper around the Ollama server.

    No retries, no streaming and no cancellation: each call completes or fails
    atomically. The SDK client and the HTTP client used for health probes can
    be injected for tests.
    """

    def __init__(
        self,
        host: str = DEFAULT_HOST,
        *,
        health_timeout: float = HEALTH_TIMEOUT_SECONDS,
        generate_timeout: float = GENERATE_TIMEOUT_SECONDS,
        client: Any | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.health_timeout = health_timeout
        self.generate_timeout = generate_timeout
        self.host = normalize_base_url(host)
        self._client_injected = client is not None
        self._client = client if client is not None else self._build_sdk_client()
        self._owns_http_client = http_client is None
        self._http = http_client if http_client is not None else httpx.AsyncClient()

    def _build_sdk_client(self) -> AsyncClient | None:
        """Build the SDK client, or None when the host cannot be parsed.

        The unusable host is still kept; health checks against it return
        False and SDK calls raise ``OllamaTransportError``.
        """
        try:
            return AsyncClient(host=self.host, timeout=self.generate_timeout)
        except ValueError as exc:
            LOGGER.warning(
                "client.host.invalid",
                extra={
                    "event": "client.host.invalid",
                    "host": self.host,
                    "error": str(exc),
                },
            )
            return None

    def _sdk(self) -> Any:
        if self._client is None:
            raise OllamaTransportError(f"Invalid Ollama host {self.host}.")
        return self._client

    def set_base_url(self, url: str) -> None:
        """Point all subsequent calls at ``url``."""
        normalized = normalize_base_url(url)
        if normalized == self.host:
            return
        self.host = normalized
        if not self._client_injected:
            self._client = self._build_sdk_client()
        LOGGER.info(
            "client.base_url.changed",
            extra={"event": "client.base_url.changed", "host": self.host},
        )

    async def check_health(self) -> bool:
        """Return True iff the tags endpoint answers with a success status."""
        reason = _invalid_host_reason(self.host)
        if reason is not None:
            LOGGER.warning(
                "client.health.error",
                extra={
                    "event": "client.health.error",
                    "host": self.host,
                    "error_type": "InvalidHost",
                    "error": reason,
                },
            )
            return False

        url = f"{self.host}{TAGS_PATH}"
        try:
            response = await self._http.get(url, timeout=self.health_timeout)
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            LOGGER.warning(
                "client.health.error",
                extra={
                    "event": "client.health.error",
                    "host": self.host,
                    "error_type": exc.__class__.__name__,
                    "error": str(exc),
                },
            )
            return False
        LOGGER.debug(
            "client.health.response",
            extra={
                "event": "client.health.response",
                "host": self.host,
                "status_code": response.status_code,
            },
        )
        return response.is_success

    async def list_models(self) -> set[str]:
        """Return the names of all models installed on the server."""
        try:
            response = await self._sdk().list()
        except Exception as exc:  # noqa: BLE001 - external API can fail in many ways.
            raise self._map_exception(exc) from exc

        models = _field(response, "models")
        if not isinstance(models, list):
            raise OllamaTransportError(
                f"Unexpected model listing payload from {self.host}."
            )

        names: set[str] = set()
        for entry in models:
            name = _field(entry, "name")
            if not isinstance(name, str) or not name.strip():
                name = _field(entry, "model")
            if not isinstance(name, str) or not name.strip():
                raise OllamaTransportError(
                    f"Model descriptor without a name from {self.host}."
                )
            names.add(name.strip())
        return names

    async def generate(self, prompt: str, model: str) -> str:
        """Run one non-streaming generation and return the response text."""
        LOGGER.info(
            "client.generate.start",
            extra={"event": "client.generate.start", "model": model},
        )
        try:
            response = await self._sdk().generate(
                model=model, prompt=prompt, stream=False
            )
        except Exception as exc:  # noqa: BLE001 - external API can fail in many ways.
            raise self._map_exception(exc, model=model) from exc

        text = _field(response, "response")
        if not isinstance(text, str):
            raise OllamaTransportError(
                f"Generation response from {self.host} has no text."
            )
        LOGGER.info(
            "client.generate.complete",
            extra={
                "event": "client.generate.complete",
                "model": model,
                "chars": len(text),
            },
        )
        return text

    def _map_exception(
        self, exc: Exception, model: str | None = None
    ) -> OllamaSessionError:
        if isinstance(exc, OllamaSessionError):
            return exc

        if model is not None and isinstance(exc, ResponseError):
            if exc.status_code == 404:
                return OllamaModelNotFoundError(
                    f"Model {model!r} was not found on {self.host}."
                )

        if isinstance(exc, (httpx.ConnectError, httpx.TimeoutException, ConnectionError)):
            return OllamaTransportError(f"Unable to connect to Ollama host {self.host}.")

        return OllamaTransportError(f"Request to Ollama at {self.host} failed: {exc}")

    async def aclose(self) -> None:
        """Release the health-probe HTTP client when this instance created it."""
        if self._owns_http_client:
            await self._http.aclose()
