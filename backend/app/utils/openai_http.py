"""Shared HTTP transport for OpenAI endpoints with retry semantics."""
from __future__ import annotations

import json
import logging
import os
import time
from typing import Any, Callable, Dict, Optional, Protocol, runtime_checkable

import httpx

from backend.app.config import ConfigurationError, OpenAIConfig

LOGGER = logging.getLogger(__name__)


class OpenAIRequestError(RuntimeError):
    """Raised when an OpenAI request fails after exhausting retries."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


@runtime_checkable
class _HTTPClient(Protocol):
    """Minimal client interface satisfied by ``httpx.Client``."""

    def post(self, url: str, *, headers: Dict[str, str], json: Dict[str, Any]) -> Any:
        """Send a POST request and return a response object."""

    def close(self) -> None:
        """Close any underlying resources."""


def resolve_api_key(api_key: Optional[str] = None) -> str:
    """Return the OpenAI credential from the argument or the environment.

    Args:
        api_key: Explicit key. Falls back to ``OPENAI_API_KEY`` when omitted.

    Returns:
        str: The resolved API key.

    Raises:
        ConfigurationError: If no key is available.
    """

    resolved = api_key or os.getenv("OPENAI_API_KEY")
    if not resolved or not resolved.strip():
        msg = "OpenAI API key must be provided via argument or OPENAI_API_KEY"
        raise ConfigurationError(msg)
    return resolved.strip()


class OpenAIHTTPClient:
    """POST JSON payloads to the OpenAI API with bounded retries."""

    def __init__(
        self,
        settings: OpenAIConfig,
        *,
        api_key: Optional[str] = None,
        client: Optional[_HTTPClient] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._settings = settings
        self._api_key = resolve_api_key(api_key)
        self._retry_statuses = set(settings.retry_statuses)
        self._sleep = sleep
        if client is None:
            self._client: _HTTPClient = httpx.Client(
                base_url=settings.api_base,
                timeout=settings.timeout_seconds,
            )
            self._owns_client = True
        else:
            self._client = client
            self._owns_client = False
        self._headers = {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }

    @property
    def settings(self) -> OpenAIConfig:
        """Return the transport settings."""

        return self._settings

    def close(self) -> None:
        """Close underlying HTTP resources if this instance owns them."""

        if self._owns_client:
            self._client.close()

    def post_json(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Send ``payload`` to ``path`` and return the decoded JSON body.

        Transport errors and statuses listed in ``retry_statuses`` are retried
        with exponential backoff up to ``max_retries`` times.

        Args:
            path: Endpoint path relative to the configured API base.
            payload: JSON-serializable request body.

        Returns:
            Dict[str, Any]: Parsed JSON response.

        Raises:
            OpenAIRequestError: If the request ultimately fails.
        """

        attempt = 0
        delay = self._settings.backoff_initial_seconds
        while True:
            start = time.perf_counter()
            try:
                response = self._client.post(path, headers=dict(self._headers), json=payload)
            except (httpx.TransportError, TimeoutError) as exc:
                elapsed = time.perf_counter() - start
                if attempt >= self._settings.max_retries:
                    LOGGER.error("OpenAI request to %s failed after %.2fs: %s", path, elapsed, exc)
                    raise OpenAIRequestError(f"OpenAI request failed: {exc}") from exc
                attempt += 1
                LOGGER.warning(
                    "OpenAI request to %s raised %s after %.2fs; retrying (attempt %s)",
                    path,
                    exc.__class__.__name__,
                    elapsed,
                    attempt,
                )
                delay = self._backoff(delay)
                continue
            elapsed = time.perf_counter() - start
            status_code = int(getattr(response, "status_code", 0) or 0)
            if 0 < status_code < 400:
                try:
                    body = response.json()
                except (json.JSONDecodeError, ValueError) as exc:
                    LOGGER.error("OpenAI response from %s was not valid JSON after %.2fs", path, elapsed)
                    raise OpenAIRequestError("OpenAI response was not valid JSON") from exc
                if not isinstance(body, dict):
                    raise OpenAIRequestError("OpenAI response root must be an object")
                if attempt > 0:
                    LOGGER.info(
                        "OpenAI request to %s succeeded after %s retries (elapsed %.2fs)",
                        path,
                        attempt,
                        elapsed,
                    )
                else:
                    LOGGER.debug("OpenAI request to %s completed in %.2fs", path, elapsed)
                return body
            if status_code not in self._retry_statuses or attempt >= self._settings.max_retries:
                message = _extract_error_message(response)
                LOGGER.error(
                    "OpenAI request to %s failed with status %s after %.2fs: %s",
                    path,
                    status_code,
                    elapsed,
                    message,
                )
                raise OpenAIRequestError(
                    f"OpenAI request failed with status {status_code}: {message}",
                    status_code=status_code,
                )
            attempt += 1
            LOGGER.warning(
                "OpenAI request to %s received status %s after %.2fs; retrying (attempt %s)",
                path,
                status_code,
                elapsed,
                attempt,
            )
            delay = self._backoff(delay)

    def _backoff(self, delay: float) -> float:
        self._sleep(min(delay, self._settings.backoff_max_seconds))
        return min(delay * 2, self._settings.backoff_max_seconds)


def _extract_error_message(response: Any) -> str:
    """Extract an error message from a failed OpenAI response."""

    try:
        payload = response.json()
    except (json.JSONDecodeError, ValueError):
        return str(getattr(response, "text", ""))
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict) and "message" in error:
            return str(error["message"])
    return json.dumps(payload)
