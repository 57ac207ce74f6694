"""Production client that speaks a Messages-style JSON API."""

from __future__ import annotations

import json
import os
from typing import Any, Callable, Dict, Mapping, Optional

from .llm_client import LLMClient, LLMResponseFormatError, LLMTransportError

__all__ = ["MessagesClient"]


Transport = Callable[[Dict[str, Any]], str]

API_VERSION = "2023-06-01"


class MessagesClient(LLMClient):
    """Thin adapter around an HTTP messages endpoint with tool-use support."""

    def __init__(
        self,
        *,
        api_key: Optional[str] = None,
        base_url: str = "https://api.anthropic.com/v1/messages",
        model: str = "claude-sonnet-4-5",
        transport: Optional[Transport] = None,
        timeout: float = 120.0,
        max_attempts: int = 3,
        retry_delay: float = 0.5,
        max_tokens: int = 4096,
    ) -> None:
        super().__init__(
            model=model,
            max_attempts=max_attempts,
            retry_delay=retry_delay,
            max_tokens=max_tokens,
        )
        self._api_key = api_key or os.getenv("STEPWISE_API_KEY") or os.getenv("ANTHROPIC_API_KEY")
        self._base_url = base_url
        timeout_override = os.getenv("STEPWISE_TIMEOUT")
        if timeout_override:
            try:
                parsed = float(timeout_override)
                if parsed > 0:
                    timeout = parsed
            except ValueError:
                pass
        self._timeout = timeout
        self._transport = transport or self._http_transport

        if transport is None and not self._api_key:
            raise ValueError("An API key is required when using the default transport.")

    def _raw_invoke(self, payload: Dict[str, Any]) -> Mapping[str, Any]:
        """Send the request over the configured transport and decode the JSON reply."""
        try:
            raw_response = self._transport(payload)
        except LLMTransportError:
            raise
        except OSError as error:
            raise LLMTransportError(f"Transport rejected the request: {error}") from error

        if not raw_response or not raw_response.strip():
            raise LLMResponseFormatError("Model returned an empty response.")
        try:
            data = json.loads(raw_response)
        except json.JSONDecodeError as error:
            raise LLMResponseFormatError(f"Response was not valid JSON: {error}") from error
        if not isinstance(data, dict):
            raise LLMResponseFormatError("Response payload must be a JSON object.")
        return data

    def _http_transport(self, payload: Dict[str, Any]) -> str:
        """Default HTTP transport built on urllib."""
        import urllib.error
        import urllib.request

        data = json.dumps(payload).encode("utf-8")
        request = urllib.request.Request(
            self._base_url,
            data=data,
            headers={
                "Content-Type": "application/json",
                "x-api-key": str(self._api_key),
                "anthropic-version": API_VERSION,
            },
            method="POST",
        )

        try:
            with urllib.request.urlopen(request, timeout=self._timeout) as response:
                raw = response.read()
                status = getattr(response, "status", 200)
        except TimeoutError as error:  # pragma: no cover - network-dependent
            raise LLMTransportError("Request timed out.") from error
        except urllib.error.HTTPError as error:  # pragma: no cover - network-dependent
            message = error.read().decode("utf-8", errors="ignore")
            raise LLMTransportError(f"HTTP {error.code}: {message}") from error
        except urllib.error.URLError as error:  # pragma: no cover - network-dependent
            raise LLMTransportError(f"Network error: unable to connect ({error.reason})") from error

        if status >= 400:
            raise LLMTransportError(f"Unexpected HTTP status {status}")

        return raw.decode("utf-8")
