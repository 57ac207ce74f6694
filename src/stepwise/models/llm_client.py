"""Client base class shared by all language-model integrations.

Providers take a conversation, the tool schemas on offer, and a system prompt,
and answer with content blocks plus a :class:`StopReason`. Transport problems
are never raised to the caller: after transient retries are exhausted they
come back as a response whose stop reason is ``ERROR``, which the executor
treats as fatal for the run.
"""

from __future__ import annotations

import copy
import logging
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from ..memory.schema import ErrorCategory
from ..policy.errors import ErrorClassifier, classify_error

__all__ = [
    "LLMClient",
    "LLMClientError",
    "LLMRequest",
    "LLMResponse",
    "LLMResponseFormatError",
    "LLMTransportError",
    "StopReason",
    "ToolCall",
]

LOGGER = logging.getLogger(__name__)


class LLMClientError(RuntimeError):
    """Base error raised for LLM client failures."""


class LLMTransportError(LLMClientError):
    """Raised when the underlying transport fails to return a response."""


class LLMResponseFormatError(LLMClientError):
    """Raised when the provider returns a payload that cannot be interpreted."""


class StopReason(str, Enum):
    """Closed set of reasons a provider turn can end with."""

    TOOL_USE = "tool_use"
    END_TURN = "end_turn"
    MAX_TOKENS = "max_tokens"
    ERROR = "error"
    NOT_CONFIGURED = "not_configured"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, raw: Any) -> "StopReason":
        """Map a provider stop reason onto the closed set; unrecognised values become UNKNOWN."""
        if isinstance(raw, StopReason):
            return raw
        if isinstance(raw, str):
            try:
                return cls(raw.strip().lower())
            except ValueError:
                return cls.UNKNOWN
        return cls.UNKNOWN

    @property
    def is_fatal(self) -> bool:
        return self not in (StopReason.TOOL_USE, StopReason.END_TURN)


@dataclass(slots=True)
class ToolCall:
    """Tool invocation requested by the model."""

    id: str
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class LLMResponse:
    """One provider turn: raw content blocks plus the stop reason."""

    stop_reason: StopReason
    content: List[Dict[str, Any]] = field(default_factory=list)
    error: Optional[str] = None
    raw_stop_reason: Optional[str] = None
    usage: Dict[str, int] = field(default_factory=dict)

    @property
    def tool_calls(self) -> List[ToolCall]:
        calls: List[ToolCall] = []
        for block in self.content:
            if block.get("type") != "tool_use":
                continue
            arguments = block.get("input")
            calls.append(
                ToolCall(
                    id=str(block.get("id", "")),
                    name=str(block.get("name", "")),
                    arguments=dict(arguments) if isinstance(arguments, Mapping) else {},
                )
            )
        return calls

    @property
    def text(self) -> str:
        return "\n".join(
            str(block.get("text", "")) for block in self.content if block.get("type") == "text"
        ).strip()

    def as_message(self) -> Dict[str, Any]:
        return {"role": "assistant", "content": copy.deepcopy(self.content)}


@dataclass(slots=True)
class LLMRequest:
    """Transport-ready request for one conversational turn."""

    messages: Sequence[Mapping[str, Any]]
    tools: Sequence[Mapping[str, Any]] = ()
    system_prompt: Optional[str] = None
    model: Optional[str] = None
    max_tokens: int = 4096
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_payload(self, default_model: str) -> Dict[str, Any]:
        """Render a payload in the messages-API shape."""
        payload: Dict[str, Any] = {
            "model": self.model or default_model,
            "max_tokens": self.max_tokens,
            "messages": [copy.deepcopy(dict(message)) for message in self.messages],
        }
        if self.system_prompt:
            payload["system"] = self.system_prompt
        if self.tools:
            payload["tools"] = [copy.deepcopy(dict(tool)) for tool in self.tools]
        if self.metadata:
            payload["metadata"] = dict(self.metadata)
        return payload


class LLMClient:
    """Base class that retries transient transport failures and normalises replies."""

    def __init__(
        self,
        model: str,
        *,
        max_attempts: int = 3,
        retry_delay: float = 0.5,
        max_tokens: int = 4096,
        classifier: ErrorClassifier = classify_error,
    ) -> None:
        self._model = model
        self._max_attempts = max(1, max_attempts)
        self._retry_delay = retry_delay
        self._max_tokens = max_tokens
        self._classifier = classifier

    @property
    def model(self) -> str:
        """Return the default model name configured for this client."""
        return self._model

    def send(
        self,
        messages: Sequence[Mapping[str, Any]],
        tools: Sequence[Mapping[str, Any]] = (),
        system_prompt: Optional[str] = None,
    ) -> LLMResponse:
        """Send one turn and return the normalised response."""
        request = LLMRequest(
            messages=messages,
            tools=tools,
            system_prompt=system_prompt,
            max_tokens=self._max_tokens,
        )
        payload = request.to_payload(self._model)
        last_error: Optional[LLMClientError] = None

        for attempt in range(1, self._max_attempts + 1):
            try:
                data = self._raw_invoke(payload)
                return self._parse_response(data)
            except LLMResponseFormatError as error:
                LOGGER.warning("Model %s returned an unusable response: %s", self._model, error)
                return LLMResponse(stop_reason=StopReason.ERROR, error=str(error))
            except LLMTransportError as error:
                last_error = error
                if self._classifier(str(error)) != ErrorCategory.TRANSIENT:
                    break
                if attempt >= self._max_attempts:
                    break
                LOGGER.warning(
                    "Transient transport error from %s (attempt %s/%s): %s",
                    self._model,
                    attempt,
                    self._max_attempts,
                    error,
                )
                time.sleep(self._retry_delay)

        message = str(last_error) if last_error else "unknown transport failure"
        LOGGER.warning("Giving up on model %s: %s", self._model, message)
        return LLMResponse(stop_reason=StopReason.ERROR, error=message)

    def _raw_invoke(self, payload: Dict[str, Any]) -> Mapping[str, Any]:
        """Perform the transport call. Subclasses must implement."""
        raise NotImplementedError("Subclasses must implement _raw_invoke().")

    @staticmethod
    def _parse_response(data: Mapping[str, Any]) -> LLMResponse:
        """Normalise a decoded messages-API response."""
        if not isinstance(data, Mapping):
            raise LLMResponseFormatError("Response payload must be a JSON object.")

        if data.get("type") == "error":
            error = data.get("error")
            detail = error.get("message") if isinstance(error, Mapping) else error
            return LLMResponse(
                stop_reason=StopReason.ERROR,
                error=str(detail or "provider reported an error"),
                raw_stop_reason="error",
            )

        content = data.get("content") or []
        if not isinstance(content, list) or not all(isinstance(block, Mapping) for block in content):
            raise LLMResponseFormatError("Response content must be a list of blocks.")

        raw_stop = data.get("stop_reason")
        usage_raw = data.get("usage")
        usage = (
            {key: int(value) for key, value in usage_raw.items() if isinstance(value, int)}
            if isinstance(usage_raw, Mapping)
            else {}
        )
        return LLMResponse(
            stop_reason=StopReason.parse(raw_stop),
            content=[dict(block) for block in content],
            raw_stop_reason=str(raw_stop) if raw_stop is not None else None,
            usage=usage,
        )
