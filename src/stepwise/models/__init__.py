"""Convenience exports for stepwise LLM client implementations."""

from .llm_client import (
    LLMClient,
    LLMClientError,
    LLMRequest,
    LLMResponse,
    LLMResponseFormatError,
    LLMTransportError,
    StopReason,
    ToolCall,
)
from .messages import MessagesClient

__all__ = [
    "LLMClient",
    "LLMClientError",
    "LLMRequest",
    "LLMResponse",
    "LLMResponseFormatError",
    "LLMTransportError",
    "MessagesClient",
    "StopReason",
    "ToolCall",
]
