"""
Base LLM Provider Implementation.

Provides common functionality for all provider adapters: event
construction, error classification, and a default message format.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Optional

from ..domain.entities import (
    ChatEvent,
    ChatEventType,
    ErrorType,
    ProviderUsage,
    ToolDefinition,
    Turn,
    TurnRole,
)
from ..domain.ports import ILLMProvider

logger = logging.getLogger(__name__)

# Substrings that mark a failure as transient when no status code is available
_TIMEOUT_MARKERS = ("timeout", "timed out")
_NETWORK_MARKERS = ("econnreset", "socket hang up", "connection reset", "connection error")
_UNAVAILABLE_MARKERS = ("overloaded", "unavailable")
_RATE_LIMIT_MARKERS = ("rate limit", "rate_limit", "too many requests")


class LLMProviderError(Exception):
    """Base exception for LLM provider errors."""

    def __init__(
        self,
        message: str,
        error_type: ErrorType = ErrorType.RECOVERABLE,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(message)
        self.error_type = error_type
        self.original_error = original_error


def classify_status(status_code: int) -> ErrorType:
    """Map an HTTP status code to an ErrorType."""
    if status_code == 429:
        return ErrorType.RATE_LIMIT
    if status_code in (502, 503, 529):
        return ErrorType.UNAVAILABLE
    if status_code in (408, 504):
        return ErrorType.TIMEOUT
    if status_code >= 500:
        return ErrorType.RECOVERABLE
    return ErrorType.FATAL


def classify_message(message: str) -> ErrorType:
    """Classify an error by its message when no status code is known."""
    lowered = message.lower()
    if any(marker in lowered for marker in _RATE_LIMIT_MARKERS):
        return ErrorType.RATE_LIMIT
    if any(marker in lowered for marker in _TIMEOUT_MARKERS):
        return ErrorType.TIMEOUT
    if any(marker in lowered for marker in _UNAVAILABLE_MARKERS):
        return ErrorType.UNAVAILABLE
    if any(marker in lowered for marker in _NETWORK_MARKERS):
        return ErrorType.RECOVERABLE
    return ErrorType.FATAL


def classify_error(error: Exception) -> ErrorType:
    """Classify an arbitrary exception raised by a provider SDK.

    Looks for a status code on the exception or its response first, then
    falls back to message heuristics.
    """
    if isinstance(error, LLMProviderError):
        return error.error_type
    status = getattr(error, "status_code", None)
    if status is None:
        response = getattr(error, "response", None)
        status = getattr(response, "status_code", None)
    if isinstance(status, int):
        return classify_status(status)
    return classify_message(str(error))


@dataclass
class LLMProviderConfig:
    """Configuration for LLM providers.

    Attributes:
        api_key: API key for the provider
        model: Model name to use
        base_url: Optional custom base URL
        timeout: Request timeout in seconds
        max_retries: SDK-level retry attempts (0 leaves retries to the manager)
        temperature: Default temperature
        max_tokens: Default max tokens
        extra: Provider-specific options
    """

    api_key: str
    model: str
    base_url: Optional[str] = None
    timeout: float = 60.0
    max_retries: int = 0
    temperature: float = 0.7
    max_tokens: int = 4096
    extra: dict[str, Any] = field(default_factory=dict)


class BaseLLMProvider(ILLMProvider, ABC):
    """Base class for LLM provider implementations.

    Provides common event construction and error classification.
    Subclasses must implement chat() for their specific API.
    """

    name: str = "base"

    def __init__(self, config: LLMProviderConfig):
        """Initialize the provider.

        Args:
            config: Provider configuration
        """
        self.config = config
        self._sequence_counter = 0

    @property
    def provider_name(self) -> str:
        return self.name

    @property
    def model_name(self) -> str:
        """Return the model name."""
        return self.config.model

    @property
    def supports_streaming(self) -> bool:
        """Most modern providers support streaming."""
        return True

    @property
    def supports_tools(self) -> bool:
        """Most modern providers support tool calling."""
        return True

    def _next_sequence(self) -> int:
        """Get the next sequence number for events."""
        self._sequence_counter += 1
        return self._sequence_counter

    def _reset_sequence(self) -> None:
        """Reset the sequence counter (call at start of new chat)."""
        self._sequence_counter = 0

    def _create_text_delta(self, text: str) -> ChatEvent:
        """Create a text delta event."""
        return ChatEvent(
            type=ChatEventType.TEXT_DELTA,
            sequence=self._next_sequence(),
            content=text,
        )

    def _create_tool_call_start(self, tool_call_id: str, name: str) -> ChatEvent:
        """Create a tool call start event."""
        return ChatEvent(
            type=ChatEventType.TOOL_CALL_START,
            sequence=self._next_sequence(),
            tool_call_id=tool_call_id,
            tool_name=name,
        )

    def _create_tool_call_end(
        self, tool_call_id: str, name: str, arguments: dict
    ) -> ChatEvent:
        """Create a tool call end event."""
        return ChatEvent(
            type=ChatEventType.TOOL_CALL_END,
            sequence=self._next_sequence(),
            tool_call_id=tool_call_id,
            tool_name=name,
            tool_arguments=arguments,
        )

    def _create_usage(self, input_tokens: int, output_tokens: int) -> ChatEvent:
        """Create a usage event. Cost is filled in by the provider manager."""
        return ChatEvent(
            type=ChatEventType.USAGE,
            sequence=self._next_sequence(),
            usage=ProviderUsage(
                input_tokens=input_tokens or 0,
                output_tokens=output_tokens or 0,
                provider=self.provider_name,
                model=self.model_name,
            ),
        )

    def _create_error(self, message: str, error_type: ErrorType) -> ChatEvent:
        """Create an error event."""
        return ChatEvent(
            type=ChatEventType.ERROR,
            sequence=self._next_sequence(),
            content=message,
            error=message,
            error_type=error_type,
        )

    def _create_done(self) -> ChatEvent:
        """Create a done event."""
        return ChatEvent(
            type=ChatEventType.DONE,
            sequence=self._next_sequence(),
        )

    def _format_messages_for_api(self, messages: list[Turn]) -> list[dict[str, Any]]:
        """Convert turns to a plain role/content message list.

        Tool results become user messages and assistant tool calls are
        rendered inline, for APIs without structured tool history.
        """
        result = []
        for turn in messages:
            if turn.role == TurnRole.TOOL_RESULT:
                prefix = "Tool error" if turn.is_error else "Tool result"
                result.append({"role": "user", "content": f"{prefix}: {turn.content}"})
            elif turn.role == TurnRole.SYSTEM:
                result.append({"role": "system", "content": turn.content})
            else:
                result.append({"role": turn.role.value, "content": turn.content})
        return result

    def _format_tools_for_api(
        self, tools: list[ToolDefinition]
    ) -> list[dict[str, Any]]:
        """Convert tool definitions to API format.

        Subclasses should override for provider-specific formatting.
        """
        raise NotImplementedError("Subclass must implement _format_tools_for_api")

    @abstractmethod
    async def chat(
        self,
        messages: list[Turn],
        tools: Optional[list[ToolDefinition]] = None,
        system_prompt: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: Optional[int] = None,
    ) -> AsyncIterator[ChatEvent]:
        """Generate a response. Must be implemented by subclasses."""
        pass

    async def close(self) -> None:
        """Release network resources held by the adapter."""
        pass

    async def __aenter__(self):
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.close()
