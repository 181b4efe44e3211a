"""
OpenAI GPT LLM Provider.

Implements the ILLMProvider interface for OpenAI's chat completion models.
Supports streaming, tool calling, and usage reporting.
"""

from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator, Optional

from ..domain.entities import (
    ChatEvent,
    ErrorType,
    ToolDefinition,
    Turn,
    TurnRole,
)
from .base import BaseLLMProvider, LLMProviderConfig, classify_error, classify_status

logger = logging.getLogger(__name__)

# Lazy import to avoid requiring openai if not used
try:
    import openai
    from openai import AsyncOpenAI

    OPENAI_AVAILABLE = True
except ImportError:
    OPENAI_AVAILABLE = False
    openai = None
    AsyncOpenAI = None


class OpenAIProvider(BaseLLMProvider):
    """OpenAI GPT provider implementation.

    Supports:
    - GPT-4o, GPT-4o mini and later chat models
    - Streaming responses
    - Tool/function calling
    - Usage on the final stream chunk

    Usage:
        config = LLMProviderConfig(api_key="sk-...", model="gpt-4o")
        provider = OpenAIProvider(config)

        async for event in provider.chat(turns, tools):
            print(event)
    """

    name = "openai"

    DEFAULT_MODEL = "gpt-4o"

    def __init__(self, config: LLMProviderConfig):
        """Initialize the OpenAI provider.

        Args:
            config: Provider configuration

        Raises:
            ImportError: If openai package is not installed
        """
        if not OPENAI_AVAILABLE:
            raise ImportError(
                "openai package is required for OpenAIProvider. "
                "Install with: pip install openai"
            )

        super().__init__(config)

        self.client = AsyncOpenAI(
            api_key=config.api_key,
            base_url=config.base_url,
            timeout=config.timeout,
            max_retries=config.max_retries,
        )

    @property
    def supports_tools(self) -> bool:
        """Chat completion models support function calling."""
        return True

    def _format_messages_for_api(
        self, messages: list[Turn], system_prompt: Optional[str] = None
    ) -> list[dict[str, Any]]:
        """Convert turns to OpenAI format.

        OpenAI includes system messages in the messages array.
        """
        api_messages: list[dict[str, Any]] = []

        if system_prompt:
            api_messages.append({"role": "system", "content": system_prompt})

        for turn in messages:
            if turn.role == TurnRole.TOOL_RESULT:
                api_messages.append({
                    "role": "tool",
                    "tool_call_id": turn.tool_call_id or "unknown",
                    "content": turn.content,
                })
            elif turn.role == TurnRole.ASSISTANT and turn.tool_calls:
                api_messages.append({
                    "role": "assistant",
                    "content": turn.content or None,
                    "tool_calls": [
                        {
                            "id": tc.id,
                            "type": "function",
                            "function": {
                                "name": tc.tool_name,
                                "arguments": json.dumps(tc.input_params),
                            },
                        }
                        for tc in turn.tool_calls
                    ],
                })
            else:
                api_messages.append({"role": turn.role.value, "content": turn.content})

        return api_messages

    def _format_tools_for_api(
        self, tools: list[ToolDefinition]
    ) -> list[dict[str, Any]]:
        """Convert tools to OpenAI format."""
        return [tool.to_openai_format() for tool in tools]

    async def chat(
        self,
        messages: list[Turn],
        tools: Optional[list[ToolDefinition]] = None,
        system_prompt: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: Optional[int] = None,
    ) -> AsyncIterator[ChatEvent]:
        """Generate a streaming response using GPT.

        Args:
            messages: Session turn history
            tools: Available tools
            system_prompt: System prompt
            temperature: Sampling temperature
            max_tokens: Maximum tokens to generate

        Yields:
            ChatEvent objects
        """
        self._reset_sequence()

        api_messages = self._format_messages_for_api(messages, system_prompt)

        kwargs: dict[str, Any] = {
            "model": self.config.model,
            "messages": api_messages,
            "temperature": temperature,
            "stream": True,
            "stream_options": {"include_usage": True},
        }

        if max_tokens:
            kwargs["max_tokens"] = max_tokens

        if tools:
            kwargs["tools"] = self._format_tools_for_api(tools)
            kwargs["tool_choice"] = "auto"

        try:
            stream_response = await self.client.chat.completions.create(**kwargs)

            # Track tool calls being assembled
            tool_calls_in_progress: dict[int, dict[str, Any]] = {}
            tool_calls_emitted = False

            async for chunk in stream_response:
                # The usage chunk arrives last with no choices
                usage = getattr(chunk, "usage", None)
                if usage is not None:
                    yield self._create_usage(usage.prompt_tokens, usage.completion_tokens)

                choice = chunk.choices[0] if chunk.choices else None
                if not choice:
                    continue

                delta = choice.delta

                if delta.content:
                    yield self._create_text_delta(delta.content)

                if delta.tool_calls:
                    for tc in delta.tool_calls:
                        idx = tc.index

                        if idx not in tool_calls_in_progress:
                            tool_calls_in_progress[idx] = {
                                "id": tc.id or f"call_{idx}",
                                "name": tc.function.name if tc.function else "",
                                "arguments": "",
                            }
                            if tc.function and tc.function.name:
                                yield self._create_tool_call_start(
                                    tool_calls_in_progress[idx]["id"],
                                    tc.function.name,
                                )

                        if tc.function and tc.function.arguments:
                            tool_calls_in_progress[idx]["arguments"] += tc.function.arguments

                if choice.finish_reason and not tool_calls_emitted:
                    tool_calls_emitted = True
                    for tc_data in tool_calls_in_progress.values():
                        try:
                            arguments = (
                                json.loads(tc_data["arguments"])
                                if tc_data["arguments"]
                                else {}
                            )
                        except json.JSONDecodeError:
                            arguments = {"raw": tc_data["arguments"]}

                        yield self._create_tool_call_end(
                            tc_data["id"], tc_data["name"], arguments
                        )

            yield self._create_done()

        except openai.RateLimitError as e:
            logger.warning(f"Rate limited by OpenAI: {e}")
            yield self._create_error(f"Rate limited: {e}", ErrorType.RATE_LIMIT)
        except openai.APITimeoutError as e:
            logger.warning(f"OpenAI API timeout: {e}")
            yield self._create_error(f"Request timed out: {e}", ErrorType.TIMEOUT)
        except openai.APIConnectionError as e:
            logger.warning(f"OpenAI connection error: {e}")
            yield self._create_error(f"Connection error: {e}", ErrorType.RECOVERABLE)
        except openai.APIStatusError as e:
            error_type = classify_status(e.status_code)
            logger.error(f"OpenAI API error ({e.status_code}): {e}")
            yield self._create_error(f"API error: {e}", error_type)
        except openai.APIError as e:
            logger.error(f"OpenAI API error: {e}")
            yield self._create_error(f"API error: {e}", classify_error(e))
        except Exception as e:
            logger.exception(f"Unexpected error in OpenAI chat: {e}")
            yield self._create_error(str(e), ErrorType.FATAL)

    async def close(self) -> None:
        """Close the client."""
        await self.client.close()
