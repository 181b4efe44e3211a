"""
Anthropic Claude LLM Provider.

Implements the ILLMProvider interface for Anthropic's Claude models.
Supports streaming, native tool calling, and usage reporting.
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

# Lazy import to avoid requiring anthropic if not used
try:
    import anthropic
    from anthropic import AsyncAnthropic

    ANTHROPIC_AVAILABLE = True
except ImportError:
    ANTHROPIC_AVAILABLE = False
    anthropic = None
    AsyncAnthropic = None


class AnthropicProvider(BaseLLMProvider):
    """Anthropic Claude provider implementation.

    Supports:
    - Claude 4 models (opus, sonnet, haiku)
    - Streaming responses
    - Tool/function calling
    - Token usage from the final message

    Usage:
        config = LLMProviderConfig(
            api_key="sk-ant-...",
            model="claude-sonnet-4-5-20250929",
        )
        provider = AnthropicProvider(config)

        async for event in provider.chat(turns, tools):
            print(event)
    """

    name = "anthropic"

    DEFAULT_MODEL = "claude-sonnet-4-5-20250929"

    def __init__(self, config: LLMProviderConfig):
        """Initialize the Anthropic provider.

        Args:
            config: Provider configuration

        Raises:
            ImportError: If anthropic package is not installed
        """
        if not ANTHROPIC_AVAILABLE:
            raise ImportError(
                "anthropic package is required for AnthropicProvider. "
                "Install with: pip install anthropic"
            )

        super().__init__(config)

        self.client = AsyncAnthropic(
            api_key=config.api_key,
            base_url=config.base_url,
            timeout=config.timeout,
            max_retries=config.max_retries,
        )

    @property
    def supports_tools(self) -> bool:
        """Claude models support tool calling."""
        return True

    def _format_messages_for_api(
        self, messages: list[Turn], system_prompt: Optional[str] = None
    ) -> tuple[Optional[str], list[dict[str, Any]]]:
        """Convert turns to Anthropic format.

        Anthropic uses a separate system parameter, not in messages, and
        expects all results for one assistant turn in a single user message.

        Returns:
            Tuple of (system_prompt, messages_list)
        """
        api_messages: list[dict[str, Any]] = []
        system = system_prompt

        for turn in messages:
            if turn.role == TurnRole.SYSTEM:
                # Compaction summaries carry history, so they lead the system prompt
                system = f"{turn.content}\n\n{system}" if system else turn.content
            elif turn.role == TurnRole.TOOL_RESULT:
                block = {
                    "type": "tool_result",
                    "tool_use_id": turn.tool_call_id or "unknown",
                    "content": turn.content,
                    "is_error": turn.is_error,
                }
                previous = api_messages[-1] if api_messages else None
                if (
                    previous
                    and previous["role"] == "user"
                    and isinstance(previous["content"], list)
                    and previous["content"]
                    and previous["content"][0].get("type") == "tool_result"
                ):
                    previous["content"].append(block)
                else:
                    api_messages.append({"role": "user", "content": [block]})
            elif turn.role == TurnRole.ASSISTANT:
                if turn.tool_calls:
                    content_blocks: list[dict[str, Any]] = []
                    if turn.content:
                        content_blocks.append({"type": "text", "text": turn.content})
                    for tc in turn.tool_calls:
                        content_blocks.append({
                            "type": "tool_use",
                            "id": tc.id,
                            "name": tc.tool_name,
                            "input": tc.input_params,
                        })
                    api_messages.append({"role": "assistant", "content": content_blocks})
                else:
                    api_messages.append({
                        "role": "assistant",
                        "content": turn.content or "(no content)",
                    })
            else:
                api_messages.append({"role": "user", "content": turn.content})

        return system, api_messages

    def _format_tools_for_api(
        self, tools: list[ToolDefinition]
    ) -> list[dict[str, Any]]:
        """Convert tools to Anthropic format."""
        return [tool.to_anthropic_format() for tool in tools]

    async def chat(
        self,
        messages: list[Turn],
        tools: Optional[list[ToolDefinition]] = None,
        system_prompt: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: Optional[int] = None,
    ) -> AsyncIterator[ChatEvent]:
        """Generate a streaming response using Claude.

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

        system, api_messages = self._format_messages_for_api(messages, system_prompt)

        kwargs: dict[str, Any] = {
            "model": self.config.model,
            "messages": api_messages,
            "temperature": temperature,
            "max_tokens": max_tokens or self.config.max_tokens,
        }

        if system:
            kwargs["system"] = system

        if tools:
            kwargs["tools"] = self._format_tools_for_api(tools)

        try:
            async with self.client.messages.stream(**kwargs) as stream_response:
                current_tool_call_id: Optional[str] = None
                current_tool_name: Optional[str] = None
                accumulated_tool_input = ""

                async for event in stream_response:
                    if not hasattr(event, "type"):
                        continue

                    if event.type == "content_block_start":
                        block = event.content_block
                        if getattr(block, "type", None) == "tool_use":
                            current_tool_call_id = block.id
                            current_tool_name = block.name
                            accumulated_tool_input = ""
                            yield self._create_tool_call_start(block.id, block.name)

                    elif event.type == "content_block_delta":
                        delta = event.delta
                        delta_type = getattr(delta, "type", None)
                        if delta_type == "text_delta":
                            yield self._create_text_delta(delta.text)
                        elif delta_type == "input_json_delta":
                            accumulated_tool_input += delta.partial_json

                    elif event.type == "content_block_stop":
                        if current_tool_call_id:
                            try:
                                arguments = (
                                    json.loads(accumulated_tool_input)
                                    if accumulated_tool_input
                                    else {}
                                )
                            except json.JSONDecodeError:
                                arguments = {"raw": accumulated_tool_input}

                            yield self._create_tool_call_end(
                                current_tool_call_id, current_tool_name or "", arguments
                            )
                            current_tool_call_id = None
                            current_tool_name = None

                final_message = await stream_response.get_final_message()
                usage = getattr(final_message, "usage", None)
                if usage is not None:
                    yield self._create_usage(usage.input_tokens, usage.output_tokens)

                yield self._create_done()

        except anthropic.RateLimitError as e:
            logger.warning(f"Rate limited by Anthropic: {e}")
            yield self._create_error(f"Rate limited: {e}", ErrorType.RATE_LIMIT)
        except anthropic.APITimeoutError as e:
            logger.warning(f"Anthropic API timeout: {e}")
            yield self._create_error(f"Request timed out: {e}", ErrorType.TIMEOUT)
        except anthropic.APIConnectionError as e:
            logger.warning(f"Anthropic connection error: {e}")
            yield self._create_error(f"Connection error: {e}", ErrorType.RECOVERABLE)
        except anthropic.APIStatusError as e:
            error_type = classify_status(e.status_code)
            logger.error(f"Anthropic API error ({e.status_code}): {e}")
            yield self._create_error(f"API error: {e}", error_type)
        except anthropic.APIError as e:
            logger.error(f"Anthropic API error: {e}")
            yield self._create_error(f"API error: {e}", classify_error(e))
        except Exception as e:
            logger.exception(f"Unexpected error in Anthropic chat: {e}")
            yield self._create_error(str(e), ErrorType.FATAL)

    async def close(self) -> None:
        """Close the client."""
        await self.client.close()
