"""
Ollama LLM Provider.

Implements the ILLMProvider interface for Ollama's local LLM API.
Most local models have no reliable native tool calling, so by default the
adapter runs in text mode: tools are described in the system prompt by the
provider manager and tool calls come back as JSON steps inside the text.
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
from .base import BaseLLMProvider, LLMProviderConfig, classify_status

logger = logging.getLogger(__name__)

# Lazy import to avoid requiring httpx if not used
try:
    import httpx

    OLLAMA_AVAILABLE = True
except ImportError:
    OLLAMA_AVAILABLE = False
    httpx = None


class OllamaProvider(BaseLLMProvider):
    """Ollama local LLM provider implementation.

    Supports:
    - Locally-hosted models (qwen, llama, mistral, etc.)
    - Streaming responses (NDJSON)
    - Text-mode tool calls, or native tool calls with extra["native_tools"]
    - Usage from the final chunk (prompt_eval_count / eval_count)

    Usage:
        config = LLMProviderConfig(
            api_key="not-needed",  # Ollama doesn't require auth
            model="qwen3:4b",
            base_url="http://localhost:11434",
        )
        provider = OllamaProvider(config)

        async for event in provider.chat(turns):
            print(event)
    """

    name = "ollama"

    DEFAULT_MODEL = "qwen3:4b"
    DEFAULT_BASE_URL = "http://localhost:11434"

    def __init__(self, config: LLMProviderConfig):
        """Initialize the Ollama provider.

        Args:
            config: Provider configuration

        Raises:
            ImportError: If httpx package is not installed
        """
        if not OLLAMA_AVAILABLE:
            raise ImportError(
                "httpx package is required for OllamaProvider. "
                "Install with: pip install httpx"
            )

        super().__init__(config)

        self.base_url = config.base_url or self.DEFAULT_BASE_URL
        self._native_tools = bool(config.extra.get("native_tools", False))

        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=config.timeout,
        )

    @property
    def supports_tools(self) -> bool:
        """Tool support varies by model, so it is opt-in."""
        return self._native_tools

    def _format_messages_for_api(
        self, messages: list[Turn], system_prompt: Optional[str] = None
    ) -> list[dict[str, Any]]:
        """Convert turns to Ollama format.

        Assistant tool calls are replayed as JSON steps so the model sees
        the same protocol it is asked to produce.
        """
        api_messages: list[dict[str, Any]] = []

        if system_prompt:
            api_messages.append({"role": "system", "content": system_prompt})

        for turn in messages:
            if turn.role == TurnRole.TOOL_RESULT:
                prefix = "Tool error" if turn.is_error else "Tool result"
                api_messages.append({
                    "role": "user",
                    "content": f"{prefix}: {turn.content}",
                })
            elif turn.role == TurnRole.ASSISTANT and turn.tool_calls:
                steps = "\n".join(
                    json.dumps({
                        "type": "tool_call",
                        "thought": tc.thought or "",
                        "tool": tc.tool_name,
                        "params": tc.input_params,
                    })
                    for tc in turn.tool_calls
                )
                content = f"{turn.content}\n\n{steps}" if turn.content else steps
                api_messages.append({"role": "assistant", "content": content})
            else:
                api_messages.append({"role": turn.role.value, "content": turn.content})

        return api_messages

    def _format_tools_for_api(
        self, tools: list[ToolDefinition]
    ) -> list[dict[str, Any]]:
        """Ollama uses OpenAI-compatible tool format."""
        return [tool.to_openai_format() for tool in tools]

    async def chat(
        self,
        messages: list[Turn],
        tools: Optional[list[ToolDefinition]] = None,
        system_prompt: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: Optional[int] = None,
    ) -> AsyncIterator[ChatEvent]:
        """Generate a streaming response using Ollama.

        Args:
            messages: Session turn history
            tools: Available tools (only sent when native tools are enabled)
            system_prompt: System prompt
            temperature: Sampling temperature
            max_tokens: Maximum tokens to generate

        Yields:
            ChatEvent objects
        """
        self._reset_sequence()

        api_messages = self._format_messages_for_api(messages, system_prompt)

        payload: dict[str, Any] = {
            "model": self.config.model,
            "messages": api_messages,
            "stream": True,
            "options": {"temperature": temperature},
        }

        if max_tokens:
            payload["options"]["num_predict"] = max_tokens

        if tools and self._native_tools:
            payload["tools"] = self._format_tools_for_api(tools)

        try:
            async with self.client.stream("POST", "/api/chat", json=payload) as response:
                response.raise_for_status()

                # Newline-delimited JSON stream
                async for line in response.aiter_lines():
                    if not line.strip():
                        continue

                    try:
                        chunk = json.loads(line)
                    except json.JSONDecodeError as e:
                        logger.warning(f"Failed to parse Ollama response: {e}")
                        continue

                    if chunk.get("error"):
                        yield self._create_error(
                            f"Ollama error: {chunk['error']}", ErrorType.RECOVERABLE
                        )
                        return

                    message = chunk.get("message", {})
                    content = message.get("content", "")
                    if content:
                        yield self._create_text_delta(content)

                    for tool_call in message.get("tool_calls", []):
                        function = tool_call.get("function", {})
                        tool_name = function.get("name")
                        tool_args = function.get("arguments", {})
                        tool_id = tool_call.get("id") or f"tool_{self._next_sequence()}"
                        if not tool_name:
                            continue
                        if isinstance(tool_args, str):
                            try:
                                tool_args = json.loads(tool_args)
                            except json.JSONDecodeError:
                                tool_args = {"raw": tool_args}
                        yield self._create_tool_call_start(tool_id, tool_name)
                        yield self._create_tool_call_end(tool_id, tool_name, tool_args or {})

                    if chunk.get("done"):
                        yield self._create_usage(
                            chunk.get("prompt_eval_count", 0),
                            chunk.get("eval_count", 0),
                        )
                        yield self._create_done()
                        return

        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            error_msg = f"Ollama API error: {status}"
            logger.error(error_msg)
            yield self._create_error(error_msg, classify_status(status))

        except httpx.TimeoutException as e:
            error_msg = f"Ollama request timeout: {str(e)}"
            logger.warning(error_msg)
            yield self._create_error(error_msg, ErrorType.TIMEOUT)

        except httpx.RequestError as e:
            # Connection refused or reset: the local server is down, try the next provider
            error_msg = f"Ollama connection error: {str(e)}"
            logger.warning(error_msg)
            yield self._create_error(error_msg, ErrorType.RECOVERABLE)

        except Exception as e:
            error_msg = f"Unexpected error in Ollama provider: {str(e)}"
            logger.exception(error_msg)
            yield self._create_error(error_msg, ErrorType.FATAL)

    async def close(self) -> None:
        """Cleanup the HTTP client."""
        await self.client.aclose()
