"""
Provider Manager.

Presents an ordered chain of provider adapters as one reasoning provider.
Transient failures move the request to the next adapter and put the failing
adapter in a cooldown window; fatal failures abort immediately.

Availability follows a circuit-breaker shape:
    HEALTHY -> DEGRADED: any retryable failure (cooldown_seconds)
    DEGRADED -> UNAVAILABLE: failure_threshold consecutive failures
        (unavailable_seconds)
    any -> HEALTHY: a successful call
Adapters are never removed from the chain.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Callable, Optional

from ..domain.entities import (
    RETRYABLE_ERROR_TYPES,
    ChatEvent,
    ChatEventType,
    ErrorType,
    ProviderAvailability,
    ProviderConfig,
    Session,
    ToolDefinition,
    Turn,
)
from ..domain.ports import ILLMProvider
from ..exceptions import (
    ConfigurationError,
    ProviderFatalError,
    ProvidersExhaustedError,
    ProviderStreamInterruptedError,
)
from ..tools.registry import build_text_tool_prompt
from .base import classify_error
from .pricing import price_usage

logger = logging.getLogger(__name__)

# Events that mean output already reached the caller
_CONTENT_EVENTS = frozenset({
    ChatEventType.TEXT_DELTA,
    ChatEventType.TOOL_CALL_START,
    ChatEventType.TOOL_CALL_END,
})


class ProviderManager:
    """Ordered fallback chain over provider adapters.

    Usage:
        manager = ProviderManager([anthropic, openai, ollama])

        async for event in manager.chat(session, session.turns, tools, prompt):
            ...

        summary = await manager.complete("Summarize: ...")

    Failure handling:
        - Retryable error before any output: adapter degraded, request
          replayed unchanged on the next adapter
        - Retryable error after output: ProviderStreamInterruptedError
        - Fatal error: ProviderFatalError, no fallback
        - Every adapter failed: ProvidersExhaustedError
    """

    def __init__(
        self,
        providers: list[ILLMProvider],
        cooldown_seconds: float = 30.0,
        failure_threshold: int = 5,
        unavailable_seconds: float = 300.0,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """Initialize the manager.

        Args:
            providers: Adapters in priority order (first is preferred)
            cooldown_seconds: Degraded window after a retryable failure
            failure_threshold: Consecutive failures before UNAVAILABLE
            unavailable_seconds: Cooldown once UNAVAILABLE
            clock: Time source, injectable for tests

        Raises:
            ConfigurationError: No providers, or duplicate provider names
        """
        if not providers:
            raise ConfigurationError("At least one provider is required")

        names = [p.provider_name for p in providers]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ConfigurationError(f"Duplicate provider names: {', '.join(duplicates)}")

        self._providers = list(providers)
        self._configs: dict[str, ProviderConfig] = {
            p.provider_name: ProviderConfig(name=p.provider_name, priority=index)
            for index, p in enumerate(providers)
        }
        self.cooldown_seconds = cooldown_seconds
        self.failure_threshold = failure_threshold
        self.unavailable_seconds = unavailable_seconds
        self._clock = clock or datetime.utcnow
        self._lock = asyncio.Lock()

    @property
    def providers(self) -> list[ILLMProvider]:
        return list(self._providers)

    async def _candidates(self) -> list[ILLMProvider]:
        """Adapters to try, by priority, skipping those still cooling down.

        If every adapter is cooling down they are all tried anyway.
        """
        async with self._lock:
            now = self._clock()
            ordered = sorted(
                self._providers, key=lambda p: self._configs[p.provider_name].priority
            )
            ready = [
                p for p in ordered
                if not self._configs[p.provider_name].is_cooling_down(now)
            ]
        return ready or ordered

    async def _record_success(self, name: str) -> None:
        async with self._lock:
            config = self._configs[name]
            if config.availability != ProviderAvailability.HEALTHY:
                logger.info(f"Provider '{name}' recovered")
            config.availability = ProviderAvailability.HEALTHY
            config.consecutive_failures = 0
            config.degraded_until = None
            config.last_success_at = self._clock()

    async def _record_failure(self, name: str, message: str) -> None:
        async with self._lock:
            config = self._configs[name]
            config.consecutive_failures += 1
            config.last_error = message
            now = self._clock()
            if config.consecutive_failures >= self.failure_threshold:
                config.availability = ProviderAvailability.UNAVAILABLE
                config.degraded_until = now + timedelta(seconds=self.unavailable_seconds)
                logger.warning(
                    f"Provider '{name}' unavailable after "
                    f"{config.consecutive_failures} consecutive failures"
                )
            else:
                config.availability = ProviderAvailability.DEGRADED
                config.degraded_until = now + timedelta(seconds=self.cooldown_seconds)
                logger.warning(
                    f"Provider '{name}' degraded for {self.cooldown_seconds}s: {message}"
                )

    async def _record_fatal(self, name: str, message: str) -> None:
        async with self._lock:
            self._configs[name].last_error = message

    def _prepare_request(
        self,
        provider: ILLMProvider,
        tools: Optional[list[ToolDefinition]],
        system_prompt: Optional[str],
    ) -> tuple[Optional[list[ToolDefinition]], Optional[str]]:
        """Native tools are passed through; text-mode adapters get them in the prompt."""
        if not tools or provider.supports_tools:
            return tools or None, system_prompt
        tool_prompt = build_text_tool_prompt(tools)
        if system_prompt:
            return None, f"{system_prompt}\n\n{tool_prompt}"
        return None, tool_prompt

    async def chat(
        self,
        session: Optional[Session],
        messages: list[Turn],
        tools: Optional[list[ToolDefinition]] = None,
        system_prompt: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: Optional[int] = None,
    ) -> AsyncIterator[ChatEvent]:
        """Stream a response from the first adapter that succeeds.

        Usage is priced and attributed to the session whichever adapter
        served the call. The adapter's DONE event is consumed here; the
        stream simply ends on success.

        Args:
            session: Session to charge usage to (None for ad-hoc calls)
            messages: Turn history
            tools: Tool descriptors available to the model
            system_prompt: System prompt
            temperature: Sampling temperature
            max_tokens: Maximum tokens to generate

        Yields:
            TEXT_DELTA, TOOL_CALL_START, TOOL_CALL_END and USAGE events

        Raises:
            ProviderFatalError: Non-retryable failure
            ProviderStreamInterruptedError: Retryable failure after output
            ProvidersExhaustedError: Every adapter failed
        """
        attempts: list[str] = []

        for provider in await self._candidates():
            name = provider.provider_name
            request_tools, request_prompt = self._prepare_request(
                provider, tools, system_prompt
            )
            forwarded = False
            failure: Optional[tuple[str, ErrorType]] = None

            try:
                async for event in provider.chat(
                    messages=messages,
                    tools=request_tools,
                    system_prompt=request_prompt,
                    temperature=temperature,
                    max_tokens=max_tokens,
                ):
                    if failure is not None:
                        continue
                    if event.type == ChatEventType.ERROR:
                        failure = (
                            event.error or event.content or "provider error",
                            event.error_type or ErrorType.FATAL,
                        )
                    elif event.type == ChatEventType.USAGE:
                        if event.usage is not None:
                            usage = price_usage(event.usage)
                            if session is not None:
                                session.add_usage(usage)
                        yield event
                    elif event.type == ChatEventType.DONE:
                        continue
                    else:
                        if event.type in _CONTENT_EVENTS:
                            forwarded = True
                        yield event
            except Exception as e:
                # Adapters report failures as events; anything raised is classified here
                failure = (str(e), classify_error(e))

            if failure is None:
                await self._record_success(name)
                return

            message, error_type = failure
            if error_type not in RETRYABLE_ERROR_TYPES:
                await self._record_fatal(name, message)
                logger.error(f"Provider '{name}' fatal error: {message}")
                raise ProviderFatalError(message, provider=name)

            await self._record_failure(name, message)

            if forwarded:
                raise ProviderStreamInterruptedError(
                    f"Provider '{name}' failed mid-stream: {message}", provider=name
                )

            attempts.append(f"{name}: {message}")
            logger.info(f"Falling back from provider '{name}' ({error_type.value})")

        logger.error(f"All providers failed: {attempts}")
        raise ProvidersExhaustedError(attempts=attempts)

    async def complete(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        session: Optional[Session] = None,
        max_tokens: int = 1024,
        temperature: float = 0.3,
    ) -> str:
        """Simple text completion through the fallback chain.

        Args:
            prompt: The prompt to complete
            system_prompt: Optional system prompt
            session: Session to charge usage to
            max_tokens: Maximum tokens to generate
            temperature: Sampling temperature

        Returns:
            Generated text
        """
        parts: list[str] = []
        async for event in self.chat(
            session,
            [Turn.user(prompt)],
            system_prompt=system_prompt,
            temperature=temperature,
            max_tokens=max_tokens,
        ):
            if event.type == ChatEventType.TEXT_DELTA and event.content:
                parts.append(event.content)
        return "".join(parts)

    def get_config(self, name: str) -> Optional[ProviderConfig]:
        return self._configs.get(name)

    def get_status(self) -> list[dict[str, Any]]:
        """Availability snapshot of every adapter, by priority."""
        configs = sorted(self._configs.values(), key=lambda c: c.priority)
        status = []
        for config in configs:
            provider = next(p for p in self._providers if p.provider_name == config.name)
            entry = config.to_dict()
            entry["model"] = provider.model_name
            entry["native_tools"] = provider.supports_tools
            status.append(entry)
        return status

    async def close(self) -> None:
        """Close every adapter that holds network resources."""
        for provider in self._providers:
            close = getattr(provider, "close", None)
            if close is None:
                continue
            try:
                await close()
            except Exception as e:
                logger.warning(f"Error closing provider '{provider.provider_name}': {e}")
