"""
Port interfaces (abstract base classes) for the agent module.

These define the contracts that adapters must implement.
Following the Ports & Adapters (Hexagonal) architecture pattern.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, AsyncIterator, Optional

if TYPE_CHECKING:
    from .entities import (
        ApprovalNotification,
        AuditEntry,
        ChatEvent,
        Session,
        ToolDefinition,
        Turn,
    )


# ============================================
# LLM Provider Interface
# ============================================


class ILLMProvider(ABC):
    """Interface for reasoning providers (Claude, GPT, Ollama, etc.).

    Implementations handle the specifics of each LLM API while
    providing a consistent event stream to the provider manager.
    Failures are reported as ERROR events carrying an ErrorType so the
    manager can decide between fallback and abort.
    """

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Return the adapter name used in the fallback chain (e.g., 'anthropic')."""
        pass

    @property
    @abstractmethod
    def model_name(self) -> str:
        """Return the model identifier (e.g., 'claude-sonnet-4-5', 'gpt-4o')."""
        pass

    @property
    @abstractmethod
    def supports_streaming(self) -> bool:
        """Return True if this provider supports streaming responses."""
        pass

    @property
    @abstractmethod
    def supports_tools(self) -> bool:
        """Return True if this provider supports native tool/function calling."""
        pass

    @abstractmethod
    async def chat(
        self,
        messages: list[Turn],
        tools: Optional[list[ToolDefinition]] = None,
        system_prompt: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: Optional[int] = None,
    ) -> AsyncIterator[ChatEvent]:
        """Generate a response to the conversation.

        Args:
            messages: Session turn history
            tools: Available tools for the model to use
            system_prompt: System prompt to prepend
            temperature: Sampling temperature
            max_tokens: Maximum tokens to generate

        Yields:
            ChatEvent objects (TEXT_DELTA, TOOL_CALL_START, TOOL_CALL_END,
            USAGE, ERROR, DONE)
        """
        pass

    async def complete(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        max_tokens: int = 1024,
        temperature: float = 0.3,
    ) -> str:
        """Generate a simple text completion.

        Convenience method that wraps chat() for simple completions.

        Args:
            prompt: The prompt to complete
            system_prompt: Optional system prompt
            max_tokens: Maximum tokens to generate
            temperature: Sampling temperature

        Returns:
            Generated text response
        """
        from .entities import ChatEventType, Turn

        result_text = ""

        async for event in self.chat(
            messages=[Turn.user(prompt)],
            system_prompt=system_prompt,
            temperature=temperature,
            max_tokens=max_tokens,
        ):
            if event.type == ChatEventType.TEXT_DELTA and event.content:
                result_text += event.content
            elif event.type == ChatEventType.ERROR:
                raise RuntimeError(event.error or "LLM completion failed")

        return result_text


# ============================================
# Session Store Interface
# ============================================


class ISessionStore(ABC):
    """Interface for session persistence.

    The core calls append_turn on every turn it appends, save_session on
    every status change, and replace_turns after compaction.
    """

    @abstractmethod
    async def load_session(self, session_id: str) -> Optional[Session]:
        """Load a session with its turn history, or None if unknown."""
        pass

    @abstractmethod
    async def save_session(self, session: Session) -> None:
        """Upsert session state (status, usage, pinned facts, caps)."""
        pass

    @abstractmethod
    async def append_turn(self, session_id: str, turn: Turn) -> None:
        """Persist one appended turn."""
        pass

    @abstractmethod
    async def replace_turns(self, session_id: str, turns: list[Turn]) -> None:
        """Replace the stored turn history (used after compaction)."""
        pass

    @abstractmethod
    async def save_audit_entry(self, entry: AuditEntry) -> None:
        """Persist one approval audit entry."""
        pass


# ============================================
# Notify Channel Interface
# ============================================


class INotifyChannel(ABC):
    """Interface for approval notification channels (webhook, chat, email)."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the channel name recorded in notified_channels."""
        pass

    @abstractmethod
    async def notify(self, notification: ApprovalNotification) -> None:
        """Deliver an approval notification.

        Raises:
            Exception: Any delivery failure. The approval manager logs it and
                moves on to the next channel.
        """
        pass
