"""
Shared fixtures for agent tests.

ScriptedProvider replays canned responses so loop behavior can be tested
without a network. Each chat() call consumes the next response script.
"""

import asyncio
from typing import Any, Optional

import pytest

from src.nexus.agent.domain.entities import ErrorType, SideEffectClass
from src.nexus.agent.memory import InMemorySessionStore
from src.nexus.agent.orchestrator import (
    AgentConfig,
    AgentLoop,
    ApprovalManager,
    ConcurrencyPool,
    SessionCompactor,
    SubAgentOrchestrator,
)
from src.nexus.agent.providers import BaseLLMProvider, LLMProviderConfig, ProviderManager
from src.nexus.agent.tools import ToolRegistry


# =============================================================================
# Script steps
# =============================================================================


def text(content: str) -> tuple:
    return ("text", content)


def tool_call(name: str, arguments: dict, call_id: Optional[str] = None) -> tuple:
    return ("tool", call_id or f"call_{name}", name, arguments)


def usage(input_tokens: int, output_tokens: int) -> tuple:
    return ("usage", input_tokens, output_tokens)


def error(message: str, error_type: ErrorType = ErrorType.UNAVAILABLE) -> tuple:
    return ("error", message, error_type)


def raises(exc: Exception) -> tuple:
    return ("raise", exc)


def block(event: asyncio.Event) -> tuple:
    return ("block", event)


class ScriptedProvider(BaseLLMProvider):
    """Provider adapter that replays scripted responses."""

    def __init__(
        self,
        responses: Optional[list[list[tuple]]] = None,
        name: str = "scripted",
        model: str = "scripted-model",
        native_tools: bool = True,
    ):
        super().__init__(LLMProviderConfig(api_key="test", model=model))
        self.name = name
        self.responses = list(responses or [])
        self.native_tools = native_tools
        self.calls: list[dict[str, Any]] = []
        self.closed = False

    @property
    def supports_tools(self) -> bool:
        return self.native_tools

    def add_response(self, *steps: tuple) -> None:
        self.responses.append(list(steps))

    def tool_names(self, call_index: int) -> list[str]:
        tools = self.calls[call_index]["tools"] or []
        return [t.name for t in tools]

    async def chat(
        self,
        messages,
        tools=None,
        system_prompt=None,
        temperature=0.7,
        max_tokens=None,
    ):
        self._reset_sequence()
        self.calls.append({
            "messages": list(messages),
            "tools": tools,
            "system_prompt": system_prompt,
        })
        if not self.responses:
            yield self._create_error("script exhausted", ErrorType.FATAL)
            return

        for step in self.responses.pop(0):
            kind = step[0]
            if kind == "text":
                yield self._create_text_delta(step[1])
            elif kind == "tool":
                _, call_id, name, arguments = step
                yield self._create_tool_call_start(call_id, name)
                yield self._create_tool_call_end(call_id, name, arguments)
            elif kind == "usage":
                yield self._create_usage(step[1], step[2])
            elif kind == "error":
                yield self._create_error(step[1], step[2])
                return
            elif kind == "raise":
                raise step[1]
            elif kind == "block":
                await step[1].wait()
        yield self._create_done()

    async def close(self) -> None:
        self.closed = True


class RecordingChannel:
    """Notification channel that records every notification."""

    def __init__(self, name: str = "recording", fail: bool = False):
        self.name = name
        self.fail = fail
        self.notifications = []

    async def notify(self, notification) -> None:
        if self.fail:
            raise ConnectionError("channel down")
        self.notifications.append(notification)


async def settle(rounds: int = 10) -> None:
    """Let scheduled tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


async def wait_until(predicate, timeout: float = 2.0) -> None:
    """Poll until predicate() is true."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def tool_log():
    """Calls received by the test tools, in order."""
    return []


@pytest.fixture
def registry(tool_log):
    """Registry with one tool per side-effect class."""
    registry = ToolRegistry()

    async def read_file(path: str) -> str:
        tool_log.append(("read_file", path))
        return f"contents of {path}"

    def write_file(path: str, content: str) -> dict:
        tool_log.append(("write_file", path))
        return {"written": len(content)}

    async def delete_file(path: str) -> str:
        tool_log.append(("delete_file", path))
        return f"deleted {path}"

    async def explode(reason: str) -> str:
        raise RuntimeError(reason)

    path_schema = {
        "type": "object",
        "properties": {"path": {"type": "string"}},
        "required": ["path"],
    }
    registry.register(
        "read_file", "Read a file", path_schema, SideEffectClass.READ_ONLY, read_file
    )
    registry.register(
        "write_file",
        "Write a file",
        {
            "type": "object",
            "properties": {
                "path": {"type": "string"},
                "content": {"type": "string"},
            },
            "required": ["path", "content"],
        },
        SideEffectClass.MUTATING,
        write_file,
    )
    registry.register(
        "delete_file", "Delete a file", path_schema, SideEffectClass.DESTRUCTIVE, delete_file
    )
    registry.register(
        "explode",
        "Always fails",
        {"type": "object", "properties": {"reason": {"type": "string"}}, "required": ["reason"]},
        SideEffectClass.READ_ONLY,
        explode,
    )
    return registry


@pytest.fixture
def provider():
    return ScriptedProvider()


@pytest.fixture
def store():
    return InMemorySessionStore()


@pytest.fixture
def channel():
    return RecordingChannel()


@pytest.fixture
def make_loop(registry, store, channel):
    """Factory wiring an AgentLoop around scripted providers."""

    def _make(
        *providers: ScriptedProvider,
        approval_timeout: float = 5.0,
        config: Optional[AgentConfig] = None,
        pool_capacity: int = 2,
        preserve_recent: int = 10,
        with_subagents: bool = True,
    ) -> AgentLoop:
        manager = ProviderManager(list(providers))
        approvals = ApprovalManager(
            channels=[channel], store=store, timeout_seconds=approval_timeout
        )
        subagents = None
        if with_subagents:
            subagents = SubAgentOrchestrator(
                ConcurrencyPool(pool_capacity), store=store, default_max_turns=5
            )
            subagents.register_tool(registry)
        loop = AgentLoop(
            provider_manager=manager,
            tool_registry=registry,
            approval_manager=approvals,
            compactor=SessionCompactor(manager, preserve_recent=preserve_recent),
            subagents=subagents,
            store=store,
            config=config or AgentConfig(),
        )
        if subagents is not None:
            subagents.loop_factory = lambda: loop
        return loop

    return _make


async def collect(loop: AgentLoop, session, message: str = "hello") -> list:
    """Drain one run and return its events."""
    from src.nexus.agent.domain.entities import InboundMessage

    return [
        event
        async for event in loop.run(session, InboundMessage(session.session_id, message))
    ]
