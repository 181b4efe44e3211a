"""
Tests for sub-agent delegation.

Tests cover:
- ConcurrencyPool capacity and FIFO hand-off
- Depth limit: sub-agents cannot delegate
- End-to-end delegation through the agent loop
- Capacity of two with queueing, cancellation freeing slots
- Caps and tool scope of child sessions
"""

import asyncio

import pytest

from src.nexus.agent.domain.entities import (
    ChatEvent,
    ChatEventType,
    Session,
    SubAgentStatus,
    TurnRole,
)
from src.nexus.agent.exceptions import ConfigurationError, DelegationDepthExceededError
from src.nexus.agent.orchestrator import ConcurrencyPool, SubAgentOrchestrator
from src.nexus.agent.tools import ToolPolicy

from .conftest import ScriptedProvider, block, collect, settle, text, tool_call, wait_until


# =============================================================================
# Concurrency Pool
# =============================================================================


class TestConcurrencyPool:
    def test_capacity_must_be_positive(self):
        with pytest.raises(ConfigurationError):
            ConcurrencyPool(0)

    @pytest.mark.asyncio
    async def test_fifo_hand_off(self):
        pool = ConcurrencyPool(capacity=1)
        await pool.acquire("a")
        order = []

        async def take(task_id):
            await pool.acquire(task_id)
            order.append(task_id)

        waiters = [asyncio.create_task(take(t)) for t in ("b", "c")]
        await settle()
        assert pool.queued == 2
        assert pool.queue_position("b") == 0

        await pool.release("a")
        await settle()
        assert order == ["b"]

        await pool.release("b")
        await settle()
        assert order == ["b", "c"]
        await asyncio.gather(*waiters)
        assert pool.in_use == 1

    @pytest.mark.asyncio
    async def test_release_is_idempotent(self):
        pool = ConcurrencyPool(capacity=2)
        await pool.acquire("a")

        assert await pool.release("a") is True
        assert await pool.release("a") is False
        assert pool.in_use == 0

    @pytest.mark.asyncio
    async def test_cancelled_waiter_leaves_queue(self):
        pool = ConcurrencyPool(capacity=1)
        await pool.acquire("a")
        waiter = asyncio.create_task(pool.acquire("b"))
        await settle()

        assert pool.cancel_waiter("b") is True
        with pytest.raises(asyncio.CancelledError):
            await waiter
        assert pool.queued == 0

        await pool.release("a")
        assert pool.in_use == 0


# =============================================================================
# Orchestrator with a controllable child loop
# =============================================================================


class GatedLoop:
    """Child loop stand-in that finishes when its gate opens."""

    def __init__(self):
        self.gates: dict[str, asyncio.Event] = {}
        self.started: list[str] = []

    def new_session(self, session_id=None, **kwargs):
        return Session(session_id=session_id or "x", **kwargs)

    async def run(self, session, inbound):
        gate = self.gates.setdefault(inbound.text, asyncio.Event())
        self.started.append(inbound.text)
        await gate.wait()
        session.turn_count = 1
        session.mark_done()
        yield ChatEvent.done(1, metadata={"answer": f"done: {inbound.text}"})


@pytest.fixture
def gated():
    return GatedLoop()


@pytest.fixture
def orchestrator(gated):
    return SubAgentOrchestrator(
        ConcurrencyPool(2), loop_factory=lambda: gated, default_max_turns=5
    )


class TestOrchestrator:
    @pytest.mark.asyncio
    async def test_depth_limit(self, orchestrator):
        child = Session(delegation_depth=1)

        with pytest.raises(DelegationDepthExceededError):
            await orchestrator.delegate(child, "deeper")

        assert orchestrator.list_tasks() == []

    @pytest.mark.asyncio
    async def test_requires_loop_factory(self):
        orchestrator = SubAgentOrchestrator()

        with pytest.raises(ConfigurationError):
            await orchestrator.delegate(Session(), "task")

    @pytest.mark.asyncio
    async def test_at_most_two_run_and_the_rest_queue(self, orchestrator, gated):
        parent = Session()
        tasks = [await orchestrator.delegate(parent, f"t{i}") for i in range(3)]
        await wait_until(lambda: len(gated.started) == 2)

        assert gated.started == ["t0", "t1"]
        metrics = orchestrator.get_metrics()
        assert metrics["in_use"] == 2
        assert metrics["queued"] == 1
        assert tasks[2].status == SubAgentStatus.QUEUED

        gated.gates["t0"].set()
        await wait_until(lambda: len(gated.started) == 3)
        assert gated.started[-1] == "t2"

        gated.gates["t1"].set()
        gated.gates["t2"].set()
        for task in tasks:
            finished = await orchestrator.wait(task.task_id, timeout=1)
            assert finished.status == SubAgentStatus.COMPLETED
        assert orchestrator.pool.in_use == 0

    @pytest.mark.asyncio
    async def test_completed_payload(self, orchestrator, gated):
        task = await orchestrator.delegate(Session(), "summarize logs")
        gated.gates.setdefault("summarize logs", asyncio.Event()).set()

        finished = await orchestrator.wait(task.task_id, timeout=1)

        payload = finished.to_payload()
        assert payload["status"] == "completed"
        assert payload["summary"] == "done: summarize logs"
        assert payload["turns"] == 1
        assert finished.holds_slot is False

    @pytest.mark.asyncio
    async def test_cancel_running_frees_slot_for_queued(self, orchestrator, gated):
        parent = Session()
        tasks = [await orchestrator.delegate(parent, f"t{i}") for i in range(3)]
        await wait_until(lambda: len(gated.started) == 2)

        assert await orchestrator.cancel(tasks[0].task_id) is True

        await wait_until(lambda: "t2" in gated.started)
        assert tasks[0].status == SubAgentStatus.CANCELLED
        assert tasks[0].error == "Cancelled"
        assert orchestrator.get_session(tasks[0].task_id).failure_reason == "Cancelled"
        assert await orchestrator.cancel(tasks[0].task_id) is False

        await orchestrator.shutdown()

    @pytest.mark.asyncio
    async def test_cancel_queued_task(self, orchestrator, gated):
        parent = Session()
        tasks = [await orchestrator.delegate(parent, f"t{i}") for i in range(3)]
        await wait_until(lambda: len(gated.started) == 2)

        await orchestrator.cancel(tasks[2].task_id)
        finished = await orchestrator.wait(tasks[2].task_id, timeout=1)

        assert finished.status == SubAgentStatus.CANCELLED
        assert orchestrator.pool.queued == 0
        assert "t2" not in gated.started

        await orchestrator.shutdown()

    @pytest.mark.asyncio
    async def test_cancel_before_runner_starts(self, orchestrator, gated):
        task = await orchestrator.delegate(Session(), "never runs")

        assert await orchestrator.cancel(task.task_id) is True
        finished = await orchestrator.wait(task.task_id, timeout=1)

        assert finished.status == SubAgentStatus.CANCELLED
        assert finished.holds_slot is False
        assert gated.started == []
        assert orchestrator.pool.in_use == 0
        assert orchestrator.pool.queued == 0

    @pytest.mark.asyncio
    async def test_cancel_for_parent_before_runners_start(self, orchestrator, gated):
        parent = Session()
        tasks = [await orchestrator.delegate(parent, f"t{i}") for i in range(3)]

        assert await orchestrator.cancel_for_parent(parent.session_id) == 3

        for task in tasks:
            finished = await orchestrator.wait(task.task_id, timeout=1)
            assert finished.status == SubAgentStatus.CANCELLED
        assert gated.started == []
        assert orchestrator.pool.in_use == 0

    @pytest.mark.asyncio
    async def test_shutdown_right_after_delegate(self, orchestrator, gated):
        task = await orchestrator.delegate(Session(), "a")

        await asyncio.wait_for(orchestrator.shutdown(), timeout=1)

        finished = await orchestrator.wait(task.task_id, timeout=1)
        assert finished.status == SubAgentStatus.CANCELLED
        assert orchestrator.get_metrics()["in_use"] == 0

    @pytest.mark.asyncio
    async def test_finished_tasks_are_pruned_oldest_first(self, gated):
        orchestrator = SubAgentOrchestrator(
            ConcurrencyPool(2), loop_factory=lambda: gated, max_finished_tasks=2
        )
        parent = Session()
        running = await orchestrator.delegate(parent, "long")

        finished = []
        for i in range(3):
            gated.gates.setdefault(f"t{i}", asyncio.Event()).set()
            task = await orchestrator.delegate(parent, f"t{i}")
            finished.append(await orchestrator.wait(task.task_id, timeout=1))

        assert orchestrator.list_tasks() == [running, finished[1], finished[2]]
        assert orchestrator.get(finished[0].task_id) is None
        assert orchestrator.get_session(finished[0].task_id) is None
        assert orchestrator.get_session(running.task_id) is not None
        assert finished[0].status == SubAgentStatus.COMPLETED

        await orchestrator.shutdown()

    @pytest.mark.asyncio
    async def test_cancel_for_parent_only_touches_its_children(self, orchestrator, gated):
        mine, other = Session(), Session()
        first = await orchestrator.delegate(mine, "a")
        second = await orchestrator.delegate(other, "b")
        await wait_until(lambda: len(gated.started) == 2)

        assert await orchestrator.cancel_for_parent(mine.session_id) == 1

        assert first.status == SubAgentStatus.CANCELLED
        assert second.status == SubAgentStatus.RUNNING
        assert orchestrator.list_tasks(parent_session_id=other.session_id) == [second]

        await orchestrator.shutdown()
        assert second.status == SubAgentStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_child_caps_bounded_by_defaults(self, orchestrator):
        parent = Session(tool_scope=ToolPolicy.scoped(["read_file"]))

        task = await orchestrator.delegate(parent, "a", max_turns=50, max_tokens=10**9)
        child = orchestrator.get_session(task.task_id)

        assert child.max_turns == 5
        assert child.max_tokens == orchestrator.default_max_tokens
        assert child.delegation_depth == 1
        assert child.parent_session_id == parent.session_id
        assert child.tool_scope is parent.tool_scope
        assert child.metadata["task"] == "a"

        await orchestrator.shutdown()

    @pytest.mark.asyncio
    async def test_requested_tools_scope_the_child(self, orchestrator):
        task = await orchestrator.delegate(Session(), "a", max_turns=2, tools=["read_file"])
        child = orchestrator.get_session(task.task_id)

        assert child.max_turns == 2
        assert child.tool_scope.is_allowed("read_file")
        assert not child.tool_scope.is_allowed("write_file")

        await orchestrator.shutdown()


# =============================================================================
# End-to-end through the agent loop
# =============================================================================


class TestDelegationThroughLoop:
    @pytest.mark.asyncio
    async def test_parent_receives_child_summary(self, make_loop, tool_log, store):
        provider = ScriptedProvider([
            # Parent delegates
            [tool_call("spawn_subagent", {"task": "read notes.txt"}, "p1")],
            # Child reads and answers
            [tool_call("read_file", {"path": "notes.txt"}, "c1")],
            [text("notes mention a deadline")],
            # Parent answers
            [text("The notes mention a deadline")],
        ])
        loop = make_loop(provider)
        parent = loop.new_session()

        events = await collect(loop, parent, "What do my notes say?")

        started = [e for e in events if e.type == ChatEventType.SUBAGENT_STARTED][0]
        finished = [e for e in events if e.type == ChatEventType.SUBAGENT_FINISHED][0]
        assert started.metadata["description"] == "read notes.txt"
        assert finished.metadata["status"] == "completed"
        assert finished.metadata["summary"] == "notes mention a deadline"
        assert finished.metadata["turns"] == 2
        assert tool_log == [("read_file", "notes.txt")]

        result_turn = [t for t in parent.turns if t.role == TurnRole.TOOL_RESULT][0]
        assert result_turn.tool_call_id == "p1"
        assert '"summary": "notes mention a deadline"' in result_turn.content
        assert events[-1].metadata["answer"] == "The notes mention a deadline"

        # Child runs in its own persisted session
        child_id = started.metadata["child_session_id"]
        child = await store.load_session(child_id)
        assert child.delegation_depth == 1
        assert child.parent_session_id == parent.session_id
        assert child.turns[0].content == "read notes.txt"

    @pytest.mark.asyncio
    async def test_child_is_not_offered_the_delegate_tool(self, make_loop):
        provider = ScriptedProvider([
            [tool_call("spawn_subagent", {"task": "sub"})],
            [text("child answer")],
            [text("parent answer")],
        ])
        loop = make_loop(provider)
        parent = loop.new_session()

        await collect(loop, parent)

        assert "spawn_subagent" in provider.tool_names(0)
        assert "spawn_subagent" not in provider.tool_names(1)
        assert "You cannot delegate further" in provider.calls[1]["system_prompt"]

    @pytest.mark.asyncio
    async def test_child_delegation_attempt_fails_the_child(self, make_loop):
        provider = ScriptedProvider([
            [tool_call("spawn_subagent", {"task": "sub"})],
            [tool_call("spawn_subagent", {"task": "sub-sub"})],
            [text("the sub-agent failed")],
        ])
        loop = make_loop(provider)
        parent = loop.new_session()

        events = await collect(loop, parent)

        finished = [e for e in events if e.type == ChatEventType.SUBAGENT_FINISHED][0]
        assert finished.metadata["status"] == "failed"
        assert finished.metadata["summary"] == "DelegationDepthExceeded"
        result = [e for e in events if e.type == ChatEventType.TOOL_RESULT][0]
        assert result.metadata["is_error"] is True
        # The parent keeps going
        assert events[-1].metadata["status"] == "done"
        assert len(loop.subagents.list_tasks()) == 1

    @pytest.mark.asyncio
    async def test_parent_cancel_cancels_child(self, make_loop):
        gate = asyncio.Event()
        provider = ScriptedProvider([
            [tool_call("spawn_subagent", {"task": "slow work"})],
            [block(gate), text("never")],
        ])
        loop = make_loop(provider)
        parent = loop.new_session()

        runner = asyncio.create_task(collect(loop, parent))
        await wait_until(lambda: loop.subagents.pool.in_use == 1)

        await loop.cancel(parent.session_id)
        events = await asyncio.wait_for(runner, timeout=1)

        assert events[-1].metadata["reason"] == "Cancelled"
        task = loop.subagents.list_tasks()[0]
        assert task.status == SubAgentStatus.CANCELLED
        assert loop.subagents.pool.in_use == 0
