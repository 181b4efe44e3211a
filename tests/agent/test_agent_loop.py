"""
Tests for the AgentLoop.

Tests cover:
- Final answers, tool calls and result ordering
- Approval gating: approve, deny, expire and cancel
- Turn caps and token budgets
- Text-mode tool calling
- Unknown, invalid, disallowed and excess tool calls
- Cancellation, busy sessions and provider failures
- Compaction inside a run
"""

import asyncio

import pytest

from src.nexus.agent.domain.entities import (
    ChatEventType,
    ErrorType,
    InboundMessage,
    SessionStatus,
    Turn,
    TurnRole,
)
from src.nexus.agent.exceptions import AgentError
from src.nexus.agent.orchestrator import AgentConfig, ApprovalPolicy
from src.nexus.agent.orchestrator.approval_manager import DECIDED_BY_CANCEL
from src.nexus.agent.tools import ToolPolicy

from .conftest import (
    ScriptedProvider,
    block,
    collect,
    error,
    settle,
    text,
    tool_call,
    usage,
    wait_until,
)


def of_type(events, event_type):
    return [e for e in events if e.type == event_type]


def done_metadata(events):
    assert events[-1].type == ChatEventType.DONE
    return events[-1].metadata


async def run_with_decision(loop, session, decision, message="go"):
    """Drain a run, answering every approval request with the same decision."""
    events = []
    async for event in loop.run(session, InboundMessage(session.session_id, message)):
        events.append(event)
        if event.type == ChatEventType.APPROVAL_REQUIRED and decision:
            await loop.approvals.resolve(
                event.approval_id, decision, decided_by="alice", channel="test"
            )
    return events


# =============================================================================
# Basic runs
# =============================================================================


class TestFinalAnswer:
    @pytest.mark.asyncio
    async def test_answer_without_tools(self, make_loop, store):
        provider = ScriptedProvider([[text("Hi "), text("there"), usage(10, 5)]])
        loop = make_loop(provider)
        session = loop.new_session()

        events = await collect(loop, session)

        meta = done_metadata(events)
        assert meta["status"] == "done"
        assert meta["answer"] == "Hi there"
        assert meta["reason"] is None
        assert meta["turns"] == 1
        assert meta["usage"]["total_tokens"] == 15
        assert session.status == SessionStatus.DONE
        assert [t.role for t in session.turns] == [TurnRole.USER, TurnRole.ASSISTANT]

        stored = await store.load_session(session.session_id)
        assert stored.status == SessionStatus.DONE
        assert len(stored.turns) == 2

    @pytest.mark.asyncio
    async def test_sequence_is_monotonic(self, make_loop):
        provider = ScriptedProvider([
            [tool_call("read_file", {"path": "a"}), usage(1, 1)],
            [text("done")],
        ])
        loop = make_loop(provider)
        session = loop.new_session()

        events = await collect(loop, session)

        assert [e.sequence for e in events] == list(range(1, len(events) + 1))
        assert {e.session_id for e in events} == {session.session_id}

    @pytest.mark.asyncio
    async def test_attachments_rendered_into_user_turn(self, make_loop):
        loop = make_loop(ScriptedProvider([[text("ok")]]))
        session = loop.new_session()
        inbound = InboundMessage(
            session.session_id, "see file", attachments=[{"name": "report.pdf"}]
        )

        [event async for event in loop.run(session, inbound)]

        assert session.turns[0].content == "see file\n\nAttachments: report.pdf"

    @pytest.mark.asyncio
    async def test_new_session_uses_configured_caps(self, make_loop):
        loop = make_loop(
            ScriptedProvider(), config=AgentConfig(max_turns=7, max_tokens=1234)
        )

        session = loop.new_session("s-1")

        assert session.session_id == "s-1"
        assert session.max_turns == 7
        assert session.max_tokens == 1234


class TestToolCalls:
    @pytest.mark.asyncio
    async def test_read_only_tool_runs_without_approval(self, make_loop, tool_log, channel):
        provider = ScriptedProvider([
            [text("Let me look."), tool_call("read_file", {"path": "a.txt"}, "c1")],
            [text("It says hi")],
        ])
        loop = make_loop(provider)
        session = loop.new_session()

        events = await collect(loop, session)

        assert tool_log == [("read_file", "a.txt")]
        assert channel.notifications == []
        result = of_type(events, ChatEventType.TOOL_RESULT)[0]
        assert result.tool_call_id == "c1"
        assert result.content == "contents of a.txt"
        assert result.metadata == {"status": "executed", "is_error": False}

        roles = [t.role for t in session.turns]
        assert roles == [TurnRole.USER, TurnRole.ASSISTANT, TurnRole.TOOL_RESULT, TurnRole.ASSISTANT]
        assistant = session.turns[1]
        assert assistant.tool_calls[0].id == "c1"
        assert assistant.tool_calls[0].thought == "Let me look."
        assert session.turns[2].tool_call_id == "c1"
        # The tool result is part of the next provider request
        assert provider.calls[1]["messages"][2].content == "contents of a.txt"

    @pytest.mark.asyncio
    async def test_results_follow_issue_order(self, make_loop, tool_log):
        provider = ScriptedProvider([
            [
                tool_call("write_file", {"path": "b", "content": "x"}, "c1"),
                tool_call("read_file", {"path": "a"}, "c2"),
            ],
            [text("done")],
        ])
        loop = make_loop(provider)
        session = loop.new_session()

        events = await collect(loop, session)

        assert [e.tool_call_id for e in of_type(events, ChatEventType.TOOL_RESULT)] == ["c1", "c2"]
        assert [t.tool_call_id for t in session.turns if t.role == TurnRole.TOOL_RESULT] == ["c1", "c2"]
        assert tool_log == [("write_file", "b"), ("read_file", "a")]

    @pytest.mark.asyncio
    async def test_structured_output_serialized(self, make_loop):
        provider = ScriptedProvider([
            [tool_call("write_file", {"path": "b", "content": "abc"})],
            [text("done")],
        ])
        loop = make_loop(provider)
        session = loop.new_session()

        await collect(loop, session)

        assert session.turns[2].content == '{"written": 3}'

    @pytest.mark.asyncio
    async def test_tool_failure_fed_back(self, make_loop):
        provider = ScriptedProvider([
            [tool_call("explode", {"reason": "disk full"})],
            [text("The tool failed")],
        ])
        loop = make_loop(provider)
        session = loop.new_session()

        events = await collect(loop, session)

        result = of_type(events, ChatEventType.TOOL_RESULT)[0]
        assert result.metadata["is_error"] is True
        assert result.content.startswith("Error:")
        assert "disk full" in result.content
        assert done_metadata(events)["status"] == "done"

    @pytest.mark.asyncio
    async def test_unknown_tool(self, make_loop):
        provider = ScriptedProvider([
            [tool_call("format_disk", {})],
            [text("sorry")],
        ])
        loop = make_loop(provider)
        session = loop.new_session()

        events = await collect(loop, session)

        result = of_type(events, ChatEventType.TOOL_RESULT)[0]
        assert result.content == "Error: Unknown tool: 'format_disk'"
        assert result.metadata["status"] == "failed"

    @pytest.mark.asyncio
    async def test_invalid_params_rejected(self, make_loop, tool_log):
        provider = ScriptedProvider([
            [tool_call("read_file", {"path": 42})],
            [text("retrying is pointless")],
        ])
        loop = make_loop(provider)
        session = loop.new_session()

        events = await collect(loop, session)

        result = of_type(events, ChatEventType.TOOL_RESULT)[0]
        assert result.content.startswith("Error: Invalid parameters for 'read_file'")
        assert tool_log == []

    @pytest.mark.asyncio
    async def test_tool_outside_scope(self, make_loop, tool_log):
        provider = ScriptedProvider([
            [tool_call("write_file", {"path": "a", "content": "x"})],
            [text("not allowed")],
        ])
        loop = make_loop(provider)
        session = loop.new_session(tool_scope=ToolPolicy.scoped(["read_file"]))

        events = await collect(loop, session)

        assert provider.tool_names(0) == ["read_file"]
        result = of_type(events, ChatEventType.TOOL_RESULT)[0]
        assert result.content == "Error: Tool 'write_file' is not allowed in this session"
        assert tool_log == []

    @pytest.mark.asyncio
    async def test_too_many_calls_in_one_response(self, make_loop, tool_log):
        provider = ScriptedProvider([
            [
                tool_call("read_file", {"path": "a"}, "c1"),
                tool_call("read_file", {"path": "b"}, "c2"),
            ],
            [text("done")],
        ])
        loop = make_loop(provider, config=AgentConfig(max_tool_calls_per_turn=1))
        session = loop.new_session()

        events = await collect(loop, session)

        results = of_type(events, ChatEventType.TOOL_RESULT)
        assert len(results) == 2
        assert results[1].content.startswith("Error: Too many tool calls in one response")
        assert tool_log == [("read_file", "a")]


# =============================================================================
# Approvals
# =============================================================================


class TestApprovalGating:
    @pytest.mark.asyncio
    async def test_destructive_call_approved(self, make_loop, tool_log, channel):
        provider = ScriptedProvider([
            [tool_call("delete_file", {"path": "/tmp/x.log"}, "c1")],
            [text("Deleted")],
        ])
        loop = make_loop(provider)
        session = loop.new_session()

        events = await run_with_decision(loop, session, "approve")

        required = of_type(events, ChatEventType.APPROVAL_REQUIRED)[0]
        assert required.tool_name == "delete_file"
        assert required.metadata["side_effect_class"] == "destructive"
        resolved = of_type(events, ChatEventType.APPROVAL_RESOLVED)[0]
        assert resolved.metadata["decision"] == "approved"
        assert tool_log == [("delete_file", "/tmp/x.log")]
        assert len(channel.notifications) == 1
        assert loop.approvals.get_audit_trail()[0].decided_by == "alice"
        assert done_metadata(events)["status"] == "done"

    @pytest.mark.asyncio
    async def test_denied_call_never_executes(self, make_loop, tool_log):
        provider = ScriptedProvider([
            [tool_call("delete_file", {"path": "/tmp/x.log"}, "c1")],
            [text("Understood, I will not delete it")],
        ])
        loop = make_loop(provider)
        session = loop.new_session()

        events = await run_with_decision(loop, session, "deny")

        assert tool_log == []
        result = of_type(events, ChatEventType.TOOL_RESULT)[0]
        assert result.content == "Denied: approval denied (decided by alice)"
        assert result.metadata == {"status": "denied", "is_error": True}
        assert done_metadata(events)["status"] == "done"

    @pytest.mark.asyncio
    async def test_expired_approval_treated_as_denial(self, make_loop, tool_log):
        provider = ScriptedProvider([
            [tool_call("delete_file", {"path": "/tmp/x.log"})],
            [text("No answer from a human")],
        ])
        loop = make_loop(provider, approval_timeout=0.05)
        session = loop.new_session()

        events = await run_with_decision(loop, session, None)

        assert tool_log == []
        result = of_type(events, ChatEventType.TOOL_RESULT)[0]
        assert result.content == "Denied: approval expired (decided by system:timeout)"
        assert done_metadata(events)["status"] == "done"
        assert session.status == SessionStatus.DONE

    @pytest.mark.asyncio
    async def test_session_suspended_while_awaiting_approval(self, make_loop, store):
        provider = ScriptedProvider([
            [tool_call("delete_file", {"path": "a"})],
            [text("ok")],
        ])
        loop = make_loop(provider)
        session = loop.new_session()

        runner = asyncio.create_task(collect(loop, session))
        await wait_until(lambda: session.status == SessionStatus.AWAITING_APPROVAL)

        stored = await store.load_session(session.session_id)
        assert stored.status == SessionStatus.AWAITING_APPROVAL
        pending = loop.approvals.list_pending(session.session_id)
        assert len(pending) == 1

        await loop.approvals.resolve(pending[0].approval_id, "approve", decided_by="bob")
        events = await asyncio.wait_for(runner, timeout=1)

        assert done_metadata(events)["status"] == "done"
        assert session.status == SessionStatus.DONE

    @pytest.mark.asyncio
    async def test_mutating_not_gated_by_default(self, make_loop, channel):
        provider = ScriptedProvider([
            [tool_call("write_file", {"path": "a", "content": "x"})],
            [text("ok")],
        ])
        loop = make_loop(provider)
        session = loop.new_session()

        events = await collect(loop, session)

        assert of_type(events, ChatEventType.APPROVAL_REQUIRED) == []
        assert channel.notifications == []

    @pytest.mark.asyncio
    async def test_always_policy_gates_mutating(self, make_loop, tool_log):
        provider = ScriptedProvider([
            [tool_call("write_file", {"path": "a", "content": "x"})],
            [text("ok")],
        ])
        loop = make_loop(provider, config=AgentConfig(approval_policy=ApprovalPolicy.ALWAYS))
        session = loop.new_session()

        events = await run_with_decision(loop, session, "deny")

        assert len(of_type(events, ChatEventType.APPROVAL_REQUIRED)) == 1
        assert tool_log == []

    @pytest.mark.asyncio
    async def test_gated_call_blocks_later_calls(self, make_loop, tool_log):
        provider = ScriptedProvider([
            [
                tool_call("delete_file", {"path": "old"}, "c1"),
                tool_call("read_file", {"path": "new"}, "c2"),
            ],
            [text("done")],
        ])
        loop = make_loop(provider)
        session = loop.new_session()

        events = await run_with_decision(loop, session, "approve")

        assert tool_log == [("delete_file", "old"), ("read_file", "new")]
        assert [e.tool_call_id for e in of_type(events, ChatEventType.TOOL_RESULT)] == ["c1", "c2"]

    @pytest.mark.asyncio
    async def test_ungated_call_runs_before_later_gated_call(self, make_loop, tool_log):
        provider = ScriptedProvider([
            [
                tool_call("read_file", {"path": "a"}, "a"),
                tool_call("delete_file", {"path": "b"}, "b"),
            ],
            [text("done")],
        ])
        loop = make_loop(provider)
        session = loop.new_session()

        runner = asyncio.create_task(collect(loop, session))
        await wait_until(lambda: session.status == SessionStatus.AWAITING_APPROVAL)

        assert tool_log == [("read_file", "a")]
        pending = loop.approvals.list_pending(session.session_id)
        assert [p.tool_call.tool_name for p in pending] == ["delete_file"]

        await loop.approvals.resolve(pending[0].approval_id, "approve", decided_by="alice")
        events = await asyncio.wait_for(runner, timeout=1)

        assert tool_log == [("read_file", "a"), ("delete_file", "b")]
        results = of_type(events, ChatEventType.TOOL_RESULT)
        assert [e.tool_call_id for e in results] == ["a", "b"]
        result_turns = [t for t in session.turns if t.role == TurnRole.TOOL_RESULT]
        assert [t.tool_call_id for t in result_turns] == ["a", "b"]
        assert done_metadata(events)["status"] == "done"


# =============================================================================
# Caps and budgets
# =============================================================================


class TestCaps:
    @pytest.mark.asyncio
    async def test_turn_cap(self, make_loop):
        provider = ScriptedProvider([
            [tool_call("read_file", {"path": "a"})],
            [tool_call("read_file", {"path": "b"})],
            [text("never reached")],
        ])
        loop = make_loop(provider, config=AgentConfig(max_turns=2))
        session = loop.new_session()

        events = await collect(loop, session)

        error_event = of_type(events, ChatEventType.ERROR)[0]
        assert error_event.metadata["reason"] == "TurnCapExceeded"
        meta = done_metadata(events)
        assert meta["status"] == "failed"
        assert meta["reason"] == "TurnCapExceeded"
        assert len(provider.calls) == 2
        assert session.failure_reason == "TurnCapExceeded"

    @pytest.mark.asyncio
    async def test_token_budget(self, make_loop):
        provider = ScriptedProvider([[text("long answer"), usage(80, 40)]])
        loop = make_loop(provider)
        session = loop.new_session(max_tokens=100)

        events = await collect(loop, session)

        meta = done_metadata(events)
        assert meta["status"] == "failed"
        assert meta["reason"] == "TokenBudgetExceeded"
        assert meta["usage"]["total_tokens"] == 120

    @pytest.mark.asyncio
    async def test_token_budget_applies_per_run(self, make_loop):
        provider = ScriptedProvider([
            [text("first answer"), usage(400, 200)],
            [text("second answer"), usage(400, 200)],
        ])
        loop = make_loop(provider, config=AgentConfig(max_tokens=1000))
        session = loop.new_session()

        first = await collect(loop, session, "first")
        second = await collect(loop, session, "second")

        assert done_metadata(first)["status"] == "done"
        assert done_metadata(second)["status"] == "done"
        assert session.status == SessionStatus.DONE
        assert session.failure_reason is None
        assert session.token_usage.total == 1200

    @pytest.mark.asyncio
    async def test_new_run_after_failure(self, make_loop):
        provider = ScriptedProvider([
            [tool_call("read_file", {"path": "a"})],
            [text("second run answer")],
        ])
        loop = make_loop(provider, config=AgentConfig(max_turns=1))
        session = loop.new_session()

        first = await collect(loop, session)
        second = await collect(loop, session, "try again")

        assert done_metadata(first)["reason"] == "TurnCapExceeded"
        meta = done_metadata(second)
        assert meta["status"] == "done"
        assert meta["turns"] == 1
        assert session.failure_reason is None

    @pytest.mark.asyncio
    async def test_history_accumulates_across_runs(self, make_loop):
        provider = ScriptedProvider([[text("one")], [text("two")]])
        loop = make_loop(provider)
        session = loop.new_session()

        await collect(loop, session, "first")
        await collect(loop, session, "second")

        assert [t.content for t in session.turns] == ["first", "one", "second", "two"]
        assert [t.content for t in provider.calls[1]["messages"]] == ["first", "one", "second"]


# =============================================================================
# Text mode
# =============================================================================


class TestTextMode:
    @pytest.mark.asyncio
    async def test_json_steps(self, make_loop, tool_log):
        provider = ScriptedProvider(
            [
                [text('{"type": "tool_call", "thought": "check", "tool": "read_file", '
                      '"params": {"path": "b.txt"}}')],
                [text('```json\n{"type": "final_answer", "answer": "It says hi"}\n```')],
            ],
            native_tools=False,
        )
        loop = make_loop(provider)
        session = loop.new_session()

        events = await collect(loop, session)

        assert tool_log == [("read_file", "b.txt")]
        assert done_metadata(events)["answer"] == "It says hi"
        assert provider.calls[0]["tools"] is None
        assert "read_file" in provider.calls[0]["system_prompt"]
        assert session.turns[-1].content == "It says hi"

    @pytest.mark.asyncio
    async def test_plain_text_is_final_answer(self, make_loop):
        provider = ScriptedProvider([[text("Just words.")]], native_tools=False)
        loop = make_loop(provider)
        session = loop.new_session()

        events = await collect(loop, session)

        assert done_metadata(events)["answer"] == "Just words."


# =============================================================================
# Failures and cancellation
# =============================================================================


class TestFailures:
    @pytest.mark.asyncio
    async def test_providers_exhausted(self, make_loop):
        loop = make_loop(ScriptedProvider([[error("overloaded")]]))
        session = loop.new_session()

        events = await collect(loop, session)

        assert of_type(events, ChatEventType.ERROR)[0].metadata["reason"] == "ProvidersUnavailable"
        meta = done_metadata(events)
        assert meta["status"] == "failed"
        assert meta["reason"] == "ProvidersUnavailable"

    @pytest.mark.asyncio
    async def test_fallback_is_invisible_to_the_run(self, make_loop):
        primary = ScriptedProvider([[error("overloaded")]], name="primary")
        backup = ScriptedProvider([[text("from backup")]], name="backup")
        loop = make_loop(primary, backup)
        session = loop.new_session()

        events = await collect(loop, session)

        assert done_metadata(events)["answer"] == "from backup"
        assert of_type(events, ChatEventType.ERROR) == []

    @pytest.mark.asyncio
    async def test_busy_session_rejected(self, make_loop):
        gate = asyncio.Event()
        provider = ScriptedProvider([[block(gate), text("late")]])
        loop = make_loop(provider)
        session = loop.new_session()

        first = asyncio.create_task(collect(loop, session))
        await settle()
        assert loop.is_running(session.session_id)

        with pytest.raises(AgentError) as exc_info:
            await loop.run(session, InboundMessage(session.session_id, "again")).__anext__()
        assert exc_info.value.code == "SESSION_BUSY"

        gate.set()
        events = await first
        assert done_metadata(events)["answer"] == "late"
        assert not loop.is_running(session.session_id)

    @pytest.mark.asyncio
    async def test_cancel_during_provider_stream(self, make_loop):
        provider = ScriptedProvider([[text("thinking"), block(asyncio.Event())]])
        loop = make_loop(provider)
        session = loop.new_session()

        runner = asyncio.create_task(collect(loop, session))
        await settle()

        assert await loop.cancel(session.session_id) is True
        events = await asyncio.wait_for(runner, timeout=1)

        assert of_type(events, ChatEventType.CANCEL)
        meta = done_metadata(events)
        assert meta["status"] == "failed"
        assert meta["reason"] == "Cancelled"
        assert session.status == SessionStatus.FAILED

    @pytest.mark.asyncio
    async def test_cancel_during_approval_expires_it(self, make_loop, tool_log):
        provider = ScriptedProvider([[tool_call("delete_file", {"path": "a"})]])
        loop = make_loop(provider)
        session = loop.new_session()
        events = []

        async for event in loop.run(session, InboundMessage(session.session_id, "go")):
            events.append(event)
            if event.type == ChatEventType.APPROVAL_REQUIRED:
                await loop.cancel(session.session_id)

        assert tool_log == []
        assert done_metadata(events)["reason"] == "Cancelled"
        assert loop.approvals.list_pending() == []
        assert loop.approvals.get_audit_trail()[0].decided_by == DECIDED_BY_CANCEL

    @pytest.mark.asyncio
    async def test_cancel_idle_session(self, make_loop):
        loop = make_loop(ScriptedProvider())

        assert await loop.cancel("nobody") is False

    @pytest.mark.asyncio
    async def test_error_messages_are_sanitized(self, make_loop):
        provider = ScriptedProvider(
            [[error("bad key sk-ant-abcdefghijklmnop", ErrorType.FATAL)]]
        )
        loop = make_loop(provider)
        session = loop.new_session()

        events = await collect(loop, session)

        error_event = of_type(events, ChatEventType.ERROR)[0]
        assert "sk-ant-abcdefghijklmnop" not in error_event.content
        assert error_event.metadata["reason"] == "ProviderError"


# =============================================================================
# Compaction
# =============================================================================


class TestCompactionInRun:
    @pytest.mark.asyncio
    async def test_large_session_compacted_before_provider_call(self, make_loop, store):
        provider = ScriptedProvider([
            [text("Earlier the user asked to fix nginx.")],
            [text("Fixed")],
        ])
        loop = make_loop(
            provider,
            config=AgentConfig(compaction_threshold_tokens=50),
            preserve_recent=2,
        )
        session = loop.new_session()
        session.turns.extend([
            Turn.user("Please fix /etc/nginx/nginx.conf " + "x" * 300),
            Turn.assistant("Looking at it, connect fails with ECONNREFUSED " + "y" * 300),
            Turn.user("The upstream listens on port 8080"),
            Turn.assistant("Checking the upstream"),
        ])
        await store.save_session(session)

        events = await collect(loop, session, "status?")

        compacted = of_type(events, ChatEventType.COMPACTED)[0]
        assert compacted.metadata["turns_compacted"] == 2
        summary_turn = session.turns[0]
        assert summary_turn.role == TurnRole.SYSTEM
        assert session.turns[1].role == TurnRole.USER
        assert "[PINNED] File path: /etc/nginx/nginx.conf" in summary_turn.content
        assert "[PINNED] Error: ECONNREFUSED" in summary_turn.content
        assert "File path: /etc/nginx/nginx.conf" in session.pinned_facts
        assert done_metadata(events)["answer"] == "Fixed"

        stored = await store.load_session(session.session_id)
        assert stored.turns[0].role == TurnRole.SYSTEM
        # Pinned facts reach the system prompt of later calls
        assert "/etc/nginx/nginx.conf" in provider.calls[1]["system_prompt"]
