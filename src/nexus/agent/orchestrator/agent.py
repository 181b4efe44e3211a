"""
Agent Loop.

Drives one session from an inbound message to a terminal state. Each
iteration:
1. Compacts older turns when the session outgrows the threshold
2. Enforces the turn cap and the per-run token budget
3. Calls the provider chain with the full history and tool descriptors,
   then checks the token budget again
4. Runs requested tools (gated ones wait for human approval)
5. Hands spawn_subagent calls to the Sub-Agent Orchestrator
6. Appends results as tool_result turns in the order the calls were issued
7. Finishes when the model answers without calling a tool

Produces a ChatEvent stream for clients; the last event is always DONE
with {status, reason, usage, cost_usd}.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Optional, TypeVar

from ..domain.entities import (
    ChatEvent,
    ChatEventType,
    ErrorType,
    InboundMessage,
    PendingApproval,
    Session,
    SessionStatus,
    SubAgentStatus,
    ToolCallRecord,
    Turn,
)
from ..domain.ports import ISessionStore
from ..exceptions import (
    AgentError,
    DelegationDepthExceededError,
    SessionCancelledError,
    TokenBudgetExceededError,
    ToolValidationError,
    TurnCapExceededError,
)
from ..providers.manager import ProviderManager
from ..security.error_sanitizer import sanitize_error_message
from ..tools.policy import is_tool_allowed
from ..tools.registry import ToolRegistry
from .approval_manager import ApprovalManager, ApprovalPolicy
from .compactor import SessionCompactor
from .event_streamer import EventStreamer
from .prompt_builder import DEFAULT_SYSTEM_PROMPT, PromptBuilder
from .step_parser import parse_step
from .subagent import SPAWN_SUBAGENT_TOOL, SubAgentOrchestrator
from .tool_executor import ToolExecutor

logger = logging.getLogger(__name__)

T = TypeVar("T")

INTERNAL_ERROR_REASON = "InternalError"


class LoopState(str, Enum):
    """Where a running loop currently is."""

    IDLE = "idle"
    REQUESTING_PROVIDER = "requesting_provider"
    EMITTING = "emitting"
    TOOL_REQUESTED = "tool_requested"
    AWAITING_APPROVAL = "awaiting_approval"
    AWAITING_DELEGATION = "awaiting_delegation"
    TOOL_EXECUTING = "tool_executing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class AgentConfig:
    """Configuration for the agent loop.

    Attributes:
        system_prompt: Base system prompt
        max_turns: Turn cap for new root sessions
        max_tokens: Token budget for new root sessions
        max_tool_calls_per_turn: Calls beyond this in one response fail
        compaction_threshold_tokens: Estimated size that triggers compaction
        temperature: Sampling temperature
        max_response_tokens: Maximum tokens per provider response
        approval_policy: Which side-effect classes need human approval
        subagent_max_turns: Turn cap for sub-agent sessions
        subagent_max_tokens: Token budget for sub-agent sessions
    """

    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    max_turns: int = 30
    max_tokens: int = 200_000
    max_tool_calls_per_turn: int = 10
    compaction_threshold_tokens: int = 100_000
    temperature: float = 0.7
    max_response_tokens: int = 4096
    approval_policy: ApprovalPolicy = ApprovalPolicy.DESTRUCTIVE
    subagent_max_turns: int = 15
    subagent_max_tokens: int = 50_000


@dataclass
class _RunControl:
    """Cancellation handle of one active run."""

    session_id: str
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    state: LoopState = LoopState.IDLE
    tokens_at_start: int = 0


class AgentLoop:
    """Per-session reasoning loop.

    Usage:
        loop = AgentLoop(
            provider_manager=providers,
            tool_registry=registry,
            approval_manager=approvals,
            compactor=SessionCompactor(providers),
            subagents=subagents,
            store=store,
        )

        async for event in loop.run(session, InboundMessage(session.session_id, "hi")):
            if event.type == ChatEventType.TEXT_DELTA:
                print(event.content, end="")

        # From another task
        await loop.cancel(session.session_id)

    One loop instance serves many sessions, but each session has at most
    one active run at a time.
    """

    def __init__(
        self,
        provider_manager: ProviderManager,
        tool_registry: ToolRegistry,
        approval_manager: ApprovalManager,
        compactor: SessionCompactor,
        subagents: Optional[SubAgentOrchestrator] = None,
        store: Optional[ISessionStore] = None,
        config: Optional[AgentConfig] = None,
        prompt_builder: Optional[PromptBuilder] = None,
    ):
        """Initialize the agent loop.

        Args:
            provider_manager: Provider fallback chain
            tool_registry: Registry of callable tools
            approval_manager: Gate for risky tool calls
            compactor: Session compactor
            subagents: Sub-agent orchestrator (None disables delegation)
            store: Optional persistence for sessions and turns
            config: Loop configuration
            prompt_builder: System prompt construction
        """
        self.providers = provider_manager
        self.tools = tool_registry
        self.approvals = approval_manager
        self.compactor = compactor
        self.subagents = subagents
        self.store = store
        self.config = config or AgentConfig()
        self.prompt_builder = prompt_builder or PromptBuilder()
        self.executor = ToolExecutor(tool_registry)

        self._active: dict[str, _RunControl] = {}

    # ============================================
    # Public API
    # ============================================

    def new_session(self, session_id: Optional[str] = None, **kwargs: Any) -> Session:
        """Create a root session with the configured caps."""
        kwargs.setdefault("max_turns", self.config.max_turns)
        kwargs.setdefault("max_tokens", self.config.max_tokens)
        if session_id:
            kwargs["session_id"] = session_id
        return Session(**kwargs)

    def is_running(self, session_id: str) -> bool:
        return session_id in self._active

    def get_state(self, session_id: str) -> LoopState:
        control = self._active.get(session_id)
        return control.state if control else LoopState.IDLE

    async def cancel(self, session_id: str) -> bool:
        """Request cancellation of a session's active run.

        The run stops at its next suspension point (provider stream,
        approval wait, delegation wait or tool execution), expires its
        pending approvals, cancels its sub-agents and ends FAILED/Cancelled.

        Returns:
            True if the session had an active run
        """
        control = self._active.get(session_id)
        if control is None:
            return False
        logger.info(f"Cancellation requested for session {session_id}")
        control.cancel_event.set()
        return True

    async def run(
        self, session: Session, inbound: InboundMessage
    ) -> AsyncIterator[ChatEvent]:
        """Run the loop for one inbound message.

        Args:
            session: Session to drive (mutated in place)
            inbound: The user's message

        Yields:
            ChatEvent stream ending with DONE
        """
        session_id = session.session_id
        if session_id in self._active:
            raise AgentError(
                f"Session {session_id} already has an active run", code="SESSION_BUSY"
            )

        control = _RunControl(session_id=session_id)
        self._active[session_id] = control
        streamer = EventStreamer(session_id=session_id)

        try:
            if session.is_terminal:
                session.reopen()
            session.status = SessionStatus.ACTIVE
            control.tokens_at_start = session.token_usage.total

            logger.info(
                f"Session {session_id} run started "
                f"(depth={session.delegation_depth}, turns={len(session.turns)})"
            )

            await self._append_turn(session, Turn.user(self._render_inbound(inbound)))
            await self._save(session)

            async for event in self._iterate(session, control, streamer):
                yield event

        except SessionCancelledError as e:
            logger.info(f"Session {session_id} cancelled")
            await self._abort(session, control, e.reason)
            yield streamer.create_event(
                ChatEventType.CANCEL,
                content="Run cancelled",
                metadata={"reason": e.reason},
            )
            yield self._done_event(streamer, session)

        except AgentError as e:
            logger.error(f"Session {session_id} failed ({e.reason}): {e}")
            await self._abort(session, control, e.reason)
            message = sanitize_error_message(e.message)
            yield streamer.create_event(
                ChatEventType.ERROR,
                content=message,
                error=message,
                error_type=ErrorType.FATAL,
                metadata={"reason": e.reason},
            )
            yield self._done_event(streamer, session)

        except Exception as e:
            logger.exception(f"Session {session_id} crashed: {e}")
            await self._abort(session, control, INTERNAL_ERROR_REASON)
            message = "An internal error occurred"
            yield streamer.create_event(
                ChatEventType.ERROR,
                content=message,
                error=message,
                error_type=ErrorType.FATAL,
                metadata={"reason": INTERNAL_ERROR_REASON},
            )
            yield self._done_event(streamer, session)

        finally:
            # Task cancellation or an abandoned stream
            if not session.is_terminal:
                await self._abort(session, control, SessionCancelledError.reason)
            self._active.pop(session_id, None)

    # ============================================
    # Iteration
    # ============================================

    async def _iterate(
        self, session: Session, control: _RunControl, streamer: EventStreamer
    ) -> AsyncIterator[ChatEvent]:
        can_delegate = self.subagents is not None and session.is_root

        while True:
            self._check_cancelled(control)

            # 1. Compaction
            threshold = self.config.compaction_threshold_tokens
            if session.estimated_tokens(self.compactor.chars_per_token) > threshold:
                event = await self._compact(session, control, streamer)
                if event is not None:
                    yield event

            # 2. Turn cap
            if session.turn_count >= session.max_turns:
                raise TurnCapExceededError(session.max_turns)
            session.turn_count += 1
            self._check_budget(session, control)

            # 3. Provider call
            tools = self.tools.resolve_tools(
                session.tool_scope,
                exclude=None if can_delegate else {SPAWN_SUBAGENT_TOOL},
            )
            system_prompt = self.prompt_builder.build(
                self.config.system_prompt, session, can_delegate=can_delegate
            )

            text_parts: list[str] = []
            structured: list[ChatEvent] = []
            control.state = LoopState.REQUESTING_PROVIDER
            stream = self.providers.chat(
                session,
                list(session.turns),
                tools=tools or None,
                system_prompt=system_prompt,
                temperature=self.config.temperature,
                max_tokens=self.config.max_response_tokens,
            )
            try:
                while True:
                    event = await self._guard(control, self._next_event(stream))
                    if event is None:
                        break
                    control.state = LoopState.EMITTING
                    if event.type == ChatEventType.TEXT_DELTA and event.content:
                        text_parts.append(event.content)
                    elif event.type == ChatEventType.TOOL_CALL_END:
                        structured.append(event)
                    yield streamer.restamp(event)
            finally:
                await stream.aclose()

            self._check_budget(session, control)

            # 4-6. Tool calls
            text = "".join(text_parts)
            records, answer = self._extract_calls(text, structured)

            if not records:
                # 7. Final answer
                await self._append_turn(session, Turn.assistant(answer))
                session.mark_done()
                control.state = LoopState.COMPLETED
                await self._save(session)
                logger.info(
                    f"Session {session.session_id} completed in {session.turn_count} turns"
                )
                yield self._done_event(streamer, session, answer=answer)
                return

            await self._append_turn(session, Turn.assistant(text, records))

            async for event in self._process_tool_calls(session, control, streamer, records):
                yield event

    def _extract_calls(
        self, text: str, structured: list[ChatEvent]
    ) -> tuple[list[ToolCallRecord], str]:
        """Tool calls from structured events, else from a JSON step in the text.

        Returns:
            (tool call records, final answer text when there are none)
        """
        if structured:
            records = []
            for event in structured:
                record = ToolCallRecord(
                    tool_name=event.tool_name or "",
                    input_params=event.tool_arguments or {},
                    thought=text.strip() or None,
                )
                if event.tool_call_id:
                    # Providers pair results with calls by their own id
                    record.id = event.tool_call_id
                records.append(record)
            return records, text

        step = parse_step(text)
        if step is None:
            return [], text
        if step.is_tool_call:
            record = ToolCallRecord(
                tool_name=step.tool or "",
                input_params=step.params,
                thought=step.thought or None,
            )
            return [record], text
        return [], step.answer if step.answer is not None else text

    async def _process_tool_calls(
        self,
        session: Session,
        control: _RunControl,
        streamer: EventStreamer,
        records: list[ToolCallRecord],
    ) -> AsyncIterator[ChatEvent]:
        """Validate, gate, run and record every call of one response."""
        control.state = LoopState.TOOL_REQUESTED
        limit = self.config.max_tool_calls_per_turn

        for index, record in enumerate(records):
            if index >= limit:
                record.mark_failed(
                    f"Too many tool calls in one response (max {limit}); call skipped"
                )
                continue
            self._prepare_call(session, record)

        # Request every approval up front so all notifications go out together
        pending: dict[str, PendingApproval] = {}
        for record in records:
            if record.is_resolved:
                continue
            if not self.config.approval_policy.requires_approval(record.side_effect_class):
                continue
            approval = await self._guard(
                control,
                self.approvals.request(session.session_id, record, thought=record.thought),
            )
            pending[record.id] = approval
            yield streamer.create_event(
                ChatEventType.APPROVAL_REQUIRED,
                tool_call_id=record.id,
                tool_name=record.tool_name,
                tool_arguments=record.input_params,
                approval_id=approval.approval_id,
                metadata={
                    "side_effect_class": record.side_effect_class.value,
                    "params_summary": approval.params_summary,
                    "expires_at": approval.expires_at.isoformat(),
                },
            )

        for record in records:
            if not record.is_resolved:
                approval = pending.get(record.id)
                if approval is not None:
                    session.status = SessionStatus.AWAITING_APPROVAL
                    control.state = LoopState.AWAITING_APPROVAL
                    await self._save(session)

                    resolution = await self._guard(
                        control, self.approvals.wait_for_resolution(approval.approval_id)
                    )

                    session.status = SessionStatus.ACTIVE
                    await self._save(session)
                    yield streamer.create_event(
                        ChatEventType.APPROVAL_RESOLVED,
                        tool_call_id=record.id,
                        tool_name=record.tool_name,
                        approval_id=approval.approval_id,
                        metadata=resolution.to_dict(),
                    )
                    if resolution.approved:
                        record.mark_approved()
                    else:
                        record.mark_denied(
                            f"approval {resolution.decision.value} "
                            f"(decided by {resolution.decided_by})"
                        )

            if not record.is_resolved:
                if record.tool_name == SPAWN_SUBAGENT_TOOL:
                    async for event in self._delegate(session, control, streamer, record):
                        yield event
                else:
                    control.state = LoopState.TOOL_EXECUTING
                    await self._guard(control, self.executor.execute(record))

            turn = Turn.tool_result(record)
            await self._append_turn(session, turn)
            yield streamer.create_event(
                ChatEventType.TOOL_RESULT,
                content=turn.content,
                tool_call_id=record.id,
                tool_name=record.tool_name,
                metadata={
                    "status": record.result_status.value,
                    "is_error": turn.is_error,
                },
            )

    def _prepare_call(self, session: Session, record: ToolCallRecord) -> None:
        """Resolve side-effect class and validate input; failures mark the record.

        Raises:
            DelegationDepthExceededError: A sub-agent tried to delegate
        """
        name = record.tool_name

        if name == SPAWN_SUBAGENT_TOOL:
            if not session.is_root:
                raise DelegationDepthExceededError(session.delegation_depth)
            if self.subagents is None:
                record.mark_failed(f"Unknown tool: '{name}'")
                return

        if name not in self.tools:
            record.mark_failed(f"Unknown tool: '{name}'")
            return

        if not is_tool_allowed(name, session.tool_scope):
            record.mark_failed(f"Tool '{name}' is not allowed in this session")
            return

        # Registry classification is authoritative
        record.side_effect_class = self.tools.side_effect_of(name)

        try:
            record.input_params = self.tools.validate(name, record.input_params)
        except ToolValidationError as e:
            logger.warning(f"Rejected call to '{name}': {e.message}")
            record.mark_failed(sanitize_error_message(e.message))

    async def _delegate(
        self,
        session: Session,
        control: _RunControl,
        streamer: EventStreamer,
        record: ToolCallRecord,
    ) -> AsyncIterator[ChatEvent]:
        """Run a spawn_subagent call to completion."""
        control.state = LoopState.AWAITING_DELEGATION
        params = record.input_params

        task = await self.subagents.delegate(
            session,
            description=params["task"],
            max_turns=params.get("max_turns"),
            tools=params.get("tools"),
        )
        yield streamer.create_event(
            ChatEventType.SUBAGENT_STARTED,
            tool_call_id=record.id,
            tool_name=record.tool_name,
            metadata={
                "task_id": task.task_id,
                "child_session_id": task.child_session_id,
                "description": task.description,
            },
        )

        task = await self._guard(control, self.subagents.wait(task.task_id))
        payload = task.to_payload()
        if task.status == SubAgentStatus.COMPLETED:
            record.mark_executed(payload)
        else:
            record.mark_failed(json.dumps(payload))

        yield streamer.create_event(
            ChatEventType.SUBAGENT_FINISHED,
            tool_call_id=record.id,
            tool_name=record.tool_name,
            metadata=payload,
        )

    async def _compact(
        self, session: Session, control: _RunControl, streamer: EventStreamer
    ) -> Optional[ChatEvent]:
        session.status = SessionStatus.COMPACTING
        try:
            result = await self._guard(control, self.compactor.compact(session))
        finally:
            if session.status == SessionStatus.COMPACTING:
                session.status = SessionStatus.ACTIVE

        if not result.turns_compacted:
            return None

        if self.store is not None:
            await self.store.replace_turns(session.session_id, list(session.turns))
        await self._save(session)
        return streamer.create_event(
            ChatEventType.COMPACTED,
            content=f"Compacted {result.turns_compacted} turns",
            metadata=result.to_dict(),
        )

    # ============================================
    # Helpers
    # ============================================

    @staticmethod
    def _render_inbound(inbound: InboundMessage) -> str:
        if not inbound.attachments:
            return inbound.text
        names = [
            str(a.get("name") or a.get("filename") or a.get("type") or "file")
            for a in inbound.attachments
        ]
        return f"{inbound.text}\n\nAttachments: {', '.join(names)}"

    @staticmethod
    async def _next_event(stream: AsyncIterator[ChatEvent]) -> Optional[ChatEvent]:
        try:
            return await stream.__anext__()
        except StopAsyncIteration:
            return None

    @staticmethod
    def _check_budget(session: Session, control: _RunControl) -> None:
        # Usage and cost stay cumulative on the session; the budget is per run
        used = session.token_usage.total - control.tokens_at_start
        if used > session.max_tokens:
            raise TokenBudgetExceededError(session.max_tokens, used)

    @staticmethod
    def _check_cancelled(control: _RunControl) -> None:
        if control.cancel_event.is_set():
            raise SessionCancelledError(control.session_id)

    async def _guard(self, control: _RunControl, awaitable: Awaitable[T]) -> T:
        """Await work unless the run is cancelled first.

        Raises:
            SessionCancelledError: Cancellation won the race
        """
        work = asyncio.ensure_future(awaitable)
        if control.cancel_event.is_set():
            work.cancel()
            await asyncio.wait({work})
            raise SessionCancelledError(control.session_id)

        cancelled = asyncio.ensure_future(control.cancel_event.wait())
        try:
            done, _ = await asyncio.wait(
                {work, cancelled}, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            cancelled.cancel()
            work.cancel()
            # The stream must be idle before the caller closes it
            await asyncio.wait({work})
            raise

        if work in done:
            cancelled.cancel()
            return work.result()

        work.cancel()
        await asyncio.wait({work})
        raise SessionCancelledError(control.session_id)

    async def _append_turn(self, session: Session, turn: Turn) -> None:
        session.append_turn(turn)
        if self.store is not None:
            await self.store.append_turn(session.session_id, turn)

    async def _save(self, session: Session) -> None:
        if self.store is not None:
            await self.store.save_session(session)

    async def _abort(self, session: Session, control: _RunControl, reason: str) -> None:
        """Fail the session and release what the run holds."""
        control.state = LoopState.FAILED
        if not session.is_terminal:
            session.mark_failed(reason)

        try:
            await self.approvals.cancel_session(session.session_id)
            if self.subagents is not None:
                await self.subagents.cancel_for_parent(session.session_id)
            await self._save(session)
        except Exception as e:
            logger.error(f"Cleanup failed for session {session.session_id}: {e}")

    def _done_event(
        self, streamer: EventStreamer, session: Session, answer: Optional[str] = None
    ) -> ChatEvent:
        metadata: dict[str, Any] = {
            "status": session.status.value,
            "reason": session.failure_reason,
            "usage": session.token_usage.to_dict(),
            "cost_usd": round(session.cost_accumulated_usd, 6),
            "turns": session.turn_count,
        }
        if answer is not None:
            metadata["answer"] = answer
        return streamer.create_event(ChatEventType.DONE, metadata=metadata)

