"""
Sub-Agent Orchestrator.

Runs delegated sub-tasks in child sessions:
- Delegation depth is capped at one hop (sub-agents cannot delegate)
- At most `capacity` children run at once (default 2); the rest wait FIFO
- Cancelling a task releases its slot immediately
- Only the most recent finished tasks are kept for lookup
- The parent receives a terminal payload {status, summary, turns, usage}
"""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from datetime import datetime
from typing import TYPE_CHECKING, Any, Callable, Optional

from ..domain.entities import (
    ChatEventType,
    InboundMessage,
    Session,
    SideEffectClass,
    SubAgentStatus,
    SubAgentTask,
    TokenUsage,
)
from ..domain.ports import ISessionStore
from ..exceptions import (
    ConfigurationError,
    DelegationDepthExceededError,
    ToolExecutionError,
)
from ..security.error_sanitizer import sanitize_error_message
from ..tools.policy import ToolPolicy
from ..tools.registry import ToolRegistry

if TYPE_CHECKING:
    from .agent import AgentLoop

logger = logging.getLogger(__name__)

SPAWN_SUBAGENT_TOOL = "spawn_subagent"
MAX_DELEGATION_DEPTH = 1

SPAWN_SUBAGENT_SCHEMA = {
    "type": "object",
    "properties": {
        "task": {
            "type": "string",
            "description": "Self-contained description of the sub-task",
        },
        "tools": {
            "type": "array",
            "items": {"type": "string"},
            "description": "Tool names the sub-agent may use (defaults to the parent's scope)",
        },
        "max_turns": {
            "type": "integer",
            "description": "Turn cap for the sub-agent",
        },
    },
    "required": ["task"],
}


# ============================================
# Concurrency Pool
# ============================================


class ConcurrencyPool:
    """Fixed number of slots with a FIFO queue of waiters.

    Usage:
        pool = ConcurrencyPool(capacity=2)

        await pool.acquire(task_id)  # waits in FIFO order when full
        try:
            ...
        finally:
            await pool.release(task_id)
    """

    def __init__(self, capacity: int = 2):
        if capacity < 1:
            raise ConfigurationError(f"Pool capacity must be at least 1, got {capacity}")
        self.capacity = capacity
        self._holders: set[str] = set()
        self._waiters: OrderedDict[str, asyncio.Future] = OrderedDict()
        self._lock = asyncio.Lock()

    @property
    def in_use(self) -> int:
        return len(self._holders)

    @property
    def queued(self) -> int:
        return len(self._waiters)

    def holds(self, task_id: str) -> bool:
        return task_id in self._holders

    def queue_position(self, task_id: str) -> Optional[int]:
        """Zero-based position in the wait queue, or None if not queued."""
        for index, waiting_id in enumerate(self._waiters):
            if waiting_id == task_id:
                return index
        return None

    async def acquire(self, task_id: str) -> None:
        """Take a slot, waiting behind earlier callers when the pool is full."""
        async with self._lock:
            if task_id in self._holders:
                return
            if len(self._holders) < self.capacity and not self._waiters:
                self._holders.add(task_id)
                return
            waiter = asyncio.get_running_loop().create_future()
            self._waiters[task_id] = waiter

        logger.debug(f"Task {task_id} queued for a slot ({self.queued} waiting)")
        try:
            await waiter
        except asyncio.CancelledError:
            async with self._lock:
                if self._waiters.pop(task_id, None) is None and task_id in self._holders:
                    # Granted and cancelled in the same step
                    self._release_locked(task_id)
            raise

    async def release(self, task_id: str) -> bool:
        """Free a slot and hand it to the oldest waiter. Idempotent."""
        async with self._lock:
            return self._release_locked(task_id)

    def _release_locked(self, task_id: str) -> bool:
        if task_id not in self._holders:
            return False
        self._holders.discard(task_id)
        while self._waiters and len(self._holders) < self.capacity:
            next_id, waiter = self._waiters.popitem(last=False)
            if waiter.done():
                continue
            self._holders.add(next_id)
            waiter.set_result(None)
        return True

    def cancel_waiter(self, task_id: str) -> bool:
        """Remove a queued task. Its pending acquire() raises CancelledError."""
        waiter = self._waiters.pop(task_id, None)
        if waiter is None:
            return False
        if not waiter.done():
            waiter.cancel()
        return True


# ============================================
# Orchestrator
# ============================================


class SubAgentOrchestrator:
    """Delegates sub-tasks to child sessions run by the agent loop.

    Usage:
        subagents = SubAgentOrchestrator(ConcurrencyPool(2), loop_factory=lambda: agent_loop)
        subagents.register_tool(tool_registry)

        task = await subagents.delegate(parent, "Find every TODO in src/")
        task = await subagents.wait(task.task_id)
        payload = task.to_payload()  # {status, summary, turns, usage}

    Guarantees:
        - Delegation from a sub-agent is rejected before any task is created
        - No more than pool.capacity children run concurrently
        - Parent cancellation cancels all of its children
    """

    def __init__(
        self,
        pool: Optional[ConcurrencyPool] = None,
        loop_factory: Optional[Callable[[], AgentLoop]] = None,
        store: Optional[ISessionStore] = None,
        default_max_turns: int = 15,
        default_max_tokens: int = 50_000,
        max_finished_tasks: int = 1000,
    ):
        """Initialize the orchestrator.

        Args:
            pool: Concurrency pool (default: 2 slots)
            loop_factory: Returns the AgentLoop that runs child sessions
            store: Optional store for child sessions
            default_max_turns: Child turn cap (also the upper bound for requests)
            default_max_tokens: Child token budget
            max_finished_tasks: Finished tasks kept for lookup; older ones are forgotten
        """
        self.pool = pool or ConcurrencyPool()
        self.loop_factory = loop_factory
        self.store = store
        self.default_max_turns = default_max_turns
        self.default_max_tokens = default_max_tokens
        self.max_finished_tasks = max_finished_tasks

        self._tasks: dict[str, SubAgentTask] = {}
        self._sessions: dict[str, Session] = {}
        self._runners: dict[str, asyncio.Task] = {}
        self._finished: dict[str, asyncio.Event] = {}

    def register_tool(self, registry: ToolRegistry) -> None:
        """Register the delegate tool. The agent loop intercepts its calls."""

        async def _handled_by_loop(**_: Any) -> None:
            raise ToolExecutionError(
                f"{SPAWN_SUBAGENT_TOOL} can only be called from an agent session",
                tool_name=SPAWN_SUBAGENT_TOOL,
            )

        registry.register(
            name=SPAWN_SUBAGENT_TOOL,
            description=(
                "Delegate a self-contained sub-task to a focused sub-agent with its own "
                "turn and token budget. Returns the sub-agent's summary."
            ),
            input_schema=SPAWN_SUBAGENT_SCHEMA,
            side_effect_class=SideEffectClass.MUTATING,
            handler=_handled_by_loop,
        )

    async def delegate(
        self,
        parent: Session,
        description: str,
        max_turns: Optional[int] = None,
        max_tokens: Optional[int] = None,
        tools: Optional[list[str]] = None,
    ) -> SubAgentTask:
        """Create a child session and schedule it.

        Args:
            parent: Delegating session
            description: Task for the child
            max_turns: Requested turn cap (bounded by default_max_turns)
            max_tokens: Requested token budget (bounded by default_max_tokens)
            tools: Tool names the child may use (defaults to the parent's scope)

        Returns:
            The QUEUED task

        Raises:
            DelegationDepthExceededError: If the parent is itself a sub-agent
        """
        if parent.delegation_depth >= MAX_DELEGATION_DEPTH:
            logger.warning(
                f"Rejected delegation from session {parent.session_id} "
                f"at depth {parent.delegation_depth}"
            )
            raise DelegationDepthExceededError(
                parent.delegation_depth, max_depth=MAX_DELEGATION_DEPTH
            )
        if self.loop_factory is None:
            raise ConfigurationError("SubAgentOrchestrator has no loop_factory")

        turns = min(max_turns or self.default_max_turns, self.default_max_turns)
        tokens = min(max_tokens or self.default_max_tokens, self.default_max_tokens)

        child = Session(
            delegation_depth=parent.delegation_depth + 1,
            parent_session_id=parent.session_id,
            max_turns=max(1, turns),
            max_tokens=max(1, tokens),
            tool_scope=ToolPolicy.scoped(tools) if tools else parent.tool_scope,
            metadata={"task": description},
        )
        task = SubAgentTask(
            parent_session_id=parent.session_id,
            child_session_id=child.session_id,
            description=description,
            max_turns=child.max_turns,
            max_tokens=child.max_tokens,
        )
        child.metadata["task_id"] = task.task_id

        if self.store is not None:
            await self.store.save_session(child)

        self._tasks[task.task_id] = task
        self._sessions[task.task_id] = child
        self._finished[task.task_id] = asyncio.Event()
        self._runners[task.task_id] = asyncio.create_task(self._run(task, child))

        logger.info(
            f"Delegated task {task.task_id} from session {parent.session_id} "
            f"to child {child.session_id} (max_turns={child.max_turns})"
        )
        return task

    async def _run(self, task: SubAgentTask, child: Session) -> None:
        """Wait for a slot, run the child loop, record the outcome."""
        try:
            await self.pool.acquire(task.task_id)
            task.holds_slot = True
            task.status = SubAgentStatus.RUNNING
            task.started_at = datetime.utcnow()
            logger.info(f"Sub-agent task {task.task_id} started")

            answer: Optional[str] = None
            loop = self.loop_factory()
            inbound = InboundMessage(session_id=child.session_id, text=task.description)
            async for event in loop.run(child, inbound):
                if event.type == ChatEventType.DONE and event.metadata:
                    answer = event.metadata.get("answer")

            if child.failure_reason is None and answer is not None:
                self._finish(task, SubAgentStatus.COMPLETED, result=answer)
            else:
                self._finish(
                    task,
                    SubAgentStatus.FAILED,
                    error=child.failure_reason or "Sub-agent ended without an answer",
                )
        except asyncio.CancelledError:
            self._finish(task, SubAgentStatus.CANCELLED, error="Cancelled")
            raise
        except Exception as e:
            logger.exception(f"Sub-agent task {task.task_id} crashed: {e}")
            self._finish(
                task, SubAgentStatus.FAILED, error=sanitize_error_message(str(e))
            )
        finally:
            await self.pool.release(task.task_id)
            self._settle(task, child)

    def _settle(self, task: SubAgentTask, child: Session) -> None:
        """Record final counters and wake waiters. Safe to call more than once."""
        task.holds_slot = False
        task.turns = child.turn_count
        task.usage = TokenUsage(
            input_tokens=child.token_usage.input_tokens,
            output_tokens=child.token_usage.output_tokens,
        )
        self._runners.pop(task.task_id, None)

        finished = self._finished.get(task.task_id)
        if finished is not None and not finished.is_set():
            finished.set()
            self._prune_finished()

    def _prune_finished(self) -> None:
        """Forget the oldest finished tasks beyond max_finished_tasks."""
        done = [
            task_id for task_id, event in self._finished.items()
            if event.is_set()
        ]
        excess = len(done) - self.max_finished_tasks
        for task_id in done[:max(excess, 0)]:
            self._tasks.pop(task_id, None)
            self._sessions.pop(task_id, None)
            self._finished.pop(task_id, None)
        if excess > 0:
            logger.debug(f"Pruned {excess} finished sub-agent tasks")

    def _finish(
        self,
        task: SubAgentTask,
        status: SubAgentStatus,
        result: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        """Move a task to a terminal status once."""
        if task.is_terminal:
            return
        task.status = status
        task.result = result
        task.error = error
        task.finished_at = datetime.utcnow()
        log = logger.info if status == SubAgentStatus.COMPLETED else logger.warning
        log(f"Sub-agent task {task.task_id} {status.value}")

    async def wait(self, task_id: str, timeout: Optional[float] = None) -> SubAgentTask:
        """Wait until a task reaches a terminal status.

        Raises:
            KeyError: Unknown or already pruned task id
            asyncio.TimeoutError: If timeout elapses first
        """
        task = self._tasks[task_id]
        finished = self._finished[task_id]
        if timeout is None:
            await finished.wait()
        else:
            await asyncio.wait_for(finished.wait(), timeout=timeout)
        return task

    async def cancel(self, task_id: str) -> bool:
        """Cancel a queued or running task and free its slot at once.

        Returns:
            True if the task was still active
        """
        task = self._tasks.get(task_id)
        if task is None or task.is_terminal:
            return False

        self._finish(task, SubAgentStatus.CANCELLED, error="Cancelled")
        self.pool.cancel_waiter(task_id)

        runner = self._runners.get(task_id)
        if runner is not None and not runner.done():
            runner.cancel()

        child = self._sessions[task_id]
        if not child.is_terminal:
            child.mark_failed("Cancelled")

        # A runner cancelled before its first step never reaches its finally block
        await self.pool.release(task_id)
        self._settle(task, child)
        return True

    async def cancel_for_parent(self, parent_session_id: str) -> int:
        """Cancel every active task of a parent session."""
        active = [
            t.task_id for t in self._tasks.values()
            if t.parent_session_id == parent_session_id and not t.is_terminal
        ]
        cancelled = 0
        for task_id in active:
            if await self.cancel(task_id):
                cancelled += 1
        if cancelled:
            logger.info(f"Cancelled {cancelled} sub-agents of session {parent_session_id}")
        return cancelled

    def get(self, task_id: str) -> Optional[SubAgentTask]:
        return self._tasks.get(task_id)

    def get_session(self, task_id: str) -> Optional[Session]:
        """Child session of a task."""
        return self._sessions.get(task_id)

    def list_tasks(self, parent_session_id: Optional[str] = None) -> list[SubAgentTask]:
        """Tasks in creation order, optionally for one parent."""
        return [
            t for t in self._tasks.values()
            if parent_session_id is None or t.parent_session_id == parent_session_id
        ]

    def get_metrics(self) -> dict[str, Any]:
        counts = {status.value: 0 for status in SubAgentStatus}
        for task in self._tasks.values():
            counts[task.status.value] += 1
        return {
            "capacity": self.pool.capacity,
            "in_use": self.pool.in_use,
            "queued": self.pool.queued,
            "total": len(self._tasks),
            "by_status": counts,
        }

    async def shutdown(self) -> None:
        """Cancel all active tasks and wait for their runners to exit."""
        runners = list(self._runners.values())
        for task_id in [t.task_id for t in self._tasks.values() if not t.is_terminal]:
            await self.cancel(task_id)
        if runners:
            await asyncio.gather(*runners, return_exceptions=True)
