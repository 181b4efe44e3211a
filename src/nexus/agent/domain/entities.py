"""
Domain entities for the agent execution core.

These are pure domain objects with no infrastructure dependencies.
They define the core data structures used throughout the agent module.
"""

from __future__ import annotations

import json
import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Optional

if TYPE_CHECKING:
    from ..tools.policy import ToolPolicy


def _new_id() -> str:
    return str(uuid.uuid4())


# ============================================
# Tool System
# ============================================


class SideEffectClass(str, Enum):
    """Declared risk tier of a tool. Decides whether approval gating applies."""

    READ_ONLY = "read_only"
    MUTATING = "mutating"
    DESTRUCTIVE = "destructive"


class ToolResultStatus(str, Enum):
    """Lifecycle of a single requested tool call."""

    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"
    EXECUTED = "executed"
    FAILED = "failed"


@dataclass
class ToolDefinition:
    """Descriptor of an available tool.

    Attributes:
        name: Tool name (e.g., 'read_file')
        description: Human-readable description
        parameters: JSON Schema for parameters
        side_effect_class: Risk tier, authoritative for approval gating
        timeout_seconds: Maximum execution time
    """

    name: str
    description: str
    parameters: dict[str, Any]
    side_effect_class: SideEffectClass = SideEffectClass.READ_ONLY
    timeout_seconds: float = 30.0

    @property
    def is_read_only(self) -> bool:
        return self.side_effect_class == SideEffectClass.READ_ONLY

    def to_openai_format(self) -> dict[str, Any]:
        """Convert to OpenAI function calling format."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }

    def to_anthropic_format(self) -> dict[str, Any]:
        """Convert to Anthropic tool use format."""
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.parameters,
        }

    def to_prompt_line(self) -> str:
        """Render the tool for adapters that read tools from the system prompt."""
        lines = [
            f"- **{self.name}** [{self.side_effect_class.value}]: {self.description}"
        ]
        properties = self.parameters.get("properties", {})
        required = set(self.parameters.get("required", []))
        if properties:
            lines.append("  Parameters:")
        for param, schema in properties.items():
            kind = "required" if param in required else "optional"
            line = (
                f"    - {param} ({schema.get('type', 'any')}, {kind}): "
                f"{schema.get('description', '')}"
            ).rstrip()
            if "enum" in schema:
                line += f" [values: {', '.join(str(v) for v in schema['enum'])}]"
            if "default" in schema:
                line += f" [default: {schema['default']}]"
            lines.append(line)
        return "\n".join(lines)


@dataclass
class ToolCallRecord:
    """A tool call requested by the reasoning step.

    Attributes:
        tool_name: Tool being called
        input_params: Arguments, validated against the registry entry
        side_effect_class: Copied from the registry at lookup time
        id: Unique tool call identifier (for correlation with results)
        result_status: Pending until approved, denied, executed or failed
        output: Tool output once executed
        error: Error or refusal message
        thought: Reasoning text attached to the call, if any
        executed_at: When the call reached a terminal status
    """

    tool_name: str
    input_params: dict[str, Any]
    side_effect_class: SideEffectClass = SideEffectClass.READ_ONLY
    id: str = field(default_factory=_new_id)
    result_status: ToolResultStatus = ToolResultStatus.PENDING
    output: Optional[Any] = None
    error: Optional[str] = None
    thought: Optional[str] = None
    executed_at: Optional[datetime] = None

    @property
    def is_resolved(self) -> bool:
        return self.result_status in (
            ToolResultStatus.EXECUTED,
            ToolResultStatus.FAILED,
            ToolResultStatus.DENIED,
        )

    @property
    def succeeded(self) -> bool:
        return self.result_status == ToolResultStatus.EXECUTED

    def mark_approved(self) -> None:
        self.result_status = ToolResultStatus.APPROVED

    def mark_executed(self, output: Any) -> None:
        self.result_status = ToolResultStatus.EXECUTED
        self.output = output
        self.executed_at = datetime.utcnow()

    def mark_failed(self, error: str) -> None:
        self.result_status = ToolResultStatus.FAILED
        self.error = error
        self.executed_at = datetime.utcnow()

    def mark_denied(self, reason: str) -> None:
        self.result_status = ToolResultStatus.DENIED
        self.error = reason
        self.executed_at = datetime.utcnow()

    def result_text(self) -> str:
        """Render the outcome as the content of a tool_result turn."""
        if self.result_status == ToolResultStatus.EXECUTED:
            if isinstance(self.output, str):
                return self.output
            return json.dumps(self.output, default=str)
        if self.result_status == ToolResultStatus.DENIED:
            return f"Denied: {self.error or 'tool execution was not approved'}"
        return f"Error: {self.error or 'tool execution failed'}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "tool_name": self.tool_name,
            "input_params": self.input_params,
            "side_effect_class": self.side_effect_class.value,
            "result_status": self.result_status.value,
            "output": self.output,
            "error": self.error,
            "thought": self.thought,
            "executed_at": self.executed_at.isoformat() if self.executed_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ToolCallRecord:
        executed_at = data.get("executed_at")
        return cls(
            id=data.get("id") or _new_id(),
            tool_name=data.get("tool_name", ""),
            input_params=data.get("input_params") or {},
            side_effect_class=SideEffectClass(
                data.get("side_effect_class", SideEffectClass.READ_ONLY.value)
            ),
            result_status=ToolResultStatus(
                data.get("result_status", ToolResultStatus.PENDING.value)
            ),
            output=data.get("output"),
            error=data.get("error"),
            thought=data.get("thought"),
            executed_at=datetime.fromisoformat(executed_at) if executed_at else None,
        )


# ============================================
# Turns
# ============================================


class TurnRole(str, Enum):
    """Role of a turn in a session."""

    USER = "user"
    ASSISTANT = "assistant"
    TOOL_RESULT = "tool_result"
    SYSTEM = "system"  # Compaction summaries


@dataclass(frozen=True)
class Turn:
    """One role-tagged message in a session. Never modified once appended.

    Attributes:
        role: Turn role
        content: Message text
        tool_calls: Tool calls requested in an assistant turn
        tool_call_id: The call a tool_result turn answers
        is_error: True for failed or refused tool results
        id: Unique turn identifier
        created_at: Creation timestamp
    """

    role: TurnRole
    content: str
    tool_calls: Optional[tuple[ToolCallRecord, ...]] = None
    tool_call_id: Optional[str] = None
    is_error: bool = False
    id: str = field(default_factory=_new_id)
    created_at: datetime = field(default_factory=datetime.utcnow)

    @classmethod
    def user(cls, content: str) -> Turn:
        return cls(role=TurnRole.USER, content=content)

    @classmethod
    def assistant(
        cls, content: str, tool_calls: Optional[list[ToolCallRecord]] = None
    ) -> Turn:
        return cls(
            role=TurnRole.ASSISTANT,
            content=content,
            tool_calls=tuple(tool_calls) if tool_calls else None,
        )

    @classmethod
    def tool_result(cls, record: ToolCallRecord) -> Turn:
        return cls(
            role=TurnRole.TOOL_RESULT,
            content=record.result_text(),
            tool_call_id=record.id,
            is_error=not record.succeeded,
        )

    def char_count(self) -> int:
        """Characters that count toward the session's token footprint."""
        total = len(self.content)
        for tc in self.tool_calls or ():
            total += len(tc.tool_name) + len(json.dumps(tc.input_params, default=str))
        return total

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role.value,
            "content": self.content,
            "tool_calls": [tc.to_dict() for tc in self.tool_calls]
            if self.tool_calls
            else None,
            "tool_call_id": self.tool_call_id,
            "is_error": self.is_error,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Turn:
        tool_calls = data.get("tool_calls")
        created_at = data.get("created_at")
        return cls(
            id=data.get("id") or _new_id(),
            role=TurnRole(data["role"]),
            content=data.get("content", ""),
            tool_calls=tuple(ToolCallRecord.from_dict(tc) for tc in tool_calls)
            if tool_calls
            else None,
            tool_call_id=data.get("tool_call_id"),
            is_error=bool(data.get("is_error", False)),
            created_at=datetime.fromisoformat(created_at)
            if created_at
            else datetime.utcnow(),
        )


# ============================================
# Usage
# ============================================


@dataclass
class TokenUsage:
    """Cumulative token usage of a session."""

    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total(self) -> int:
        return self.input_tokens + self.output_tokens

    def to_dict(self) -> dict[str, int]:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "total_tokens": self.total,
        }


@dataclass
class ProviderUsage:
    """Usage of one provider call, normalized across adapters.

    Attributes:
        input_tokens: Prompt tokens billed
        output_tokens: Completion tokens billed
        cost_usd: Cost computed from the pricing table
        provider: Adapter that served the call
        model: Model that served the call
    """

    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0
    provider: Optional[str] = None
    model: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "cost_usd": round(self.cost_usd, 6),
            "provider": self.provider,
            "model": self.model,
        }


# ============================================
# Session
# ============================================


class SessionStatus(str, Enum):
    """Status of a session."""

    ACTIVE = "active"
    COMPACTING = "compacting"
    AWAITING_APPROVAL = "awaiting_approval"
    DONE = "done"
    FAILED = "failed"


@dataclass
class Session:
    """One logical conversation, mutated only by the loop that owns it.

    Attributes:
        session_id: Unique session identifier
        delegation_depth: Sub-agent hops from the root session (0 for roots)
        parent_session_id: Delegating session, for sub-agent sessions
        max_turns: Turn cap for one run
        max_tokens: Cumulative token budget
        turns: Ordered turn history
        token_usage: Cumulative input/output tokens
        status: Current status
        turn_count: Provider turns used in the current run
        cost_accumulated_usd: Cumulative provider cost
        pinned_facts: Snippets that must survive compaction verbatim (ordered, unique)
        tool_scope: Policy restricting which tools the session may use
        failure_reason: Typed reason when status is FAILED
        summary: Most recent compaction summary
        metadata: Additional metadata (e.g. originating channel)
        created_at: Creation timestamp
        last_active_at: Last activity timestamp (drives idle eviction)
    """

    session_id: str = field(default_factory=_new_id)
    delegation_depth: int = 0
    parent_session_id: Optional[str] = None
    max_turns: int = 30
    max_tokens: int = 200_000
    turns: list[Turn] = field(default_factory=list)
    token_usage: TokenUsage = field(default_factory=TokenUsage)
    status: SessionStatus = SessionStatus.ACTIVE
    turn_count: int = 0
    cost_accumulated_usd: float = 0.0
    pinned_facts: list[str] = field(default_factory=list)
    tool_scope: Optional[ToolPolicy] = None
    failure_reason: Optional[str] = None
    summary: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=datetime.utcnow)
    last_active_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in (SessionStatus.DONE, SessionStatus.FAILED)

    @property
    def is_root(self) -> bool:
        return self.delegation_depth == 0

    def touch(self) -> None:
        self.last_active_at = datetime.utcnow()

    def append_turn(self, turn: Turn) -> None:
        """Append a turn to the history."""
        self.turns.append(turn)
        self.touch()

    def add_usage(self, usage: ProviderUsage) -> None:
        """Attribute one provider call's usage to this session."""
        self.token_usage.input_tokens += usage.input_tokens
        self.token_usage.output_tokens += usage.output_tokens
        self.cost_accumulated_usd += usage.cost_usd

    def pin_fact(self, fact: str) -> bool:
        """Record a fact for verbatim survival. Returns False if already pinned."""
        fact = fact.strip()
        if not fact or fact in self.pinned_facts:
            return False
        self.pinned_facts.append(fact)
        return True

    def estimated_tokens(self, chars_per_token: int = 4) -> int:
        """Heuristic token footprint of the turn history."""
        chars = sum(turn.char_count() for turn in self.turns)
        return math.ceil(chars / chars_per_token)

    def reopen(self) -> None:
        """Start a new run on a session that previously finished."""
        self.status = SessionStatus.ACTIVE
        self.turn_count = 0
        self.failure_reason = None
        self.touch()

    def mark_done(self) -> None:
        self.status = SessionStatus.DONE
        self.touch()

    def mark_failed(self, reason: str) -> None:
        self.status = SessionStatus.FAILED
        self.failure_reason = reason
        self.touch()

    def to_dict(self, include_turns: bool = True) -> dict[str, Any]:
        result = {
            "session_id": self.session_id,
            "delegation_depth": self.delegation_depth,
            "parent_session_id": self.parent_session_id,
            "max_turns": self.max_turns,
            "max_tokens": self.max_tokens,
            "status": self.status.value,
            "turn_count": self.turn_count,
            "token_usage": self.token_usage.to_dict(),
            "cost_accumulated_usd": round(self.cost_accumulated_usd, 6),
            "pinned_facts": list(self.pinned_facts),
            "tool_scope": self.tool_scope.to_dict() if self.tool_scope else None,
            "failure_reason": self.failure_reason,
            "summary": self.summary,
            "metadata": self.metadata,
            "created_at": self.created_at.isoformat(),
            "last_active_at": self.last_active_at.isoformat(),
        }
        if include_turns:
            result["turns"] = [turn.to_dict() for turn in self.turns]
        return result

    @classmethod
    def from_dict(
        cls, data: dict[str, Any], turns: Optional[list[Turn]] = None
    ) -> Session:
        """Rebuild a session from to_dict() output.

        Args:
            data: Serialized session
            turns: Turn history loaded separately (defaults to data["turns"])
        """
        from ..tools.policy import ToolPolicy

        if turns is None:
            turns = [Turn.from_dict(t) for t in data.get("turns") or []]
        usage = data.get("token_usage") or {}

        def parse_time(key: str) -> datetime:
            value = data.get(key)
            return datetime.fromisoformat(value) if value else datetime.utcnow()

        return cls(
            session_id=data["session_id"],
            delegation_depth=int(data.get("delegation_depth", 0)),
            parent_session_id=data.get("parent_session_id"),
            max_turns=int(data.get("max_turns", 30)),
            max_tokens=int(data.get("max_tokens", 200_000)),
            turns=turns,
            token_usage=TokenUsage(
                input_tokens=int(usage.get("input_tokens", 0)),
                output_tokens=int(usage.get("output_tokens", 0)),
            ),
            status=SessionStatus(data.get("status", SessionStatus.ACTIVE.value)),
            turn_count=int(data.get("turn_count", 0)),
            cost_accumulated_usd=float(data.get("cost_accumulated_usd", 0.0)),
            pinned_facts=list(data.get("pinned_facts") or []),
            tool_scope=ToolPolicy.from_dict(data.get("tool_scope")),
            failure_reason=data.get("failure_reason"),
            summary=data.get("summary"),
            metadata=dict(data.get("metadata") or {}),
            created_at=parse_time("created_at"),
            last_active_at=parse_time("last_active_at"),
        )


@dataclass
class InboundMessage:
    """Normalized inbound message from any channel collaborator."""

    session_id: str
    text: str
    attachments: list[dict[str, Any]] = field(default_factory=list)


# ============================================
# Approvals
# ============================================


class ApprovalState(str, Enum):
    """Approval state machine: Requested -> Notified -> Approved/Denied/Expired."""

    REQUESTED = "requested"
    NOTIFIED = "notified"
    APPROVED = "approved"
    DENIED = "denied"
    EXPIRED = "expired"


class ApprovalDecision(str, Enum):
    """Final decision on an approval."""

    APPROVED = "approved"
    DENIED = "denied"
    EXPIRED = "expired"


@dataclass(frozen=True)
class ApprovalResolution:
    """Who decided what, when, and through which channel."""

    decision: ApprovalDecision
    decided_by: str
    decided_at: datetime = field(default_factory=datetime.utcnow)
    channel: Optional[str] = None

    @property
    def approved(self) -> bool:
        return self.decision == ApprovalDecision.APPROVED

    def to_dict(self) -> dict[str, Any]:
        return {
            "decision": self.decision.value,
            "decided_by": self.decided_by,
            "decided_at": self.decided_at.isoformat(),
            "channel": self.channel,
        }


def summarize_params(params: dict[str, Any], max_length: int = 200) -> str:
    """Compact one-line rendering of tool parameters for notifications and audit."""
    text = json.dumps(params, default=str, sort_keys=True)
    if len(text) > max_length:
        return text[: max_length - 3] + "..."
    return text


@dataclass
class PendingApproval:
    """An approval request for a gated tool call.

    Attributes:
        session_id: Session whose loop is suspended on this approval
        tool_call: The gated tool call
        expires_at: Deadline after which the request resolves as expired
        approval_id: Unique approval identifier
        state: Current state
        notified_channels: Channels that accepted the notification
        resolution: Decision, once resolved
        thought: Reasoning attached to the tool call
        requested_at: Creation timestamp
    """

    session_id: str
    tool_call: ToolCallRecord
    expires_at: datetime
    approval_id: str = field(default_factory=_new_id)
    state: ApprovalState = ApprovalState.REQUESTED
    notified_channels: list[str] = field(default_factory=list)
    resolution: Optional[ApprovalResolution] = None
    thought: Optional[str] = None
    requested_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def is_open(self) -> bool:
        return self.resolution is None

    @property
    def params_summary(self) -> str:
        return summarize_params(self.tool_call.input_params)

    def to_dict(self) -> dict[str, Any]:
        return {
            "approval_id": self.approval_id,
            "session_id": self.session_id,
            "tool_name": self.tool_call.tool_name,
            "tool_call_id": self.tool_call.id,
            "params_summary": self.params_summary,
            "state": self.state.value,
            "notified_channels": list(self.notified_channels),
            "resolution": self.resolution.to_dict() if self.resolution else None,
            "thought": self.thought,
            "requested_at": self.requested_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
        }


@dataclass(frozen=True)
class ApprovalNotification:
    """Payload sent to every approval channel."""

    approval_id: str
    session_id: str
    tool_name: str
    params_summary: str
    expires_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "approval_id": self.approval_id,
            "session_id": self.session_id,
            "tool_name": self.tool_name,
            "params_summary": self.params_summary,
            "expires_at": self.expires_at.isoformat(),
        }


@dataclass(frozen=True)
class AuditEntry:
    """Immutable audit record of one approval resolution."""

    approval_id: str
    session_id: str
    tool_name: str
    params_summary: str
    decided_by: str
    decision: ApprovalDecision
    decided_at: datetime
    channel: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "approval_id": self.approval_id,
            "session_id": self.session_id,
            "tool_name": self.tool_name,
            "params_summary": self.params_summary,
            "decided_by": self.decided_by,
            "decision": self.decision.value,
            "decided_at": self.decided_at.isoformat(),
            "channel": self.channel,
        }


# ============================================
# Sub-Agents
# ============================================


class SubAgentStatus(str, Enum):
    """Status of a delegated sub-agent task."""

    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass
class SubAgentTask:
    """A delegated sub-task running in its own child session.

    Attributes:
        parent_session_id: Delegating session
        child_session_id: Session the child loop owns
        description: Task description given to the child
        max_turns: Child turn cap
        max_tokens: Child token budget
        task_id: Unique task identifier
        status: Current status
        holds_slot: True while the task occupies a concurrency slot
        result: Child's final answer
        error: Failure or cancellation reason
        turns: Turns the child used
        usage: Child token usage
    """

    parent_session_id: str
    child_session_id: str
    description: str
    max_turns: int
    max_tokens: int
    task_id: str = field(default_factory=_new_id)
    status: SubAgentStatus = SubAgentStatus.QUEUED
    holds_slot: bool = False
    result: Optional[str] = None
    error: Optional[str] = None
    turns: int = 0
    usage: TokenUsage = field(default_factory=TokenUsage)
    created_at: datetime = field(default_factory=datetime.utcnow)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (
            SubAgentStatus.COMPLETED,
            SubAgentStatus.CANCELLED,
            SubAgentStatus.FAILED,
        )

    def to_payload(self) -> dict[str, Any]:
        """Terminal payload handed back to the parent loop as a tool result."""
        return {
            "task_id": self.task_id,
            "status": self.status.value,
            "summary": self.result if self.result is not None else (self.error or ""),
            "turns": self.turns,
            "usage": self.usage.to_dict(),
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "parent_session_id": self.parent_session_id,
            "child_session_id": self.child_session_id,
            "description": self.description,
            "max_turns": self.max_turns,
            "max_tokens": self.max_tokens,
            "status": self.status.value,
            "holds_slot": self.holds_slot,
            "result": self.result,
            "error": self.error,
            "turns": self.turns,
            "usage": self.usage.to_dict(),
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


# ============================================
# Providers
# ============================================


class ProviderAvailability(str, Enum):
    """Availability of a provider adapter, derived from recent call outcomes."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"  # Cooling down after a retryable failure
    UNAVAILABLE = "unavailable"  # Repeated failures, long cooldown


@dataclass
class ProviderConfig:
    """Runtime state of one adapter in the fallback chain.

    Attributes:
        name: Adapter name (e.g., 'anthropic')
        priority: Lower values are tried first
        availability: Current availability
        consecutive_failures: Retryable failures since the last success
        degraded_until: End of the current cooldown window
        last_error: Most recent failure message
        last_success_at: Most recent successful call
    """

    name: str
    priority: int = 0
    availability: ProviderAvailability = ProviderAvailability.HEALTHY
    consecutive_failures: int = 0
    degraded_until: Optional[datetime] = None
    last_error: Optional[str] = None
    last_success_at: Optional[datetime] = None

    def is_cooling_down(self, now: Optional[datetime] = None) -> bool:
        if self.degraded_until is None:
            return False
        return (now or datetime.utcnow()) < self.degraded_until

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "priority": self.priority,
            "availability": self.availability.value,
            "consecutive_failures": self.consecutive_failures,
            "degraded_until": self.degraded_until.isoformat()
            if self.degraded_until
            else None,
            "last_error": self.last_error,
            "last_success_at": self.last_success_at.isoformat()
            if self.last_success_at
            else None,
        }


# ============================================
# Streaming Events
# ============================================


class ChatEventType(str, Enum):
    """Types of streaming events."""

    TEXT_DELTA = "text_delta"  # Partial text token
    TOOL_CALL_START = "tool_call_start"  # Structured tool call begins
    TOOL_CALL_END = "tool_call_end"  # Structured tool call complete
    TOOL_RESULT = "tool_result"  # Tool outcome appended
    APPROVAL_REQUIRED = "approval_required"  # Gated call awaiting a decision
    APPROVAL_RESOLVED = "approval_resolved"  # Decision arrived or expired
    SUBAGENT_STARTED = "subagent_started"
    SUBAGENT_FINISHED = "subagent_finished"
    COMPACTED = "compacted"  # Older turns summarized
    USAGE = "usage"  # Token usage of one provider call
    ERROR = "error"  # Error occurred
    CANCEL = "cancel"  # Run cancelled
    DONE = "done"  # Terminal event


class ErrorType(str, Enum):
    """Types of errors in streaming."""

    RECOVERABLE = "recoverable"  # Network hiccup, retryable
    FATAL = "fatal"  # Auth or malformed request, must abort
    TIMEOUT = "timeout"  # Provider timeout
    RATE_LIMIT = "rate_limit"  # Rate limited, back off
    UNAVAILABLE = "unavailable"  # Provider overloaded or down


RETRYABLE_ERROR_TYPES = frozenset({
    ErrorType.RECOVERABLE,
    ErrorType.TIMEOUT,
    ErrorType.RATE_LIMIT,
    ErrorType.UNAVAILABLE,
})


@dataclass
class ChatEvent:
    """A streaming event, produced by adapters and by the agent loop.

    Attributes:
        type: Event type
        sequence: Sequence number for ordering
        content: Text content (TEXT_DELTA, TOOL_RESULT, ERROR)
        tool_call_id: Links TOOL_CALL_* and TOOL_RESULT events
        tool_name: Tool name (TOOL_CALL_START, APPROVAL_REQUIRED)
        tool_arguments: Tool arguments (TOOL_CALL_END)
        approval_id: Links APPROVAL_* events
        error: Error message (ERROR)
        error_type: Type of error
        usage: Normalized usage (USAGE)
        metadata: Additional event metadata
        session_id: Session the event belongs to
        event_id: Unique event ID for idempotency
    """

    type: ChatEventType
    sequence: int
    content: Optional[str] = None
    tool_call_id: Optional[str] = None
    tool_name: Optional[str] = None
    tool_arguments: Optional[dict[str, Any]] = None
    approval_id: Optional[str] = None
    error: Optional[str] = None
    error_type: Optional[ErrorType] = None
    usage: Optional[ProviderUsage] = None
    metadata: Optional[dict[str, Any]] = None
    session_id: Optional[str] = None
    event_id: str = field(default_factory=_new_id)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result: dict[str, Any] = {
            "type": self.type.value,
            "sequence": self.sequence,
            "event_id": self.event_id,
        }
        if self.session_id is not None:
            result["session_id"] = self.session_id
        if self.content is not None:
            result["content"] = self.content
        if self.tool_call_id is not None:
            result["tool_call_id"] = self.tool_call_id
        if self.tool_name is not None:
            result["tool_name"] = self.tool_name
        if self.tool_arguments is not None:
            result["tool_arguments"] = self.tool_arguments
        if self.approval_id is not None:
            result["approval_id"] = self.approval_id
        if self.error is not None:
            result["error"] = self.error
        if self.error_type is not None:
            result["error_type"] = self.error_type.value
        if self.usage is not None:
            result["usage"] = self.usage.to_dict()
        if self.metadata is not None:
            result["metadata"] = self.metadata
        return result

    @classmethod
    def text_delta(cls, text: str, sequence: int) -> ChatEvent:
        """Create a text delta event."""
        return cls(type=ChatEventType.TEXT_DELTA, sequence=sequence, content=text)

    @classmethod
    def error_event(
        cls, message: str, error_type: ErrorType, sequence: int
    ) -> ChatEvent:
        """Create an error event."""
        return cls(
            type=ChatEventType.ERROR,
            sequence=sequence,
            content=message,
            error=message,
            error_type=error_type,
        )

    @classmethod
    def done(cls, sequence: int, metadata: Optional[dict[str, Any]] = None) -> ChatEvent:
        """Create a done event."""
        return cls(type=ChatEventType.DONE, sequence=sequence, metadata=metadata)
