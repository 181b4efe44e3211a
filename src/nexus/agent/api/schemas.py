"""
Pydantic schemas for the Agent API.

Request and response models for the REST endpoints. Loop events are
returned in their ChatEvent.to_dict() form.
"""

from __future__ import annotations

from typing import Any, Literal, Optional

from pydantic import BaseModel, Field

# Maximum inbound message length
MAX_MESSAGE_LENGTH = 50000


# =============================================================================
# Message Schemas
# =============================================================================


class Attachment(BaseModel):
    """File or link attached to an inbound message."""

    name: str = Field(..., min_length=1, max_length=255)
    content_type: Optional[str] = Field(default=None, max_length=255)
    url: Optional[str] = Field(default=None, max_length=2048)


class SendMessageRequest(BaseModel):
    """Request to run the agent on a new message."""

    text: str = Field(..., min_length=1, max_length=MAX_MESSAGE_LENGTH)
    attachments: list[Attachment] = Field(default_factory=list, max_length=20)

    class Config:
        json_schema_extra = {
            "example": {
                "text": "Rotate the logs on web-01 and tell me how much space was freed",
                "attachments": [],
            }
        }


class EventListResponse(BaseModel):
    """Events produced by one run, in emission order."""

    session_id: str
    events: list[dict[str, Any]]
    status: str
    answer: Optional[str] = None


class CancelResponse(BaseModel):
    """Outcome of a cancel request."""

    session_id: str
    cancelled: bool


# =============================================================================
# Session Schemas
# =============================================================================


class TurnResponse(BaseModel):
    """One turn of session history."""

    id: str
    role: str
    content: str
    tool_calls: Optional[list[dict[str, Any]]] = None
    tool_call_id: Optional[str] = None
    is_error: bool = False
    created_at: str


class SessionResponse(BaseModel):
    """Session state and history."""

    session_id: str
    status: str
    delegation_depth: int
    parent_session_id: Optional[str] = None
    turn_count: int
    max_turns: int
    max_tokens: int
    token_usage: dict[str, int]
    cost_accumulated_usd: float
    pinned_facts: list[str]
    failure_reason: Optional[str] = None
    summary: Optional[str] = None
    busy: bool = False
    turns: list[TurnResponse] = Field(default_factory=list)
    created_at: str
    last_active_at: str


# =============================================================================
# Approval Schemas
# =============================================================================


class ApprovalDecisionRequest(BaseModel):
    """Decision on a pending approval."""

    decision: Literal["approve", "deny"]
    channel: Optional[str] = Field(default=None, max_length=100)

    class Config:
        json_schema_extra = {
            "example": {
                "decision": "approve",
            }
        }


class ApprovalResponse(BaseModel):
    """A pending or resolved approval."""

    approval_id: str
    session_id: str
    tool_name: str
    tool_call_id: str
    params_summary: str
    state: str
    notified_channels: list[str]
    resolution: Optional[dict[str, Any]] = None
    thought: Optional[str] = None
    requested_at: str
    expires_at: str


class ApprovalListResponse(BaseModel):
    """Open approvals."""

    approvals: list[ApprovalResponse]
    total: int


class AuditEntryResponse(BaseModel):
    """One resolved approval from the audit trail."""

    approval_id: str
    session_id: str
    tool_name: str
    params_summary: str
    decided_by: str
    decision: str
    decided_at: str
    channel: Optional[str] = None


class AuditListResponse(BaseModel):
    """Paginated audit trail, newest first."""

    entries: list[AuditEntryResponse]
    total: int
    limit: int
    offset: int


# =============================================================================
# Sub-Agent and Provider Schemas
# =============================================================================


class SubAgentTaskResponse(BaseModel):
    """A delegated sub-agent task."""

    task_id: str
    parent_session_id: str
    child_session_id: str
    description: str
    max_turns: int
    max_tokens: int
    status: str
    holds_slot: bool
    result: Optional[str] = None
    error: Optional[str] = None
    turns: int
    usage: dict[str, int]
    created_at: str
    started_at: Optional[str] = None
    finished_at: Optional[str] = None


class SubAgentListResponse(BaseModel):
    """Sub-agent tasks and pool metrics."""

    tasks: list[SubAgentTaskResponse]
    capacity: int
    in_use: int
    queued: int


class ProviderStatusResponse(BaseModel):
    """Availability of one provider adapter."""

    name: str
    model: Optional[str] = None
    availability: str
    priority: int
    native_tools: bool = False
    consecutive_failures: int = 0
    degraded_until: Optional[str] = None
    last_error: Optional[str] = None
    last_success_at: Optional[str] = None


class ProviderListResponse(BaseModel):
    """Providers in fallback order."""

    providers: list[ProviderStatusResponse]


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    providers_available: int
    active_sessions: int
    pending_approvals: int
