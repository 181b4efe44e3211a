"""Domain entities and port interfaces for the agent module."""

from .entities import (
    ApprovalDecision,
    ApprovalNotification,
    ApprovalResolution,
    ApprovalState,
    AuditEntry,
    ChatEvent,
    ChatEventType,
    ErrorType,
    InboundMessage,
    PendingApproval,
    ProviderAvailability,
    ProviderConfig,
    ProviderUsage,
    Session,
    SessionStatus,
    SideEffectClass,
    SubAgentStatus,
    SubAgentTask,
    TokenUsage,
    ToolCallRecord,
    ToolDefinition,
    ToolResultStatus,
    Turn,
    TurnRole,
)
from .ports import ILLMProvider, INotifyChannel, ISessionStore

__all__ = [
    # Entities
    "ApprovalDecision",
    "ApprovalNotification",
    "ApprovalResolution",
    "ApprovalState",
    "AuditEntry",
    "ChatEvent",
    "ChatEventType",
    "ErrorType",
    "InboundMessage",
    "PendingApproval",
    "ProviderAvailability",
    "ProviderConfig",
    "ProviderUsage",
    "Session",
    "SessionStatus",
    "SideEffectClass",
    "SubAgentStatus",
    "SubAgentTask",
    "TokenUsage",
    "ToolCallRecord",
    "ToolDefinition",
    "ToolResultStatus",
    "Turn",
    "TurnRole",
    # Ports
    "ILLMProvider",
    "INotifyChannel",
    "ISessionStore",
]
