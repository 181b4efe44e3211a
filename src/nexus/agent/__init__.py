"""
Agent Execution Core.

This module runs an autonomous agent against a chain of reasoning
providers, executing tools on its behalf under human oversight.

Architecture:
- Domain: Core entities and port interfaces
- Providers: LLM provider adapters (Claude, GPT, Ollama) and fallback manager
- Tools: Tool registry, side-effect classes, scoping and input validation
- Orchestrator: Agent loop, approvals, sub-agents, compaction, sessions
- Memory: In-memory and PostgreSQL session stores
- Notify: Approval notification channels
- API: FastAPI router and WebSocket streaming

Key Features:
- Provider fallback with degraded cooldown and cost tracking
- Native or text-mode tool calling
- Approval gating for destructive tool calls with an audit trail
- One level of sub-agent delegation with a bounded concurrency pool
- Context compaction that keeps critical facts pinned
- Turn caps, token budgets and cancellation
"""

# Domain entities
from .domain.entities import (
    ApprovalDecision,
    ChatEvent,
    ChatEventType,
    ErrorType,
    InboundMessage,
    PendingApproval,
    Session,
    SessionStatus,
    SideEffectClass,
    SubAgentTask,
    ToolCallRecord,
    ToolDefinition,
    Turn,
    TurnRole,
)

# Exceptions
from .exceptions import (
    AgentError,
    ApprovalError,
    CapExceededError,
    ConfigurationError,
    DelegationDepthExceededError,
    ProviderError,
    ProvidersExhaustedError,
    SessionCancelledError,
    StorageError,
    TokenBudgetExceededError,
    ToolError,
    TurnCapExceededError,
)

# Orchestrator
from .orchestrator import (
    AgentConfig,
    AgentLoop,
    ApprovalManager,
    ApprovalPolicy,
    ConcurrencyPool,
    SessionCompactor,
    SessionManager,
    SubAgentOrchestrator,
)

# Providers
from .providers import (
    AnthropicProvider,
    BaseLLMProvider,
    LLMProviderConfig,
    OllamaProvider,
    OpenAIProvider,
    ProviderManager,
)

# Tools
from .tools import ToolPolicy, ToolRegistry

# Memory
from .memory import InMemorySessionStore, PostgresSessionStore

# Config
from .config import AgentSettings, get_settings

__all__ = [
    # Domain
    "ApprovalDecision",
    "ChatEvent",
    "ChatEventType",
    "ErrorType",
    "InboundMessage",
    "PendingApproval",
    "Session",
    "SessionStatus",
    "SideEffectClass",
    "SubAgentTask",
    "ToolCallRecord",
    "ToolDefinition",
    "Turn",
    "TurnRole",
    # Exceptions
    "AgentError",
    "ApprovalError",
    "CapExceededError",
    "ConfigurationError",
    "DelegationDepthExceededError",
    "ProviderError",
    "ProvidersExhaustedError",
    "SessionCancelledError",
    "StorageError",
    "TokenBudgetExceededError",
    "ToolError",
    "TurnCapExceededError",
    # Orchestrator
    "AgentConfig",
    "AgentLoop",
    "ApprovalManager",
    "ApprovalPolicy",
    "ConcurrencyPool",
    "SessionCompactor",
    "SessionManager",
    "SubAgentOrchestrator",
    # Providers
    "AnthropicProvider",
    "BaseLLMProvider",
    "LLMProviderConfig",
    "OllamaProvider",
    "OpenAIProvider",
    "ProviderManager",
    # Tools
    "ToolPolicy",
    "ToolRegistry",
    # Memory
    "InMemorySessionStore",
    "PostgresSessionStore",
    # Config
    "AgentSettings",
    "get_settings",
]
