"""Agent Orchestrator.

The orchestrator coordinates the execution core:
- Agent loop driving sessions to a terminal state
- Approval gating for risky tool calls
- Sub-agent delegation with a bounded concurrency pool
- Session compaction with pinned facts
- Session ownership, cancellation and idle eviction

Provides:
- Main loop and configuration
- Tool execution and text-mode step parsing
- Event streaming for real-time clients
- Prompt building
"""

from .agent import AgentConfig, AgentLoop, LoopState
from .approval_manager import ApprovalManager, ApprovalPolicy
from .compactor import CompactionResult, SessionCompactor, extract_critical_facts
from .event_streamer import EventStreamer
from .prompt_builder import PromptBuilder
from .session_manager import SessionManager
from .step_parser import ParsedStep, StepType, parse_step
from .subagent import SPAWN_SUBAGENT_TOOL, ConcurrencyPool, SubAgentOrchestrator
from .tool_executor import ToolExecutor

__all__ = [
    # Main loop
    "AgentLoop",
    "AgentConfig",
    "LoopState",
    # Core managers
    "ApprovalManager",
    "ApprovalPolicy",
    "SessionCompactor",
    "CompactionResult",
    "extract_critical_facts",
    "SubAgentOrchestrator",
    "ConcurrencyPool",
    "SPAWN_SUBAGENT_TOOL",
    "SessionManager",
    "ToolExecutor",
    "EventStreamer",
    "PromptBuilder",
    # Text-mode parsing
    "ParsedStep",
    "StepType",
    "parse_step",
]
