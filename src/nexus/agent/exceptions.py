"""Exception hierarchy for the agent execution core.

Every error raised by the core derives from AgentError so callers can catch
the whole family with one except clause. Errors carry a machine-readable code,
a details dict, the original cause, and a recoverable flag.

Errors split into two propagation groups:
    - Non-fatal (tool validation/execution, approval refusal): folded back into
      the conversation as a failed tool result so the reasoning step keeps control.
    - Fatal (provider fatal/exhausted, caps, cancellation): terminate the session.
      Fatal errors expose a ``reason`` string that becomes the session's
      failure_reason and the outbound terminal event's reason.

Exception Hierarchy:
    AgentError (base)
    ├── ConfigurationError
    ├── ProviderError
    │   ├── ProviderFatalError
    │   ├── ProvidersExhaustedError
    │   └── ProviderStreamInterruptedError
    ├── ToolError
    │   ├── ToolValidationError
    │   └── ToolExecutionError
    ├── CapExceededError
    │   ├── TurnCapExceededError
    │   ├── TokenBudgetExceededError
    │   └── DelegationDepthExceededError
    ├── ApprovalError
    │   └── ApprovalNotFoundError
    ├── SessionCancelledError
    └── StorageError
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

# ============================================
# Base Exception
# ============================================


class AgentError(Exception):
    """Base exception for all agent core errors.

    Attributes:
        message: Human-readable error description
        code: Machine-readable error code (e.g., "TURN_CAP_EXCEEDED")
        details: Additional context as a dictionary
        timestamp: When the error occurred
        cause: The original exception that caused this error
        recoverable: Whether the reasoning step can recover from this error
    """

    reason: str = "Error"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
        cause: Optional[Exception] = None,
        recoverable: bool = False,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.__class__.__name__.upper()
        self.details = details or {}
        self.timestamp = datetime.utcnow()
        self.cause = cause
        self.recoverable = recoverable

        if cause:
            self.__cause__ = cause

    def __str__(self) -> str:
        parts = [self.message]
        if self.code:
            parts.insert(0, f"[{self.code}]")
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            parts.append(f"({detail_str})")
        return " ".join(parts)

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"code={self.code!r}, "
            f"details={self.details!r}, "
            f"recoverable={self.recoverable})"
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "code": self.code,
            "reason": self.reason,
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
            "recoverable": self.recoverable,
            "cause": str(self.cause) if self.cause else None,
        }


# ============================================
# Configuration Errors
# ============================================


class ConfigurationError(AgentError):
    """Raised when configuration is missing or invalid."""

    reason = "ConfigurationError"

    def __init__(
        self,
        message: str,
        missing_keys: Optional[list[str]] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if missing_keys:
            details["missing_keys"] = missing_keys
        super().__init__(
            message,
            code="CONFIGURATION_ERROR",
            details=details,
            recoverable=False,
            **kwargs,
        )


# ============================================
# Provider Errors
# ============================================


class ProviderError(AgentError):
    """Base class for reasoning-provider failures that reach the loop.

    Transient provider failures are absorbed by the ProviderManager and
    never surface as exceptions; anything raised here is fatal to the session.
    """

    reason = "ProviderError"

    def __init__(self, message: str, provider: Optional[str] = None, **kwargs):
        details = kwargs.pop("details", {})
        if provider:
            details["provider"] = provider
        kwargs.setdefault("code", "PROVIDER_ERROR")
        super().__init__(message, details=details, **kwargs)
        self.provider = provider


class ProviderFatalError(ProviderError):
    """Non-retryable provider failure (auth, malformed request)."""

    def __init__(self, message: str, provider: Optional[str] = None, **kwargs):
        super().__init__(message, provider=provider, code="PROVIDER_FATAL", **kwargs)


class ProvidersExhaustedError(ProviderError):
    """Every adapter in the fallback chain failed with a retryable error."""

    reason = "ProvidersUnavailable"

    def __init__(
        self,
        message: str = "All providers failed",
        attempts: Optional[list[str]] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if attempts:
            details["attempts"] = attempts
        super().__init__(
            message, code="PROVIDERS_EXHAUSTED", details=details, **kwargs
        )


class ProviderStreamInterruptedError(ProviderError):
    """A stream failed after content was already delivered to the caller.

    The request cannot be replayed on a fallback adapter without duplicating
    output, so the failure surfaces to the loop.
    """

    def __init__(self, message: str, provider: Optional[str] = None, **kwargs):
        super().__init__(
            message, provider=provider, code="PROVIDER_STREAM_INTERRUPTED", **kwargs
        )


# ============================================
# Tool Errors (non-fatal)
# ============================================


class ToolError(AgentError):
    """Base class for tool errors. Fed back to the loop as failed results."""

    reason = "ToolError"

    def __init__(self, message: str, tool_name: Optional[str] = None, **kwargs):
        details = kwargs.pop("details", {})
        if tool_name:
            details["tool"] = tool_name
        kwargs.setdefault("recoverable", True)
        super().__init__(message, details=details, **kwargs)
        self.tool_name = tool_name


class ToolValidationError(ToolError):
    """Tool input failed schema validation, or the tool is unknown."""

    def __init__(
        self,
        message: str,
        tool_name: Optional[str] = None,
        errors: Optional[list[dict[str, Any]]] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if errors:
            details["errors"] = errors
        super().__init__(
            message,
            tool_name=tool_name,
            code="TOOL_VALIDATION_ERROR",
            details=details,
            **kwargs,
        )
        self.errors = errors or []


class ToolExecutionError(ToolError):
    """Tool handler raised or timed out."""

    def __init__(self, message: str, tool_name: Optional[str] = None, **kwargs):
        super().__init__(
            message, tool_name=tool_name, code="TOOL_EXECUTION_ERROR", **kwargs
        )


# ============================================
# Cap Violations (fatal)
# ============================================


class CapExceededError(AgentError):
    """Base class for budget, turn and delegation-depth violations."""

    reason = "CapExceeded"

    def __init__(self, message: str, limit: Optional[int] = None, **kwargs):
        details = kwargs.pop("details", {})
        if limit is not None:
            details["limit"] = limit
        super().__init__(message, details=details, recoverable=False, **kwargs)
        self.limit = limit


class TurnCapExceededError(CapExceededError):
    """Session exceeded its max_turns."""

    reason = "TurnCapExceeded"

    def __init__(self, max_turns: int, **kwargs):
        super().__init__(
            f"Turn cap of {max_turns} exceeded",
            limit=max_turns,
            code="TURN_CAP_EXCEEDED",
            **kwargs,
        )


class TokenBudgetExceededError(CapExceededError):
    """Session exceeded its token budget."""

    reason = "TokenBudgetExceeded"

    def __init__(self, max_tokens: int, used: int, **kwargs):
        details = kwargs.pop("details", {})
        details["used"] = used
        super().__init__(
            f"Token budget of {max_tokens} exceeded ({used} used)",
            limit=max_tokens,
            code="TOKEN_BUDGET_EXCEEDED",
            details=details,
            **kwargs,
        )


class DelegationDepthExceededError(CapExceededError):
    """Delegation attempted from a session that is already a sub-agent."""

    reason = "DelegationDepthExceeded"

    def __init__(self, depth: int, max_depth: int = 1, **kwargs):
        details = kwargs.pop("details", {})
        details["depth"] = depth
        super().__init__(
            f"Delegation depth {depth + 1} would exceed maximum of {max_depth}",
            limit=max_depth,
            code="DELEGATION_DEPTH_EXCEEDED",
            details=details,
            **kwargs,
        )


# ============================================
# Approval Errors
# ============================================


class ApprovalError(AgentError):
    """Raised for invalid approval operations."""

    reason = "ApprovalError"

    def __init__(self, message: str, approval_id: Optional[str] = None, **kwargs):
        details = kwargs.pop("details", {})
        if approval_id:
            details["approval_id"] = approval_id
        kwargs.setdefault("code", "APPROVAL_ERROR")
        super().__init__(message, details=details, **kwargs)
        self.approval_id = approval_id


class ApprovalNotFoundError(ApprovalError):
    """No approval exists with the given id."""

    def __init__(self, approval_id: str, **kwargs):
        super().__init__(
            f"Approval {approval_id} not found",
            approval_id=approval_id,
            code="APPROVAL_NOT_FOUND",
            **kwargs,
        )


# ============================================
# Session Errors
# ============================================


class SessionCancelledError(AgentError):
    """The session was cancelled by a user or the system."""

    reason = "Cancelled"

    def __init__(self, session_id: str, **kwargs):
        super().__init__(
            f"Session {session_id} was cancelled",
            code="SESSION_CANCELLED",
            details={"session_id": session_id},
            **kwargs,
        )
        self.session_id = session_id


class StorageError(AgentError):
    """Persistence collaborator failed."""

    reason = "StorageError"

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("code", "STORAGE_ERROR")
        super().__init__(message, **kwargs)


__all__ = [
    "AgentError",
    "ConfigurationError",
    "ProviderError",
    "ProviderFatalError",
    "ProvidersExhaustedError",
    "ProviderStreamInterruptedError",
    "ToolError",
    "ToolValidationError",
    "ToolExecutionError",
    "CapExceededError",
    "TurnCapExceededError",
    "TokenBudgetExceededError",
    "DelegationDepthExceededError",
    "ApprovalError",
    "ApprovalNotFoundError",
    "SessionCancelledError",
    "StorageError",
]
