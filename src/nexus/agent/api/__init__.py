"""Agent API.

Provides:
- REST endpoints for sessions, approvals, sub-agents and providers
- WebSocket endpoint for streaming loop events
- JWT authentication
"""

from .auth import TokenPayload, validate_jwt_token
from .router import create_agent_dependencies, reset_agent_dependencies, router

__all__ = [
    "router",
    "create_agent_dependencies",
    "reset_agent_dependencies",
    "TokenPayload",
    "validate_jwt_token",
]
