"""
FastAPI router for the Agent API.

Provides:
- REST endpoints to run a session, cancel it and read its state
- REST endpoints to list and resolve approvals, and read the audit trail
- WebSocket endpoint for streaming loop events
- Sub-agent and provider status endpoints
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

from fastapi import (
    APIRouter,
    Depends,
    HTTPException,
    Query,
    WebSocket,
    WebSocketDisconnect,
    status,
)

from ..domain.entities import ChatEventType, InboundMessage, ProviderAvailability
from ..exceptions import AgentError, ApprovalError, ApprovalNotFoundError
from ..orchestrator.approval_manager import ApprovalManager
from ..orchestrator.session_manager import SessionManager
from ..orchestrator.subagent import SubAgentOrchestrator
from ..providers.manager import ProviderManager
from ..security import sanitize_error_message
from .auth import AuthenticationError, TokenPayload, authenticate_websocket, validate_jwt_token
from .schemas import (
    MAX_MESSAGE_LENGTH,
    ApprovalDecisionRequest,
    ApprovalListResponse,
    ApprovalResponse,
    AuditEntryResponse,
    AuditListResponse,
    CancelResponse,
    EventListResponse,
    HealthResponse,
    ProviderListResponse,
    ProviderStatusResponse,
    SendMessageRequest,
    SessionResponse,
    SubAgentListResponse,
    SubAgentTaskResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/agent", tags=["agent"])


# =============================================================================
# Dependencies
# =============================================================================


class AgentDependencies:
    """Container for agent dependencies.

    Populated during application startup.
    """

    def __init__(self):
        self.session_manager: Optional[SessionManager] = None
        self.approval_manager: Optional[ApprovalManager] = None
        self.subagents: Optional[SubAgentOrchestrator] = None
        self.provider_manager: Optional[ProviderManager] = None


_deps = AgentDependencies()


def create_agent_dependencies(
    session_manager: SessionManager,
    approval_manager: ApprovalManager,
    subagents: Optional[SubAgentOrchestrator] = None,
    provider_manager: Optional[ProviderManager] = None,
) -> None:
    """Initialize agent dependencies.

    Call this during application startup.

    Args:
        session_manager: Routes inbound messages to session loops
        approval_manager: Pending approvals and audit trail
        subagents: Optional sub-agent orchestrator
        provider_manager: Optional provider manager (for status)
    """
    _deps.session_manager = session_manager
    _deps.approval_manager = approval_manager
    _deps.subagents = subagents
    _deps.provider_manager = provider_manager


def reset_agent_dependencies() -> None:
    """Clear dependencies at shutdown."""
    _deps.session_manager = None
    _deps.approval_manager = None
    _deps.subagents = None
    _deps.provider_manager = None


def _unavailable(component: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail=f"{component} not initialized",
    )


def get_session_manager() -> SessionManager:
    """Get the session manager dependency."""
    if not _deps.session_manager:
        raise _unavailable("Agent")
    return _deps.session_manager


def get_approval_manager() -> ApprovalManager:
    """Get the approval manager dependency."""
    if not _deps.approval_manager:
        raise _unavailable("Approval manager")
    return _deps.approval_manager


def get_subagents() -> SubAgentOrchestrator:
    if not _deps.subagents:
        raise _unavailable("Sub-agent orchestrator")
    return _deps.subagents


def get_provider_manager() -> ProviderManager:
    if not _deps.provider_manager:
        raise _unavailable("Provider manager")
    return _deps.provider_manager


# =============================================================================
# Session Endpoints
# =============================================================================


@router.post("/sessions/{session_id}/messages", response_model=EventListResponse)
async def send_message(
    session_id: str,
    request: SendMessageRequest,
    user: TokenPayload = Depends(validate_jwt_token),
    manager: SessionManager = Depends(get_session_manager),
) -> EventListResponse:
    """Run the agent on a message and return every event it produced.

    Blocks until the run ends. Use the WebSocket endpoint to receive
    events as they happen (approvals in particular).
    """
    inbound = InboundMessage(
        session_id=session_id,
        text=request.text,
        attachments=[a.model_dump(exclude_none=True) for a in request.attachments],
    )
    logger.info(f"Message for session {session_id} from user={user.user_id}")

    events: list[dict[str, Any]] = []
    answer: Optional[str] = None
    run_status = "active"
    try:
        async for event in manager.handle_inbound(inbound):
            events.append(event.to_dict())
            if event.type == ChatEventType.DONE and event.metadata:
                answer = event.metadata.get("answer")
                run_status = event.metadata.get("status", run_status)
    except AgentError as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT
            if e.code == "SESSION_BUSY"
            else status.HTTP_400_BAD_REQUEST,
            detail=sanitize_error_message(e.message, "Agent error"),
        )

    return EventListResponse(
        session_id=session_id,
        events=events,
        status=run_status,
        answer=answer,
    )


@router.post("/sessions/{session_id}/cancel", response_model=CancelResponse)
async def cancel_session(
    session_id: str,
    user: TokenPayload = Depends(validate_jwt_token),
    manager: SessionManager = Depends(get_session_manager),
) -> CancelResponse:
    """Cancel the session's active run."""
    cancelled = await manager.cancel(session_id)
    if cancelled:
        logger.info(f"Session {session_id} cancelled by user={user.user_id}")
    return CancelResponse(session_id=session_id, cancelled=cancelled)


@router.get("/sessions/{session_id}", response_model=SessionResponse)
async def get_session(
    session_id: str,
    include_turns: bool = Query(default=True),
    user: TokenPayload = Depends(validate_jwt_token),
    manager: SessionManager = Depends(get_session_manager),
) -> SessionResponse:
    """Get a session's state and history."""
    session = manager.get(session_id)
    if session is None and manager.store is not None:
        session = await manager.store.load_session(session_id)
    if session is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Session not found",
        )

    data = session.to_dict(include_turns=include_turns)
    data["busy"] = manager.is_busy(session_id)
    return SessionResponse(**data)


# =============================================================================
# Approval Endpoints
# =============================================================================


@router.get("/approvals", response_model=ApprovalListResponse)
async def list_approvals(
    session_id: Optional[str] = Query(default=None),
    user: TokenPayload = Depends(validate_jwt_token),
    approvals: ApprovalManager = Depends(get_approval_manager),
) -> ApprovalListResponse:
    """List open approvals, optionally for one session."""
    pending = approvals.list_pending(session_id)
    return ApprovalListResponse(
        approvals=[ApprovalResponse(**a.to_dict()) for a in pending],
        total=len(pending),
    )


@router.get("/approvals/audit", response_model=AuditListResponse)
async def get_audit_trail(
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    user: TokenPayload = Depends(validate_jwt_token),
    approvals: ApprovalManager = Depends(get_approval_manager),
) -> AuditListResponse:
    """Read the approval audit trail, newest first."""
    entries = approvals.get_audit_trail(limit=limit, offset=offset)
    return AuditListResponse(
        entries=[AuditEntryResponse(**e.to_dict()) for e in entries],
        total=approvals.audit_count,
        limit=limit,
        offset=offset,
    )


@router.post("/approvals/{approval_id}", response_model=ApprovalResponse)
async def resolve_approval(
    approval_id: str,
    request: ApprovalDecisionRequest,
    user: TokenPayload = Depends(validate_jwt_token),
    approvals: ApprovalManager = Depends(get_approval_manager),
) -> ApprovalResponse:
    """Approve or deny a pending tool call.

    The authenticated user is recorded as the approver. Repeated decisions
    are ignored; the first one wins.
    """
    try:
        await approvals.resolve(
            approval_id,
            request.decision,
            decided_by=user.user_id,
            channel=request.channel or "api",
        )
    except ApprovalNotFoundError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Approval not found",
        )
    except ApprovalError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=e.message,
        )

    approval = approvals.get(approval_id)
    if approval is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Approval not found",
        )
    return ApprovalResponse(**approval.to_dict())


# =============================================================================
# Status Endpoints
# =============================================================================


@router.get("/subagents", response_model=SubAgentListResponse)
async def list_subagents(
    parent_session_id: Optional[str] = Query(default=None),
    user: TokenPayload = Depends(validate_jwt_token),
    subagents: SubAgentOrchestrator = Depends(get_subagents),
) -> SubAgentListResponse:
    """List sub-agent tasks and concurrency pool usage."""
    tasks = subagents.list_tasks(parent_session_id)
    metrics = subagents.get_metrics()
    return SubAgentListResponse(
        tasks=[SubAgentTaskResponse(**t.to_dict()) for t in tasks],
        capacity=metrics["capacity"],
        in_use=metrics["in_use"],
        queued=metrics["queued"],
    )


@router.get("/providers", response_model=ProviderListResponse)
async def list_providers(
    user: TokenPayload = Depends(validate_jwt_token),
    providers: ProviderManager = Depends(get_provider_manager),
) -> ProviderListResponse:
    """Provider availability in fallback order."""
    return ProviderListResponse(
        providers=[ProviderStatusResponse(**p) for p in providers.get_status()]
    )


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Agent health check. Does not require authentication."""
    providers_available = 0
    if _deps.provider_manager:
        providers_available = sum(
            1
            for p in _deps.provider_manager.get_status()
            if p["availability"] != ProviderAvailability.UNAVAILABLE.value
        )
    active_sessions = len(_deps.session_manager.list_sessions()) if _deps.session_manager else 0
    pending = len(_deps.approval_manager.list_pending()) if _deps.approval_manager else 0

    if not _deps.session_manager:
        health = "unavailable"
    elif providers_available == 0:
        health = "degraded"
    else:
        health = "healthy"

    return HealthResponse(
        status=health,
        providers_available=providers_available,
        active_sessions=active_sessions,
        pending_approvals=pending,
    )


# =============================================================================
# WebSocket Handler
# =============================================================================


def _task_exception_handler(task: asyncio.Task) -> None:
    """Log exceptions from background tasks."""
    if task.cancelled():
        return
    exc = task.exception()
    if exc:
        logger.error(
            f"Background task {task.get_name()} failed: {exc}",
            exc_info=(type(exc), exc, exc.__traceback__),
        )


@router.websocket("/ws/{session_id}")
async def websocket_endpoint(
    websocket: WebSocket,
    session_id: str,
    token: Optional[str] = Query(default=None, description="JWT bearer token"),
):
    """WebSocket endpoint for streaming a session's events.

    Message formats:
    - Client -> Server:
        {"type": "message", "text": "...", "attachments": [...]}
        {"type": "approve" | "deny", "approval_id": "..."}
        {"type": "cancel"}
        {"type": "ping"}

    - Server -> Client:
        ChatEvent.to_dict() for every loop event
        {"type": "pong"}
        {"type": "error", "content": "..."}
    """
    try:
        user = authenticate_websocket(token)
    except (AuthenticationError, HTTPException) as e:
        logger.warning(f"WebSocket auth failed for session {session_id}: {e.detail}")
        await websocket.close(code=4001, reason="Authentication failed")
        return

    await websocket.accept()
    logger.info(f"WebSocket connected: session={session_id} user={user.user_id}")

    manager = _deps.session_manager
    if not manager:
        await websocket.send_json({"type": "error", "content": "Agent not initialized"})
        await websocket.close()
        return

    current_task: Optional[asyncio.Task] = None

    try:
        while True:
            data = await websocket.receive_json()
            msg_type = data.get("type", "message")

            if msg_type == "message":
                text = str(data.get("text") or data.get("message") or "")
                if not text or len(text) > MAX_MESSAGE_LENGTH:
                    await websocket.send_json({
                        "type": "error",
                        "content": "Message must be 1 to "
                        f"{MAX_MESSAGE_LENGTH} characters",
                    })
                    continue
                if current_task and not current_task.done():
                    await websocket.send_json({
                        "type": "error",
                        "content": "A run is already in progress for this session",
                    })
                    continue

                inbound = InboundMessage(
                    session_id=session_id,
                    text=text,
                    attachments=list(data.get("attachments") or []),
                )
                current_task = asyncio.create_task(
                    _stream_run(websocket, manager, inbound),
                    name=f"ws-run-{session_id}",
                )
                current_task.add_done_callback(_task_exception_handler)

            elif msg_type in ("approve", "deny"):
                await _resolve_from_websocket(websocket, data, msg_type, user)

            elif msg_type == "cancel":
                cancelled = await manager.cancel(session_id)
                if not cancelled:
                    await websocket.send_json({
                        "type": "error",
                        "content": "No active run to cancel",
                    })

            elif msg_type == "ping":
                await websocket.send_json({"type": "pong"})

    except WebSocketDisconnect:
        logger.info(f"WebSocket disconnected: session={session_id}")
    except Exception as e:
        logger.exception(f"WebSocket error: {e}")
        try:
            sanitized = sanitize_error_message(str(e), "WebSocket error")
            await websocket.send_json({"type": "error", "content": sanitized})
        except Exception:
            pass
    finally:
        if current_task and not current_task.done():
            await manager.cancel(session_id)


async def _resolve_from_websocket(
    websocket: WebSocket,
    data: dict[str, Any],
    decision: str,
    user: TokenPayload,
) -> None:
    approvals = _deps.approval_manager
    approval_id = data.get("approval_id")
    if not approvals or not approval_id:
        await websocket.send_json({"type": "error", "content": "approval_id required"})
        return
    try:
        await approvals.resolve(
            str(approval_id), decision, decided_by=user.user_id, channel="websocket"
        )
    except ApprovalNotFoundError:
        await websocket.send_json({"type": "error", "content": "Approval not found"})
    except ApprovalError as e:
        await websocket.send_json({"type": "error", "content": e.message})


async def _stream_run(
    websocket: WebSocket,
    manager: SessionManager,
    inbound: InboundMessage,
) -> None:
    """Stream one run's events to the WebSocket.

    Args:
        websocket: WebSocket connection
        manager: Session manager
        inbound: Message that starts the run
    """
    try:
        async for event in manager.handle_inbound(inbound):
            await websocket.send_json(event.to_dict())
    except asyncio.CancelledError:
        logger.info(f"Run streaming cancelled for session {inbound.session_id}")
        raise
    except Exception as e:
        logger.exception(f"Run streaming error: {e}")
        sanitized = sanitize_error_message(str(e), "Agent error")
        await websocket.send_json({
            "type": "error",
            "content": sanitized,
            "error_type": "fatal",
        })
