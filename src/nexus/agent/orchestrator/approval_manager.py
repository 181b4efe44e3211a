"""
Approval Manager.

Gates risky tool calls behind a human decision:
- Requested -> Notified -> Approved / Denied / Expired
- Fan-out notification to every configured channel
- Idempotent resolution (first decision wins)
- Expiry after a timeout (default 5 minutes)
- Append-only audit trail, one entry per resolution

The loop suspends on wait_for_resolution(), which awaits an asyncio.Future,
so no thread is held while a human decides.
"""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Optional, Union

from ..domain.entities import (
    ApprovalDecision,
    ApprovalNotification,
    ApprovalResolution,
    ApprovalState,
    AuditEntry,
    PendingApproval,
    SideEffectClass,
    ToolCallRecord,
)
from ..domain.ports import INotifyChannel, ISessionStore
from ..exceptions import ApprovalError, ApprovalNotFoundError

logger = logging.getLogger(__name__)

DECIDED_BY_TIMEOUT = "system:timeout"
DECIDED_BY_CANCEL = "system:cancelled"

_DECISION_ALIASES = {
    "approve": ApprovalDecision.APPROVED,
    "approved": ApprovalDecision.APPROVED,
    "deny": ApprovalDecision.DENIED,
    "denied": ApprovalDecision.DENIED,
    "reject": ApprovalDecision.DENIED,
    "expired": ApprovalDecision.EXPIRED,
}


class ApprovalPolicy(str, Enum):
    """Which side-effect classes require approval."""

    DESTRUCTIVE = "destructive"  # Gate destructive calls only
    ALWAYS = "always"  # Gate mutating and destructive calls

    def requires_approval(self, side_effect_class: SideEffectClass) -> bool:
        if side_effect_class == SideEffectClass.DESTRUCTIVE:
            return True
        if side_effect_class == SideEffectClass.MUTATING:
            return self == ApprovalPolicy.ALWAYS
        return False


def normalize_decision(decision: Union[ApprovalDecision, str]) -> ApprovalDecision:
    """Accept enum values or the approve/deny words used by channels."""
    if isinstance(decision, ApprovalDecision):
        return decision
    normalized = _DECISION_ALIASES.get(str(decision).strip().lower())
    if normalized is None:
        raise ApprovalError(f"Unknown approval decision: {decision!r}")
    return normalized


class ApprovalManager:
    """Manages approval requests for gated tool calls.

    Usage:
        manager = ApprovalManager(channels=[webhook], timeout_seconds=300)

        approval = await manager.request(session_id, tool_call, thought="...")
        resolution = await manager.wait_for_resolution(approval.approval_id)

        # From a channel callback or the HTTP API
        await manager.resolve(approval.approval_id, "approve", decided_by="alice")

        # Newest first
        trail = manager.get_audit_trail(limit=20)

    Guarantees:
        - At most one open approval per tool call
        - Only the first resolution takes effect; repeats return it unchanged
        - Exactly one audit entry per resolved approval
    """

    def __init__(
        self,
        channels: Optional[list[INotifyChannel]] = None,
        store: Optional[ISessionStore] = None,
        timeout_seconds: float = 300.0,
        max_audit_entries: int = 1000,
        max_pruned_resolutions: int = 10_000,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """Initialize the approval manager.

        Args:
            channels: Notification channels (all are notified)
            store: Optional store receiving audit entries
            timeout_seconds: Default time before an approval expires
            max_audit_entries: In-memory audit trail bound
            max_pruned_resolutions: Decisions remembered after their approval is
                dropped, so repeat resolutions stay idempotent
            clock: Time source, injectable for tests
        """
        self.channels = list(channels or [])
        self.store = store
        self.timeout_seconds = timeout_seconds
        self.max_audit_entries = max_audit_entries
        self.max_pruned_resolutions = max_pruned_resolutions
        self._clock = clock or datetime.utcnow

        self._approvals: dict[str, PendingApproval] = {}
        # Open approvals by tool call id
        self._open_by_tool_call: dict[str, str] = {}
        self._futures: dict[str, asyncio.Future] = {}
        self._audit: list[AuditEntry] = []
        # Resolutions of approvals dropped by _prune_resolved, oldest first
        self._pruned: OrderedDict[str, ApprovalResolution] = OrderedDict()

    def add_channel(self, channel: INotifyChannel) -> None:
        self.channels.append(channel)

    async def request(
        self,
        session_id: str,
        tool_call: ToolCallRecord,
        thought: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
    ) -> PendingApproval:
        """Create an approval and notify every channel.

        Args:
            session_id: Session whose loop will wait on the approval
            tool_call: The gated tool call
            thought: Reasoning attached to the call
            timeout_seconds: Override of the default timeout

        Returns:
            The PendingApproval (NOTIFIED if any channel accepted it)

        Raises:
            ApprovalError: If the tool call already has an open approval
        """
        if tool_call.id in self._open_by_tool_call:
            raise ApprovalError(
                f"Tool call {tool_call.id} already has an open approval",
                approval_id=self._open_by_tool_call[tool_call.id],
            )

        now = self._clock()
        timeout = timeout_seconds if timeout_seconds is not None else self.timeout_seconds
        approval = PendingApproval(
            session_id=session_id,
            tool_call=tool_call,
            expires_at=now + timedelta(seconds=timeout),
            thought=thought or tool_call.thought,
            requested_at=now,
        )

        self._approvals[approval.approval_id] = approval
        self._open_by_tool_call[tool_call.id] = approval.approval_id
        self._futures[approval.approval_id] = asyncio.get_running_loop().create_future()

        logger.info(
            f"Approval {approval.approval_id} requested for '{tool_call.tool_name}' "
            f"(session {session_id}, expires {approval.expires_at.isoformat()})"
        )

        notification = ApprovalNotification(
            approval_id=approval.approval_id,
            session_id=session_id,
            tool_name=tool_call.tool_name,
            params_summary=approval.params_summary,
            expires_at=approval.expires_at,
        )

        for channel in self.channels:
            if not approval.is_open:
                # Cancelled while notifying
                break
            try:
                await channel.notify(notification)
                approval.notified_channels.append(channel.name)
            except Exception as e:
                logger.warning(
                    f"Approval channel '{channel.name}' failed for "
                    f"{approval.approval_id}: {e}"
                )

        if approval.is_open:
            if approval.notified_channels:
                approval.state = ApprovalState.NOTIFIED
            else:
                logger.warning(
                    f"Approval {approval.approval_id} reached no channel; "
                    f"it can still be resolved through the API"
                )

        return approval

    async def wait_for_resolution(self, approval_id: str) -> ApprovalResolution:
        """Suspend until the approval is resolved or expires.

        Raises:
            ApprovalNotFoundError: Unknown approval id
        """
        earlier = self._pruned.get(approval_id)
        if earlier is not None:
            return earlier

        approval = self._require(approval_id)
        if approval.resolution is not None:
            return approval.resolution

        remaining = (approval.expires_at - self._clock()).total_seconds()
        if remaining > 0:
            future = self._futures[approval_id]
            try:
                return await asyncio.wait_for(asyncio.shield(future), timeout=remaining)
            except asyncio.TimeoutError:
                pass

        logger.info(f"Approval {approval_id} expired")
        resolution, _ = await self._finalize(
            approval, ApprovalDecision.EXPIRED, DECIDED_BY_TIMEOUT, channel=None
        )
        return resolution

    async def resolve(
        self,
        approval_id: str,
        decision: Union[ApprovalDecision, str],
        decided_by: str,
        channel: Optional[str] = None,
    ) -> ApprovalResolution:
        """Record a decision. Idempotent: only the first call takes effect.

        A decision arriving after expires_at resolves the approval as
        expired instead.

        Args:
            approval_id: Approval to resolve
            decision: approve/deny (or an ApprovalDecision)
            decided_by: Identity of the approver
            channel: Channel the decision came through

        Returns:
            The effective resolution

        Raises:
            ApprovalNotFoundError: Unknown approval id
            ApprovalError: Unrecognized decision value
        """
        earlier = self._pruned.get(approval_id)
        if earlier is not None:
            logger.debug(f"Approval {approval_id} already resolved; ignoring repeat")
            return earlier

        approval = self._require(approval_id)
        if approval.resolution is not None:
            logger.debug(f"Approval {approval_id} already resolved; ignoring repeat")
            return approval.resolution

        normalized = normalize_decision(decision)
        if self._clock() >= approval.expires_at:
            normalized, decided_by, channel = ApprovalDecision.EXPIRED, DECIDED_BY_TIMEOUT, None

        resolution, _ = await self._finalize(approval, normalized, decided_by, channel)
        return resolution

    async def cancel_session(self, session_id: str) -> int:
        """Expire every open approval of a session.

        Returns:
            Number of approvals expired
        """
        open_approvals = [
            a for a in self._approvals.values()
            if a.session_id == session_id and a.is_open
        ]
        for approval in open_approvals:
            await self._finalize(
                approval, ApprovalDecision.EXPIRED, DECIDED_BY_CANCEL, channel=None
            )
        if open_approvals:
            logger.info(
                f"Expired {len(open_approvals)} open approvals for cancelled session {session_id}"
            )
        return len(open_approvals)

    async def _finalize(
        self,
        approval: PendingApproval,
        decision: ApprovalDecision,
        decided_by: str,
        channel: Optional[str],
    ) -> tuple[ApprovalResolution, bool]:
        """Apply a resolution once. Returns (resolution, created)."""
        # No await between the check and the write, so the first caller wins
        if approval.resolution is not None:
            return approval.resolution, False

        resolution = ApprovalResolution(
            decision=decision,
            decided_by=decided_by,
            decided_at=self._clock(),
            channel=channel,
        )
        approval.resolution = resolution
        approval.state = ApprovalState(decision.value)
        self._open_by_tool_call.pop(approval.tool_call.id, None)

        future = self._futures.pop(approval.approval_id, None)
        if future is not None and not future.done():
            future.set_result(resolution)

        entry = AuditEntry(
            approval_id=approval.approval_id,
            session_id=approval.session_id,
            tool_name=approval.tool_call.tool_name,
            params_summary=approval.params_summary,
            decided_by=decided_by,
            decision=decision,
            decided_at=resolution.decided_at,
            channel=channel,
        )
        self._audit.append(entry)
        if len(self._audit) > self.max_audit_entries:
            del self._audit[: len(self._audit) - self.max_audit_entries]
        self._prune_resolved()

        log = logger.warning if decision == ApprovalDecision.DENIED else logger.info
        log(
            f"Approval {approval.approval_id} for '{approval.tool_call.tool_name}' "
            f"{decision.value} by {decided_by}"
        )

        if self.store is not None:
            try:
                await self.store.save_audit_entry(entry)
            except Exception as e:
                logger.error(f"Failed to persist audit entry for {approval.approval_id}: {e}")

        return resolution, True

    def _prune_resolved(self) -> None:
        """Keep resolved approvals bounded like the audit trail."""
        resolved = [a for a in self._approvals.values() if not a.is_open]
        excess = len(resolved) - self.max_audit_entries
        if excess <= 0:
            return
        resolved.sort(key=lambda a: a.requested_at)
        for approval in resolved[:excess]:
            self._approvals.pop(approval.approval_id, None)
            self._pruned[approval.approval_id] = approval.resolution
        while len(self._pruned) > self.max_pruned_resolutions:
            self._pruned.popitem(last=False)

    def _require(self, approval_id: str) -> PendingApproval:
        approval = self._approvals.get(approval_id)
        if approval is None:
            raise ApprovalNotFoundError(approval_id)
        return approval

    def get(self, approval_id: str) -> Optional[PendingApproval]:
        """Get an approval by id."""
        return self._approvals.get(approval_id)

    def list_pending(self, session_id: Optional[str] = None) -> list[PendingApproval]:
        """Open approvals, oldest first, optionally for one session."""
        pending = [
            a for a in self._approvals.values()
            if a.is_open and (session_id is None or a.session_id == session_id)
        ]
        return sorted(pending, key=lambda a: a.requested_at)

    def get_audit_trail(self, limit: int = 50, offset: int = 0) -> list[AuditEntry]:
        """Audit entries, newest first."""
        newest_first = list(reversed(self._audit))
        return newest_first[offset : offset + limit]

    @property
    def audit_count(self) -> int:
        return len(self._audit)
