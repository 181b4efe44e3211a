"""
Event Streamer for outbound ChatEvent sequencing.

Adapters number their own events per call; the loop re-stamps every event
it forwards so a session's outbound stream has one monotonic sequence and
carries the session id.
"""

from __future__ import annotations

from dataclasses import replace
from typing import Any, Optional

from ..domain.entities import ChatEvent, ChatEventType, ErrorType


class EventStreamer:
    """Manages ChatEvent creation with sequence tracking.

    Usage:
        streamer = EventStreamer(session_id=session.session_id)

        event = streamer.create_event(ChatEventType.TEXT_DELTA, content="Hello")
        # sequence = 1

        forwarded = streamer.restamp(adapter_event)
        # sequence = 2, session_id set
    """

    def __init__(self, session_id: Optional[str] = None):
        """Initialize the event streamer.

        Args:
            session_id: Session the events belong to
        """
        self.session_id = session_id
        self._sequence = 0

    def create_event(
        self,
        event_type: ChatEventType,
        content: Optional[str] = None,
        tool_call_id: Optional[str] = None,
        tool_name: Optional[str] = None,
        tool_arguments: Optional[dict[str, Any]] = None,
        approval_id: Optional[str] = None,
        error: Optional[str] = None,
        error_type: Optional[ErrorType] = None,
        metadata: Optional[dict[str, Any]] = None,
        **kwargs: Any,
    ) -> ChatEvent:
        """Create a ChatEvent with auto-incrementing sequence.

        Args:
            event_type: Type of event
            content: Text content
            tool_call_id: Tool call ID for TOOL_* events
            tool_name: Tool name
            tool_arguments: Tool arguments
            approval_id: Approval ID for APPROVAL_* events
            error: Error message for ERROR events
            error_type: Type of error
            metadata: Additional event metadata
            **kwargs: Additional fields to pass to ChatEvent

        Returns:
            ChatEvent with incremented sequence number
        """
        self._sequence += 1

        return ChatEvent(
            type=event_type,
            sequence=self._sequence,
            session_id=self.session_id,
            content=content,
            tool_call_id=tool_call_id,
            tool_name=tool_name,
            tool_arguments=tool_arguments,
            approval_id=approval_id,
            error=error,
            error_type=error_type,
            metadata=metadata,
            **kwargs,
        )

    def restamp(self, event: ChatEvent) -> ChatEvent:
        """Copy an adapter event into this stream's sequence."""
        self._sequence += 1
        return replace(event, sequence=self._sequence, session_id=self.session_id)

    def reset(self) -> None:
        """Reset the sequence counter."""
        self._sequence = 0

    @property
    def sequence(self) -> int:
        """Current sequence value (before next increment)."""
        return self._sequence
