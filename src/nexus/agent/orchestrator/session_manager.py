"""
Session Manager.

Owns the live sessions of the process:
- One agent loop at a time per session (messages for a busy session wait)
- Loads sessions from the store on first use, creates them otherwise
- Cancellation of a session's active run
- Idle sessions are evicted from memory after a timeout (they stay in the store)
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, AsyncIterator, Callable, Optional

from ..domain.entities import ChatEvent, InboundMessage, Session
from ..domain.ports import ISessionStore

if TYPE_CHECKING:
    from .agent import AgentLoop

logger = logging.getLogger(__name__)


class SessionManager:
    """Routes inbound messages to their session's loop.

    Usage:
        manager = SessionManager(lambda: agent_loop, store, idle_timeout_seconds=3600)
        await manager.start()

        async for event in manager.handle_inbound(InboundMessage("s-1", "hello")):
            ...

        await manager.cancel("s-1")
        await manager.stop()
    """

    SWEEP_INTERVAL_SECONDS = 60

    def __init__(
        self,
        loop_factory: Callable[[], AgentLoop],
        store: Optional[ISessionStore] = None,
        idle_timeout_seconds: float = 3600,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """Initialize the session manager.

        Args:
            loop_factory: Returns the AgentLoop that runs sessions
            store: Optional session persistence
            idle_timeout_seconds: Inactivity before a session is evicted from memory
            clock: Time source, injectable for tests
        """
        self.loop_factory = loop_factory
        self.store = store
        self.idle_timeout_seconds = idle_timeout_seconds
        self._clock = clock or datetime.utcnow

        self._sessions: dict[str, Session] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._running = False
        self._shutdown_event = asyncio.Event()
        self._sweeper: Optional[asyncio.Task] = None

    def _lock_for(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[session_id] = lock
        return lock

    def get(self, session_id: str) -> Optional[Session]:
        """Live session by id (None if not in memory)."""
        return self._sessions.get(session_id)

    def list_sessions(self) -> list[Session]:
        return list(self._sessions.values())

    async def get_or_create(self, session_id: str) -> Session:
        """Return the live session, loading or creating it as needed."""
        session = self._sessions.get(session_id)
        if session is not None:
            return session

        if self.store is not None:
            session = await self.store.load_session(session_id)
            if session is not None:
                logger.debug(f"Loaded session {session_id} from store")

        if session is None:
            session = self.loop_factory().new_session(session_id)
            if self.store is not None:
                await self.store.save_session(session)
            logger.info(f"Created session {session_id}")

        self._sessions[session_id] = session
        return session

    async def handle_inbound(self, inbound: InboundMessage) -> AsyncIterator[ChatEvent]:
        """Run the session's loop for one inbound message.

        Messages for the same session are processed one at a time in
        arrival order.

        Yields:
            The loop's ChatEvent stream
        """
        lock = self._lock_for(inbound.session_id)
        if lock.locked():
            logger.debug(f"Session {inbound.session_id} busy; message queued")

        async with lock:
            session = await self.get_or_create(inbound.session_id)
            loop = self.loop_factory()
            async for event in loop.run(session, inbound):
                yield event

    async def cancel(self, session_id: str) -> bool:
        """Cancel the session's active run, if any."""
        return await self.loop_factory().cancel(session_id)

    def is_busy(self, session_id: str) -> bool:
        lock = self._locks.get(session_id)
        return lock is not None and lock.locked()

    def evict_idle(self) -> int:
        """Drop sessions idle longer than the timeout from memory.

        Returns:
            Number of sessions evicted
        """
        cutoff = self._clock() - timedelta(seconds=self.idle_timeout_seconds)
        idle = [
            session_id
            for session_id, session in self._sessions.items()
            if session.last_active_at < cutoff and not self.is_busy(session_id)
        ]
        for session_id in idle:
            self._sessions.pop(session_id, None)
            self._locks.pop(session_id, None)
        if idle:
            logger.info(f"Evicted {len(idle)} idle sessions")
        return len(idle)

    async def start(self, sweep_interval: float = SWEEP_INTERVAL_SECONDS) -> None:
        """Start the periodic idle sweeper."""
        if self._sweeper is not None:
            return
        self._running = True
        self._shutdown_event.clear()
        self._sweeper = asyncio.create_task(self._sweep_loop(sweep_interval))

    async def _sweep_loop(self, interval: float) -> None:
        logger.info("Session sweeper started")
        while self._running:
            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass  # Normal timeout, sweep
            if not self._running:
                break
            try:
                self.evict_idle()
            except Exception as e:
                logger.exception(f"Session sweep failed: {e}")
        logger.info("Session sweeper stopped")

    async def stop(self) -> None:
        """Stop the sweeper and cancel every active run."""
        self._running = False
        self._shutdown_event.set()
        if self._sweeper is not None:
            await self._sweeper
            self._sweeper = None

        loop = self.loop_factory()
        for session_id in list(self._sessions):
            await loop.cancel(session_id)
