"""
In-memory session store.

Process-local implementation of ISessionStore for development, tests and
single-node deployments without a database.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from typing import Optional

from ..domain.entities import AuditEntry, Session, Turn
from ..domain.ports import ISessionStore

logger = logging.getLogger(__name__)


class InMemorySessionStore(ISessionStore):
    """Session store backed by dictionaries.

    Sessions are stored as snapshots, so later mutation of a live Session
    does not leak into the store until it is saved again. Turns are kept
    in their own per-session list and appended individually.

    Usage:
        store = InMemorySessionStore()
        await store.save_session(session)
        await store.append_turn(session.session_id, Turn.user("hi"))

        loaded = await store.load_session(session.session_id)
    """

    def __init__(self):
        self._sessions: dict[str, Session] = {}
        self._turns: dict[str, list[Turn]] = {}
        self._audit: list[AuditEntry] = []
        self._lock = asyncio.Lock()

    async def load_session(self, session_id: str) -> Optional[Session]:
        async with self._lock:
            stored = self._sessions.get(session_id)
            if stored is None:
                return None
            session = copy.deepcopy(stored)
            session.turns = list(self._turns.get(session_id, []))
            return session

    async def save_session(self, session: Session) -> None:
        async with self._lock:
            snapshot = copy.copy(session)
            snapshot.turns = []
            snapshot.token_usage = copy.copy(session.token_usage)
            snapshot.pinned_facts = list(session.pinned_facts)
            snapshot.metadata = dict(session.metadata)
            self._sessions[session.session_id] = snapshot
            self._turns.setdefault(session.session_id, [])

    async def append_turn(self, session_id: str, turn: Turn) -> None:
        async with self._lock:
            self._turns.setdefault(session_id, []).append(turn)

    async def replace_turns(self, session_id: str, turns: list[Turn]) -> None:
        async with self._lock:
            self._turns[session_id] = list(turns)
        logger.debug(f"Replaced turns of session {session_id} ({len(turns)} turns)")

    async def save_audit_entry(self, entry: AuditEntry) -> None:
        async with self._lock:
            self._audit.append(entry)

    async def get_audit_entries(self, session_id: Optional[str] = None) -> list[AuditEntry]:
        """Stored audit entries, oldest first."""
        async with self._lock:
            return [
                e for e in self._audit
                if session_id is None or e.session_id == session_id
            ]

    async def delete_session(self, session_id: str) -> bool:
        async with self._lock:
            self._turns.pop(session_id, None)
            return self._sessions.pop(session_id, None) is not None
