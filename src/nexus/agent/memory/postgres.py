"""
PostgreSQL session store.

Persists sessions, turns and the approval audit trail with asyncpg. Turns
are append-only rows ordered by position; compaction replaces a session's
turns in one transaction.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Optional, Protocol

from ..domain.entities import AuditEntry, Session, Turn
from ..domain.ports import ISessionStore
from ..exceptions import StorageError

logger = logging.getLogger(__name__)


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS agent_sessions (
    session_id TEXT PRIMARY KEY,
    parent_session_id TEXT,
    delegation_depth INTEGER NOT NULL DEFAULT 0,
    status TEXT NOT NULL,
    failure_reason TEXT,
    data JSONB NOT NULL,
    created_at TIMESTAMP NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMP NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS agent_turns (
    id TEXT PRIMARY KEY,
    session_id TEXT NOT NULL REFERENCES agent_sessions(session_id) ON DELETE CASCADE,
    position INTEGER NOT NULL,
    role TEXT NOT NULL,
    content TEXT NOT NULL,
    tool_calls JSONB,
    tool_call_id TEXT,
    is_error BOOLEAN NOT NULL DEFAULT FALSE,
    created_at TIMESTAMP NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_agent_turns_session
    ON agent_turns (session_id, position);

CREATE TABLE IF NOT EXISTS agent_approval_audit (
    approval_id TEXT PRIMARY KEY,
    session_id TEXT NOT NULL,
    tool_name TEXT NOT NULL,
    params_summary TEXT NOT NULL,
    decided_by TEXT NOT NULL,
    decision TEXT NOT NULL,
    channel TEXT,
    decided_at TIMESTAMP NOT NULL
);
"""


class IAsyncDBPool(Protocol):
    """Protocol for async database pool."""

    def acquire(self) -> Any: ...
    async def execute(self, query: str, *args) -> str: ...
    async def fetch(self, query: str, *args) -> list[Any]: ...
    async def fetchrow(self, query: str, *args) -> Optional[Any]: ...
    async def fetchval(self, query: str, *args) -> Any: ...


def _loads(value: Any) -> Any:
    """JSONB columns arrive as text unless a codec is registered."""
    if isinstance(value, str):
        return json.loads(value)
    return value


class PostgresSessionStore(ISessionStore):
    """PostgreSQL-based session store.

    Usage:
        pool = await asyncpg.create_pool(database_url)
        store = PostgresSessionStore(pool)
        await store.ensure_schema()

        await store.save_session(session)
        await store.append_turn(session.session_id, turn)
        session = await store.load_session(session_id)

    Errors:
        Database failures are raised as StorageError.
    """

    def __init__(self, db_pool: IAsyncDBPool):
        """Initialize the session store.

        Args:
            db_pool: Async database connection pool
        """
        self.db = db_pool

    async def ensure_schema(self) -> None:
        """Create tables if they do not exist."""
        try:
            async with self.db.acquire() as conn:
                await conn.execute(SCHEMA_SQL)
        except Exception as e:
            raise StorageError("Failed to create agent schema", cause=e) from e
        logger.info("Agent session schema ready")

    async def load_session(self, session_id: str) -> Optional[Session]:
        try:
            async with self.db.acquire() as conn:
                row = await conn.fetchrow(
                    "SELECT data FROM agent_sessions WHERE session_id = $1",
                    session_id,
                )
                if not row:
                    return None

                turn_rows = await conn.fetch(
                    """
                    SELECT id, role, content, tool_calls, tool_call_id, is_error, created_at
                    FROM agent_turns
                    WHERE session_id = $1
                    ORDER BY position ASC
                    """,
                    session_id,
                )
        except Exception as e:
            raise StorageError(f"Failed to load session {session_id}", cause=e) from e

        turns = [
            Turn.from_dict({
                "id": r["id"],
                "role": r["role"],
                "content": r["content"],
                "tool_calls": _loads(r["tool_calls"]),
                "tool_call_id": r["tool_call_id"],
                "is_error": r["is_error"],
                "created_at": r["created_at"].isoformat() if r["created_at"] else None,
            })
            for r in turn_rows
        ]
        return Session.from_dict(_loads(row["data"]), turns=turns)

    async def save_session(self, session: Session) -> None:
        data = json.dumps(session.to_dict(include_turns=False), default=str)
        try:
            async with self.db.acquire() as conn:
                await conn.execute(
                    """
                    INSERT INTO agent_sessions (
                        session_id, parent_session_id, delegation_depth,
                        status, failure_reason, data, created_at, updated_at
                    ) VALUES ($1, $2, $3, $4, $5, $6::jsonb, $7, NOW())
                    ON CONFLICT (session_id) DO UPDATE SET
                        status = EXCLUDED.status,
                        failure_reason = EXCLUDED.failure_reason,
                        data = EXCLUDED.data,
                        updated_at = NOW()
                    """,
                    session.session_id,
                    session.parent_session_id,
                    session.delegation_depth,
                    session.status.value,
                    session.failure_reason,
                    data,
                    session.created_at,
                )
        except Exception as e:
            raise StorageError(f"Failed to save session {session.session_id}", cause=e) from e

    async def append_turn(self, session_id: str, turn: Turn) -> None:
        try:
            async with self.db.acquire() as conn:
                async with conn.transaction():
                    position = await conn.fetchval(
                        "SELECT COALESCE(MAX(position), -1) + 1 FROM agent_turns WHERE session_id = $1",
                        session_id,
                    )
                    await self._insert_turn(conn, session_id, position, turn)
        except Exception as e:
            raise StorageError(f"Failed to append turn to session {session_id}", cause=e) from e

    async def replace_turns(self, session_id: str, turns: list[Turn]) -> None:
        try:
            async with self.db.acquire() as conn:
                async with conn.transaction():
                    await conn.execute(
                        "DELETE FROM agent_turns WHERE session_id = $1", session_id
                    )
                    for position, turn in enumerate(turns):
                        await self._insert_turn(conn, session_id, position, turn)
        except Exception as e:
            raise StorageError(f"Failed to replace turns of session {session_id}", cause=e) from e
        logger.debug(f"Replaced turns of session {session_id} ({len(turns)} turns)")

    async def _insert_turn(self, conn, session_id: str, position: int, turn: Turn) -> None:
        tool_calls_json = None
        if turn.tool_calls:
            tool_calls_json = json.dumps([tc.to_dict() for tc in turn.tool_calls], default=str)

        await conn.execute(
            """
            INSERT INTO agent_turns (
                id, session_id, position, role, content,
                tool_calls, tool_call_id, is_error, created_at
            ) VALUES ($1, $2, $3, $4, $5, $6::jsonb, $7, $8, $9)
            """,
            turn.id,
            session_id,
            position,
            turn.role.value,
            turn.content,
            tool_calls_json,
            turn.tool_call_id,
            turn.is_error,
            turn.created_at,
        )

    async def save_audit_entry(self, entry: AuditEntry) -> None:
        try:
            async with self.db.acquire() as conn:
                await conn.execute(
                    """
                    INSERT INTO agent_approval_audit (
                        approval_id, session_id, tool_name, params_summary,
                        decided_by, decision, channel, decided_at
                    ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                    ON CONFLICT (approval_id) DO NOTHING
                    """,
                    entry.approval_id,
                    entry.session_id,
                    entry.tool_name,
                    entry.params_summary,
                    entry.decided_by,
                    entry.decision.value,
                    entry.channel,
                    entry.decided_at,
                )
        except Exception as e:
            raise StorageError(
                f"Failed to save audit entry {entry.approval_id}", cause=e
            ) from e
