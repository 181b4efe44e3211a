"""Session persistence.

Provides:
- In-memory session store for development and tests
- PostgreSQL session store (asyncpg) with turns and approval audit
"""

from .postgres import SCHEMA_SQL, PostgresSessionStore
from .session_store import InMemorySessionStore

__all__ = [
    "InMemorySessionStore",
    "PostgresSessionStore",
    "SCHEMA_SQL",
]
