"""
SQLite connection handling and schema for the RMRI engine.

Provides:
- SCHEMA_STATEMENTS: runs, agents, context_entries, results, logs
- Database: async connection management (persistent for ':memory:')
"""

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator

import aiosqlite

logger = logging.getLogger(__name__)


SCHEMA_STATEMENTS = [
    # Runs
    """
    CREATE TABLE IF NOT EXISTS runs (
        id TEXT PRIMARY KEY,
        query TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'initializing',
        config JSON NOT NULL,
        owner_id TEXT,
        current_depth INTEGER NOT NULL DEFAULT 0,
        converged INTEGER NOT NULL DEFAULT 0,
        final_depth INTEGER,
        error_message TEXT,
        metadata JSON,
        created_at TIMESTAMP NOT NULL,
        started_at TIMESTAMP,
        completed_at TIMESTAMP,
        updated_at TIMESTAMP NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_runs_owner ON runs(owner_id, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_runs_status ON runs(status)",

    # Agents
    """
    CREATE TABLE IF NOT EXISTS agents (
        run_id TEXT NOT NULL,
        id TEXT NOT NULL,
        kind TEXT NOT NULL,
        depth INTEGER NOT NULL DEFAULT 0,
        status TEXT NOT NULL DEFAULT 'pending',
        paper_id TEXT,
        attempts INTEGER NOT NULL DEFAULT 0,
        execution_time_ms INTEGER,
        error_message TEXT,
        metadata JSON,
        created_at TIMESTAMP NOT NULL,
        started_at TIMESTAMP,
        completed_at TIMESTAMP,
        PRIMARY KEY (run_id, id),
        FOREIGN KEY (run_id) REFERENCES runs(id) ON DELETE CASCADE
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_agents_run_depth ON agents(run_id, depth, kind)",
    "CREATE INDEX IF NOT EXISTS idx_agents_status ON agents(status)",

    # Versioned context
    """
    CREATE TABLE IF NOT EXISTS context_entries (
        run_id TEXT NOT NULL,
        agent_id TEXT NOT NULL,
        context_key TEXT NOT NULL,
        version INTEGER NOT NULL,
        payload JSON NOT NULL,
        summary JSON NOT NULL,
        size_bytes INTEGER NOT NULL,
        mode TEXT NOT NULL,
        metadata JSON,
        checksum TEXT NOT NULL,
        created_at TIMESTAMP NOT NULL,
        PRIMARY KEY (run_id, agent_id, context_key, version),
        FOREIGN KEY (run_id) REFERENCES runs(id) ON DELETE CASCADE
    )
    """,

    # Results
    """
    CREATE TABLE IF NOT EXISTS results (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        run_id TEXT NOT NULL,
        agent_id TEXT NOT NULL,
        depth INTEGER NOT NULL DEFAULT 0,
        result_type TEXT NOT NULL,
        content JSON NOT NULL,
        confidence REAL NOT NULL DEFAULT 0.0,
        sources JSON,
        is_final INTEGER NOT NULL DEFAULT 0,
        created_at TIMESTAMP NOT NULL,
        FOREIGN KEY (run_id) REFERENCES runs(id) ON DELETE CASCADE
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_results_run ON results(run_id, result_type, is_final)",

    # Audit log
    """
    CREATE TABLE IF NOT EXISTS logs (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        run_id TEXT NOT NULL,
        agent_id TEXT,
        level TEXT NOT NULL DEFAULT 'info',
        message TEXT NOT NULL,
        context JSON,
        created_at TIMESTAMP NOT NULL,
        FOREIGN KEY (run_id) REFERENCES runs(id) ON DELETE CASCADE
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_logs_run ON logs(run_id, id)",
]


class Database:
    """Async SQLite handle shared by the registry and the context store."""

    def __init__(self, db_path: str | Path, busy_timeout_seconds: float = 30.0):
        """
        Args:
            db_path: Path to SQLite database (use ':memory:' for in-memory)
            busy_timeout_seconds: How long a connection waits on a locked database
        """
        self.db_path = str(db_path)
        self.busy_timeout_seconds = busy_timeout_seconds
        self._initialized = False
        self._conn: aiosqlite.Connection | None = None  # Persistent connection for :memory:
        self._is_memory = self.db_path == ":memory:"

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> None:
        """Create the schema. Safe to call more than once."""
        if self._initialized:
            return

        if self._is_memory:
            self._conn = await aiosqlite.connect(self.db_path)
            db = self._conn
        else:
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            db = await aiosqlite.connect(self.db_path, timeout=self.busy_timeout_seconds)

        try:
            await db.execute("PRAGMA foreign_keys = ON")
            if not self._is_memory:
                await db.execute("PRAGMA journal_mode = WAL")

            for statement in SCHEMA_STATEMENTS:
                await db.execute(statement.strip())

            await db.commit()

            self._initialized = True
            logger.info(f"Initialized RMRI database at {self.db_path}")
        finally:
            if not self._is_memory:
                await db.close()

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[aiosqlite.Connection]:
        """Context manager for database connections."""
        if not self._initialized:
            await self.initialize()

        if self._is_memory:
            if self._conn is None:
                raise RuntimeError("Database not initialized. Call initialize() first.")
            self._conn.row_factory = aiosqlite.Row
            yield self._conn
        else:
            async with aiosqlite.connect(self.db_path, timeout=self.busy_timeout_seconds) as db:
                db.row_factory = aiosqlite.Row
                await db.execute("PRAGMA foreign_keys = ON")
                yield db

    async def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        try:
            async with self.connection() as db:
                cursor = await db.execute("SELECT 1")
                row = await cursor.fetchone()
            return bool(row and row[0] == 1)
        except Exception as e:
            logger.warning(f"Database ping failed: {e}")
            return False

    async def close(self) -> None:
        """Close database connection (important for in-memory databases)."""
        if self._conn:
            await self._conn.close()
            self._conn = None
        self._initialized = False
