"""
Run/Agent/Result/Log registry.

Provides:
- Run lifecycle persistence with terminal-state guards
- Agent records and guarded status transitions
- Result publication and final-result marking
- Append-only structured log
"""

import json
import logging
from datetime import datetime
from typing import Any

import aiosqlite

from ..errors import NotFoundError
from .database import Database
from .models import (
    TERMINAL_AGENT_STATUSES,
    TERMINAL_RUN_STATUSES,
    Agent,
    AgentKind,
    AgentStatus,
    LogEntry,
    LogLevel,
    Result,
    ResultType,
    Run,
    RunStatus,
    utcnow,
)

logger = logging.getLogger(__name__)

_TERMINAL_RUNS_SQL = ", ".join(f"'{s.value}'" for s in sorted(TERMINAL_RUN_STATUSES))
_TERMINAL_AGENTS_SQL = ", ".join(f"'{s.value}'" for s in sorted(TERMINAL_AGENT_STATUSES))


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse_dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _loads(value: str | None, default: Any) -> Any:
    return json.loads(value) if value else default


def _row_to_run(row: aiosqlite.Row) -> Run:
    return Run(
        id=row["id"],
        query=row["query"],
        status=RunStatus(row["status"]),
        config=json.loads(row["config"]),
        owner_id=row["owner_id"],
        current_depth=row["current_depth"],
        converged=bool(row["converged"]),
        final_depth=row["final_depth"],
        error_message=row["error_message"],
        metadata=_loads(row["metadata"], {}),
        created_at=_parse_dt(row["created_at"]),
        started_at=_parse_dt(row["started_at"]),
        completed_at=_parse_dt(row["completed_at"]),
        updated_at=_parse_dt(row["updated_at"]),
    )


def _row_to_agent(row: aiosqlite.Row) -> Agent:
    return Agent(
        id=row["id"],
        run_id=row["run_id"],
        kind=AgentKind(row["kind"]),
        depth=row["depth"],
        status=AgentStatus(row["status"]),
        paper_id=row["paper_id"],
        attempts=row["attempts"],
        execution_time_ms=row["execution_time_ms"],
        error_message=row["error_message"],
        metadata=_loads(row["metadata"], {}),
        created_at=_parse_dt(row["created_at"]),
        started_at=_parse_dt(row["started_at"]),
        completed_at=_parse_dt(row["completed_at"]),
    )


def _row_to_result(row: aiosqlite.Row) -> Result:
    return Result(
        id=row["id"],
        run_id=row["run_id"],
        agent_id=row["agent_id"],
        depth=row["depth"],
        result_type=ResultType(row["result_type"]),
        content=json.loads(row["content"]),
        confidence=row["confidence"],
        sources=_loads(row["sources"], []),
        is_final=bool(row["is_final"]),
        created_at=_parse_dt(row["created_at"]),
    )


def _row_to_log(row: aiosqlite.Row) -> LogEntry:
    return LogEntry(
        id=row["id"],
        run_id=row["run_id"],
        agent_id=row["agent_id"],
        level=LogLevel(row["level"]),
        message=row["message"],
        context=_loads(row["context"], {}),
        created_at=_parse_dt(row["created_at"]),
    )


class Registry:
    """Persistent record of runs, agents, results, and logs."""

    def __init__(self, database: Database):
        self.database = database

    # --- Runs ---

    async def create_run(self, run: Run) -> Run:
        """Insert a new run record."""
        async with self.database.connection() as db:
            await db.execute(
                """
                INSERT INTO runs (
                    id, query, status, config, owner_id, current_depth, converged,
                    final_depth, error_message, metadata, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    run.id,
                    run.query,
                    run.status.value,
                    run.config.model_dump_json(),
                    run.owner_id,
                    run.current_depth,
                    int(run.converged),
                    run.final_depth,
                    run.error_message,
                    json.dumps(run.metadata),
                    _iso(run.created_at),
                    _iso(run.updated_at),
                ),
            )
            await db.commit()

        logger.debug(f"Created run {run.id}: {run.query[:50]}")
        return run

    async def get_run(self, run_id: str) -> Run | None:
        """Get a run by ID, or None."""
        async with self.database.connection() as db:
            cursor = await db.execute("SELECT * FROM runs WHERE id = ?", (run_id,))
            row = await cursor.fetchone()
        return _row_to_run(row) if row else None

    async def require_run(self, run_id: str) -> Run:
        """Get a run by ID or raise NotFoundError."""
        run = await self.get_run(run_id)
        if run is None:
            raise NotFoundError(f"Run not found: {run_id}")
        return run

    async def list_runs(
        self,
        owner_id: str | None = None,
        statuses: list[RunStatus] | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Run]:
        """List runs, newest first."""
        clauses: list[str] = []
        params: list[Any] = []
        if owner_id is not None:
            clauses.append("owner_id = ?")
            params.append(owner_id)
        if statuses:
            clauses.append(f"status IN ({', '.join('?' for _ in statuses)})")
            params.extend(s.value for s in statuses)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        async with self.database.connection() as db:
            cursor = await db.execute(
                f"SELECT * FROM runs {where} ORDER BY created_at DESC LIMIT ? OFFSET ?",
                (*params, limit, offset),
            )
            rows = await cursor.fetchall()
        return [_row_to_run(row) for row in rows]

    async def update_run_status(
        self,
        run_id: str,
        status: RunStatus,
        error_message: str | None = None,
    ) -> bool:
        """
        Transition a run's status.

        Terminal runs are never modified; the update is a no-op for them.

        Returns:
            True if the row changed
        """
        now = utcnow()
        started_at = _iso(now) if status == RunStatus.EXECUTING else None
        completed_at = _iso(now) if status in TERMINAL_RUN_STATUSES else None

        async with self.database.connection() as db:
            cursor = await db.execute(
                f"""
                UPDATE runs
                SET status = ?,
                    error_message = COALESCE(?, error_message),
                    started_at = COALESCE(?, started_at),
                    completed_at = COALESCE(?, completed_at),
                    updated_at = ?
                WHERE id = ? AND status NOT IN ({_TERMINAL_RUNS_SQL})
                """,
                (status.value, error_message, started_at, completed_at, _iso(now), run_id),
            )
            await db.commit()
            changed = cursor.rowcount > 0

        if changed:
            logger.debug(f"Run {run_id} -> {status.value}")
        return changed

    async def update_run_progress(
        self,
        run_id: str,
        current_depth: int | None = None,
        converged: bool | None = None,
        final_depth: int | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Record depth/convergence bookkeeping on a non-terminal run."""
        run = await self.require_run(run_id)
        merged_metadata = {**run.metadata, **(metadata or {})}

        async with self.database.connection() as db:
            await db.execute(
                f"""
                UPDATE runs
                SET current_depth = ?, converged = ?, final_depth = ?, metadata = ?, updated_at = ?
                WHERE id = ? AND status NOT IN ({_TERMINAL_RUNS_SQL})
                """,
                (
                    run.current_depth if current_depth is None else current_depth,
                    int(run.converged if converged is None else converged),
                    run.final_depth if final_depth is None else final_depth,
                    json.dumps(merged_metadata),
                    _iso(utcnow()),
                    run_id,
                ),
            )
            await db.commit()

    # --- Agents ---

    async def create_agent(self, agent: Agent) -> Agent:
        """Insert a new agent record."""
        async with self.database.connection() as db:
            await db.execute(
                """
                INSERT INTO agents (
                    run_id, id, kind, depth, status, paper_id, attempts, metadata, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    agent.run_id,
                    agent.id,
                    agent.kind.value,
                    agent.depth,
                    agent.status.value,
                    agent.paper_id,
                    agent.attempts,
                    json.dumps(agent.metadata),
                    _iso(agent.created_at),
                ),
            )
            await db.commit()
        return agent

    async def get_agent(self, run_id: str, agent_id: str) -> Agent | None:
        async with self.database.connection() as db:
            cursor = await db.execute(
                "SELECT * FROM agents WHERE run_id = ? AND id = ?", (run_id, agent_id)
            )
            row = await cursor.fetchone()
        return _row_to_agent(row) if row else None

    async def transition_agent(
        self,
        run_id: str,
        agent_id: str,
        status: AgentStatus,
        attempts: int | None = None,
        execution_time_ms: int | None = None,
        error_message: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> bool:
        """
        Move an agent to a new status.

        Terminal agents are immutable; the update is a no-op for them.

        Returns:
            True if the row changed
        """
        now = _iso(utcnow())
        started_at = now if status == AgentStatus.ACTIVE else None
        completed_at = now if status in TERMINAL_AGENT_STATUSES else None

        async with self.database.connection() as db:
            cursor = await db.execute(
                f"""
                UPDATE agents
                SET status = ?,
                    attempts = COALESCE(?, attempts),
                    execution_time_ms = COALESCE(?, execution_time_ms),
                    error_message = COALESCE(?, error_message),
                    metadata = COALESCE(?, metadata),
                    started_at = COALESCE(started_at, ?),
                    completed_at = COALESCE(?, completed_at)
                WHERE run_id = ? AND id = ? AND status NOT IN ({_TERMINAL_AGENTS_SQL})
                """,
                (
                    status.value,
                    attempts,
                    execution_time_ms,
                    error_message,
                    json.dumps(metadata) if metadata is not None else None,
                    started_at,
                    completed_at,
                    run_id,
                    agent_id,
                ),
            )
            await db.commit()
            return cursor.rowcount > 0

    async def fail_open_agents(self, run_id: str, reason: str) -> int:
        """
        Fail every pending or active agent of a run.

        Returns:
            Number of agents failed
        """
        now = _iso(utcnow())
        async with self.database.connection() as db:
            cursor = await db.execute(
                f"""
                UPDATE agents
                SET status = ?,
                    error_message = COALESCE(error_message, ?),
                    completed_at = ?
                WHERE run_id = ? AND status NOT IN ({_TERMINAL_AGENTS_SQL})
                """,
                (AgentStatus.FAILED.value, reason, now, run_id),
            )
            await db.commit()
            return cursor.rowcount

    async def list_agents(
        self,
        run_id: str,
        depth: int | None = None,
        kind: AgentKind | None = None,
    ) -> list[Agent]:
        """List a run's agents in creation order."""
        sql = "SELECT * FROM agents WHERE run_id = ?"
        params: list[Any] = [run_id]
        if depth is not None:
            sql += " AND depth = ?"
            params.append(depth)
        if kind is not None:
            sql += " AND kind = ?"
            params.append(kind.value)
        sql += " ORDER BY depth, created_at, rowid"

        async with self.database.connection() as db:
            cursor = await db.execute(sql, params)
            rows = await cursor.fetchall()
        return [_row_to_agent(row) for row in rows]

    async def agent_counts(self, run_id: str) -> tuple[dict[str, int], dict[str, int]]:
        """
        Count a run's agents.

        Returns:
            (counts by status with every status present, counts by kind with every kind present)
        """
        by_status = {s.value: 0 for s in AgentStatus}
        by_kind = {k.value: 0 for k in AgentKind}

        async with self.database.connection() as db:
            cursor = await db.execute(
                "SELECT status, kind, COUNT(*) AS n FROM agents WHERE run_id = ? GROUP BY status, kind",
                (run_id,),
            )
            rows = await cursor.fetchall()

        for row in rows:
            by_status[row["status"]] += row["n"]
            by_kind[row["kind"]] += row["n"]
        return by_status, by_kind

    async def agent_counts_for_runs(
        self, statuses: list[AgentStatus]
    ) -> dict[str, int]:
        """Count agents in the given statuses across all executing runs, by kind."""
        counts = {k.value: 0 for k in AgentKind}
        async with self.database.connection() as db:
            cursor = await db.execute(
                f"""
                SELECT a.kind, COUNT(*) AS n
                FROM agents a JOIN runs r ON a.run_id = r.id
                WHERE r.status = ? AND a.status IN ({', '.join('?' for _ in statuses)})
                GROUP BY a.kind
                """,
                (RunStatus.EXECUTING.value, *(s.value for s in statuses)),
            )
            rows = await cursor.fetchall()
        for row in rows:
            counts[row["kind"]] = row["n"]
        return counts

    # --- Results ---

    async def add_result(self, result: Result) -> Result:
        """Publish a result."""
        async with self.database.connection() as db:
            cursor = await db.execute(
                """
                INSERT INTO results (
                    run_id, agent_id, depth, result_type, content, confidence,
                    sources, is_final, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    result.run_id,
                    result.agent_id,
                    result.depth,
                    result.result_type.value,
                    json.dumps(result.content),
                    result.confidence,
                    json.dumps(result.sources),
                    int(result.is_final),
                    _iso(result.created_at),
                ),
            )
            await db.commit()
            result.id = cursor.lastrowid
        return result

    async def list_results(
        self,
        run_id: str,
        result_type: ResultType | None = None,
        final_only: bool = False,
        depth: int | None = None,
    ) -> list[Result]:
        """List a run's results in publication order."""
        sql = "SELECT * FROM results WHERE run_id = ?"
        params: list[Any] = [run_id]
        if result_type is not None:
            sql += " AND result_type = ?"
            params.append(result_type.value)
        if final_only:
            sql += " AND is_final = 1"
        if depth is not None:
            sql += " AND depth = ?"
            params.append(depth)
        sql += " ORDER BY id"

        async with self.database.connection() as db:
            cursor = await db.execute(sql, params)
            rows = await cursor.fetchall()
        return [_row_to_result(row) for row in rows]

    async def mark_final(self, run_id: str, agent_id: str) -> int:
        """
        Flag every result of the terminating meta agent as final.

        Returns:
            Number of results marked
        """
        async with self.database.connection() as db:
            cursor = await db.execute(
                "UPDATE results SET is_final = 1 WHERE run_id = ? AND agent_id = ?",
                (run_id, agent_id),
            )
            await db.commit()
            return cursor.rowcount

    # --- Logs ---

    async def append_log(
        self,
        run_id: str,
        message: str,
        level: LogLevel = LogLevel.INFO,
        agent_id: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> LogEntry:
        """Append a log entry."""
        entry = LogEntry(
            run_id=run_id,
            agent_id=agent_id,
            level=level,
            message=message,
            context=context or {},
        )
        async with self.database.connection() as db:
            cursor = await db.execute(
                """
                INSERT INTO logs (run_id, agent_id, level, message, context, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.run_id,
                    entry.agent_id,
                    entry.level.value,
                    entry.message,
                    json.dumps(entry.context, default=str),
                    _iso(entry.created_at),
                ),
            )
            await db.commit()
            entry.id = cursor.lastrowid
        return entry

    async def list_logs(
        self,
        run_id: str,
        level: LogLevel | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[LogEntry]:
        """List log entries oldest first."""
        sql = "SELECT * FROM logs WHERE run_id = ?"
        params: list[Any] = [run_id]
        if level is not None:
            sql += " AND level = ?"
            params.append(level.value)
        sql += " ORDER BY id LIMIT ? OFFSET ?"
        params.extend([limit, offset])

        async with self.database.connection() as db:
            cursor = await db.execute(sql, params)
            rows = await cursor.fetchall()
        return [_row_to_log(row) for row in rows]

    async def recent_logs(self, run_id: str, count: int = 10) -> list[LogEntry]:
        """Last `count` log entries, oldest first."""
        async with self.database.connection() as db:
            cursor = await db.execute(
                "SELECT * FROM logs WHERE run_id = ? ORDER BY id DESC LIMIT ?",
                (run_id, count),
            )
            rows = await cursor.fetchall()
        return [_row_to_log(row) for row in reversed(rows)]
