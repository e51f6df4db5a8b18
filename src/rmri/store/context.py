"""
Versioned context store for passing agent outputs between stages and rounds.

Provides:
- write: overwrite/append writes, each creating a new immutable version
- read: latest, specific version, summary-only, or aggregate across a run
- list / versions: key listing and per-key version history
- Depth-indexed key helpers (micro/{depth}/{paper}, meso/{depth}, meta/{depth})
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
from datetime import datetime
from typing import Any

import aiosqlite

from ..errors import InvalidModeError, NotFoundError, ValidationError, VersionNotFoundError
from .database import Database
from .models import (
    ContextListing,
    ContextSnapshot,
    VersionInfo,
    WriteMode,
    WriteResult,
    utcnow,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_PAYLOAD_BYTES = 10 * 1024 * 1024
SUMMARY_TEXT_LIMIT = 200
SUMMARY_LIST_LIMIT = 10
SUMMARY_MAX_DEPTH = 3

_SNAPSHOT_COLUMNS = (
    "run_id, agent_id, context_key, version, summary, size_bytes, mode, metadata, checksum, created_at"
)


def micro_key(depth: int, paper_id: str) -> str:
    return f"micro/{depth}/{paper_id}"


def meso_key(depth: int) -> str:
    return f"meso/{depth}"


def meta_key(depth: int) -> str:
    return f"meta/{depth}"


def summarize(value: Any, depth: int = 0) -> Any:
    """
    Bounded projection of a payload for prompts and listings.

    Strings are truncated, long lists collapse to a count plus the first items,
    and nesting beyond SUMMARY_MAX_DEPTH becomes a type descriptor.
    """
    if isinstance(value, str):
        if len(value) > SUMMARY_TEXT_LIMIT:
            return value[:SUMMARY_TEXT_LIMIT] + "…"
        return value

    if isinstance(value, list):
        if depth >= SUMMARY_MAX_DEPTH:
            return f"<list with {len(value)} items>"
        items = [summarize(v, depth + 1) for v in value[:SUMMARY_LIST_LIMIT]]
        if len(value) > SUMMARY_LIST_LIMIT:
            return {"count": len(value), "items": items}
        return items

    if isinstance(value, dict):
        if depth >= SUMMARY_MAX_DEPTH:
            return f"<object with keys: {', '.join(list(value)[:SUMMARY_LIST_LIMIT])}>"
        return {k: summarize(v, depth + 1) for k, v in value.items()}

    return value


def merge_payloads(previous: Any, new: Any) -> Any:
    """
    Combine the latest payload with appended data.

    Raises:
        InvalidModeError: If the two payloads cannot be merged
    """
    if isinstance(previous, str) and isinstance(new, str):
        return f"{previous}\n\n{new}"
    if isinstance(previous, list) and isinstance(new, list):
        return previous + new
    if isinstance(previous, dict) and isinstance(new, dict):
        return {**previous, **new}
    raise InvalidModeError(
        f"Cannot append {type(new).__name__} to stored {type(previous).__name__}"
    )


def _canonical(data: Any) -> str:
    try:
        return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Context payload is not JSON-serializable: {e}") from e


def _row_to_snapshot(row: aiosqlite.Row, summary_only: bool) -> ContextSnapshot:
    snapshot = ContextSnapshot(
        run_id=row["run_id"],
        agent_id=row["agent_id"],
        key=row["context_key"],
        version=row["version"],
        size_bytes=row["size_bytes"],
        mode=WriteMode(row["mode"]),
        metadata=json.loads(row["metadata"]) if row["metadata"] else {},
        checksum=row["checksum"],
        created_at=datetime.fromisoformat(row["created_at"]),
        summary=json.loads(row["summary"]),
        summary_only=summary_only,
    )
    if not summary_only:
        snapshot.data = json.loads(row["payload"])
    return snapshot


class ContextStore:
    """Versioned key/value blob storage scoped by run and agent."""

    def __init__(
        self,
        database: Database,
        max_payload_bytes: int = DEFAULT_MAX_PAYLOAD_BYTES,
        strict_append: bool = False,
    ):
        """
        Args:
            database: Shared database handle
            max_payload_bytes: Upper bound on a stored payload
            strict_append: Reject append when no prior version exists
        """
        self.database = database
        self.max_payload_bytes = max_payload_bytes
        self.strict_append = strict_append
        self._write_lock = asyncio.Lock()

    async def _require_run(self, db: aiosqlite.Connection, run_id: str) -> None:
        cursor = await db.execute("SELECT 1 FROM runs WHERE id = ?", (run_id,))
        if await cursor.fetchone() is None:
            raise NotFoundError(f"Run not found: {run_id}")

    async def write(
        self,
        run_id: str,
        agent_id: str,
        key: str,
        data: Any,
        mode: WriteMode | str = WriteMode.OVERWRITE,
        metadata: dict[str, Any] | None = None,
        dedupe: bool = False,
    ) -> WriteResult:
        """
        Write a new version of a context key.

        Args:
            run_id: Owning run
            agent_id: Writing agent
            key: Context key
            data: JSON-serializable payload
            mode: 'overwrite' or 'append'
            metadata: Free-form metadata stored with the version
            dedupe: Return the latest version instead of writing when the
                resulting payload has the same checksum

        Returns:
            WriteResult with the version number and stored size

        Raises:
            InvalidModeError: Unknown mode, or append onto an incompatible payload
            ValidationError: Payload too large or not serializable
            NotFoundError: Unknown run
        """
        try:
            mode = WriteMode(mode)
        except ValueError as e:
            raise InvalidModeError(f"Unknown write mode: {mode}") from e

        if not key:
            raise ValidationError("Context key is required")

        async with self._write_lock:
            async with self.database.connection() as db:
                await self._require_run(db, run_id)

                cursor = await db.execute(
                    """
                    SELECT version, payload, checksum FROM context_entries
                    WHERE run_id = ? AND agent_id = ? AND context_key = ?
                    ORDER BY version DESC LIMIT 1
                    """,
                    (run_id, agent_id, key),
                )
                latest = await cursor.fetchone()

                if mode == WriteMode.APPEND:
                    if latest is None:
                        if self.strict_append:
                            raise InvalidModeError(
                                f"Cannot append to '{key}': no prior version exists"
                            )
                        payload = data
                    else:
                        payload = merge_payloads(json.loads(latest["payload"]), data)
                else:
                    payload = data

                encoded = _canonical(payload)
                size_bytes = len(encoded.encode("utf-8"))
                if size_bytes > self.max_payload_bytes:
                    raise ValidationError(
                        f"Context payload of {size_bytes} bytes exceeds limit of "
                        f"{self.max_payload_bytes} bytes"
                    )
                checksum = hashlib.sha256(encoded.encode("utf-8")).hexdigest()

                if dedupe and latest is not None and latest["checksum"] == checksum:
                    logger.debug(f"Skipped duplicate write of {run_id}/{agent_id}/{key}")
                    return WriteResult(
                        version=latest["version"], size_bytes=size_bytes, checksum=checksum
                    )

                version = (latest["version"] if latest else 0) + 1
                await db.execute(
                    """
                    INSERT INTO context_entries (
                        run_id, agent_id, context_key, version, payload, summary,
                        size_bytes, mode, metadata, checksum, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        run_id,
                        agent_id,
                        key,
                        version,
                        encoded,
                        json.dumps(summarize(payload), ensure_ascii=False),
                        size_bytes,
                        mode.value,
                        json.dumps(metadata or {}),
                        checksum,
                        utcnow().isoformat(),
                    ),
                )
                await db.commit()

        logger.debug(f"Wrote {run_id}/{agent_id}/{key} v{version} ({size_bytes} bytes, {mode.value})")
        return WriteResult(version=version, size_bytes=size_bytes, checksum=checksum)

    async def read(
        self,
        run_id: str,
        agent_id: str | None = None,
        key: str | None = None,
        summary_only: bool = False,
        version: int | None = None,
    ) -> ContextSnapshot | list[ContextSnapshot]:
        """
        Read context.

        With both agent_id and key, returns one snapshot (latest or the given
        version). Otherwise returns the latest snapshot of every matching key.

        Raises:
            NotFoundError: Unknown run or key
            VersionNotFoundError: Requested version does not exist
            ValidationError: Version requested without agent_id and key
        """
        if version is not None and (agent_id is None or key is None):
            raise ValidationError("A specific version requires both agent_id and key")

        columns = _SNAPSHOT_COLUMNS if summary_only else f"{_SNAPSHOT_COLUMNS}, payload"

        async with self.database.connection() as db:
            await self._require_run(db, run_id)

            if agent_id is not None and key is not None:
                if version is None:
                    cursor = await db.execute(
                        f"""
                        SELECT {columns} FROM context_entries
                        WHERE run_id = ? AND agent_id = ? AND context_key = ?
                        ORDER BY version DESC LIMIT 1
                        """,
                        (run_id, agent_id, key),
                    )
                else:
                    cursor = await db.execute(
                        f"""
                        SELECT {columns} FROM context_entries
                        WHERE run_id = ? AND agent_id = ? AND context_key = ? AND version = ?
                        """,
                        (run_id, agent_id, key, version),
                    )
                row = await cursor.fetchone()

                if row is None:
                    if version is not None and await self._key_exists(db, run_id, agent_id, key):
                        raise VersionNotFoundError(key, version)
                    raise NotFoundError(f"Context not found: {agent_id}/{key}")
                return _row_to_snapshot(row, summary_only)

            filters = ["run_id = ?"]
            params: list[Any] = [run_id]
            if agent_id is not None:
                filters.append("agent_id = ?")
                params.append(agent_id)
            if key is not None:
                filters.append("context_key = ?")
                params.append(key)
            where = " AND ".join(filters)

            cursor = await db.execute(
                f"""
                SELECT {columns} FROM context_entries c
                WHERE {where} AND version = (
                    SELECT MAX(version) FROM context_entries l
                    WHERE l.run_id = c.run_id AND l.agent_id = c.agent_id
                      AND l.context_key = c.context_key
                )
                ORDER BY agent_id, context_key
                """,
                params,
            )
            rows = await cursor.fetchall()

        return [_row_to_snapshot(row, summary_only) for row in rows]

    async def _key_exists(
        self, db: aiosqlite.Connection, run_id: str, agent_id: str, key: str
    ) -> bool:
        cursor = await db.execute(
            "SELECT 1 FROM context_entries WHERE run_id = ? AND agent_id = ? AND context_key = ? LIMIT 1",
            (run_id, agent_id, key),
        )
        return await cursor.fetchone() is not None

    async def list(self, run_id: str, agent_id: str | None = None) -> list[ContextListing]:
        """List context keys with latest size, version count, and last write time."""
        sql = """
            SELECT c.agent_id, c.context_key, c.size_bytes, c.created_at, agg.version_count
            FROM context_entries c
            JOIN (
                SELECT agent_id, context_key, MAX(version) AS latest, COUNT(*) AS version_count
                FROM context_entries WHERE run_id = ?
                GROUP BY agent_id, context_key
            ) agg
              ON c.agent_id = agg.agent_id AND c.context_key = agg.context_key
             AND c.version = agg.latest
            WHERE c.run_id = ?
        """
        params: list[Any] = [run_id, run_id]
        if agent_id is not None:
            sql += " AND c.agent_id = ?"
            params.append(agent_id)
        sql += " ORDER BY c.agent_id, c.context_key"

        async with self.database.connection() as db:
            await self._require_run(db, run_id)
            cursor = await db.execute(sql, params)
            rows = await cursor.fetchall()

        return [
            ContextListing(
                agent_id=row["agent_id"],
                key=row["context_key"],
                size_bytes=row["size_bytes"],
                version_count=row["version_count"],
                last_modified=datetime.fromisoformat(row["created_at"]),
            )
            for row in rows
        ]

    async def versions(self, run_id: str, agent_id: str, key: str) -> list[VersionInfo]:
        """
        Version history of one key, oldest first.

        Raises:
            NotFoundError: Unknown run or key
        """
        async with self.database.connection() as db:
            await self._require_run(db, run_id)
            cursor = await db.execute(
                """
                SELECT version, size_bytes, mode, checksum, created_at FROM context_entries
                WHERE run_id = ? AND agent_id = ? AND context_key = ?
                ORDER BY version
                """,
                (run_id, agent_id, key),
            )
            rows = await cursor.fetchall()

        if not rows:
            raise NotFoundError(f"Context not found: {agent_id}/{key}")

        return [
            VersionInfo(
                version=row["version"],
                size_bytes=row["size_bytes"],
                mode=WriteMode(row["mode"]),
                checksum=row["checksum"],
                created_at=datetime.fromisoformat(row["created_at"]),
            )
            for row in rows
        ]
