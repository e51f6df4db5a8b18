"""
Persistent record types for the RMRI engine.

This module defines the data structures stored by the registry and context store:
- Run: one orchestration execution for a research query
- Agent: one micro/meso/meta execution inside a run
- ContextEntry / ContextSnapshot / ContextListing: versioned context blobs
- Result: agent output published for querying
- LogEntry: append-only audit event
"""

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field

from ..config import RunConfig


def utcnow() -> datetime:
    return datetime.now(UTC)


class RunStatus(StrEnum):
    INITIALIZING = "initializing"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_RUN_STATUSES


TERMINAL_RUN_STATUSES = frozenset(
    {RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED}
)


class AgentKind(StrEnum):
    MICRO = "micro"
    MESO = "meso"
    META = "meta"


class AgentStatus(StrEnum):
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_AGENT_STATUSES


TERMINAL_AGENT_STATUSES = frozenset(
    {AgentStatus.COMPLETED, AgentStatus.FAILED, AgentStatus.SKIPPED}
)


class WriteMode(StrEnum):
    OVERWRITE = "overwrite"
    APPEND = "append"


class LogLevel(StrEnum):
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class ResultType(StrEnum):
    PAPER_ANALYSIS = "paper_analysis"
    CLUSTER_SUMMARY = "cluster_summary"
    GAP_RANKING = "gap_ranking"
    CROSS_DOMAIN_PATTERNS = "cross_domain_patterns"
    RESEARCH_FRONTIERS = "research_frontiers"
    CRITIQUE = "critique"


class Run(BaseModel):
    """A single end-to-end orchestration run."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    query: str = Field(..., min_length=1)
    status: RunStatus = RunStatus.INITIALIZING
    config: RunConfig = Field(default_factory=RunConfig)
    owner_id: str | None = None
    current_depth: int = Field(default=0, ge=0)
    converged: bool = False
    final_depth: int | None = None
    error_message: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    updated_at: datetime = Field(default_factory=utcnow)

    def is_owned_by(self, user_id: str | None) -> bool:
        """Runs without an owner are visible to everyone."""
        return self.owner_id is None or user_id is None or self.owner_id == user_id


class Agent(BaseModel):
    """One agent execution record."""

    id: str
    run_id: str
    kind: AgentKind
    depth: int = Field(default=0, ge=0)
    status: AgentStatus = AgentStatus.PENDING
    paper_id: str | None = None
    attempts: int = 0
    execution_time_ms: int | None = None
    error_message: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None


class ContextSnapshot(BaseModel):
    """One version of a context entry, with either its payload or its summary."""

    run_id: str
    agent_id: str
    key: str
    version: int
    size_bytes: int
    mode: WriteMode
    metadata: dict[str, Any] = Field(default_factory=dict)
    checksum: str
    created_at: datetime
    data: Any = None
    summary: Any = None
    summary_only: bool = False


class ContextListing(BaseModel):
    """Aggregate information about one context key."""

    agent_id: str
    key: str
    size_bytes: int
    version_count: int
    last_modified: datetime


class VersionInfo(BaseModel):
    version: int
    size_bytes: int
    mode: WriteMode
    checksum: str
    created_at: datetime


class WriteResult(BaseModel):
    version: int
    size_bytes: int
    checksum: str


class Result(BaseModel):
    """Published agent output."""

    id: int | None = None
    run_id: str
    agent_id: str
    depth: int = 0
    result_type: ResultType
    content: Any
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    sources: list[str] = Field(default_factory=list)
    is_final: bool = False
    created_at: datetime = Field(default_factory=utcnow)


class LogEntry(BaseModel):
    """Append-only audit event."""

    id: int | None = None
    run_id: str
    agent_id: str | None = None
    level: LogLevel = LogLevel.INFO
    message: str
    context: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
