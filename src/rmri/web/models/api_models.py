"""
Pydantic models for API requests and responses.

Field names are snake_case in Python and camelCase on the wire.
"""

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ...agents.protocol import Paper
from ...store.models import (
    Agent,
    ContextListing,
    ContextSnapshot,
    LogEntry,
    Result,
    Run,
    VersionInfo,
    WriteMode,
    WriteResult,
)


class ApiModel(BaseModel):
    """Base model serialized with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# Run API models


class StartRunRequest(ApiModel):
    query: str
    config: dict[str, Any] = Field(default_factory=dict)


class StartRunResponse(ApiModel):
    run_id: str
    status: str


class RunResponse(ApiModel):
    """Run metadata."""

    id: str
    query: str
    status: str
    owner_id: str | None = None
    config: dict[str, Any] = Field(default_factory=dict)
    current_depth: int = 0
    converged: bool = False
    final_depth: int | None = None
    error_message: str | None = None
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @classmethod
    def from_run(cls, run: Run) -> "RunResponse":
        return cls(
            id=run.id,
            query=run.query,
            status=run.status.value,
            owner_id=run.owner_id,
            config=run.config.model_dump(by_alias=True),
            current_depth=run.current_depth,
            converged=run.converged,
            final_depth=run.final_depth,
            error_message=run.error_message,
            created_at=run.created_at,
            started_at=run.started_at,
            completed_at=run.completed_at,
        )


class RunsListResponse(ApiModel):
    runs: list[RunResponse]
    limit: int = Field(ge=1)
    offset: int = Field(ge=0)


class ExecuteRunRequest(ApiModel):
    papers: list[Paper] = Field(default_factory=list)
    agent_backend: str | None = None


class RunStateResponse(ApiModel):
    """Response of execute and cancel."""

    run_id: str
    status: str


class LogEntryResponse(ApiModel):
    id: int | None = None
    agent_id: str | None = None
    level: str
    message: str
    context: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime

    @classmethod
    def from_entry(cls, entry: LogEntry) -> "LogEntryResponse":
        return cls(
            id=entry.id,
            agent_id=entry.agent_id,
            level=entry.level.value,
            message=entry.message,
            context=entry.context,
            created_at=entry.created_at,
        )


class RunStatusResponse(ApiModel):
    """Progress snapshot of a run."""

    run_id: str
    status: str
    progress: int = Field(ge=0, le=100)
    agents_by_status: dict[str, int]
    agents_by_type: dict[str, int]
    elapsed_ms: int = Field(ge=0)
    recent_logs: list[LogEntryResponse] = Field(default_factory=list)
    current_depth: int = 0
    converged: bool = False
    final_depth: int | None = None
    error_message: str | None = None


class ResultResponse(ApiModel):
    id: int | None = None
    agent_id: str
    depth: int
    result_type: str
    content: Any
    confidence: float
    sources: list[str] = Field(default_factory=list)
    is_final: bool = False
    created_at: datetime

    @classmethod
    def from_result(cls, result: Result) -> "ResultResponse":
        return cls(
            id=result.id,
            agent_id=result.agent_id,
            depth=result.depth,
            result_type=result.result_type.value,
            content=result.content,
            confidence=result.confidence,
            sources=result.sources,
            is_final=result.is_final,
            created_at=result.created_at,
        )


class ResultsResponse(ApiModel):
    run_id: str
    results: list[ResultResponse]


class AgentResponse(ApiModel):
    id: str
    kind: str
    depth: int
    status: str
    paper_id: str | None = None
    attempts: int = 0
    execution_time_ms: int | None = None
    error_message: str | None = None
    created_at: datetime
    completed_at: datetime | None = None

    @classmethod
    def from_agent(cls, agent: Agent) -> "AgentResponse":
        return cls(
            id=agent.id,
            kind=agent.kind.value,
            depth=agent.depth,
            status=agent.status.value,
            paper_id=agent.paper_id,
            attempts=agent.attempts,
            execution_time_ms=agent.execution_time_ms,
            error_message=agent.error_message,
            created_at=agent.created_at,
            completed_at=agent.completed_at,
        )


class AgentsResponse(ApiModel):
    run_id: str
    agents: list[AgentResponse]


class LogsResponse(ApiModel):
    run_id: str
    logs: list[LogEntryResponse]
    limit: int
    offset: int


# Context API models


class WriteContextRequest(ApiModel):
    run_id: str
    agent_id: str
    context_key: str
    data: Any
    mode: str = WriteMode.OVERWRITE.value
    metadata: dict[str, Any] = Field(default_factory=dict)


class WriteContextResponse(ApiModel):
    version: int
    size_bytes: int
    checksum: str

    @classmethod
    def from_write(cls, result: WriteResult) -> "WriteContextResponse":
        return cls(version=result.version, size_bytes=result.size_bytes, checksum=result.checksum)


class ReadContextRequest(ApiModel):
    run_id: str
    agent_id: str | None = None
    context_key: str | None = None
    summary_only: bool = False
    version: int | None = Field(default=None, ge=1)


class ContextSnapshotResponse(ApiModel):
    agent_id: str
    context_key: str
    version: int
    size_bytes: int
    mode: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    checksum: str
    created_at: datetime
    data: Any = None
    summary: Any = None
    summary_only: bool = False

    @classmethod
    def from_snapshot(cls, snapshot: ContextSnapshot) -> "ContextSnapshotResponse":
        return cls(
            agent_id=snapshot.agent_id,
            context_key=snapshot.key,
            version=snapshot.version,
            size_bytes=snapshot.size_bytes,
            mode=snapshot.mode.value,
            metadata=snapshot.metadata,
            checksum=snapshot.checksum,
            created_at=snapshot.created_at,
            data=snapshot.data,
            summary=snapshot.summary,
            summary_only=snapshot.summary_only,
        )


class ReadContextResponse(ApiModel):
    run_id: str
    contexts: list[ContextSnapshotResponse]


class ContextListingResponse(ApiModel):
    agent_id: str
    context_key: str
    size_bytes: int
    version_count: int
    last_modified: datetime

    @classmethod
    def from_listing(cls, listing: ContextListing) -> "ContextListingResponse":
        return cls(
            agent_id=listing.agent_id,
            context_key=listing.key,
            size_bytes=listing.size_bytes,
            version_count=listing.version_count,
            last_modified=listing.last_modified,
        )


class ListContextsResponse(ApiModel):
    run_id: str
    contexts: list[ContextListingResponse]


class ContextVersionResponse(ApiModel):
    version: int
    size_bytes: int
    mode: str
    checksum: str
    created_at: datetime

    @classmethod
    def from_info(cls, info: VersionInfo) -> "ContextVersionResponse":
        return cls(
            version=info.version,
            size_bytes=info.size_bytes,
            mode=info.mode.value,
            checksum=info.checksum,
            created_at=info.created_at,
        )


class ContextVersionsResponse(ApiModel):
    run_id: str
    agent_id: str
    context_key: str
    versions: list[ContextVersionResponse]


# Health API models


class HealthResponse(ApiModel):
    status: Literal["healthy", "degraded", "unhealthy"]
    database: bool
    active_runs: int = Field(ge=0)
    stalled_runs: list[str] = Field(default_factory=list)
    checked_at: datetime


class QueueStatsResponse(ApiModel):
    active_runs: int = Field(ge=0)
    active_tasks: int = Field(ge=0)
    active: dict[str, int] = Field(default_factory=dict)
    pending: dict[str, int] = Field(default_factory=dict)
