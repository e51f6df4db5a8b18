"""
Runs REST API endpoints.

Provides:
- POST /api/rmri/start - Create a run
- GET /api/rmri/runs - List runs
- POST /api/rmri/{run_id}/execute - Start executing a run in the background
- GET /api/rmri/{run_id}/status - Progress snapshot
- GET /api/rmri/{run_id}/results - Published results
- GET /api/rmri/{run_id}/agents - Agent records
- GET /api/rmri/{run_id}/logs - Run log
- POST /api/rmri/{run_id}/cancel - Request cancellation
"""

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, Header, HTTPException, Query

from ...errors import ForbiddenError, RMRIError
from ...orchestrator import Orchestrator
from ...store.models import LogLevel, ResultType, Run, RunStatus
from ..models.api_models import (
    AgentResponse,
    AgentsResponse,
    ExecuteRunRequest,
    LogEntryResponse,
    LogsResponse,
    ResultResponse,
    ResultsResponse,
    RunResponse,
    RunsListResponse,
    RunStateResponse,
    RunStatusResponse,
    StartRunRequest,
    StartRunResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["runs"])

_orchestrator: Orchestrator | None = None


def init_orchestrator(orchestrator: Orchestrator) -> None:
    """Register the orchestrator (called by server.py on startup)."""
    global _orchestrator
    _orchestrator = orchestrator


async def shutdown_orchestrator() -> None:
    """Close the orchestrator (called by server.py on shutdown)."""
    global _orchestrator
    if _orchestrator:
        await _orchestrator.close()
        _orchestrator = None


def get_orchestrator() -> Orchestrator:
    """Get initialized orchestrator dependency."""
    if _orchestrator is None:
        raise HTTPException(status_code=500, detail="Orchestrator not initialized")
    return _orchestrator


def get_user_id(x_user_id: Annotated[str | None, Header()] = None) -> str | None:
    """Caller identity from the X-User-Id header, if any."""
    return x_user_id


def http_error(error: RMRIError) -> HTTPException:
    """Translate an engine error into an HTTP error."""
    return HTTPException(status_code=error.status_code, detail=error.message)


async def require_owned_run(
    orchestrator: Orchestrator, run_id: str, user_id: str | None
) -> Run:
    """
    Load a run and check the caller may access it.

    Raises:
        NotFoundError: Unknown run
        ForbiddenError: Run belongs to another user
    """
    run = await orchestrator.get_run(run_id)
    if not run.is_owned_by(user_id):
        raise ForbiddenError(f"Run {run_id} belongs to another user")
    return run


@router.post("/start", response_model=StartRunResponse, status_code=201)
async def start_run(
    request: StartRunRequest,
    orchestrator: Annotated[Orchestrator, Depends(get_orchestrator)],
    user_id: Annotated[str | None, Depends(get_user_id)],
) -> StartRunResponse:
    """
    Create a run in the initializing state.

    Request Body:
        - query: Research question
        - config: Optional run configuration (camelCase or snake_case keys)
    """
    try:
        run = await orchestrator.start(request.query, request.config or None, owner_id=user_id)
        return StartRunResponse(run_id=run.id, status=run.status.value)
    except RMRIError as e:
        raise http_error(e) from e
    except Exception as e:
        logger.error(f"Failed to start run: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e)) from e


@router.get("/runs", response_model=RunsListResponse)
async def list_runs(
    orchestrator: Annotated[Orchestrator, Depends(get_orchestrator)],
    user_id: Annotated[str | None, Depends(get_user_id)],
    limit: Annotated[int, Query(ge=1, le=100)] = 20,
    offset: Annotated[int, Query(ge=0)] = 0,
) -> RunsListResponse:
    """
    List runs, newest first. Filtered to the caller's runs when X-User-Id is sent.
    """
    runs = await orchestrator.list_runs(owner_id=user_id, limit=limit, offset=offset)
    return RunsListResponse(
        runs=[RunResponse.from_run(run) for run in runs],
        limit=limit,
        offset=offset,
    )


@router.post("/{run_id}/execute", response_model=RunStateResponse, status_code=202)
async def execute_run(
    run_id: str,
    request: ExecuteRunRequest,
    orchestrator: Annotated[Orchestrator, Depends(get_orchestrator)],
    user_id: Annotated[str | None, Depends(get_user_id)],
) -> RunStateResponse:
    """
    Start executing a run. Returns immediately; poll /status for progress.

    Request Body:
        - papers: Papers to analyze (at least one)
        - agentBackend: Optional backend provider for micro agents

    Raises:
        400: Empty paper list or unknown backend
        404: Run not found
        409: Run already executing or finished
    """
    try:
        await require_owned_run(orchestrator, run_id, user_id)
        handle = await orchestrator.execute(run_id, request.papers, request.agent_backend)
        return RunStateResponse(run_id=run_id, status=handle.status.value)
    except RMRIError as e:
        raise http_error(e) from e
    except Exception as e:
        logger.error(f"Failed to execute run {run_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e)) from e


@router.get("/{run_id}/status", response_model=RunStatusResponse)
async def get_status(
    run_id: str,
    orchestrator: Annotated[Orchestrator, Depends(get_orchestrator)],
    user_id: Annotated[str | None, Depends(get_user_id)],
) -> RunStatusResponse:
    """Progress snapshot of a run. Never blocks on execution."""
    try:
        await require_owned_run(orchestrator, run_id, user_id)
        report = await orchestrator.status(run_id)
    except RMRIError as e:
        raise http_error(e) from e

    return RunStatusResponse(
        run_id=report.run_id,
        status=report.status.value,
        progress=report.progress,
        agents_by_status=report.agents_by_status,
        agents_by_type=report.agents_by_type,
        elapsed_ms=report.elapsed_ms,
        recent_logs=[LogEntryResponse.from_entry(entry) for entry in report.recent_logs],
        current_depth=report.current_depth,
        converged=report.converged,
        final_depth=report.final_depth,
        error_message=report.error_message,
    )


@router.get("/{run_id}/results", response_model=ResultsResponse)
async def get_results(
    run_id: str,
    orchestrator: Annotated[Orchestrator, Depends(get_orchestrator)],
    user_id: Annotated[str | None, Depends(get_user_id)],
    result_type: Annotated[ResultType | None, Query(alias="type")] = None,
    final_only: Annotated[bool, Query(alias="finalOnly")] = False,
) -> ResultsResponse:
    """
    Published results of a run. Empty before any agent completed.

    Query Parameters:
        - type: Filter by result type (e.g. gap_ranking)
        - finalOnly: Only results of the terminating meta agent
    """
    try:
        await require_owned_run(orchestrator, run_id, user_id)
        results = await orchestrator.get_results(
            run_id, result_type=result_type, final_only=final_only
        )
    except RMRIError as e:
        raise http_error(e) from e

    return ResultsResponse(
        run_id=run_id,
        results=[ResultResponse.from_result(result) for result in results],
    )


@router.get("/{run_id}/agents", response_model=AgentsResponse)
async def get_agents(
    run_id: str,
    orchestrator: Annotated[Orchestrator, Depends(get_orchestrator)],
    user_id: Annotated[str | None, Depends(get_user_id)],
) -> AgentsResponse:
    """Agent records of a run, in creation order."""
    try:
        await require_owned_run(orchestrator, run_id, user_id)
        agents = await orchestrator.list_agents(run_id)
    except RMRIError as e:
        raise http_error(e) from e

    return AgentsResponse(run_id=run_id, agents=[AgentResponse.from_agent(a) for a in agents])


@router.get("/{run_id}/logs", response_model=LogsResponse)
async def get_logs(
    run_id: str,
    orchestrator: Annotated[Orchestrator, Depends(get_orchestrator)],
    user_id: Annotated[str | None, Depends(get_user_id)],
    level: LogLevel | None = None,
    limit: Annotated[int, Query(ge=1, le=1000)] = 100,
    offset: Annotated[int, Query(ge=0)] = 0,
) -> LogsResponse:
    """
    Run log, oldest first.

    Query Parameters:
        - level: info, warn or error
        - limit, offset: Pagination
    """
    try:
        await require_owned_run(orchestrator, run_id, user_id)
        entries = await orchestrator.list_logs(run_id, level=level, limit=limit, offset=offset)
    except RMRIError as e:
        raise http_error(e) from e

    return LogsResponse(
        run_id=run_id,
        logs=[LogEntryResponse.from_entry(entry) for entry in entries],
        limit=limit,
        offset=offset,
    )


@router.post("/{run_id}/cancel", response_model=RunStateResponse)
async def cancel_run(
    run_id: str,
    orchestrator: Annotated[Orchestrator, Depends(get_orchestrator)],
    user_id: Annotated[str | None, Depends(get_user_id)],
) -> RunStateResponse:
    """
    Request cancellation.

    Executing runs stop at the next round boundary, so the response reports
    "cancelled" once the request is accepted. Finished runs keep their status.
    """
    try:
        await require_owned_run(orchestrator, run_id, user_id)
        run = await orchestrator.cancel(run_id)
    except RMRIError as e:
        raise http_error(e) from e

    status = RunStatus.CANCELLED if run.status == RunStatus.EXECUTING else run.status
    return RunStateResponse(run_id=run_id, status=status.value)
