"""
Context REST API endpoints.

Provides:
- POST /api/rmri/writecontext - Write a new version of a context key
- POST /api/rmri/readcontext - Read latest or a specific version
- GET /api/rmri/listcontexts - Keys of a run with sizes and version counts
- GET /api/rmri/contextversions - Version history of one key
"""

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query

from ...errors import RMRIError
from ...orchestrator import Orchestrator
from ..models.api_models import (
    ContextListingResponse,
    ContextSnapshotResponse,
    ContextVersionResponse,
    ContextVersionsResponse,
    ListContextsResponse,
    ReadContextRequest,
    ReadContextResponse,
    WriteContextRequest,
    WriteContextResponse,
)
from .runs import get_orchestrator, get_user_id, http_error, require_owned_run

logger = logging.getLogger(__name__)

router = APIRouter(tags=["contexts"])


@router.post("/writecontext", response_model=WriteContextResponse, status_code=201)
async def write_context(
    request: WriteContextRequest,
    orchestrator: Annotated[Orchestrator, Depends(get_orchestrator)],
    user_id: Annotated[str | None, Depends(get_user_id)],
) -> WriteContextResponse:
    """
    Write a context entry.

    Request Body:
        - runId, agentId, contextKey: Entry identity
        - data: JSON payload
        - mode: "overwrite" (default) or "append"
        - metadata: Optional metadata stored with the version

    Raises:
        400: Unknown mode, incompatible append, or oversized payload
        403: Run belongs to another user
        404: Run not found
    """
    try:
        await require_owned_run(orchestrator, request.run_id, user_id)
        result = await orchestrator.context.write(
            request.run_id,
            request.agent_id,
            request.context_key,
            request.data,
            mode=request.mode,
            metadata=request.metadata,
        )
        return WriteContextResponse.from_write(result)
    except RMRIError as e:
        raise http_error(e) from e
    except Exception as e:
        logger.error(f"Failed to write context {request.context_key}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e)) from e


@router.post("/readcontext", response_model=ReadContextResponse)
async def read_context(
    request: ReadContextRequest,
    orchestrator: Annotated[Orchestrator, Depends(get_orchestrator)],
    user_id: Annotated[str | None, Depends(get_user_id)],
) -> ReadContextResponse:
    """
    Read context entries.

    With agentId and contextKey, returns one entry (latest or the requested
    version). Otherwise returns the latest version of every matching key.
    """
    try:
        await require_owned_run(orchestrator, request.run_id, user_id)
        found = await orchestrator.context.read(
            request.run_id,
            agent_id=request.agent_id,
            key=request.context_key,
            summary_only=request.summary_only,
            version=request.version,
        )
    except RMRIError as e:
        raise http_error(e) from e

    snapshots = found if isinstance(found, list) else [found]
    return ReadContextResponse(
        run_id=request.run_id,
        contexts=[ContextSnapshotResponse.from_snapshot(s) for s in snapshots],
    )


@router.get("/listcontexts", response_model=ListContextsResponse)
async def list_contexts(
    orchestrator: Annotated[Orchestrator, Depends(get_orchestrator)],
    user_id: Annotated[str | None, Depends(get_user_id)],
    run_id: Annotated[str, Query(alias="runId")],
    agent_id: Annotated[str | None, Query(alias="agentId")] = None,
) -> ListContextsResponse:
    """List context keys of a run, optionally for one agent."""
    try:
        await require_owned_run(orchestrator, run_id, user_id)
        listings = await orchestrator.context.list(run_id, agent_id)
    except RMRIError as e:
        raise http_error(e) from e

    return ListContextsResponse(
        run_id=run_id,
        contexts=[ContextListingResponse.from_listing(item) for item in listings],
    )


@router.get("/contextversions", response_model=ContextVersionsResponse)
async def context_versions(
    orchestrator: Annotated[Orchestrator, Depends(get_orchestrator)],
    user_id: Annotated[str | None, Depends(get_user_id)],
    run_id: Annotated[str, Query(alias="runId")],
    agent_id: Annotated[str, Query(alias="agentId")],
    context_key: Annotated[str, Query(alias="contextKey")],
) -> ContextVersionsResponse:
    """Version history of one context key, oldest first."""
    try:
        await require_owned_run(orchestrator, run_id, user_id)
        versions = await orchestrator.context.versions(run_id, agent_id, context_key)
    except RMRIError as e:
        raise http_error(e) from e

    return ContextVersionsResponse(
        run_id=run_id,
        agent_id=agent_id,
        context_key=context_key,
        versions=[ContextVersionResponse.from_info(v) for v in versions],
    )
