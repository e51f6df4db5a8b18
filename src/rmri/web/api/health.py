"""
Health REST API endpoints.

Provides:
- GET /api/rmri/health - Database reachability and stalled runs
- GET /api/rmri/queue-stats - Active runs and agent counts per kind
"""

import logging
from typing import Annotated

from fastapi import APIRouter, Depends

from ...orchestrator import Orchestrator
from ..models.api_models import HealthResponse, QueueStatsResponse
from .runs import get_orchestrator

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


@router.get("/health", response_model=HealthResponse)
async def health(
    orchestrator: Annotated[Orchestrator, Depends(get_orchestrator)],
) -> HealthResponse:
    """
    Engine health.

    Returns:
        healthy, degraded (stalled runs present) or unhealthy (database unreachable)
    """
    report = await orchestrator.health_check()
    if report.stalled_runs:
        logger.warning(f"Stalled runs detected: {', '.join(report.stalled_runs)}")
    return HealthResponse(
        status=report.status,
        database=report.database,
        active_runs=report.active_runs,
        stalled_runs=report.stalled_runs,
        checked_at=report.checked_at,
    )


@router.get("/queue-stats", response_model=QueueStatsResponse)
async def queue_stats(
    orchestrator: Annotated[Orchestrator, Depends(get_orchestrator)],
) -> QueueStatsResponse:
    """Active runs, driver tasks and active/pending agents per kind."""
    stats = await orchestrator.queue_stats()
    return QueueStatsResponse(**stats)
