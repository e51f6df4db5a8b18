"""
FastAPI app factory for the rmri engine.

Creates and configures the FastAPI application with:
- REST API routers under /api/rmri
- CORS middleware
- Lifespan-managed database and orchestrator
- WebSocket event stream
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from .. import __version__
from ..agents.backends import create_backend
from ..config import EngineSettings
from ..orchestrator import Orchestrator
from ..store.database import Database
from .api import contexts, health, runs
from .websocket import ALL_RUNS, get_connection_manager

logger = logging.getLogger(__name__)


def create_app(settings: EngineSettings | None = None) -> FastAPI:
    """
    Create and configure FastAPI application.

    Args:
        settings: Engine settings (defaults when omitted)

    Returns:
        Configured FastAPI application
    """
    settings = settings or EngineSettings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Manage application lifecycle."""
        logger.info("Starting rmri engine...")

        database = Database(str(settings.storage.db_path))
        await database.initialize()

        orchestrator = Orchestrator(
            database,
            engine_config=settings.engine,
            default_config=settings.defaults,
            backend=create_backend(settings.backend),
            backend_config=settings.backend,
            event_callback=get_connection_manager().broadcast,
        )
        runs.init_orchestrator(orchestrator)

        logger.info(f"Engine ready (database: {settings.storage.db_path})")

        yield

        logger.info("Shutting down rmri engine...")
        await runs.shutdown_orchestrator()
        await database.close()
        logger.info("Engine stopped")

    app = FastAPI(
        title="RMRI Engine",
        description="Recursive multi-agent research orchestration",
        version=__version__,
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.server.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(contexts.router, prefix="/api/rmri", tags=["contexts"])
    app.include_router(health.router, prefix="/api/rmri", tags=["health"])
    app.include_router(runs.router, prefix="/api/rmri", tags=["runs"])

    @app.websocket("/ws/events")
    async def websocket_events(websocket: WebSocket, run_id: str = ALL_RUNS):
        """
        WebSocket endpoint for real-time engine events.

        Query Parameters:
            run_id: Run to subscribe to (default: all runs)

        Events:
            - run.started, run.completed, run.failed, run.cancelled
            - round.started, round.completed
            - agent.completed, agent.failed

        Example:
            ws://localhost:8000/ws/events?run_id=<run id>
        """
        manager = get_connection_manager()
        await manager.connect(websocket, run_id)

        try:
            while True:
                try:
                    data = await websocket.receive_text()
                    logger.debug(f"Received WebSocket message: {data}")
                    if data == "ping":
                        await websocket.send_json({"type": "pong"})
                except WebSocketDisconnect:
                    break

        except Exception as e:
            logger.error(f"WebSocket error: {e}")

        finally:
            await manager.disconnect(websocket, run_id)

    @app.get("/")
    async def root():
        return {
            "message": "RMRI Engine API",
            "version": __version__,
            "docs": "/api/docs",
        }

    return app
