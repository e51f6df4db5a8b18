"""
Run orchestrator coordinating rounds of micro, meso and meta agents.

The Orchestrator is the high-level coordinator that:
- Creates runs and validates state transitions
- Drives the depth loop until convergence or the depth budget
- Watches runs for stalls and enforces the run timeout
- Handles cancellation at round boundaries
- Reports status, health and queue statistics
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

from ..agents.backends import create_backend
from ..agents.executor import AgentExecutor
from ..agents.protocol import AgentBackend, ContextRef, Paper
from ..config import BackendConfig, EngineConfig, RunConfig
from ..errors import (
    AgentFailure,
    ConflictError,
    RoundFailure,
    RunCancelled,
    RunTimeout,
    ValidationError,
)
from ..store.context import ContextStore, meta_key
from ..store.database import Database
from ..store.models import (
    AgentStatus,
    LogEntry,
    LogLevel,
    Result,
    ResultType,
    Run,
    RunStatus,
    utcnow,
)
from ..store.registry import Registry
from ..utils.logging import StructuredLogger
from .round import RoundOutcome, RoundScheduler
from .selection import create_strategy

logger = logging.getLogger(__name__)

EventCallback = Callable[[dict[str, Any]], Awaitable[None]]


@dataclass
class RunHandle:
    """Handle to a run executing in the background."""

    run_id: str
    status: RunStatus
    task: asyncio.Task[None]

    async def wait(self) -> None:
        """Wait for the driver task to finish (completed, failed or cancelled)."""
        try:
            await asyncio.shield(self.task)
        except asyncio.CancelledError:
            if not self.task.cancelled():
                raise


@dataclass
class RunStatusReport:
    run_id: str
    status: RunStatus
    progress: int
    agents_by_status: dict[str, int]
    agents_by_type: dict[str, int]
    elapsed_ms: int
    recent_logs: list[LogEntry]
    current_depth: int
    converged: bool
    final_depth: int | None = None
    error_message: str | None = None


@dataclass
class HealthReport:
    status: Literal["healthy", "degraded", "unhealthy"]
    database: bool
    active_runs: int
    stalled_runs: list[str] = field(default_factory=list)
    checked_at: datetime = field(default_factory=utcnow)


@dataclass
class _RunState:
    timeout_ms: int
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    last_progress: float = field(default_factory=time.monotonic)
    task: asyncio.Task[None] | None = None
    watchdog: asyncio.Task[None] | None = None

    def touch(self) -> None:
        self.last_progress = time.monotonic()

    @property
    def stalled(self) -> bool:
        return time.monotonic() - self.last_progress > self.timeout_ms / 1000


class Orchestrator:
    """
    Run lifecycle manager.

    Manages:
    - Run creation and execution tasks
    - Watchdog timeouts and cancellation
    - Persisted logs and engine events
    """

    def __init__(
        self,
        database: Database,
        engine_config: EngineConfig | None = None,
        default_config: RunConfig | None = None,
        backend: AgentBackend | None = None,
        backend_config: BackendConfig | None = None,
        executor_factory: Callable[[AgentBackend | None], AgentExecutor] | None = None,
        event_callback: EventCallback | None = None,
    ):
        """
        Initialize orchestrator.

        Args:
            database: Shared database handle
            engine_config: Payload limits and log settings
            default_config: RunConfig used when start() gets none
            backend: Default LLM backend for micro agents (None = heuristic)
            backend_config: Settings used to build per-run backends by provider name
            executor_factory: Builds the agent executor for a run
            event_callback: Optional callback for run/round/agent events
        """
        self.database = database
        self.engine_config = engine_config or EngineConfig()
        self.default_config = default_config or RunConfig()
        self.backend = backend
        self.backend_config = backend_config or BackendConfig()
        self.executor_factory = executor_factory or (lambda b: AgentExecutor(backend=b))
        self.event_callback = event_callback

        self.registry = Registry(database)
        self.context = ContextStore(
            database,
            max_payload_bytes=self.engine_config.max_payload_bytes,
            strict_append=self.engine_config.strict_append,
        )

        self._lock = asyncio.Lock()
        self._runs: dict[str, _RunState] = {}

    # --- Events and logs ---

    async def _emit_event(self, event_type: str, run_id: str, data: dict[str, Any]) -> None:
        """Emit event if callback is registered."""
        if self.event_callback:
            try:
                await self.event_callback(
                    {
                        "type": event_type,
                        "run_id": run_id,
                        "timestamp": utcnow().isoformat(),
                        "data": data,
                    }
                )
            except Exception as e:
                logger.warning(f"Event callback failed: {e}")

    async def _log(
        self,
        run_id: str,
        message: str,
        level: str = "info",
        agent_id: str | None = None,
        **context: Any,
    ) -> None:
        """Persist a run log entry and mirror it to the process log."""
        StructuredLogger(__name__, run_id=run_id, agent_id=agent_id).log(level, message)
        await self.registry.append_log(
            run_id, message, level=LogLevel(level), agent_id=agent_id, context=context
        )

    # --- Lifecycle ---

    async def start(
        self,
        query: str,
        config: RunConfig | dict[str, Any] | None = None,
        owner_id: str | None = None,
    ) -> Run:
        """
        Create a run in the initializing state.

        Raises:
            ValidationError: Empty query or invalid config
        """
        if not query or not query.strip():
            raise ValidationError("Query must not be empty")

        if config is None:
            run_config = self.default_config
        elif isinstance(config, RunConfig):
            run_config = config
        else:
            try:
                overrides = RunConfig.model_validate(config)
                run_config = self.default_config.model_copy(
                    update={name: getattr(overrides, name) for name in overrides.model_fields_set}
                )
            except ValueError as e:
                raise ValidationError(f"Invalid run config: {e}") from e

        run = await self.registry.create_run(
            Run(query=query.strip(), config=run_config, owner_id=owner_id)
        )
        await self._log(run.id, f"Run created for query: {run.query[:100]}")
        logger.info(f"Created run {run.id}")
        return run

    def _resolve_backend(self, agent_backend: str | AgentBackend | None) -> AgentBackend | None:
        if agent_backend is None:
            return self.backend
        if isinstance(agent_backend, str):
            try:
                return create_backend(self.backend_config, provider=agent_backend)
            except ValueError as e:
                raise ValidationError(str(e)) from e
        return agent_backend

    async def execute(
        self,
        run_id: str,
        papers: list[Paper | dict[str, Any]],
        agent_backend: str | AgentBackend | None = None,
    ) -> RunHandle:
        """
        Start executing a run in the background and return immediately.

        Raises:
            NotFoundError: Unknown run
            ConflictError: Run is not initializing or already has a driver task
            ValidationError: Empty paper list or unusable backend
        """
        async with self._lock:
            run = await self.registry.require_run(run_id)
            active = self._runs.get(run_id)
            if run.status != RunStatus.INITIALIZING or (active and active.task and not active.task.done()):
                raise ConflictError(f"Run {run_id} is {run.status.value}; it can only be executed once")
            if not papers:
                raise ValidationError("At least one paper is required")

            try:
                parsed = [p if isinstance(p, Paper) else Paper.model_validate(p) for p in papers]
            except ValueError as e:
                raise ValidationError(f"Invalid paper: {e}") from e
            backend = self._resolve_backend(agent_backend)

            if not await self.registry.update_run_status(run_id, RunStatus.EXECUTING):
                raise ConflictError(f"Run {run_id} reached a terminal state")

            state = _RunState(timeout_ms=run.config.timeout_ms)
            self._runs[run_id] = state
            state.task = asyncio.create_task(
                self._drive(run, parsed, self.executor_factory(backend), state)
            )
            state.watchdog = asyncio.create_task(self._watch(run_id, state))

        return RunHandle(run_id=run_id, status=RunStatus.EXECUTING, task=state.task)

    async def _drive(
        self,
        run: Run,
        papers: list[Paper],
        executor: AgentExecutor,
        state: _RunState,
    ) -> None:
        """Depth loop of one run."""
        run_id = run.id
        config = run.config
        scheduler = RoundScheduler(
            run_id=run_id,
            query=run.query,
            config=config,
            registry=self.registry,
            context=self.context,
            executor=executor,
            cancel_event=state.cancel_event,
            log=lambda message, level="info", agent_id=None, **ctx: self._log(
                run_id, message, level, agent_id, **ctx
            ),
            emit=lambda event_type, data: self._emit_event(event_type, run_id, data),
            on_progress=state.touch,
        )
        strategy = create_strategy(config.paper_selection, config.focus_top_k)

        try:
            await self._log(
                run_id,
                f"Run started with {len(papers)} papers (max depth {config.max_depth})",
                papers=len(papers),
            )
            await self._emit_event("run.started", run_id, {"papers": len(papers)})

            previous_ref: ContextRef | None = None
            previous_meta: dict[str, Any] | None = None
            final: RoundOutcome | None = None

            for depth in range(config.max_depth):
                if state.cancel_event.is_set():
                    raise RunCancelled(run_id)
                await self.registry.update_run_progress(run_id, current_depth=depth)

                focus_gaps = (previous_meta or {}).get("gaps", [])[: config.focus_top_k]
                outcome = await scheduler.run_round(
                    depth,
                    strategy.select(papers, depth, previous_meta),
                    previous_meta=previous_ref,
                    focus_gaps=focus_gaps,
                )
                previous_ref = ContextRef(agent_id=outcome.meta_agent_id, key=meta_key(depth))
                previous_meta = outcome.meta_output

                if outcome.converged or depth + 1 >= config.max_depth:
                    final = outcome
                    break

            marked = await self.registry.mark_final(run_id, final.meta_agent_id)
            await self.registry.update_run_progress(
                run_id,
                current_depth=final.depth,
                converged=final.converged,
                final_depth=final.depth,
                metadata={"rounds": final.depth + 1, "similarity": final.similarity},
            )
            if await self.registry.update_run_status(run_id, RunStatus.COMPLETED):
                reason = "converged" if final.converged else "reached max depth"
                await self._log(
                    run_id,
                    f"Run completed at depth {final.depth} ({reason}), {marked} final results",
                    converged=final.converged,
                )
                await self._emit_event(
                    "run.completed",
                    run_id,
                    {"final_depth": final.depth, "converged": final.converged},
                )

        except RunCancelled:
            if await self.registry.update_run_status(run_id, RunStatus.CANCELLED):
                await self._log(run_id, "Run cancelled")
                await self._emit_event("run.cancelled", run_id, {})

        except (RoundFailure, AgentFailure) as e:
            await self._fail(run_id, e.message)

        except asyncio.CancelledError:
            raise

        except Exception as e:
            logger.error(f"Run {run_id} failed unexpectedly: {e}", exc_info=True)
            await self._fail(run_id, f"{type(e).__name__}: {e}")

        finally:
            if state.watchdog and state.watchdog is not asyncio.current_task():
                state.watchdog.cancel()
            self._runs.pop(run_id, None)
            # Agents queued or in flight when the driver stopped.
            current = await self.registry.get_run(run_id)
            if current is not None and current.status.is_terminal:
                await self.registry.fail_open_agents(
                    run_id, current.error_message or f"Run {current.status.value}"
                )

    async def _fail(self, run_id: str, message: str) -> None:
        if await self.registry.update_run_status(run_id, RunStatus.FAILED, error_message=message):
            await self._log(run_id, f"Run failed: {message}", "error")
            await self._emit_event("run.failed", run_id, {"error_message": message})
        await self.registry.fail_open_agents(run_id, message)

    async def _watch(self, run_id: str, state: _RunState) -> None:
        """Fail the run when no agent completes within its timeout."""
        timeout = state.timeout_ms / 1000
        while True:
            remaining = state.last_progress + timeout - time.monotonic()
            if remaining <= 0:
                break
            await asyncio.sleep(remaining)

        if state.task is None or state.task.done():
            return

        error = RunTimeout(run_id, state.timeout_ms)
        await self._fail(run_id, error.message)
        state.task.cancel()

    async def cancel(self, run_id: str) -> Run:
        """
        Request cancellation.

        Terminal runs are left unchanged. Initializing runs are cancelled
        immediately. Executing runs stop at the next round boundary; agents
        already in flight finish.

        Raises:
            NotFoundError: Unknown run
        """
        run = await self.registry.require_run(run_id)
        if run.status.is_terminal:
            return run

        state = self._runs.get(run_id)
        if run.status == RunStatus.EXECUTING and state is not None:
            state.cancel_event.set()
            await self._log(run_id, "Cancellation requested")
            return run

        if await self.registry.update_run_status(run_id, RunStatus.CANCELLED):
            await self._log(run_id, "Run cancelled")
            await self._emit_event("run.cancelled", run_id, {})
        return await self.registry.require_run(run_id)

    # --- Queries ---

    async def status(self, run_id: str) -> RunStatusReport:
        """
        Snapshot of a run's progress. Reads only.

        Raises:
            NotFoundError: Unknown run
        """
        run = await self.registry.require_run(run_id)
        by_status, by_kind = await self.registry.agent_counts(run_id)
        total = sum(by_status.values())
        progress = round(100 * by_status[AgentStatus.COMPLETED.value] / total) if total else 0

        start = run.started_at or run.created_at
        end = run.completed_at or utcnow()
        elapsed_ms = max(0, int((end - start).total_seconds() * 1000))

        return RunStatusReport(
            run_id=run.id,
            status=run.status,
            progress=progress,
            agents_by_status=by_status,
            agents_by_type=by_kind,
            elapsed_ms=elapsed_ms,
            recent_logs=await self.registry.recent_logs(
                run_id, self.engine_config.recent_log_count
            ),
            current_depth=run.current_depth,
            converged=run.converged,
            final_depth=run.final_depth,
            error_message=run.error_message,
        )

    async def get_run(self, run_id: str) -> Run:
        return await self.registry.require_run(run_id)

    async def list_runs(
        self, owner_id: str | None = None, limit: int = 50, offset: int = 0
    ) -> list[Run]:
        return await self.registry.list_runs(owner_id=owner_id, limit=limit, offset=offset)

    async def get_results(
        self,
        run_id: str,
        result_type: ResultType | None = None,
        final_only: bool = False,
    ) -> list[Result]:
        await self.registry.require_run(run_id)
        return await self.registry.list_results(run_id, result_type=result_type, final_only=final_only)

    async def list_agents(self, run_id: str):
        await self.registry.require_run(run_id)
        return await self.registry.list_agents(run_id)

    async def list_logs(
        self,
        run_id: str,
        level: LogLevel | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[LogEntry]:
        await self.registry.require_run(run_id)
        return await self.registry.list_logs(run_id, level=level, limit=limit, offset=offset)

    async def health_check(self) -> HealthReport:
        """Database reachability, active tasks and stalled runs."""
        if not await self.database.ping():
            return HealthReport(status="unhealthy", database=False, active_runs=len(self._runs))

        stalled = [run_id for run_id, state in self._runs.items() if state.stalled]
        executing = await self.registry.list_runs(statuses=[RunStatus.EXECUTING], limit=1000)
        # Executing in the database but not driven by this process
        stalled.extend(run.id for run in executing if run.id not in self._runs)

        return HealthReport(
            status="degraded" if stalled else "healthy",
            database=True,
            active_runs=len(self._runs),
            stalled_runs=stalled,
        )

    async def queue_stats(self) -> dict[str, Any]:
        """Active runs and active/pending agent counts per kind."""
        executing = await self.registry.list_runs(statuses=[RunStatus.EXECUTING], limit=1000)
        return {
            "active_runs": len(executing),
            "active_tasks": sum(
                1 for state in self._runs.values() if state.task and not state.task.done()
            ),
            "active": await self.registry.agent_counts_for_runs([AgentStatus.ACTIVE]),
            "pending": await self.registry.agent_counts_for_runs([AgentStatus.PENDING]),
        }

    async def close(self) -> None:
        """Cancel driver and watchdog tasks on shutdown."""
        for run_id, state in list(self._runs.items()):
            for task in (state.task, state.watchdog):
                if task and not task.done():
                    task.cancel()
            for task in (state.task, state.watchdog):
                if task is None:
                    continue
                try:
                    await task
                except asyncio.CancelledError:
                    pass
            await self._fail(run_id, "Engine shut down before the run finished")
        self._runs.clear()
