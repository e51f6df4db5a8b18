"""
Round scheduling: parallel micro agents behind a barrier, then meso and meta.

Workers only execute agents and report AgentEvents on a queue. The scheduler
loop is the single writer for agent status, context entries and results of
the round.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Literal

from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..agents.executor import AgentExecutor
from ..agents.protocol import AgentInput, AgentOutput, ContextRef, Paper
from ..config import RunConfig
from ..errors import (
    AgentFailure,
    PaperUnavailableError,
    RMRIError,
    RoundFailure,
    RunCancelled,
    TransientAgentError,
)
from ..store.context import ContextStore, meso_key, meta_key, micro_key
from ..store.models import Agent, AgentKind, AgentStatus, Result, WriteMode
from ..store.registry import Registry

logger = logging.getLogger(__name__)

RETRYABLE_ERRORS = (TimeoutError, ConnectionError, TransientAgentError)

LogFn = Callable[..., Awaitable[None]]
EmitFn = Callable[[str, dict[str, Any]], Awaitable[None]]


@dataclass
class AgentEvent:
    """Report from a worker to the scheduler loop."""

    kind: Literal["started", "completed", "failed", "skipped"]
    agent_id: str
    index: int
    paper_id: str | None = None
    output: AgentOutput | None = None
    error: str | None = None
    attempts: int = 0
    execution_time_ms: int | None = None


@dataclass
class RoundOutcome:
    depth: int
    micro_total: int
    micro_completed: int
    micro_failed: int
    micro_skipped: int
    meso_agent_id: str
    meta_agent_id: str
    meta_output: dict[str, Any] = field(default_factory=dict)

    @property
    def converged(self) -> bool:
        return bool(self.meta_output.get("convergence", {}).get("converged", False))

    @property
    def similarity(self) -> float:
        return float(self.meta_output.get("convergence", {}).get("similarity", 0.0))


class _AttemptCounter:
    def __init__(self) -> None:
        self.count = 0


class RoundScheduler:
    """Runs one depth of a run: micro fan-out, barrier, meso, meta."""

    def __init__(
        self,
        run_id: str,
        query: str,
        config: RunConfig,
        registry: Registry,
        context: ContextStore,
        executor: AgentExecutor,
        cancel_event: asyncio.Event,
        log: LogFn,
        emit: EmitFn,
        on_progress: Callable[[], None] | None = None,
    ):
        """
        Initialize the scheduler for one run.

        Args:
            run_id: Run being executed
            query: Research question of the run
            config: Run configuration
            registry: Agent/result persistence
            context: Context store for agent outputs
            executor: Agent dispatch
            cancel_event: Set when cancellation was requested
            log: Coroutine writing a run log entry (message, level, agent_id, **context)
            emit: Coroutine publishing an engine event
            on_progress: Called whenever an agent completes (watchdog heartbeat)
        """
        self.run_id = run_id
        self.query = query
        self.config = config
        self.registry = registry
        self.context = context
        self.executor = executor
        self.cancel_event = cancel_event
        self.log = log
        self.emit = emit
        self.on_progress = on_progress

    async def _execute_with_retry(
        self, agent_input: AgentInput, counter: _AttemptCounter
    ) -> AgentOutput:
        """Execute an agent, retrying transient errors, each attempt time-bounded."""
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(RETRYABLE_ERRORS),
            stop=stop_after_attempt(self.config.max_retries),
            wait=wait_exponential(multiplier=self.config.retry_backoff_seconds, max=30),
            reraise=True,
        ):
            with attempt:
                counter.count = attempt.retry_state.attempt_number
                if counter.count > 1:
                    logger.debug(
                        f"[{agent_input.agent_id}] attempt {counter.count}/{self.config.max_retries}"
                    )
                return await asyncio.wait_for(
                    self.executor.execute(agent_input, self.context),
                    timeout=self.config.agent_timeout_seconds,
                )

        raise RuntimeError("Retry logic failed unexpectedly")

    async def _micro_worker(
        self,
        index: int,
        agent_input: AgentInput,
        semaphore: asyncio.Semaphore,
        queue: asyncio.Queue[AgentEvent],
    ) -> None:
        paper_id = agent_input.paper.paper_id if agent_input.paper else None
        async with semaphore:
            if self.cancel_event.is_set():
                await queue.put(
                    AgentEvent("skipped", agent_input.agent_id, index, paper_id, error="Run cancelled")
                )
                return

            await queue.put(AgentEvent("started", agent_input.agent_id, index, paper_id))
            start = time.monotonic()
            counter = _AttemptCounter()
            try:
                output = await self._execute_with_retry(agent_input, counter)
            except PaperUnavailableError as e:
                await queue.put(
                    AgentEvent(
                        "skipped",
                        agent_input.agent_id,
                        index,
                        paper_id,
                        error=str(e),
                        attempts=counter.count,
                    )
                )
            except Exception as e:
                await queue.put(
                    AgentEvent(
                        "failed",
                        agent_input.agent_id,
                        index,
                        paper_id,
                        error=f"{type(e).__name__}: {e}",
                        attempts=counter.count,
                        execution_time_ms=int((time.monotonic() - start) * 1000),
                    )
                )
            else:
                await queue.put(
                    AgentEvent(
                        "skipped" if output.status == "skipped" else "completed",
                        agent_input.agent_id,
                        index,
                        paper_id,
                        output=output,
                        attempts=counter.count,
                        execution_time_ms=int((time.monotonic() - start) * 1000),
                    )
                )

    async def _publish(
        self, agent_id: str, depth: int, key: str, output: AgentOutput
    ) -> None:
        """Write an agent's output to the context store and its results to the registry."""
        await self.context.write(
            self.run_id,
            agent_id,
            key,
            output.output,
            mode=WriteMode.OVERWRITE,
            metadata={"depth": depth, "confidence": output.confidence},
        )
        for item in output.results:
            await self.registry.add_result(
                Result(
                    run_id=self.run_id,
                    agent_id=agent_id,
                    depth=depth,
                    result_type=item.result_type,
                    content=item.content,
                    confidence=item.confidence,
                    sources=item.sources,
                )
            )

    async def _handle_event(
        self, event: AgentEvent, depth: int, completed_refs: dict[int, ContextRef]
    ) -> AgentStatus:
        """Apply one worker event. Returns the agent's resulting status."""
        agent_id = event.agent_id

        if event.kind == "started":
            await self.registry.transition_agent(self.run_id, agent_id, AgentStatus.ACTIVE)
            return AgentStatus.ACTIVE

        if event.kind == "skipped":
            await self.registry.transition_agent(
                self.run_id,
                agent_id,
                AgentStatus.SKIPPED,
                attempts=event.attempts,
                error_message=event.error,
            )
            await self.log(f"Micro agent skipped: {event.error}", "info", agent_id)
            return AgentStatus.SKIPPED

        if event.kind == "completed":
            key = micro_key(depth, event.paper_id or str(event.index))
            try:
                await self._publish(agent_id, depth, key, event.output)
            except RMRIError as e:
                event.kind, event.error = "failed", f"Publishing output failed: {e}"
            else:
                await self.registry.transition_agent(
                    self.run_id,
                    agent_id,
                    AgentStatus.COMPLETED,
                    attempts=event.attempts,
                    execution_time_ms=event.execution_time_ms,
                    metadata={"confidence": event.output.confidence, "paper_id": event.paper_id},
                )
                completed_refs[event.index] = ContextRef(agent_id=agent_id, key=key)
                if self.on_progress:
                    self.on_progress()
                await self.log(
                    f"Micro agent completed analysis with {event.output.confidence:.2f} confidence",
                    "info",
                    agent_id,
                    paper_id=event.paper_id,
                )
                await self.emit(
                    "agent.completed",
                    {"agent_id": agent_id, "kind": AgentKind.MICRO.value, "depth": depth},
                )
                return AgentStatus.COMPLETED

        await self.registry.transition_agent(
            self.run_id,
            agent_id,
            AgentStatus.FAILED,
            attempts=event.attempts,
            execution_time_ms=event.execution_time_ms,
            error_message=event.error,
        )
        await self.log(f"Micro agent failed: {event.error}", "error", agent_id)
        await self.emit(
            "agent.failed",
            {"agent_id": agent_id, "kind": AgentKind.MICRO.value, "depth": depth, "error": event.error},
        )
        return AgentStatus.FAILED

    def _check_cancelled(self) -> None:
        if self.cancel_event.is_set():
            raise RunCancelled(self.run_id)

    async def _run_micro_phase(
        self, depth: int, papers: list[Paper], focus_gaps: list[dict[str, Any]]
    ) -> tuple[dict[str, int], list[ContextRef]]:
        inputs = []
        for index, paper in enumerate(papers):
            agent_id = f"micro-{depth}-{index}"
            await self.registry.create_agent(
                Agent(
                    id=agent_id,
                    run_id=self.run_id,
                    kind=AgentKind.MICRO,
                    depth=depth,
                    paper_id=paper.paper_id,
                )
            )
            inputs.append(
                AgentInput(
                    run_id=self.run_id,
                    agent_id=agent_id,
                    kind=AgentKind.MICRO,
                    depth=depth,
                    query=self.query,
                    config=self.config,
                    paper=paper,
                    focus_gaps=focus_gaps,
                )
            )

        queue: asyncio.Queue[AgentEvent] = asyncio.Queue()
        semaphore = asyncio.Semaphore(self.config.max_agents)
        tasks = [
            asyncio.create_task(self._micro_worker(index, agent_input, semaphore, queue))
            for index, agent_input in enumerate(inputs)
        ]

        counts = {"completed": 0, "failed": 0, "skipped": 0}
        completed_refs: dict[int, ContextRef] = {}
        try:
            while sum(counts.values()) < len(tasks):
                event = await queue.get()
                status = await self._handle_event(event, depth, completed_refs)
                if status != AgentStatus.ACTIVE:
                    counts[status.value] += 1
            await asyncio.gather(*tasks)
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()

        refs = [completed_refs[i] for i in sorted(completed_refs)]
        return counts, refs

    async def _run_single(
        self,
        kind: AgentKind,
        depth: int,
        key: str,
        inputs: list[ContextRef],
        previous_meta: ContextRef | None = None,
    ) -> tuple[str, AgentOutput]:
        """Run a meso or meta agent inline. Failure after retries raises AgentFailure."""
        agent_id = f"{kind.value}-{depth}"
        await self.registry.create_agent(
            Agent(id=agent_id, run_id=self.run_id, kind=kind, depth=depth)
        )
        await self.registry.transition_agent(self.run_id, agent_id, AgentStatus.ACTIVE)

        agent_input = AgentInput(
            run_id=self.run_id,
            agent_id=agent_id,
            kind=kind,
            depth=depth,
            query=self.query,
            config=self.config,
            inputs=inputs,
            previous_meta=previous_meta,
        )
        start = time.monotonic()
        counter = _AttemptCounter()
        try:
            output = await self._execute_with_retry(agent_input, counter)
            await self._publish(agent_id, depth, key, output)
        except Exception as e:
            reason = f"{type(e).__name__}: {e}"
            await self.registry.transition_agent(
                self.run_id,
                agent_id,
                AgentStatus.FAILED,
                attempts=counter.count,
                execution_time_ms=int((time.monotonic() - start) * 1000),
                error_message=reason,
            )
            await self.log(f"{kind.value.capitalize()} agent failed: {reason}", "error", agent_id)
            await self.emit(
                "agent.failed",
                {"agent_id": agent_id, "kind": kind.value, "depth": depth, "error": reason},
            )
            raise AgentFailure(agent_id, reason) from e

        await self.registry.transition_agent(
            self.run_id,
            agent_id,
            AgentStatus.COMPLETED,
            attempts=counter.count,
            execution_time_ms=int((time.monotonic() - start) * 1000),
            metadata={"confidence": output.confidence},
        )
        if self.on_progress:
            self.on_progress()
        await self.log(
            f"{kind.value.capitalize()} agent completed with {output.confidence:.2f} confidence",
            "info",
            agent_id,
        )
        await self.emit(
            "agent.completed", {"agent_id": agent_id, "kind": kind.value, "depth": depth}
        )
        return agent_id, output

    async def run_round(
        self,
        depth: int,
        papers: list[Paper],
        previous_meta: ContextRef | None = None,
        focus_gaps: list[dict[str, Any]] | None = None,
    ) -> RoundOutcome:
        """
        Execute one round.

        Raises:
            RunCancelled: Cancellation observed at a boundary
            RoundFailure: Majority of micro agents failed, or none completed
            AgentFailure: Meso or meta agent failed after retries
        """
        self._check_cancelled()
        await self.log(f"Round {depth} started with {len(papers)} papers", "info", depth=depth)
        await self.emit("round.started", {"depth": depth, "papers": len(papers)})

        counts, refs = await self._run_micro_phase(depth, papers, focus_gaps or [])
        total = len(papers)

        self._check_cancelled()
        if counts["failed"] > total / 2:
            raise RoundFailure(
                depth,
                f"Round {depth}: majority of micro agents failed "
                f"({counts['failed']}/{total})",
            )
        if counts["completed"] == 0:
            raise RoundFailure(depth, f"Round {depth}: no micro agent completed")

        meso_agent_id, _ = await self._run_single(AgentKind.MESO, depth, meso_key(depth), refs)

        self._check_cancelled()
        meta_agent_id, meta_output = await self._run_single(
            AgentKind.META,
            depth,
            meta_key(depth),
            [ContextRef(agent_id=meso_agent_id, key=meso_key(depth))],
            previous_meta=previous_meta,
        )

        outcome = RoundOutcome(
            depth=depth,
            micro_total=total,
            micro_completed=counts["completed"],
            micro_failed=counts["failed"],
            micro_skipped=counts["skipped"],
            meso_agent_id=meso_agent_id,
            meta_agent_id=meta_agent_id,
            meta_output=meta_output.output,
        )
        await self.log(
            f"Round {depth} completed: {outcome.micro_completed}/{total} papers analyzed, "
            f"similarity {outcome.similarity:.3f}",
            "info",
            depth=depth,
            converged=outcome.converged,
        )
        await self.emit(
            "round.completed",
            {
                "depth": depth,
                "completed": outcome.micro_completed,
                "failed": outcome.micro_failed,
                "skipped": outcome.micro_skipped,
                "similarity": outcome.similarity,
                "converged": outcome.converged,
            },
        )
        return outcome
