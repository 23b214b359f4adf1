from __future__ import annotations

import asyncio
import inspect
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Protocol

from tenacity import AsyncRetrying, stop_after_attempt, wait_random_exponential

from ..agents.registry import AgentRegistry
from ..context.manager import ContextManager
from ..core.config import OrchestrationSettings, Settings
from ..core.exceptions import DependencyNotSatisfiedError, ResultStoreError
from ..core.logging import get_logger
from ..core.metrics import increment_agent_event, observe_agent_latency, observe_phase_latency, record_job_outcome
from ..schemas.agents import AgentMetadata, AgentStatus
from ..schemas.plans import ExecutionPhase, ExecutionPlan

logger = get_logger(name=__name__)


class AgentRunner(Protocol):
    """Runs one agent's business logic and returns its full result."""

    async def __call__(self, agent_id: str, context: ContextManager) -> Any: ...


@dataclass(slots=True)
class RetryPolicy:
    max_attempts: int
    base_backoff_seconds: float
    max_backoff_seconds: float

    @classmethod
    def from_settings(cls, settings: OrchestrationSettings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.retry_attempts,
            base_backoff_seconds=settings.base_backoff_seconds,
            max_backoff_seconds=settings.max_backoff_seconds,
        )

    def attempts_for(self, metadata: AgentMetadata) -> int:
        if metadata.retryable and metadata.error_handling == "retry":
            return max(self.max_attempts, 1)
        return 1


@dataclass(slots=True)
class AgentOutcome:
    agent_id: str
    status: AgentStatus
    error: str | None = None
    attempts: int = 0
    duration: float = 0.0
    skipped: bool = False


@dataclass(slots=True)
class PhaseOutcome:
    name: str
    parallel: bool
    agents: list[AgentOutcome] = field(default_factory=list)
    duration: float = 0.0

    @property
    def completed(self) -> list[str]:
        return [outcome.agent_id for outcome in self.agents if outcome.status == AgentStatus.COMPLETED]

    @property
    def failed(self) -> list[str]:
        return [outcome.agent_id for outcome in self.agents if outcome.status == AgentStatus.FAILED]


@dataclass(slots=True)
class JobOutcome:
    phases: list[PhaseOutcome] = field(default_factory=list)
    halted: bool = False

    @property
    def completed_agents(self) -> list[str]:
        return [agent for phase in self.phases for agent in phase.completed]

    @property
    def failed_agents(self) -> list[str]:
        return [agent for phase in self.phases for agent in phase.failed]

    @property
    def status(self) -> str:
        if self.halted:
            return "halted"
        if self.failed_agents:
            return "degraded"
        return "completed"


PhaseCallback = Callable[[PhaseOutcome], Awaitable[None] | None]


class ExecutionEngine:
    """Walks an execution plan phase by phase.

    A phase is finished only once every member is terminal. Agent failures are
    recorded in the context and never cancel siblings. A durable store failure
    is re-raised once its phase has settled.
    """

    def __init__(
        self,
        registry: AgentRegistry,
        runner: AgentRunner,
        settings: Settings,
    ) -> None:
        self._registry = registry
        self._runner = runner
        self._settings = settings.orchestration
        self._retry = RetryPolicy.from_settings(settings.orchestration)

    async def run(
        self,
        plan: ExecutionPlan,
        context: ContextManager,
        *,
        on_phase_complete: PhaseCallback | None = None,
    ) -> JobOutcome:
        for agent_id in plan.agent_ids():
            context.mark_agent_pending(agent_id)

        outcome = JobOutcome()
        for index, phase in enumerate(plan.phases):
            store_errors: list[ResultStoreError] = []
            try:
                phase_outcome = await self._run_phase(phase, context, store_errors)
            except Exception:
                record_job_outcome(status="failed")
                raise
            outcome.phases.append(phase_outcome)
            logger.info(
                "phase_completed",
                phase=phase.name,
                parallel=phase.run_in_parallel,
                completed=phase_outcome.completed,
                failed=phase_outcome.failed,
                duration=round(phase_outcome.duration, 3),
            )
            await self._notify(on_phase_complete, phase_outcome)

            if store_errors:
                record_job_outcome(status="failed")
                raise store_errors[0]

            remaining = plan.phases[index + 1 :]
            if self._settings.halt_on_failure and phase_outcome.failed and remaining:
                outcome.halted = True
                logger.warning(
                    "job_halted",
                    phase=phase.name,
                    failed=phase_outcome.failed,
                    skipped_phases=[item.name for item in remaining],
                )
                break

        record_job_outcome(status=outcome.status)
        return outcome

    async def _run_phase(
        self,
        phase: ExecutionPhase,
        context: ContextManager,
        store_errors: list[ResultStoreError],
    ) -> PhaseOutcome:
        started = time.perf_counter()
        unexpected: list[BaseException] = []
        if phase.run_in_parallel:
            semaphore = asyncio.Semaphore(self._settings.max_concurrency)

            async def bounded(agent_id: str) -> AgentOutcome:
                async with semaphore:
                    return await self._run_agent(agent_id, context, store_errors)

            gathered = await asyncio.gather(
                *(bounded(agent_id) for agent_id in phase.agents),
                return_exceptions=True,
            )
            results = []
            for agent_id, item in zip(phase.agents, gathered):
                if isinstance(item, BaseException):
                    logger.error("agent_run_crashed", agent=agent_id, phase=phase.name, error=str(item))
                    unexpected.append(item)
                    results.append(AgentOutcome(agent_id=agent_id, status=AgentStatus.RUNNING, error=str(item)))
                else:
                    results.append(item)
        else:
            results = []
            for agent_id in self._registry.order_by_dependencies(phase.agents):
                results.append(await self._run_agent(agent_id, context, store_errors))

        self._settle(phase, context, results)
        duration = time.perf_counter() - started
        observe_phase_latency(parallel=phase.run_in_parallel, latency=duration)
        if unexpected:
            raise unexpected[0]
        return PhaseOutcome(name=phase.name, parallel=phase.run_in_parallel, agents=results, duration=duration)

    async def _run_agent(
        self,
        agent_id: str,
        context: ContextManager,
        store_errors: list[ResultStoreError],
    ) -> AgentOutcome:
        existing = context.get_agent_summary(agent_id)
        if existing is not None and existing.status.is_terminal:
            logger.info("agent_skipped_terminal", agent=agent_id, status=existing.status.value)
            return AgentOutcome(agent_id=agent_id, status=existing.status, skipped=True)

        metadata = self._registry.get(agent_id)
        if metadata is None:
            return self._fail(context, agent_id, f"Unknown agent: {agent_id}")

        missing = self._registry.missing_dependencies(agent_id, context.completed_agents())
        if missing:
            increment_agent_event(agent=agent_id, event="dependency_blocked")
            return self._fail(context, agent_id, str(DependencyNotSatisfiedError(agent_id, missing)))

        context.mark_agent_running(agent_id)
        increment_agent_event(agent=agent_id, event="started")
        started = time.perf_counter()
        attempts = 0
        try:
            result, attempts = await self._invoke(agent_id, metadata, context)
        except asyncio.TimeoutError:
            error = f"Agent {agent_id} timed out after {self._settings.agent_timeout_seconds}s"
        except Exception as exc:
            error = str(exc) or exc.__class__.__name__
        else:
            try:
                await context.store_agent_result(agent_id, result)
            except ResultStoreError as exc:
                store_errors.append(exc)
                return self._fail(context, agent_id, f"Result could not be stored: {exc}", attempts=attempts)
            duration = time.perf_counter() - started
            observe_agent_latency(agent=agent_id, latency=duration)
            increment_agent_event(agent=agent_id, event="completed")
            logger.info("agent_completed", agent=agent_id, attempts=attempts, duration=round(duration, 3))
            return AgentOutcome(
                agent_id=agent_id,
                status=AgentStatus.COMPLETED,
                attempts=attempts,
                duration=duration,
            )

        observe_agent_latency(agent=agent_id, latency=time.perf_counter() - started)
        return self._fail(context, agent_id, error, attempts=attempts)

    async def _invoke(
        self,
        agent_id: str,
        metadata: AgentMetadata,
        context: ContextManager,
    ) -> tuple[Any, int]:
        attempts = self._retry.attempts_for(metadata)
        attempt_number = 0
        result: Any = None
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(attempts),
            wait=wait_random_exponential(
                multiplier=self._retry.base_backoff_seconds,
                max=self._retry.max_backoff_seconds,
            ),
            reraise=True,
        ):
            with attempt:
                attempt_number = attempt.retry_state.attempt_number
                if attempt_number > 1:
                    increment_agent_event(agent=agent_id, event="retry")
                    logger.warning("agent_retry", agent=agent_id, attempt=attempt_number)
                result = await asyncio.wait_for(
                    self._runner(agent_id, context),
                    timeout=self._settings.agent_timeout_seconds,
                )
        return result, attempt_number

    def _fail(self, context: ContextManager, agent_id: str, error: str, *, attempts: int = 0) -> AgentOutcome:
        context.mark_agent_failed(agent_id, error)
        increment_agent_event(agent=agent_id, event="failed")
        return AgentOutcome(agent_id=agent_id, status=AgentStatus.FAILED, error=error, attempts=attempts)

    def _settle(self, phase: ExecutionPhase, context: ContextManager, results: list[AgentOutcome]) -> None:
        for index, outcome in enumerate(results):
            summary = context.get_agent_summary(outcome.agent_id)
            if summary is not None and summary.status == AgentStatus.RUNNING:
                logger.error("agent_running_at_phase_boundary", agent=outcome.agent_id, phase=phase.name)
                results[index] = self._fail(context, outcome.agent_id, "Agent still running at phase boundary")

    async def _notify(self, callback: PhaseCallback | None, phase_outcome: PhaseOutcome) -> None:
        if callback is None:
            return
        try:
            maybe = callback(phase_outcome)
            if inspect.isawaitable(maybe):
                await maybe
        except Exception as exc:
            logger.exception("phase_callback_failed", phase=phase_outcome.name, error=str(exc))
