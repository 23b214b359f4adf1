from __future__ import annotations

import inspect
from typing import Awaitable, Callable, Mapping

from ..agents.registry import AgentRegistry, default_registry
from ..context.manager import ContextManager
from ..context.store import ResultStore, build_result_store
from ..context.summarizer import Summarizer
from ..core.config import Settings, get_settings
from ..core.exceptions import PlanError
from ..core.logging import bind_job_context, clear_job_context, get_logger
from ..core.metrics import record_phase_review
from ..schemas.agents import AgentSummary
from ..schemas.context import AgentContextSnapshot
from ..schemas.plans import ExecutionPlan
from .executor import AgentRunner, ExecutionEngine, JobOutcome, PhaseOutcome
from .planner import PlanSource, ResolvedPlan, resolve_plan
from .reasoner import PhaseReview, ResultReasoner

logger = get_logger(name=__name__)

PhaseListener = Callable[[PhaseOutcome, Mapping[str, AgentSummary]], Awaitable[None] | None]


class JobOrchestrator:
    """Coordinates one analysis job: plan resolution, phased execution, and context lifecycle."""

    def __init__(
        self,
        job_id: str,
        tenant_id: str,
        domain: str,
        *,
        plan_source: PlanSource,
        runner: AgentRunner,
        summarizer: Summarizer,
        store: ResultStore | None = None,
        registry: AgentRegistry | None = None,
        settings: Settings | None = None,
        reasoner: ResultReasoner | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._registry = registry or default_registry()
        self._plan_source = plan_source
        self._context = ContextManager(
            job_id,
            tenant_id,
            domain,
            store=store or build_result_store(self._settings),
            summarizer=summarizer,
            settings=self._settings,
        )
        self._engine = ExecutionEngine(self._registry, runner, self._settings)
        self._resolved: ResolvedPlan | None = None
        self._reasoner = reasoner if self._settings.reasoner.enabled else None
        self._reviews: dict[str, PhaseReview] = {}
        bind_job_context(job_id=job_id, tenant_id=tenant_id, domain=domain)

    @property
    def context_manager(self) -> ContextManager:
        return self._context

    @property
    def plan(self) -> ExecutionPlan | None:
        return self._resolved.plan if self._resolved is not None else None

    @property
    def resolved_plan(self) -> ResolvedPlan | None:
        return self._resolved

    @property
    def phase_reviews(self) -> dict[str, PhaseReview]:
        return dict(self._reviews)

    def get_context(self) -> AgentContextSnapshot:
        return self._context.get_context()

    def get_all_agent_summaries(self) -> dict[str, AgentSummary]:
        return self._context.get_all_summaries()

    def should_retrieve_full_data(self, agent_id: str) -> bool:
        return self._context.should_retrieve_full_data(agent_id)

    async def initialize(self) -> ExecutionPlan:
        self._resolved = await resolve_plan(
            self._plan_source,
            self._context.get_context(),
            self._registry,
            disabled_agents=self._settings.orchestration.disabled_agents,
        )
        logger.info(
            "job_initialized",
            plan_source=self._resolved.source,
            phases=self._resolved.plan.phase_names(),
        )
        return self._resolved.plan

    async def execute(self, on_phase_complete: PhaseListener | None = None) -> JobOutcome:
        if self._resolved is None:
            raise PlanError("Orchestrator not initialized. Call initialize() first.")

        async def after_phase(outcome: PhaseOutcome) -> None:
            if on_phase_complete is not None:
                try:
                    maybe = on_phase_complete(outcome, self._context.get_all_summaries())
                    if inspect.isawaitable(maybe):
                        await maybe
                except Exception as exc:
                    logger.exception("phase_listener_failed", phase=outcome.name, error=str(exc))
            await self._review_phase(outcome)
            if self._context.is_approaching_limit():
                logger.info("context_compression_triggered", token_estimate=self._context.token_estimate)
                await self._context.compress_context()

        outcome = await self._engine.run(self._resolved.plan, self._context, on_phase_complete=after_phase)
        logger.info(
            "job_executed",
            status=outcome.status,
            completed=outcome.completed_agents,
            failed=outcome.failed_agents,
        )
        return outcome

    async def _review_phase(self, outcome: PhaseOutcome) -> None:
        if self._reasoner is None:
            return
        try:
            review = await self._reasoner.review(self._context.get_context())
        except Exception as exc:  # reviews are advisory
            record_phase_review(outcome="failed")
            logger.warning("phase_review_failed", phase=outcome.name, error=str(exc))
            return
        record_phase_review(outcome="succeeded")
        self._reviews[outcome.name] = review
        logger.info(
            "phase_reviewed",
            phase=outcome.name,
            insights=review.insights,
            confidence=review.confidence,
        )
        if review.adjustments:
            logger.info("phase_adjustments_suggested", phase=outcome.name, adjustments=review.adjustments)
        if not review.should_continue:
            # Every planned phase still runs.
            logger.info("phase_review_suggests_stop", phase=outcome.name, next_steps=review.next_steps)

    async def finalize(self) -> str:
        """Drain background summaries, persist the context snapshot, and release resources."""
        try:
            await self._context.wait_for_summaries()
            key = await self._context.persist_snapshot()
        finally:
            await self._context.aclose(drain=False)
        logger.info("job_finalized", snapshot_key=key)
        clear_job_context()
        return key
