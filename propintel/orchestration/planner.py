from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Iterable, Literal, Protocol

from ..agents.registry import AgentRegistry
from ..core.config import Settings
from ..core.exceptions import PlanContractViolation, PlanSourceError
from ..core.logging import get_logger
from ..core.metrics import record_plan_resolution, record_plan_violations
from ..schemas.agents import AgentCategory, AgentStatus
from ..schemas.context import AgentContextSnapshot
from ..schemas.plans import ExecutionPhase, ExecutionPlan
from ..services.llm import LLMError, LLMService, parse_json_object
from .planner_contract import PlanGatekeeper, sanitize_plan_payload
from .repair import repair_plan
from .validator import validate_plan

logger = get_logger(name=__name__)

PlanOrigin = Literal["proposed", "repaired", "fallback"]

STATIC_EXECUTION_PLAN = ExecutionPlan(
    phases=[
        ExecutionPhase(
            name="Discovery",
            agents=["page-analysis", "query-generation", "competitor-discovery"],
            run_in_parallel=False,
        ),
        ExecutionPhase(name="Research", agents=["tavily-research", "community-signals"], run_in_parallel=True),
        ExecutionPhase(name="Analysis", agents=["citation-analysis", "content-comparison"], run_in_parallel=True),
        ExecutionPhase(name="Scoring", agents=["visibility-scoring"], run_in_parallel=False),
        ExecutionPhase(name="Output", agents=["recommendations", "cursor-prompt"], run_in_parallel=False),
    ],
    estimated_duration=100,
    reasoning="Full pipeline with Tavily research and community engagement discovery",
)


def static_fallback_plan(disabled: Iterable[str] = ()) -> ExecutionPlan:
    return sanitize_plan(STATIC_EXECUTION_PLAN, disabled)


def sanitize_plan(plan: ExecutionPlan, disabled: Iterable[str]) -> ExecutionPlan:
    """Remove disabled agents, then drop phases left empty."""
    blocked = set(disabled)
    if not blocked:
        return plan
    phases: list[ExecutionPhase] = []
    changed = False
    for phase in plan.phases:
        agents = [agent for agent in phase.agents if agent not in blocked]
        if len(agents) == len(phase.agents):
            phases.append(phase)
            continue
        changed = True
        if agents:
            phases.append(phase.model_copy(update={"agents": agents}))
    if not changed:
        return plan
    return plan.model_copy(update={"phases": phases})


class PlanSource(Protocol):
    async def propose(self, context: AgentContextSnapshot) -> ExecutionPlan: ...


class StaticPlanSource:
    """Always proposes the hand-verified static plan."""

    def __init__(self, plan: ExecutionPlan | None = None) -> None:
        self._plan = plan or STATIC_EXECUTION_PLAN

    async def propose(self, context: AgentContextSnapshot) -> ExecutionPlan:
        return self._plan


def build_context_summary(context: AgentContextSnapshot) -> str:
    completed = "\n".join(
        f"- {summary.agent_id}: {summary.summary}" for summary in context.agents_with_status(AgentStatus.COMPLETED)
    )
    running = ", ".join(summary.agent_id for summary in context.agents_with_status(AgentStatus.RUNNING))
    return (
        f"Completed agents:\n{completed or 'None'}\n\n"
        f"Running agents: {running or 'None'}\n\n"
        f"Total agents: {len(context.summaries)}"
    )


class LLMPlanSource:
    """Asks the planner model for an execution plan and checks it against the plan contract."""

    def __init__(
        self,
        settings: Settings,
        registry: AgentRegistry,
        *,
        llm_service: LLMService | None = None,
        target_url: str | None = None,
        gatekeeper: PlanGatekeeper | None = None,
    ) -> None:
        self._settings = settings
        self._registry = registry
        self._llm = llm_service or LLMService.from_settings(settings, model=settings.planner_llm.model)
        self._target_url = target_url
        self._gatekeeper = gatekeeper or PlanGatekeeper()

    async def propose(self, context: AgentContextSnapshot) -> ExecutionPlan:
        prompt = self._build_prompt(context)
        logger.debug("planner_prompt", prompt=prompt)
        try:
            response = await asyncio.wait_for(
                self._llm.generate(
                    prompt,
                    system_prompt=self._build_system_prompt(),
                    temperature=self._settings.planner_llm.temperature,
                ),
                timeout=self._settings.planner_llm.timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            raise PlanSourceError("Planner model timed out") from exc
        except LLMError as exc:
            raise PlanSourceError(f"Planner model unavailable: {exc}") from exc

        trimmed = response.strip()
        try:
            payload = parse_json_object(trimmed)
        except ValueError as exc:
            logger.warning("planner_output_unparseable", error=str(exc), response_chars=len(trimmed))
            raise PlanSourceError("Planner response was not a JSON object") from exc
        return self._gatekeeper.enforce(sanitize_plan_payload(payload), raw_response=trimmed)

    def _build_system_prompt(self) -> str:
        disabled = set(self._settings.orchestration.disabled_agents)
        lines = [
            self._settings.planner_llm.system_prompt,
            "",
            "Your task is to create an execution plan that determines:",
            "1. Which agents to run",
            "2. In what order (considering dependencies)",
            "3. Which agents can run in parallel",
            "4. Estimated duration",
            "",
            "Available agents (USE ONLY THESE):",
        ]
        for category in AgentCategory:
            members = [agent.id for agent in self._registry.by_category(category) if agent.id not in disabled]
            if members:
                lines.append(f"- {category.value.title()}: {', '.join(members)}")
        if disabled:
            lines.append(f"\nNOTE: Do NOT include these disabled agents: {', '.join(sorted(disabled))}")

        lines.append("\nCRITICAL DEPENDENCY RULES (MUST FOLLOW):")
        rule = 1
        for agent_id in self._registry.order_by_dependencies(self._registry.ids()):
            if agent_id in disabled:
                continue
            inputs = sorted(self._registry.dependencies(agent_id))
            if inputs:
                lines.append(f"{rule}. {agent_id} depends on {', '.join(inputs)} (must run AFTER them)")
            else:
                lines.append(f"{rule}. {agent_id} has no dependencies")
            rule += 1
        lines.append(
            "\nAgents that depend on each other must never share a parallel phase. "
            'Respond with JSON: {"phases": [{"name": str, "agents": [str], "runInParallel": bool, '
            '"dependsOn": [str]}], "estimatedDuration": number, "reasoning": str}'
        )
        return "\n".join(lines)

    def _build_prompt(self, context: AgentContextSnapshot) -> str:
        target = self._target_url or context.domain
        return (
            f"Create an execution plan for analyzing: {target} ({context.domain})\n\n"
            f"Current context:\n{build_context_summary(context)}\n\n"
            "Generate a plan that:\n"
            "1. Skips agents that are already completed\n"
            "2. Runs agents in the correct dependency order\n"
            "3. Parallelizes agents when possible\n"
            "4. Estimates realistic duration"
        )


@dataclass(slots=True)
class ResolvedPlan:
    plan: ExecutionPlan
    source: PlanOrigin
    violations: list[str] = field(default_factory=list)


async def resolve_plan(
    source: PlanSource,
    context: AgentContextSnapshot,
    registry: AgentRegistry,
    *,
    disabled_agents: Iterable[str] = (),
) -> ResolvedPlan:
    """Turn a proposed plan into one that is safe to execute.

    Proposal, sanitization, validation, repair and re-validation run in order;
    anything that still fails is replaced by the static fallback plan. Plan
    errors never propagate to the caller.
    """
    disabled = list(disabled_agents)
    fallback = static_fallback_plan(disabled)

    try:
        proposed = await source.propose(context)
    except (PlanSourceError, PlanContractViolation) as exc:
        logger.warning("plan_source_failed", error=str(exc))
        return _fallback(fallback, [str(exc)])
    except Exception as exc:  # any source failure degrades to the static plan
        logger.exception("plan_source_crashed", error=str(exc))
        return _fallback(fallback, [str(exc)])

    plan = sanitize_plan(proposed, disabled)
    validation = validate_plan(plan, registry)
    if validation.valid:
        logger.info("plan_resolved", source="proposed", phases=plan.describe())
        record_plan_resolution(source="proposed")
        return ResolvedPlan(plan=plan, source="proposed")

    record_plan_violations(stage="proposed", count=len(validation.violations))
    logger.warning("plan_invalid", violations=validation.violations)

    repaired = repair_plan(plan, registry)
    revalidation = validate_plan(repaired, registry)
    if revalidation.valid:
        logger.info("plan_resolved", source="repaired", phases=repaired.describe())
        record_plan_resolution(source="repaired")
        return ResolvedPlan(plan=repaired, source="repaired", violations=validation.violations)

    record_plan_violations(stage="repaired", count=len(revalidation.violations))
    logger.warning("plan_repair_failed", remaining=revalidation.violations)
    return _fallback(fallback, revalidation.violations)


def _fallback(plan: ExecutionPlan, violations: list[str]) -> ResolvedPlan:
    logger.info("plan_resolved", source="fallback", phases=plan.describe())
    record_plan_resolution(source="fallback")
    return ResolvedPlan(plan=plan, source="fallback", violations=list(violations))
