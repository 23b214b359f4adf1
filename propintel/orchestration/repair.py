from __future__ import annotations

from ..agents.registry import AgentRegistry
from ..core.logging import get_logger
from ..schemas.plans import ExecutionPhase, ExecutionPlan
from .validator import has_internal_dependencies

logger = get_logger(name=__name__)

REPAIRED_SUFFIX = " (fixed for dependency ordering)"


def repair_plan(plan: ExecutionPlan, registry: AgentRegistry) -> ExecutionPlan:
    """Split parallel phases that contain an intra-phase dependency edge.

    Only this failure mode is repaired. Cross-phase ordering mistakes pass
    through untouched and are left to the caller's fallback plan, so the result
    must always be validated again.
    """
    phases: list[ExecutionPhase] = []
    split_any = False

    for phase in plan.phases:
        if not (phase.run_in_parallel and len(phase.agents) > 1 and has_internal_dependencies(phase, registry)):
            phases.append(phase)
            continue

        logger.info("plan_phase_split", phase=phase.name, agents=list(phase.agents))
        split_any = True
        members = set(phase.agents)
        independent: list[str] = []
        dependent: list[str] = []
        for agent_id in phase.agents:
            metadata = registry.get(agent_id)
            if metadata is not None and any(dep in members for dep in metadata.inputs):
                dependent.append(agent_id)
            else:
                independent.append(agent_id)

        if independent:
            phases.append(
                ExecutionPhase(
                    name=f"{phase.name}-parallel",
                    agents=independent,
                    run_in_parallel=len(independent) > 1,
                )
            )
        for agent_id in dependent:
            phases.append(ExecutionPhase(name=f"{phase.name}-{agent_id}", agents=[agent_id], run_in_parallel=False))

    if not split_any:
        return plan
    return plan.model_copy(update={"phases": phases, "reasoning": f"{plan.reasoning}{REPAIRED_SUFFIX}"})
