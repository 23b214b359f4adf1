from __future__ import annotations

from dataclasses import dataclass, field

from ..agents.registry import AgentRegistry
from ..schemas.plans import ExecutionPhase, ExecutionPlan


@dataclass(slots=True)
class PlanValidation:
    valid: bool
    violations: list[str] = field(default_factory=list)
    # Phase names containing a dependency edge between two of their own parallel members.
    parallel_conflicts: list[str] = field(default_factory=list)


def validate_plan(plan: ExecutionPlan, registry: AgentRegistry) -> PlanValidation:
    """Check that every agent's dependencies run strictly before it.

    A dependency is satisfied when it belongs to an earlier phase, or to the same
    phase when that phase is sequential. Pure function of the plan and registry.
    """
    violations: list[str] = []
    parallel_conflicts: list[str] = []
    executed: set[str] = set()
    seen_in_phase: dict[str, str] = {}

    if not plan.phases:
        violations.append("Plan has no phases")

    phase_names: set[str] = set()
    for phase in plan.phases:
        if phase.name in phase_names:
            violations.append(f"Duplicate phase name: {phase.name}")
        phase_names.add(phase.name)
        members = set(phase.agents)
        conflict = False
        for agent_id in phase.agents:
            previous_phase = seen_in_phase.get(agent_id)
            if previous_phase is not None:
                violations.append(
                    f"Agent {agent_id} is scheduled more than once (phases {previous_phase} and {phase.name})"
                )
                continue
            seen_in_phase[agent_id] = phase.name

            metadata = registry.get(agent_id)
            if metadata is None:
                violations.append(f"Unknown agent: {agent_id}")
                continue

            for dep in sorted(metadata.inputs):
                in_same_phase = dep in members
                if dep not in executed and not in_same_phase:
                    violations.append(f"Agent {agent_id} depends on {dep} which hasn't been scheduled yet")
                if in_same_phase and phase.run_in_parallel:
                    violations.append(
                        f"Agent {agent_id} depends on {dep} but both are in parallel phase {phase.name}"
                    )
                    conflict = True

        if conflict:
            parallel_conflicts.append(phase.name)
        executed.update(phase.agents)

    return PlanValidation(valid=not violations, violations=violations, parallel_conflicts=parallel_conflicts)


def has_internal_dependencies(phase: ExecutionPhase, registry: AgentRegistry) -> bool:
    members = set(phase.agents)
    for agent_id in phase.agents:
        metadata = registry.get(agent_id)
        if metadata is not None and any(dep in members for dep in metadata.inputs):
            return True
    return False
