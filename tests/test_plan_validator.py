from __future__ import annotations

from propintel.agents.registry import default_registry
from propintel.orchestration.planner import STATIC_EXECUTION_PLAN, static_fallback_plan
from propintel.orchestration.validator import has_internal_dependencies, validate_plan
from propintel.schemas.plans import ExecutionPhase, ExecutionPlan
from tests.helpers.stubs import scenario_registry


def _plan(*phases: tuple[list[str], bool]) -> ExecutionPlan:
    return ExecutionPlan(
        phases=[
            ExecutionPhase(name=f"phase-{index}", agents=agents, run_in_parallel=parallel)
            for index, (agents, parallel) in enumerate(phases, start=1)
        ]
    )


def test_valid_diamond_plan_has_no_violations() -> None:
    plan = _plan((["A"], False), (["B", "C"], True), (["D"], False))

    result = validate_plan(plan, scenario_registry())

    assert result.valid
    assert result.violations == []
    assert result.parallel_conflicts == []


def test_parallel_phase_with_internal_dependency_reports_one_violation() -> None:
    plan = _plan((["A", "B"], True))

    result = validate_plan(plan, scenario_registry())

    assert not result.valid
    assert result.violations == ["Agent B depends on A but both are in parallel phase phase-1"]
    assert result.parallel_conflicts == ["phase-1"]


def test_sequential_phase_may_contain_dependency() -> None:
    plan = _plan((["A", "B"], False), (["C"], False), (["D"], False))

    assert validate_plan(plan, scenario_registry()).valid


def test_dependency_scheduled_later_is_a_violation() -> None:
    plan = _plan((["B"], False), (["A"], False))

    result = validate_plan(plan, scenario_registry())

    assert result.violations == ["Agent B depends on A which hasn't been scheduled yet"]
    assert result.parallel_conflicts == []


def test_unknown_and_duplicate_agents_are_reported() -> None:
    plan = _plan((["A", "Z"], False), (["A"], False))

    result = validate_plan(plan, scenario_registry())

    assert "Unknown agent: Z" in result.violations
    assert "Agent A is scheduled more than once (phases phase-1 and phase-2)" in result.violations


def test_empty_plan_and_duplicate_phase_names_are_reported() -> None:
    registry = scenario_registry()
    assert validate_plan(ExecutionPlan(phases=[]), registry).violations == ["Plan has no phases"]

    plan = ExecutionPlan(
        phases=[
            ExecutionPhase(name="same", agents=["A"]),
            ExecutionPhase(name="same", agents=["B"]),
        ]
    )
    assert validate_plan(plan, registry).violations == ["Duplicate phase name: same"]


def test_missing_dependencies_are_reported_in_sorted_order() -> None:
    plan = _plan((["D"], False))

    result = validate_plan(plan, scenario_registry())

    assert result.violations == [
        "Agent D depends on B which hasn't been scheduled yet",
        "Agent D depends on C which hasn't been scheduled yet",
    ]


def test_static_fallback_plan_is_valid_for_default_registry() -> None:
    registry = default_registry()

    assert validate_plan(STATIC_EXECUTION_PLAN, registry).valid
    assert validate_plan(static_fallback_plan(["google-aio", "perplexity"]), registry).valid


def test_has_internal_dependencies() -> None:
    registry = scenario_registry()

    assert has_internal_dependencies(ExecutionPhase(name="p", agents=["A", "B"]), registry)
    assert not has_internal_dependencies(ExecutionPhase(name="p", agents=["B", "C"]), registry)
