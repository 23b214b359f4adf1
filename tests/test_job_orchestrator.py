from __future__ import annotations

from typing import Mapping

import pytest
from prometheus_client import REGISTRY

from propintel.context.store import InMemoryResultStore, context_snapshot_key
from propintel.core.exceptions import PlanError, PlanSourceError, ReasoningError
from propintel.orchestration.executor import PhaseOutcome
from propintel.orchestration.orchestrator import JobOrchestrator
from propintel.orchestration.planner import STATIC_EXECUTION_PLAN
from propintel.orchestration.reasoner import PhaseReview
from propintel.schemas.agents import AgentStatus, AgentSummary
from propintel.schemas.plans import ExecutionPhase, ExecutionPlan
from tests.helpers.stubs import (
    FixedPlanSource,
    RaisingPlanSource,
    ScriptedReasoner,
    ScriptedRunner,
    StaticSummarizer,
    make_settings,
    scenario_registry,
)


def _orchestrator(plan_source, *, store=None, settings=None, runner=None, reasoner=None) -> JobOrchestrator:
    return JobOrchestrator(
        "job-9",
        "tenant-9",
        "example.com",
        plan_source=plan_source,
        runner=runner or ScriptedRunner(),
        summarizer=StaticSummarizer(),
        store=store or InMemoryResultStore(),
        registry=scenario_registry(),
        settings=settings or make_settings(orchestration={"disabled_agents": []}),
        reasoner=reasoner,
    )


@pytest.mark.asyncio
async def test_execute_before_initialize_raises() -> None:
    orchestrator = _orchestrator(FixedPlanSource(STATIC_EXECUTION_PLAN))

    with pytest.raises(PlanError):
        await orchestrator.execute()


@pytest.mark.asyncio
async def test_full_job_lifecycle() -> None:
    store = InMemoryResultStore()
    plan = ExecutionPlan(phases=[ExecutionPhase(name="all", agents=["A", "B"], run_in_parallel=True)])
    source = FixedPlanSource(plan)
    orchestrator = _orchestrator(source, store=store)
    updates: list[tuple[str, dict[str, str]]] = []

    async def on_phase(phase: PhaseOutcome, summaries: Mapping[str, AgentSummary]) -> None:
        updates.append((phase.name, {agent: summary.status.value for agent, summary in summaries.items()}))

    resolved = await orchestrator.initialize()

    assert orchestrator.resolved_plan.source == "repaired"
    assert [phase.agents for phase in resolved.phases] == [["A"], ["B"]]
    assert source.contexts[0].job_id == "job-9"

    outcome = await orchestrator.execute(on_phase_complete=on_phase)
    key = await orchestrator.finalize()

    assert outcome.status == "completed"
    assert updates[0] == ("all-parallel", {"A": "completed", "B": "pending"})
    assert updates[1] == ("all-B", {"A": "completed", "B": "completed"})
    assert key == context_snapshot_key("tenant-9", "job-9")
    snapshot = store.read_key(key)
    assert snapshot["summaries"]["B"]["summary"] == "Summary of B"


@pytest.mark.asyncio
async def test_initialize_falls_back_when_plan_source_fails() -> None:
    orchestrator = _orchestrator(RaisingPlanSource(PlanSourceError("offline")))

    plan = await orchestrator.initialize()

    assert orchestrator.resolved_plan.source == "fallback"
    assert plan.phase_names() == STATIC_EXECUTION_PLAN.phase_names()


@pytest.mark.asyncio
async def test_context_is_compressed_when_approaching_limit(monkeypatch: pytest.MonkeyPatch) -> None:
    plan = ExecutionPlan(phases=[ExecutionPhase(name="root", agents=["A"])])
    orchestrator = _orchestrator(FixedPlanSource(plan))
    calls: list[str] = []

    async def _compress() -> int:
        calls.append("compress")
        return 0

    monkeypatch.setattr(orchestrator.context_manager, "is_approaching_limit", lambda limit=None: True)
    monkeypatch.setattr(orchestrator.context_manager, "compress_context", _compress)

    await orchestrator.initialize()
    await orchestrator.execute()
    await orchestrator.finalize()

    assert calls == ["compress"]


@pytest.mark.asyncio
async def test_listener_failure_does_not_stop_the_job() -> None:
    plan = ExecutionPlan(
        phases=[
            ExecutionPhase(name="root", agents=["A"]),
            ExecutionPhase(name="next", agents=["B", "C"], run_in_parallel=True),
        ]
    )
    orchestrator = _orchestrator(FixedPlanSource(plan))

    def on_phase(phase: PhaseOutcome, summaries: Mapping[str, AgentSummary]) -> None:
        raise RuntimeError("progress webhook failed")

    await orchestrator.initialize()
    outcome = await orchestrator.execute(on_phase_complete=on_phase)
    await orchestrator.finalize()

    assert outcome.status == "completed"
    assert orchestrator.get_all_agent_summaries()["C"].status == AgentStatus.COMPLETED
    assert not orchestrator.should_retrieve_full_data("C")


def _two_phase_plan() -> ExecutionPlan:
    return ExecutionPlan(
        phases=[
            ExecutionPhase(name="root", agents=["A"]),
            ExecutionPhase(name="next", agents=["B", "C"], run_in_parallel=True),
        ]
    )


@pytest.mark.asyncio
async def test_phase_reviews_are_recorded_without_stopping_the_job() -> None:
    stop = PhaseReview(should_continue=False, confidence=40, insights=["thin results"], next_steps=["retry A"])
    keep_going = PhaseReview(should_continue=True, confidence=85, insights=["coverage looks good"])
    reasoner = ScriptedReasoner([stop, keep_going])
    orchestrator = _orchestrator(FixedPlanSource(_two_phase_plan()), reasoner=reasoner)

    await orchestrator.initialize()
    outcome = await orchestrator.execute()
    await orchestrator.finalize()

    assert outcome.status == "completed"
    assert orchestrator.phase_reviews == {"root": stop, "next": keep_going}
    assert "A" in reasoner.contexts[0].summaries
    assert reasoner.contexts[1].summaries["C"].status == AgentStatus.COMPLETED


@pytest.mark.asyncio
async def test_failed_phase_review_is_logged_and_skipped() -> None:
    before = REGISTRY.get_sample_value("propintel_phase_review_total", {"outcome": "failed"}) or 0.0
    reasoner = ScriptedReasoner([ReasoningError("model offline"), RuntimeError("boom")])
    orchestrator = _orchestrator(FixedPlanSource(_two_phase_plan()), reasoner=reasoner)

    await orchestrator.initialize()
    outcome = await orchestrator.execute()
    await orchestrator.finalize()

    assert outcome.status == "completed"
    assert orchestrator.phase_reviews == {}
    assert REGISTRY.get_sample_value("propintel_phase_review_total", {"outcome": "failed"}) == pytest.approx(before + 2)


@pytest.mark.asyncio
async def test_disabled_reasoner_is_never_called() -> None:
    reasoner = ScriptedReasoner([])
    settings = make_settings(orchestration={"disabled_agents": []}, reasoner={"enabled": False})
    orchestrator = _orchestrator(FixedPlanSource(_two_phase_plan()), reasoner=reasoner, settings=settings)

    await orchestrator.initialize()
    await orchestrator.execute()
    await orchestrator.finalize()

    assert reasoner.contexts == []
