"""
Orchestration Package

Plan handling and phased execution for the analysis pipeline:
- Plan validation and repair of parallel-phase dependency mistakes
- Plan resolution with a static fallback plan
- Phase-by-phase agent execution
- Best-effort review of intermediate results after each phase
- Job-level coordination of planning, execution and context
"""

from .executor import AgentOutcome, AgentRunner, ExecutionEngine, JobOutcome, PhaseOutcome, RetryPolicy
from .orchestrator import JobOrchestrator
from .planner import (
    STATIC_EXECUTION_PLAN,
    LLMPlanSource,
    PlanSource,
    ResolvedPlan,
    StaticPlanSource,
    resolve_plan,
    sanitize_plan,
    static_fallback_plan,
)
from .planner_contract import PlanGatekeeper
from .reasoner import LLMResultReasoner, PhaseReview, ResultReasoner
from .repair import repair_plan
from .validator import PlanValidation, validate_plan

__all__ = [
    "AgentOutcome",
    "AgentRunner",
    "ExecutionEngine",
    "JobOrchestrator",
    "JobOutcome",
    "LLMPlanSource",
    "LLMResultReasoner",
    "PhaseOutcome",
    "PhaseReview",
    "PlanGatekeeper",
    "PlanSource",
    "PlanValidation",
    "ResolvedPlan",
    "ResultReasoner",
    "RetryPolicy",
    "STATIC_EXECUTION_PLAN",
    "StaticPlanSource",
    "repair_plan",
    "resolve_plan",
    "sanitize_plan",
    "static_fallback_plan",
    "validate_plan",
]
