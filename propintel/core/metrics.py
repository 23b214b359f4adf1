from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

AGENT_LATENCY_SECONDS = Histogram(
    "propintel_agent_execution_latency_seconds",
    "Latency for each agent execution",
    labelnames=("agent",),
    buckets=(0.5, 1, 2, 5, 10, 30, 60, 120, 300, float("inf")),
)

AGENT_EVENT_TOTAL = Counter(
    "propintel_agent_event_total",
    "Count of agent lifecycle events (started/completed/failed/skipped)",
    labelnames=("agent", "event"),
)

PHASE_LATENCY_SECONDS = Histogram(
    "propintel_phase_latency_seconds",
    "Wall-clock duration of an execution phase",
    labelnames=("parallel",),
    buckets=(1, 5, 10, 30, 60, 120, 300, 600, float("inf")),
)

PLAN_RESOLUTION_TOTAL = Counter(
    "propintel_plan_resolution_total",
    "Execution plans grouped by where the accepted plan came from",
    labelnames=("source",),
)

PLAN_VIOLATIONS_TOTAL = Counter(
    "propintel_plan_violations_total",
    "Dependency violations found while validating proposed plans",
    labelnames=("stage",),
)

PLAN_CONTRACT_FAILURE_TOTAL = Counter(
    "propintel_plan_contract_failure_total",
    "Plan payloads rejected by the plan contract",
    labelnames=("reason",),
)

SUMMARY_OUTCOME_TOTAL = Counter(
    "propintel_summary_outcome_total",
    "Background summarization outcomes",
    labelnames=("outcome",),
)

CONTEXT_COMPRESSION_TOTAL = Counter(
    "propintel_context_compression_total",
    "Agent summaries rewritten by context compression",
)

CONTEXT_TOKEN_ESTIMATE = Gauge(
    "propintel_context_token_estimate",
    "Most recent token estimate of a job context",
    labelnames=("job_id",),
)

PHASE_REVIEW_TOTAL = Counter(
    "propintel_phase_review_total",
    "Phase result reviews grouped by outcome",
    labelnames=("outcome",),
)

JOB_OUTCOME_TOTAL = Counter(
    "propintel_job_outcome_total",
    "Execution engine runs grouped by final status",
    labelnames=("status",),
)


def increment_agent_event(*, agent: str, event: str) -> None:
    AGENT_EVENT_TOTAL.labels(agent=agent, event=event).inc()


def observe_agent_latency(*, agent: str, latency: float) -> None:
    AGENT_LATENCY_SECONDS.labels(agent=agent).observe(max(0.0, latency))


def observe_phase_latency(*, parallel: bool, latency: float) -> None:
    PHASE_LATENCY_SECONDS.labels(parallel=str(parallel).lower()).observe(max(0.0, latency))


def record_plan_resolution(*, source: str) -> None:
    PLAN_RESOLUTION_TOTAL.labels(source=source).inc()


def record_plan_violations(*, stage: str, count: int) -> None:
    if count > 0:
        PLAN_VIOLATIONS_TOTAL.labels(stage=stage).inc(count)


def increment_plan_contract_failure(*, reason: str) -> None:
    PLAN_CONTRACT_FAILURE_TOTAL.labels(reason=reason).inc()


def record_summary_outcome(*, outcome: str) -> None:
    SUMMARY_OUTCOME_TOTAL.labels(outcome=outcome).inc()


def record_context_compression(*, count: int) -> None:
    if count > 0:
        CONTEXT_COMPRESSION_TOTAL.inc(count)


def set_context_token_estimate(*, job_id: str, estimate: int) -> None:
    CONTEXT_TOKEN_ESTIMATE.labels(job_id=job_id).set(estimate)


def record_job_outcome(*, status: str) -> None:
    JOB_OUTCOME_TOTAL.labels(status=status).inc()


def clear_context_token_estimate(*, job_id: str) -> None:
    try:
        CONTEXT_TOKEN_ESTIMATE.remove(job_id)
    except KeyError:
        pass


def record_phase_review(*, outcome: str) -> None:
    PHASE_REVIEW_TOTAL.labels(outcome=outcome).inc()
