from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Mapping, Protocol

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ..core.config import Settings
from ..core.exceptions import ReasoningError
from ..core.logging import get_logger
from ..schemas.agents import AgentStatus
from ..schemas.context import AgentContextSnapshot
from ..services.llm import LLMError, LLMService, parse_json_object

logger = get_logger(name=__name__)

REASONER_SYSTEM_PROMPT = (
    "You are an expert analyst reviewing intermediate results from an AEO analysis pipeline.\n\n"
    "Your task is to:\n"
    "1. Analyze the current state of the analysis\n"
    "2. Identify patterns and insights\n"
    "3. Determine if we should continue or adjust the plan\n"
    "4. Suggest next steps\n\n"
    "Be strategic and data-driven. Look for:\n"
    "- Quality of results so far\n"
    "- Missing critical information\n"
    "- Opportunities to optimize\n"
    "- Potential issues or blockers\n\n"
    'Respond with a JSON object with the keys "shouldContinue" (boolean), "insights" (strings), '
    '"nextSteps" (strings), "adjustments" (strings, optional) and "confidence" (0-100).'
)

_REVIEW_KEYS = {"shouldContinue", "insights", "nextSteps", "adjustments", "confidence"}


class PhaseReviewPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    shouldContinue: bool
    insights: list[str] = Field(default_factory=list)
    nextSteps: list[str] = Field(default_factory=list)
    adjustments: list[str] | None = None
    confidence: float = Field(..., ge=0.0, le=100.0)

    @field_validator("insights", "nextSteps", "adjustments", mode="before")
    @classmethod
    def _coerce_text_list(cls, value: Any) -> list[str] | None:
        if value is None:
            return None
        if isinstance(value, str):
            return [value]
        if not isinstance(value, (list, tuple)):
            raise ValueError("review entries must be lists of strings")
        return [str(item) for item in value if str(item).strip()]


@dataclass(slots=True)
class PhaseReview:
    should_continue: bool
    confidence: float
    insights: list[str] = field(default_factory=list)
    next_steps: list[str] = field(default_factory=list)
    adjustments: list[str] = field(default_factory=list)


class ResultReasoner(Protocol):
    async def review(self, context: AgentContextSnapshot) -> PhaseReview: ...


def build_results_summary(context: AgentContextSnapshot, *, max_findings: int = 3) -> str:
    completed = context.agents_with_status(AgentStatus.COMPLETED)
    failed = context.agents_with_status(AgentStatus.FAILED)
    running = context.agents_with_status(AgentStatus.RUNNING)

    blocks = []
    for summary in completed:
        metrics = ", ".join(f"{key}={value}" for key, value in list(summary.metrics.items())[:max_findings])
        blocks.append(
            f"**{summary.agent_id}**:\n"
            f"- Summary: {summary.summary}\n"
            f"- Key Findings: {', '.join(summary.key_findings[:max_findings])}\n"
            f"- Metrics: {metrics}"
        )
    completed_block = "\n\n".join(blocks)
    failures = "\n".join(f"- {summary.agent_id}: {summary.summary}" for summary in failed)
    return (
        f"Completed Agents ({len(completed)}):\n{completed_block or 'None'}\n\n"
        f"Failed Agents ({len(failed)}):\n{failures or 'None'}\n\n"
        f"Running Agents ({len(running)}):\n{', '.join(item.agent_id for item in running) or 'None'}"
    )


def parse_phase_review(payload: Mapping[str, Any]) -> PhaseReview:
    """Check a model's review object against the review contract."""
    extra = sorted(key for key in payload if key not in _REVIEW_KEYS)
    if extra:
        logger.info("phase_review_extra_fields", extra_keys=extra)
    try:
        model = PhaseReviewPayload.model_validate({key: payload[key] for key in _REVIEW_KEYS if key in payload})
    except ValidationError as exc:
        raise ReasoningError(f"Phase review failed contract validation: {exc.error_count()} error(s)") from exc
    return PhaseReview(
        should_continue=model.shouldContinue,
        confidence=model.confidence,
        insights=list(model.insights),
        next_steps=list(model.nextSteps),
        adjustments=list(model.adjustments or []),
    )


class LLMResultReasoner:
    """Asks the reasoning model to review the results gathered so far."""

    def __init__(self, settings: Settings, *, llm_service: LLMService | None = None) -> None:
        self._settings = settings
        self._llm = llm_service or LLMService.from_settings(settings, model=settings.reasoner.model)

    async def review(self, context: AgentContextSnapshot) -> PhaseReview:
        settings = self._settings.reasoner
        prompt = (
            "Analyze these intermediate results:\n\n"
            f"{build_results_summary(context, max_findings=settings.max_findings_per_agent)}\n\n"
            "Provide reasoning about:\n"
            "1. Should we continue with the current plan?\n"
            "2. What are the key insights so far?\n"
            "3. What adjustments (if any) should we make?\n"
            "4. What are the recommended next steps?\n"
            "5. How confident are we in the results so far?"
        )
        try:
            response = await asyncio.wait_for(
                self._llm.generate(
                    prompt,
                    system_prompt=REASONER_SYSTEM_PROMPT,
                    temperature=settings.temperature,
                ),
                timeout=settings.timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            raise ReasoningError("Reasoning model timed out") from exc
        except LLMError as exc:
            raise ReasoningError(f"Reasoning model unavailable: {exc}") from exc

        try:
            payload = parse_json_object(response)
        except ValueError as exc:
            raise ReasoningError("Reasoning response was not a JSON object") from exc
        return parse_phase_review(payload)
