from __future__ import annotations

from typing import Any, Mapping, Protocol

from pydantic import ValidationError

from ..core.config import Settings
from ..core.exceptions import SummarizationError
from ..core.logging import get_logger
from ..schemas.agents import SummaryPayload
from ..services.llm import LLMError, LLMService, parse_json_object
from ..utils.json_encoding import encode_blob

logger = get_logger(name=__name__)

SUMMARY_SYSTEM_PROMPT = (
    "You are an expert at summarizing technical analysis results.\n"
    "Extract the most important information from agent results and create a concise summary.\n\n"
    "Focus on:\n"
    "- Key findings and insights\n"
    "- Important metrics and numbers\n"
    "- Overall status/success\n"
    "- What this means for next steps\n\n"
    "Be concise but informative. Respond with a JSON object with the keys "
    '"summary" (2-3 sentences), "keyFindings" (3-5 strings), "metrics" (name to number), '
    '"status" ("completed", "partial" or "failed") and optionally "nextSteps" (strings).'
)

BRIEF_SYSTEM_PROMPT = (
    "Generate a very brief one-sentence summary of this agent result. "
    'Respond with a JSON object of the form {"summary": "..."}.'
)


class Summarizer(Protocol):
    async def summarize(self, agent_id: str, result: Any) -> SummaryPayload: ...

    async def brief_summarize(self, agent_id: str, result: Any) -> str: ...


def _preview(result: Any, limit: int) -> tuple[str, int]:
    serialized = encode_blob(result, indent=2)
    return serialized[:limit], len(serialized)


def normalize_summary(payload: Mapping[str, Any]) -> SummaryPayload:
    """Map a model's camelCase summary object onto ``SummaryPayload`` with defaults."""
    data = {
        "summary": payload.get("summary"),
        "key_findings": payload.get("keyFindings", payload.get("key_findings")),
        "metrics": payload.get("metrics"),
        "status": payload.get("status"),
        "next_steps": payload.get("nextSteps", payload.get("next_steps")),
    }
    return SummaryPayload.model_validate(data)


class LLMSummarizer:
    """Summarizes agent results with the configured Ollama model."""

    def __init__(self, llm: LLMService, settings: Settings) -> None:
        self._llm = llm
        self._settings = settings

    @classmethod
    def from_settings(cls, settings: Settings) -> "LLMSummarizer":
        return cls(LLMService.from_settings(settings, model=settings.summarizer.model), settings)

    async def summarize(self, agent_id: str, result: Any) -> SummaryPayload:
        limit = self._settings.summarizer.preview_chars
        preview, total = _preview(result, limit)
        truncation = ""
        if total > limit:
            truncation = f"\n[Result truncated - showing first {limit} chars of {total} total]"
        prompt = (
            f'Summarize this agent result for agent "{agent_id}":\n\n'
            f"{preview}\n{truncation}\n\n"
            "Generate a structured summary with key findings, metrics, and status."
        )
        raw = await self._generate(agent_id, prompt, SUMMARY_SYSTEM_PROMPT)
        try:
            return normalize_summary(parse_json_object(raw))
        except (ValueError, ValidationError) as exc:
            raise SummarizationError(f"Unusable summary for {agent_id}: {exc}") from exc

    async def brief_summarize(self, agent_id: str, result: Any) -> str:
        preview, _ = _preview(result, self._settings.summarizer.brief_preview_chars)
        prompt = f"Agent: {agent_id}\nResult preview:\n{preview}"
        raw = await self._generate(agent_id, prompt, BRIEF_SYSTEM_PROMPT)
        try:
            summary = parse_json_object(raw).get("summary")
        except ValueError:
            summary = raw
        if not isinstance(summary, str) or not summary.strip():
            raise SummarizationError(f"Empty brief summary for {agent_id}")
        return summary.strip()

    async def _generate(self, agent_id: str, prompt: str, system_prompt: str) -> str:
        try:
            return await self._llm.generate(prompt, system_prompt=system_prompt, temperature=0.0)
        except LLMError as exc:
            logger.warning("summary_generation_failed", agent=agent_id, error=str(exc))
            raise SummarizationError(str(exc)) from exc


class HeuristicSummarizer:
    """Model-free summarizer that describes the shape of a result.

    Used when no model is configured and in tests.
    """

    def __init__(self, *, max_findings: int = 5) -> None:
        self._max_findings = max_findings

    async def summarize(self, agent_id: str, result: Any) -> SummaryPayload:
        findings: list[str] = []
        metrics: dict[str, Any] = {}
        if isinstance(result, Mapping):
            for key, value in result.items():
                if isinstance(value, bool):
                    continue
                if isinstance(value, (int, float)):
                    metrics[str(key)] = value
                elif isinstance(value, str) and value and len(findings) < self._max_findings:
                    findings.append(f"{key}: {value[:120]}")
                elif isinstance(value, (list, tuple)):
                    metrics[f"{key}_count"] = len(value)
            summary = f"Agent {agent_id} produced {len(result)} fields."
        elif isinstance(result, (list, tuple)):
            metrics["items"] = len(result)
            summary = f"Agent {agent_id} produced {len(result)} items."
        else:
            text = str(result)
            summary = f"Agent {agent_id} returned: {text[:200]}" if text else f"Agent {agent_id} returned no data."
        return SummaryPayload(summary=summary, key_findings=findings, metrics=metrics)

    async def brief_summarize(self, agent_id: str, result: Any) -> str:
        payload = await self.summarize(agent_id, result)
        return payload.summary
