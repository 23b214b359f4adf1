from __future__ import annotations

import json

import pytest

from propintel.context.summarizer import HeuristicSummarizer, LLMSummarizer, normalize_summary
from propintel.core.exceptions import SummarizationError
from propintel.services.llm import LLMService
from tests.helpers.stubs import FakeChatModel, make_settings


def test_normalize_summary_applies_defaults() -> None:
    payload = normalize_summary({"summary": "Scores improved."})

    assert payload.summary == "Scores improved."
    assert payload.key_findings == []
    assert payload.metrics == {}
    assert payload.status == "completed"
    assert payload.next_steps is None


def test_normalize_summary_maps_camel_case_keys() -> None:
    payload = normalize_summary(
        {
            "summary": "Two competitors dominate citations.",
            "keyFindings": ["competitor-a cited 12 times"],
            "metrics": {"citations": 12},
            "status": "partial",
            "nextSteps": ["compare content depth"],
        }
    )

    assert payload.key_findings == ["competitor-a cited 12 times"]
    assert payload.status == "partial"
    assert payload.next_steps == ["compare content depth"]


@pytest.mark.asyncio
async def test_llm_summarizer_truncates_large_results() -> None:
    settings = make_settings(summarizer={"preview_chars": 500})
    model = FakeChatModel([json.dumps({"summary": "Large result.", "keyFindings": ["a", "b"]})])
    summarizer = LLMSummarizer(LLMService.from_settings(settings, client=model), settings)

    payload = await summarizer.summarize("tavily-research", {"body": "x" * 2000})

    assert payload.summary == "Large result."
    assert payload.key_findings == ["a", "b"]
    prompt = model.calls[0][-1].content
    assert 'agent "tavily-research"' in prompt
    assert "[Result truncated - showing first 500 chars of" in prompt
    assert model.bound["temperature"] == 0.0


@pytest.mark.asyncio
async def test_llm_summarizer_rejects_unusable_output() -> None:
    settings = make_settings()
    model = FakeChatModel(["not json at all"])
    summarizer = LLMSummarizer(LLMService.from_settings(settings, client=model), settings)

    with pytest.raises(SummarizationError):
        await summarizer.summarize("page-analysis", {"title": "Pricing"})


@pytest.mark.asyncio
async def test_llm_brief_summary_accepts_plain_text() -> None:
    settings = make_settings()
    model = FakeChatModel(["Citation share is low across all queries."])
    summarizer = LLMSummarizer(LLMService.from_settings(settings, client=model), settings)

    brief = await summarizer.brief_summarize("citation-analysis", {"share": 0.1})

    assert brief == "Citation share is low across all queries."


@pytest.mark.asyncio
async def test_llm_summarizer_wraps_model_failures() -> None:
    settings = make_settings()
    model = FakeChatModel([ValueError("model crashed")])
    summarizer = LLMSummarizer(LLMService.from_settings(settings, client=model), settings)

    with pytest.raises(SummarizationError):
        await summarizer.brief_summarize("citation-analysis", {"share": 0.1})


@pytest.mark.asyncio
async def test_heuristic_summarizer_describes_mapping() -> None:
    summarizer = HeuristicSummarizer()

    payload = await summarizer.summarize(
        "visibility-scoring",
        {"score": 71, "grade": "B", "queries": ["a", "b", "c"], "ok": True},
    )

    assert payload.summary == "Agent visibility-scoring produced 4 fields."
    assert payload.metrics == {"score": 71, "queries_count": 3}
    assert payload.key_findings == ["grade: B"]
    assert await summarizer.brief_summarize("visibility-scoring", [1, 2]) == "Agent visibility-scoring produced 2 items."
