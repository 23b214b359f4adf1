from __future__ import annotations

import asyncio

import pytest
from prometheus_client import REGISTRY

from propintel.context.store import InMemoryResultStore, agent_result_key, context_snapshot_key
from propintel.core.exceptions import InvalidTransitionError, ResultStoreError
from propintel.schemas.agents import AgentStatus
from tests.helpers.stubs import (
    FailingResultStore,
    FailingSummarizer,
    HangingSummarizer,
    ReleasableSummarizer,
    StaticSummarizer,
    build_context,
    make_settings,
)


@pytest.mark.asyncio
async def test_store_marks_completed_with_placeholder_before_summary() -> None:
    summarizer = ReleasableSummarizer()
    context = build_context(summarizer=summarizer)
    context.mark_agent_running("citation-analysis")

    key = await context.store_agent_result("citation-analysis", {"citations": [1, 2, 3]})

    summary = context.get_agent_summary("citation-analysis")
    assert summary is not None
    assert summary.status == AgentStatus.COMPLETED
    assert summary.summary == "Agent citation-analysis completed successfully"
    assert summary.key_findings == []
    assert summary.metrics == {}
    assert summary.s3_key == key == agent_result_key("tenant-1", "job-1", "citation-analysis")
    assert summary.completed_at is not None

    summarizer.release("citation-analysis")
    await context.wait_for_summaries()

    enriched = context.get_agent_summary("citation-analysis")
    assert enriched is not None
    assert enriched.summary == "Enriched citation-analysis"
    assert enriched.key_findings == ["first", "second"]
    assert enriched.metrics == {"citations": 3}
    assert enriched.next_steps == ["review citations"]
    assert enriched.s3_key == key
    assert enriched.completed_at == summary.completed_at
    await context.aclose()


@pytest.mark.asyncio
async def test_readers_never_observe_torn_summary() -> None:
    summarizer = ReleasableSummarizer()
    context = build_context(summarizer=summarizer)
    await context.store_agent_result("page-analysis", {"title": "Pricing"})

    placeholder = context.get_agent_summary("page-analysis")
    observed = []

    async def reader() -> None:
        for _ in range(50):
            observed.append(context.get_agent_summary("page-analysis"))
            await asyncio.sleep(0)

    reading = asyncio.create_task(reader())
    await asyncio.sleep(0)
    summarizer.release("page-analysis")
    await reading
    await context.wait_for_summaries()
    final = context.get_agent_summary("page-analysis")

    assert placeholder is not None and final is not None
    for summary in observed:
        assert summary is placeholder or summary is final
    await context.aclose()


@pytest.mark.asyncio
async def test_failing_summarizer_keeps_placeholder() -> None:
    context = build_context(summarizer=FailingSummarizer())

    await context.store_agent_result("tavily-research", {"results": []})
    await context.wait_for_summaries()

    summary = context.get_agent_summary("tavily-research")
    assert summary is not None
    assert summary.status == AgentStatus.COMPLETED
    assert summary.summary == "Agent tavily-research completed successfully"
    await context.aclose()


@pytest.mark.asyncio
async def test_summary_timeout_keeps_placeholder() -> None:
    settings = make_settings(summarizer={"timeout_seconds": 0.05})
    context = build_context(summarizer=HangingSummarizer(), settings=settings)

    await context.store_agent_result("perplexity", {"answer": "n/a"})
    await asyncio.wait_for(context.wait_for_summaries(), timeout=2)

    summary = context.get_agent_summary("perplexity")
    assert summary is not None
    assert summary.summary == "Agent perplexity completed successfully"
    await context.aclose()


@pytest.mark.asyncio
async def test_store_failure_leaves_agent_not_completed() -> None:
    context = build_context(store=FailingResultStore(["citation-analysis"]))
    context.mark_agent_running("citation-analysis")

    with pytest.raises(ResultStoreError):
        await context.store_agent_result("citation-analysis", {"citations": []})

    summary = context.get_agent_summary("citation-analysis")
    assert summary is not None
    assert summary.status == AgentStatus.RUNNING
    assert summary.s3_key is None
    assert "citation-analysis" not in context.get_context().s3_references
    assert await context.get_agent_result("citation-analysis") is None
    await context.aclose()


@pytest.mark.asyncio
async def test_get_agent_result_reads_durable_copy() -> None:
    context = build_context()

    assert await context.get_agent_result("page-analysis") is None

    await context.store_agent_result("page-analysis", {"title": "Pricing", "words": 1200})

    assert await context.get_agent_result("page-analysis") == {"title": "Pricing", "words": 1200}
    await context.aclose()


@pytest.mark.asyncio
async def test_terminal_agents_cannot_be_reentered() -> None:
    context = build_context()
    await context.store_agent_result("page-analysis", {"ok": True})

    with pytest.raises(InvalidTransitionError):
        context.mark_agent_running("page-analysis")
    with pytest.raises(InvalidTransitionError):
        await context.store_agent_result("page-analysis", {"ok": False})

    assert context.mark_agent_pending("page-analysis") is False
    await context.aclose()


@pytest.mark.asyncio
async def test_mark_agent_failed_records_error_text() -> None:
    context = build_context()
    context.mark_agent_running("competitor-discovery")

    context.mark_agent_failed("competitor-discovery", "rate limited")

    summary = context.get_agent_summary("competitor-discovery")
    assert summary is not None
    assert summary.status == AgentStatus.FAILED
    assert summary.summary == "Agent failed: rate limited"
    assert context.should_retrieve_full_data("competitor-discovery")
    assert not context.should_retrieve_full_data("unknown-agent")
    await context.aclose()


@pytest.mark.asyncio
async def test_should_retrieve_full_data_when_next_steps_present() -> None:
    summarizer = ReleasableSummarizer()
    context = build_context(summarizer=summarizer)
    await context.store_agent_result("recommendations", {"items": 4})

    assert not context.should_retrieve_full_data("recommendations")

    summarizer.release("recommendations")
    await context.wait_for_summaries()

    assert context.should_retrieve_full_data("recommendations")
    await context.aclose()


@pytest.mark.asyncio
async def test_compress_context_is_noop_with_five_or_fewer_completed() -> None:
    summarizer = StaticSummarizer()
    context = build_context(summarizer=summarizer)
    for index in range(5):
        await context.store_agent_result(f"agent-{index}", {"index": index})
    await context.wait_for_summaries()
    before = context.get_all_summaries()

    rewritten = await context.compress_context()

    assert rewritten == 0
    assert summarizer.brief_calls == []
    assert context.get_all_summaries() == before
    await context.aclose()


@pytest.mark.asyncio
async def test_compress_context_rewrites_oldest_thirty_percent() -> None:
    summarizer = StaticSummarizer(findings=4)
    context = build_context(summarizer=summarizer)
    agent_ids = [f"agent-{index}" for index in range(10)]
    for agent_id in agent_ids:
        await context.store_agent_result(agent_id, {"agent": agent_id})
    await context.wait_for_summaries()
    before = context.get_all_summaries()

    rewritten = await context.compress_context()

    assert rewritten == 3
    assert summarizer.brief_calls == agent_ids[:3]
    after = context.get_all_summaries()
    for agent_id in agent_ids[:3]:
        assert after[agent_id].summary == f"Brief {agent_id}"
        assert after[agent_id].key_findings == before[agent_id].key_findings[:2]
        assert len(after[agent_id].key_findings) <= 2
    for agent_id in agent_ids[3:]:
        assert after[agent_id] == before[agent_id]
    await context.aclose()


@pytest.mark.asyncio
async def test_compression_skips_agents_whose_brief_fails() -> None:
    context = build_context(summarizer=FailingSummarizer())
    for index in range(10):
        await context.store_agent_result(f"agent-{index}", {"index": index})
    await context.wait_for_summaries()

    assert await context.compress_context() == 0
    await context.aclose()


@pytest.mark.asyncio
async def test_is_approaching_limit_boundary(monkeypatch: pytest.MonkeyPatch) -> None:
    context = build_context()

    monkeypatch.setattr("propintel.context.manager.estimate_tokens", lambda text: 800)
    context.mark_agent_running("page-analysis")
    assert context.token_estimate == 800
    assert not context.is_approaching_limit(1000)

    monkeypatch.setattr("propintel.context.manager.estimate_tokens", lambda text: 801)
    context.mark_agent_failed("page-analysis", "boom")
    assert context.token_estimate == 801
    assert context.is_approaching_limit(1000)
    await context.aclose()


@pytest.mark.asyncio
async def test_token_estimate_tracks_context_size() -> None:
    context = build_context()
    initial = context.token_estimate

    await context.store_agent_result("page-analysis", {"body": "x" * 4000})

    assert context.token_estimate > initial
    assert context.get_context().metadata.token_estimate == context.token_estimate
    await context.aclose()


@pytest.mark.asyncio
async def test_persist_snapshot_writes_context() -> None:
    store = InMemoryResultStore()
    context = build_context(store=store)
    await context.store_agent_result("page-analysis", {"title": "Pricing"})
    await context.wait_for_summaries()

    key = await context.persist_snapshot()

    assert key == context_snapshot_key("tenant-1", "job-1")
    snapshot = store.read_key(key)
    assert snapshot["job_id"] == "job-1"
    assert snapshot["summaries"]["page-analysis"]["status"] == "completed"
    assert snapshot["s3_references"]["page-analysis"] == agent_result_key("tenant-1", "job-1", "page-analysis")
    await context.aclose()


@pytest.mark.asyncio
async def test_completed_agents_and_pending_seeding() -> None:
    context = build_context()

    assert context.mark_agent_pending("A") is True
    assert context.mark_agent_pending("A") is False
    await context.store_agent_result("B", {"ok": True})

    assert context.completed_agents() == {"B"}
    assert context.get_agent_summary("A").status == AgentStatus.PENDING
    await context.aclose()


@pytest.mark.asyncio
async def test_compression_leaves_pending_summaries_to_enrich() -> None:
    summarizer = ReleasableSummarizer()
    context = build_context(summarizer=summarizer)
    agent_ids = [f"agent-{index}" for index in range(10)]
    for agent_id in agent_ids:
        await context.store_agent_result(agent_id, {"agent": agent_id})

    rewritten = await context.compress_context()

    assert rewritten == 0
    assert summarizer.brief_calls == []

    for agent_id in agent_ids:
        summarizer.release(agent_id)
    await context.wait_for_summaries()

    oldest = context.get_agent_summary("agent-0")
    assert oldest is not None
    assert oldest.summary == "Enriched agent-0"
    assert oldest.metrics == {"citations": 3}
    assert oldest.next_steps == ["review citations"]

    assert await context.compress_context() == 3
    compressed = context.get_agent_summary("agent-0")
    assert compressed is not None
    assert compressed.summary == "Brief agent-0"
    assert compressed.metrics == {"citations": 3}
    await context.aclose()


@pytest.mark.asyncio
async def test_closing_context_removes_token_estimate_series() -> None:
    job_ids = [f"gauge-job-{index}" for index in range(5)]
    for job_id in job_ids:
        context = build_context(job_id=job_id)
        await context.store_agent_result("page-analysis", {"title": "Pricing"})
        assert REGISTRY.get_sample_value("propintel_context_token_estimate", {"job_id": job_id}) is not None

        await context.aclose()
        await context.aclose()

    for job_id in job_ids:
        assert REGISTRY.get_sample_value("propintel_context_token_estimate", {"job_id": job_id}) is None
