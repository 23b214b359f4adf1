from __future__ import annotations

import asyncio
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from ..core.config import Settings, get_settings
from ..core.exceptions import InvalidTransitionError, ResultStoreError
from ..core.logging import get_logger
from ..core.metrics import (
    clear_context_token_estimate,
    record_context_compression,
    record_summary_outcome,
    set_context_token_estimate,
)
from ..schemas.agents import AgentStatus, AgentSummary, SummaryPayload
from ..schemas.context import AgentContextSnapshot, ContextMetadata
from ..utils.json_encoding import encode_blob
from .store import ResultStore
from .summarizer import Summarizer

logger = get_logger(name=__name__)


def estimate_tokens(text: str) -> int:
    """Rough token count: one token per four characters."""
    return math.ceil(len(text) / 4)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True, frozen=True)
class _SummaryPatch:
    agent_id: str
    generation: int
    payload: SummaryPayload


class ContextManager:
    """Owns the per-job agent context.

    Completion is synchronous: ``store_agent_result`` returns only after the full
    result is durable and the agent is marked completed with a placeholder
    summary. Enrichment is asynchronous: a background task summarizes the result
    and posts a patch to a queue drained by a single owner task. Every slot
    carries a generation number; a patch produced against an older generation is
    dropped, so a reader sees either the placeholder or the enriched summary and
    never a mix of the two.
    """

    def __init__(
        self,
        job_id: str,
        tenant_id: str,
        domain: str,
        *,
        store: ResultStore,
        summarizer: Summarizer,
        settings: Settings | None = None,
    ) -> None:
        self.job_id = job_id
        self.tenant_id = tenant_id
        self.domain = domain
        self._store = store
        self._summarizer = summarizer
        self._settings = settings or get_settings()
        self._summaries: dict[str, AgentSummary] = {}
        self._references: dict[str, str] = {}
        self._generations: dict[str, int] = {}
        self._created_at = _utcnow()
        self._last_updated = self._created_at
        self._token_estimate = 0
        self._patches: asyncio.Queue[_SummaryPatch] | None = None
        self._owner_task: asyncio.Task[None] | None = None
        self._inflight: set[asyncio.Task[None]] = set()
        # Agents whose background summary has not been applied or dropped yet.
        self._summarizing: set[str] = set()
        self._logger = logger.bind(job_id=job_id, tenant_id=tenant_id)
        self._refresh_token_estimate()

    async def __aenter__(self) -> "ContextManager":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    @property
    def token_estimate(self) -> int:
        return self._token_estimate

    def get_agent_summary(self, agent_id: str) -> AgentSummary | None:
        return self._summaries.get(agent_id)

    def get_all_summaries(self) -> dict[str, AgentSummary]:
        return dict(self._summaries)

    def completed_agents(self) -> set[str]:
        return {agent_id for agent_id, summary in self._summaries.items() if summary.status == AgentStatus.COMPLETED}

    def get_context(self) -> AgentContextSnapshot:
        return AgentContextSnapshot(
            job_id=self.job_id,
            tenant_id=self.tenant_id,
            domain=self.domain,
            summaries=dict(self._summaries),
            s3_references=dict(self._references),
            metadata=ContextMetadata(
                created_at=self._created_at,
                last_updated=self._last_updated,
                token_estimate=self._token_estimate,
            ),
        )

    async def get_agent_result(self, agent_id: str) -> Any | None:
        """Load the full result from the durable store, or ``None`` if the agent never completed."""
        if agent_id not in self._references:
            return None
        try:
            return await asyncio.wait_for(
                self._store.get(self.tenant_id, self.job_id, agent_id),
                timeout=self._settings.context.store_timeout_seconds,
            )
        except ResultStoreError:
            raise
        except asyncio.TimeoutError as exc:
            raise ResultStoreError(f"Timed out reading result for {agent_id}") from exc
        except Exception as exc:
            raise ResultStoreError(f"Failed to read result for {agent_id}: {exc}") from exc

    def should_retrieve_full_data(self, agent_id: str) -> bool:
        summary = self._summaries.get(agent_id)
        if summary is None:
            return False
        return summary.status == AgentStatus.FAILED or bool(summary.next_steps)

    def is_approaching_limit(self, limit: int | None = None) -> bool:
        budget = limit if limit is not None else self._settings.context.token_limit
        return self._token_estimate > budget * self._settings.context.approach_threshold

    # ------------------------------------------------------------------
    # Status transitions
    # ------------------------------------------------------------------
    def mark_agent_pending(self, agent_id: str) -> bool:
        """Seed a pending slot; existing slots are left as they are."""
        if agent_id in self._summaries:
            return False
        self._replace(AgentSummary(agent_id=agent_id, status=AgentStatus.PENDING))
        return True

    def mark_agent_running(self, agent_id: str) -> None:
        current = self._summaries.get(agent_id)
        if current is None:
            self._replace(AgentSummary(agent_id=agent_id, status=AgentStatus.RUNNING))
        else:
            self._ensure_not_terminal(current, AgentStatus.RUNNING)
            self._replace(current.model_copy(update={"status": AgentStatus.RUNNING}))
        self._logger.debug("agent_marked_running", agent=agent_id)

    def mark_agent_failed(self, agent_id: str, error: str) -> None:
        current = self._summaries.get(agent_id)
        if current is not None:
            self._ensure_not_terminal(current, AgentStatus.FAILED)
        self._replace(
            AgentSummary(
                agent_id=agent_id,
                status=AgentStatus.FAILED,
                summary=f"Agent failed: {error}",
                completed_at=_utcnow(),
            )
        )
        self._logger.warning("agent_marked_failed", agent=agent_id, error=error)

    async def store_agent_result(self, agent_id: str, result: Any) -> str:
        """Persist ``result`` durably, mark the agent completed, and schedule summarization.

        Raises ``ResultStoreError`` when the durable write fails; the agent's
        status is left untouched in that case.
        """
        current = self._summaries.get(agent_id)
        if current is not None:
            self._ensure_not_terminal(current, AgentStatus.COMPLETED)

        try:
            key = await asyncio.wait_for(
                self._store.put(self.tenant_id, self.job_id, agent_id, result),
                timeout=self._settings.context.store_timeout_seconds,
            )
        except ResultStoreError as exc:
            self._logger.error("agent_result_store_failed", agent=agent_id, error=str(exc))
            raise
        except asyncio.TimeoutError as exc:
            self._logger.error("agent_result_store_timeout", agent=agent_id)
            raise ResultStoreError(f"Timed out storing result for {agent_id}") from exc
        except Exception as exc:
            self._logger.error("agent_result_store_failed", agent=agent_id, error=str(exc))
            raise ResultStoreError(f"Failed to store result for {agent_id}: {exc}") from exc

        self._references[agent_id] = key
        generation = self._replace(
            AgentSummary(
                agent_id=agent_id,
                status=AgentStatus.COMPLETED,
                summary=self._settings.context.placeholder_template.format(agent_id=agent_id),
                s3_key=key,
                completed_at=_utcnow(),
            )
        )
        self._logger.info("agent_result_stored", agent=agent_id, key=key)
        self._spawn_summary(agent_id, result, generation)
        return key

    # ------------------------------------------------------------------
    # Compression and persistence
    # ------------------------------------------------------------------
    async def compress_context(self) -> int:
        """Rewrite the oldest completed summaries as one-sentence briefs.

        Runs only when more completions exist than the configured minimum.
        Agents whose background summary is still pending are left for a later
        pass. Returns the number of summaries rewritten.
        """
        settings = self._settings.context
        completed = [
            summary
            for summary in self._summaries.values()
            if summary.status == AgentStatus.COMPLETED and summary.completed_at is not None
        ]
        if len(completed) <= settings.compression_min_completed:
            return 0

        ordered = sorted(completed, key=lambda summary: summary.completed_at)
        candidates = ordered[: math.floor(len(ordered) * settings.compression_ratio)]
        rewritten = 0
        deferred: list[str] = []
        for candidate in candidates:
            if not candidate.s3_key:
                continue
            if candidate.agent_id in self._summarizing:
                deferred.append(candidate.agent_id)
                continue
            generation = self._generations.get(candidate.agent_id)
            try:
                full_result = await self.get_agent_result(candidate.agent_id)
            except ResultStoreError as exc:
                self._logger.warning("context_compression_read_failed", agent=candidate.agent_id, error=str(exc))
                continue
            if full_result is None:
                continue
            try:
                brief = await asyncio.wait_for(
                    self._summarizer.brief_summarize(candidate.agent_id, full_result),
                    timeout=self._settings.summarizer.timeout_seconds,
                )
            except asyncio.TimeoutError:
                self._logger.warning("context_compression_timeout", agent=candidate.agent_id)
                continue
            except Exception as exc:  # summarizer failures never fail compression
                self._logger.warning("context_compression_failed", agent=candidate.agent_id, error=str(exc))
                continue

            current = self._summaries.get(candidate.agent_id)
            if current is None or self._generations.get(candidate.agent_id) != generation:
                continue
            self._replace(
                current.model_copy(
                    update={
                        "summary": brief,
                        "key_findings": list(current.key_findings[: settings.compressed_key_findings]),
                    }
                )
            )
            rewritten += 1

        record_context_compression(count=rewritten)
        self._logger.info(
            "context_compressed",
            rewritten=rewritten,
            candidates=len(candidates),
            deferred=deferred,
            token_estimate=self._token_estimate,
        )
        return rewritten

    async def persist_snapshot(self) -> str:
        try:
            return await asyncio.wait_for(
                self._store.put_snapshot(self.tenant_id, self.job_id, self.get_context()),
                timeout=self._settings.context.store_timeout_seconds,
            )
        except ResultStoreError:
            raise
        except asyncio.TimeoutError as exc:
            raise ResultStoreError("Timed out persisting context snapshot") from exc
        except Exception as exc:
            raise ResultStoreError(f"Failed to persist context snapshot: {exc}") from exc

    # ------------------------------------------------------------------
    # Background summarization
    # ------------------------------------------------------------------
    async def wait_for_summaries(self) -> None:
        """Block until every scheduled summarization has been applied or dropped."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)
        if self._patches is not None:
            await self._patches.join()

    async def aclose(self, *, drain: bool = True) -> None:
        if drain:
            await self.wait_for_summaries()
        else:
            for task in list(self._inflight):
                task.cancel()
            await asyncio.gather(*list(self._inflight), return_exceptions=True)
        if self._owner_task is not None:
            self._owner_task.cancel()
            try:
                await self._owner_task
            except asyncio.CancelledError:
                pass
            self._owner_task = None
            self._patches = None
        clear_context_token_estimate(job_id=self.job_id)

    def _spawn_summary(self, agent_id: str, result: Any, generation: int) -> None:
        patches = self._ensure_owner()
        self._summarizing.add(agent_id)
        task = asyncio.create_task(
            self._summarize(agent_id, result, generation, patches),
            name=f"summarize-{self.job_id}-{agent_id}",
        )
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def _summarize(
        self,
        agent_id: str,
        result: Any,
        generation: int,
        patches: asyncio.Queue[_SummaryPatch],
    ) -> None:
        try:
            payload = await asyncio.wait_for(
                self._summarizer.summarize(agent_id, result),
                timeout=self._settings.summarizer.timeout_seconds,
            )
        except asyncio.TimeoutError:
            self._summarizing.discard(agent_id)
            record_summary_outcome(outcome="timeout")
            self._logger.warning("agent_summary_timeout", agent=agent_id)
            return
        except Exception as exc:  # placeholder stays in place
            self._summarizing.discard(agent_id)
            record_summary_outcome(outcome="failed")
            self._logger.warning("agent_summary_failed", agent=agent_id, error=str(exc))
            return
        await patches.put(_SummaryPatch(agent_id=agent_id, generation=generation, payload=payload))

    def _ensure_owner(self) -> asyncio.Queue[_SummaryPatch]:
        if self._patches is None:
            self._patches = asyncio.Queue()
        if self._owner_task is None or self._owner_task.done():
            self._owner_task = asyncio.create_task(
                self._apply_patches(self._patches),
                name=f"context-owner-{self.job_id}",
            )
        return self._patches

    async def _apply_patches(self, patches: asyncio.Queue[_SummaryPatch]) -> None:
        while True:
            patch = await patches.get()
            try:
                self._apply_patch(patch)
            finally:
                patches.task_done()

    def _apply_patch(self, patch: _SummaryPatch) -> None:
        self._summarizing.discard(patch.agent_id)
        current = self._summaries.get(patch.agent_id)
        if (
            current is None
            or current.status != AgentStatus.COMPLETED
            or self._generations.get(patch.agent_id) != patch.generation
        ):
            record_summary_outcome(outcome="discarded")
            self._logger.debug("agent_summary_discarded", agent=patch.agent_id)
            return
        payload = patch.payload
        self._replace(
            current.model_copy(
                update={
                    "summary": payload.summary,
                    "key_findings": list(payload.key_findings),
                    "metrics": dict(payload.metrics),
                    "next_steps": list(payload.next_steps) if payload.next_steps is not None else None,
                }
            )
        )
        record_summary_outcome(outcome="succeeded")
        self._logger.info("agent_summary_applied", agent=patch.agent_id, findings=len(payload.key_findings))

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _ensure_not_terminal(self, current: AgentSummary, target: AgentStatus) -> None:
        if current.status.is_terminal:
            raise InvalidTransitionError(
                f"Agent {current.agent_id} is already {current.status.value}; cannot move to {target.value}"
            )

    def _replace(self, summary: AgentSummary) -> int:
        generation = self._generations.get(summary.agent_id, 0) + 1
        self._generations[summary.agent_id] = generation
        self._summaries[summary.agent_id] = summary
        self._last_updated = _utcnow()
        self._refresh_token_estimate()
        return generation

    def _refresh_token_estimate(self) -> None:
        self._token_estimate = estimate_tokens(encode_blob(self.get_context()))
        set_context_token_estimate(job_id=self.job_id, estimate=self._token_estimate)
