from __future__ import annotations

from types import MappingProxyType
from typing import Any, Iterable, Iterator, Mapping

from ..core.exceptions import UnknownAgentError
from ..schemas.agents import AgentCategory, AgentMetadata


class AgentRegistry(Mapping[str, AgentMetadata]):
    """Read-only agent metadata table, built once and passed to the planner and engine."""

    def __init__(self, agents: Iterable[AgentMetadata]) -> None:
        entries: dict[str, AgentMetadata] = {}
        for metadata in agents:
            if metadata.id in entries:
                raise ValueError(f"Duplicate agent id in registry: {metadata.id}")
            entries[metadata.id] = metadata
        self._agents = MappingProxyType(entries)

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Mapping[str, Any]]) -> "AgentRegistry":
        """Build a registry from ``{agent_id: {"inputs": [...], ...}}``."""
        agents = []
        for agent_id, raw in mapping.items():
            payload = dict(raw)
            payload.setdefault("id", agent_id)
            payload.setdefault("name", agent_id)
            agents.append(AgentMetadata.model_validate(payload))
        return cls(agents)

    def __getitem__(self, agent_id: str) -> AgentMetadata:
        return self._agents[agent_id]

    def __iter__(self) -> Iterator[str]:
        return iter(self._agents)

    def __len__(self) -> int:
        return len(self._agents)

    def require(self, agent_id: str) -> AgentMetadata:
        metadata = self._agents.get(agent_id)
        if metadata is None:
            raise UnknownAgentError(agent_id)
        return metadata

    def ids(self) -> list[str]:
        return list(self._agents)

    def dependencies(self, agent_id: str) -> frozenset[str]:
        return self.require(agent_id).inputs

    def by_category(self, category: AgentCategory) -> list[AgentMetadata]:
        return [agent for agent in self._agents.values() if agent.category == category]

    def dependencies_satisfied(self, agent_id: str, completed: Iterable[str]) -> bool:
        metadata = self._agents.get(agent_id)
        if metadata is None:
            return False
        done = set(completed)
        return all(dep in done for dep in metadata.inputs)

    def missing_dependencies(self, agent_id: str, completed: Iterable[str]) -> list[str]:
        done = set(completed)
        return sorted(dep for dep in self.dependencies(agent_id) if dep not in done)

    def parallelizable(self, candidates: Iterable[str], completed: Iterable[str]) -> list[str]:
        done = set(completed)
        return [
            agent_id
            for agent_id in candidates
            if agent_id in self._agents
            and self._agents[agent_id].can_run_in_parallel
            and self.dependencies_satisfied(agent_id, done)
        ]

    def order_by_dependencies(self, agent_ids: Iterable[str]) -> list[str]:
        """Stable topological order of ``agent_ids`` using only edges between them.

        Agents that form a cycle keep their original relative order at the end.
        """
        ordered_input = list(dict.fromkeys(agent_ids))
        members = set(ordered_input)
        indegree = {agent_id: 0 for agent_id in ordered_input}
        dependents: dict[str, list[str]] = {agent_id: [] for agent_id in ordered_input}
        for agent_id in ordered_input:
            metadata = self._agents.get(agent_id)
            if metadata is None:
                continue
            for dep in metadata.inputs:
                if dep in members and dep != agent_id:
                    indegree[agent_id] += 1
                    dependents[dep].append(agent_id)

        ready = [agent_id for agent_id in ordered_input if indegree[agent_id] == 0]
        ordered: list[str] = []
        while ready:
            current = ready.pop(0)
            ordered.append(current)
            for neighbor in dependents[current]:
                indegree[neighbor] -= 1
                if indegree[neighbor] == 0:
                    ready.append(neighbor)
            ready.sort(key=ordered_input.index)

        if len(ordered) < len(ordered_input):
            ordered.extend(agent_id for agent_id in ordered_input if agent_id not in ordered)
        return ordered


def _agent(
    agent_id: str,
    name: str,
    description: str,
    category: AgentCategory,
    inputs: Iterable[str],
    outputs: str,
    *,
    parallel: bool,
    duration: int,
    error_handling: str = "retry",
) -> AgentMetadata:
    return AgentMetadata(
        id=agent_id,
        name=name,
        description=description,
        category=category,
        inputs=frozenset(inputs),
        outputs=outputs,
        can_run_in_parallel=parallel,
        estimated_duration=duration,
        retryable=True,
        error_handling=error_handling,  # type: ignore[arg-type]
    )


def _build_default_agents() -> list[AgentMetadata]:
    return [
        _agent(
            "page-analysis",
            "Page Analysis",
            "Analyzes page content to extract topic, intent, and entities",
            AgentCategory.DISCOVERY,
            [],
            "PageAnalysis",
            parallel=False,
            duration=10,
        ),
        _agent(
            "query-generation",
            "Query Generation",
            "Generates target queries the page should answer",
            AgentCategory.DISCOVERY,
            ["page-analysis"],
            "TargetQuery[]",
            parallel=False,
            duration=15,
        ),
        _agent(
            "competitor-discovery",
            "Competitor Discovery",
            "Identifies competing domains from search results",
            AgentCategory.DISCOVERY,
            ["query-generation"],
            "CompetitorVisibility[]",
            parallel=False,
            duration=5,
            error_handling="skip",
        ),
        _agent(
            "tavily-research",
            "Tavily Research",
            "Searches target queries via the Tavily API",
            AgentCategory.RESEARCH,
            ["query-generation"],
            "TavilySearchResult[]",
            parallel=True,
            duration=30,
        ),
        _agent(
            "google-aio",
            "Google AI Overviews",
            "Scrapes Google AI Overview results",
            AgentCategory.RESEARCH,
            ["query-generation"],
            "GoogleAIOResult[]",
            parallel=True,
            duration=60,
            error_handling="skip",
        ),
        _agent(
            "perplexity",
            "Perplexity Research",
            "Queries Perplexity for citations",
            AgentCategory.RESEARCH,
            ["query-generation"],
            "PerplexityResult[]",
            parallel=True,
            duration=45,
            error_handling="skip",
        ),
        _agent(
            "community-signals",
            "Community Signals",
            "Finds Reddit, HN and GitHub engagement opportunities",
            AgentCategory.RESEARCH,
            ["query-generation"],
            "CommunitySignal[]",
            parallel=True,
            duration=40,
            error_handling="skip",
        ),
        _agent(
            "citation-analysis",
            "Citation Analysis",
            "Analyzes citation patterns and frequency",
            AgentCategory.ANALYSIS,
            ["tavily-research"],
            "CitationAnalysisResult",
            parallel=True,
            duration=10,
        ),
        _agent(
            "content-comparison",
            "Content Comparison",
            "Compares content against competitors using search snippets",
            AgentCategory.ANALYSIS,
            ["page-analysis", "competitor-discovery", "tavily-research"],
            "ContentComparisonResult",
            parallel=True,
            duration=20,
        ),
        _agent(
            "visibility-scoring",
            "Visibility Scoring",
            "Calculates the AEO visibility score",
            AgentCategory.ANALYSIS,
            ["citation-analysis", "content-comparison"],
            "VisibilityScore",
            parallel=False,
            duration=5,
        ),
        _agent(
            "recommendations",
            "Recommendations",
            "Generates prioritized recommendations",
            AgentCategory.OUTPUT,
            ["visibility-scoring", "content-comparison"],
            "AEORecommendation[]",
            parallel=False,
            duration=15,
        ),
        _agent(
            "cursor-prompt",
            "Cursor Prompt",
            "Generates a ready-to-use Cursor prompt",
            AgentCategory.OUTPUT,
            ["recommendations"],
            "CursorPrompt",
            parallel=False,
            duration=10,
        ),
        _agent(
            "report-generator",
            "Report Generator",
            "Generates the final AEO report",
            AgentCategory.OUTPUT,
            ["cursor-prompt", "recommendations"],
            "AEOReport",
            parallel=False,
            duration=5,
        ),
    ]


def default_registry() -> AgentRegistry:
    return AgentRegistry(_build_default_agents())
