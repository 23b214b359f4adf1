from .manager import ContextManager, estimate_tokens
from .store import (
    InMemoryResultStore,
    LocalResultStore,
    PostgresResultStore,
    ResultStore,
    agent_result_key,
    build_result_store,
    context_snapshot_key,
)
from .summarizer import HeuristicSummarizer, LLMSummarizer, Summarizer

__all__ = [
    "ContextManager",
    "HeuristicSummarizer",
    "InMemoryResultStore",
    "LLMSummarizer",
    "LocalResultStore",
    "PostgresResultStore",
    "ResultStore",
    "Summarizer",
    "agent_result_key",
    "build_result_store",
    "context_snapshot_key",
    "estimate_tokens",
]
