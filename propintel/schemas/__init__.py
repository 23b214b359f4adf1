from .agents import AgentCategory, AgentMetadata, AgentStatus, AgentSummary, SummaryPayload
from .context import AgentContextSnapshot, ContextMetadata
from .plans import ExecutionPhase, ExecutionPlan

__all__ = [
    "AgentCategory",
    "AgentContextSnapshot",
    "AgentMetadata",
    "AgentStatus",
    "AgentSummary",
    "ContextMetadata",
    "ExecutionPhase",
    "ExecutionPlan",
    "SummaryPayload",
]
