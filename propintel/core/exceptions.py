from __future__ import annotations


class PropIntelError(RuntimeError):
    """Base class for orchestration core errors."""


class PlanError(PropIntelError):
    """Raised when an execution plan cannot be produced or used."""


class PlanContractViolation(PlanError):
    """Raised when a proposed plan payload violates the plan contract."""


class PlanSourceError(PlanError):
    """Raised when a plan source cannot propose a plan."""


class UnknownAgentError(PropIntelError, KeyError):
    def __init__(self, agent_id: str) -> None:
        super().__init__(f"Unknown agent: {agent_id}")
        self.agent_id = agent_id

    def __str__(self) -> str:
        return self.args[0]


class AgentExecutionError(PropIntelError):
    def __init__(self, agent_id: str, message: str) -> None:
        super().__init__(message)
        self.agent_id = agent_id


class DependencyNotSatisfiedError(AgentExecutionError):
    def __init__(self, agent_id: str, missing: list[str]) -> None:
        super().__init__(agent_id, f"Dependencies not completed for {agent_id}: {', '.join(missing)}")
        self.missing = list(missing)


class InvalidTransitionError(PropIntelError):
    """Raised when an agent would leave a terminal state."""


class ResultStoreError(PropIntelError):
    """Raised when the durable result store cannot read or write a blob."""


class SummarizationError(PropIntelError):
    """Raised by summarizers when a result cannot be summarized."""


class ReasoningError(PropIntelError):
    """Raised when a phase result review cannot be produced."""


__all__ = [
    "AgentExecutionError",
    "DependencyNotSatisfiedError",
    "InvalidTransitionError",
    "PlanContractViolation",
    "PlanError",
    "PlanSourceError",
    "PropIntelError",
    "ReasoningError",
    "ResultStoreError",
    "SummarizationError",
    "UnknownAgentError",
]
