from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator


class AgentCategory(str, Enum):
    DISCOVERY = "discovery"
    RESEARCH = "research"
    ANALYSIS = "analysis"
    OUTPUT = "output"


class AgentStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (AgentStatus.COMPLETED, AgentStatus.FAILED)


class AgentMetadata(BaseModel):
    """Static description of an agent and the agents whose output it consumes."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1)
    name: str = ""
    description: str = ""
    category: AgentCategory = AgentCategory.ANALYSIS
    inputs: frozenset[str] = Field(default_factory=frozenset)
    outputs: str = ""
    can_run_in_parallel: bool = False
    estimated_duration: int = Field(10, ge=0, description="Rough duration in seconds.")
    retryable: bool = True
    error_handling: Literal["fail", "skip", "retry"] = "retry"

    @field_validator("inputs", mode="before")
    @classmethod
    def _coerce_inputs(cls, value: Any) -> frozenset[str]:
        if value is None:
            return frozenset()
        if isinstance(value, str):
            return frozenset({value})
        return frozenset(str(item) for item in value)


class AgentSummary(BaseModel):
    """Cheap in-memory view of one agent's state within a job.

    Instances are immutable; the context manager swaps whole instances so a
    reader always sees either the placeholder or the enriched summary.
    """

    model_config = ConfigDict(frozen=True)

    agent_id: str
    status: AgentStatus = AgentStatus.PENDING
    summary: str = ""
    key_findings: list[str] = Field(default_factory=list)
    metrics: dict[str, Any] = Field(default_factory=dict)
    s3_key: str | None = None
    completed_at: datetime | None = None
    next_steps: list[str] | None = None


class SummaryPayload(BaseModel):
    """Normalized summarizer output."""

    summary: str = Field(..., min_length=1)
    key_findings: list[str] = Field(default_factory=list)
    metrics: dict[str, Any] = Field(default_factory=dict)
    status: Literal["completed", "partial", "failed"] = "completed"
    next_steps: list[str] | None = None

    @field_validator("key_findings", mode="before")
    @classmethod
    def _coerce_findings(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [value]
        return [str(item) for item in value]

    @field_validator("metrics", mode="before")
    @classmethod
    def _coerce_metrics(cls, value: Any) -> dict[str, Any]:
        if value is None:
            return {}
        return dict(value)

    @field_validator("status", mode="before")
    @classmethod
    def _default_status(cls, value: Any) -> str:
        return value or "completed"
