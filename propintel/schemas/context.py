from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from .agents import AgentStatus, AgentSummary


class ContextMetadata(BaseModel):
    created_at: datetime
    last_updated: datetime
    token_estimate: int = Field(0, ge=0)


class AgentContextSnapshot(BaseModel):
    """Point-in-time copy of a job context handed to readers outside the context manager."""

    job_id: str
    tenant_id: str
    domain: str
    summaries: dict[str, AgentSummary] = Field(default_factory=dict)
    s3_references: dict[str, str] = Field(default_factory=dict)
    metadata: ContextMetadata

    def agents_with_status(self, status: AgentStatus) -> list[AgentSummary]:
        return [summary for summary in self.summaries.values() if summary.status == status]
