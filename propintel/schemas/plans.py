from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ExecutionPhase(BaseModel):
    """A named group of agents executed together, either concurrently or in order."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    name: str = Field(..., min_length=1)
    agents: list[str] = Field(..., min_length=1)
    run_in_parallel: bool = Field(False, alias="runInParallel")
    # Informational only; ordering truth comes from agent metadata.
    depends_on: list[str] | None = Field(default=None, alias="dependsOn")

    @field_validator("agents")
    @classmethod
    def _strip_agent_ids(cls, value: list[str]) -> list[str]:
        cleaned = [item.strip() for item in value]
        if any(not item for item in cleaned):
            raise ValueError("agent ids cannot be blank")
        return cleaned


class ExecutionPlan(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    phases: list[ExecutionPhase] = Field(default_factory=list)
    estimated_duration: float = Field(0.0, ge=0.0, alias="estimatedDuration", description="Seconds.")
    reasoning: str = ""

    def agent_ids(self) -> list[str]:
        return [agent for phase in self.phases for agent in phase.agents]

    def phase_names(self) -> list[str]:
        return [phase.name for phase in self.phases]

    def describe(self) -> list[dict[str, object]]:
        return [
            {"name": phase.name, "agents": list(phase.agents), "parallel": phase.run_in_parallel}
            for phase in self.phases
        ]
