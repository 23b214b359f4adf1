from __future__ import annotations

import math
from typing import Any, Mapping

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ..core.exceptions import PlanContractViolation
from ..core.logging import get_logger
from ..core.metrics import increment_plan_contract_failure
from ..schemas.plans import ExecutionPhase, ExecutionPlan

__all__ = [
    "PlanGatekeeper",
    "PlanPayload",
    "PhasePayload",
    "sanitize_plan_payload",
]

logger = get_logger(name=__name__)

_PLAN_KEYS = {"phases", "estimatedDuration", "reasoning"}
_PHASE_KEYS = {"name", "agents", "runInParallel", "dependsOn"}


class PhasePayload(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    name: str = Field(..., min_length=1)
    agents: list[str] = Field(..., min_length=1)
    runInParallel: bool = Field(default=False)
    dependsOn: list[str] | None = Field(default=None)

    @field_validator("agents", "dependsOn", mode="before")
    @classmethod
    def _coerce_id_list(cls, value: Any) -> list[str] | None:
        if value is None:
            return None
        if isinstance(value, str):
            return [value]
        if not isinstance(value, (list, tuple)):
            raise ValueError("agent and phase references must be lists of strings")
        return list(value)

    @field_validator("agents")
    @classmethod
    def _validate_agents(cls, value: list[str]) -> list[str]:
        normalized: list[str] = []
        for item in value:
            if not isinstance(item, str):
                raise ValueError("agent ids must be strings")
            trimmed = item.strip()
            if not trimmed:
                raise ValueError("agent ids cannot be blank")
            normalized.append(trimmed)
        return normalized


class PlanPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    phases: list[PhasePayload] = Field(..., min_length=1)
    estimatedDuration: float = Field(default=0.0)
    reasoning: str = Field(default="")

    @field_validator("estimatedDuration", mode="before")
    @classmethod
    def _coerce_duration(cls, value: Any) -> float:
        if value is None:
            return 0.0
        try:
            numeric = float(value)
        except (TypeError, ValueError) as exc:
            raise ValueError("estimatedDuration must be numeric") from exc
        if not math.isfinite(numeric) or numeric < 0:
            raise ValueError("estimatedDuration must be a non-negative number")
        return numeric


def sanitize_plan_payload(payload: Mapping[str, Any]) -> dict[str, Any]:
    """Drop keys outside the contract so that verbose models still validate."""
    extra_top_level = sorted(key for key in payload.keys() if key not in _PLAN_KEYS)
    if extra_top_level:
        logger.info("plan_payload_extra_fields", extra_keys=extra_top_level)

    sanitized: dict[str, Any] = {key: payload[key] for key in _PLAN_KEYS if key in payload}
    phases = payload.get("phases")
    if isinstance(phases, list):
        sanitized["phases"] = [
            {key: entry[key] for key in _PHASE_KEYS if key in entry}
            for entry in phases
            if isinstance(entry, Mapping)
        ]
    return sanitized


def _metric_reason_from_error(error: ValidationError) -> str:
    details = error.errors()
    if not details:
        return "unknown"
    first = details[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    err_type = first.get("type", "validation")
    reason = f"{location}:{err_type}" if location else err_type
    return reason.replace(":", "_").replace(" ", "_") or "unknown"


class PlanGatekeeper:
    """Validates proposed plan payloads against the plan contract."""

    def __init__(self, *, contract_version: str = "plan.contract.v1") -> None:
        self._contract_version = contract_version

    @property
    def contract_version(self) -> str:
        return self._contract_version

    def enforce(self, payload: Mapping[str, Any], *, raw_response: str) -> ExecutionPlan:
        try:
            plan_model = PlanPayload.model_validate(payload)
        except ValidationError as exc:
            reason = _metric_reason_from_error(exc)
            increment_plan_contract_failure(reason=reason)
            logger.warning(
                "plan_contract_rejected",
                reason=reason,
                errors=exc.errors(),
                response_chars=len(raw_response),
            )
            raise PlanContractViolation("Plan payload failed contract validation") from exc

        phases = [
            ExecutionPhase(
                name=phase.name,
                agents=list(phase.agents),
                run_in_parallel=phase.runInParallel,
                depends_on=list(phase.dependsOn) if phase.dependsOn is not None else None,
            )
            for phase in plan_model.phases
        ]
        return ExecutionPlan(
            phases=phases,
            estimated_duration=plan_model.estimatedDuration,
            reasoning=plan_model.reasoning,
        )
