"""Models for polled results and the run summary."""

from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from pydantic import Field, model_validator

from synthetics_ci.models.base import Model


class ResultState(StrEnum):
    """Resolution state of an execution instance."""

    PENDING = "pending"
    FINISHED = "finished"
    ERROR = "error"

    @property
    def is_resolved(self) -> bool:
        return self is not ResultState.PENDING


EVENT_TYPE_TO_STATE = {
    "finished": ResultState.FINISHED,
    "error": ResultState.ERROR,
}


class Device(Model):
    """Device a browser result ran on."""

    id: str


class Result(Model):
    """Outcome payload of one execution instance."""

    passed: bool = False
    event_type: str = Field(default="", alias="eventType")
    state: ResultState = ResultState.PENDING
    device: Device | None = None
    error: str | None = None
    error_code: str | None = Field(default=None, alias="errorCode")
    error_message: str | None = Field(default=None, alias="errorMessage")
    duration: float | None = None
    step_details: list[dict[str, Any]] = Field(default_factory=list, alias="stepDetails")
    tunnel: bool = False
    unhealthy: bool | None = None

    @model_validator(mode="before")
    @classmethod
    def _resolve_state(cls, data: Any) -> Any:
        """Derive the resolution state from the raw event type, once."""
        if isinstance(data, dict) and "state" not in data:
            event_type = data.get("eventType", data.get("event_type", ""))
            data = {**data, "state": EVENT_TYPE_TO_STATE.get(event_type, ResultState.PENDING)}
        return data


class PollResult(Model):
    """A single resolved (or still pending) outcome for one trigger result."""

    result_id: str = Field(alias="resultID")
    dc_id: int | None = None
    result: Result = Field(default_factory=Result)

    @property
    def passed(self) -> bool:
        return self.result.passed

    @property
    def is_resolved(self) -> bool:
        return self.result.state.is_resolved


class PollResultsResponse(Model):
    """Response of the poll endpoint."""

    results: list[PollResult] = Field(default_factory=list)


def failing_result(
    message: str,
    result_id: str,
    location: int,
    device: str | None,
) -> PollResult:
    """Build a synthetic failed result for an instance that never resolved."""
    return PollResult(
        result_id=result_id,
        dc_id=location,
        result=Result(
            passed=False,
            event_type="finished",
            state=ResultState.FINISHED,
            device=Device(id=device) if device else None,
            error=message,
        ),
    )


@dataclass(kw_only=True)
class Summary:
    """Run-wide counters, mutated by the orchestrator only."""

    passed: int = 0
    failed: int = 0
    failed_non_blocking: int = 0
    skipped: int = 0
    not_found: int = 0
