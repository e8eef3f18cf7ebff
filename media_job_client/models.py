from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from media_job_client.errors import ProtocolError

DEFAULT_STAGE = "Processing"


class JobState(str, Enum):
    pending = "Pending"
    running = "Running"
    completed = "Completed"
    failed = "Failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.completed, JobState.failed)

    @classmethod
    def from_wire(cls, value: str) -> Optional["JobState"]:
        """Match a wire status case-insensitively, None when unknown"""
        for state in cls:
            if state.value.lower() == value.strip().lower():
                return state
        return None


class StatusSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    state: JobState
    progress_percent: float = Field(default=0, ge=0, le=100)
    progress_stage: str = DEFAULT_STAGE
    error_message: Optional[str] = None
    raw_status: str = ""
    recognized: bool = True
    raw_response: dict = Field(default_factory=dict)

    @classmethod
    def from_payload(cls, data: Any) -> "StatusSnapshot":
        """Build a snapshot from the `data` member of a status response.

        Only `status` is load-bearing. Progress and error fields are
        best-effort and fall back to defaults when missing or malformed.
        Unknown statuses are kept as non-terminal with `recognized=False`.
        """
        if not isinstance(data, dict):
            raise ProtocolError(
                f"Status payload must be an object, got {type(data).__name__}",
                server_payload=data,
            )
        status = data.get("status")
        if not isinstance(status, str):
            raise ProtocolError("Status payload has no status string", server_payload=data)

        state = JobState.from_wire(status)
        recognized = state is not None
        if state is None:
            state = JobState.running

        progress = data.get("progress")
        if not isinstance(progress, dict):
            progress = {}
        percent = _coerce_percent(progress.get("percentage"))
        stage = progress.get("stage")
        if not isinstance(stage, str) or not stage:
            stage = DEFAULT_STAGE

        error = data.get("error")
        error_message = None
        if isinstance(error, dict) and error.get("message"):
            error_message = str(error["message"])

        return cls(
            state=state,
            progress_percent=percent,
            progress_stage=stage,
            error_message=error_message,
            raw_status=status,
            recognized=recognized,
            raw_response=data,
        )


def _coerce_percent(value: Any) -> float:
    # bool is an int subclass but never a meaningful percentage
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    return min(max(float(value), 0.0), 100.0)


class PollResult(str, Enum):
    succeeded = "succeeded"
    failed = "failed"
    cancelled = "cancelled"
    timed_out = "timed_out"
    protocol_error = "protocol_error"


class PollOutcome(BaseModel):
    model_config = ConfigDict(frozen=True)

    job_id: str
    result: PollResult
    snapshot: Optional[StatusSnapshot] = None
    reason: Optional[str] = None
    attempts: int = 0

    @property
    def succeeded(self) -> bool:
        return self.result == PollResult.succeeded


class PollingConfig(BaseModel):
    poll_interval: float = Field(default=5.0, ge=0)
    timeout: Optional[float] = Field(default=None, gt=0)
    max_attempts: Optional[int] = Field(default=None, ge=1)
    max_consecutive_protocol_errors: Optional[int] = Field(default=5, ge=1)
