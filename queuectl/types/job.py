"""
Job-related type definitions for internal use.
"""

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import pydantic
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from queuectl.errors import ValidationError


class JobSpec(BaseModel):
    """
    Job specification accepted by enqueue.
    Only ``command`` is required; unknown keys are rejected.
    """

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    id: str | None = Field(default=None, min_length=1, max_length=255)
    command: str = Field(..., min_length=1)
    max_retries: int | None = Field(
        default=None,
        ge=0,
        validation_alias=AliasChoices("max_retries", "maxRetries"),
    )
    next_run_at: datetime | None = None

    @field_validator("command")
    @classmethod
    def _command_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("command must not be blank")
        return value

    @field_validator("next_run_at")
    @classmethod
    def _assume_utc(cls, value: datetime | None) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


def parse_job_spec(raw: str | dict[str, Any]) -> JobSpec:
    """
    Build a JobSpec from a JSON string or a decoded mapping.

    Args:
        raw: JSON text or dict.

    Returns:
        The validated JobSpec.

    Raises:
        ValidationError: If the input is not a valid job specification.
    """
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ValidationError(f"Job spec is not valid JSON: {e.msg}") from e

    if not isinstance(raw, dict):
        raise ValidationError("Job spec must be a JSON object")

    try:
        return JobSpec.model_validate(raw)
    except pydantic.ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'spec'}: {err['msg']}"
            for err in e.errors()
        )
        raise ValidationError(f"Invalid job spec: {problems}") from e


class CommandResult(BaseModel):
    """
    Result of running a job's command.
    Returned by the command runner after the process exits or times out.
    """

    success: bool
    stdout: str = ""
    stderr: str = ""
    error: str | None = None
    exit_code: int | None = None
    timed_out: bool = False
    duration_ms: float | None = None


@dataclass
class FailureOutcome:
    """Transition taken after a failed execution."""

    moved_to_dlq: bool
    attempts: int
    delay_seconds: float | None = None
