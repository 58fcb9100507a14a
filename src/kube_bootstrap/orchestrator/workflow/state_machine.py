"""Explicit, persisted state for a bootstrap run.

Both the per-step records and the run itself move through small transition
tables. Illegal transitions fail loudly so a resumed run can never silently
report work it did not do.
"""

from __future__ import annotations

from collections.abc import Collection
from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from .errors import IllegalTransitionError

SCHEMA_VERSION = 1


class Role(str, Enum):
    CONTROL_PLANE = "control-plane"
    WORKER = "worker"


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class SkipReason(str, Enum):
    ALREADY_SUCCEEDED = "already_succeeded"
    PRECONDITION_SATISFIED = "precondition_satisfied"
    DEPENDENCY_FAILED = "dependency_failed"


class RunStatus(str, Enum):
    NOT_STARTED = "not_started"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    PARTIALLY_COMPLETE = "partially_complete"
    INTERRUPTED = "interrupted"


TERMINAL_STEP_STATUSES = {StepStatus.SUCCEEDED, StepStatus.FAILED, StepStatus.SKIPPED}

STEP_TRANSITIONS: dict[StepStatus, set[StepStatus]] = {
    StepStatus.PENDING: {StepStatus.RUNNING, StepStatus.SUCCEEDED, StepStatus.SKIPPED},
    StepStatus.RUNNING: {StepStatus.RUNNING, StepStatus.SUCCEEDED, StepStatus.FAILED},
    # Terminal records only go back to pending when a run is explicitly re-run.
    StepStatus.SUCCEEDED: {StepStatus.PENDING},
    StepStatus.FAILED: {StepStatus.PENDING},
    StepStatus.SKIPPED: {StepStatus.PENDING},
}

RUN_TRANSITIONS: dict[RunStatus, set[RunStatus]] = {
    RunStatus.NOT_STARTED: {RunStatus.RUNNING},
    RunStatus.RUNNING: {
        RunStatus.SUCCEEDED,
        RunStatus.FAILED,
        RunStatus.PARTIALLY_COMPLETE,
        RunStatus.INTERRUPTED,
    },
    RunStatus.INTERRUPTED: {RunStatus.RUNNING},
    RunStatus.FAILED: {RunStatus.RUNNING},
    RunStatus.PARTIALLY_COMPLETE: {RunStatus.RUNNING},
    RunStatus.SUCCEEDED: {RunStatus.RUNNING},
}


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


class ExecutionRecord(BaseModel):
    """Progress of a single step within a run."""

    model_config = ConfigDict(extra="ignore")

    step_id: str
    status: StepStatus = StepStatus.PENDING
    attempts: int = 0
    last_error: str | None = None
    message: str | None = None
    skip_reason: SkipReason | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None

    def advance(self, to: StepStatus) -> None:
        allowed = STEP_TRANSITIONS.get(self.status, set())
        if to not in allowed:
            raise IllegalTransitionError(
                f"Illegal step transition for {self.step_id!r}: {self.status.value} -> {to.value}"
            )
        now = _utc_now()
        if to == StepStatus.RUNNING:
            if self.status == StepStatus.PENDING:
                self.started_at = now
                self.finished_at = None
            self.attempts += 1
        elif to in TERMINAL_STEP_STATUSES:
            self.finished_at = now
        self.status = to

    def reset(self) -> None:
        """Return a terminal record to pending for a re-run."""

        self.advance(StepStatus.PENDING)
        self.attempts = 0
        self.last_error = None
        self.message = None
        self.skip_reason = None
        self.started_at = None
        self.finished_at = None


class RunState(BaseModel):
    """Ordered record of step executions for one run.

    Unknown fields are ignored so state written by a newer release can still be
    resumed by an older one, and vice versa.
    """

    model_config = ConfigDict(extra="ignore")

    schema_version: int = SCHEMA_VERSION
    run_id: str
    role: Role
    status: RunStatus = RunStatus.NOT_STARTED
    revision: int = 0
    created_at: datetime = Field(default_factory=_utc_now)
    updated_at: datetime = Field(default_factory=_utc_now)
    records: list[ExecutionRecord] = Field(default_factory=list)

    @classmethod
    def fresh(cls, *, run_id: str, role: Role, step_ids: list[str]) -> RunState:
        return cls(
            run_id=run_id,
            role=role,
            records=[ExecutionRecord(step_id=step_id) for step_id in step_ids],
        )

    def record(self, step_id: str) -> ExecutionRecord:
        for record in self.records:
            if record.step_id == step_id:
                return record
        raise KeyError(step_id)

    def transition(self, to: RunStatus) -> None:
        allowed = RUN_TRANSITIONS.get(self.status, set())
        if to not in allowed:
            raise IllegalTransitionError(
                f"Illegal run transition for {self.run_id!r}: {self.status.value} -> {to.value}"
            )
        self.status = to

    def first_failed(self, among: Collection[str] | None = None) -> ExecutionRecord | None:
        """The first failed record, optionally limited to the step ids in `among`."""

        for record in self.records:
            if among is not None and record.step_id not in among:
                continue
            if record.status == StepStatus.FAILED:
                return record
        return None

    def resume_point(self) -> str | None:
        """The first step that has not succeeded, or None when everything is done."""

        for record in self.records:
            if record.status != StepStatus.SUCCEEDED:
                return record.step_id
        return None

    def counts(self) -> dict[str, int]:
        out = {status.value: 0 for status in StepStatus}
        for record in self.records:
            out[record.status.value] += 1
        return out
