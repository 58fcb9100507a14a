"""Error taxonomy for the bootstrap engine.

Configuration problems are fatal and surface before anything executes. Step
failures are recorded on the run state and surfaced by the orchestrator.
"""

from __future__ import annotations


class BootstrapError(Exception):
    """Base class for all engine errors."""


class ConfigError(BootstrapError):
    """Malformed step graph or invalid run configuration."""


class CycleError(ConfigError):
    def __init__(self, cycle: list[str]) -> None:
        self.cycle = cycle
        super().__init__(f"Dependency cycle detected: {' -> '.join(cycle)}")


class UnknownDependencyError(ConfigError):
    def __init__(self, step_id: str, dependency: str) -> None:
        self.step_id = step_id
        self.dependency = dependency
        super().__init__(f"Step {step_id!r} depends on unknown step {dependency!r}")


class DuplicateStepError(ConfigError):
    def __init__(self, step_id: str) -> None:
        self.step_id = step_id
        super().__init__(f"Step {step_id!r} is declared more than once")


class ActionError(BootstrapError):
    """A step's action failed.

    Actions may raise it (or a subclass) instead of returning a failed result;
    the executor records its message as the attempt's error.
    """


class VerificationTimeoutError(ActionError, TimeoutError):
    """A verification gate did not observe its condition before the timeout."""

    def __init__(self, message: str, *, last_message: str = "") -> None:
        self.last_message = last_message
        super().__init__(message)


class StateStoreError(BootstrapError):
    """Persisted run state could not be read or written."""


class LockContentionError(StateStoreError):
    def __init__(self, run_id: str, holder_pid: int | None) -> None:
        self.run_id = run_id
        self.holder_pid = holder_pid
        holder = f"pid {holder_pid}" if holder_pid is not None else "another process"
        super().__init__(f"Run {run_id!r} is locked by {holder}")


class RunInterrupted(BootstrapError):
    """The run was cancelled; it can be resumed with the same run id."""

    def __init__(self, run_id: str | None = None, step_id: str | None = None) -> None:
        self.run_id = run_id
        self.step_id = step_id
        what = f"Run {run_id!r}" if run_id else "Run"
        where = f" during step {step_id!r}" if step_id else ""
        super().__init__(f"{what} interrupted{where}")


class IllegalTransitionError(ValueError):
    pass
