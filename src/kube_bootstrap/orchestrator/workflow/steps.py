from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Protocol


@dataclass(frozen=True, slots=True)
class ActionResult:
    ok: bool
    message: str = ""


@dataclass(frozen=True, slots=True)
class CheckResult:
    ok: bool
    message: str = ""


@dataclass(frozen=True, slots=True)
class StepContext:
    """What an action or check is given when it runs.

    Keep this explicit. Cluster parameters belong to the action objects, not here.
    """

    step_id: str
    timeout: float | None = None
    cancel_event: threading.Event = field(default_factory=threading.Event)
    dry_run: bool = False

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()


class Action(Protocol):
    """A deterministic, idempotent provisioning unit."""

    def execute(self, ctx: StepContext) -> ActionResult: ...


class Check(Protocol):
    """A read-only probe. Checks never change the host or the cluster."""

    def evaluate(self, ctx: StepContext) -> CheckResult: ...


@dataclass(frozen=True, slots=True)
class FnAction:
    """Adapt a plain callable into an Action.

    The callable may return an ActionResult, a bool, or None (meaning success).
    """

    fn: Callable[[StepContext], ActionResult | bool | None]

    def execute(self, ctx: StepContext) -> ActionResult:
        result = self.fn(ctx)
        if isinstance(result, ActionResult):
            return result
        if result is None or result is True:
            return ActionResult(ok=True)
        return ActionResult(ok=False, message="action returned False")


@dataclass(frozen=True, slots=True)
class FnCheck:
    fn: Callable[[StepContext], CheckResult | bool]

    def evaluate(self, ctx: StepContext) -> CheckResult:
        result = self.fn(ctx)
        if isinstance(result, CheckResult):
            return result
        return CheckResult(ok=bool(result))


@dataclass(frozen=True, slots=True)
class AllOf:
    """Satisfied only when every wrapped check is satisfied."""

    checks: tuple[Check, ...]

    def evaluate(self, ctx: StepContext) -> CheckResult:
        for check in self.checks:
            result = check.evaluate(ctx)
            if not result.ok:
                return result
        return CheckResult(ok=True, message="all checks satisfied")


@dataclass(frozen=True, slots=True)
class Step:
    """A single named provisioning step.

    `precondition` short-circuits the step when its effect is already present.
    `verify` is polled after a successful action; failing it is retryable.
    `on_failure` runs once after the last attempt has failed, for diagnostics.
    """

    id: str
    action: Action
    depends_on: tuple[str, ...] = ()
    precondition: Check | None = None
    verify: Check | None = None
    description: str = ""
    timeout: float | None = None
    max_retries: int = 0
    verify_timeout: float = 60.0
    verify_interval: float = 2.0
    on_failure: Action | None = None

    def __post_init__(self) -> None:
        if not self.id:
            raise ValueError("Step id must not be empty")
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")


@dataclass(frozen=True, slots=True)
class ActionChain:
    """Run actions in order, stopping at the first failure."""

    actions: tuple[Action, ...]

    def execute(self, ctx: StepContext) -> ActionResult:
        messages: list[str] = []
        for action in self.actions:
            if ctx.cancelled:
                return ActionResult(ok=False, message="cancelled")
            result = action.execute(ctx)
            if not result.ok:
                return result
            if result.message:
                messages.append(result.message)
        return ActionResult(ok=True, message="; ".join(messages))
