"""Sequential step executor.

Walks a StepGraph in topological order, applying resume, idempotence, retry and
verification rules, and persists the run state after every transition so a
crash loses at most the step that was in flight.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Collection
from dataclasses import dataclass

from .errors import ActionError, RunInterrupted, VerificationTimeoutError
from .gate import VerificationGate
from .graph import StepGraph
from .state_machine import ExecutionRecord, RunState, RunStatus, SkipReason, StepStatus
from .steps import Check, CheckResult, Step, StepContext
from .store import StateStore

logger = logging.getLogger(__name__)

INTERRUPTED_MESSAGE = "interrupted before the step completed"


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Bounded exponential backoff between attempts of the same step."""

    base_delay: float = 2.0
    max_delay: float = 60.0

    def delay_for(self, failed_attempt: int) -> float:
        """Delay after the `failed_attempt`-th attempt (1-based) has failed."""

        if failed_attempt < 1:
            raise ValueError("failed_attempt must be >= 1")
        return min(self.base_delay * (2 ** (failed_attempt - 1)), self.max_delay)


class Executor:
    """Run the steps of a graph against a RunState it owns for the run."""

    def __init__(
        self,
        *,
        store: StateStore,
        retry: RetryPolicy | None = None,
        gate: VerificationGate | None = None,
        cancel_event: threading.Event | None = None,
    ) -> None:
        self._store = store
        self._retry = retry or RetryPolicy()
        self._cancel = cancel_event or threading.Event()
        self._gate = gate or VerificationGate(cancel_event=self._cancel)

    def run(
        self,
        graph: StepGraph,
        state: RunState,
        *,
        targets: Collection[str] | None = None,
    ) -> RunState:
        selected = set(graph.ancestors_of(targets)) if targets else set(graph.ids)

        if state.status != RunStatus.RUNNING:
            state.transition(RunStatus.RUNNING)
        self._prepare_rerun(state, selected)
        self._persist(state)

        logger.info(
            "Run started",
            extra={"run_id": state.run_id, "role": state.role.value, "steps": len(selected)},
        )

        for step in graph.topological_order():
            if step.id not in selected:
                continue
            record = state.record(step.id)

            if record.status == StepStatus.SUCCEEDED:
                record.skip_reason = SkipReason.ALREADY_SUCCEEDED
                record.message = "completed by a previous invocation"
                logger.info(
                    "Step already succeeded, skipping",
                    extra={"run_id": state.run_id, "step_id": step.id},
                )
                self._persist(state)
                continue
            if record.status == StepStatus.SKIPPED:
                continue

            if self._cancel.is_set():
                self._interrupt(state, step_id=None)

            if not self._run_step(step, record, state):
                self._skip_dependents(graph, step.id, state)
                break

        self._finish(graph, state, selected)
        return state

    def _prepare_rerun(self, state: RunState, selected: set[str]) -> None:
        for record in state.records:
            if record.status == StepStatus.RUNNING:
                # Conservative: a step caught mid-flight is treated as failed.
                record.last_error = INTERRUPTED_MESSAGE
                record.advance(StepStatus.FAILED)
                logger.warning(
                    "Step was interrupted by a previous invocation",
                    extra={"run_id": state.run_id, "step_id": record.step_id},
                )
            if record.step_id in selected and record.status in {
                StepStatus.FAILED,
                StepStatus.SKIPPED,
            }:
                record.reset()

    def _run_step(self, step: Step, record: ExecutionRecord, state: RunState) -> bool:
        ctx = StepContext(step_id=step.id, timeout=step.timeout, cancel_event=self._cancel)
        log_extra = {"run_id": state.run_id, "step_id": step.id}

        if step.precondition is not None:
            pre = self._evaluate(step.precondition, ctx)
            if pre.ok:
                record.advance(StepStatus.SUCCEEDED)
                record.skip_reason = SkipReason.PRECONDITION_SATISFIED
                record.message = pre.message or "already satisfied"
                logger.info("Step already satisfied", extra={**log_extra, "detail": pre.message})
                self._persist(state)
                return True

        total_attempts = step.max_retries + 1
        for attempt in range(1, total_attempts + 1):
            record.advance(StepStatus.RUNNING)
            self._persist(state)
            logger.info(
                "Step started",
                extra={**log_extra, "attempt": attempt, "max_attempts": total_attempts},
            )

            try:
                error = self._attempt(step, record, ctx)
            except (KeyboardInterrupt, RunInterrupted):
                record.last_error = INTERRUPTED_MESSAGE
                record.advance(StepStatus.FAILED)
                self._interrupt(state, step_id=step.id)

            if error is None:
                record.last_error = None
                record.advance(StepStatus.SUCCEEDED)
                logger.info("Step succeeded", extra={**log_extra, "attempt": attempt})
                self._persist(state)
                return True

            record.last_error = error
            if self._cancel.is_set():
                record.advance(StepStatus.FAILED)
                self._interrupt(state, step_id=step.id)

            if attempt < total_attempts:
                delay = self._retry.delay_for(attempt)
                logger.warning(
                    "Step attempt failed, retrying",
                    extra={**log_extra, "attempt": attempt, "delay_seconds": delay, "error": error},
                )
                self._persist(state)
                try:
                    cancelled = delay > 0 and self._cancel.wait(delay)
                except KeyboardInterrupt:
                    cancelled = True
                if cancelled:
                    record.advance(StepStatus.FAILED)
                    self._interrupt(state, step_id=step.id)

        record.advance(StepStatus.FAILED)
        logger.error(
            "Step failed",
            extra={**log_extra, "attempts": record.attempts, "error": record.last_error},
        )
        self._persist(state)
        if step.on_failure is not None:
            self._diagnose(step, ctx)
        return False

    def _attempt(self, step: Step, record: ExecutionRecord, ctx: StepContext) -> str | None:
        """Run the action and its verification once. Returns an error, or None."""

        try:
            result = step.action.execute(ctx)
        except (KeyboardInterrupt, RunInterrupted):
            raise
        except ActionError as e:
            return str(e) or type(e).__name__
        except Exception as e:
            logger.debug("Action raised", exc_info=True, extra={"step_id": step.id})
            return f"{type(e).__name__}: {e}"

        if not result.ok:
            return result.message or "action reported failure without a message"
        record.message = result.message or None

        if step.verify is not None:
            try:
                verified = self._gate.poll(
                    step.verify,
                    timeout=step.verify_timeout,
                    interval=step.verify_interval,
                    ctx=ctx,
                )
            except VerificationTimeoutError as e:
                return str(e)
            if verified.message:
                record.message = verified.message
        return None

    def _diagnose(self, step: Step, ctx: StepContext) -> None:
        try:
            step.on_failure.execute(ctx)
        except (KeyboardInterrupt, RunInterrupted):
            raise
        except Exception:
            logger.warning(
                "Failure diagnostics raised", exc_info=True, extra={"step_id": step.id}
            )

    def _evaluate(self, check: Check, ctx: StepContext) -> CheckResult:
        try:
            return check.evaluate(ctx)
        except Exception as e:
            logger.warning(
                "Precondition check raised, running the step",
                extra={"step_id": ctx.step_id, "error": str(e)},
            )
            return CheckResult(ok=False, message=str(e))

    def _skip_dependents(self, graph: StepGraph, failed_id: str, state: RunState) -> None:
        for dependent in graph.dependents_of(failed_id):
            record = state.record(dependent)
            if record.status != StepStatus.PENDING:
                continue
            record.advance(StepStatus.SKIPPED)
            record.skip_reason = SkipReason.DEPENDENCY_FAILED
            record.last_error = f"dependency {failed_id!r} failed"
        self._persist(state)

    def _finish(self, graph: StepGraph, state: RunState, selected: set[str]) -> None:
        # Failures outside a target selection belong to an earlier invocation.
        if state.first_failed(among=selected) is not None:
            state.transition(RunStatus.FAILED)
        elif all(state.record(sid).status == StepStatus.SUCCEEDED for sid in graph.ids):
            state.transition(RunStatus.SUCCEEDED)
        else:
            state.transition(RunStatus.PARTIALLY_COMPLETE)
        self._persist(state)
        logger.info(
            "Run finished",
            extra={"run_id": state.run_id, "status": state.status.value, **state.counts()},
        )

    def _interrupt(self, state: RunState, *, step_id: str | None) -> None:
        state.transition(RunStatus.INTERRUPTED)
        self._persist(state)
        logger.warning("Run interrupted", extra={"run_id": state.run_id, "step_id": step_id})
        raise RunInterrupted(state.run_id, step_id)

    def _persist(self, state: RunState) -> None:
        self._store.save(state.run_id, state)
