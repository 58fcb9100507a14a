"""Run-level orchestration.

The Orchestrator ties the pieces together for one invocation:
- resolve the step graph for the node role
- take the run lock and load (or create) the persisted RunState
- reconcile the saved records with the current graph
- hand the graph to the Executor and report the outcome
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Collection
from dataclasses import dataclass, field
from enum import Enum

from kube_bootstrap.orchestrator.cluster import Toolkit, build_role_steps
from kube_bootstrap.orchestrator.config import BootstrapSettings
from kube_bootstrap.orchestrator.workflow import (
    ConfigError,
    Executor,
    ExecutionRecord,
    RetryPolicy,
    Role,
    RunState,
    RunStatus,
    StateStore,
    Step,
    StepContext,
    StepGraph,
    StepStatus,
    VerificationGate,
)
from kube_bootstrap.orchestrator.workflow.store import validate_run_id

logger = logging.getLogger(__name__)

StepsFactory = Callable[[Role, BootstrapSettings], list[Step]]


def _default_steps(role: Role, settings: BootstrapSettings, toolkit: Toolkit) -> list[Step]:
    return build_role_steps(role, settings, toolkit)


@dataclass(frozen=True, slots=True)
class RunOptions:
    run_id: str
    resume: bool = False
    fresh: bool = False
    dry_run: bool = False
    targets: tuple[str, ...] = ()


class RunOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    PARTIALLY_COMPLETE = "partially_complete"
    PLANNED = "planned"


@dataclass(frozen=True, slots=True)
class PlannedStep:
    step_id: str
    description: str
    status: StepStatus
    decision: str

    @property
    def would_run(self) -> bool:
        return self.decision == "run"


@dataclass(frozen=True, slots=True)
class RunResult:
    outcome: RunOutcome
    run_id: str
    state: RunState | None = None
    failed_step: str | None = None
    error: str | None = None
    resume_point: str | None = None
    plan: list[PlannedStep] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.outcome != RunOutcome.FAILED

    @classmethod
    def from_state(cls, state: RunState, selected: Collection[str] | None = None) -> RunResult:
        failed = state.first_failed(among=selected)
        if state.status == RunStatus.FAILED and failed is not None:
            return cls(
                outcome=RunOutcome.FAILED,
                run_id=state.run_id,
                state=state,
                failed_step=failed.step_id,
                error=failed.last_error,
                resume_point=state.resume_point(),
            )
        outcome = (
            RunOutcome.SUCCEEDED
            if state.status == RunStatus.SUCCEEDED
            else RunOutcome.PARTIALLY_COMPLETE
        )
        return cls(
            outcome=outcome,
            run_id=state.run_id,
            state=state,
            resume_point=state.resume_point(),
        )


class Orchestrator:
    """Load the role's graph, run it, surface the result."""

    def __init__(
        self,
        settings: BootstrapSettings,
        *,
        store: StateStore | None = None,
        steps_factory: StepsFactory | None = None,
        cancel_event: threading.Event | None = None,
    ) -> None:
        self.settings = settings
        self.store = store or StateStore(settings.state_dir)
        self._steps_factory = steps_factory
        self.cancel_event = cancel_event or threading.Event()
        self._toolkit: Toolkit | None = None

    def graph_for(self, role: Role) -> StepGraph:
        """Build and validate the graph for `role`. Raises ConfigError."""

        if self._steps_factory is not None:
            return StepGraph.build(self._steps_factory(role, self.settings))
        if self._toolkit is None:
            self._toolkit = Toolkit.from_settings(self.settings)
        return StepGraph.build(_default_steps(role, self.settings, self._toolkit))

    def close(self) -> None:
        """Release the HTTP session of the built-in catalog, if one was opened."""

        if self._toolkit is not None:
            self._toolkit.close()
            self._toolkit = None

    def executor(self) -> Executor:
        s = self.settings
        return Executor(
            store=self.store,
            retry=RetryPolicy(
                base_delay=s.retry_base_delay_seconds, max_delay=s.retry_max_delay_seconds
            ),
            gate=VerificationGate(cancel_event=self.cancel_event),
            cancel_event=self.cancel_event,
        )

    def run(self, role: Role, options: RunOptions) -> RunResult:
        """Execute (or plan) the bootstrap for `role`.

        Raises:
            ConfigError: invalid graph, options or run id; role mismatch on resume.
            StateStoreError: the run is locked elsewhere or its state is unreadable.
            RunInterrupted: the run was cancelled; it is persisted as interrupted.
        """

        try:
            return self._run(role, options)
        finally:
            self.close()

    def _run(self, role: Role, options: RunOptions) -> RunResult:
        validate_run_id(options.run_id)
        if options.resume and options.fresh:
            raise ConfigError("--resume and --fresh are mutually exclusive")

        graph = self.graph_for(role)
        unknown = [t for t in options.targets if t not in graph]
        if unknown:
            raise ConfigError(f"Unknown target step(s): {', '.join(unknown)}")

        if options.dry_run:
            return self._plan(role, options, graph)

        with self.store.lock(options.run_id):
            if options.fresh and self.store.delete(options.run_id):
                logger.info("Discarded previous run state", extra={"run_id": options.run_id})

            state = self.store.load(options.run_id)
            if state is None:
                if options.resume:
                    raise ConfigError(f"No saved state to resume for run {options.run_id!r}")
                state = RunState.fresh(run_id=options.run_id, role=role, step_ids=graph.ids)
            else:
                self._reconcile(state, role, graph)
                logger.info(
                    "Resuming run",
                    extra={"run_id": state.run_id, "resume_point": state.resume_point()},
                )

            state = self.executor().run(graph, state, targets=options.targets or None)

        selected = set(graph.ancestors_of(options.targets)) if options.targets else None
        result = RunResult.from_state(state, selected)
        if result.outcome == RunOutcome.FAILED:
            logger.error(
                "Bootstrap failed",
                extra={
                    "run_id": result.run_id,
                    "failed_step": result.failed_step,
                    "error": result.error,
                },
            )
        else:
            logger.info(
                "Bootstrap finished",
                extra={"run_id": result.run_id, "outcome": result.outcome.value},
            )
        return result

    def plan(self, role: Role, options: RunOptions, graph: StepGraph | None = None) -> RunResult:
        """Describe what a run would do without executing actions or persisting.

        Preconditions are evaluated (checks are read-only) so steps that would be
        skipped as already satisfied are reported as such.
        """

        try:
            return self._plan(role, options, graph or self.graph_for(role))
        finally:
            self.close()

    def _plan(self, role: Role, options: RunOptions, graph: StepGraph) -> RunResult:
        state = None if options.fresh else self.store.load(options.run_id)
        if state is None and options.resume:
            raise ConfigError(f"No saved state to resume for run {options.run_id!r}")
        if state is not None:
            state = state.model_copy(deep=True)
            self._reconcile(state, role, graph)

        selected = (
            set(graph.ancestors_of(options.targets)) if options.targets else set(graph.ids)
        )
        planned: list[PlannedStep] = []
        for step in graph.topological_order():
            if step.id not in selected:
                continue
            status = state.record(step.id).status if state is not None else StepStatus.PENDING
            planned.append(
                PlannedStep(
                    step_id=step.id,
                    description=step.description,
                    status=status,
                    decision=self._decide(step, status),
                )
            )

        logger.info(
            "Dry run planned",
            extra={
                "run_id": options.run_id,
                "steps": len(planned),
                "would_run": sum(1 for p in planned if p.would_run),
            },
        )
        return RunResult(
            outcome=RunOutcome.PLANNED,
            run_id=options.run_id,
            state=state,
            resume_point=state.resume_point() if state is not None else None,
            plan=planned,
        )

    def status(self, run_id: str) -> RunState | None:
        validate_run_id(run_id)
        return self.store.load(run_id)

    def _decide(self, step: Step, status: StepStatus) -> str:
        if status == StepStatus.SUCCEEDED:
            return "skip: already succeeded"
        if step.precondition is None:
            return "run"
        ctx = StepContext(
            step_id=step.id,
            timeout=step.timeout,
            cancel_event=self.cancel_event,
            dry_run=True,
        )
        try:
            satisfied = step.precondition.evaluate(ctx).ok
        except Exception as e:
            logger.debug(
                "Precondition raised during planning",
                extra={"step_id": step.id, "error": str(e)},
            )
            satisfied = False
        return "skip: precondition satisfied" if satisfied else "run"

    def _reconcile(self, state: RunState, role: Role, graph: StepGraph) -> None:
        """Align saved records with the current graph, in declaration order."""

        if state.role != role:
            raise ConfigError(
                f"Run {state.run_id!r} was started for role {state.role.value!r}, "
                f"not {role.value!r}; use a different --run-id or --fresh"
            )

        if state.status == RunStatus.RUNNING:
            logger.warning(
                "Previous invocation ended while running; marking it interrupted",
                extra={"run_id": state.run_id},
            )
            state.transition(RunStatus.INTERRUPTED)

        by_id = {r.step_id: r for r in state.records}
        dropped = [sid for sid in by_id if sid not in graph]
        if dropped:
            logger.warning(
                "Dropping records for steps no longer in the graph",
                extra={"run_id": state.run_id, "steps": dropped},
            )
        state.records = [by_id.get(sid) or ExecutionRecord(step_id=sid) for sid in graph.ids]
