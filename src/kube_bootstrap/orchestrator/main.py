"""CLI entrypoint for the bootstrap orchestrator.

`bootstrap run` provisions this node for a role; `bootstrap status` prints the
persisted state of a run.

Exit codes:
  0    succeeded (or partially complete because of --only)
  1    unexpected error
  2    configuration error (settings, step graph, options)
  3    a step failed
  4    run state could not be read, written or locked
  130  interrupted (resume with the same --run-id)
"""

from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
from collections.abc import Iterator
from contextlib import contextmanager

from pydantic import ValidationError

from kube_bootstrap import __version__
from kube_bootstrap.orchestrator.bootstrap import Orchestrator, RunOptions, RunOutcome, RunResult
from kube_bootstrap.orchestrator.config import BootstrapSettings
from kube_bootstrap.orchestrator.logging import configure_logging
from kube_bootstrap.orchestrator.workflow import (
    ConfigError,
    Role,
    RunInterrupted,
    RunState,
    StateStoreError,
)

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_UNEXPECTED = 1
EXIT_CONFIG = 2
EXIT_STEP_FAILED = 3
EXIT_STATE = 4
EXIT_INTERRUPTED = 130


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="bootstrap",
        description="Declarative, resumable bootstrap of a small Kubernetes cluster",
    )
    parser.add_argument("--version", action="version", version=f"kube-bootstrap {__version__}")

    subparsers = parser.add_subparsers(dest="command", required=True)

    run = subparsers.add_parser("run", help="Provision this node for a role")
    run.add_argument(
        "--role",
        required=True,
        choices=[r.value for r in Role],
        help="Node role",
    )
    run.add_argument(
        "--run-id",
        required=True,
        help="Identifies the run; re-using it resumes where the last invocation stopped",
    )
    mode = run.add_mutually_exclusive_group()
    mode.add_argument(
        "--resume",
        action="store_true",
        help="Require existing state for --run-id instead of starting a new run",
    )
    mode.add_argument(
        "--fresh",
        action="store_true",
        help="Discard any saved state for --run-id and start over",
    )
    run.add_argument(
        "--dry-run",
        action="store_true",
        help="Print the plan without executing steps or writing state",
    )
    run.add_argument(
        "--only",
        nargs="+",
        default=[],
        metavar="STEP",
        help="Run only these steps and the steps they depend on",
    )

    status = subparsers.add_parser("status", help="Show the saved state of a run")
    status.add_argument("--run-id", required=True, help="Run to inspect")

    return parser


@contextmanager
def _cancel_on_sigterm(cancel: threading.Event) -> Iterator[None]:
    """Turn SIGTERM into a cooperative cancellation for the duration of the block."""

    def _handler(signum: int, _frame: object) -> None:
        logger.warning("Termination requested, stopping", extra={"signal": signum})
        cancel.set()

    try:
        previous = signal.signal(signal.SIGTERM, _handler)
    except ValueError:
        # Not the main thread; rely on KeyboardInterrupt only.
        yield
        return
    try:
        yield
    finally:
        signal.signal(signal.SIGTERM, previous)


def _print_state(state: RunState) -> None:
    width = max((len(r.step_id) for r in state.records), default=0)
    print(f"Run {state.run_id} ({state.role.value}): {state.status.value}")
    for record in state.records:
        line = f"  {record.step_id:<{width}}  {record.status.value:<9}"
        if record.attempts:
            line += f"  attempts={record.attempts}"
        if record.skip_reason is not None:
            line += f"  ({record.skip_reason.value})"
        if record.last_error:
            line += f"  error: {record.last_error}"
        print(line)


def _print_plan(result: RunResult) -> None:
    print(f"Dry run for {result.run_id}:")
    width = max((len(p.step_id) for p in result.plan), default=0)
    for planned in result.plan:
        print(f"  {planned.step_id:<{width}}  {planned.decision:<28}  {planned.description}")


def _run(args: argparse.Namespace, orchestrator: Orchestrator) -> int:
    options = RunOptions(
        run_id=args.run_id,
        resume=args.resume,
        fresh=args.fresh,
        dry_run=args.dry_run,
        targets=tuple(args.only),
    )
    result = orchestrator.run(Role(args.role), options)

    if result.outcome == RunOutcome.PLANNED:
        _print_plan(result)
        return EXIT_OK

    if result.state is not None:
        _print_state(result.state)
    if result.outcome == RunOutcome.FAILED:
        print(f"Step {result.failed_step} failed: {result.error}", file=sys.stderr)
        print(
            f"Fix the problem and re-run with --run-id {result.run_id} to resume.",
            file=sys.stderr,
        )
        return EXIT_STEP_FAILED
    if result.outcome == RunOutcome.PARTIALLY_COMPLETE:
        print(f"Selected steps complete; next pending step: {result.resume_point}")
    else:
        print("Bootstrap complete.")
    return EXIT_OK


def _status(args: argparse.Namespace, orchestrator: Orchestrator) -> int:
    state = orchestrator.status(args.run_id)
    if state is None:
        print(f"No saved state for run {args.run_id}", file=sys.stderr)
        return EXIT_CONFIG
    _print_state(state)
    resume_point = state.resume_point()
    if resume_point is not None:
        print(f"Resume point: {resume_point}")
    return EXIT_OK


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = BootstrapSettings()
    except ValidationError as e:
        # Logging isn't configured yet; keep it simple and actionable.
        print("Configuration error (check your .env):", file=sys.stderr)
        print(e, file=sys.stderr)
        return EXIT_CONFIG

    configure_logging(settings.log_level, fmt=settings.log_format, color=settings.log_color)

    cancel = threading.Event()
    orchestrator = Orchestrator(settings, cancel_event=cancel)

    try:
        with _cancel_on_sigterm(cancel):
            if args.command == "run":
                return _run(args, orchestrator)
            if args.command == "status":
                return _status(args, orchestrator)
        parser.error(f"Unknown command: {args.command}")
        return EXIT_UNEXPECTED
    except ConfigError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        print(f"Configuration error: {e}", file=sys.stderr)
        return EXIT_CONFIG
    except StateStoreError as e:
        logger.error("Run state error", extra={"error": str(e)})
        print(f"Run state error: {e}", file=sys.stderr)
        return EXIT_STATE
    except (RunInterrupted, KeyboardInterrupt) as e:
        run_id = getattr(args, "run_id", None)
        logger.warning("Interrupted", extra={"run_id": run_id, "detail": str(e)})
        print(f"Interrupted. Re-run with --run-id {run_id} to resume.", file=sys.stderr)
        return EXIT_INTERRUPTED
    except Exception:
        logger.exception("Command failed")
        return EXIT_UNEXPECTED


if __name__ == "__main__":
    raise SystemExit(main())
