#!/usr/bin/env python3
"""Programmatic bootstrap example.

This demonstrates using the orchestrator components directly:

* load settings from `.env`
* plan (or run) the step graph for a node role
* add a site-specific step on top of the built-in catalog

Role and run id are passed as arguments (not read from `.env`).
"""

from __future__ import annotations

import argparse
from typing import Sequence

from kube_bootstrap.orchestrator.bootstrap import (
    Orchestrator,
    RunOptions,
    RunOutcome,
    StepsFactory,
)
from kube_bootstrap.orchestrator.cluster import Toolkit, build_role_steps
from kube_bootstrap.orchestrator.cluster.shell import CommandSucceeds, RunCommands
from kube_bootstrap.orchestrator.config import BootstrapSettings
from kube_bootstrap.orchestrator.logging import configure_logging
from kube_bootstrap.orchestrator.workflow import Role, Step


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Plan or run a node bootstrap (example).")
    parser.add_argument("--role", required=True, choices=[r.value for r in Role])
    parser.add_argument("--run-id", required=True, help="Run id; re-use it to resume")
    parser.add_argument("--execute", action="store_true", help="Run instead of planning")
    return parser.parse_args(argv)


def with_chrony(toolkit: Toolkit) -> StepsFactory:
    """The built-in catalog plus time synchronisation."""

    def _steps(role: Role, settings: BootstrapSettings) -> list[Step]:
        chrony = Step(
            id="enable_chrony",
            action=RunCommands(
                runner=toolkit.runner,
                commands=(
                    ("dnf", "install", "-y", "chrony"),
                    ("systemctl", "enable", "--now", "chronyd"),
                ),
            ),
            depends_on=("install_base_packages",),
            precondition=CommandSucceeds(
                runner=toolkit.runner,
                commands=(("systemctl", "is-active", "--quiet", "chronyd"),),
            ),
            description="Keep the node clock in sync",
            timeout=settings.command_timeout_seconds,
        )
        return [*build_role_steps(role, settings, toolkit), chrony]

    return _steps


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_args(argv)

    settings = BootstrapSettings()
    configure_logging(settings.log_level, fmt="text")

    # A custom factory owns its toolkit, so it is closed here.
    toolkit = Toolkit.from_settings(settings)
    try:
        orchestrator = Orchestrator(settings, steps_factory=with_chrony(toolkit))
        result = orchestrator.run(
            Role(args.role), RunOptions(run_id=args.run_id, dry_run=not args.execute)
        )
    finally:
        toolkit.close()

    if result.outcome == RunOutcome.PLANNED:
        for planned in result.plan:
            print(f"{planned.step_id:<32} {planned.decision}")
        return 0

    print(f"Run {result.run_id}: {result.outcome.value}")
    if result.failed_step:
        print(f"Failed at {result.failed_step}: {result.error}")
        return 3
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
