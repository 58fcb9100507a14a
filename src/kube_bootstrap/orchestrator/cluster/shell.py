"""External command execution for provisioning steps.

Every host mutation in the bootstrap flow is an external tool (`dnf`,
`systemctl`, `kubeadm`, `kubectl`). Commands run with an explicit environment
(proxy variables), honour the step timeout, and are terminated when the run is
cancelled.
"""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
import threading
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Protocol

from kube_bootstrap.orchestrator.workflow.steps import ActionResult, CheckResult, StepContext

logger = logging.getLogger(__name__)

_TAIL_CHARS = 800


@dataclass(frozen=True, slots=True)
class CommandResult:
    argv: tuple[str, ...]
    returncode: int
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out and not self.cancelled

    def describe(self) -> str:
        cmd = shlex.join(self.argv)
        if self.cancelled:
            return f"`{cmd}` was cancelled"
        if self.timed_out:
            return f"`{cmd}` timed out"
        detail = (self.stderr.strip() or self.stdout.strip())[-_TAIL_CHARS:]
        suffix = f": {detail}" if detail else ""
        return f"`{cmd}` exited with {self.returncode}{suffix}"


class Runner(Protocol):
    def run(
        self,
        argv: Sequence[str],
        *,
        timeout: float | None = None,
        input: str | None = None,
        cancel_event: threading.Event | None = None,
    ) -> CommandResult: ...


@dataclass
class CommandRunner:
    """Run commands with `subprocess`, polling for cancellation."""

    env: Mapping[str, str] = field(default_factory=dict)
    poll_interval: float = 0.5
    kill_grace_seconds: float = 10.0

    def run(
        self,
        argv: Sequence[str],
        *,
        timeout: float | None = None,
        input: str | None = None,
        cancel_event: threading.Event | None = None,
    ) -> CommandResult:
        args = tuple(argv)
        logger.debug("Running command", extra={"command": shlex.join(args)})

        try:
            proc = subprocess.Popen(
                args,
                stdin=subprocess.PIPE if input is not None else subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                env={**os.environ, **self.env},
            )
        except FileNotFoundError:
            return CommandResult(argv=args, returncode=127, stderr=f"{args[0]}: command not found")

        started = time.monotonic()
        while True:
            try:
                stdout, stderr = proc.communicate(input=input, timeout=self.poll_interval)
                break
            except subprocess.TimeoutExpired:
                cancelled = cancel_event is not None and cancel_event.is_set()
                expired = timeout is not None and (time.monotonic() - started) >= timeout
                if cancelled or expired:
                    stdout, stderr = self._stop(proc)
                    logger.warning(
                        "Command stopped",
                        extra={
                            "command": shlex.join(args),
                            "reason": "cancelled" if cancelled else "timeout",
                        },
                    )
                    return CommandResult(
                        argv=args,
                        returncode=proc.returncode if proc.returncode is not None else -1,
                        stdout=stdout,
                        stderr=stderr,
                        timed_out=expired and not cancelled,
                        cancelled=cancelled,
                    )

        return CommandResult(argv=args, returncode=proc.returncode, stdout=stdout, stderr=stderr)

    def _stop(self, proc: subprocess.Popen[str]) -> tuple[str, str]:
        proc.terminate()
        try:
            return proc.communicate(timeout=self.kill_grace_seconds)
        except subprocess.TimeoutExpired:
            proc.kill()
            return proc.communicate()


@dataclass(frozen=True, slots=True)
class RunCommands:
    """Run a fixed list of commands, failing on the first non-zero exit."""

    runner: Runner
    commands: tuple[tuple[str, ...], ...]
    input: str | None = None

    def execute(self, ctx: StepContext) -> ActionResult:
        for argv in self.commands:
            result = self.runner.run(
                argv, timeout=ctx.timeout, input=self.input, cancel_event=ctx.cancel_event
            )
            if not result.ok:
                return ActionResult(ok=False, message=result.describe())
        return ActionResult(ok=True, message=f"ran {len(self.commands)} command(s)")


@dataclass(frozen=True, slots=True)
class CommandSucceeds:
    """Satisfied when every command exits 0."""

    runner: Runner
    commands: tuple[tuple[str, ...], ...]

    def evaluate(self, ctx: StepContext) -> CheckResult:
        for argv in self.commands:
            result = self.runner.run(argv, timeout=ctx.timeout, cancel_event=ctx.cancel_event)
            if not result.ok:
                return CheckResult(ok=False, message=result.describe())
        return CheckResult(ok=True, message="commands succeeded")


@dataclass(frozen=True, slots=True)
class CommandOutputContains:
    """Satisfied when the command's stdout contains every expected token."""

    runner: Runner
    argv: tuple[str, ...]
    expected: tuple[str, ...]

    def evaluate(self, ctx: StepContext) -> CheckResult:
        result = self.runner.run(self.argv, timeout=ctx.timeout, cancel_event=ctx.cancel_event)
        if not result.ok:
            return CheckResult(ok=False, message=result.describe())
        tokens = set(result.stdout.split())
        missing = [e for e in self.expected if e not in tokens]
        if missing:
            return CheckResult(ok=False, message=f"missing: {', '.join(missing)}")
        return CheckResult(ok=True, message="all expected entries present")
