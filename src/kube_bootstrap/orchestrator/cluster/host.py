"""Idempotent host configuration actions and their checks.

Each action only changes what is not already in place, so re-running a step
(for example after a resume) never duplicates `/etc/hosts` entries or
re-comments `/etc/fstab`.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
from dataclasses import dataclass
from pathlib import Path

from kube_bootstrap.orchestrator.workflow.steps import ActionResult, CheckResult, StepContext

from .shell import Runner

logger = logging.getLogger(__name__)

_SWAP_LINE_RE = re.compile(r"^[ \t]*[^#\s]\S*[ \t]+\S+[ \t]+swap[ \t]", re.MULTILINE)


def _write_text(path: Path, content: str, mode: int | None = None) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f".{path.name}.tmp")
    tmp.write_text(content, encoding="utf-8")
    if mode is not None:
        os.chmod(tmp, mode)
    os.replace(tmp, path)


def _read_text(path: Path) -> str | None:
    try:
        return path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None


@dataclass(frozen=True, slots=True)
class WriteFile:
    """Write a file only when its content differs."""

    path: Path
    content: str
    mode: int | None = None

    def execute(self, _ctx: StepContext) -> ActionResult:
        if _read_text(self.path) == self.content:
            return ActionResult(ok=True, message=f"{self.path} unchanged")
        _write_text(self.path, self.content, self.mode)
        logger.info("File written", extra={"path": str(self.path)})
        return ActionResult(ok=True, message=f"wrote {self.path}")


@dataclass(frozen=True, slots=True)
class FileHasContent:
    path: Path
    content: str

    def evaluate(self, _ctx: StepContext) -> CheckResult:
        current = _read_text(self.path)
        if current is None:
            return CheckResult(ok=False, message=f"{self.path} does not exist")
        if current != self.content:
            return CheckResult(ok=False, message=f"{self.path} differs from desired content")
        return CheckResult(ok=True, message=f"{self.path} up to date")


@dataclass(frozen=True, slots=True)
class FileContains:
    path: Path
    needle: str

    def evaluate(self, _ctx: StepContext) -> CheckResult:
        current = _read_text(self.path)
        if current is None or self.needle not in current:
            return CheckResult(ok=False, message=f"{self.needle!r} not found in {self.path}")
        return CheckResult(ok=True, message=f"{self.path} contains {self.needle!r}")


@dataclass(frozen=True, slots=True)
class FileExists:
    path: Path

    def evaluate(self, _ctx: StepContext) -> CheckResult:
        if self.path.is_file():
            return CheckResult(ok=True, message=f"{self.path} exists")
        return CheckResult(ok=False, message=f"{self.path} does not exist")


@dataclass(frozen=True, slots=True)
class EnsureLines:
    """Append lines that are missing from a file, keeping a one-time backup.

    Idempotency:
      - A line already present (ignoring surrounding whitespace) is not added again.
      - The backup is only taken before the first modification.
    """

    path: Path
    lines: tuple[str, ...]
    backup_suffix: str = ".backup"

    def execute(self, _ctx: StepContext) -> ActionResult:
        current = _read_text(self.path) or ""
        present = {_normalise(line) for line in current.splitlines()}
        missing = [line for line in self.lines if _normalise(line) not in present]
        if not missing:
            return ActionResult(ok=True, message=f"{self.path} already has all entries")

        backup = self.path.with_name(self.path.name + self.backup_suffix)
        if self.path.exists() and not backup.exists():
            shutil.copy2(self.path, backup)

        prefix = "" if not current or current.endswith("\n") else "\n"
        _write_text(self.path, current + prefix + "\n".join(missing) + "\n")
        logger.info("Lines appended", extra={"path": str(self.path), "added": missing})
        return ActionResult(ok=True, message=f"added {len(missing)} line(s) to {self.path}")


@dataclass(frozen=True, slots=True)
class LinesPresent:
    path: Path
    lines: tuple[str, ...]

    def evaluate(self, _ctx: StepContext) -> CheckResult:
        current = _read_text(self.path) or ""
        present = {_normalise(line) for line in current.splitlines()}
        missing = [line for line in self.lines if _normalise(line) not in present]
        if missing:
            return CheckResult(ok=False, message=f"missing in {self.path}: {missing}")
        return CheckResult(ok=True, message=f"{self.path} has all entries")


def _normalise(line: str) -> str:
    return " ".join(line.split())


def comment_out_swap(fstab: str) -> str:
    """Comment every active swap entry in an fstab document."""

    return _SWAP_LINE_RE.sub(lambda m: "#" + m.group(0).lstrip(), fstab)


@dataclass(frozen=True, slots=True)
class DisableSwap:
    runner: Runner
    fstab: Path

    def execute(self, ctx: StepContext) -> ActionResult:
        result = self.runner.run(
            ("swapoff", "-a"), timeout=ctx.timeout, cancel_event=ctx.cancel_event
        )
        if not result.ok:
            return ActionResult(ok=False, message=result.describe())

        current = _read_text(self.fstab)
        if current is not None:
            updated = comment_out_swap(current)
            if updated != current:
                _write_text(self.fstab, updated)
                logger.info("Swap entries commented out", extra={"path": str(self.fstab)})
        return ActionResult(ok=True, message="swap disabled")


@dataclass(frozen=True, slots=True)
class SwapDisabled:
    proc_swaps: Path
    fstab: Path

    def evaluate(self, _ctx: StepContext) -> CheckResult:
        swaps = _read_text(self.proc_swaps) or ""
        active = [line for line in swaps.splitlines()[1:] if line.strip()]
        if active:
            return CheckResult(ok=False, message=f"{len(active)} active swap device(s)")
        fstab = _read_text(self.fstab) or ""
        if _SWAP_LINE_RE.search(fstab):
            return CheckResult(ok=False, message=f"swap still enabled in {self.fstab}")
        return CheckResult(ok=True, message="swap is off")


@dataclass(frozen=True, slots=True)
class ModulesLoaded:
    proc_modules: Path
    modules: tuple[str, ...]

    def evaluate(self, _ctx: StepContext) -> CheckResult:
        content = _read_text(self.proc_modules) or ""
        loaded = {line.split()[0] for line in content.splitlines() if line.strip()}
        missing = [m for m in self.modules if m not in loaded]
        if missing:
            return CheckResult(ok=False, message=f"kernel modules not loaded: {missing}")
        return CheckResult(ok=True, message="kernel modules loaded")


@dataclass(frozen=True, slots=True)
class EnsureDirectory:
    path: Path
    mode: int = 0o755

    def execute(self, _ctx: StepContext) -> ActionResult:
        self.path.mkdir(parents=True, exist_ok=True)
        os.chmod(self.path, self.mode)
        return ActionResult(ok=True, message=f"{self.path} ready")


@dataclass(frozen=True, slots=True)
class DirectoryReady:
    path: Path
    mode: int = 0o755

    def evaluate(self, _ctx: StepContext) -> CheckResult:
        if not self.path.is_dir():
            return CheckResult(ok=False, message=f"{self.path} does not exist")
        actual = self.path.stat().st_mode & 0o777
        if actual != self.mode:
            return CheckResult(ok=False, message=f"{self.path} has mode {actual:o}")
        return CheckResult(ok=True, message=f"{self.path} ready")


@dataclass(frozen=True, slots=True)
class CopyFile:
    source: Path
    dest: Path
    mode: int = 0o600

    def execute(self, ctx: StepContext) -> ActionResult:
        if not self.source.is_file():
            return ActionResult(ok=False, message=f"{self.source} does not exist")
        content = self.source.read_text(encoding="utf-8")
        return WriteFile(self.dest, content, self.mode).execute(ctx)


@dataclass(frozen=True, slots=True)
class ConfigureContainerd:
    """Generate the default containerd config with the systemd cgroup driver."""

    runner: Runner
    config_path: Path

    def execute(self, ctx: StepContext) -> ActionResult:
        result = self.runner.run(
            ("containerd", "config", "default"),
            timeout=ctx.timeout,
            cancel_event=ctx.cancel_event,
        )
        if not result.ok:
            return ActionResult(ok=False, message=result.describe())
        config = result.stdout.replace("SystemdCgroup = false", "SystemdCgroup = true")
        if "SystemdCgroup = true" not in config:
            return ActionResult(ok=False, message="default containerd config has no SystemdCgroup")
        return WriteFile(self.config_path, config).execute(ctx)


@dataclass(frozen=True, slots=True)
class InspectNetworkEnvironment:
    """Report things known to interfere with cluster networking.

    Never fails: findings are logged as warnings.
    """

    runner: Runner
    environment_file: Path
    proxy_env: tuple[tuple[str, str], ...] = ()

    def execute(self, ctx: StepContext) -> ActionResult:
        findings: list[str] = []

        zscaler = self.runner.run(
            ("pgrep", "-f", "zscaler"), timeout=ctx.timeout, cancel_event=ctx.cancel_event
        )
        if zscaler.returncode == 0:
            findings.append("Zscaler is running; Kubernetes ports may need exceptions")

        for name, value in self.proxy_env:
            if name.isupper():
                findings.append(f"{name}={value}")

        env_file = _read_text(self.environment_file) or ""
        proxy_lines = [line for line in env_file.splitlines() if "proxy" in line.lower()]
        if proxy_lines:
            findings.append(f"proxy configured in {self.environment_file}")

        for finding in findings:
            logger.warning("Network environment", extra={"finding": finding})
        if not findings:
            return ActionResult(ok=True, message="no proxy or Zscaler interference detected")
        return ActionResult(ok=True, message="; ".join(findings))


@dataclass(frozen=True, slots=True)
class CheckNodeConnectivity:
    """Resolve, ping and TCP-connect to the cluster's nodes.

    Unreachable peers are logged as warnings; with `strict` they fail the step.
    """

    runner: Runner
    peers: tuple[tuple[str, tuple[int, ...]], ...]
    strict: bool = False
    connect_timeout: int = 5

    def _commands(self, host: str, ports: tuple[int, ...]) -> list[tuple[str, tuple[str, ...]]]:
        commands = [
            ("resolve", ("getent", "hosts", host)),
            ("ping", ("ping", "-c", "3", "-W", str(self.connect_timeout), host)),
        ]
        for port in ports:
            commands.append(
                (
                    f"tcp/{port}",
                    (
                        "timeout",
                        str(self.connect_timeout),
                        "bash",
                        "-c",
                        f"exec 3<>/dev/tcp/{host}/{port}",
                    ),
                )
            )
        return commands

    def execute(self, ctx: StepContext) -> ActionResult:
        failures: list[str] = []
        for host, ports in self.peers:
            for name, argv in self._commands(host, ports):
                result = self.runner.run(argv, timeout=ctx.timeout, cancel_event=ctx.cancel_event)
                if result.cancelled:
                    return ActionResult(ok=False, message="cancelled")
                if not result.ok:
                    failures.append(f"{host} {name}")
                    logger.warning(
                        "Node connectivity check failed",
                        extra={"host": host, "check": name, "detail": result.describe()},
                    )

        checked = ", ".join(host for host, _ in self.peers)
        if not failures:
            return ActionResult(ok=True, message=f"reachable: {checked}")
        message = f"unreachable: {'; '.join(failures)}"
        return ActionResult(ok=not self.strict, message=message)
