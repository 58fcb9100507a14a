"""Unit tests for the `bootstrap` command line and its exit codes."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from pathlib import Path

import pytest

from kube_bootstrap.orchestrator import bootstrap
from kube_bootstrap.orchestrator.main import main
from kube_bootstrap.orchestrator.workflow import StateStore


@pytest.fixture(autouse=True)
def isolated_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[Path]:
    """Run each command from an empty directory with fast, local settings."""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level

    monkeypatch.chdir(tmp_path)
    for name, value in {
        "KUBE_BOOTSTRAP_STATE_DIR": str(tmp_path / "state"),
        "KUBE_BOOTSTRAP_ROOT_DIR": str(tmp_path / "root"),
        "KUBE_BOOTSTRAP_STEP_MAX_RETRIES": "0",
        "KUBE_BOOTSTRAP_RETRY_BASE_DELAY_SECONDS": "0",
        "KUBE_BOOTSTRAP_RETRY_MAX_DELAY_SECONDS": "0",
        "KUBE_BOOTSTRAP_LOG_FORMAT": "text",
        "KUBE_BOOTSTRAP_LOG_COLOR": "false",
    }.items():
        monkeypatch.setenv(name, value)

    yield tmp_path / "state"

    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def use_steps(monkeypatch: pytest.MonkeyPatch):
    def _use(*steps) -> None:
        monkeypatch.setattr(
            bootstrap, "_default_steps", lambda role, settings, toolkit: list(steps)
        )

    return _use


def test_successful_run(use_steps, make_step, capsys: pytest.CaptureFixture[str]) -> None:
    use_steps(make_step("a"), make_step("b", "a"))

    assert main(["run", "--role", "control-plane", "--run-id", "r1"]) == 0

    out = capsys.readouterr().out
    assert "Run r1 (control-plane): succeeded" in out
    assert "Bootstrap complete." in out


def test_step_failure_exits_3(use_steps, make_step, capsys: pytest.CaptureFixture[str]) -> None:
    use_steps(make_step("a", always_fail=True), make_step("b", "a"))

    assert main(["run", "--role", "worker", "--run-id", "r1"]) == 3

    captured = capsys.readouterr()
    assert "Step a failed: a broke" in captured.err
    assert "dependency_failed" in captured.out


def test_failed_run_can_be_resumed(use_steps, make_step, calls) -> None:
    use_steps(make_step("a"), make_step("b", "a", fail=1))

    assert main(["run", "--role", "worker", "--run-id", "r1"]) == 3
    assert main(["run", "--role", "worker", "--run-id", "r1", "--resume"]) == 0
    assert calls == ["a", "b", "b"]


def test_partial_run_by_target_exits_0(
    use_steps, make_step, calls, capsys: pytest.CaptureFixture[str]
) -> None:
    use_steps(make_step("a"), make_step("b", "a"), make_step("c"))

    assert main(["run", "--role", "worker", "--run-id", "r1", "--only", "b"]) == 0

    assert calls == ["a", "b"]
    assert "next pending step: c" in capsys.readouterr().out


def test_invalid_settings_exit_2(
    monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    monkeypatch.setenv("KUBE_BOOTSTRAP_LOG_LEVEL", "LOUD")

    assert main(["run", "--role", "worker", "--run-id", "r1"]) == 2
    assert "Configuration error" in capsys.readouterr().err


def test_cycle_exits_2(use_steps, make_step, calls) -> None:
    use_steps(make_step("a", "b"), make_step("b", "a"))

    assert main(["run", "--role", "worker", "--run-id", "r1"]) == 2
    assert calls == []


def test_worker_without_join_command_exits_2(capsys: pytest.CaptureFixture[str]) -> None:
    assert main(["run", "--role", "worker", "--run-id", "r1"]) == 2
    assert "JOIN_COMMAND" in capsys.readouterr().err


def test_locked_run_exits_4(isolated_env: Path, use_steps, make_step, calls) -> None:
    use_steps(make_step("a"))

    with StateStore(isolated_env).lock("r1"):
        assert main(["run", "--role", "worker", "--run-id", "r1"]) == 4
    assert calls == []


def test_interrupt_exits_130(use_steps, make_step, capsys: pytest.CaptureFixture[str]) -> None:
    use_steps(make_step("a", raises=KeyboardInterrupt()))

    assert main(["run", "--role", "worker", "--run-id", "r1"]) == 130
    assert "--run-id r1" in capsys.readouterr().err


def test_unexpected_error_exits_1(
    use_steps, make_step, monkeypatch: pytest.MonkeyPatch
) -> None:
    use_steps(make_step("a"))

    def _boom(self, role, options):
        raise RuntimeError("boom")

    monkeypatch.setattr(bootstrap.Orchestrator, "run", _boom)

    assert main(["run", "--role", "worker", "--run-id", "r1"]) == 1


def test_dry_run_prints_plan_without_state(
    isolated_env: Path, use_steps, make_step, calls, capsys: pytest.CaptureFixture[str]
) -> None:
    use_steps(make_step("a", description="Install things"), make_step("b", "a"))

    assert main(["run", "--role", "worker", "--run-id", "r1", "--dry-run"]) == 0

    out = capsys.readouterr().out
    assert "Dry run for r1:" in out
    assert "Install things" in out
    assert calls == []
    assert StateStore(isolated_env).load("r1") is None


def test_status(use_steps, make_step, capsys: pytest.CaptureFixture[str]) -> None:
    assert main(["status", "--run-id", "r1"]) == 2
    assert "No saved state" in capsys.readouterr().err

    use_steps(make_step("a"), make_step("b", "a", always_fail=True))
    main(["run", "--role", "worker", "--run-id", "r1"])
    capsys.readouterr()

    assert main(["status", "--run-id", "r1"]) == 0
    out = capsys.readouterr().out
    assert "Run r1 (worker): failed" in out
    assert "Resume point: b" in out


def test_resume_and_fresh_are_exclusive() -> None:
    with pytest.raises(SystemExit) as exc:
        main(["run", "--role", "worker", "--run-id", "r1", "--resume", "--fresh"])
    assert exc.value.code == 2


def test_invalid_run_id_exits_2() -> None:
    assert main(["status", "--run-id", "../etc"]) == 2
