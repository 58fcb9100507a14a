"""Unit tests for run state persistence and the run lock."""

from __future__ import annotations

import json
import os
from pathlib import Path

import pytest

from kube_bootstrap.orchestrator.workflow import (
    ConfigError,
    LockContentionError,
    Role,
    RunState,
    StateStore,
    StateStoreError,
    StepStatus,
)


def _state(run_id: str = "r1") -> RunState:
    return RunState.fresh(run_id=run_id, role=Role.WORKER, step_ids=["a", "b"])


def test_load_returns_none_for_first_run(state_store: StateStore) -> None:
    assert state_store.load("r1") is None


def test_store_roundtrip(state_store: StateStore) -> None:
    state = _state()
    state.record("a").advance(StepStatus.SUCCEEDED)

    state_store.save("r1", state)
    state_store.save("r1", state)

    loaded = state_store.load("r1")
    assert loaded is not None
    assert loaded.revision == 2 == state.revision
    assert loaded.role == Role.WORKER
    assert loaded.record("a").status == StepStatus.SUCCEEDED
    assert state_store.list_runs() == ["r1"]


def test_save_leaves_no_temporary_files(state_store: StateStore) -> None:
    state_store.save("r1", _state())

    names = sorted(p.name for p in state_store.runs_dir.iterdir())
    assert names == ["r1.json", "r1.lock"]


def test_failed_write_keeps_previous_state(
    state_store: StateStore, monkeypatch: pytest.MonkeyPatch
) -> None:
    state = _state()
    state_store.save("r1", state)
    before = state_store.state_file("r1").read_text(encoding="utf-8")

    def _crash(src, dst):
        raise OSError("power lost")

    monkeypatch.setattr(os, "replace", _crash)
    state.record("a").advance(StepStatus.SUCCEEDED)
    with pytest.raises(StateStoreError):
        state_store.save("r1", state)

    assert state_store.state_file("r1").read_text(encoding="utf-8") == before
    assert state.revision == 1
    assert not list(state_store.runs_dir.glob("*.tmp"))


def test_corrupt_state_is_an_error(state_store: StateStore) -> None:
    state_store.runs_dir.mkdir(parents=True)
    state_store.state_file("r1").write_text('{"run_id": "r1", "role": "wor', encoding="utf-8")

    with pytest.raises(StateStoreError):
        state_store.load("r1")


def test_state_for_another_run_is_an_error(state_store: StateStore) -> None:
    state_store.save("r1", _state())
    raw = json.loads(state_store.state_file("r1").read_text(encoding="utf-8"))
    raw["run_id"] = "r2"
    state_store.state_file("r1").write_text(json.dumps(raw), encoding="utf-8")

    with pytest.raises(StateStoreError):
        state_store.load("r1")


def test_stale_writer_is_rejected(state_store: StateStore) -> None:
    state_store.save("r1", _state())
    first = state_store.load("r1")
    second = state_store.load("r1")
    assert first is not None and second is not None

    state_store.save("r1", first)
    with pytest.raises(StateStoreError, match="Concurrent modification"):
        state_store.save("r1", second)


def test_lock_excludes_other_writers(temp_state_dir: Path) -> None:
    holder = StateStore(temp_state_dir)
    intruder = StateStore(temp_state_dir)

    with holder.lock("r1"):
        assert holder.holds_lock("r1")
        with pytest.raises(LockContentionError) as exc:
            intruder.save("r1", _state())
        assert exc.value.holder_pid == os.getpid()
        # Re-entrant for the holder.
        holder.save("r1", _state())

    assert not holder.holds_lock("r1")
    intruder.load("r1")


def test_stale_lock_file_is_recovered(state_store: StateStore) -> None:
    state_store.runs_dir.mkdir(parents=True)
    # PID from a process that no longer holds (or never held) the flock.
    state_store.lock_file("r1").write_text("999999999", encoding="utf-8")

    state_store.save("r1", _state())

    assert state_store.load("r1") is not None


def test_delete(state_store: StateStore) -> None:
    state_store.save("r1", _state())

    assert state_store.delete("r1") is True
    assert state_store.delete("r1") is False
    assert state_store.load("r1") is None


@pytest.mark.parametrize("run_id", ["", "../escape", "a/b", ".hidden", "x" * 200])
def test_invalid_run_ids_are_rejected(state_store: StateStore, run_id: str) -> None:
    with pytest.raises(ConfigError):
        state_store.load(run_id)


def test_save_rejects_mismatched_run_id(state_store: StateStore) -> None:
    with pytest.raises(StateStoreError):
        state_store.save("other", _state("r1"))
