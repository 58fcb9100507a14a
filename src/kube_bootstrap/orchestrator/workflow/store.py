"""Durable, single-writer persistence of run state.

Layout: one JSON document per run under `<root>/runs/<run_id>.json`, guarded by
an advisory lock file `<run_id>.lock` next to it.

Writes go to a temporary file in the same directory which is fsync'ed and then
atomically renamed over the previous document, so a crash leaves either the old
or the new record, never a partial one.
"""

from __future__ import annotations

import errno
import fcntl
import json
import logging
import os
import re
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import IO

from pydantic import ValidationError

from .errors import ConfigError, LockContentionError, StateStoreError
from .state_machine import RunState

logger = logging.getLogger(__name__)

_RUN_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")


def validate_run_id(run_id: str) -> str:
    if not _RUN_ID_RE.match(run_id):
        raise ConfigError(
            f"Invalid run id {run_id!r}: use letters, digits, '.', '_' or '-' (max 128 chars)"
        )
    return run_id


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, owned by someone else.
        return True
    return True


def _read_pid(handle: IO[str]) -> int | None:
    handle.seek(0)
    raw = handle.read().strip()
    try:
        return int(raw)
    except ValueError:
        return None


class RunLock:
    """Advisory, process-scoped lock for one run id.

    Uses `flock`, which the kernel releases when the holding process exits, even
    abnormally. The holder PID is written into the lock file for diagnostics.
    """

    def __init__(self, path: Path, run_id: str) -> None:
        self.path = path
        self.run_id = run_id
        self._handle: IO[str] | None = None

    @property
    def held(self) -> bool:
        return self._handle is not None

    def acquire(self) -> None:
        if self._handle is not None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        handle = open(self.path, "a+", encoding="utf-8")
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError as e:
            holder = _read_pid(handle)
            handle.close()
            if e.errno in (errno.EAGAIN, errno.EACCES, errno.EWOULDBLOCK):
                if holder is not None and not _pid_alive(holder):
                    logger.warning(
                        "Lock holder is not alive but the lock is still held",
                        extra={"run_id": self.run_id, "holder_pid": holder},
                    )
                raise LockContentionError(self.run_id, holder) from e
            raise StateStoreError(f"Failed to lock run {self.run_id!r}: {e}") from e

        previous = _read_pid(handle)
        if previous is not None and previous != os.getpid() and not _pid_alive(previous):
            logger.info(
                "Recovered lock left by a dead process",
                extra={"run_id": self.run_id, "previous_pid": previous},
            )
        handle.seek(0)
        handle.truncate()
        handle.write(str(os.getpid()))
        handle.flush()
        self._handle = handle

    def release(self) -> None:
        handle = self._handle
        if handle is None:
            return
        self._handle = None
        try:
            handle.seek(0)
            handle.truncate()
            handle.flush()
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        finally:
            handle.close()


class StateStore:
    """Persist run state so a failed or interrupted run can resume."""

    def __init__(self, root: Path) -> None:
        self.root = root
        self.runs_dir = root / "runs"
        self._locks: dict[str, RunLock] = {}

    def state_file(self, run_id: str) -> Path:
        return self.runs_dir / f"{validate_run_id(run_id)}.json"

    def lock_file(self, run_id: str) -> Path:
        return self.runs_dir / f"{validate_run_id(run_id)}.lock"

    def holds_lock(self, run_id: str) -> bool:
        lock = self._locks.get(run_id)
        return lock is not None and lock.held

    @contextmanager
    def lock(self, run_id: str) -> Iterator[None]:
        """Hold the run lock for the duration of the block.

        Re-entrant within one store instance.
        """

        if self.holds_lock(run_id):
            yield
            return

        lock = RunLock(self.lock_file(run_id), run_id)
        lock.acquire()
        self._locks[run_id] = lock
        logger.debug("Run lock acquired", extra={"run_id": run_id, "path": str(lock.path)})
        try:
            yield
        finally:
            self._locks.pop(run_id, None)
            lock.release()
            logger.debug("Run lock released", extra={"run_id": run_id})

    def load(self, run_id: str) -> RunState | None:
        """Load the saved state for `run_id`, or None if this is a first run."""

        path = self.state_file(run_id)
        if not path.exists():
            logger.info("No existing run state found, starting fresh", extra={"run_id": run_id})
            return None

        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
            state = RunState.model_validate(raw)
        except (OSError, json.JSONDecodeError, ValidationError) as e:
            raise StateStoreError(f"Run state at {path} is unreadable: {e}") from e

        if state.run_id != run_id:
            raise StateStoreError(
                f"Run state at {path} belongs to run {state.run_id!r}, not {run_id!r}"
            )

        logger.info(
            "Run state loaded",
            extra={"run_id": run_id, "status": state.status.value, "revision": state.revision},
        )
        return state

    def save(self, run_id: str, state: RunState) -> None:
        """Atomically replace the stored state.

        Rejects writers that do not hold (or cannot take) the run lock, and
        writers whose copy is older than what is on disk.
        """

        if state.run_id != run_id:
            raise StateStoreError(f"Refusing to save run {state.run_id!r} under {run_id!r}")

        with self.lock(run_id):
            path = self.state_file(run_id)
            on_disk = self._disk_revision(path)
            if on_disk is not None and on_disk != state.revision:
                raise StateStoreError(
                    f"Concurrent modification of run {run_id!r}: "
                    f"on-disk revision {on_disk}, expected {state.revision}"
                )

            candidate = state.model_copy(deep=True)
            candidate.revision = state.revision + 1
            candidate.updated_at = datetime.now(UTC)
            payload = json.dumps(candidate.model_dump(mode="json"), indent=2, ensure_ascii=False)

            self._atomic_write(path, payload + "\n")
            state.revision = candidate.revision
            state.updated_at = candidate.updated_at

        logger.debug("Run state saved", extra={"run_id": run_id, "revision": state.revision})

    def delete(self, run_id: str) -> bool:
        with self.lock(run_id):
            path = self.state_file(run_id)
            if not path.exists():
                return False
            try:
                path.unlink()
            except OSError as e:
                raise StateStoreError(f"Failed to delete run state {path}: {e}") from e
            logger.warning("Run state deleted", extra={"run_id": run_id})
            return True

    def list_runs(self) -> list[str]:
        if not self.runs_dir.exists():
            return []
        return sorted(p.stem for p in self.runs_dir.glob("*.json") if not p.name.startswith("."))

    def _disk_revision(self, path: Path) -> int | None:
        if not path.exists():
            return None
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise StateStoreError(f"Run state at {path} is unreadable: {e}") from e
        revision = raw.get("revision") if isinstance(raw, dict) else None
        return revision if isinstance(revision, int) else 0

    def _atomic_write(self, path: Path, payload: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.stem}.", suffix=".tmp", dir=path.parent)
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
        except OSError as e:
            tmp_path.unlink(missing_ok=True)
            raise StateStoreError(f"Failed to write run state {path}: {e}") from e

        dir_fd = os.open(path.parent, os.O_RDONLY)
        try:
            os.fsync(dir_fd)
        finally:
            os.close(dir_fd)
