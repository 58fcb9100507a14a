"""Test configuration and fixtures."""

from __future__ import annotations

import threading
from collections.abc import Callable, Sequence
from pathlib import Path

import pytest
import requests

from kube_bootstrap.orchestrator.cluster.shell import CommandResult
from kube_bootstrap.orchestrator.config import BootstrapSettings
from kube_bootstrap.orchestrator.workflow import (
    ActionResult,
    Executor,
    FnAction,
    RetryPolicy,
    StateStore,
    Step,
    StepContext,
)


class FakeRunner:
    """In-memory stand-in for CommandRunner.

    Responses are matched by the longest argv prefix; anything unmatched exits 0.
    """

    def __init__(self) -> None:
        self.calls: list[tuple[str, ...]] = []
        self.inputs: list[str | None] = []
        self._responses: dict[tuple[str, ...], CommandResult | Callable[..., CommandResult]] = {}

    def respond(
        self,
        *prefix: str,
        returncode: int = 0,
        stdout: str = "",
        stderr: str = "",
    ) -> None:
        self._responses[prefix] = CommandResult(
            argv=prefix, returncode=returncode, stdout=stdout, stderr=stderr
        )

    def respond_with(self, *prefix: str, fn: Callable[..., CommandResult]) -> None:
        self._responses[prefix] = fn

    def ran(self, *prefix: str) -> bool:
        return any(call[: len(prefix)] == prefix for call in self.calls)

    def run(
        self,
        argv: Sequence[str],
        *,
        timeout: float | None = None,
        input: str | None = None,
        cancel_event: threading.Event | None = None,
    ) -> CommandResult:
        args = tuple(argv)
        self.calls.append(args)
        self.inputs.append(input)
        for prefix in sorted(self._responses, key=len, reverse=True):
            if args[: len(prefix)] == prefix:
                response = self._responses[prefix]
                if callable(response):
                    return response(args)
                return CommandResult(
                    argv=args,
                    returncode=response.returncode,
                    stdout=response.stdout,
                    stderr=response.stderr,
                )
        return CommandResult(argv=args, returncode=0)


class FakeResponse:
    def __init__(self, status_code: int = 200, content: bytes = b"") -> None:
        self.status_code = status_code
        self.content = content

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Error")


class FakeSession:
    def __init__(self, response: FakeResponse | Exception | None = None) -> None:
        self.trust_env = True
        self.response = response or FakeResponse()
        self.requests: list[dict[str, object]] = []
        self.closed = False

    def get(self, url: str, **kwargs: object) -> FakeResponse:
        self.requests.append({"url": url, **kwargs})
        if isinstance(self.response, Exception):
            raise self.response
        return self.response

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def temp_state_dir(tmp_path: Path) -> Path:
    """Provide a temporary state directory."""
    state_dir = tmp_path / ".state"
    state_dir.mkdir()
    return state_dir


@pytest.fixture
def host_root(tmp_path: Path) -> Path:
    """Provide an empty directory standing in for the node's `/`."""
    root = tmp_path / "root"
    root.mkdir()
    return root


@pytest.fixture
def settings(temp_state_dir: Path, host_root: Path) -> BootstrapSettings:
    """Provide settings with fast retries and no env file."""
    return BootstrapSettings(
        _env_file=None,
        state_dir=temp_state_dir,
        root_dir=host_root,
        step_max_retries=0,
        retry_base_delay_seconds=0,
        retry_max_delay_seconds=0,
        verify_timeout_seconds=0,
        verify_interval_seconds=0.01,
    )


@pytest.fixture
def state_store(temp_state_dir: Path) -> StateStore:
    return StateStore(temp_state_dir)


@pytest.fixture
def executor(state_store: StateStore) -> Executor:
    return Executor(store=state_store, retry=RetryPolicy(base_delay=0, max_delay=0))


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def fake_session() -> FakeSession:
    """A requests.Session stand-in; set `.response` to a FakeResponse or an exception."""
    return FakeSession()


@pytest.fixture
def fake_response() -> type[FakeResponse]:
    return FakeResponse


@pytest.fixture
def calls() -> list[str]:
    """Step ids in the order their actions were invoked."""
    return []


@pytest.fixture
def make_step(calls: list[str]) -> Callable[..., Step]:
    """Build a step whose action records its invocation.

    `fail` makes the first N attempts fail; `always_fail` makes every attempt fail;
    `raises` makes the action raise the given exception.
    """

    def _make(
        step_id: str,
        *depends_on: str,
        fail: int = 0,
        always_fail: bool = False,
        raises: BaseException | None = None,
        **kwargs: object,
    ) -> Step:
        remaining = {"failures": fail}

        def _action(ctx: StepContext) -> ActionResult:
            calls.append(step_id)
            if raises is not None:
                raise raises
            if always_fail:
                return ActionResult(ok=False, message=f"{step_id} broke")
            if remaining["failures"] > 0:
                remaining["failures"] -= 1
                return ActionResult(ok=False, message=f"{step_id} flaked")
            return ActionResult(ok=True, message=f"{step_id} done")

        return Step(id=step_id, action=FnAction(_action), depends_on=depends_on, **kwargs)

    return _make
