"""Unit tests for structured logging."""

from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest

from kube_bootstrap.orchestrator.logging import JsonFormatter, StatusFormatter, configure_logging


def _record(msg: str = "Step started", level: int = logging.INFO, **extra) -> logging.LogRecord:
    record = logging.LogRecord("kube_bootstrap.test", level, __file__, 1, msg, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_json_formatter_includes_extra() -> None:
    payload = json.loads(JsonFormatter().format(_record(step_id="disable_swap", attempt=2)))

    assert payload["level"] == "INFO"
    assert payload["logger"] == "kube_bootstrap.test"
    assert payload["message"] == "Step started"
    assert payload["extra"] == {"step_id": "disable_swap", "attempt": 2}


def test_json_formatter_serialises_unknown_types() -> None:
    payload = json.loads(JsonFormatter().format(_record(path=Path("/etc/hosts"))))

    assert payload["extra"]["path"] == "/etc/hosts"


def test_status_formatter() -> None:
    plain = StatusFormatter(color=False).format(_record(level=logging.WARNING, step_id="x"))
    coloured = StatusFormatter(color=True).format(_record(level=logging.ERROR))

    assert plain == "[WARNING] Step started step_id=x"
    assert coloured.startswith("\033[0;31m[ERROR]\033[0m")


def test_configure_logging_replaces_handlers(capsys: pytest.CaptureFixture[str]) -> None:
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    try:
        configure_logging("debug", fmt="text", color=False)
        configure_logging("debug", fmt="text", color=False)
        logging.getLogger("kube_bootstrap").info("Run started", extra={"run_id": "r1"})

        assert len(root.handlers) == 1
        assert root.level == logging.DEBUG
        assert capsys.readouterr().out.strip() == "[INFO] Run started run_id=r1"
    finally:
        root.handlers[:] = handlers
        root.setLevel(level)
