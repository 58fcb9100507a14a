"""Polling verification gate.

The gate owns only the poll/timeout/backoff logic. What is being checked (node
readiness, pod readiness, an HTTP endpoint) is supplied by the caller.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from .errors import RunInterrupted, VerificationTimeoutError
from .steps import Check, CheckResult, StepContext

logger = logging.getLogger(__name__)


@dataclass
class VerificationGate:
    """Poll a check until it is satisfied or a timeout elapses.

    `backoff` multiplies the interval after every unsatisfied poll, capped at
    `max_interval`. A check that raises counts as "not yet satisfied".
    """

    backoff: float = 1.0
    max_interval: float = 30.0
    clock: Callable[[], float] = time.monotonic
    cancel_event: threading.Event = field(default_factory=threading.Event)

    def poll(
        self,
        check: Check,
        *,
        timeout: float,
        interval: float,
        ctx: StepContext | None = None,
    ) -> CheckResult:
        if interval <= 0:
            raise ValueError("interval must be > 0")
        if timeout < 0:
            raise ValueError("timeout must be >= 0")

        ctx = ctx or StepContext(step_id="verify", cancel_event=self.cancel_event)
        deadline = self.clock() + timeout
        delay = interval
        polls = 0
        last_message = ""

        while True:
            polls += 1
            try:
                result = check.evaluate(ctx)
            except Exception as e:
                result = CheckResult(ok=False, message=f"check raised {type(e).__name__}: {e}")

            if result.ok:
                logger.debug(
                    "Verification satisfied",
                    extra={"step_id": ctx.step_id, "polls": polls, "detail": result.message},
                )
                return result

            if result.message and result.message != last_message:
                logger.info(
                    "Waiting for verification",
                    extra={"step_id": ctx.step_id, "detail": result.message},
                )
            last_message = result.message

            remaining = deadline - self.clock()
            if remaining <= 0:
                raise VerificationTimeoutError(
                    f"Verification for {ctx.step_id!r} timed out after {timeout:g}s "
                    f"({polls} polls): {last_message or 'condition not met'}",
                    last_message=last_message,
                )

            if self.cancel_event.wait(min(delay, remaining)) or ctx.cancelled:
                raise RunInterrupted(step_id=ctx.step_id)
            delay = min(delay * self.backoff, self.max_interval)
