"""
Runner Pool — Waiter

Generic timeout + interval polling. A check function is called
immediately and then every interval until it reports success or
failure, or until the monotonic deadline passes.

Timeout and failure are distinct outcomes: failure means the check
definitively said "no", timeout means the answer is still unknown.

Usage:
    from ops.waiter import WaiterResult, wait_until

    def check() -> WaiterResult:
        if all_ready():
            return WaiterResult.success()
        return WaiterResult.retry("3 of 5 ready")

    result = wait_until(check, timeout_seconds=60, interval_seconds=5)
    if result.state is WaiterState.TIMEOUT: ...
"""

from __future__ import annotations

import enum
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable

logger = logging.getLogger("runner_pool.waiter")


class WaiterState(str, enum.Enum):
    SUCCESS = "success"
    RETRY = "retry"
    FAILURE = "failure"
    TIMEOUT = "timeout"
    ABORTED = "aborted"


@dataclass(frozen=True)
class WaiterResult:
    """Outcome of one check call, or of a whole wait."""
    state: WaiterState
    reason: str = ""

    @property
    def is_terminal(self) -> bool:
        return self.state is not WaiterState.RETRY

    @classmethod
    def success(cls, reason: str = "") -> WaiterResult:
        return cls(WaiterState.SUCCESS, reason)

    @classmethod
    def retry(cls, reason: str = "") -> WaiterResult:
        return cls(WaiterState.RETRY, reason)

    @classmethod
    def failure(cls, reason: str) -> WaiterResult:
        return cls(WaiterState.FAILURE, reason)


CheckFn = Callable[[], WaiterResult]


def wait_until(
    check: CheckFn,
    timeout_seconds: float,
    interval_seconds: float,
    sleep: Callable[[float], None] = time.sleep,
    monotonic: Callable[[], float] = time.monotonic,
    stop_event: threading.Event | None = None,
) -> WaiterResult:
    """
    Poll check() until it returns SUCCESS or FAILURE.

    Returns TIMEOUT (carrying the last retry reason) once the deadline
    has passed, or ABORTED if stop_event is set before a pause. Pass
    sleep=stop_event.wait to have the pause itself cut short. Exceptions
    raised by check() propagate unchanged.
    """
    if interval_seconds <= 0:
        raise ValueError("interval_seconds must be positive")

    deadline = monotonic() + max(timeout_seconds, 0)
    attempts = 0
    last = WaiterResult.retry()

    while True:
        attempts += 1
        last = check()
        if last.is_terminal:
            logger.debug("Waiter finished: state=%s attempts=%d", last.state.value, attempts)
            return last

        remaining = deadline - monotonic()
        if remaining <= 0:
            logger.debug("Waiter timed out after %d attempts: %s", attempts, last.reason)
            return WaiterResult(WaiterState.TIMEOUT, last.reason)

        if stop_event is not None and stop_event.is_set():
            logger.debug("Waiter aborted after %d attempts", attempts)
            return WaiterResult(WaiterState.ABORTED, last.reason)
        sleep(min(interval_seconds, remaining))
