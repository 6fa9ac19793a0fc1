"""
Runner Pool — Signal Monitor

Workers report milestones (registration done, deregistration done...)
as WS records of {state, runId}. A demanded milestone must be one of
the OK signals; each has a FAILED counterpart.

Per id:
  no record, or runId from another run   -> retry
  matching FAILED signal for this run    -> failed (terminal)
  demanded OK signal for this run        -> success
  anything else                          -> retry

Across ids, every id must succeed; any single failure ends the poll.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable

from ops.waiter import WaiterResult, WaiterState, wait_until
from pool.errors import InvalidSignal
from pool.store import RecordStore, ValueRecords
from pool.types import (
    FAILED_COUNTERPART,
    Entity,
    PollResult,
    SignalRecord,
    SignalStatus,
    WorkerSignal,
)

logger = logging.getLogger("runner_pool.signals")


def _ok_signal(signal: WorkerSignal | str) -> WorkerSignal:
    try:
        demanded = WorkerSignal(signal)
    except ValueError:
        raise InvalidSignal(f"Unknown signal: {signal!r}") from None
    if demanded not in FAILED_COUNTERPART:
        raise InvalidSignal(f"Signal {demanded.value} is not an OK milestone")
    return demanded


class SignalMonitor:
    """Milestone classification over WS records."""

    def __init__(
        self,
        store: RecordStore,
        sleep: Callable[[float], None] = time.sleep,
        monotonic: Callable[[], float] = time.monotonic,
        stop_event: threading.Event | None = None,
    ):
        self.sleep = sleep
        self.monotonic = monotonic
        self.stop_event = stop_event
        self.records: ValueRecords[SignalRecord] = ValueRecords(
            store, Entity.SIGNAL,
            encode=SignalRecord.to_item,
            decode=SignalRecord.from_item,
        )

    def emit(self, instance_id: str, state: WorkerSignal | str, run_id: str) -> None:
        """What a worker writes; last write wins."""
        state = WorkerSignal(state).value
        self.records.put_value(instance_id, SignalRecord(instance_id, state, run_id))

    def delete(self, instance_id: str) -> None:
        self.records.delete(instance_id)

    @staticmethod
    def _status_of(record: SignalRecord | None, run_id: str,
                   demanded: WorkerSignal) -> SignalStatus:
        if record is None or record.run_id != run_id:
            return SignalStatus.RETRY
        if record.state == FAILED_COUNTERPART[demanded].value:
            return SignalStatus.FAILED
        if record.state == demanded.value:
            return SignalStatus.SUCCESS
        return SignalStatus.RETRY

    def classify(self, instance_id: str, run_id: str,
                 signal: WorkerSignal | str) -> SignalStatus:
        demanded = _ok_signal(signal)
        return self._status_of(self.records.get_value(instance_id), run_id, demanded)

    def all_completed_on_signal(self, instance_ids: list[str], run_id: str,
                                signal: WorkerSignal | str) -> WaiterResult:
        demanded = _ok_signal(signal)
        records = self.records.get_values(instance_ids)
        pending = []
        for instance_id in instance_ids:
            status = self._status_of(records.get(instance_id), run_id, demanded)
            if status is SignalStatus.FAILED:
                return WaiterResult.failure(
                    f"{instance_id} reported {FAILED_COUNTERPART[demanded].value}"
                )
            if status is SignalStatus.RETRY:
                pending.append(instance_id)
        if pending:
            return WaiterResult.retry(f"awaiting {demanded.value} from {pending}")
        return WaiterResult.success()

    def poll_on_signal(
        self,
        instance_ids: list[str],
        run_id: str,
        signal: WorkerSignal | str,
        timeout_seconds: float,
        interval_seconds: float,
    ) -> PollResult:
        """
        Poll until every id reports `signal` for `run_id`.

        Raises InvalidSignal up front for an unknown or non-OK signal;
        otherwise never raises for failure or timeout.
        """
        demanded = _ok_signal(signal)
        logger.info(
            "Polling %s for %d instance(s) on run %s (timeout=%ss interval=%ss)",
            demanded.value, len(instance_ids), run_id, timeout_seconds, interval_seconds,
        )
        result = wait_until(
            lambda: self.all_completed_on_signal(instance_ids, run_id, demanded),
            timeout_seconds=timeout_seconds,
            interval_seconds=interval_seconds,
            sleep=self.sleep,
            monotonic=self.monotonic,
            stop_event=self.stop_event,
        )
        if result.state is WaiterState.SUCCESS:
            return PollResult(True, f"All instances reported {demanded.value}")
        if result.state is WaiterState.FAILURE:
            return PollResult(False, f"Signal failure: {result.reason}")
        if result.state is WaiterState.ABORTED:
            return PollResult(False, f"Aborted waiting for {demanded.value}: {result.reason}")
        return PollResult(False, f"Timed out waiting for {demanded.value}: {result.reason}")

    def poll_single(self, instance_id: str, run_id: str, signal: WorkerSignal | str,
                    timeout_seconds: float, interval_seconds: float) -> PollResult:
        return self.poll_on_signal([instance_id], run_id, signal,
                                   timeout_seconds, interval_seconds)
