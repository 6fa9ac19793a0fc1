"""
Runner Pool — Health Monitor

Workers overwrite a HEARTBEAT record every `period_seconds`. An id is:

  missing    no heartbeat record at all
  unhealthy  last heartbeat older than period * multiplier
  healthy    last heartbeat within the window

poll_all_healthy() repeats the aggregate classification on an interval
until every id is healthy or the timeout passes. It never raises for
"not yet healthy"; it returns a PollResult.
"""

from __future__ import annotations

import logging
import threading
import time
from datetime import timedelta
from typing import Callable

from ops.waiter import WaiterResult, WaiterState, wait_until
from pool.store import RecordStore, ValueRecords
from pool.types import (
    Clock,
    Entity,
    HealthState,
    HeartbeatRecord,
    PollResult,
    parse_isoz,
    to_isoz,
    utc_now,
)

logger = logging.getLogger("runner_pool.health")

PERIOD_SECONDS = 2
DEFAULT_MULTIPLIER = 3


class HealthMonitor:
    """Staleness classification over HEARTBEAT records."""

    def __init__(
        self,
        store: RecordStore,
        clock: Clock = utc_now,
        period_seconds: float = PERIOD_SECONDS,
        multiplier: float = DEFAULT_MULTIPLIER,
        sleep: Callable[[float], None] = time.sleep,
        monotonic: Callable[[], float] = time.monotonic,
        stop_event: threading.Event | None = None,
    ):
        self.clock = clock
        self.period_seconds = period_seconds
        self.multiplier = multiplier
        self.sleep = sleep
        self.monotonic = monotonic
        self.stop_event = stop_event
        self.records: ValueRecords[HeartbeatRecord] = ValueRecords(
            store, Entity.HEARTBEAT,
            encode=HeartbeatRecord.to_item,
            decode=HeartbeatRecord.from_item,
        )

    @property
    def window_seconds(self) -> float:
        return self.period_seconds * self.multiplier

    def record_heartbeat(self, instance_id: str) -> None:
        """What a worker does every period; used by tooling and tests."""
        self.records.put_value(instance_id, HeartbeatRecord(instance_id, to_isoz(self.clock())))

    def delete(self, instance_id: str) -> None:
        self.records.delete(instance_id)

    def _state_of(self, record: HeartbeatRecord | None) -> HealthState:
        if record is None:
            return HealthState.MISSING
        try:
            updated = parse_isoz(record.updated_at)
        except ValueError:
            logger.warning("Unparseable heartbeat for %s: %r", record.id, record.updated_at)
            return HealthState.UNHEALTHY
        if updated is None:
            return HealthState.UNHEALTHY
        age = self.clock() - updated
        if age > timedelta(seconds=self.window_seconds):
            return HealthState.UNHEALTHY
        return HealthState.HEALTHY

    def classify(self, instance_id: str) -> HealthState:
        return self._state_of(self.records.get_value(instance_id))

    def classify_many(self, instance_ids: list[str]) -> dict[str, HealthState]:
        """Concurrent reads; a failed read counts as missing."""
        records = self.records.get_values(instance_ids)
        return {i: self._state_of(records.get(i)) for i in instance_ids}

    def all_healthy(self, instance_ids: list[str]) -> WaiterResult:
        states = self.classify_many(instance_ids)
        missing = [i for i, s in states.items() if s is HealthState.MISSING]
        unhealthy = [i for i, s in states.items() if s is HealthState.UNHEALTHY]
        if not missing and not unhealthy:
            return WaiterResult.success(f"{len(instance_ids)} instance(s) healthy")
        return WaiterResult.retry(
            f"missing={missing} unhealthy={unhealthy}"
        )

    def poll_all_healthy(
        self,
        instance_ids: list[str],
        timeout_seconds: float | None = None,
        interval_seconds: float | None = None,
    ) -> PollResult:
        """Defaults: timeout = period * multiplier, interval = period."""
        timeout = self.window_seconds if timeout_seconds is None else timeout_seconds
        interval = self.period_seconds if interval_seconds is None else interval_seconds
        logger.info(
            "Polling heartbeats for %d instance(s) (timeout=%ss interval=%ss)",
            len(instance_ids), timeout, interval,
        )
        result = wait_until(
            lambda: self.all_healthy(instance_ids),
            timeout_seconds=timeout,
            interval_seconds=interval,
            sleep=self.sleep,
            monotonic=self.monotonic,
            stop_event=self.stop_event,
        )
        if result.state is WaiterState.SUCCESS:
            return PollResult(True, "All instances are healthy")
        if result.state is WaiterState.ABORTED:
            return PollResult(False, f"Aborted waiting for heartbeats: {result.reason}")
        return PollResult(False, f"Instances not healthy ({result.state.value}): {result.reason}")
