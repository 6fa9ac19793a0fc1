"""
Runner Pool — Runtime

Wires the store, queues and monitors together from configuration and
exposes the pool flows (select, promote, validate, provision, release,
sweep) as methods. State lives in the record store and the queues only;
the one thing a PoolRuntime owns is the stop event that aborts its
pending polls.

Usage:
    from pool.runtime import PoolRuntime

    runtime = PoolRuntime.from_config(get_config())
    result = runtime.select(count=3, run_id="run-42")
    runtime.release("run-42")
"""

from __future__ import annotations

import logging
import threading
from typing import Any

from ops.config import ConfigLoader, lookup
from pool.claim import UnhealthyClaimPolicy
from pool.health import HealthMonitor
from pool.provision import (
    ProvisionOutcome,
    dump_resources,
    post_provision,
    process_failed_provision,
    process_successful_provision,
)
from pool.queues import InMemoryPoolQueue, PoolQueue, ResourcePools, SQLitePoolQueue
from pool.release import ReleaseReport, release_resources
from pool.selection import promote_selected, select_instances
from pool.signals import SignalMonitor
from pool.store import InMemoryRecordStore, RecordStore, SQLiteDatabase, SQLiteRecordStore
from pool.sweep import SweepReport, TerminateFn, manage_terminations
from pool.transitions import InstanceTransitions
from pool.types import (
    Clock,
    CreationOutput,
    PollResult,
    PoolMessage,
    SelectionResult,
    build_resource_classes,
    utc_now,
)
from pool.validation import validate_fleet

logger = logging.getLogger("runner_pool.runtime")


class PoolRuntime:
    """All pool collaborators for one process."""

    def __init__(
        self,
        store: RecordStore,
        queue: PoolQueue,
        config: dict[str, Any] | None = None,
        clock: Clock = utc_now,
    ):
        self.config = config or {}
        self.clock = clock
        self.store = store
        self.stop_event = threading.Event()
        self.resource_classes = build_resource_classes(self._get("resource_classes", {}))
        self.pools = ResourcePools(
            queue, self.resource_classes,
            prefix=self._get("pickup.queue_prefix", "pool-"),
        )
        self.transitions = InstanceTransitions(
            store, clock=clock,
            expiry_offset_seconds=self._get("transitions.expiry_offset_seconds", 300),
        )
        self.health = HealthMonitor(
            store, clock=clock,
            period_seconds=self._get("health.period_seconds", 2),
            multiplier=self._get("health.multiplier", 3),
            sleep=self.stop_event.wait,
            stop_event=self.stop_event,
        )
        self.signals = SignalMonitor(
            store, sleep=self.stop_event.wait, stop_event=self.stop_event,
        )

    @classmethod
    def from_config(cls, config: ConfigLoader, db_path: str | None = None) -> PoolRuntime:
        """SQLite-backed runtime; store and queues share one database file."""
        db = SQLiteDatabase(db_path or config.get("store.db_path", "runner_pool.db"))
        return cls(SQLiteRecordStore(db), SQLitePoolQueue(db), config.get_all())

    @classmethod
    def in_memory(cls, config: dict[str, Any] | None = None, clock: Clock = utc_now) -> PoolRuntime:
        return cls(InMemoryRecordStore(), InMemoryPoolQueue(), config, clock)

    def _get(self, dotted_key: str, default: Any = None) -> Any:
        return lookup(self.config, dotted_key, default)

    def stop(self) -> None:
        """Abort in-flight heartbeat and signal polls; they report failure."""
        logger.info("Stopping runtime; pending polls will abort")
        self.stop_event.set()

    # ─── Flows ───────────────────────────────────────────────────

    def select(
        self,
        count: int,
        run_id: str,
        resource_class: str | None = None,
        allowed_instance_types: list[str] | None = None,
        usage_class: str | None = None,
        demand_registration: bool = False,
    ) -> SelectionResult:
        return select_instances(
            count=count,
            resource_class=resource_class or self._get("provision.resource_class", "large"),
            run_id=run_id,
            pools=self.pools,
            transitions=self.transitions,
            health=self.health,
            allowed_instance_types=(
                allowed_instance_types
                or self._get("provision.allowed_instance_types", ["c*", "m*", "r*"])
            ),
            usage_class=usage_class or self._get("provision.usage_class", "spot"),
            freq_tolerance=self._get("pickup.freq_tolerance", 5),
            lease_seconds=self._get("claim.lease_seconds", 300),
            max_workers=self._get("selection.max_workers"),
            signals=self.signals if demand_registration else None,
            on_unhealthy=UnhealthyClaimPolicy(self._get("claim.on_unhealthy", "abandon")),
        )

    def promote(self, instances: list[PoolMessage], run_id: str,
                max_runtime_min: int | None = None) -> tuple[list[str], list[str]]:
        return promote_selected(
            self.transitions, instances, run_id,
            max_runtime_min or self._get("provision.max_runtime_min", 30),
        )

    def validate(self, instance_ids: list[str], run_id: str,
                 with_signal: bool = True) -> PollResult:
        return validate_fleet(
            instance_ids, run_id, self.health,
            signals=self.signals if with_signal else None,
            timeout_seconds=self._get("fleet_validation.timeout_seconds", 180),
            interval_seconds=self._get("fleet_validation.interval_seconds", 10),
        )

    def release(self, run_id: str, idle_time_sec: int | None = None) -> ReleaseReport:
        return release_resources(
            run_id,
            idle_time_sec or self._get("provision.idle_time_sec", 300),
            self.pools, self.transitions, self.signals,
            timeout_seconds=self._get("release.signal_timeout_seconds", 60),
            interval_seconds=self._get("release.signal_interval_seconds", 5),
        )

    def sweep(self, terminate: TerminateFn) -> SweepReport:
        return manage_terminations(self.transitions, self.health, self.signals, terminate)

    def provision(
        self,
        selection: SelectionResult,
        creation: CreationOutput,
        run_id: str,
        terminate: TerminateFn,
        max_runtime_min: int | None = None,
        idle_time_sec: int | None = None,
    ) -> ProvisionOutcome:
        return post_provision(
            selection, creation, run_id,
            max_runtime_min or self._get("provision.max_runtime_min", 30),
            idle_time_sec or self._get("provision.idle_time_sec", 300),
            self.transitions, self.pools, terminate,
        )

    def provision_succeeded(self, selection: SelectionResult, creation: CreationOutput,
                            run_id: str, max_runtime_min: int | None = None) -> list[str]:
        return process_successful_provision(
            selection, creation, run_id,
            max_runtime_min or self._get("provision.max_runtime_min", 30),
            self.transitions,
        )

    def provision_failed(self, selection: SelectionResult, run_id: str,
                         idle_time_sec: int | None = None) -> list[str]:
        return process_failed_provision(
            selection,
            idle_time_sec or self._get("provision.idle_time_sec", 300),
            run_id, self.transitions, self.pools,
        )

    def dump(self, selection: SelectionResult, creation: CreationOutput,
             run_id: str, terminate: TerminateFn) -> list[str]:
        return dump_resources(selection, creation, run_id, self.transitions, terminate)
