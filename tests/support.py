"""
Shared helpers for the runner pool tests: a controllable clock and
shortcuts for seeding idle instances into a runtime.
"""

import os
import sys
import threading
from datetime import datetime, timedelta, timezone

_project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from pool.types import (
    InstanceRecord,
    InstanceState,
    PoolMessage,
    to_isoz,
)

START = datetime(2025, 4, 24, 18, 31, 4, tzinfo=timezone.utc)


class FakeClock:
    """Wall clock and monotonic counter that only move when told to."""

    def __init__(self, start: datetime = START):
        self.now = start
        self.elapsed = 0.0
        self.sleeps = []
        self._lock = threading.Lock()

    def __call__(self) -> datetime:
        with self._lock:
            return self.now

    def advance(self, seconds: float):
        with self._lock:
            self.now = self.now + timedelta(seconds=seconds)
            self.elapsed += seconds

    def monotonic(self) -> float:
        with self._lock:
            return self.elapsed

    def sleep(self, seconds: float):
        self.sleeps.append(seconds)
        self.advance(seconds)

    def iso(self, offset_seconds: float = 0) -> str:
        return to_isoz(self() + timedelta(seconds=offset_seconds))


CONFIG = {
    "resource_classes": {
        "large": {"cpu": 2, "mmem": 4096},
        "xlarge": {"cpu": 4, "mmem": 8192},
    },
    "provision": {
        "resource_class": "large",
        "usage_class": "spot",
        "allowed_instance_types": ["c*", "m*", "r*"],
        "idle_time_sec": 300,
        "max_runtime_min": 30,
    },
    "pickup": {"freq_tolerance": 5, "queue_prefix": "pool-"},
    "claim": {"lease_seconds": 300, "on_unhealthy": "abandon"},
    "release": {"signal_timeout_seconds": 0, "signal_interval_seconds": 1},
    "fleet_validation": {"timeout_seconds": 0, "interval_seconds": 1},
}


def seed_idle(runtime, instance_id, instance_type="c6i.large", resource_class="large",
              usage_class="spot", heartbeat=True, enqueue=True, idle_for=300):
    """Put an idle, unowned record (and optionally its pool message) in place."""
    clock = runtime.clock
    spec = runtime.resource_classes[resource_class]
    threshold = clock.iso(idle_for)
    record = InstanceRecord(
        id=instance_id,
        state=InstanceState.IDLE,
        run_id="",
        threshold=threshold,
        resource_class=resource_class,
        instance_type=instance_type,
        usage_class=usage_class,
        updated_at=clock.iso(),
    )
    runtime.transitions.records.put_value(instance_id, record)
    if heartbeat:
        runtime.health.record_heartbeat(instance_id)
    message = PoolMessage(
        id=instance_id,
        resource_class=resource_class,
        instance_type=instance_type,
        cpu=spec.cpu,
        mmem=spec.mmem,
        usage_class=usage_class,
        threshold=threshold,
    )
    if enqueue:
        runtime.pools.send_to_pool(message)
    return message


def seed_record(runtime, instance_id, state, run_id="", threshold_offset=300,
                threshold=None, resource_class="large", instance_type="c6i.large",
                usage_class="spot"):
    """Write an instance record directly, bypassing transitions."""
    if threshold is None:
        threshold = runtime.clock.iso(threshold_offset)
    record = InstanceRecord(
        id=instance_id,
        state=state,
        run_id=run_id,
        threshold=threshold,
        resource_class=resource_class,
        instance_type=instance_type,
        usage_class=usage_class,
        updated_at=runtime.clock.iso(),
    )
    runtime.transitions.records.put_value(instance_id, record)
    return record
