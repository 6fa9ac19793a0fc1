"""
Runner Pool — Release

Returns a finished run's instances to their pools:

  1. find every record owned by the run and group it by state
  2. running -> idle, owner cleared, threshold = now + idle_time_sec
  3. per released instance, wait for the worker to report
     UD_REMOVE_REG_OK; then send its descriptor back to the pool,
     otherwise expire the record so the sweep terminates it

Records found idle while still owned by the run are reported; claimed,
created and terminated records are left alone. Release never raises for
partial failure; problems are collected into ReleaseReport.errors.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field

from ops.logging import get_logger, log_event
from pool.errors import InvalidResourceClass, TransitionConflict, UpstreamUnavailable
from pool.queues import ResourcePools
from pool.signals import SignalMonitor
from pool.transitions import InstanceTransitions
from pool.types import (
    InstanceRecord,
    InstanceState,
    PoolMessage,
    WorkerSignal,
    shift,
)

logger = get_logger("release")

RELEASE_SIGNAL_TIMEOUT_SECONDS = 60
RELEASE_SIGNAL_INTERVAL_SECONDS = 5


@dataclass
class ReleaseReport:
    pooled: list[str] = field(default_factory=list)
    expired: list[str] = field(default_factory=list)
    failed_transitions: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


def classify_by_state(records: list[InstanceRecord]) -> dict[InstanceState, list[InstanceRecord]]:
    grouped: dict[InstanceState, list[InstanceRecord]] = {s: [] for s in InstanceState}
    for record in records:
        grouped[record.state].append(record)
    return grouped


def transition_to_idle(
    transitions: InstanceTransitions,
    records: list[InstanceRecord],
    run_id: str,
    idle_time_sec: int,
) -> tuple[list[InstanceRecord], list[InstanceRecord]]:
    """running -> idle for each record. Returns (successful, unsuccessful)."""
    threshold = shift(transitions.clock, idle_time_sec)
    successful, unsuccessful = [], []
    for record in records:
        try:
            released = transitions.transition(
                record.id,
                expected_run_id=run_id,
                new_run_id="",
                expected_state=InstanceState.RUNNING,
                new_state=InstanceState.IDLE,
                new_threshold=threshold,
                selects_unexpired=True,
            )
            successful.append(released)
        except TransitionConflict as e:
            log_event(
                logger, logging.WARNING, "release_transition_failed",
                f"Release transition failed for {record.id}: {e.reason}",
                instance_id=record.id, run_id=run_id, reason=e.reason,
            )
            unsuccessful.append(record)
    return successful, unsuccessful


def release_worker(
    record: InstanceRecord,
    run_id: str,
    pools: ResourcePools,
    transitions: InstanceTransitions,
    signals: SignalMonitor,
    timeout_seconds: float = RELEASE_SIGNAL_TIMEOUT_SECONDS,
    interval_seconds: float = RELEASE_SIGNAL_INTERVAL_SECONDS,
) -> bool:
    """
    Pool one released instance once its runner has deregistered.
    Returns True if the descriptor went back to the pool.
    """
    result = signals.poll_on_signal(
        [record.id], run_id, WorkerSignal.UD_REMOVE_REG_OK,
        timeout_seconds=timeout_seconds,
        interval_seconds=interval_seconds,
    )
    if result.state:
        spec = pools.resource_classes.get(record.resource_class)
        if spec is not None:
            message = PoolMessage(
                id=record.id,
                resource_class=record.resource_class,
                instance_type=record.instance_type,
                cpu=spec.cpu,
                mmem=spec.mmem,
                usage_class=record.usage_class,
                threshold=record.threshold,
            )
            try:
                pools.send_to_pool(message)
                log_event(
                    logger, logging.INFO, "release_pooled",
                    f"Released {record.id} to pool {record.resource_class}",
                    instance_id=record.id, run_id=run_id,
                    resource_class=record.resource_class,
                )
                return True
            except (InvalidResourceClass, UpstreamUnavailable) as e:
                logger.error("Could not pool %s: %s", record.id, e)
        else:
            logger.warning("Unknown resource class %r on %s", record.resource_class, record.id)
    else:
        logger.warning("No %s from %s: %s", WorkerSignal.UD_REMOVE_REG_OK.value,
                       record.id, result.message)

    log_event(
        logger, logging.WARNING, "release_expired",
        f"Marking {record.id} for expiration",
        instance_id=record.id, run_id=run_id,
    )
    # released records are unowned, so expire under the empty run id
    try:
        transitions.expire(record.id, "", None)
    except TransitionConflict as e:
        logger.warning("Failed to expire %s: %s", record.id, e.reason)
    return False


def release_resources(
    run_id: str,
    idle_time_sec: int,
    pools: ResourcePools,
    transitions: InstanceTransitions,
    signals: SignalMonitor,
    timeout_seconds: float = RELEASE_SIGNAL_TIMEOUT_SECONDS,
    interval_seconds: float = RELEASE_SIGNAL_INTERVAL_SECONDS,
    max_workers: int = 8,
) -> ReleaseReport:
    report = ReleaseReport()
    records = transitions.get_by_run_id(run_id)
    if not records:
        logger.warning("No instances found to release for run %s", run_id)
        return report

    grouped = classify_by_state(records)
    for state, members in grouped.items():
        if members:
            logger.info("Run %s %s: %s", run_id, state.value, [r.id for r in members])

    if grouped[InstanceState.IDLE]:
        ids = [r.id for r in grouped[InstanceState.IDLE]]
        message = f"Found instances with runId {run_id} in 'idle' state: {', '.join(ids)}"
        report.errors.append(message)
        logger.warning(message)

    successful, unsuccessful = transition_to_idle(
        transitions, grouped[InstanceState.RUNNING], run_id, idle_time_sec,
    )
    if unsuccessful:
        report.failed_transitions = [r.id for r in unsuccessful]
        message = (
            f"The ids ({report.failed_transitions}) failed to transition from running to idle; "
            f"releasing only ({[r.id for r in successful]})"
        )
        report.errors.append(message)
        logger.warning(message)

    if successful:
        workers = max(1, min(max_workers, len(successful)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="rp_release") as executor:
            futures = {
                r.id: executor.submit(
                    release_worker, r, run_id, pools, transitions, signals,
                    timeout_seconds, interval_seconds,
                )
                for r in successful
            }
            for instance_id, future in futures.items():
                try:
                    pooled = future.result()
                except Exception as e:
                    logger.error("Release worker for %s failed: %s", instance_id, e)
                    report.errors.append(f"{instance_id}: {e}")
                    continue
                (report.pooled if pooled else report.expired).append(instance_id)

    if report.errors:
        logger.error("Release completed with errors:\n%s", "\n".join(report.errors))
    else:
        logger.info("Release completed successfully")
    return report
