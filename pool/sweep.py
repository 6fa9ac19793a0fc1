"""
Runner Pool — Expiry Sweep

Reclaims anything that overstayed its threshold:

  1. query expired records in idle / claimed / running
  2. transition each to terminated (expected state and owner taken from
     the record read, so a concurrent change makes it a conflict)
  3. ask the provisioner to terminate the winners, in one batch or,
     if the batch call fails, one by one
  4. delete heartbeat and signal artifacts for the terminated ids
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Callable

from ops.logging import get_logger, log_event
from pool.errors import TransitionConflict
from pool.health import HealthMonitor
from pool.signals import SignalMonitor
from pool.transitions import InstanceTransitions
from pool.types import InstanceRecord, InstanceState

logger = get_logger("sweep")

SWEPT_STATES = (InstanceState.IDLE, InstanceState.CLAIMED, InstanceState.RUNNING)

# Provisioner hook: terminate compute for the given ids; raises on failure
TerminateFn = Callable[[list[str]], None]


@dataclass
class SweepReport:
    found: int = 0
    terminated: list[str] = field(default_factory=list)
    conflicts: list[str] = field(default_factory=list)
    signal_failures: list[str] = field(default_factory=list)


def perform_termination_transitions(
    transitions: InstanceTransitions,
    records: list[InstanceRecord],
) -> tuple[list[InstanceRecord], list[InstanceRecord]]:
    successful, unsuccessful = [], []
    for record in records:
        try:
            transitions.terminate(record.id, record.run_id, record.state)
            successful.append(record)
        except TransitionConflict:
            unsuccessful.append(record)
    return successful, unsuccessful


def send_termination_signals(ids: list[str], terminate: TerminateFn) -> list[str]:
    """Returns the ids whose termination request failed."""
    try:
        logger.info("Sending termination signals to %s", ids)
        terminate(ids)
        return []
    except Exception as e:
        logger.warning("Batch termination failed (%s); sending one by one", e)

    failed = []
    for instance_id in ids:
        try:
            terminate([instance_id])
        except Exception as e:
            logger.info("Failed to terminate %s; likely already gone: %s", instance_id, e)
            failed.append(instance_id)
    return failed


def cleanup_artifacts(ids: list[str], health: HealthMonitor, signals: SignalMonitor) -> None:
    for instance_id in ids:
        for remove in (health.delete, signals.delete):
            try:
                remove(instance_id)
            except Exception as e:
                logger.warning("Artifact cleanup for %s failed: %s", instance_id, e)


def manage_terminations(
    transitions: InstanceTransitions,
    health: HealthMonitor,
    signals: SignalMonitor,
    terminate: TerminateFn,
) -> SweepReport:
    logger.info("Performing instance terminations...")
    records = transitions.query_expired_by_states(SWEPT_STATES)
    successful, unsuccessful = perform_termination_transitions(transitions, records)

    report = SweepReport(
        found=len(records),
        terminated=[r.id for r in successful],
        conflicts=[r.id for r in unsuccessful],
    )
    logger.info(
        "Termination diagnostics: found=%d by_state=%s successful=%d failed=%d",
        len(records), dict(Counter(r.state.value for r in records)),
        len(successful), len(unsuccessful),
    )

    if report.terminated:
        report.signal_failures = send_termination_signals(report.terminated, terminate)
        cleanup_artifacts(report.terminated, health, signals)
        for record in successful:
            log_event(
                logger, logging.INFO, "sweep_terminated",
                f"Terminated expired instance {record.id}",
                instance_id=record.id, run_id=record.run_id,
                state=record.state.value,
                signal_failed=record.id in report.signal_failures,
            )
    else:
        logger.info("No instances marked for termination")
    return report
