"""
Runner Pool — Fleet Validation

After fresh instances are launched, confirm they came up: every id must
report the demanded signal for the run (when one is given) and then be
heartbeat-healthy. Returns a PollResult and never raises for "not yet".
"""

from __future__ import annotations

import logging

from pool.health import HealthMonitor
from pool.signals import SignalMonitor
from pool.types import PollResult, WorkerSignal

logger = logging.getLogger("runner_pool.validation")

FLEET_VALIDATION_TIMEOUT_SECONDS = 180
FLEET_VALIDATION_INTERVAL_SECONDS = 10


def validate_fleet(
    instance_ids: list[str],
    run_id: str,
    health: HealthMonitor,
    signals: SignalMonitor | None = None,
    signal: WorkerSignal = WorkerSignal.UD_OK,
    timeout_seconds: float = FLEET_VALIDATION_TIMEOUT_SECONDS,
    interval_seconds: float = FLEET_VALIDATION_INTERVAL_SECONDS,
    health_timeout_seconds: float | None = None,
    health_interval_seconds: float | None = None,
) -> PollResult:
    if not instance_ids:
        return PollResult(False, "No instances to validate")

    if signals is not None:
        bootstrapped = signals.poll_on_signal(
            instance_ids, run_id, signal, timeout_seconds, interval_seconds,
        )
        if not bootstrapped.state:
            logger.error(
                "Fleet validation failed on %s: %s",
                WorkerSignal(signal).value, bootstrapped.message,
            )
            return PollResult(False, bootstrapped.message)

    healthy = health.poll_all_healthy(
        instance_ids, health_timeout_seconds, health_interval_seconds,
    )
    if not healthy.state:
        logger.error("Fleet validation failed on heartbeats: %s", healthy.message)
        return healthy

    logger.info("Fleet validation passed for %d instance(s)", len(instance_ids))
    return PollResult(True, f"{len(instance_ids)} instance(s) validated")
