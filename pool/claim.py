"""
Runner Pool — Claim Worker

One slot of a selection batch. Loops:

  1. pickup a message (None -> this slot contributes nothing)
  2. claim it: idle -> claimed under run_id with a short lease
     (losing the race just means picking another message)
  3. health check; an unhealthy claim is abandoned and left to the
     expiry sweep once its lease runs out
  4. optionally, wait for the runner to register; a claim that never
     registers is expired so the sweep terminates it
  5. return the message

There is no retry cap; the loop ends when the pool reports empty.
"""

from __future__ import annotations

import enum
import logging

from ops.logging import get_logger, log_event
from pool.errors import TransitionConflict
from pool.health import HealthMonitor
from pool.pickup import PoolPickupManager
from pool.signals import SignalMonitor
from pool.transitions import InstanceTransitions
from pool.types import (
    ClaimResult,
    HealthState,
    InstanceState,
    WorkerSignal,
    shift,
)

logger = get_logger("claim")

CLAIM_LEASE_SECONDS = 300
REGISTRATION_TIMEOUT_SECONDS = 5
REGISTRATION_INTERVAL_SECONDS = 1


class UnhealthyClaimPolicy(str, enum.Enum):
    """What a worker does with a claim it cannot use."""
    ABANDON = "abandon"
    EXPIRE = "expire"


def attempt_claim(
    transitions: InstanceTransitions,
    instance_id: str,
    run_id: str,
    lease_seconds: int = CLAIM_LEASE_SECONDS,
) -> bool:
    """idle -> claimed. False when another claimant got there first."""
    try:
        transitions.transition(
            instance_id,
            expected_run_id="",
            new_run_id=run_id,
            expected_state=InstanceState.IDLE,
            new_state=InstanceState.CLAIMED,
            new_threshold=shift(transitions.clock, lease_seconds),
            selects_unexpired=True,
        )
        return True
    except TransitionConflict as e:
        log_event(
            logger, logging.WARNING, "claim_lost",
            f"Failed to claim instance {instance_id}: {e.reason}",
            instance_id=instance_id, run_id=run_id, reason=e.reason,
        )
        return False


def _expire_claim(transitions, instance_id, run_id):
    try:
        transitions.expire(instance_id, run_id, InstanceState.CLAIMED)
        logger.info("Marked claimed instance %s for termination", instance_id)
    except TransitionConflict as e:
        logger.warning("Failed to expire claimed instance %s: %s", instance_id, e.reason)


def claim_worker(
    resource_class: str,
    manager: PoolPickupManager,
    transitions: InstanceTransitions,
    health: HealthMonitor,
    run_id: str,
    worker_number: int = 0,
    lease_seconds: int = CLAIM_LEASE_SECONDS,
    signals: SignalMonitor | None = None,
    on_unhealthy: UnhealthyClaimPolicy = UnhealthyClaimPolicy.ABANDON,
) -> ClaimResult:
    """
    Fill one selection slot.

    With `signals`, a healthy claim must also report UD_REG_OK for this
    run within a few seconds; a claim that never registers is always
    expired. `on_unhealthy=EXPIRE` also expires claims that fail the
    health check instead of leaving them to lapse.
    """
    on_unhealthy = UnhealthyClaimPolicy(on_unhealthy)
    tag = f"[claim worker {worker_number}]"
    while True:
        message = manager.pickup()
        if message is None:
            logger.info("%s No instance picked up", tag)
            return ClaimResult(f'Pool ({resource_class}) found to be "empty"', None)

        instance_id = message.id
        if not attempt_claim(transitions, instance_id, run_id, lease_seconds):
            logger.info("%s Unable to claim %s; picking another", tag, instance_id)
            continue

        state = health.classify(instance_id)
        if state is not HealthState.HEALTHY:
            log_event(
                logger, logging.INFO, "claim_unhealthy",
                f"{tag} Instance {instance_id} is {state.value}; picking another",
                instance_id=instance_id, run_id=run_id, health=state.value,
                policy=on_unhealthy.value,
            )
            if on_unhealthy is UnhealthyClaimPolicy.EXPIRE:
                _expire_claim(transitions, instance_id, run_id)
            continue

        if signals is not None:
            registered = signals.poll_on_signal(
                [instance_id], run_id, WorkerSignal.UD_REG_OK,
                timeout_seconds=REGISTRATION_TIMEOUT_SECONDS,
                interval_seconds=REGISTRATION_INTERVAL_SECONDS,
            )
            if not registered.state:
                log_event(
                    logger, logging.WARNING, "claim_unregistered",
                    f"{tag} {instance_id}: {registered.message}; picking another",
                    instance_id=instance_id, run_id=run_id,
                )
                _expire_claim(transitions, instance_id, run_id)
                continue

        log_event(
            logger, logging.INFO, "claim_won",
            f"{tag} Instance {instance_id} is claimed and healthy",
            instance_id=instance_id, run_id=run_id, resource_class=resource_class,
        )
        return ClaimResult(f"Instance ({instance_id}) is claimed and healthy", message)
