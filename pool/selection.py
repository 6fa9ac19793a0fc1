"""
Runner Pool — Selection

Fills a batch of `count` instances from one resource-class pool by
running `count` claim workers concurrently against a single shared
PoolPickupManager. Under-fulfillment is not an error: the shortfall is
reported as num_required for the caller to provision fresh instances.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor

from pool.claim import CLAIM_LEASE_SECONDS, UnhealthyClaimPolicy, claim_worker
from pool.errors import TransitionConflict
from pool.health import HealthMonitor
from pool.pickup import FREQ_TOLERANCE, PoolPickupManager
from pool.queues import ResourcePools
from pool.signals import SignalMonitor
from pool.transitions import InstanceTransitions
from pool.types import InstanceState, PoolMessage, SelectionResult, shift

logger = logging.getLogger("runner_pool.selection")


def select_instances(
    count: int,
    resource_class: str,
    run_id: str,
    pools: ResourcePools,
    transitions: InstanceTransitions,
    health: HealthMonitor,
    allowed_instance_types: list[str],
    usage_class: str,
    freq_tolerance: int = FREQ_TOLERANCE,
    lease_seconds: int = CLAIM_LEASE_SECONDS,
    max_workers: int | None = None,
    signals: SignalMonitor | None = None,
    on_unhealthy: UnhealthyClaimPolicy = UnhealthyClaimPolicy.ABANDON,
) -> SelectionResult:
    """Claim up to `count` healthy idle instances for `run_id`."""
    pools.queue_ref(resource_class)
    logger.info("Selecting %d %s instance(s) for run %s", count, resource_class, run_id)
    if count <= 0:
        return SelectionResult(0, 0)

    manager = PoolPickupManager(
        resource_class=resource_class,
        resource_classes=pools.resource_classes,
        allowed_instance_types=allowed_instance_types,
        usage_class=usage_class,
        pools=pools,
        clock=transitions.clock,
        freq_tolerance=freq_tolerance,
    )

    claimed: list[PoolMessage] = []
    workers = max(1, min(max_workers or count, count))
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="rp_claim") as executor:
        futures = [
            executor.submit(
                claim_worker,
                resource_class, manager, transitions, health, run_id,
                worker_number=n,
                lease_seconds=lease_seconds,
                signals=signals,
                on_unhealthy=on_unhealthy,
            )
            for n in range(count)
        ]
        for n, future in enumerate(futures):
            try:
                result = future.result()
            except Exception as e:
                logger.error("Claim worker %d failed: %s", n, e)
                continue
            if result.payload is not None:
                claimed.append(result.payload)

    selection = SelectionResult(
        num_selected=len(claimed),
        num_required=count - len(claimed),
        instances=claimed,
        labels=[m.id for m in claimed],
    )
    logger.info(
        "Selection complete: selected=%d required=%d",
        selection.num_selected, selection.num_required,
    )
    return selection


def promote_selected(
    transitions: InstanceTransitions,
    instances: list[PoolMessage],
    run_id: str,
    max_runtime_minutes: int,
) -> tuple[list[str], list[str]]:
    """
    claimed -> running with the run's hard deadline, once the workload
    is handed over. Returns (promoted_ids, failed_ids).
    """
    deadline = shift(transitions.clock, max_runtime_minutes * 60)
    promoted, failed = [], []
    for message in instances:
        try:
            transitions.transition(
                message.id,
                expected_run_id=run_id,
                new_run_id=run_id,
                expected_state=InstanceState.CLAIMED,
                new_state=InstanceState.RUNNING,
                new_threshold=deadline,
                selects_unexpired=True,
            )
            promoted.append(message.id)
        except TransitionConflict as e:
            logger.warning("Could not promote %s to running: %s", message.id, e.reason)
            failed.append(message.id)
    return promoted, failed
