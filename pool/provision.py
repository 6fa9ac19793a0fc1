"""
Runner Pool — Post-Provision

Settles a run's fleet once selection has claimed what the pools had and
the provisioner has launched the shortfall:

  success   created instances are registered and moved to running;
            selected instances go claimed -> running. Both get the
            run's hard deadline, now + max_runtime_min.
  failed    the fleet is incomplete. Selected instances go back to
            idle (owner cleared) and their descriptors are re-pooled.
            Created instances are left to the provisioner, which
            terminates them on a failed creation.
  error     anything unexpected while settling: every selected and
            created resource is dumped (record deleted, compute
            terminated) and the error is re-raised.

The fleet counts as a success only when creation succeeded, something
was selected or created, and creation covered exactly the shortfall.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from ops.logging import get_logger, log_event
from pool.errors import ProvisionError, TransitionConflict
from pool.queues import ResourcePools
from pool.selection import promote_selected
from pool.sweep import TerminateFn
from pool.transitions import InstanceTransitions
from pool.types import (
    CreationOutput,
    FleetState,
    InstanceState,
    PoolMessage,
    SelectionResult,
    shift,
)

logger = get_logger("provision")


@dataclass
class ProvisionOutcome:
    state: FleetState
    ids: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.state is FleetState.SUCCESS


def reconcile_fleet_state(selection: SelectionResult, creation: CreationOutput) -> FleetState:
    """Strictly success or failed; a partial creation is a failure."""
    if FleetState(creation.state) is not FleetState.SUCCESS:
        logger.info("Creation state is %s, not success; fleet failed", FleetState(creation.state).value)
        return FleetState.FAILED
    if creation.num_created + selection.num_selected <= 0:
        logger.info("No instances selected or created; fleet failed")
        return FleetState.FAILED
    if selection.num_required != creation.num_created:
        logger.info(
            "Required %d instance(s) but created %d; fleet failed",
            selection.num_required, creation.num_created,
        )
        return FleetState.FAILED
    return FleetState.SUCCESS


# ─── Success ────────────────────────────────────────────────────────

def process_created_instances(
    creation: CreationOutput,
    run_id: str,
    max_runtime_min: int,
    transitions: InstanceTransitions,
) -> list[str]:
    """Register each created instance, then move it created -> running."""
    deadline = shift(transitions.clock, max_runtime_min * 60)
    registered = []
    for message in creation.instances:
        if not transitions.register_created(
            message.id, run_id, deadline,
            resource_class=message.resource_class,
            instance_type=message.instance_type,
            usage_class=message.usage_class,
        ):
            logger.info("Instance %s already registered; promoting existing record", message.id)
        try:
            transitions.register_running(message.id, run_id, deadline)
        except TransitionConflict as e:
            raise ProvisionError(f"Could not register {message.id} as running: {e.reason}") from e
        registered.append(message.id)
    return registered


def process_selected_instances(
    selection: SelectionResult,
    run_id: str,
    max_runtime_min: int,
    transitions: InstanceTransitions,
) -> list[str]:
    promoted, failed = promote_selected(transitions, selection.instances, run_id, max_runtime_min)
    if failed:
        raise ProvisionError(f"Selected instances failed to move to running: {failed}")
    return promoted


def process_successful_provision(
    selection: SelectionResult,
    creation: CreationOutput,
    run_id: str,
    max_runtime_min: int,
    transitions: InstanceTransitions,
) -> list[str]:
    """
    Hand the whole fleet to the run. Returns the ids the run should use,
    selected first, then created. Raises ProvisionError if any record
    could not be moved to running.
    """
    created = process_created_instances(creation, run_id, max_runtime_min, transitions)
    selected = process_selected_instances(selection, run_id, max_runtime_min, transitions)
    ids = selected + created
    log_event(
        logger, logging.INFO, "provision_succeeded",
        f"Fleet ready for run {run_id}: {ids}",
        run_id=run_id, ids=ids,
    )
    return ids


# ─── Failure ────────────────────────────────────────────────────────

def process_failed_provision(
    selection: SelectionResult,
    idle_time_sec: int,
    run_id: str,
    transitions: InstanceTransitions,
    pools: ResourcePools,
) -> list[str]:
    """
    Release the run's claims back to the pools. Returns the re-pooled ids.

    Every claim must make it back to idle and onto its queue; the first
    failed transition, or any failed send, raises ProvisionError.
    """
    if not selection.instances:
        logger.info("No selected instances to release")
        return []

    threshold = shift(transitions.clock, idle_time_sec)
    for message in selection.instances:
        try:
            transitions.transition(
                message.id,
                expected_run_id=run_id,
                new_run_id="",
                expected_state=InstanceState.CLAIMED,
                new_state=InstanceState.IDLE,
                new_threshold=threshold,
                selects_unexpired=True,
            )
        except TransitionConflict as e:
            raise ProvisionError(f"Could not release claim on {message.id}: {e.reason}") from e

    messages = [
        PoolMessage(
            id=m.id,
            resource_class=m.resource_class,
            instance_type=m.instance_type,
            cpu=m.cpu,
            mmem=m.mmem,
            usage_class=m.usage_class,
            threshold=threshold,
        )
        for m in selection.instances
    ]
    successful, failed = pools.send_many(messages)
    for message in successful:
        log_event(
            logger, logging.INFO, "provision_repooled",
            f"Returned {message.id} to pool {message.resource_class}",
            instance_id=message.id, run_id=run_id,
        )
    if failed:
        raise ProvisionError(
            f"Failed to send selected instances back to pool: {[m.id for m in failed]}"
        )
    return [m.id for m in successful]


# ─── Dump ───────────────────────────────────────────────────────────

def _terminate(ids: list[str], terminate: TerminateFn) -> None:
    try:
        terminate(ids)
    except Exception as e:
        logger.error("Termination request for %s failed: %s", ids, e)


def dump_resources(
    selection: SelectionResult,
    creation: CreationOutput,
    run_id: str,
    transitions: InstanceTransitions,
    terminate: TerminateFn,
) -> list[str]:
    """
    Hard cleanup after an unexpected post-provision error. Returns the
    ids sent for termination.

    Selected records are deleted only while still owned by `run_id`, and
    only those deletions are terminated; an instance already handed to
    another run is left alone. Created instances are deleted and
    terminated unconditionally. Nothing here raises.
    """
    logger.warning(
        "Dumping resources for run %s: selected=%d created=%d",
        run_id, len(selection.instances), creation.num_created,
    )
    dumped: list[str] = []

    selected_ids = [m.id for m in selection.instances]
    if selected_ids:
        outcomes = transitions.bulk_delete_with_isolation(selected_ids, run_id)
        owned = [o.instance_id for o in outcomes if o.ok]
        skipped = [o.instance_id for o in outcomes if not o.ok]
        if skipped:
            logger.warning("Selected instances failed the ownership check: %s", skipped)
        if owned:
            _terminate(owned, terminate)
            dumped.extend(owned)

    created_ids = [m.id for m in creation.instances]
    if created_ids:
        for outcome in transitions.bulk_delete_with_isolation(created_ids):
            if not outcome.ok:
                logger.warning("Could not delete record %s: %s", outcome.instance_id, outcome.error)
        _terminate(created_ids, terminate)
        dumped.extend(created_ids)

    for instance_id in dumped:
        log_event(
            logger, logging.WARNING, "provision_dumped",
            f"Dumped {instance_id}",
            instance_id=instance_id, run_id=run_id,
        )
    return dumped


# ─── Entry Point ────────────────────────────────────────────────────

def post_provision(
    selection: SelectionResult,
    creation: CreationOutput,
    run_id: str,
    max_runtime_min: int,
    idle_time_sec: int,
    transitions: InstanceTransitions,
    pools: ResourcePools,
    terminate: TerminateFn,
) -> ProvisionOutcome:
    """
    Settle the fleet. A failed fleet is reported, not raised; the claims
    have been released by the time it returns.
    """
    try:
        state = reconcile_fleet_state(selection, creation)
        if state is FleetState.SUCCESS:
            ids = process_successful_provision(
                selection, creation, run_id, max_runtime_min, transitions,
            )
            return ProvisionOutcome(FleetState.SUCCESS, ids)

        released = process_failed_provision(selection, idle_time_sec, run_id, transitions, pools)
        log_event(
            logger, logging.ERROR, "provision_failed",
            f"Provision failed for run {run_id}; released {released}",
            run_id=run_id, released=released,
        )
        return ProvisionOutcome(FleetState.FAILED, released)
    except Exception as e:
        logger.error("Post-provision error for run %s: %s", run_id, e)
        dump_resources(selection, creation, run_id, transitions, terminate)
        raise
