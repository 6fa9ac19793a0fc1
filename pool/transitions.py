r"""
Runner Pool — Instance Transition Engine

The instance lifecycle state machine:

    created ──► running ──► idle ──► claimed ──► running ──► ...
        \           \         \         \
         └───────────┴─────────┴─────────┴──► terminated

Every state change goes through transition(), a single conditional
write that requires the current state, the current owner (runId) and
the freshness of the threshold to all match. state and runId are always
written together. A failed condition raises TransitionConflict after
logging which sub-condition did not hold; retrying is the caller's call.

Usage:
    engine = InstanceTransitions(store)
    engine.transition("i-1", expected_run_id="", new_run_id="run-7",
                      expected_state=InstanceState.IDLE,
                      new_state=InstanceState.CLAIMED,
                      new_threshold=shift(utc_now, 300))
"""

from __future__ import annotations

import logging
from typing import Any, Iterable

from ops.logging import get_logger, log_event
from pool.errors import ConditionalCheckFailed, TransitionConflict
from pool.store import RecordStore, ValueRecords
from pool.types import (
    Clock,
    DeleteOutcome,
    Entity,
    InstanceRecord,
    InstanceState,
    parse_isoz,
    shift,
    to_isoz,
    utc_now,
)

logger = get_logger("transitions")

DEFAULT_EXPIRY_OFFSET_SECONDS = 300


class InstanceTransitions:
    """Compare-and-swap access to INSTANCE records."""

    def __init__(
        self,
        store: RecordStore,
        clock: Clock = utc_now,
        expiry_offset_seconds: int = DEFAULT_EXPIRY_OFFSET_SECONDS,
    ):
        self.store = store
        self.clock = clock
        self.expiry_offset_seconds = expiry_offset_seconds
        self.records: ValueRecords[InstanceRecord] = ValueRecords(
            store, Entity.INSTANCE,
            encode=InstanceRecord.to_item,
            decode=InstanceRecord.from_item,
        )

    def _now(self) -> str:
        return to_isoz(self.clock())

    def _normalize(self, threshold: str | None) -> str:
        # None means "now"; any parseable timestamp is re-rendered as ISO-Z
        if threshold is None:
            return self._now()
        parsed = parse_isoz(threshold)
        return to_isoz(parsed) if parsed else ""

    # ─── Reads ───────────────────────────────────────────────────

    def get(self, instance_id: str) -> InstanceRecord | None:
        return self.records.get_value(instance_id)

    def get_by_run_id(self, run_id: str) -> list[InstanceRecord]:
        return self.records.query(lambda item: item.get("runId") == run_id)

    def query_expired_by_states(self, states: Iterable[InstanceState]) -> list[InstanceRecord]:
        """
        Records whose state is in `states` and whose threshold is set and
        already in the past. An empty or unparseable threshold is never
        expired.
        """
        wanted = {InstanceState(s).value for s in states}
        now = self.clock()

        def expired(item: dict[str, Any]) -> bool:
            if item.get("state") not in wanted:
                return False
            try:
                threshold = parse_isoz(item.get("threshold"))
            except ValueError:
                logger.warning(
                    "Skipping instance %s: threshold unparseable (%r)",
                    item.get("id"), item.get("threshold"),
                )
                return False
            return threshold is not None and threshold < now

        return self.records.query(expired)

    # ─── Creation ────────────────────────────────────────────────

    def create(self, instance_id: str, attrs: dict[str, Any] | None = None,
               must_be_new: bool = False) -> bool:
        """
        Insert a record in state `created`.

        With must_be_new, an existing record is left untouched and False
        is returned; duplicate creation is a soft failure.
        """
        attrs = attrs or {}
        record = InstanceRecord(
            id=instance_id,
            state=InstanceState.CREATED,
            run_id=attrs.get("run_id", ""),
            threshold=self._normalize(attrs.get("threshold", "")) if attrs.get("threshold") else "",
            resource_class=attrs.get("resource_class", ""),
            instance_type=attrs.get("instance_type", ""),
            usage_class=attrs.get("usage_class", ""),
            updated_at=self._now(),
        )
        condition = (lambda current: current is None) if must_be_new else None
        try:
            self.records.put_value(instance_id, record, condition)
            return True
        except ConditionalCheckFailed:
            existing = self.records.get_item(instance_id) or {}
            logger.warning("Instance %s already exists; skipping registration", instance_id)
            if existing.get("runId") != record.run_id:
                logger.warning(
                    "Run id mismatch on %s: incoming=%s recorded=%s",
                    instance_id, record.run_id, existing.get("runId"),
                )
            return False

    def register_created(self, instance_id: str, run_id: str, threshold: str,
                         resource_class: str, instance_type: str,
                         usage_class: str = "") -> bool:
        """Weak registration of a freshly launched instance."""
        logger.info("Registering instance %s as 'created'", instance_id)
        return self.create(instance_id, {
            "run_id": run_id,
            "threshold": threshold,
            "resource_class": resource_class,
            "instance_type": instance_type,
            "usage_class": usage_class,
        }, must_be_new=True)

    def register_running(self, instance_id: str, run_id: str, threshold: str) -> None:
        """Strong registration: created -> running once the worker is confirmed up."""
        logger.info("Registering instance %s as 'running' (from 'created')", instance_id)
        self.transition(
            instance_id,
            expected_run_id=run_id,
            new_run_id=run_id,
            expected_state=InstanceState.CREATED,
            new_state=InstanceState.RUNNING,
            new_threshold=threshold,
            selects_unexpired=True,
        )

    # ─── Compare-and-swap ────────────────────────────────────────

    def transition(
        self,
        instance_id: str,
        expected_run_id: str,
        new_run_id: str,
        expected_state: InstanceState,
        new_state: InstanceState,
        new_threshold: str | None,
        selects_unexpired: bool = True,
    ) -> InstanceRecord:
        """
        Atomically move one record between states.

        Requires current state == expected_state, current runId ==
        expected_run_id, and a threshold in the future (selects_unexpired)
        or in the past (not selects_unexpired). Sets state, runId,
        threshold and updatedAt together. Raises TransitionConflict.
        """
        expected_state = InstanceState(expected_state)
        new_state = InstanceState(new_state)
        new_threshold = self._normalize(new_threshold)
        now = self.clock()
        logger.info(
            "Instance (%s): state %s->%s; runId %s->%s; threshold ->%s",
            instance_id, expected_state.value, new_state.value,
            expected_run_id or "NONE", new_run_id or "NONE", new_threshold,
        )

        def condition(current: dict[str, Any] | None) -> bool:
            if current is None:
                return False
            try:
                threshold = parse_isoz(current.get("threshold"))
            except ValueError:
                return False
            if threshold is None:
                return False
            fresh = threshold > now if selects_unexpired else threshold < now
            return (
                current.get("state") == expected_state.value
                and fresh
                and current.get("runId", "") == expected_run_id
            )

        try:
            item = self.store.update(Entity.INSTANCE, instance_id, {
                "state": new_state.value,
                "runId": new_run_id,
                "threshold": new_threshold,
                "updatedAt": to_isoz(now),
            }, condition)
        except ConditionalCheckFailed:
            reason = self._diagnose(instance_id, expected_state, expected_run_id,
                                    selects_unexpired, now)
            log_event(
                logger, logging.WARNING, "transition_conflict",
                f"State transition failed for instance {instance_id}: {reason}",
                instance_id=instance_id, run_id=expected_run_id,
                expected_state=expected_state.value, new_state=new_state.value,
                reason=reason,
            )
            raise TransitionConflict(instance_id, reason) from None
        return InstanceRecord.from_item(item)

    def _diagnose(self, instance_id, expected_state, expected_run_id,
                  selects_unexpired, now) -> str:
        current = self.records.get_item(instance_id)
        if current is None:
            return "record not found"
        if current.get("state") != expected_state.value:
            return f"state mismatch (expected={expected_state.value}, actual={current.get('state')})"
        try:
            threshold = parse_isoz(current.get("threshold"))
        except ValueError:
            return f"threshold unparseable (threshold={current.get('threshold')!r})"
        if threshold is None:
            return "threshold is empty"
        if selects_unexpired and threshold <= now:
            return f"threshold expired (threshold={current.get('threshold')}, now={to_isoz(now)})"
        if not selects_unexpired and threshold >= now:
            return f"threshold still fresh (threshold={current.get('threshold')}, now={to_isoz(now)})"
        if current.get("runId", "") != expected_run_id:
            return f"runId mismatch (expected={expected_run_id}, actual={current.get('runId')})"
        return "condition failed"

    # ─── Derived transitions ─────────────────────────────────────

    def expire(self, instance_id: str, run_id: str,
               state: InstanceState | None = None) -> InstanceRecord:
        """
        Force the threshold into the past so the next sweep reclaims the
        record. With no state, the current state is read and kept.
        """
        if state is None:
            current = self.get(instance_id)
            if current is None:
                raise TransitionConflict(instance_id, "record not found")
            state = current.state
        past = shift(self.clock, -self.expiry_offset_seconds)
        logger.debug("Expiring instance %s (threshold -> %s)", instance_id, past)
        return self.transition(
            instance_id,
            expected_run_id=run_id,
            new_run_id=run_id,
            expected_state=state,
            new_state=state,
            new_threshold=past,
            selects_unexpired=True,
        )

    def terminate(self, instance_id: str, run_id: str,
                  state: InstanceState) -> InstanceRecord:
        """Expired record of any live state -> terminated, owner cleared."""
        return self.transition(
            instance_id,
            expected_run_id=run_id,
            new_run_id="",
            expected_state=state,
            new_state=InstanceState.TERMINATED,
            new_threshold=None,
            selects_unexpired=False,
        )

    # ─── Bulk delete ─────────────────────────────────────────────

    def bulk_delete_with_isolation(self, instance_ids: list[str],
                                   run_id: str | None = None) -> list[DeleteOutcome]:
        """
        Delete each id. With run_id, each delete only applies while the
        record still belongs to that run. Settle-all: one failure never
        stops the rest.
        """
        condition = None
        if run_id:
            condition = lambda current: current is not None and current.get("runId") == run_id

        outcomes: list[DeleteOutcome] = []
        for instance_id in instance_ids:
            try:
                self.records.delete(instance_id, condition)
                outcomes.append(DeleteOutcome(instance_id, ok=True))
            except ConditionalCheckFailed:
                logger.warning("Delete of %s skipped: not owned by run %s", instance_id, run_id)
                outcomes.append(DeleteOutcome(instance_id, ok=False, error="runId mismatch"))
            except Exception as e:
                logger.error("Delete of %s failed: %s", instance_id, e)
                outcomes.append(DeleteOutcome(instance_id, ok=False, error=str(e)))
        return outcomes
