"""
Runner Pool — Errors

TransitionConflict is the expected, recoverable outcome of losing a
compare-and-swap. InvalidSignal and InvalidResourceClass are caller
errors and are never retried. UpstreamUnavailable wraps failures of the
store or queue backend itself and is always propagated. ProvisionError
means post-provision bookkeeping broke off; its caller dumps the fleet.
"""

from __future__ import annotations


class PoolError(Exception):
    """Base class for runner pool errors."""


class ConditionalCheckFailed(PoolError):
    """A conditional write found the stored item in an unexpected shape."""

    def __init__(self, entity: str, identifier: str):
        super().__init__(f"Condition failed for {entity}#{identifier}")
        self.entity = entity
        self.identifier = identifier


class TransitionConflict(PoolError):
    """The instance record did not match the expected state, owner or threshold."""

    def __init__(self, instance_id: str, reason: str = ""):
        msg = f"Transition conflict on {instance_id}"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)
        self.instance_id = instance_id
        self.reason = reason


class InvalidSignal(PoolError, ValueError):
    """A demanded signal is not one of the known OK milestones."""


class InvalidResourceClass(PoolError, ValueError):
    """A resource class is not present in the live spec table."""


class UpstreamUnavailable(PoolError):
    """The record store or queue backend failed."""


class ProvisionError(PoolError):
    """Post-provision bookkeeping could not be completed."""
