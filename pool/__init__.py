"""
Runner Pool — Coordination Layer

Claims, validates, releases and reclaims ephemeral CI runners from
shared per-resource-class pools. Coordination is purely through
conditional writes on single records and receive-removes-message
queues; there is no lock manager.

Usage:
    from pool.runtime import PoolRuntime

    runtime = PoolRuntime.in_memory(config)
    batch = runtime.select(count=2, run_id="run-42")
"""

from pool.types import (
    InstanceRecord,
    InstanceState,
    PoolMessage,
    ResourceSpec,
    SelectionResult,
    WorkerSignal,
)
from pool.errors import (
    PoolError,
    TransitionConflict,
    InvalidSignal,
    InvalidResourceClass,
    UpstreamUnavailable,
)

__all__ = [
    "InstanceRecord", "InstanceState", "PoolMessage", "ResourceSpec",
    "SelectionResult", "WorkerSignal",
    "PoolError", "TransitionConflict", "InvalidSignal",
    "InvalidResourceClass", "UpstreamUnavailable",
]
