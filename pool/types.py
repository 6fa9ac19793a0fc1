"""
Runner Pool — Type Definitions

Data structures for the instance lifecycle, pool messages, worker
heartbeats and signals, and the results handed back to selection,
release and sweep callers.

Persisted and on-queue field names are camelCase: heartbeat and signal
records are written by worker bootstrap scripts that use these exact
literals.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable


# ─── Time ───────────────────────────────────────────────────────────

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Current UTC time truncated to whole seconds."""
    return datetime.now(timezone.utc).replace(microsecond=0)


def to_isoz(moment: datetime) -> str:
    """Render as ISO-8601 UTC with a Z suffix and no fractional seconds."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_isoz(value: str | None) -> datetime | None:
    """Parse an ISO-8601 timestamp. Empty or missing values return None."""
    if not value:
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def shift(clock: Clock, seconds: float) -> str:
    """ISO-Z timestamp `seconds` away from the clock's now (negative = past)."""
    return to_isoz(clock() + timedelta(seconds=seconds))


# ─── Instance Lifecycle ─────────────────────────────────────────────

class InstanceState(str, enum.Enum):
    """Lifecycle states for a pooled worker instance."""
    CREATED = "created"
    IDLE = "idle"
    CLAIMED = "claimed"
    RUNNING = "running"
    TERMINATED = "terminated"


class Entity(str, enum.Enum):
    """Record-store partitions."""
    INSTANCE = "INSTANCE"
    HEARTBEAT = "HEARTBEAT"
    SIGNAL = "WS"


@dataclass
class InstanceRecord:
    """
    One row per worker instance.

    threshold is overloaded: claim lease while claimed, runtime deadline
    while running, forced-past marker when flagged for reclamation.
    An empty threshold is never eligible for expiry.
    """
    id: str
    state: InstanceState
    run_id: str = ""
    threshold: str = ""
    resource_class: str = ""
    instance_type: str = ""
    usage_class: str = ""
    updated_at: str = ""

    def to_item(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "state": self.state.value,
            "runId": self.run_id,
            "threshold": self.threshold,
            "resourceClass": self.resource_class,
            "instanceType": self.instance_type,
            "usageClass": self.usage_class,
            "updatedAt": self.updated_at,
        }

    @staticmethod
    def from_item(item: dict[str, Any]) -> InstanceRecord:
        return InstanceRecord(
            id=item["id"],
            state=InstanceState(item["state"]),
            run_id=item.get("runId", ""),
            threshold=item.get("threshold", ""),
            resource_class=item.get("resourceClass", ""),
            instance_type=item.get("instanceType", ""),
            usage_class=item.get("usageClass", ""),
            updated_at=item.get("updatedAt", ""),
        )


# ─── Resource Classes ───────────────────────────────────────────────

@dataclass(frozen=True)
class ResourceSpec:
    """Sizing for a resource class: exact cpu, minimum memory (MiB)."""
    cpu: int
    mmem: int


ResourceClassConfig = dict[str, ResourceSpec]


def build_resource_classes(raw: dict[str, dict[str, Any]]) -> ResourceClassConfig:
    """Build the live spec table from the `resource_classes` config section."""
    return {
        name: ResourceSpec(cpu=int(spec["cpu"]), mmem=int(spec["mmem"]))
        for name, spec in (raw or {}).items()
    }


# ─── Pool Messages ──────────────────────────────────────────────────

@dataclass
class PoolMessage:
    """The queue's copy of an idle instance's descriptor."""
    id: str
    resource_class: str
    instance_type: str
    cpu: int
    mmem: int
    usage_class: str
    threshold: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "resourceClass": self.resource_class,
            "instanceType": self.instance_type,
            "cpu": self.cpu,
            "mmem": self.mmem,
            "usageClass": self.usage_class,
            "threshold": self.threshold,
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> PoolMessage:
        return PoolMessage(
            id=data["id"],
            resource_class=data.get("resourceClass", ""),
            instance_type=data.get("instanceType", ""),
            cpu=int(data.get("cpu", 0)),
            mmem=int(data.get("mmem", 0)),
            usage_class=data.get("usageClass", ""),
            threshold=data.get("threshold", ""),
        )


class PickupDecision(str, enum.Enum):
    OK = "ok"
    DELETE = "delete"
    REQUEUE = "requeue"


# ─── Heartbeats & Signals ───────────────────────────────────────────

class HealthState(str, enum.Enum):
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    MISSING = "missing"


class WorkerSignal(str, enum.Enum):
    """Milestones written by worker scripts. Values are persisted verbatim."""
    UD_OK = "UD_OK"
    UD_FAILED = "UD_FAILED"
    UD_REG_OK = "UD_REG_OK"
    UD_REG_FAILED = "UD_REG_FAILED"
    UD_REMOVE_REG_OK = "UD_REMOVE_REG_OK"
    UD_REMOVE_REG_FAILED = "UD_REMOVE_REG_FAILED"


FAILED_COUNTERPART: dict[WorkerSignal, WorkerSignal] = {
    WorkerSignal.UD_OK: WorkerSignal.UD_FAILED,
    WorkerSignal.UD_REG_OK: WorkerSignal.UD_REG_FAILED,
    WorkerSignal.UD_REMOVE_REG_OK: WorkerSignal.UD_REMOVE_REG_FAILED,
}


class SignalStatus(str, enum.Enum):
    SUCCESS = "success"
    FAILED = "failed"
    RETRY = "retry"


@dataclass
class HeartbeatRecord:
    id: str
    updated_at: str

    def to_item(self) -> dict[str, Any]:
        return {"id": self.id, "updatedAt": self.updated_at}

    @staticmethod
    def from_item(item: dict[str, Any]) -> HeartbeatRecord:
        return HeartbeatRecord(id=item["id"], updated_at=item.get("updatedAt", ""))


@dataclass
class SignalRecord:
    id: str
    state: str
    run_id: str

    def to_item(self) -> dict[str, Any]:
        return {"id": self.id, "state": self.state, "runId": self.run_id}

    @staticmethod
    def from_item(item: dict[str, Any]) -> SignalRecord:
        return SignalRecord(
            id=item["id"],
            state=item.get("state", ""),
            run_id=item.get("runId", ""),
        )


# ─── Results ────────────────────────────────────────────────────────

@dataclass
class PollResult:
    """Boolean outcome plus a human-readable diagnostic."""
    state: bool
    message: str = ""


@dataclass
class ClaimResult:
    message: str
    payload: PoolMessage | None = None


@dataclass
class SelectionResult:
    num_selected: int
    num_required: int
    instances: list[PoolMessage] = field(default_factory=list)
    labels: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "numInstancesSelected": self.num_selected,
            "numInstancesRequired": self.num_required,
            "instances": [m.to_dict() for m in self.instances],
            "labels": list(self.labels),
        }


@dataclass
class DeleteOutcome:
    """Per-id result of a settle-all bulk operation."""
    instance_id: str
    ok: bool
    error: str = ""


# ─── Provisioning ───────────────────────────────────────────────────

class FleetState(str, enum.Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


@dataclass
class CreationOutput:
    """What the provisioner launched to cover a selection's shortfall."""
    state: FleetState
    instances: list[PoolMessage] = field(default_factory=list)
    labels: list[str] = field(default_factory=list)

    @property
    def num_created(self) -> int:
        return len(self.instances)
