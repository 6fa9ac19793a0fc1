"""
Runner Pool — Pool Pickup Manager

Consumes one message at a time from a resource-class pool and decides
what to do with it:

  delete   unknown resource class, cpu != spec, mmem < spec, expired
  requeue  instance type outside the allowed patterns, other usage class
  ok       hand it to the caller

The queue cannot be peeked, so "everything left is unusable for me" is
detected by counting how often each id comes back. Once an id has been
seen FREQ_TOLERANCE times, the next receipt puts it back and reports
the pool as empty.

One manager is shared by every claim worker of a selection batch; its
frequency map lives exactly as long as the batch.
"""

from __future__ import annotations

import logging
import re
import threading

from pool.queues import ResourcePools
from pool.types import (
    Clock,
    PickupDecision,
    PoolMessage,
    ResourceClassConfig,
    parse_isoz,
    utc_now,
)

logger = logging.getLogger("runner_pool.pickup")

FREQ_TOLERANCE = 5


def match_wildcard_patterns(patterns: list[str], value: str) -> bool:
    """
    True if any pattern matches the whole value.

    `*` is any run of characters (possibly empty), everything else is
    literal, case-insensitive:
        match_wildcard_patterns(["c*", "m*", "r*"], "c6i.large")  -> True
        match_wildcard_patterns(["c*", "r*"], "t4g.micro")        -> False
    """
    for pattern in patterns:
        regex = ".*".join(re.escape(part) for part in pattern.split("*"))
        if re.fullmatch(regex, value, flags=re.IGNORECASE):
            return True
    return False


class PoolPickupManager:
    """Stateful pickup from one resource-class pool."""

    def __init__(
        self,
        resource_class: str,
        resource_classes: ResourceClassConfig,
        allowed_instance_types: list[str],
        usage_class: str,
        pools: ResourcePools,
        clock: Clock = utc_now,
        freq_tolerance: int = FREQ_TOLERANCE,
    ):
        self.resource_class = resource_class
        self.resource_classes = resource_classes
        self.allowed_instance_types = list(allowed_instance_types)
        self.usage_class = usage_class
        self.pools = pools
        self.clock = clock
        self.freq_tolerance = freq_tolerance
        self._freq: dict[str, int] = {}
        self._lock = threading.Lock()

    def frequency(self, instance_id: str) -> int:
        with self._lock:
            return self._freq.get(instance_id, 0)

    def _register(self, instance_id: str) -> bool:
        """Count one sighting. False once the id has hit the tolerance."""
        with self._lock:
            seen = self._freq.get(instance_id, 0)
            if seen >= self.freq_tolerance:
                return False
            self._freq[instance_id] = seen + 1
            return True

    def pickup(self) -> PoolMessage | None:
        while True:
            raw = self.pools.receive(self.resource_class)
            if raw is None:
                logger.info("Pool %s is empty", self.resource_class)
                return None

            try:
                message = PoolMessage.from_dict(raw)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("Discarding malformed pool message %r: %s", raw, e)
                continue

            if not self._register(message.id):
                # Cycled through everything; keep the message in circulation
                self.pools.send_to_pool(message)
                logger.info(
                    "Cycled through pool %s %d times; assuming empty (freq=%s)",
                    self.resource_class, self.freq_tolerance, dict(self._freq),
                )
                return None

            decision, reason = self.classify(message)
            if decision is PickupDecision.DELETE:
                logger.warning("%s; discarded from pool", reason)
            elif decision is PickupDecision.REQUEUE:
                logger.info("%s; placing back in pool", reason)
                self.pools.send_to_pool(message)
            else:
                logger.info("Picked up %s (%s)", message.id, message.instance_type)
                return message

    def classify(self, message: PoolMessage) -> tuple[PickupDecision, str]:
        spec = self.resource_classes.get(message.resource_class)
        if spec is None:
            return PickupDecision.DELETE, f"Unknown resource class {message.resource_class!r}"
        if message.cpu != spec.cpu:
            return PickupDecision.DELETE, f"cpu {message.cpu} does not equal spec {spec.cpu}"
        if message.mmem < spec.mmem:
            return PickupDecision.DELETE, f"mmem {message.mmem} is below spec {spec.mmem}"
        try:
            threshold = parse_isoz(message.threshold)
        except ValueError:
            return PickupDecision.DELETE, f"{message.id} has bad threshold {message.threshold!r}"
        if threshold is not None and threshold <= self.clock():
            return PickupDecision.DELETE, f"{message.id} expired at {message.threshold}"
        if not match_wildcard_patterns(self.allowed_instance_types, message.instance_type):
            return PickupDecision.REQUEUE, (
                f"{message.instance_type} does not match {self.allowed_instance_types}"
            )
        if message.usage_class != self.usage_class:
            return PickupDecision.REQUEUE, (
                f"usage class {message.usage_class} is not {self.usage_class}"
            )
        return PickupDecision.OK, "ok"
