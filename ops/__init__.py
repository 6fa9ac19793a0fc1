"""
Runner Pool - Ops Package

Ambient plumbing shared by the pool coordination layer:
  - ops.logging: JSON line logging under the runner_pool namespace
  - ops.config:  YAML config with environment overlays and RP_* overrides
  - ops.waiter:  timeout + interval polling primitive
"""

from ops.waiter import WaiterState, WaiterResult, wait_until

__all__ = ["WaiterState", "WaiterResult", "wait_until"]
