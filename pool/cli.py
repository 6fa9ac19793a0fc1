"""
Runner Pool — CLI

Operate on a pool database from the shell.

Usage:
    # List instance records, optionally by state
    python -m pool.cli instances [--state idle]

    # Claim instances for a run
    python -m pool.cli select --run-id run-42 --count 2 [--resource-class large]

    # Return a run's instances to the pools
    python -m pool.cli release --run-id run-42 [--idle-time 300]

    # Terminate everything past its threshold
    python -m pool.cli sweep

    # Write worker-side records by hand
    python -m pool.cli heartbeat i-0abc
    python -m pool.cli signal i-0abc UD_REG_OK --run-id run-42

    # Queue depth per resource class
    python -m pool.cli pools
"""

import argparse
import json
import sys

from ops.config import get_config
from ops.logging import configure_logging
from pool.errors import PoolError
from pool.runtime import PoolRuntime
from pool.types import InstanceState, WorkerSignal


def cmd_instances(args, runtime: PoolRuntime):
    records = runtime.transitions.records.query()
    if args.state:
        records = [r for r in records if r.state.value == args.state]
    if not records:
        print("No instances.")
        return
    print(f"{'ID':<24} {'STATE':<11} {'RUN':<16} {'THRESHOLD':<21} {'CLASS':<9} TYPE")
    print("─" * 96)
    for r in records:
        print(f"{r.id:<24} {r.state.value:<11} {r.run_id or '-':<16} "
              f"{r.threshold or '-':<21} {r.resource_class:<9} {r.instance_type}")


def cmd_select(args, runtime: PoolRuntime):
    result = runtime.select(
        count=args.count,
        run_id=args.run_id,
        resource_class=args.resource_class,
        allowed_instance_types=args.types.split(",") if args.types else None,
        usage_class=args.usage_class,
        demand_registration=args.demand_registration,
    )
    print(json.dumps(result.to_dict(), indent=2))


def cmd_release(args, runtime: PoolRuntime):
    report = runtime.release(args.run_id, args.idle_time)
    print(f"Pooled:  {report.pooled or '-'}")
    print(f"Expired: {report.expired or '-'}")
    for err in report.errors:
        print(f"  ! {err}")


def _record_termination(ids):
    # No provisioner wired in; the records are already terminated
    print(f"Terminate requested for: {', '.join(ids)}")


def cmd_sweep(args, runtime: PoolRuntime):
    report = runtime.sweep(_record_termination)
    print(f"Expired found: {report.found}")
    print(f"Terminated:    {report.terminated or '-'}")
    print(f"Conflicts:     {report.conflicts or '-'}")


def cmd_heartbeat(args, runtime: PoolRuntime):
    runtime.health.record_heartbeat(args.instance_id)
    print(f"{args.instance_id}: {runtime.health.classify(args.instance_id).value}")


def cmd_signal(args, runtime: PoolRuntime):
    runtime.signals.emit(args.instance_id, args.state, args.run_id)
    print(f"{args.instance_id}: {args.state} ({args.run_id})")


def cmd_pools(args, runtime: PoolRuntime):
    for name in runtime.resource_classes:
        print(f"{name:<10} {runtime.pools.size(name)}")


def main():
    parser = argparse.ArgumentParser(
        description="Runner Pool — coordination CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--db", help="Pool database path (default: store.db_path from config)")
    parser.add_argument("--env", help="Config environment (default: RP_ENV or dev)")
    parser.add_argument("--log-level", default=None)

    subs = parser.add_subparsers(dest="command", help="Command")

    inst_p = subs.add_parser("instances", help="List instance records")
    inst_p.add_argument("--state", choices=[s.value for s in InstanceState])

    sel_p = subs.add_parser("select", help="Claim idle instances for a run")
    sel_p.add_argument("--run-id", required=True)
    sel_p.add_argument("--count", "-n", type=int, default=1)
    sel_p.add_argument("--resource-class", "-r")
    sel_p.add_argument("--types", help="Comma-separated instance type patterns")
    sel_p.add_argument("--usage-class", "-u")
    sel_p.add_argument("--demand-registration", action="store_true")

    rel_p = subs.add_parser("release", help="Release a run's instances")
    rel_p.add_argument("--run-id", required=True)
    rel_p.add_argument("--idle-time", type=int)

    subs.add_parser("sweep", help="Terminate expired instances")

    hb_p = subs.add_parser("heartbeat", help="Write a heartbeat")
    hb_p.add_argument("instance_id")

    sig_p = subs.add_parser("signal", help="Write a worker signal")
    sig_p.add_argument("instance_id")
    sig_p.add_argument("state", choices=[s.value for s in WorkerSignal])
    sig_p.add_argument("--run-id", required=True)

    subs.add_parser("pools", help="Show queue depth per resource class")

    args = parser.parse_args()
    if not args.command:
        parser.print_help()
        sys.exit(1)

    config = get_config(env=args.env)
    configure_logging(level=args.log_level or config.get("logging.level", "INFO"))
    runtime = PoolRuntime.from_config(config, db_path=args.db)

    commands = {
        "instances": cmd_instances,
        "select": cmd_select,
        "release": cmd_release,
        "sweep": cmd_sweep,
        "heartbeat": cmd_heartbeat,
        "signal": cmd_signal,
        "pools": cmd_pools,
    }
    try:
        commands[args.command](args, runtime)
    except PoolError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
