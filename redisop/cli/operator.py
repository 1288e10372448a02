#!/usr/bin/env python3
"""
CLI for the Redis topology operator

Usage:
    python -m redisop.cli.operator --help
    python -m redisop.cli.operator run
    python -m redisop.cli.operator reconcile --namespace redis
    python -m redisop.cli.operator status --kind RedisCluster --name cache --namespace redis
    python -m redisop.cli.operator render --file cluster.yaml
    python -m redisop.cli.operator slots --masters 3 --previous 2
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import Optional

import yaml
from prometheus_client import start_http_server

from redisop.config import settings

# Setup logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


async def run_operator(namespace: Optional[str]):
    """Run the watch and worker pool until interrupted"""
    from redisop.platform import create_platform
    from redisop.reconcile import HealthCache, HealthSignalPoller, ReconcileDriver

    platform = create_platform(settings.platform)
    health = HealthCache()
    driver = ReconcileDriver(platform, health=health, namespace=namespace)
    poller = HealthSignalPoller(health)

    start_http_server(settings.metrics_port)
    logger.info(f"Serving operator metrics on :{settings.metrics_port}")

    poller_task = asyncio.create_task(poller.run())
    try:
        await driver.run()
    finally:
        poller_task.cancel()
        await platform.close()


async def run_reconciliation(namespace: Optional[str]):
    """Reconcile every topology object once"""
    from redisop.platform import create_platform
    from redisop.reconcile import ReconcileDriver

    platform = create_platform(settings.platform)
    try:
        driver = ReconcileDriver(platform, namespace=namespace)
        logger.info("Starting manual reconciliation...")
        results = await driver.reconcile_all()
        for result in results:
            print(f"{result.key}: phase={result.phase.value if result.phase else '-'} writes={result.writes}"
                  f"{' error=' + str(result.error) if result.error else ''}")
        logger.info("Reconciliation completed")
        return results
    finally:
        await platform.close()


async def show_status(kind: str, name: str, namespace: str):
    """Print the status of one topology object"""
    from redisop.platform import create_platform
    from redisop.reconcile import ObjectKey
    from redisop.topology import TopologyKind

    platform = create_platform(settings.platform)
    try:
        manifest = await platform.get(ObjectKey(TopologyKind(kind), namespace, name).ref)
        if manifest is None:
            print(f"{kind} {namespace}/{name} not found")
            return None
        print(json.dumps(manifest.get("status") or {}, indent=2, ensure_ascii=False))
        return manifest.get("status")
    finally:
        await platform.close()


def render_manifests(path: str) -> int:
    """Print the children synthesized for every topology object in a YAML file"""
    from redisop.topology import TopologyKind, TopologyObject, TopologyRegistry
    from redisop.topology.resources import master_service_name, service_fqdn
    from redisop.topology.sentinel import build_monitor_set

    with open(path) as f:
        documents = [doc for doc in yaml.safe_load_all(f) if doc]

    rendered = []
    for document in documents:
        document.setdefault("metadata", {}).setdefault("uid", "00000000-0000-0000-0000-000000000000")
        obj = TopologyObject(document)
        topology = TopologyRegistry.get(obj.kind)
        spec = topology.parse_spec(obj.spec)
        extra = None
        if obj.kind == TopologyKind.SENTINEL and spec.master_replica_ref is not None:
            # Offline rendering assumes the referenced master is ready
            ref = spec.master_replica_ref
            extra = build_monitor_set(spec, service_fqdn(master_service_name(ref.name), ref.namespace or obj.namespace))
        rendered.extend(topology.synthesize(obj, spec, extra))

    yaml.safe_dump_all(rendered, sys.stdout, sort_keys=False)
    return len(rendered)


def show_slots(masters: int, previous: Optional[int]):
    """Print a slot assignment and the ranges that move from a previous master count"""
    from redisop.topology import allocate_slots, diff_assignments

    assignment = allocate_slots(masters)
    output = {
        "masters": masters,
        "fingerprint": assignment.fingerprint(),
        "slots": assignment.to_list(),
    }
    if previous:
        output["moves"] = [move.to_dict() for move in diff_assignments(allocate_slots(previous), assignment)]
    print(json.dumps(output, indent=2))
    return output


def main():
    parser = argparse.ArgumentParser(description="Redis topology operator")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Run command
    run_parser = subparsers.add_parser("run", help="Run the operator")
    run_parser.add_argument("--namespace", default=settings.watch_namespace, help="Namespace to watch (default: all)")

    # Reconcile command
    reconcile_parser = subparsers.add_parser("reconcile", help="Reconcile every topology object once")
    reconcile_parser.add_argument("--namespace", default=settings.watch_namespace, help="Namespace (default: all)")

    # Status command
    status_parser = subparsers.add_parser("status", help="Show the status of a topology object")
    status_parser.add_argument("--kind", required=True, choices=["RedisInstance", "RedisMasterReplica",
                                                                 "RedisSentinel", "RedisCluster", "Redis"])
    status_parser.add_argument("--name", required=True, help="Object name")
    status_parser.add_argument("--namespace", default="default", help="Object namespace")

    # Render command
    render_parser = subparsers.add_parser("render", help="Print synthesized children of topology objects")
    render_parser.add_argument("--file", required=True, help="YAML file with topology objects")

    # Slots command
    slots_parser = subparsers.add_parser("slots", help="Show the hash-slot assignment for a master count")
    slots_parser.add_argument("--masters", type=int, required=True, help="Number of masters")
    slots_parser.add_argument("--previous", type=int, help="Previous number of masters")

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        return 1

    try:
        if args.command == "run":
            asyncio.run(run_operator(args.namespace))
        elif args.command == "reconcile":
            asyncio.run(run_reconciliation(args.namespace))
        elif args.command == "status":
            asyncio.run(show_status(args.kind, args.name, args.namespace))
        elif args.command == "render":
            render_manifests(args.file)
        elif args.command == "slots":
            show_slots(args.masters, args.previous)
        else:
            print(f"Unknown command: {args.command}")
            return 1
    except KeyboardInterrupt:
        logger.info("Interrupted")
    except Exception as e:
        logger.error(f"Command failed: {e}")
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
