#!/usr/bin/env python3
"""
Ray Operator CLI

A command-line interface for inspecting and managing RayCluster, RayJob and
RayService resources without hand-writing kubectl patches.
"""

import argparse
import copy
import json
import sys

from kubernetes.config import ConfigException

from ray_operator import crd
from ray_operator.errors import ConflictError, NotFoundError, OperatorError
from ray_operator.k8s import KubeGateway, get_pod_status

KINDS = {
    "cluster": crd.CLUSTER_KIND,
    "job": crd.JOB_KIND,
    "service": crd.SERVICE_KIND,
}


def get_gateway():
    """Connect to the cluster or exit."""
    try:
        return KubeGateway()
    except ConfigException as e:
        print(f"Error loading Kubernetes config: {e}", file=sys.stderr)
        sys.exit(1)


def _phase(kind, status):
    if kind == crd.JOB_KIND:
        return status.get("jobDeploymentStatus", "Unknown")
    if kind == crd.SERVICE_KIND:
        return status.get("serviceStatus", "Unknown")
    return status.get("phase", "Unknown")


def _summary(kind, item):
    spec = item.get("spec", {})
    status = item.get("status", {})
    if kind == crd.CLUSTER_KIND:
        return f"{status.get('availableWorkerReplicas', 0)}/{status.get('desiredWorkerReplicas', 0)} workers"
    if kind == crd.JOB_KIND:
        return status.get("rayClusterName") or spec.get("clusterSelector", {}).get(crd.LABEL_CLUSTER, "")
    return status.get("servingCluster", "")


def cmd_list(args, gateway):
    """List resources of one kind."""
    kind = KINDS[args.kind]
    try:
        items = gateway.list(kind, args.namespace)
    except OperatorError as e:
        print(f"✗ Error: {e}", file=sys.stderr)
        sys.exit(1)

    if not items:
        print(f"No {kind}s found.")
        return

    print(f"{'NAME':<30} {'NAMESPACE':<20} {'STATUS':<24} {'DETAIL':<30}")
    print("-" * 104)
    for item in items:
        metadata = item.get("metadata", {})
        print(
            f"{metadata.get('name', 'N/A'):<30} {metadata.get('namespace', 'N/A'):<20} "
            f"{_phase(kind, item.get('status', {})):<24} {_summary(kind, item):<30}"
        )


def _print_cluster(item, gateway):
    spec = item.get("spec", {})
    status = item.get("status", {})
    metadata = item["metadata"]
    print(f"RayCluster: {metadata['name']}")
    print(f"Namespace: {metadata.get('namespace')}")
    print("\nStatus:")
    print(f"  Phase: {status.get('phase', 'Unknown')}")
    print(f"  Message: {status.get('message') or 'N/A'}")
    for name, endpoint in (status.get("endpoints") or {}).items():
        print(f"  {name.capitalize()}: {endpoint}")
    print("\nWorker groups:")
    groups = status.get("workerGroups") or {}
    for group in spec.get("workerGroupSpecs", []):
        observed = groups.get(group["groupName"], {})
        print(
            f"  {group['groupName']}: {observed.get('ready', 0)} ready / "
            f"{group.get('replicas', 0)} desired "
            f"[{group.get('minReplicas', 0)}, {group.get('maxReplicas', '∞')}]"
        )
    print("\nConditions:")
    for condition in status.get("conditions", []):
        print(f"  {condition['type']}={condition['status']} ({condition.get('reason', '')})")

    head = (status.get("head") or {}).get("podName")
    if head:
        try:
            pod = get_pod_status(gateway.get("Pod", metadata["namespace"], head))
        except NotFoundError:
            return
        print(f"\nHead pod {head}: {pod['phase']}, ready={pod['ready']}")
        for cs in pod["container_statuses"]:
            print(f"  {cs['name']}: {cs['state']}")


def cmd_get(args, gateway):
    """Show one resource."""
    kind = KINDS[args.kind]
    try:
        item = gateway.get(kind, args.namespace, args.name)
    except NotFoundError:
        print(f"✗ {kind} '{args.name}' not found", file=sys.stderr)
        sys.exit(1)
    except OperatorError as e:
        print(f"✗ Error: {e}", file=sys.stderr)
        sys.exit(1)

    if args.output == "json":
        print(json.dumps(item, indent=2))
    elif kind == crd.CLUSTER_KIND:
        _print_cluster(item, gateway)
    else:
        status = item.get("status", {})
        print(f"{kind}: {args.name}")
        print(f"Namespace: {args.namespace}")
        print(f"\nStatus: {_phase(kind, status)}")
        for key in ("jobId", "jobStatus", "outcome", "rayClusterName", "servingCluster",
                    "startTime", "endTime", "message"):
            if status.get(key):
                print(f"  {key}: {status[key]}")


def cmd_delete(args, gateway):
    """Delete a resource; owned clusters and units are garbage collected."""
    kind = KINDS[args.kind]
    try:
        gateway.get(kind, args.namespace, args.name)
        gateway.delete(kind, args.namespace, args.name)
    except NotFoundError:
        print(f"⚠ {kind} '{args.name}' not found (may already be deleted)")
        return
    except OperatorError as e:
        print(f"✗ Error deleting {kind}: {e}", file=sys.stderr)
        sys.exit(1)
    print(f"✓ {kind} '{args.name}' deleted")


def scale_worker_group(gateway, namespace, name, group_name, replicas):
    """Set a worker group's replicas, checked against its [min, max] range.

    The write carries the read resourceVersion, so a concurrent edit makes it
    fail instead of being overwritten.
    """
    body = gateway.get(crd.CLUSTER_KIND, namespace, name)
    updated = copy.deepcopy(body)
    updated.pop("status", None)
    for group in updated.get("spec", {}).get("workerGroupSpecs", []):
        if group.get("groupName") != group_name:
            continue
        low = group.get("minReplicas", 0)
        high = group.get("maxReplicas", crd.MAX_REPLICAS)
        if not low <= replicas <= high:
            raise ValueError(f"replicas {replicas} outside [{low}, {high}] for group {group_name}")
        group["replicas"] = replicas
        return gateway.replace(crd.CLUSTER_KIND, namespace, name, updated)
    raise ValueError(f"RayCluster {name} has no worker group {group_name!r}")


def cmd_scale(args, gateway):
    try:
        scale_worker_group(gateway, args.namespace, args.name, args.group, args.replicas)
    except ValueError as e:
        print(f"✗ {e}", file=sys.stderr)
        sys.exit(1)
    except ConflictError:
        print("✗ RayCluster changed while scaling, try again", file=sys.stderr)
        sys.exit(1)
    except OperatorError as e:
        print(f"✗ Error: {e}", file=sys.stderr)
        sys.exit(1)
    print(f"✓ Worker group '{args.group}' of '{args.name}' scaled to {args.replicas}")


def build_parser():
    parser = argparse.ArgumentParser(
        prog="raycli",
        description="Inspect and manage Ray clusters, jobs and services",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    list_parser = subparsers.add_parser("list", help="List resources")
    list_parser.add_argument("kind", choices=sorted(KINDS))
    list_parser.add_argument("-n", "--namespace", default=None, help="Namespace (default: all)")
    list_parser.set_defaults(func=cmd_list)

    get_parser = subparsers.add_parser("get", help="Show a resource")
    get_parser.add_argument("kind", choices=sorted(KINDS))
    get_parser.add_argument("name")
    get_parser.add_argument("-n", "--namespace", default="default")
    get_parser.add_argument("-o", "--output", choices=["text", "json"], default="text")
    get_parser.set_defaults(func=cmd_get)

    delete_parser = subparsers.add_parser("delete", help="Delete a resource")
    delete_parser.add_argument("kind", choices=sorted(KINDS))
    delete_parser.add_argument("name")
    delete_parser.add_argument("-n", "--namespace", default="default")
    delete_parser.set_defaults(func=cmd_delete)

    scale_parser = subparsers.add_parser("scale", help="Scale a RayCluster worker group")
    scale_parser.add_argument("name")
    scale_parser.add_argument("--group", required=True)
    scale_parser.add_argument("--replicas", type=int, required=True)
    scale_parser.add_argument("-n", "--namespace", default="default")
    scale_parser.set_defaults(func=cmd_scale)

    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)
    args.func(args, get_gateway())


if __name__ == "__main__":
    main()
