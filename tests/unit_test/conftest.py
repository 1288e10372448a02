import copy

import pytest

from redisop.platform.base import ObjectRef
from redisop.platform.memory import InMemoryPlatform
from redisop.topology.models import API_VERSION


def topology_manifest(kind: str, name: str, spec: dict, namespace: str = "default", **metadata) -> dict:
    manifest = {
        "apiVersion": API_VERSION,
        "kind": kind,
        "metadata": {"name": name, "namespace": namespace},
        "spec": copy.deepcopy(spec),
    }
    manifest["metadata"].update(metadata)
    return manifest


async def mark_workloads_ready(platform: InMemoryPlatform, namespace: str = "default") -> None:
    """Report every StatefulSet as fully rolled out, the way the workload controller would"""
    for statefulset in await platform.list("apps/v1", "StatefulSet", namespace):
        platform.set_status(
            ObjectRef.from_manifest(statefulset),
            {
                "replicas": statefulset["spec"]["replicas"],
                "readyReplicas": statefulset["spec"]["replicas"],
                "observedGeneration": statefulset["metadata"]["generation"],
            },
        )


@pytest.fixture
def platform():
    return InMemoryPlatform()


@pytest.fixture
def make_manifest():
    return topology_manifest


@pytest.fixture
def mark_ready():
    return mark_workloads_ready
