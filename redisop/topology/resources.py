# Copyright 2025 ApeCloud, Inc.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

import copy
from typing import Any, Dict, Iterator, List, Optional, Tuple

from redisop.platform.base import ObjectRef
from redisop.topology.models import (
    API_GROUP,
    Resources,
    Role,
    SchedulingSpec,
    StorageSpec,
    TopologyObject,
)

MANAGED_BY = "redisop"
LABEL_MANAGED_BY = "app.kubernetes.io/managed-by"
LABEL_KIND = f"{API_GROUP}/kind"
LABEL_INSTANCE = f"{API_GROUP}/instance"
LABEL_ROLE = f"{API_GROUP}/role"
LABEL_PARENT_UID = f"{API_GROUP}/parent-uid"
ANNOTATION_CONFIG_HASH = f"{API_GROUP}/config-hash"
ANNOTATION_SLOTS_MIGRATED = f"{API_GROUP}/slots-migrated"

CONFIG_MOUNT_PATH = "/usr/local/etc/redis"
DATA_MOUNT_PATH = "/data"

# (api_version, kind) of every child type the engine owns
CHILD_TYPES: Tuple[Tuple[str, str], ...] = (
    ("apps/v1", "StatefulSet"),
    ("v1", "Service"),
    ("v1", "ConfigMap"),
)


def service_fqdn(service: str, namespace: str) -> str:
    return f"{service}.{namespace}.svc.cluster.local"


def master_service_name(name: str) -> str:
    return f"{name}-master-service"


class ChildResourceSet:
    """Desired child manifests of one topology object, keyed by (kind, name)"""

    def __init__(self):
        self._objects: Dict[Tuple[str, str], Dict[str, Any]] = {}

    def add(self, manifest: Dict[str, Any]) -> None:
        key = (manifest["kind"], manifest["metadata"]["name"])
        if key in self._objects:
            raise ValueError(f"duplicate child {key[0]}/{key[1]}")
        self._objects[key] = manifest

    def get(self, kind: str, name: str) -> Optional[Dict[str, Any]]:
        return self._objects.get((kind, name))

    def keys(self) -> List[Tuple[str, str]]:
        return sorted(self._objects)

    def of_kind(self, kind: str) -> List[Dict[str, Any]]:
        return [self._objects[key] for key in self.keys() if key[0] == kind]

    def refs(self) -> List[ObjectRef]:
        return [ObjectRef.from_manifest(manifest) for manifest in self]

    def __iter__(self) -> Iterator[Dict[str, Any]]:
        for key in self.keys():
            yield self._objects[key]

    def __len__(self) -> int:
        return len(self._objects)

    def __contains__(self, key: Tuple[str, str]) -> bool:
        return key in self._objects


class ChildFactory:
    """Builds child manifests labeled and owned by one parent"""

    def __init__(self, parent: TopologyObject):
        self.parent = parent

    def selector(self, role: Role) -> Dict[str, str]:
        return {
            LABEL_KIND: self.parent.kind.value,
            LABEL_INSTANCE: self.parent.name,
            LABEL_ROLE: role.value,
        }

    def labels(self, role: Role) -> Dict[str, str]:
        labels = {LABEL_MANAGED_BY: MANAGED_BY, LABEL_PARENT_UID: self.parent.uid}
        labels.update(self.selector(role))
        return labels

    def metadata(self, name: str, role: Role) -> Dict[str, Any]:
        return {
            "name": name,
            "namespace": self.parent.namespace,
            "labels": self.labels(role),
            "ownerReferences": [self.parent.owner_reference()],
        }

    def config_map(self, name: str, role: Role, data: Dict[str, str]) -> Dict[str, Any]:
        return {
            "apiVersion": "v1",
            "kind": "ConfigMap",
            "metadata": self.metadata(name, role),
            "data": dict(sorted(data.items())),
        }

    def service(self, name: str, role: Role, ports: List[Tuple[str, int]], headless: bool = False) -> Dict[str, Any]:
        spec: Dict[str, Any] = {
            "selector": self.selector(role),
            "ports": [{"name": port_name, "port": port, "targetPort": port} for port_name, port in ports],
        }
        if headless:
            spec["clusterIP"] = "None"
            spec["publishNotReadyAddresses"] = True
        return {
            "apiVersion": "v1",
            "kind": "Service",
            "metadata": self.metadata(name, role),
            "spec": spec,
        }

    def stateful_set(
        self,
        name: str,
        role: Role,
        *,
        replicas: int,
        image: str,
        command: List[str],
        ports: List[Tuple[str, int]],
        config_map: str,
        service_name: str,
        resources: Resources,
        storage: Optional[StorageSpec],
        scheduling: SchedulingSpec,
        config_hash: Optional[str] = None,
        writable_config: bool = False,
    ) -> Dict[str, Any]:
        """
        Build a StatefulSet for one role

        Args:
            storage: Data volume; None for roles without data (sentinels)
            config_hash: Pod template annotation, rolls pods when the config changes
            writable_config: Copy the config into an emptyDir so the process can rewrite it
        """
        container: Dict[str, Any] = {
            "name": role.value,
            "image": image,
            "command": command,
            "ports": [{"name": port_name, "containerPort": port} for port_name, port in ports],
            "readinessProbe": {
                "tcpSocket": {"port": ports[0][1]},
                "initialDelaySeconds": 5,
                "periodSeconds": 5,
            },
            "livenessProbe": {
                "tcpSocket": {"port": ports[0][1]},
                "initialDelaySeconds": 15,
                "periodSeconds": 10,
            },
            "volumeMounts": [{"name": "config", "mountPath": CONFIG_MOUNT_PATH}],
        }
        resource_manifest = resources.to_manifest()
        if resource_manifest:
            container["resources"] = resource_manifest

        volumes: List[Dict[str, Any]] = []
        pod_spec: Dict[str, Any] = {"containers": [container], "volumes": volumes}
        if writable_config:
            volumes.append({"name": "config-template", "configMap": {"name": config_map}})
            volumes.append({"name": "config", "emptyDir": {}})
            pod_spec["initContainers"] = [
                {
                    "name": "config-init",
                    "image": image,
                    "command": ["sh", "-c", f"cp /config-template/* {CONFIG_MOUNT_PATH}/"],
                    "volumeMounts": [
                        {"name": "config-template", "mountPath": "/config-template"},
                        {"name": "config", "mountPath": CONFIG_MOUNT_PATH},
                    ],
                }
            ]
        else:
            volumes.append({"name": "config", "configMap": {"name": config_map}})

        spec: Dict[str, Any] = {
            "replicas": replicas,
            "serviceName": service_name,
            "selector": {"matchLabels": self.selector(role)},
        }
        if storage is not None:
            container["volumeMounts"].append({"name": "data", "mountPath": DATA_MOUNT_PATH})
            if storage.size:
                claim_spec: Dict[str, Any] = {
                    "accessModes": ["ReadWriteOnce"],
                    "resources": {"requests": {"storage": storage.size}},
                }
                if storage.storage_class:
                    claim_spec["storageClassName"] = storage.storage_class
                spec["volumeClaimTemplates"] = [
                    {"metadata": {"name": "data", "labels": self.selector(role)}, "spec": claim_spec}
                ]
            else:
                volumes.append({"name": "data", "emptyDir": {}})

        if scheduling.node_selector:
            pod_spec["nodeSelector"] = dict(sorted(scheduling.node_selector.items()))
        if scheduling.tolerations:
            pod_spec["tolerations"] = copy.deepcopy(scheduling.tolerations)
        if scheduling.affinity:
            pod_spec["affinity"] = copy.deepcopy(scheduling.affinity)

        template_metadata: Dict[str, Any] = {"labels": self.labels(role)}
        if config_hash:
            template_metadata["annotations"] = {ANNOTATION_CONFIG_HASH: config_hash}
        spec["template"] = {"metadata": template_metadata, "spec": pod_spec}

        return {
            "apiVersion": "apps/v1",
            "kind": "StatefulSet",
            "metadata": self.metadata(name, role),
            "spec": spec,
        }
