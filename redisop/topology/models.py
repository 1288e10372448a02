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

from enum import Enum
from typing import Any, Dict, List, Optional, Type, TypeVar, Union

from kubernetes.utils.quantity import parse_quantity
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from pydantic.alias_generators import to_camel

from redisop.exceptions import InvalidSpecError
from redisop.platform.base import ObjectRef

API_GROUP = "redis.github.com"
API_VERSION = f"{API_GROUP}/v1"

ConfigValue = Union[bool, int, float, str]


class TopologyKind(str, Enum):
    INSTANCE = "RedisInstance"
    MASTER_REPLICA = "RedisMasterReplica"
    SENTINEL = "RedisSentinel"
    CLUSTER = "RedisCluster"
    REDIS = "Redis"

    @property
    def plural(self) -> str:
        return {
            TopologyKind.INSTANCE: "redisinstances",
            TopologyKind.MASTER_REPLICA: "redismasterreplicas",
            TopologyKind.SENTINEL: "redissentinels",
            TopologyKind.CLUSTER: "redisclusters",
            TopologyKind.REDIS: "redis",
        }[self]


class Phase(str, Enum):
    PENDING = "Pending"
    CREATING = "Creating"
    READY = "Ready"
    DEGRADED = "Degraded"
    FAILED = "Failed"
    INVALID = "Invalid"


class Role(str, Enum):
    MASTER = "master"
    REPLICA = "replica"
    SENTINEL = "sentinel"


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


# Spec models


class Resources(CamelModel):
    limits: Dict[str, Union[str, int, float]] = Field(default_factory=dict)
    requests: Dict[str, Union[str, int, float]] = Field(default_factory=dict)

    def to_manifest(self) -> Dict[str, Dict[str, str]]:
        manifest = {}
        if self.limits:
            manifest["limits"] = {k: str(v) for k, v in sorted(self.limits.items())}
        if self.requests:
            manifest["requests"] = {k: str(v) for k, v in sorted(self.requests.items())}
        return manifest


class StorageSpec(CamelModel):
    size: Optional[str] = None
    storage_class: Optional[str] = Field(
        None,
        validation_alias=AliasChoices("class", "storageClassName", "storage_class"),
        serialization_alias="class",
    )

    @field_validator("size")
    @classmethod
    def validate_size(cls, value: Optional[str]) -> Optional[str]:
        if value is None or value == "":
            return None
        if parse_quantity(value) <= 0:
            raise ValueError("storage size must be positive")
        return value


class SchedulingSpec(CamelModel):
    node_selector: Dict[str, str] = Field(default_factory=dict)
    tolerations: List[Dict[str, Any]] = Field(default_factory=list)
    affinity: Optional[Dict[str, Any]] = None


class RoleSpec(CamelModel):
    resources: Resources = Field(default_factory=Resources)
    storage: StorageSpec = Field(default_factory=StorageSpec)
    config: Dict[str, ConfigValue] = Field(default_factory=dict)


class ReplicaRoleSpec(RoleSpec):
    replicas: int = Field(2, ge=0)


class InstanceSpec(SchedulingSpec):
    image: Optional[str] = None
    resources: Resources = Field(default_factory=Resources)
    storage: StorageSpec = Field(default_factory=StorageSpec)
    config: Dict[str, ConfigValue] = Field(default_factory=dict)


class MasterReplicaSpec(SchedulingSpec):
    image: Optional[str] = None
    master: RoleSpec = Field(default_factory=RoleSpec)
    replica: ReplicaRoleSpec = Field(default_factory=ReplicaRoleSpec)
    config: Dict[str, ConfigValue] = Field(default_factory=dict)


class SentinelConfig(CamelModel):
    quorum: int = Field(2, ge=1)
    down_after_ms: int = Field(30000, ge=1)
    failover_timeout_ms: int = Field(180000, ge=1)
    parallel_syncs: int = Field(1, ge=1)
    additional_config: Dict[str, ConfigValue] = Field(default_factory=dict)


class EmbeddedRedisSpec(CamelModel):
    master: RoleSpec = Field(default_factory=RoleSpec)
    replica: ReplicaRoleSpec = Field(default_factory=ReplicaRoleSpec)
    config: Dict[str, ConfigValue] = Field(default_factory=dict)
    master_name: str = Field("mymaster", min_length=1)


class MasterReplicaRef(CamelModel):
    name: str = Field(..., min_length=1)
    namespace: Optional[str] = None
    master_name: str = Field("mymaster", min_length=1)


class SentinelSpec(SchedulingSpec):
    image: Optional[str] = None
    replicas: int = Field(3, ge=1)
    resources: Resources = Field(default_factory=Resources)
    config: SentinelConfig = Field(default_factory=SentinelConfig)
    redis: Optional[EmbeddedRedisSpec] = None
    master_replica_ref: Optional[MasterReplicaRef] = None

    @model_validator(mode="after")
    def validate_target(self) -> "SentinelSpec":
        if self.redis is not None and self.master_replica_ref is not None:
            raise ValueError("redis and masterReplicaRef are mutually exclusive")
        if self.redis is None and self.master_replica_ref is None:
            raise ValueError("one of redis or masterReplicaRef is required")
        if self.config.quorum > self.replicas:
            raise ValueError(f"quorum {self.config.quorum} exceeds sentinel replicas {self.replicas}")
        return self

    @property
    def master_name(self) -> str:
        if self.master_replica_ref is not None:
            return self.master_replica_ref.master_name
        return self.redis.master_name


class ClusterConfig(CamelModel):
    cluster_node_timeout_ms: int = Field(15000, ge=1)
    cluster_require_full_coverage: bool = True
    cluster_migration_barrier: int = Field(1, ge=0)
    additional_config: Dict[str, ConfigValue] = Field(default_factory=dict)


class ClusterSpec(SchedulingSpec):
    image: Optional[str] = None
    masters: int = Field(3, ge=1)
    replicas_per_master: int = Field(1, ge=0)
    resources: Resources = Field(default_factory=Resources)
    storage: StorageSpec = Field(default_factory=StorageSpec)
    config: ClusterConfig = Field(default_factory=ClusterConfig)


# Accepted spellings of RedisSpec.type
RESOURCE_TYPES = {
    "instance": TopologyKind.INSTANCE,
    "masterreplica": TopologyKind.MASTER_REPLICA,
    "sentinel": TopologyKind.SENTINEL,
    "cluster": TopologyKind.CLUSTER,
}


class RedisSpec(CamelModel):
    """Aggregated view of one topology object"""

    type: str
    resource_name: str = Field(..., min_length=1)
    resource_namespace: Optional[str] = None

    @field_validator("type")
    @classmethod
    def validate_type(cls, value: str) -> str:
        normalized = value.strip().lower().replace("-", "").replace("_", "")
        if normalized.startswith("redis") and normalized != "redis":
            normalized = normalized[len("redis"):]
        if normalized not in RESOURCE_TYPES:
            raise ValueError(f"unknown type {value!r}, expected one of {', '.join(RESOURCE_TYPES)}")
        return normalized

    @property
    def target_kind(self) -> TopologyKind:
        return RESOURCE_TYPES[self.type]


SpecT = TypeVar("SpecT", bound=BaseModel)


def parse_spec(model: Type[SpecT], raw: Optional[Dict[str, Any]]) -> SpecT:
    """Validate a raw spec, translating validation failures into InvalidSpecError"""
    try:
        return model.model_validate(raw or {})
    except ValidationError as e:
        problems = []
        for err in e.errors():
            location = ".".join(str(part) for part in err["loc"])
            problems.append(f"{location}: {err['msg']}" if location else err["msg"])
        raise InvalidSpecError("; ".join(problems)) from e


# Status models


class Condition(CamelModel):
    type: str
    status: str
    reason: str
    message: str = ""
    last_transition_time: Optional[str] = None
    observed_generation: int = 0

    def same_state(self, other: "Condition") -> bool:
        return (self.type, self.status, self.reason, self.message) == (
            other.type,
            other.status,
            other.reason,
            other.message,
        )


class RoleStatus(CamelModel):
    replicas: int = 0
    ready_replicas: int = 0
    service_name: Optional[str] = None


class MonitoredMaster(CamelModel):
    name: str
    host: str
    port: int
    quorum: int


class ReconcileStatus(CamelModel):
    observed_generation: int = 0
    phase: Phase = Phase.PENDING
    conditions: List[Condition] = Field(default_factory=list)
    last_condition_message: Optional[str] = None
    roles: Dict[str, RoleStatus] = Field(default_factory=dict)
    slots: Optional[List[Dict[str, int]]] = None
    slot_fingerprint: Optional[str] = None
    acknowledged_slots: Optional[List[Dict[str, int]]] = None
    acknowledged_slot_fingerprint: Optional[str] = None
    slot_migration: Optional[List[Dict[str, Any]]] = None
    monitored_master: Optional[MonitoredMaster] = None
    resource_kind: Optional[str] = None

    @classmethod
    def from_manifest(cls, raw: Optional[Dict[str, Any]]) -> "ReconcileStatus":
        try:
            return cls.model_validate(raw or {})
        except ValidationError:
            # Unreadable status is rebuilt from scratch
            return cls()

    def to_manifest(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")

    def latest(self, condition_type: str) -> Optional[Condition]:
        for condition in reversed(self.conditions):
            if condition.type == condition_type:
                return condition
        return None


class TopologyObject:
    """Identity and payload of a topology custom object"""

    def __init__(self, manifest: Dict[str, Any]):
        metadata = manifest.get("metadata") or {}
        self.manifest = manifest
        self.api_version = manifest.get("apiVersion", API_VERSION)
        self.kind = TopologyKind(manifest["kind"])
        self.name = metadata["name"]
        self.namespace = metadata.get("namespace") or "default"
        self.uid = metadata.get("uid", "")
        self.generation = int(metadata.get("generation") or 0)
        self.resource_version = metadata.get("resourceVersion")
        self.labels = dict(metadata.get("labels") or {})
        self.annotations = dict(metadata.get("annotations") or {})
        self.deleting = bool(metadata.get("deletionTimestamp"))
        self.spec = manifest.get("spec") or {}
        self.status = ReconcileStatus.from_manifest(manifest.get("status"))

    @property
    def ref(self) -> ObjectRef:
        return ObjectRef(self.api_version, self.kind.value, self.namespace, self.name)

    def owner_reference(self) -> Dict[str, Any]:
        return {
            "apiVersion": self.api_version,
            "kind": self.kind.value,
            "name": self.name,
            "uid": self.uid,
            "controller": True,
            "blockOwnerDeletion": True,
        }
