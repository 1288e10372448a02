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

"""
Topology variants and their registry.

Each kind implements the same capability set: parse its spec, allocate any
extra derived state (slot assignment, sentinel monitor set), synthesize the
child manifests, and contribute kind-specific status details. The reconcile
driver only ever talks to this interface.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set, Tuple, Type

from pydantic import BaseModel

from redisop.config import settings
from redisop.exceptions import PendingDependencyError
from redisop.platform.base import ObjectRef, Platform
from redisop.topology.models import (
    API_VERSION,
    ClusterSpec,
    Condition,
    InstanceSpec,
    MasterReplicaSpec,
    Phase,
    RedisSpec,
    ReplicaRoleSpec,
    Role,
    RoleSpec,
    SchedulingSpec,
    SentinelSpec,
    TopologyKind,
    TopologyObject,
    parse_spec,
)
from redisop.topology.redis_conf import (
    CLUSTER_BUS_PORT,
    REDIS_PORT,
    SENTINEL_PORT,
    cluster_config,
    config_hash,
    redis_config,
    replica_config,
)
from redisop.topology.resources import (
    ANNOTATION_SLOTS_MIGRATED,
    CONFIG_MOUNT_PATH,
    ChildFactory,
    ChildResourceSet,
    master_service_name,
    service_fqdn,
)
from redisop.topology.sentinel import (
    SentinelMonitorSet,
    SentinelTopologyBuilder,
    embedded_master_service,
    embedded_monitor_set,
)
from redisop.topology.slots import SlotAssignment, SlotMove, allocate_slots, diff_assignments

logger = logging.getLogger(__name__)

REDIS_COMMAND = ["redis-server", f"{CONFIG_MOUNT_PATH}/redis.conf"]
SENTINEL_COMMAND = ["redis-sentinel", f"{CONFIG_MOUNT_PATH}/sentinel.conf"]


@dataclass
class StatusDetails:
    """Kind-specific contribution to the reconcile status"""

    fields: Dict[str, Any] = field(default_factory=dict)
    conditions: List[Condition] = field(default_factory=list)
    degraded_reasons: List[str] = field(default_factory=list)
    role_services: Dict[str, str] = field(default_factory=dict)
    # Overrides for views that mirror another object instead of owning children
    phase: Optional[Phase] = None
    message: Optional[str] = None


class Topology(ABC):
    """Capability set of one topology kind"""

    kind: TopologyKind
    spec_model: Type[BaseModel]

    def parse_spec(self, raw: Optional[Dict[str, Any]]) -> BaseModel:
        return parse_spec(self.spec_model, raw)

    def dependencies(self, obj: TopologyObject, spec: BaseModel) -> List[Tuple[TopologyKind, str, str]]:
        """(kind, namespace, name) of the topology objects whose changes affect this one"""
        return []

    async def allocate_extra(self, obj: TopologyObject, spec: BaseModel, platform: Platform) -> Any:
        """Derive extra state needed before synthesis, may read the platform"""
        return None

    @abstractmethod
    def synthesize(self, obj: TopologyObject, spec: BaseModel, extra: Any = None) -> ChildResourceSet:
        """Pure spec to child manifests conversion"""
        pass

    def status_details(
        self,
        obj: TopologyObject,
        spec: BaseModel,
        extra: Any,
        changed: Set[Tuple[str, str]],
    ) -> StatusDetails:
        """
        Kind-specific status fields and conditions

        Args:
            changed: (kind, name) of existing children updated during this pass
        """
        return StatusDetails()

    def image(self, spec: BaseModel) -> str:
        return getattr(spec, "image", None) or settings.default_image


def add_data_role(
    children: ChildResourceSet,
    factory: ChildFactory,
    *,
    role: Role,
    workload: str,
    replicas: int,
    image: str,
    role_spec: RoleSpec,
    scheduling: SchedulingSpec,
    config_text: str,
    extra_files: Optional[Dict[str, str]] = None,
    headless: bool = False,
    ports: Optional[List[Tuple[str, int]]] = None,
) -> None:
    """Add the StatefulSet, Service and ConfigMap of one Redis data role"""
    service = f"{workload}-service"
    config_name = f"{workload}-config"
    ports = ports or [("redis", REDIS_PORT)]
    data = {"redis.conf": config_text}
    data.update(extra_files or {})

    children.add(factory.config_map(config_name, role, data))
    children.add(factory.service(service, role, ports, headless=headless))
    children.add(
        factory.stateful_set(
            workload,
            role,
            replicas=replicas,
            image=image,
            command=REDIS_COMMAND,
            ports=ports,
            config_map=config_name,
            service_name=service,
            resources=role_spec.resources,
            storage=role_spec.storage,
            scheduling=scheduling,
            config_hash=config_hash(config_text),
        )
    )


def add_master_replica_pair(
    children: ChildResourceSet,
    factory: ChildFactory,
    *,
    prefix: str,
    image: str,
    master: RoleSpec,
    replica: ReplicaRoleSpec,
    shared_config: Dict[str, Any],
    scheduling: SchedulingSpec,
) -> None:
    master_config = dict(shared_config)
    master_config.update(master.config)
    add_data_role(
        children,
        factory,
        role=Role.MASTER,
        workload=f"{prefix}-master",
        replicas=1,
        image=image,
        role_spec=master,
        scheduling=scheduling,
        config_text=redis_config(master_config),
    )

    replica_overrides = dict(shared_config)
    replica_overrides.update(replica.config)
    master_host = service_fqdn(f"{prefix}-master-service", factory.parent.namespace)
    add_data_role(
        children,
        factory,
        role=Role.REPLICA,
        workload=f"{prefix}-replica",
        replicas=replica.replicas,
        image=image,
        role_spec=replica,
        scheduling=scheduling,
        config_text=replica_config(master_host, replica_overrides),
    )


class InstanceTopology(Topology):
    kind = TopologyKind.INSTANCE
    spec_model = InstanceSpec

    def synthesize(self, obj: TopologyObject, spec: InstanceSpec, extra: Any = None) -> ChildResourceSet:
        children = ChildResourceSet()
        factory = ChildFactory(obj)
        config_text = redis_config(spec.config)
        children.add(factory.config_map(f"{obj.name}-config", Role.MASTER, {"redis.conf": config_text}))
        children.add(factory.service(f"{obj.name}-service", Role.MASTER, [("redis", REDIS_PORT)]))
        children.add(
            factory.stateful_set(
                obj.name,
                Role.MASTER,
                replicas=1,
                image=self.image(spec),
                command=REDIS_COMMAND,
                ports=[("redis", REDIS_PORT)],
                config_map=f"{obj.name}-config",
                service_name=f"{obj.name}-service",
                resources=spec.resources,
                storage=spec.storage,
                scheduling=spec,
                config_hash=config_hash(config_text),
            )
        )
        return children

    def status_details(self, obj, spec, extra, changed) -> StatusDetails:
        return StatusDetails(role_services={Role.MASTER.value: f"{obj.name}-service"})


class MasterReplicaTopology(Topology):
    kind = TopologyKind.MASTER_REPLICA
    spec_model = MasterReplicaSpec

    def synthesize(self, obj: TopologyObject, spec: MasterReplicaSpec, extra: Any = None) -> ChildResourceSet:
        children = ChildResourceSet()
        add_master_replica_pair(
            children,
            ChildFactory(obj),
            prefix=obj.name,
            image=self.image(spec),
            master=spec.master,
            replica=spec.replica,
            shared_config=spec.config,
            scheduling=spec,
        )
        return children

    def status_details(self, obj, spec, extra, changed) -> StatusDetails:
        return StatusDetails(
            role_services={
                Role.MASTER.value: master_service_name(obj.name),
                Role.REPLICA.value: f"{obj.name}-replica-service",
            }
        )


class SentinelTopology(Topology):
    kind = TopologyKind.SENTINEL
    spec_model = SentinelSpec

    def dependencies(self, obj: TopologyObject, spec: SentinelSpec) -> List[Tuple[TopologyKind, str, str]]:
        ref = spec.master_replica_ref
        if ref is None:
            return []
        return [(TopologyKind.MASTER_REPLICA, ref.namespace or obj.namespace, ref.name)]

    async def allocate_extra(self, obj: TopologyObject, spec: SentinelSpec, platform: Platform) -> SentinelMonitorSet:
        return await SentinelTopologyBuilder(platform).build(obj, spec)

    def config_name(self, obj: TopologyObject) -> str:
        return f"{obj.name}-sentinel-config"

    def synthesize(
        self, obj: TopologyObject, spec: SentinelSpec, extra: Optional[SentinelMonitorSet] = None
    ) -> ChildResourceSet:
        if extra is None:
            if spec.master_replica_ref is not None:
                raise PendingDependencyError(
                    f"monitored master {spec.master_replica_ref.name} has not been resolved",
                    spec.master_replica_ref.name,
                )
            extra = embedded_monitor_set(obj, spec)

        children = ChildResourceSet()
        factory = ChildFactory(obj)
        image = self.image(spec)
        ports = [("sentinel", SENTINEL_PORT)]

        children.add(factory.config_map(self.config_name(obj), Role.SENTINEL, {"sentinel.conf": extra.render()}))
        children.add(factory.service(f"{obj.name}-sentinel-service", Role.SENTINEL, ports, headless=True))
        # Sentinels rewrite their config at runtime, so config changes do not roll the pods
        children.add(
            factory.stateful_set(
                f"{obj.name}-sentinel",
                Role.SENTINEL,
                replicas=spec.replicas,
                image=image,
                command=SENTINEL_COMMAND,
                ports=ports,
                config_map=self.config_name(obj),
                service_name=f"{obj.name}-sentinel-service",
                resources=spec.resources,
                storage=None,
                scheduling=spec,
                writable_config=True,
            )
        )

        if spec.redis is not None:
            add_master_replica_pair(
                children,
                factory,
                prefix=f"{obj.name}-redis",
                image=image,
                master=spec.redis.master,
                replica=spec.redis.replica,
                shared_config=spec.redis.config,
                scheduling=spec,
            )
        return children

    def status_details(self, obj, spec: SentinelSpec, extra: Optional[SentinelMonitorSet], changed) -> StatusDetails:
        details = StatusDetails(role_services={Role.SENTINEL.value: f"{obj.name}-sentinel-service"})
        if spec.redis is not None:
            details.role_services[Role.MASTER.value] = embedded_master_service(obj.name)
            details.role_services[Role.REPLICA.value] = f"{obj.name}-redis-replica-service"
        if extra is not None and extra.monitors:
            details.fields["monitored_master"] = extra.monitors[0].to_status()
        if ("ConfigMap", self.config_name(obj)) in changed:
            details.conditions.append(
                Condition(
                    type="ConfigPendingRestart",
                    status="True",
                    reason="SentinelConfigChanged",
                    message="sentinel.conf changed; running sentinels keep their config until restarted",
                )
            )
        return details


@dataclass
class ClusterAllocation:
    assignment: SlotAssignment
    pending: List[SlotMove]
    # Last assignment known to be carried out by the cluster
    acknowledged: Optional[SlotAssignment] = None


class ClusterTopology(Topology):
    kind = TopologyKind.CLUSTER
    spec_model = ClusterSpec

    async def allocate_extra(self, obj: TopologyObject, spec: ClusterSpec, platform: Platform) -> ClusterAllocation:
        return self.allocate(obj, spec)

    def allocate(self, obj: TopologyObject, spec: ClusterSpec) -> ClusterAllocation:
        """
        Assign slots for the declared masters and list the moves not yet acknowledged

        Moves are always computed from the last acknowledged assignment, so
        scaling again before a migration is acknowledged keeps the earlier
        moves. A new cluster starts out acknowledged.
        """
        current = allocate_slots(spec.masters)
        if obj.annotations.get(ANNOTATION_SLOTS_MIGRATED) == current.fingerprint():
            return ClusterAllocation(current, [], current)

        baseline = SlotAssignment.from_list(obj.status.acknowledged_slots)
        if baseline is None:
            baseline = SlotAssignment.from_list(obj.status.slots) or current

        pending = diff_assignments(baseline, current) if baseline != current else []
        if pending and SlotAssignment.from_list(obj.status.slots) != current:
            logger.info(
                f"Slot assignment of {obj.namespace}/{obj.name} changed to {len(current)} masters, "
                f"{len(pending)} ranges change owner since the last acknowledged migration"
            )
        return ClusterAllocation(current, pending, baseline)

    def synthesize(
        self, obj: TopologyObject, spec: ClusterSpec, extra: Optional[ClusterAllocation] = None
    ) -> ChildResourceSet:
        assignment = extra.assignment if extra is not None else allocate_slots(spec.masters)
        children = ChildResourceSet()
        factory = ChildFactory(obj)
        image = self.image(spec)
        ports = [("redis", REDIS_PORT), ("cluster-bus", CLUSTER_BUS_PORT)]
        config_text = cluster_config(spec.config)
        role_spec = RoleSpec(resources=spec.resources, storage=spec.storage)

        add_data_role(
            children,
            factory,
            role=Role.MASTER,
            workload=f"{obj.name}-master",
            replicas=spec.masters,
            image=image,
            role_spec=role_spec,
            scheduling=spec,
            config_text=config_text,
            extra_files={"slots.conf": assignment.render()},
            headless=True,
            ports=ports,
        )
        add_data_role(
            children,
            factory,
            role=Role.REPLICA,
            workload=f"{obj.name}-replica",
            replicas=spec.masters * spec.replicas_per_master,
            image=image,
            role_spec=role_spec,
            scheduling=spec,
            config_text=config_text,
            headless=True,
            ports=ports,
        )
        return children

    def status_details(self, obj, spec: ClusterSpec, extra: Optional[ClusterAllocation], changed) -> StatusDetails:
        allocation = extra or self.allocate(obj, spec)
        acknowledged = allocation.acknowledged or allocation.assignment
        details = StatusDetails(
            fields={
                "slots": allocation.assignment.to_list(),
                "slot_fingerprint": allocation.assignment.fingerprint(),
                "acknowledged_slots": acknowledged.to_list(),
                "acknowledged_slot_fingerprint": acknowledged.fingerprint(),
                "slot_migration": [move.to_dict() for move in allocation.pending] or None,
            },
            role_services={
                Role.MASTER.value: f"{obj.name}-master-service",
                Role.REPLICA.value: f"{obj.name}-replica-service",
            },
        )
        if allocation.pending:
            summary = ", ".join(
                f"{move.start}-{move.end}: {move.source} -> {move.target}" for move in allocation.pending[:8]
            )
            if len(allocation.pending) > 8:
                summary += f", ... ({len(allocation.pending)} ranges)"
            details.conditions.append(
                Condition(
                    type="SlotMigration",
                    status="True",
                    reason="MigrationPending",
                    message=f"slot owners changed, set {ANNOTATION_SLOTS_MIGRATED}="
                    f"{allocation.assignment.fingerprint()} when migrated: {summary}",
                )
            )
            if not spec.config.cluster_require_full_coverage:
                details.degraded_reasons.append("PartialSlotCoverage")
        elif obj.status.latest("SlotMigration") is not None:
            details.conditions.append(
                Condition(type="SlotMigration", status="False", reason="Settled", message="slot assignment settled")
            )
        return details


class RedisTopology(Topology):
    """Single view over one topology object of any kind

    The view owns no children. Each pass reads the referenced object and
    mirrors its phase, conditions and role counts.
    """

    kind = TopologyKind.REDIS
    spec_model = RedisSpec

    # Conditions the aggregator maintains for the view itself
    OWN_CONDITIONS = {"Ready", "Reconciled", "SpecValid", "DependencyReady"}

    def target_ref(self, obj: TopologyObject, spec: RedisSpec) -> ObjectRef:
        return ObjectRef(
            API_VERSION, spec.target_kind.value, spec.resource_namespace or obj.namespace, spec.resource_name
        )

    def dependencies(self, obj: TopologyObject, spec: RedisSpec) -> List[Tuple[TopologyKind, str, str]]:
        ref = self.target_ref(obj, spec)
        return [(spec.target_kind, ref.namespace, ref.name)]

    async def allocate_extra(self, obj: TopologyObject, spec: RedisSpec, platform: Platform) -> TopologyObject:
        ref = self.target_ref(obj, spec)
        manifest = await platform.get(ref)
        if manifest is None:
            raise PendingDependencyError(f"{ref.kind} {ref.namespace}/{ref.name} not found", ref.name)
        return TopologyObject(manifest)

    def synthesize(self, obj: TopologyObject, spec: RedisSpec, extra: Any = None) -> ChildResourceSet:
        return ChildResourceSet()

    def status_details(self, obj, spec: RedisSpec, extra: Optional[TopologyObject], changed) -> StatusDetails:
        if extra is None:
            return StatusDetails()
        target = extra.status
        phase = target.phase
        message = target.last_condition_message
        if phase == Phase.INVALID:
            # The view itself is valid, only a new target spec can fix it
            phase = Phase.FAILED
            message = f"{extra.kind.value} {extra.name} has an invalid spec: {message or 'see its conditions'}"

        latest: Dict[str, Condition] = {}
        for condition in target.conditions:
            if condition.type not in self.OWN_CONDITIONS:
                latest.pop(condition.type, None)
                latest[condition.type] = condition
        return StatusDetails(
            fields={
                "resource_kind": extra.kind.value,
                "roles": {role: status.model_copy() for role, status in target.roles.items()},
            },
            conditions=[
                Condition(type=c.type, status=c.status, reason=c.reason, message=c.message) for c in latest.values()
            ],
            phase=phase,
            message=message or f"{extra.kind.value} {extra.name} is {phase.value}",
        )


class TopologyRegistry:
    """Registry for topology kinds"""

    _topologies: Dict[TopologyKind, Topology] = {}

    @classmethod
    def register(cls, topology: Topology) -> None:
        """Register a topology kind"""
        cls._topologies[topology.kind] = topology

    @classmethod
    def get(cls, kind: TopologyKind) -> Topology:
        """Get the topology for a kind"""
        kind = TopologyKind(kind)
        if kind not in cls._topologies:
            raise KeyError(f"Topology not registered: {kind.value}")
        return cls._topologies[kind]

    @classmethod
    def list_topologies(cls) -> List[Topology]:
        return list(cls._topologies.values())


TopologyRegistry.register(InstanceTopology())
TopologyRegistry.register(MasterReplicaTopology())
TopologyRegistry.register(SentinelTopology())
TopologyRegistry.register(ClusterTopology())
TopologyRegistry.register(RedisTopology())


def synthesize(obj: TopologyObject, extra: Any = None) -> ChildResourceSet:
    """Parse and synthesize a topology object without touching the platform"""
    topology = TopologyRegistry.get(obj.kind)
    spec = topology.parse_spec(obj.spec)
    return topology.synthesize(obj, spec, extra)
