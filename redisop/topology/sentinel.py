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

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Tuple

from redisop.exceptions import PendingDependencyError
from redisop.platform.base import ObjectRef, Platform
from redisop.topology.models import (
    API_VERSION,
    MonitoredMaster,
    Phase,
    ReconcileStatus,
    SentinelSpec,
    TopologyKind,
    TopologyObject,
)
from redisop.topology.redis_conf import REDIS_PORT, SENTINEL_PORT, format_value
from redisop.topology.resources import master_service_name, service_fqdn

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SentinelMonitor:
    master_name: str
    host: str
    port: int
    quorum: int
    down_after_ms: int
    failover_timeout_ms: int
    parallel_syncs: int

    def to_status(self) -> MonitoredMaster:
        return MonitoredMaster(name=self.master_name, host=self.host, port=self.port, quorum=self.quorum)


class SentinelMonitorSet:
    """The masters a sentinel group watches, rendered into sentinel.conf"""

    def __init__(self, monitors: List[SentinelMonitor], additional: Dict[str, Any] = None):
        self.monitors: Tuple[SentinelMonitor, ...] = tuple(sorted(monitors, key=lambda m: m.master_name))
        self.additional = dict(additional or {})

    def render(self) -> str:
        lines = [
            f"port {SENTINEL_PORT}",
            "bind 0.0.0.0",
            "sentinel resolve-hostnames yes",
            "sentinel announce-hostnames yes",
        ]
        for monitor in self.monitors:
            name = monitor.master_name
            lines.append(f"sentinel monitor {name} {monitor.host} {monitor.port} {monitor.quorum}")
            lines.append(f"sentinel down-after-milliseconds {name} {monitor.down_after_ms}")
            lines.append(f"sentinel parallel-syncs {name} {monitor.parallel_syncs}")
            lines.append(f"sentinel failover-timeout {name} {monitor.failover_timeout_ms}")
        lines.append("sentinel deny-scripts-reconfig yes")
        for key in sorted(self.additional):
            lines.append(f"{key} {format_value(self.additional[key])}")
        return "\n".join(lines) + "\n"


def embedded_master_service(name: str) -> str:
    return f"{name}-redis-master-service"


def build_monitor_set(spec: SentinelSpec, host: str) -> SentinelMonitorSet:
    monitor = SentinelMonitor(
        master_name=spec.master_name,
        host=host,
        port=REDIS_PORT,
        quorum=spec.config.quorum,
        down_after_ms=spec.config.down_after_ms,
        failover_timeout_ms=spec.config.failover_timeout_ms,
        parallel_syncs=spec.config.parallel_syncs,
    )
    return SentinelMonitorSet([monitor], spec.config.additional_config)


def embedded_monitor_set(sentinel: TopologyObject, spec: SentinelSpec) -> SentinelMonitorSet:
    """Monitor set for a sentinel that manages its own Redis, derivable without I/O"""
    host = service_fqdn(embedded_master_service(sentinel.name), sentinel.namespace)
    return build_monitor_set(spec, host)


class SentinelTopologyBuilder:
    """Resolves the master a sentinel group must monitor"""

    def __init__(self, platform: Platform):
        self.platform = platform

    async def build(self, sentinel: TopologyObject, spec: SentinelSpec) -> SentinelMonitorSet:
        """
        Resolve the monitored master and build the monitor set

        Args:
            sentinel: The sentinel topology object
            spec: Its validated spec

        Raises:
            PendingDependencyError: The referenced MasterReplica is missing or not Ready
        """
        if spec.master_replica_ref is None:
            return embedded_monitor_set(sentinel, spec)

        ref = spec.master_replica_ref
        namespace = ref.namespace or sentinel.namespace
        target = ObjectRef(API_VERSION, TopologyKind.MASTER_REPLICA.value, namespace, ref.name)
        dependency = f"{namespace}/{ref.name}"

        manifest = await self.platform.get(target)
        if manifest is None:
            raise PendingDependencyError(f"{TopologyKind.MASTER_REPLICA.value} {dependency} not found", dependency)

        status = ReconcileStatus.from_manifest(manifest.get("status"))
        if status.phase != Phase.READY:
            raise PendingDependencyError(
                f"{TopologyKind.MASTER_REPLICA.value} {dependency} is {status.phase.value}, waiting for Ready",
                dependency,
            )

        host = service_fqdn(master_service_name(ref.name), namespace)
        logger.debug(f"Sentinel {sentinel.namespace}/{sentinel.name} monitors {host}")
        return build_monitor_set(spec, host)
