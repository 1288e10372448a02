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

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional, Set, Tuple

import httpx
from prometheus_client.parser import text_string_to_metric_families

from redisop.config import settings

logger = logging.getLogger(__name__)

INSTANCE_STATUS_METRIC = "redis_instance_status"
CLUSTER_STATE_METRIC = "redis_cluster_state"
SENTINEL_MASTER_METRIC = "redis_sentinel_master_status"


@dataclass
class HealthSnapshot:
    """Latest health signals of one topology object"""

    down_roles: Set[str] = field(default_factory=set)
    cluster_ok: Optional[bool] = None
    sentinel_master_ok: Optional[bool] = None

    @property
    def healthy(self) -> bool:
        return not self.down_roles and self.cluster_ok is not False and self.sentinel_master_ok is not False

    def problems(self) -> str:
        problems = [f"{role} down" for role in sorted(self.down_roles)]
        if self.cluster_ok is False:
            problems.append("cluster state fail")
        if self.sentinel_master_ok is False:
            problems.append("sentinel reports master down")
        return ", ".join(problems)


class HealthCache:
    """Health signals pushed by the external collector, read by reconciles

    Signals expire after ``ttl`` seconds; a missing signal never degrades an
    object.
    """

    def __init__(self, ttl: Optional[float] = None, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl if ttl is not None else settings.health_signal_ttl
        self._clock = clock
        self._instances: Dict[Tuple[str, str, str], Tuple[bool, float]] = {}
        self._clusters: Dict[Tuple[str, str], Tuple[bool, float]] = {}
        self._sentinels: Dict[Tuple[str, str], Tuple[bool, float]] = {}

    def record_instance(self, namespace: str, name: str, role: str, up: bool) -> None:
        self._instances[(namespace, name, role)] = (up, self._clock())

    def record_cluster_state(self, namespace: str, name: str, ok: bool) -> None:
        self._clusters[(namespace, name)] = (ok, self._clock())

    def record_sentinel_master(self, namespace: str, name: str, ok: bool) -> None:
        self._sentinels[(namespace, name)] = (ok, self._clock())

    def _fresh(self, recorded_at: float) -> bool:
        return self._clock() - recorded_at <= self.ttl

    def snapshot(self, namespace: str, name: str) -> HealthSnapshot:
        snapshot = HealthSnapshot()
        for (ns, obj_name, role), (up, recorded_at) in self._instances.items():
            if (ns, obj_name) == (namespace, name) and not up and self._fresh(recorded_at):
                snapshot.down_roles.add(role)
        cluster = self._clusters.get((namespace, name))
        if cluster and self._fresh(cluster[1]):
            snapshot.cluster_ok = cluster[0]
        sentinel = self._sentinels.get((namespace, name))
        if sentinel and self._fresh(sentinel[1]):
            snapshot.sentinel_master_ok = sentinel[0]
        return snapshot

    def forget(self, namespace: str, name: str) -> None:
        self._instances = {k: v for k, v in self._instances.items() if (k[0], k[1]) != (namespace, name)}
        self._clusters.pop((namespace, name), None)
        self._sentinels.pop((namespace, name), None)

    def ingest(self, text: str) -> int:
        """
        Record signals from a Prometheus text exposition

        Returns:
            Number of samples recorded
        """
        recorded = 0
        # A role is up only if every instance of it reports up
        instances: Dict[Tuple[str, str, str], bool] = {}
        for family in text_string_to_metric_families(text):
            for sample in family.samples:
                labels = sample.labels
                namespace, name = labels.get("namespace"), labels.get("name")
                if not namespace or not name:
                    continue
                if sample.name == INSTANCE_STATUS_METRIC and labels.get("role"):
                    key = (namespace, name, labels["role"])
                    instances[key] = instances.get(key, True) and sample.value >= 1
                elif sample.name == CLUSTER_STATE_METRIC:
                    self.record_cluster_state(namespace, name, sample.value >= 1)
                    recorded += 1
                elif sample.name == SENTINEL_MASTER_METRIC:
                    self.record_sentinel_master(namespace, name, sample.value >= 1)
                    recorded += 1
        for (namespace, name, role), up in instances.items():
            self.record_instance(namespace, name, role, up)
            recorded += 1
        return recorded


class HealthSignalPoller:
    """Scrapes the metrics collector into a HealthCache"""

    def __init__(
        self,
        cache: HealthCache,
        url: Optional[str] = None,
        interval: Optional[float] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.cache = cache
        self.url = url or settings.health_collector_url
        self.interval = interval or settings.health_poll_interval
        self._client = http_client

    async def poll_once(self) -> int:
        client = self._client or httpx.AsyncClient(timeout=settings.health_request_timeout)
        try:
            response = await client.get(self.url)
            response.raise_for_status()
            return self.cache.ingest(response.text)
        finally:
            if self._client is None:
                await client.aclose()

    async def run(self) -> None:
        if not self.url:
            logger.info("No health collector configured, health signals disabled")
            return
        logger.info(f"Polling health signals from {self.url} every {self.interval}s")
        while True:
            try:
                recorded = await self.poll_once()
                logger.debug(f"Recorded {recorded} health signals")
            except (httpx.HTTPError, ValueError) as e:
                logger.warning(f"Health signal poll failed: {e}")
            await asyncio.sleep(self.interval)
