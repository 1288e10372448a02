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
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Set, Tuple

from redisop.config import settings
from redisop.exceptions import InvalidSpecError, PendingDependencyError, RedisOperatorError, UnrecoverableError
from redisop.platform.base import ObjectRef, Platform, WatchEvent
from redisop.reconcile import metrics
from redisop.reconcile.apply import ApplyEngine
from redisop.reconcile.health import HealthCache
from redisop.reconcile.status import ReconcileOutcome, StatusAggregator, workload_readiness
from redisop.reconcile.storage import StorageReconciler
from redisop.reconcile.workqueue import ShutDown, WorkQueue
from redisop.topology.kinds import TopologyRegistry
from redisop.topology.models import (
    API_VERSION,
    Phase,
    ReconcileStatus,
    TopologyKind,
    TopologyObject,
)
from redisop.topology.resources import CHILD_TYPES, LABEL_INSTANCE, LABEL_KIND, LABEL_PARENT_UID

logger = logging.getLogger(__name__)

PHASES = [phase.value for phase in Phase]


@dataclass(frozen=True)
class ObjectKey:
    kind: TopologyKind
    namespace: str
    name: str

    @property
    def ref(self) -> ObjectRef:
        return ObjectRef(API_VERSION, self.kind.value, self.namespace, self.name)

    def __str__(self) -> str:
        return f"{self.kind.value} {self.namespace}/{self.name}"


class ReconcileResult:
    """Represents the result of one reconcile pass"""

    def __init__(
        self,
        key: ObjectKey,
        phase: Optional[Phase] = None,
        error: Optional[BaseException] = None,
        requeue_after: Optional[float] = None,
        writes: int = 0,
    ):
        self.key = key
        self.phase = phase
        self.error = error
        self.requeue_after = requeue_after
        self.writes = writes

    @property
    def success(self) -> bool:
        return self.error is None

    def __repr__(self) -> str:
        return (
            f"ReconcileResult({self.key}, phase={self.phase}, error={type(self.error).__name__ if self.error else None},"
            f" requeue_after={self.requeue_after}, writes={self.writes})"
        )


class ReconcileDriver:
    """Generic control loop for every registered topology kind

    Each pass fetches the object and its children, synthesizes the desired
    children, applies them, aggregates status and writes it back. The outcome
    decides whether the key is requeued with backoff, resynced later or left
    alone until its spec changes.
    """

    def __init__(
        self,
        platform: Platform,
        health: Optional[HealthCache] = None,
        apply_engine: Optional[ApplyEngine] = None,
        aggregator: Optional[StatusAggregator] = None,
        queue: Optional[WorkQueue] = None,
        namespace: Optional[str] = None,
        workers: Optional[int] = None,
        resync_interval: Optional[float] = None,
        deadline: Optional[float] = None,
    ):
        self.platform = platform
        self.health = health or HealthCache()
        self.apply_engine = apply_engine or ApplyEngine(platform)
        self.aggregator = aggregator or StatusAggregator()
        self.storage = StorageReconciler(platform, self.apply_engine)
        self.queue: WorkQueue[ObjectKey] = queue or WorkQueue()
        self.namespace = namespace if namespace is not None else settings.watch_namespace
        self.workers = workers or settings.workers
        self.resync_interval = resync_interval if resync_interval is not None else settings.resync_interval
        self.deadline = deadline if deadline is not None else settings.reconcile_deadline
        # (kind, namespace, name) of a topology object -> objects that read its state
        self._dependents: Dict[Tuple[TopologyKind, str, str], Set[ObjectKey]] = defaultdict(set)
        self._deleted_uids: Dict[ObjectKey, str] = {}
        self._tasks: List[asyncio.Task] = []

    # Reconcile pass

    async def reconcile(self, key: ObjectKey) -> ReconcileResult:
        """
        Run one reconcile pass under the deadline and decide the requeue policy

        Args:
            key: The topology object to reconcile

        Returns:
            ReconcileResult with ``requeue_after`` set when the key must run again
        """
        started = time.monotonic()
        try:
            result = await asyncio.wait_for(self._reconcile(key), timeout=self.deadline)
        except asyncio.TimeoutError as e:
            logger.warning(f"Reconcile of {key} exceeded {self.deadline}s deadline")
            result = ReconcileResult(key, phase=await self._record_overrun(key, e), error=e)
        except RedisOperatorError as e:
            logger.warning(f"Reconcile of {key} failed: {e}")
            result = ReconcileResult(key, error=e)

        result.requeue_after = self._requeue_delay(key, result)
        self._record_metrics(key, result, time.monotonic() - started)
        return result

    async def _record_overrun(self, key: ObjectKey, error: asyncio.TimeoutError) -> Optional[Phase]:
        """Write the condition of an abandoned pass under a timeout of its own"""

        async def write() -> Optional[ReconcileStatus]:
            manifest = await self.platform.get(key.ref)
            if manifest is None:
                return None
            obj = TopologyObject(manifest)
            return await self._write_status(obj, ReconcileOutcome(generation=obj.generation, error=error))

        try:
            status = await asyncio.wait_for(write(), timeout=settings.status_write_timeout)
        except (asyncio.TimeoutError, RedisOperatorError) as e:
            logger.warning(f"Could not record the deadline overrun of {key}: {e!r}")
            return None
        return status.phase if status is not None else None

    async def _reconcile(self, key: ObjectKey) -> ReconcileResult:
        manifest = await self.platform.get(key.ref)
        if manifest is None:
            removed = await self.collect_garbage(key, self._deleted_uids.pop(key, None))
            return ReconcileResult(key, writes=removed)

        obj = TopologyObject(manifest)
        previous_uid = self._deleted_uids.pop(key, None)
        if previous_uid and previous_uid != obj.uid:
            # Deleted and recreated before the deletion was processed
            removed = await self.delete_children(key, previous_uid)
            if removed:
                logger.info(f"Removed {removed} children left by the previous incarnation of {key}")

        if obj.deleting:
            removed = await self.collect_garbage(key, obj.uid)
            return ReconcileResult(key, writes=removed)

        if obj.status.phase == Phase.INVALID and obj.status.observed_generation == obj.generation:
            logger.debug(f"Skipping {key}, spec generation {obj.generation} is invalid")
            return ReconcileResult(key, phase=Phase.INVALID)

        topology = TopologyRegistry.get(key.kind)
        outcome = ReconcileOutcome(generation=obj.generation, health=self.health.snapshot(obj.namespace, obj.name))
        writes = 0
        try:
            spec = topology.parse_spec(obj.spec)
            self._track_dependencies(key, topology.dependencies(obj, spec))
            extra = await topology.allocate_extra(obj, spec, self.platform)
            desired = topology.synthesize(obj, spec, extra)
            actual = await self._list_children(obj)

            storage = await self.storage.reconcile(desired, actual)
            applied = await self.apply_engine.apply(desired, actual)
            writes = applied.writes + storage.expanded_claims

            outcome.readiness = workload_readiness(desired, applied.objects)
            outcome.details = topology.status_details(obj, spec, extra, applied.updated_keys())
            outcome.conditions.extend(storage.conditions)
            outcome.degraded_reasons.extend(storage.degraded_reasons)
        except RedisOperatorError as e:
            logger.info(f"Reconcile of {key} ended with {type(e).__name__}: {e}")
            outcome.error = e

        status = await self._write_status(obj, outcome)
        return ReconcileResult(
            key,
            phase=status.phase if status is not None else None,
            error=outcome.error,
            writes=writes,
        )

    async def _list_children(self, obj: TopologyObject) -> List[Dict[str, Any]]:
        selector = {LABEL_KIND: obj.kind.value, LABEL_INSTANCE: obj.name, LABEL_PARENT_UID: obj.uid}
        children = []
        for api_version, kind in CHILD_TYPES:
            children.extend(await self.platform.list(api_version, kind, obj.namespace, selector))
        return children

    async def _write_status(self, obj: TopologyObject, outcome: ReconcileOutcome) -> Optional[ReconcileStatus]:
        computed: Dict[str, ReconcileStatus] = {}

        def build(current: Dict[str, Any]) -> Dict[str, Any]:
            status = self.aggregator.aggregate(TopologyObject(current), outcome)
            computed["status"] = status
            return status.to_manifest()

        await self.apply_engine.apply_status(obj.ref, build, current=obj.manifest)
        return computed.get("status")

    def _track_dependencies(self, key: ObjectKey, targets: List[Tuple[TopologyKind, str, str]]) -> None:
        for dependents in self._dependents.values():
            dependents.discard(key)
        for target in targets:
            self._dependents[target].add(key)

    def _requeue_delay(self, key: ObjectKey, result: ReconcileResult) -> Optional[float]:
        error = result.error
        if error is None:
            self.queue.forget(key)
            if result.phase is None or result.phase == Phase.INVALID:
                return None
            return self.resync_interval
        if isinstance(error, (InvalidSpecError, UnrecoverableError)):
            self.queue.forget(key)
            return None
        if isinstance(error, PendingDependencyError):
            return self.queue.backoff(key, cap=settings.dependency_backoff_cap)
        return self.queue.backoff(key)

    def _record_metrics(self, key: ObjectKey, result: ReconcileResult, duration: float) -> None:
        controller = key.kind.value
        outcome = "success" if result.success else ("requeue" if result.requeue_after is not None else "error")
        metrics.reconcile_total.labels(controller, key.namespace, key.name, outcome).inc()
        metrics.reconcile_duration_seconds.labels(controller).observe(duration)
        if result.error is not None:
            metrics.reconcile_errors_total.labels(
                controller, key.namespace, key.name, type(result.error).__name__
            ).inc()
        if result.phase is not None:
            metrics.record_phase(controller, key.namespace, key.name, result.phase.value, PHASES)

    # Garbage collection

    async def delete_children(self, key: ObjectKey, uid: Optional[str] = None) -> int:
        selector = {LABEL_KIND: key.kind.value, LABEL_INSTANCE: key.name}
        if uid:
            selector[LABEL_PARENT_UID] = uid
        removed = 0
        for api_version, kind in CHILD_TYPES:
            for child in await self.platform.list(api_version, kind, key.namespace, selector):
                if await self.platform.delete(ObjectRef.from_manifest(child)):
                    removed += 1
        return removed

    async def collect_garbage(self, key: ObjectKey, uid: Optional[str] = None) -> int:
        """
        Delete the children of a parent that no longer exists

        Args:
            key: The deleted parent
            uid: Its uid when known, restricting the sweep to its own children

        Returns:
            Number of children deleted
        """
        removed = await self.delete_children(key, uid)
        if removed:
            logger.info(f"Garbage collected {removed} children of deleted {key}")
        for dependents in self._dependents.values():
            dependents.discard(key)
        self.health.forget(key.namespace, key.name)
        self.queue.cancel(key)
        metrics.forget_resource(key.kind.value, key.namespace, key.name, PHASES)
        return removed

    # Event handling

    def watched_types(self) -> List[Tuple[str, str]]:
        return [(API_VERSION, kind.value) for kind in TopologyKind] + list(CHILD_TYPES)

    def handle_event(self, event: WatchEvent) -> None:
        """Map a watch event onto the keys that must be reconciled"""
        manifest = event.object
        metadata = manifest.get("metadata") or {}
        namespace = metadata.get("namespace") or "default"
        kind = manifest.get("kind")

        if kind in {k.value for k in TopologyKind}:
            key = ObjectKey(TopologyKind(kind), namespace, metadata["name"])
            if event.type == WatchEvent.DELETED:
                self._deleted_uids[key] = metadata.get("uid", "")
            self.queue.add(key)
            for dependent in sorted(self._dependents.get((key.kind, namespace, key.name), ()), key=str):
                self.queue.add(dependent)
            return

        labels = metadata.get("labels") or {}
        parent_kind, parent_name = labels.get(LABEL_KIND), labels.get(LABEL_INSTANCE)
        if parent_kind in {k.value for k in TopologyKind} and parent_name:
            self.queue.add(ObjectKey(TopologyKind(parent_kind), namespace, parent_name))

    async def enqueue_all(self) -> int:
        count = 0
        for kind in TopologyKind:
            for manifest in await self.platform.list(API_VERSION, kind.value, self.namespace):
                metadata = manifest["metadata"]
                self.queue.add(ObjectKey(kind, metadata.get("namespace") or "default", metadata["name"]))
                count += 1
        return count

    async def reconcile_all(self) -> List[ReconcileResult]:
        """Reconcile every topology object once, sequentially"""
        results = []
        for kind in TopologyKind:
            for manifest in await self.platform.list(API_VERSION, kind.value, self.namespace):
                metadata = manifest["metadata"]
                key = ObjectKey(kind, metadata.get("namespace") or "default", metadata["name"])
                results.append(await self.reconcile(key))
        logger.info(f"Reconciled {len(results)} topology objects")
        return results

    # Workers

    async def _watch(self) -> None:
        async for event in self.platform.watch(self.watched_types(), self.namespace):
            self.handle_event(event)
            metrics.workqueue_depth.set(len(self.queue))

    async def _worker(self, index: int) -> None:
        while True:
            try:
                key = await self.queue.get()
            except ShutDown:
                return
            try:
                result = await self.reconcile(key)
                if result.requeue_after is not None:
                    self.queue.add_after(key, result.requeue_after)
            except Exception as e:
                logger.exception(f"Worker {index} failed reconciling {key}: {e}")
                self.queue.add_after(key, self.queue.backoff(key))
            finally:
                self.queue.done(key)
                metrics.workqueue_depth.set(len(self.queue))

    def start(self) -> List[asyncio.Task]:
        """Start the watch and the worker pool on the running loop"""
        self._tasks = [asyncio.create_task(self._watch(), name="redisop-watch")]
        self._tasks.extend(
            asyncio.create_task(self._worker(i), name=f"redisop-worker-{i}") for i in range(self.workers)
        )
        return self._tasks

    async def stop(self) -> None:
        self.queue.shutdown()
        for task in self._tasks:
            if task.get_name() == "redisop-watch":
                task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

    async def run(self) -> None:
        logger.info(f"Starting reconcile driver with {self.workers} workers")
        tasks = self.start()
        # Let the watch subscribe before the initial listing
        await asyncio.sleep(0)
        queued = await self.enqueue_all()
        logger.info(f"Queued {queued} topology objects for initial reconcile")
        try:
            await asyncio.gather(*tasks)
        finally:
            await self.stop()
