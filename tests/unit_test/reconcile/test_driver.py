"""
Scenario tests for the ReconcileDriver against the in-memory platform.

Test Coverage:
=============

1. Convergence:
   - A new cluster goes Creating -> Ready and then stops writing
   - Storage expansion of existing claims

2. Error handling:
   - Invalid specs are skipped until the spec changes
   - Sentinels wait for the referenced MasterReplica
   - Transient, unrecoverable and deadline failures
   - Name clashes with children of another parent

3. Cluster and sentinel specifics:
   - Slot migration after scaling a cluster, scaling again before acknowledgment
   - Sentinel config changes do not roll sentinel pods

4. Events and lifecycle:
   - Event to key mapping, dependents and garbage collection
   - The worker pool driven by watch events
   - Recreated parents and the per-object status gauge

5. Aggregated Redis view:
   - Mirroring the target and waiting for a missing one
"""

import asyncio
from unittest.mock import patch

import pytest
from prometheus_client import REGISTRY
from tenacity import wait_none

from redisop.config import settings
from redisop.exceptions import PendingDependencyError, TransientPlatformError, UnrecoverableError
from redisop.platform.base import ObjectRef, WatchEvent
from redisop.reconcile.apply import ApplyEngine
from redisop.reconcile.driver import ObjectKey, ReconcileDriver
from redisop.reconcile.health import HealthCache
from redisop.reconcile.status import StatusAggregator
from redisop.reconcile.workqueue import WorkQueue
from redisop.topology.models import Phase, TopologyKind, TopologyObject
from redisop.topology.resources import ANNOTATION_SLOTS_MIGRATED
from redisop.topology.slots import allocate_slots, diff_assignments

NOW = "2025-01-01T00:00:00Z"


def make_driver(platform, **kwargs):
    options = dict(
        health=HealthCache(ttl=60),
        apply_engine=ApplyEngine(platform, max_attempts=5, wait=wait_none()),
        aggregator=StatusAggregator(history_limit=20, clock=lambda: NOW),
        queue=WorkQueue(backoff_base=1.0, backoff_cap=300),
        workers=2,
        resync_interval=30,
        deadline=5,
    )
    options.update(kwargs)
    return ReconcileDriver(platform, **options)


async def status_of(platform, key):
    return TopologyObject(await platform.get(key.ref)).status


async def update_spec(platform, key, spec):
    manifest = await platform.get(key.ref)
    manifest["spec"] = spec
    return await platform.replace(manifest)


async def drain(queue):
    keys = []
    while len(queue):
        key = await queue.get()
        queue.done(key)
        keys.append(key)
    return keys


class TestConvergence:
    """Test suite for the happy path."""

    @pytest.mark.asyncio
    async def test_cluster_becomes_ready_and_settles(self, platform, make_manifest, mark_ready):
        """A cluster is Creating until its pods are ready, then Ready with no further writes."""
        await platform.create(make_manifest("RedisCluster", "cache", {"masters": 3, "replicasPerMaster": 1}))
        driver = make_driver(platform)
        key = ObjectKey(TopologyKind.CLUSTER, "default", "cache")

        first = await driver.reconcile(key)
        assert first.success
        assert first.phase == Phase.CREATING
        assert first.writes == 6
        assert first.requeue_after == 30

        master = await platform.get(ObjectRef("apps/v1", "StatefulSet", "default", "cache-master"))
        replica = await platform.get(ObjectRef("apps/v1", "StatefulSet", "default", "cache-replica"))
        assert master["spec"]["replicas"] == 3
        assert replica["spec"]["replicas"] == 3

        await mark_ready(platform)
        second = await driver.reconcile(key)
        assert second.phase == Phase.READY
        assert second.writes == 0

        status = await status_of(platform, key)
        assert status.observed_generation == 1
        assert status.slots == [
            {"master": 0, "start": 0, "end": 5461},
            {"master": 1, "start": 5462, "end": 10922},
            {"master": 2, "start": 10923, "end": 16383},
        ]
        assert status.roles["master"].service_name == "cache-master-service"

        platform.reset_writes()
        third = await driver.reconcile(key)
        assert third.phase == Phase.READY
        assert platform.writes == []

    @pytest.mark.asyncio
    async def test_storage_expansion(self, platform, make_manifest):
        """Growing storage expands the existing claims in place."""
        await platform.create(make_manifest("RedisInstance", "single", {"storage": {"size": "1Gi"}}))
        driver = make_driver(platform)
        key = ObjectKey(TopologyKind.INSTANCE, "default", "single")
        await driver.reconcile(key)
        await platform.create(
            {
                "apiVersion": "v1",
                "kind": "PersistentVolumeClaim",
                "metadata": {"name": "data-single-0", "namespace": "default"},
                "spec": {"resources": {"requests": {"storage": "1Gi"}}},
            }
        )

        await update_spec(platform, key, {"storage": {"size": "2Gi"}})
        result = await driver.reconcile(key)

        assert result.success
        claim = await platform.get(ObjectRef("v1", "PersistentVolumeClaim", "default", "data-single-0"))
        assert claim["spec"]["resources"]["requests"]["storage"] == "2Gi"
        assert (await status_of(platform, key)).latest("StorageExpansion").status == "True"

    @pytest.mark.asyncio
    async def test_storage_shrink_degrades(self, platform, make_manifest, mark_ready):
        """Shrinking storage is refused and reported."""
        await platform.create(make_manifest("RedisInstance", "single", {"storage": {"size": "2Gi"}}))
        driver = make_driver(platform)
        key = ObjectKey(TopologyKind.INSTANCE, "default", "single")
        await driver.reconcile(key)
        await mark_ready(platform)
        assert (await driver.reconcile(key)).phase == Phase.READY

        await update_spec(platform, key, {"storage": {"size": "1Gi"}})
        result = await driver.reconcile(key)

        assert result.phase == Phase.DEGRADED
        status = await status_of(platform, key)
        assert status.latest("StorageChangeRejected").reason == "UnsupportedStorageChange"
        statefulset = await platform.get(ObjectRef("apps/v1", "StatefulSet", "default", "single"))
        assert statefulset["spec"]["volumeClaimTemplates"][0]["spec"]["resources"]["requests"]["storage"] == "2Gi"


class TestErrorHandling:
    """Test suite for failure classification and requeue policy."""

    @pytest.mark.asyncio
    async def test_invalid_spec_waits_for_new_generation(self, platform, make_manifest):
        """An invalid spec is not retried until it changes."""
        await platform.create(make_manifest("RedisCluster", "cache", {"masters": 0}))
        driver = make_driver(platform)
        key = ObjectKey(TopologyKind.CLUSTER, "default", "cache")

        result = await driver.reconcile(key)
        assert result.phase == Phase.INVALID
        assert result.requeue_after is None
        status = await status_of(platform, key)
        assert status.latest("SpecValid").status == "False"
        assert await platform.list("apps/v1", "StatefulSet", "default") == []

        platform.reset_writes()
        skipped = await driver.reconcile(key)
        assert skipped.phase == Phase.INVALID
        assert platform.writes == []

        await update_spec(platform, key, {"masters": 3})
        fixed = await driver.reconcile(key)
        assert fixed.phase == Phase.CREATING
        status = await status_of(platform, key)
        assert status.observed_generation == 2
        assert status.latest("SpecValid").status == "True"

    @pytest.mark.asyncio
    async def test_sentinel_waits_for_master_replica(self, platform, make_manifest, mark_ready):
        """A sentinel is Pending until its MasterReplica is Ready, then monitors it."""
        await platform.create(make_manifest("RedisSentinel", "ha", {"masterReplicaRef": {"name": "orders"}}))
        driver = make_driver(platform)
        sentinel = ObjectKey(TopologyKind.SENTINEL, "default", "ha")
        orders = ObjectKey(TopologyKind.MASTER_REPLICA, "default", "orders")

        pending = await driver.reconcile(sentinel)
        assert pending.phase == Phase.PENDING
        assert isinstance(pending.error, PendingDependencyError)
        assert pending.requeue_after == 1.0
        assert (await driver.reconcile(sentinel)).requeue_after == 2.0

        await platform.create(make_manifest("RedisMasterReplica", "orders", {"replica": {"replicas": 2}}))
        assert (await driver.reconcile(orders)).phase == Phase.CREATING
        await mark_ready(platform)
        assert (await driver.reconcile(orders)).phase == Phase.READY

        resolved = await driver.reconcile(sentinel)
        assert resolved.success
        assert resolved.phase == Phase.CREATING
        status = await status_of(platform, sentinel)
        assert status.monitored_master.host == "orders-master-service.default.svc.cluster.local"
        assert status.monitored_master.quorum == 2
        assert status.latest("DependencyReady").reason == "Resolved"

        config = await platform.get(ObjectRef("v1", "ConfigMap", "default", "ha-sentinel-config"))
        assert "sentinel monitor mymaster orders-master-service.default.svc.cluster.local 6379 2\n" in (
            config["data"]["sentinel.conf"]
        )

    @pytest.mark.asyncio
    async def test_transient_failure_backs_off(self, platform, make_manifest):
        """A failing list is retried with backoff and keeps the phase."""
        await platform.create(make_manifest("RedisInstance", "single", {}))
        driver = make_driver(platform)
        key = ObjectKey(TopologyKind.INSTANCE, "default", "single")
        platform.inject_failure("list", TransientPlatformError("apiserver timeout"))

        result = await driver.reconcile(key)

        assert isinstance(result.error, TransientPlatformError)
        assert result.requeue_after == 1.0
        status = await status_of(platform, key)
        assert status.phase == Phase.PENDING
        assert status.latest("Reconciled").reason == "TransientError"

        recovered = await driver.reconcile(key)
        assert recovered.success
        assert driver.queue.failures(key) == 0

    @pytest.mark.asyncio
    async def test_unrecoverable_failure_is_not_retried(self, platform, make_manifest):
        """A rejected write fails the object without a requeue."""
        await platform.create(make_manifest("RedisInstance", "single", {}))
        driver = make_driver(platform)
        key = ObjectKey(TopologyKind.INSTANCE, "default", "single")
        platform.inject_failure("create", UnrecoverableError("configmaps is forbidden"))

        result = await driver.reconcile(key)

        assert result.phase == Phase.FAILED
        assert result.requeue_after is None
        assert (await status_of(platform, key)).latest("Reconciled").message == "configmaps is forbidden"

    @pytest.mark.asyncio
    async def test_deadline_exceeded(self, platform, make_manifest):
        """A pass that hangs is abandoned and retried with backoff."""
        await platform.create(make_manifest("RedisInstance", "single", {}))
        driver = make_driver(platform, deadline=0.05)
        key = ObjectKey(TopologyKind.INSTANCE, "default", "single")

        async def hanging_list(*args, **kwargs):
            await asyncio.sleep(10)

        platform.list = hanging_list
        result = await driver.reconcile(key)

        assert isinstance(result.error, asyncio.TimeoutError)
        assert result.requeue_after == 1.0
        assert result.phase == Phase.PENDING
        status = await status_of(platform, key)
        assert status.observed_generation == 1
        assert status.latest("Reconciled").reason == "TransientError"
        assert status.latest("Reconciled").message == "reconcile pass exceeded its deadline"

    @pytest.mark.asyncio
    async def test_deadline_status_write_is_bounded(self, platform, make_manifest):
        """When the status write hangs too the pass still returns."""
        await platform.create(make_manifest("RedisInstance", "single", {}))
        driver = make_driver(platform, deadline=0.05)
        key = ObjectKey(TopologyKind.INSTANCE, "default", "single")

        async def hanging(*args, **kwargs):
            await asyncio.sleep(10)

        platform.list = hanging
        platform.replace_status = hanging
        with patch.object(settings, "status_write_timeout", 0.05):
            result = await driver.reconcile(key)

        assert isinstance(result.error, asyncio.TimeoutError)
        assert result.phase is None
        assert result.requeue_after == 1.0

    @pytest.mark.asyncio
    async def test_name_clash_with_another_parent_fails(self, platform, make_manifest):
        """A parent whose child names are taken by another parent fails and leaves them alone."""
        await platform.create(make_manifest("RedisInstance", "cache-master", {}))
        await platform.create(make_manifest("RedisMasterReplica", "cache", {}))
        driver = make_driver(platform)
        instance = ObjectKey(TopologyKind.INSTANCE, "default", "cache-master")
        master_replica = ObjectKey(TopologyKind.MASTER_REPLICA, "default", "cache")
        assert (await driver.reconcile(instance)).writes == 3
        instance_uid = (await platform.get(instance.ref))["metadata"]["uid"]

        clash = await driver.reconcile(master_replica)

        assert clash.phase == Phase.FAILED
        assert isinstance(clash.error, UnrecoverableError)
        assert clash.requeue_after is None
        condition = (await status_of(platform, master_replica)).latest("Reconciled")
        assert condition.reason == "Unrecoverable"
        assert "controlled by RedisInstance cache-master" in condition.message

        platform.reset_writes()
        again = await driver.reconcile(instance)
        assert again.success
        assert again.writes == 0
        assert platform.writes_for("replace") == []
        for kind, name in (("StatefulSet", "cache-master"), ("Service", "cache-master-service"),
                           ("ConfigMap", "cache-master-config")):
            api_version = "apps/v1" if kind == "StatefulSet" else "v1"
            child = await platform.get(ObjectRef(api_version, kind, "default", name))
            assert child["metadata"]["ownerReferences"][0]["uid"] == instance_uid


class TestClusterAndSentinel:
    """Test suite for slot migration and sentinel config changes."""

    @pytest.mark.asyncio
    async def test_slot_migration_after_scaling(self, platform, make_manifest, mark_ready):
        """Scaling out without full coverage is Degraded until the migration is acknowledged."""
        spec = {"masters": 3, "config": {"clusterRequireFullCoverage": False}}
        await platform.create(make_manifest("RedisCluster", "cache", spec))
        driver = make_driver(platform)
        key = ObjectKey(TopologyKind.CLUSTER, "default", "cache")
        await driver.reconcile(key)
        await mark_ready(platform)
        assert (await driver.reconcile(key)).phase == Phase.READY

        await update_spec(platform, key, {**spec, "masters": 4})
        assert (await driver.reconcile(key)).phase == Phase.DEGRADED
        await mark_ready(platform)
        result = await driver.reconcile(key)
        assert result.phase == Phase.DEGRADED

        status = await status_of(platform, key)
        assert status.slot_migration == [
            {"start": 4096, "end": 5461, "source": 0, "target": 1},
            {"start": 8192, "end": 10922, "source": 1, "target": 2},
            {"start": 12288, "end": 16383, "source": 2, "target": 3},
        ]
        assert status.latest("SlotMigration").status == "True"
        assert status.latest("Ready").message == "PartialSlotCoverage"

        manifest = await platform.get(key.ref)
        manifest["metadata"]["annotations"] = {ANNOTATION_SLOTS_MIGRATED: status.slot_fingerprint}
        await platform.replace(manifest)

        settled = await driver.reconcile(key)
        assert settled.phase == Phase.READY
        status = await status_of(platform, key)
        assert status.slot_migration is None
        assert status.latest("SlotMigration").reason == "Settled"
        assert status.acknowledged_slot_fingerprint == status.slot_fingerprint

    @pytest.mark.asyncio
    async def test_scaling_twice_keeps_unacknowledged_moves(self, platform, make_manifest):
        """Moves are listed from the last acknowledged assignment, not the previous spec."""
        await platform.create(make_manifest("RedisCluster", "cache", {"masters": 3}))
        driver = make_driver(platform)
        key = ObjectKey(TopologyKind.CLUSTER, "default", "cache")
        await driver.reconcile(key)
        three = allocate_slots(3)
        assert (await status_of(platform, key)).acknowledged_slot_fingerprint == three.fingerprint()

        await update_spec(platform, key, {"masters": 4})
        await driver.reconcile(key)
        await update_spec(platform, key, {"masters": 5})
        await driver.reconcile(key)

        status = await status_of(platform, key)
        five = allocate_slots(5)
        assert status.slot_fingerprint == five.fingerprint()
        assert status.acknowledged_slot_fingerprint == three.fingerprint()
        assert status.slot_migration == [move.to_dict() for move in diff_assignments(three, five)]
        assert status.slot_migration != [move.to_dict() for move in diff_assignments(allocate_slots(4), five)]

        manifest = await platform.get(key.ref)
        manifest["metadata"]["annotations"] = {ANNOTATION_SLOTS_MIGRATED: five.fingerprint()}
        await platform.replace(manifest)
        await driver.reconcile(key)

        status = await status_of(platform, key)
        assert status.slot_migration is None
        assert status.acknowledged_slot_fingerprint == five.fingerprint()

    @pytest.mark.asyncio
    async def test_sentinel_config_change(self, platform, make_manifest):
        """A new sentinel.conf is written without touching the sentinel pods."""
        await platform.create(make_manifest("RedisSentinel", "ha", {"replicas": 3, "redis": {}}))
        driver = make_driver(platform)
        key = ObjectKey(TopologyKind.SENTINEL, "default", "ha")
        await driver.reconcile(key)

        await update_spec(platform, key, {"replicas": 3, "redis": {}, "config": {"downAfterMs": 5000}})
        platform.reset_writes()
        await driver.reconcile(key)

        assert [ref.name for ref in platform.writes_for("replace")] == ["ha-sentinel-config"]
        condition = (await status_of(platform, key)).latest("ConfigPendingRestart")
        assert condition.status == "True"


class TestEventsAndLifecycle:
    """Test suite for event mapping, garbage collection and the worker pool."""

    @pytest.mark.asyncio
    async def test_child_event_maps_to_parent(self, platform, make_manifest):
        """Events on children enqueue their parent."""
        await platform.create(make_manifest("RedisCluster", "cache", {}))
        driver = make_driver(platform)
        key = ObjectKey(TopologyKind.CLUSTER, "default", "cache")
        await driver.reconcile(key)

        child = await platform.get(ObjectRef("apps/v1", "StatefulSet", "default", "cache-replica"))
        driver.handle_event(WatchEvent(WatchEvent.MODIFIED, child))
        driver.handle_event(WatchEvent(WatchEvent.MODIFIED, child))

        assert await drain(driver.queue) == [key]

    @pytest.mark.asyncio
    async def test_unrelated_objects_are_ignored(self, platform):
        """Objects without parent labels enqueue nothing."""
        driver = make_driver(platform)
        driver.handle_event(
            WatchEvent(
                WatchEvent.ADDED,
                {"apiVersion": "v1", "kind": "ConfigMap", "metadata": {"name": "other", "namespace": "default"}},
            )
        )
        assert len(driver.queue) == 0

    @pytest.mark.asyncio
    async def test_master_replica_event_enqueues_sentinels(self, platform, make_manifest):
        """Sentinels referencing a MasterReplica are reconciled when it changes."""
        await platform.create(make_manifest("RedisSentinel", "ha", {"masterReplicaRef": {"name": "orders"}}))
        driver = make_driver(platform)
        sentinel = ObjectKey(TopologyKind.SENTINEL, "default", "ha")
        await driver.reconcile(sentinel)

        orders = await platform.create(make_manifest("RedisMasterReplica", "orders", {}))
        driver.handle_event(WatchEvent(WatchEvent.ADDED, orders))

        assert await drain(driver.queue) == [ObjectKey(TopologyKind.MASTER_REPLICA, "default", "orders"), sentinel]

    @pytest.mark.asyncio
    async def test_deleted_parent_is_garbage_collected(self, platform, make_manifest):
        """Children of a deleted parent are removed."""
        await platform.create(make_manifest("RedisCluster", "cache", {}))
        driver = make_driver(platform)
        key = ObjectKey(TopologyKind.CLUSTER, "default", "cache")
        await driver.reconcile(key)

        parent = await platform.get(key.ref)
        await platform.delete(key.ref)
        driver.handle_event(WatchEvent(WatchEvent.DELETED, parent))

        result = await driver.reconcile(key)
        assert result.writes == 6
        assert result.requeue_after is None
        for api_version, kind in (("apps/v1", "StatefulSet"), ("v1", "Service"), ("v1", "ConfigMap")):
            assert await platform.list(api_version, kind, "default") == []

    @pytest.mark.asyncio
    async def test_reconcile_all(self, platform, make_manifest):
        """Every topology object is reconciled once."""
        await platform.create(make_manifest("RedisInstance", "single", {}))
        await platform.create(make_manifest("RedisCluster", "cache", {}))
        driver = make_driver(platform)

        results = await driver.reconcile_all()

        assert sorted(str(r.key) for r in results) == ["RedisCluster default/cache", "RedisInstance default/single"]
        assert all(r.phase == Phase.CREATING for r in results)

    @pytest.mark.asyncio
    async def test_workers_follow_watch_events(self, platform, make_manifest):
        """Started workers reconcile objects as they appear."""
        driver = make_driver(platform)
        driver.start()
        for _ in range(3):
            await asyncio.sleep(0)

        await platform.create(make_manifest("RedisInstance", "single", {}))
        key = ObjectKey(TopologyKind.INSTANCE, "default", "single")
        phase = None
        for _ in range(200):
            manifest = await platform.get(key.ref)
            phase = (manifest.get("status") or {}).get("phase")
            if phase:
                break
            await asyncio.sleep(0.01)

        await driver.stop()
        assert phase == "Creating"
        assert await platform.get(ObjectRef("apps/v1", "StatefulSet", "default", "single")) is not None

    @pytest.mark.asyncio
    async def test_recreated_parent_clears_deletion_record(self, platform, make_manifest):
        """A parent recreated under the same name replaces the children of its predecessor."""
        await platform.create(make_manifest("RedisInstance", "single", {}))
        driver = make_driver(platform)
        key = ObjectKey(TopologyKind.INSTANCE, "default", "single")
        await driver.reconcile(key)

        parent = await platform.get(key.ref)
        await platform.delete(key.ref)
        driver.handle_event(WatchEvent(WatchEvent.DELETED, parent))
        recreated = await platform.create(make_manifest("RedisInstance", "single", {}))

        result = await driver.reconcile(key)

        assert result.success
        assert result.phase == Phase.CREATING
        assert key not in driver._deleted_uids
        statefulset = await platform.get(ObjectRef("apps/v1", "StatefulSet", "default", "single"))
        assert statefulset["metadata"]["ownerReferences"][0]["uid"] == recreated["metadata"]["uid"]

        platform.reset_writes()
        await driver.reconcile(key)
        assert platform.writes_for("delete") == []

    @pytest.mark.asyncio
    async def test_phase_metric_uses_status_label(self, platform, make_manifest):
        """The per-object gauge is labelled by status and dropped with the object."""
        await platform.create(make_manifest("RedisInstance", "metered", {}, namespace="metrics"))
        driver = make_driver(platform)
        key = ObjectKey(TopologyKind.INSTANCE, "metrics", "metered")
        labels = {"controller": "RedisInstance", "namespace": "metrics", "name": "metered"}

        await driver.reconcile(key)

        assert REGISTRY.get_sample_value("redis_operator_resource_status", {**labels, "status": "Creating"}) == 1.0
        assert REGISTRY.get_sample_value("redis_operator_resource_status", {**labels, "status": "Ready"}) == 0.0

        await platform.delete(key.ref)
        await driver.reconcile(key)
        assert REGISTRY.get_sample_value("redis_operator_resource_status", {**labels, "status": "Creating"}) is None


class TestRedisView:
    """Test suite for the aggregated Redis view."""

    @pytest.mark.asyncio
    async def test_view_follows_its_target(self, platform, make_manifest, mark_ready):
        """The view mirrors the target's phase and is refreshed by the target's events."""
        await platform.create(make_manifest("RedisCluster", "cache", {"masters": 3}))
        await platform.create(make_manifest("Redis", "cache-view", {"type": "cluster", "resourceName": "cache"}))
        driver = make_driver(platform)
        cluster = ObjectKey(TopologyKind.CLUSTER, "default", "cache")
        view = ObjectKey(TopologyKind.REDIS, "default", "cache-view")
        await driver.reconcile(cluster)

        first = await driver.reconcile(view)
        assert first.phase == Phase.CREATING
        assert first.writes == 0
        status = await status_of(platform, view)
        assert status.resource_kind == "RedisCluster"
        assert status.roles["master"].replicas == 3
        assert status.last_condition_message == (await status_of(platform, cluster)).last_condition_message

        await mark_ready(platform)
        await driver.reconcile(cluster)
        driver.handle_event(WatchEvent(WatchEvent.MODIFIED, await platform.get(cluster.ref)))
        assert await drain(driver.queue) == [cluster, view]

        ready = await driver.reconcile(view)
        assert ready.phase == Phase.READY
        status = await status_of(platform, view)
        assert status.latest("Ready").status == "True"
        assert status.last_condition_message == "all roles ready"

        platform.reset_writes()
        await driver.reconcile(view)
        assert platform.writes == []

    @pytest.mark.asyncio
    async def test_view_waits_for_missing_target(self, platform, make_manifest):
        """A view of an object that does not exist yet is Pending until it appears."""
        await platform.create(make_manifest("Redis", "orders-view", {"type": "masterreplica", "resourceName": "orders"}))
        driver = make_driver(platform)
        view = ObjectKey(TopologyKind.REDIS, "default", "orders-view")

        pending = await driver.reconcile(view)

        assert pending.phase == Phase.PENDING
        assert isinstance(pending.error, PendingDependencyError)
        assert pending.requeue_after == 1.0
        condition = (await status_of(platform, view)).latest("DependencyReady")
        assert condition.message == "RedisMasterReplica default/orders not found"

        orders = await platform.create(make_manifest("RedisMasterReplica", "orders", {}))
        driver.handle_event(WatchEvent(WatchEvent.ADDED, orders))
        assert view in await drain(driver.queue)
