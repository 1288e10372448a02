"""
Unit tests for health signal ingestion.
"""

import httpx
import pytest

from redisop.reconcile.health import HealthCache, HealthSignalPoller

EXPOSITION = """\
# HELP redis_instance_status Whether a redis instance answers PING
# TYPE redis_instance_status gauge
redis_instance_status{namespace="default",name="cache",role="master",pod="cache-master-0"} 1
redis_instance_status{namespace="default",name="cache",role="master",pod="cache-master-1"} 0
redis_instance_status{namespace="default",name="cache",role="replica",pod="cache-replica-0"} 1
# HELP redis_cluster_state Whether CLUSTER INFO reports cluster_state:ok
# TYPE redis_cluster_state gauge
redis_cluster_state{namespace="default",name="cache"} 0
# HELP redis_sentinel_master_status Whether sentinels agree the master is up
# TYPE redis_sentinel_master_status gauge
redis_sentinel_master_status{namespace="shop",name="ha"} 1
redis_sentinel_master_status{name="orphan"} 0
"""


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class TestHealthCache:
    """Test suite for HealthCache."""

    def test_ingest_exposition(self):
        """Instance, cluster and sentinel samples land in the cache."""
        cache = HealthCache(ttl=60)
        assert cache.ingest(EXPOSITION) == 4

        snapshot = cache.snapshot("default", "cache")
        assert snapshot.down_roles == {"master"}
        assert snapshot.cluster_ok is False
        assert not snapshot.healthy
        assert snapshot.problems() == "master down, cluster state fail"

        sentinel = cache.snapshot("shop", "ha")
        assert sentinel.sentinel_master_ok is True
        assert sentinel.healthy

    def test_unknown_object_is_healthy(self):
        """Without signals an object is never degraded."""
        assert HealthCache(ttl=60).snapshot("default", "nothing").healthy

    def test_signals_expire(self):
        """Signals older than the TTL are ignored."""
        clock = FakeClock()
        cache = HealthCache(ttl=60, clock=clock)
        cache.record_instance("default", "cache", "master", up=False)
        assert not cache.snapshot("default", "cache").healthy

        clock.now += 61
        assert cache.snapshot("default", "cache").healthy

    def test_newer_signal_replaces_older(self):
        """A recovered role is healthy again."""
        cache = HealthCache(ttl=60)
        cache.record_cluster_state("default", "cache", ok=False)
        cache.record_cluster_state("default", "cache", ok=True)
        assert cache.snapshot("default", "cache").cluster_ok is True

    def test_forget(self):
        """forget() drops every signal of an object."""
        cache = HealthCache(ttl=60)
        cache.ingest(EXPOSITION)
        cache.forget("default", "cache")
        snapshot = cache.snapshot("default", "cache")
        assert snapshot.down_roles == set()
        assert snapshot.cluster_ok is None


class TestHealthSignalPoller:
    """Test suite for scraping the collector."""

    @pytest.mark.asyncio
    async def test_poll_once(self):
        """A scrape feeds the exposition into the cache."""
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, text=EXPOSITION)

        cache = HealthCache(ttl=60)
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            poller = HealthSignalPoller(cache, url="http://collector:9121/metrics", interval=5, http_client=client)
            assert await poller.poll_once() == 4

        assert str(requests[0].url) == "http://collector:9121/metrics"
        assert cache.snapshot("default", "cache").down_roles == {"master"}

    @pytest.mark.asyncio
    async def test_poll_error_status(self):
        """An error response raises and records nothing."""
        cache = HealthCache(ttl=60)
        transport = httpx.MockTransport(lambda request: httpx.Response(503))
        async with httpx.AsyncClient(transport=transport) as client:
            poller = HealthSignalPoller(cache, url="http://collector:9121/metrics", interval=5, http_client=client)
            with pytest.raises(httpx.HTTPStatusError):
                await poller.poll_once()
        assert cache.snapshot("default", "cache").healthy

    @pytest.mark.asyncio
    async def test_run_without_collector(self):
        """run() returns immediately when no collector is configured."""
        poller = HealthSignalPoller(HealthCache(ttl=60), interval=5)
        poller.url = None
        await poller.run()
