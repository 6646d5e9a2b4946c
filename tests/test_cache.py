"""Unit tests for the discovery cache and its persistence backends."""

import json

import pytest

from discovery.cache import CachedDevice, DiscoveryCache, JsonFileCacheStore, MemoryCacheStore
from discovery.models import DiscoveredCandidate


def make_device(ip="192.168.1.50", last_seen=None, **kwargs):
    now = 1_700_000_000.0 if last_seen is None else last_seen
    defaults = dict(protocol="RTSP", ports=[554], discovered_at=now, last_seen=now, response_time_ms=40)
    defaults.update(kwargs)
    return CachedDevice(ip=ip, **defaults)


class TestCachedDevice:
    """Record-level behaviour: priority, merge and persisted form."""

    def test_priority_prefers_fast_recent_online(self, fake_clock):
        now = fake_clock()
        fast = make_device(response_time_ms=20, last_seen=now)
        slow = make_device(response_time_ms=900, last_seen=now)
        stale = make_device(response_time_ms=20, last_seen=now - 48 * 3600)
        offline = make_device(response_time_ms=20, last_seen=now, is_online=False)

        assert fast.priority(now) > slow.priority(now)
        assert fast.priority(now) > stale.priority(now)
        assert fast.priority(now) > offline.priority(now)

    def test_priority_decreases_with_age(self):
        device = make_device(last_seen=0.0)
        scores = [device.priority(hours * 3600.0) for hours in (0, 0.5, 1, 5, 24)]
        assert scores == sorted(scores, reverse=True)
        assert len(set(scores)) == len(scores)

    def test_merge_keeps_missing_fields_and_unions_ports(self):
        first = make_device(name="Porch", manufacturer="Dahua", ports=[80], last_seen=100.0,
                            metadata={"a": "1"})
        second = make_device(ports=[554], last_seen=200.0, metadata={"b": "2"})
        merged = first.merge(second)

        assert merged.name == "Porch"
        assert merged.manufacturer == "Dahua"
        assert merged.ports == [80, 554]
        assert merged.last_seen == 200.0
        assert merged.metadata == {"a": "1", "b": "2"}

    def test_record_uses_camel_case_and_milliseconds(self):
        device = make_device(last_seen=1_700_000_000.5, discovered_at=1_700_000_000.0)
        record = device.to_record()

        assert record["lastSeen"] == 1_700_000_000_500
        assert record["discoveredAt"] == 1_700_000_000_000
        assert record["responseTime"] == 40
        assert record["isOnline"] is True
        assert "name" not in record

        restored = CachedDevice.from_record(record)
        assert restored.ip == device.ip
        assert restored.last_seen == pytest.approx(device.last_seen)

    def test_from_candidates_picks_best_protocol(self):
        candidates = [
            DiscoveredCandidate("192.168.1.9", 80, "HTTP", "port_scan", response_time_ms=30),
            DiscoveredCandidate("192.168.1.9", 554, "RTSP", "mdns", response_time_ms=12, name="Cam"),
        ]
        device = CachedDevice.from_candidates(candidates, now=500.0)

        assert device.protocol == "RTSP"
        assert device.ports == [80, 554]
        assert device.response_time_ms == 12
        assert device.name == "Cam"
        assert device.metadata["discovery_methods"] == "port_scan,mdns"


class TestDiscoveryCache:
    """Cache operations against the in-memory store."""

    @pytest.mark.asyncio
    async def test_upsert_is_idempotent_and_keeps_latest_last_seen(self, fake_clock):
        cache = DiscoveryCache(MemoryCacheStore(), clock=fake_clock)
        await cache.initialize()

        await cache.upsert(make_device(last_seen=100.0))
        await cache.upsert(make_device(last_seen=300.0))
        await cache.upsert(make_device(last_seen=200.0))

        assert len(cache) == 1
        assert cache.get("192.168.1.50").last_seen == 300.0

    @pytest.mark.asyncio
    async def test_sweep_removes_only_expired(self, fake_clock):
        cache = DiscoveryCache(MemoryCacheStore(), clock=fake_clock)
        now = fake_clock()
        await cache.upsert_many([
            make_device(ip="192.168.1.10", last_seen=now - 25 * 3600),
            make_device(ip="192.168.1.11", last_seen=now - 24 * 3600),
            make_device(ip="192.168.1.12", last_seen=now - 60),
        ])

        removed = await cache.sweep_expired(24 * 3600)

        assert removed == 1
        assert "192.168.1.10" not in cache
        assert "192.168.1.11" in cache
        assert "192.168.1.12" in cache

    @pytest.mark.asyncio
    async def test_scheduled_sweep(self, fake_clock, manual_scheduler):
        cache = DiscoveryCache(MemoryCacheStore(), scheduler=manual_scheduler,
                               max_age=3600, sweep_interval=600, clock=fake_clock)
        await cache.initialize()
        await cache.upsert(make_device(last_seen=fake_clock() - 7200))

        await manual_scheduler.advance(600)

        assert len(cache) == 0

    @pytest.mark.asyncio
    async def test_malformed_records_are_skipped(self):
        good = make_device(ip="192.168.1.20").to_record()
        store = MemoryCacheStore()
        store.records = {
            "192.168.1.20": good,
            "192.168.1.21": {"ip": "192.168.1.21", "protocol": "RTSP"},
            "192.168.1.22": "garbage",
        }
        cache = DiscoveryCache(store)
        await cache.initialize()

        assert [d.ip for d in cache.all_devices()] == ["192.168.1.20"]

    @pytest.mark.asyncio
    async def test_commit_persists_and_notifies(self):
        store = MemoryCacheStore()
        cache = DiscoveryCache(store)
        received = []
        cache.subscribe(lambda devices: received.append([d.ip for d in devices]))

        await cache.upsert_many([make_device(ip="192.168.1.30"), make_device(ip="192.168.1.31")])

        assert set(store.records) == {"192.168.1.30", "192.168.1.31"}
        assert received == [["192.168.1.30", "192.168.1.31"]]

    @pytest.mark.asyncio
    async def test_mark_offline_and_subnet_query(self):
        cache = DiscoveryCache(MemoryCacheStore())
        await cache.upsert_many([
            make_device(ip="192.168.1.30"),
            make_device(ip="192.168.10.30"),
        ])

        assert [d.ip for d in cache.devices_in_subnet("192.168.1")] == ["192.168.1.30"]
        assert await cache.mark_offline("192.168.1.30")
        assert not await cache.mark_offline("192.168.1.30")
        assert cache.devices_in_subnet("192.168.1") == []
        assert len(cache.devices_in_subnet("192.168.1", online_only=False)) == 1

    @pytest.mark.asyncio
    async def test_adaptive_timeout_is_clamped(self):
        cache = DiscoveryCache(MemoryCacheStore())
        await cache.upsert_many([
            make_device(ip="192.168.1.40", response_time_ms=100),
            make_device(ip="192.168.1.41", response_time_ms=2000),
            make_device(ip="192.168.1.42", response_time_ms=60000),
        ])

        assert cache.adaptive_timeout("192.168.1.40") == 1.0
        assert cache.adaptive_timeout("192.168.1.41") == 4.0
        assert cache.adaptive_timeout("192.168.1.42") == 30.0
        assert cache.adaptive_timeout("192.168.1.99", default=7.0) == 7.0

    @pytest.mark.asyncio
    async def test_statistics_and_clear(self):
        cache = DiscoveryCache(MemoryCacheStore())
        await cache.upsert_many([
            make_device(ip="192.168.1.50", protocol="RTSP", response_time_ms=10),
            make_device(ip="192.168.1.51", protocol="HTTP", response_time_ms=30),
        ])
        await cache.mark_offline("192.168.1.51")

        stats = cache.statistics()
        assert stats["total_devices"] == 2
        assert stats["online_devices"] == 1
        assert stats["protocols"] == {"RTSP": 1, "HTTP": 1}
        assert stats["average_response_time_ms"] == 20.0

        await cache.clear()
        assert len(cache) == 0


class TestJsonFileCacheStore:
    """JSON file persistence."""

    @pytest.mark.asyncio
    async def test_round_trip_through_cache(self, tmp_path):
        path = tmp_path / "cache" / "devices.json"
        cache = DiscoveryCache(JsonFileCacheStore(str(path)))
        await cache.initialize()
        await cache.upsert(make_device(ip="192.168.1.60", name="Yard"))

        on_disk = json.loads(path.read_text())
        assert on_disk["192.168.1.60"]["name"] == "Yard"

        reloaded = DiscoveryCache(JsonFileCacheStore(str(path)))
        await reloaded.initialize()
        assert reloaded.get("192.168.1.60").name == "Yard"

    @pytest.mark.asyncio
    async def test_unreadable_file_starts_empty(self, tmp_path):
        path = tmp_path / "devices.json"
        path.write_text("[1, 2, 3]")
        cache = DiscoveryCache(JsonFileCacheStore(str(path)))
        await cache.initialize()
        assert len(cache) == 0
