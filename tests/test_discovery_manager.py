"""Tests for the discovery orchestrator, end to end against fake probes."""

import asyncio

import pytest

from config_loader import DiscoveryConfig, ScannerConfig
from discovery.cache import DiscoveryCache, MemoryCacheStore
from discovery.manager import CameraDiscovery
from discovery.mdns_probe import MdnsProbeResult
from discovery.models import DiscoveredCandidate, DiscoveryRun
from discovery.port_scanner import PortScanner
from discovery.validator import ValidationResult


class FakeNetwork:
    def __init__(self, open_ports, gate=None):
        self.open_ports = set(open_ports)
        self.gate = gate
        self.calls = 0

    async def __call__(self, ip, port, timeout):
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if (ip, port) not in self.open_ports:
            raise ConnectionRefusedError()


class SlowMdnsProbe:
    """mDNS stand-in that never answers inside the deadline."""

    def __init__(self, delay=10.0):
        self.delay = delay
        self.cancelled = False

    async def discover(self, window=None, run=None):
        try:
            await asyncio.sleep(self.delay)
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        return MdnsProbeResult(candidates=[DiscoveredCandidate("192.168.1.99", 554, "RTSP", "mdns")])


class FakeValidator:
    """Passes only the given IPs."""

    def __init__(self, valid_ips):
        self.valid_ips = set(valid_ips)

    async def validate_devices(self, candidates):
        return [ValidationResult(c, c.ip in self.valid_ips, "ok" if c.ip in self.valid_ips else "no RTSP response")
                for c in candidates]


class InstantMdnsProbe:
    def __init__(self, candidates):
        self.candidates = candidates

    async def discover(self, window=None, run=None):
        return MdnsProbeResult(candidates=list(self.candidates))


def make_discovery(network, probes=("port_scan",), deadline=5.0, mdns_probe=None, clock=None, validator=None):
    cache = DiscoveryCache(MemoryCacheStore(), clock=clock) if clock else DiscoveryCache(MemoryCacheStore())
    scanner = PortScanner(ScannerConfig(max_concurrent=256, fast_timeout=0.1), connector=network)
    config = DiscoveryConfig(probes=list(probes), deadline=deadline, scan_cooldown=120, probe_window=0.1)
    kwargs = dict(cache=cache, scanner=scanner, mdns_probe=mdns_probe, config=config,
                  network_detector=lambda: "192.168.1")
    if validator:
        kwargs["validator"] = validator
    if clock:
        kwargs["clock"] = clock
    return CameraDiscovery(**kwargs)


class TestDiscoveryRun:
    """Run token semantics."""

    def test_sealed_run_rejects_contributions(self):
        run = DiscoveryRun("192.168.1")
        assert run.contribute([DiscoveredCandidate("192.168.1.5", 554, "RTSP", "port_scan")]) == 1
        run.seal()
        assert run.contribute([DiscoveredCandidate("192.168.1.6", 554, "RTSP", "port_scan")]) == 0
        assert [c.ip for c in run.candidates] == ["192.168.1.5"]

    def test_duplicates_enrich_first_sighting(self):
        run = DiscoveryRun("192.168.1")
        run.contribute([DiscoveredCandidate("192.168.1.5", 554, "RTSP", "port_scan")])
        added = run.contribute([DiscoveredCandidate("192.168.1.5", 554, "RTSP", "mdns", name="Porch")])
        assert added == 0
        assert run.candidates[0].name == "Porch"
        assert run.candidates[0].discovery_method == "port_scan"


class TestCameraDiscovery:
    """Orchestrated discovery runs."""

    @pytest.mark.asyncio
    async def test_port_scan_finds_camera_and_caches_it(self):
        network = FakeNetwork({("192.168.1.23", 554), ("192.168.1.1", 554)})
        discovery = make_discovery(network)

        devices = await discovery.discover()

        # The gateway also answers on 554 but is filtered
        assert [(d.ip, d.port, d.protocol) for d in devices] == [("192.168.1.23", 554, "RTSP")]
        cached = discovery.cache.get("192.168.1.23")
        assert cached is not None
        assert cached.protocol == "RTSP"
        assert cached.ports == [554]
        assert "192.168.1.1" not in discovery.cache
        assert discovery.last_summary.source == "network"
        assert discovery.last_summary.filtered_count == 1

    @pytest.mark.asyncio
    async def test_cached_devices_returned_without_scanning(self):
        network = FakeNetwork({("192.168.1.23", 554)})
        discovery = make_discovery(network)
        await discovery.discover()
        calls_after_first = network.calls

        devices = await discovery.discover()

        assert network.calls == calls_after_first
        assert [d.ip for d in devices] == ["192.168.1.23"]
        assert devices[0].discovery_method == "cache"
        assert discovery.last_summary.source == "cache"

    @pytest.mark.asyncio
    async def test_force_refresh_respects_scan_cooldown(self):
        network = FakeNetwork({("192.168.1.23", 554)})
        discovery = make_discovery(network)
        await discovery.discover()
        calls_after_first = network.calls

        await discovery.discover(force_refresh=True)

        assert network.calls == calls_after_first
        assert discovery.last_summary.probe_results == {"port_scan": 0}

    @pytest.mark.asyncio
    async def test_scan_abandoned_at_deadline_starts_no_cooldown(self):
        gate = asyncio.Event()
        network = FakeNetwork({("192.168.1.23", 554)}, gate=gate)
        discovery = make_discovery(network, deadline=0.1)

        assert await discovery.discover() == []
        assert discovery.cache_statistics()['scanned_networks'] == []

        gate.set()
        discovery.config.deadline = 5.0
        devices = await discovery.discover(force_refresh=True)

        assert [d.ip for d in devices] == ["192.168.1.23"]
        assert discovery.cache_statistics()['scanned_networks'] == ["192.168.1"]

    @pytest.mark.asyncio
    async def test_concurrent_discovery_is_rejected(self):
        gate = asyncio.Event()
        network = FakeNetwork({("192.168.1.23", 554)}, gate=gate)
        discovery = make_discovery(network)

        first = asyncio.create_task(discovery.discover())
        await asyncio.sleep(0)
        assert discovery.is_discovering

        second = await discovery.discover()
        assert second == []

        gate.set()
        devices = await first
        assert [d.ip for d in devices] == ["192.168.1.23"]
        assert not discovery.is_discovering

    @pytest.mark.asyncio
    async def test_deadline_abandons_slow_probe(self):
        network = FakeNetwork({("192.168.1.23", 554)})
        slow = SlowMdnsProbe()
        discovery = make_discovery(network, probes=("mdns", "port_scan"), deadline=0.3, mdns_probe=slow)

        devices = await discovery.discover()
        await asyncio.sleep(0.01)

        assert [d.ip for d in devices] == ["192.168.1.23"]
        assert discovery.last_summary.timed_out_probes == ["mdns"]
        assert slow.cancelled
        assert "192.168.1.99" not in discovery.cache

    @pytest.mark.asyncio
    async def test_probe_results_are_merged(self):
        network = FakeNetwork({("192.168.1.23", 554)})
        mdns = InstantMdnsProbe([
            DiscoveredCandidate("192.168.1.23", 554, "RTSP", "mdns", name="Garage Cam"),
            DiscoveredCandidate("192.168.1.40", 80, "HTTP", "mdns", name="Office Printer"),
        ])
        discovery = make_discovery(network, probes=("mdns", "port_scan"), mdns_probe=mdns)

        devices = await discovery.discover()

        assert [d.ip for d in devices] == ["192.168.1.23"]
        assert devices[0].name == "Garage Cam"
        assert discovery.cache.get("192.168.1.23").name == "Garage Cam"

    @pytest.mark.asyncio
    async def test_stop_rejects_new_runs(self):
        discovery = make_discovery(FakeNetwork({("192.168.1.23", 554)}))
        await discovery.stop()
        assert await discovery.discover() == []

    @pytest.mark.asyncio
    async def test_discover_specific_ip_bypasses_blacklist(self):
        network = FakeNetwork({("192.168.1.1", 554)})
        discovery = make_discovery(network)

        devices = await discovery.discover_specific_ip("192.168.1.1")

        assert [(d.ip, d.port) for d in devices] == [("192.168.1.1", 554)]
        assert "192.168.1.1" in discovery.cache

    @pytest.mark.asyncio
    async def test_quick_rtsp_discovery_keeps_validated_hits_only(self):
        network = FakeNetwork({("192.168.1.23", 554), ("192.168.1.40", 554)})
        discovery = make_discovery(network, validator=FakeValidator({"192.168.1.23"}))

        devices = await discovery.quick_rtsp_discovery()

        assert [d.ip for d in devices] == ["192.168.1.23"]
        assert "192.168.1.23" in discovery.cache
        assert "192.168.1.40" not in discovery.cache

    def test_network_base_resolution(self):
        discovery = make_discovery(FakeNetwork(set()))
        assert discovery.resolve_network_base("10.0.0.") == "10.0.0"
        assert discovery.resolve_network_base() == "192.168.1"
        discovery.network_detector = lambda: None
        assert discovery.resolve_network_base() == discovery.config.fallback_network_base
