"""Unit tests for the phased port scanner."""

import asyncio
import errno
import logging

import pytest

from config_loader import ScannerConfig
from discovery.models import DiscoveryRun
from discovery.port_scanner import PortScanner


class FakeNetwork:
    """Connector that accepts only the given (ip, port) pairs."""

    def __init__(self, open_ports, errors=None):
        self.open_ports = set(open_ports)
        self.errors = errors or {}
        self.calls = []

    async def __call__(self, ip, port, timeout):
        self.calls.append((ip, port, timeout))
        if (ip, port) in self.errors:
            raise self.errors[(ip, port)]
        if (ip, port) not in self.open_ports:
            raise ConnectionRefusedError()


def make_scanner(network, **overrides):
    config = ScannerConfig(max_concurrent=64, fast_timeout=0.1, common_timeout=0.2, full_timeout=0.3)
    for key, value in overrides.items():
        setattr(config, key, value)
    return PortScanner(config, connector=network)


class TestIpRange:
    """Network base expansion."""

    def test_class_c(self):
        ips = PortScanner.generate_ip_range("192.168.1")
        assert len(ips) == 254
        assert ips[0] == "192.168.1.1"
        assert ips[-1] == "192.168.1.254"

    def test_class_b_limited_to_ten_subnets(self):
        ips = PortScanner.generate_ip_range("10.0")
        assert len(ips) == 10 * 254
        assert ips[0] == "10.0.1.1"
        assert ips[-1] == "10.0.10.254"

    def test_single_host_and_invalid(self):
        assert PortScanner.generate_ip_range("192.168.1.77") == ["192.168.1.77"]
        assert PortScanner.generate_ip_range("192.168.x") == []
        assert PortScanner.generate_ip_range("300.1.1") == []


class TestPhasedScan:
    """Escalation and short-circuit behaviour."""

    @pytest.mark.asyncio
    async def test_rtsp_hit_short_circuits(self):
        network = FakeNetwork({("192.168.1.20", 554)})
        scanner = make_scanner(network)

        found = await scanner.scan_network("192.168.1")

        assert scanner.phases_run == ["phase1_rtsp"]
        assert [(c.ip, c.port, c.protocol) for c in found] == [("192.168.1.20", 554, "RTSP")]
        assert {port for _, port, _ in network.calls} == {554, 8554, 1935}
        assert all(timeout == 0.1 for _, _, timeout in network.calls)

    @pytest.mark.asyncio
    async def test_escalates_to_common_ports(self):
        network = FakeNetwork({("192.168.1.30", 37777)})
        scanner = make_scanner(network)

        found = await scanner.scan_network("192.168.1")

        assert scanner.phases_run == ["phase1_rtsp", "phase2_common"]
        assert [(c.ip, c.port, c.protocol) for c in found] == [("192.168.1.30", 37777, "TCP")]

    @pytest.mark.asyncio
    async def test_no_short_circuit_runs_every_phase(self):
        network = FakeNetwork({("192.168.1.20", 554), ("192.168.1.20", 6036)})
        scanner = make_scanner(network, short_circuit_phases=False)

        found = await scanner.scan_network("192.168.1")

        assert scanner.phases_run == ["phase1_rtsp", "phase2_common", "phase3_full"]
        assert {c.port for c in found} == {554, 6036}

    @pytest.mark.asyncio
    async def test_empty_network_runs_all_phases(self):
        scanner = make_scanner(FakeNetwork(set()))
        found = await scanner.scan_network("192.168.1")
        assert found == []
        assert scanner.phases_run == ["phase1_rtsp", "phase2_common", "phase3_full"]

    @pytest.mark.asyncio
    async def test_sealed_run_stops_scanning(self):
        network = FakeNetwork(set())
        scanner = make_scanner(network)
        run = DiscoveryRun("192.168.1")
        run.seal()

        found = await scanner.scan_network("192.168.1", run)

        assert found == []
        assert network.calls == []

    @pytest.mark.asyncio
    async def test_errors_are_misses(self):
        network = FakeNetwork(
            {("192.168.1.5", 554)},
            errors={
                ("192.168.1.6", 554): asyncio.TimeoutError(),
                ("192.168.1.7", 554): OSError("No route to host"),
                ("192.168.1.8", 554): RuntimeError("boom"),
            },
        )
        scanner = make_scanner(network)

        found = await scanner.scan_network("192.168.1")

        assert [c.ip for c in found] == ["192.168.1.5"]

    @pytest.mark.asyncio
    async def test_resource_errors_are_logged_routing_errors_are_not(self, caplog):
        network = FakeNetwork(
            set(),
            errors={
                ("192.168.1.6", 554): OSError(errno.EHOSTUNREACH, "No route to host"),
                ("192.168.1.7", 554): OSError(errno.EMFILE, "Too many open files"),
            },
        )
        scanner = make_scanner(network)

        with caplog.at_level(logging.WARNING, logger="discovery.port_scanner"):
            assert not await scanner.is_port_open("192.168.1.6", 554)
            assert not await scanner.is_port_open("192.168.1.7", 554)

        messages = [record.getMessage() for record in caplog.records]
        assert any("192.168.1.7:554" in m and "Too many open files" in m for m in messages)
        assert not any("192.168.1.6" in m for m in messages)


class TestTargetedScans:
    """Single host and streaming sweeps."""

    @pytest.mark.asyncio
    async def test_manufacturer_hint_selects_ports(self):
        network = FakeNetwork({("192.168.1.9", 37777)})
        scanner = make_scanner(network)

        found = await scanner.scan_specific_ip("192.168.1.9", "Dahua Technology")

        assert [call[1] for call in network.calls] == [37777, 554, 8080]
        assert [c.port for c in found] == [37777]

    @pytest.mark.asyncio
    async def test_is_port_open(self):
        scanner = make_scanner(FakeNetwork({("192.168.1.9", 8554)}))
        assert await scanner.is_port_open("192.168.1.9", 8554)
        assert not await scanner.is_port_open("192.168.1.9", 554)
