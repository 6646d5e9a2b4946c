"""
Phased TCP port scanner for camera discovery
Phase 1 tries RTSP priority ports, phase 2 the most common camera ports, phase 3 everything else
"""

import asyncio
import errno
import ipaddress
import logging
import time
from typing import Awaitable, Callable, List, Optional

from config_loader import ScannerConfig
from .models import DiscoveredCandidate, DiscoveryMethod, DiscoveryRun
from .ports import (
    RTSP_PORTS, RTSP_PRIORITY_PORTS, MOST_COMMON_PORTS,
    all_camera_ports, classify_port, ports_for_manufacturer
)

logger = logging.getLogger(__name__)

Connector = Callable[[str, int, float], Awaitable[None]]

MAX_SUBNETS_FOR_16 = 10

# Routing misses on a LAN sweep; anything else (EMFILE, ENOBUFS) is worth a log line
SILENT_ERRNOS = {errno.EHOSTUNREACH, errno.ENETUNREACH, errno.EHOSTDOWN, errno.ECONNRESET}


async def open_tcp_connection(ip: str, port: int, timeout: float) -> None:
    """Connect then close immediately; raises on refusal or timeout"""
    reader, writer = await asyncio.wait_for(asyncio.open_connection(ip, port), timeout)
    writer.close()
    try:
        await writer.wait_closed()
    except Exception:
        pass


class PortScanner:
    """Concurrency-bounded, phased TCP port prober"""

    def __init__(self, config: Optional[ScannerConfig] = None, connector: Optional[Connector] = None):
        self.config = config or ScannerConfig()
        self.connector = connector or open_tcp_connection
        self.phases_run: List[str] = []   # Phases executed by the last scan_network call

    @staticmethod
    def generate_ip_range(network_base: str) -> List[str]:
        """
        Expand a network base into scan targets
        "a.b.c" -> a.b.c.1-254, "a.b" -> first 10 /24 subnets, "a.b.c.d" -> that host
        """
        parts = [p for p in network_base.strip().split('.') if p != '']
        try:
            octets = [int(p) for p in parts]
        except ValueError:
            logger.warning(f"Invalid network base: {network_base}")
            return []
        if any(o < 0 or o > 255 for o in octets):
            logger.warning(f"Invalid network base: {network_base}")
            return []

        if len(octets) == 4:
            return ['.'.join(parts)]
        if len(octets) == 3:
            network = ipaddress.IPv4Network(f"{'.'.join(parts)}.0/24")
            return [str(ip) for ip in network.hosts()]
        if len(octets) == 2:
            ips = []
            for subnet in range(1, MAX_SUBNETS_FOR_16 + 1):
                ips.extend(f"{parts[0]}.{parts[1]}.{subnet}.{host}" for host in range(1, 255))
            return ips

        logger.warning(f"Unsupported network base: {network_base}")
        return []

    async def scan_network(self, network_base: str, run: Optional[DiscoveryRun] = None) -> List[DiscoveredCandidate]:
        """Escalating three-phase scan; stops after the first phase with a hit when short-circuiting"""
        ips = self.generate_ip_range(network_base)
        self.phases_run = []
        if not ips:
            return []

        start_time = time.time()
        logger.info(f"[SEARCH] Port scanning {len(ips)} address(es) in {network_base}")

        phases = [
            ("phase1_rtsp", list(RTSP_PRIORITY_PORTS), self.config.fast_timeout),
            ("phase2_common", [p for p in MOST_COMMON_PORTS if p not in RTSP_PRIORITY_PORTS], self.config.common_timeout),
        ]
        scanned = set(RTSP_PRIORITY_PORTS) | set(MOST_COMMON_PORTS)
        phases.append(("phase3_full", [p for p in all_camera_ports() if p not in scanned], self.config.full_timeout))

        found: List[DiscoveredCandidate] = []
        for index, (phase_name, ports, timeout) in enumerate(phases):
            if run is not None and run.sealed:
                break
            self.phases_run.append(phase_name)
            hits = await self._scan_phase(ips, ports, timeout, phase_name, run)
            found.extend(hits)
            if hits and self.config.short_circuit_phases:
                skipped = [name for name, _, _ in phases[index + 1:]]
                if skipped:
                    logger.info(f"[OK] {phase_name} found {len(hits)} open port(s); skipping {', '.join(skipped)}")
                break

        logger.info(f"[PASS] Port scan of {network_base} finished: {len(found)} open port(s) in {time.time() - start_time:.1f}s")
        return found

    async def _scan_phase(self, ips: List[str], ports: List[int], timeout: float,
                          phase_name: str, run: Optional[DiscoveryRun] = None) -> List[DiscoveredCandidate]:
        targets = [(ip, port) for ip in ips for port in ports]
        batch_size = max(1, self.config.max_concurrent)
        hits: List[DiscoveredCandidate] = []

        logger.debug(f"{phase_name}: {len(targets)} probe(s), timeout {timeout}s, batch {batch_size}")
        for offset in range(0, len(targets), batch_size):
            if run is not None and run.sealed:
                break
            batch = targets[offset:offset + batch_size]
            results = await asyncio.gather(
                *(self._probe(ip, port, timeout) for ip, port in batch),
                return_exceptions=True
            )
            for result in results:
                if isinstance(result, DiscoveredCandidate):
                    hits.append(result)
                elif isinstance(result, Exception) and not isinstance(result, asyncio.CancelledError):
                    logger.warning(f"{phase_name}: probe error: {result}")
        return hits

    async def _probe(self, ip: str, port: int, timeout: float) -> Optional[DiscoveredCandidate]:
        start = time.monotonic()
        try:
            await self.connector(ip, port, timeout)
        except (asyncio.TimeoutError, ConnectionRefusedError):
            return None
        except OSError as e:
            if e.errno not in SILENT_ERRNOS:
                logger.warning(f"Socket error probing {ip}:{port}: {e}")
            return None
        except Exception as e:
            logger.warning(f"Unexpected error probing {ip}:{port}: {e}")
            return None

        elapsed_ms = int((time.monotonic() - start) * 1000)
        protocol = classify_port(port)
        logger.info(f"[OK] Open port {ip}:{port} ({protocol}, {elapsed_ms}ms)")
        return DiscoveredCandidate(
            ip=ip,
            port=port,
            protocol=protocol,
            discovery_method=DiscoveryMethod.PORT_SCAN,
            response_time_ms=elapsed_ms
        )

    async def scan_specific_ip(self, ip: str, manufacturer: Optional[str] = None) -> List[DiscoveredCandidate]:
        """Scan one host, using the manufacturer's known ports when a hint is given"""
        ports = ports_for_manufacturer(manufacturer)
        logger.info(f"[SEARCH] Scanning {ip} on {len(ports)} port(s) (manufacturer hint: {manufacturer or 'none'})")
        return await self._scan_phase([ip], ports, self.config.common_timeout, f"host_{ip}")

    async def is_port_open(self, ip: str, port: int, timeout: Optional[float] = None) -> bool:
        result = await self._probe(ip, port, timeout if timeout is not None else self.config.fast_timeout)
        return result is not None

    async def scan_for_streaming(self, network_base: str) -> List[DiscoveredCandidate]:
        """RTSP-only sweep without phase escalation"""
        ips = self.generate_ip_range(network_base)
        if not ips:
            return []
        ports = list(dict.fromkeys(RTSP_PRIORITY_PORTS + RTSP_PORTS))
        return await self._scan_phase(ips, ports, self.config.fast_timeout, "streaming")
