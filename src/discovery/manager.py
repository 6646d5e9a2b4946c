"""
Main discovery manager: races the probes and the port scanner under a global deadline
Results are deduplicated, filtered and committed to the discovery cache in one step
"""

import asyncio
import ipaddress
import logging
import socket
import time
from collections import OrderedDict
from typing import Callable, Dict, List, Optional

from config_loader import DiscoveryConfig
from events import EventChannel
from .blacklist import DeviceBlacklist
from .cache import CachedDevice, DiscoveryCache
from .mdns_probe import MdnsProbe
from .models import DiscoveredCandidate, DiscoveryRun, DiscoveryRunSummary
from .port_scanner import PortScanner
from .upnp_probe import UpnpProbe
from .validator import DeviceValidator, ValidationResult
from .ws_discovery_probe import WsDiscoveryProbe

logger = logging.getLogger(__name__)


def detect_network_base() -> Optional[str]:
    """First three octets of the address on the default route, e.g. '192.168.1'"""
    try:
        # UDP connect sends nothing; it only selects the outgoing interface
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as s:
            s.connect(("8.8.8.8", 80))
            local_ip = s.getsockname()[0]
        address = ipaddress.IPv4Address(local_ip)
        if address.is_loopback or address.is_unspecified:
            return None
        return '.'.join(local_ip.split('.')[:3])
    except Exception as e:
        logger.debug(f"Could not determine local network: {e}")
        return None


class CameraDiscovery:
    """Discovery orchestrator for IP cameras"""

    def __init__(self, cache: DiscoveryCache, scanner: PortScanner,
                 blacklist: Optional[DeviceBlacklist] = None,
                 mdns_probe: Optional[MdnsProbe] = None,
                 upnp_probe: Optional[UpnpProbe] = None,
                 ws_probe: Optional[WsDiscoveryProbe] = None,
                 validator: Optional[DeviceValidator] = None,
                 config: Optional[DiscoveryConfig] = None,
                 network_base: Optional[str] = None,
                 network_detector: Callable[[], Optional[str]] = detect_network_base,
                 clock: Callable[[], float] = time.time):
        self.cache = cache
        self.scanner = scanner
        self.blacklist = blacklist or DeviceBlacklist()
        self.mdns_probe = mdns_probe
        self.upnp_probe = upnp_probe
        self.ws_probe = ws_probe
        self.validator = validator or DeviceValidator()
        self.config = config or DiscoveryConfig()
        self.network_base = network_base
        self.network_detector = network_detector
        self.clock = clock

        self.discovery_events: EventChannel[DiscoveryRunSummary] = EventChannel("discovery")
        self.last_summary: Optional[DiscoveryRunSummary] = None
        self.last_validation: List[ValidationResult] = []

        self._discovering = False
        self._last_network_scan: Dict[str, float] = {}
        self._active_run: Optional[DiscoveryRun] = None
        self._active_tasks: List[asyncio.Task] = []
        self._stopped = False

    @property
    def is_discovering(self) -> bool:
        return self._discovering

    def resolve_network_base(self, network_base: Optional[str] = None) -> str:
        if network_base:
            return network_base.rstrip('.')
        if self.network_base:
            return self.network_base.rstrip('.')
        detected = self.network_detector() if self.network_detector else None
        if detected:
            return detected
        logger.warning(f"Falling back to default network {self.config.fallback_network_base}")
        return self.config.fallback_network_base

    # ================== DISCOVERY ==================

    async def discover(self, network_base: Optional[str] = None, force_refresh: bool = False) -> List[DiscoveredCandidate]:
        """
        One discovery run; re-entrant calls are rejected with an empty list
        Cached devices for the subnet are returned immediately unless force_refresh is set
        """
        if self._stopped:
            logger.warning("Discovery requested after stop(); ignoring")
            return []
        if self._discovering:
            logger.warning("Discovery already in progress, rejecting concurrent request")
            return []

        self._discovering = True
        try:
            return await self._run_discovery(self.resolve_network_base(network_base), force_refresh)
        finally:
            self._discovering = False
            self._active_run = None
            self._active_tasks = []

    async def _run_discovery(self, network_base: str, force_refresh: bool) -> List[DiscoveredCandidate]:
        start_time = time.time()

        if not force_refresh:
            cached = self.cache.devices_in_subnet(network_base)
            if cached:
                ranked = sorted(cached, key=lambda d: d.priority(self.clock()), reverse=True)
                devices = [device.to_candidate() for device in ranked]
                logger.info(f"[CACHE] Returning {len(devices)} cached device(s) for {network_base}")
                self._publish(DiscoveryRunSummary(network_base, devices, "cache", time.time() - start_time))
                return devices

        logger.info(f"[LAUNCH] Starting discovery on {network_base} with probes: {', '.join(self.config.probes)}")
        run = DiscoveryRun(network_base)
        self._active_run = run

        probe_counts: Dict[str, int] = {}
        tasks: Dict[str, asyncio.Task] = OrderedDict()
        for probe_name in self.config.probes:
            coroutine = self._probe_coroutine(probe_name, network_base, run, probe_counts)
            if coroutine is not None:
                tasks[probe_name] = asyncio.create_task(coroutine, name=f"discovery-{probe_name}")
        self._active_tasks = list(tasks.values())

        timed_out: List[str] = []
        if tasks:
            done, pending = await asyncio.wait(tasks.values(), timeout=self.config.deadline)
            for probe_name, task in tasks.items():
                if task in pending:
                    timed_out.append(probe_name)
                    task.cancel()
                    task.add_done_callback(_drain_task)
                elif not task.cancelled() and task.exception() is not None:
                    logger.error(f"Probe {probe_name} failed: {task.exception()}")
            if timed_out:
                logger.info(f"Discovery deadline of {self.config.deadline}s reached; abandoned: {', '.join(timed_out)}")

        # No contributions after this point, from abandoned probes or otherwise
        run.seal()

        candidates = run.candidates
        filtered = self.blacklist.filter_devices(candidates)
        filtered_count = len(candidates) - len(filtered)

        if self.config.validate_on_discovery and filtered:
            filtered = await self.validate(filtered)

        await self._commit_to_cache(filtered)

        duration = time.time() - start_time
        logger.info(f"[PASS] Discovery on {network_base} finished: {len(filtered)} device(s) in {duration:.1f}s")
        self._publish(DiscoveryRunSummary(
            network_base=network_base,
            devices=filtered,
            source="network",
            duration_seconds=duration,
            probe_results=probe_counts,
            timed_out_probes=timed_out,
            filtered_count=filtered_count
        ))
        return filtered

    def _probe_coroutine(self, probe_name: str, network_base: str, run: DiscoveryRun, counts: Dict[str, int]):
        if probe_name == 'port_scan':
            return self._run_port_scan(network_base, run, counts)
        if probe_name == 'mdns' and self.mdns_probe is not None:
            return self._run_mdns(run, counts)
        if probe_name == 'ws_discovery' and self.ws_probe is not None:
            return self._run_ws_discovery(run, counts)
        if probe_name == 'upnp' and self.upnp_probe is not None:
            return self._run_upnp(run, counts)
        logger.debug(f"Probe {probe_name} not configured, skipping")
        return None

    async def _run_port_scan(self, network_base: str, run: DiscoveryRun, counts: Dict[str, int]) -> None:
        last_scan = self._last_network_scan.get(network_base)
        now = self.clock()
        if last_scan is not None and now - last_scan < self.config.scan_cooldown:
            remaining = self.config.scan_cooldown - (now - last_scan)
            logger.info(f"Skipping port scan of {network_base}: cooldown active ({remaining:.0f}s left)")
            counts['port_scan'] = 0
            return
        candidates = await self.scanner.scan_network(network_base, run)
        if not run.sealed:
            # Only a scan that finished inside the deadline starts the cooldown
            self._last_network_scan[network_base] = self.clock()
        counts['port_scan'] = run.contribute(candidates)

    async def _run_mdns(self, run: DiscoveryRun, counts: Dict[str, int]) -> None:
        result = await self.mdns_probe.discover(window=self.config.probe_window, run=run)
        if result.degraded:
            logger.info("mDNS degraded for this run")
        counts['mdns'] = run.contribute(result.candidates)

    async def _run_ws_discovery(self, run: DiscoveryRun, counts: Dict[str, int]) -> None:
        candidates = await self.ws_probe.discover_cameras(timeout=self.config.probe_window, run=run)
        counts['ws_discovery'] = run.contribute(candidates)

    async def _run_upnp(self, run: DiscoveryRun, counts: Dict[str, int]) -> None:
        candidates = await self.upnp_probe.discover_cameras(timeout=self.config.probe_window, run=run)
        counts['upnp'] = run.contribute(candidates)

    async def _commit_to_cache(self, candidates: List[DiscoveredCandidate]) -> List[CachedDevice]:
        """Fold candidates into one record per IP and commit them together"""
        if not candidates:
            return []
        by_ip: Dict[str, List[DiscoveredCandidate]] = OrderedDict()
        for candidate in candidates:
            by_ip.setdefault(candidate.ip, []).append(candidate)
        now = self.clock()
        devices = [CachedDevice.from_candidates(group, now) for group in by_ip.values()]
        return await self.cache.upsert_many(devices)

    def _publish(self, summary: DiscoveryRunSummary) -> None:
        self.last_summary = summary
        self.discovery_events.publish(summary)

    # ================== VALIDATION ==================

    async def validate(self, devices: List[DiscoveredCandidate]) -> List[DiscoveredCandidate]:
        """Protocol-level validation in parallel; returns the candidates that passed"""
        if not devices:
            return []
        logger.info(f"[SEARCH] Validating {len(devices)} device(s)")
        results = await self.validator.validate_devices(devices)
        self.last_validation = results
        valid = [result.candidate for result in results if result.is_valid]
        for result in results:
            if not result.is_valid:
                logger.info(f"[FAIL] {result.candidate.key} rejected: {result.reason}")
        logger.info(f"[PASS] Validation kept {len(valid)} of {len(devices)} device(s)")
        return valid

    # ================== TARGETED DISCOVERY ==================

    async def discover_specific_ip(self, ip: str, manufacturer: Optional[str] = None) -> List[DiscoveredCandidate]:
        """Scan one host directly, bypassing cache, cooldown and blacklist"""
        try:
            candidates = await self.scanner.scan_specific_ip(ip, manufacturer)
        except Exception as e:
            logger.error(f"Scan of {ip} failed: {e}")
            return []

        if self.ws_probe is not None:
            try:
                device = await self.ws_probe.probe_device(ip)
                if device is not None and device.is_onvif:
                    candidate = device.to_candidate()
                    if candidate and all(c.key != candidate.key for c in candidates):
                        candidates.append(candidate)
            except Exception as e:
                logger.debug(f"WS-Discovery unicast probe of {ip} failed: {e}")

        if manufacturer:
            for candidate in candidates:
                candidate.manufacturer = candidate.manufacturer or manufacturer

        await self._commit_to_cache(candidates)
        logger.info(f"Direct discovery of {ip}: {len(candidates)} open camera port(s)")
        return candidates

    async def quick_rtsp_discovery(self, network_base: Optional[str] = None) -> List[DiscoveredCandidate]:
        """Sweep RTSP ports only, no phases, no cooldown; hits must pass validation"""
        base = self.resolve_network_base(network_base)
        try:
            candidates = await self.scanner.scan_for_streaming(base)
        except Exception as e:
            logger.error(f"RTSP sweep of {base} failed: {e}")
            return []
        filtered = self.blacklist.filter_devices(candidates)
        if filtered:
            filtered = await self.validate(filtered)
        await self._commit_to_cache(filtered)
        return filtered

    # ================== CACHE PASSTHROUGH ==================

    def cache_statistics(self) -> Dict:
        stats = self.cache.statistics()
        stats['discovering'] = self._discovering
        stats['scanned_networks'] = sorted(self._last_network_scan.keys())
        return stats

    async def clear_cache(self) -> None:
        await self.cache.clear()
        self._last_network_scan.clear()

    async def stop(self) -> None:
        """Abandon any in-flight run and refuse new ones"""
        self._stopped = True
        if self._active_run is not None:
            self._active_run.seal()
        for task in self._active_tasks:
            if not task.done():
                task.cancel()
                task.add_done_callback(_drain_task)
        self.discovery_events.close()
        logger.info("Camera discovery stopped")


def _drain_task(task: asyncio.Task) -> None:
    """Retrieve the outcome of an abandoned probe so it is never reported as unhandled"""
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.debug(f"Abandoned probe {task.get_name()} ended with: {error}")
