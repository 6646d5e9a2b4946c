"""
mDNS discovery of ONVIF and HTTP camera services via zeroconf
"""

import asyncio
import errno
import logging
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set, Tuple

from zeroconf import IPVersion, ServiceStateChange
from zeroconf.asyncio import AsyncServiceBrowser, AsyncServiceInfo, AsyncZeroconf

from .models import DiscoveredCandidate, DiscoveryMethod, DiscoveryRun
from .ports import classify_port

logger = logging.getLogger(__name__)

ONVIF_SERVICE_TYPE = "_onvif._tcp.local."
HTTP_SERVICE_TYPE = "_http._tcp.local."
CAMERA_SERVICE_TYPES = [ONVIF_SERVICE_TYPE, HTTP_SERVICE_TYPE]

RESOLVE_TIMEOUT_MS = 3000

_BIND_ERROR_MARKERS = ('address already in use', 'reuseport', 'reuse_port', 'only one usage', 'bind')


@dataclass
class MdnsProbeResult:
    candidates: List[DiscoveredCandidate] = field(default_factory=list)
    degraded: bool = False       # Nothing heard before the fast-failure timeout, or the probe errored
    bind_error: bool = False     # Primary socket configuration hit a bind conflict


def is_bind_error(error: BaseException) -> bool:
    if isinstance(error, OSError) and error.errno in (errno.EADDRINUSE, errno.EADDRNOTAVAIL):
        return True
    message = str(error).lower()
    return any(marker in message for marker in _BIND_ERROR_MARKERS)


class MdnsProbe:
    """
    Browses camera service types with a fast-failure timeout

    The primary configuration listens on an ephemeral unicast port so it never
    competes with other responders for the shared 5353 bind. If the platform still
    reports a bind conflict, the probe switches to the shared multicast listener
    with an ONVIF-only query and a shorter window, and keeps using that
    configuration for later runs.
    """

    def __init__(self, config: Optional[Dict] = None):
        config = config or {}
        self.fast_failure_timeout = float(config.get('fast_failure_timeout_seconds', 3.0))
        self.discovery_timeout = float(config.get('discovery_timeout_seconds', 8.0))
        self.fallback_delay = float(config.get('fallback_delay_seconds', 0.5))
        self.fallback_window = float(config.get('fallback_window_seconds', 4.0))
        self.fallback_timeout = float(config.get('fallback_timeout_seconds', 5.0))
        self.has_bind_error = False

    async def discover(self, window: Optional[float] = None, run: Optional[DiscoveryRun] = None) -> MdnsProbeResult:
        window = self.discovery_timeout if window is None else window
        start_time = time.time()

        if self.has_bind_error:
            return await self._fallback_discover(run)

        try:
            candidates, degraded = await self._browse(
                CAMERA_SERVICE_TYPES, min(self.fast_failure_timeout, window), window, unicast=True, run=run
            )
        except OSError as e:
            if not is_bind_error(e):
                logger.error(f"mDNS discovery failed: {e}")
                return MdnsProbeResult(degraded=True)
            logger.warning(f"mDNS bind conflict ({e}); retrying with shared listener")
            self.has_bind_error = True
            await asyncio.sleep(self.fallback_delay)
            return await self._fallback_discover(run)
        except Exception as e:
            logger.error(f"mDNS discovery failed: {e}")
            return MdnsProbeResult(degraded=True)

        if degraded:
            logger.info(f"mDNS: no responses within {self.fast_failure_timeout}s, treating as degraded")
        else:
            logger.info(f"[PASS] mDNS found {len(candidates)} service(s) in {time.time() - start_time:.1f}s")
        return MdnsProbeResult(candidates=candidates, degraded=degraded)

    async def _fallback_discover(self, run: Optional[DiscoveryRun]) -> MdnsProbeResult:
        try:
            candidates, degraded = await asyncio.wait_for(
                self._browse([ONVIF_SERVICE_TYPE], self.fallback_window, self.fallback_window, unicast=False, run=run),
                self.fallback_timeout
            )
        except (OSError, asyncio.TimeoutError) as e:
            logger.warning(f"mDNS fallback discovery failed: {e or 'timeout'}")
            return MdnsProbeResult(degraded=True, bind_error=True)
        except Exception as e:
            logger.error(f"mDNS fallback discovery failed: {e}")
            return MdnsProbeResult(degraded=True, bind_error=True)

        logger.info(f"mDNS fallback found {len(candidates)} ONVIF service(s)")
        return MdnsProbeResult(candidates=candidates, degraded=degraded, bind_error=True)

    async def _browse(self, service_types: List[str], fast_timeout: float, window: float,
                      unicast: bool, run: Optional[DiscoveryRun] = None) -> Tuple[List[DiscoveredCandidate], bool]:
        """
        Browse for the given window; returns (candidates, degraded)
        Raises OSError when the zeroconf sockets cannot be bound
        """
        loop = asyncio.get_running_loop()
        aiozc = AsyncZeroconf(ip_version=IPVersion.V4Only, unicast=unicast)
        received = asyncio.Event()
        pending: Set[asyncio.Task] = set()
        found: Dict[str, DiscoveredCandidate] = {}
        state = {'closed': False}

        def on_service_state_change(zeroconf, service_type: str, name: str, state_change: ServiceStateChange) -> None:
            if state['closed'] or state_change is not ServiceStateChange.Added:
                return
            received.set()
            task = asyncio.ensure_future(self._resolve(aiozc, service_type, name, found, state, run))
            pending.add(task)
            task.add_done_callback(pending.discard)

        browser = AsyncServiceBrowser(aiozc.zeroconf, service_types, handlers=[on_service_state_change])
        started = loop.time()
        try:
            try:
                await asyncio.wait_for(received.wait(), fast_timeout)
            except asyncio.TimeoutError:
                return [], True

            remaining = window - (loop.time() - started)
            if remaining > 0:
                await asyncio.sleep(remaining)
            if pending:
                await asyncio.wait(set(pending), timeout=1.0)
        finally:
            state['closed'] = True
            for task in list(pending):
                task.cancel()
            await browser.async_cancel()
            await aiozc.async_close()

        return list(found.values()), False

    async def _resolve(self, aiozc: AsyncZeroconf, service_type: str, name: str,
                       found: Dict[str, DiscoveredCandidate], state: Dict, run: Optional[DiscoveryRun]) -> None:
        try:
            info = AsyncServiceInfo(service_type, name)
            if not await info.async_request(aiozc.zeroconf, RESOLVE_TIMEOUT_MS):
                logger.debug(f"mDNS: could not resolve {name}")
                return
        except Exception as e:
            logger.debug(f"mDNS: resolve of {name} failed: {e}")
            return

        # Browser already closed or run sealed: drop late resolutions
        if state['closed'] or (run is not None and run.sealed):
            return

        for candidate in self.candidates_from_info(service_type, name, info.parsed_addresses(IPVersion.V4Only),
                                                   info.port, info.properties, info.server):
            found[candidate.key] = candidate
            logger.info(f"[OK] mDNS service {candidate.name} at {candidate.key}")

    @staticmethod
    def candidates_from_info(service_type: str, name: str, addresses: List[str], port: Optional[int],
                             properties: Optional[Dict], server: Optional[str] = None) -> List[DiscoveredCandidate]:
        if not addresses or not port:
            return []

        txt = decode_txt_properties(properties)
        short_type = service_type.rstrip('.')
        if short_type.endswith('.local'):
            short_type = short_type[:-len('.local')]
        instance = name[:-len(service_type)].rstrip('.') if name.endswith(service_type) else name
        protocol = "ONVIF" if service_type == ONVIF_SERVICE_TYPE else classify_port(port)
        if server:
            txt.setdefault('server', server.rstrip('.'))

        return [
            DiscoveredCandidate(
                ip=address,
                port=port,
                protocol=protocol,
                discovery_method=DiscoveryMethod.MDNS,
                name=instance or None,
                manufacturer=txt.get('manufacturer') or txt.get('mfr') or txt.get('vendor'),
                model=txt.get('model') or txt.get('md'),
                service_type=short_type,
                metadata=dict(txt)
            )
            for address in addresses
        ]


def decode_txt_properties(properties: Optional[Dict]) -> Dict[str, str]:
    decoded: Dict[str, str] = {}
    if not properties:
        return decoded
    for key, value in properties.items():
        if isinstance(key, bytes):
            key = key.decode('utf-8', errors='replace')
        if value is None:
            value = ''
        elif isinstance(value, bytes):
            value = value.decode('utf-8', errors='replace')
        decoded[str(key).lower()] = str(value)
    return decoded
