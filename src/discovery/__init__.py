"""
Discovery module for IP camera discovery
"""

from .blacklist import DeviceBlacklist
from .cache import CachedDevice, DiscoveryCache, JsonFileCacheStore, MemoryCacheStore, PostgresCacheStore
from .manager import CameraDiscovery, detect_network_base
from .mdns_probe import MdnsProbe, MdnsProbeResult
from .models import DiscoveredCandidate, DiscoveryMethod, DiscoveryRun, DiscoveryRunSummary
from .port_scanner import PortScanner
from .upnp_probe import UpnpDevice, UpnpProbe
from .validator import DeviceValidator, ValidationResult
from .ws_discovery_probe import WsDiscoveryDevice, WsDiscoveryProbe

__all__ = [
    'CameraDiscovery', 'detect_network_base',
    'DeviceBlacklist',
    'CachedDevice', 'DiscoveryCache', 'JsonFileCacheStore', 'MemoryCacheStore', 'PostgresCacheStore',
    'MdnsProbe', 'MdnsProbeResult',
    'DiscoveredCandidate', 'DiscoveryMethod', 'DiscoveryRun', 'DiscoveryRunSummary',
    'PortScanner',
    'UpnpDevice', 'UpnpProbe',
    'DeviceValidator', 'ValidationResult',
    'WsDiscoveryDevice', 'WsDiscoveryProbe',
]
