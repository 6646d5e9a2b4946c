"""
Discovery data structures and models
"""

import time
from typing import Any, Dict, List, Optional
from dataclasses import dataclass, field


class DiscoveryMethod:
    """Tags recorded on every candidate"""
    CACHE = "cache"
    MDNS = "mdns"
    PORT_SCAN = "port_scan"
    UPNP = "upnp"
    WS_DISCOVERY = "ws_discovery"
    MANUAL = "manual"


@dataclass
class DiscoveredCandidate:
    """Transient record produced by a probe, folded into the cache by the orchestrator"""
    ip: str
    port: int
    protocol: str                          # "RTSP", "HTTP", "ONVIF", "TCP"
    discovery_method: str                  # DiscoveryMethod value
    name: Optional[str] = None
    manufacturer: Optional[str] = None
    model: Optional[str] = None
    service_type: Optional[str] = None     # mDNS/UPnP service type when advertised
    service_name: Optional[str] = None     # Service hint used by the blacklist port table
    http_banner: Optional[str] = None      # HTTP response text collected by a probe
    response_time_ms: Optional[int] = None
    metadata: Dict[str, str] = field(default_factory=dict)
    discovered_at: float = field(default_factory=time.time)

    @property
    def key(self) -> str:
        """Deduplication key"""
        return f"{self.ip}:{self.port}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            'ip': self.ip,
            'port': self.port,
            'protocol': self.protocol,
            'discovery_method': self.discovery_method,
            'name': self.name,
            'manufacturer': self.manufacturer,
            'model': self.model,
            'service_type': self.service_type,
            'response_time_ms': self.response_time_ms,
            'metadata': dict(self.metadata)
        }


@dataclass
class DiscoveryRunSummary:
    """Event published after each orchestrated discovery run"""
    network_base: str
    devices: List[DiscoveredCandidate]
    source: str                            # "cache" or "network"
    duration_seconds: float
    probe_results: Dict[str, int] = field(default_factory=dict)   # probe -> candidate count
    timed_out_probes: List[str] = field(default_factory=list)
    filtered_count: int = 0


class DiscoveryRun:
    """
    Token shared by the probes of one orchestrated run

    Once sealed, contributions are rejected, so a probe abandoned at the deadline
    cannot alter the result set of a finished run.
    """

    def __init__(self, network_base: str):
        self.network_base = network_base
        self.started_at = time.time()
        self._sealed = False
        self._candidates: Dict[str, DiscoveredCandidate] = {}

    @property
    def sealed(self) -> bool:
        return self._sealed

    def seal(self) -> None:
        self._sealed = True

    def contribute(self, candidates: List[DiscoveredCandidate]) -> int:
        """Add candidates keyed by ip:port; returns how many new keys were accepted"""
        if self._sealed:
            return 0
        added = 0
        for candidate in candidates:
            if candidate.key not in self._candidates:
                self._candidates[candidate.key] = candidate
                added += 1
            else:
                _enrich(self._candidates[candidate.key], candidate)
        return added

    @property
    def candidates(self) -> List[DiscoveredCandidate]:
        return list(self._candidates.values())


def _enrich(existing: DiscoveredCandidate, other: DiscoveredCandidate) -> None:
    """Fill fields the first sighting lacked from a duplicate sighting"""
    for attr in ('name', 'manufacturer', 'model', 'service_type', 'service_name', 'http_banner', 'response_time_ms'):
        if getattr(existing, attr) is None and getattr(other, attr) is not None:
            setattr(existing, attr, getattr(other, attr))
    for key, value in other.metadata.items():
        existing.metadata.setdefault(key, value)
