"""
Discovery cache: previously seen devices with TTL, priority scoring and adaptive timeouts
Persisted as a JSON object keyed by IP (file or PostgreSQL backed)
"""

import asyncio
import json
import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError, ConfigDict

from events import EventChannel, Subscription
from scheduler import Scheduler, ScheduledJob
from .models import DiscoveredCandidate, DiscoveryMethod

logger = logging.getLogger(__name__)

DEFAULT_MAX_AGE = 24 * 3600.0
DEFAULT_SWEEP_INTERVAL = 6 * 3600.0
MIN_ADAPTIVE_TIMEOUT = 1.0
MAX_ADAPTIVE_TIMEOUT = 30.0


@dataclass
class CachedDevice:
    """A device seen on the network, identified by IP"""
    ip: str
    protocol: str
    ports: List[int] = field(default_factory=list)
    discovered_at: float = field(default_factory=time.time)
    last_seen: float = field(default_factory=time.time)
    response_time_ms: int = 0
    is_online: bool = True
    name: Optional[str] = None
    manufacturer: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def age_hours(self, now: Optional[float] = None) -> float:
        now = time.time() if now is None else now
        return max(0.0, now - self.last_seen) / 3600.0

    def priority(self, now: Optional[float] = None) -> float:
        """Ranking score: fast, recently seen, online devices first"""
        latency_score = 1000.0 / (self.response_time_ms + 100)
        recency_score = 1.0 / (self.age_hours(now) + 1.0)
        online_multiplier = 2.0 if self.is_online else 0.5
        return latency_score * recency_score * online_multiplier

    def merge(self, sighting: 'CachedDevice') -> 'CachedDevice':
        """Fold a newer sighting into this record; fields the sighting lacks are preserved"""
        merged_metadata = dict(self.metadata)
        merged_metadata.update(sighting.metadata)
        ports = list(self.ports)
        for port in sighting.ports:
            if port not in ports:
                ports.append(port)
        return CachedDevice(
            ip=self.ip,
            protocol=sighting.protocol or self.protocol,
            ports=sorted(ports),
            discovered_at=min(self.discovered_at, sighting.discovered_at),
            last_seen=max(self.last_seen, sighting.last_seen),
            response_time_ms=sighting.response_time_ms if sighting.response_time_ms else self.response_time_ms,
            is_online=sighting.is_online,
            name=sighting.name if sighting.name is not None else self.name,
            manufacturer=sighting.manufacturer if sighting.manufacturer is not None else self.manufacturer,
            metadata=merged_metadata
        )

    def to_record(self) -> Dict[str, Any]:
        """Persisted form (timestamps in epoch milliseconds)"""
        record = {
            'ip': self.ip,
            'protocol': self.protocol,
            'ports': list(self.ports),
            'discoveredAt': int(self.discovered_at * 1000),
            'lastSeen': int(self.last_seen * 1000),
            'responseTime': int(self.response_time_ms),
            'isOnline': self.is_online,
            'metadata': dict(self.metadata)
        }
        if self.name is not None:
            record['name'] = self.name
        if self.manufacturer is not None:
            record['manufacturer'] = self.manufacturer
        return record

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> 'CachedDevice':
        """Validate a persisted record; raises pydantic.ValidationError on malformed input"""
        parsed = CachedDeviceRecord.model_validate(record)
        return cls(
            ip=parsed.ip,
            protocol=parsed.protocol,
            ports=list(parsed.ports),
            discovered_at=parsed.discovered_at / 1000.0,
            last_seen=parsed.last_seen / 1000.0,
            response_time_ms=parsed.response_time,
            is_online=parsed.is_online,
            name=parsed.name,
            manufacturer=parsed.manufacturer,
            metadata=dict(parsed.metadata)
        )

    @classmethod
    def from_candidates(cls, candidates: List[DiscoveredCandidate], now: Optional[float] = None) -> 'CachedDevice':
        """Collapse every sighting of one IP into a single cache record"""
        now = time.time() if now is None else now
        first = candidates[0]
        ports = sorted({c.port for c in candidates})
        protocol = _best_protocol([c.protocol for c in candidates])
        latencies = [c.response_time_ms for c in candidates if c.response_time_ms is not None]
        metadata: Dict[str, Any] = {}
        methods = []
        for candidate in candidates:
            metadata.update(candidate.metadata)
            if candidate.discovery_method not in methods:
                methods.append(candidate.discovery_method)
        metadata['discovery_methods'] = ','.join(methods)
        name = next((c.name for c in candidates if c.name), None)
        manufacturer = next((c.manufacturer for c in candidates if c.manufacturer), None)
        return cls(
            ip=first.ip,
            protocol=protocol,
            ports=ports,
            discovered_at=now,
            last_seen=now,
            response_time_ms=min(latencies) if latencies else 0,
            is_online=True,
            name=name,
            manufacturer=manufacturer,
            metadata=metadata
        )

    def to_candidate(self) -> DiscoveredCandidate:
        port = self.ports[0] if self.ports else 0
        return DiscoveredCandidate(
            ip=self.ip,
            port=port,
            protocol=self.protocol,
            discovery_method=DiscoveryMethod.CACHE,
            name=self.name,
            manufacturer=self.manufacturer,
            response_time_ms=self.response_time_ms,
            metadata={str(k): str(v) for k, v in self.metadata.items()},
            discovered_at=self.discovered_at
        )


class CachedDeviceRecord(BaseModel):
    """Schema of one persisted cache entry"""
    model_config = ConfigDict(populate_by_name=True, extra='ignore')

    ip: str
    name: Optional[str] = None
    manufacturer: Optional[str] = None
    protocol: str
    ports: List[int]
    discovered_at: int = Field(alias='discoveredAt')
    last_seen: int = Field(alias='lastSeen')
    response_time: int = Field(alias='responseTime')
    is_online: bool = Field(alias='isOnline')
    metadata: Dict[str, Any] = Field(default_factory=dict)


_PROTOCOL_RANK = {'RTSP': 0, 'ONVIF': 1, 'HTTP': 2, 'TCP': 3}


def _best_protocol(protocols: List[str]) -> str:
    return sorted(protocols, key=lambda p: _PROTOCOL_RANK.get(p, 99))[0]


# ================== PERSISTENCE BACKENDS ==================

class MemoryCacheStore:
    """Non-persistent store"""

    def __init__(self):
        self.records: Dict[str, Any] = {}

    async def load(self) -> Dict[str, Any]:
        return dict(self.records)

    async def save(self, records: Dict[str, Dict[str, Any]]) -> None:
        self.records = dict(records)


class JsonFileCacheStore:
    """Stores the cache map as one JSON document on disk"""

    def __init__(self, path: str):
        self.path = Path(path)

    async def load(self) -> Dict[str, Any]:
        return await asyncio.to_thread(self._read)

    async def save(self, records: Dict[str, Dict[str, Any]]) -> None:
        await asyncio.to_thread(self._write, records)

    def _read(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        with open(self.path, 'r') as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise ValueError(f"Cache file {self.path} does not hold a JSON object")
        return data

    def _write(self, records: Dict[str, Dict[str, Any]]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + '.tmp')
        with open(tmp_path, 'w') as f:
            json.dump(records, f, indent=2)
        tmp_path.replace(self.path)


class PostgresCacheStore:
    """Stores cache records in the discovery_cache table"""

    def __init__(self, database_manager):
        self.db = database_manager

    async def load(self) -> Dict[str, Any]:
        return await self.db.load_discovery_cache()

    async def save(self, records: Dict[str, Dict[str, Any]]) -> None:
        await self.db.save_discovery_cache(records)


# ================== CACHE ==================

class DiscoveryCache:
    """Keyed store of previously seen devices"""

    def __init__(self, store=None, scheduler: Optional[Scheduler] = None,
                 max_age: float = DEFAULT_MAX_AGE, sweep_interval: float = DEFAULT_SWEEP_INTERVAL,
                 clock: Callable[[], float] = time.time):
        self.store = store if store is not None else MemoryCacheStore()
        self.scheduler = scheduler
        self.max_age = max_age
        self.sweep_interval = sweep_interval
        self.clock = clock
        self.events: EventChannel[List[CachedDevice]] = EventChannel("discovery_cache")

        self._devices: Dict[str, CachedDevice] = {}
        self._ip_locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._persist_lock = asyncio.Lock()
        self._sweep_job: Optional[ScheduledJob] = None
        self._initialized = False

    async def initialize(self) -> None:
        """Load persisted records and start the periodic sweep"""
        if self._initialized:
            return
        try:
            raw = await self.store.load()
        except Exception as e:
            logger.error(f"Failed to load discovery cache: {e}")
            raw = {}

        skipped = 0
        for ip, record in raw.items():
            try:
                device = CachedDevice.from_record(record)
            except (ValidationError, TypeError, ValueError) as e:
                skipped += 1
                logger.warning(f"Skipping malformed cache record for {ip}: {e}")
                continue
            self._devices[device.ip] = device

        if skipped:
            logger.warning(f"Discovery cache loaded with {skipped} malformed record(s) skipped")
        logger.info(f"Discovery cache initialized: {len(self._devices)} device(s)")

        if self.scheduler is not None and self.sweep_interval > 0:
            self._sweep_job = self.scheduler.call_every(self.sweep_interval, self._scheduled_sweep, name="cache_sweep")
        self._initialized = True

    async def close(self) -> None:
        if self._sweep_job:
            self._sweep_job.cancel()
            self._sweep_job = None
        self.events.close()
        self._initialized = False

    def subscribe(self, callback: Callable[[List[CachedDevice]], None]) -> Subscription:
        return self.events.subscribe(callback)

    # ---------- mutations ----------

    async def upsert(self, device: CachedDevice) -> CachedDevice:
        async with self._ip_locks[device.ip]:
            merged = self._merge_locked(device)
        await self._commit()
        return merged

    async def upsert_many(self, devices: List[CachedDevice]) -> List[CachedDevice]:
        """Merge a batch and persist/notify once"""
        if not devices:
            return []
        merged = []
        for device in devices:
            async with self._ip_locks[device.ip]:
                merged.append(self._merge_locked(device))
        await self._commit()
        return merged

    def _merge_locked(self, device: CachedDevice) -> CachedDevice:
        existing = self._devices.get(device.ip)
        merged = existing.merge(device) if existing else device
        self._devices[device.ip] = merged
        return merged

    async def mark_offline(self, ip: str) -> bool:
        async with self._ip_locks[ip]:
            device = self._devices.get(ip)
            if not device or not device.is_online:
                return False
            device.is_online = False
        await self._commit()
        return True

    async def remove(self, ip: str) -> bool:
        async with self._ip_locks[ip]:
            removed = self._devices.pop(ip, None)
        if removed is None:
            return False
        self._ip_locks.pop(ip, None)
        await self._commit()
        return True

    async def sweep_expired(self, max_age: Optional[float] = None) -> int:
        """Remove entries not seen for longer than max_age seconds"""
        max_age = self.max_age if max_age is None else max_age
        now = self.clock()
        expired = [ip for ip, device in self._devices.items() if now - device.last_seen > max_age]
        for ip in expired:
            async with self._ip_locks[ip]:
                self._devices.pop(ip, None)
            self._ip_locks.pop(ip, None)
        if expired:
            logger.info(f"[SWEEP] Removed {len(expired)} expired device(s) from discovery cache")
            await self._commit()
        return len(expired)

    async def _scheduled_sweep(self) -> None:
        await self.sweep_expired()

    async def clear(self) -> None:
        self._devices.clear()
        self._ip_locks.clear()
        await self._commit()
        logger.info("Discovery cache cleared")

    async def _commit(self) -> None:
        """Persist the full map, then notify subscribers with the full device list"""
        snapshot = {ip: device.to_record() for ip, device in self._devices.items()}
        async with self._persist_lock:
            try:
                await self.store.save(snapshot)
            except Exception as e:
                logger.error(f"Failed to persist discovery cache: {e}")
        self.events.publish(self.all_devices())

    # ---------- queries ----------

    def get(self, ip: str) -> Optional[CachedDevice]:
        return self._devices.get(ip)

    def all_devices(self, online_only: bool = False) -> List[CachedDevice]:
        devices = list(self._devices.values())
        if online_only:
            devices = [d for d in devices if d.is_online]
        return devices

    def by_protocol(self, protocol: str) -> List[CachedDevice]:
        wanted = protocol.upper()
        return [d for d in self._devices.values() if d.protocol.upper() == wanted]

    def by_priority(self, limit: Optional[int] = None) -> List[CachedDevice]:
        now = self.clock()
        ranked = sorted(self._devices.values(), key=lambda d: d.priority(now), reverse=True)
        return ranked[:limit] if limit is not None else ranked

    def devices_in_subnet(self, network_base: str, online_only: bool = True) -> List[CachedDevice]:
        prefix = network_base.rstrip('.') + '.'
        return [d for d in self.all_devices(online_only) if d.ip.startswith(prefix)]

    def adaptive_timeout(self, ip: str, default: float = 5.0) -> float:
        """Twice the last measured latency, clamped to [1s, 30s]; default when unknown"""
        device = self._devices.get(ip)
        if not device or device.response_time_ms <= 0:
            return default
        timeout = 2.0 * device.response_time_ms / 1000.0
        return min(MAX_ADAPTIVE_TIMEOUT, max(MIN_ADAPTIVE_TIMEOUT, timeout))

    def statistics(self) -> Dict[str, Any]:
        devices = list(self._devices.values())
        online = sum(1 for d in devices if d.is_online)
        protocols: Dict[str, int] = {}
        for device in devices:
            protocols[device.protocol] = protocols.get(device.protocol, 0) + 1
        latencies = [d.response_time_ms for d in devices if d.response_time_ms > 0]
        return {
            'total_devices': len(devices),
            'online_devices': online,
            'offline_devices': len(devices) - online,
            'protocols': protocols,
            'average_response_time_ms': (sum(latencies) / len(latencies)) if latencies else 0.0,
            'cache_size': len(devices)
        }

    def __len__(self) -> int:
        return len(self._devices)

    def __contains__(self, ip: str) -> bool:
        return ip in self._devices
