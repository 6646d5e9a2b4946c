"""
Device discovery and cache API routes
"""

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel
from typing import Dict, List, Optional
import logging

logger = logging.getLogger(__name__)


# Request models
class DiscoveryRequest(BaseModel):
    network_base: Optional[str] = None
    force_refresh: bool = False


class ValidateRequest(BaseModel):
    ips: Optional[List[str]] = None     # None validates every cached device


# Response models
class DeviceResponse(BaseModel):
    ip: str
    port: int
    protocol: str
    discovery_method: str
    name: Optional[str] = None
    manufacturer: Optional[str] = None
    model: Optional[str] = None
    response_time_ms: Optional[int] = None
    metadata: Dict[str, str] = {}


class CachedDeviceResponse(BaseModel):
    ip: str
    protocol: str
    ports: List[int]
    name: Optional[str] = None
    manufacturer: Optional[str] = None
    is_online: bool
    last_seen: float
    response_time_ms: int
    priority: float


class DiscoveryResponse(BaseModel):
    network_base: Optional[str]
    source: str
    count: int
    duration_seconds: float
    timed_out_probes: List[str] = []
    filtered_count: int = 0
    devices: List[DeviceResponse]


class ValidationResponse(BaseModel):
    ip: str
    port: int
    is_valid: bool
    reason: str
    confidence: float
    checks: Dict[str, bool]


def _device_response(candidate) -> DeviceResponse:
    return DeviceResponse(**candidate.to_dict())


def create_discovery_routes(discovery):
    """Create discovery and cache routes"""
    router = APIRouter(prefix="/api", tags=["discovery"])

    @router.get("/devices", response_model=List[CachedDeviceResponse])
    async def list_devices(online_only: bool = False, limit: Optional[int] = Query(default=None, ge=1)):
        """Cached devices, highest priority first"""
        cache = discovery.cache
        now = cache.clock()
        devices = cache.by_priority()
        if online_only:
            devices = [d for d in devices if d.is_online]
        if limit is not None:
            devices = devices[:limit]
        return [
            CachedDeviceResponse(
                ip=d.ip,
                protocol=d.protocol,
                ports=list(d.ports),
                name=d.name,
                manufacturer=d.manufacturer,
                is_online=d.is_online,
                last_seen=d.last_seen,
                response_time_ms=int(d.response_time_ms),
                priority=round(d.priority(now), 3)
            )
            for d in devices
        ]

    @router.post("/discovery", response_model=DiscoveryResponse)
    async def run_discovery(request: Optional[DiscoveryRequest] = None):
        """Run one discovery pass (served from cache unless force_refresh)"""
        request = request or DiscoveryRequest()
        if discovery.is_discovering:
            raise HTTPException(status_code=409, detail="Discovery already in progress")
        try:
            devices = await discovery.discover(request.network_base, force_refresh=request.force_refresh)
        except Exception as e:
            logger.error(f"Discovery request failed: {e}")
            raise HTTPException(status_code=500, detail=str(e))

        summary = discovery.last_summary
        return DiscoveryResponse(
            network_base=summary.network_base if summary else request.network_base,
            source=summary.source if summary else "none",
            count=len(devices),
            duration_seconds=round(summary.duration_seconds, 3) if summary else 0.0,
            timed_out_probes=list(summary.timed_out_probes) if summary else [],
            filtered_count=summary.filtered_count if summary else 0,
            devices=[_device_response(d) for d in devices]
        )

    @router.post("/discovery/host/{ip}", response_model=List[DeviceResponse])
    async def discover_host(ip: str, manufacturer: Optional[str] = None):
        """Scan a single host directly"""
        devices = await discovery.discover_specific_ip(ip, manufacturer)
        return [_device_response(d) for d in devices]

    @router.post("/discovery/rtsp", response_model=List[DeviceResponse])
    async def discover_rtsp(network_base: Optional[str] = None):
        """Quick sweep of RTSP ports only"""
        devices = await discovery.quick_rtsp_discovery(network_base)
        return [_device_response(d) for d in devices]

    @router.post("/discovery/validate", response_model=List[ValidationResponse])
    async def validate_devices(request: Optional[ValidateRequest] = None):
        """Protocol-level validation of cached devices"""
        request = request or ValidateRequest()
        cached = discovery.cache.all_devices()
        if request.ips is not None:
            wanted = set(request.ips)
            cached = [d for d in cached if d.ip in wanted]
        if not cached:
            return []

        await discovery.validate([d.to_candidate() for d in cached])
        return [
            ValidationResponse(
                ip=result.candidate.ip,
                port=result.candidate.port,
                is_valid=result.is_valid,
                reason=result.reason,
                confidence=result.confidence,
                checks=result.checks
            )
            for result in discovery.last_validation
        ]

    @router.delete("/devices/cache")
    async def clear_cache():
        """Drop every cached device"""
        removed = len(discovery.cache)
        await discovery.clear_cache()
        logger.info(f"Discovery cache cleared via API ({removed} device(s))")
        return {"cleared": removed}

    @router.get("/devices/cache/stats")
    async def cache_stats():
        return discovery.cache_statistics()

    return router
