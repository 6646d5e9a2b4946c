"""
System health and monitoring API routes
"""

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel
from typing import Any, Dict, List, Optional
from datetime import datetime, timezone
import logging

logger = logging.getLogger(__name__)


# Response models
class CameraCounts(BaseModel):
    configured: int
    connected: int
    authenticated: int
    error: int


class HealthResponse(BaseModel):
    status: str
    database: str
    discovering: bool
    cameras: CameraCounts
    cached_devices: int
    active_reconnections: int
    timestamp: datetime
    error: Optional[str] = None


class LastDiscovery(BaseModel):
    network_base: str
    source: str
    device_count: int
    duration_seconds: float
    probe_results: Dict[str, int]
    timed_out_probes: List[str]
    filtered_count: int


def _camera_counts(cameras: Dict[str, Any]) -> CameraCounts:
    managers = list(cameras.values())
    return CameraCounts(
        configured=len(managers),
        connected=sum(1 for m in managers if m.is_connected),
        authenticated=sum(1 for m in managers if m.is_authenticated),
        error=sum(1 for m in managers if m.state.value == 'error')
    )


def create_system_routes(discovery, cameras: Dict[str, Any], supervisor, config: Dict, db_manager=None):
    """Create system monitoring routes"""
    router = APIRouter(prefix="/api/system", tags=["system"])

    @router.get("/health", response_model=HealthResponse)
    async def system_health():
        """System health check"""
        try:
            return HealthResponse(
                status="healthy",
                database="connected" if db_manager is not None else "disabled",
                discovering=discovery.is_discovering,
                cameras=_camera_counts(cameras),
                cached_devices=len(discovery.cache),
                active_reconnections=len(supervisor.active_sessions()),
                timestamp=datetime.now(timezone.utc)
            )
        except Exception as e:
            logger.error(f"Health check failed: {e}")
            return HealthResponse(
                status="unhealthy",
                database="unknown",
                discovering=False,
                cameras=CameraCounts(configured=0, connected=0, authenticated=0, error=0),
                cached_devices=0,
                active_reconnections=0,
                timestamp=datetime.now(timezone.utc),
                error=str(e)
            )

    @router.get("/status")
    async def system_status():
        """Discovery, cache, camera and reconnection overview"""
        try:
            summary = discovery.last_summary
            last_discovery = None
            if summary is not None:
                last_discovery = LastDiscovery(
                    network_base=summary.network_base,
                    source=summary.source,
                    device_count=len(summary.devices),
                    duration_seconds=round(summary.duration_seconds, 3),
                    probe_results=summary.probe_results,
                    timed_out_probes=summary.timed_out_probes,
                    filtered_count=summary.filtered_count
                )
            return {
                "network_base": discovery.network_base or config.get('network', {}).get('network_base'),
                "probes": list(discovery.config.probes),
                "last_discovery": last_discovery,
                "cache": discovery.cache_statistics(),
                "cameras": {camera_id: manager.status() for camera_id, manager in cameras.items()},
                "reconnection": supervisor.statistics(),
                "timestamp": datetime.now(timezone.utc)
            }
        except Exception as e:
            logger.error(f"Error getting system status: {e}")
            raise HTTPException(status_code=500, detail=str(e))

    return router
