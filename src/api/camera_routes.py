"""
Camera control and reconnection API routes
"""

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel
from typing import Any, Dict, List, Optional
import logging

from connection.models import parse_command

logger = logging.getLogger(__name__)


# Request models
class ConnectRequest(BaseModel):
    timeout: Optional[float] = None


class EnabledRequest(BaseModel):
    enabled: bool


# Response models
class CameraResponse(BaseModel):
    camera_id: str
    host: str
    name: Optional[str] = None
    state: str
    protocol: Optional[str] = None
    preference: str
    last_error: Optional[str] = None
    last_outcome: Optional[str] = None
    device_info: Dict[str, Any] = {}
    reconnection_state: str


class OperationResponse(BaseModel):
    camera_id: str
    success: bool
    outcome: str
    protocol_used: Optional[str] = None
    data: Any = None
    error: Optional[str] = None


class ConnectionEventResponse(BaseModel):
    camera_id: str
    ts: str
    source: str
    state: str
    previous_state: Optional[str] = None
    protocol: Optional[str] = None
    outcome: Optional[str] = None
    message: Optional[str] = None
    attempt: Optional[int] = None


class ReconnectionActionResponse(BaseModel):
    camera_id: str
    action: str
    accepted: bool
    state: str


def _operation_response(camera_id: str, result) -> OperationResponse:
    return OperationResponse(camera_id=camera_id, **result.to_dict())


def create_camera_routes(cameras: Dict[str, Any], supervisor, event_log=None):
    """Create camera connection and command routes"""
    router = APIRouter(prefix="/api/cameras", tags=["cameras"])

    def _get_manager(camera_id: str):
        manager = cameras.get(camera_id)
        if manager is None:
            raise HTTPException(status_code=404, detail=f"Camera {camera_id} not found")
        return manager

    def _camera_response(manager) -> CameraResponse:
        return CameraResponse(
            **manager.status(),
            reconnection_state=supervisor.get_state(manager.camera_id).value
        )

    @router.get("", response_model=List[CameraResponse])
    async def list_cameras():
        """All configured cameras with their connection state"""
        return [_camera_response(manager) for manager in cameras.values()]

    @router.get("/{camera_id}", response_model=CameraResponse)
    async def get_camera(camera_id: str):
        return _camera_response(_get_manager(camera_id))

    @router.post("/{camera_id}/connect", response_model=OperationResponse)
    async def connect_camera(camera_id: str, request: Optional[ConnectRequest] = None):
        """Connect using the camera's configured protocol preference"""
        manager = _get_manager(camera_id)
        timeout = request.timeout if request else None
        result = await manager.connect(timeout)
        logger.info(f"API connect {camera_id}: {result.outcome.value}")
        return _operation_response(camera_id, result)

    @router.post("/{camera_id}/disconnect")
    async def disconnect_camera(camera_id: str):
        manager = _get_manager(camera_id)
        supervisor.stop_reconnection(camera_id)
        await manager.disconnect()
        return {"camera_id": camera_id, "state": manager.state.value}

    @router.post("/{camera_id}/command", response_model=OperationResponse)
    async def execute_command(camera_id: str, command: Dict[str, Any]):
        """
        Run one typed command: device_info, list_recordings, start_playback or ptz
        Example: {"kind": "ptz", "action": "left", "speed": 0.5}
        """
        manager = _get_manager(camera_id)
        try:
            parsed = parse_command(command)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        result = await manager.execute(parsed)
        return _operation_response(camera_id, result)

    @router.get("/{camera_id}/events", response_model=List[ConnectionEventResponse])
    async def camera_events(camera_id: str, limit: int = Query(default=50, ge=1, le=1000)):
        """Recent connection and reconnection state changes, newest first"""
        _get_manager(camera_id)
        if event_log is None:
            return []
        records = await event_log.recent(camera_id, limit)
        return [ConnectionEventResponse(**record.to_dict()) for record in records]

    return router


def create_reconnection_routes(cameras: Dict[str, Any], supervisor):
    """Create reconnection supervisor routes"""
    router = APIRouter(prefix="/api/reconnection", tags=["reconnection"])

    def _require_camera(camera_id: str) -> None:
        if camera_id not in cameras:
            raise HTTPException(status_code=404, detail=f"Camera {camera_id} not found")

    def _action(camera_id: str, action: str, accepted: bool) -> ReconnectionActionResponse:
        return ReconnectionActionResponse(
            camera_id=camera_id,
            action=action,
            accepted=accepted,
            state=supervisor.get_state(camera_id).value
        )

    @router.get("")
    async def reconnection_status():
        """Supervisor statistics and every session"""
        return supervisor.statistics()

    @router.post("/{camera_id}/start", response_model=ReconnectionActionResponse)
    async def start_reconnection(camera_id: str):
        _require_camera(camera_id)
        accepted = await supervisor.start_reconnection(camera_id, reason="requested via API")
        return _action(camera_id, "start", accepted)

    @router.post("/{camera_id}/stop", response_model=ReconnectionActionResponse)
    async def stop_reconnection(camera_id: str):
        _require_camera(camera_id)
        return _action(camera_id, "stop", supervisor.stop_reconnection(camera_id))

    @router.post("/{camera_id}/force", response_model=ReconnectionActionResponse)
    async def force_reconnection(camera_id: str):
        _require_camera(camera_id)
        accepted = await supervisor.force_reconnection(camera_id)
        return _action(camera_id, "force", accepted)

    @router.put("/enabled")
    async def set_enabled(request: EnabledRequest):
        await supervisor.set_enabled(request.enabled)
        return {"enabled": supervisor.global_enabled}

    return router
