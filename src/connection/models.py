"""
Connection data structures: protocol/state enums, targets, commands and results
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Union


class ProtocolType(Enum):
    ONVIF = "onvif"
    PROPRIETARY = "proprietary"


class ProtocolPreference(Enum):
    AUTO = "auto"
    ONVIF = "onvif"
    PROPRIETARY = "proprietary"


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"
    ERROR = "error"


# Allowed transitions; disconnect() may always return to DISCONNECTED
VALID_TRANSITIONS = {
    ConnectionState.DISCONNECTED: {ConnectionState.CONNECTING},
    ConnectionState.CONNECTING: {ConnectionState.CONNECTED, ConnectionState.ERROR},
    # CONNECTING is re-entered when auto negotiation falls back to the next protocol
    ConnectionState.CONNECTED: {ConnectionState.AUTHENTICATING, ConnectionState.CONNECTING, ConnectionState.ERROR},
    ConnectionState.AUTHENTICATING: {ConnectionState.AUTHENTICATED, ConnectionState.CONNECTING, ConnectionState.ERROR},
    ConnectionState.AUTHENTICATED: {ConnectionState.ERROR},
    ConnectionState.ERROR: {ConnectionState.CONNECTING},
}

LIVE_STATES = (ConnectionState.CONNECTED, ConnectionState.AUTHENTICATING, ConnectionState.AUTHENTICATED)


class Outcome(Enum):
    SUCCESS = "success"
    NOT_CONNECTED = "not_connected"
    UNSUPPORTED = "unsupported"
    AUTH_FAILED = "auth_failed"
    NETWORK_ERROR = "network_error"
    PROTOCOL_ERROR = "protocol_error"


@dataclass
class OperationResult:
    """Uniform result of every connection operation"""
    success: bool
    outcome: Outcome
    data: Any = None
    error: Optional[str] = None
    protocol_used: Optional[ProtocolType] = None

    @classmethod
    def ok(cls, data: Any = None, protocol: Optional[ProtocolType] = None) -> 'OperationResult':
        return cls(True, Outcome.SUCCESS, data=data, protocol_used=protocol)

    @classmethod
    def fail(cls, outcome: Outcome, error: str, protocol: Optional[ProtocolType] = None) -> 'OperationResult':
        return cls(False, outcome, error=error, protocol_used=protocol)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': self.success,
            'outcome': self.outcome.value,
            'data': self.data,
            'error': self.error,
            'protocol_used': self.protocol_used.value if self.protocol_used else None
        }


@dataclass
class CameraCredentials:
    username: str
    password: str = ""


@dataclass
class CameraTarget:
    """Everything needed to reach one camera"""
    camera_id: str
    host: str
    onvif_port: int = 80
    proprietary_port: Optional[int] = None     # None probes the known DVRIP ports
    rtsp_port: int = 554
    credentials: Optional[CameraCredentials] = None
    preference: ProtocolPreference = ProtocolPreference.AUTO
    name: Optional[str] = None

    @classmethod
    def from_config(cls, entry: Dict[str, Any]) -> 'CameraTarget':
        credentials = None
        if entry.get('username'):
            credentials = CameraCredentials(entry['username'], entry.get('password', '') or '')
        return cls(
            camera_id=str(entry['id']),
            host=entry['host'],
            onvif_port=int(entry.get('onvif_port', 80)),
            proprietary_port=entry.get('proprietary_port'),
            rtsp_port=int(entry.get('rtsp_port', 554)),
            credentials=credentials,
            preference=ProtocolPreference(entry.get('protocol', 'auto')),
            name=entry.get('name')
        )


@dataclass
class ConnectionStateEvent:
    """Published on every state transition of a connection manager"""
    camera_id: str
    previous: ConnectionState
    state: ConnectionState
    protocol: Optional[ProtocolType] = None
    message: Optional[str] = None
    outcome: Optional[Outcome] = None
    timestamp: float = field(default_factory=time.time)


# ================== COMMANDS ==================

class PtzAction(Enum):
    UP = "up"
    DOWN = "down"
    LEFT = "left"
    RIGHT = "right"
    ZOOM_IN = "zoom_in"
    ZOOM_OUT = "zoom_out"
    STOP = "stop"


@dataclass
class DeviceInfoCommand:
    kind: str = "device_info"


@dataclass
class ListRecordingsCommand:
    start_time: float
    end_time: float
    channel: int = 0
    kind: str = "list_recordings"


@dataclass
class StartPlaybackCommand:
    recording_id: str
    channel: int = 0
    kind: str = "start_playback"


@dataclass
class PtzCommand:
    action: PtzAction
    speed: float = 0.5
    channel: int = 0
    kind: str = "ptz"


CameraCommand = Union[DeviceInfoCommand, ListRecordingsCommand, StartPlaybackCommand, PtzCommand]

_COMMAND_KINDS = {
    'device_info': DeviceInfoCommand,
    'list_recordings': ListRecordingsCommand,
    'start_playback': StartPlaybackCommand,
    'ptz': PtzCommand,
}


def parse_command(payload: Dict[str, Any]) -> CameraCommand:
    """Build a typed command from a {'kind': ..., ...} mapping; raises ValueError on unknown shapes"""
    kind = payload.get('kind')
    if kind not in _COMMAND_KINDS:
        raise ValueError(f"Unknown command kind: {kind}")
    try:
        if kind == 'device_info':
            return DeviceInfoCommand()
        if kind == 'list_recordings':
            return ListRecordingsCommand(
                start_time=float(payload['start_time']),
                end_time=float(payload['end_time']),
                channel=int(payload.get('channel', 0))
            )
        if kind == 'start_playback':
            return StartPlaybackCommand(
                recording_id=str(payload['recording_id']),
                channel=int(payload.get('channel', 0))
            )
        return PtzCommand(
            action=PtzAction(payload['action']),
            speed=float(payload.get('speed', 0.5)),
            channel=int(payload.get('channel', 0))
        )
    except KeyError as e:
        raise ValueError(f"Command '{kind}' missing field {e}") from e
