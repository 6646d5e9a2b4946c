"""
Connection module: per-camera protocol sessions and automatic reconnection
"""

from .dvrip import DvripClient, DvripError, LoginResult
from .manager import CameraConnectionManager
from .models import (
    CameraCredentials, CameraTarget, ConnectionState, ConnectionStateEvent,
    OperationResult, Outcome, ProtocolPreference, ProtocolType, PtzAction, parse_command
)
from .onvif import OnvifClient, OnvifError
from .reconnection import (
    ReconnectionConfig, ReconnectionEvent, ReconnectionSession, ReconnectionState,
    ReconnectionSupervisor, calculate_backoff_delay
)

__all__ = [
    'CameraConnectionManager',
    'CameraCredentials', 'CameraTarget', 'ConnectionState', 'ConnectionStateEvent',
    'OperationResult', 'Outcome', 'ProtocolPreference', 'ProtocolType', 'PtzAction', 'parse_command',
    'DvripClient', 'DvripError', 'LoginResult',
    'OnvifClient', 'OnvifError',
    'ReconnectionConfig', 'ReconnectionEvent', 'ReconnectionSession', 'ReconnectionState',
    'ReconnectionSupervisor', 'calculate_backoff_delay',
]
