"""
Per-camera connection manager: protocol negotiation, state machine and command dispatch
"""

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional

import aiohttp

from config_loader import ConnectionConfig
from events import EventChannel
from . import dvrip
from .dvrip import DvripAuthError, DvripClient, DvripError, DvripProtocolError
from .models import (
    LIVE_STATES, VALID_TRANSITIONS,
    CameraCommand, CameraTarget, ConnectionState, ConnectionStateEvent,
    DeviceInfoCommand, ListRecordingsCommand, OperationResult, Outcome,
    ProtocolPreference, ProtocolType, PtzAction, PtzCommand, StartPlaybackCommand
)
from .onvif import OnvifAuthError, OnvifClient, OnvifError

logger = logging.getLogger(__name__)

NETWORK_ERRORS = (OSError, asyncio.TimeoutError, asyncio.IncompleteReadError, aiohttp.ClientError)

# PTZ velocity vectors (pan, tilt, zoom) for ONVIF ContinuousMove
ONVIF_PTZ_VECTORS = {
    PtzAction.UP: (0.0, 1.0, 0.0),
    PtzAction.DOWN: (0.0, -1.0, 0.0),
    PtzAction.LEFT: (-1.0, 0.0, 0.0),
    PtzAction.RIGHT: (1.0, 0.0, 0.0),
    PtzAction.ZOOM_IN: (0.0, 0.0, 1.0),
    PtzAction.ZOOM_OUT: (0.0, 0.0, -1.0),
}


def classify_error(error: BaseException) -> Outcome:
    if isinstance(error, (OnvifAuthError, DvripAuthError)):
        return Outcome.AUTH_FAILED
    if isinstance(error, (OnvifError, DvripProtocolError, DvripError)):
        return Outcome.PROTOCOL_ERROR
    return Outcome.NETWORK_ERROR


class CameraConnectionManager:
    """
    Owns the control session with one camera

    Each connect() starts a new generation; state changes and client handles coming
    from an older generation are discarded, so a disconnect() issued while a
    connect() is still running leaves no half-open session behind.
    """

    def __init__(self, target: CameraTarget, config: Optional[ConnectionConfig] = None,
                 onvif_factory: Optional[Callable[[CameraTarget], OnvifClient]] = None,
                 dvrip_factory: Optional[Callable[[CameraTarget, int], DvripClient]] = None,
                 port_discoverer=None, sleep=asyncio.sleep):
        self.target = target
        self.config = config or ConnectionConfig()
        self.onvif_factory = onvif_factory or self._default_onvif_client
        self.dvrip_factory = dvrip_factory or self._default_dvrip_client
        self.port_discoverer = port_discoverer or dvrip.discover_port
        self._sleep = sleep

        self.state = ConnectionState.DISCONNECTED
        self.active_protocol: Optional[ProtocolType] = None
        self.last_error: Optional[str] = None
        self.last_outcome: Optional[Outcome] = None
        self.device_info: Dict[str, Any] = {}
        self.state_events: EventChannel[ConnectionStateEvent] = EventChannel(f"connection:{target.camera_id}")

        self._generation = 0
        self._onvif: Optional[OnvifClient] = None
        self._dvrip: Optional[DvripClient] = None
        self._dvrip_port: Optional[int] = None
        self._profile_token: Optional[str] = None
        self._connect_lock = asyncio.Lock()

    # ---------- factories ----------

    def _default_onvif_client(self, target: CameraTarget) -> OnvifClient:
        creds = target.credentials
        return OnvifClient(
            target.host, target.onvif_port,
            username=creds.username if creds else None,
            password=creds.password if creds else None,
            timeout=self.config.timeout
        )

    def _default_dvrip_client(self, target: CameraTarget, port: int) -> DvripClient:
        return DvripClient(
            target.host, port,
            connect_timeout=self.config.dvrip_connect_timeout,
            response_timeout=self.config.dvrip_response_timeout
        )

    # ---------- state ----------

    @property
    def camera_id(self) -> str:
        return self.target.camera_id

    @property
    def is_connected(self) -> bool:
        return self.state in LIVE_STATES

    @property
    def is_authenticated(self) -> bool:
        return self.state == ConnectionState.AUTHENTICATED

    def _set_state(self, state: ConnectionState, generation: Optional[int] = None,
                   message: Optional[str] = None, outcome: Optional[Outcome] = None) -> bool:
        if generation is not None and generation != self._generation:
            return False
        if state == self.state:
            return True
        previous = self.state
        if state != ConnectionState.DISCONNECTED and state not in VALID_TRANSITIONS.get(previous, set()):
            logger.warning(f"[{self.camera_id}] Unexpected transition {previous.value} -> {state.value}")
        self.state = state
        if state == ConnectionState.ERROR:
            logger.warning(f"[{self.camera_id}] {previous.value} -> error: {message}")
        else:
            logger.info(f"[{self.camera_id}] {previous.value} -> {state.value}")
        self.state_events.publish(ConnectionStateEvent(
            camera_id=self.camera_id,
            previous=previous,
            state=state,
            protocol=self.active_protocol,
            message=message,
            outcome=outcome
        ))
        return True

    def status(self) -> Dict[str, Any]:
        return {
            'camera_id': self.camera_id,
            'host': self.target.host,
            'name': self.target.name,
            'state': self.state.value,
            'protocol': self.active_protocol.value if self.active_protocol else None,
            'preference': self.target.preference.value,
            'last_error': self.last_error,
            'last_outcome': self.last_outcome.value if self.last_outcome else None,
            'device_info': dict(self.device_info)
        }

    # ---------- connect / disconnect ----------

    async def connect(self, timeout: Optional[float] = None) -> OperationResult:
        """Negotiate a protocol according to the target's preference"""
        async with self._connect_lock:
            if self.is_connected:
                return OperationResult.ok({'state': self.state.value}, self.active_protocol)

            self._generation += 1
            generation = self._generation
            timeout = self.config.timeout if timeout is None else timeout
            self._set_state(ConnectionState.CONNECTING, generation)

            result = await self._negotiate(generation, timeout)

            if generation != self._generation:
                return OperationResult.fail(Outcome.NETWORK_ERROR, "connection attempt superseded by disconnect")

            self.last_outcome = result.outcome
            if result.success:
                self.last_error = None
            else:
                self.last_error = result.error
                await self._close_clients()
                self.active_protocol = None
                self._set_state(ConnectionState.ERROR, generation, result.error, result.outcome)
            return result

    async def _negotiate(self, generation: int, timeout: float) -> OperationResult:
        preference = self.target.preference
        if preference == ProtocolPreference.ONVIF:
            order = [ProtocolType.ONVIF]
        elif preference == ProtocolPreference.PROPRIETARY:
            order = [ProtocolType.PROPRIETARY]
        else:
            order = [ProtocolType.ONVIF, ProtocolType.PROPRIETARY]

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        failures: List[OperationResult] = []
        for index, protocol in enumerate(order):
            if index > 0:
                logger.info(f"[{self.camera_id}] Falling back to {protocol.value}")
                self._set_state(ConnectionState.CONNECTING, generation)

            # A protocol with a fallback behind it only gets its share of the budget
            remaining = deadline - loop.time()
            if index < len(order) - 1:
                budget = min(remaining, timeout * self.config.onvif_budget_fraction)
            else:
                budget = remaining

            result = await self._attempt_protocol(protocol, generation, budget)
            if result.success:
                logger.info(f"[OK] {self.camera_id} connected via {protocol.value} ({self.state.value})")
                return result
            logger.info(f"[{self.camera_id}] {protocol.value} failed: {result.error}")
            failures.append(result)

        # Report auth failures ahead of network noise so callers can ask for new credentials
        auth_failures = [f for f in failures if f.outcome == Outcome.AUTH_FAILED]
        primary = auth_failures[0] if auth_failures else failures[-1]
        message = '; '.join(f"{f.protocol_used.value if f.protocol_used else '?'}: {f.error}" for f in failures)
        return OperationResult.fail(primary.outcome, message, primary.protocol_used)

    async def _attempt_protocol(self, protocol: ProtocolType, generation: int, budget: float) -> OperationResult:
        if budget <= 0:
            return OperationResult.fail(Outcome.NETWORK_ERROR, "no time left in the connection budget", protocol)
        attempt = self._connect_onvif if protocol == ProtocolType.ONVIF else self._connect_proprietary
        try:
            return await asyncio.wait_for(attempt(generation), budget)
        except asyncio.TimeoutError:
            # Drop whatever the cancelled attempt had already adopted
            if generation == self._generation:
                await self._close_clients()
                self.active_protocol = None
            return OperationResult.fail(Outcome.NETWORK_ERROR,
                                        f"{protocol.value} timed out after {budget:.1f}s", protocol)

    async def _connect_onvif(self, generation: int) -> OperationResult:
        protocol = ProtocolType.ONVIF
        client = self.onvif_factory(self.target)
        adopted = False
        try:
            try:
                await client.get_system_date_and_time()
            except OnvifAuthError as e:
                if not e.soap_fault:
                    # A bare 401 comes from any password-protected web server
                    return OperationResult.fail(Outcome.PROTOCOL_ERROR,
                                                f"ONVIF handshake refused without a SOAP fault: {e}", protocol)
                # Some firmwares protect even the clock query; the service is still ONVIF
                logger.debug(f"[{self.camera_id}] GetSystemDateAndTime requires authentication")
            except Exception as e:
                return OperationResult.fail(classify_error(e), f"ONVIF handshake failed: {e or type(e).__name__}", protocol)

            if generation != self._generation:
                return OperationResult.fail(Outcome.NETWORK_ERROR, "superseded", protocol)

            self._onvif = client
            adopted = True
        finally:
            if not adopted:
                await client.close()

        self.active_protocol = protocol
        self._set_state(ConnectionState.CONNECTED, generation)

        if not self.target.credentials:
            return OperationResult.ok({'state': self.state.value}, protocol)

        self._set_state(ConnectionState.AUTHENTICATING, generation)
        try:
            self.device_info = await client.get_device_information()
        except Exception as e:
            await self._close_clients()
            self.active_protocol = None
            return OperationResult.fail(classify_error(e), f"ONVIF authentication failed: {e or type(e).__name__}", protocol)

        self._set_state(ConnectionState.AUTHENTICATED, generation)
        return OperationResult.ok(dict(self.device_info), protocol)

    async def _connect_proprietary(self, generation: int) -> OperationResult:
        protocol = ProtocolType.PROPRIETARY
        ports = [self.target.proprietary_port] if self.target.proprietary_port else None
        try:
            port = await self.port_discoverer(self.target.host, ports=ports,
                                              timeout=self.config.dvrip_response_timeout)
        except Exception as e:
            return OperationResult.fail(classify_error(e), f"DVRIP port discovery failed: {e}", protocol)
        if port is None:
            return OperationResult.fail(Outcome.PROTOCOL_ERROR, "no DVRIP port answered", protocol)

        client = self.dvrip_factory(self.target, port)
        adopted = False
        try:
            try:
                await client.connect()
            except Exception as e:
                return OperationResult.fail(classify_error(e), f"DVRIP connect to port {port} failed: {e or type(e).__name__}", protocol)

            if generation != self._generation:
                return OperationResult.fail(Outcome.NETWORK_ERROR, "superseded", protocol)

            self._dvrip = client
            self._dvrip_port = port
            adopted = True
        finally:
            if not adopted:
                await client.close()

        self.active_protocol = protocol
        self._set_state(ConnectionState.CONNECTED, generation)

        if not self.target.credentials:
            return OperationResult.ok({'port': port, 'state': self.state.value}, protocol)

        self._set_state(ConnectionState.AUTHENTICATING, generation)
        creds = self.target.credentials
        try:
            login = await client.login(creds.username, creds.password)
        except Exception as e:
            await self._close_clients()
            self.active_protocol = None
            return OperationResult.fail(classify_error(e), f"DVRIP login failed: {e or type(e).__name__}", protocol)

        if not login.success:
            await self._close_clients()
            self.active_protocol = None
            outcome = Outcome.AUTH_FAILED if login.ret is not None else Outcome.PROTOCOL_ERROR
            return OperationResult.fail(outcome, f"DVRIP login rejected: {login.error}", protocol)

        self._set_state(ConnectionState.AUTHENTICATED, generation)
        return OperationResult.ok({'port': port, 'session_id': dvrip.format_session_id(login.session_id)}, protocol)

    async def _close_clients(self) -> None:
        onvif_client, dvrip_client = self._onvif, self._dvrip
        self._onvif = None
        self._dvrip = None
        self._dvrip_port = None
        self._profile_token = None
        if dvrip_client is not None:
            try:
                await dvrip_client.logout()
            except Exception as e:
                logger.debug(f"[{self.camera_id}] DVRIP logout failed: {e}")
            await dvrip_client.close()
        if onvif_client is not None:
            await onvif_client.close()

    async def disconnect(self) -> None:
        """Always ends in DISCONNECTED; retires any connect() still in flight"""
        self._generation += 1
        await self._close_clients()
        self.active_protocol = None
        self._set_state(ConnectionState.DISCONNECTED)

    async def reconnect(self, timeout: Optional[float] = None) -> OperationResult:
        await self.disconnect()
        await self._sleep(self.config.reconnect_pause)
        return await self.connect(timeout)

    async def close(self) -> None:
        await self.disconnect()
        self.state_events.close()

    # ---------- operations ----------

    def _require(self, authenticated: bool = False) -> Optional[OperationResult]:
        if not self.is_connected:
            return OperationResult.fail(Outcome.NOT_CONNECTED, f"camera {self.camera_id} is not connected")
        if authenticated and not self.is_authenticated:
            return OperationResult.fail(Outcome.NOT_CONNECTED,
                                        f"camera {self.camera_id} requires an authenticated session",
                                        self.active_protocol)
        return None

    def _operation_failed(self, operation: str, error: BaseException) -> OperationResult:
        outcome = classify_error(error)
        message = f"{operation} failed: {error or type(error).__name__}"
        logger.warning(f"[{self.camera_id}] {message}")
        if outcome == Outcome.NETWORK_ERROR and self.is_connected:
            # The session is gone; supervisors watching state events take it from here
            self._set_state(ConnectionState.ERROR, self._generation, message, outcome)
        return OperationResult.fail(outcome, message, self.active_protocol)

    async def get_device_info(self) -> OperationResult:
        blocked = self._require()
        if blocked:
            return blocked
        protocol = self.active_protocol
        try:
            if protocol == ProtocolType.ONVIF:
                info = await self._onvif.get_device_information()
            else:
                info = await self._dvrip.get_system_info()
        except Exception as e:
            return self._operation_failed("device info", e)
        self.device_info = dict(info)
        return OperationResult.ok(info, protocol)

    async def list_recordings(self, start_time: float, end_time: float, channel: int = 0) -> OperationResult:
        blocked = self._require(authenticated=True)
        if blocked:
            return blocked
        protocol = self.active_protocol
        if protocol == ProtocolType.ONVIF:
            return OperationResult.fail(Outcome.UNSUPPORTED,
                                        "recording listing is not supported over ONVIF", protocol)
        try:
            files = await self._dvrip.query_files(start_time, end_time, channel)
        except Exception as e:
            return self._operation_failed("recording query", e)
        return OperationResult.ok(files, protocol)

    async def start_playback(self, recording_id: str, channel: int = 0) -> OperationResult:
        blocked = self._require(authenticated=True)
        if blocked:
            return blocked
        protocol = self.active_protocol
        if protocol == ProtocolType.ONVIF:
            return OperationResult.fail(Outcome.UNSUPPORTED,
                                        "SD-card playback is not supported over ONVIF", protocol)
        try:
            data = await self._dvrip.start_playback(recording_id, channel)
        except Exception as e:
            return self._operation_failed("playback", e)
        return OperationResult.ok(data, protocol)

    async def ptz(self, action: PtzAction, speed: float = 0.5, channel: int = 0) -> OperationResult:
        blocked = self._require()
        if blocked:
            return blocked
        protocol = self.active_protocol
        try:
            if protocol == ProtocolType.ONVIF:
                token = await self._onvif_profile_token()
                if action == PtzAction.STOP:
                    await self._onvif.stop(token)
                else:
                    pan, tilt, zoom = ONVIF_PTZ_VECTORS[action]
                    await self._onvif.continuous_move(token, pan * speed, tilt * speed, zoom * speed)
                accepted = True
            else:
                accepted = await self._dvrip.ptz_control(action.value, speed, channel)
        except Exception as e:
            return self._operation_failed("PTZ", e)
        if not accepted:
            return OperationResult.fail(Outcome.PROTOCOL_ERROR, f"PTZ {action.value} rejected", protocol)
        return OperationResult.ok({'action': action.value, 'speed': speed}, protocol)

    async def get_stream_uri(self) -> OperationResult:
        blocked = self._require()
        if blocked:
            return blocked
        protocol = self.active_protocol
        if protocol == ProtocolType.ONVIF:
            try:
                token = await self._onvif_profile_token()
                uri = await self._onvif.get_stream_uri(token)
            except Exception as e:
                return self._operation_failed("stream URI", e)
            return OperationResult.ok({'uri': uri}, protocol)

        creds = self.target.credentials
        user = creds.username if creds else 'admin'
        password = creds.password if creds else ''
        uri = (f"rtsp://{self.target.host}:{self.target.rtsp_port}/"
               f"user={user}&password={password}&channel=1&stream=0.sdp")
        return OperationResult.ok({'uri': uri}, protocol)

    async def _onvif_profile_token(self) -> str:
        if self._profile_token:
            return self._profile_token
        if not self._onvif.service_urls:
            try:
                await self._onvif.get_capabilities()
            except OnvifError as e:
                logger.debug(f"[{self.camera_id}] GetCapabilities failed, using device service URL: {e}")
        profiles = await self._onvif.get_profiles()
        if not profiles or not profiles[0].get('token'):
            raise OnvifError("camera reported no media profiles")
        self._profile_token = profiles[0]['token']
        return self._profile_token

    async def execute(self, command: CameraCommand) -> OperationResult:
        """Dispatch a typed command through the active protocol"""
        if isinstance(command, DeviceInfoCommand):
            return await self.get_device_info()
        if isinstance(command, ListRecordingsCommand):
            return await self.list_recordings(command.start_time, command.end_time, command.channel)
        if isinstance(command, StartPlaybackCommand):
            return await self.start_playback(command.recording_id, command.channel)
        if isinstance(command, PtzCommand):
            return await self.ptz(command.action, command.speed, command.channel)
        return OperationResult.fail(Outcome.UNSUPPORTED, f"unknown command {command!r}", self.active_protocol)

    async def test_connection(self) -> bool:
        """Health probe used by the reconnection supervisor"""
        if not self.is_connected:
            return False
        try:
            if self.active_protocol == ProtocolType.ONVIF:
                await self._onvif.get_system_date_and_time()
                return True
            if self._dvrip.authenticated:
                return await self._dvrip.keepalive()
            port = await self.port_discoverer(self.target.host, ports=[self._dvrip_port],
                                              timeout=self.config.dvrip_response_timeout)
            return port is not None
        except OnvifAuthError:
            return True
        except Exception as e:
            logger.debug(f"[{self.camera_id}] Health probe failed: {e}")
            return False
