"""
DVRIP (Sofia / XMEye) proprietary camera protocol

Every message is a fixed 20-byte header followed by a UTF-8 JSON payload:
    magic 0xFF | version 0x01 | 2 reserved | session (LE u32) | sequence (LE u32)
    | command code (LE u32) | payload length (LE u32)
"""

import asyncio
import hashlib
import json
import logging
import struct
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError

logger = logging.getLogger(__name__)

MAGIC = 0xFF
VERSION = 0x01
HEADER_FORMAT = '<BB2xIIII'
HEADER_SIZE = struct.calcsize(HEADER_FORMAT)   # 20
MAX_PAYLOAD_SIZE = 1024 * 1024

DEFAULT_PORTS = [34567, 37777, 8000, 8080, 9000]

RET_OK = 100
RET_MESSAGES = {
    100: "OK",
    101: "Unknown error",
    102: "Unsupported version",
    103: "Request not permitted",
    104: "User already logged in",
    105: "User is not logged in",
    106: "Username or password is incorrect",
    107: "User does not have permission",
    203: "Password is incorrect",
    205: "User does not exist",
    206: "User is locked",
    207: "User is in the blacklist",
}

SOFIA_ALPHABET = '0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz'


class CommandCode:
    LOGIN_REQ = 1000
    LOGIN_RSP = 1001
    LOGOUT_REQ = 1002
    LOGOUT_RSP = 1003
    KEEPALIVE_REQ = 1006
    KEEPALIVE_RSP = 1007
    SYSINFO_REQ = 1020
    SYSINFO_RSP = 1021
    PTZ_REQ = 1400
    PTZ_RSP = 1401
    PLAYBACK_REQ = 1420
    PLAYBACK_RSP = 1421
    FILESEARCH_REQ = 1440
    FILESEARCH_RSP = 1441


PTZ_COMMANDS = {
    'up': 'DirectionUp',
    'down': 'DirectionDown',
    'left': 'DirectionLeft',
    'right': 'DirectionRight',
    'zoom_in': 'ZoomTile',
    'zoom_out': 'ZoomWide',
    # DVRIP has no stop command; a direction with step 0 halts the motor
    'stop': 'DirectionUp',
}


class DvripError(Exception):
    """Base class for DVRIP failures"""


class DvripProtocolError(DvripError):
    """Malformed header, wrong magic/version or payload that fails its schema"""


class DvripAuthError(DvripError):
    """Login rejected by the device"""


# ================== CODEC ==================

@dataclass
class DvripHeader:
    session_id: int
    sequence: int
    command: int
    length: int
    magic: int = MAGIC
    version: int = VERSION


@dataclass
class DvripMessage:
    header: DvripHeader
    payload: Dict[str, Any]


def sofia_hash(password: str) -> str:
    """8-character password digest used by DVRIP logins"""
    digest = hashlib.md5(password.encode('utf-8')).digest()
    return ''.join(
        SOFIA_ALPHABET[(digest[2 * i] + digest[2 * i + 1]) % len(SOFIA_ALPHABET)]
        for i in range(8)
    )


def encode_header(header: DvripHeader) -> bytes:
    return struct.pack(HEADER_FORMAT, header.magic, header.version,
                       header.session_id, header.sequence, header.command, header.length)


def decode_header(data: bytes) -> DvripHeader:
    """Strict on magic and version; any command code is accepted"""
    if len(data) < HEADER_SIZE:
        raise DvripProtocolError(f"Header too short: {len(data)} bytes")
    magic, version, session_id, sequence, command, length = struct.unpack(HEADER_FORMAT, data[:HEADER_SIZE])
    if magic != MAGIC or version != VERSION:
        raise DvripProtocolError(f"Bad magic/version: 0x{magic:02X} 0x{version:02X}")
    if length > MAX_PAYLOAD_SIZE:
        raise DvripProtocolError(f"Payload length {length} exceeds limit")
    return DvripHeader(session_id=session_id, sequence=sequence, command=command, length=length,
                       magic=magic, version=version)


def is_valid_response(data: bytes) -> bool:
    """Protocol fingerprint: at least a full header with the right magic/version bytes"""
    return len(data) >= HEADER_SIZE and data[0] == MAGIC and data[1] == VERSION


def encode_message(command: int, payload: Optional[Dict[str, Any]], session_id: int = 0, sequence: int = 0) -> bytes:
    body = json.dumps(payload, separators=(',', ':')).encode('utf-8') if payload is not None else b''
    header = DvripHeader(session_id=session_id, sequence=sequence, command=command, length=len(body))
    return encode_header(header) + body


def decode_payload(body: bytes) -> Dict[str, Any]:
    # Devices pad payloads with newline and NUL bytes
    text = body.rstrip(b'\x00\n\r ').decode('utf-8', errors='replace')
    if not text:
        return {}
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as e:
        raise DvripProtocolError(f"Payload is not JSON: {e}") from e
    if not isinstance(payload, dict):
        raise DvripProtocolError("Payload is not a JSON object")
    return payload


def decode_message(data: bytes) -> DvripMessage:
    header = decode_header(data)
    body = data[HEADER_SIZE:HEADER_SIZE + header.length]
    if len(body) < header.length:
        raise DvripProtocolError(f"Truncated payload: {len(body)} of {header.length} bytes")
    return DvripMessage(header=header, payload=decode_payload(body))


def format_session_id(session_id: int) -> str:
    return f"0x{session_id:08X}"


def parse_session_id(value: Any) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, int):
        return value
    try:
        return int(str(value), 16) if str(value).lower().startswith('0x') else int(str(value))
    except ValueError:
        return None


# ================== PAYLOAD SCHEMAS ==================

class DvripPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra='ignore')


class LoginRequest(DvripPayload):
    encrypt_type: str = Field('MD5', alias='EncryptType')
    login_type: str = Field('DVRIP-Web', alias='LoginType')
    user_name: str = Field(alias='UserName')
    password: str = Field(alias='PassWord')


class LoginResponse(DvripPayload):
    ret: int = Field(alias='Ret')
    session_id: Optional[str] = Field(None, alias='SessionID')
    alive_interval: Optional[int] = Field(None, alias='AliveInterval')
    channel_num: Optional[int] = Field(None, alias='ChannelNum')
    device_type: Optional[str] = Field(None, alias='DeviceType ')   # key has a trailing space on the wire
    extra_channel: Optional[int] = Field(None, alias='ExtraChannel')


class StatusResponse(DvripPayload):
    ret: int = Field(alias='Ret')
    name: Optional[str] = Field(None, alias='Name')
    session_id: Optional[str] = Field(None, alias='SessionID')


class SystemInfo(DvripPayload):
    serial_number: Optional[str] = Field(None, alias='SerialNo')
    hardware: Optional[str] = Field(None, alias='HardWare')
    software_version: Optional[str] = Field(None, alias='SoftWareVersion')
    build_time: Optional[str] = Field(None, alias='BuildTime')
    video_in_channels: Optional[int] = Field(None, alias='VideoInChannel')
    device_run_time: Optional[str] = Field(None, alias='DeviceRunTime')


class SystemInfoResponse(StatusResponse):
    system_info: Optional[SystemInfo] = Field(None, alias='SystemInfo')


class RecordingEntry(DvripPayload):
    file_name: str = Field(alias='FileName')
    begin_time: Optional[str] = Field(None, alias='BeginTime')
    end_time: Optional[str] = Field(None, alias='EndTime')
    file_length: Optional[str] = Field(None, alias='FileLength')


class FileQueryResponse(StatusResponse):
    files: Optional[List[RecordingEntry]] = Field(None, alias='OPFileQuery')


M = TypeVar('M', bound=DvripPayload)


def parse_payload(payload: Dict[str, Any], schema: Type[M]) -> M:
    """Validate a decoded payload against its schema"""
    try:
        return schema.model_validate(payload)
    except ValidationError as e:
        raise DvripProtocolError(f"Unexpected {schema.__name__} shape: {e.error_count()} error(s)") from e


@dataclass
class LoginResult:
    success: bool
    ret: Optional[int] = None
    session_id: Optional[int] = None
    error: Optional[str] = None
    alive_interval: Optional[int] = None


def _dvrip_time(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp).strftime('%Y-%m-%d %H:%M:%S')


# ================== CLIENT ==================

class DvripClient:
    """One TCP session with a DVRIP device"""

    def __init__(self, host: str, port: int = DEFAULT_PORTS[0], connect_timeout: float = 5.0,
                 response_timeout: float = 3.0, open_connection=asyncio.open_connection):
        self.host = host
        self.port = port
        self.connect_timeout = connect_timeout
        self.response_timeout = response_timeout
        self.open_connection = open_connection
        self.session_id: Optional[int] = None
        self.sequence = 0
        self.alive_interval: Optional[int] = None
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer = None
        self._lock = asyncio.Lock()

    @property
    def connected(self) -> bool:
        return self._writer is not None

    @property
    def authenticated(self) -> bool:
        return self.session_id is not None

    async def connect(self) -> None:
        if self.connected:
            return
        self._reader, self._writer = await asyncio.wait_for(
            self.open_connection(self.host, self.port), self.connect_timeout
        )
        logger.debug(f"DVRIP TCP connected to {self.host}:{self.port}")

    async def close(self) -> None:
        writer = self._writer
        self._writer = None
        self._reader = None
        self.session_id = None
        if writer is not None:
            writer.close()
            try:
                await writer.wait_closed()
            except Exception:
                pass

    async def request(self, command: int, payload: Optional[Dict[str, Any]]) -> DvripMessage:
        """Send one message and read the reply; raises DvripError / OSError / TimeoutError"""
        if not self.connected:
            raise DvripError("Not connected")
        async with self._lock:
            frame = encode_message(command, payload, self.session_id or 0, self.sequence)
            self.sequence += 1
            self._writer.write(frame)
            await self._writer.drain()

            raw_header = await asyncio.wait_for(self._reader.readexactly(HEADER_SIZE), self.response_timeout)
            header = decode_header(raw_header)
            body = b''
            if header.length:
                body = await asyncio.wait_for(self._reader.readexactly(header.length), self.response_timeout)
            return DvripMessage(header=header, payload=decode_payload(body))

    async def login(self, username: str, password: str) -> LoginResult:
        """Authenticate; only Ret == 100 counts as success and assigns a session ID"""
        request = LoginRequest(user_name=username, password=sofia_hash(password))
        try:
            message = await self.request(CommandCode.LOGIN_REQ, request.model_dump(by_alias=True))
            response = parse_payload(message.payload, LoginResponse)
        except DvripProtocolError as e:
            return LoginResult(False, error=f"protocol error: {e}")

        if response.ret != RET_OK:
            self.session_id = None
            error = RET_MESSAGES.get(response.ret, f"login rejected (Ret={response.ret})")
            logger.warning(f"[FAIL] DVRIP login to {self.host}:{self.port} rejected: {error}")
            return LoginResult(False, ret=response.ret, error=error)

        session_id = message.header.session_id or parse_session_id(response.session_id)
        if not session_id:
            return LoginResult(False, ret=response.ret, error="login accepted without a session ID")

        self.session_id = session_id
        self.alive_interval = response.alive_interval
        logger.info(f"[OK] DVRIP login to {self.host}:{self.port} (session {format_session_id(session_id)})")
        return LoginResult(True, ret=response.ret, session_id=session_id, alive_interval=response.alive_interval)

    def _session_payload(self, name: str, body: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        payload: Dict[str, Any] = {'Name': name, 'SessionID': format_session_id(self.session_id or 0)}
        if body is not None:
            payload[name] = body
        return payload

    def _require_session(self) -> None:
        if not self.authenticated:
            raise DvripAuthError("Not logged in")

    async def keepalive(self) -> bool:
        self._require_session()
        message = await self.request(CommandCode.KEEPALIVE_REQ, self._session_payload('KeepAlive'))
        return parse_payload(message.payload, StatusResponse).ret == RET_OK

    async def get_system_info(self) -> Dict[str, Any]:
        message = await self.request(CommandCode.SYSINFO_REQ, self._session_payload('SystemInfo'))
        response = parse_payload(message.payload, SystemInfoResponse)
        if response.ret != RET_OK:
            raise DvripError(f"SystemInfo failed (Ret={response.ret})")
        info = response.system_info.model_dump(exclude_none=True) if response.system_info else {}
        return info

    async def query_files(self, start_time: float, end_time: float, channel: int = 0) -> List[Dict[str, Any]]:
        self._require_session()
        body = {
            'BeginTime': _dvrip_time(start_time),
            'EndTime': _dvrip_time(end_time),
            'Channel': channel,
            'DriverTypeMask': '0x0000FFFF',
            'Event': '*',
            'Type': 'h264',
        }
        message = await self.request(CommandCode.FILESEARCH_REQ, self._session_payload('OPFileQuery', body))
        response = parse_payload(message.payload, FileQueryResponse)
        if response.ret != RET_OK:
            raise DvripError(f"File query failed (Ret={response.ret})")
        return [entry.model_dump() for entry in (response.files or [])]

    async def start_playback(self, file_name: str, channel: int = 0) -> Dict[str, Any]:
        self._require_session()
        body = {
            'Action': 'Claim',
            'Parameter': {
                'FileName': file_name,
                'PlayMode': 'ByName',
                'TransMode': 'TCP',
                'Value': 0,
            },
        }
        message = await self.request(CommandCode.PLAYBACK_REQ, self._session_payload('OPPlayBack', body))
        response = parse_payload(message.payload, StatusResponse)
        if response.ret != RET_OK:
            raise DvripError(f"Playback claim failed (Ret={response.ret})")
        return {'file_name': file_name, 'channel': channel, 'transport': 'TCP'}

    async def ptz_control(self, action: str, speed: float = 0.5, channel: int = 0) -> bool:
        self._require_session()
        command = PTZ_COMMANDS.get(action)
        if command is None:
            raise DvripError(f"Unknown PTZ action: {action}")
        # Stop is expressed as a zero-step move
        step = 0 if action == 'stop' else max(1, min(8, int(round(speed * 8))))
        body = {
            'Command': command,
            'Parameter': {
                'AUX': {'Number': 0, 'Status': 'On'},
                'Channel': channel,
                'MenuOpts': 'Enter',
                'Pattern': 'SetBegin',
                'Preset': -1,
                'Step': step,
                'Tour': 0,
            },
        }
        message = await self.request(CommandCode.PTZ_REQ, self._session_payload('OPPTZControl', body))
        return parse_payload(message.payload, StatusResponse).ret == RET_OK

    async def logout(self) -> None:
        if not self.authenticated or not self.connected:
            return
        try:
            await self.request(CommandCode.LOGOUT_REQ, self._session_payload(''))
        except Exception as e:
            logger.debug(f"DVRIP logout from {self.host} failed: {e}")
        self.session_id = None


async def fingerprint_port(host: str, port: int, timeout: float = 3.0,
                           open_connection=asyncio.open_connection) -> bool:
    """Send an anonymous login and check whether the reply carries the DVRIP magic bytes"""
    writer = None
    try:
        reader, writer = await asyncio.wait_for(open_connection(host, port), timeout)
        request = LoginRequest(user_name='admin', password=sofia_hash(''))
        writer.write(encode_message(CommandCode.LOGIN_REQ, request.model_dump(by_alias=True)))
        await writer.drain()
        data = await asyncio.wait_for(reader.read(HEADER_SIZE), timeout)
        return is_valid_response(data)
    except Exception as e:
        logger.debug(f"DVRIP fingerprint of {host}:{port} failed: {e}")
        return False
    finally:
        if writer is not None:
            writer.close()
            try:
                await writer.wait_closed()
            except Exception:
                pass


async def discover_port(host: str, ports: Optional[List[int]] = None, timeout: float = 3.0,
                        open_connection=asyncio.open_connection) -> Optional[int]:
    """First port in order that answers with a valid DVRIP header"""
    start_time = time.time()
    for port in ports or DEFAULT_PORTS:
        if await fingerprint_port(host, port, timeout, open_connection):
            logger.info(f"[OK] DVRIP protocol confirmed on {host}:{port} ({time.time() - start_time:.1f}s)")
            return port
    logger.debug(f"No DVRIP port found on {host}")
    return None
