"""
Minimal ONVIF SOAP client (device management, media and PTZ) over aiohttp
"""

import base64
import hashlib
import logging
import os
import xml.etree.ElementTree as ET
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from http_helper import create_soap_session

logger = logging.getLogger(__name__)

SOAP_NS = "http://www.w3.org/2003/05/soap-envelope"
DEVICE_NS = "http://www.onvif.org/ver10/device/wsdl"
MEDIA_NS = "http://www.onvif.org/ver10/media/wsdl"
PTZ_NS = "http://www.onvif.org/ver20/ptz/wsdl"
SCHEMA_NS = "http://www.onvif.org/ver10/schema"
WSSE_NS = "http://docs.oasis-open.org/wss/2004/01/oasis-200401-wss-wssecurity-secext-1.0.xsd"
WSU_NS = "http://docs.oasis-open.org/wss/2004/01/oasis-200401-wss-wssecurity-utility-1.0.xsd"
PASSWORD_DIGEST = ("http://docs.oasis-open.org/wss/2004/01/"
                   "oasis-200401-wss-username-token-profile-1.0#PasswordDigest")
NONCE_ENCODING = ("http://docs.oasis-open.org/wss/2004/01/"
                  "oasis-200401-wss-soap-message-security-1.0#Base64Binary")


class OnvifError(Exception):
    """SOAP fault, HTTP error or unexpected response shape"""


class OnvifAuthError(OnvifError):
    """Credentials missing or rejected

    soap_fault is set when the rejection came back as a SOAP fault, which proves
    an ONVIF service answered; a bare HTTP 401 does not.
    """

    def __init__(self, message: str, soap_fault: bool = False):
        super().__init__(message)
        self.soap_fault = soap_fault


def _local_name(tag: str) -> str:
    return tag.split('}', 1)[-1]


def _find(element: ET.Element, name: str) -> Optional[ET.Element]:
    for child in element.iter():
        if _local_name(child.tag) == name:
            return child
    return None


def _find_text(element: ET.Element, name: str) -> Optional[str]:
    found = _find(element, name)
    if found is None or found.text is None:
        return None
    return found.text.strip()


def password_digest(password: str, nonce: bytes, created: str) -> str:
    """WS-Security UsernameToken digest: Base64(SHA1(nonce + created + password))"""
    sha = hashlib.sha1(nonce + created.encode('utf-8') + password.encode('utf-8')).digest()
    return base64.b64encode(sha).decode('ascii')


class OnvifClient:
    """Speaks just enough ONVIF to connect, identify and steer a camera"""

    def __init__(self, host: str, port: int = 80, username: Optional[str] = None,
                 password: Optional[str] = None, timeout: float = 10.0, session_factory=create_soap_session):
        self.host = host
        self.port = port
        self.username = username
        self.password = password or ""
        self.timeout = timeout
        self.session_factory = session_factory
        self.device_url = f"http://{host}:{port}/onvif/device_service"
        self.service_urls: Dict[str, str] = {}
        self.time_offset = timedelta(0)   # camera clock minus local clock
        self._session = None

    @property
    def has_credentials(self) -> bool:
        return bool(self.username)

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    def _get_session(self):
        if self._session is None or self._session.closed:
            self._session = self.session_factory(self.timeout)
        return self._session

    # ---------- envelope ----------

    def _security_header(self) -> str:
        nonce = os.urandom(16)
        created_dt = datetime.now(timezone.utc) + self.time_offset
        created = created_dt.strftime('%Y-%m-%dT%H:%M:%S.000Z')
        return (
            f'<wsse:Security xmlns:wsse="{WSSE_NS}" xmlns:wsu="{WSU_NS}" s:mustUnderstand="1">'
            '<wsse:UsernameToken>'
            f'<wsse:Username>{_escape(self.username or "")}</wsse:Username>'
            f'<wsse:Password Type="{PASSWORD_DIGEST}">{password_digest(self.password, nonce, created)}</wsse:Password>'
            f'<wsse:Nonce EncodingType="{NONCE_ENCODING}">{base64.b64encode(nonce).decode("ascii")}</wsse:Nonce>'
            f'<wsu:Created>{created}</wsu:Created>'
            '</wsse:UsernameToken>'
            '</wsse:Security>'
        )

    def build_envelope(self, body: str, authenticated: bool = True) -> str:
        header = self._security_header() if authenticated and self.has_credentials else ''
        return (
            '<?xml version="1.0" encoding="UTF-8"?>'
            f'<s:Envelope xmlns:s="{SOAP_NS}" xmlns:tds="{DEVICE_NS}" xmlns:trt="{MEDIA_NS}" '
            f'xmlns:tptz="{PTZ_NS}" xmlns:tt="{SCHEMA_NS}">'
            f'<s:Header>{header}</s:Header>'
            f'<s:Body>{body}</s:Body>'
            '</s:Envelope>'
        )

    async def call(self, url: str, body: str, authenticated: bool = True) -> ET.Element:
        """POST one SOAP request and return the parsed Body element"""
        envelope = self.build_envelope(body, authenticated)
        session = self._get_session()
        async with session.post(url, data=envelope.encode('utf-8')) as response:
            text = await response.text()
            status = response.status

        try:
            root = ET.fromstring(text)
        except ET.ParseError as e:
            if status == 401:
                raise OnvifAuthError(f"HTTP 401 from {url}") from e
            raise OnvifError(f"Malformed SOAP response from {url} (HTTP {status}): {e}") from e

        body_element = _find(root, 'Body')
        if body_element is None:
            if status == 401:
                raise OnvifAuthError(f"HTTP 401 from {url}")
            raise OnvifError(f"SOAP response from {url} has no Body")

        fault = _find(body_element, 'Fault')
        if fault is not None:
            codes = ' '.join(
                (element.text or '') for element in fault.iter() if _local_name(element.tag) == 'Value'
            )
            reason = _find_text(fault, 'Text') or _find_text(fault, 'faultstring') or 'SOAP fault'
            if (status == 401 or 'NotAuthorized' in codes or 'NotAuthorized' in reason
                    or 'FailedAuthentication' in codes):
                raise OnvifAuthError(reason, soap_fault=True)
            raise OnvifError(f"{reason} ({codes.strip()})")

        if status == 401:
            raise OnvifAuthError(f"HTTP 401 from {url}")
        if status >= 400:
            raise OnvifError(f"HTTP {status} from {url}")
        return body_element

    # ---------- device management ----------

    async def get_system_date_and_time(self) -> Dict[str, Any]:
        """Unauthenticated handshake; also records the camera clock offset for digests"""
        body = await self.call(self.device_url, '<tds:GetSystemDateAndTime/>', authenticated=False)
        if _find(body, 'GetSystemDateAndTimeResponse') is None:
            raise OnvifError("Unexpected GetSystemDateAndTime response")

        result: Dict[str, Any] = {'date_time_type': _find_text(body, 'DateTimeType')}
        utc = _find(body, 'UTCDateTime')
        if utc is not None:
            try:
                camera_time = datetime(
                    int(_find_text(utc, 'Year')), int(_find_text(utc, 'Month')), int(_find_text(utc, 'Day')),
                    int(_find_text(utc, 'Hour')), int(_find_text(utc, 'Minute')), int(_find_text(utc, 'Second')),
                    tzinfo=timezone.utc
                )
                self.time_offset = camera_time - datetime.now(timezone.utc)
                result['utc_time'] = camera_time.isoformat()
            except (TypeError, ValueError):
                logger.debug(f"Could not parse camera clock from {self.host}")
        return result

    async def get_device_information(self) -> Dict[str, Any]:
        body = await self.call(self.device_url, '<tds:GetDeviceInformation/>')
        response = _find(body, 'GetDeviceInformationResponse')
        if response is None:
            raise OnvifError("Unexpected GetDeviceInformation response")
        return {
            'manufacturer': _find_text(response, 'Manufacturer'),
            'model': _find_text(response, 'Model'),
            'firmware_version': _find_text(response, 'FirmwareVersion'),
            'serial_number': _find_text(response, 'SerialNumber'),
            'hardware_id': _find_text(response, 'HardwareId'),
        }

    async def get_capabilities(self) -> Dict[str, str]:
        body = await self.call(self.device_url, '<tds:GetCapabilities><tds:Category>All</tds:Category></tds:GetCapabilities>')
        capabilities = _find(body, 'Capabilities')
        if capabilities is None:
            raise OnvifError("Unexpected GetCapabilities response")
        urls = {}
        for child in capabilities:
            xaddr = _find_text(child, 'XAddr')
            if xaddr:
                urls[_local_name(child.tag).lower()] = xaddr
        self.service_urls = urls
        return urls

    def _service_url(self, service: str) -> str:
        return self.service_urls.get(service, self.device_url)

    # ---------- media ----------

    async def get_profiles(self) -> List[Dict[str, Any]]:
        body = await self.call(self._service_url('media'), '<trt:GetProfiles/>')
        profiles = []
        for element in body.iter():
            if _local_name(element.tag) == 'Profiles':
                profiles.append({
                    'token': element.get('token'),
                    'name': _find_text(element, 'Name'),
                })
        return profiles

    async def get_stream_uri(self, profile_token: str) -> str:
        request = (
            '<trt:GetStreamUri>'
            '<trt:StreamSetup><tt:Stream>RTP-Unicast</tt:Stream>'
            '<tt:Transport><tt:Protocol>RTSP</tt:Protocol></tt:Transport></trt:StreamSetup>'
            f'<trt:ProfileToken>{_escape(profile_token)}</trt:ProfileToken>'
            '</trt:GetStreamUri>'
        )
        body = await self.call(self._service_url('media'), request)
        uri = _find_text(body, 'Uri')
        if not uri:
            raise OnvifError("GetStreamUri returned no Uri")
        return uri

    # ---------- PTZ ----------

    async def continuous_move(self, profile_token: str, pan: float = 0.0, tilt: float = 0.0, zoom: float = 0.0) -> None:
        request = (
            '<tptz:ContinuousMove>'
            f'<tptz:ProfileToken>{_escape(profile_token)}</tptz:ProfileToken>'
            '<tptz:Velocity>'
            f'<tt:PanTilt x="{pan:.2f}" y="{tilt:.2f}"/>'
            f'<tt:Zoom x="{zoom:.2f}"/>'
            '</tptz:Velocity>'
            '</tptz:ContinuousMove>'
        )
        await self.call(self._service_url('ptz'), request)

    async def stop(self, profile_token: str) -> None:
        request = (
            '<tptz:Stop>'
            f'<tptz:ProfileToken>{_escape(profile_token)}</tptz:ProfileToken>'
            '<tptz:PanTilt>true</tptz:PanTilt><tptz:Zoom>true</tptz:Zoom>'
            '</tptz:Stop>'
        )
        await self.call(self._service_url('ptz'), request)


def _escape(value: str) -> str:
    return (value.replace('&', '&amp;').replace('<', '&lt;').replace('>', '&gt;')
            .replace('"', '&quot;').replace("'", '&apos;'))
