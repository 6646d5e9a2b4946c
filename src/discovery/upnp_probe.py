"""
UPnP/SSDP discovery: M-SEARCH multicast, then XML device descriptor fetch
"""

import asyncio
import logging
import time
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

from http_helper import create_camera_session
from .models import DiscoveredCandidate, DiscoveryMethod, DiscoveryRun
from .multicast import send_and_collect

logger = logging.getLogger(__name__)

SSDP_GROUP = ("239.255.255.250", 1900)
SSDP_MX = 3

DEFAULT_SEARCH_TARGETS = [
    "upnp:rootdevice",
    "urn:schemas-upnp-org:device:MediaServer:1",
    "urn:schemas-upnp-org:device:MediaRenderer:1",
    "ssdp:all",
]

MEDIA_DEVICE_MARKERS = ('mediaserver', 'mediarenderer', 'camera', 'video', 'nvr', 'dvr')
CAMERA_SERVICE_MARKERS = ('camera', 'video', 'imaging', 'media')


def build_msearch(search_target: str, mx: int = SSDP_MX) -> bytes:
    return (
        "M-SEARCH * HTTP/1.1\r\n"
        f"HOST: {SSDP_GROUP[0]}:{SSDP_GROUP[1]}\r\n"
        "MAN: \"ssdp:discover\"\r\n"
        f"ST: {search_target}\r\n"
        f"MX: {mx}\r\n"
        "\r\n"
    ).encode('utf-8')


@dataclass
class SsdpResponse:
    location: str
    source_ip: str
    server: Optional[str] = None
    usn: Optional[str] = None
    st: Optional[str] = None
    ext: Optional[str] = None
    max_age: Optional[int] = None


@dataclass
class UpnpService:
    service_type: str
    service_id: Optional[str] = None
    control_url: Optional[str] = None
    event_sub_url: Optional[str] = None
    scpd_url: Optional[str] = None


@dataclass
class UpnpDevice:
    """Parsed UPnP root device description"""
    location: str
    ip: str
    port: int
    device_type: Optional[str] = None
    friendly_name: Optional[str] = None
    manufacturer: Optional[str] = None
    manufacturer_url: Optional[str] = None
    model_description: Optional[str] = None
    model_name: Optional[str] = None
    model_number: Optional[str] = None
    model_url: Optional[str] = None
    serial_number: Optional[str] = None
    udn: Optional[str] = None
    presentation_url: Optional[str] = None
    server: Optional[str] = None
    services: List[UpnpService] = field(default_factory=list)

    @property
    def is_media_device(self) -> bool:
        device_type = (self.device_type or '').lower()
        return any(marker in device_type for marker in MEDIA_DEVICE_MARKERS)

    @property
    def has_camera_services(self) -> bool:
        for service in self.services:
            service_type = service.service_type.lower()
            if any(marker in service_type for marker in CAMERA_SERVICE_MARKERS):
                return True
        return False

    @property
    def is_probable_camera(self) -> bool:
        return self.is_media_device or self.has_camera_services

    def to_candidate(self) -> DiscoveredCandidate:
        metadata: Dict[str, str] = {'location': self.location}
        for key in ('device_type', 'model_number', 'serial_number', 'udn', 'presentation_url', 'server'):
            value = getattr(self, key)
            if value:
                metadata[key] = value
        if self.services:
            metadata['services'] = ','.join(s.service_type for s in self.services)
        return DiscoveredCandidate(
            ip=self.ip,
            port=self.port,
            protocol="HTTP",
            discovery_method=DiscoveryMethod.UPNP,
            name=self.friendly_name,
            manufacturer=self.manufacturer,
            model=self.model_name,
            service_type=self.device_type,
            metadata=metadata
        )


def parse_ssdp_response(data: bytes, source_ip: str) -> Optional[SsdpResponse]:
    """Parse an M-SEARCH reply; anything other than a 200 OK with LOCATION is ignored"""
    try:
        text = data.decode('utf-8', errors='replace')
    except Exception:
        return None

    lines = text.split('\r\n') if '\r\n' in text else text.split('\n')
    if not lines or '200 OK' not in lines[0].upper():
        return None

    headers: Dict[str, str] = {}
    for line in lines[1:]:
        if ':' not in line:
            continue
        key, value = line.split(':', 1)
        headers[key.strip().lower()] = value.strip()

    location = headers.get('location')
    if not location:
        return None

    max_age = None
    cache_control = headers.get('cache-control', '')
    for directive in cache_control.split(','):
        directive = directive.strip().lower()
        if directive.startswith('max-age'):
            try:
                max_age = int(directive.split('=', 1)[1].strip())
            except (IndexError, ValueError):
                max_age = None

    return SsdpResponse(
        location=location,
        source_ip=source_ip,
        server=headers.get('server'),
        usn=headers.get('usn'),
        st=headers.get('st'),
        ext=headers.get('ext'),
        max_age=max_age
    )


def _local_name(tag: str) -> str:
    return tag.split('}', 1)[-1]


def _find_child(element: ET.Element, name: str) -> Optional[ET.Element]:
    for child in element:
        if _local_name(child.tag) == name:
            return child
    return None


def _child_text(element: ET.Element, name: str) -> Optional[str]:
    child = _find_child(element, name)
    if child is None or child.text is None:
        return None
    text = child.text.strip()
    return text or None


def parse_device_description(xml_text: str, response: SsdpResponse) -> Optional[UpnpDevice]:
    """Build a UpnpDevice from a descriptor document; None on malformed XML"""
    try:
        root = ET.fromstring(xml_text)
    except ET.ParseError as e:
        logger.debug(f"Malformed UPnP descriptor at {response.location}: {e}")
        return None

    device_element = _find_child(root, 'device')
    if device_element is None:
        return None

    parsed_location = urlparse(response.location)
    ip = parsed_location.hostname or response.source_ip
    port = parsed_location.port or (443 if parsed_location.scheme == 'https' else 80)

    services = []
    service_list = _find_child(device_element, 'serviceList')
    if service_list is not None:
        for service_element in service_list:
            if _local_name(service_element.tag) != 'service':
                continue
            service_type = _child_text(service_element, 'serviceType')
            if not service_type:
                continue
            services.append(UpnpService(
                service_type=service_type,
                service_id=_child_text(service_element, 'serviceId'),
                control_url=_child_text(service_element, 'controlURL'),
                event_sub_url=_child_text(service_element, 'eventSubURL'),
                scpd_url=_child_text(service_element, 'SCPDURL')
            ))

    return UpnpDevice(
        location=response.location,
        ip=ip,
        port=port,
        device_type=_child_text(device_element, 'deviceType'),
        friendly_name=_child_text(device_element, 'friendlyName'),
        manufacturer=_child_text(device_element, 'manufacturer'),
        manufacturer_url=_child_text(device_element, 'manufacturerURL'),
        model_description=_child_text(device_element, 'modelDescription'),
        model_name=_child_text(device_element, 'modelName'),
        model_number=_child_text(device_element, 'modelNumber'),
        model_url=_child_text(device_element, 'modelURL'),
        serial_number=_child_text(device_element, 'serialNumber'),
        udn=_child_text(device_element, 'UDN'),
        presentation_url=_child_text(device_element, 'presentationURL'),
        server=response.server,
        services=services
    )


class UpnpProbe:
    """SSDP search plus descriptor fetch"""

    def __init__(self, config: Optional[Dict[str, Any]] = None, session_factory=create_camera_session):
        config = config or {}
        self.timeout = float(config.get('timeout_seconds', 5.0))
        self.descriptor_timeout = float(config.get('descriptor_timeout_seconds', 5.0))
        self.session_factory = session_factory

    async def discover(self, search_targets: Optional[List[str]] = None, timeout: Optional[float] = None,
                       run: Optional[DiscoveryRun] = None) -> List[UpnpDevice]:
        search_targets = search_targets or ["ssdp:all"]
        window = self.timeout if timeout is None else timeout
        start_time = time.time()

        try:
            datagrams = await send_and_collect(
                [build_msearch(target) for target in search_targets],
                SSDP_GROUP, window, repeats=2, repeat_interval=0.1
            )
        except OSError as e:
            logger.warning(f"UPnP search failed: {e}")
            return []

        responses: Dict[str, SsdpResponse] = {}
        for data, addr in datagrams:
            response = parse_ssdp_response(data, addr[0])
            if response and response.location not in responses:
                responses[response.location] = response

        if not responses or (run is not None and run.sealed):
            return []

        logger.info(f"UPnP: {len(responses)} unique location(s), fetching descriptors")
        async with self.session_factory(self.descriptor_timeout) as session:
            results = await asyncio.gather(
                *(self.fetch_description(session, response) for response in responses.values()),
                return_exceptions=True
            )

        devices = [r for r in results if isinstance(r, UpnpDevice)]
        logger.info(f"[PASS] UPnP found {len(devices)} device(s) in {time.time() - start_time:.1f}s")
        return devices

    async def discover_cameras(self, timeout: Optional[float] = None,
                               run: Optional[DiscoveryRun] = None) -> List[DiscoveredCandidate]:
        devices = await self.discover(DEFAULT_SEARCH_TARGETS, timeout, run)
        cameras = [device.to_candidate() for device in devices if device.is_probable_camera]
        logger.info(f"UPnP: {len(cameras)} of {len(devices)} device(s) look like cameras")
        return cameras

    async def fetch_description(self, session, response: SsdpResponse) -> Optional[UpnpDevice]:
        try:
            async with session.get(response.location) as http_response:
                if http_response.status != 200:
                    logger.debug(f"UPnP descriptor {response.location} returned HTTP {http_response.status}")
                    return None
                xml_text = await http_response.text()
        except Exception as e:
            logger.debug(f"UPnP descriptor fetch failed for {response.location}: {e}")
            return None
        return parse_device_description(xml_text, response)
