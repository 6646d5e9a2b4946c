"""
WS-Discovery (ONVIF) probe: SOAP Probe multicast and ProbeMatch/Hello parsing
"""

import logging
import re
import time
import uuid
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from urllib.parse import unquote, urlparse

from .models import DiscoveredCandidate, DiscoveryMethod, DiscoveryRun
from .multicast import send_and_collect

logger = logging.getLogger(__name__)

WS_DISCOVERY_GROUP = ("239.255.255.250", 3702)

SOAP_ENV_NS = "http://www.w3.org/2003/05/soap-envelope"
ADDRESSING_NS = "http://schemas.xmlsoap.org/ws/2004/08/addressing"
DISCOVERY_NS = "http://schemas.xmlsoap.org/ws/2005/04/discovery"
NETWORK_NS = "http://www.onvif.org/ver10/network/wsdl"

PROBE_ACTION = "http://schemas.xmlsoap.org/ws/2005/04/discovery/Probe"
DISCOVERY_TO = "urn:schemas-xmlsoap-org:ws:2005:04:discovery"
DEFAULT_TYPES = "dn:NetworkVideoTransmitter"

_IP_PATTERN = re.compile(r'\b(\d{1,3}\.\d{1,3}\.\d{1,3}\.\d{1,3})\b')

# key=value scope fragments, e.g. ".../name=Camera1"
_SCOPE_KEYS = {
    'name': ('name',),
    'manufacturer': ('mfr', 'manufacturer'),
    'model': ('model', 'hardware'),
}
# ONVIF scope paths, e.g. "onvif://www.onvif.org/name/Camera1"
_SCOPE_PATHS = {
    'name': ('name',),
    'manufacturer': ('mfr', 'manufacturer'),
    'model': ('hardware', 'model'),
}


def build_probe(types: str = DEFAULT_TYPES, message_id: Optional[str] = None) -> str:
    message_id = message_id or f"urn:uuid:{uuid.uuid4()}"
    return (
        '<?xml version="1.0" encoding="UTF-8"?>'
        f'<soap:Envelope xmlns:soap="{SOAP_ENV_NS}" xmlns:wsa="{ADDRESSING_NS}" '
        f'xmlns:d="{DISCOVERY_NS}" xmlns:dn="{NETWORK_NS}">'
        '<soap:Header>'
        f'<wsa:Action>{PROBE_ACTION}</wsa:Action>'
        f'<wsa:MessageID>{message_id}</wsa:MessageID>'
        f'<wsa:To>{DISCOVERY_TO}</wsa:To>'
        '</soap:Header>'
        '<soap:Body>'
        f'<d:Probe><d:Types>{types}</d:Types></d:Probe>'
        '</soap:Body>'
        '</soap:Envelope>'
    )


@dataclass
class WsDiscoveryDevice:
    """One ProbeMatch or Hello announcement"""
    endpoint_reference: str
    types: List[str] = field(default_factory=list)
    scopes: List[str] = field(default_factory=list)
    xaddrs: List[str] = field(default_factory=list)
    metadata_version: Optional[int] = None
    source_ip: Optional[str] = None

    @property
    def ip(self) -> Optional[str]:
        for xaddr in self.xaddrs:
            host = urlparse(xaddr).hostname
            if host:
                return host
            match = _IP_PATTERN.search(xaddr)
            if match:
                return match.group(1)
        return self.source_ip

    @property
    def port(self) -> int:
        for xaddr in self.xaddrs:
            parsed = urlparse(xaddr)
            if parsed.hostname:
                return parsed.port or (443 if parsed.scheme == 'https' else 80)
        return 80

    @property
    def is_onvif(self) -> bool:
        for type_token in self.types:
            lowered = type_token.lower()
            if 'networkvideotransmitter' in lowered or lowered.split(':')[-1] == 'device' or 'onvif' in lowered:
                return True
        return False

    @property
    def name(self) -> Optional[str]:
        return extract_scope_value(self.scopes, 'name')

    @property
    def manufacturer(self) -> Optional[str]:
        return extract_scope_value(self.scopes, 'manufacturer')

    @property
    def model(self) -> Optional[str]:
        return extract_scope_value(self.scopes, 'model')

    def to_candidate(self) -> Optional[DiscoveredCandidate]:
        ip = self.ip
        if not ip:
            return None
        metadata = {'endpoint_reference': self.endpoint_reference}
        if self.xaddrs:
            metadata['xaddrs'] = ' '.join(self.xaddrs)
        if self.types:
            metadata['types'] = ' '.join(self.types)
        return DiscoveredCandidate(
            ip=ip,
            port=self.port,
            protocol="ONVIF",
            discovery_method=DiscoveryMethod.WS_DISCOVERY,
            name=self.name,
            manufacturer=self.manufacturer,
            model=self.model,
            metadata=metadata
        )


def extract_scope_value(scopes: List[str], key: str) -> Optional[str]:
    for scope in scopes:
        for scope_key in _SCOPE_KEYS[key]:
            match = re.search(rf'{scope_key}=([^/&\s]+)', scope, re.IGNORECASE)
            if match:
                return unquote(match.group(1))
        path = urlparse(scope).path.strip('/').split('/')
        if len(path) >= 2 and path[0].lower() in _SCOPE_PATHS[key]:
            return unquote('/'.join(path[1:]))
    return None


def _local_name(tag: str) -> str:
    return tag.split('}', 1)[-1]


def _iter_named(element: ET.Element, name: str):
    for child in element.iter():
        if _local_name(child.tag) == name:
            yield child


def _first_text(element: ET.Element, name: str) -> Optional[str]:
    for child in _iter_named(element, name):
        if child.text and child.text.strip():
            return child.text.strip()
    return None


def parse_probe_response(xml_text: str, source_ip: Optional[str] = None) -> List[WsDiscoveryDevice]:
    """Parse ProbeMatch or Hello messages; malformed documents yield no devices"""
    try:
        root = ET.fromstring(xml_text)
    except ET.ParseError as e:
        logger.debug(f"Malformed WS-Discovery response from {source_ip}: {e}")
        return []

    if _local_name(root.tag) != 'Envelope':
        return []

    matches = list(_iter_named(root, 'ProbeMatch')) or list(_iter_named(root, 'Hello'))
    devices = []
    for match in matches:
        address = _first_text(match, 'Address')
        if not address:
            continue
        metadata_version = _first_text(match, 'MetadataVersion')
        try:
            version = int(metadata_version) if metadata_version else None
        except ValueError:
            version = None
        devices.append(WsDiscoveryDevice(
            endpoint_reference=address,
            types=(_first_text(match, 'Types') or '').split(),
            scopes=(_first_text(match, 'Scopes') or '').split(),
            xaddrs=(_first_text(match, 'XAddrs') or '').split(),
            metadata_version=version,
            source_ip=source_ip
        ))
    return devices


class WsDiscoveryProbe:
    """Multicast and unicast ONVIF discovery"""

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        config = config or {}
        self.timeout = float(config.get('timeout_seconds', 5.0))

    async def discover(self, types: str = DEFAULT_TYPES, timeout: Optional[float] = None,
                       run: Optional[DiscoveryRun] = None) -> List[WsDiscoveryDevice]:
        window = self.timeout if timeout is None else timeout
        return await self._probe(WS_DISCOVERY_GROUP, types, window, run)

    async def discover_cameras(self, timeout: Optional[float] = None,
                               run: Optional[DiscoveryRun] = None) -> List[DiscoveredCandidate]:
        devices = await self.discover(timeout=timeout, run=run)
        candidates = []
        for device in devices:
            if not device.is_onvif:
                continue
            candidate = device.to_candidate()
            if candidate:
                candidates.append(candidate)
        return candidates

    async def probe_device(self, ip: str, timeout: float = 3.0) -> Optional[WsDiscoveryDevice]:
        """Unicast probe of a single host"""
        devices = await self._probe((ip, WS_DISCOVERY_GROUP[1]), DEFAULT_TYPES, timeout)
        return devices[0] if devices else None

    async def _probe(self, destination, types: str, window: float,
                     run: Optional[DiscoveryRun] = None) -> List[WsDiscoveryDevice]:
        start_time = time.time()
        message_id = f"urn:uuid:{uuid.uuid4()}"
        try:
            datagrams = await send_and_collect(
                [build_probe(types, message_id).encode('utf-8')], destination, window
            )
        except OSError as e:
            logger.warning(f"WS-Discovery probe failed: {e}")
            return []

        if run is not None and run.sealed:
            return []

        devices: Dict[str, WsDiscoveryDevice] = {}
        for data, addr in datagrams:
            text = data.decode('utf-8', errors='replace')
            for device in parse_probe_response(text, addr[0]):
                devices.setdefault(device.endpoint_reference, device)

        logger.info(f"[PASS] WS-Discovery found {len(devices)} endpoint(s) in {time.time() - start_time:.1f}s")
        return list(devices.values())
