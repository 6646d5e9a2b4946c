"""
Heuristic filter for non-camera devices (routers, printers, NAS, media players)
"""

import ipaddress
import logging
import re
from typing import Dict, List, Optional, Set

from .models import DiscoveredCandidate

logger = logging.getLogger(__name__)

NON_CAMERA_MANUFACTURERS = [
    # Routers and network gear
    'tp-link', 'tplink', 'tp link', 'linksys', 'netgear', 'asus', 'dlink', 'd-link', 'd link',
    'belkin', 'cisco', 'ubiquiti', 'mikrotik', 'buffalo', 'zyxel', 'tenda', 'mercusys',
    'huawei router', 'huawei wifi',
    # Printers
    'hp', 'hewlett-packard', 'hewlett packard', 'canon', 'epson', 'brother', 'samsung printer',
    'samsung scx', 'lexmark', 'xerox', 'ricoh', 'kyocera', 'oki', 'okidata',
    # TVs and media
    'samsung tv', 'samsung smart', 'lg tv', 'lg smart', 'sony tv', 'sony bravia', 'tcl tv',
    'roku', 'apple tv', 'chromecast', 'fire tv', 'nvidia shield',
    # Boards, hubs and assistants
    'raspberry pi', 'arduino', 'esp32', 'esp8266', 'sonos', 'philips hue', 'amazon echo',
    'alexa', 'google home', 'google nest', 'nas synology', 'qnap',
]

NON_CAMERA_NAMES = [
    'router', 'wifi', 'wireless', 'access point', 'ap', 'gateway', 'modem', 'repeater', 'extender',
    'printer', 'scanner', 'multifunction', 'laserjet', 'inkjet', 'deskjet', 'officejet',
    'smart tv', 'tv', 'chromecast', 'roku', 'fire stick', 'apple tv', 'media player', 'streaming device',
    'nas', 'server', 'workstation', 'desktop', 'laptop', 'tablet', 'smartphone',
    'smart speaker', 'voice assistant',
]

NON_CAMERA_SERVICE_TYPES: Set[str] = {
    '_printer._tcp', '_ipp._tcp', '_airplay._tcp', '_googlecast._tcp', '_spotify-connect._tcp',
    '_workstation._tcp', '_smb._tcp', '_afpovertcp._tcp', '_ssh._tcp', '_telnet._tcp',
    '_ftp._tcp', '_nfs._tcp', '_upnp._tcp', '_dlna._tcp',
}

NON_CAMERA_HTTP_KEYWORDS = [
    'router configuration', 'wireless settings', 'network settings', 'router admin',
    'wifi configuration', 'access point', 'gateway settings', 'dhcp settings',
    'port forwarding', 'firewall settings',
    'printer status', 'print queue', 'scanner settings', 'ink levels', 'toner levels',
    'paper settings', 'print settings',
    'smart tv', 'media player', 'streaming device', 'netflix', 'youtube', 'amazon prime',
    'file server', 'nas settings', 'workstation', 'desktop computer',
]

NON_CAMERA_PORTS: Dict[int, List[str]] = {
    21: ['ftp'],
    22: ['ssh'],
    23: ['telnet'],
    25: ['smtp'],
    53: ['dns'],
    80: ['router', 'printer', 'nas'],
    110: ['pop3'],
    139: ['netbios'],
    143: ['imap'],
    443: ['https'],
    445: ['smb'],
    515: ['printer'],
    631: ['ipp', 'printer'],
    993: ['imaps'],
    995: ['pop3s'],
    5000: ['upnp'],
    8080: ['router', 'nas'],
    9100: ['printer'],
}

# Ports that never serve cameras, filtered even without a service hint
UNCONDITIONAL_PORTS: Set[int] = {21, 22, 23, 25, 53, 110, 139, 143, 445, 515, 631, 993, 995, 9100}

METADATA_KEY_HINTS = ('device', 'type', 'model')
METADATA_VALUE_HINTS = ('router', 'printer', 'nas')

_PRIVATE_GATEWAY_NETWORKS = [
    ipaddress.IPv4Network('192.168.0.0/16'),
    ipaddress.IPv4Network('10.0.0.0/8'),
    ipaddress.IPv4Network('172.16.0.0/12'),
]


class DeviceBlacklist:
    """
    Pure classifier: should a discovered candidate be dropped as a non-camera?

    Rules run in order and the first match wins. The gateway rule comes first and
    ignores every other signal. False negatives are expected; protocol validation
    catches what slips through.
    """

    def should_filter(self, candidate: DiscoveredCandidate) -> bool:
        return self.filter_reason(candidate) is not None

    def filter_reason(self, candidate: DiscoveredCandidate) -> Optional[str]:
        if self.is_likely_gateway(candidate.ip):
            return "gateway address"

        manufacturer = _lower(candidate.manufacturer)
        if manufacturer and _matches_any(manufacturer, NON_CAMERA_MANUFACTURERS):
            return f"non-camera manufacturer '{candidate.manufacturer}'"

        name = _lower(candidate.name)
        if name and _matches_any(name, NON_CAMERA_NAMES):
            return f"non-camera name '{candidate.name}'"

        service_type = _normalize_service_type(candidate.service_type)
        if service_type and service_type in NON_CAMERA_SERVICE_TYPES:
            return f"non-camera service type '{candidate.service_type}'"

        banner = _lower(candidate.http_banner)
        if banner:
            for keyword in NON_CAMERA_HTTP_KEYWORDS:
                if keyword in banner:
                    return f"non-camera HTTP content '{keyword}'"

        if self.is_blacklisted_port(candidate.port, candidate.service_name):
            return f"non-camera port {candidate.port}"

        for key, value in candidate.metadata.items():
            key_lower = str(key).lower()
            value_lower = str(value).lower()
            if any(hint in key_lower for hint in METADATA_KEY_HINTS) and \
                    any(hint in value_lower for hint in METADATA_VALUE_HINTS):
                return f"non-camera metadata {key}={value}"

        return None

    @staticmethod
    def is_likely_gateway(ip: str) -> bool:
        try:
            address = ipaddress.IPv4Address(ip)
        except ValueError:
            return False
        if ip.split('.')[-1] != '1':
            return False
        return any(address in network for network in _PRIVATE_GATEWAY_NETWORKS)

    @staticmethod
    def is_blacklisted_port(port: int, service_name: Optional[str] = None) -> bool:
        if not service_name:
            return port in UNCONDITIONAL_PORTS
        services = NON_CAMERA_PORTS.get(port)
        if not services:
            return False
        service = service_name.lower()
        return any(known in service for known in services)

    def filter_devices(self, candidates: List[DiscoveredCandidate]) -> List[DiscoveredCandidate]:
        """Drop filtered candidates and log each one"""
        kept = []
        for candidate in candidates:
            reason = self.filter_reason(candidate)
            if reason:
                logger.debug(f"[FILTER] {candidate.key} dropped: {reason}")
            else:
                kept.append(candidate)
        removed = len(candidates) - len(kept)
        if removed:
            logger.info(f"[FILTER] Removed {removed} non-camera device(s), {len(kept)} remaining")
        return kept


def _lower(value: Optional[str]) -> str:
    return value.lower().strip() if value else ""


def _matches_any(value: str, patterns: List[str]) -> bool:
    """Substring match in either direction, as advertised strings are often truncated"""
    words = set(re.split(r'[^a-z0-9]+', value))
    for pattern in patterns:
        # Short tokens ("ap", "tv", "hp") only match whole words
        if len(pattern) <= 3:
            if pattern in words:
                return True
        elif pattern in value or (len(value) > 3 and value in pattern):
            return True
    return False


def _normalize_service_type(service_type: Optional[str]) -> str:
    if not service_type:
        return ""
    normalized = service_type.lower().strip().rstrip('.')
    if normalized.endswith('.local'):
        normalized = normalized[:-len('.local')]
    return normalized
