"""
Camera port tables and port -> protocol classification
"""

from typing import Dict, List, Optional

HTTP_PORTS = [8899, 8080, 8081, 8000, 8008, 8888, 9000, 81, 82, 83] + list(range(8082, 8100))

RTSP_PORTS = [554, 8554, 1935, 7001, 5554, 8000, 8080]

ONVIF_PORTS = [8080, 8000, 8899, 554, 8554, 3702]

# Phase 1 of the scanner
RTSP_PRIORITY_PORTS = [554, 8554, 1935]

# Phase 2 of the scanner
MOST_COMMON_PORTS = [8899, 554, 8080, 8081, 37777, 34567, 8000, 9000]

# Vendor binary protocols (DVRIP and friends)
PROPRIETARY_PROTOCOL_PORTS = [34567, 37777, 8000, 8080, 9000]

MANUFACTURER_PORTS: Dict[str, List[int]] = {
    'hikvision': [8000, 554, 8080],
    'dahua': [37777, 554, 8080],
    'axis': [554, 8080, 8000],
    'foscam': [88, 554, 8080],
    'tp-link': [554, 8080, 9000],
    'xiaomi': [554, 8080, 8000],
    'reolink': [554, 9000, 8000],
    'amcrest': [554, 37777, 8080],
    'generic': [554, 8080, 8899, 34567, 37777, 9000, 6036],
}

STREAMING_PORTS = set(RTSP_PORTS)
WEB_PORTS = set(HTTP_PORTS) | {80, 443}


def _unique(ports: List[int]) -> List[int]:
    seen = set()
    ordered = []
    for port in ports:
        if port not in seen:
            seen.add(port)
            ordered.append(port)
    return ordered


def all_camera_ports() -> List[int]:
    """Every known camera port, first-seen order"""
    ports = list(MOST_COMMON_PORTS) + RTSP_PORTS + HTTP_PORTS + ONVIF_PORTS
    for vendor_ports in MANUFACTURER_PORTS.values():
        ports.extend(vendor_ports)
    return _unique(ports)


def fast_discovery_ports() -> List[int]:
    """Ports tried on a single host when no manufacturer hint is known"""
    return _unique(RTSP_PRIORITY_PORTS + MOST_COMMON_PORTS)


def ports_for_manufacturer(manufacturer: Optional[str]) -> List[int]:
    if not manufacturer:
        return fast_discovery_ports()
    key = manufacturer.lower().strip()
    for vendor, ports in MANUFACTURER_PORTS.items():
        if vendor in key:
            return list(ports)
    return fast_discovery_ports()


def classify_port(port: int) -> str:
    """Protocol tag for a port: streaming first, then web, then ONVIF, else TCP"""
    if port in STREAMING_PORTS:
        return "RTSP"
    if port in WEB_PORTS:
        return "HTTP"
    if port in ONVIF_PORTS:
        return "ONVIF"
    return "TCP"
