"""
Layered protocol validation of discovered candidates
connectivity -> protocol handshake -> camera-service heuristics -> streaming check
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from http_helper import create_camera_session, SOAP_CONTENT_TYPE
from .blacklist import NON_CAMERA_HTTP_KEYWORDS
from .models import DiscoveredCandidate
from .port_scanner import open_tcp_connection

logger = logging.getLogger(__name__)

CAMERA_KEYWORDS = [
    'camera', 'ipcam', 'webcam', 'video', 'stream', 'onvif', 'hikvision', 'dahua',
    'axis', 'foscam', 'surveillance', 'nvr', 'dvr', 'rtsp',
]

ROUTER_SERVER_INDICATORS = [
    'lighttpd', 'boa', 'goahead', 'mini_httpd', 'thttpd', 'webserver', 'router', 'embedded',
]

ONVIF_DEVICE_INFO_REQUEST = (
    '<?xml version="1.0" encoding="UTF-8"?>'
    '<s:Envelope xmlns:s="http://www.w3.org/2003/05/soap-envelope">'
    '<s:Body xmlns:tds="http://www.onvif.org/ver10/device/wsdl">'
    '<tds:GetDeviceInformation/>'
    '</s:Body>'
    '</s:Envelope>'
)

BANNER_LIMIT = 4096


@dataclass
class ValidationResult:
    candidate: DiscoveredCandidate
    is_valid: bool
    reason: str
    checks: Dict[str, bool] = field(default_factory=dict)
    confidence: float = 0.0


class DeviceValidator:
    """Confirms a candidate actually speaks a camera protocol"""

    def __init__(self, timeout: float = 3.0, session_factory=create_camera_session, connector=None):
        self.timeout = timeout
        self.session_factory = session_factory
        self.connector = connector or open_tcp_connection

    async def validate_devices(self, candidates: List[DiscoveredCandidate]) -> List[ValidationResult]:
        """Validate in parallel; a failing candidate never aborts the others"""
        results = await asyncio.gather(*(self.validate(c) for c in candidates), return_exceptions=True)
        validated = []
        for candidate, result in zip(candidates, results):
            if isinstance(result, ValidationResult):
                validated.append(result)
            else:
                logger.warning(f"Validation of {candidate.key} raised: {result}")
                validated.append(ValidationResult(candidate, False, f"validation error: {result}"))
        return validated

    async def validate(self, candidate: DiscoveredCandidate) -> ValidationResult:
        checks: Dict[str, bool] = {}

        # Layer 1: connectivity
        try:
            await self.connector(candidate.ip, candidate.port, self.timeout)
            checks['connectivity'] = True
        except Exception as e:
            checks['connectivity'] = False
            return ValidationResult(candidate, False, f"not reachable: {e or 'timeout'}", checks)

        # Layer 2: protocol handshake
        protocol = (candidate.protocol or 'TCP').upper()
        if protocol == 'RTSP':
            checks['protocol'] = await self.check_rtsp(candidate.ip, candidate.port)
        elif protocol == 'ONVIF':
            checks['protocol'] = await self.check_onvif(candidate.ip, candidate.port)
        elif protocol == 'HTTP':
            banner = await self.fetch_http_banner(candidate.ip, candidate.port)
            checks['protocol'] = banner is not None
            if banner is not None and not candidate.http_banner:
                candidate.http_banner = banner
        else:
            checks['protocol'] = True

        if not checks['protocol']:
            return ValidationResult(candidate, False, f"{protocol} handshake failed", checks)

        # Layer 3: camera-service heuristics on whatever text the device exposed
        verdict, confidence = self.assess_camera_service(candidate)
        checks['camera_service'] = verdict
        if not verdict:
            return ValidationResult(candidate, False, "device looks like a non-camera service", checks, confidence)

        # Layer 4: streaming (RTSP only; other protocols keep their confidence)
        if protocol == 'RTSP':
            checks['streaming'] = await self.check_rtsp_stream(candidate.ip, candidate.port)
            if checks['streaming']:
                confidence = min(1.0, confidence + 0.3)

        return ValidationResult(candidate, True, "validated", checks, confidence)

    def assess_camera_service(self, candidate: DiscoveredCandidate):
        """Returns (is_camera, confidence) from banner, name and metadata text"""
        text_parts = [candidate.http_banner or '', candidate.name or '', candidate.manufacturer or '',
                      candidate.model or '', candidate.metadata.get('server', '')]
        text = ' '.join(text_parts).lower()

        has_camera_keyword = any(keyword in text for keyword in CAMERA_KEYWORDS)
        if any(keyword in text for keyword in NON_CAMERA_HTTP_KEYWORDS) and not has_camera_keyword:
            return False, 0.0

        server = candidate.metadata.get('server', '').lower()
        banner = (candidate.http_banner or '').lower()
        router_like = any(ind in server or ind in banner[:256] for ind in ROUTER_SERVER_INDICATORS)
        if router_like and not has_camera_keyword:
            return False, 0.1

        confidence = 0.5
        if has_camera_keyword:
            confidence += 0.3
        if (candidate.protocol or '').upper() in ('RTSP', 'ONVIF'):
            confidence += 0.1
        return True, min(1.0, confidence)

    async def fetch_http_banner(self, ip: str, port: int) -> Optional[str]:
        """GET / and return Server header plus the start of the body"""
        try:
            async with self.session_factory(self.timeout) as session:
                async with session.get(f"http://{ip}:{port}/") as response:
                    body = await response.content.read(BANNER_LIMIT)
                    server = response.headers.get('Server', '')
                    return f"{server}\n{body.decode('utf-8', errors='replace')}"
        except Exception as e:
            logger.debug(f"HTTP check failed for {ip}:{port}: {e}")
            return None

    async def check_onvif(self, ip: str, port: int) -> bool:
        url = f"http://{ip}:{port}/onvif/device_service"
        try:
            async with self.session_factory(self.timeout) as session:
                async with session.post(url, data=ONVIF_DEVICE_INFO_REQUEST,
                                        headers={'Content-Type': SOAP_CONTENT_TYPE}) as response:
                    text = await response.text()
                    # An authentication challenge still proves the ONVIF service is there
                    if response.status == 401 or 'NotAuthorized' in text:
                        return True
                    return 'GetDeviceInformationResponse' in text
        except Exception as e:
            logger.debug(f"ONVIF check failed for {ip}:{port}: {e}")
            return False

    async def check_rtsp(self, ip: str, port: int) -> bool:
        reply = await self._rtsp_exchange(ip, port, 'OPTIONS', f"rtsp://{ip}:{port}/")
        return reply is not None and 'RTSP/1.0' in reply and '200 OK' in reply

    async def check_rtsp_stream(self, ip: str, port: int) -> bool:
        reply = await self._rtsp_exchange(ip, port, 'DESCRIBE', f"rtsp://{ip}:{port}/",
                                          extra_headers="Accept: application/sdp\r\n")
        if reply is None or 'RTSP/1.0' not in reply:
            return False
        return '200 OK' in reply or '401' in reply

    async def _rtsp_exchange(self, ip: str, port: int, method: str, url: str,
                             extra_headers: str = "") -> Optional[str]:
        request = f"{method} {url} RTSP/1.0\r\nCSeq: 1\r\n{extra_headers}User-Agent: camlink\r\n\r\n"
        writer = None
        try:
            reader, writer = await asyncio.wait_for(asyncio.open_connection(ip, port), self.timeout)
            writer.write(request.encode('ascii'))
            await writer.drain()
            data = await asyncio.wait_for(reader.read(1024), self.timeout)
            return data.decode('utf-8', errors='replace')
        except Exception as e:
            logger.debug(f"RTSP {method} to {ip}:{port} failed: {e}")
            return None
        finally:
            if writer is not None:
                writer.close()
                try:
                    await writer.wait_closed()
                except Exception:
                    pass
