# HTTP Helper for Camera Connections
# Session configuration shared by UPnP descriptor fetches, ONVIF SOAP calls and HTTP validation

import aiohttp
import logging

logger = logging.getLogger(__name__)

SOAP_CONTENT_TYPE = 'application/soap+xml; charset=utf-8'


def create_camera_session(timeout_seconds: float = 5, limit_per_host: int = 2) -> aiohttp.ClientSession:
    """
    Create properly configured aiohttp session for local camera connections
    Cameras on the LAN are reached over plain HTTP; self-signed HTTPS is not verified
    """
    connector = aiohttp.TCPConnector(
        limit_per_host=limit_per_host,  # Embedded web servers choke on parallel requests
        ssl=False,
        force_close=True,               # Force connection cleanup
        enable_cleanup_closed=True
    )

    return aiohttp.ClientSession(
        connector=connector,
        timeout=aiohttp.ClientTimeout(total=timeout_seconds)
    )


def create_soap_session(timeout_seconds: float = 10) -> aiohttp.ClientSession:
    """Session preconfigured with SOAP 1.2 headers for ONVIF endpoints"""
    connector = aiohttp.TCPConnector(
        limit_per_host=2,
        ssl=False,
        force_close=True,
        enable_cleanup_closed=True
    )

    return aiohttp.ClientSession(
        connector=connector,
        timeout=aiohttp.ClientTimeout(total=timeout_seconds),
        headers={'Content-Type': SOAP_CONTENT_TYPE}
    )
