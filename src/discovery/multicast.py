"""
Datagram send/collect helper shared by the SSDP and WS-Discovery probes
"""

import asyncio
import logging
import socket
from typing import List, Tuple

logger = logging.getLogger(__name__)

Datagram = Tuple[bytes, Tuple[str, int]]

MAX_DATAGRAMS = 512


class _CollectorProtocol(asyncio.DatagramProtocol):
    """Buffers responses until the collection window closes"""

    def __init__(self, max_datagrams: int = MAX_DATAGRAMS):
        self.datagrams: List[Datagram] = []
        self.max_datagrams = max_datagrams
        self.closed = False

    def datagram_received(self, data: bytes, addr) -> None:
        if self.closed or len(self.datagrams) >= self.max_datagrams:
            return
        self.datagrams.append((data, (addr[0], addr[1])))

    def error_received(self, exc: Exception) -> None:
        logger.debug(f"Datagram error: {exc}")


async def send_and_collect(payloads: List[bytes], destination: Tuple[str, int], window: float,
                           repeats: int = 1, repeat_interval: float = 0.1, ttl: int = 4) -> List[Datagram]:
    """
    Send each payload `repeats` times to destination (multicast group or unicast host),
    then collect replies arriving on the same socket for `window` seconds
    """
    loop = asyncio.get_running_loop()
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.setsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_TTL, ttl)
        sock.bind(('', 0))
        sock.setblocking(False)
    except OSError:
        sock.close()
        raise

    transport, protocol = await loop.create_datagram_endpoint(lambda: _CollectorProtocol(), sock=sock)
    try:
        for attempt in range(repeats):
            for payload in payloads:
                transport.sendto(payload, destination)
            if attempt < repeats - 1:
                await asyncio.sleep(repeat_interval)
        await asyncio.sleep(window)
    finally:
        protocol.closed = True
        transport.close()

    return list(protocol.datagrams)
