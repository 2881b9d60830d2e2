import asyncio
import logging
from typing import Optional, Tuple

from udpmqtt.errors import SendError, TransportInitError

from .base import TransportInterface

logger = logging.getLogger("udpmqtt.transports.udp")

Address = Tuple[str, int]


class _DatagramProtocol(asyncio.DatagramProtocol):
    def __init__(self, rx_queue: "asyncio.Queue[bytes]"):
        self.rx_queue = rx_queue

    def datagram_received(self, data: bytes, addr) -> None:
        logger.debug("UDP datagram from %s: %d bytes", addr, len(data))
        self.rx_queue.put_nowait(data)

    def error_received(self, exc: Exception) -> None:
        logger.warning("UDP socket error: %s", exc)


class UdpTransport(TransportInterface):
    """Datagram endpoint bound to ``(host, port)``.

    Every received datagram is one inbound payload. ``send`` takes a
    ``(host, port)`` destination.
    """

    def __init__(self, host: str, port: int):
        self.host = host
        self.port = port
        self.connected = False
        self.rx_queue: asyncio.Queue[bytes] = asyncio.Queue()
        self._transport: Optional[asyncio.DatagramTransport] = None

    async def connect(self):
        if self.connected:
            return
        loop = asyncio.get_running_loop()
        try:
            self._transport, _ = await loop.create_datagram_endpoint(
                lambda: _DatagramProtocol(self.rx_queue),
                local_addr=(self.host, self.port),
            )
        except OSError as e:
            raise TransportInitError(
                f"cannot bind UDP {self.host}:{self.port}: {e}"
            ) from e
        self.connected = True
        logger.info("Listening on UDP %s:%d", *self.local_address)

    async def disconnect(self):
        self.connected = False
        if self._transport:
            self._transport.close()
            self._transport = None
        logger.info("UDP transport closed")

    async def send(self, destination: Address, data: bytes):
        host, port = destination
        if not self.connected or self._transport is None:
            logger.warning("UDP send to %s:%d dropped: %s", host, port,
                           SendError("transport not connected"))
            return
        try:
            self._transport.sendto(data, (host, port))
        except (OSError, ValueError) as e:
            logger.warning("UDP send to %s:%d failed: %s", host, port, SendError(str(e)))
            return
        logger.debug("UDP sent %d bytes to %s:%d", len(data), host, port)

    async def receive(self) -> bytes:
        return await self.rx_queue.get()

    @property
    def local_address(self) -> Address:
        """Address actually bound (resolves port 0)."""
        if self._transport is None:
            return (self.host, self.port)
        sockname = self._transport.get_extra_info("sockname")
        return (sockname[0], sockname[1])
