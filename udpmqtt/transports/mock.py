import asyncio
import logging
from typing import Any, List, Optional, Tuple

from udpmqtt.errors import SendError, TransportClosedError

from .base import TransportInterface

logger = logging.getLogger("udpmqtt.transports.mock")


class MockTransport(TransportInterface):
    """In-memory transport: records sends, replays injected payloads."""

    def __init__(self, name: str = "mock", fail_sends: bool = False):
        self.name = name
        self.fail_sends = fail_sends
        self.connected = False
        self.rx_queue: asyncio.Queue[Optional[bytes]] = asyncio.Queue()
        self.sent: List[Tuple[Any, bytes]] = []
        self._sent_event = asyncio.Event()

    async def connect(self):
        self.connected = True
        logger.debug("%s: connected", self.name)

    async def disconnect(self):
        self.connected = False
        logger.debug("%s: disconnected", self.name)

    async def send(self, destination: Any, data: bytes):
        if not self.connected or self.fail_sends:
            logger.warning("%s: send to %s failed: %s", self.name, destination,
                           SendError("mock send failure"))
            return
        self.sent.append((destination, data))
        self._sent_event.set()

    async def receive(self) -> bytes:
        data = await self.rx_queue.get()
        if data is None:
            self.rx_queue.put_nowait(None)
            raise TransportClosedError(f"{self.name}: inbound channel closed")
        return data

    def inject(self, data: bytes) -> None:
        """Queue ``data`` as if it had arrived on the wire."""
        self.rx_queue.put_nowait(data)

    def terminate(self) -> None:
        """Close the inbound channel as if the peer had gone away."""
        self.connected = False
        self.rx_queue.put_nowait(None)

    async def wait_for_sends(self, count: int, timeout: float = 2.0) -> List[Tuple[Any, bytes]]:
        """Wait until at least ``count`` payloads have been sent."""
        async def _wait():
            while len(self.sent) < count:
                self._sent_event.clear()
                await self._sent_event.wait()
        await asyncio.wait_for(_wait(), timeout=timeout)
        return list(self.sent)
