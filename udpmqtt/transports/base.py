from abc import ABC, abstractmethod
from typing import Any, AsyncIterator

from udpmqtt.errors import TransportClosedError


class TransportInterface(ABC):
    """Duplex channel used by the bridge on either side.

    ``send`` is fire-and-forget: implementations log delivery failures
    instead of raising them. ``receive`` raises ``TransportClosedError``
    once the inbound channel has terminated. Iterating the transport yields
    inbound payloads until then.
    """

    @abstractmethod
    async def connect(self):
        pass

    @abstractmethod
    async def disconnect(self):
        pass

    @abstractmethod
    async def send(self, destination: Any, data: bytes):
        pass

    @abstractmethod
    async def receive(self) -> bytes:
        pass

    def __aiter__(self) -> AsyncIterator[bytes]:
        return self._iter_payloads()

    async def _iter_payloads(self) -> AsyncIterator[bytes]:
        while True:
            try:
                payload = await self.receive()
            except TransportClosedError:
                return
            yield payload
