import asyncio
import logging
from contextlib import AsyncExitStack
from typing import Optional

import aiomqtt

from udpmqtt.errors import SendError, TransportClosedError, TransportInitError

from .base import TransportInterface

logger = logging.getLogger("udpmqtt.transports.mqtt")

TLS_SCHEMES = {"ssl", "tls", "mqtts", "wss"}
PLAIN_SCHEMES = {"tcp", "mqtt", "ws"}
WEBSOCKET_SCHEMES = {"ws", "wss"}


def _payload_bytes(payload) -> bytes:
    if payload is None:
        return b""
    if isinstance(payload, (bytes, bytearray, memoryview)):
        return bytes(payload)
    if isinstance(payload, str):
        return payload.encode("utf-8")
    return str(payload).encode("utf-8")


class MqttTransport(TransportInterface):
    """MQTT client subscribed to a single inbound topic.

    ``send`` takes the topic to publish on as destination. TLS material is
    required for the ``ssl``/``tls``/``mqtts``/``wss`` schemes.
    """

    def __init__(
        self,
        endpoint: str,
        port: int,
        client_id: str,
        topic_in: str,
        scheme: str = "ssl",
        cert_file: Optional[str] = None,
        key_file: Optional[str] = None,
        root_ca: Optional[str] = None,
        qos: int = 0,
    ):
        scheme = scheme.lower()
        if scheme not in TLS_SCHEMES | PLAIN_SCHEMES:
            raise ValueError(f"Unsupported MQTT scheme: {scheme}")
        self.endpoint = endpoint
        self.port = port
        self.client_id = client_id
        self.topic_in = topic_in
        self.scheme = scheme
        self.cert_file = cert_file
        self.key_file = key_file
        self.root_ca = root_ca
        self.qos = qos

        self.connected = False
        self.rx_queue: asyncio.Queue[Optional[bytes]] = asyncio.Queue()
        self._client: Optional[aiomqtt.Client] = None
        self._stack: Optional[AsyncExitStack] = None
        self._rx_task: Optional[asyncio.Task] = None
        self._lock = asyncio.Lock()  # Serialize publishes

    @property
    def broker_url(self) -> str:
        return f"{self.scheme}://{self.endpoint}:{self.port}"

    def build_client(self) -> aiomqtt.Client:
        """Create the (not yet connected) aiomqtt client."""
        tls_params = None
        if self.scheme in TLS_SCHEMES:
            tls_params = aiomqtt.TLSParameters(
                ca_certs=self.root_ca,
                certfile=self.cert_file,
                keyfile=self.key_file,
            )
        return aiomqtt.Client(
            hostname=self.endpoint,
            port=self.port,
            identifier=self.client_id,
            transport="websockets" if self.scheme in WEBSOCKET_SCHEMES else "tcp",
            tls_params=tls_params,
        )

    async def connect(self):
        if self.connected:
            return
        logger.info("Connecting to MQTT broker %s as %s", self.broker_url, self.client_id)
        client = self.build_client()
        stack = AsyncExitStack()
        try:
            await stack.enter_async_context(client)
            await client.subscribe(self.topic_in, qos=self.qos)
        except (aiomqtt.MqttError, OSError, ValueError) as e:
            await stack.aclose()
            raise TransportInitError(f"cannot connect to {self.broker_url}: {e}") from e

        self._client = client
        self._stack = stack
        self.connected = True
        self._rx_task = asyncio.create_task(self._rx_loop())
        logger.info("Subscribed to MQTT topic %s", self.topic_in)

    async def disconnect(self):
        self.connected = False
        if self._rx_task:
            self._rx_task.cancel()
            try:
                await self._rx_task
            except asyncio.CancelledError:
                pass
            self._rx_task = None
        if self._stack:
            try:
                await self._stack.aclose()
            except aiomqtt.MqttError as e:
                logger.debug("MQTT disconnect error: %s", e)
            self._stack = None
        self._client = None
        logger.info("MQTT transport closed")

    async def send(self, destination: str, data: bytes):
        if not self.connected or self._client is None:
            logger.warning("MQTT publish to %s dropped: %s", destination,
                           SendError("transport not connected"))
            return
        async with self._lock:
            try:
                await self._client.publish(destination, payload=data, qos=self.qos)
            except aiomqtt.MqttError as e:
                logger.warning("MQTT publish to %s failed: %s", destination, SendError(str(e)))
                return
        logger.debug("MQTT published %d bytes to %s", len(data), destination)

    async def receive(self) -> bytes:
        """Next inbound payload.

        Raises:
            TransportClosedError: the broker connection was lost.
        """
        data = await self.rx_queue.get()
        if data is None:
            self.rx_queue.put_nowait(None)  # keep later receivers failing too
            raise TransportClosedError(f"MQTT connection to {self.broker_url} lost")
        return data

    async def _rx_loop(self):
        try:
            async for message in self._client.messages:
                await self.rx_queue.put(_payload_bytes(message.payload))
        except asyncio.CancelledError:
            raise
        except aiomqtt.MqttError as e:
            logger.error("MQTT connection lost: %s", e)
        else:
            logger.error("MQTT message stream ended")
        self.connected = False
        self.rx_queue.put_nowait(None)
