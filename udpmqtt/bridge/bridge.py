"""Bridge orchestrator - relays CloudEvents between the UDP and MQTT transports.

The Bridge owns both transports and the correlation table. A single
forwarding task waits on both inbound channels and handles whichever
payload is ready first; there is no ordering guarantee between the two
sides. A failure handling one payload is logged and skipped; a transport
whose inbound channel closes ends the loop (see ``wait_terminated``).
"""
from __future__ import annotations

import asyncio
import logging
import time
from enum import Enum, auto
from typing import Callable, Dict, Optional, Tuple

from udpmqtt.config import (
    DEFAULT_PING_DATA,
    DEFAULT_PING_SOURCE,
    DEFAULT_PING_TYPE,
    BridgeConfig,
)
from udpmqtt.errors import DecodeError
from udpmqtt.transports.base import TransportInterface
from udpmqtt.transports.mqtt import MqttTransport
from udpmqtt.transports.udp import UdpTransport

from .correlation import CorrelationTable
from .protocol import Envelope, create, decode, encode

logger = logging.getLogger("udpmqtt.bridge")


class BridgeState(Enum):
    IDLE = auto()      # constructed, not started
    RUNNING = auto()
    STOPPED = auto()   # terminal


class Bridge:
    """Bidirectional UDP <-> MQTT CloudEvent relay.

    Every decodable payload received on one side is forwarded, re-encoded,
    to the other side exactly once. Replies arriving from MQTT are matched
    against pings sent with :meth:`send_ping` to log round-trip latency;
    the match never affects forwarding.

    Example:
        bridge = Bridge(
            udp=UdpTransport("0.0.0.0", 9000),
            mqtt=MqttTransport("broker.example.com", 8883, "bridge-1", "in", ...),
            udp_out=("127.0.0.1", 9001),
            mqtt_topic_out="out",
        )
        await bridge.start()
    """

    def __init__(
        self,
        udp: TransportInterface,
        mqtt: TransportInterface,
        udp_out: Tuple[str, int],
        mqtt_topic_out: str,
        correlation: Optional[CorrelationTable] = None,
        ping_type: str = DEFAULT_PING_TYPE,
        ping_source: str = DEFAULT_PING_SOURCE,
        ping_data: str = DEFAULT_PING_DATA,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._udp = udp
        self._mqtt = mqtt
        self.udp_out = udp_out
        self.mqtt_topic_out = mqtt_topic_out
        self._correlation = correlation if correlation is not None else CorrelationTable()
        self.ping_type = ping_type
        self.ping_source = ping_source
        self.ping_data = ping_data
        self._clock = clock

        self._state = BridgeState.IDLE
        self._task: Optional[asyncio.Task] = None
        self._stats = {
            "udp_received": 0,
            "mqtt_received": 0,
            "forwarded_to_mqtt": 0,
            "forwarded_to_udp": 0,
            "decode_errors": 0,
            "pings_sent": 0,
            "replies_correlated": 0,
            "errors": 0,
        }
        self._terminated = asyncio.Event()
        self._failure: Optional[BaseException] = None

    @classmethod
    def from_config(cls, config: BridgeConfig) -> "Bridge":
        """Build a bridge with real UDP and MQTT transports."""
        udp = UdpTransport(config.udp_ip_in, config.udp_port_in)
        mqtt = MqttTransport(
            endpoint=config.endpoint,
            port=config.port,
            client_id=config.client_id,
            topic_in=config.topic_in,
            scheme=config.protocol,
            cert_file=config.cert_file,
            key_file=config.key_file,
            root_ca=config.root_ca,
            qos=config.qos,
        )
        correlation = CorrelationTable(
            max_entries=config.correlation_max_entries,
            ttl=config.correlation_ttl,
        )
        return cls(
            udp=udp,
            mqtt=mqtt,
            udp_out=(config.udp_ip_out, config.udp_port_out),
            mqtt_topic_out=config.topic_out,
            correlation=correlation,
            ping_type=config.ping_type,
            ping_source=config.ping_source,
            ping_data=config.ping_data,
        )

    # --- Lifecycle ---

    async def start(self) -> None:
        """Connect both transports and start forwarding.

        Raises:
            TransportInitError: a transport could not bind/connect.
        """
        if self._state is not BridgeState.IDLE:
            raise RuntimeError(f"Bridge cannot start from state {self._state.name}")

        logger.info("Starting bridge...")
        await self._udp.connect()
        try:
            await self._mqtt.connect()
        except BaseException:
            await self._udp.disconnect()
            raise

        self._state = BridgeState.RUNNING
        self._task = asyncio.create_task(self._forward_loop(), name="bridge-forward")
        logger.info("Bridge started successfully")

    async def stop(self) -> None:
        """Stop forwarding and close both transports.

        In-flight messages are dropped; nothing is drained.
        """
        if self._state is BridgeState.STOPPED:
            return
        logger.info("Stopping bridge...")
        self._state = BridgeState.STOPPED
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.warning("Forwarding task ended with error: %s", e)
            self._task = None
        await self._udp.disconnect()
        await self._mqtt.disconnect()
        logger.info("Bridge stopped")

    async def wait_terminated(self) -> Optional[BaseException]:
        """Wait until forwarding ends.

        Returns the error that ended it (a transport's inbound channel
        closing), or None when the bridge was stopped.
        """
        await self._terminated.wait()
        return self._failure

    @property
    def failure(self) -> Optional[BaseException]:
        return self._failure

    # --- Forwarding ---

    async def _forward_loop(self) -> None:
        receivers: Dict[str, Callable] = {
            "udp": self._udp.receive,
            "mqtt": self._mqtt.receive,
        }
        pending: Dict[asyncio.Task, str] = {
            asyncio.create_task(recv()): side for side, recv in receivers.items()
        }
        try:
            while True:
                done, _ = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    side = pending.pop(task)
                    try:
                        payload = task.result()
                    except Exception as e:
                        logger.error("%s transport terminated: %s", side.upper(), e)
                        self._failure = e
                        return
                    await self._dispatch(side, payload)
                    pending[asyncio.create_task(receivers[side]())] = side
        finally:
            for task in pending:
                task.cancel()
            self._terminated.set()

    async def _dispatch(self, side: str, payload: bytes) -> None:
        # one bad message must never end the loop
        try:
            if side == "udp":
                await self.handle_udp_payload(payload)
            else:
                await self.handle_mqtt_payload(payload)
        except Exception:
            self._stats["errors"] += 1
            logger.exception("Error handling %s payload", side.upper())

    async def handle_udp_payload(self, payload: bytes) -> Optional[Envelope]:
        """Decode a UDP payload and forward it to the MQTT outbound topic."""
        self._stats["udp_received"] += 1
        try:
            envelope = decode(payload)
        except DecodeError as e:
            self._stats["decode_errors"] += 1
            logger.warning("Error unmarshalling CloudEvent via UDP: %s", e)
            return None

        logger.info("Forwarding CloudEvent from UDP to MQTT: %s %s", envelope.id, envelope.type)
        await self._mqtt.send(self.mqtt_topic_out, encode(envelope))
        self._stats["forwarded_to_mqtt"] += 1
        return envelope

    async def handle_mqtt_payload(self, payload: bytes) -> Optional[Envelope]:
        """Decode an MQTT payload, correlate it, and forward it to UDP."""
        self._stats["mqtt_received"] += 1
        logger.debug("Received MQTT message: %s", payload.decode("utf-8", errors="replace"))
        try:
            envelope = decode(payload)
        except DecodeError as e:
            self._stats["decode_errors"] += 1
            logger.warning("Error unmarshalling CloudEvent via MQTT: %s", e)
            return None
        logger.info("Received CloudEvent via MQTT: %s %s", envelope.id, envelope.type)

        elapsed = self._correlation.take_elapsed(envelope.id, self._clock())
        if elapsed is not None:
            self._stats["replies_correlated"] += 1
            logger.info(
                "Duration for CloudEvent ID: %s %s - %.3f ms",
                envelope.id,
                envelope.type,
                elapsed * 1000.0,
            )

        logger.info("Forwarding CloudEvent from MQTT to UDP: %s %s", envelope.id, envelope.type)
        await self._udp.send(self.udp_out, encode(envelope))
        self._stats["forwarded_to_udp"] += 1
        return envelope

    # --- Commands ---

    async def send_ping(self) -> Envelope:
        """Send a ping CloudEvent over UDP and start timing its round trip.

        Raises:
            CreationError: the ping envelope could not be built.
        """
        envelope = create(self.ping_type, self.ping_source, self.ping_data)
        logger.info("Sending ping via UDP: %s", envelope.id)
        self._correlation.record(envelope.id, self._clock())
        await self._udp.send(self.udp_out, encode(envelope))
        self._stats["pings_sent"] += 1
        return envelope

    # --- Properties ---

    @property
    def state(self) -> BridgeState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state is BridgeState.RUNNING

    @property
    def correlation(self) -> CorrelationTable:
        return self._correlation

    @property
    def udp(self) -> TransportInterface:
        return self._udp

    @property
    def mqtt(self) -> TransportInterface:
        return self._mqtt

    def get_stats(self) -> dict:
        """Get bridge statistics."""
        return {
            "state": self._state.name,
            **self._stats,
            "pending_pings": len(self._correlation),
            "evicted_pings": self._correlation.evicted,
        }
