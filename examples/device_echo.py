"""Example UDP device: echoes every CloudEvent back to the bridge.

Pair it with a broker-side echo on the MQTT topics to watch a full ping
round trip (space bar in the bridge -> device -> bridge -> MQTT -> bridge).

Usage:
    python examples/device_echo.py --listen-port 9001 --bridge-port 9000
"""
from __future__ import annotations

import asyncio
import logging
import os
import sys
from typing import Optional

import typer
from rich.logging import RichHandler

if __name__ == "__main__":
    sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from udpmqtt.bridge.protocol import decode, encode
from udpmqtt.errors import DecodeError
from udpmqtt.transports.udp import UdpTransport

logger = logging.getLogger("examples.device_echo")
app = typer.Typer(add_completion=False)


def echo_payload(payload: bytes) -> Optional[bytes]:
    """Return the re-encoded event to send back, or None to drop it."""
    try:
        event = decode(payload)
    except DecodeError as e:
        logger.warning("Dropping malformed datagram: %s", e)
        return None
    logger.info("Echoing %s %s", event.id, event.type)
    return encode(event)


async def serve(listen_host: str, listen_port: int, bridge_host: str, bridge_port: int) -> None:
    transport = UdpTransport(listen_host, listen_port)
    await transport.connect()
    try:
        async for payload in transport:
            reply = echo_payload(payload)
            if reply is not None:
                await transport.send((bridge_host, bridge_port), reply)
    finally:
        await transport.disconnect()


@app.command()
def main(
    listen_host: str = typer.Option("127.0.0.1", "--listen-host"),
    listen_port: int = typer.Option(9001, "--listen-port"),
    bridge_host: str = typer.Option("127.0.0.1", "--bridge-host"),
    bridge_port: int = typer.Option(9000, "--bridge-port"),
) -> None:
    logging.basicConfig(level=logging.INFO, format="%(message)s", handlers=[RichHandler()])
    try:
        asyncio.run(serve(listen_host, listen_port, bridge_host, bridge_port))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    app()
