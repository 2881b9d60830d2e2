import asyncio
import logging

import pytest

from udpmqtt.errors import TransportInitError
from udpmqtt.transports.udp import UdpTransport


def test_udp_send_receive_loopback():
    async def run():
        a = UdpTransport("127.0.0.1", 0)
        b = UdpTransport("127.0.0.1", 0)
        await a.connect()
        await b.connect()
        try:
            await a.send(b.local_address, b"hello")
            await a.send(b.local_address, b"world")
            first = await asyncio.wait_for(b.receive(), timeout=3.0)
            second = await asyncio.wait_for(b.receive(), timeout=3.0)
        finally:
            await a.disconnect()
            await b.disconnect()
        return first, second

    assert asyncio.run(run()) == (b"hello", b"world")


def test_udp_async_iteration_yields_each_datagram():
    async def run():
        a = UdpTransport("127.0.0.1", 0)
        b = UdpTransport("127.0.0.1", 0)
        await a.connect()
        await b.connect()
        received = []
        try:
            for i in range(3):
                await a.send(b.local_address, f"msg-{i}".encode())

            async def collect():
                async for payload in b:
                    received.append(payload)
                    if len(received) == 3:
                        break

            await asyncio.wait_for(collect(), timeout=3.0)
        finally:
            await a.disconnect()
            await b.disconnect()
        return received

    assert asyncio.run(run()) == [b"msg-0", b"msg-1", b"msg-2"]


def test_udp_bind_conflict_raises_init_error():
    async def run():
        a = UdpTransport("127.0.0.1", 0)
        await a.connect()
        try:
            b = UdpTransport("127.0.0.1", a.local_address[1])
            with pytest.raises(TransportInitError):
                await b.connect()
        finally:
            await a.disconnect()

    asyncio.run(run())


def test_udp_send_when_closed_is_logged(caplog):
    async def run():
        a = UdpTransport("127.0.0.1", 0)
        await a.send(("127.0.0.1", 9), b"x")

    with caplog.at_level(logging.WARNING, logger="udpmqtt.transports.udp"):
        asyncio.run(run())
    assert any("dropped" in r.getMessage() for r in caplog.records)
