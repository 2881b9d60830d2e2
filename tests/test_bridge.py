import asyncio
import logging

import pytest

from udpmqtt.bridge import Bridge, BridgeState, CorrelationTable
from udpmqtt.bridge.protocol import Envelope, decode, encode
from udpmqtt.errors import CreationError, TransportClosedError
from udpmqtt.transports.mock import MockTransport


class FakeClock:
    def __init__(self, now: float = 100.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def make_bridge(clock=None, correlation=None):
    udp = MockTransport("udp")
    mqtt = MockTransport("mqtt")
    bridge = Bridge(
        udp=udp,
        mqtt=mqtt,
        udp_out=("127.0.0.1", 9001),
        mqtt_topic_out="out",
        correlation=correlation,
        clock=clock or FakeClock(),
    )
    return bridge, udp, mqtt


def test_udp_to_mqtt_forwarding():
    async def run():
        bridge, udp, mqtt = make_bridge()
        await bridge.start()
        try:
            udp.inject(encode(Envelope(id="a1", type="demo.event", source="s", data="x")))
            sent = await mqtt.wait_for_sends(1)
        finally:
            await bridge.stop()
        return sent, udp.sent

    sent, udp_sent = asyncio.run(asyncio.wait_for(run(), timeout=10))
    assert len(sent) == 1
    topic, payload = sent[0]
    assert topic == "out"
    ev = decode(payload)
    assert (ev.id, ev.type, ev.source, ev.data) == ("a1", "demo.event", "s", "x")
    assert udp_sent == []


def test_mqtt_to_udp_forwarding_without_correlation():
    async def run():
        bridge, udp, mqtt = make_bridge()
        await bridge.start()
        try:
            mqtt.inject(encode(Envelope(id="foreign", type="demo.reply")))
            sent = await udp.wait_for_sends(1)
        finally:
            await bridge.stop()
        return sent, bridge.get_stats()

    sent, stats = asyncio.run(asyncio.wait_for(run(), timeout=10))
    assert sent[0][0] == ("127.0.0.1", 9001)
    assert decode(sent[0][1]).id == "foreign"
    assert stats["replies_correlated"] == 0


def test_mqtt_reply_logs_duration_and_clears_entry(caplog):
    clock = FakeClock(50.0)

    async def run():
        bridge, udp, mqtt = make_bridge(clock=clock)
        bridge.correlation.record("a1", 50.0)
        await bridge.start()
        try:
            clock.now = 50.125
            mqtt.inject(encode(Envelope(id="a1", type="demo.reply")))
            sent = await udp.wait_for_sends(1)
        finally:
            await bridge.stop()
        return bridge, sent

    with caplog.at_level(logging.INFO, logger="udpmqtt.bridge"):
        bridge, sent = asyncio.run(asyncio.wait_for(run(), timeout=10))

    assert "a1" not in bridge.correlation
    assert any(
        "Duration for CloudEvent ID: a1 demo.reply - 125.000 ms" in r.getMessage()
        for r in caplog.records
    )
    ev = decode(sent[0][1])
    assert (ev.id, ev.type) == ("a1", "demo.reply")


def test_decode_failure_does_not_disrupt_either_path(caplog):
    async def run():
        bridge, udp, mqtt = make_bridge()
        await bridge.start()
        try:
            udp.inject(b"garbage")
            mqtt.inject(b'{"type":"no-id"}')
            udp.inject(encode(Envelope(id="u1", type="demo.event")))
            mqtt.inject(encode(Envelope(id="m1", type="demo.event")))
            to_mqtt = await mqtt.wait_for_sends(1)
            to_udp = await udp.wait_for_sends(1)
        finally:
            await bridge.stop()
        return to_mqtt, to_udp, bridge.get_stats()

    with caplog.at_level(logging.WARNING, logger="udpmqtt.bridge"):
        to_mqtt, to_udp, stats = asyncio.run(asyncio.wait_for(run(), timeout=10))

    assert [decode(p).id for _, p in to_mqtt] == ["u1"]
    assert [decode(p).id for _, p in to_udp] == ["m1"]
    assert stats["decode_errors"] == 2
    messages = [r.getMessage() for r in caplog.records]
    assert any("via UDP" in m for m in messages)
    assert any("via MQTT" in m for m in messages)


def test_every_message_forwarded_exactly_once():
    async def run():
        bridge, udp, mqtt = make_bridge()
        await bridge.start()
        try:
            for i in range(20):
                udp.inject(encode(Envelope(id=f"u{i}", type="demo.up")))
                mqtt.inject(encode(Envelope(id=f"m{i}", type="demo.down")))
            to_mqtt = await mqtt.wait_for_sends(20)
            to_udp = await udp.wait_for_sends(20)
            await asyncio.sleep(0.05)
        finally:
            await bridge.stop()
        return list(mqtt.sent), list(udp.sent)

    to_mqtt, to_udp = asyncio.run(asyncio.wait_for(run(), timeout=10))
    # ordering across the two sources is not guaranteed; compare as sets
    assert sorted(decode(p).id for _, p in to_mqtt) == sorted(f"u{i}" for i in range(20))
    assert sorted(decode(p).id for _, p in to_udp) == sorted(f"m{i}" for i in range(20))


def test_send_ping_records_and_correlates():
    clock = FakeClock(10.0)

    async def run():
        bridge, udp, mqtt = make_bridge(clock=clock)
        await bridge.start()
        try:
            ping = await bridge.send_ping()
            assert ping.id in bridge.correlation
            wire = decode(udp.sent[0][1])
            assert udp.sent[0][0] == ("127.0.0.1", 9001)
            assert wire.type == "com.bosch-engineering.ping"
            assert wire.source == "https://bosch-engineering.com"
            assert wire.data == "ping"

            clock.now = 10.5
            mqtt.inject(encode(Envelope(id=ping.id, type="com.bosch-engineering.pong")))
            await udp.wait_for_sends(2)
        finally:
            await bridge.stop()
        return bridge, ping

    bridge, ping = asyncio.run(asyncio.wait_for(run(), timeout=10))
    stats = bridge.get_stats()
    assert ping.id not in bridge.correlation
    assert stats["pings_sent"] == 1
    assert stats["replies_correlated"] == 1
    assert stats["pending_pings"] == 0


def test_send_ping_creation_failure_propagates(monkeypatch):
    from udpmqtt.bridge import bridge as bridge_module

    def fail(*args, **kwargs):
        raise CreationError("no id")

    monkeypatch.setattr(bridge_module, "create", fail)

    async def run():
        bridge, udp, _ = make_bridge()
        await bridge.start()
        try:
            with pytest.raises(CreationError):
                await bridge.send_ping()
        finally:
            await bridge.stop()
        return bridge, udp

    bridge, udp = asyncio.run(run())
    assert udp.sent == []
    assert len(bridge.correlation) == 0


def test_send_failure_is_not_fatal():
    async def run():
        udp = MockTransport("udp")
        mqtt = MockTransport("mqtt", fail_sends=True)
        bridge = Bridge(udp=udp, mqtt=mqtt, udp_out=("127.0.0.1", 9001), mqtt_topic_out="out")
        await bridge.start()
        try:
            udp.inject(encode(Envelope(id="lost", type="demo.event")))
            mqtt.inject(encode(Envelope(id="kept", type="demo.event")))
            sent = await udp.wait_for_sends(1)
            assert bridge.is_running
        finally:
            await bridge.stop()
        return sent

    sent = asyncio.run(asyncio.wait_for(run(), timeout=10))
    assert decode(sent[0][1]).id == "kept"


def test_lifecycle_states():
    async def run():
        bridge, udp, mqtt = make_bridge()
        assert bridge.state is BridgeState.IDLE
        await bridge.start()
        assert bridge.state is BridgeState.RUNNING
        assert udp.connected and mqtt.connected
        await bridge.stop()
        assert bridge.state is BridgeState.STOPPED
        assert not udp.connected and not mqtt.connected
        await bridge.stop()  # idempotent
        with pytest.raises(RuntimeError):
            await bridge.start()

    asyncio.run(run())


def test_scenario_ping_reply_roundtrip(caplog):
    """UDP event out to MQTT, then the matching reply back to UDP."""
    clock = FakeClock(0.0)
    table = CorrelationTable()

    async def run():
        bridge, udp, mqtt = make_bridge(clock=clock, correlation=table)
        await bridge.start()
        try:
            udp.inject(encode(Envelope(id="a1", type="demo.event", source="s", data="x")))
            to_mqtt = await mqtt.wait_for_sends(1)

            table.record("a1", 1.0)
            clock.now = 1.2
            mqtt.inject(encode(Envelope(id="a1", type="demo.reply")))
            to_udp = await udp.wait_for_sends(1)
        finally:
            await bridge.stop()
        return to_mqtt, to_udp

    with caplog.at_level(logging.INFO, logger="udpmqtt.bridge"):
        to_mqtt, to_udp = asyncio.run(asyncio.wait_for(run(), timeout=10))

    assert to_mqtt[0][0] == "out"
    out = decode(to_mqtt[0][1])
    assert (out.id, out.type, out.source, out.data) == ("a1", "demo.event", "s", "x")

    assert to_udp[0][0] == ("127.0.0.1", 9001)
    back = decode(to_udp[0][1])
    assert (back.id, back.type) == ("a1", "demo.reply")
    assert any("Duration for CloudEvent ID: a1" in r.getMessage() for r in caplog.records)


def test_deeply_nested_payload_does_not_stop_forwarding():
    nested = b"[" * 100000 + b"]" * 100000

    async def run():
        bridge, udp, mqtt = make_bridge()
        await bridge.start()
        try:
            udp.inject(nested)
            mqtt.inject(nested)
            udp.inject(encode(Envelope(id="u1", type="demo.event")))
            mqtt.inject(encode(Envelope(id="m1", type="demo.event")))
            to_mqtt = await mqtt.wait_for_sends(1)
            to_udp = await udp.wait_for_sends(1)
            assert bridge.is_running
        finally:
            await bridge.stop()
        return to_mqtt, to_udp, bridge.get_stats()

    to_mqtt, to_udp, stats = asyncio.run(asyncio.wait_for(run(), timeout=10))
    assert [decode(p).id for _, p in to_mqtt] == ["u1"]
    assert [decode(p).id for _, p in to_udp] == ["m1"]
    assert stats["decode_errors"] == 2
    assert stats["errors"] == 0


class FlakyTransport(MockTransport):
    """Raises from the first send, then behaves."""

    def __init__(self, name):
        super().__init__(name)
        self.raised = False

    async def send(self, destination, data):
        if not self.raised:
            self.raised = True
            raise RuntimeError("unexpected failure")
        await super().send(destination, data)


def test_handler_exception_is_contained(caplog):
    async def run():
        udp = MockTransport("udp")
        mqtt = FlakyTransport("mqtt")
        bridge = Bridge(udp=udp, mqtt=mqtt, udp_out=("127.0.0.1", 9001), mqtt_topic_out="out")
        await bridge.start()
        try:
            udp.inject(encode(Envelope(id="u0", type="demo.event")))
            udp.inject(encode(Envelope(id="u1", type="demo.event")))
            mqtt.inject(encode(Envelope(id="m1", type="demo.event")))
            to_mqtt = await mqtt.wait_for_sends(1)
            to_udp = await udp.wait_for_sends(1)
            assert bridge.is_running
        finally:
            await bridge.stop()
        return to_mqtt, to_udp, bridge.get_stats()

    with caplog.at_level(logging.ERROR, logger="udpmqtt.bridge"):
        to_mqtt, to_udp, stats = asyncio.run(asyncio.wait_for(run(), timeout=10))

    assert [decode(p).id for _, p in to_mqtt] == ["u1"]
    assert [decode(p).id for _, p in to_udp] == ["m1"]
    assert stats["errors"] == 1
    assert stats["forwarded_to_mqtt"] == 1
    assert any("Error handling UDP payload" in r.getMessage() for r in caplog.records)


def test_inbound_channel_closing_ends_forwarding():
    async def run():
        bridge, udp, mqtt = make_bridge()
        await bridge.start()
        mqtt.terminate()
        failure = await asyncio.wait_for(bridge.wait_terminated(), timeout=2)
        assert bridge.failure is failure
        await bridge.stop()
        return bridge, udp, failure

    bridge, udp, failure = asyncio.run(asyncio.wait_for(run(), timeout=10))
    assert isinstance(failure, TransportClosedError)
    assert bridge.state is BridgeState.STOPPED
    assert not udp.connected


def test_wait_terminated_after_stop_returns_none():
    async def run():
        bridge, _, _ = make_bridge()
        await bridge.start()
        await bridge.stop()
        return await asyncio.wait_for(bridge.wait_terminated(), timeout=2)

    assert asyncio.run(run()) is None
