import asyncio
from datetime import datetime, timedelta, timezone

from thermostatd.drivers.bus_sim import SimulatedBus
from thermostatd.services.bridge import SensorBridge, decode_payload


class FakeClock:
    def __init__(self):
        self.now = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


def build(**kwargs):
    bus = SimulatedBus()
    clock = FakeClock()
    bridge = SensorBridge(bus, probe_stale_s=300, retry_initial_s=0.01, retry_max_s=0.05, clock=clock, **kwargs)
    return bus, bridge, clock


def test_decode_payload():
    assert decode_payload(b" 21.5 ") == 21.5
    assert decode_payload(b"on") == "on"
    assert decode_payload(b"nan") == "nan"
    assert decode_payload("7") == 7.0


def test_latest_value_wins_and_unknown_reads_absent():
    async def main():
        bus, bridge, _ = build()
        await bridge.start()
        bridge.subscribe("home/t")
        assert bridge.read("home/t") is None
        bus.inject("home/t", "20.0")
        bus.inject("home/t", "21.0")
        assert bridge.read("home/t") == 21.0
        assert bridge.read("home/other") is None
        await bridge.stop()

    asyncio.run(main())


def test_subscribe_is_idempotent():
    async def main():
        bus, bridge, _ = build()
        await bridge.start()
        bridge.subscribe("home/t")
        bridge.subscribe("home/t")
        bridge.subscribe("home/t", owner="script")
        assert bus.subscribe_calls == ["home/t"]
        await bridge.stop()

    asyncio.run(main())


def test_resubscribes_after_reconnect_and_keeps_cache():
    async def main():
        bus, bridge, _ = build()
        await bridge.start()
        bridge.subscribe("home/a")
        bridge.subscribe("home/b", owner="script")
        bus.inject("home/a", "1")
        bus.drop()
        assert not bridge.connected
        assert bridge.read("home/a") == 1.0
        bus.restore()
        assert bus.subscriptions == {"home/a", "home/b"}
        bus.inject("home/b", "x")
        assert bridge.read("home/b") == "x"
        await bridge.stop()

    asyncio.run(main())


def test_subscribe_failure_is_retried_not_raised():
    async def main():
        bus, bridge, _ = build()
        await bridge.start()
        bus.fail_subscribes = 2
        bridge.subscribe("home/t")
        assert "home/t" not in bus.subscriptions
        await asyncio.sleep(0.2)
        assert "home/t" in bus.subscriptions
        assert bus.subscribe_calls.count("home/t") == 3
        await bridge.stop()

    asyncio.run(main())


def test_subscribe_while_disconnected_happens_on_connect():
    async def main():
        bus, bridge, _ = build()
        await bridge.start()
        bus.drop()
        bridge.subscribe("home/t")
        assert bus.subscribe_calls == []
        bus.restore()
        assert "home/t" in bus.subscriptions
        await bridge.stop()

    asyncio.run(main())


def test_publish_failure_returns_false():
    async def main():
        bus, bridge, _ = build()
        await bridge.start()
        assert bridge.publish("home/cmd", "heat") is True
        bus.drop()
        assert bridge.publish("home/cmd", "cool") is False
        assert bus.messages("home/cmd") == ["heat"]
        await bridge.stop()

    asyncio.run(main())


def test_release_drops_owner_topics_and_cache():
    async def main():
        bus, bridge, _ = build()
        await bridge.start()
        bridge.subscribe("home/shared", owner="core")
        bridge.subscribe("home/shared", owner="script")
        bridge.subscribe("home/mine", owner="script")
        bus.inject("home/shared", "1")
        bus.inject("home/mine", "2")
        dropped = bridge.release("script")
        assert dropped == ["home/mine"]
        assert bus.subscriptions == {"home/shared"}
        assert bridge.read("home/mine") is None
        assert bridge.read("home/shared") == 1.0
        assert bridge.topics("script") == []
        await bridge.stop()

    asyncio.run(main())


def test_wildcard_listener_and_subscription():
    async def main():
        bus, bridge, _ = build()
        await bridge.start()
        seen = []
        bridge.subscribe("home/probes/+")
        remove = bridge.add_listener("home/probes/#", lambda r: seen.append((r.topic, r.value)))
        bus.inject("home/probes/kitchen", "19.5")
        assert bridge.read("home/probes/kitchen") == 19.5
        remove()
        bus.inject("home/probes/kitchen", "20")
        assert seen == [("home/probes/kitchen", 19.5)]
        await bridge.stop()

    asyncio.run(main())


def test_failing_listener_does_not_break_delivery():
    async def main():
        bus, bridge, _ = build()
        await bridge.start()
        seen = []

        def broken(_reading):
            raise RuntimeError("listener bug")

        bridge.subscribe("home/t")
        bridge.add_listener("home/t", broken)
        bridge.add_listener("home/t", lambda r: seen.append(r.value))
        bus.inject("home/t", "3")
        assert seen == [3.0]
        await bridge.stop()

    asyncio.run(main())


def test_staleness_and_snapshot_copy():
    async def main():
        bus, bridge, clock = build()
        await bridge.start()
        bridge.subscribe("home/t")
        bus.inject("home/t", "20")
        snap = bridge.snapshot()
        reading = bridge.reading("home/t")
        assert not bridge.is_stale(reading)
        clock.advance(301)
        assert bridge.is_stale(reading)
        bus.inject("home/t", "22")
        assert snap["home/t"].value == 20.0
        await bridge.stop()

    asyncio.run(main())


def test_retained_value_delivered_on_subscribe():
    async def main():
        bus, bridge, _ = build()
        bus.inject("home/mode", "heat", retain=True)
        await bridge.start()
        bridge.subscribe("home/mode")
        assert bridge.read("home/mode") == "heat"
        await bridge.stop()

    asyncio.run(main())
