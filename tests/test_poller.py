# Energy Relay
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License

"""Tests for DevicePoller: rounds, isolation, no-overlap, reconnects, teardown."""

import asyncio
import os
import sys
from collections import defaultdict

import pytest
import pytest_asyncio

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "relay"))

from energy_relay.device_config import DeviceDescriptor, default_descriptors
from energy_relay.poller import DevicePoller
from energy_relay.relay_model import ConnectionState, RegisterMap, RegisterSpec
from energy_relay.transport import DeviceReadError


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class FakeTransport:
    """In-memory transport serving fixed raw register values."""

    def __init__(self, device, values, connect_ok=True, delay=0.0, events=None,
                 connect_delay=0.0):
        self.device = device
        self.connect_delay = connect_delay
        self.values = values
        self.connect_ok = connect_ok
        self.delay = delay
        self.events = events
        self._connected = False
        self.close_calls = 0
        self.reads: list[int] = []
        self.fail_reads = False
        self.fail_addresses: set[int] = set()
        self.drop_on_read = False
        self.gate: asyncio.Event | None = None
        self.active = 0
        self.max_active = 0

    @property
    def connected(self) -> bool:
        return self._connected

    async def connect(self) -> bool:
        await asyncio.sleep(self.connect_delay)
        self._connected = self.connect_ok and self.close_calls == 0
        return self._connected

    async def read_register(self, address: int) -> int:
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.events is not None:
                self.events.append(("read", self.device.id))
            if self.gate is not None:
                await self.gate.wait()
            await asyncio.sleep(self.delay)
            if self.drop_on_read:
                self._connected = False
                raise DeviceReadError("connection reset")
            if self.fail_reads or address in self.fail_addresses:
                raise DeviceReadError("timeout")
            self.reads.append(address)
            return self.values.get(address, 0)
        finally:
            self.active -= 1

    def get_health(self):
        return {"connected": self._connected, "reads": len(self.reads)}

    def close(self):
        self.close_calls += 1
        self._connected = False


class FakeFactory:
    def __init__(self, values=None, refuse=(), delay=0.0, events=None):
        self.values = values or {}
        self.refuse = set(refuse)
        self.delay = delay
        self.events = events
        self.connect_delay = 0.0
        self.created: dict[str, list[FakeTransport]] = defaultdict(list)

    def __call__(self, device):
        transport = FakeTransport(
            device, self.values,
            connect_ok=device.id not in self.refuse,
            delay=self.delay,
            events=self.events,
            connect_delay=self.connect_delay,
        )
        self.created[device.id].append(transport)
        return transport

    def latest(self, device_id) -> FakeTransport:
        return self.created[device_id][-1]


def make_device(device_id="meter", **registers) -> DeviceDescriptor:
    if not registers:
        registers = {"power": RegisterSpec(100, 100)}
    return DeviceDescriptor(
        id=device_id, name=device_id.title(), address="10.0.0.1",
        registers=RegisterMap(**registers),
    )


async def wait_until(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


@pytest_asyncio.fixture
async def pollers():
    """Track pollers built in a test and shut them all down afterwards."""
    created = []

    def _make(factory, **kwargs):
        kwargs.setdefault("reconnect", False)
        poller = DevicePoller(factory, **kwargs)
        created.append(poller)
        return poller

    yield _make
    for poller in created:
        poller.disconnect()


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

class TestConfigure:
    @pytest.mark.asyncio
    async def test_one_failed_connection_leaves_two_readings(self, pollers):
        factory = FakeFactory(refuse={"heatpump"})
        poller = pollers(factory)
        await poller.configure(default_descriptors(env={}))

        readings = await poller.read_all_devices()
        assert sorted(r.device_id for r in readings) == ["charger", "solar"]
        assert poller.get_connection_states()["heatpump"] == ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_configure_only_once(self, pollers):
        poller = pollers(FakeFactory())
        await poller.configure([make_device()])
        with pytest.raises(RuntimeError):
            await poller.configure([make_device("other")])

    @pytest.mark.asyncio
    async def test_duplicate_device_ids_rejected(self, pollers):
        poller = pollers(FakeFactory())
        with pytest.raises(ValueError, match="duplicate"):
            await poller.configure([make_device(), make_device()])

    @pytest.mark.asyncio
    async def test_connection_events_emitted(self, pollers):
        events = []
        poller = pollers(FakeFactory(refuse={"b"}))
        poller.add_connection_listener(lambda d, s: events.append((d, s)))
        await poller.configure([make_device("a"), make_device("b")])
        assert ("a", ConnectionState.CONNECTED) in events
        assert ("b", ConnectionState.DISCONNECTED) in events

    @pytest.mark.asyncio
    async def test_factory_exception_marks_device_disconnected(self, pollers):
        def factory(device):
            raise OSError("no route")

        poller = pollers(factory)
        await poller.configure([make_device()])
        assert poller.get_connection_states() == {"meter": ConnectionState.DISCONNECTED}


# ---------------------------------------------------------------------------
# Reading
# ---------------------------------------------------------------------------

class TestReadDevice:
    @pytest.mark.asyncio
    async def test_power_scaled_from_raw(self, pollers):
        factory = FakeFactory(values={40083: 250})
        poller = pollers(factory)
        solar = make_device("solar", power=RegisterSpec(40083, 100))
        await poller.configure([solar])

        reading = await poller.read_device("solar")
        assert reading.power == 2.5
        assert reading.online is True

    @pytest.mark.asyncio
    async def test_status_reports_transport_health(self, pollers):
        poller = pollers(FakeFactory(values={1: 100}, refuse={"down"}))
        await poller.configure([
            make_device("solar", power=RegisterSpec(1, 100)), make_device("down"),
        ])
        await poller.read_device("solar")

        transports = poller.get_status()["transports"]
        assert transports == {"solar": {"connected": True, "reads": 1}}

    @pytest.mark.asyncio
    async def test_registers_read_power_first(self, pollers):
        factory = FakeFactory(values={1: 100, 2: 2300, 3: 500})
        poller = pollers(factory)
        await poller.configure([make_device(
            "solar",
            current=RegisterSpec(3, 100),
            power=RegisterSpec(1, 100),
            voltage=RegisterSpec(2, 10),
        )])
        reading = await poller.read_device("solar")
        assert factory.latest("solar").reads == [1, 2, 3]
        assert (reading.power, reading.voltage, reading.current) == (1.0, 230.0, 5.0)
        assert reading.temperature is None

    @pytest.mark.asyncio
    async def test_failure_yields_bare_offline_reading(self, pollers):
        factory = FakeFactory(values={1: 100, 2: 2300})
        poller = pollers(factory)
        await poller.configure([make_device(
            "solar", power=RegisterSpec(1, 100), voltage=RegisterSpec(2, 10),
        )])
        factory.latest("solar").fail_reads = True

        reading = await poller.read_device("solar")
        assert reading.online is False
        assert reading.power == 0
        assert reading.voltage is None and reading.current is None
        assert reading.temperature is None
        # Transient failure keeps the connection
        assert poller.get_connection_states()["solar"] == ConnectionState.CONNECTED

    @pytest.mark.asyncio
    async def test_later_register_failure_discards_partial_values(self, pollers):
        factory = FakeFactory(values={1: 100, 2: 2300, 3: 500, 4: 455})
        poller = pollers(factory)
        await poller.configure([make_device(
            "heatpump",
            power=RegisterSpec(1, 100),
            voltage=RegisterSpec(2, 10),
            current=RegisterSpec(3, 100),
            temperature=RegisterSpec(4, 10),
        )])
        transport = factory.latest("heatpump")
        transport.fail_addresses = {2}

        reading = await poller.read_device("heatpump")
        assert transport.reads == [1]
        assert reading.online is False
        assert reading.power == 0
        assert reading.voltage is None and reading.current is None
        assert reading.temperature is None

    @pytest.mark.asyncio
    async def test_unknown_or_disconnected_device(self, pollers):
        poller = pollers(FakeFactory(refuse={"down"}))
        await poller.configure([make_device("down")])
        assert await poller.read_device("down") is None
        assert await poller.read_device("missing") is None

    @pytest.mark.asyncio
    async def test_on_demand_reads_serialized_per_device(self, pollers):
        factory = FakeFactory(delay=0.01)
        poller = pollers(factory)
        await poller.configure([make_device(
            "solar", power=RegisterSpec(1, 1), voltage=RegisterSpec(2, 1),
        )])
        await asyncio.gather(*(poller.read_device("solar") for _ in range(4)))
        assert factory.latest("solar").max_active == 1


class TestReadAll:
    @pytest.mark.asyncio
    async def test_failing_device_isolated(self, pollers):
        factory = FakeFactory(values={100: 300})
        poller = pollers(factory)
        await poller.configure([make_device("a"), make_device("b")])
        factory.latest("a").fail_reads = True

        readings = {r.device_id: r for r in await poller.read_all_devices()}
        assert readings["a"].online is False
        assert readings["b"].online is True
        assert readings["b"].power == 3.0

    @pytest.mark.asyncio
    async def test_devices_read_concurrently(self, pollers):
        """A stalled device must not hold up another device in the same round."""
        factory = FakeFactory()
        poller = pollers(factory)
        await poller.configure([make_device("slow"), make_device("fast")])

        gate = asyncio.Event()
        factory.latest("slow").gate = gate

        async def release_when_fast_done():
            await wait_until(lambda: factory.latest("fast").reads)
            gate.set()

        readings, _ = await asyncio.wait_for(
            asyncio.gather(poller.read_all_devices(), release_when_fast_done()),
            timeout=2.0,
        )
        assert {r.device_id for r in readings} == {"slow", "fast"}

    @pytest.mark.asyncio
    async def test_dropped_connection_removes_device(self, pollers):
        events = []
        factory = FakeFactory()
        poller = pollers(factory)
        poller.add_connection_listener(lambda d, s: events.append((d, s)))
        await poller.configure([make_device("a"), make_device("b")])
        dropped = factory.latest("a")
        dropped.drop_on_read = True

        first = {r.device_id: r for r in await poller.read_all_devices()}
        assert first["a"].online is False
        assert dropped.close_calls == 1
        assert events[-1] == ("a", ConnectionState.DISCONNECTED)

        second = await poller.read_all_devices()
        assert [r.device_id for r in second] == ["b"]


# ---------------------------------------------------------------------------
# Poll loop
# ---------------------------------------------------------------------------

class TestPollLoop:
    @pytest.mark.asyncio
    async def test_rounds_never_overlap(self, pollers):
        events = []
        factory = FakeFactory(delay=0.03, events=events)
        poller = pollers(factory)
        poller.add_data_listener(lambda batch: events.append(("batch", len(batch))))
        await poller.configure([make_device()])

        poller.start_polling(0.005)
        await wait_until(lambda: sum(1 for e in events if e[0] == "batch") >= 3)
        poller.stop_polling()

        kinds = [e[0] for e in events]
        # Every read is followed by its batch before the next read starts
        for i in range(0, len(kinds) - 1, 2):
            assert kinds[i:i + 2] == ["read", "batch"]
        assert poller.get_status()["skipped_ticks"] > 0

    @pytest.mark.asyncio
    async def test_each_round_emits_one_batch(self, pollers):
        batches = []
        poller = pollers(FakeFactory(values={100: 100}))
        poller.add_data_listener(batches.append)
        await poller.configure([make_device("a"), make_device("b")])

        poller.start_polling(0.01)
        await wait_until(lambda: len(batches) >= 2)
        poller.stop_polling()
        assert all(len(batch) == 2 for batch in batches)

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_stop_others(self, pollers):
        received = []

        def broken(batch):
            raise RuntimeError("listener bug")

        poller = pollers(FakeFactory())
        poller.add_data_listener(broken)
        poller.add_data_listener(received.append)
        await poller.configure([make_device()])

        poller.start_polling(0.01)
        await wait_until(lambda: len(received) >= 2)
        assert poller.is_polling

    @pytest.mark.asyncio
    async def test_restart_replaces_loop(self, pollers):
        poller = pollers(FakeFactory())
        await poller.configure([make_device()])
        poller.start_polling(10)
        first = poller._poll_task
        poller.start_polling(5)
        await asyncio.sleep(0.01)
        assert first.cancelled() or first.done()
        assert poller.get_status()["interval"] == 5

    @pytest.mark.asyncio
    async def test_invalid_interval(self, pollers):
        poller = pollers(FakeFactory())
        with pytest.raises(ValueError):
            poller.start_polling(0)


# ---------------------------------------------------------------------------
# Reconnection
# ---------------------------------------------------------------------------

class TestReconnect:
    @pytest.mark.asyncio
    async def test_reconnect_uses_new_transport(self, pollers):
        events = []
        factory = FakeFactory(refuse={"a"})
        poller = pollers(factory, reconnect=True, reconnect_delay=0.01, reconnect_max_delay=0.02)
        poller.add_connection_listener(lambda d, s: events.append((d, s)))
        await poller.configure([make_device("a")])
        factory.refuse.clear()

        await wait_until(
            lambda: poller.get_connection_states()["a"] == ConnectionState.CONNECTED
        )
        first, latest = factory.created["a"][0], factory.created["a"][-1]
        assert first is not latest
        assert first.close_calls == 1
        assert events == [("a", ConnectionState.DISCONNECTED), ("a", ConnectionState.CONNECTED)]

    @pytest.mark.asyncio
    async def test_repeated_failures_reported_once(self, pollers):
        events = []
        factory = FakeFactory(refuse={"a"})
        poller = pollers(factory, reconnect=True, reconnect_delay=0.01, reconnect_max_delay=0.01)
        poller.add_connection_listener(lambda d, s: events.append((d, s)))
        await poller.configure([make_device("a")])

        await wait_until(lambda: len(factory.created["a"]) >= 3)
        assert events == [("a", ConnectionState.DISCONNECTED)]

    @pytest.mark.asyncio
    async def test_no_reconnect_when_disabled(self, pollers):
        factory = FakeFactory(refuse={"a"})
        poller = pollers(factory, reconnect=False, reconnect_delay=0.01)
        await poller.configure([make_device("a")])
        await asyncio.sleep(0.05)
        assert len(factory.created["a"]) == 1


# ---------------------------------------------------------------------------
# Teardown
# ---------------------------------------------------------------------------

class TestDisconnect:
    @pytest.mark.asyncio
    async def test_disconnect_idempotent_and_silent(self):
        events = []
        factory = FakeFactory()
        poller = DevicePoller(factory, reconnect=False)
        await poller.configure([make_device("a"), make_device("b")])
        poller.add_connection_listener(lambda d, s: events.append((d, s)))
        poller.start_polling(0.01)

        poller.disconnect()
        poller.disconnect()

        assert not poller.is_polling
        assert events == []
        assert all(t.close_calls == 1 for ts in factory.created.values() for t in ts)
        assert set(poller.get_connection_states().values()) == {ConnectionState.DISCONNECTED}

    @pytest.mark.asyncio
    async def test_disconnect_cancels_reconnects(self):
        factory = FakeFactory(refuse={"a"})
        poller = DevicePoller(factory, reconnect=True, reconnect_delay=0.01)
        await poller.configure([make_device("a")])
        poller.disconnect()
        await asyncio.sleep(0.05)
        assert len(factory.created["a"]) == 1

    @pytest.mark.asyncio
    async def test_disconnect_closes_transport_mid_reconnect(self):
        factory = FakeFactory(refuse={"a"})
        poller = DevicePoller(factory, reconnect=True, reconnect_delay=0.01)
        await poller.configure([make_device("a")])
        factory.refuse.clear()
        factory.connect_delay = 0.5
        await wait_until(lambda: len(factory.created["a"]) == 2)

        poller.disconnect()
        await asyncio.sleep(0.05)

        retry = factory.created["a"][1]
        assert retry.close_calls == 1
        assert not retry.connected
        assert poller.get_connection_states()["a"] == ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_start_after_disconnect_ignored(self):
        poller = DevicePoller(FakeFactory(), reconnect=False)
        poller.disconnect()
        poller.start_polling(1)
        assert not poller.is_polling
