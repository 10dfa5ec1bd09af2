# Energy Relay
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License

"""Multi-device register poller.

DevicePoller owns one transport (connection) per configured device. A
polling round reads every connected device concurrently; within a device the
registers are read one after another over its single connection. A failed
device degrades to an offline Reading without holding up the others.

The poll loop is a single asyncio task that re-arms only after the previous
round has finished and its batch has been handed to listeners, so rounds can
never overlap. Ticks that fall inside a slow round are skipped, not queued.
"""

import asyncio
import logging
import time
from typing import Callable

from .device_config import DeviceDescriptor
from .relay_model import ConnectionState, Reading, scale_register, utc_now_iso
from .transport import DeviceTransport, TransportFactory

logger = logging.getLogger(__name__)

DataListener = Callable[[list[Reading]], None]
ConnectionListener = Callable[[str, ConnectionState], None]


class DevicePoller:
    def __init__(
        self,
        transport_factory: TransportFactory,
        *,
        reconnect: bool = True,
        reconnect_delay: float = 5.0,
        reconnect_max_delay: float = 60.0,
    ):
        self._transport_factory = transport_factory
        self._reconnect = reconnect
        self._reconnect_delay = reconnect_delay
        self._reconnect_max_delay = max(reconnect_max_delay, reconnect_delay)

        self._devices: dict[str, DeviceDescriptor] = {}
        self._transports: dict[str, DeviceTransport] = {}
        self._states: dict[str, ConnectionState] = {}
        # Last state reported to listeners, so repeated failures emit once
        self._reported: dict[str, ConnectionState] = {}
        # Serializes register access on each device's single connection
        self._locks: dict[str, asyncio.Lock] = {}
        self._reconnect_tasks: dict[str, asyncio.Task] = {}

        self._data_listeners: list[DataListener] = []
        self._connection_listeners: list[ConnectionListener] = []

        self._configured = False
        self._closed = False
        self._poll_task: asyncio.Task | None = None
        self._interval: float | None = None
        self._round_in_flight = False

        # Health tracking
        self._round_count = 0
        self._skipped_ticks = 0
        self._read_errors = 0
        self._listener_errors = 0
        self._last_round_duration: float | None = None
        self._last_round_time: float | None = None

    # ------------------------------------------------------------------
    # Listener registration
    # ------------------------------------------------------------------

    def add_data_listener(self, listener: DataListener):
        """Receive the Reading batch at the end of every polling round."""
        self._data_listeners.append(listener)

    def add_connection_listener(self, listener: ConnectionListener):
        """Receive (device_id, state) on every device connect/disconnect."""
        self._connection_listeners.append(listener)

    def _emit_data(self, batch: list[Reading]):
        for listener in list(self._data_listeners):
            try:
                listener(batch)
            except Exception:
                self._listener_errors += 1
                if self._listener_errors <= 3:
                    logger.exception("Data listener failed")

    def _emit_connection(self, device_id: str, state: ConnectionState):
        if self._reported.get(device_id) == state:
            return
        self._reported[device_id] = state
        for listener in list(self._connection_listeners):
            try:
                listener(device_id, state)
            except Exception:
                self._listener_errors += 1
                if self._listener_errors <= 3:
                    logger.exception("Connection listener failed")

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    async def configure(self, devices: list[DeviceDescriptor]):
        """Register the devices and attempt every connection concurrently.

        A device that fails to connect is marked disconnected and left out of
        polling rounds; it never aborts startup.
        """
        if self._configured:
            raise RuntimeError("DevicePoller.configure() may only be called once")
        self._configured = True

        for device in devices:
            if device.id in self._devices:
                raise ValueError(f"duplicate device id {device.id!r}")
            self._devices[device.id] = device
            self._states[device.id] = ConnectionState.CONNECTING
            self._locks[device.id] = asyncio.Lock()

        await asyncio.gather(*(self._open_connection(d) for d in devices))

        connected = sum(1 for s in self._states.values() if s == ConnectionState.CONNECTED)
        logger.info("Configured %d device(s), %d connected", len(self._devices), connected)

    async def _open_connection(self, device: DeviceDescriptor) -> bool:
        """Build a fresh transport for *device* and try to connect it."""
        self._states[device.id] = ConnectionState.CONNECTING
        transport: DeviceTransport | None = None
        try:
            transport = self._transport_factory(device)
            ok = await transport.connect()
        except asyncio.CancelledError:
            if transport is not None:
                transport.close()
            self._states[device.id] = ConnectionState.DISCONNECTED
            raise
        except Exception:
            logger.exception("[%s] Connection attempt to %s failed", device.id, device.endpoint)
            ok = False

        if self._closed:
            if transport is not None:
                transport.close()
            self._states[device.id] = ConnectionState.DISCONNECTED
            return False

        if not ok:
            if transport is not None:
                transport.close()
            logger.warning("[%s] Could not connect to %s at %s",
                           device.id, device.name, device.endpoint)
            self._mark_disconnected(device.id)
            return False

        self._transports[device.id] = transport
        self._states[device.id] = ConnectionState.CONNECTED
        logger.info("[%s] Connected to %s at %s", device.id, device.name, device.endpoint)
        self._emit_connection(device.id, ConnectionState.CONNECTED)
        return True

    def _mark_disconnected(self, device_id: str):
        transport = self._transports.pop(device_id, None)
        if transport is not None:
            try:
                transport.close()
            except Exception:
                logger.debug("[%s] Error closing transport", device_id, exc_info=True)
        self._states[device_id] = ConnectionState.DISCONNECTED
        self._emit_connection(device_id, ConnectionState.DISCONNECTED)
        self._schedule_reconnect(device_id)

    def _schedule_reconnect(self, device_id: str):
        if not self._reconnect or self._closed:
            return
        task = self._reconnect_tasks.get(device_id)
        if task is not None and not task.done():
            return
        self._reconnect_tasks[device_id] = asyncio.get_running_loop().create_task(
            self._reconnect_loop(device_id),
            name=f"reconnect-{device_id}",
        )

    async def _reconnect_loop(self, device_id: str):
        """Retry a dropped device with exponential backoff until it connects."""
        device = self._devices[device_id]
        delay = self._reconnect_delay
        attempt = 0
        while not self._closed:
            await asyncio.sleep(delay)
            if self._closed:
                return
            attempt += 1
            logger.info("[%s] Reconnect attempt %d (backoff %.1fs)", device_id, attempt, delay)
            if await self._open_connection(device):
                return
            delay = min(delay * 2, self._reconnect_max_delay)

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    async def read_device(self, device_id: str) -> Reading | None:
        """Read one device's registers, power first.

        Returns None when the device is unknown or not connected. Any read
        failure yields an offline Reading; if the transport lost its
        connection the device is dropped from the pollable set.
        """
        device = self._devices.get(device_id)
        if device is None:
            return None

        async with self._locks[device_id]:
            transport = self._transports.get(device_id)
            if transport is None or self._states.get(device_id) != ConnectionState.CONNECTED:
                return None

            timestamp = utc_now_iso()
            values: dict[str, float] = {}
            try:
                for field, spec in device.registers.fields():
                    raw = await transport.read_register(spec.address)
                    values[field] = scale_register(raw, spec.scale)
            except Exception as e:
                self._read_errors += 1
                if self._read_errors <= 5 or self._read_errors % 50 == 0:
                    logger.warning("[%s] Read failed (error %d): %s",
                                   device_id, self._read_errors, e)
                if not transport.connected and self._transports.get(device_id) is transport:
                    logger.warning("[%s] Connection to %s lost", device_id, device.endpoint)
                    self._mark_disconnected(device_id)
                return Reading.offline(device_id, timestamp)

            return Reading(device_id=device_id, timestamp=timestamp, online=True, **values)

    async def read_all_devices(self) -> list[Reading]:
        """Read every connected device concurrently.

        Devices that are not connected are omitted. A device whose read
        fails mid-round contributes an offline Reading.
        """
        device_ids = [
            device_id for device_id, state in self._states.items()
            if state == ConnectionState.CONNECTED
        ]
        results = await asyncio.gather(
            *(self.read_device(device_id) for device_id in device_ids),
            return_exceptions=True,
        )

        readings: list[Reading] = []
        for device_id, result in zip(device_ids, results):
            if isinstance(result, Reading):
                readings.append(result)
            elif isinstance(result, BaseException):
                logger.error("[%s] Unexpected error during read", device_id, exc_info=result)
                readings.append(Reading.offline(device_id))
        return readings

    # ------------------------------------------------------------------
    # Poll loop
    # ------------------------------------------------------------------

    def start_polling(self, interval: float = 2.0):
        """Start (or restart) the periodic polling task."""
        if self._closed:
            logger.warning("start_polling() called after disconnect, ignoring")
            return
        if interval <= 0:
            raise ValueError(f"poll interval must be positive, got {interval}")
        self.stop_polling()
        self._interval = interval
        self._poll_task = asyncio.get_running_loop().create_task(
            self._poll_loop(interval),
            name="device-poller",
        )
        logger.info("Polling %d device(s) every %.1fs", len(self._devices), interval)

    def stop_polling(self):
        if self._poll_task is not None and not self._poll_task.done():
            self._poll_task.cancel()
        self._poll_task = None

    @property
    def is_polling(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    async def _poll_loop(self, interval: float):
        loop = asyncio.get_running_loop()
        next_tick = loop.time() + interval
        while True:
            await asyncio.sleep(max(0.0, next_tick - loop.time()))

            round_start = time.monotonic()
            self._round_in_flight = True
            try:
                batch = await self.read_all_devices()
            except Exception:
                batch = None
                logger.exception("Error in poll round")
            finally:
                self._round_in_flight = False

            self._last_round_duration = time.monotonic() - round_start
            if batch is not None:
                self._round_count += 1
                self._last_round_time = time.time()
                self._emit_data(batch)
                if self._round_count % 100 == 1:
                    logger.info(
                        "Poll round #%d: %d reading(s), %d online (%.0fms)",
                        self._round_count, len(batch),
                        sum(1 for r in batch if r.online),
                        self._last_round_duration * 1000,
                    )

            next_tick += interval
            now = loop.time()
            if now >= next_tick:
                missed = int((now - next_tick) // interval) + 1
                self._skipped_ticks += missed
                next_tick += missed * interval
                logger.debug("Poll round took %.2fs, skipped %d tick(s)",
                             self._last_round_duration, missed)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def get_devices(self) -> list[DeviceDescriptor]:
        return list(self._devices.values())

    def get_connection_states(self) -> dict[str, ConnectionState]:
        return dict(self._states)

    def get_status(self) -> dict:
        """Return poller health info (exposed via API)."""
        return {
            "devices": len(self._devices),
            "connected": sum(
                1 for s in self._states.values() if s == ConnectionState.CONNECTED
            ),
            "polling": self.is_polling,
            "interval": self._interval,
            "round_in_flight": self._round_in_flight,
            "rounds": self._round_count,
            "skipped_ticks": self._skipped_ticks,
            "read_errors": self._read_errors,
            "last_round_duration_ms": (
                round(self._last_round_duration * 1000, 1)
                if self._last_round_duration is not None else None
            ),
            "last_round": self._last_round_time,
            "transports": {
                device_id: transport.get_health()
                for device_id, transport in self._transports.items()
            },
        }

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def disconnect(self):
        """Stop polling and close every device connection. Idempotent."""
        if self._closed:
            return
        self._closed = True
        self.stop_polling()

        for task in self._reconnect_tasks.values():
            if not task.done():
                task.cancel()
        self._reconnect_tasks.clear()

        for device_id, transport in self._transports.items():
            try:
                transport.close()
            except Exception:
                logger.debug("[%s] Error closing transport", device_id, exc_info=True)
        self._transports.clear()
        for device_id in self._states:
            self._states[device_id] = ConnectionState.DISCONNECTED
        logger.info("Device poller stopped")
