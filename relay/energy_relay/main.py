# Energy Relay
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License

"""Entry point -- Modbus -> MQTT/WebSocket energy relay.

Architecture
------------
RelayManager   -- builds the shared services and wires them together.
DevicePoller   -- one Modbus connection per field device, periodic rounds.
BusClient      -- MQTT command publishing and status subscriptions.
RealtimeHub    -- fans device data and bus traffic out to live viewers.
WebServer      -- /ws viewer endpoint plus a thin REST API.
"""

__version__ = "1.0.0"

import asyncio
import functools
import logging
import signal
import sys
from pathlib import Path

from .bus_client import BusClient
from .config import Config, ConfigError
from .device_config import load_device_descriptors, save_device_descriptors
from .hub import RealtimeHub
from .mock_device import MockDeviceTransport
from .modbus_transport import ModbusTransport
from .poller import DevicePoller
from .transport import TransportFactory
from .web import WebServer

logger = logging.getLogger("energy_relay")


class RelayManager:
    """Owns every relay component and their lifecycle.

    The hub is registered as the only listener of the poller and the bus;
    nothing else subscribes to their events.
    """

    def __init__(self, config: Config | None = None,
                 transport_factory: TransportFactory | None = None):
        self.config = config or Config()
        self._running = False
        self._stopped = False
        self._stop_event: asyncio.Event | None = None

        try:
            self.devices = load_device_descriptors(self.config.devices_file)
        except ValueError as e:
            raise ConfigError(str(e)) from e
        self._seed_devices_file()

        self.poller = DevicePoller(
            transport_factory or self._default_transport_factory(),
            reconnect=self.config.device_reconnect,
            reconnect_delay=self.config.reconnect_delay,
            reconnect_max_delay=self.config.reconnect_max_delay,
        )
        self.bus = BusClient(
            namespace=self.config.mqtt_namespace,
            device_ids=[d.id for d in self.devices],
            connect_timeout=self.config.mqtt_connect_timeout,
            reconnect_period=self.config.mqtt_reconnect_period,
            publish_timeout=self.config.mqtt_publish_timeout,
        )
        self.hub = RealtimeHub(self.poller, self.bus, queue_size=self.config.viewer_queue_size)
        self.web = WebServer(
            self.poller, self.bus, self.hub,
            host=self.config.web_host,
            port=self.config.web_port,
            version=__version__,
        )

        self.poller.add_data_listener(self.hub.on_device_data)
        self.poller.add_connection_listener(self.hub.on_device_connection)
        self.bus.add_message_listener(self.hub.on_bus_message)
        self.bus.add_connection_listener(self.hub.on_bus_connection)

        logger.info("RelayManager: %d device(s) configured%s",
                    len(self.devices), " (mock mode)" if self.config.mock_mode else "")

    def _default_transport_factory(self) -> TransportFactory:
        if self.config.mock_mode:
            return MockDeviceTransport
        return functools.partial(ModbusTransport.for_device, timeout=self.config.modbus_timeout)

    def _seed_devices_file(self):
        """Write the active device table out when the data dir has none yet."""
        path = Path(self.config.devices_file)
        if path.exists() or not path.parent.is_dir():
            return
        try:
            save_device_descriptors(self.devices, self.config.devices_file)
        except OSError as e:
            logger.warning("Could not seed %s: %s", path, e)

    async def run(self):
        """Start every service and wait until stop is requested."""
        self._running = True
        self._stop_event = asyncio.Event()
        try:
            self.bus.connect(
                self.config.mqtt_broker_url,
                self.config.mqtt_username,
                self.config.mqtt_password,
            )
            await self.poller.configure(self.devices)
            self.poller.start_polling(self.config.poll_interval)
            await self.web.start()
            logger.info("Energy relay %s running", __version__)
            await self._stop_event.wait()
        finally:
            await self.stop()

    def request_stop(self):
        if self._stop_event is not None:
            self._stop_event.set()

    async def stop(self):
        """Tear every component down once. Safe to call repeatedly."""
        if self._stopped:
            return
        self._stopped = True
        self._running = False
        self.request_stop()

        self.poller.disconnect()
        await self.hub.close()
        await self.web.stop()
        self.bus.disconnect()
        logger.info("Energy relay stopped")


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main():
    try:
        config = Config()
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    try:
        manager = RelayManager(config)
    except ConfigError as e:
        logger.error("Configuration error: %s", e)
        sys.exit(1)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    def _shutdown(sig, frame):
        logger.info("Received signal %s, shutting down...", sig)
        loop.call_soon_threadsafe(manager.request_stop)

    signal.signal(signal.SIGTERM, _shutdown)
    signal.signal(signal.SIGINT, _shutdown)

    try:
        loop.run_until_complete(manager.run())
    finally:
        loop.run_until_complete(manager.stop())
        loop.close()
        logger.info("Relay stopped.")


if __name__ == "__main__":
    main()
