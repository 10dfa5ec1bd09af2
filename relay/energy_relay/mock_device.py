# Energy Relay
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License

"""Simulated field device for running the relay without real hardware.

Serves raw register values shaped like each device class would report them
(already multiplied by the register's scale), so the poller's unit
conversion runs exactly as it does against a real Modbus device.
"""

import asyncio
import logging
import math
import random
import time

from .device_config import DeviceDescriptor
from .relay_model import DeviceClass
from .transport import DeviceReadError

logger = logging.getLogger(__name__)

# Baseline engineering values per device class: power kW, voltage V,
# current A, temperature degC
_BASELINES = {
    DeviceClass.SOLAR_INVERTER: {"power": 4.2, "voltage": 230.0, "current": 18.0},
    DeviceClass.HEAT_PUMP: {"power": 1.8, "temperature": 45.0},
    DeviceClass.EV_CHARGER: {"power": 7.4, "voltage": 230.0, "current": 32.0},
}


class MockDeviceTransport:
    """Simulates one Modbus device with slowly drifting readings."""

    def __init__(self, device: DeviceDescriptor, latency: float = 0.01):
        self.device = device
        self._latency = latency
        self._start_time = time.time()
        self._connected = False
        self._closed = False
        self._reads = 0
        self._read_errors = 0

        # Fault injection for testing
        self.fail_connect = False
        self.fail_reads = False
        self.drop_on_read = False

        self._fields_by_address = {
            spec.address: (name, spec.scale)
            for name, spec in device.registers.fields()
        }

    @property
    def connected(self) -> bool:
        return self._connected and not self._closed

    async def connect(self) -> bool:
        if self._closed or self.fail_connect:
            return False
        await asyncio.sleep(self._latency)
        self._connected = True
        logger.info("Mock: %s connected", self.device.id)
        return True

    def simulated_value(self, field: str) -> float:
        """Engineering value for *field* at the current time."""
        elapsed = time.time() - self._start_time
        baseline = _BASELINES.get(self.device.device_class, {}).get(field, 1.0)

        if field == "power" and self.device.device_class == DeviceClass.SOLAR_INVERTER:
            # Slow sun curve that never goes negative
            factor = 0.5 + 0.5 * math.sin(elapsed / 300.0)
        elif field in ("voltage", "temperature"):
            factor = 1.0 + 0.01 * math.sin(elapsed / 60.0)
        else:
            factor = 1.0 + 0.1 * math.sin(elapsed / 90.0)
        return max(0.0, baseline * factor + random.uniform(-0.01, 0.01) * baseline)

    async def read_register(self, address: int) -> int:
        if not self.connected:
            raise DeviceReadError(f"mock {self.device.id} not connected")
        await asyncio.sleep(self._latency)

        self._reads += 1
        if self.drop_on_read:
            self._connected = False
            self._read_errors += 1
            raise DeviceReadError(f"mock {self.device.id} connection dropped")
        if self.fail_reads:
            self._read_errors += 1
            raise DeviceReadError(f"mock {self.device.id} read timeout")

        entry = self._fields_by_address.get(address)
        if entry is None:
            raise DeviceReadError(f"mock {self.device.id} has no register {address}")
        field, scale = entry
        return int(round(self.simulated_value(field) * scale)) & 0xFFFF

    def get_health(self) -> dict:
        return {
            "connected": self.connected,
            "reads": self._reads,
            "read_errors": self._read_errors,
        }

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._connected = False
        logger.debug("Mock: %s closed", self.device.id)
