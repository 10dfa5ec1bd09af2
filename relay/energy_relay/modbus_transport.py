# Energy Relay
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License

"""Modbus/TCP transport built on pymodbus' asyncio client."""

import asyncio
import logging

from pymodbus.client import AsyncModbusTcpClient
from pymodbus.exceptions import ModbusException

from .device_config import DeviceDescriptor
from .transport import DeviceReadError

logger = logging.getLogger(__name__)


class ModbusTransport:
    """A single Modbus/TCP connection to one field device."""

    def __init__(self, host: str, port: int = 502, unit_id: int = 1,
                 timeout: float = 3.0):
        self.host = host
        self.port = port
        self.unit_id = unit_id
        self.timeout = timeout

        self._client: AsyncModbusTcpClient | None = None
        self._closed = False
        self._reads = 0
        self._read_errors = 0

    @classmethod
    def for_device(cls, device: DeviceDescriptor, timeout: float = 3.0) -> "ModbusTransport":
        return cls(device.address, device.port, unit_id=device.unit_id, timeout=timeout)

    @property
    def connected(self) -> bool:
        return (
            not self._closed
            and self._client is not None
            and bool(self._client.connected)
        )

    async def connect(self) -> bool:
        if self._closed:
            return False
        try:
            self._client = AsyncModbusTcpClient(
                self.host,
                port=self.port,
                timeout=self.timeout,
            )
            await self._client.connect()
        except (ModbusException, OSError, asyncio.TimeoutError) as e:
            logger.warning("Modbus connect to %s:%d failed: %s", self.host, self.port, e)
            self.close()
            return False

        if not self._client.connected:
            logger.warning("Modbus device at %s:%d did not accept a connection",
                           self.host, self.port)
            self.close()
            return False

        logger.debug("Connected to Modbus device at %s:%d", self.host, self.port)
        return True

    async def read_register(self, address: int) -> int:
        if not self.connected:
            raise DeviceReadError(f"not connected to {self.host}:{self.port}")

        self._reads += 1
        try:
            response = await self._client.read_holding_registers(
                address,
                count=1,
                device_id=self.unit_id,
            )
        except ModbusException as e:
            self._read_errors += 1
            raise DeviceReadError(f"Modbus exception at register {address}: {e}") from e
        except asyncio.TimeoutError as e:
            self._read_errors += 1
            raise DeviceReadError(f"read timeout at register {address}") from e
        except OSError as e:
            self._read_errors += 1
            raise DeviceReadError(f"connection error at register {address}: {e}") from e

        if response.isError():
            self._read_errors += 1
            raise DeviceReadError(f"Modbus error response at register {address}: {response}")
        if not response.registers:
            self._read_errors += 1
            raise DeviceReadError(f"empty response at register {address}")
        return response.registers[0]

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
        client, self._client = self._client, None
        if client is not None:
            try:
                client.close()
            except Exception:
                logger.debug("Error closing Modbus client %s:%d", self.host, self.port,
                             exc_info=True)
