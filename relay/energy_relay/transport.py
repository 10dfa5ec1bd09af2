# Energy Relay
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License

"""Abstract transport protocol for field device register access.

Defines the DeviceTransport interface that the Modbus and Mock transports
both implement, so the DevicePoller never depends on a concrete protocol
library. One transport instance is one connection: once closed it is
discarded, never reopened.
"""

from typing import Callable, Protocol, runtime_checkable

from .device_config import DeviceDescriptor


class DeviceReadError(Exception):
    """A register read failed (timeout, protocol error, connection drop)."""


@runtime_checkable
class DeviceTransport(Protocol):
    """Protocol for device communication transports.

    Implementations: ModbusTransport, MockDeviceTransport.
    """

    async def connect(self) -> bool:
        """Open the connection. Returns True once connected."""
        ...

    async def read_register(self, address: int) -> int:
        """Read one raw holding register. Raises DeviceReadError on failure."""
        ...

    @property
    def connected(self) -> bool:
        """Whether the underlying connection is currently usable."""
        ...

    def get_health(self) -> dict:
        """Return transport health metrics."""
        ...

    def close(self) -> None:
        """Close the connection. Safe to call more than once."""
        ...


TransportFactory = Callable[[DeviceDescriptor], DeviceTransport]
