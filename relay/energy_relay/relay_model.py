# Energy Relay
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License

"""Register maps, unit conversion and the message types passed between components."""

import enum
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterator, Union

# Reserved pseudo-device for system-wide controls
SYSTEM_DEVICE_ID = "system"

# Register fields in the order they are read from a device
REGISTER_FIELDS = ("power", "voltage", "current", "temperature")
OPTIONAL_REGISTER_FIELDS = REGISTER_FIELDS[1:]

# Characters that would break the MQTT topic hierarchy
MQTT_UNSAFE_CHARS = "/#+ "

CommandValue = Union[bool, int, float, str, None]


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def scale_register(raw: int, scale: float) -> float:
    """Convert a raw register integer to engineering units."""
    return raw / scale


class DeviceClass(enum.Enum):
    SOLAR_INVERTER = "solar-inverter"
    HEAT_PUMP = "heat-pump"
    EV_CHARGER = "ev-charger"


class ConnectionState(enum.Enum):
    """State of a device or broker connection."""
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


class ViewerState(enum.Enum):
    OPEN = "open"
    CLOSED = "closed"


class EnvelopeKind(enum.Enum):
    DEVICE_DATA = "deviceData"
    SYSTEM_STATUS = "systemStatus"
    COMMAND = "command"
    ERROR = "error"


@dataclass(frozen=True)
class RegisterSpec:
    address: int
    scale: float = 1.0

    def to_dict(self) -> dict:
        return {"address": self.address, "scale": self.scale}

    @classmethod
    def from_dict(cls, d: dict) -> "RegisterSpec":
        return cls(address=int(d["address"]), scale=float(d.get("scale", 1.0)))


@dataclass(frozen=True)
class RegisterMap:
    """Logical quantity -> register address + scale for one device."""
    power: RegisterSpec
    voltage: RegisterSpec | None = None
    current: RegisterSpec | None = None
    temperature: RegisterSpec | None = None

    def fields(self) -> Iterator[tuple[str, RegisterSpec]]:
        """Yield (field, spec) for every mapped register, power first."""
        for name in REGISTER_FIELDS:
            spec = getattr(self, name)
            if spec is not None:
                yield name, spec

    def to_dict(self) -> dict:
        return {name: spec.to_dict() for name, spec in self.fields()}

    @classmethod
    def from_dict(cls, d: dict) -> "RegisterMap":
        if "power" not in d:
            raise ValueError("register map requires a 'power' register")
        kwargs = {}
        for name in REGISTER_FIELDS:
            if d.get(name) is not None:
                kwargs[name] = RegisterSpec.from_dict(d[name])
        return cls(**kwargs)


@dataclass(frozen=True)
class Reading:
    """One device's values from a single poll round."""
    device_id: str
    power: float
    voltage: float | None = None
    current: float | None = None
    temperature: float | None = None
    timestamp: str = ""
    online: bool = True

    @classmethod
    def offline(cls, device_id: str, timestamp: str | None = None) -> "Reading":
        return cls(
            device_id=device_id,
            power=0,
            timestamp=timestamp or utc_now_iso(),
            online=False,
        )

    def to_dict(self) -> dict:
        d: dict[str, Any] = {"deviceId": self.device_id, "power": self.power}
        for name in OPTIONAL_REGISTER_FIELDS:
            value = getattr(self, name)
            if value is not None:
                d[name] = value
        d["timestamp"] = self.timestamp
        d["online"] = self.online
        return d


class CommandError(ValueError):
    """Raised when a command is missing fields or carries an unsupported value."""


def _check_value(value: Any) -> CommandValue:
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    raise CommandError(f"unsupported command value type: {type(value).__name__}")


@dataclass(frozen=True)
class Command:
    device_id: str
    command: str
    value: CommandValue = None

    def __post_init__(self):
        if not isinstance(self.device_id, str) or not self.device_id:
            raise CommandError("deviceId is required")
        if any(c in self.device_id for c in MQTT_UNSAFE_CHARS):
            raise CommandError(f"deviceId contains invalid characters: {self.device_id!r}")
        if not isinstance(self.command, str) or not self.command:
            raise CommandError("command is required")
        _check_value(self.value)

    @classmethod
    def from_dict(cls, d: Any) -> "Command":
        if not isinstance(d, dict):
            raise CommandError("command payload must be an object")
        return cls(
            device_id=d.get("deviceId"),
            command=d.get("command"),
            value=d.get("value"),
        )

    def to_dict(self) -> dict:
        d: dict[str, Any] = {"deviceId": self.device_id, "command": self.command}
        if self.value is not None:
            d["value"] = self.value
        return d

    def to_payload(self, timestamp: str) -> dict:
        """Body published on the device's command topic."""
        payload: dict[str, Any] = {"command": self.command}
        if self.value is not None:
            payload["value"] = self.value
        payload["timestamp"] = timestamp
        return payload


@dataclass(frozen=True)
class BusMessage:
    topic: str
    data: Any

    def to_dict(self) -> dict:
        return {"topic": self.topic, "data": self.data}


@dataclass(frozen=True)
class Envelope:
    kind: EnvelopeKind
    payload: Any
    timestamp: str = ""

    @classmethod
    def create(cls, kind: EnvelopeKind, payload: Any) -> "Envelope":
        return cls(kind=kind, payload=payload, timestamp=utc_now_iso())

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "payload": self.payload,
            "timestamp": self.timestamp,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())
