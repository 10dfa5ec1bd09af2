# Energy Relay
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License

"""Device descriptors, loaded from a JSON file or built from env vars."""

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

from .relay_model import MQTT_UNSAFE_CHARS, DeviceClass, RegisterMap, RegisterSpec

logger = logging.getLogger(__name__)

DEFAULT_DEVICES_FILE = "/data/devices.json"
DEFAULT_MODBUS_PORT = 502


@dataclass(frozen=True)
class DeviceDescriptor:
    """One polled field device. Immutable once built."""
    id: str                             # Short key used in topics, e.g. "solar"
    name: str
    address: str                        # IP address or hostname
    registers: RegisterMap
    port: int = DEFAULT_MODBUS_PORT
    device_class: DeviceClass = DeviceClass.SOLAR_INVERTER
    unit_id: int = 1                    # Modbus unit / slave id

    @property
    def endpoint(self) -> str:
        return f"{self.address}:{self.port}"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "address": self.address,
            "port": self.port,
            "class": self.device_class.value,
            "unitId": self.unit_id,
            "registers": self.registers.to_dict(),
        }

    @classmethod
    def from_dict(cls, d: dict) -> "DeviceDescriptor":
        return cls(
            id=d["id"],
            name=d.get("name", d["id"]),
            address=d.get("address", ""),
            port=int(d.get("port", DEFAULT_MODBUS_PORT)),
            device_class=DeviceClass(d.get("class", DeviceClass.SOLAR_INVERTER.value)),
            registers=RegisterMap.from_dict(d.get("registers", {})),
            unit_id=int(d.get("unitId", 1)),
        )

    def validate(self):
        if not self.id or any(c in self.id for c in MQTT_UNSAFE_CHARS):
            raise ValueError(
                f"device id contains invalid MQTT characters: {self.id!r}"
            )
        if not self.address:
            raise ValueError(f"device {self.id!r} has no address configured")
        if not (1 <= self.port <= 65535):
            raise ValueError(f"device {self.id!r} port out of range: {self.port}")
        if not (0 <= self.unit_id <= 247):
            raise ValueError(f"device {self.id!r} unit id out of range: {self.unit_id}")
        for name, spec in self.registers.fields():
            if spec.scale <= 0:
                raise ValueError(
                    f"device {self.id!r} register {name} has non-positive scale {spec.scale}"
                )


def _env_port(env: Mapping[str, str], key: str) -> int:
    raw = env.get(key, str(DEFAULT_MODBUS_PORT))
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{key}={raw!r} is not a valid port")


def default_descriptors(env: Mapping[str, str] | None = None) -> list[DeviceDescriptor]:
    """The stock three-device installation, addresses taken from env vars."""
    env = os.environ if env is None else env
    return [
        DeviceDescriptor(
            id="solar",
            name="Solar Inverter",
            address=env.get("SOLAR_INVERTER_IP", "192.168.1.100"),
            port=_env_port(env, "SOLAR_INVERTER_PORT"),
            device_class=DeviceClass.SOLAR_INVERTER,
            registers=RegisterMap(
                power=RegisterSpec(40083, 100),
                voltage=RegisterSpec(40085, 10),
                current=RegisterSpec(40087, 100),
            ),
        ),
        DeviceDescriptor(
            id="heatpump",
            name="Heat Pump",
            address=env.get("HEATPUMP_IP", "192.168.1.101"),
            port=_env_port(env, "HEATPUMP_PORT"),
            device_class=DeviceClass.HEAT_PUMP,
            registers=RegisterMap(
                power=RegisterSpec(1001, 100),
                temperature=RegisterSpec(1003, 10),
            ),
        ),
        DeviceDescriptor(
            id="charger",
            name="EV Charger",
            address=env.get("CHARGER_IP", "192.168.1.102"),
            port=_env_port(env, "CHARGER_PORT"),
            device_class=DeviceClass.EV_CHARGER,
            registers=RegisterMap(
                power=RegisterSpec(5001, 100),
                voltage=RegisterSpec(5003, 10),
                current=RegisterSpec(5005, 100),
            ),
        ),
    ]


def load_device_descriptors(devices_file: str = DEFAULT_DEVICES_FILE,
                            env: Mapping[str, str] | None = None) -> list[DeviceDescriptor]:
    """Load device descriptors.

    Priority:
    1. devices.json file if it exists and lists at least one device
    2. The default device table with addresses from env vars
    """
    path = Path(devices_file)

    if path.exists():
        try:
            data = json.loads(path.read_text())
            devices = []
            seen: set[str] = set()
            for d in data.get("devices", []):
                desc = DeviceDescriptor.from_dict(d)
                desc.validate()
                if desc.id in seen:
                    raise ValueError(f"duplicate device id {desc.id!r}")
                seen.add(desc.id)
                devices.append(desc)
            if devices:
                logger.info("Loaded %d device(s) from %s", len(devices), path)
                return devices
            logger.warning("%s exists but has no devices, falling back to env vars", path)
        except Exception:
            logger.exception("Failed to load %s, falling back to env vars", path)

    devices = default_descriptors(env)
    for desc in devices:
        desc.validate()
    logger.info(
        "Using default devices: %s",
        ", ".join(f"{d.id}@{d.endpoint}" for d in devices),
    )
    return devices


def save_device_descriptors(devices: list[DeviceDescriptor],
                            devices_file: str = DEFAULT_DEVICES_FILE):
    """Save device descriptors to a JSON file atomically."""
    path = Path(devices_file)
    path.parent.mkdir(parents=True, exist_ok=True)
    data = json.dumps({"devices": [d.to_dict() for d in devices]}, indent=2)
    tmp = path.with_suffix(".tmp")
    try:
        tmp.write_text(data)
        tmp.rename(path)
        logger.info("Saved %d device(s) to %s", len(devices), path)
    except Exception:
        logger.exception("Failed to save device descriptors")
        try:
            tmp.unlink(missing_ok=True)
        except OSError:
            logger.debug("Could not remove %s", tmp)
        raise
