# Energy Relay
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License

"""Configuration from environment variables with validation."""

import logging
import os
from urllib.parse import urlsplit

from .relay_model import MQTT_UNSAFE_CHARS

logger = logging.getLogger(__name__)

BROKER_SCHEMES = ("mqtt", "tcp", "mqtts")


class ConfigError(Exception):
    """Raised when configuration is invalid."""


def _bool(env: str, default: str) -> bool:
    return os.environ.get(env, default).lower() in ("true", "1", "yes")


class Config:
    def __init__(self):
        # MQTT command/status bus
        self.mqtt_broker_url = os.environ.get("MQTT_BROKER_URL", "mqtt://localhost:1883")
        self.mqtt_username = os.environ.get("MQTT_USERNAME", "")
        self.mqtt_password = os.environ.get("MQTT_PASSWORD", "")
        self.mqtt_namespace = os.environ.get("MQTT_NAMESPACE", "energy")
        self.mqtt_connect_timeout = self._float("MQTT_CONNECT_TIMEOUT", "4.0", 0.5, 60)
        self.mqtt_reconnect_period = self._int("MQTT_RECONNECT_PERIOD", "1", 1, 300)
        self.mqtt_publish_timeout = self._float("MQTT_PUBLISH_TIMEOUT", "5.0", 0.1, 60)

        # Device polling
        self.poll_interval = self._float("RELAY_POLL_INTERVAL", "2.0", 0.1, 300)
        self.modbus_timeout = self._float("RELAY_MODBUS_TIMEOUT", "3.0", 0.1, 30)
        self.device_reconnect = _bool("RELAY_DEVICE_RECONNECT", "true")
        self.reconnect_delay = self._float("RELAY_RECONNECT_DELAY", "5.0", 0.1, 600)
        self.reconnect_max_delay = self._float("RELAY_RECONNECT_MAX_DELAY", "60.0", 0.1, 3600)
        self.mock_mode = _bool("RELAY_MOCK_MODE", "false")
        self.devices_file = os.environ.get("RELAY_DEVICES_FILE", "/data/devices.json")

        # Viewer / HTTP surface
        self.web_host = os.environ.get("RELAY_WEB_HOST", "0.0.0.0")
        self.web_port = self._int("RELAY_WEB_PORT", "5000", 1, 65535)
        self.viewer_queue_size = self._int("RELAY_VIEWER_QUEUE_SIZE", "256", 1, 100000)

        self.log_level = os.environ.get("RELAY_LOG_LEVEL", "INFO").upper()

        self._validate()
        self._log_config()

    @staticmethod
    def _int(env: str, default: str, min_val: int, max_val: int) -> int:
        raw = os.environ.get(env, default)
        try:
            val = int(raw)
        except (ValueError, TypeError):
            raise ConfigError(f"{env}={raw!r} is not a valid integer")
        if not (min_val <= val <= max_val):
            raise ConfigError(f"{env}={val} out of range [{min_val}, {max_val}]")
        return val

    @staticmethod
    def _float(env: str, default: str, min_val: float, max_val: float) -> float:
        raw = os.environ.get(env, default)
        try:
            val = float(raw)
        except (ValueError, TypeError):
            raise ConfigError(f"{env}={raw!r} is not a valid number")
        if not (min_val <= val <= max_val):
            raise ConfigError(f"{env}={val} out of range [{min_val}, {max_val}]")
        return val

    def _validate(self):
        parts = urlsplit(self.mqtt_broker_url)
        if parts.scheme not in BROKER_SCHEMES or not parts.hostname:
            raise ConfigError(
                f"MQTT_BROKER_URL={self.mqtt_broker_url!r} must look like mqtt://host[:port]"
            )
        try:
            parts.port
        except ValueError:
            raise ConfigError(f"MQTT_BROKER_URL={self.mqtt_broker_url!r} has an invalid port")

        if not self.mqtt_namespace or any(c in self.mqtt_namespace for c in MQTT_UNSAFE_CHARS):
            raise ConfigError(
                f"MQTT_NAMESPACE contains invalid characters: {self.mqtt_namespace!r}"
            )
        if self.reconnect_max_delay < self.reconnect_delay:
            raise ConfigError(
                "RELAY_RECONNECT_MAX_DELAY must not be smaller than RELAY_RECONNECT_DELAY"
            )
        if self.log_level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ConfigError(f"RELAY_LOG_LEVEL={self.log_level!r} is not a log level")

    def _log_config(self):
        logger.info(
            "Config: broker=%s ns=%s poll=%.1fs modbus_timeout=%.1fs mock=%s "
            "reconnect=%s web=%s:%d",
            urlsplit(self.mqtt_broker_url).hostname, self.mqtt_namespace, self.poll_interval,
            self.modbus_timeout, self.mock_mode, self.device_reconnect,
            self.web_host, self.web_port,
        )
