# Energy Relay
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License

"""MQTT command/status bus client.

Publishes outbound commands on ``{namespace}/{device_id}/command`` and
subscribes to a fixed set of inbound status topics: one
``{namespace}/{device_id}/status`` per configured device plus
``{namespace}/system/controls``. Inbound JSON payloads are handed to the
registered listeners on the asyncio loop as :class:`BusMessage` objects.

paho runs its network loop in a background thread. Connection failures and
broker outages are logged and retried forever at a fixed period; they never
propagate to callers. All mutable broker state is guarded by one lock.
"""

import asyncio
import json
import logging
import secrets
import threading
import time
from typing import Callable, Iterable
from urllib.parse import unquote, urlsplit

import paho.mqtt.client as mqtt

from .relay_model import (
    SYSTEM_DEVICE_ID,
    BusMessage,
    Command,
    CommandError,
    CommandValue,
    ConnectionState,
    utc_now_iso,
)

logger = logging.getLogger(__name__)

MessageListener = Callable[[BusMessage], None]
ConnectionListener = Callable[[ConnectionState], None]

DEFAULT_PORTS = {"mqtt": 1883, "tcp": 1883, "mqtts": 8883}


class BusClient:
    def __init__(
        self,
        namespace: str = "energy",
        device_ids: Iterable[str] = (),
        *,
        client_id: str | None = None,
        connect_timeout: float = 4.0,
        reconnect_period: int = 1,
        publish_timeout: float = 5.0,
    ):
        self.namespace = namespace
        self._device_ids = list(device_ids)
        self._publish_timeout = publish_timeout
        self._loop: asyncio.AbstractEventLoop | None = None

        self._lock = threading.Lock()
        self._state = ConnectionState.DISCONNECTED
        self._started = False
        self._closed = False
        self._pending_subscriptions: dict[int, str] = {}

        self._message_listeners: list[MessageListener] = []
        self._connection_listeners: list[ConnectionListener] = []

        # Connection status tracking
        self._broker: str = ""
        self._reconnect_count: int = 0
        self._last_connect_time: float | None = None
        self._last_disconnect_time: float | None = None
        self._publish_errors: int = 0
        self._total_publishes: int = 0
        self._subscribe_errors: int = 0
        self._malformed_messages: int = 0
        self._listener_errors: int = 0

        self.client = mqtt.Client(
            client_id=client_id or f"energy-relay-{secrets.token_hex(4)}",
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
            clean_session=True,
        )
        self.client.connect_timeout = connect_timeout
        self.client.will_set(self.relay_status_topic, "offline", qos=1, retain=True)
        self.client.on_connect = self._on_connect
        self.client.on_disconnect = self._on_disconnect
        self.client.on_message = self._on_message
        self.client.on_subscribe = self._on_subscribe
        # Fixed reconnect period, unlimited attempts
        self.client.reconnect_delay_set(min_delay=reconnect_period, max_delay=reconnect_period)

    # ------------------------------------------------------------------
    # Topics
    # ------------------------------------------------------------------

    @property
    def relay_status_topic(self) -> str:
        return f"{self.namespace}/relay/status"

    def command_topic(self, device_id: str) -> str:
        return f"{self.namespace}/{device_id}/command"

    def status_topics(self) -> list[str]:
        topics = [f"{self.namespace}/{device_id}/status" for device_id in self._device_ids]
        topics.append(f"{self.namespace}/{SYSTEM_DEVICE_ID}/controls")
        return topics

    # ------------------------------------------------------------------
    # Listener registration
    # ------------------------------------------------------------------

    def add_message_listener(self, listener: MessageListener):
        self._message_listeners.append(listener)

    def add_connection_listener(self, listener: ConnectionListener):
        self._connection_listeners.append(listener)

    def _emit_message(self, message: BusMessage):
        for listener in list(self._message_listeners):
            try:
                listener(message)
            except Exception:
                self._listener_errors += 1
                if self._listener_errors <= 3:
                    logger.exception("Bus message listener failed")

    def _emit_connection(self, state: ConnectionState):
        for listener in list(self._connection_listeners):
            try:
                listener(state)
            except Exception:
                self._listener_errors += 1
                if self._listener_errors <= 3:
                    logger.exception("Bus connection listener failed")

    def _dispatch(self, fn, *args):
        """Run *fn* on the asyncio loop from paho's network thread."""
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            loop.call_soon_threadsafe(fn, *args)
        except RuntimeError:
            logger.debug("Event loop closed, dropping bus event")

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    def connect(self, broker_url: str, username: str = "", password: str = ""):
        """Start connecting in the background. Never raises."""
        if self._closed:
            logger.warning("connect() called after disconnect, ignoring")
            return
        if self._started:
            logger.warning("MQTT client already started, ignoring connect()")
            return

        parts = urlsplit(broker_url)
        try:
            port = parts.port or DEFAULT_PORTS.get(parts.scheme)
        except ValueError:
            port = None
        if parts.scheme not in DEFAULT_PORTS or not parts.hostname or port is None:
            logger.error("Unsupported MQTT broker URL %r, running without bus", broker_url)
            return

        self._broker = f"{parts.hostname}:{port}"
        self._loop = asyncio.get_event_loop()
        logger.info("Connecting to MQTT broker %s", self._broker)

        # MQTT authentication
        username = username or unquote(parts.username or "")
        password = password or unquote(parts.password or "")
        if username:
            self.client.username_pw_set(username, password)
            logger.info("MQTT authentication configured for user %s", username)

        try:
            if parts.scheme == "mqtts":
                self.client.tls_set()
            with self._lock:
                self._state = ConnectionState.CONNECTING
            self.client.connect_async(parts.hostname, port, keepalive=60)
            self.client.loop_start()
            self._started = True
        except Exception:
            with self._lock:
                self._state = ConnectionState.DISCONNECTED
            logger.exception("Failed to start MQTT client for %s", self._broker)

    def _on_connect(self, client, userdata, flags, reason_code, properties):
        if reason_code != 0:
            logger.warning("MQTT connection refused (rc=%s), retrying", reason_code)
            return

        logger.info("MQTT connected (rc=%s)", reason_code)
        with self._lock:
            if self._last_connect_time is not None:
                self._reconnect_count += 1
                logger.info("MQTT reconnected (count=%d)", self._reconnect_count)
            self._state = ConnectionState.CONNECTED
            self._last_connect_time = time.time()

        try:
            client.publish(self.relay_status_topic, "online", qos=1, retain=True)
        except Exception:
            logger.debug("Failed to publish relay status", exc_info=True)

        self._subscribe_all(client)
        self._dispatch(self._emit_connection, ConnectionState.CONNECTED)

    def _subscribe_all(self, client):
        """Subscribe each status topic separately so one failure skips only that topic."""
        for topic in self.status_topics():
            try:
                result, mid = client.subscribe(topic, qos=1)
            except Exception:
                self._subscribe_errors += 1
                logger.exception("Failed to subscribe to %s", topic)
                continue
            if result != mqtt.MQTT_ERR_SUCCESS:
                self._subscribe_errors += 1
                logger.error("Failed to subscribe to %s (rc=%s)", topic, result)
                continue
            with self._lock:
                self._pending_subscriptions[mid] = topic

    def _on_subscribe(self, client, userdata, mid, reason_code_list, properties):
        with self._lock:
            topic = self._pending_subscriptions.pop(mid, f"mid={mid}")
        for rc in reason_code_list:
            if rc.is_failure:
                self._subscribe_errors += 1
                logger.error("Broker rejected subscription to %s (rc=%s)", topic, rc)
            else:
                logger.info("Subscribed to %s", topic)

    def _on_disconnect(self, client, userdata, flags, reason_code, properties=None):
        with self._lock:
            was_connected = self._state == ConnectionState.CONNECTED
            self._state = ConnectionState.DISCONNECTED
            self._last_disconnect_time = time.time()
            self._pending_subscriptions.clear()
        if self._closed:
            return
        logger.warning("MQTT disconnected (rc=%s), running without live status/commands",
                       reason_code)
        if was_connected:
            self._dispatch(self._emit_connection, ConnectionState.DISCONNECTED)

    @property
    def state(self) -> ConnectionState:
        with self._lock:
            return self._state

    def is_connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED

    def get_status(self) -> dict:
        """Return MQTT connection health info."""
        return {
            "connected": self.is_connected(),
            "state": self.state.value,
            "broker": self._broker,
            "reconnect_count": self._reconnect_count,
            "last_connect": self._last_connect_time,
            "last_disconnect": self._last_disconnect_time,
            "publish_errors": self._publish_errors,
            "total_publishes": self._total_publishes,
            "subscribe_errors": self._subscribe_errors,
            "malformed_messages": self._malformed_messages,
            "topics": self.status_topics(),
        }

    # ------------------------------------------------------------------
    # Incoming messages
    # ------------------------------------------------------------------

    def _on_message(self, client, userdata, msg: mqtt.MQTTMessage):
        try:
            data = json.loads(msg.payload.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as e:
            self._malformed_messages += 1
            logger.warning("Dropping malformed message on %s: %s", msg.topic, e)
            return
        logger.debug("Received MQTT message on %s", msg.topic)
        self._dispatch(self._emit_message, BusMessage(topic=msg.topic, data=data))

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    async def publish(self, command: Command | dict) -> bool:
        """Publish a command and wait for the broker's acknowledgement.

        Returns False (never raises) for an invalid command, while
        disconnected, or when the broker does not acknowledge in time.
        """
        if not isinstance(command, Command):
            try:
                command = Command.from_dict(command)
            except CommandError as e:
                logger.warning("Rejected command %r: %s", command, e)
                return False

        if not self.is_connected():
            logger.warning("MQTT not connected, cannot send %s to %s",
                           command.command, command.device_id)
            return False

        topic = self.command_topic(command.device_id)
        payload = json.dumps(command.to_payload(utc_now_iso()))
        self._total_publishes += 1
        try:
            info = self.client.publish(topic, payload, qos=1)
            if info.rc != mqtt.MQTT_ERR_SUCCESS:
                self._publish_errors += 1
                logger.warning("MQTT publish failed (rc=%s, topic=%s)", info.rc, topic)
                return False
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, info.wait_for_publish, self._publish_timeout)
            if not info.is_published():
                self._publish_errors += 1
                logger.warning("No broker acknowledgement for %s within %.1fs",
                               topic, self._publish_timeout)
                return False
        except Exception:
            self._publish_errors += 1
            logger.exception("MQTT publish exception (topic=%s)", topic)
            return False

        logger.info("Published command to %s: %s", topic, payload)
        return True

    async def publish_system_control(self, control: str, value: CommandValue = None) -> bool:
        try:
            command = Command(SYSTEM_DEVICE_ID, control, value)
        except CommandError as e:
            logger.warning("Rejected system control %r: %s", control, e)
            return False
        return await self.publish(command)

    # ------------------------------------------------------------------
    # Disconnect
    # ------------------------------------------------------------------

    def disconnect(self):
        """Publish offline status and stop the network loop. Idempotent."""
        if self._closed:
            return
        self._closed = True

        if self._started:
            try:
                self.client.publish(self.relay_status_topic, "offline", qos=1, retain=True)
            except Exception:
                logger.debug("Failed to publish offline status", exc_info=True)
            try:
                self.client.disconnect()
                self.client.loop_stop()
            except Exception:
                logger.debug("Error during MQTT disconnect", exc_info=True)

        with self._lock:
            self._state = ConnectionState.DISCONNECTED
        logger.info("MQTT bus client stopped")
