# Energy Relay
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License

"""Realtime fan-out hub for live viewer connections.

Every message to a viewer is one JSON Envelope ``{kind, payload, timestamp}``.
Each viewer owns a FIFO outbound queue drained by its own sender task, so a
broadcast only enqueues and messages reach a given viewer in the order they
were produced. A new viewer's snapshot is queued before the viewer joins the
broadcast set, which makes it the first thing that viewer receives.
"""

import asyncio
import itertools
import json
import logging
from typing import Any

from aiohttp import WSCloseCode

from .bus_client import BusClient
from .poller import DevicePoller
from .relay_model import (
    BusMessage,
    ConnectionState,
    Envelope,
    EnvelopeKind,
    Reading,
    ViewerState,
)

logger = logging.getLogger(__name__)

_viewer_ids = itertools.count(1)


class ViewerConnection:
    """A live viewer socket and its outbound queue."""

    def __init__(self, socket, queue_size: int = 256):
        self.id = next(_viewer_ids)
        self.socket = socket
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._state = ViewerState.OPEN
        self._sender: asyncio.Task | None = None
        self._closer: asyncio.Task | None = None
        self.sent = 0

    @property
    def state(self) -> ViewerState:
        if self._state == ViewerState.OPEN and self.socket.closed:
            self._state = ViewerState.CLOSED
        return self._state

    @property
    def is_open(self) -> bool:
        return self.state == ViewerState.OPEN

    def reject(self):
        """Mark a viewer that was never admitted as closed."""
        self._state = ViewerState.CLOSED

    def start(self):
        self._sender = asyncio.get_running_loop().create_task(
            self._send_loop(), name=f"viewer-{self.id}",
        )

    def send(self, text: str) -> bool:
        """Queue *text* for delivery. Returns False if the viewer is gone."""
        if not self.is_open:
            self._cancel_sender()
            return False
        try:
            self._queue.put_nowait(text)
        except asyncio.QueueFull:
            logger.warning("Viewer %d is not keeping up (%d queued), closing it",
                           self.id, self._queue.qsize())
            self._state = ViewerState.CLOSED
            self._closer = asyncio.get_running_loop().create_task(self.close())
            return False
        return True

    def _cancel_sender(self):
        if self._sender is not None and not self._sender.done():
            self._sender.cancel()

    async def _send_loop(self):
        try:
            while True:
                text = await self._queue.get()
                await self.socket.send_str(text)
                self.sent += 1
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.info("Viewer %d send failed: %s", self.id, e)
        finally:
            self._state = ViewerState.CLOSED

    async def close(self):
        self._state = ViewerState.CLOSED
        sender, self._sender = self._sender, None
        if sender is not None and not sender.done():
            sender.cancel()
            await asyncio.gather(sender, return_exceptions=True)
        if not self.socket.closed:
            try:
                await self.socket.close(code=WSCloseCode.GOING_AWAY, message=b"relay closing")
            except Exception:
                logger.debug("Error closing viewer %d socket", self.id, exc_info=True)


class RealtimeHub:
    def __init__(self, poller: DevicePoller, bus: BusClient, queue_size: int = 256):
        self._poller = poller
        self._bus = bus
        self._queue_size = queue_size
        self._viewers: dict[int, ViewerConnection] = {}
        self._latest_batch: list[Reading] | None = None
        self._closed = False

        self._broadcasts = 0
        self._messages_in = 0
        self._commands_forwarded = 0
        self._malformed_messages = 0

    # ------------------------------------------------------------------
    # Viewer lifecycle
    # ------------------------------------------------------------------

    def snapshot(self) -> dict:
        """Current device list and connectivity, sent to every new viewer."""
        return {
            "devices": [d.to_dict() for d in self._poller.get_devices()],
            "busConnected": self._bus.is_connected(),
            "deviceStatus": {
                device_id: state.value
                for device_id, state in self._poller.get_connection_states().items()
            },
        }

    def on_connect(self, socket) -> ViewerConnection:
        viewer = ViewerConnection(socket, self._queue_size)
        if self._closed:
            logger.info("Rejecting viewer %d, hub is closed", viewer.id)
            viewer.reject()
            return viewer

        viewer.send(Envelope.create(EnvelopeKind.SYSTEM_STATUS, self.snapshot()).to_json())
        if self._latest_batch is not None:
            viewer.send(self._device_data_envelope(self._latest_batch).to_json())
        viewer.start()
        self._viewers[viewer.id] = viewer
        logger.info("Viewer %d connected (%d total)", viewer.id, len(self._viewers))
        return viewer

    async def on_disconnect(self, viewer: ViewerConnection):
        if self._viewers.pop(viewer.id, None) is not None:
            logger.info("Viewer %d disconnected (%d remaining)", viewer.id, len(self._viewers))
        await viewer.close()

    @property
    def viewer_count(self) -> int:
        return len(self._viewers)

    # ------------------------------------------------------------------
    # Broadcasting
    # ------------------------------------------------------------------

    def _broadcast(self, envelope: Envelope) -> int:
        """Queue *envelope* for every open viewer, dropping closed ones."""
        if not self._viewers:
            return 0
        text = envelope.to_json()
        delivered = 0
        for viewer_id, viewer in list(self._viewers.items()):
            if viewer.send(text):
                delivered += 1
            else:
                self._viewers.pop(viewer_id, None)
                logger.info("Viewer %d found closed, removed", viewer_id)
        self._broadcasts += 1
        return delivered

    @staticmethod
    def _device_data_envelope(batch: list[Reading]) -> Envelope:
        return Envelope.create(EnvelopeKind.DEVICE_DATA, [r.to_dict() for r in batch])

    def on_device_data(self, batch: list[Reading]):
        self._latest_batch = list(batch)
        self._broadcast(self._device_data_envelope(batch))

    def on_bus_message(self, message: BusMessage):
        self._broadcast(Envelope.create(EnvelopeKind.SYSTEM_STATUS, message.to_dict()))

    def on_device_connection(self, device_id: str, state: ConnectionState):
        self._broadcast(Envelope.create(
            EnvelopeKind.SYSTEM_STATUS, {"deviceId": device_id, "status": state.value},
        ))

    def on_bus_connection(self, state: ConnectionState):
        self._broadcast(Envelope.create(
            EnvelopeKind.SYSTEM_STATUS, {"busConnected": state == ConnectionState.CONNECTED},
        ))

    # ------------------------------------------------------------------
    # Inbound viewer messages
    # ------------------------------------------------------------------

    def _reply(self, viewer: ViewerConnection, kind: EnvelopeKind, payload: Any):
        viewer.send(Envelope.create(kind, payload).to_json())

    async def on_viewer_message(self, viewer: ViewerConnection, raw: str | bytes):
        """Handle one message from a viewer: ``command`` or ``ping``.

        Malformed input gets an ``error`` reply to the sender only; it never
        disconnects the viewer or reaches anyone else.
        """
        self._messages_in += 1
        try:
            message = json.loads(raw)
            if not isinstance(message, dict):
                raise ValueError("message must be a JSON object")
        except (TypeError, ValueError) as e:
            self._malformed_messages += 1
            logger.warning("Viewer %d sent a malformed message: %s", viewer.id, e)
            self._reply(viewer, EnvelopeKind.ERROR, {"message": "Invalid message format"})
            return

        kind = message.get("kind")
        if kind == EnvelopeKind.COMMAND.value:
            payload = message.get("payload")
            try:
                success = await self._bus.publish(payload)
            except Exception as e:
                logger.exception("Error forwarding command from viewer %d", viewer.id)
                self._reply(viewer, EnvelopeKind.ERROR,
                            {"message": "Failed to execute command", "error": str(e)})
                return
            self._commands_forwarded += 1
            self._reply(viewer, EnvelopeKind.SYSTEM_STATUS,
                        {"commandSent": success, "command": payload})
        elif kind == "ping":
            self._reply(viewer, EnvelopeKind.SYSTEM_STATUS, {"pong": True})
        else:
            logger.warning("Viewer %d sent unknown message kind %r", viewer.id, kind)

    # ------------------------------------------------------------------
    # Status / teardown
    # ------------------------------------------------------------------

    def get_status(self) -> dict:
        return {
            "viewers": len(self._viewers),
            "broadcasts": self._broadcasts,
            "messages_in": self._messages_in,
            "commands_forwarded": self._commands_forwarded,
            "malformed_messages": self._malformed_messages,
        }

    async def close(self):
        """Close every viewer connection and clear the registry. Idempotent."""
        if self._closed:
            return
        self._closed = True
        viewers = list(self._viewers.values())
        self._viewers.clear()
        await asyncio.gather(*(v.close() for v in viewers), return_exceptions=True)
        logger.info("Realtime hub closed (%d viewer(s))", len(viewers))
