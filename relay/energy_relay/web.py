# Energy Relay
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License

"""Viewer WebSocket endpoint and thin REST API for the relay."""

import json
import logging
import time

from aiohttp import WSMsgType, web

from .bus_client import BusClient
from .hub import RealtimeHub
from .poller import DevicePoller
from .relay_model import Command, CommandError, utc_now_iso

logger = logging.getLogger(__name__)


@web.middleware
async def cors_middleware(request, handler):
    if request.method == "OPTIONS":
        resp = web.Response(status=204)
    else:
        resp = await handler(request)
    resp.headers["Access-Control-Allow-Origin"] = "*"
    resp.headers["Access-Control-Allow-Methods"] = "GET, POST, OPTIONS"
    resp.headers["Access-Control-Allow-Headers"] = "Content-Type"
    return resp


class WebServer:
    def __init__(self, poller: DevicePoller, bus: BusClient, hub: RealtimeHub,
                 host: str = "0.0.0.0", port: int = 5000, version: str = ""):
        self._poller = poller
        self._bus = bus
        self._hub = hub
        self._host = host
        self._port = port
        self._version = version
        self._start_time = time.time()

        self._app = web.Application(middlewares=[cors_middleware])
        self._setup_routes()
        self._runner: web.AppRunner | None = None

    @property
    def app(self) -> web.Application:
        return self._app

    def _setup_routes(self):
        self._app.router.add_get("/ws", self._handle_ws)

        self._app.router.add_get("/api/devices", self._handle_devices)
        self._app.router.add_get("/api/data", self._handle_data)
        self._app.router.add_post("/api/command", self._handle_command)
        self._app.router.add_post("/api/system/control", self._handle_system_control)
        self._app.router.add_get("/api/status", self._handle_status)
        self._app.router.add_get("/api/health", self._handle_health)

    # --- Utility ---

    def _json(self, data, status=200):
        return web.Response(
            text=json.dumps(data),
            content_type="application/json",
            status=status,
        )

    async def _read_body(self, request) -> dict | None:
        try:
            body = await request.json()
        except ValueError:
            return None
        return body if isinstance(body, dict) else None

    # --- Viewer WebSocket ---

    async def _handle_ws(self, request):
        """GET /ws: live viewer stream of Envelope messages."""
        ws = web.WebSocketResponse(heartbeat=30)
        await ws.prepare(request)

        viewer = self._hub.on_connect(ws)
        if not viewer.is_open:
            await ws.close()
            return ws

        try:
            async for msg in ws:
                if msg.type in (WSMsgType.TEXT, WSMsgType.BINARY):
                    await self._hub.on_viewer_message(viewer, msg.data)
                elif msg.type == WSMsgType.ERROR:
                    logger.warning("Viewer %d socket error: %s", viewer.id, ws.exception())
        finally:
            await self._hub.on_disconnect(viewer)
        return ws

    # --- Devices / data ---

    async def _handle_devices(self, request):
        return self._json([d.to_dict() for d in self._poller.get_devices()])

    async def _handle_data(self, request):
        try:
            readings = await self._poller.read_all_devices()
        except Exception:
            logger.exception("On-demand device read failed")
            return self._json({"error": "Failed to read device data"}, 500)
        return self._json([r.to_dict() for r in readings])

    # --- Commands ---

    async def _handle_command(self, request):
        body = await self._read_body(request)
        if body is None:
            return self._json({"error": "invalid JSON body"}, 400)
        if not body.get("deviceId") or not body.get("command"):
            return self._json({"error": "deviceId and command are required"}, 400)

        try:
            command = Command.from_dict(body)
        except CommandError as e:
            return self._json({"error": str(e)}, 400)

        if await self._bus.publish(command):
            return self._json({"success": True, "message": "Command sent successfully"})
        return self._json({"error": "Failed to send command"}, 500)

    async def _handle_system_control(self, request):
        body = await self._read_body(request)
        if body is None:
            return self._json({"error": "invalid JSON body"}, 400)
        control = body.get("control")
        if not control or not isinstance(control, str):
            return self._json({"error": "control parameter is required"}, 400)

        value = body.get("value")
        if value is not None and not isinstance(value, (bool, int, float, str)):
            return self._json({"error": "unsupported control value"}, 400)

        if await self._bus.publish_system_control(control, value):
            return self._json({"success": True, "message": "System control updated"})
        return self._json({"error": "Failed to update system control"}, 500)

    # --- Status / health ---

    async def _handle_status(self, request):
        poller_status = self._poller.get_status()
        return self._json({
            "modbus": {
                "devices": poller_status["devices"],
                "connected": poller_status["connected"],
                "polling": poller_status["polling"],
            },
            "mqtt": {"connected": self._bus.is_connected()},
            "viewers": self._hub.viewer_count,
            "timestamp": utc_now_iso(),
        })

    async def _handle_health(self, request):
        """Health check endpoint for container HEALTHCHECK and monitoring."""
        issues = []
        poller_status = self._poller.get_status()
        bus_status = self._bus.get_status()

        if poller_status["devices"] and not poller_status["connected"]:
            issues.append("No field devices connected")
        if not poller_status["polling"]:
            issues.append("Device polling not running")
        if not bus_status["connected"]:
            issues.append("MQTT disconnected")

        healthy = not issues
        result = {
            "status": "healthy" if healthy else "degraded",
            "issues": issues,
            "version": self._version,
            "uptime_seconds": round(time.time() - self._start_time, 1),
            "subsystems": {
                "poller": poller_status,
                "mqtt": bus_status,
                "hub": self._hub.get_status(),
            },
            "deviceStatus": {
                device_id: state.value
                for device_id, state in self._poller.get_connection_states().items()
            },
        }
        return self._json(result, 200 if healthy else 503)

    # --- Lifecycle ---

    async def start(self):
        self._runner = web.AppRunner(self._app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self._host, self._port)
        await site.start()
        logger.info("Relay web server started on http://%s:%d", self._host, self._port)

    async def stop(self):
        runner, self._runner = self._runner, None
        if runner is not None:
            await runner.cleanup()
            logger.info("Relay web server stopped")
