# BeoSound 5c
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later
#
# Attribution required — see LICENSE, Section 7(b).

"""
Hub boundary — where registered devices and their properties are exposed.

The adapter calls a Hub synchronously from the event loop:

    class MyHub(Hub):
        def handle_device_added(self, device): ...
        def handle_device_removed(self, device): ...
        def notify_property_changed(self, device, name, value): ...

Optional override:
    handle_device_reachable(device, reachable)

WebHub is the hub this service runs with: an HTTP + WebSocket surface.

    GET    /devices
    GET    /devices/{id}
    GET    /devices/{id}/properties/{name}
    PUT    /devices/{id}/properties/{name}     body {name: value}
    POST   /devices/{id}/actions/stop
    POST   /pairing                            body {"timeout": seconds}
    DELETE /pairing
    GET    /ws                                 device_added / device_removed /
                                               property_changed pushes
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod

from aiohttp import web

from .errors import CommandError, InvalidStateError, InvalidValueError, UnknownPropertyError
from .http_utils import cors_middleware

log = logging.getLogger("beo-cast.hub")


class Hub(ABC):
    @abstractmethod
    def handle_device_added(self, device): ...

    @abstractmethod
    def handle_device_removed(self, device): ...

    @abstractmethod
    def notify_property_changed(self, device, name: str, value): ...

    def handle_device_reachable(self, device, reachable: bool):
        """Discovery lost or regained the device.  Default: ignore."""


def _error(status: int, message: str, **extra) -> web.Response:
    return web.json_response({"status": "error", "message": message, **extra}, status=status)


class WebHub(Hub):
    def __init__(self, host: str = "0.0.0.0", port: int = 8775):
        self.host = host
        self.port = port
        self.adapter = None
        self._ws_clients: set[web.WebSocketResponse] = set()
        self._runner: web.AppRunner | None = None
        self._tasks: set[asyncio.Task] = set()

    def bind(self, adapter):
        self.adapter = adapter

    # ── Hub interface ──

    def handle_device_added(self, device):
        self._push("device_added", device.describe())

    def handle_device_removed(self, device):
        self._push("device_removed", {"id": device.id})

    def notify_property_changed(self, device, name, value):
        self._push("property_changed", {"id": device.id, "name": name, "value": value})

    def handle_device_reachable(self, device, reachable):
        self._push("device_reachable", {"id": device.id, "reachable": reachable})

    def _push(self, kind: str, data: dict):
        if not self._ws_clients:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        task = loop.create_task(self.broadcast(kind, data))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # ── WebSocket broadcasting ──

    async def broadcast(self, kind: str, data: dict):
        """Push one message to all connected WebSocket clients."""
        if not self._ws_clients:
            return

        message = json.dumps({"type": kind, "data": data})

        disconnected = set()
        for ws in list(self._ws_clients):
            try:
                await ws.send_str(message)
            except (ConnectionError, RuntimeError):
                disconnected.add(ws)

        self._ws_clients -= disconnected
        log.debug("Broadcast %s to %d clients", kind, len(self._ws_clients))

    # ── HTTP + WebSocket server ──

    def build_app(self) -> web.Application:
        app = web.Application(middlewares=[cors_middleware])
        app.router.add_get("/ws", self._handle_ws)
        app.router.add_get("/devices", self._handle_devices)
        app.router.add_get("/devices/{id}", self._handle_device)
        app.router.add_get("/devices/{id}/properties/{name}", self._handle_get_property)
        app.router.add_put("/devices/{id}/properties/{name}", self._handle_put_property)
        app.router.add_post("/devices/{id}/actions/stop", self._handle_stop)
        app.router.add_post("/pairing", self._handle_start_pairing)
        app.router.add_delete("/pairing", self._handle_cancel_pairing)
        app.router.add_route("OPTIONS", "/{tail:.*}", self._handle_options)
        return app

    async def start(self):
        self._runner = web.AppRunner(self.build_app())
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        log.info("Hub: HTTP + WebSocket on %s:%d", self.host, self.port)

    async def shutdown(self):
        for ws in list(self._ws_clients):
            await ws.close()
        self._ws_clients.clear()
        for task in list(self._tasks):
            task.cancel()
        if self._runner:
            await self._runner.cleanup()
            self._runner = None

    # ── WebSocket handler ──

    async def _handle_ws(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse()
        await ws.prepare(request)

        self._ws_clients.add(ws)
        log.info("WebSocket client connected (%d total)", len(self._ws_clients))

        try:
            await ws.send_json({"type": "devices", "data": self._describe_all()})
            # Push-only
            async for msg in ws:
                pass
        finally:
            self._ws_clients.discard(ws)
            log.info("WebSocket client disconnected (%d remaining)",
                     len(self._ws_clients))

        return ws

    # ── HTTP route handlers ──

    def _describe_all(self) -> list:
        if self.adapter is None:
            return []
        return [device.describe() for device in self.adapter.devices.values()]

    def _device(self, request: web.Request):
        device_id = request.match_info["id"]
        device = self.adapter.get(device_id) if self.adapter is not None else None
        if device is None:
            raise web.HTTPNotFound(
                text=json.dumps({"status": "error", "message": f"unknown device {device_id}"}),
                content_type="application/json")
        return device

    async def _handle_options(self, request: web.Request) -> web.Response:
        return web.Response()

    async def _handle_devices(self, request: web.Request) -> web.Response:
        return web.json_response(self._describe_all())

    async def _handle_device(self, request: web.Request) -> web.Response:
        return web.json_response(self._device(request).describe())

    async def _handle_get_property(self, request: web.Request) -> web.Response:
        device = self._device(request)
        name = request.match_info["name"]
        if name not in device.properties:
            return _error(404, f"unknown property {name}")
        return web.json_response({name: device.properties[name]})

    async def _handle_put_property(self, request: web.Request) -> web.Response:
        device = self._device(request)
        name = request.match_info["name"]
        try:
            data = await request.json()
        except json.JSONDecodeError:
            return _error(400, "body must be JSON")
        if not isinstance(data, dict) or name not in data:
            return _error(400, f"body must be {{\"{name}\": value}}")

        try:
            value = await device.set_property(name, data[name])
        except (UnknownPropertyError, InvalidValueError) as e:
            return _error(400, str(e))
        except InvalidStateError as e:
            return _error(409, str(e), **{name: device.properties[name]})
        except CommandError as e:
            log.warning("%s: write %s failed: %s", device.title, name, e)
            return _error(502, str(e), **{name: device.properties[name]})
        return web.json_response({name: value})

    async def _handle_stop(self, request: web.Request) -> web.Response:
        device = self._device(request)
        try:
            await device.stop()
        except InvalidStateError as e:
            return _error(409, str(e))
        except CommandError as e:
            log.warning("%s: stop failed: %s", device.title, e)
            return _error(502, str(e))
        return web.json_response({"status": "ok"})

    async def _handle_start_pairing(self, request: web.Request) -> web.Response:
        timeout = None
        if request.can_read_body:
            try:
                data = await request.json()
            except json.JSONDecodeError:
                return _error(400, "body must be JSON")
            if isinstance(data, dict) and data.get("timeout") is not None:
                try:
                    timeout = float(data["timeout"])
                except (TypeError, ValueError):
                    return _error(400, "timeout must be a number")
        self.adapter.start_pairing(timeout)
        return web.json_response({"status": "ok", "pairing": True})

    async def _handle_cancel_pairing(self, request: web.Request) -> web.Response:
        self.adapter.cancel_pairing()
        return web.json_response({"status": "ok", "pairing": self.adapter.pairing})
