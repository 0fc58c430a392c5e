# BeoSound 5c
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later
#
# Attribution required — see LICENSE, Section 7(b).

"""
CastDevice — one receiver, its supervised connection and mirrored state.

Lifecycle:

    device = CastDevice(adapter, service, create_transport)
    await device.connect()                 # registers with the adapter on success
    await device.set_property("volume", 40)
    await device.close()                   # on unload

Connection supervision.  Once connected, the transport's "closed" and
"error" signals start recovery.  Recovery climbs one ladder:

    same-session reconnect  →  new transport session  →  deregister

"closed" enters at the first rung.  "error" already counts as a failed
connection, so it enters at the second rung with a fresh transport.  Either
way the device is removed from the hub after two consecutive failures, and
the pairing window is reopened so a fresh announcement can bring it back.
"""

import asyncio
import enum
import functools
import logging
import time

from .errors import CastConnectionError, CommandError, InvalidStateError
from .media_session import MediaSessionTracker
from .properties import PropertyMirror
from .transports.base import AppDescriptor, AppSession, Transport, active_application, decode_status

logger = logging.getLogger("beo-cast.device")

DEFAULT_MEDIA_RECEIVER = AppDescriptor("CC1AD845", "Default Media Receiver")
DEFAULT_VOLUME_STEP = 0.05

SAME_SESSION = "same-session"
NEW_SESSION = "new-session"


class ConnectionState(enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FAULTED = "faulted"


# ---------------------------------------------------------------------------
# Property → remote command dispatch
# ---------------------------------------------------------------------------

async def _write_volume(device: "CastDevice", value: int) -> int:
    device.require_connected()
    step = device.properties.volume_step or DEFAULT_VOLUME_STEP
    level = min(max(round(round(value / 100 / step) * step, 4), 0.0), 1.0)
    await device.transport.set_volume(level=level)
    # The receiver lands on the step grid, not on the requested percent
    return int(round(level * 100))


async def _write_muted(device: "CastDevice", value: bool):
    device.require_connected()
    await device.transport.set_volume(muted=value)


async def _write_on(device: "CastDevice", value: bool):
    device.require_connected()
    if value:
        await device.launch_default_app()
    else:
        await device.stop_current_app()


async def _write_playing(device: "CastDevice", value: bool):
    device.require_connected()
    await device.media.set_playing(value)


COMMANDS = {
    "volume": _write_volume,
    "muted": _write_muted,
    "on": _write_on,
    "playing": _write_playing,
}


class CastDevice:
    def __init__(self, adapter, service, transport_factory,
                 default_app: AppDescriptor = DEFAULT_MEDIA_RECEIVER,
                 availability_ttl: float = 0.0,
                 volume_step: float = DEFAULT_VOLUME_STEP):
        self.adapter = adapter
        self.id = service.id
        self.title = service.title
        self.description = service.description
        self.address = service.address
        self.state = ConnectionState.DISCONNECTED
        self.registered = False
        self.reachable = True

        self.default_app = default_app
        self.availability_ttl = availability_ttl
        self._availability: tuple[float, bool] | None = None

        self._transport_factory = transport_factory
        self.transport: Transport = transport_factory()
        self.properties = PropertyMirror(
            {name: functools.partial(handler, self) for name, handler in COMMANDS.items()},
            self._property_changed,
        )
        self.properties.volume_step = volume_step
        self.media = MediaSessionTracker(self.properties, self.title)
        self.current_app: AppSession | None = None

        self._tasks: set[asyncio.Task] = set()
        self._interrupted = False
        self._recovering = False
        self._closed = False

    def __repr__(self):
        return f"<CastDevice {self.title!r} {self.address} {self.state.value}>"

    # ── Connection supervisor ──

    async def connect(self, initial: bool = True) -> None:
        """Open the transport, pull the initial state and register.

        Raises CastConnectionError.  The transport is closed before raising.
        Deregistration after failed reconnects is decided by the recovery
        ladder, not here.
        """
        transport = self.transport
        transport.off_all()
        self.state = ConnectionState.CONNECTING
        self._interrupted = False
        logger.info("%s: connecting to %s%s", self.title, self.address,
                    "" if initial else " (reconnect)")
        try:
            await transport.connect(self.address)
        except CastConnectionError:
            await transport.close()
            self.state = ConnectionState.FAULTED
            raise

        # Before anything else, so a close during initialisation is caught
        transport.on("closed", functools.partial(self._on_closed, transport))
        transport.on("error", functools.partial(self._on_error, transport))

        try:
            await self._pull_state(transport)
            if self._interrupted:
                raise CastConnectionError(f"{self.title}: connection lost during initialisation")
            if self._closed or transport is not self.transport:
                raise CastConnectionError(f"{self.title}: connection superseded")
        except (CastConnectionError, CommandError) as e:
            transport.off_all()
            await transport.close()
            self.state = ConnectionState.FAULTED
            if isinstance(e, CastConnectionError):
                raise
            raise CastConnectionError(f"{self.title}: initial state pull failed: {e}") from e

        transport.on("status", self._on_status)
        self.state = ConnectionState.CONNECTED
        logger.info("%s: connected", self.title)
        if not self.registered:
            self.registered = True
            self.adapter.handle_device_added(self)

    async def _pull_state(self, transport: Transport):
        volume = await transport.get_volume()
        self._apply_volume(volume.level, volume.muted, volume.step_interval)
        sessions = await transport.list_sessions()
        await self._apply_applications(sessions)

    def _on_closed(self, transport: Transport):
        if transport is not self.transport or self._closed:
            return
        if self.state is ConnectionState.CONNECTING:
            self._interrupted = True
            return
        if self._recovering:
            return
        logger.info("%s: connection closed by receiver", self.title)
        self._recovering = True
        self._spawn(self._recover(SAME_SESSION))

    def _on_error(self, transport: Transport, exc=None):
        if transport is not self.transport or self._closed:
            return
        if self.state is ConnectionState.CONNECTING:
            self._interrupted = True
            return
        if self._recovering:
            return
        logger.warning("%s: connection error: %s", self.title, exc)
        self._recovering = True
        self._spawn(self._recover(NEW_SESSION))

    async def _recover(self, rung: str):
        self.state = ConnectionState.DISCONNECTED
        try:
            await self.media.release()
            if rung == SAME_SESSION:
                try:
                    await self.connect(initial=False)
                    return
                except CastConnectionError as e:
                    logger.warning("%s: reconnect failed: %s", self.title, e)
                if self._closed:
                    return

            await self._replace_transport()
            try:
                await self.connect(initial=False)
                return
            except CastConnectionError as e:
                logger.warning("%s: reconnect with a new session failed: %s", self.title, e)
            if not self._closed:
                self._give_up()
        finally:
            self._recovering = False

    async def _replace_transport(self):
        old = self.transport
        old.off_all()
        await old.close()
        self.transport = self._transport_factory()
        logger.info("%s: transport session replaced", self.title)

    def _give_up(self):
        self.state = ConnectionState.FAULTED
        self.current_app = None
        if self.registered:
            self.registered = False
            logger.warning("%s: unreachable, removing", self.title)
            self.adapter.handle_device_removed(self)
        self.adapter.reopen_pairing()

    async def close(self):
        """Tear down for unload.  Does not deregister."""
        self._closed = True
        tasks = [task for task in self._tasks if task is not asyncio.current_task()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        await self.media.release()
        self.transport.off_all()
        await self.transport.close()
        self.state = ConnectionState.DISCONNECTED

    def require_connected(self):
        if self.state is not ConnectionState.CONNECTED:
            raise InvalidStateError(f"{self.title} is not connected")

    # ── Remote status ──

    def _on_status(self, payload):
        self._spawn(self.handle_status(payload))

    async def handle_status(self, payload):
        """Apply one receiver status push."""
        status = decode_status(payload)
        for problem in status.errors:
            logger.warning("%s: ignoring status field: %s", self.title, problem)
        self._apply_volume(status.level, status.muted, status.step_interval)
        if status.applications is not None:
            await self._apply_applications(status.applications)

    def _apply_volume(self, level, muted, step_interval):
        if step_interval:
            self.properties.volume_step = step_interval
        if level is not None:
            self.properties.apply_remote("volume", int(round(level * 100)))
        if muted is not None:
            self.properties.apply_remote("muted", muted)

    async def _apply_applications(self, applications: list[AppSession]):
        app = active_application(applications)
        if app is None:
            if self.current_app is not None:
                logger.info("%s: %s stopped", self.title,
                            self.current_app.display_name or self.current_app.app_id)
            self.current_app = None
            self.properties.apply_remote("app", "")
            self.properties.apply_remote("on", False)
            await self.media.release()
            return

        if self.current_app is None or app.app_id != self.current_app.app_id:
            logger.info("%s: %s running", self.title, app.display_name or app.app_id)
            self.properties.apply_remote("on", True)
            self.properties.apply_remote("app", app.display_name or app.app_id)
        self.current_app = app
        await self.media.join_if_needed(self.transport, app)

    # ── Local writes ──

    async def set_property(self, name: str, value):
        """Hub write entry point.  Returns the accepted value."""
        return await self.properties.apply_local_write(name, value)

    async def stop(self):
        """The "stop" action: stop whatever application is casting."""
        if self.properties["on"]:
            await self.set_property("on", False)
            return
        # Cache already says off; the receiver may know better
        self.require_connected()
        await self.stop_current_app()

    async def launch_default_app(self):
        app = self.default_app
        if not await self._default_app_available():
            raise CommandError(f"{app.app_id} is not available on {self.title}")
        logger.info("%s: launching %s", self.title, app.display_name or app.app_id)
        await self.transport.launch(app)

    async def _default_app_available(self) -> bool:
        app_id = self.default_app.app_id
        now = time.monotonic()
        if (self.availability_ttl > 0 and self._availability is not None
                and now - self._availability[0] < self.availability_ttl):
            return self._availability[1]
        result = await self.transport.get_app_availability(app_id)
        available = bool(result.get(app_id))
        self._availability = (now, available)
        return available

    async def stop_current_app(self):
        sessions = await self.transport.list_sessions()
        app = active_application(sessions)
        if app is None:
            logger.debug("%s: nothing to stop", self.title)
            return
        logger.info("%s: stopping %s", self.title, app.display_name or app.app_id)
        await self.transport.stop(app)

    # ── Hub side ──

    def _property_changed(self, name, value):
        if self.registered:
            self.adapter.notify_property_changed(self, name, value)

    def mark_seen(self, service):
        """A repeat announcement: refresh the address and reachability."""
        if service.address and service.address != self.address:
            logger.info("%s: address changed %s -> %s", self.title, self.address, service.address)
            self.address = service.address
        return self.set_reachable(True)

    def set_reachable(self, reachable: bool) -> bool:
        """Returns True if reachability changed."""
        if self.reachable == reachable:
            return False
        self.reachable = reachable
        return True

    def describe(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "address": self.address,
            "state": self.state.value,
            "reachable": self.reachable,
            "properties": self.properties.describe(),
        }

    # ── Tasks ──

    def _spawn(self, coro):
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("%s: background task failed", self.title, exc_info=exc)
