# BeoSound 5c
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later
#
# Attribution required — see LICENSE, Section 7(b).

"""
CastAdapter — device registry and pairing window.

Maps discovered services to CastDevice instances, one per service id.  New
ids are admitted only while the pairing window is open, or always in
continuous-discovery mode.  A device becomes visible to the hub once its
first connection and state pull succeed, and disappears when its
connection recovery gives up.
"""

import asyncio
import logging

from .config import cfg
from .device import DEFAULT_MEDIA_RECEIVER, DEFAULT_VOLUME_STEP, CastDevice
from .discovery import CAST_SERVICE_TYPE, CastDiscovery
from .errors import CastConnectionError
from .transports import AppDescriptor, create_transport

logger = logging.getLogger("beo-cast.adapter")

DEFAULT_PAIRING_TIMEOUT = 60.0


class CastAdapter:
    def __init__(self, hub, discovery=None, transport_factory=create_transport, *,
                 continuous: bool = False,
                 pairing_timeout: float = DEFAULT_PAIRING_TIMEOUT,
                 default_app: AppDescriptor = DEFAULT_MEDIA_RECEIVER,
                 availability_ttl: float = 0.0,
                 volume_step: float = DEFAULT_VOLUME_STEP):
        self.hub = hub
        self.discovery = discovery
        self.transport_factory = transport_factory
        self.continuous = continuous
        self.pairing_timeout = pairing_timeout
        self.default_app = default_app
        self.availability_ttl = availability_ttl
        self.volume_step = volume_step

        self.devices: dict[str, CastDevice] = {}     # registered with the hub
        self._pending: dict[str, CastDevice] = {}    # first connect in progress
        self._pairing: asyncio.TimerHandle | None = None
        self._tasks: set[asyncio.Task] = set()

    @classmethod
    def from_config(cls, hub, discovery=None, transport_factory=create_transport):
        """Build an adapter from the "discovery" and "cast" config sections."""
        if discovery is None:
            discovery = CastDiscovery(
                cfg("discovery", "service_type", default=CAST_SERVICE_TYPE))
        return cls(
            hub, discovery, transport_factory,
            continuous=bool(cfg("discovery", "continuous", default=False)),
            pairing_timeout=float(cfg("discovery", "pairing_timeout",
                                      default=DEFAULT_PAIRING_TIMEOUT)),
            default_app=AppDescriptor(
                cfg("cast", "default_app", default=DEFAULT_MEDIA_RECEIVER.app_id),
                DEFAULT_MEDIA_RECEIVER.display_name),
            availability_ttl=float(cfg("cast", "availability_ttl", default=0)),
            volume_step=float(cfg("cast", "volume_step", default=DEFAULT_VOLUME_STEP)),
        )

    def start(self):
        """Start discovery, and the first pairing window unless continuous."""
        if self.discovery is not None:
            self.discovery.start(self.on_service_announced, self.on_service_withdrawn)
        if self.continuous:
            logger.info("Continuous discovery: every receiver is admitted")
        else:
            self.start_pairing()

    # ── Pairing window ──

    @property
    def pairing(self) -> bool:
        return self.continuous or self._pairing is not None

    def start_pairing(self, timeout: float | None = None):
        """Open (or extend) the pairing window and replay known services."""
        if timeout is None:
            timeout = self.pairing_timeout
        if self._pairing is not None:
            self._pairing.cancel()
        loop = asyncio.get_running_loop()
        self._pairing = loop.call_later(timeout, self._pairing_expired)
        logger.info("Pairing window open for %.0fs", timeout)
        self._replay()

    def cancel_pairing(self):
        if self._pairing is None:
            return
        self._pairing.cancel()
        self._pairing = None
        logger.info("Pairing window closed")

    def _pairing_expired(self):
        self._pairing = None
        logger.info("Pairing window expired")

    def reopen_pairing(self):
        """Let a fresh announcement bring back a device that was removed."""
        if self.continuous:
            self._replay()
        else:
            self.start_pairing()

    def _replay(self):
        if self.discovery is None:
            return
        for service in self.discovery.list_current():
            self.on_service_announced(service)

    # ── Discovery events ──

    def on_service_announced(self, service):
        device = self.devices.get(service.id)
        if device is not None:
            if device.mark_seen(service):
                logger.info("%s: reachable again", device.title)
                self.hub.handle_device_reachable(device, True)
            return
        if service.id in self._pending:
            self._pending[service.id].mark_seen(service)
            return
        if not self.pairing:
            logger.debug("Ignoring %s: pairing window closed", service.title)
            return
        if not service.address:
            logger.debug("Ignoring %s: no address", service.title)
            return
        self._add(service)

    def _add(self, service) -> CastDevice:
        device = CastDevice(
            self, service, self.transport_factory,
            default_app=self.default_app,
            availability_ttl=self.availability_ttl,
            volume_step=self.volume_step,
        )
        self._pending[device.id] = device
        logger.info("Found %s (%s) at %s", device.title,
                    device.description or "unknown model", device.address)
        self._spawn(self._connect(device))
        return device

    async def _connect(self, device: CastDevice):
        try:
            await device.connect(initial=True)
        except CastConnectionError as e:
            logger.warning("%s: could not connect: %s", device.title, e)
            await device.close()
        finally:
            if self._pending.get(device.id) is device:
                del self._pending[device.id]

    def on_service_withdrawn(self, service):
        device = self.devices.get(service.id) or self._pending.get(service.id)
        if device is None:
            return
        # Receivers drop out of mDNS while still reachable; the connection
        # supervisor decides when the device is really gone.
        if device.set_reachable(False):
            logger.info("%s: withdrawn from discovery", device.title)
            if device.registered:
                self.hub.handle_device_reachable(device, False)

    # ── Called by devices ──

    def handle_device_added(self, device: CastDevice):
        self._pending.pop(device.id, None)
        self.devices[device.id] = device
        logger.info("%s: registered", device.title)
        self.hub.handle_device_added(device)

    def handle_device_removed(self, device: CastDevice):
        if self.devices.get(device.id) is not device:
            return
        del self.devices[device.id]
        logger.info("%s: removed", device.title)
        self.hub.handle_device_removed(device)
        self._spawn(device.close())

    def notify_property_changed(self, device: CastDevice, name: str, value):
        self.hub.notify_property_changed(device, name, value)

    # ── Lookup / teardown ──

    def get(self, device_id: str) -> CastDevice | None:
        return self.devices.get(device_id)

    async def unload(self):
        """Stop discovery and close every device.  Nothing is deregistered."""
        self.cancel_pairing()
        if self.discovery is not None:
            self.discovery.stop()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        devices = list(self.devices.values()) + list(self._pending.values())
        self.devices.clear()
        self._pending.clear()
        await asyncio.gather(*(device.close() for device in devices))
        logger.info("Adapter unloaded")

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
            logger.error("Adapter task failed", exc_info=exc)
