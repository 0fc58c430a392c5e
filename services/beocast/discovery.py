# BeoSound 5c
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later
#
# Attribution required — see LICENSE, Section 7(b).

"""
mDNS discovery of Cast receivers (``_googlecast._tcp.local.``).

zeroconf calls its handlers on its own thread; every service-up/down event
is turned into a ServiceDescriptor there and handed to the asyncio loop with
call_soon_threadsafe, so the adapter only ever runs on the loop.
"""

import asyncio
import logging
from dataclasses import dataclass, field

from zeroconf import ServiceBrowser, ServiceStateChange, Zeroconf

logger = logging.getLogger("beo-cast.discovery")

CAST_SERVICE_TYPE = "_googlecast._tcp.local."


def _text(value) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


@dataclass(frozen=True)
class ServiceDescriptor:
    """One announced receiver."""

    fullname: str
    addresses: tuple[str, ...]
    txt: dict = field(default_factory=dict, compare=False)
    port: int | None = None

    @property
    def id(self) -> str:
        return self.fullname

    @property
    def address(self) -> str | None:
        return self.addresses[0] if self.addresses else None

    @property
    def title(self) -> str:
        return self.txt.get("fn") or self.fullname

    @property
    def description(self) -> str:
        return self.txt.get("md", "")

    @classmethod
    def from_service_info(cls, name: str, info) -> "ServiceDescriptor":
        txt = {_text(key): _text(value) for key, value in (info.properties or {}).items()}
        return cls(
            fullname=name,
            addresses=tuple(info.parsed_addresses()),
            txt=txt,
            port=info.port,
        )


class CastDiscovery:
    """Browses for Cast receivers and reports service-up/down events.

    ``start(on_up, on_down)`` must be called from the event loop; both
    callbacks receive a ServiceDescriptor and run on that loop.
    """

    def __init__(self, service_type: str = CAST_SERVICE_TYPE, zeroconf: Zeroconf | None = None):
        self.service_type = service_type
        self._zeroconf = zeroconf
        self._owns_zeroconf = zeroconf is None
        self._browser: ServiceBrowser | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._known: dict[str, ServiceDescriptor] = {}
        self._on_up = None
        self._on_down = None

    def start(self, on_up, on_down):
        self._loop = asyncio.get_running_loop()
        self._on_up = on_up
        self._on_down = on_down
        if self._zeroconf is None:
            self._zeroconf = Zeroconf()
        self._browser = ServiceBrowser(
            self._zeroconf, self.service_type, handlers=[self._on_service_state_change])
        logger.info("Listening for %s services", self.service_type)

    def stop(self):
        if self._browser is not None:
            self._browser.cancel()
            self._browser = None
        if self._zeroconf is not None and self._owns_zeroconf:
            self._zeroconf.close()
            self._zeroconf = None
        self._known.clear()
        logger.info("Discovery stopped")

    def list_current(self) -> list[ServiceDescriptor]:
        """Services announced so far and not withdrawn."""
        return list(self._known.values())

    # ── zeroconf thread ──

    def _on_service_state_change(self, zeroconf: Zeroconf, service_type: str,
                                 name: str, state_change: ServiceStateChange):
        if state_change is ServiceStateChange.Removed:
            self._post(self._service_down, name)
            return
        info = zeroconf.get_service_info(service_type, name)
        if info is None:
            logger.debug("No service info for %s", name)
            return
        descriptor = ServiceDescriptor.from_service_info(name, info)
        if not descriptor.addresses:
            logger.debug("No address for %s", name)
            return
        self._post(self._service_up, descriptor)

    def _post(self, callback, *args):
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(callback, *args)

    # ── event loop ──

    def _service_up(self, descriptor: ServiceDescriptor):
        self._known[descriptor.fullname] = descriptor
        logger.debug("Service up: %s at %s", descriptor.title, descriptor.address)
        if self._on_up is not None:
            self._on_up(descriptor)

    def _service_down(self, name: str):
        descriptor = self._known.pop(name, None)
        if descriptor is None:
            return
        logger.debug("Service down: %s", descriptor.title)
        if self._on_down is not None:
            self._on_down(descriptor)
