# BeoSound 5c
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later
#
# Attribution required — see LICENSE, Section 7(b).

"""
Property Mirror — the local copy of a receiver's observable state.

Two ways in:

    mirror.apply_remote("volume", 40)           # the receiver reported it
    await mirror.apply_local_write("volume", 55)  # the hub asked for it

A value only goes out to the hub when it differs from the value last sent,
and a remote value never turns into a command back to the receiver.

Local writes are optimistic: the cache takes the requested value while the
command runs, a failure rolls it back, a success keeps it (the next status
push confirms or corrects it).  While a write is in flight the property
carries a write-intent flag; remote values arriving in that window are held
back and only applied if the write fails.
"""

import asyncio
import logging

from .errors import InvalidValueError, UnknownPropertyError

logger = logging.getLogger("beo-cast.properties")

# Hub-facing schema for each property
PROPERTY_DESCRIPTIONS = {
    "volume": {
        "title": "Volume",
        "type": "integer",
        "unit": "percent",
        "minimum": 0,
        "maximum": 100,
        "@type": "LevelProperty",
    },
    "on": {"title": "On", "type": "boolean", "@type": "OnOffProperty"},
    "playing": {"title": "Playing", "type": "boolean", "@type": "BooleanProperty"},
    "muted": {"title": "Muted", "type": "boolean", "@type": "BooleanProperty"},
    "app": {"title": "Application", "type": "string", "readOnly": True},
}

DEFAULT_VALUES = {
    "volume": 100,
    "on": False,
    "playing": False,
    "muted": False,
    "app": "",
}

_UNSET = object()


def coerce_value(name: str, value):
    """Validate a hub-supplied value for ``name`` and normalise its type."""
    kind = PROPERTY_DESCRIPTIONS[name]["type"]
    if kind == "boolean":
        if not isinstance(value, bool):
            raise InvalidValueError(f"{name} must be a boolean, got {value!r}")
        return value
    if kind == "integer":
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise InvalidValueError(f"{name} must be a number, got {value!r}")
        value = int(round(value))
        if not 0 <= value <= 100:
            raise InvalidValueError(f"{name} must be within 0-100, got {value}")
        return value
    if not isinstance(value, str):
        raise InvalidValueError(f"{name} must be a string, got {value!r}")
    return value


class Property:
    def __init__(self, name: str, value):
        self.name = name
        self.description = PROPERTY_DESCRIPTIONS[name]
        self.value = value          # cached value
        self.notified = value       # last value sent to the hub
        self.write_intent = False   # True while a hub write is in flight
        self.deferred = _UNSET      # remote value held back during a write
        self.lock = asyncio.Lock()

    @property
    def read_only(self) -> bool:
        return bool(self.description.get("readOnly"))

    def __repr__(self):
        return f"<Property {self.name}={self.value!r}>"


class PropertyMirror:
    """Cached properties of one device.

    ``handlers`` maps each writable property name to a coroutine function
    taking the new value; it issues the remote command and raises on failure.
    A handler may return the value the device actually applied, which is
    cached instead of the requested one.
    ``on_change(name, value)`` is called for every outward notification.
    """

    def __init__(self, handlers: dict, on_change):
        self._props = {name: Property(name, value) for name, value in DEFAULT_VALUES.items()}
        self._handlers = handlers
        self._on_change = on_change
        self.volume_step: float | None = None

    def __contains__(self, name):
        return name in self._props

    def __getitem__(self, name):
        return self._props[name].value

    def get(self, name: str) -> Property:
        return self._props[name]

    def values(self) -> dict:
        return {name: prop.value for name, prop in self._props.items()}

    def describe(self) -> dict:
        return {
            name: {**prop.description, "value": prop.value}
            for name, prop in self._props.items()
        }

    # ── Remote side ──

    def apply_remote(self, name: str, value) -> bool:
        """Mirror a value reported by the receiver.  Returns True if notified."""
        prop = self._props[name]
        if prop.write_intent:
            logger.debug("Holding back remote %s=%r during write", name, value)
            prop.deferred = value
            return False
        return self._accept(prop, value)

    def _accept(self, prop: Property, value) -> bool:
        prop.value = value
        if value == prop.notified:
            return False
        prop.notified = value
        logger.debug("%s -> %r", prop.name, value)
        self._on_change(prop.name, value)
        return True

    # ── Local side ──

    async def apply_local_write(self, name: str, value):
        """Write a value requested by the hub.  Returns the accepted value.

        Raises UnknownPropertyError / InvalidValueError before anything is
        touched, and re-raises whatever the command handler raised after
        rolling the cache back.
        """
        prop = self._props.get(name)
        if prop is None or prop.read_only or name not in self._handlers:
            raise UnknownPropertyError(f"{name} is not a writable property")
        value = coerce_value(name, value)

        async with prop.lock:
            if value == prop.value:
                return value
            previous = prop.value
            prop.value = value
            prop.write_intent = True
            prop.deferred = _UNSET
            succeeded = False
            try:
                applied = await self._handlers[name](value)
                succeeded = True
            finally:
                deferred = prop.deferred
                prop.write_intent = False
                prop.deferred = _UNSET
                if not succeeded:
                    logger.info("Write %s=%r failed, reverting to %r", name, value, previous)
                    prop.value = previous
                    if deferred is not _UNSET:
                        self._accept(prop, deferred)
            if applied is not None:
                value = applied
            self._accept(prop, value)
            return value
