# BeoSound 5c
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later
#
# Attribution required — see LICENSE, Section 7(b).

"""
Transport Session boundary for Cast receivers.

A Transport is one control connection to one physical receiver.  The wire
protocol lives in whatever library backs the concrete class; everything
above this module only sees the contract below.

Subclass contract:

    class MyTransport(Transport):
        async def connect(self, address) -> None: ...
        async def close(self) -> None: ...
        async def get_volume(self) -> Volume: ...
        async def set_volume(self, level=None, muted=None) -> None: ...
        async def list_sessions(self) -> list[AppSession]: ...
        async def join(self, session) -> MediaChannel: ...
        async def get_app_availability(self, app_id) -> dict[str, bool]: ...
        async def launch(self, app) -> None: ...
        async def stop(self, session) -> None: ...

Signals (emitted on the event loop thread):
    "status"  payload: dict   — receiver status push
    "closed"                  — the receiver closed the connection
    "error"   exc: Exception  — the connection faulted

Status payload shape:

    {"volume": {"level": 0..1, "muted": bool, "stepInterval": float},
     "applications": [{"appId", "displayName", "isIdleScreen", "transportId"}]}

MediaChannel signals:
    "status"  player_state: str | None
    "close"
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from ..errors import ProtocolDecodeError

log = logging.getLogger("beo-cast.transport")

# Player states that count as "playing" for the hub
PLAYING_STATES = frozenset({"PLAYING", "BUFFERING"})


@dataclass(frozen=True)
class AppDescriptor:
    """An application the receiver can launch or join."""

    app_id: str
    display_name: str = ""


@dataclass(frozen=True)
class AppSession:
    """One running application session as reported by the receiver."""

    app_id: str
    display_name: str = ""
    is_idle_screen: bool = False
    transport_id: str | None = None
    session_id: str | None = None

    @property
    def descriptor(self) -> AppDescriptor:
        return AppDescriptor(self.app_id, self.display_name)


@dataclass(frozen=True)
class Volume:
    level: float
    muted: bool = False
    step_interval: float | None = None


@dataclass
class ReceiverStatus:
    """Decoded status push.  Fields that failed to decode stay None."""

    level: float | None = None
    muted: bool | None = None
    step_interval: float | None = None
    applications: list[AppSession] | None = None
    errors: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Signal plumbing
# ---------------------------------------------------------------------------

class Signals:
    """Named callback lists.  Handlers are plain callables."""

    def __init__(self):
        self._handlers: dict[str, list] = {}

    def on(self, signal: str, handler):
        self._handlers.setdefault(signal, []).append(handler)
        return handler

    def off(self, signal: str, handler=None):
        """Remove one handler, or every handler for the signal."""
        if handler is None:
            self._handlers.pop(signal, None)
            return
        handlers = self._handlers.get(signal, [])
        if handler in handlers:
            handlers.remove(handler)

    def off_all(self):
        self._handlers.clear()

    def handlers(self, signal: str) -> tuple:
        return tuple(self._handlers.get(signal, ()))

    def emit(self, signal: str, *args):
        # A failing handler must not break the emitter (usually a library thread)
        for handler in self.handlers(signal):
            try:
                handler(*args)
            except Exception:
                log.exception("Handler for %r signal failed", signal)


# ---------------------------------------------------------------------------
# Status decoding
# ---------------------------------------------------------------------------

def _decode_volume_level(volume: dict) -> float:
    level = volume["level"]
    if isinstance(level, bool) or not isinstance(level, (int, float)):
        raise ProtocolDecodeError(f"volume.level is not a number: {level!r}")
    if not 0 <= level <= 1:
        raise ProtocolDecodeError(f"volume.level out of range: {level!r}")
    return float(level)


def _decode_muted(volume: dict) -> bool:
    muted = volume["muted"]
    if not isinstance(muted, bool):
        raise ProtocolDecodeError(f"volume.muted is not a boolean: {muted!r}")
    return muted


def _decode_step_interval(volume: dict) -> float:
    step = volume["stepInterval"]
    if isinstance(step, bool) or not isinstance(step, (int, float)) or step <= 0:
        raise ProtocolDecodeError(f"volume.stepInterval invalid: {step!r}")
    return float(step)


def decode_application(entry) -> AppSession:
    if not isinstance(entry, dict):
        raise ProtocolDecodeError(f"application entry is not an object: {entry!r}")
    app_id = entry.get("appId")
    if not isinstance(app_id, str) or not app_id:
        raise ProtocolDecodeError(f"application entry without appId: {entry!r}")
    return AppSession(
        app_id=app_id,
        display_name=str(entry.get("displayName") or ""),
        is_idle_screen=bool(entry.get("isIdleScreen", False)),
        transport_id=entry.get("transportId") or None,
        session_id=entry.get("sessionId") or None,
    )


def decode_applications(raw) -> list[AppSession]:
    # No "applications" key means nothing is running
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ProtocolDecodeError(f"applications is not a list: {raw!r}")
    return [decode_application(entry) for entry in raw]


def decode_status(payload) -> ReceiverStatus:
    """Decode a status push field by field.

    A field that cannot be decoded is left as None and its problem recorded
    in ``errors``; the caller keeps its previous value for that field.
    """
    status = ReceiverStatus()
    if not isinstance(payload, dict):
        status.errors.append(f"status payload is not an object: {payload!r}")
        return status

    volume = payload.get("volume")
    if isinstance(volume, dict):
        for attr, decoder, key in (
            ("level", _decode_volume_level, "level"),
            ("muted", _decode_muted, "muted"),
            ("step_interval", _decode_step_interval, "stepInterval"),
        ):
            if key not in volume:
                continue
            try:
                setattr(status, attr, decoder(volume))
            except ProtocolDecodeError as e:
                status.errors.append(str(e))
    elif volume is not None:
        status.errors.append(f"volume is not an object: {volume!r}")

    try:
        status.applications = decode_applications(payload.get("applications"))
    except ProtocolDecodeError as e:
        status.errors.append(str(e))

    return status


def active_application(applications: list[AppSession]) -> AppSession | None:
    """The first running application that is not the idle screen."""
    for app in applications:
        if not app.is_idle_screen:
            return app
    return None


# ---------------------------------------------------------------------------
# Abstract boundary
# ---------------------------------------------------------------------------

class MediaChannel(Signals, ABC):
    """Secondary channel carrying playback status for one application."""

    def __init__(self, app_id: str):
        super().__init__()
        self.app_id = app_id

    @abstractmethod
    async def get_status(self) -> str | None:
        """Probe the current player state, e.g. "PLAYING".  None if unknown."""

    @abstractmethod
    async def play(self) -> None: ...

    @abstractmethod
    async def pause(self) -> None: ...

    @abstractmethod
    async def close(self) -> None:
        """Leave the channel.  Must not emit "close"."""


class Transport(Signals, ABC):
    """One control connection to one receiver."""

    @abstractmethod
    async def connect(self, address: str) -> None:
        """Open the connection.  Raises CastConnectionError."""

    @abstractmethod
    async def close(self) -> None:
        """Close the connection and release its resources.  Idempotent."""

    @abstractmethod
    async def get_volume(self) -> Volume: ...

    @abstractmethod
    async def set_volume(self, level: float | None = None,
                         muted: bool | None = None) -> None: ...

    @abstractmethod
    async def list_sessions(self) -> list[AppSession]: ...

    @abstractmethod
    async def join(self, session: AppSession) -> MediaChannel:
        """Join the media channel of a running session.  Raises CommandError."""

    @abstractmethod
    async def get_app_availability(self, app_id: str) -> dict[str, bool]: ...

    @abstractmethod
    async def launch(self, app: AppDescriptor) -> None: ...

    @abstractmethod
    async def stop(self, session: AppSession) -> None:
        """Stop a running application session."""
