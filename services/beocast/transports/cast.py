# BeoSound 5c
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later
#
# Attribution required — see LICENSE, Section 7(b).

"""
Cast transport — talks to a Google Cast receiver through pychromecast.

pychromecast owns a socket thread per receiver.  Its listener callbacks are
marshalled onto the asyncio loop with call_soon_threadsafe, and its blocking
calls run in the default executor (same pattern as the Sonos adapters).

Request/response calls (receiver status, app availability, media status)
go through the controllers' ``callback_function`` hook so the raw receiver
message is available, including ``volume.stepInterval`` which the parsed
CastStatus drops.
"""

import asyncio
import logging

import pychromecast
from pychromecast.error import PyChromecastError
from pychromecast.socket_client import (
    CONNECTION_STATUS_DISCONNECTED,
    CONNECTION_STATUS_FAILED,
    CONNECTION_STATUS_LOST,
)

from ..errors import CastConnectionError, CommandError, ProtocolDecodeError
from .base import (
    AppDescriptor,
    AppSession,
    MediaChannel,
    Transport,
    Volume,
    decode_applications,
    decode_status,
)

logger = logging.getLogger("beo-cast.transport.cast")

BACKDROP_APP_ID = "E8C28D3C"  # idle screen
MEDIA_NAMESPACE = "urn:x-cast:com.google.cast.media"


def status_payload(status, step_interval: float | None) -> dict:
    """Convert a pychromecast CastStatus into the transport status payload."""
    payload = {
        "volume": {
            "level": status.volume_level,
            "muted": status.volume_muted,
        },
    }
    if step_interval:
        payload["volume"]["stepInterval"] = step_interval
    if status.app_id:
        payload["applications"] = [{
            "appId": status.app_id,
            "displayName": status.display_name or "",
            "isIdleScreen": status.app_id == BACKDROP_APP_ID,
            "transportId": status.transport_id,
            "sessionId": status.session_id,
        }]
    return payload


def player_state_from_response(response) -> str | None:
    """Extract playerState from a raw MEDIA_STATUS message.  None if absent."""
    if not isinstance(response, dict):
        return None
    entries = response.get("status")
    if not isinstance(entries, list) or not entries:
        return None
    entry = entries[0]
    if not isinstance(entry, dict):
        return None
    return entry.get("playerState")


class _Listener:
    """Per-connection listener, so callbacks from a replaced cast are ignored."""

    def __init__(self, transport: "CastTransport"):
        self._transport = transport

    def new_cast_status(self, status):
        self._transport._post(self, self._transport._on_cast_status, status)

    def new_connection_status(self, status):
        self._transport._post(self, self._transport._on_connection_status, status)

    def new_media_status(self, status):
        self._transport._post(self, self._transport._on_media_status, status)

    def load_media_failed(self, queue_item_id, error_code):
        logger.debug("Media load failed (item %s, code %s)", queue_item_id, error_code)


class CastMediaChannel(MediaChannel):
    """Media namespace of the running application."""

    def __init__(self, transport: "CastTransport", app_id: str, transport_id: str):
        super().__init__(app_id)
        self.transport_id = transport_id
        self._transport = transport

    async def get_status(self) -> str | None:
        controller = self._transport._require_cast().media_controller
        response = await self._transport._request(
            controller.update_status, "media status")
        return player_state_from_response(response)

    async def play(self) -> None:
        controller = self._transport._require_cast().media_controller
        await self._transport._call(controller.play, what="play")

    async def pause(self) -> None:
        controller = self._transport._require_cast().media_controller
        await self._transport._call(controller.pause, what="pause")

    async def close(self) -> None:
        self.off_all()
        if self._transport._channel is self:
            self._transport._channel = None


class CastTransport(Transport):
    """Transport backed by pychromecast."""

    def __init__(self, port: int = 8009, connect_timeout: float = 10.0,
                 command_timeout: float = 10.0, volume_step: float = 0.05):
        super().__init__()
        self._port = port
        self._connect_timeout = connect_timeout
        self._command_timeout = command_timeout
        self._volume_step = volume_step
        self._cast = None
        self._listener: _Listener | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._channel: CastMediaChannel | None = None
        self._address: str | None = None

    # ── Thread marshalling ──

    def _post(self, listener, callback, *args):
        """Called on the pychromecast thread."""
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(self._dispatch, listener, callback, *args)

    def _dispatch(self, listener, callback, *args):
        if listener is not self._listener:
            return  # stale connection
        callback(*args)

    def _on_cast_status(self, status):
        self.emit("status", status_payload(status, self._volume_step))
        channel = self._channel
        if channel is not None and (
                status.app_id != channel.app_id
                or status.transport_id != channel.transport_id):
            self._channel = None
            channel.emit("close")

    def _on_connection_status(self, status):
        if status.status in (CONNECTION_STATUS_LOST, CONNECTION_STATUS_DISCONNECTED):
            logger.info("Cast connection to %s closed (%s)", self._address, status.status)
            self._listener = None
            self.emit("closed")
        elif status.status == CONNECTION_STATUS_FAILED:
            logger.warning("Cast connection to %s failed", self._address)
            self._listener = None
            self.emit("error", CastConnectionError(f"connection to {self._address} failed"))

    def _on_media_status(self, status):
        if self._channel is not None:
            self._channel.emit("status", status.player_state)

    # ── Blocking-call helpers ──

    def _require_cast(self):
        if self._cast is None:
            raise CommandError("not connected")
        return self._cast

    async def _call(self, fn, *args, what: str = "command"):
        """Run a blocking pychromecast call in the executor."""
        loop = asyncio.get_running_loop()
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(None, lambda: fn(*args)),
                timeout=self._command_timeout,
            )
        except asyncio.TimeoutError:
            raise CommandError(f"{what} timed out") from None
        except (PyChromecastError, OSError) as e:
            raise CommandError(f"{what} failed: {e}") from e

    async def _request(self, send, what: str):
        """Send a controller message and wait for the receiver's reply."""
        loop = asyncio.get_running_loop()
        future = loop.create_future()

        def _settle(success, response):
            if future.done():
                return
            if success:
                future.set_result(response)
            else:
                future.set_exception(CommandError(f"{what} rejected: {response!r}"))

        def _done(success, response):
            loop.call_soon_threadsafe(_settle, success, response)

        try:
            await self._call(lambda: send(callback_function=_done), what=what)
        except CommandError:
            # The reply may already be settled, or still queued on the loop
            if future.done() and not future.cancelled():
                future.exception()
            else:
                future.cancel()
            raise
        try:
            return await asyncio.wait_for(future, timeout=self._command_timeout)
        except asyncio.TimeoutError:
            raise CommandError(f"{what} timed out") from None

    async def _receiver_status(self) -> dict:
        receiver = self._require_cast().socket_client.receiver_controller
        response = await self._request(receiver.update_status, "receiver status")
        status = response.get("status") if isinstance(response, dict) else None
        if not isinstance(status, dict):
            raise CommandError(f"receiver status missing: {response!r}")
        return status

    # ── Transport contract ──

    async def connect(self, address: str) -> None:
        if self._cast is not None:
            await self._disconnect()

        self._loop = asyncio.get_running_loop()
        self._address = address
        listener = _Listener(self)
        port = self._port
        timeout = self._connect_timeout

        def _open():
            cast = pychromecast.get_chromecast_from_host(
                (address, port, None, None, None), tries=1, timeout=timeout)
            cast.register_status_listener(listener)
            cast.register_connection_listener(listener)
            cast.media_controller.register_status_listener(listener)
            try:
                cast.wait(timeout=timeout)
                if cast.status is None:
                    raise CastConnectionError(f"no status from {address}")
            except Exception:
                cast.disconnect(timeout=timeout)
                raise
            return cast

        try:
            cast = await self._loop.run_in_executor(None, _open)
        except CastConnectionError:
            raise
        except (PyChromecastError, OSError) as e:
            raise CastConnectionError(f"cannot connect to {address}: {e}") from e

        self._cast = cast
        self._listener = listener
        logger.info("Cast connection to %s open", address)

    async def close(self) -> None:
        await self._disconnect()

    async def _disconnect(self):
        cast, self._cast = self._cast, None
        self._listener = None
        channel, self._channel = self._channel, None
        if channel is not None:
            channel.off_all()
        if cast is None:
            return
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(
                None, lambda: cast.disconnect(timeout=self._connect_timeout))
        except (PyChromecastError, OSError) as e:
            logger.debug("Error while disconnecting from %s: %s", self._address, e)

    async def get_volume(self) -> Volume:
        decoded = decode_status(await self._receiver_status())
        if decoded.level is None:
            raise CommandError(f"volume missing from receiver status: {decoded.errors}")
        if decoded.step_interval:
            self._volume_step = decoded.step_interval
        return Volume(decoded.level, bool(decoded.muted), self._volume_step)

    async def set_volume(self, level: float | None = None,
                         muted: bool | None = None) -> None:
        cast = self._require_cast()
        if level is not None:
            await self._call(cast.set_volume, level, what="set volume")
        if muted is not None:
            await self._call(cast.set_volume_muted, muted, what="set mute")

    async def list_sessions(self) -> list[AppSession]:
        status = await self._receiver_status()
        try:
            return decode_applications(status.get("applications"))
        except ProtocolDecodeError as e:
            raise CommandError(f"bad session list: {e}") from e

    async def join(self, session: AppSession) -> MediaChannel:
        cast = self._require_cast()
        if not session.transport_id:
            raise CommandError(f"{session.app_id} has no transport to join")
        status = cast.status
        if status is None or MEDIA_NAMESPACE not in (status.namespaces or []):
            raise CommandError(f"{session.app_id} has no media channel")
        if self._channel is not None:
            self._channel.off_all()
        self._channel = CastMediaChannel(self, session.app_id, session.transport_id)
        logger.info("Joined media channel of %s", session.display_name or session.app_id)
        return self._channel

    async def get_app_availability(self, app_id: str) -> dict[str, bool]:
        receiver = self._require_cast().socket_client.receiver_controller
        response = await self._request(
            lambda callback_function: receiver.send_message(
                {"type": "GET_APP_AVAILABILITY", "appId": [app_id]},
                callback_function=callback_function),
            "app availability",
        )
        availability = response.get("availability") if isinstance(response, dict) else None
        if not isinstance(availability, dict):
            raise CommandError(f"bad availability response: {response!r}")
        return {key: value == "APP_AVAILABLE" for key, value in availability.items()}

    async def launch(self, app: AppDescriptor) -> None:
        cast = self._require_cast()
        await self._call(cast.start_app, app.app_id, what=f"launch {app.app_id}")

    async def stop(self, session: AppSession) -> None:
        cast = self._require_cast()
        status = cast.status
        if status is not None and status.app_id and status.app_id != session.app_id:
            raise CommandError(f"{session.app_id} is no longer running")
        await self._call(cast.quit_app, what=f"stop {session.app_id}")
