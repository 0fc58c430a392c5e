# BeoSound 5c
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later
#
# Attribution required — see LICENSE, Section 7(b).

"""
Media Session Tracker.

Follows whichever application is running on the receiver: joins its media
channel when it has one, mirrors the player state into the ``playing``
property, and drops the channel when the application goes away.  At most
one session exists per device.
"""

import functools
import logging

from .errors import CommandError, InvalidStateError
from .transports.base import PLAYING_STATES, AppSession, MediaChannel, Transport

logger = logging.getLogger("beo-cast.media")


class MediaSession:
    def __init__(self, app: AppSession, channel: MediaChannel):
        self.app = app
        self.channel = channel
        self.player_state: str | None = None

    @property
    def app_id(self) -> str:
        return self.app.app_id

    @property
    def playing(self) -> bool:
        return self.player_state in PLAYING_STATES


class MediaSessionTracker:
    def __init__(self, mirror, name: str = ""):
        self._mirror = mirror
        self._name = name
        self._session: MediaSession | None = None
        self._joining: str | None = None   # app id of a join in flight
        self._declined: tuple | None = None  # (app id, transport id) whose join failed

    @property
    def session(self) -> MediaSession | None:
        return self._session

    @property
    def active(self) -> bool:
        return self._session is not None

    async def join_if_needed(self, transport: Transport, app: AppSession) -> bool:
        """Join ``app``'s media channel unless already joined.  True if joined."""
        if not app.transport_id:
            return False
        if self._session is not None and self._session.app_id == app.app_id:
            return False
        if self._joining == app.app_id:
            return False
        if self._declined == (app.app_id, app.transport_id):
            return False
        if self._session is not None:
            await self.release()

        self._joining = app.app_id
        try:
            channel = await transport.join(app)
        except CommandError as e:
            if self._joining == app.app_id:
                self._joining = None
                self._declined = (app.app_id, app.transport_id)
            logger.warning("%s: cannot join %s: %s", self._name, app.app_id, e)
            return False

        if self._joining != app.app_id:
            # Released or superseded while the join was in flight
            await channel.close()
            return False
        self._joining = None

        session = MediaSession(app, channel)
        channel.on("status", functools.partial(self._on_status, session))
        channel.on("close", functools.partial(self._on_close, session))
        self._session = session
        logger.info("%s: media session joined (%s)", self._name,
                    app.display_name or app.app_id)

        try:
            state = await channel.get_status()
        except CommandError as e:
            logger.debug("%s: media status probe failed: %s", self._name, e)
            state = None
        if self._session is session:
            self._update(session, state)
        return True

    async def release(self):
        """Leave the current session (if any) and clear ``playing``."""
        self._joining = None
        self._declined = None
        session, self._session = self._session, None
        if session is not None:
            session.channel.off_all()
            try:
                await session.channel.close()
            except CommandError as e:
                logger.debug("%s: error leaving media channel: %s", self._name, e)
            logger.info("%s: media session released (%s)", self._name, session.app_id)
        self._mirror.apply_remote("playing", False)

    async def set_playing(self, playing: bool):
        session = self._session
        if session is None:
            raise InvalidStateError("no active media")
        if playing:
            await session.channel.play()
        else:
            await session.channel.pause()

    # ── Channel signals ──

    def _update(self, session: MediaSession, state: str | None):
        session.player_state = state
        self._mirror.apply_remote("playing", session.playing)

    def _on_status(self, session: MediaSession, state):
        if session is not self._session:
            return
        self._update(session, state)

    def _on_close(self, session: MediaSession):
        if session is not self._session:
            return
        self._session = None
        session.channel.off_all()
        logger.info("%s: media channel closed (%s)", self._name, session.app_id)
        self._mirror.apply_remote("playing", False)
