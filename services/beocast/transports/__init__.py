# BeoSound 5c
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later
#
# Attribution required — see LICENSE, Section 7(b).

"""
Transport Sessions for Cast receivers.

The factory ``create_transport`` reads config.json and returns a fresh,
unconnected transport.  Each call returns a new instance; a device asks for
a new one whenever it has to replace a faulted connection.

Config ("cast" section):
  port              – receiver control port (default 8009)
  connect_timeout   – seconds to wait for the handshake (default 10)
  command_timeout   – seconds to wait for any single command (default 10)
  volume_step       – fallback volume step when the receiver reports none
"""

import logging

from ..config import cfg
from .base import (
    PLAYING_STATES,
    AppDescriptor,
    AppSession,
    MediaChannel,
    ReceiverStatus,
    Signals,
    Transport,
    Volume,
    active_application,
    decode_status,
)
from .cast import CastTransport

logger = logging.getLogger("beo-cast.transport")

__all__ = [
    "PLAYING_STATES",
    "AppDescriptor",
    "AppSession",
    "CastTransport",
    "MediaChannel",
    "ReceiverStatus",
    "Signals",
    "Transport",
    "Volume",
    "active_application",
    "create_transport",
    "decode_status",
]


def create_transport() -> Transport:
    """Create a new, unconnected transport based on config.json."""
    port = int(cfg("cast", "port", default=8009))
    connect_timeout = float(cfg("cast", "connect_timeout", default=10.0))
    command_timeout = float(cfg("cast", "command_timeout", default=10.0))
    volume_step = float(cfg("cast", "volume_step", default=0.05))
    logger.debug("Transport: Cast port %d (connect %.1fs, command %.1fs)",
                 port, connect_timeout, command_timeout)
    return CastTransport(port, connect_timeout, command_timeout, volume_step)
