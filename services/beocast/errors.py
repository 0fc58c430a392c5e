# BeoSound 5c
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later
#
# Attribution required — see LICENSE, Section 7(b).

"""Error types raised by the Cast bridge."""


class BeoCastError(Exception):
    """Base class for every error the bridge raises on purpose."""


class CastConnectionError(BeoCastError, ConnectionError):
    """Receiver unreachable, handshake failed, or initial state pull failed."""


class CommandError(BeoCastError):
    """The receiver rejected (or never answered) a specific command."""


class InvalidStateError(BeoCastError):
    """A write was requested against a state the device cannot reach right now."""


class UnknownPropertyError(InvalidStateError):
    """Write to a property that does not exist or is read-only."""


class InvalidValueError(BeoCastError, ValueError):
    """A property value of the wrong type or out of range."""


class ProtocolDecodeError(BeoCastError):
    """A status payload field could not be decoded.  Never fatal."""
