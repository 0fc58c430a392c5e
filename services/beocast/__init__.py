# BeoSound 5c
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later
#
# Attribution required — see LICENSE, Section 7(b).

"""BeoSound 5c Cast bridge: Cast receivers mirrored into a property hub."""

__version__ = "0.1.0"
