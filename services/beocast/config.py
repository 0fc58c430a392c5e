# BeoSound 5c
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later
#
# Attribution required — see LICENSE, Section 7(b).

"""
Configuration loader for the BeoSound 5c Cast bridge.

Loads a single JSON config file.  Search order:
  0. $BEOCAST_CONFIG                (explicit override, if set)
  1. /etc/beocast/config.json       (deployed by deploy.sh)
  2. config.json                    (CWD — handy for local dev)
  3. ../../config/default.json      (repo fallback)

Usage:
    from beocast.config import cfg

    hub_port      = cfg("hub", "port", default=8775)
    continuous    = cfg("discovery", "continuous", default=False)
    cast          = cfg("cast")  # returns the whole dict
"""

import json
import logging
import os

logger = logging.getLogger("beo-cast.config")

_config: dict | None = None

_SEARCH_PATHS = [
    "/etc/beocast/config.json",
    "config.json",
    os.path.join(os.path.dirname(__file__), "..", "..", "config", "default.json"),
]


def _candidate_paths() -> list[str]:
    explicit = os.getenv("BEOCAST_CONFIG")
    if explicit:
        return [explicit] + list(_SEARCH_PATHS)
    return list(_SEARCH_PATHS)


def load_config() -> dict:
    """Load config from the first JSON file found. Cached after first call."""
    global _config
    if _config is not None:
        return _config

    for path in _candidate_paths():
        try:
            with open(path) as f:
                _config = json.load(f)
                logger.info("Config loaded from %s", path)
                return _config
        except FileNotFoundError:
            continue
        except json.JSONDecodeError as e:
            logger.error("Invalid JSON in %s: %s", path, e)
            continue

    logger.warning("No config.json found — using empty config")
    _config = {}
    return _config


def cfg(section: str, key: str | None = None, *, default=None):
    """Read a config value.

    cfg("hub")                          → config["hub"]
    cfg("cast", "default_app")          → config["cast"]["default_app"]
    cfg("hub", "port", default=8775)    → config["hub"]["port"] or 8775
    """
    config = load_config()
    val = config.get(section)
    if key is None:
        return val if val is not None else default
    if isinstance(val, dict):
        return val.get(key, default)
    return default


def reload_config():
    """Force re-read from disk (for testing or hot-reload)."""
    global _config
    _config = None
    return load_config()
