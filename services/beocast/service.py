# BeoSound 5c
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later
#
# Attribution required — see LICENSE, Section 7(b).

"""
BeoSound 5c Cast bridge.

Discovers Cast receivers on the local network, keeps one supervised
connection per receiver and mirrors its volume, mute, running application
and playback state into the WebHub (HTTP + WebSocket on hub.port).

    python -m beocast [--debug]
"""

import argparse
import asyncio
import logging
import os
import signal

from .adapter import CastAdapter
from .config import cfg
from .hub import WebHub

logger = logging.getLogger("beo-cast")


class CastBridgeService:
    def __init__(self, hub=None, adapter=None):
        self.hub = hub or WebHub(
            cfg("hub", "host", default="0.0.0.0"),
            int(cfg("hub", "port", default=8775)),
        )
        self.adapter = adapter or CastAdapter.from_config(self.hub)
        self.hub.bind(self.adapter)

    async def start(self):
        await self.hub.start()
        self.adapter.start()
        logger.info("Cast bridge started")

    async def stop(self):
        await self.adapter.unload()
        await self.hub.shutdown()
        logger.info("Cast bridge stopped")


async def run():
    service = CastBridgeService()
    await service.start()

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, stop_event.set)

    try:
        await stop_event.wait()
    finally:
        await service.stop()


def main(argv=None):
    parser = argparse.ArgumentParser(prog="beo-cast", description="BeoSound 5c Cast bridge")
    parser.add_argument("--debug", action="store_true", help="log every status push")
    args = parser.parse_args(argv)

    debug = args.debug or os.getenv("BEOCAST_DEBUG", "").lower() in ("1", "true", "yes")
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="[%(asctime)s] %(levelname)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    asyncio.run(run())


if __name__ == "__main__":
    main()
