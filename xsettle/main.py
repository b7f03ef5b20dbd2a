"""
Entry point: load config, validate it, serve the settlement HTTP app.
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys

from aiohttp import web

from xsettle.config.config import Settings
from xsettle.config.config_validator import validate_and_log
from xsettle.core.json_utils import dumps
from xsettle.infra.logging_cfg import build_logger
from xsettle.monitoring.health import HealthChecker
from xsettle.server.app import create_app

log = logging.getLogger("xsettle")


async def main() -> None:
    cfg = Settings.load()
    build_logger("xsettle", cfg.log_level, file_path=cfg.log_file, json_console=cfg.log_json_console)

    if not validate_and_log(cfg, log):
        log.error("Configuration validation failed, exiting")
        sys.exit(1)

    health_checker = HealthChecker()
    app = create_app(cfg, health_checker=health_checker)
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, cfg.server_host, cfg.server_port)
    await site.start()
    log.info(dumps({"event": "startup", "host": cfg.server_host, "port": cfg.server_port}))

    loop = asyncio.get_running_loop()
    stop = asyncio.Event()

    # Windows doesn't support add_signal_handler, so rely on KeyboardInterrupt handling
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            pass

    try:
        await stop.wait()
        log.info("Shutdown signal received, cleaning up...")
    finally:
        log.info("Closing server and chain connections...")
        await runner.cleanup()
        log.info("Shutdown complete")


def run() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nServer stopped by user")
    sys.exit(0)


if __name__ == "__main__":
    run()
