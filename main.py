"""ClientDesk entrypoint -- builds the services, then serves the admin API
and runs the scheduler until SIGINT/SIGTERM.

Usage:
    python main.py
    python main.py --config ~/.clientdesk/config.yaml --env ~/.clientdesk/.env
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import signal

from aiohttp import web

from bootstrap import build_services
from core.config import load_config
from server import create_app

logger = logging.getLogger("clientdesk")

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
NOISY_LOGGERS = ("aiohttp.access", "httpx", "httpcore")


def setup_logging(level: str) -> None:
    """Configure root logging; safe to call again to change the level."""
    numeric = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(level=numeric, format=LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
    logging.getLogger().setLevel(numeric)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="ClientDesk workflow engine and scheduler")
    parser.add_argument("--config", "-c", type=str, default=None,
                        help="config.yaml path (default: $CLIENTDESK_HOME/config.yaml)")
    parser.add_argument("--env", type=str, default=None,
                        help=".env path (default: $CLIENTDESK_HOME/.env)")
    return parser.parse_args()


def _stop_on_signals(stop: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        # Not available on Windows event loops; KeyboardInterrupt still applies there
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop.set)


async def run(config_path: str | None = None, env_path: str | None = None) -> None:
    config = load_config(config_path=config_path, env_path=env_path)
    setup_logging(config.logging.level)

    services = build_services(config)
    runner = web.AppRunner(create_app(services))
    stop = asyncio.Event()
    _stop_on_signals(stop)

    try:
        await runner.setup()
        await web.TCPSite(runner, config.server.host, config.server.port).start()
        await services.scheduler.start()

        triggers = services.triggers.list_triggers()
        logger.info(
            "ClientDesk listening on http://%s:%d (db=%s, jobs=%d, active triggers=%d)",
            config.server.host,
            config.server.port,
            config.database_path,
            len(services.scheduler.runner.job_names()),
            sum(1 for t in triggers if t.is_active),
        )
        await stop.wait()
    finally:
        logger.info("Shutting down")
        await services.scheduler.stop()
        await runner.cleanup()
        await services.close()


def main() -> None:
    args = parse_args()
    setup_logging("INFO")
    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(run(config_path=args.config, env_path=args.env))


if __name__ == "__main__":
    main()
