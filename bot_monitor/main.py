from __future__ import annotations

import argparse
import asyncio
import logging
import os
from typing import Any

import httpx
import structlog
import uvicorn
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from dotenv import load_dotenv

from bot_monitor.app import create_app
from bot_monitor.context import build_context
from bot_monitor.errors import ConfigError
from bot_monitor.loop import CheckLoop
from bot_monitor.models import BotRecord
from bot_monitor.settings import MonitorSettings, load_roster, require_roster


logger = structlog.get_logger(__name__)


def configure_logging(level_name: str) -> None:
    level = getattr(logging, str(level_name).upper(), logging.INFO)
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="ISO"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s %(message)s")

    # The bot token is embedded in Telegram API URLs.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)


def _swallow_loop_errors(loop: asyncio.AbstractEventLoop, context: dict[str, Any]) -> None:
    exc = context.get("exception")
    logger.error(
        "Unhandled asyncio error",
        message=context.get("message"),
        error=f"{type(exc).__name__}: {exc}" if exc else None,
    )


async def run(settings: MonitorSettings, roster: list[BotRecord], *, once: bool) -> int:
    asyncio.get_running_loop().set_exception_handler(_swallow_loop_errors)

    async with httpx.AsyncClient() as client:
        ctx = build_context(settings, roster, client)
        check_loop = CheckLoop(ctx)
        logger.info(
            "Monitor starting",
            bots=[bot.id for bot in roster],
            interval_seconds=settings.check_interval_seconds,
            report_id=ctx.state.published_report_id,
        )

        if once:
            await check_loop.run_sweep()
            await check_loop.drain()
            return 0

        scheduler = AsyncIOScheduler()
        check_loop.schedule(scheduler)
        scheduler.start()

        server = uvicorn.Server(
            uvicorn.Config(create_app(ctx), host=settings.host, port=settings.port, log_level="warning")
        )
        try:
            await server.serve()
        finally:
            scheduler.shutdown(wait=False)
            await check_loop.drain()
            logger.info("Monitor stopped")
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(description="Bot health monitor with redeploy hooks")
    parser.add_argument("--once", action="store_true", help="Run one sweep and exit")
    parser.add_argument("--env-file", default=".env", help="dotenv file loaded before reading the environment")
    parser.add_argument(
        "--log-level",
        default=None,
        help="Logging level (INFO, WARNING, ...); defaults to LOG_LEVEL or INFO",
    )
    args = parser.parse_args()

    load_dotenv(args.env_file, override=False)
    configure_logging(args.log_level or os.getenv("LOG_LEVEL", "INFO"))

    settings = MonitorSettings()
    try:
        settings.validate()
        roster = require_roster(load_roster())
    except ConfigError as exc:
        logger.error("Startup aborted", error=str(exc))
        return 1

    try:
        return asyncio.run(run(settings, roster, once=bool(args.once)))
    except KeyboardInterrupt:
        return 0


if __name__ == "__main__":
    raise SystemExit(main())
