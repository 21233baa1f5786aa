"""Command-line entry point: ``python -m solana_outflow_monitor``."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
import sys

from pydantic import ValidationError

from solana_outflow_monitor.config import ConfigurationError, get_settings, load_wallet_watches
from solana_outflow_monitor.pipeline import CoordinatorState, DetectionCoordinator

logger = logging.getLogger("solana_outflow_monitor")

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def setup_logging(level: int) -> None:
    logging.basicConfig(level=level, format=LOG_FORMAT, datefmt=LOG_DATE_FORMAT)
    # httpx logs every request at INFO.
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))


async def _run(coordinator: DetectionCoordinator) -> int:
    loop = asyncio.get_running_loop()
    main_task = asyncio.current_task()

    def _request_shutdown() -> None:
        logger.info("Shutdown requested")
        if main_task:
            main_task.cancel()

    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, _request_shutdown)

    try:
        await coordinator.run()
    except asyncio.CancelledError:
        await coordinator.stop()

    if coordinator.state == CoordinatorState.ERROR:
        logger.error("Monitor stopped with error: %s", coordinator.stats.last_error)
        return 1
    return 0


def main() -> int:
    try:
        settings = get_settings()
        wallets = load_wallet_watches()
    except (ValidationError, ConfigurationError) as e:
        setup_logging(logging.INFO)
        logger.error("Invalid configuration: %s", e)
        return 1

    setup_logging(settings.get_logging_level())
    logger.info("Effective configuration: %s", settings.redacted_summary())

    coordinator = DetectionCoordinator(settings, wallets=wallets)
    return asyncio.run(_run(coordinator))


if __name__ == "__main__":
    sys.exit(main())
