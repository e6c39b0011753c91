from __future__ import annotations

import argparse
import asyncio
import logging
import signal

from common.config import get_settings

from .config import SyncConfig
from .service import SyncService

logger = logging.getLogger(__name__)


async def _run_forever(service: SyncService) -> None:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            pass

    await service.start()
    try:
        await stop.wait()
    finally:
        await service.stop()


async def _run_once(service: SyncService) -> None:
    await service.prepare()
    if not await service.session.start():
        logger.warning("Broker not reachable; requests will stay pending")
    try:
        report = await service.run_once()
        logger.info(
            "Cycle done: issued=%d skipped=%d backpressure=%s",
            len(report.issued),
            len(report.skipped),
            report.backpressure,
        )
    finally:
        await service.stop()


def main() -> None:
    settings = get_settings()

    parser = argparse.ArgumentParser(description="Undergrowth sequence sync service")
    parser.add_argument("--once", action="store_true", help="Run a single scheduling cycle and exit")
    parser.add_argument("--log-level", default=settings.log_level)
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler()],
    )

    service = SyncService.from_settings(settings, SyncConfig.from_env())
    if args.once:
        asyncio.run(_run_once(service))
    else:
        asyncio.run(_run_forever(service))


if __name__ == "__main__":
    main()
