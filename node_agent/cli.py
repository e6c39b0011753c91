from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from dataclasses import replace

from common.config import get_settings

from .agent import NodeAgent


async def _run(agent: NodeAgent) -> None:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            pass

    await agent.start()
    try:
        await stop.wait()
    finally:
        await agent.stop()


def main() -> None:
    settings = get_settings()

    parser = argparse.ArgumentParser(description="Undergrowth field node agent")
    parser.add_argument("--node-id", default=settings.node_id)
    parser.add_argument("--log-level", default=settings.log_level)
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler()],
    )

    if args.node_id != settings.node_id:
        settings = replace(settings, node_id=args.node_id)

    agent = NodeAgent.from_settings(settings)
    asyncio.run(_run(agent))


if __name__ == "__main__":
    main()
