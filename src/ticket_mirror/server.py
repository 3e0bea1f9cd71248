"""Entrypoint for the ticket mirror sync service."""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from pathlib import Path

if __package__ in (None, ""):
    sys.path.insert(0, str(Path(__file__).resolve().parents[1]))  # pragma: no cover

from ticket_mirror import __version__
from ticket_mirror.app import AppContext, get_app_context
from ticket_mirror.domain.records import RecordType
from ticket_mirror.logging_utils import configure_logging

logger = logging.getLogger(__name__)


async def run_service(ctx: AppContext, stop: asyncio.Event) -> None:
    """Run continuous sync until *stop* is set, then shut down cleanly."""
    await ctx.repository.initialize()
    record_types = [RecordType(value) for value in ctx.settings.sync.record_types]
    ctx.reconciler.start_continuous_sync(
        record_types, interval=ctx.settings.sync.interval_seconds
    )
    try:
        await stop.wait()
    finally:
        logger.info("Shutting down")
        ctx.reconciler.stop_continuous_sync()
        await ctx.reconciler.drain()
        await ctx.remote.aclose()
        ctx.store.close()


def _install_signal_handlers(stop: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, stop.set)
        except NotImplementedError:  # pragma: no cover
            signal.signal(signum, lambda *_: loop.call_soon_threadsafe(stop.set))


async def _main() -> None:
    ctx = get_app_context()
    stop = asyncio.Event()
    _install_signal_handlers(stop)
    await run_service(ctx, stop)


def run_entrypoint() -> None:
    """Configure logging and run the sync service until interrupted."""
    configure_logging()
    logger.info("Starting ticket mirror v%s", __version__)
    asyncio.run(_main())


if __name__ == "__main__":  # pragma: no cover
    run_entrypoint()
