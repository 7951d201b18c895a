"""FastAPI app factory for the invoice sync service.

Usage:
    uvicorn invoice_sync.serve:create_app --factory --port 8060
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from invoice_sync import __version__
from invoice_sync.config import Settings, get_settings
from invoice_sync.lifecycle.postgres import PostgresLifecycleStore
from invoice_sync.lifecycle.store import InMemoryLifecycleStore, LifecycleStore
from invoice_sync.lifecycle.synchronizer import LifecycleSynchronizer
from invoice_sync.reconciliation.backfill import BackfillRunner
from invoice_sync.reconciliation.chain_reader import ChainReader, JsonRpcChainReader
from invoice_sync.webhooks.handlers import register_webhook_routes
from invoice_sync.webhooks.queue import PartitionedEventQueue
from invoice_sync.webhooks.router import EventRouter

logger = logging.getLogger(__name__)

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(settings: Settings) -> None:
    """Set the root log level once; later calls only adjust the level."""
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(format=_LOG_FORMAT)
    root.setLevel(settings.log_level.upper())


def build_store(settings: Settings) -> LifecycleStore:
    if settings.store_backend == "memory":
        logger.warning("Using in-memory lifecycle store; state is lost on restart")
        return InMemoryLifecycleStore()
    if settings.store_backend == "postgres":
        return PostgresLifecycleStore(settings)
    raise ValueError(f"Unknown store backend: {settings.store_backend}")


async def _poll_loop(runner: BackfillRunner, interval: float) -> None:
    while True:
        try:
            await asyncio.to_thread(runner.poll_once)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Reconciliation poll failed")
        await asyncio.sleep(interval)


def create_app(
    settings: Settings | None = None,
    store: LifecycleStore | None = None,
    chain_reader: ChainReader | None = None,
) -> FastAPI:
    """Wire settings, store, synchronizer, queue, and routes into one app."""
    settings = settings or get_settings()
    configure_logging(settings)

    store = store or build_store(settings)
    synchronizer = LifecycleSynchronizer(store, settings)
    router = EventRouter(synchronizer)
    queue = PartitionedEventQueue(router.route, settings)
    runner: BackfillRunner | None = None
    if settings.polling_enabled:
        runner = BackfillRunner(chain_reader or JsonRpcChainReader(settings), router, settings, store)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await queue.start()
        poll_task = None
        if runner is not None:
            poll_task = asyncio.create_task(_poll_loop(runner, settings.poll_interval_s))
            logger.info("Reconciliation polling every %.0fs", settings.poll_interval_s)
        try:
            yield
        finally:
            if poll_task is not None:
                runner.cancel()
                poll_task.cancel()
                await asyncio.gather(poll_task, return_exceptions=True)
            await queue.stop()

    app = FastAPI(title="Invoice Sync", version=__version__, lifespan=lifespan)
    app.state.settings = settings
    app.state.store = store
    app.state.synchronizer = synchronizer
    app.state.router = router
    app.state.queue = queue
    app.state.backfill = runner

    register_webhook_routes(app, settings=settings, queue=queue)
    return app
