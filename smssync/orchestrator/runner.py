"""Component wiring: build a ready :class:`RentalService` from settings.

:func:`open_service` is the one place where the database connection, the
provider adapters, the cache, the fan-out channel, the sync engine and the
auto-refresh controller are created.  Everything is torn down in reverse
order on exit, including on exceptions, via
:class:`contextlib.AsyncExitStack`.

Typical usage::

    async with open_service(settings) as service:
        rental = await service.rent("smspva", "wa", 168, "DE")
        await service.engine.sweep()
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import AsyncExitStack, asynccontextmanager

from smssync.core.settings import Settings
from smssync.notifiers.fanout import FanoutChannel
from smssync.orchestrator.auto_refresh import AutoRefresh
from smssync.orchestrator.backoff import SyncStateRegistry
from smssync.orchestrator.service import RentalService
from smssync.orchestrator.sync import SweepStats, SyncEngine
from smssync.providers.registry import build_adapters, close_adapters
from smssync.storage.cache import ReadThroughCache
from smssync.storage.database import open_db
from smssync.storage.messages import MessageStore
from smssync.storage.rentals import RentalRegistry

__all__ = ["open_service", "run_sweep_once"]

logger = logging.getLogger(__name__)


@asynccontextmanager
async def open_service(
    settings: Settings | None = None,
    *,
    fanout: FanoutChannel | None = None,
) -> AsyncIterator[RentalService]:
    """Assemble every runtime component and yield the service.

    Args:
        settings: Loaded settings; read from the environment when ``None``.
        fanout: Channel to publish new messages on; a private one is built
            when omitted.

    Yields:
        A :class:`RentalService` whose engine is ready to sweep.
    """
    if settings is None:
        settings = Settings()

    async with AsyncExitStack() as stack:
        conn = await open_db(settings.database_path_resolved)
        stack.push_async_callback(conn.close)

        adapters = build_adapters(settings)
        stack.push_async_callback(close_adapters, list(adapters.values()))
        if len(adapters) == 1:
            logger.warning("No API provider is configured; only the scraping source is available.")

        engine = SyncEngine(
            adapters,
            RentalRegistry(conn),
            MessageStore(conn),
            fanout=fanout or FanoutChannel(),
            cache=ReadThroughCache(),
            settings=settings,
            states=SyncStateRegistry(settings.backoff_base_s, settings.backoff_cap_s),
        )
        auto_refresh = AutoRefresh(engine, adapters, settings.auto_refresh_interval_s)
        service = RentalService(engine, auto_refresh)
        stack.push_async_callback(service.close)

        logger.debug("Service ready with providers: %s", ", ".join(adapters))
        yield service


async def run_sweep_once(settings: Settings | None = None) -> SweepStats:
    """Open the service, run one sweep, and tear everything down."""
    async with open_service(settings) as service:
        return await service.engine.sweep()
