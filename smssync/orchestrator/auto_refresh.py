"""Per-rental auto-refresh loops.

While a user watches a rental, its inbox is polled every
``AUTO_REFRESH_INTERVAL_S`` (15 s) instead of waiting for the next
background sweep.  Each tick is a manual :meth:`SyncEngine.sync_now`, so it
shares the engine's in-flight de-duplication and honours the backoff
window: a refusal with :class:`~smssync.core.exceptions.BackingOff` just
skips the tick.

Only providers whose adapter sets ``supports_continuous_polling`` can be
auto-refreshed.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable, Mapping

from smssync.core.exceptions import BackingOff, InvalidRental, ProviderError, RentalNotFound
from smssync.core.logging_config import SYNC_ID_CTX, new_sync_id
from smssync.core.models import Provider
from smssync.orchestrator.sync import SyncEngine
from smssync.providers.base import BaseProviderAdapter

__all__ = ["AutoRefresh"]

logger = logging.getLogger(__name__)


class AutoRefresh:
    """Starts and stops one polling task per rental.

    Args:
        engine: Engine every tick is delegated to.
        adapters: Built adapters keyed by provider.
        interval_s: Pause between two ticks.  The first tick runs at once.
        sleep: Awaitable sleep; injectable for tests.
    """

    def __init__(
        self,
        engine: SyncEngine,
        adapters: Mapping[Provider, BaseProviderAdapter],
        interval_s: float = 15.0,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if interval_s <= 0:
            raise ValueError(f"interval_s must be positive, got {interval_s}")
        self._engine = engine
        self._adapters = adapters
        self._interval_s = interval_s
        self._sleep = sleep
        self._tasks: dict[str, asyncio.Task[None]] = {}

    def is_enabled(self, rental_id: str) -> bool:
        task = self._tasks.get(rental_id)
        return task is not None and not task.done()

    @property
    def enabled(self) -> list[str]:
        return [rid for rid in self._tasks if self.is_enabled(rid)]

    async def enable(self, rental_id: str) -> None:
        """Start polling *rental_id*.  No-op if it is already polled.

        Raises:
            RentalNotFound: If *rental_id* is unknown.
            InvalidRental: If the rental's provider cannot be polled
                continuously or is not configured.
        """
        if self.is_enabled(rental_id):
            return

        rental = await self._engine.registry.get(rental_id)
        adapter = self._adapters.get(rental.provider)
        if adapter is None:
            raise InvalidRental(rental.provider, "provider is not configured")
        if not adapter.supports_continuous_polling:
            raise InvalidRental(rental.provider, "continuous polling is not supported by this provider")

        self._tasks[rental_id] = asyncio.create_task(self._loop(rental_id), name=f"auto-refresh-{rental_id}")
        logger.info("Auto-refresh enabled for rental %s (every %.0fs).", rental_id, self._interval_s)

    async def disable(self, rental_id: str) -> bool:
        """Stop polling *rental_id*.

        Returns:
            ``True`` if a running loop was stopped.
        """
        task = self._tasks.pop(rental_id, None)
        if task is None or task.done():
            return False
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        logger.info("Auto-refresh disabled for rental %s.", rental_id)
        return True

    async def close(self) -> None:
        """Stop every loop."""
        for rental_id in list(self._tasks):
            await self.disable(rental_id)

    async def _loop(self, rental_id: str) -> None:
        SYNC_ID_CTX.set(new_sync_id("ar"))
        while True:
            try:
                result = await self._engine.sync_now(rental_id)
            except BackingOff as exc:
                logger.debug("Auto-refresh tick for %s skipped: %s", rental_id, exc)
            except (InvalidRental, RentalNotFound) as exc:
                logger.warning("Auto-refresh for rental %s stopped: %s", rental_id, exc)
                return
            except ProviderError as exc:
                logger.debug("Auto-refresh tick for %s failed: %s", rental_id, exc)
            except Exception:
                logger.exception("Auto-refresh tick for %s raised unexpectedly.", rental_id)
            else:
                if result.discarded:
                    logger.info("Rental %s is no longer active; auto-refresh stopped.", rental_id)
                    return
            await self._sleep(self._interval_s)
