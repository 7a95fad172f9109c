"""Sync engine: fetch → dedup-store → fan-out for every active rental.

:class:`SyncEngine` is the only component that calls
:meth:`~smssync.providers.base.BaseProviderAdapter.fetch_messages`.  It runs
in two modes that share one in-flight map, so a rental is never fetched
twice at the same time:

* **Sweep** (:meth:`SyncEngine.sweep`): background pass over every active
  rental.  Rentals that were attempted less than ``MIN_SYNC_INTERVAL_S``
  ago, that are inside a backoff window, or that are already syncing are
  skipped.  The remaining ones run in batches of ``SYNC_BATCH_SIZE`` via
  ``asyncio.gather(..., return_exceptions=True)`` with a short pause
  between batches.
* **Manual** (:meth:`SyncEngine.sync_now`): one rental, immediately, no
  minimum interval.  A rental inside its backoff window is refused with
  :class:`~smssync.core.exceptions.BackingOff`.  A manual trigger that
  arrives while the rental is already syncing awaits the running task and
  returns its result.

Per-rental flow
---------------
1. ``fetch_messages`` under ``asyncio.timeout(ADAPTER_TIMEOUT_S)``.
2. Re-read the rental.  If it was canceled or expired meanwhile, the fetched
   messages are discarded (not stored, not published).
3. :meth:`~smssync.storage.messages.MessageStore.upsert_many` in adapter
   order.
4. Publish each newly inserted row on the
   :class:`~smssync.notifiers.fanout.FanoutChannel`, in the same order.
5. Invalidate the rental's cached message list.

Failures never escape a sweep: transient ones open a backoff window,
:class:`~smssync.core.exceptions.InvalidRental` parks the rental for good.

Typical usage::

    engine = SyncEngine(adapters, registry, store, fanout=fanout, cache=cache, settings=settings)
    stats = await engine.sweep()
    result = await engine.sync_now(rental.id)
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field

from smssync.core import events
from smssync.core.exceptions import BackingOff, InvalidRental, ProviderError, ProviderUnavailable, RentalNotFound
from smssync.core.logging_config import SYNC_ID_CTX, new_sync_id
from smssync.core.models import Message, Provider, Rental
from smssync.core.settings import Settings
from smssync.notifiers.fanout import FanoutChannel
from smssync.orchestrator.backoff import SyncStateRegistry
from smssync.providers.base import BaseProviderAdapter
from smssync.storage.cache import ReadThroughCache, messages_key, rentals_key
from smssync.storage.messages import MessageStore
from smssync.storage.rentals import RentalRegistry

__all__ = ["SyncEngine", "SyncResult", "SweepStats"]

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Result data classes
# ---------------------------------------------------------------------------


@dataclass
class SyncResult:
    """Outcome of one rental's sync.

    Attributes:
        rental_id: The rental that was synced.
        fetched: Messages returned by the adapter.
        inserted: Newly stored messages, in adapter order.
        discarded: ``True`` if the rental left the active set mid-flight and
            the fetched messages were dropped.
        error: ``str()`` of the failure, when the sync failed.
    """

    rental_id: str
    fetched: int = 0
    inserted: list[Message] = field(default_factory=list)
    discarded: bool = False
    error: str | None = None

    @property
    def inserted_count(self) -> int:
        return len(self.inserted)

    @property
    def ok(self) -> bool:
        return self.error is None and not self.discarded


@dataclass
class SweepStats:
    """Counters for one background sweep.

    Attributes:
        sync_id: Correlation id stamped on every log record of the sweep.
        active: Active rentals considered.
        expired: Rentals marked expired at the start of the sweep.
        due: Rentals selected for syncing.
        batches: Batches dispatched.
        results: One :class:`SyncResult` per due rental.
        duration_s: Wall-clock duration of the sweep.
    """

    sync_id: str = "-"
    active: int = 0
    expired: int = 0
    due: int = 0
    batches: int = 0
    results: list[SyncResult] = field(default_factory=list)
    duration_s: float = 0.0

    @property
    def synced(self) -> int:
        return sum(1 for r in self.results if r.ok)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if r.error is not None)

    @property
    def discarded(self) -> int:
        return sum(1 for r in self.results if r.discarded)

    @property
    def new_messages(self) -> int:
        return sum(r.inserted_count for r in self.results)

    def format_report(self) -> str:
        """One-line summary used for the ``SWEEP_COMPLETE`` log record."""
        return (
            f"Sweep {self.sync_id} finished in {self.duration_s:.1f}s: "
            f"active={self.active} expired={self.expired} due={self.due} "
            f"synced={self.synced} failed={self.failed} discarded={self.discarded} "
            f"new_messages={self.new_messages}"
        )


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class SyncEngine:
    """Schedules and runs message syncs for all rentals.

    Args:
        adapters: Built adapters keyed by provider.
        registry: Rental registry (source of the active set).
        store: Message store.
        fanout: Live channel new messages are published to.
        cache: Read-through cache for the active-rental list and per-rental
            message lists.
        settings: Engine tuning (batch size, stagger, intervals, timeouts).
        states: Per-rental sync state; built from *settings* when omitted.
        sleep: Awaitable sleep used for the batch stagger; injectable for
            tests.
    """

    def __init__(
        self,
        adapters: Mapping[Provider, BaseProviderAdapter],
        registry: RentalRegistry,
        store: MessageStore,
        *,
        fanout: FanoutChannel | None = None,
        cache: ReadThroughCache | None = None,
        settings: Settings | None = None,
        states: SyncStateRegistry | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._adapters = dict(adapters)
        self._registry = registry
        self._store = store
        self._fanout = fanout if fanout is not None else FanoutChannel()
        self._cache = cache if cache is not None else ReadThroughCache()
        self._settings = settings if settings is not None else Settings()
        self._states = states if states is not None else SyncStateRegistry(
            self._settings.backoff_base_s, self._settings.backoff_cap_s
        )
        self._sleep = sleep
        self._inflight: dict[str, asyncio.Task[SyncResult]] = {}

    # ------------------------------------------------------------------
    # Collaborators
    # ------------------------------------------------------------------

    @property
    def adapters(self) -> Mapping[Provider, BaseProviderAdapter]:
        return self._adapters

    @property
    def registry(self) -> RentalRegistry:
        return self._registry

    @property
    def store(self) -> MessageStore:
        return self._store

    @property
    def fanout(self) -> FanoutChannel:
        return self._fanout

    @property
    def cache(self) -> ReadThroughCache:
        return self._cache

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def states(self) -> SyncStateRegistry:
        return self._states

    def is_syncing(self, rental_id: str) -> bool:
        return rental_id in self._inflight

    async def drain(self) -> None:
        """Wait for every in-flight sync to finish.

        Shared sync tasks outlive the caller that started them, so shutdown
        waits here before the adapters and the database are closed.
        """
        pending = list(self._inflight.values())
        if pending:
            logger.debug("Waiting for %d in-flight sync(s).", len(pending))
            await asyncio.gather(*pending, return_exceptions=True)

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    def select_due(self, rentals: Sequence[Rental]) -> list[Rental]:
        """Return the rentals a sweep should sync now, keeping input order."""
        interval = self._settings.min_sync_interval_s
        return [
            r
            for r in rentals
            if r.is_sync_target
            and r.id not in self._inflight
            and self._states.is_due(r.id, interval)
        ]

    # ------------------------------------------------------------------
    # Background sweep
    # ------------------------------------------------------------------

    async def sweep(self) -> SweepStats:
        """Run one background pass over every active rental.

        Returns:
            :class:`SweepStats` for the pass.  Per-rental failures are
            recorded in the stats, never raised.

        Raises:
            StorageError: If the registry itself could not be read.
        """
        sync_id = new_sync_id("sw")
        token = SYNC_ID_CTX.set(sync_id)
        t0 = time.monotonic()
        stats = SweepStats(sync_id=sync_id)
        try:
            expired = await self._registry.expire_overdue()
            if expired:
                self._cache.invalidate_prefix("rentals:")
                for rental_id in expired:
                    self._states.forget(rental_id)
            stats.expired = len(expired)

            active = await self._cache.get_or_load(
                rentals_key(), self._registry.list_active, self._settings.rental_cache_ttl_s
            )
            due = self.select_due(active)
            stats.active = len(active)
            stats.due = len(due)
            logger.info(
                "Sweep started: %d active, %d due.",
                stats.active,
                stats.due,
                extra={"event": events.SWEEP_START},
            )

            size = self._settings.sync_batch_size
            stagger = self._settings.sync_stagger_s
            for start in range(0, len(due), size):
                if start:
                    await self._sleep(stagger)
                batch = due[start : start + size]
                stats.batches += 1
                outcomes = await asyncio.gather(
                    *(self._run_tracked(rental) for rental in batch),
                    return_exceptions=True,
                )
                all_unavailable = True
                for rental, outcome in zip(batch, outcomes):
                    if isinstance(outcome, BaseException):
                        stats.results.append(SyncResult(rental_id=rental.id, error=str(outcome)))
                        if not isinstance(outcome, ProviderUnavailable):
                            all_unavailable = False
                    else:
                        stats.results.append(outcome)
                        all_unavailable = False
                stagger = self._settings.sync_stagger_s * (2 if all_unavailable else 1)
                if all_unavailable:
                    logger.info("Every sync in the batch was unavailable; stagger raised to %.1fs.", stagger)
        finally:
            stats.duration_s = time.monotonic() - t0
            SYNC_ID_CTX.reset(token)

        logger.info("%s", stats.format_report(), extra={"event": events.SWEEP_COMPLETE})
        return stats

    # ------------------------------------------------------------------
    # Manual sync
    # ------------------------------------------------------------------

    async def sync_now(self, rental_id: str) -> SyncResult:
        """Sync one rental immediately.

        Raises:
            RentalNotFound: If *rental_id* is unknown.
            InvalidRental: If the rental has no external reference, is no
                longer active, or was parked as invalid.
            BackingOff: If the rental is inside its backoff window.
            ProviderError: If the fetch itself failed.
            PersistenceError: If the messages could not be stored.
        """
        running = self._inflight.get(rental_id)
        if running is not None:
            return await self._join(rental_id, running)

        rental = await self._registry.get(rental_id)
        if rental.external_ref is None:
            raise InvalidRental(rental.provider, f"rental {rental_id} has no external reference")
        if not rental.is_sync_target:
            raise InvalidRental(rental.provider, f"rental {rental_id} is {rental.status}")
        state = self._states.get(rental_id)
        if state.invalid:
            raise InvalidRental(rental.provider, f"rental {rental_id} was rejected: {state.last_error}")

        remaining = self._states.remaining_backoff(rental_id)
        if remaining > 0:
            logger.info(
                "Manual sync of %s refused; backing off for %.0fs.",
                rental_id,
                remaining,
                extra={"event": events.SYNC_BACKOFF},
            )
            raise BackingOff(rental_id, remaining)

        token = SYNC_ID_CTX.set(new_sync_id("man"))
        try:
            return await self._run_tracked(rental)
        finally:
            SYNC_ID_CTX.reset(token)

    async def _join(self, rental_id: str, task: asyncio.Task[SyncResult]) -> SyncResult:
        logger.debug(
            "Sync of %s already in flight; joining it.",
            rental_id,
            extra={"event": events.SYNC_JOINED},
        )
        return await asyncio.shield(task)

    # ------------------------------------------------------------------
    # Single-rental execution
    # ------------------------------------------------------------------

    async def _run_tracked(self, rental: Rental) -> SyncResult:
        """Run :meth:`_sync_one` as a task registered in the in-flight map.

        Joins the running task instead when the rental is already syncing.
        """
        running = self._inflight.get(rental.id)
        if running is not None:
            return await self._join(rental.id, running)

        task = asyncio.create_task(self._sync_one(rental), name=f"sync-{rental.id}")
        self._inflight[rental.id] = task
        task.add_done_callback(lambda t: self._release(rental.id, t))
        # Canceling the caller that started the sync must not abort it for
        # the joiners; the result is discarded later if the rental is gone.
        return await asyncio.shield(task)

    def _release(self, rental_id: str, task: asyncio.Task[SyncResult]) -> None:
        if self._inflight.get(rental_id) is task:
            del self._inflight[rental_id]

    async def _sync_one(self, rental: Rental) -> SyncResult:
        adapter = self._adapters.get(rental.provider)
        states = self._states
        states.mark_started(rental.id)
        logger.debug("Syncing rental %s (%s).", rental.id, rental.provider, extra={"event": events.SYNC_START})

        try:
            if adapter is None:
                raise ProviderUnavailable(rental.provider, "provider is not configured")
            timeout = adapter.fetch_timeout or self._settings.adapter_timeout_s
            try:
                async with asyncio.timeout(timeout):
                    fetched = await adapter.fetch_messages(rental)
            except TimeoutError as exc:
                raise ProviderUnavailable(rental.provider, f"fetch timed out after {timeout:.0f}s") from exc

            if not await self._still_active(rental.id):
                logger.info(
                    "Rental %s left the active set mid-sync; %d fetched message(s) dropped.",
                    rental.id,
                    len(fetched),
                    extra={"event": events.SYNC_DISCARDED},
                )
                return SyncResult(rental_id=rental.id, fetched=len(fetched), discarded=True)

            results = await self._store.upsert_many(fetched)
            inserted = [r.message for r in results if r.inserted]
            for message in inserted:
                await self._fanout.publish(rental.id, message)
            if inserted:
                self._cache.invalidate(messages_key(rental.id))
        except InvalidRental as exc:
            states.mark_invalid(rental.id, exc)
            logger.warning(
                "Rental %s rejected by %s; it will not be synced again: %s",
                rental.id,
                rental.provider,
                exc.detail,
                extra={"event": events.SYNC_INVALID},
            )
            raise
        except Exception as exc:
            delay = states.record_failure(rental.id, exc)
            logger.warning(
                "Sync of rental %s failed (%d in a row); next attempt in %.0fs: %s",
                rental.id,
                states.get(rental.id).failures,
                delay,
                exc.detail if isinstance(exc, ProviderError) else exc,
                extra={"event": events.SYNC_FAILED},
            )
            raise
        finally:
            states.mark_idle(rental.id)

        states.record_success(rental.id)
        logger.info(
            "Rental %s synced: %d fetched, %d new.",
            rental.id,
            len(fetched),
            len(inserted),
            extra={"event": events.SYNC_OK},
        )
        return SyncResult(rental_id=rental.id, fetched=len(fetched), inserted=inserted)

    async def _still_active(self, rental_id: str) -> bool:
        try:
            current = await self._registry.get(rental_id)
        except RentalNotFound:
            return False
        return current.is_sync_target
