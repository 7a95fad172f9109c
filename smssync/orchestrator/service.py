"""User-facing rental operations.

:class:`RentalService` is what the CLI (and any UI) talks to.  It combines
the provider adapters, the Rental Registry, the Message Store and the
:class:`~smssync.orchestrator.sync.SyncEngine` into the handful of
operations a user performs:

=========================  ===================================================
Operation                  Failure surfaced
=========================  ===================================================
``rent``                   :class:`~smssync.core.exceptions.RentalFailed`
``extend``                 :class:`~smssync.core.exceptions.ExtendFailed`
``cancel``                 :class:`~smssync.core.exceptions.CancelFailed`
``sync``                   ``BackingOff`` / ``InvalidRental`` / provider error
``set_auto_refresh``       ``InvalidRental`` if the provider cannot be polled
``set_auto_renew``         ``InvalidRental`` if the provider has no renewal
``export``                 ``PersistenceError``
``ingest_pushed``          ``InvalidRental`` for an unknown number
=========================  ===================================================

rent / extend / cancel wrap the underlying provider or storage error in the
operation error (available as ``exc.cause``), so callers can show a short
message and still log the detail.
"""

from __future__ import annotations

import asyncio
import csv
import io
import logging
from collections.abc import Awaitable, Mapping
from typing import Any, Final, TypeVar

from smssync.core import events
from smssync.core.exceptions import (
    CancelFailed,
    ExtendFailed,
    InvalidRental,
    OperationError,
    ProviderUnavailable,
    RentalFailed,
    SmsSyncError,
)
from smssync.core.models import Catalog, Message, MessageSource, Provider, Rental, RentalStatus
from smssync.orchestrator.auto_refresh import AutoRefresh
from smssync.orchestrator.sync import SyncEngine
from smssync.providers.base import BaseProviderAdapter
from smssync.providers.catalog import load_catalog
from smssync.providers.normalizers import build_message, parse_timestamp
from smssync.storage.cache import messages_key
from smssync.storage.messages import UpsertResult

__all__ = ["RentalService", "EXPORT_COLUMNS"]

logger = logging.getLogger(__name__)

#: Header row of :meth:`RentalService.export`.
EXPORT_COLUMNS: Final[tuple[str, ...]] = ("sender", "body", "received_at", "source")

T = TypeVar("T")


def _digits(phone: str | None) -> str:
    return "".join(ch for ch in str(phone or "") if ch.isdigit())


class RentalService:
    """Facade over the sync engine and its collaborators.

    Args:
        engine: The running :class:`SyncEngine`; its adapters, registry,
            store, fan-out and cache are shared.
        auto_refresh: Auto-refresh controller; built from the engine when
            omitted.
    """

    def __init__(self, engine: SyncEngine, auto_refresh: AutoRefresh | None = None) -> None:
        self._engine = engine
        self._settings = engine.settings
        self._registry = engine.registry
        self._store = engine.store
        self._cache = engine.cache
        self._auto_refresh = auto_refresh or AutoRefresh(
            engine, engine.adapters, self._settings.auto_refresh_interval_s
        )

    @property
    def engine(self) -> SyncEngine:
        return self._engine

    @property
    def auto_refresh(self) -> AutoRefresh:
        return self._auto_refresh

    @property
    def adapters(self) -> Mapping[Provider, BaseProviderAdapter]:
        return self._engine.adapters

    async def close(self) -> None:
        await self._auto_refresh.close()
        await self._engine.drain()

    # ------------------------------------------------------------------
    # Rental lifecycle
    # ------------------------------------------------------------------

    async def rent(
        self,
        provider: Provider | str,
        service: str,
        duration_hours: int,
        country: str | None = None,
        assignee: str | None = None,
    ) -> Rental:
        """Lease a number from *provider* and register it.

        The rental is written to the registry only after the provider
        confirmed it.

        Raises:
            RentalFailed: Wrapping the provider or storage error.
        """
        try:
            provider = Provider(provider)
        except ValueError as exc:
            raise RentalFailed(f"Unknown provider {provider!r}", exc) from exc
        if duration_hours <= 0:
            raise RentalFailed(f"Duration must be positive, got {duration_hours}h")
        adapter = self._adapter_or_fail(provider, RentalFailed)

        try:
            rental = await self._with_timeout(provider, adapter.rent(service, duration_hours, country))
            if assignee:
                rental = rental.model_copy(update={"assignee": assignee})
            rental = await self._registry.create(rental)
        except SmsSyncError as exc:
            logger.warning("Renting %s from %s failed: %s", service, provider, exc)
            raise RentalFailed(f"Could not rent a {service} number from {provider}: {exc}", exc) from exc

        self._cache.invalidate_prefix("rentals:")
        return rental

    async def extend(self, rental_id: str, duration_hours: int) -> Rental:
        """Extend an active rental upstream and persist the new end date.

        Raises:
            ExtendFailed: Wrapping the lookup, provider or storage error.
        """
        if duration_hours <= 0:
            raise ExtendFailed(f"Duration must be positive, got {duration_hours}h")
        try:
            rental = await self._registry.get(rental_id)
            if rental.status != RentalStatus.ACTIVE:
                raise InvalidRental(rental.provider, f"rental {rental_id} is {rental.status}")
            adapter = self._adapter_or_fail(rental.provider, ExtendFailed)
            extended = await self._with_timeout(rental.provider, adapter.extend(rental, duration_hours))
            rental = await self._registry.touch_expiry(rental_id, extended.end_date)
        except SmsSyncError as exc:
            if isinstance(exc, OperationError):
                raise
            logger.warning("Extending rental %s failed: %s", rental_id, exc)
            raise ExtendFailed(f"Could not extend rental {rental_id}: {exc}", exc) from exc

        self._cache.invalidate_prefix("rentals:")
        logger.info(
            "Rental %s extended by %dh; now ends %s.",
            rental_id,
            duration_hours,
            rental.end_date.isoformat(),
            extra={"event": events.RENTAL_EXTENDED},
        )
        return rental

    async def cancel(self, rental_id: str) -> None:
        """Release a rental upstream and mark it canceled.

        Stored messages are kept.  Canceling an already canceled rental is
        a no-op.  A sync in flight for the rental is discarded when it
        finishes.

        Raises:
            CancelFailed: Wrapping the lookup, provider or storage error.
        """
        try:
            rental = await self._registry.get(rental_id)
            if rental.status == RentalStatus.CANCELED:
                return
            if rental.status == RentalStatus.ACTIVE and rental.external_ref is not None:
                adapter = self._adapter_or_fail(rental.provider, CancelFailed)
                await self._with_timeout(rental.provider, adapter.cancel(rental))
            await self._registry.update_status(rental_id, RentalStatus.CANCELED)
        except SmsSyncError as exc:
            if isinstance(exc, OperationError):
                raise
            logger.warning("Canceling rental %s failed: %s", rental_id, exc)
            raise CancelFailed(f"Could not cancel rental {rental_id}: {exc}", exc) from exc

        await self._auto_refresh.disable(rental_id)
        self._engine.states.forget(rental_id)
        self._cache.invalidate_prefix("rentals:")
        logger.info("Rental %s canceled.", rental_id, extra={"event": events.RENTAL_CANCELED})

    # ------------------------------------------------------------------
    # Sync controls
    # ------------------------------------------------------------------

    async def sync(self, rental_id: str) -> int:
        """Sync *rental_id* now and return how many new messages arrived."""
        result = await self._engine.sync_now(rental_id)
        return result.inserted_count

    async def set_auto_refresh(self, rental_id: str, enabled: bool) -> None:
        if enabled:
            await self._auto_refresh.enable(rental_id)
        else:
            await self._auto_refresh.disable(rental_id)

    async def set_auto_renew(self, rental_id: str, enabled: bool) -> Rental:
        """Toggle provider-side auto-renewal and record the flag.

        Raises:
            RentalNotFound: If *rental_id* is unknown.
            InvalidRental: If the provider does not support auto-renewal.
        """
        rental = await self._registry.get(rental_id)
        adapter = self.adapters.get(rental.provider)
        if adapter is None:
            raise InvalidRental(rental.provider, "provider is not configured")
        await self._with_timeout(rental.provider, adapter.set_auto_renew(rental, enabled))
        updated = await self._registry.set_auto_renew(rental_id, enabled)
        self._cache.invalidate_prefix("rentals:")
        logger.info("Auto-renew %s for rental %s.", "enabled" if enabled else "disabled", rental_id)
        return updated

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def list_rentals(self, assignee: str | None = None) -> list[Rental]:
        return await self._registry.list_all(assignee)

    async def messages(self, rental_id: str) -> list[Message]:
        """Return a rental's messages, newest first, through the cache."""
        return await self._cache.get_or_load(
            messages_key(rental_id),
            lambda: self._store.list_by_rental(rental_id),
            self._settings.rental_cache_ttl_s,
        )

    async def catalog(self, provider: Provider | str) -> Catalog:
        """Return *provider*'s catalog, live when possible, else the built-in table.

        Raises:
            InvalidRental: If *provider* is not configured.
        """
        provider = Provider(provider)
        adapter = self.adapters.get(provider)
        if adapter is None:
            raise InvalidRental(provider, "provider is not configured")
        self._cache.switch_provider(provider)
        return await load_catalog(adapter, self._cache, self._settings.catalog_cache_ttl_s)

    async def export(self, rental_id: str) -> str:
        """Return the rental's messages as CSV, oldest first.

        Reads straight from the store; no provider is contacted.
        """
        await self._registry.get(rental_id)
        messages = await self._store.list_by_rental(rental_id)

        buf = io.StringIO()
        writer = csv.writer(buf, lineterminator="\n")
        writer.writerow(EXPORT_COLUMNS)
        for message in reversed(messages):
            writer.writerow(
                (message.sender, message.body, message.received_at.isoformat(), message.source.value)
            )
        return buf.getvalue()

    # ------------------------------------------------------------------
    # Push ingestion
    # ------------------------------------------------------------------

    async def ingest_pushed(self, provider: Provider | str, payload: Mapping[str, Any]) -> UpsertResult:
        """Store a message a provider pushed to us (webhook).

        *payload* carries ``id`` (provider booking id), ``phone``, ``text``,
        ``sender`` and ``date``.  The rental is matched by booking id, then
        by phone number, among the provider's active rentals.

        Raises:
            InvalidRental: If no active rental matches or the text is blank.
        """
        provider = Provider(provider)
        ref = str(payload.get("id") or "").strip()
        phone = _digits(payload.get("phone"))

        candidates = [r for r in await self._registry.list_active() if r.provider == provider]
        rental = next((r for r in candidates if ref and r.external_ref == ref), None)
        if rental is None and phone:
            rental = next((r for r in candidates if _digits(r.phone_number) == phone), None)
        if rental is None:
            raise InvalidRental(provider, f"no active rental for pushed message (id={ref!r})")

        message = build_message(
            rental,
            sender=payload.get("sender"),
            body=payload.get("text"),
            received_at=parse_timestamp(payload.get("date")),
            source=MessageSource.API,
        )
        if message is None:
            raise InvalidRental(provider, "pushed message has no text")

        result = await self._store.upsert(message)
        if result.inserted:
            self._cache.invalidate(messages_key(rental.id))
            await self._engine.fanout.publish(rental.id, result.message)
        return result

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _adapter_or_fail(self, provider: Provider, error: type[OperationError]) -> BaseProviderAdapter:
        adapter = self.adapters.get(provider)
        if adapter is None:
            raise error(f"Provider {provider} is not configured")
        return adapter

    async def _with_timeout(self, provider: Provider, call: Awaitable[T]) -> T:
        timeout = self._settings.adapter_timeout_s
        try:
            async with asyncio.timeout(timeout):
                return await call
        except TimeoutError as exc:
            raise ProviderUnavailable(provider, f"no answer within {timeout:.0f}s") from exc
