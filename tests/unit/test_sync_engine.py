"""Unit tests for the sync engine.

Tests cover:
- Due-rental selection (status, external ref, interval, backoff, in-flight).
- Sweep batching, stagger and the raised stagger after an all-unavailable
  batch.
- Store-then-publish ordering and cache invalidation.
- Discarding results of rentals canceled mid-sync.
- Manual sync: in-flight join surviving a canceled starter, ``BackingOff``
  and ``InvalidRental``.
- Draining in-flight syncs on shutdown.
- Adapter timeouts and unconfigured providers opening a backoff window.
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from smssync.core.exceptions import (
    BackingOff,
    InvalidRental,
    ParseError,
    ProviderUnavailable,
    RentalNotFound,
)
from smssync.core.models import Message, Provider, RentalStatus
from smssync.notifiers.fanout import FanoutChannel
from smssync.orchestrator.backoff import SyncPhase, SyncStateRegistry
from smssync.orchestrator.sync import SweepStats, SyncEngine, SyncResult
from smssync.storage.cache import ReadThroughCache, messages_key, rentals_key


async def _create(registry, make_rental, **overrides):
    return await registry.create(make_rental(**overrides))


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


class TestResults:
    def test_sync_result_flags(self) -> None:
        assert SyncResult("r1").ok
        assert not SyncResult("r1", discarded=True).ok
        assert not SyncResult("r1", error="boom").ok

    def test_sweep_report(self) -> None:
        stats = SweepStats(sync_id="sw-1", active=3, due=2, results=[SyncResult("a"), SyncResult("b", error="x")])
        report = stats.format_report()
        assert "sw-1" in report
        assert "synced=1" in report
        assert "failed=1" in report


# ---------------------------------------------------------------------------
# Selection
# ---------------------------------------------------------------------------


class TestSelectDue:
    def test_filters_non_targets(self, engine: SyncEngine, make_rental) -> None:
        ok = make_rental()
        no_ref = make_rental(external_ref=None)
        canceled = make_rental(status=RentalStatus.CANCELED)
        assert engine.select_due([ok, no_ref, canceled]) == [ok]

    def test_respects_backoff_and_interval(self, engine: SyncEngine, make_rental, clock) -> None:
        backing_off = make_rental()
        recent = make_rental()
        engine.states.record_failure(backing_off.id, ProviderUnavailable("smspva", "down"))
        engine.states.mark_started(recent.id)
        engine.states.record_success(recent.id)
        assert engine.select_due([backing_off, recent]) == []
        clock.advance(60)
        assert engine.select_due([backing_off, recent]) == [backing_off, recent]


# ---------------------------------------------------------------------------
# Sweep
# ---------------------------------------------------------------------------


class TestSweep:
    async def test_stores_and_publishes_new_messages(self, engine: SyncEngine, adapter, registry, store, make_rental) -> None:
        rental = await _create(registry, make_rental)
        adapter.inbox = [("WhatsApp", "Code: 1111"), ("Telegram", "Code: 2222")]
        published: list[Message] = []
        engine.fanout.subscribe(rental.id, published.append)

        stats = await engine.sweep()

        assert stats.active == 1
        assert stats.due == 1
        assert stats.synced == 1
        assert stats.new_messages == 2
        assert [m.body for m in published] == ["Code: 1111", "Code: 2222"]
        assert all(m.id is not None for m in published)
        assert await store.count_by_rental(rental.id) == 2
        assert stats.sync_id.startswith("sw-")

    async def test_second_sweep_skips_recent(self, engine: SyncEngine, adapter, registry, make_rental, clock) -> None:
        await _create(registry, make_rental)
        await engine.sweep()
        stats = await engine.sweep()
        assert stats.due == 0
        assert adapter.fetch_calls == 1

        clock.advance(30)
        stats = await engine.sweep()
        assert stats.due == 1
        assert stats.new_messages == 0

    async def test_batches_with_stagger(self, adapter, registry, store, settings, make_rental, clock) -> None:
        slept: list[float] = []

        async def fake_sleep(seconds: float) -> None:
            slept.append(seconds)

        tuned = settings.model_copy(update={"sync_batch_size": 2, "sync_stagger_s": 1.0})
        engine = SyncEngine(
            {adapter.provider: adapter},
            registry,
            store,
            fanout=FanoutChannel(),
            cache=ReadThroughCache(clock),
            settings=tuned,
            states=SyncStateRegistry(clock=clock),
            sleep=fake_sleep,
        )
        for _ in range(5):
            await _create(registry, make_rental)

        stats = await engine.sweep()
        assert stats.batches == 3
        assert slept == [1.0, 1.0]
        assert adapter.max_concurrent <= 2

    async def test_all_unavailable_batch_doubles_stagger(self, adapter, registry, store, settings, make_rental, clock) -> None:
        slept: list[float] = []

        async def fake_sleep(seconds: float) -> None:
            slept.append(seconds)

        tuned = settings.model_copy(update={"sync_batch_size": 1, "sync_stagger_s": 1.0})
        engine = SyncEngine(
            {adapter.provider: adapter},
            registry,
            store,
            cache=ReadThroughCache(clock),
            fanout=FanoutChannel(),
            settings=tuned,
            states=SyncStateRegistry(clock=clock),
            sleep=fake_sleep,
        )
        for _ in range(3):
            await _create(registry, make_rental)
        adapter.errors = [ProviderUnavailable("smspva", "down"), ParseError("smspva", "bad")]

        stats = await engine.sweep()
        assert slept == [2.0, 1.0]
        assert stats.failed == 2
        assert stats.synced == 1

    async def test_failures_do_not_escape(self, engine: SyncEngine, adapter, registry, make_rental) -> None:
        rental = await _create(registry, make_rental)
        adapter.errors = [ProviderUnavailable("smspva", "Connection refused")]
        stats = await engine.sweep()
        assert stats.failed == 1
        assert "Connection refused" in stats.results[0].error
        assert engine.states.remaining_backoff(rental.id) == 60.0

    async def test_invalid_rental_parked(self, engine: SyncEngine, adapter, registry, make_rental, clock) -> None:
        rental = await _create(registry, make_rental)
        adapter.errors = [InvalidRental("smspva", "Rent expired")]
        await engine.sweep()
        assert engine.states.get(rental.id).phase == SyncPhase.INVALID

        clock.advance(10_000)
        stats = await engine.sweep()
        assert stats.due == 0
        assert adapter.fetch_calls == 1

    async def test_expires_overdue_rentals(self, engine: SyncEngine, adapter, registry, make_rental) -> None:
        now = datetime.now(UTC)
        overdue = await _create(registry, make_rental, created_at=now - timedelta(days=8), end_date=now - timedelta(minutes=1))
        stats = await engine.sweep()
        assert stats.expired == 1
        assert stats.active == 0
        assert (await registry.get(overdue.id)).status == RentalStatus.EXPIRED
        assert adapter.fetch_calls == 0

    async def test_active_list_is_cached(self, engine: SyncEngine, registry, make_rental, clock) -> None:
        await _create(registry, make_rental)
        await engine.sweep()
        assert engine.cache.get(rentals_key()).fresh

        await _create(registry, make_rental)
        clock.advance(30)
        assert (await engine.sweep()).active == 1

        engine.cache.invalidate_prefix("rentals:")
        assert (await engine.sweep()).active == 2

    async def test_missing_adapter_backs_off(self, engine: SyncEngine, registry, make_rental) -> None:
        rental = await _create(registry, make_rental, provider=Provider.ANOSIM)
        stats = await engine.sweep()
        assert "not configured" in stats.results[0].error
        assert engine.states.remaining_backoff(rental.id) > 0


# ---------------------------------------------------------------------------
# Per-rental flow
# ---------------------------------------------------------------------------


class TestSyncFlow:
    async def test_canceled_mid_sync_discards(self, engine: SyncEngine, adapter, registry, store, make_rental) -> None:
        rental = await _create(registry, make_rental)
        adapter.inbox = [("WA", "Code: 4444")]
        adapter.gate = asyncio.Event()
        published: list[Message] = []
        engine.fanout.subscribe(rental.id, published.append)

        task = asyncio.create_task(engine.sync_now(rental.id))
        await asyncio.sleep(0.05)
        assert engine.is_syncing(rental.id)
        await registry.update_status(rental.id, RentalStatus.CANCELED)
        adapter.gate.set()
        result = await task

        assert result.discarded
        assert result.fetched == 1
        assert await store.count_by_rental(rental.id) == 0
        assert published == []
        assert engine.states.get(rental.id).phase == SyncPhase.IDLE
        assert not engine.is_syncing(rental.id)

    async def test_manual_sync_joins_in_flight(self, engine: SyncEngine, adapter, registry, make_rental) -> None:
        rental = await _create(registry, make_rental)
        adapter.inbox = [("WA", "Code: 5555")]
        adapter.gate = asyncio.Event()

        first = asyncio.create_task(engine.sync_now(rental.id))
        await asyncio.sleep(0.05)
        second = asyncio.create_task(engine.sync_now(rental.id))
        await asyncio.sleep(0.05)
        adapter.gate.set()
        a, b = await asyncio.gather(first, second)

        assert adapter.fetch_calls == 1
        assert adapter.max_concurrent == 1
        assert a is b
        assert a.inserted_count == 1

    async def test_canceled_starter_leaves_sync_running_for_joiner(
        self, engine: SyncEngine, adapter, registry, store, make_rental
    ) -> None:
        rental = await _create(registry, make_rental)
        adapter.inbox = [("WA", "Code: 6666")]
        adapter.gate = asyncio.Event()

        starter = asyncio.create_task(engine.sync_now(rental.id))
        await asyncio.sleep(0.05)
        joiner = asyncio.create_task(engine.sync_now(rental.id))
        await asyncio.sleep(0.05)

        starter.cancel()
        with pytest.raises(asyncio.CancelledError):
            await starter
        assert engine.is_syncing(rental.id)

        adapter.gate.set()
        result = await joiner
        assert result.inserted_count == 1
        assert await store.count_by_rental(rental.id) == 1
        assert engine.states.get(rental.id).failures == 0

    async def test_drain_waits_for_in_flight(self, engine: SyncEngine, adapter, registry, make_rental) -> None:
        rental = await _create(registry, make_rental)
        adapter.gate = asyncio.Event()
        manual = asyncio.create_task(engine.sync_now(rental.id))
        await asyncio.sleep(0.05)

        draining = asyncio.create_task(engine.drain())
        await asyncio.sleep(0.05)
        assert not draining.done()

        adapter.gate.set()
        await draining
        assert not engine.is_syncing(rental.id)
        assert (await manual).ok

    async def test_sweep_skips_rental_in_flight(self, engine: SyncEngine, adapter, registry, make_rental) -> None:
        rental = await _create(registry, make_rental)
        adapter.gate = asyncio.Event()
        manual = asyncio.create_task(engine.sync_now(rental.id))
        await asyncio.sleep(0.05)

        stats = await engine.sweep()
        assert stats.due == 0
        adapter.gate.set()
        await manual
        assert adapter.fetch_calls == 1

    async def test_backing_off_refused(self, engine: SyncEngine, adapter, registry, make_rental, clock) -> None:
        rental = await _create(registry, make_rental)
        adapter.errors = [ProviderUnavailable("smspva", "down")]
        with pytest.raises(ProviderUnavailable):
            await engine.sync_now(rental.id)

        with pytest.raises(BackingOff) as exc_info:
            await engine.sync_now(rental.id)
        assert exc_info.value.remaining_s == 60.0

        clock.advance(60)
        result = await engine.sync_now(rental.id)
        assert result.ok

    async def test_manual_sync_ignores_min_interval(self, engine: SyncEngine, adapter, registry, make_rental) -> None:
        rental = await _create(registry, make_rental)
        await engine.sync_now(rental.id)
        await engine.sync_now(rental.id)
        assert adapter.fetch_calls == 2

    async def test_manual_sync_rejects_inactive(self, engine: SyncEngine, registry, make_rental) -> None:
        canceled = await _create(registry, make_rental, status=RentalStatus.CANCELED)
        unconfirmed = await _create(registry, make_rental, external_ref=None)
        with pytest.raises(InvalidRental, match="canceled"):
            await engine.sync_now(canceled.id)
        with pytest.raises(InvalidRental, match="no external reference"):
            await engine.sync_now(unconfirmed.id)
        with pytest.raises(RentalNotFound):
            await engine.sync_now("missing")

    async def test_manual_sync_rejects_parked(self, engine: SyncEngine, adapter, registry, make_rental) -> None:
        rental = await _create(registry, make_rental)
        adapter.errors = [InvalidRental("smspva", "Rent expired")]
        with pytest.raises(InvalidRental):
            await engine.sync_now(rental.id)
        with pytest.raises(InvalidRental, match="was rejected"):
            await engine.sync_now(rental.id)
        assert adapter.fetch_calls == 1

    async def test_adapter_timeout_is_unavailable(self, engine: SyncEngine, adapter, registry, make_rental) -> None:
        engine._settings = engine.settings.model_copy(update={"adapter_timeout_s": 0.05})
        rental = await _create(registry, make_rental)
        adapter.gate = asyncio.Event()
        with pytest.raises(ProviderUnavailable, match="timed out"):
            await engine.sync_now(rental.id)
        assert engine.states.get(rental.id).failures == 1

    async def test_messages_cache_invalidated_on_insert(self, engine: SyncEngine, adapter, registry, make_rental) -> None:
        rental = await _create(registry, make_rental)
        engine.cache.put(messages_key(rental.id), [], 300)
        await engine.sync_now(rental.id)
        assert engine.cache.get(messages_key(rental.id)).hit

        adapter.inbox = [("WA", "Code: 7777")]
        await engine.sync_now(rental.id)
        assert not engine.cache.get(messages_key(rental.id)).hit
