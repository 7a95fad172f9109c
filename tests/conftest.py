"""Shared pytest fixtures and configuration for the SMS Sync test suite.

This file is loaded automatically by pytest before any test module.
It provides project-wide fixtures used across unit and integration tests.
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import AsyncIterator, Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import aiosqlite
import pytest
from pydantic_settings import SettingsConfigDict

from smssync.core import configure_logging
from smssync.core.models import Catalog, CatalogEntry, Message, MessageSource, Provider, Rental
from smssync.core.settings import Settings
from smssync.notifiers.fanout import FanoutChannel
from smssync.orchestrator.backoff import SyncStateRegistry
from smssync.orchestrator.sync import SyncEngine
from smssync.providers.base import BaseProviderAdapter
from smssync.providers.normalizers import build_message
from smssync.storage.cache import ReadThroughCache
from smssync.storage.database import open_db
from smssync.storage.messages import MessageStore
from smssync.storage.rentals import RentalRegistry

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _configure_test_logging() -> None:
    """Force DEBUG logging in text format for every test."""
    configure_logging(level="DEBUG", fmt="text", force=True)


# ---------------------------------------------------------------------------
# Environment
# ---------------------------------------------------------------------------


@pytest.fixture()
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Remove every setting-related env var and disable ``.env`` loading.

    Keeps real credentials from a developer shell or a local ``.env`` out of
    :class:`Settings` isolation tests.
    """
    names = {name.upper() for name in Settings.model_fields}
    for key in list(os.environ):
        if key in names or key.startswith("SMSSYNC_"):
            monkeypatch.delenv(key, raising=False)

    monkeypatch.setattr(
        Settings,
        "model_config",
        SettingsConfigDict(env_file=None, env_file_encoding="utf-8", extra="ignore"),
    )


@pytest.fixture()
def settings(clean_env: None) -> Settings:
    """Settings with small, deterministic engine numbers."""
    return Settings(
        sync_batch_size=2,
        sync_stagger_s=0.0,
        min_sync_interval_s=30.0,
        backoff_base_s=60.0,
        backoff_cap_s=900.0,
        adapter_timeout_s=2.0,
    )


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------


@pytest.fixture()
async def conn() -> AsyncIterator[aiosqlite.Connection]:
    """In-memory database with the full schema."""
    connection = await open_db(":memory:")
    try:
        yield connection
    finally:
        await connection.close()


@pytest.fixture()
def registry(conn: aiosqlite.Connection) -> RentalRegistry:
    return RentalRegistry(conn)


@pytest.fixture()
def store(conn: aiosqlite.Connection) -> MessageStore:
    return MessageStore(conn)


@pytest.fixture()
def make_rental() -> Callable[..., Rental]:
    """Factory for active rentals ending a week from now."""

    def _make(**overrides: Any) -> Rental:
        now = datetime.now(UTC)
        fields: dict[str, Any] = {
            "phone_number": "+4915112345678",
            "provider": Provider.SMSPVA,
            "external_ref": "887766",
            "created_at": now,
            "end_date": now + timedelta(days=7),
        }
        fields.update(overrides)
        return Rental(**fields)

    return _make


# ---------------------------------------------------------------------------
# Scripted adapter
# ---------------------------------------------------------------------------


class ScriptedAdapter(BaseProviderAdapter):
    """In-memory adapter whose inbox and failures are set by the test.

    Attributes:
        inbox: ``(sender, body)`` pairs returned by every fetch, in order.
        errors: Exceptions raised by the next calls, one per call.
        gate: When set, fetches block until the event is set.
        fetch_calls: Number of ``fetch_messages`` calls.
        max_concurrent: Highest number of fetches seen running at once.
    """

    def __init__(
        self,
        provider: Provider = Provider.SMSPVA,
        *,
        continuous: bool = True,
        source: MessageSource = MessageSource.API,
    ) -> None:
        self.provider = provider
        self.supports_continuous_polling = continuous
        self.source = source
        self.inbox: list[tuple[str, str]] = []
        self.errors: list[BaseException] = []
        self.gate: asyncio.Event | None = None
        self.fetch_calls = 0
        self.max_concurrent = 0
        self._running = 0
        self.canceled: list[str] = []
        self.catalog_error: BaseException | None = None
        self.closed = False
        self._refs = 0

    def _maybe_raise(self) -> None:
        if self.errors:
            raise self.errors.pop(0)

    async def rent(self, service: str, duration_hours: int, country: str | None = None) -> Rental:
        self._maybe_raise()
        self._refs += 1
        now = datetime.now(UTC)
        return Rental(
            phone_number=f"+4915100000{self._refs:03d}",
            provider=self.provider,
            external_ref=f"ref-{self._refs}",
            created_at=now,
            end_date=now + timedelta(hours=duration_hours),
            service=service,
            country=country,
        )

    async def extend(self, rental: Rental, duration_hours: int) -> Rental:
        self._maybe_raise()
        return rental.model_copy(update={"end_date": rental.end_date + timedelta(hours=duration_hours)})

    async def cancel(self, rental: Rental) -> None:
        self._maybe_raise()
        self.canceled.append(rental.id)

    async def set_auto_renew(self, rental: Rental, enabled: bool) -> Rental:
        self._maybe_raise()
        return rental.model_copy(update={"auto_renew": enabled})

    async def fetch_messages(self, rental: Rental) -> list[Message]:
        self.fetch_calls += 1
        self._running += 1
        self.max_concurrent = max(self.max_concurrent, self._running)
        try:
            if self.gate is not None:
                await self.gate.wait()
            self._maybe_raise()
            now = datetime.now(UTC)
            messages = [
                build_message(
                    rental,
                    sender=sender,
                    body=body,
                    received_at=now,
                    source=self.source,
                    last_scraped_at=now if self.source == MessageSource.SCRAPING else None,
                )
                for sender, body in self.inbox
            ]
            return [m for m in messages if m is not None]
        finally:
            self._running -= 1

    async def fetch_catalog(self) -> Catalog:
        if self.catalog_error is not None:
            raise self.catalog_error
        return Catalog(provider=self.provider, entries=(CatalogEntry(service="wa", country="DE", price=1.0),))

    async def close(self) -> None:
        self.closed = True


@pytest.fixture()
def adapter() -> ScriptedAdapter:
    """Scripted SMSPVA adapter."""
    return ScriptedAdapter(Provider.SMSPVA)


@pytest.fixture()
def scripted_adapter() -> Callable[..., ScriptedAdapter]:
    """Factory for scripted adapters of any provider."""
    return ScriptedAdapter


@pytest.fixture()
def engine(adapter: ScriptedAdapter, registry: RentalRegistry, store: MessageStore, settings: Settings, clock) -> SyncEngine:
    """Engine over the scripted SMSPVA adapter with a fake clock."""
    return SyncEngine(
        {adapter.provider: adapter},
        registry,
        store,
        fanout=FanoutChannel(),
        cache=ReadThroughCache(clock=clock),
        settings=settings,
        states=SyncStateRegistry(settings.backoff_base_s, settings.backoff_cap_s, clock=clock),
    )


async def wait_for_condition(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll *predicate* until it holds; fail the test after *timeout*."""
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.01)


@pytest.fixture()
def wait_until() -> Callable[..., Any]:
    return wait_for_condition


# ---------------------------------------------------------------------------
# Misc helpers
# ---------------------------------------------------------------------------


@pytest.fixture()
def logger() -> logging.Logger:
    """Return a ``logging.Logger`` scoped to the test suite."""
    return logging.getLogger("tests")
