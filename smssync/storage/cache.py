"""Short-lived read-through cache for rental lists and provider catalogs.

The cache is advisory only.  A miss or an expired entry always falls
through to the loader (the Rental Registry or a Provider Adapter); expired
entries are still handed out flagged ``stale`` so a caller that cannot wait
can render something, and a failing loader degrades to the stale value
instead of an error.

Default TTLs (see :class:`~smssync.core.settings.Settings`):

* rental lists: 5 minutes (:func:`rentals_key`)
* provider catalogs: 1 hour, one entry per provider (:func:`catalog_key`)
* per-rental message lists: until the next sync invalidates them
  (:func:`messages_key`)

Typical usage::

    cache = ReadThroughCache()
    rentals = await cache.get_or_load(rentals_key(), registry.list_active, ttl=300)
    cache.invalidate(rentals_key())
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

__all__ = [
    "CacheLookup",
    "ReadThroughCache",
    "rentals_key",
    "catalog_key",
    "messages_key",
]

logger = logging.getLogger(__name__)

T = TypeVar("T")


def rentals_key(assignee: str | None = None) -> str:
    """Key of the active-rental list, optionally scoped to one assignee."""
    return f"rentals:{assignee or '*'}"


def catalog_key(provider: str) -> str:
    """Key of one provider's service/country catalog."""
    return f"catalog:{provider}"


def messages_key(rental_id: str) -> str:
    """Key of one rental's message list."""
    return f"messages:{rental_id}"


@dataclass(frozen=True)
class CacheLookup(Generic[T]):
    """Result of :meth:`ReadThroughCache.get`.

    Attributes:
        value: Cached value, or ``None`` on a miss.
        hit: ``True`` if the key was present at all.
        stale: ``True`` if the entry is present but past its TTL.
    """

    value: T | None = None
    hit: bool = False
    stale: bool = False

    @property
    def fresh(self) -> bool:
        return self.hit and not self.stale


@dataclass
class _Entry:
    value: Any
    expires_at: float


class ReadThroughCache:
    """In-process TTL cache.

    Args:
        clock: Monotonic clock; injectable for tests.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: dict[str, _Entry] = {}
        self._active_provider: str | None = None

    def get(self, key: str) -> CacheLookup[Any]:
        """Look *key* up without ever blocking or loading."""
        entry = self._entries.get(key)
        if entry is None:
            return CacheLookup()
        return CacheLookup(value=entry.value, hit=True, stale=self._clock() >= entry.expires_at)

    def put(self, key: str, value: Any, ttl: float) -> None:
        """Store *value* under *key* for *ttl* seconds."""
        self._entries[key] = _Entry(value=value, expires_at=self._clock() + max(ttl, 0.0))

    def invalidate(self, key: str) -> bool:
        """Drop *key*.  Returns ``True`` if something was removed."""
        return self._entries.pop(key, None) is not None

    def invalidate_prefix(self, prefix: str) -> int:
        """Drop every key starting with *prefix*; return how many were removed."""
        doomed = [k for k in self._entries if k.startswith(prefix)]
        for k in doomed:
            del self._entries[k]
        return len(doomed)

    def switch_provider(self, provider: str) -> None:
        """Record a provider switch and drop the catalogs on both sides of it.

        The outgoing provider's entry is dropped so a later switch back does
        not serve it, and the next catalog read for *provider* goes to the
        provider again.
        """
        if provider != self._active_provider:
            if self._active_provider is not None:
                self.invalidate(catalog_key(self._active_provider))
            self.invalidate(catalog_key(provider))
            logger.debug(
                "Provider switched %s → %s; catalog cache invalidated.",
                self._active_provider,
                provider,
            )
        self._active_provider = provider

    async def get_or_load(
        self,
        key: str,
        loader: Callable[[], Awaitable[T]],
        ttl: float,
        *,
        timeout: float | None = None,
    ) -> T:
        """Return the fresh cached value or await *loader* and cache its result.

        Args:
            key: Cache key.
            loader: Correctness-preserving fetch used on a miss or expiry.
            ttl: Lifetime of a freshly loaded value.
            timeout: Optional bound on the loader.

        Returns:
            The fresh value, the newly loaded value, or (only when the loader
            fails) the stale value.

        Raises:
            Exception: Whatever *loader* raised, when there is no stale value
                to fall back to.
        """
        lookup = self.get(key)
        if lookup.fresh:
            return lookup.value

        try:
            if timeout is not None:
                async with asyncio.timeout(timeout):
                    value = await loader()
            else:
                value = await loader()
        except Exception:
            if lookup.hit:
                logger.warning("Loader for %s failed; serving stale value.", key, exc_info=True)
                return lookup.value
            raise

        self.put(key, value, ttl)
        return value
