"""Built-in service/country catalog and the cached catalog lookup.

Provider catalogs change rarely, so they are fetched at most once an hour
(through :class:`~smssync.storage.cache.ReadThroughCache`) and, when the
provider cannot be reached, replaced by the static table below.  Renting
only needs *some* reasonable choice of codes, so stale-but-plausible data
beats an error screen.

Typical usage::

    catalog = await load_catalog(adapter, cache, ttl=3600)
    if catalog.is_fallback:
        ...  # show a "catalog may be outdated" hint
"""

from __future__ import annotations

import logging
from typing import Final

from smssync.core import events
from smssync.core.exceptions import ProviderError
from smssync.core.models import Catalog, CatalogEntry, Provider
from smssync.providers.base import BaseProviderAdapter
from smssync.storage.cache import ReadThroughCache, catalog_key

__all__ = ["SERVICE_NAMES", "static_catalog", "load_catalog"]

logger = logging.getLogger(__name__)

#: Display names for the common two-letter service codes.
SERVICE_NAMES: Final[dict[str, str]] = {
    "wa": "WhatsApp",
    "tg": "Telegram",
    "go": "Google/Gmail/YouTube",
    "fb": "Facebook",
    "ig": "Instagram",
    "tw": "Twitter",
    "ds": "Discord",
    "am": "Amazon",
    "ap": "Apple",
    "ms": "Microsoft",
    "vi": "Viber",
    "lf": "TikTok",
    "oi": "Tinder",
    "nt": "Netflix",
    "li": "LinkedIn",
    "ot": "Other",
}

_COUNTRY_NAMES: Final[dict[str, str]] = {
    "DE": "Germany",
    "GB": "United Kingdom",
    "US": "United States",
    "NL": "Netherlands",
    "PL": "Poland",
    "SE": "Sweden",
    "RU": "Russia",
    "any": "Any",
}

#: Fallback (services, countries) per provider.
_STATIC_TABLE: Final[dict[Provider, tuple[tuple[str, ...], tuple[str, ...]]]] = {
    Provider.SMS_ACTIVATE: (("wa", "tg", "go", "fb", "ig", "am", "ot"), ("DE", "GB", "US", "NL")),
    Provider.SMSPVA: (("wa", "tg", "go", "fb", "ot"), ("DE", "GB", "US", "PL")),
    Provider.ANOSIM: (("full", "wa", "tg", "go", "ot"), ("DE", "NL", "PL", "SE", "GB")),
    Provider.GOGETSMS: (("wa", "tg", "go", "fb", "ot"), ("GB", "US", "RU")),
    Provider.RECEIVE_SMS_ONLINE: (("any",), ("any",)),
}


def static_catalog(provider: Provider) -> Catalog:
    """Return the built-in fallback catalog for *provider*."""
    services, countries = _STATIC_TABLE[provider]
    entries = tuple(
        CatalogEntry(
            service=s,
            service_name=SERVICE_NAMES.get(s, s),
            country=c,
            country_name=_COUNTRY_NAMES.get(c, c),
        )
        for s in services
        for c in countries
    )
    return Catalog(provider=provider, entries=entries, is_fallback=True)


async def load_catalog(
    adapter: BaseProviderAdapter,
    cache: ReadThroughCache,
    ttl: float,
) -> Catalog:
    """Return *adapter*'s catalog through *cache*, falling back to the static table.

    A fresh cached entry is returned without I/O.  Otherwise the live catalog
    is fetched and cached for *ttl* seconds.  If the fetch fails, a stale
    cached catalog is preferred over the static table; the static table is
    cached only briefly so the next call tries the provider again.
    """
    key = catalog_key(adapter.provider)

    async def _fetch() -> Catalog:
        return await adapter.fetch_catalog()

    try:
        return await cache.get_or_load(key, _fetch, ttl)
    except ProviderError as exc:
        logger.warning(
            "Catalog fetch for %s failed (%s); serving built-in table.",
            adapter.provider,
            exc,
            extra={"event": events.CATALOG_FALLBACK},
        )
        fallback = static_catalog(adapter.provider)
        cache.put(key, fallback, min(ttl, 60.0))
        return fallback
