"""Structured log event name constants.

Key transitions in the sync engine emit a log record with an ``event``
field (passed via ``extra={"event": events.X}``).  In ``LOG_FORMAT=json``
mode the value surfaces as ``extra.event``, which makes log queries such as
"every failed sync of the last hour" a one-liner.

Usage example::

    import logging
    from smssync.core import events

    logger = logging.getLogger(__name__)

    logger.info("Sweep started", extra={"event": events.SWEEP_START})
"""

from __future__ import annotations

__all__ = [
    # Sweep lifecycle
    "SWEEP_START",
    "SWEEP_COMPLETE",
    "SWEEP_ERROR",
    # Per-rental sync
    "SYNC_START",
    "SYNC_OK",
    "SYNC_FAILED",
    "SYNC_INVALID",
    "SYNC_DISCARDED",
    "SYNC_JOINED",
    "SYNC_BACKOFF",
    # Messages
    "MESSAGE_NEW",
    "MESSAGE_DUPLICATE",
    "MESSAGE_PUBLISH_ERROR",
    # Rental lifecycle
    "RENTAL_CREATED",
    "RENTAL_EXTENDED",
    "RENTAL_CANCELED",
    "RENTAL_EXPIRED",
    # Scraper
    "SCRAPE_STRATEGY_FAILED",
    # Catalog
    "CATALOG_FALLBACK",
]

# ---------------------------------------------------------------------------
# Sweep lifecycle
# ---------------------------------------------------------------------------

#: A background sweep selected its candidates and started dispatching.
SWEEP_START: str = "SWEEP_START"

#: A background sweep finished; the summary line carries the stats.
SWEEP_COMPLETE: str = "SWEEP_COMPLETE"

#: A sweep raised before finishing (e.g. the registry could not be read).
SWEEP_ERROR: str = "SWEEP_ERROR"

# ---------------------------------------------------------------------------
# Per-rental sync
# ---------------------------------------------------------------------------

#: A rental's fetch was dispatched to its adapter.
SYNC_START: str = "SYNC_START"

#: Fetch and persist succeeded; failure counter reset.
SYNC_OK: str = "SYNC_OK"

#: Transient failure; the rental enters backoff.
SYNC_FAILED: str = "SYNC_FAILED"

#: Permanent failure; the rental is excluded from sweeps.
SYNC_INVALID: str = "SYNC_INVALID"

#: The rental was canceled or expired mid-flight; its result was dropped.
SYNC_DISCARDED: str = "SYNC_DISCARDED"

#: A manual trigger arrived while a sync was in flight and joined it.
SYNC_JOINED: str = "SYNC_JOINED"

#: A manual trigger was refused because the rental is backing off.
SYNC_BACKOFF: str = "SYNC_BACKOFF"

# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------

#: A message was inserted for the first time.
MESSAGE_NEW: str = "MESSAGE_NEW"

#: A message collapsed onto an existing row.
MESSAGE_DUPLICATE: str = "MESSAGE_DUPLICATE"

#: A fan-out subscriber callback raised.
MESSAGE_PUBLISH_ERROR: str = "MESSAGE_PUBLISH_ERROR"

# ---------------------------------------------------------------------------
# Rental lifecycle
# ---------------------------------------------------------------------------

RENTAL_CREATED: str = "RENTAL_CREATED"
RENTAL_EXTENDED: str = "RENTAL_EXTENDED"
RENTAL_CANCELED: str = "RENTAL_CANCELED"

#: Rental passed its end date and was marked expired by the sweep.
RENTAL_EXPIRED: str = "RENTAL_EXPIRED"

# ---------------------------------------------------------------------------
# Scraper / catalog
# ---------------------------------------------------------------------------

#: One scraper fetch strategy failed; the next one is tried.
SCRAPE_STRATEGY_FAILED: str = "SCRAPE_STRATEGY_FAILED"

#: A provider catalog could not be fetched; the static table was served.
CATALOG_FALLBACK: str = "CATALOG_FALLBACK"
