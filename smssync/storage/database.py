"""SQLite database initialisation for SMS Sync.

:func:`open_db` creates the file (and its parent directory) when missing,
switches it to WAL with foreign keys enforced, and applies the idempotent
``CREATE ... IF NOT EXISTS`` schema on every start.

Call :func:`open_db` once at process startup and share the connection with
:class:`~smssync.storage.rentals.RentalRegistry` and
:class:`~smssync.storage.messages.MessageStore`.

Example::

    conn = await open_db(settings.database_path_resolved)
    try:
        registry = RentalRegistry(conn)
        ...
    finally:
        await conn.close()
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from pathlib import Path

import aiosqlite

__all__ = [
    "DEFAULT_DB_PATH",
    "open_db",
    "create_schema",
    "to_db_time",
    "from_db_time",
]

logger = logging.getLogger(__name__)

#: Fallback database path when none is passed to :func:`open_db`.
DEFAULT_DB_PATH: Path = Path("data/smssync.db")

# ---------------------------------------------------------------------------
# DDL
# ---------------------------------------------------------------------------

#: Leased numbers.  Only provider-confirmed rentals are ever inserted.
#:
#: external_ref  Provider booking id, or the private inbox URL for scraping.
#: status        ``active`` | ``expired`` | ``canceled``.
#: created_at / end_date  fixed-width ISO-8601 UTC (see :func:`to_db_time`).
_DDL_RENTALS = """\
CREATE TABLE IF NOT EXISTS rentals (
    id            TEXT     NOT NULL PRIMARY KEY,
    phone_number  TEXT     NOT NULL,
    provider      TEXT     NOT NULL,
    external_ref  TEXT,
    status        TEXT     NOT NULL DEFAULT 'active',
    created_at    TEXT     NOT NULL,
    end_date      TEXT     NOT NULL,
    assignee      TEXT,
    auto_renew    INTEGER  NOT NULL DEFAULT 0,
    service       TEXT,
    country       TEXT
)"""

#: Received SMS.  ``UNIQUE(rental_id, sender, body)`` is the dedup key;
#: writers resolve conflicts per row with ``ON CONFLICT``.
_DDL_MESSAGES = """\
CREATE TABLE IF NOT EXISTS messages (
    id                 INTEGER  PRIMARY KEY AUTOINCREMENT,
    rental_id          TEXT     NOT NULL REFERENCES rentals(id),
    sender             TEXT     NOT NULL,
    body               TEXT     NOT NULL,
    received_at        TEXT     NOT NULL,
    source             TEXT     NOT NULL,
    raw_snapshot       TEXT,
    last_scraped_at    TEXT,
    verification_code  TEXT,
    UNIQUE (rental_id, sender, body)
)"""

_DDL_INDEXES = (
    "CREATE INDEX IF NOT EXISTS idx_rentals_status ON rentals (status, end_date)",
    "CREATE INDEX IF NOT EXISTS idx_messages_rental ON messages (rental_id, received_at)",
)

#: Messages joined with their rental, used by the bulk read path.
_DDL_MESSAGES_VIEW = """\
CREATE VIEW IF NOT EXISTS messages_with_rental AS
SELECT m.*, r.phone_number AS rental_phone_number, r.provider AS rental_provider
FROM messages AS m
JOIN rentals AS r ON r.id = m.rental_id"""

# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


async def open_db(path: Path | str | None = None) -> aiosqlite.Connection:
    """Open (or create) the SQLite database and bootstrap the schema.

    Args:
        path: Filesystem path for the SQLite file, or ``":memory:"``.
            Defaults to :data:`DEFAULT_DB_PATH`.

    Returns:
        An open :class:`aiosqlite.Connection` with ``row_factory`` set to
        :class:`aiosqlite.Row`.  The caller closes it.

    Raises:
        aiosqlite.OperationalError: If the file cannot be opened or created.
    """
    target = str(path) if path is not None else str(DEFAULT_DB_PATH)
    if target != ":memory:":
        Path(target).parent.mkdir(parents=True, exist_ok=True)

    logger.debug("Opening SQLite database at %s", target)
    conn: aiosqlite.Connection = await aiosqlite.connect(target)
    conn.row_factory = aiosqlite.Row

    await _configure_pragmas(conn)
    await create_schema(conn)

    logger.info("SQLite database ready at %s", target)
    return conn


async def create_schema(conn: aiosqlite.Connection) -> None:
    """Create tables, indexes and views if they do not already exist.

    Idempotent; never alters existing data.
    """
    await conn.execute(_DDL_RENTALS)
    await conn.execute(_DDL_MESSAGES)
    for ddl in _DDL_INDEXES:
        await conn.execute(ddl)
    await conn.execute(_DDL_MESSAGES_VIEW)
    await conn.commit()
    logger.debug("Schema bootstrap complete (rentals, messages verified)")


# ---------------------------------------------------------------------------
# Internals
# ---------------------------------------------------------------------------


async def _configure_pragmas(conn: aiosqlite.Connection) -> None:
    result = await conn.execute("PRAGMA journal_mode=WAL")
    row = await result.fetchone()
    mode = row[0] if row else "unknown"
    if mode != "wal":
        logger.debug("SQLite journal_mode is %r (expected for ':memory:').", mode)
    await conn.execute("PRAGMA foreign_keys=ON")


# ---------------------------------------------------------------------------
# Time columns
# ---------------------------------------------------------------------------


def to_db_time(value: datetime | None) -> str | None:
    """Serialise *value* as fixed-width UTC ISO-8601 so text order is time order."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def from_db_time(value: str | None) -> datetime | None:
    """Inverse of :func:`to_db_time`."""
    if value is None:
        return None
    parsed = datetime.fromisoformat(value)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
