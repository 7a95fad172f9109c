"""Message store: deduplicated persistence of received SMS.

:class:`MessageStore` owns the ``messages`` table.  Every message is keyed
by ``(rental_id, sender, body)``; writing the same tuple again, from the same
source or another, never creates a second row.

Conflict policy
---------------
* The first writer wins: the stored ``received_at`` and body never change.
* A scraped re-observation refreshes ``last_scraped_at``.
* A later ``api`` observation of a row first written by ``scraping``
  upgrades its ``source`` to ``api``.  ``api`` rows are never downgraded.

Conflicts are resolved per row by SQLite (``ON CONFLICT ... DO NOTHING``);
there is no store-wide lock.

Reads run an ordered chain of query strategies under one time budget: the
joined ``messages_with_rental`` view, then the plain table, then a
minimal-column query.  The first strategy that succeeds wins.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Final

import aiosqlite

from smssync.core import events
from smssync.core.exceptions import PersistenceError
from smssync.core.models import Message, MessageSource
from smssync.storage.database import from_db_time, to_db_time

__all__ = ["MessageStore", "UpsertResult"]

logger = logging.getLogger(__name__)

#: One immediate retry after the first failed write.
_WRITE_ATTEMPTS: Final[int] = 2

#: Default budget shared by all read strategies (seconds).
_READ_BUDGET_S: Final[float] = 5.0

_FULL_COLUMNS: Final[str] = (
    "id, rental_id, sender, body, received_at, source, raw_snapshot, "
    "last_scraped_at, verification_code"
)
_MINIMAL_COLUMNS: Final[str] = "id, rental_id, sender, body, received_at, source"

_READ_QUERIES: Final[tuple[tuple[str, str], ...]] = (
    (
        "bulk",
        f"SELECT {_FULL_COLUMNS} FROM messages_with_rental "
        "WHERE rental_id = ? ORDER BY received_at DESC, id DESC",
    ),
    (
        "direct",
        f"SELECT {_FULL_COLUMNS} FROM messages WHERE rental_id = ? ORDER BY received_at DESC, id DESC",
    ),
    (
        "minimal",
        f"SELECT {_MINIMAL_COLUMNS} FROM messages WHERE rental_id = ? ORDER BY received_at DESC, id DESC",
    ),
)


@dataclass(frozen=True)
class UpsertResult:
    """Outcome of one :meth:`MessageStore.upsert`.

    Attributes:
        inserted: ``True`` if a new row was created.
        message: The stored row (with its database ``id``) after the write.
    """

    inserted: bool
    message: Message


def _row_to_message(row: aiosqlite.Row) -> Message:
    keys = row.keys()
    return Message(
        id=row["id"],
        rental_id=row["rental_id"],
        sender=row["sender"],
        body=row["body"],
        received_at=from_db_time(row["received_at"]),
        source=MessageSource(row["source"]),
        raw_snapshot=row["raw_snapshot"] if "raw_snapshot" in keys else None,
        last_scraped_at=from_db_time(row["last_scraped_at"]) if "last_scraped_at" in keys else None,
        verification_code=row["verification_code"] if "verification_code" in keys else None,
    )


class MessageStore:
    """Data-access object for the ``messages`` table.

    Args:
        conn: Open, configured connection (see
            :func:`~smssync.storage.database.open_db`).
        read_budget_s: Time budget shared by the read strategies.
    """

    def __init__(self, conn: aiosqlite.Connection, *, read_budget_s: float = _READ_BUDGET_S) -> None:
        self._conn = conn
        self._read_budget_s = read_budget_s

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def upsert(self, message: Message) -> UpsertResult:
        """Store *message* unless its dedup tuple already exists.

        Returns:
            :class:`UpsertResult` with ``inserted`` set only for a new row.

        Raises:
            PersistenceError: If the write failed twice.
        """
        last_exc: aiosqlite.Error | None = None
        for attempt in range(1, _WRITE_ATTEMPTS + 1):
            try:
                result = await self._upsert_once(message)
            except aiosqlite.Error as exc:
                last_exc = exc
                logger.warning(
                    "Message write for rental %s failed (attempt %d/%d): %s",
                    message.rental_id,
                    attempt,
                    _WRITE_ATTEMPTS,
                    exc,
                )
                await self._rollback()
                continue
            logger.debug(
                "Message %s for rental %s (%s).",
                "stored" if result.inserted else "already known",
                message.rental_id,
                message.source,
                extra={"event": events.MESSAGE_NEW if result.inserted else events.MESSAGE_DUPLICATE},
            )
            return result

        raise PersistenceError(
            f"Could not store message for rental {message.rental_id}: {last_exc}"
        ) from last_exc

    async def upsert_many(self, messages: Sequence[Message]) -> list[UpsertResult]:
        """Upsert *messages* one by one; results follow input order."""
        return [await self.upsert(message) for message in messages]

    async def _upsert_once(self, message: Message) -> UpsertResult:
        cursor = await self._conn.execute(
            f"""
            INSERT INTO messages ({_FULL_COLUMNS})
            VALUES (NULL, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (rental_id, sender, body) DO NOTHING
            """,
            (
                message.rental_id,
                message.sender,
                message.body,
                to_db_time(message.received_at),
                message.source.value,
                message.raw_snapshot,
                to_db_time(message.last_scraped_at),
                message.verification_code,
            ),
        )
        inserted = cursor.rowcount == 1

        if not inserted:
            if message.source == MessageSource.API:
                await self._conn.execute(
                    "UPDATE messages SET source = ? "
                    "WHERE rental_id = ? AND sender = ? AND body = ? AND source != ?",
                    (MessageSource.API.value, *message.dedup_key, MessageSource.API.value),
                )
            elif message.last_scraped_at is not None:
                await self._conn.execute(
                    "UPDATE messages SET last_scraped_at = ? "
                    "WHERE rental_id = ? AND sender = ? AND body = ?",
                    (to_db_time(message.last_scraped_at), *message.dedup_key),
                )
        await self._conn.commit()

        cursor = await self._conn.execute(
            f"SELECT {_FULL_COLUMNS} FROM messages WHERE rental_id = ? AND sender = ? AND body = ?",
            message.dedup_key,
        )
        row = await cursor.fetchone()
        if row is None:
            raise aiosqlite.OperationalError("row vanished after upsert")
        return UpsertResult(inserted=inserted, message=_row_to_message(row))

    async def _rollback(self) -> None:
        try:
            await self._conn.rollback()
        except aiosqlite.Error:
            logger.debug("Rollback after failed write also failed.", exc_info=True)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def list_by_rental(self, rental_id: str) -> list[Message]:
        """Return a rental's messages, newest first.

        Raises:
            PersistenceError: If every read strategy failed; the message
                lists each strategy's error.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._read_budget_s
        errors: list[str] = []

        for name, query in _READ_QUERIES:
            remaining = deadline - loop.time()
            if remaining <= 0:
                errors.append(f"{name}: time budget exhausted")
                continue
            try:
                async with asyncio.timeout(remaining):
                    cursor = await self._conn.execute(query, (rental_id,))
                    rows = await cursor.fetchall()
            except TimeoutError:
                errors.append(f"{name}: timed out")
            except aiosqlite.Error as exc:
                errors.append(f"{name}: {exc}")
            else:
                if errors:
                    logger.info("Messages for %s read via %s strategy (%s).", rental_id, name, "; ".join(errors))
                return [_row_to_message(row) for row in rows]

        raise PersistenceError(f"Could not read messages for rental {rental_id}: " + "; ".join(errors))

    async def count_by_rental(self, rental_id: str) -> int:
        """Return how many messages a rental has."""
        cursor = await self._conn.execute(
            "SELECT COUNT(*) FROM messages WHERE rental_id = ?", (rental_id,)
        )
        row = await cursor.fetchone()
        return int(row[0]) if row else 0
