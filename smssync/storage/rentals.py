"""Rental registry: persisted, provider-confirmed rentals.

:class:`RentalRegistry` is the single data-access object for the
``rentals`` table.  Its reads reflect only what providers have confirmed:
:meth:`RentalRegistry.create` is called after an adapter's ``rent``
returned, never before, so a rental that failed upstream never appears in
:meth:`RentalRegistry.list_active`.

Typical usage::

    registry = RentalRegistry(conn)
    await registry.create(rental)
    for rental in await registry.list_active():
        ...
    await registry.update_status(rental.id, RentalStatus.CANCELED)
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime

import aiosqlite

from smssync.core import events
from smssync.core.exceptions import PersistenceError, RentalNotFound
from smssync.core.models import Provider, Rental, RentalStatus
from smssync.storage.database import from_db_time, to_db_time

__all__ = ["RentalRegistry"]

logger = logging.getLogger(__name__)

_COLUMNS = (
    "id, phone_number, provider, external_ref, status, created_at, end_date, "
    "assignee, auto_renew, service, country"
)


def _row_to_rental(row: aiosqlite.Row) -> Rental:
    return Rental(
        id=row["id"],
        phone_number=row["phone_number"],
        provider=Provider(row["provider"]),
        external_ref=row["external_ref"],
        status=RentalStatus(row["status"]),
        created_at=from_db_time(row["created_at"]),
        end_date=from_db_time(row["end_date"]),
        assignee=row["assignee"],
        auto_renew=bool(row["auto_renew"]),
        service=row["service"],
        country=row["country"],
    )


class RentalRegistry:
    """Data-access object for the ``rentals`` table.

    Owns no connection lifecycle; the caller supplies an open
    :class:`aiosqlite.Connection` (see
    :func:`~smssync.storage.database.open_db`) and closes it.

    Args:
        conn: Open, configured connection.
    """

    def __init__(self, conn: aiosqlite.Connection) -> None:
        self._conn = conn

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def list_active(self) -> list[Rental]:
        """Return rentals eligible for syncing, oldest first.

        Filters ``status = 'active'`` and a non-null ``external_ref`` in SQL,
        so canceled, expired and unconfirmed rentals are never returned.
        """
        cursor = await self._conn.execute(
            f"SELECT {_COLUMNS} FROM rentals "
            "WHERE status = ? AND external_ref IS NOT NULL "
            "ORDER BY created_at, id",
            (RentalStatus.ACTIVE.value,),
        )
        return [_row_to_rental(row) for row in await cursor.fetchall()]

    async def list_all(self, assignee: str | None = None) -> list[Rental]:
        """Return every rental (any status), newest first, optionally for one assignee."""
        if assignee is None:
            cursor = await self._conn.execute(
                f"SELECT {_COLUMNS} FROM rentals ORDER BY created_at DESC, id"
            )
        else:
            cursor = await self._conn.execute(
                f"SELECT {_COLUMNS} FROM rentals WHERE assignee = ? ORDER BY created_at DESC, id",
                (assignee,),
            )
        return [_row_to_rental(row) for row in await cursor.fetchall()]

    async def get(self, rental_id: str) -> Rental:
        """Return one rental.

        Raises:
            RentalNotFound: If *rental_id* is unknown.
        """
        cursor = await self._conn.execute(
            f"SELECT {_COLUMNS} FROM rentals WHERE id = ?", (rental_id,)
        )
        row = await cursor.fetchone()
        if row is None:
            raise RentalNotFound(rental_id)
        return _row_to_rental(row)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def create(self, rental: Rental) -> Rental:
        """Persist a provider-confirmed rental and return it.

        Raises:
            PersistenceError: If the row could not be written (including a
                duplicate id).
        """
        try:
            await self._conn.execute(
                f"INSERT INTO rentals ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    rental.id,
                    rental.phone_number,
                    rental.provider.value,
                    rental.external_ref,
                    rental.status.value,
                    to_db_time(rental.created_at),
                    to_db_time(rental.end_date),
                    rental.assignee,
                    int(rental.auto_renew),
                    rental.service,
                    rental.country,
                ),
            )
            await self._conn.commit()
        except aiosqlite.Error as exc:
            raise PersistenceError(f"Could not store rental {rental.id}: {exc}") from exc

        logger.info(
            "Rental %s created (%s %s, ends %s).",
            rental.id,
            rental.provider,
            rental.phone_number,
            rental.end_date.isoformat(),
            extra={"event": events.RENTAL_CREATED},
        )
        return rental

    async def update_status(self, rental_id: str, status: RentalStatus) -> Rental:
        """Set the lifecycle status of a rental and return the updated rental.

        Raises:
            RentalNotFound: If *rental_id* is unknown.
        """
        await self._update(rental_id, "status = ?", (status.value,))
        logger.debug("Rental %s → %s", rental_id, status)
        return await self.get(rental_id)

    async def touch_expiry(self, rental_id: str, new_end_date: datetime) -> Rental:
        """Move a rental's end date, never before its ``created_at``.

        Raises:
            RentalNotFound: If *rental_id* is unknown.
        """
        rental = await self.get(rental_id)
        end = max(new_end_date if new_end_date.tzinfo else new_end_date.replace(tzinfo=UTC), rental.created_at)
        await self._update(rental_id, "end_date = ?", (to_db_time(end),))
        return rental.model_copy(update={"end_date": end})

    async def set_auto_renew(self, rental_id: str, enabled: bool) -> Rental:
        """Record the provider-side auto-renewal flag.

        Raises:
            RentalNotFound: If *rental_id* is unknown.
        """
        await self._update(rental_id, "auto_renew = ?", (int(enabled),))
        return await self.get(rental_id)

    async def expire_overdue(self, now: datetime | None = None) -> list[str]:
        """Mark active rentals whose end date has passed as expired.

        Returns:
            Ids of the rentals that were expired.
        """
        cutoff = to_db_time(now or datetime.now(UTC))
        cursor = await self._conn.execute(
            "SELECT id FROM rentals WHERE status = ? AND end_date < ?",
            (RentalStatus.ACTIVE.value, cutoff),
        )
        expired = [row["id"] for row in await cursor.fetchall()]
        if not expired:
            return []

        placeholders = ",".join("?" * len(expired))
        await self._conn.execute(
            f"UPDATE rentals SET status = ? WHERE id IN ({placeholders})",
            (RentalStatus.EXPIRED.value, *expired),
        )
        await self._conn.commit()
        for rental_id in expired:
            logger.info("Rental %s expired.", rental_id, extra={"event": events.RENTAL_EXPIRED})
        return expired

    async def _update(self, rental_id: str, assignment: str, params: tuple[object, ...]) -> None:
        try:
            cursor = await self._conn.execute(
                f"UPDATE rentals SET {assignment} WHERE id = ?", (*params, rental_id)
            )
            await self._conn.commit()
        except aiosqlite.Error as exc:
            raise PersistenceError(f"Could not update rental {rental_id}: {exc}") from exc
        if cursor.rowcount == 0:
            raise RentalNotFound(rental_id)
