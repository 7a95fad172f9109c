"""Per-rental sync state with linear, capped failure backoff.

Every rental the engine has touched gets a :class:`SyncState`.  A failed
sync pushes the rental's next attempt out by ``min(failures × base, cap)``
seconds; a success clears the failure count.  A rental whose provider
reported it invalid is parked permanently and never scheduled again.

State machine
~~~~~~~~~~~~~
::

    IDLE ──(due)──▶ SYNCING ──▶ SUCCESS ──▶ IDLE
                       │
                       ├──▶ FAILED ──(backoff elapsed)──▶ due again
                       │
                       └──▶ INVALID   (terminal)

Rate limiting
~~~~~~~~~~~~~
When a provider throttles with a ``retry_after`` hint the longer of the
computed backoff and the hint is used.

The registry is a plain in-process object with no locking; it is only ever
touched from the event loop thread.

Typical usage::

    states = SyncStateRegistry(base_s=60, cap_s=900)

    if states.is_due(rental.id, min_interval_s=30):
        states.mark_started(rental.id)
        try:
            ...
            states.record_success(rental.id)
        except ProviderError as exc:
            states.record_failure(rental.id, exc)
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Final

from smssync.core.exceptions import RateLimited

__all__ = [
    "SyncPhase",
    "SyncState",
    "SyncStateRegistry",
    "compute_backoff",
]

logger = logging.getLogger(__name__)

_DEFAULT_BASE_S: Final[float] = 60.0
_DEFAULT_CAP_S: Final[float] = 900.0


def compute_backoff(failures: int, base_s: float, cap_s: float) -> float:
    """Return ``min(failures × base_s, cap_s)``; zero for no failures."""
    if failures <= 0:
        return 0.0
    return min(failures * base_s, cap_s)


class SyncPhase(StrEnum):
    """Where a rental currently is in its sync cycle."""

    IDLE = "idle"
    SYNCING = "syncing"
    SUCCESS = "success"
    FAILED = "failed"
    INVALID = "invalid"


@dataclass
class SyncState:
    """Mutable state bag for one rental.

    Attributes:
        phase: Current :class:`SyncPhase`.
        failures: Consecutive failures since the last success.
        last_attempt: Monotonic time the last sync started.
        last_sync: Monotonic time of the last successful sync.
        backoff_until: Monotonic time before which no sync may start.
        last_error: ``str()`` of the most recent failure.
    """

    phase: SyncPhase = SyncPhase.IDLE
    failures: int = 0
    last_attempt: float | None = None
    last_sync: float | None = None
    backoff_until: float | None = None
    last_error: str | None = None

    @property
    def invalid(self) -> bool:
        return self.phase == SyncPhase.INVALID


class SyncStateRegistry:
    """Tracks :class:`SyncState` for every rental.

    Args:
        base_s: Backoff added per consecutive failure.
        cap_s: Upper bound of one backoff window.
        clock: Monotonic clock; injectable for tests.
    """

    def __init__(
        self,
        base_s: float = _DEFAULT_BASE_S,
        cap_s: float = _DEFAULT_CAP_S,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._base_s = base_s
        self._cap_s = cap_s
        self._clock = clock
        self._states: dict[str, SyncState] = {}

    def now(self) -> float:
        return self._clock()

    def get(self, rental_id: str) -> SyncState:
        """Return (lazily creating) the state of *rental_id*."""
        if rental_id not in self._states:
            self._states[rental_id] = SyncState()
        return self._states[rental_id]

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def remaining_backoff(self, rental_id: str) -> float:
        """Seconds until *rental_id* leaves its backoff window (0 if none)."""
        state = self.get(rental_id)
        if state.backoff_until is None:
            return 0.0
        return max(state.backoff_until - self._clock(), 0.0)

    def is_due(self, rental_id: str, min_interval_s: float) -> bool:
        """``True`` if an automatic sync of *rental_id* may start now.

        Excludes rentals that are invalid, currently syncing, inside their
        backoff window, or attempted less than *min_interval_s* ago.
        """
        state = self.get(rental_id)
        if state.invalid or state.phase == SyncPhase.SYNCING:
            return False
        if self.remaining_backoff(rental_id) > 0:
            return False
        if state.last_attempt is not None and self._clock() - state.last_attempt < min_interval_s:
            return False
        return True

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def mark_started(self, rental_id: str) -> None:
        state = self.get(rental_id)
        state.phase = SyncPhase.SYNCING
        state.last_attempt = self._clock()

    def record_success(self, rental_id: str) -> None:
        """Clear failures and backoff after a successful sync."""
        state = self.get(rental_id)
        if state.failures:
            logger.debug("Rental %s recovered after %d failure(s).", rental_id, state.failures)
        state.phase = SyncPhase.SUCCESS
        state.failures = 0
        state.backoff_until = None
        state.last_error = None
        state.last_sync = self._clock()

    def record_failure(self, rental_id: str, exc: BaseException) -> float:
        """Count a failure and open the backoff window.

        Returns:
            The backoff applied, in seconds.
        """
        state = self.get(rental_id)
        state.phase = SyncPhase.FAILED
        state.failures += 1
        state.last_error = str(exc)

        delay = compute_backoff(state.failures, self._base_s, self._cap_s)
        if isinstance(exc, RateLimited) and exc.retry_after is not None:
            delay = max(delay, exc.retry_after)
        state.backoff_until = self._clock() + delay
        return delay

    def mark_invalid(self, rental_id: str, exc: BaseException) -> None:
        """Park *rental_id* permanently; it will never be due again."""
        state = self.get(rental_id)
        state.phase = SyncPhase.INVALID
        state.last_error = str(exc)

    def mark_idle(self, rental_id: str) -> None:
        """Return a rental to IDLE after its sync result was discarded."""
        state = self.get(rental_id)
        if state.phase == SyncPhase.SYNCING:
            state.phase = SyncPhase.IDLE

    def forget(self, rental_id: str) -> None:
        """Drop all state for *rental_id* (e.g. after it was canceled)."""
        self._states.pop(rental_id, None)

    def summary(self) -> dict[str, str]:
        """Return ``{rental_id: phase}`` for every tracked rental."""
        return {rid: s.phase.value for rid, s in self._states.items()}
