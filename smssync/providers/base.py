"""Adapter interface contract for every SMS number source.

Each provider, whether API-based (SMS-Activate, SMSPVA, Anosim, GoGetSMS)
or scraping-based (receive-sms-online), subclasses
:class:`BaseProviderAdapter` and implements the uniform
rent / extend / cancel / fetch-messages contract.

Contract rules
--------------
* Outputs are always canonical :class:`~smssync.core.models.Rental` and
  :class:`~smssync.core.models.Message` instances.
* Failures are always one of the typed
  :class:`~smssync.core.exceptions.ProviderError` subclasses.
* :meth:`~BaseProviderAdapter.fetch_messages` performs no deduplication
  (that is the Message Store's job) but is idempotent: an unchanged mailbox
  maps to the same ``(sender, body)`` tuples on every call.

Typical usage::

    async with SmspvaAdapter(settings) as adapter:
        rental = await adapter.rent("wa", duration_hours=168, country="DE")
        messages = await adapter.fetch_messages(rental)
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from types import TracebackType
from typing import ClassVar

from smssync.core.exceptions import InvalidRental
from smssync.core.models import Catalog, Message, Provider, Rental

__all__ = ["BaseProviderAdapter"]

logger = logging.getLogger(__name__)


class BaseProviderAdapter(ABC):
    """Abstract base for all provider adapters.

    Attributes:
        provider: The :class:`~smssync.core.models.Provider` this adapter
            serves.  Declared at class level so the engine can route
            rentals without instantiating anything.
        supports_continuous_polling: Whether the auto-refresh loop may poll
            this provider every few seconds.
        supports_auto_renew: Whether :meth:`set_auto_renew` is implemented.
        fetch_timeout: Overall budget the engine grants one
            :meth:`fetch_messages` call.  ``None`` means the engine-wide
            ``ADAPTER_TIMEOUT_S``; adapters that run their own fallback
            chain return a budget covering the whole chain.
    """

    provider: ClassVar[Provider]
    supports_continuous_polling: ClassVar[bool] = True
    supports_auto_renew: ClassVar[bool] = False
    fetch_timeout: float | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def close(self) -> None:  # noqa: B027
        """Release held resources.  No-op by default."""

    async def __aenter__(self) -> BaseProviderAdapter:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Core contract
    # ------------------------------------------------------------------

    @abstractmethod
    async def rent(self, service: str, duration_hours: int, country: str | None = None) -> Rental:
        """Lease a number.

        Args:
            service: Provider service code (e.g. ``"wa"``).
            duration_hours: Requested lease length; providers round it to
                their own billing units.
            country: Country code; ``None`` selects the provider default.

        Returns:
            A provider-confirmed, active :class:`Rental`.
        """

    @abstractmethod
    async def extend(self, rental: Rental, duration_hours: int) -> Rental:
        """Push the rental's end date forward and return the updated rental."""

    @abstractmethod
    async def cancel(self, rental: Rental) -> None:
        """Release the number upstream.  Returns once the provider acked."""

    @abstractmethod
    async def fetch_messages(self, rental: Rental) -> list[Message]:
        """Return every message currently visible for *rental*, oldest first."""

    @abstractmethod
    async def fetch_catalog(self) -> Catalog:
        """Return the live service/country catalog."""

    async def set_auto_renew(self, rental: Rental, enabled: bool) -> Rental:
        """Toggle provider-side auto-renewal.

        Raises:
            InvalidRental: If this provider has no auto-renewal support.
        """
        raise InvalidRental(self.provider, "auto-renewal is not supported by this provider")

    # ------------------------------------------------------------------
    # Helpers for subclasses
    # ------------------------------------------------------------------

    def _require_ref(self, rental: Rental) -> str:
        """Return the rental's external reference or raise :class:`InvalidRental`."""
        if rental.provider != self.provider:
            raise InvalidRental(
                self.provider,
                f"rental {rental.id} belongs to {rental.provider}, not {self.provider}",
            )
        if not rental.external_ref:
            raise InvalidRental(
                self.provider,
                f"rental {rental.id} has no external reference (never confirmed)",
            )
        return rental.external_ref
