"""SMS Sync core domain models.

This module defines the canonical :class:`Rental` and :class:`Message`
models plus the provider catalog types shared by every adapter, store and
orchestrator component.

All adapters must normalise their raw provider payloads into these models
before returning; provider-native shapes never cross the adapter boundary
(see :mod:`smssync.providers.responses`).

Typical usage::

    from datetime import UTC, datetime, timedelta
    from smssync.core.models import Message, MessageSource, Provider, Rental

    rental = Rental(
        phone_number="+4915112345678",
        provider=Provider.SMSPVA,
        external_ref="887766",
        end_date=datetime.now(UTC) + timedelta(days=7),
    )
    message = Message(
        rental_id=rental.id,
        sender="1234",
        body="Code: 5566",
        received_at=datetime.now(UTC),
        source=MessageSource.API,
    )
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator, model_validator

__all__ = [
    "Provider",
    "RentalStatus",
    "MessageSource",
    "Rental",
    "Message",
    "CatalogEntry",
    "Catalog",
    "UNKNOWN_SENDER",
]

#: Sender label stored when a provider reports no sender at all.
UNKNOWN_SENDER: str = "Unknown"


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _as_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes; convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class Provider(StrEnum):
    """Codes of every supported number source.

    The enum value is what gets stored in the ``rentals.provider`` column.
    """

    SMS_ACTIVATE = "sms_activate"
    SMSPVA = "smspva"
    ANOSIM = "anosim"
    GOGETSMS = "gogetsms"
    RECEIVE_SMS_ONLINE = "receive_sms_online"


class RentalStatus(StrEnum):
    """Lifecycle status of a rental.  Rentals are never deleted."""

    ACTIVE = "active"
    EXPIRED = "expired"
    CANCELED = "canceled"


class MessageSource(StrEnum):
    """How a message was observed."""

    API = "api"
    SCRAPING = "scraping"


# ---------------------------------------------------------------------------
# Rental
# ---------------------------------------------------------------------------


class Rental(BaseModel):
    """A leased virtual phone number.

    The model is frozen; state transitions (extend, cancel, expire) produce
    a new instance via ``model_copy(update=...)`` and are persisted through
    :class:`~smssync.storage.rentals.RentalRegistry`.

    Attributes:
        id: Locally assigned identifier (uuid4 hex).
        phone_number: The rented number as reported by the provider.
        provider: Which provider leased the number.
        external_ref: Provider-side booking/order id.  For the scraping
            source this is the private inbox URL.  ``None`` means the rental
            was never confirmed by its provider; such rentals are never
            scheduled.
        assignee: Owner the number is assigned to, if any.
        status: Lifecycle status.
        created_at: When the rental was confirmed.
        end_date: When the lease expires.  Always ``>= created_at``.
        auto_renew: Whether the provider renews the lease automatically.
        service: Service code the number was rented for, if known.
        country: Country code the number was rented in, if known.
    """

    model_config = {"frozen": True}

    id: str = Field(default_factory=lambda: uuid4().hex, min_length=1)
    phone_number: str = Field(..., min_length=1)
    provider: Provider
    external_ref: str | None = None
    assignee: str | None = None
    status: RentalStatus = RentalStatus.ACTIVE
    created_at: datetime = Field(default_factory=_utcnow)
    end_date: datetime
    auto_renew: bool = False
    service: str | None = None
    country: str | None = None

    @field_validator("external_ref", "assignee", "service", "country", mode="before")
    @classmethod
    def _blank_to_none(cls, v: object) -> object:
        if isinstance(v, str) and not v.strip():
            return None
        if isinstance(v, int):
            return str(v)
        return v

    @field_validator("created_at", "end_date")
    @classmethod
    def _normalise_tz(cls, v: datetime) -> datetime:
        return _as_utc(v)

    @model_validator(mode="after")
    def _end_not_before_start(self) -> Rental:
        if self.end_date < self.created_at:
            raise ValueError(
                f"end_date ({self.end_date.isoformat()}) is before "
                f"created_at ({self.created_at.isoformat()})"
            )
        return self

    @property
    def is_sync_target(self) -> bool:
        """``True`` if the rental is active and has a provider reference."""
        return self.status == RentalStatus.ACTIVE and self.external_ref is not None


# ---------------------------------------------------------------------------
# Message
# ---------------------------------------------------------------------------


class Message(BaseModel):
    """One inbound SMS attributed to a rental.

    ``(rental_id, sender, body)`` is the deduplication key: the store keeps
    a single row per tuple no matter how often or by which source it is
    observed.

    Attributes:
        id: Database row id; ``None`` until persisted.
        rental_id: Owning rental.
        sender: Sender label; blank values become :data:`UNKNOWN_SENDER`.
        body: Message text, stripped, never blank.
        received_at: When the provider received the SMS.
        source: ``api`` or ``scraping``.
        raw_snapshot: Row HTML for scraped messages.
        last_scraped_at: Last time the scraper re-observed this message.
        verification_code: 4-8 digit code found in the body, if any.
    """

    model_config = {"frozen": True}

    id: int | None = None
    rental_id: str = Field(..., min_length=1)
    sender: str = UNKNOWN_SENDER
    body: str = Field(..., min_length=1)
    received_at: datetime = Field(default_factory=_utcnow)
    source: MessageSource
    raw_snapshot: str | None = None
    last_scraped_at: datetime | None = None
    verification_code: str | None = None

    @field_validator("sender", mode="before")
    @classmethod
    def _sender_fallback(cls, v: object) -> object:
        if v is None:
            return UNKNOWN_SENDER
        if isinstance(v, (int, float)):
            v = str(v)
        if isinstance(v, str):
            return v.strip() or UNKNOWN_SENDER
        return v

    @field_validator("body", mode="before")
    @classmethod
    def _strip_body(cls, v: object) -> object:
        if isinstance(v, str):
            return v.strip()
        return v

    @field_validator("received_at", "last_scraped_at")
    @classmethod
    def _normalise_tz(cls, v: datetime | None) -> datetime | None:
        return _as_utc(v) if v is not None else None

    @property
    def dedup_key(self) -> tuple[str, str, str]:
        """The ``(rental_id, sender, body)`` uniqueness tuple."""
        return (self.rental_id, self.sender, self.body)


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------


class CatalogEntry(BaseModel):
    """One rentable (service, country) combination offered by a provider."""

    model_config = {"frozen": True}

    service: str = Field(..., min_length=1)
    service_name: str = ""
    country: str = Field(..., min_length=1)
    country_name: str = ""
    price: float | None = Field(None, ge=0)


class Catalog(BaseModel):
    """Service/country reference data for one provider.

    Attributes:
        provider: Provider the entries belong to.
        entries: Offered combinations.
        fetched_at: When the entries were obtained.
        is_fallback: ``True`` when served from the built-in static table
            because the provider was unreachable.
    """

    model_config = {"frozen": True}

    provider: Provider
    entries: tuple[CatalogEntry, ...] = ()
    fetched_at: datetime = Field(default_factory=_utcnow)
    is_fallback: bool = False

    @property
    def services(self) -> list[str]:
        """Distinct service codes, in first-seen order."""
        return list(dict.fromkeys(e.service for e in self.entries))

    @property
    def countries(self) -> list[str]:
        """Distinct country codes, in first-seen order."""
        return list(dict.fromkeys(e.country for e in self.entries))
