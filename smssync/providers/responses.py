"""Typed provider response variants.

Every provider answers "what messages does this number have?" in its own
shape.  Instead of poking at loosely-typed dicts across the codebase, each
adapter validates the raw payload into one variant of
:data:`ProviderResponse` (a pydantic discriminated union keyed by
``provider``) and maps it into canonical
:class:`~smssync.core.models.Message` objects via :func:`to_messages`.
Provider-native shapes never leave the ``providers`` package.

Variant overview:

========================  ==================================================
Variant                   Raw shape
========================  ==================================================
SmsActivateStatus         ``{"status":"success","values":{"0":{phoneFrom,text,date}}}``
GoGetSmsStatus            same handler-API shape as SMS-Activate
SmspvaSms                 ``{"status":1,"data":{"SmsList":[...],"OtherSms":[...]}}``
AnosimSms                 ``[{messageSender,messageText,messageDate}, ...]``
ScrapedPage               rows parsed from the receive-sms-online inbox HTML
========================  ==================================================

Typical usage::

    response = SmspvaSmsResponse.model_validate(payload["data"])
    messages = to_messages(response, rental)
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Annotated, Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, TypeAdapter, field_validator

from smssync.core.models import Message, MessageSource, Rental
from smssync.providers.normalizers import build_message, parse_timestamp

__all__ = [
    "HandlerApiSms",
    "SmsActivateStatusResponse",
    "GoGetSmsStatusResponse",
    "SmspvaSms",
    "SmspvaSmsResponse",
    "AnosimSms",
    "AnosimSmsResponse",
    "ScrapedRow",
    "ScrapedPage",
    "ProviderResponse",
    "parse_provider_response",
    "to_messages",
]


class _Lenient(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True, frozen=True)


def _ordered(messages: list[Message | None]) -> list[Message]:
    """Drop blank entries and sort oldest first (stable for equal times)."""
    kept = [m for m in messages if m is not None]
    return sorted(kept, key=lambda m: m.received_at)


# ---------------------------------------------------------------------------
# SMS-Activate style handler API (SMS-Activate, GoGetSMS)
# ---------------------------------------------------------------------------


class HandlerApiSms(_Lenient):
    """One entry of a handler-API ``getRentStatus`` ``values`` map."""

    sender: Any = Field(None, validation_alias=AliasChoices("phoneFrom", "sender", "from"))
    text: Any = Field("", validation_alias=AliasChoices("text", "message", "sms"))
    date: Any = Field(None, validation_alias=AliasChoices("date", "received_at"))


class _HandlerApiStatus(_Lenient):
    values: list[HandlerApiSms] = Field(default_factory=list)

    @field_validator("values", mode="before")
    @classmethod
    def _values_map_to_list(cls, v: object) -> object:
        # The API returns {"0": {...}, "1": {...}}; order by numeric key.
        if isinstance(v, dict):
            return [v[k] for k in sorted(v, key=lambda k: int(k) if str(k).isdigit() else 0)]
        if v is None:
            return []
        return v

    def to_messages(self, rental: Rental, *, now: datetime | None = None) -> list[Message]:
        return _ordered(
            [
                build_message(
                    rental,
                    sender=item.sender,
                    body=item.text,
                    received_at=parse_timestamp(item.date, now=now),
                    source=MessageSource.API,
                )
                for item in self.values
            ]
        )


class SmsActivateStatusResponse(_HandlerApiStatus):
    provider: Literal["sms_activate"] = "sms_activate"


class GoGetSmsStatusResponse(_HandlerApiStatus):
    provider: Literal["gogetsms"] = "gogetsms"


# ---------------------------------------------------------------------------
# SMSPVA
# ---------------------------------------------------------------------------


class SmspvaSms(_Lenient):
    sender: Any = Field(None, validation_alias=AliasChoices("sender", "from"))
    text: Any = Field("", validation_alias=AliasChoices("text", "message"))
    date: Any = None


class SmspvaSmsResponse(_Lenient):
    provider: Literal["smspva"] = "smspva"
    sms_list: list[SmspvaSms] = Field(
        default_factory=list, validation_alias=AliasChoices("SmsList", "sms_list")
    )
    other_sms: list[SmspvaSms] = Field(
        default_factory=list, validation_alias=AliasChoices("OtherSms", "other_sms")
    )

    @field_validator("sms_list", "other_sms", mode="before")
    @classmethod
    def _none_to_empty(cls, v: object) -> object:
        return [] if v is None else v

    def to_messages(self, rental: Rental, *, now: datetime | None = None) -> list[Message]:
        return _ordered(
            [
                build_message(
                    rental,
                    sender=item.sender,
                    body=item.text,
                    received_at=parse_timestamp(item.date, now=now),
                    source=MessageSource.API,
                )
                for item in [*self.sms_list, *self.other_sms]
            ]
        )


# ---------------------------------------------------------------------------
# Anosim
# ---------------------------------------------------------------------------


class AnosimSms(_Lenient):
    sender: Any = Field(None, validation_alias=AliasChoices("messageSender", "from", "sender"))
    text: Any = Field("", validation_alias=AliasChoices("messageText", "message", "text"))
    date: Any = Field(None, validation_alias=AliasChoices("messageDate", "receivedAt", "date"))


class AnosimSmsResponse(_Lenient):
    provider: Literal["anosim"] = "anosim"
    sms: list[AnosimSms] = Field(default_factory=list)

    def to_messages(self, rental: Rental, *, now: datetime | None = None) -> list[Message]:
        return _ordered(
            [
                build_message(
                    rental,
                    sender=item.sender,
                    body=item.text,
                    received_at=parse_timestamp(item.date, now=now),
                    source=MessageSource.API,
                )
                for item in self.sms
            ]
        )


# ---------------------------------------------------------------------------
# receive-sms-online (scraped HTML)
# ---------------------------------------------------------------------------


class ScrapedRow(_Lenient):
    sender: str = ""
    body: str = ""
    added: str = ""
    raw_html: str | None = None


class ScrapedPage(_Lenient):
    provider: Literal["receive_sms_online"] = "receive_sms_online"
    rows: list[ScrapedRow] = Field(default_factory=list)
    scraped_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    def to_messages(self, rental: Rental, *, now: datetime | None = None) -> list[Message]:
        reference = now or self.scraped_at
        return _ordered(
            [
                build_message(
                    rental,
                    sender=row.sender,
                    body=row.body,
                    received_at=parse_timestamp(row.added, now=reference),
                    source=MessageSource.SCRAPING,
                    raw_snapshot=row.raw_html,
                    last_scraped_at=self.scraped_at,
                )
                for row in self.rows
            ]
        )


# ---------------------------------------------------------------------------
# Union + mapping
# ---------------------------------------------------------------------------

ProviderResponse = Annotated[
    SmsActivateStatusResponse
    | GoGetSmsStatusResponse
    | SmspvaSmsResponse
    | AnosimSmsResponse
    | ScrapedPage,
    Field(discriminator="provider"),
]

_RESPONSE_ADAPTER: TypeAdapter[ProviderResponse] = TypeAdapter(ProviderResponse)


def parse_provider_response(payload: dict[str, Any]) -> ProviderResponse:
    """Validate a tagged payload (``{"provider": ..., ...}``) into its variant.

    Raises:
        pydantic.ValidationError: If the payload fits no variant.
    """
    return _RESPONSE_ADAPTER.validate_python(payload)


def to_messages(
    response: ProviderResponse, rental: Rental, *, now: datetime | None = None
) -> list[Message]:
    """Map any provider response variant into canonical messages, oldest first."""
    return response.to_messages(rental, now=now)
