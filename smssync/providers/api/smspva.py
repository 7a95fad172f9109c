"""SMSPVA rental adapter.

SMSPVA's rental API lives at a single endpoint, ``/api/rent.php``, selected
by a ``method`` query parameter:

* ``create``  – rent (``dtype=week``, ``dcount`` = weeks, ``country``, ``service``)
* ``prolong`` – extend (``id``, ``dtype``, ``dcount``)
* ``delete``  – cancel (``id``)
* ``sms``     – messages (``id``) → ``data.SmsList`` + ``data.OtherSms``
* ``getdata`` – services and prices for one country

Every response is ``{"status": 1, "data": ...}`` on success and
``{"status": 0, "msg": "..."}`` on failure.  A failing ``sms`` call usually
just means the inbox is empty, so only credential and unknown-rental
messages are escalated there.

Configuration
-------------
``SMSPVA_API_KEY``
    Account API key.  Leave empty to disable the provider.
"""

from __future__ import annotations

import logging
import math
import re
from datetime import UTC, datetime, timedelta
from typing import Any, ClassVar, Final

from pydantic import ValidationError

from smssync.core.exceptions import (
    ConfigError,
    InvalidRental,
    ParseError,
    ProviderAuthError,
    ProviderRejected,
)
from smssync.core.models import Catalog, CatalogEntry, Message, Provider, Rental
from smssync.providers.api.http_client import ProviderHttpClient
from smssync.providers.base import BaseProviderAdapter
from smssync.providers.normalizers import normalise_text, parse_timestamp
from smssync.providers.responses import SmspvaSmsResponse

__all__ = ["SmspvaAdapter", "weeks_for"]

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_BASE_URL: Final[str] = "https://smspva.com"
_PATH: Final[str] = "/api/rent.php"
_DEFAULT_COUNTRY: Final[str] = "RU"
_HOURS_PER_WEEK: Final[int] = 168

_AUTH_RE: Final[re.Pattern[str]] = re.compile(r"api\s*key|apikey|unauthori[sz]ed|banned", re.I)
_UNKNOWN_RENT_RE: Final[re.Pattern[str]] = re.compile(
    r"not\s+found|invalid\s+id|wrong\s+id|does\s+not\s+exist|expired", re.I
)


def weeks_for(duration_hours: int) -> int:
    """Return the number of billed weeks covering *duration_hours* (≥ 1)."""
    return max(1, math.ceil(duration_hours / _HOURS_PER_WEEK))


class SmspvaAdapter(BaseProviderAdapter):
    """Adapter for ``smspva.com`` week-based rentals.

    Args:
        api_key: SMSPVA API key.
        http_client: Optional pre-built client.
        timeout: Per-request timeout when the client is built here.

    Raises:
        ConfigError: If *api_key* is empty.
    """

    provider: ClassVar[Provider] = Provider.SMSPVA

    def __init__(
        self,
        api_key: str,
        *,
        http_client: ProviderHttpClient | None = None,
        timeout: float = 10.0,
    ) -> None:
        if not api_key:
            raise ConfigError("smspva adapter requires an API key")
        self._api_key = api_key
        self._http = http_client or ProviderHttpClient(self.provider, base_url=_BASE_URL, timeout=timeout)
        self._owns_http = http_client is None

    async def close(self) -> None:
        if self._owns_http:
            await self._http.close()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _call(self, method: str, **params: Any) -> dict[str, Any]:
        query: dict[str, Any] = {"method": method, "apikey": self._api_key}
        query.update({k: v for k, v in params.items() if v is not None})
        response = await self._http.get(_PATH, params=query)
        try:
            payload = response.json()
        except ValueError as exc:
            raise ParseError(self.provider, f"{method}: non-JSON response") from exc
        if not isinstance(payload, dict) or "status" not in payload:
            raise ParseError(self.provider, f"{method}: unexpected response shape")
        return payload

    def _raise_for_msg(self, method: str, payload: dict[str, Any]) -> None:
        msg = normalise_text(payload.get("msg") or payload.get("error_msg"), fallback="unknown error")
        if _AUTH_RE.search(msg):
            raise ProviderAuthError(self.provider, f"{method}: {msg}")
        if _UNKNOWN_RENT_RE.search(msg):
            raise InvalidRental(self.provider, f"{method}: {msg}")
        raise ProviderRejected(self.provider, f"{method}: {msg}", code=msg)

    async def _call_ok(self, method: str, **params: Any) -> Any:
        payload = await self._call(method, **params)
        if _as_int(payload.get("status")) != 1:
            self._raise_for_msg(method, payload)
        return payload.get("data")

    # ------------------------------------------------------------------
    # Contract
    # ------------------------------------------------------------------

    async def rent(self, service: str, duration_hours: int, country: str | None = None) -> Rental:
        target = (country or _DEFAULT_COUNTRY).upper()
        data = await self._call_ok(
            "create",
            dtype="week",
            dcount=weeks_for(duration_hours),
            country=target,
            service=service,
        )
        item = data[0] if isinstance(data, list) and data else data
        if not isinstance(item, dict):
            raise ParseError(self.provider, "create: empty rental payload")

        number = f"{item.get('ccode') or ''}{item.get('pnumber') or ''}".strip()
        if not item.get("id") or len(number) < 2:
            raise ParseError(self.provider, "create: response lacks id/pnumber")

        now = datetime.now(UTC)
        billed = timedelta(hours=weeks_for(duration_hours) * _HOURS_PER_WEEK)
        end = parse_timestamp(item.get("until"), now=now + billed)
        return Rental(
            phone_number=number,
            provider=self.provider,
            external_ref=str(item["id"]),
            created_at=now,
            end_date=max(end, now),
            service=service,
            country=target,
        )

    async def extend(self, rental: Rental, duration_hours: int) -> Rental:
        ref = self._require_ref(rental)
        weeks = weeks_for(duration_hours)
        data = await self._call_ok("prolong", id=ref, dtype="week", dcount=weeks)
        fallback = rental.end_date + timedelta(hours=weeks * _HOURS_PER_WEEK)
        until = data.get("until") if isinstance(data, dict) else None
        end = parse_timestamp(until, now=fallback) if until else fallback
        return rental.model_copy(update={"end_date": max(end, rental.created_at)})

    async def cancel(self, rental: Rental) -> None:
        ref = self._require_ref(rental)
        await self._call_ok("delete", id=ref)

    async def fetch_messages(self, rental: Rental) -> list[Message]:
        ref = self._require_ref(rental)
        payload = await self._call("sms", id=ref)

        if _as_int(payload.get("status")) != 1:
            msg = normalise_text(payload.get("msg") or payload.get("error_msg"))
            if msg and (_AUTH_RE.search(msg) or _UNKNOWN_RENT_RE.search(msg)):
                self._raise_for_msg("sms", payload)
            logger.debug("SMSPVA rental %s has no messages yet (%s).", ref, msg or "status 0")
            return []

        data = payload.get("data")
        if isinstance(data, list):
            data = {"SmsList": data}
        if not isinstance(data, dict):
            return []
        try:
            parsed = SmspvaSmsResponse.model_validate(data)
        except ValidationError as exc:
            raise ParseError(self.provider, f"sms: {exc.error_count()} invalid field(s)") from exc
        return parsed.to_messages(rental)

    async def fetch_catalog(self) -> Catalog:
        data = await self._call_ok("getdata", country=_DEFAULT_COUNTRY)
        services = data.get("services") if isinstance(data, dict) else None
        if not isinstance(services, list):
            raise ParseError(self.provider, "getdata: 'services' missing")

        entries = [
            CatalogEntry(
                service=str(item.get("service")),
                service_name=normalise_text(item.get("name"), fallback=str(item.get("service"))),
                country=_DEFAULT_COUNTRY,
                price=_as_float(item.get("price_day")),
            )
            for item in services
            if isinstance(item, dict) and item.get("service")
        ]
        return Catalog(provider=self.provider, entries=tuple(entries))


def _as_int(value: Any) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _as_float(value: Any) -> float | None:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None
