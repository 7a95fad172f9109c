"""Anosim rental adapter.

Anosim sells *products* (a rental type for one country, optionally bound to
one service) and turns an order for a product into an *order booking*: the
actual number.  The booking id is our ``external_ref``.

Endpoints (all under ``https://anosim.net/api/v1``, ``apikey`` query param):

* ``GET   /Products?countryId=``          – product list (rentals and activations)
* ``POST  /Orders?productId&amount=1``    – buy; returns a booking or an order
* ``GET   /OrderBookingsCurrent``         – active bookings (order fallback)
* ``PATCH /OrderBookings/{id}``           – cancel
* ``POST  /OrderBookings?orderBookingId&extentionInMinutes`` – extend
* ``POST  /OrderBookingsAutoRenewal?enable&orderBookingId``  – auto-renewal
* ``GET   /Sms/{bookingId}``              – messages

Only ``RentalFull`` and ``RentalService`` products are ever ordered;
activation products are filtered out.  A 404 on any booking endpoint means
the booking is gone and is reported as :class:`InvalidRental`.

Configuration
-------------
``ANOSIM_API_KEY``
    Account API key.  Leave empty to disable the provider.
``ANOSIM_COUNTRY_ID``
    Country used when a rent names none.  Default: ``98`` (Germany).
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from typing import Any, ClassVar, Final

import httpx
from pydantic import ValidationError

from smssync.core.exceptions import ConfigError, InvalidRental, ParseError, ProviderRejected
from smssync.core.models import Catalog, CatalogEntry, Message, Provider, Rental
from smssync.providers.api.http_client import ProviderHttpClient, ProviderHttpError
from smssync.providers.base import BaseProviderAdapter
from smssync.providers.catalog import SERVICE_NAMES
from smssync.providers.normalizers import normalise_text, parse_timestamp
from smssync.providers.responses import AnosimSmsResponse

__all__ = ["AnosimAdapter"]

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_BASE_URL: Final[str] = "https://anosim.net/api/v1"

_RENTAL_TYPES: Final[frozenset[str]] = frozenset({"RentalFull", "RentalService"})

#: Service code used to request a full (all-services) number.
FULL_SERVICE: Final[str] = "full"

#: Product ``service`` names differ slightly from our display names.
_PRODUCT_NAMES: Final[dict[str, str]] = {**SERVICE_NAMES, "go": "Google", "tw": "Twitter"}


class AnosimAdapter(BaseProviderAdapter):
    """Adapter for ``anosim.net`` full and per-service rentals.

    Args:
        api_key: Anosim API key.
        country_id: Default ``countryId`` for rents.
        http_client: Optional pre-built client.
        timeout: Per-request timeout when the client is built here.

    Raises:
        ConfigError: If *api_key* is empty.
    """

    provider: ClassVar[Provider] = Provider.ANOSIM
    supports_auto_renew: ClassVar[bool] = True

    def __init__(
        self,
        api_key: str,
        *,
        country_id: int = 98,
        http_client: ProviderHttpClient | None = None,
        timeout: float = 10.0,
    ) -> None:
        if not api_key:
            raise ConfigError("anosim adapter requires an API key")
        self._api_key = api_key
        self._country_id = country_id
        self._http = http_client or ProviderHttpClient(
            self.provider,
            base_url=_BASE_URL,
            timeout=timeout,
            headers={"Accept": "application/json"},
        )
        self._owns_http = http_client is None

    async def close(self) -> None:
        if self._owns_http:
            await self._http.close()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _params(self, **extra: Any) -> dict[str, Any]:
        return {"apikey": self._api_key, **{k: v for k, v in extra.items() if v is not None}}

    async def _booking_call(self, method: str, url: str, **params: Any) -> httpx.Response:
        """Call a booking endpoint, mapping 404 to :class:`InvalidRental`."""
        try:
            if method == "GET":
                return await self._http.get(url, params=self._params(**params))
            if method == "PATCH":
                return await self._http.patch(url, params=self._params(**params))
            return await self._http.post(url, params=self._params(**params))
        except ProviderHttpError as exc:
            if exc.status_code == 404:
                raise InvalidRental(self.provider, f"{method} {url}: booking not found") from exc
            raise

    def _json(self, response: httpx.Response, what: str) -> Any:
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise ParseError(self.provider, f"{what}: non-JSON response") from exc

    # ------------------------------------------------------------------
    # Contract
    # ------------------------------------------------------------------

    async def rent(self, service: str, duration_hours: int, country: str | None = None) -> Rental:
        country_id = int(country) if country and country.isdigit() else self._country_id
        product = await self._select_product(service, duration_hours, country_id)

        response = await self._http.post(
            "/Orders", params=self._params(productId=product["id"], amount=1, providerId=0)
        )
        order = self._json(response, "POST /Orders")
        booking = await self._booking_from_order(order)

        now = datetime.now(UTC)
        end = parse_timestamp(
            booking.get("endDate") or booking.get("endTime"),
            now=now + timedelta(hours=duration_hours),
        )
        number = booking.get("number") or (booking.get("simCard") or {}).get("phoneNumber")
        return Rental(
            phone_number=str(number),
            provider=self.provider,
            external_ref=str(booking["id"]),
            created_at=now,
            end_date=max(end, now),
            service=service,
            country=str(booking.get("country") or product.get("country") or country_id),
        )

    async def extend(self, rental: Rental, duration_hours: int) -> Rental:
        ref = self._require_ref(rental)
        response = await self._booking_call(
            "POST", "/OrderBookings", orderBookingId=ref, extentionInMinutes=duration_hours * 60
        )
        booking = self._json(response, "POST /OrderBookings")
        fallback = rental.end_date + timedelta(hours=duration_hours)
        raw_end = (booking.get("endDate") or booking.get("endTime")) if isinstance(booking, dict) else None
        end = parse_timestamp(raw_end, now=fallback) if raw_end else fallback
        return rental.model_copy(update={"end_date": max(end, rental.created_at)})

    async def cancel(self, rental: Rental) -> None:
        ref = self._require_ref(rental)
        await self._booking_call("PATCH", f"/OrderBookings/{ref}")

    async def set_auto_renew(self, rental: Rental, enabled: bool) -> Rental:
        ref = self._require_ref(rental)
        await self._booking_call(
            "POST", "/OrderBookingsAutoRenewal", enable="1" if enabled else "0", orderBookingId=ref
        )
        return rental.model_copy(update={"auto_renew": enabled})

    async def fetch_messages(self, rental: Rental) -> list[Message]:
        ref = self._require_ref(rental)
        response = await self._booking_call("GET", f"/Sms/{ref}")
        payload = self._json(response, "GET /Sms")
        if payload is None:
            return []
        if isinstance(payload, dict):
            payload = payload.get("sms") or payload.get("items") or []
        try:
            parsed = AnosimSmsResponse.model_validate({"sms": payload})
        except ValidationError as exc:
            raise ParseError(self.provider, f"GET /Sms: {exc.error_count()} invalid field(s)") from exc
        return parsed.to_messages(rental)

    async def fetch_catalog(self) -> Catalog:
        products = await self._rental_products(self._country_id)
        entries: dict[tuple[str, str], CatalogEntry] = {}
        for product in products:
            code = self._service_code(product)
            country = str(product.get("country") or self._country_id)
            price = _as_float(product.get("price"))
            current = entries.get((code, country))
            if current is not None and (price is None or (current.price or 0) <= price):
                continue
            entries[(code, country)] = CatalogEntry(
                service=code,
                service_name=SERVICE_NAMES.get(code, normalise_text(product.get("service"), fallback=code)),
                country=country,
                country_name=country,
                price=price,
            )
        return Catalog(provider=self.provider, entries=tuple(entries.values()))

    # ------------------------------------------------------------------
    # Products and orders
    # ------------------------------------------------------------------

    async def _rental_products(self, country_id: int) -> list[dict[str, Any]]:
        response = await self._http.get("/Products", params=self._params(countryId=country_id))
        products = self._json(response, "GET /Products")
        if not isinstance(products, list):
            raise ParseError(self.provider, "GET /Products: expected a list")
        return [p for p in products if isinstance(p, dict) and p.get("rentalType") in _RENTAL_TYPES]

    def _service_code(self, product: dict[str, Any]) -> str:
        if product.get("rentalType") == "RentalFull" or not normalise_text(product.get("service")):
            return FULL_SERVICE
        name = normalise_text(product.get("service")).lower()
        for code, display in _PRODUCT_NAMES.items():
            if display.lower() in name or name in display.lower():
                return code
        return name

    async def _select_product(self, service: str, duration_hours: int, country_id: int) -> dict[str, Any]:
        """Pick the product to order: cheapest matching one, preferring a duration match."""
        products = await self._rental_products(country_id)
        if service == FULL_SERVICE or service.startswith(f"{FULL_SERVICE}_"):
            candidates = [p for p in products if p.get("rentalType") == "RentalFull"]
        else:
            candidates = [
                p for p in products if p.get("rentalType") == "RentalService" and self._service_code(p) == service
            ]
        if not candidates:
            raise ProviderRejected(
                self.provider,
                f"no rental product for service {service!r} in country {country_id}",
                code="PRODUCT_NOT_FOUND",
            )

        def _duration_hours(product: dict[str, Any]) -> int | None:
            minutes = _as_float(product.get("durationInMinutes") or product.get("rentalDurationInMinutes"))
            return int(minutes // 60) if minutes else None

        exact = [p for p in candidates if _duration_hours(p) == duration_hours]
        pool = exact or candidates
        return min(pool, key=lambda p: _as_float(p.get("price")) or float("inf"))

    async def _booking_from_order(self, order: Any) -> dict[str, Any]:
        """Extract the booking from a ``POST /Orders`` response.

        Anosim answers with the booking itself, with an order holding
        ``orderBookings``, or with a bare order id.  The last case is resolved
        through the list of current bookings.
        """
        if not isinstance(order, dict):
            raise ParseError(self.provider, "POST /Orders: unexpected response shape")
        if order.get("number") and order.get("id"):
            return order

        bookings = order.get("orderBookings")
        if isinstance(bookings, list) and bookings and isinstance(bookings[0], dict):
            booking = bookings[0]
            if booking.get("id") and (booking.get("number") or (booking.get("simCard") or {}).get("phoneNumber")):
                return booking

        if order.get("id"):
            logger.debug("Anosim order %s has no booking inline; checking current bookings.", order["id"])
            response = await self._http.get("/OrderBookingsCurrent", params=self._params())
            current = self._json(response, "GET /OrderBookingsCurrent") or []
            now = datetime.now(UTC)
            for booking in current if isinstance(current, list) else []:
                if not isinstance(booking, dict) or not booking.get("id") or not booking.get("number"):
                    continue
                end = booking.get("endDate")
                if end is None or parse_timestamp(end, now=now) > now:
                    return booking

        raise ParseError(self.provider, "POST /Orders: order created but no number allocated")


def _as_float(value: Any) -> float | None:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None
