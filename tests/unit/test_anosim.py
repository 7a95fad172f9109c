"""Unit tests for the Anosim adapter.

Tests cover:
- Product selection (full vs. per-service, duration match, cheapest).
- Order responses: inline booking, ``orderBookings`` and the
  ``/OrderBookingsCurrent`` fallback.
- Extend, cancel and auto-renewal request shapes.
- ``/Sms`` parsing and the 404 → ``InvalidRental`` mapping.
- Catalog de-duplication by cheapest price.
"""

from __future__ import annotations

from typing import Any

import httpx
import pytest

from smssync.core.exceptions import ConfigError, InvalidRental, ParseError, ProviderRejected
from smssync.core.models import Provider
from smssync.providers.api.anosim import FULL_SERVICE, AnosimAdapter
from smssync.providers.api.http_client import ProviderHttpClient

PRODUCTS: list[dict[str, Any]] = [
    {"id": 1, "rentalType": "RentalFull", "service": "", "price": 9.0, "durationInMinutes": 10080, "country": "Germany"},
    {"id": 2, "rentalType": "RentalFull", "service": "", "price": 3.0, "durationInMinutes": 1440, "country": "Germany"},
    {"id": 3, "rentalType": "RentalService", "service": "WhatsApp", "price": 1.2, "durationInMinutes": 1440, "country": "Germany"},
    {"id": 4, "rentalType": "RentalService", "service": "WhatsApp", "price": 0.8, "durationInMinutes": 43200, "country": "Germany"},
    {"id": 5, "rentalType": "Activation", "service": "WhatsApp", "price": 0.1, "country": "Germany"},
]


class _Api:
    """Routes mock requests by ``(method, path)``."""

    def __init__(self, routes: dict[tuple[str, str], httpx.Response]) -> None:
        self.routes = routes
        self.calls: list[tuple[str, str, dict[str, str]]] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path.removeprefix("/api/v1")
        self.calls.append((request.method, path, dict(request.url.params)))
        response = self.routes.get((request.method, path))
        if response is None:
            return httpx.Response(404, text="no route")
        return response


def _adapter(api: _Api) -> AnosimAdapter:
    http = ProviderHttpClient(
        "anosim", base_url="https://anosim.net/api/v1", transport=httpx.MockTransport(api), max_attempts=1
    )
    return AnosimAdapter("ano-key", http_client=http)


class TestRent:
    def test_requires_key(self) -> None:
        with pytest.raises(ConfigError):
            AnosimAdapter("")

    async def test_full_rental_prefers_duration_match(self) -> None:
        api = _Api(
            {
                ("GET", "/Products"): httpx.Response(200, json=PRODUCTS),
                ("POST", "/Orders"): httpx.Response(
                    200, json={"id": 555, "number": "+4917600000001", "endDate": "2030-01-08T00:00:00Z"}
                ),
            }
        )
        rental = await _adapter(api).rent(FULL_SERVICE, 168)

        assert api.calls[0][2] == {"apikey": "ano-key", "countryId": "98"}
        order_params = api.calls[1][2]
        assert order_params["productId"] == "1"
        assert order_params["amount"] == "1"
        assert rental.provider == Provider.ANOSIM
        assert rental.external_ref == "555"
        assert rental.phone_number == "+4917600000001"
        assert rental.country == "Germany"

    async def test_service_rental_cheapest_without_duration_match(self) -> None:
        api = _Api(
            {
                ("GET", "/Products"): httpx.Response(200, json=PRODUCTS),
                ("POST", "/Orders"): httpx.Response(
                    200, json={"id": 9, "orderBookings": [{"id": 777, "number": "+4917600000002"}]}
                ),
            }
        )
        rental = await _adapter(api).rent("wa", 5, country="98")
        assert api.calls[1][2]["productId"] == "4"
        assert rental.external_ref == "777"

    async def test_order_resolved_through_current_bookings(self) -> None:
        api = _Api(
            {
                ("GET", "/Products"): httpx.Response(200, json=PRODUCTS),
                ("POST", "/Orders"): httpx.Response(200, json={"id": 9}),
                ("GET", "/OrderBookingsCurrent"): httpx.Response(
                    200,
                    json=[
                        {"id": 1, "number": "+1", "endDate": "2000-01-01T00:00:00Z"},
                        {"id": 2, "number": "+4917600000003", "endDate": "2099-01-01T00:00:00Z"},
                    ],
                ),
            }
        )
        rental = await _adapter(api).rent("wa", 24)
        assert rental.external_ref == "2"
        assert rental.phone_number == "+4917600000003"

    async def test_order_without_number(self) -> None:
        api = _Api(
            {
                ("GET", "/Products"): httpx.Response(200, json=PRODUCTS),
                ("POST", "/Orders"): httpx.Response(200, json={"status": "pending"}),
            }
        )
        with pytest.raises(ParseError, match="no number"):
            await _adapter(api).rent("wa", 24)

    async def test_unknown_service_rejected(self) -> None:
        api = _Api({("GET", "/Products"): httpx.Response(200, json=PRODUCTS)})
        with pytest.raises(ProviderRejected) as exc_info:
            await _adapter(api).rent("tg", 24)
        assert exc_info.value.code == "PRODUCT_NOT_FOUND"
        assert [c[1] for c in api.calls] == ["/Products"]

    async def test_products_not_a_list(self) -> None:
        api = _Api({("GET", "/Products"): httpx.Response(200, json={"error": "x"})})
        with pytest.raises(ParseError):
            await _adapter(api).rent("wa", 24)


class TestBookings:
    async def test_extend_sends_minutes(self, make_rental) -> None:
        api = _Api({("POST", "/OrderBookings"): httpx.Response(200, json={"endDate": "2031-01-01T00:00:00Z"})})
        rental = make_rental(provider=Provider.ANOSIM, external_ref="555")
        updated = await _adapter(api).extend(rental, 24)
        params = api.calls[0][2]
        assert params["orderBookingId"] == "555"
        assert params["extentionInMinutes"] == "1440"
        assert updated.end_date.year == 2031

    async def test_extend_unknown_booking(self, make_rental) -> None:
        api = _Api({})
        with pytest.raises(InvalidRental, match="booking not found"):
            await _adapter(api).extend(make_rental(provider=Provider.ANOSIM), 24)

    async def test_cancel_patches_booking(self, make_rental) -> None:
        api = _Api({("PATCH", "/OrderBookings/555"): httpx.Response(204)})
        await _adapter(api).cancel(make_rental(provider=Provider.ANOSIM, external_ref="555"))
        assert api.calls[0][:2] == ("PATCH", "/OrderBookings/555")

    async def test_auto_renew(self, make_rental) -> None:
        api = _Api({("POST", "/OrderBookingsAutoRenewal"): httpx.Response(200)})
        adapter = _adapter(api)
        assert adapter.supports_auto_renew
        updated = await adapter.set_auto_renew(make_rental(provider=Provider.ANOSIM, external_ref="555"), True)
        assert updated.auto_renew is True
        assert api.calls[0][2]["enable"] == "1"
        assert api.calls[0][2]["orderBookingId"] == "555"


class TestFetchMessages:
    async def test_list_payload(self, make_rental) -> None:
        api = _Api(
            {
                ("GET", "/Sms/555"): httpx.Response(
                    200,
                    json=[
                        {"messageSender": "Google", "messageText": "G-123456 is your code", "messageDate": "2026-02-01T10:31:00Z"},
                        {"messageSender": "WhatsApp", "messageText": "Code 9988", "messageDate": "2026-02-01T10:30:00Z"},
                    ],
                )
            }
        )
        rental = make_rental(provider=Provider.ANOSIM, external_ref="555")
        messages = await _adapter(api).fetch_messages(rental)
        assert [m.sender for m in messages] == ["WhatsApp", "Google"]

    async def test_empty_body(self, make_rental) -> None:
        api = _Api({("GET", "/Sms/555"): httpx.Response(200)})
        assert await _adapter(api).fetch_messages(make_rental(provider=Provider.ANOSIM, external_ref="555")) == []

    async def test_dict_payload(self, make_rental) -> None:
        api = _Api({("GET", "/Sms/555"): httpx.Response(200, json={"sms": [{"messageText": "hello"}]})})
        (msg,) = await _adapter(api).fetch_messages(make_rental(provider=Provider.ANOSIM, external_ref="555"))
        assert msg.body == "hello"

    async def test_404_is_invalid_rental(self, make_rental) -> None:
        api = _Api({})
        with pytest.raises(InvalidRental):
            await _adapter(api).fetch_messages(make_rental(provider=Provider.ANOSIM, external_ref="555"))


class TestCatalog:
    async def test_cheapest_entry_kept(self) -> None:
        api = _Api({("GET", "/Products"): httpx.Response(200, json=PRODUCTS)})
        catalog = await _adapter(api).fetch_catalog()
        by_service = {e.service: e for e in catalog.entries}
        assert set(by_service) == {"full", "wa"}
        assert by_service["full"].price == 3.0
        assert by_service["wa"].price == 0.8
        assert by_service["wa"].service_name == "WhatsApp"
