"""Base adapter for SMS-Activate-compatible ``handler_api.php`` providers.

SMS-Activate and GoGetSMS expose the same protocol: a single endpoint
taking ``api_key`` and ``action`` query parameters.  Successful calls return
JSON with ``"status": "success"``; failures come back either as a bare
string token (``BAD_KEY``, ``NO_NUMBERS``, ...) or as
``{"status": "error", "message": "<TOKEN>"}``.

Rental actions used here:

=============================  ============================================
Action                         Purpose
=============================  ============================================
``getRentNumber``              rent (service, rent_time in hours, country)
``continueRentNumber``         extend (id, rent_time)
``setRentStatus``              cancel (id, status=2) / finish (status=1)
``getRentStatus``              messages (id) → ``values`` map
``getRentServicesAndCountries`` catalog
=============================  ============================================

Subclasses only declare endpoints, defaults and the response variant; the
error-token translation lives in :func:`raise_for_token`.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from typing import Any, ClassVar, Final

import httpx
from pydantic import ValidationError

from smssync.core.exceptions import (
    ConfigError,
    InvalidRental,
    ParseError,
    ProviderAuthError,
    ProviderRejected,
    RateLimited,
)
from smssync.core.models import Catalog, CatalogEntry, Message, Rental
from smssync.providers.api.http_client import ProviderHttpClient
from smssync.providers.base import BaseProviderAdapter
from smssync.providers.catalog import SERVICE_NAMES
from smssync.providers.normalizers import parse_timestamp
from smssync.providers.responses import GoGetSmsStatusResponse, SmsActivateStatusResponse

__all__ = ["HandlerApiAdapter", "raise_for_token", "decode_handler_response"]

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Error tokens
# ---------------------------------------------------------------------------

_AUTH_TOKENS: Final[frozenset[str]] = frozenset(
    {"BAD_KEY", "NO_KEY", "NOT_AUTHORIZED", "ACCOUNT_BLOCKED", "BANNED"}
)
_INVALID_RENTAL_TOKENS: Final[frozenset[str]] = frozenset(
    {"NO_ID_RENT", "INVALID_PHONE", "WRONG_ID", "STATUS_CANCEL", "STATUS_FINISH", "ORDER_NOT_FOUND"}
)
#: Tokens that mean "no SMS yet" on getRentStatus.
_EMPTY_TOKENS: Final[frozenset[str]] = frozenset({"STATUS_WAIT_CODE", "NO_SMS", "NO_MESSAGES"})
_RATE_TOKENS: Final[frozenset[str]] = frozenset({"TOO_MANY_REQUESTS", "LIMIT_EXCEEDED", "RATE_LIMIT"})
#: Plain-text acknowledgements returned by older setRentStatus versions.
_ACK_TOKENS: Final[frozenset[str]] = frozenset({"SUCCESS", "ACCESS_CANCEL", "ACCESS_FINISH"})

_CANCEL_STATUS: Final[str] = "2"


def raise_for_token(provider: str, token: str, action: str) -> None:
    """Translate a handler-API error token into a typed provider error.

    Raises:
        ProviderAuthError: Key missing, wrong or banned.
        InvalidRental: The rental id is unknown or already closed.
        RateLimited: The provider signalled throttling.
        ProviderRejected: Any other refusal (``NO_NUMBERS``, ``NO_BALANCE``...).
    """
    normalised = token.strip().upper()
    if normalised in _AUTH_TOKENS:
        raise ProviderAuthError(provider, f"{action}: {normalised}")
    if normalised in _INVALID_RENTAL_TOKENS:
        raise InvalidRental(provider, f"{action}: {normalised}")
    if normalised in _RATE_TOKENS:
        raise RateLimited(provider)
    raise ProviderRejected(provider, f"{action}: {normalised}", code=normalised)


def decode_handler_response(response: httpx.Response) -> dict[str, Any] | str:
    """Return the JSON object of *response*, or its stripped text token."""
    try:
        payload = response.json()
    except ValueError:
        return response.text.strip()
    if isinstance(payload, dict):
        return payload
    return str(payload).strip()


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------


class HandlerApiAdapter(BaseProviderAdapter):
    """Shared implementation of the handler-API rental flow.

    Args:
        api_key: Provider API key.
        http_client: Optional pre-built client (tests inject one backed by
            :class:`httpx.MockTransport`).
        timeout: Per-request timeout when the client is built here.

    Raises:
        ConfigError: If *api_key* is empty.
    """

    base_url: ClassVar[str]
    path: ClassVar[str] = "/handler_api.php"
    default_country: ClassVar[str]
    response_model: ClassVar[type[SmsActivateStatusResponse] | type[GoGetSmsStatusResponse]]

    def __init__(
        self,
        api_key: str,
        *,
        http_client: ProviderHttpClient | None = None,
        timeout: float = 10.0,
    ) -> None:
        if not api_key:
            raise ConfigError(f"{self.provider} adapter requires an API key")
        self._api_key = api_key
        self._http = http_client or self._build_http_client(timeout)
        self._owns_http = http_client is None

    def _build_http_client(self, timeout: float) -> ProviderHttpClient:
        return ProviderHttpClient(self.provider, base_url=self.base_url, timeout=timeout)

    async def close(self) -> None:
        if self._owns_http:
            await self._http.close()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _call(self, action: str, **params: Any) -> dict[str, Any] | str:
        query = {"api_key": self._api_key, "action": action}
        query.update({k: v for k, v in params.items() if v is not None})
        response = await self._http.get(self.path, params=query)
        return decode_handler_response(response)

    async def _call_ok(self, action: str, **params: Any) -> dict[str, Any]:
        """Call *action* and return its success payload or raise a typed error."""
        payload = await self._call(action, **params)
        if isinstance(payload, str):
            if payload.upper() in _ACK_TOKENS:
                return {"status": "success"}
            raise_for_token(self.provider, payload, action)
        assert isinstance(payload, dict)
        if str(payload.get("status", "")).lower() == "error":
            raise_for_token(self.provider, str(payload.get("message") or "UNKNOWN_ERROR"), action)
        return payload

    def _rent_params(self, service: str, duration_hours: int, country: str) -> dict[str, Any]:
        return {"service": service, "rent_time": duration_hours, "country": country}

    # ------------------------------------------------------------------
    # Contract
    # ------------------------------------------------------------------

    async def rent(self, service: str, duration_hours: int, country: str | None = None) -> Rental:
        target = country or self.default_country
        payload = await self._call_ok(
            "getRentNumber", **self._rent_params(service, duration_hours, target)
        )
        return self._rental_from_phone(payload, service, duration_hours, target)

    async def extend(self, rental: Rental, duration_hours: int) -> Rental:
        ref = self._require_ref(rental)
        payload = await self._call_ok("continueRentNumber", id=ref, rent_time=duration_hours)
        phone = payload.get("phone") if isinstance(payload.get("phone"), dict) else {}
        fallback = rental.end_date + timedelta(hours=duration_hours)
        end = parse_timestamp(phone.get("endDate"), now=fallback) if phone else fallback
        return rental.model_copy(update={"end_date": max(end, rental.created_at)})

    async def cancel(self, rental: Rental) -> None:
        ref = self._require_ref(rental)
        await self._call_ok("setRentStatus", id=ref, status=_CANCEL_STATUS)
        logger.debug("%s rental %s canceled upstream (id=%s).", self.provider, rental.id, ref)

    async def fetch_messages(self, rental: Rental) -> list[Message]:
        ref = self._require_ref(rental)
        payload = await self._call("getRentStatus", id=ref)

        if isinstance(payload, str):
            if payload.upper() in _EMPTY_TOKENS:
                return []
            raise_for_token(self.provider, payload, "getRentStatus")
        assert isinstance(payload, dict)
        if str(payload.get("status", "")).lower() == "error":
            token = str(payload.get("message") or "")
            if token.upper() in _EMPTY_TOKENS:
                return []
            if token.upper() not in (_AUTH_TOKENS | _INVALID_RENTAL_TOKENS | _RATE_TOKENS):
                raise ParseError(self.provider, f"getRentStatus: unexpected error {token!r}")
            raise_for_token(self.provider, token, "getRentStatus")

        try:
            parsed = self.response_model.model_validate(payload)
        except ValidationError as exc:
            raise ParseError(self.provider, f"getRentStatus: {exc.error_count()} invalid field(s)") from exc
        return parsed.to_messages(rental)

    async def fetch_catalog(self) -> Catalog:
        payload = await self._call_ok(
            "getRentServicesAndCountries", rent_time=4, country=self.default_country
        )
        services = payload.get("services")
        if not isinstance(services, dict):
            raise ParseError(self.provider, "getRentServicesAndCountries: 'services' missing")

        entries: list[CatalogEntry] = []
        for code, info in services.items():
            cost = info.get("cost") if isinstance(info, dict) else None
            try:
                price = float(cost) if cost is not None else None
            except (TypeError, ValueError):
                price = None
            entries.append(
                CatalogEntry(
                    service=str(code),
                    service_name=SERVICE_NAMES.get(str(code), str(code)),
                    country=self.default_country,
                    price=price,
                )
            )
        return Catalog(provider=self.provider, entries=tuple(entries))

    # ------------------------------------------------------------------
    # Mapping
    # ------------------------------------------------------------------

    def _rental_from_phone(
        self,
        payload: dict[str, Any],
        service: str,
        duration_hours: int,
        country: str,
    ) -> Rental:
        phone = payload.get("phone")
        if not isinstance(phone, dict) or not phone.get("id") or not phone.get("number"):
            raise ParseError(self.provider, "getRentNumber: response lacks phone id/number")

        now = datetime.now(UTC)
        end = parse_timestamp(phone.get("endDate"), now=now + timedelta(hours=duration_hours))
        return Rental(
            phone_number=str(phone["number"]),
            provider=self.provider,
            external_ref=str(phone["id"]),
            created_at=now,
            end_date=max(end, now),
            service=service,
            country=country,
        )
