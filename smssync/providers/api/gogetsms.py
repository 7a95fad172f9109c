"""GoGetSMS rental adapter.

GoGetSMS speaks the SMS-Activate handler protocol with two differences:

* Countries are two-letter codes.  Stock is thin, so a rent that fails with
  ``BAD_COUNTRY`` is retried against each country of
  ``GOGETSMS_FALLBACK_COUNTRIES`` in order (default ``GB, US, RU``).
* The API allows 10 requests per minute per key.  A client-side
  :class:`~smssync.providers.api.rate_limit.SlidingWindowRateLimiter` keeps
  us under that instead of collecting 429s.  That budget is too small for
  the 15 s auto-refresh loop, so the provider opts out of it.

Configuration
-------------
``GOGETSMS_API_KEY``
    Account API key.  Leave empty to disable the provider.
``GOGETSMS_RATE_LIMIT`` / ``GOGETSMS_RATE_WINDOW_S``
    Client-side request budget.  Default: 10 per 60 s.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import ClassVar

from smssync.core.exceptions import ProviderRejected
from smssync.core.models import Provider, Rental
from smssync.providers.api.handler_api import HandlerApiAdapter
from smssync.providers.api.http_client import ProviderHttpClient
from smssync.providers.api.rate_limit import SlidingWindowRateLimiter
from smssync.providers.responses import GoGetSmsStatusResponse

__all__ = ["GoGetSmsAdapter"]

logger = logging.getLogger(__name__)


class GoGetSmsAdapter(HandlerApiAdapter):
    """Handler-API adapter for ``www.gogetsms.com``.

    Args:
        api_key: GoGetSMS API key.
        http_client: Optional pre-built client.
        timeout: Per-request timeout when the client is built here.
        fallback_countries: Countries tried after ``BAD_COUNTRY``.
        rate_limiter: Limiter shared by every request of this adapter.
    """

    provider: ClassVar[Provider] = Provider.GOGETSMS
    supports_continuous_polling: ClassVar[bool] = False
    base_url: ClassVar[str] = "https://www.gogetsms.com"
    path: ClassVar[str] = "/handler_api.php"
    default_country: ClassVar[str] = "GB"
    response_model = GoGetSmsStatusResponse

    def __init__(
        self,
        api_key: str,
        *,
        http_client: ProviderHttpClient | None = None,
        timeout: float = 10.0,
        fallback_countries: Sequence[str] = ("GB", "US", "RU"),
        rate_limiter: SlidingWindowRateLimiter | None = None,
    ) -> None:
        self._rate_limiter = rate_limiter or SlidingWindowRateLimiter(10, 60.0)
        self._fallback_countries = [c.upper() for c in fallback_countries]
        super().__init__(api_key, http_client=http_client, timeout=timeout)

    def _build_http_client(self, timeout: float) -> ProviderHttpClient:
        return ProviderHttpClient(
            self.provider,
            base_url=self.base_url,
            timeout=timeout,
            rate_limiter=self._rate_limiter,
        )

    async def rent(self, service: str, duration_hours: int, country: str | None = None) -> Rental:
        first = (country or self.default_country).upper()
        candidates = [first, *(c for c in self._fallback_countries if c != first)]

        last_exc: ProviderRejected | None = None
        for candidate in candidates:
            try:
                return await super().rent(service, duration_hours, candidate)
            except ProviderRejected as exc:
                if exc.code != "BAD_COUNTRY":
                    raise
                logger.info("GoGetSMS has no %s numbers for %r; trying next country.", candidate, service)
                last_exc = exc

        assert last_exc is not None
        raise last_exc
