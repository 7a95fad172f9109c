"""receive-sms-online.info inbox scraper.

receive-sms-online has no API.  Each number comes with a *private URL*,
``https://receive-sms-online.info/private.php?phone=<number>&key=<key>``,
whose HTML page lists the received SMS in a table.  The private URL is the
rental's ``external_ref``; there is no upstream account, so rent, extend
and cancel are local bookkeeping only.

Fetching
--------
The page is fetched through an ordered chain of strategies that share one
time budget (``SCRAPE_TIMEOUT_S``, default 15 s):

1. ``direct`` – server-side GET with browser headers.
2. ``relay-N`` – each template of ``SCRAPE_RELAY_URLS`` (allorigins-style);
   the ``/raw`` relay returns the HTML, the ``/get`` relay wraps it in
   ``{"contents": "<html>"}``.

The first success wins.  When every strategy fails the adapter raises a
single :class:`~smssync.core.exceptions.ProviderUnavailable` listing each
strategy's error.  All strategies feed the same parser, so a given page
yields the same messages whichever path fetched it.

Requests to one private URL are paced: 3 s between fetches, doubled per
consecutive failure up to 8 × (24 s).

Parsing
-------
Rows are read with BeautifulSoup.  The primary layout tags cells with
``data-label`` attributes (``From``, ``Message``, ``Added``); older pages use
a plain ``sender | message | added`` table whose first row is a header.
Rows whose sender or body is a column title are dropped.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import ClassVar, Final
from urllib.parse import parse_qs, quote, urlparse

from bs4 import BeautifulSoup, Tag

from smssync.core import events
from smssync.core.exceptions import InvalidRental, ParseError, ProviderError, ProviderUnavailable
from smssync.core.models import Catalog, Message, Provider, Rental
from smssync.providers.api.http_client import ProviderHttpClient
from smssync.providers.base import BaseProviderAdapter
from smssync.providers.catalog import static_catalog
from smssync.providers.normalizers import normalise_text
from smssync.providers.responses import ScrapedPage, ScrapedRow

__all__ = [
    "ReceiveSmsOnlineAdapter",
    "UrlPacer",
    "parse_inbox",
    "validate_private_url",
]

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_HOST: Final[str] = "receive-sms-online.info"

_BROWSER_HEADERS: Final[dict[str, str]] = {
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.5",
    "DNT": "1",
    "Upgrade-Insecure-Requests": "1",
}

_HEADER_SENDERS: Final[frozenset[str]] = frozenset({"from", "sender", "field"})
_HEADER_BODIES: Final[frozenset[str]] = frozenset(
    {"message", "messages", "sms", "sms messages", "content", "description"}
)

#: Pacing between fetches of one URL.
_PACE_BASE_S: Final[float] = 3.0
_PACE_MAX_FACTOR: Final[int] = 8

#: Added to the chain budget for the engine's outer timeout, so the chain's
#: own "all fetch strategies failed" error is the one that surfaces.
_ENGINE_GRACE_S: Final[float] = 1.0


# ---------------------------------------------------------------------------
# URL validation
# ---------------------------------------------------------------------------


def validate_private_url(url: str | None) -> tuple[str, str]:
    """Check that *url* is a receive-sms-online private inbox URL.

    Returns:
        ``(phone, key)`` taken from the query string.

    Raises:
        InvalidRental: If the host, path or query does not match.
    """
    if not url:
        raise InvalidRental(Provider.RECEIVE_SMS_ONLINE, "private URL is empty")
    parsed = urlparse(url.strip())
    host = (parsed.hostname or "").lower()
    if parsed.scheme not in {"http", "https"} or host.removeprefix("www.") != _HOST:
        raise InvalidRental(Provider.RECEIVE_SMS_ONLINE, f"not a {_HOST} URL: {url!r}")
    if "private.php" not in parsed.path:
        raise InvalidRental(Provider.RECEIVE_SMS_ONLINE, f"URL is not a private inbox: {url!r}")
    query = parse_qs(parsed.query)
    phone = (query.get("phone") or [""])[0].strip()
    key = (query.get("key") or [""])[0].strip()
    if not phone or not key:
        raise InvalidRental(Provider.RECEIVE_SMS_ONLINE, f"URL lacks phone/key parameters: {url!r}")
    return phone, key


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def _is_content_row(sender: str, body: str) -> bool:
    if not sender or not body:
        return False
    return sender.lower() not in _HEADER_SENDERS and body.lower() not in _HEADER_BODIES


def _labelled_cell(row: Tag, label: str) -> str:
    cell = row.select_one(f'td[data-label^="{label}"]')
    return normalise_text(cell.get_text(" ")) if cell is not None else ""


def _parse_labelled(soup: BeautifulSoup) -> list[ScrapedRow]:
    rows: list[ScrapedRow] = []
    for row in soup.select("tr"):
        if row.select_one('td[data-label^="From"]') is None:
            continue
        sender = _labelled_cell(row, "From")
        body = _labelled_cell(row, "Message")
        if _is_content_row(sender, body):
            rows.append(
                ScrapedRow(sender=sender, body=body, added=_labelled_cell(row, "Added"), raw_html=str(row))
            )
    return rows


def _parse_generic(soup: BeautifulSoup) -> list[ScrapedRow]:
    rows: list[ScrapedRow] = []
    for table in soup.find_all("table"):
        for index, row in enumerate(table.find_all("tr")):
            cells = row.find_all(["td", "th"])
            if index == 0 or len(cells) < 3 or all(c.name == "th" for c in cells):
                continue
            sender, body, added = (normalise_text(c.get_text(" ")) for c in cells[:3])
            if _is_content_row(sender, body):
                rows.append(ScrapedRow(sender=sender, body=body, added=added, raw_html=str(row)))
    return rows


def parse_inbox(html: str) -> list[ScrapedRow]:
    """Extract message rows from an inbox page, in page order.

    The ``data-label`` layout is tried first; the generic table layout only
    when it yields nothing.
    """
    soup = BeautifulSoup(html, "html.parser")
    rows = _parse_labelled(soup)
    if rows:
        return rows
    return _parse_generic(soup)


# ---------------------------------------------------------------------------
# Pacing
# ---------------------------------------------------------------------------


@dataclass
class _PaceState:
    last_fetch: float | None = None
    failures: int = 0


class UrlPacer:
    """Per-URL minimum spacing between fetches with failure backoff.

    Args:
        base_s: Spacing after a success.
        max_factor: Cap of the ``2 ** failures`` multiplier.
        clock: Monotonic clock; injectable for tests.
        sleep: Coroutine used to wait; injectable for tests.
    """

    def __init__(
        self,
        base_s: float = _PACE_BASE_S,
        max_factor: int = _PACE_MAX_FACTOR,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._base_s = base_s
        self._max_factor = max_factor
        self._clock = clock
        self._sleep = sleep
        self._states: dict[str, _PaceState] = {}

    def interval(self, url: str) -> float:
        """Current required spacing for *url* in seconds."""
        failures = self._states.get(url, _PaceState()).failures
        return self._base_s * min(2**failures, self._max_factor)

    async def wait(self, url: str) -> None:
        """Sleep until *url* may be fetched again, then mark it fetched."""
        state = self._states.setdefault(url, _PaceState())
        if state.last_fetch is not None:
            remaining = state.last_fetch + self.interval(url) - self._clock()
            if remaining > 0:
                logger.debug("Pacing %s: waiting %.1f s.", url, remaining)
                await self._sleep(remaining)
        state.last_fetch = self._clock()

    def record_success(self, url: str) -> None:
        self._states.setdefault(url, _PaceState()).failures = 0

    def record_failure(self, url: str) -> None:
        self._states.setdefault(url, _PaceState()).failures += 1


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------

_Strategy = tuple[str, Callable[[str], Awaitable[str]]]


class ReceiveSmsOnlineAdapter(BaseProviderAdapter):
    """Scraping adapter for receive-sms-online private inboxes.

    Args:
        relay_urls: Relay URL templates containing ``{url}``.
        timeout: Total budget for one fetch across all strategies.
        http_client: Optional pre-built client (one attempt per request;
            the strategy chain is the retry).
        pacer: Optional :class:`UrlPacer`.
    """

    provider: ClassVar[Provider] = Provider.RECEIVE_SMS_ONLINE
    supports_continuous_polling: ClassVar[bool] = True

    def __init__(
        self,
        *,
        relay_urls: Sequence[str] = (),
        timeout: float = 15.0,
        http_client: ProviderHttpClient | None = None,
        pacer: UrlPacer | None = None,
    ) -> None:
        self._relay_urls = list(relay_urls)
        self._timeout = timeout
        self._http = http_client or ProviderHttpClient(
            self.provider, timeout=timeout, max_attempts=1, rotate_user_agent=True
        )
        self._owns_http = http_client is None
        self._pacer = pacer or UrlPacer()

    @property
    def fetch_timeout(self) -> float:  # type: ignore[override]
        return self._timeout + _ENGINE_GRACE_S

    async def close(self) -> None:
        if self._owns_http:
            await self._http.close()

    # ------------------------------------------------------------------
    # Local rental lifecycle
    # ------------------------------------------------------------------

    async def rent(self, service: str, duration_hours: int, country: str | None = None) -> Rental:
        """Register a private inbox URL as a rental.

        Args:
            service: The private inbox URL.
            duration_hours: How long the inbox should be tracked.
            country: Stored as-is; the site does not use it.
        """
        phone, _key = validate_private_url(service)
        now = datetime.now(UTC)
        return Rental(
            phone_number=phone if phone.startswith("+") else f"+{phone}",
            provider=self.provider,
            external_ref=service.strip(),
            created_at=now,
            end_date=now + timedelta(hours=duration_hours),
            service="any",
            country=country,
        )

    async def extend(self, rental: Rental, duration_hours: int) -> Rental:
        validate_private_url(self._require_ref(rental))
        return rental.model_copy(update={"end_date": rental.end_date + timedelta(hours=duration_hours)})

    async def cancel(self, rental: Rental) -> None:
        validate_private_url(self._require_ref(rental))

    async def fetch_catalog(self) -> Catalog:
        return static_catalog(self.provider).model_copy(update={"is_fallback": False})

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def fetch_messages(self, rental: Rental) -> list[Message]:
        url = self._require_ref(rental)
        validate_private_url(url)

        await self._pacer.wait(url)
        try:
            html = await self._fetch_html(url)
        except ProviderUnavailable:
            self._pacer.record_failure(url)
            raise
        self._pacer.record_success(url)

        page = ScrapedPage(rows=parse_inbox(html), scraped_at=datetime.now(UTC))
        logger.debug("Scraped %d row(s) for rental %s.", len(page.rows), rental.id)
        return page.to_messages(rental)

    def _strategies(self) -> list[_Strategy]:
        strategies: list[_Strategy] = [("direct", self._fetch_direct)]
        for index, template in enumerate(self._relay_urls, start=1):
            strategies.append((f"relay-{index}", self._relay_fetcher(template)))
        return strategies

    async def _fetch_html(self, url: str) -> str:
        """Run the strategy chain within one shared time budget.

        Each strategy may spend at most an even share of what is left, so a
        hanging server-side fetch still leaves time for the relays.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._timeout
        errors: list[str] = []
        strategies = self._strategies()

        for position, (name, fetch) in enumerate(strategies):
            remaining = deadline - loop.time()
            if remaining <= 0:
                errors.append(f"{name}: time budget exhausted")
                continue
            share = remaining / (len(strategies) - position)
            try:
                async with asyncio.timeout(share):
                    html = await fetch(url)
            except TimeoutError:
                errors.append(f"{name}: timed out")
            except ProviderError as exc:
                errors.append(f"{name}: {exc.detail}")
            else:
                if errors:
                    logger.info("Fetched %s via %s after %d failed strateg(ies).", url, name, len(errors))
                return html
            logger.warning(
                "Scrape strategy %s failed for %s: %s",
                name,
                url,
                errors[-1],
                extra={"event": events.SCRAPE_STRATEGY_FAILED},
            )

        raise ProviderUnavailable(self.provider, "all fetch strategies failed: " + "; ".join(errors))

    async def _fetch_direct(self, url: str) -> str:
        response = await self._http.get(url, headers=_BROWSER_HEADERS)
        return response.text

    def _relay_fetcher(self, template: str) -> Callable[[str], Awaitable[str]]:
        async def _fetch(url: str) -> str:
            response = await self._http.get(template.format(url=quote(url, safe="")))
            try:
                payload = response.json()
            except ValueError:
                return response.text
            if isinstance(payload, dict) and isinstance(payload.get("contents"), str):
                return payload["contents"]
            raise ParseError(self.provider, "relay answered JSON without 'contents'")

        return _fetch
