"""Unit tests for the receive-sms-online scraping adapter.

Tests cover:
- Private URL validation.
- ``parse_inbox`` for the ``data-label`` layout, the generic table layout
  and header-row filtering.
- ``UrlPacer`` spacing and failure backoff.
- The direct → relay strategy chain, including JSON relays.
- Local rent / extend / cancel bookkeeping.
"""

from __future__ import annotations

from collections.abc import Callable

import httpx
import pytest

from smssync.core.exceptions import InvalidRental, ProviderUnavailable
from smssync.core.models import MessageSource, Provider
from smssync.providers.api.http_client import ProviderHttpClient
from smssync.providers.scraping.receive_sms_online import (
    ReceiveSmsOnlineAdapter,
    UrlPacer,
    parse_inbox,
    validate_private_url,
)

PRIVATE_URL = "https://receive-sms-online.info/private.php?phone=447700900123&key=abc123"

LABELLED_HTML = """
<html><body><table>
  <thead><tr><th>From</th><th>Message</th><th>Added</th></tr></thead>
  <tbody>
    <tr>
      <td data-label="From:">WhatsApp</td>
      <td data-label="Message:">Your WhatsApp code 123-456</td>
      <td data-label="Added:">2026-02-01 10:30:00</td>
    </tr>
    <tr>
      <td data-label="From:">Telegram</td>
      <td data-label="Message:">Telegram code 55678</td>
      <td data-label="Added:">2026-02-01 10:31:00</td>
    </tr>
  </tbody>
</table></body></html>
"""

GENERIC_HTML = """
<table>
  <tr><td>From</td><td>Message</td><td>Added</td></tr>
  <tr><td>Google</td><td>G-112233 is your Google verification code.</td><td>08:15</td></tr>
  <tr><td>Sender</td><td>SMS Messages</td><td>x</td></tr>
  <tr><td>only</td><td>two</td></tr>
</table>
"""


async def _no_sleep(_seconds: float) -> None:
    return None


def _adapter(
    handler: Callable[[httpx.Request], httpx.Response],
    relay_urls: tuple[str, ...] = (),
) -> ReceiveSmsOnlineAdapter:
    http = ProviderHttpClient(
        "receive_sms_online", transport=httpx.MockTransport(handler), max_attempts=1, rotate_user_agent=True
    )
    return ReceiveSmsOnlineAdapter(
        relay_urls=relay_urls, timeout=5.0, http_client=http, pacer=UrlPacer(sleep=_no_sleep)
    )


@pytest.fixture()
def scrape_rental(make_rental):
    return make_rental(
        provider=Provider.RECEIVE_SMS_ONLINE, phone_number="+447700900123", external_ref=PRIVATE_URL
    )


# ---------------------------------------------------------------------------
# URL validation
# ---------------------------------------------------------------------------


class TestValidatePrivateUrl:
    def test_valid(self) -> None:
        assert validate_private_url(PRIVATE_URL) == ("447700900123", "abc123")

    def test_www_prefix_accepted(self) -> None:
        url = PRIVATE_URL.replace("://", "://www.")
        assert validate_private_url(url)[0] == "447700900123"

    @pytest.mark.parametrize(
        "url",
        [
            "",
            None,
            "https://example.com/private.php?phone=1&key=2",
            "ftp://receive-sms-online.info/private.php?phone=1&key=2",
            "https://receive-sms-online.info/index.php?phone=1&key=2",
            "https://receive-sms-online.info/private.php?phone=1",
        ],
    )
    def test_invalid(self, url: str | None) -> None:
        with pytest.raises(InvalidRental):
            validate_private_url(url)


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


class TestParseInbox:
    def test_labelled_layout(self) -> None:
        rows = parse_inbox(LABELLED_HTML)
        assert [(r.sender, r.body) for r in rows] == [
            ("WhatsApp", "Your WhatsApp code 123-456"),
            ("Telegram", "Telegram code 55678"),
        ]
        assert rows[0].added == "2026-02-01 10:30:00"
        assert rows[0].raw_html is not None and "data-label" in rows[0].raw_html

    def test_generic_layout_skips_headers_and_short_rows(self) -> None:
        rows = parse_inbox(GENERIC_HTML)
        assert len(rows) == 1
        assert rows[0].sender == "Google"
        assert rows[0].added == "08:15"

    def test_no_table(self) -> None:
        assert parse_inbox("<html><body>Inbox is empty</body></html>") == []


# ---------------------------------------------------------------------------
# Pacing
# ---------------------------------------------------------------------------


class TestUrlPacer:
    async def test_spacing_and_backoff(self, clock) -> None:
        slept: list[float] = []

        async def fake_sleep(seconds: float) -> None:
            slept.append(seconds)
            clock.advance(seconds)

        pacer = UrlPacer(base_s=3.0, max_factor=8, clock=clock, sleep=fake_sleep)
        await pacer.wait("u")
        assert slept == []

        clock.advance(1.0)
        await pacer.wait("u")
        assert slept == [2.0]

        for _ in range(5):
            pacer.record_failure("u")
        assert pacer.interval("u") == 24.0

        pacer.record_success("u")
        assert pacer.interval("u") == 3.0

    async def test_urls_paced_independently(self, clock) -> None:
        slept: list[float] = []

        async def fake_sleep(seconds: float) -> None:
            slept.append(seconds)

        pacer = UrlPacer(clock=clock, sleep=fake_sleep)
        await pacer.wait("a")
        await pacer.wait("b")
        assert slept == []


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------


class TestFetchMessages:
    async def test_direct_fetch(self, scrape_rental) -> None:
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, text=LABELLED_HTML)

        messages = await _adapter(handler).fetch_messages(scrape_rental)

        assert requests[0].url.host == "receive-sms-online.info"
        assert requests[0].headers["DNT"] == "1"
        assert [m.sender for m in messages] == ["WhatsApp", "Telegram"]
        assert all(m.source == MessageSource.SCRAPING for m in messages)
        assert all(m.last_scraped_at is not None for m in messages)
        assert messages[0].verification_code == "123456"

    async def test_falls_back_to_raw_relay(self, scrape_rental) -> None:
        hosts: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            hosts.append(request.url.host)
            if request.url.host == "receive-sms-online.info":
                return httpx.Response(403, text="cloudflare")
            return httpx.Response(200, text=LABELLED_HTML)

        adapter = _adapter(handler, relay_urls=("https://relay.example/raw?url={url}",))
        messages = await adapter.fetch_messages(scrape_rental)
        assert hosts == ["receive-sms-online.info", "relay.example"]
        assert len(messages) == 2

    async def test_json_relay_contents(self, scrape_rental) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.host == "receive-sms-online.info":
                raise httpx.ConnectError("refused", request=request)
            if request.url.host == "bad.example":
                return httpx.Response(200, json={"status": "ok"})
            return httpx.Response(200, json={"contents": GENERIC_HTML})

        adapter = _adapter(
            handler,
            relay_urls=("https://bad.example/get?url={url}", "https://good.example/get?url={url}"),
        )
        (msg,) = await adapter.fetch_messages(scrape_rental)
        assert msg.sender == "Google"
        assert msg.verification_code == "112233"

    async def test_relay_url_is_encoded(self, scrape_rental) -> None:
        seen: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.host == "receive-sms-online.info":
                return httpx.Response(500)
            seen.append(request.url.params["url"])
            return httpx.Response(200, text=LABELLED_HTML)

        await _adapter(handler, relay_urls=("https://relay.example/raw?url={url}",)).fetch_messages(scrape_rental)
        assert seen == [PRIVATE_URL]

    async def test_all_strategies_fail(self, scrape_rental) -> None:
        adapter = _adapter(lambda r: httpx.Response(503), relay_urls=("https://relay.example/raw?url={url}",))
        with pytest.raises(ProviderUnavailable, match="all fetch strategies failed") as exc_info:
            await adapter.fetch_messages(scrape_rental)
        assert "direct:" in str(exc_info.value)
        assert "relay-1:" in str(exc_info.value)

    async def test_empty_inbox(self, scrape_rental) -> None:
        adapter = _adapter(lambda r: httpx.Response(200, text="<html>No messages</html>"))
        assert await adapter.fetch_messages(scrape_rental) == []

    async def test_invalid_ref(self, make_rental) -> None:
        rental = make_rental(provider=Provider.RECEIVE_SMS_ONLINE, external_ref="https://example.com/")
        with pytest.raises(InvalidRental):
            await _adapter(lambda r: httpx.Response(200)).fetch_messages(rental)


class TestLocalLifecycle:
    async def test_rent_registers_url(self) -> None:
        adapter = _adapter(lambda r: httpx.Response(200))
        rental = await adapter.rent(PRIVATE_URL, 48)
        assert rental.phone_number == "+447700900123"
        assert rental.external_ref == PRIVATE_URL
        assert rental.service == "any"
        assert (rental.end_date - rental.created_at).total_seconds() == 48 * 3600

    async def test_rent_rejects_non_private_url(self) -> None:
        with pytest.raises(InvalidRental):
            await _adapter(lambda r: httpx.Response(200)).rent("wa", 48)

    async def test_extend_and_cancel_are_local(self, scrape_rental) -> None:
        calls: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(200)

        adapter = _adapter(handler)
        extended = await adapter.extend(scrape_rental, 24)
        await adapter.cancel(scrape_rental)
        assert (extended.end_date - scrape_rental.end_date).total_seconds() == 24 * 3600
        assert calls == []

    async def test_catalog_is_static_but_live(self) -> None:
        catalog = await _adapter(lambda r: httpx.Response(200)).fetch_catalog()
        assert catalog.services == ["any"]
        assert catalog.is_fallback is False
