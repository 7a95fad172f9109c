"""Shared async HTTP client for every SMS Sync provider adapter.

:class:`ProviderHttpClient` owns one lazily created :class:`httpx.AsyncClient`
per adapter and turns every outcome into the provider error taxonomy, so
adapters never see a raw ``httpx`` exception:

======================  ==================================================
Outcome                 Raised (after retries, where retried)
======================  ==================================================
transport error/timeout :class:`~smssync.core.exceptions.ProviderUnavailable`
HTTP 5xx                :class:`~smssync.core.exceptions.ProviderUnavailable`
HTTP 429                :class:`~smssync.core.exceptions.RateLimited`
HTTP 401 / 403          :class:`~smssync.core.exceptions.ProviderAuthError`
other HTTP 4xx          :class:`ProviderHttpError`, never retried
======================  ==================================================

Transient faults are retried with :mod:`tenacity` (exponential back-off plus
jitter).  A 429 is retried in-call only when its ``Retry-After`` hint is at
most :data:`_MAX_INLINE_RETRY_AFTER`; anything longer is raised at once and
left to the sync engine's per-rental backoff.

Optional extras: a client-side
:class:`~smssync.providers.api.rate_limit.SlidingWindowRateLimiter` awaited
before each attempt (GoGetSMS), and browser User-Agent rotation for the
scraping source.

Typical usage::

    async with ProviderHttpClient("smspva", base_url="https://smspva.com") as http:
        response = await http.get("/api/rent.php", params={"method": "orders"})
"""

from __future__ import annotations

import logging
import random
from types import TracebackType
from typing import Any, Final

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from smssync.core.exceptions import ProviderAuthError, ProviderUnavailable, RateLimited
from smssync.providers.api.rate_limit import SlidingWindowRateLimiter

__all__ = ["ProviderHttpClient", "ProviderHttpError", "pick_user_agent"]

logger = logging.getLogger(__name__)

#: Statuses treated as transient server faults.
_RETRYABLE_STATUS: Final[frozenset[int]] = frozenset({500, 502, 503, 504})

_DEFAULT_TIMEOUT: Final[float] = 10.0

#: 1 initial try + 2 retries.
_DEFAULT_MAX_ATTEMPTS: Final[int] = 3

#: ``Retry-After`` hints longer than this are not waited out in-call.
_MAX_INLINE_RETRY_AFTER: Final[float] = 10.0

#: 0.5 s, 1 s, 2 s ... capped at 8 s, plus up to 1 s of jitter.
_BACKOFF: Final = wait_exponential(multiplier=0.5, exp_base=2, max=8.0) + wait_random(0, 1.0)

_USER_AGENTS: Final[tuple[str, ...]] = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/128.0.0.0 Safari/537.36",
    "Mozilla/5.0 (X11; Linux x86_64; rv:129.0) Gecko/20100101 Firefox/129.0",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 14_6) AppleWebKit/605.1.15 (KHTML, like Gecko) "
    "Version/17.6 Safari/605.1.15",
    "Mozilla/5.0 (Linux; Android 14; Pixel 8) AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/128.0.0.0 Mobile Safari/537.36",
)


def pick_user_agent() -> str:
    """Return a random browser User-Agent string."""
    return random.choice(_USER_AGENTS)


class ProviderHttpError(ProviderUnavailable):
    """A non-retryable HTTP error status (4xx other than 401/403/429).

    Adapters inspect :attr:`status_code` to translate endpoint-specific
    meanings, e.g. Anosim's 404 for an unknown booking.

    Args:
        provider: Provider code.
        status_code: The HTTP status received.
        body: Response body, kept for the log.
    """

    def __init__(self, provider: str, status_code: int, body: str = "") -> None:
        self.status_code = status_code
        self.body = body
        super().__init__(provider, f"HTTP {status_code}: {body[:200]}")


class _RetryableServerError(ProviderUnavailable):
    """A 5xx status; retried, then surfaced as plain ProviderUnavailable."""


# ---------------------------------------------------------------------------
# Retry policy
# ---------------------------------------------------------------------------


def _is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, RateLimited):
        return exc.retry_after is not None and exc.retry_after <= _MAX_INLINE_RETRY_AFTER
    return isinstance(exc, (_RetryableServerError, httpx.TransportError))


def _provider_wait(retry_state: RetryCallState) -> float:
    """Sleep before the next attempt: the 429 hint when given, else back-off."""
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    if isinstance(exc, RateLimited) and exc.retry_after:
        return exc.retry_after
    return _BACKOFF(retry_state)


# ---------------------------------------------------------------------------
# Response classification
# ---------------------------------------------------------------------------


def _retry_after(response: httpx.Response) -> float | None:
    """Back-off hint of a 429: ``Retry-After`` header, else a JSON field."""
    candidates: list[Any] = [response.headers.get("retry-after")]
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        candidates += [body.get("retryAfter"), body.get("retry_after")]

    for hint in candidates:
        if hint in (None, ""):
            continue
        try:
            return max(float(hint), 1.0)
        except (TypeError, ValueError):
            logger.debug("Ignoring unparseable retry hint %r.", hint)
    return None


def _raise_for_status(provider: str, method: str, url: str, response: httpx.Response) -> None:
    status = response.status_code
    if response.is_success:
        return
    if status == 429:
        hint = _retry_after(response)
        logger.warning("%s answered 429 (retry_after=%s).", provider, hint)
        raise RateLimited(provider, retry_after=hint)
    if status in _RETRYABLE_STATUS:
        raise _RetryableServerError(provider, f"Transient HTTP {status} on {method} {url}")
    if status in (401, 403):
        raise ProviderAuthError(provider, f"HTTP {status}: credentials rejected")
    raise ProviderHttpError(provider, status, response.text)


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class ProviderHttpClient:
    """Async HTTP client shared by the adapters of one provider.

    Args:
        provider: Provider code used in errors and logs.
        base_url: Base URL for relative request paths.
        headers: Default headers merged into every request.
        timeout: Per-request timeout in seconds.
        max_attempts: Total attempts including the first (>= 1).
        rate_limiter: Limiter awaited before every attempt.
        rotate_user_agent: Send a random browser UA on every attempt.
        transport: ``httpx`` transport override (tests pass
            :class:`httpx.MockTransport`).

    Raises:
        ValueError: If ``max_attempts`` is less than 1.
    """

    def __init__(
        self,
        provider: str,
        *,
        base_url: str = "",
        headers: dict[str, str] | None = None,
        timeout: float = _DEFAULT_TIMEOUT,
        max_attempts: int = _DEFAULT_MAX_ATTEMPTS,
        rate_limiter: SlidingWindowRateLimiter | None = None,
        rotate_user_agent: bool = False,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {max_attempts!r}.")
        self._provider = provider
        self._max_attempts = max_attempts
        self._rate_limiter = rate_limiter
        self._rotate_user_agent = rotate_user_agent
        self._client_kwargs: dict[str, Any] = {
            "base_url": base_url,
            "timeout": httpx.Timeout(timeout, pool=5.0),
            "follow_redirects": True,
            "transport": transport,
            "headers": {"Accept": "application/json, text/plain, */*", **(headers or {})},
        }
        self._http: httpx.AsyncClient | None = None

    async def __aenter__(self) -> ProviderHttpClient:
        self._client()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.close()

    async def close(self) -> None:
        """Close the underlying session.  Safe to call repeatedly."""
        if self._http is not None and not self._http.is_closed:
            await self._http.aclose()
            logger.debug("HTTP session for %s closed.", self._provider)
        self._http = None

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    async def get(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("POST", url, **kwargs)

    async def patch(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("PATCH", url, **kwargs)

    async def request(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any | None = None,
        data: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        """Send one logical request, retrying transient failures.

        Returns:
            The 2xx :class:`httpx.Response`.

        Raises:
            RateLimited: On a 429 that could not be waited out.
            ProviderAuthError: On 401/403.
            ProviderHttpError: On any other 4xx.
            ProviderUnavailable: On network errors, timeouts and 5xx.
        """
        retrying = AsyncRetrying(
            wait=_provider_wait,
            stop=stop_after_attempt(self._max_attempts),
            retry=retry_if_exception(_is_retryable),
            reraise=True,
            before_sleep=lambda rs: self._log_retry(method, url, rs),
        )
        try:
            async for attempt in retrying:
                with attempt:
                    return await self._send(method, url, params=params, json=json, data=data, headers=headers)
        except httpx.TimeoutException as exc:
            raise ProviderUnavailable(self._provider, f"Timed out on {method} {url}") from exc
        except httpx.TransportError as exc:
            raise ProviderUnavailable(self._provider, f"Transport error on {method} {url}: {exc!r}") from exc
        except _RetryableServerError as exc:
            raise ProviderUnavailable(self._provider, exc.detail) from exc
        raise AssertionError("unreachable: tenacity stopped without an outcome")

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _client(self) -> httpx.AsyncClient:
        if self._http is None or self._http.is_closed:
            self._http = httpx.AsyncClient(**self._client_kwargs)
            logger.debug("HTTP session for %s opened.", self._provider)
        return self._http

    async def _send(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None,
        json: Any | None,
        data: dict[str, Any] | None,
        headers: dict[str, str] | None,
    ) -> httpx.Response:
        if self._rate_limiter is not None:
            await self._rate_limiter.acquire()

        per_request = {"User-Agent": pick_user_agent()} if self._rotate_user_agent else {}
        per_request.update(headers or {})

        response = await self._client().request(
            method, url, params=params, json=json, data=data, headers=per_request
        )
        logger.debug("%s %s %s -> %d", self._provider, method, url, response.status_code)
        _raise_for_status(self._provider, method, url, response)
        return response

    def _log_retry(self, method: str, url: str, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "%s %s %s: attempt %d/%d failed (%s); retrying in %.1fs.",
            self._provider,
            method,
            url,
            retry_state.attempt_number,
            self._max_attempts,
            type(exc).__name__ if exc else "?",
            retry_state.upcoming_sleep,
        )
