"""Adapter factory: build one adapter per usable provider.

A provider is **enabled** when its API key is configured:

* ``SMS_ACTIVATE_API_KEY`` → :class:`~smssync.providers.api.sms_activate.SmsActivateAdapter`
* ``SMSPVA_API_KEY``       → :class:`~smssync.providers.api.smspva.SmspvaAdapter`
* ``ANOSIM_API_KEY``       → :class:`~smssync.providers.api.anosim.AnosimAdapter`
* ``GOGETSMS_API_KEY``     → :class:`~smssync.providers.api.gogetsms.GoGetSmsAdapter`

The receive-sms-online scraper needs no credentials and is always built.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from smssync.core.models import Provider
from smssync.core.settings import Settings
from smssync.providers.api.anosim import AnosimAdapter
from smssync.providers.api.gogetsms import GoGetSmsAdapter
from smssync.providers.api.rate_limit import SlidingWindowRateLimiter
from smssync.providers.api.smspva import SmspvaAdapter
from smssync.providers.api.sms_activate import SmsActivateAdapter
from smssync.providers.base import BaseProviderAdapter
from smssync.providers.scraping.receive_sms_online import ReceiveSmsOnlineAdapter

__all__ = ["build_adapters", "close_adapters"]

logger = logging.getLogger(__name__)


def build_adapters(settings: Settings) -> dict[Provider, BaseProviderAdapter]:
    """Instantiate every enabled adapter.

    Providers whose key is absent are logged at ``INFO`` level and omitted.

    Args:
        settings: Loaded :class:`~smssync.core.settings.Settings` instance.

    Returns:
        Mapping of provider to adapter, in :class:`Provider` declaration order.
        Always contains :attr:`Provider.RECEIVE_SMS_ONLINE`.
    """
    timeout = settings.adapter_timeout_s
    adapters: dict[Provider, BaseProviderAdapter] = {}

    if settings.sms_activate_api_key:
        adapters[Provider.SMS_ACTIVATE] = SmsActivateAdapter(settings.sms_activate_api_key, timeout=timeout)
    if settings.smspva_api_key:
        adapters[Provider.SMSPVA] = SmspvaAdapter(settings.smspva_api_key, timeout=timeout)
    if settings.anosim_api_key:
        adapters[Provider.ANOSIM] = AnosimAdapter(
            settings.anosim_api_key, country_id=settings.anosim_country_id, timeout=timeout
        )
    if settings.gogetsms_api_key:
        adapters[Provider.GOGETSMS] = GoGetSmsAdapter(
            settings.gogetsms_api_key,
            timeout=timeout,
            fallback_countries=settings.gogetsms_fallback_countries,
            rate_limiter=SlidingWindowRateLimiter(
                settings.gogetsms_rate_limit, settings.gogetsms_rate_window_s
            ),
        )

    adapters[Provider.RECEIVE_SMS_ONLINE] = ReceiveSmsOnlineAdapter(
        relay_urls=settings.scrape_relay_urls,
        timeout=settings.scrape_timeout_s,
    )

    for provider in Provider:
        if provider in adapters:
            logger.debug("%s adapter enabled.", provider)
        else:
            logger.info("%s adapter disabled; set %s_API_KEY to enable.", provider, provider.upper())
    return adapters


async def close_adapters(adapters: Iterable[BaseProviderAdapter]) -> None:
    """Close every adapter, logging (not raising) individual failures."""
    for adapter in adapters:
        try:
            await adapter.close()
        except Exception:  # noqa: BLE001
            logger.warning("Closing %s adapter failed.", adapter.provider, exc_info=True)
