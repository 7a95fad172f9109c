"""HTML-scraped providers."""

from smssync.providers.scraping.receive_sms_online import ReceiveSmsOnlineAdapter

__all__ = ["ReceiveSmsOnlineAdapter"]
