"""SMS-Activate rental adapter.

Configuration
-------------
``SMS_ACTIVATE_API_KEY``
    Account API key.  Leave empty to disable the provider.

Country codes are SMS-Activate's numeric ids passed through as strings
(``"0"`` = Russia, ``"43"`` = Germany, ...).
"""

from __future__ import annotations

from typing import ClassVar

from smssync.core.models import Provider
from smssync.providers.api.handler_api import HandlerApiAdapter
from smssync.providers.responses import SmsActivateStatusResponse

__all__ = ["SmsActivateAdapter"]


class SmsActivateAdapter(HandlerApiAdapter):
    """Handler-API adapter for ``api.sms-activate.io``."""

    provider: ClassVar[Provider] = Provider.SMS_ACTIVATE
    base_url: ClassVar[str] = "https://api.sms-activate.io"
    path: ClassVar[str] = "/stubs/handler_api.php"
    default_country: ClassVar[str] = "0"
    response_model = SmsActivateStatusResponse
