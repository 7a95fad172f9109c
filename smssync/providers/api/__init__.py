"""API-backed providers: SMS-Activate, SMSPVA, Anosim, GoGetSMS."""

from smssync.providers.api.anosim import AnosimAdapter
from smssync.providers.api.gogetsms import GoGetSmsAdapter
from smssync.providers.api.http_client import ProviderHttpClient
from smssync.providers.api.smspva import SmspvaAdapter
from smssync.providers.api.sms_activate import SmsActivateAdapter

__all__ = [
    "ProviderHttpClient",
    "SmsActivateAdapter",
    "GoGetSmsAdapter",
    "SmspvaAdapter",
    "AnosimAdapter",
]
