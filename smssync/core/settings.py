"""Environment-driven configuration for SMS Sync.

One :class:`Settings` instance is built at startup from process environment
variables, falling back to a ``.env`` file in the working directory and then
to the field defaults.  Env-var names are the upper-cased field names
(``SMSPVA_API_KEY`` sets ``smspva_api_key``); ``.env.example`` lists them all.

List-valued fields are written comma-separated in the environment::

    GOGETSMS_FALLBACK_COUNTRIES=GB,US
    SCRAPE_RELAY_URLS=https://relay.example/raw?url={url}

Example::

    settings = Settings()
    for provider in settings.configured_providers:
        ...
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Annotated, Any

from pydantic import Field, ValidationInfo, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from smssync.core.models import Provider

__all__ = ["Settings"]

logger = logging.getLogger(__name__)

_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")
_LOG_FORMATS = ("text", "json")


def _split_csv(raw: Any) -> Any:
    """``"a, b,,c"`` → ``["a", "b", "c"]``; non-strings pass through untouched."""
    if not isinstance(raw, str):
        return raw
    return [part.strip() for part in raw.split(",") if part.strip()]


# ---------------------------------------------------------------------------
# Settings model
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    """Validated process configuration.

    API providers with an empty key are not built at all; the scraping
    source needs no credentials and is always available.
    """

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # ------------------------------------------------------------------
    # Provider credentials
    # ------------------------------------------------------------------
    sms_activate_api_key: str = Field(default="", description="SMS-Activate API key.")
    smspva_api_key: str = Field(default="", description="SMSPVA API key.")
    anosim_api_key: str = Field(default="", description="Anosim API key.")
    gogetsms_api_key: str = Field(default="", description="GoGetSMS API key.")

    # ------------------------------------------------------------------
    # Provider tuning
    # ------------------------------------------------------------------
    anosim_country_id: int = Field(
        default=98,
        ge=1,
        description="Anosim countryId used when none is given (98 = Germany).",
    )
    gogetsms_fallback_countries: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: ["GB", "US", "RU"],
        description="Countries tried in order when GoGetSMS answers BAD_COUNTRY.",
    )
    gogetsms_rate_limit: int = Field(
        default=10,
        ge=1,
        description="Max GoGetSMS requests per rate-limit window.",
    )
    gogetsms_rate_window_s: float = Field(
        default=60.0,
        gt=0.0,
        description="GoGetSMS rate-limit window in seconds.",
    )
    scrape_relay_urls: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: [
            "https://api.allorigins.win/raw?url={url}",
            "https://api.allorigins.win/get?url={url}",
        ],
        description="Client-side relay URL templates for the scraper (comma-separated in env).",
    )
    scrape_timeout_s: float = Field(
        default=15.0,
        gt=0.0,
        description="Total time budget for one scrape across all fetch strategies.",
    )

    # ------------------------------------------------------------------
    # Sync engine
    # ------------------------------------------------------------------
    sync_batch_size: int = Field(default=5, ge=1, description="Rentals synced in parallel per batch.")
    sync_stagger_s: float = Field(
        default=1.0,
        ge=0.0,
        description="Pause between sweep batches in seconds.",
    )
    min_sync_interval_s: float = Field(
        default=30.0,
        ge=0.0,
        description="Minimum seconds between two automatic syncs of the same rental.",
    )
    backoff_base_s: float = Field(
        default=60.0,
        ge=0.0,
        description="Backoff added per consecutive failure.",
    )
    backoff_cap_s: float = Field(
        default=900.0,
        ge=0.0,
        description="Upper bound of a rental's backoff window.",
    )
    adapter_timeout_s: float = Field(
        default=10.0,
        gt=0.0,
        description="Timeout applied to each adapter call.",
    )
    sweep_interval_s: float = Field(
        default=120.0,
        gt=0.0,
        description="Seconds between background sweeps of all rentals.",
    )
    auto_refresh_interval_s: float = Field(
        default=15.0,
        gt=0.0,
        description="Tick of the per-rental auto-refresh loop.",
    )

    # ------------------------------------------------------------------
    # Cache
    # ------------------------------------------------------------------
    rental_cache_ttl_s: float = Field(default=300.0, ge=0.0, description="TTL of cached rental lists.")
    catalog_cache_ttl_s: float = Field(default=3600.0, ge=0.0, description="TTL of cached catalogs.")

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------
    database_path: str = Field(
        default="data/smssync.db",
        description="Path to the SQLite database file.",
    )

    # ------------------------------------------------------------------
    # Runtime
    # ------------------------------------------------------------------
    log_level: str = Field(default="INFO", description="Logging level.")
    log_format: str = Field(default="text", description="Log format: 'text' or 'json'.")

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @field_validator("gogetsms_fallback_countries", "scrape_relay_urls", mode="before")
    @classmethod
    def _from_csv(cls, raw: Any) -> Any:
        return _split_csv(raw)

    @field_validator("gogetsms_fallback_countries")
    @classmethod
    def _upper_countries(cls, countries: list[str]) -> list[str]:
        return [code.upper() for code in countries]

    @field_validator("scrape_relay_urls")
    @classmethod
    def _relays_have_placeholder(cls, templates: list[str]) -> list[str]:
        missing = [t for t in templates if "{url}" not in t]
        if missing:
            raise ValueError(f"relay URL templates lack a '{{url}}' placeholder: {missing}")
        return templates

    @field_validator("log_level", "log_format")
    @classmethod
    def _known_logging_option(cls, value: str, info: ValidationInfo) -> str:
        if info.field_name == "log_level":
            normalised, choices = value.strip().upper(), _LOG_LEVELS
        else:
            normalised, choices = value.strip().lower(), _LOG_FORMATS
        if normalised not in choices:
            raise ValueError(f"{info.field_name} {value!r} is not one of {', '.join(choices)}")
        return normalised

    @model_validator(mode="after")
    def _backoff_base_within_cap(self) -> Settings:
        if self.backoff_base_s > self.backoff_cap_s:
            raise ValueError(
                f"backoff_base_s ({self.backoff_base_s}) exceeds backoff_cap_s ({self.backoff_cap_s})"
            )
        return self

    # ------------------------------------------------------------------
    # Derived values
    # ------------------------------------------------------------------

    @property
    def database_path_resolved(self) -> Path:
        """Absolute form of :attr:`database_path`."""
        return Path(self.database_path).resolve()

    def api_key_for(self, provider: Provider) -> str:
        """Return the configured API key for *provider* (``""`` if none)."""
        return {
            Provider.SMS_ACTIVATE: self.sms_activate_api_key,
            Provider.SMSPVA: self.smspva_api_key,
            Provider.ANOSIM: self.anosim_api_key,
            Provider.GOGETSMS: self.gogetsms_api_key,
        }.get(provider, "")

    @property
    def configured_providers(self) -> list[Provider]:
        """Providers usable with the current configuration.

        API providers need a key; the scraping source is always present.
        """
        enabled = [p for p in Provider if p != Provider.RECEIVE_SMS_ONLINE and self.api_key_for(p)]
        enabled.append(Provider.RECEIVE_SMS_ONLINE)
        return enabled
