"""Core domain models, settings, logging configuration, and shared errors."""

from smssync.core.exceptions import (
    BackingOff,
    CancelFailed,
    ConfigError,
    ExtendFailed,
    InvalidRental,
    OperationError,
    OrchestratorError,
    ParseError,
    PersistenceError,
    ProviderAuthError,
    ProviderError,
    ProviderRejected,
    ProviderUnavailable,
    RateLimited,
    RentalFailed,
    RentalNotFound,
    SmsSyncError,
    StorageError,
)
from smssync.core.logging_config import JsonFormatter, configure_logging
from smssync.core.models import (
    Catalog,
    CatalogEntry,
    Message,
    MessageSource,
    Provider,
    Rental,
    RentalStatus,
)
from smssync.core.settings import Settings

__all__ = [
    # Logging
    "configure_logging",
    "JsonFormatter",
    # Domain models
    "Provider",
    "RentalStatus",
    "MessageSource",
    "Rental",
    "Message",
    "Catalog",
    "CatalogEntry",
    # Settings
    "Settings",
    # Exceptions
    "SmsSyncError",
    "ConfigError",
    "StorageError",
    "RentalNotFound",
    "PersistenceError",
    "ProviderError",
    "ProviderUnavailable",
    "ProviderAuthError",
    "RateLimited",
    "InvalidRental",
    "ParseError",
    "ProviderRejected",
    "OperationError",
    "RentalFailed",
    "ExtendFailed",
    "CancelFailed",
    "OrchestratorError",
    "BackingOff",
]
