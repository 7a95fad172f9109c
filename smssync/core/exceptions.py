"""SMS Sync exception taxonomy.

Every error raised by this package derives from :class:`SmsSyncError`, and
each layer owns one branch of the tree:

    SmsSyncError
    ├── ConfigError
    ├── StorageError
    │   ├── RentalNotFound
    │   └── PersistenceError
    ├── ProviderError
    │   ├── ProviderUnavailable
    │   │   └── ProviderAuthError
    │   ├── RateLimited
    │   ├── InvalidRental
    │   ├── ParseError
    │   └── ProviderRejected
    ├── OperationError
    │   ├── RentalFailed
    │   ├── ExtendFailed
    │   └── CancelFailed
    └── OrchestratorError
        └── BackingOff

Adapters only ever raise :class:`ProviderError` subclasses; raw ``httpx``
exceptions are translated at the adapter boundary.  The sync engine treats
:class:`ProviderUnavailable`, :class:`RateLimited` and :class:`ParseError` as
transient (backoff and retry) and :class:`InvalidRental` as permanent.

Usage:

    from smssync.core.exceptions import ProviderUnavailable

    raise ProviderUnavailable("smspva", "Connection refused") from exc
"""

from __future__ import annotations

__all__ = [
    "SmsSyncError",
    # Config
    "ConfigError",
    # Storage
    "StorageError",
    "RentalNotFound",
    "PersistenceError",
    # Provider
    "ProviderError",
    "ProviderUnavailable",
    "ProviderAuthError",
    "RateLimited",
    "InvalidRental",
    "ParseError",
    "ProviderRejected",
    # External operations
    "OperationError",
    "RentalFailed",
    "ExtendFailed",
    "CancelFailed",
    # Orchestrator
    "OrchestratorError",
    "BackingOff",
]

# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------


class SmsSyncError(Exception):
    """Root exception for all SMS Sync errors."""


# ---------------------------------------------------------------------------
# Config layer
# ---------------------------------------------------------------------------


class ConfigError(SmsSyncError):
    """Configuration that cannot be used as given, e.g.:

    - A provider is requested but its API key is not configured.
    - A relay URL template is missing the ``{url}`` placeholder.
    """


# ---------------------------------------------------------------------------
# Storage layer
# ---------------------------------------------------------------------------


class StorageError(SmsSyncError):
    """Raised when a database or persistence operation fails."""


class RentalNotFound(StorageError):
    """Raised when a rental id is not present in the registry.

    Args:
        rental_id: The identifier that was looked up.
    """

    def __init__(self, rental_id: str) -> None:
        self.rental_id = rental_id
        super().__init__(f"Rental not found: {rental_id!r}")


class PersistenceError(StorageError):
    """Raised when a store write or read failed after its retry budget.

    Writes are retried once immediately before this is raised; reads are
    raised only after every read strategy failed.
    """


# ---------------------------------------------------------------------------
# Provider layer
# ---------------------------------------------------------------------------


class ProviderError(SmsSyncError):
    """Failure reported by, or while talking to, one provider.

    Args:
        provider: Provider code such as ``"smspva"``; prefixes the message.
        message: What went wrong, kept on :attr:`detail` without the prefix.
    """

    def __init__(self, provider: str, message: str) -> None:
        self.provider = provider
        self.detail = message
        super().__init__(f"[{provider}] {message}")


class ProviderUnavailable(ProviderError):
    """Transport-level failure: network error, timeout, or 5xx response.

    Retried by the sync engine via backoff.
    """


class ProviderAuthError(ProviderUnavailable):
    """The provider rejected our credentials (bad key, banned account).

    Kept under :class:`ProviderUnavailable` because the rental itself is
    fine; the account needs operator attention.
    """


class RateLimited(ProviderError):
    """Raised on HTTP 429 or an equivalent provider throttle signal.

    Args:
        provider: Provider code.
        retry_after: Recommended back-off interval in seconds, if known.
    """

    def __init__(self, provider: str, retry_after: float | None = None) -> None:
        self.retry_after = retry_after
        detail = f"retry after {retry_after}s" if retry_after is not None else "no retry hint"
        super().__init__(provider, f"Rate limited ({detail})")


class InvalidRental(ProviderError):
    """The rental has no usable external reference or was rejected upstream.

    Not retried: surfaced to the caller immediately.
    """


class ParseError(ProviderError):
    """The adapter could not interpret the provider response.

    Logged and treated as transient.
    """


class ProviderRejected(ProviderError):
    """The provider understood the request and refused it.

    Examples: no numbers in stock, insufficient balance, unknown service
    code.  Raised by rent/extend/cancel; the service layer wraps it into
    the matching operation error.

    Args:
        provider: Provider code.
        message: Description of the refusal.
        code: Provider-native error token (e.g. ``"NO_NUMBERS"``).
    """

    def __init__(self, provider: str, message: str, code: str | None = None) -> None:
        self.code = code
        super().__init__(provider, message)


# ---------------------------------------------------------------------------
# External operations
# ---------------------------------------------------------------------------


class OperationError(SmsSyncError):
    """Base class for failures of the user-facing rent/extend/cancel calls.

    Args:
        message: Short, user-presentable description.
        cause: The underlying provider or storage error, if any.
    """

    def __init__(self, message: str, cause: BaseException | None = None) -> None:
        self.cause = cause
        super().__init__(message)


class RentalFailed(OperationError):
    """Renting a number failed."""


class ExtendFailed(OperationError):
    """Extending a rental failed."""


class CancelFailed(OperationError):
    """Canceling a rental failed."""


# ---------------------------------------------------------------------------
# Orchestrator layer
# ---------------------------------------------------------------------------


class OrchestratorError(SmsSyncError):
    """Raised for errors originating in the scheduling layer."""


class BackingOff(OrchestratorError):
    """A manual sync was refused because the rental is inside its backoff.

    Args:
        rental_id: The rental that was requested.
        remaining_s: Seconds until the backoff window closes.
    """

    def __init__(self, rental_id: str, remaining_s: float) -> None:
        self.rental_id = rental_id
        self.remaining_s = remaining_s
        super().__init__(
            f"Rental {rental_id} is backing off after repeated failures; "
            f"retry in {remaining_s:.0f}s"
        )
