"""Field normalisation shared by every provider adapter.

Adapters funnel raw provider values through these helpers before building
a :class:`~smssync.core.models.Message`, so that the same SMS reported by two
different sources (e.g. a provider API and the HTML scraper) collapses onto
the same ``(rental_id, sender, body)`` deduplication key.

Typical usage::

    from smssync.providers.normalizers import build_message, parse_timestamp

    message = build_message(
        rental,
        sender=raw.get("sender") or raw.get("from"),
        body=raw.get("text") or raw.get("message"),
        received_at=parse_timestamp(raw.get("date")),
        source=MessageSource.API,
    )
"""

from __future__ import annotations

import logging
import re
from datetime import UTC, datetime
from typing import Any

from smssync.core.models import UNKNOWN_SENDER, Message, MessageSource, Rental

__all__ = [
    "normalise_text",
    "normalise_sender",
    "parse_timestamp",
    "extract_verification_code",
    "build_message",
]

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

_WHITESPACE_RE: re.Pattern[str] = re.compile(r"\s+")

#: Values above this are epoch milliseconds rather than seconds.
_EPOCH_MS_THRESHOLD: float = 1e11

#: Absolute date-time layouts seen across providers and the scraped inbox.
_DATETIME_FORMATS: tuple[str, ...] = (
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d %H:%M",
    "%d.%m.%Y %H:%M:%S",
    "%d.%m.%Y %H:%M",
    "%d/%m/%Y %H:%M:%S",
    "%d/%m/%Y %H:%M",
)

#: Time-only layouts; the date is taken from *now*.
_TIME_FORMATS: tuple[str, ...] = ("%H:%M:%S", "%H:%M")

#: Verification-code patterns, most specific first.
_CODE_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"code[:\s]*(\d{4,8})\b", re.IGNORECASE),
    re.compile(r"\b(\d{4,8})\s+is\s+your\b", re.IGNORECASE),
    re.compile(r"\b(\d{3})[- ](\d{3})\b"),
    re.compile(r"\b(\d{4,8})\b"),
)


# ---------------------------------------------------------------------------
# Text
# ---------------------------------------------------------------------------


def normalise_text(value: Any, *, fallback: str = "") -> str:
    """Strip and collapse whitespace; return *fallback* for blank input.

    Non-string scalars are converted with ``str()``.

    Examples::

        normalise_text("  Your code:\\n 5566 ")  # → "Your code: 5566"
        normalise_text(None, fallback="?")      # → "?"
    """
    if value is None:
        return fallback
    cleaned = _WHITESPACE_RE.sub(" ", str(value)).strip()
    return cleaned if cleaned else fallback


def normalise_sender(value: Any) -> str:
    """Return a clean sender label, or :data:`UNKNOWN_SENDER`."""
    return normalise_text(value, fallback=UNKNOWN_SENDER)


# ---------------------------------------------------------------------------
# Timestamps
# ---------------------------------------------------------------------------


def parse_timestamp(value: Any, *, now: datetime | None = None) -> datetime:
    """Parse a provider timestamp into an aware UTC datetime.

    Accepts epoch seconds or milliseconds (numbers or digit strings),
    ISO-8601 strings, the absolute layouts in :data:`_DATETIME_FORMATS`, and
    bare ``HH:MM[:SS]`` times which are anchored to today's date.  Anything
    else falls back to *now*; a message with an unreadable date is still a
    message.

    Args:
        value: Raw timestamp value.
        now: Reference time (defaults to the current UTC time).

    Returns:
        An aware :class:`~datetime.datetime` in UTC.
    """
    reference = now or datetime.now(UTC)

    if value is None or value == "":
        return reference

    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)

    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return _from_epoch(float(value), reference)

    text = str(value).strip()
    if text.replace(".", "", 1).isdigit():
        return _from_epoch(float(text), reference)

    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
    except ValueError:
        pass

    for fmt in _DATETIME_FORMATS:
        try:
            return datetime.strptime(text, fmt).replace(tzinfo=UTC)
        except ValueError:
            continue

    for fmt in _TIME_FORMATS:
        try:
            t = datetime.strptime(text, fmt)
        except ValueError:
            continue
        return reference.replace(hour=t.hour, minute=t.minute, second=t.second, microsecond=0)

    logger.debug("Unparseable timestamp %r; using reference time.", value)
    return reference


def _from_epoch(value: float, reference: datetime) -> datetime:
    if value <= 0:
        return reference
    if value > _EPOCH_MS_THRESHOLD:
        value /= 1000.0
    try:
        return datetime.fromtimestamp(value, tz=UTC)
    except (OverflowError, OSError, ValueError):
        return reference


# ---------------------------------------------------------------------------
# Verification codes
# ---------------------------------------------------------------------------


def extract_verification_code(body: str | None) -> str | None:
    """Return the verification code contained in an SMS body, if any.

    Examples::

        extract_verification_code("Code: 5566")              # → "5566"
        extract_verification_code("123-456 is your code")    # → "123456"
        extract_verification_code("Welcome aboard")          # → None
    """
    if not body:
        return None
    for pattern in _CODE_PATTERNS:
        match = pattern.search(body)
        if match:
            return "".join(match.groups())
    return None


# ---------------------------------------------------------------------------
# Message construction
# ---------------------------------------------------------------------------


def build_message(
    rental: Rental,
    *,
    sender: Any,
    body: Any,
    received_at: datetime,
    source: MessageSource,
    raw_snapshot: str | None = None,
    last_scraped_at: datetime | None = None,
) -> Message | None:
    """Build a canonical :class:`Message`, or ``None`` if the body is blank.

    Adapters skip ``None`` results: an SMS with no text cannot be
    deduplicated meaningfully and carries nothing worth storing.
    """
    text = normalise_text(body)
    if not text:
        return None
    return Message(
        rental_id=rental.id,
        sender=normalise_sender(sender),
        body=text,
        received_at=received_at,
        source=source,
        raw_snapshot=raw_snapshot,
        last_scraped_at=last_scraped_at,
        verification_code=extract_verification_code(text),
    )
