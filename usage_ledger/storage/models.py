"""
Data models for storage layer.

Defines the usage record persisted once per accounted assistant message.
"""

import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from usage_ledger.core.token_counter import TokenUsage

UNKNOWN = "unknown"

MIN_VALID_YEAR = 2020

# How far past the current time a timestamp may lie before it is rejected
MAX_CLOCK_SKEW = timedelta(days=1)

_FRACTION = re.compile(r"\.(\d+)(?=[+-]\d{2}:\d{2}$|$)")


def shorten_session_id(session_id: Optional[str]) -> str:
    """Derive the short display id of a raw session id.

    Uses the last two '-' segments, e.g.
    "dc236a80-a1de-426e-a094-03aa8ee63315" -> "a094-03a".
    """
    if not session_id:
        return UNKNOWN
    parts = session_id.split("-")
    if len(parts) >= 2:
        return f"{parts[-2]}-{parts[-1][:3]}"
    return session_id[:10]


def parse_iso_timestamp(value: object) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp into an aware UTC datetime.

    Accepts a trailing "Z", any fraction length and naive values (taken
    as UTC). Returns None for anything unparseable.
    """
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    match = _FRACTION.search(text)
    if match:
        digits = (match.group(1) + "000000")[:6]
        text = text[:match.start()] + "." + digits + text[match.end():]
    try:
        parsed = datetime.fromisoformat(text)
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.astimezone(timezone.utc)
    except (ValueError, OverflowError):
        return None


def timestamp_is_valid(moment: Optional[datetime], now: datetime) -> bool:
    """Whether a record timestamp is usable.

    Timestamps before 2020 or more than a day after `now` are invalid.
    """
    if moment is None:
        return False
    return moment.year >= MIN_VALID_YEAR and moment <= now + MAX_CLOCK_SKEW


def format_timestamp(value: datetime) -> str:
    """Format a datetime the way it is stored, so that text order is time order."""
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds")


@dataclass(frozen=True)
class UsageRecord:
    """Immutable record of one assistant message's token usage.

    Created once by the parser from a single log line. The cost is always
    computed from the token counts, never taken from the input.
    """
    timestamp: datetime
    session_id: str
    model: str
    project: str
    input_tokens: int
    output_tokens: int
    cache_creation_tokens: int
    cache_read_tokens: int
    cost: float
    file_path: str
    dedup_key: str
    uuid: Optional[str] = None
    cwd: Optional[str] = None
    timestamp_repaired: bool = False

    def __post_init__(self):
        """Validate the record is storable."""
        if self.timestamp.tzinfo is None:
            raise ValueError("timestamp must be timezone-aware")
        if self.cost < 0:
            raise ValueError("cost must be >= 0")
        for name in ("input_tokens", "output_tokens", "cache_creation_tokens", "cache_read_tokens"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be >= 0")

    @property
    def usage(self) -> TokenUsage:
        """Token counts as a TokenUsage."""
        return TokenUsage(
            input_tokens=self.input_tokens,
            output_tokens=self.output_tokens,
            cache_write_tokens=self.cache_creation_tokens,
            cache_read_tokens=self.cache_read_tokens
        )

    @property
    def total_tokens(self) -> int:
        """Sum of all four token categories."""
        return (
            self.input_tokens
            + self.output_tokens
            + self.cache_creation_tokens
            + self.cache_read_tokens
        )

    @property
    def display_session_id(self) -> str:
        """Shortened session id for display."""
        return shorten_session_id(self.session_id)
