"""
Log line parsing.

Turns one JSONL line of the assistant's log into a priced UsageRecord.
"""

import json
import logging
import math
from datetime import datetime, timezone
from pathlib import PurePath
from typing import Any, Callable, Dict, Optional

from usage_ledger.storage.models import UNKNOWN, UsageRecord, parse_iso_timestamp, timestamp_is_valid
from .dedup import identity_key
from .pricing import PricingProvider, calculate_cost
from .token_counter import TokenUsage

logger = logging.getLogger(__name__)

ASSISTANT_MESSAGE_TYPE = "assistant"


def _is_number(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)


def _token_count(usage: Dict[str, Any], name: str) -> int:
    value = usage.get(name, 0)
    if not _is_number(value):
        return 0
    return max(0, int(value))


def validate_timestamp(raw: Any, now: Optional[datetime] = None) -> Optional[datetime]:
    """Parse a log timestamp, rejecting anything before 2020 or in the future.

    Args:
        raw: Timestamp value from the log entry
        now: Current time; timestamps more than a day past it are rejected

    Returns:
        An aware UTC datetime, or None when the value must be repaired
    """
    parsed = parse_iso_timestamp(raw)
    if not timestamp_is_valid(parsed, now or datetime.now(timezone.utc)):
        return None
    return parsed


def derive_project(cwd: Optional[str], file_path: str) -> str:
    """Project name from the working directory, else from the log's location.

    The log path fallback walks up from the file and takes the first
    component that is neither the "projects" folder nor a .jsonl file.
    """
    if isinstance(cwd, str) and cwd.strip():
        name = PurePath(cwd.strip().replace("\\", "/")).name
        if name:
            return name
    for part in reversed(PurePath(file_path.replace("\\", "/")).parts):
        if part and part not in ("projects", "/") and not part.endswith(".jsonl"):
            return part
    return UNKNOWN


def parse_line(
    line: str,
    file_path: str,
    pricing: Optional[PricingProvider] = None,
    clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)
) -> Optional[UsageRecord]:
    """Parse one log line into a usage record.

    Only assistant messages with numeric input and output token counts are
    accepted; every other line returns None without logging an error.
    Missing, unparseable, pre-2020 and future timestamps are replaced by
    the current time and the record is flagged as repaired.

    Args:
        line: Raw text of one JSONL line
        file_path: Source file, used for provenance and project fallback
        pricing: Pricing collaborator for the cost calculation
        clock: Source of the current time for timestamp repair

    Returns:
        UsageRecord, or None when the line is not a usage record
    """
    line = line.strip()
    if not line:
        return None
    try:
        entry = json.loads(line)
    except ValueError:
        logger.debug("Skipping malformed line in %s", file_path)
        return None
    if not isinstance(entry, dict) or entry.get("type") != ASSISTANT_MESSAGE_TYPE:
        return None

    message = entry.get("message")
    if not isinstance(message, dict):
        return None
    usage = message.get("usage")
    if not isinstance(usage, dict):
        return None
    if not _is_number(usage.get("input_tokens")) or not _is_number(usage.get("output_tokens")):
        return None

    tokens = TokenUsage(
        input_tokens=_token_count(usage, "input_tokens"),
        output_tokens=_token_count(usage, "output_tokens"),
        cache_write_tokens=_token_count(usage, "cache_creation_input_tokens"),
        cache_read_tokens=_token_count(usage, "cache_read_input_tokens")
    )

    raw_timestamp = entry.get("timestamp")
    now = clock()
    timestamp = validate_timestamp(raw_timestamp, now)
    repaired = timestamp is None
    if repaired:
        timestamp = now
        logger.warning(
            "Invalid timestamp %r in %s, using current time %s",
            raw_timestamp, file_path, timestamp.isoformat()
        )

    model = message.get("model") or UNKNOWN
    session_id = entry.get("sessionId") or UNKNOWN
    message_id = message.get("id") or entry.get("messageId")
    request_id = entry.get("requestId")
    cwd = entry.get("cwd") if isinstance(entry.get("cwd"), str) else None

    return UsageRecord(
        timestamp=timestamp,
        session_id=str(session_id),
        model=str(model),
        project=derive_project(cwd, file_path),
        input_tokens=tokens.input_tokens,
        output_tokens=tokens.output_tokens,
        cache_creation_tokens=tokens.cache_write_tokens,
        cache_read_tokens=tokens.cache_read_tokens,
        cost=calculate_cost(str(model), tokens, pricing),
        file_path=file_path,
        dedup_key=identity_key(
            message_id=message_id,
            request_id=request_id,
            timestamp=raw_timestamp if isinstance(raw_timestamp, str) else None,
            session_id=str(session_id),
            input_tokens=tokens.input_tokens,
            output_tokens=tokens.output_tokens
        ),
        uuid=entry.get("uuid") if isinstance(entry.get("uuid"), str) else None,
        cwd=cwd,
        timestamp_repaired=repaired
    )
