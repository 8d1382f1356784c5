"""
Duplicate detection.

Computes record identity keys and filters repeats within an ingestion pass.
"""

from typing import Any, Iterable, List, Optional, Set

from usage_ledger.storage.models import UsageRecord


def identity_key(
    message_id: Optional[Any],
    request_id: Optional[Any],
    timestamp: Optional[str],
    session_id: str,
    input_tokens: int,
    output_tokens: int
) -> str:
    """Stable identity of one logged assistant message.

    Prefers "<message id>-<request id>", then either id alone, and falls
    back to the raw timestamp, session id and token counts.
    """
    if message_id and request_id:
        return f"{message_id}-{request_id}"
    if message_id:
        return str(message_id)
    if request_id:
        return str(request_id)
    return f"{timestamp}-{session_id}-{input_tokens}-{output_tokens}"


class Deduplicator:
    """Rejects records whose identity key was already seen in this pass.

    Durable dedup across passes is the store's job (unique indexes); this
    set only catches repeats spread across files read in the same pass,
    and is cleared at the start of each pass.
    """

    def __init__(self, seen_keys: Optional[Set[str]] = None):
        self.seen_keys: Set[str] = seen_keys if seen_keys is not None else set()
        self.duplicates = 0

    def reset(self) -> None:
        """Forget all keys seen so far."""
        self.seen_keys.clear()
        self.duplicates = 0

    def accept(self, record: UsageRecord) -> bool:
        """Register a record, returning False when it is a repeat."""
        if record.dedup_key in self.seen_keys:
            self.duplicates += 1
            return False
        self.seen_keys.add(record.dedup_key)
        return True

    def filter(self, records: Iterable[UsageRecord]) -> List[UsageRecord]:
        """Keep only records not seen before, in input order."""
        return [record for record in records if self.accept(record)]
