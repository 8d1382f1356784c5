"""
Incremental log ingestion.

Discovers log files and feeds new lines through parsing, dedup and pricing into the store.
"""

import logging
import threading
from concurrent.futures import Future
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Sequence, Set

from usage_ledger.storage.models import UsageRecord
from usage_ledger.storage.repository import UsageRepository
from .dedup import Deduplicator
from .parser import parse_line
from .pricing import PricingProvider

logger = logging.getLogger(__name__)

LOG_FILE_PATTERN = "*.jsonl"

# Where the assistant writes its per-project conversation logs
DEFAULT_SOURCE_ROOTS = (
    Path("~/.config/claude/projects"),
    Path("~/.claude/projects"),
)


def default_source_paths() -> List[Path]:
    """Standard log roots that exist on this machine."""
    return [root.expanduser() for root in DEFAULT_SOURCE_ROOTS if root.expanduser().is_dir()]


def discover_log_files(roots: Iterable[Path]) -> List[Path]:
    """Recursively find log files under the given roots.

    Plain file paths are accepted as-is; missing roots are skipped.
    """
    found = set()
    for root in roots:
        root = Path(root).expanduser()
        if root.is_file():
            found.add(root)
        elif root.is_dir():
            found.update(path for path in root.rglob(LOG_FILE_PATTERN) if path.is_file())
        else:
            logger.debug("Source path %s does not exist, skipping", root)
    return sorted(found)


@dataclass
class IngestionState:
    """Watermark and per-pass bookkeeping owned by one coordinator.

    `is_initial_load` starts True and is cleared after the first pass;
    only `reset` (an explicit full reload) sets it again. A coordinator
    opened on a store that already holds records starts from the store's
    newest timestamp instead of an initial load.
    """
    last_processed_timestamp: Optional[datetime] = None
    seen_keys: Set[str] = field(default_factory=set)
    is_initial_load: bool = True

    def reset_watermark(self) -> None:
        """Forget the watermark and seen keys so the next pass rescans everything."""
        self.last_processed_timestamp = None
        self.seen_keys.clear()

    def reset(self) -> None:
        """Return to the state of a brand-new coordinator."""
        self.reset_watermark()
        self.is_initial_load = True


@dataclass(frozen=True)
class IngestionResult:
    """Counters and inserted records of one ingestion pass."""
    files_scanned: int = 0
    lines_read: int = 0
    records_parsed: int = 0
    skipped_by_watermark: int = 0
    duplicates: int = 0
    inserted: int = 0
    timestamp_repairs: int = 0
    read_errors: int = 0
    inserted_records: List[UsageRecord] = field(default_factory=list)
    watermark: Optional[datetime] = None


class IngestionCoordinator:
    """Runs ingestion passes against one store.

    Only one pass runs at a time. A pass requested while another is in
    flight waits for and returns the in-flight pass's result instead of
    reading the files a second time.
    """

    def __init__(
        self,
        repository: UsageRepository,
        source_paths: Sequence[Path],
        pricing: Optional[PricingProvider] = None,
        state: Optional[IngestionState] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)
    ):
        """Initialize the coordinator.

        Args:
            repository: Store the records are written to
            source_paths: Root directories (or single files) to scan
            pricing: Pricing collaborator used for record costs
            state: Existing state to continue from; seeded from the store's
                newest record when omitted
            clock: Source of the current time for timestamp repair
        """
        self.repository = repository
        self.source_paths = [Path(p) for p in source_paths]
        self.pricing = pricing
        if state is None:
            last = repository.last_timestamp()
            state = IngestionState(last_processed_timestamp=last, is_initial_load=last is None)
            if last is not None:
                logger.debug("Continuing ingestion from stored watermark %s", last.isoformat())
        self.state = state
        self.clock = clock
        self._lock = threading.Lock()
        self._in_flight: Optional[Future] = None

    @property
    def in_progress(self) -> bool:
        return self._in_flight is not None

    def run_pass(self) -> IngestionResult:
        """Ingest everything new since the last pass.

        Returns:
            Counters and the records actually inserted
        """
        with self._lock:
            in_flight = self._in_flight
            if in_flight is None:
                in_flight = self._in_flight = Future()
                owner = True
            else:
                owner = False

        if not owner:
            logger.debug("Ingestion already running, waiting for its result")
            return in_flight.result()

        try:
            result = self._ingest()
            in_flight.set_result(result)
            return result
        except BaseException as e:
            in_flight.set_exception(e)
            raise
        finally:
            with self._lock:
                self._in_flight = None

    def reset_watermark(self) -> None:
        """Force the next pass to rescan every line of every file."""
        self.state.reset_watermark()

    def _ingest(self) -> IngestionResult:
        state = self.state
        state.seen_keys.clear()
        dedup = Deduplicator(state.seen_keys)
        watermark = None if state.is_initial_load else state.last_processed_timestamp

        files = discover_log_files(self.source_paths)
        lines_read = parsed = skipped = inserted = repairs = read_errors = rejected = 0
        inserted_records: List[UsageRecord] = []

        for path in files:
            if watermark is not None and self._modified_before(path, watermark):
                continue
            batch: List[UsageRecord] = []
            try:
                with open(path, "r", encoding="utf-8", errors="replace") as handle:
                    for line in handle:
                        lines_read += 1
                        record = parse_line(line, str(path), self.pricing, self.clock)
                        if record is None:
                            continue
                        parsed += 1
                        if record.timestamp_repaired:
                            repairs += 1
                        elif watermark is not None and record.timestamp < watermark:
                            skipped += 1
                            continue
                        if dedup.accept(record):
                            batch.append(record)
            except OSError as e:
                read_errors += 1
                logger.warning("Could not read %s: %s", path, e)
                continue

            if batch:
                stored = self.repository.insert_new(batch)
                inserted += len(stored)
                rejected += len(batch) - len(stored)
                inserted_records.extend(stored)
                logger.debug("%s: %d candidates, %d inserted", path, len(batch), len(stored))

        candidates = [r.timestamp for r in inserted_records if not r.timestamp_repaired]
        if candidates:
            newest = max(candidates)
            if state.last_processed_timestamp is None or newest > state.last_processed_timestamp:
                state.last_processed_timestamp = newest
        state.is_initial_load = False

        result = IngestionResult(
            files_scanned=len(files),
            lines_read=lines_read,
            records_parsed=parsed,
            skipped_by_watermark=skipped,
            duplicates=dedup.duplicates + rejected,
            inserted=inserted,
            timestamp_repairs=repairs,
            read_errors=read_errors,
            inserted_records=inserted_records,
            watermark=state.last_processed_timestamp
        )
        logger.info(
            "Ingestion pass: %d files, %d parsed, %d inserted, %d duplicates, %d repaired timestamps",
            result.files_scanned, result.records_parsed, result.inserted,
            result.duplicates, result.timestamp_repairs
        )
        return result

    @staticmethod
    def _modified_before(path: Path, watermark: datetime) -> bool:
        """True when a file has not been written since before the watermark."""
        try:
            modified = datetime.fromtimestamp(path.stat().st_mtime, timezone.utc)
        except OSError:
            return False
        return modified < watermark
