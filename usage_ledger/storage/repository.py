"""
Repository pattern for data access.

Handles persistence, aggregate queries and self-repair of the usage store.
"""

import functools
import logging
import os
import shutil
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from usage_ledger.core.pricing import PricingProvider, calculate_cost
from usage_ledger.core.token_counter import TokenUsage
from .db import DEFAULT_DB_PATH, StorageUnavailableError, get_connection, is_corruption_error
from .models import (
    UNKNOWN,
    UsageRecord,
    format_timestamp,
    parse_iso_timestamp,
    shorten_session_id,
    timestamp_is_valid,
)

logger = logging.getLogger(__name__)

# Database files repaired by this process; repair runs at most once per file
_REPAIRED_PATHS = set()

# Length of one session segment when a raw session id spans many hours
SESSION_WINDOW_MINUTES = 300

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS usage_entries (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        timestamp TEXT NOT NULL,
        session_id TEXT NOT NULL,
        full_session_id TEXT,
        model TEXT NOT NULL DEFAULT 'unknown',
        project TEXT NOT NULL DEFAULT 'unknown',
        input_tokens INTEGER NOT NULL DEFAULT 0,
        output_tokens INTEGER NOT NULL DEFAULT 0,
        cache_creation_input_tokens INTEGER NOT NULL DEFAULT 0,
        cache_read_input_tokens INTEGER NOT NULL DEFAULT 0,
        total_tokens INTEGER NOT NULL DEFAULT 0,
        cost REAL NOT NULL DEFAULT 0,
        file_path TEXT,
        uuid TEXT,
        cwd TEXT,
        dedup_key TEXT,
        timestamp_repaired INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
        UNIQUE(timestamp, session_id, file_path) ON CONFLICT IGNORE
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_session_id ON usage_entries(session_id)",
    "CREATE INDEX IF NOT EXISTS idx_full_session_id ON usage_entries(full_session_id)",
    "CREATE INDEX IF NOT EXISTS idx_timestamp ON usage_entries(timestamp)",
    "CREATE INDEX IF NOT EXISTS idx_project ON usage_entries(project)",
    "CREATE INDEX IF NOT EXISTS idx_model ON usage_entries(model)",
    "CREATE INDEX IF NOT EXISTS idx_timestamp_session ON usage_entries(timestamp, session_id)",
    "CREATE INDEX IF NOT EXISTS idx_cost ON usage_entries(cost)",
    """
    CREATE UNIQUE INDEX IF NOT EXISTS idx_dedup_key
    ON usage_entries(dedup_key) WHERE dedup_key IS NOT NULL
    """,
)

INSERT_SQL = """
    INSERT OR IGNORE INTO usage_entries
    (timestamp, session_id, full_session_id, model, project,
     input_tokens, output_tokens, cache_creation_input_tokens,
     cache_read_input_tokens, total_tokens, cost, file_path, uuid, cwd, dedup_key,
     timestamp_repaired)
    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
"""

SELECT_COLUMNS = """
    timestamp, session_id, full_session_id, model, project,
    input_tokens, output_tokens, cache_creation_input_tokens,
    cache_read_input_tokens, cost, file_path, uuid, cwd, dedup_key, timestamp_repaired
"""

# Group key expression per aggregation dimension
GROUP_EXPRESSIONS = {
    "project": "project",
    "model": "model",
    "day": "substr(timestamp, 1, 10)",
    "month": "substr(timestamp, 1, 7)",
    "billing_period": "billing_period_key(timestamp, :cycle_day)",
    "session": (
        "CASE WHEN segment = 0 THEN sid ELSE sid || '_' || segment END"
    ),
}

# Time-keyed groupings are listed newest first, the rest by cost
TIME_GROUPINGS = {"day", "month", "billing_period"}


@dataclass(frozen=True)
class AggregateFilter:
    """Optional restrictions applied before grouping."""
    start: Optional[datetime] = None  # inclusive
    end: Optional[datetime] = None  # exclusive
    project: Optional[str] = None
    model: Optional[str] = None
    session_id: Optional[str] = None


@dataclass(frozen=True)
class AggregateRow:
    """Summed usage of one group returned by `aggregate`."""
    key: str
    entries: int
    cost: float
    total_tokens: int
    input_tokens: int
    output_tokens: int
    cache_creation_tokens: int
    cache_read_tokens: int
    sessions: int
    active_days: int
    first_activity: Optional[datetime]
    last_activity: Optional[datetime]


@dataclass(frozen=True)
class DatabaseInfo:
    """Summary of the store's contents."""
    path: str
    size_bytes: int
    entries: int
    sessions: int
    projects: int
    models: int
    first_timestamp: Optional[datetime]
    last_timestamp: Optional[datetime]


@dataclass(frozen=True)
class RepairResult:
    """Outcome of a corruption repair attempt."""
    attempted: bool
    backup_path: Optional[str] = None
    salvaged: int = 0
    restored: int = 0
    pruned: int = 0
    fell_back_to_empty: bool = False


def _repair_on_corruption(method):
    """Retry a store operation once after a one-shot repair.

    Only corruption-class sqlite errors trigger the repair; anything else
    propagates unchanged.
    """
    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        try:
            return method(self, *args, **kwargs)
        except sqlite3.DatabaseError as e:
            if not is_corruption_error(e):
                raise
            if self.repair_attempted:
                raise StorageUnavailableError(
                    f"Database {self.db_path} is still corrupt after repair: {e}"
                ) from e
            logger.warning("Storage corruption detected in %s: %s", self.db_path, e)
            self.repair()
            return method(self, *args, **kwargs)
    return wrapper


class UsageRepository:
    """Repository for accessing and managing usage records.

    All writes go through `insert_batch`, which ignores rows whose
    `(timestamp, session_id, file_path)` or identity key is already
    present, so overlapping batches are safe to replay.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    @property
    def repair_attempted(self) -> bool:
        """Whether this process already tried to repair the database file."""
        return os.path.abspath(self.db_path) in _REPAIRED_PATHS

    @repair_attempted.setter
    def repair_attempted(self, value: bool) -> None:
        if value:
            _REPAIRED_PATHS.add(os.path.abspath(self.db_path))
        else:
            _REPAIRED_PATHS.discard(os.path.abspath(self.db_path))

    def initialize(self) -> None:
        """Create the schema and repair the store if it fails an integrity check."""
        try:
            self.initialize_schema()
            healthy = self.integrity_ok()
        except sqlite3.DatabaseError as e:
            if not is_corruption_error(e):
                raise
            logger.warning("Could not open %s: %s", self.db_path, e)
            healthy = False
        if not healthy:
            self.repair()

    def initialize_schema(self) -> None:
        """Create the usage_entries table and its indexes if missing."""
        conn = get_connection(self.db_path)
        try:
            for statement in SCHEMA_STATEMENTS:
                conn.execute(statement)
            columns = {row[1] for row in conn.execute("PRAGMA table_info(usage_entries)")}
            if "timestamp_repaired" not in columns:
                conn.execute(
                    "ALTER TABLE usage_entries "
                    "ADD COLUMN timestamp_repaired INTEGER NOT NULL DEFAULT 0"
                )
            conn.commit()
        finally:
            conn.close()

    def integrity_ok(self) -> bool:
        """Run sqlite's integrity check.

        Returns:
            True when the file reports "ok"
        """
        conn = None
        try:
            conn = get_connection(self.db_path)
            row = conn.execute("PRAGMA integrity_check").fetchone()
            return row is not None and row[0] == "ok"
        except sqlite3.DatabaseError as e:
            logger.warning("Integrity check failed for %s: %s", self.db_path, e)
            return False
        finally:
            if conn is not None:
                conn.close()

    @_repair_on_corruption
    def insert_batch(self, records: Sequence[UsageRecord]) -> int:
        """Insert records atomically, skipping duplicates.

        Args:
            records: Usage records to store

        Returns:
            Number of rows actually inserted
        """
        return len(self._insert(records))

    @_repair_on_corruption
    def insert_new(self, records: Sequence[UsageRecord]) -> List[UsageRecord]:
        """Like `insert_batch`, but return the records that were actually stored."""
        return self._insert(records)

    def _insert(self, records: Sequence[UsageRecord]) -> List[UsageRecord]:
        if not records:
            return []

        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN TRANSACTION")
            stored = []
            for record in records:
                cursor = conn.execute(INSERT_SQL, self._record_to_row(record))
                if cursor.rowcount > 0:
                    stored.append(record)
            conn.commit()
            return stored
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @_repair_on_corruption
    def last_timestamp(self) -> Optional[datetime]:
        """Timestamp of the newest stored record, if any.

        Rows whose timestamp was repaired to ingestion time are ignored, so
        the value is safe to use as an ingestion watermark.
        """
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT MAX(timestamp) FROM usage_entries WHERE timestamp_repaired = 0"
            ).fetchone()
            return parse_iso_timestamp(row[0]) if row else None
        finally:
            conn.close()

    @_repair_on_corruption
    def scan_all(self) -> List[UsageRecord]:
        """All records in non-decreasing timestamp order."""
        return self._select("", ())

    @_repair_on_corruption
    def records_since(self, since: datetime) -> List[UsageRecord]:
        """Records at or after a timestamp, oldest first."""
        return self._select("WHERE timestamp >= ?", (format_timestamp(since),))

    @_repair_on_corruption
    def recent_entries(
        self,
        within_minutes: int,
        now: Optional[datetime] = None
    ) -> List[UsageRecord]:
        """Records from the last `within_minutes` minutes, oldest first.

        Args:
            within_minutes: Size of the look-back window
            now: Reference time, defaults to the current time
        """
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(minutes=within_minutes)
        return self._select("WHERE timestamp >= ?", (format_timestamp(cutoff),))

    @_repair_on_corruption
    def session_entries(self, session_id: str) -> List[UsageRecord]:
        """Records of one session, matched by raw or display id."""
        return self._select(
            "WHERE full_session_id = ? OR session_id = ?",
            (session_id, session_id)
        )

    @_repair_on_corruption
    def aggregate(
        self,
        by: str,
        filter: Optional[AggregateFilter] = None,
        billing_cycle_day: int = 1
    ) -> List[AggregateRow]:
        """Grouped sums computed inside the database.

        Args:
            by: One of session, project, model, day, month, billing_period
            filter: Optional restrictions applied before grouping
            billing_cycle_day: Period start day for billing_period grouping

        Returns:
            One row per group; time groupings newest first, others by cost

        Raises:
            ValueError: If the grouping is unknown
        """
        if by not in GROUP_EXPRESSIONS:
            valid = sorted(GROUP_EXPRESSIONS)
            raise ValueError(f"Unknown aggregation '{by}', expected one of: {valid}")

        conditions = []
        params: Dict[str, Any] = {"cycle_day": billing_cycle_day}
        filter = filter or AggregateFilter()
        if filter.start is not None:
            conditions.append("timestamp >= :start")
            params["start"] = format_timestamp(filter.start)
        if filter.end is not None:
            conditions.append("timestamp < :end")
            params["end"] = format_timestamp(filter.end)
        if filter.project:
            conditions.append("project = :project")
            params["project"] = filter.project
        if filter.model:
            conditions.append("model = :model")
            params["model"] = filter.model
        if filter.session_id:
            conditions.append("(full_session_id = :session_id OR session_id = :session_id)")
            params["session_id"] = filter.session_id
        where = ("WHERE " + " AND ".join(conditions)) if conditions else ""

        order = "group_key DESC" if by in TIME_GROUPINGS else "cost DESC, group_key"
        query = f"""
            WITH filtered AS (
                SELECT *, COALESCE(full_session_id, session_id) AS sid
                FROM usage_entries
                {where}
            ),
            segmented AS (
                SELECT *,
                    CAST(
                        (julianday(timestamp) - julianday(MIN(timestamp) OVER (PARTITION BY sid)))
                        * 1440 / {SESSION_WINDOW_MINUTES} AS INTEGER
                    ) AS segment
                FROM filtered
            )
            SELECT
                {GROUP_EXPRESSIONS[by]} AS group_key,
                COUNT(*) AS entries,
                SUM(cost) AS cost,
                SUM(total_tokens) AS total_tokens,
                SUM(input_tokens) AS input_tokens,
                SUM(output_tokens) AS output_tokens,
                SUM(cache_creation_input_tokens) AS cache_creation_tokens,
                SUM(cache_read_input_tokens) AS cache_read_tokens,
                COUNT(DISTINCT sid) AS sessions,
                COUNT(DISTINCT substr(timestamp, 1, 10)) AS active_days,
                MIN(timestamp) AS first_activity,
                MAX(timestamp) AS last_activity
            FROM segmented
            GROUP BY group_key
            ORDER BY {order}
        """

        conn = get_connection(self.db_path)
        try:
            return [
                AggregateRow(
                    key=row["group_key"] if row["group_key"] is not None else UNKNOWN,
                    entries=row["entries"],
                    cost=float(row["cost"] or 0),
                    total_tokens=row["total_tokens"] or 0,
                    input_tokens=row["input_tokens"] or 0,
                    output_tokens=row["output_tokens"] or 0,
                    cache_creation_tokens=row["cache_creation_tokens"] or 0,
                    cache_read_tokens=row["cache_read_tokens"] or 0,
                    sessions=row["sessions"],
                    active_days=row["active_days"],
                    first_activity=parse_iso_timestamp(row["first_activity"]),
                    last_activity=parse_iso_timestamp(row["last_activity"])
                )
                for row in conn.execute(query, params).fetchall()
            ]
        finally:
            conn.close()

    @_repair_on_corruption
    def update_costs(self, provider: Optional[PricingProvider] = None) -> int:
        """Recompute every stored cost from its token counts.

        Used after a price-table refresh. Pricing is deterministic, so
        running this twice with the same table changes nothing the second
        time.

        Args:
            provider: Pricing collaborator; built-in rates when omitted

        Returns:
            Number of rows whose cost changed
        """
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute("""
                SELECT id, model, input_tokens, output_tokens,
                       cache_creation_input_tokens, cache_read_input_tokens, cost
                FROM usage_entries
            """).fetchall()

            changes = []
            for row in rows:
                usage = TokenUsage(
                    input_tokens=max(0, row["input_tokens"]),
                    output_tokens=max(0, row["output_tokens"]),
                    cache_write_tokens=max(0, row["cache_creation_input_tokens"]),
                    cache_read_tokens=max(0, row["cache_read_input_tokens"])
                )
                new_cost = calculate_cost(row["model"], usage, provider)
                if abs(new_cost - (row["cost"] or 0)) > 1e-12:
                    changes.append((new_cost, row["id"]))

            conn.execute("BEGIN TRANSACTION")
            conn.executemany("UPDATE usage_entries SET cost = ? WHERE id = ?", changes)
            conn.commit()
            logger.info("Recomputed cost for %d rows", len(changes))
            return len(changes)
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @_repair_on_corruption
    def prune_invalid_timestamps(self, now: Optional[datetime] = None) -> int:
        """Delete rows whose timestamp is unparseable, before 2020 or in the future.

        Returns:
            Number of rows deleted
        """
        now = now or datetime.now(timezone.utc)
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute("SELECT id, timestamp FROM usage_entries").fetchall()
            invalid = [
                (row["id"],) for row in rows
                if not timestamp_is_valid(parse_iso_timestamp(row["timestamp"]), now)
            ]
            conn.execute("BEGIN TRANSACTION")
            conn.executemany("DELETE FROM usage_entries WHERE id = ?", invalid)
            conn.commit()
            if invalid:
                logger.warning("Pruned %d rows with invalid timestamps", len(invalid))
            return len(invalid)
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @_repair_on_corruption
    def clear_all(self) -> int:
        """Delete every stored record.

        Returns:
            Number of rows deleted
        """
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN TRANSACTION")
            cursor = conn.execute("DELETE FROM usage_entries")
            conn.commit()
            logger.info("Cleared %d rows from %s", cursor.rowcount, self.db_path)
            return cursor.rowcount
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @_repair_on_corruption
    def vacuum(self) -> None:
        """Reclaim unused space in the database file."""
        conn = get_connection(self.db_path)
        try:
            conn.execute("VACUUM")
        finally:
            conn.close()

    @_repair_on_corruption
    def database_info(self) -> DatabaseInfo:
        """Row counts, file size and time span of the store."""
        conn = get_connection(self.db_path)
        try:
            row = conn.execute("""
                SELECT
                    COUNT(*),
                    COUNT(DISTINCT COALESCE(full_session_id, session_id)),
                    COUNT(DISTINCT project),
                    COUNT(DISTINCT model),
                    MIN(timestamp),
                    MAX(timestamp)
                FROM usage_entries
            """).fetchone()
        finally:
            conn.close()

        path = Path(self.db_path)
        return DatabaseInfo(
            path=str(path),
            size_bytes=path.stat().st_size if path.exists() else 0,
            entries=row[0],
            sessions=row[1],
            projects=row[2],
            models=row[3],
            first_timestamp=parse_iso_timestamp(row[4]),
            last_timestamp=parse_iso_timestamp(row[5])
        )

    def repair(self) -> RepairResult:
        """Rebuild a corrupt store, keeping whatever rows are still readable.

        Backs up the damaged file, salvages readable rows, recreates the
        schema and reinserts the salvaged rows through `insert_batch`.
        Rows with unusable timestamps are pruned. If any step fails the
        store is recreated empty. Runs at most once per database file and
        process, whichever repository instance asks.

        Returns:
            What the repair did

        Raises:
            StorageUnavailableError: If not even an empty store can be created
        """
        if self.repair_attempted:
            logger.warning("Repair of %s already attempted, not retrying", self.db_path)
            return RepairResult(attempted=False)
        self.repair_attempted = True

        backup_path = None
        try:
            backup_path = self._backup()
            salvaged = self._salvage_rows()
            self._remove_database_files()
            self.initialize_schema()

            now = datetime.now(timezone.utc)
            records = []
            for row in salvaged:
                record = self._clean_salvaged_row(row, now)
                if record is not None:
                    records.append(record)
            restored = self.insert_batch(records)
            pruned = len(salvaged) - len(records)
            logger.warning(
                "Repaired %s: salvaged %d rows, restored %d, pruned %d (backup: %s)",
                self.db_path, len(salvaged), restored, pruned, backup_path
            )
            return RepairResult(
                attempted=True,
                backup_path=backup_path,
                salvaged=len(salvaged),
                restored=restored,
                pruned=pruned
            )
        except Exception:
            logger.exception("Repair of %s failed, starting with an empty store", self.db_path)

        try:
            self._remove_database_files()
            self.initialize_schema()
        except (OSError, sqlite3.Error) as e:
            raise StorageUnavailableError(f"Cannot create database {self.db_path}: {e}") from e
        return RepairResult(attempted=True, backup_path=backup_path, fell_back_to_empty=True)

    def _backup(self) -> Optional[str]:
        if not os.path.exists(self.db_path):
            return None
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%f")
        backup_path = f"{self.db_path}.corrupted_backup_{stamp}"
        shutil.copy2(self.db_path, backup_path)
        return backup_path

    def _salvage_rows(self) -> List[Dict[str, Any]]:
        """Read as many rows as the damaged file still yields."""
        salvaged: List[Dict[str, Any]] = []
        conn = None
        try:
            conn = sqlite3.connect(self.db_path)
            conn.row_factory = sqlite3.Row
            for row in conn.execute("SELECT * FROM usage_entries"):
                salvaged.append(dict(row))
        except sqlite3.DatabaseError as e:
            logger.warning("Stopped salvaging %s after %d rows: %s", self.db_path, len(salvaged), e)
        finally:
            if conn is not None:
                conn.close()
        return salvaged

    def _remove_database_files(self) -> None:
        for suffix in ("", "-wal", "-shm", "-journal"):
            path = Path(self.db_path + suffix)
            if path.exists():
                path.unlink()

    @staticmethod
    def _clean_salvaged_row(row: Dict[str, Any], now: datetime) -> Optional[UsageRecord]:
        """Turn a salvaged row back into a valid record, or None to prune it."""
        timestamp = parse_iso_timestamp(row.get("timestamp"))
        session = row.get("full_session_id") or row.get("session_id")
        if not session or not timestamp_is_valid(timestamp, now):
            return None

        def tokens(column: str) -> int:
            try:
                return max(0, int(row.get(column) or 0))
            except (TypeError, ValueError):
                return 0

        try:
            cost = max(0.0, float(row.get("cost") or 0))
        except (TypeError, ValueError):
            cost = 0.0

        input_tokens = tokens("input_tokens")
        output_tokens = tokens("output_tokens")
        dedup_key = row.get("dedup_key") or (
            f"{format_timestamp(timestamp)}-{session}-{input_tokens}-{output_tokens}"
        )
        return UsageRecord(
            timestamp=timestamp,
            session_id=session,
            model=row.get("model") or UNKNOWN,
            project=row.get("project") or UNKNOWN,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cache_creation_tokens=tokens("cache_creation_input_tokens"),
            cache_read_tokens=tokens("cache_read_input_tokens"),
            cost=cost,
            file_path=row.get("file_path") or "",
            dedup_key=dedup_key,
            uuid=row.get("uuid"),
            cwd=row.get("cwd"),
            timestamp_repaired=bool(row.get("timestamp_repaired") or 0)
        )

    def _select(self, where: str, params: tuple) -> List[UsageRecord]:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                f"SELECT {SELECT_COLUMNS} FROM usage_entries {where} ORDER BY timestamp ASC, id ASC",
                params
            )
            records = []
            for row in cursor.fetchall():
                record = self._row_to_record(row)
                if record is not None:
                    records.append(record)
            return records
        finally:
            conn.close()

    @staticmethod
    def _record_to_row(record: UsageRecord) -> tuple:
        return (
            format_timestamp(record.timestamp),
            shorten_session_id(record.session_id),
            record.session_id,
            record.model,
            record.project,
            record.input_tokens,
            record.output_tokens,
            record.cache_creation_tokens,
            record.cache_read_tokens,
            record.total_tokens,
            record.cost,
            record.file_path,
            record.uuid,
            record.cwd,
            record.dedup_key,
            int(record.timestamp_repaired)
        )

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> Optional[UsageRecord]:
        timestamp = parse_iso_timestamp(row["timestamp"])
        if timestamp is None:
            logger.debug("Skipping stored row with unparseable timestamp %r", row["timestamp"])
            return None
        return UsageRecord(
            timestamp=timestamp,
            session_id=row["full_session_id"] or row["session_id"],
            model=row["model"] or UNKNOWN,
            project=row["project"] or UNKNOWN,
            input_tokens=max(0, row["input_tokens"] or 0),
            output_tokens=max(0, row["output_tokens"] or 0),
            cache_creation_tokens=max(0, row["cache_creation_input_tokens"] or 0),
            cache_read_tokens=max(0, row["cache_read_input_tokens"] or 0),
            cost=max(0.0, float(row["cost"] or 0)),
            file_path=row["file_path"] or "",
            dedup_key=row["dedup_key"] or "",
            uuid=row["uuid"],
            cwd=row["cwd"],
            timestamp_repaired=bool(row["timestamp_repaired"])
        )
