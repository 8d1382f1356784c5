"""
Gap detection and productivity classification.

Finds idle intervals between consecutive records and classifies work habits.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, Iterable, List, Optional

from usage_ledger.storage.models import UsageRecord

GAP_THRESHOLD_MINUTES = 30.0


class GapType(Enum):
    """Classification of an idle interval by its length."""
    SHORT_BREAK = "short-break"
    BREAK = "break"
    LONG_BREAK = "long-break"
    OVERNIGHT = "overnight"
    EXTENDED_ABSENCE = "extended-absence"


class WorkPattern(Enum):
    """Overall working style inferred from active time and gaps."""
    MARATHON = "marathon-worker"
    FOCUSED = "focused-worker"
    SPRINT = "sprint-worker"
    SPORADIC = "sporadic-worker"
    MIXED = "mixed-pattern"


@dataclass(frozen=True)
class Gap:
    """An idle interval between two adjacent records."""
    start: datetime
    end: datetime
    duration_minutes: float
    gap_type: GapType


@dataclass(frozen=True)
class GapStatistics:
    """Summary of all detected gaps."""
    total_gaps: int = 0
    average_minutes: float = 0.0
    longest_minutes: float = 0.0
    shortest_minutes: float = 0.0
    total_idle_minutes: float = 0.0
    type_distribution: Dict[str, int] = field(default_factory=dict)

    @property
    def total_idle_hours(self) -> float:
        return self.total_idle_minutes / 60


@dataclass(frozen=True)
class ProductivityPattern:
    """Work pattern classification and the figures behind it."""
    work_pattern: WorkPattern
    total_work_minutes: float
    average_gap_minutes: float
    work_break_ratio: Optional[float]


def classify_gap(duration_minutes: float) -> GapType:
    """Classify an idle interval.

    short-break < 1h, break < 4h, long-break < 8h, overnight < 24h,
    extended-absence otherwise.
    """
    if duration_minutes < 60:
        return GapType.SHORT_BREAK
    if duration_minutes < 240:
        return GapType.BREAK
    if duration_minutes < 480:
        return GapType.LONG_BREAK
    if duration_minutes < 1440:
        return GapType.OVERNIGHT
    return GapType.EXTENDED_ABSENCE


def _sorted_timestamps(records: Iterable[UsageRecord]) -> List[datetime]:
    return sorted(record.timestamp for record in records)


def detect_gaps(
    records: Iterable[UsageRecord],
    threshold_minutes: float = GAP_THRESHOLD_MINUTES
) -> List[Gap]:
    """Find idle intervals longer than the threshold.

    Records are sorted by timestamp first; an interval of exactly the
    threshold is not a gap.

    Args:
        records: Usage records in any order
        threshold_minutes: Minimum idle length, exclusive

    Returns:
        Gaps in chronological order
    """
    timestamps = _sorted_timestamps(records)
    gaps = []
    for previous, current in zip(timestamps, timestamps[1:]):
        minutes = (current - previous).total_seconds() / 60
        if minutes > threshold_minutes:
            gaps.append(Gap(
                start=previous,
                end=current,
                duration_minutes=minutes,
                gap_type=classify_gap(minutes)
            ))
    return gaps


def gap_statistics(gaps: List[Gap]) -> GapStatistics:
    """Aggregate count, duration extremes and type distribution of gaps."""
    if not gaps:
        return GapStatistics()

    durations = [gap.duration_minutes for gap in gaps]
    distribution: Dict[str, int] = {}
    for gap in gaps:
        distribution[gap.gap_type.value] = distribution.get(gap.gap_type.value, 0) + 1

    return GapStatistics(
        total_gaps=len(gaps),
        average_minutes=sum(durations) / len(durations),
        longest_minutes=max(durations),
        shortest_minutes=min(durations),
        total_idle_minutes=sum(durations),
        type_distribution=distribution
    )


def active_minutes(
    records: Iterable[UsageRecord],
    threshold_minutes: float = GAP_THRESHOLD_MINUTES
) -> float:
    """Total time spent working: the sum of intervals that are not gaps."""
    timestamps = _sorted_timestamps(records)
    total = 0.0
    for previous, current in zip(timestamps, timestamps[1:]):
        minutes = (current - previous).total_seconds() / 60
        if minutes <= threshold_minutes:
            total += minutes
    return total


def classify_work_pattern(work_minutes: float, average_gap_minutes: float) -> WorkPattern:
    """Classify working style from total active time and average gap length."""
    if work_minutes > 180 and average_gap_minutes > 60:
        return WorkPattern.MARATHON
    if work_minutes > 90 and average_gap_minutes < 30:
        return WorkPattern.FOCUSED
    if work_minutes < 60 and average_gap_minutes < 30:
        return WorkPattern.SPRINT
    if work_minutes < 90 and average_gap_minutes > 120:
        return WorkPattern.SPORADIC
    return WorkPattern.MIXED


def productivity_pattern(
    records: List[UsageRecord],
    gaps: List[Gap],
    threshold_minutes: float = GAP_THRESHOLD_MINUTES
) -> ProductivityPattern:
    """Classify the work pattern of a record set with its detected gaps."""
    work = active_minutes(records, threshold_minutes)
    stats = gap_statistics(gaps)
    ratio = work / stats.total_idle_minutes if stats.total_idle_minutes > 0 else None
    return ProductivityPattern(
        work_pattern=classify_work_pattern(work, stats.average_minutes),
        total_work_minutes=work,
        average_gap_minutes=stats.average_minutes,
        work_break_ratio=ratio
    )
