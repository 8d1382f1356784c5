"""
Billing period calculations.

Maps timestamps onto monthly periods that start on a configurable day.
"""

import calendar
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Set

from usage_ledger.storage.models import UsageRecord, parse_iso_timestamp


@dataclass(frozen=True)
class BillingPeriod:
    """A half-open interval [start, end) anchored to a cycle day."""
    start: datetime
    end: datetime
    key: str
    label: str

    def contains(self, moment: datetime) -> bool:
        """Check whether a timestamp falls inside the period."""
        return self.start <= moment < self.end

    @property
    def last_instant(self) -> datetime:
        """The last representable instant before the next period starts."""
        return self.end - timedelta(microseconds=1)


@dataclass(frozen=True)
class BillingPeriodSummary:
    """Rolled-up usage of one billing period."""
    period: BillingPeriod
    cost: float
    total_tokens: int
    entries: int
    sessions: int
    active_days: int
    models: List[str]

    @property
    def key(self) -> str:
        return self.period.key

    @property
    def label(self) -> str:
        return self.period.label


def _validate_cycle_day(billing_cycle_day: int) -> None:
    if not isinstance(billing_cycle_day, int) or not 1 <= billing_cycle_day <= 31:
        raise ValueError("billing_cycle_day must be an integer between 1 and 31")


def _shift_month(year: int, month: int, delta: int):
    index = year * 12 + (month - 1) + delta
    return index // 12, index % 12 + 1


def _period_start(year: int, month: int, billing_cycle_day: int) -> datetime:
    """Start of the period beginning in the given month.

    Cycle days past the end of a short month clamp to its last day.
    """
    last_day = calendar.monthrange(year, month)[1]
    return datetime(year, month, min(billing_cycle_day, last_day), tzinfo=timezone.utc)


def _as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def period_for(moment: datetime, billing_cycle_day: int = 1) -> BillingPeriod:
    """Get the billing period containing a timestamp.

    With billing_cycle_day == 1 the periods are plain calendar months.
    Otherwise a period starts on the cycle day of the current month when
    the date has reached it, else on the cycle day of the previous month,
    and ends just before the next start.

    Args:
        moment: Timestamp to place (naive values are taken as UTC)
        billing_cycle_day: Day of month the period starts on (1-31)

    Returns:
        The containing BillingPeriod

    Raises:
        ValueError: If billing_cycle_day is out of range
    """
    _validate_cycle_day(billing_cycle_day)
    moment = _as_utc(moment)

    if billing_cycle_day == 1:
        start = datetime(moment.year, moment.month, 1, tzinfo=timezone.utc)
        next_year, next_month = _shift_month(moment.year, moment.month, 1)
        end = datetime(next_year, next_month, 1, tzinfo=timezone.utc)
        return BillingPeriod(
            start=start,
            end=end,
            key=start.strftime("%Y-%m"),
            label=start.strftime("%B %Y")
        )

    start = _period_start(moment.year, moment.month, billing_cycle_day)
    if moment < start:
        prev_year, prev_month = _shift_month(moment.year, moment.month, -1)
        start = _period_start(prev_year, prev_month, billing_cycle_day)
    next_year, next_month = _shift_month(start.year, start.month, 1)
    end = _period_start(next_year, next_month, billing_cycle_day)

    return BillingPeriod(
        start=start,
        end=end,
        key=start.strftime("%Y-%m-%d"),
        label=_range_label(start, end - timedelta(days=1))
    )


def _range_label(first: datetime, last: datetime) -> str:
    if first.year == last.year:
        return f"{first:%b} {first.day} - {last:%b} {last.day}, {last.year}"
    return f"{first:%b} {first.day}, {first.year} - {last:%b} {last.day}, {last.year}"


def period_key(timestamp: Optional[str], billing_cycle_day: int = 1) -> Optional[str]:
    """Billing period key for a stored timestamp string.

    Registered as a SQL function by the repository so grouping happens
    inside the store.
    """
    moment = parse_iso_timestamp(timestamp)
    if moment is None:
        return None
    return period_for(moment, billing_cycle_day).key


def current_period(now: Optional[datetime] = None, billing_cycle_day: int = 1) -> BillingPeriod:
    """Billing period containing `now` (defaults to the current time)."""
    return period_for(now or datetime.now(timezone.utc), billing_cycle_day)


def days_until_reset(now: Optional[datetime] = None, billing_cycle_day: int = 1) -> int:
    """Whole days remaining until the current period ends."""
    now = _as_utc(now or datetime.now(timezone.utc))
    period = period_for(now, billing_cycle_day)
    remaining = period.end - now
    return max(0, remaining.days + (1 if remaining.seconds or remaining.microseconds else 0))


def aggregate_by_billing_period(
    records: Iterable[UsageRecord],
    billing_cycle_day: int = 1
) -> List[BillingPeriodSummary]:
    """Group records by billing period and sum their usage.

    Args:
        records: Usage records in any order
        billing_cycle_day: Day of month periods start on

    Returns:
        One summary per period, most recent first
    """
    _validate_cycle_day(billing_cycle_day)

    periods: Dict[str, BillingPeriod] = {}
    costs: Dict[str, float] = defaultdict(float)
    tokens: Dict[str, int] = defaultdict(int)
    entries: Dict[str, int] = defaultdict(int)
    sessions: Dict[str, Set[str]] = defaultdict(set)
    days: Dict[str, Set[str]] = defaultdict(set)
    models: Dict[str, Set[str]] = defaultdict(set)

    for record in records:
        period = period_for(record.timestamp, billing_cycle_day)
        periods.setdefault(period.key, period)
        costs[period.key] += record.cost
        tokens[period.key] += record.total_tokens
        entries[period.key] += 1
        sessions[period.key].add(record.session_id)
        days[period.key].add(record.timestamp.date().isoformat())
        models[period.key].add(record.model)

    summaries = [
        BillingPeriodSummary(
            period=period,
            cost=costs[key],
            total_tokens=tokens[key],
            entries=entries[key],
            sessions=len(sessions[key]),
            active_days=len(days[key]),
            models=sorted(models[key])
        )
        for key, period in periods.items()
    ]
    summaries.sort(key=lambda summary: summary.period.start, reverse=True)
    return summaries
