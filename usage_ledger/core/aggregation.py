"""
Metric aggregation engine.

Computes DerivedMetrics from usage records, from scratch or by merging new records.
"""

import logging
from collections import Counter, defaultdict
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from usage_ledger.storage.models import UsageRecord, shorten_session_id
from .billing import aggregate_by_billing_period, days_until_reset, period_for
from .currency import convert_from_usd
from .gaps import detect_gaps, gap_statistics, productivity_pattern
from .metrics import (
    ActivityWindow,
    CurrentSession,
    DailyBreakdown,
    DerivedMetrics,
    FinancialMetrics,
    GapMetrics,
    LiveMetrics,
    ModelBreakdown,
    ModelMetrics,
    PeriodBreakdown,
    PeriodMetrics,
    ProjectSummary,
    SessionMetrics,
    SessionSummary,
    TimingMetrics,
    TokenMetrics,
)
from .worker import CancellationToken, ProgressCallback, ProgressEvent

logger = logging.getLogger(__name__)

SESSION_WINDOW_MINUTES = 300
ACTIVE_SESSION_LOOKBACK_MINUTES = 30
SYSTEM_ACTIVE_MINUTES = 10
ACTIVITY_WINDOW_MINUTES = 5
ACTIVITY_WINDOW_COUNT = 12
DAYS_PER_MONTH = 30


class _Totals:
    """Mutable running sums for one group of records."""

    def __init__(self):
        self.cost = 0.0
        self.total_tokens = 0
        self.input_tokens = 0
        self.output_tokens = 0
        self.cache_write_tokens = 0
        self.cache_read_tokens = 0
        self.entries = 0
        self.first: Optional[datetime] = None
        self.last: Optional[datetime] = None
        self.models: Set[str] = set()
        self.sessions: Set[str] = set()
        self.projects: Counter = Counter()

    def add(self, record: UsageRecord, rate: float) -> None:
        self.cost += convert_from_usd(record.cost, rate)
        self.total_tokens += record.total_tokens
        self.input_tokens += record.input_tokens
        self.output_tokens += record.output_tokens
        self.cache_write_tokens += record.cache_creation_tokens
        self.cache_read_tokens += record.cache_read_tokens
        self.entries += 1
        if self.first is None or record.timestamp < self.first:
            self.first = record.timestamp
        if self.last is None or record.timestamp > self.last:
            self.last = record.timestamp
        self.models.add(record.model)
        self.sessions.add(record.session_id)
        self.projects[record.project] += 1


def _checkpoint(
    progress: Optional[ProgressCallback],
    cancel_token: Optional[CancellationToken],
    step: str,
    percent: float,
    message: str
) -> None:
    if cancel_token is not None:
        cancel_token.raise_if_cancelled()
    if progress is not None:
        progress(ProgressEvent(step=step, percent=percent, message=message))


def clamp_period_cost(period_cost: float, total_cost: float) -> Tuple[float, bool]:
    """Keep the current period's cost from exceeding the all-time total.

    Returns:
        The (possibly clamped) period cost and whether clamping happened
    """
    if period_cost > total_cost + 1e-9 * max(1.0, abs(total_cost)):
        logger.warning(
            "Current period cost %.6f exceeds total cost %.6f, clamping to total",
            period_cost, total_cost
        )
        return total_cost, True
    return period_cost, False


def _build_sessions(records: Sequence[UsageRecord], rate: float) -> List[SessionSummary]:
    """Group records by session, splitting long sessions into 5-hour windows."""
    by_session: Dict[str, List[UsageRecord]] = defaultdict(list)
    for record in records:
        by_session[record.session_id].append(record)

    window = timedelta(minutes=SESSION_WINDOW_MINUTES)
    summaries = []
    for raw_id, members in by_session.items():
        members.sort(key=lambda r: r.timestamp)
        session_start = members[0].timestamp
        segments: Dict[int, _Totals] = defaultdict(_Totals)
        for record in members:
            segments[int((record.timestamp - session_start) / window)].add(record, rate)

        for number, totals in segments.items():
            suffix = f"_{number}" if number else ""
            summaries.append(SessionSummary(
                session_id=raw_id + suffix,
                raw_session_id=raw_id,
                display_id=shorten_session_id(raw_id) + suffix,
                project=totals.projects.most_common(1)[0][0],
                projects=sorted(totals.projects),
                models=sorted(totals.models),
                start=totals.first,
                end=totals.last,
                duration_minutes=(totals.last - totals.first).total_seconds() / 60,
                cost=totals.cost,
                total_tokens=totals.total_tokens,
                input_tokens=totals.input_tokens,
                output_tokens=totals.output_tokens,
                cache_write_tokens=totals.cache_write_tokens,
                cache_read_tokens=totals.cache_read_tokens,
                entries=totals.entries
            ))

    summaries.sort(key=lambda s: s.start, reverse=True)
    return summaries


def _project_rows(
    totals_by_project: Dict[str, _Totals],
    sessions: List[SessionSummary]
) -> List[ProjectSummary]:
    session_counts: Counter = Counter()
    for session in sessions:
        for project in session.projects:
            session_counts[project] += 1

    rows = [
        ProjectSummary(
            name=name,
            cost=totals.cost,
            total_tokens=totals.total_tokens,
            entries=totals.entries,
            sessions=session_counts[name],
            first_activity=totals.first,
            last_activity=totals.last,
            models=sorted(totals.models)
        )
        for name, totals in totals_by_project.items()
    ]
    rows.sort(key=lambda p: (-p.cost, p.name))
    return rows


def _project_totals(records: Iterable[UsageRecord], rate: float) -> Dict[str, _Totals]:
    totals: Dict[str, _Totals] = defaultdict(_Totals)
    for record in records:
        totals[record.project].add(record, rate)
    return totals


def _model_totals(records: Iterable[UsageRecord], rate: float) -> Dict[str, _Totals]:
    totals: Dict[str, _Totals] = defaultdict(_Totals)
    for record in records:
        totals[record.model].add(record, rate)
    return totals


def _model_rows(totals_by_model: Dict[str, _Totals], total_cost: float) -> List[ModelBreakdown]:
    rows = [
        ModelBreakdown(
            model=model,
            cost=totals.cost,
            total_tokens=totals.total_tokens,
            input_tokens=totals.input_tokens,
            output_tokens=totals.output_tokens,
            cache_write_tokens=totals.cache_write_tokens,
            cache_read_tokens=totals.cache_read_tokens,
            entries=totals.entries,
            cost_per_1k_tokens=totals.cost / totals.total_tokens * 1000 if totals.total_tokens else 0.0,
            cost_share_pct=totals.cost / total_cost * 100 if total_cost > 0 else 0.0
        )
        for model, totals in totals_by_model.items()
    ]
    rows.sort(key=lambda m: (-m.cost, m.model))
    return rows


def _day_totals(records: Iterable[UsageRecord], rate: float) -> Dict[str, _Totals]:
    totals: Dict[str, _Totals] = defaultdict(_Totals)
    for record in records:
        totals[record.timestamp.date().isoformat()].add(record, rate)
    return totals


def _daily_rows(day_rows: Dict[str, Tuple[float, int, int, int, List[str]]]) -> List[DailyBreakdown]:
    """Build chronological day rows with running totals."""
    rows = []
    running_cost = 0.0
    running_tokens = 0
    for date in sorted(day_rows):
        cost, tokens, entries, sessions, models = day_rows[date]
        running_cost += cost
        running_tokens += tokens
        rows.append(DailyBreakdown(
            date=date,
            cost=cost,
            total_tokens=tokens,
            entries=entries,
            sessions=sessions,
            models=models,
            running_cost=running_cost,
            running_tokens=running_tokens
        ))
    return rows


def _day_values(totals: _Totals) -> Tuple[float, int, int, int, List[str]]:
    return (totals.cost, totals.total_tokens, totals.entries, len(totals.sessions), sorted(totals.models))


def _build_periods(
    records: Sequence[UsageRecord],
    billing_cycle_day: int,
    rate: float
) -> List[PeriodBreakdown]:
    """Billing-period rollups, always regrouped from the full record set."""
    summaries = aggregate_by_billing_period(records, billing_cycle_day)
    running = 0.0
    rows = []
    for summary in reversed(summaries):
        cost = convert_from_usd(summary.cost, rate)
        running += cost
        rows.append(PeriodBreakdown(
            key=summary.key,
            label=summary.label,
            start=summary.period.start,
            end=summary.period.end,
            cost=cost,
            total_tokens=summary.total_tokens,
            entries=summary.entries,
            sessions=summary.sessions,
            active_days=summary.active_days,
            models=summary.models,
            running_cost=running
        ))
    rows.reverse()
    return rows


def _build_live(records: Sequence[UsageRecord], now: datetime) -> LiveMetrics:
    window = timedelta(minutes=ACTIVITY_WINDOW_MINUTES)
    horizon = now - window * ACTIVITY_WINDOW_COUNT
    recent = [r for r in records if horizon < r.timestamp <= now]

    windows = []
    for index in range(ACTIVITY_WINDOW_COUNT):
        start = horizon + window * index
        end = start + window
        members = [r for r in recent if start < r.timestamp <= end]
        windows.append(ActivityWindow(
            start=start,
            end=end,
            entries=len(members),
            total_tokens=sum(r.total_tokens for r in members)
        ))

    last = records[-1].timestamp if records else None
    active_cutoff = now - timedelta(minutes=SYSTEM_ACTIVE_MINUTES)
    return LiveMetrics(
        window_minutes=ACTIVITY_WINDOW_MINUTES,
        windows=windows,
        peak_entries=max(w.entries for w in windows),
        average_entries=sum(w.entries for w in windows) / len(windows),
        is_system_active=last is not None and last >= active_cutoff,
        minutes_since_last_activity=(now - last).total_seconds() / 60 if last else None
    )


def _current_session(
    records: Sequence[UsageRecord],
    sessions: List[SessionSummary],
    now: datetime
) -> Optional[CurrentSession]:
    """The session of the newest record, if that record is recent enough."""
    if not records:
        return None
    latest = records[-1]
    if now - latest.timestamp > timedelta(minutes=ACTIVE_SESSION_LOOKBACK_MINUTES):
        return None

    candidates = [
        s for s in sessions
        if s.raw_session_id == latest.session_id and s.start <= latest.timestamp <= s.end
    ]
    if not candidates:
        return None
    session = max(candidates, key=lambda s: s.start)

    duration = max(0.0, (now - session.start).total_seconds() / 60)
    time_left = max(0.0, SESSION_WINDOW_MINUTES - duration)
    cost_per_minute = session.cost / duration if duration > 0 else 0.0
    return CurrentSession(
        session_id=session.session_id,
        display_id=session.display_id,
        project=session.project,
        start=session.start,
        last_activity=session.end,
        duration_minutes=duration,
        time_left_minutes=time_left,
        status="active" if time_left > 0 else "expired",
        progress_pct=min(100.0, duration / SESSION_WINDOW_MINUTES * 100),
        cost=session.cost,
        total_tokens=session.total_tokens,
        entries=session.entries,
        tokens_per_minute=session.total_tokens / duration if duration > 0 else float(session.total_tokens),
        cost_per_hour=cost_per_minute * 60,
        projected_session_cost=cost_per_minute * SESSION_WINDOW_MINUTES if duration > 0 else session.cost
    )


def _build_gap_metrics(records: Sequence[UsageRecord]) -> GapMetrics:
    gaps = detect_gaps(records)
    return GapMetrics(
        gaps=gaps,
        statistics=gap_statistics(gaps),
        productivity=productivity_pattern(list(records), gaps)
    )


def _assemble(
    *,
    records: Sequence[UsageRecord],
    currency: str,
    exchange_rate: float,
    billing_cycle_day: int,
    now: datetime,
    total_cost: float,
    token_sums: Tuple[int, int, int, int],
    entries: int,
    sessions: List[SessionSummary],
    projects: List[ProjectSummary],
    daily: List[DailyBreakdown],
    periods: List[PeriodBreakdown],
    gap_metrics: GapMetrics,
    model_rows: List[ModelBreakdown],
    live: LiveMetrics
) -> DerivedMetrics:
    input_tokens, output_tokens, cache_write_tokens, cache_read_tokens = token_sums
    total_tokens = sum(token_sums)
    session_count = len({s.raw_session_id for s in sessions})
    segment_count = len(sessions)
    project_count = len(projects)
    active_days = len(daily)

    current = period_for(now, billing_cycle_day)
    period_cost = next((p.cost for p in periods if p.key == current.key), 0.0)
    period_cost, clamped = clamp_period_cost(period_cost, total_cost)

    growth = None
    if len(periods) >= 2 and periods[1].cost > 0:
        growth = (periods[0].cost - periods[1].cost) / periods[1].cost * 100

    week_start = (now.date() - timedelta(days=6)).isoformat()
    today = now.date().isoformat()
    daily_average = total_cost / active_days if active_days else 0.0
    projected_monthly = daily_average * DAYS_PER_MONTH

    financial = FinancialMetrics(
        currency=currency,
        exchange_rate=exchange_rate,
        total_cost=total_cost,
        average_cost_per_session=total_cost / segment_count if segment_count else 0.0,
        average_cost_per_project=total_cost / project_count if project_count else 0.0,
        average_cost_per_entry=total_cost / entries if entries else 0.0,
        cost_per_token=total_cost / total_tokens if total_tokens else 0.0,
        cost_per_1k_tokens=total_cost / total_tokens * 1000 if total_tokens else 0.0,
        cost_per_million_tokens=total_cost / total_tokens * 1_000_000 if total_tokens else 0.0,
        daily_average_cost=daily_average,
        last_7_days_cost=sum(d.cost for d in daily if week_start <= d.date <= today),
        current_period_key=current.key,
        current_period_label=current.label,
        current_period_cost=period_cost,
        current_period_clamped=clamped,
        days_until_reset=days_until_reset(now, billing_cycle_day),
        projected_monthly=projected_monthly,
        projected_quarterly=projected_monthly * 3,
        projected_yearly=projected_monthly * 12,
        growth_trend_pct=growth
    )

    tokens = TokenMetrics(
        total_tokens=total_tokens,
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        cache_write_tokens=cache_write_tokens,
        cache_read_tokens=cache_read_tokens,
        average_tokens_per_session=total_tokens / segment_count if segment_count else 0.0,
        average_tokens_per_entry=total_tokens / entries if entries else 0.0
    )

    most_active = max(projects, key=lambda p: (p.entries, p.cost)).name if projects else None
    most_recent = max(projects, key=lambda p: p.last_activity).name if projects else None
    durations = [s.duration_minutes for s in sessions]
    session_metrics = SessionMetrics(
        total_entries=entries,
        total_sessions=session_count,
        total_projects=project_count,
        sessions=sessions,
        projects=projects,
        most_active_project=most_active,
        most_recent_project=most_recent,
        most_expensive_session=max(sessions, key=lambda s: s.cost).session_id if sessions else None,
        most_productive_session=max(sessions, key=lambda s: s.total_tokens).session_id if sessions else None,
        average_session_minutes=sum(durations) / len(durations) if durations else 0.0,
        longest_session_minutes=max(durations) if durations else 0.0
    )

    current_session = _current_session(records, sessions, now)
    first = records[0].timestamp if records else None
    last = records[-1].timestamp if records else None
    timing = TimingMetrics(
        first_activity=first,
        last_activity=last,
        active_days=active_days,
        days_tracked=(last.date() - first.date()).days + 1 if records else 0,
        session_status=current_session.status if current_session else "idle",
        current_session=current_session
    )

    period_metrics = PeriodMetrics(
        billing_cycle_day=billing_cycle_day,
        daily=daily,
        billing_periods=periods,
        highest_spending_period=max(periods, key=lambda p: p.cost).key if periods else None,
        most_active_period=max(periods, key=lambda p: p.entries).key if periods else None,
        average_period_cost=sum(p.cost for p in periods) / len(periods) if periods else 0.0
    )

    return DerivedMetrics(
        financial=financial,
        tokens=tokens,
        sessions=session_metrics,
        timing=timing,
        periods=period_metrics,
        gaps=gap_metrics,
        models=ModelMetrics(models=sorted(m.model for m in model_rows), breakdown=model_rows),
        live=live,
        computed_at=now,
        record_count=entries
    )


def _validate_settings(exchange_rate: float) -> None:
    if exchange_rate <= 0:
        raise ValueError("exchange_rate must be > 0")


def compute(
    records: Iterable[UsageRecord],
    currency: str = "USD",
    exchange_rate: float = 1.0,
    billing_cycle_day: int = 1,
    now: Optional[datetime] = None,
    progress: Optional[ProgressCallback] = None,
    cancel_token: Optional[CancellationToken] = None
) -> DerivedMetrics:
    """Compute every derived metric from scratch.

    Args:
        records: All usage records, in any order
        currency: Display currency code
        exchange_rate: USD -> currency multiplier applied to every cost
        billing_cycle_day: Day of month billing periods start on
        now: Reference time for live and current-period figures
        progress: Receives a ProgressEvent after each step
        cancel_token: Checked between steps

    Returns:
        DerivedMetrics with costs in `currency`

    Raises:
        AggregationCancelledError: If the token is cancelled mid-way
        ValueError: If the exchange rate or cycle day is invalid
    """
    _validate_settings(exchange_rate)
    now = now or datetime.now(timezone.utc)

    ordered = sorted(records, key=lambda r: r.timestamp)
    _checkpoint(progress, cancel_token, "load", 5, f"Sorted {len(ordered)} records")

    totals = _Totals()
    for record in ordered:
        totals.add(record, exchange_rate)
    _checkpoint(progress, cancel_token, "totals", 15, "Computed totals")

    sessions = _build_sessions(ordered, exchange_rate)
    _checkpoint(progress, cancel_token, "sessions", 35, f"Grouped {len(sessions)} sessions")

    projects = _project_rows(_project_totals(ordered, exchange_rate), sessions)
    _checkpoint(progress, cancel_token, "projects", 45, f"Grouped {len(projects)} projects")

    day_totals = _day_totals(ordered, exchange_rate)
    daily = _daily_rows({date: _day_values(t) for date, t in day_totals.items()})
    _checkpoint(progress, cancel_token, "daily", 55, f"Grouped {len(daily)} days")

    periods = _build_periods(ordered, billing_cycle_day, exchange_rate)
    _checkpoint(progress, cancel_token, "periods", 65, f"Grouped {len(periods)} billing periods")

    gap_metrics = _build_gap_metrics(ordered)
    _checkpoint(progress, cancel_token, "gaps", 75, f"Detected {len(gap_metrics.gaps)} gaps")

    model_rows = _model_rows(_model_totals(ordered, exchange_rate), totals.cost)
    _checkpoint(progress, cancel_token, "models", 85, f"Broke down {len(model_rows)} models")

    live = _build_live(ordered, now)
    metrics = _assemble(
        records=ordered,
        currency=currency,
        exchange_rate=exchange_rate,
        billing_cycle_day=billing_cycle_day,
        now=now,
        total_cost=totals.cost,
        token_sums=(totals.input_tokens, totals.output_tokens,
                    totals.cache_write_tokens, totals.cache_read_tokens),
        entries=totals.entries,
        sessions=sessions,
        projects=projects,
        daily=daily,
        periods=periods,
        gap_metrics=gap_metrics,
        model_rows=model_rows,
        live=live
    )
    _checkpoint(progress, cancel_token, "done", 100, "Aggregation complete")
    return metrics


def _same_settings(
    previous: DerivedMetrics,
    currency: str,
    exchange_rate: float,
    billing_cycle_day: int
) -> bool:
    return (
        previous.financial.currency == currency
        and previous.financial.exchange_rate == exchange_rate
        and previous.periods.billing_cycle_day == billing_cycle_day
    )


def merge_incremental(
    previous: Optional[DerivedMetrics],
    new_records: Sequence[UsageRecord],
    all_records: Iterable[UsageRecord],
    currency: str = "USD",
    exchange_rate: float = 1.0,
    billing_cycle_day: int = 1,
    now: Optional[datetime] = None,
    progress: Optional[ProgressCallback] = None,
    cancel_token: Optional[CancellationToken] = None
) -> DerivedMetrics:
    """Fold newly ingested records into previously computed metrics.

    Totals, token sums, per-project and per-model sums are updated from
    `new_records` alone. Billing periods, sessions, gaps and live state are
    regrouped from `all_records`, which must already contain the new
    records. Days touched by new records are regrouped from `all_records`.
    Falls back to `compute` when there is no previous result or the
    currency, rate or cycle day changed.

    Args:
        previous: Metrics from the last computation, or None
        new_records: Records inserted since `previous` was computed
        all_records: Every stored record, including the new ones

    Returns:
        Updated DerivedMetrics
    """
    _validate_settings(exchange_rate)
    if previous is None or not _same_settings(previous, currency, exchange_rate, billing_cycle_day):
        logger.info("No compatible previous metrics, running full recompute")
        return compute(all_records, currency, exchange_rate, billing_cycle_day,
                       now=now, progress=progress, cancel_token=cancel_token)

    now = now or datetime.now(timezone.utc)
    ordered = sorted(all_records, key=lambda r: r.timestamp)
    _checkpoint(progress, cancel_token, "load", 5,
                f"Merging {len(new_records)} new of {len(ordered)} records")

    added = _Totals()
    for record in new_records:
        added.add(record, exchange_rate)
    total_cost = previous.financial.total_cost + added.cost
    token_sums = (
        previous.tokens.input_tokens + added.input_tokens,
        previous.tokens.output_tokens + added.output_tokens,
        previous.tokens.cache_write_tokens + added.cache_write_tokens,
        previous.tokens.cache_read_tokens + added.cache_read_tokens,
    )
    entries = previous.sessions.total_entries + added.entries
    _checkpoint(progress, cancel_token, "totals", 15, "Updated totals")

    sessions = _build_sessions(ordered, exchange_rate)
    _checkpoint(progress, cancel_token, "sessions", 35, f"Grouped {len(sessions)} sessions")

    project_totals: Dict[str, _Totals] = defaultdict(_Totals)
    for project in previous.sessions.projects:
        totals = project_totals[project.name]
        totals.cost = project.cost
        totals.total_tokens = project.total_tokens
        totals.entries = project.entries
        totals.first = project.first_activity
        totals.last = project.last_activity
        totals.models = set(project.models)
    for record in new_records:
        project_totals[record.project].add(record, exchange_rate)
    projects = _project_rows(project_totals, sessions)
    _checkpoint(progress, cancel_token, "projects", 45, f"Updated {len(projects)} projects")

    touched = {record.timestamp.date().isoformat() for record in new_records}
    day_values = {
        day.date: (day.cost, day.total_tokens, day.entries, day.sessions, day.models)
        for day in previous.periods.daily
        if day.date not in touched
    }
    regrouped = _day_totals(
        (r for r in ordered if r.timestamp.date().isoformat() in touched), exchange_rate
    )
    day_values.update({date: _day_values(t) for date, t in regrouped.items()})
    daily = _daily_rows(day_values)
    _checkpoint(progress, cancel_token, "daily", 55, f"Updated {len(touched)} days")

    periods = _build_periods(ordered, billing_cycle_day, exchange_rate)
    _checkpoint(progress, cancel_token, "periods", 65, f"Regrouped {len(periods)} billing periods")

    gap_metrics = _build_gap_metrics(ordered)
    _checkpoint(progress, cancel_token, "gaps", 75, f"Detected {len(gap_metrics.gaps)} gaps")

    model_totals: Dict[str, _Totals] = defaultdict(_Totals)
    for model in previous.models.breakdown:
        totals = model_totals[model.model]
        totals.cost = model.cost
        totals.total_tokens = model.total_tokens
        totals.input_tokens = model.input_tokens
        totals.output_tokens = model.output_tokens
        totals.cache_write_tokens = model.cache_write_tokens
        totals.cache_read_tokens = model.cache_read_tokens
        totals.entries = model.entries
    for record in new_records:
        model_totals[record.model].add(record, exchange_rate)
    model_rows = _model_rows(model_totals, total_cost)
    _checkpoint(progress, cancel_token, "models", 85, f"Updated {len(model_rows)} models")

    metrics = _assemble(
        records=ordered,
        currency=currency,
        exchange_rate=exchange_rate,
        billing_cycle_day=billing_cycle_day,
        now=now,
        total_cost=total_cost,
        token_sums=token_sums,
        entries=entries,
        sessions=sessions,
        projects=projects,
        daily=daily,
        periods=periods,
        gap_metrics=gap_metrics,
        model_rows=model_rows,
        live=_build_live(ordered, now)
    )
    _checkpoint(progress, cancel_token, "done", 100, "Incremental merge complete")
    return metrics
