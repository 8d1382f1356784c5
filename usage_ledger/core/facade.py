"""
Tab data facade.

Read-side views over derived metrics, each refreshed on its own schedule.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Mapping, Optional, Tuple, Union

from usage_ledger.config.loader import DEFAULT_REFRESH_INTERVALS, View
from usage_ledger.storage.repository import UsageRepository
from .aggregation import compute, merge_incremental
from .export import render_export, to_jsonable
from .ingestion import IngestionCoordinator, IngestionResult
from .metrics import DerivedMetrics
from .worker import AggregationWorker, CancellationToken, ProgressCallback

logger = logging.getLogger(__name__)

ViewName = Union[str, View]


def resolve_view(name: ViewName) -> View:
    """Look up a view by name.

    Raises:
        ValueError: If no such view exists
    """
    if isinstance(name, View):
        return name
    try:
        return View(name.lower())
    except ValueError:
        valid = [v.value for v in View]
        raise ValueError(f"Unknown view '{name}', expected one of: {valid}")


def build_view(view: View, metrics: DerivedMetrics) -> Dict[str, Any]:
    """Select the part of the metrics a view shows, as JSON-ready data."""
    financial = metrics.financial
    header = {
        "currency": financial.currency,
        "computed_at": metrics.computed_at.isoformat(),
    }

    if view is View.OVERVIEW:
        body = {
            "total_cost": financial.total_cost,
            "total_tokens": metrics.tokens.total_tokens,
            "total_entries": metrics.sessions.total_entries,
            "total_sessions": metrics.sessions.total_sessions,
            "total_projects": metrics.sessions.total_projects,
            "active_days": metrics.timing.active_days,
            "first_activity": metrics.timing.first_activity,
            "last_activity": metrics.timing.last_activity,
            "average_cost_per_session": financial.average_cost_per_session,
            "average_cost_per_entry": financial.average_cost_per_entry,
            "cost_per_million_tokens": financial.cost_per_million_tokens,
            "daily_average_cost": financial.daily_average_cost,
            "last_7_days_cost": financial.last_7_days_cost,
            "current_period_label": financial.current_period_label,
            "current_period_cost": financial.current_period_cost,
            "projected_monthly": financial.projected_monthly,
            "tokens": metrics.tokens,
            "models": metrics.models.models,
            "session_status": metrics.timing.session_status,
            "is_system_active": metrics.live.is_system_active,
            "work_pattern": metrics.gaps.productivity.work_pattern,
        }
    elif view is View.PROJECTS:
        body = {
            "total_projects": metrics.sessions.total_projects,
            "most_active_project": metrics.sessions.most_active_project,
            "most_recent_project": metrics.sessions.most_recent_project,
            "average_cost_per_project": financial.average_cost_per_project,
            "projects": metrics.sessions.projects,
        }
    elif view is View.SESSIONS:
        body = {
            "total_sessions": metrics.sessions.total_sessions,
            "average_session_minutes": metrics.sessions.average_session_minutes,
            "longest_session_minutes": metrics.sessions.longest_session_minutes,
            "most_expensive_session": metrics.sessions.most_expensive_session,
            "most_productive_session": metrics.sessions.most_productive_session,
            "sessions": metrics.sessions.sessions,
        }
    elif view is View.MONTHLY:
        body = {
            "billing_cycle_day": metrics.periods.billing_cycle_day,
            "current_period_key": financial.current_period_key,
            "current_period_label": financial.current_period_label,
            "current_period_cost": financial.current_period_cost,
            "days_until_reset": financial.days_until_reset,
            "highest_spending_period": metrics.periods.highest_spending_period,
            "most_active_period": metrics.periods.most_active_period,
            "average_period_cost": metrics.periods.average_period_cost,
            "growth_trend_pct": financial.growth_trend_pct,
            "projected_monthly": financial.projected_monthly,
            "projected_quarterly": financial.projected_quarterly,
            "projected_yearly": financial.projected_yearly,
            "model_breakdown": metrics.models.breakdown,
            "billing_periods": metrics.periods.billing_periods,
        }
    elif view is View.DAILY:
        body = {
            "active_days": metrics.timing.active_days,
            "days_tracked": metrics.timing.days_tracked,
            "daily_average_cost": financial.daily_average_cost,
            "last_7_days_cost": financial.last_7_days_cost,
            "daily": list(reversed(metrics.periods.daily)),
        }
    else:
        body = {
            "session_status": metrics.timing.session_status,
            "current_session": metrics.timing.current_session,
            "is_system_active": metrics.live.is_system_active,
            "minutes_since_last_activity": metrics.live.minutes_since_last_activity,
            "window_minutes": metrics.live.window_minutes,
            "peak_entries": metrics.live.peak_entries,
            "average_entries": metrics.live.average_entries,
            "gap_statistics": metrics.gaps.statistics,
            "total_idle_hours": metrics.gaps.statistics.total_idle_hours,
            "productivity": metrics.gaps.productivity,
            "activity_windows": metrics.live.windows,
        }

    header.update(body)
    return to_jsonable(header)


class TabDataFacade:
    """Serves views with independent staleness windows.

    Reading a view whose window has elapsed runs an ingestion pass and an
    aggregation refresh, then snapshots that view. Other views keep their
    own snapshots until their windows elapse, so views can be at
    different freshness at the same time.
    """

    def __init__(
        self,
        repository: UsageRepository,
        coordinator: IngestionCoordinator,
        worker: Optional[AggregationWorker] = None,
        currency: str = "USD",
        exchange_rate: float = 1.0,
        billing_cycle_day: int = 1,
        refresh_intervals: Optional[Mapping[View, float]] = None,
        on_progress: Optional[ProgressCallback] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)
    ):
        self.repository = repository
        self.coordinator = coordinator
        self.worker = worker or AggregationWorker()
        self.currency = currency
        self.exchange_rate = exchange_rate
        self.billing_cycle_day = billing_cycle_day
        self.refresh_intervals = dict(DEFAULT_REFRESH_INTERVALS)
        self.refresh_intervals.update(refresh_intervals or {})
        self.on_progress = on_progress
        self.clock = clock
        self.metrics: Optional[DerivedMetrics] = None
        self.last_ingestion: Optional[IngestionResult] = None
        self._last_refresh: Dict[View, Optional[datetime]] = {view: None for view in View}
        self._snapshots: Dict[View, Dict[str, Any]] = {}

    def is_stale(self, name: ViewName, now: Optional[datetime] = None) -> bool:
        """Whether a view's staleness window has elapsed."""
        view = resolve_view(name)
        last = self._last_refresh[view]
        if last is None or view not in self._snapshots:
            return True
        now = now or self.clock()
        return (now - last).total_seconds() >= self.refresh_intervals[view]

    def get_view(self, name: ViewName, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Data of one view, refreshed first if its window has elapsed.

        Args:
            name: View name (overview, projects, sessions, monthly, daily, active)
            now: Reference time, defaults to the clock

        Returns:
            JSON-ready view data

        Raises:
            AggregationTimeoutError: If the refresh ran past its deadline
        """
        view = resolve_view(name)
        now = now or self.clock()
        if self.is_stale(view, now):
            self._refresh(now)
            self._snapshots[view] = build_view(view, self.metrics)
            self._last_refresh[view] = now
        return self._snapshots[view]

    def force_refresh(self, name: ViewName, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Reset one view's staleness clock and read it."""
        view = resolve_view(name)
        self._last_refresh[view] = None
        return self.get_view(view, now)

    def force_refresh_all(self, now: Optional[datetime] = None) -> Dict[str, Dict[str, Any]]:
        """Rescan every log line, recompute from scratch and refresh every view.

        The ingestion watermark is reset; the initial-load flag is not.

        Returns:
            Fresh data of every view keyed by view name
        """
        now = now or self.clock()
        self.coordinator.reset_watermark()
        self._last_refresh = {view: None for view in View}
        self._refresh(now, full=True)
        for view in View:
            self._snapshots[view] = build_view(view, self.metrics)
            self._last_refresh[view] = now
        return {view.value: self._snapshots[view] for view in View}

    def export_view(self, name: ViewName, fmt: str, now: Optional[datetime] = None) -> str:
        """Render a view as json, csv or markdown.

        Uses the view's current snapshot; a view never read before is
        loaded first.
        """
        view = resolve_view(name)
        data = self._snapshots.get(view)
        if data is None:
            data = self.get_view(view, now)
        return render_export(view.value, data, fmt, generated_at=now or self.clock())

    def _refresh(self, now: datetime, full: bool = False) -> None:
        """Ingest, rescan and aggregate as one task on the worker.

        The whole refresh runs under the worker's deadline, so a stuck
        ingestion pass surfaces as AggregationTimeoutError like a slow
        aggregation does.
        """
        previous = None if full else self.metrics
        result, metrics = self.worker.run(
            self._ingest_and_aggregate, previous, now, on_progress=self.on_progress
        )
        self.last_ingestion = result
        self.metrics = metrics

    def _ingest_and_aggregate(
        self,
        previous: Optional[DerivedMetrics],
        now: datetime,
        progress: Optional[ProgressCallback] = None,
        cancel_token: Optional[CancellationToken] = None
    ) -> Tuple[IngestionResult, DerivedMetrics]:
        result = self.coordinator.run_pass()
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()
        records = self.repository.scan_all()

        if previous is None:
            logger.info("Full recompute over %d records", len(records))
            metrics = compute(
                records, self.currency, self.exchange_rate, self.billing_cycle_day,
                now=now, progress=progress, cancel_token=cancel_token
            )
        else:
            logger.debug("Merging %d new records", len(result.inserted_records))
            metrics = merge_incremental(
                previous, result.inserted_records, records,
                self.currency, self.exchange_rate, self.billing_cycle_day,
                now=now, progress=progress, cancel_token=cancel_token
            )
        return result, metrics
