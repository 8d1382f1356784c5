"""
Derived metrics data structures.

Typed result groups produced by the aggregation engine.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from .gaps import Gap, GapStatistics, ProductivityPattern, WorkPattern


@dataclass(frozen=True)
class SessionSummary:
    """One session (or 5-hour segment of a long session)."""
    session_id: str
    raw_session_id: str
    display_id: str
    project: str
    projects: List[str]
    models: List[str]
    start: datetime
    end: datetime
    duration_minutes: float
    cost: float
    total_tokens: int
    input_tokens: int
    output_tokens: int
    cache_write_tokens: int
    cache_read_tokens: int
    entries: int


@dataclass(frozen=True)
class ProjectSummary:
    """Usage rolled up per derived project name."""
    name: str
    cost: float
    total_tokens: int
    entries: int
    sessions: int
    first_activity: datetime
    last_activity: datetime
    models: List[str]


@dataclass(frozen=True)
class DailyBreakdown:
    """Usage of one UTC calendar day with running totals."""
    date: str
    cost: float
    total_tokens: int
    entries: int
    sessions: int
    models: List[str]
    running_cost: float
    running_tokens: int


@dataclass(frozen=True)
class PeriodBreakdown:
    """Usage of one billing period with a running cost total."""
    key: str
    label: str
    start: datetime
    end: datetime
    cost: float
    total_tokens: int
    entries: int
    sessions: int
    active_days: int
    models: List[str]
    running_cost: float


@dataclass(frozen=True)
class ModelBreakdown:
    """Cost and efficiency of one model."""
    model: str
    cost: float
    total_tokens: int
    input_tokens: int
    output_tokens: int
    cache_write_tokens: int
    cache_read_tokens: int
    entries: int
    cost_per_1k_tokens: float
    cost_share_pct: float


@dataclass(frozen=True)
class ActivityWindow:
    """Record density of one fixed-size time bucket."""
    start: datetime
    end: datetime
    entries: int
    total_tokens: int


@dataclass(frozen=True)
class CurrentSession:
    """Timing and projections of the session in progress."""
    session_id: str
    display_id: str
    project: str
    start: datetime
    last_activity: datetime
    duration_minutes: float
    time_left_minutes: float
    status: str
    progress_pct: float
    cost: float
    total_tokens: int
    entries: int
    tokens_per_minute: float
    cost_per_hour: float
    projected_session_cost: float


@dataclass(frozen=True)
class FinancialMetrics:
    currency: str
    exchange_rate: float
    total_cost: float = 0.0
    average_cost_per_session: float = 0.0
    average_cost_per_project: float = 0.0
    average_cost_per_entry: float = 0.0
    cost_per_token: float = 0.0
    cost_per_1k_tokens: float = 0.0
    cost_per_million_tokens: float = 0.0
    daily_average_cost: float = 0.0
    last_7_days_cost: float = 0.0
    current_period_key: Optional[str] = None
    current_period_label: Optional[str] = None
    current_period_cost: float = 0.0
    current_period_clamped: bool = False
    days_until_reset: int = 0
    projected_monthly: float = 0.0
    projected_quarterly: float = 0.0
    projected_yearly: float = 0.0
    growth_trend_pct: Optional[float] = None


@dataclass(frozen=True)
class TokenMetrics:
    total_tokens: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    cache_write_tokens: int = 0
    cache_read_tokens: int = 0
    average_tokens_per_session: float = 0.0
    average_tokens_per_entry: float = 0.0


@dataclass(frozen=True)
class SessionMetrics:
    total_entries: int = 0
    total_sessions: int = 0
    total_projects: int = 0
    sessions: List[SessionSummary] = field(default_factory=list)
    projects: List[ProjectSummary] = field(default_factory=list)
    most_active_project: Optional[str] = None
    most_recent_project: Optional[str] = None
    most_expensive_session: Optional[str] = None
    most_productive_session: Optional[str] = None
    average_session_minutes: float = 0.0
    longest_session_minutes: float = 0.0


@dataclass(frozen=True)
class TimingMetrics:
    first_activity: Optional[datetime] = None
    last_activity: Optional[datetime] = None
    active_days: int = 0
    days_tracked: int = 0
    session_status: str = "idle"
    current_session: Optional[CurrentSession] = None


@dataclass(frozen=True)
class PeriodMetrics:
    billing_cycle_day: int = 1
    daily: List[DailyBreakdown] = field(default_factory=list)
    billing_periods: List[PeriodBreakdown] = field(default_factory=list)
    highest_spending_period: Optional[str] = None
    most_active_period: Optional[str] = None
    average_period_cost: float = 0.0


@dataclass(frozen=True)
class GapMetrics:
    gaps: List[Gap] = field(default_factory=list)
    statistics: GapStatistics = field(default_factory=GapStatistics)
    productivity: ProductivityPattern = field(
        default_factory=lambda: ProductivityPattern(
            work_pattern=WorkPattern.MIXED,
            total_work_minutes=0.0,
            average_gap_minutes=0.0,
            work_break_ratio=None
        )
    )


@dataclass(frozen=True)
class ModelMetrics:
    models: List[str] = field(default_factory=list)
    breakdown: List[ModelBreakdown] = field(default_factory=list)


@dataclass(frozen=True)
class LiveMetrics:
    window_minutes: int = 5
    windows: List[ActivityWindow] = field(default_factory=list)
    peak_entries: int = 0
    average_entries: float = 0.0
    is_system_active: bool = False
    minutes_since_last_activity: Optional[float] = None


@dataclass(frozen=True)
class DerivedMetrics:
    """Everything the views need, grouped by concern.

    Costs are already converted to `financial.currency`.
    """
    financial: FinancialMetrics
    tokens: TokenMetrics
    sessions: SessionMetrics
    timing: TimingMetrics
    periods: PeriodMetrics
    gaps: GapMetrics
    models: ModelMetrics
    live: LiveMetrics
    computed_at: datetime
    record_count: int = 0
