"""Result types returned by the analytics and data-quality operations.

Queries map raw aggregate rows into these dataclasses, so callers never
depend on the shape of store rows. ``dataclasses.asdict`` gives the plain
dict form used by the CLI and the MCP server.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Literal

# Shared building blocks


@dataclass
class TimeSeriesPoint:
    """One time bucket: summed metric plus number of contributing sessions."""

    date: str
    value: float
    count: int


@dataclass
class CountShare:
    """Ranked breakdown entry; percentage is of the breakdown's own total."""

    name: str
    count: int
    percentage: float


@dataclass
class CostShare:
    """Cost for one model or project; percentage is of the overall cost."""

    name: str
    cost: float
    percentage: float


@dataclass
class TokenShare:
    """Token split for one model or project; percentage is of overall tokens."""

    name: str
    input_tokens: int
    output_tokens: int
    percentage: float


@dataclass
class SessionSummary:
    session_id: str
    project_name: str | None
    started_at: datetime
    duration_seconds: int | None
    total_cost_usd: float
    total_input_tokens: int
    total_output_tokens: int
    model_name: str | None
    tools_used: list[str] = field(default_factory=list)


@dataclass
class SessionDetail(SessionSummary):
    """Single-session lookup result, with counts the summary omits."""

    ended_at: datetime | None = None
    cache_hit_count: int = 0
    cache_miss_count: int = 0
    message_count: int = 0


# Usage and time-bucketed analytics


@dataclass
class UsageMetrics:
    total_sessions: int = 0
    total_cost: float = 0.0
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    average_session_duration: float = 0.0
    top_models: list[CountShare] = field(default_factory=list)
    top_projects: list[CountShare] = field(default_factory=list)
    top_tools: list[CountShare] = field(default_factory=list)


@dataclass
class CostAnalysis:
    daily_costs: list[TimeSeriesPoint] = field(default_factory=list)
    weekly_costs: list[TimeSeriesPoint] = field(default_factory=list)
    monthly_costs: list[TimeSeriesPoint] = field(default_factory=list)
    cost_by_model: list[CostShare] = field(default_factory=list)
    cost_by_project: list[CostShare] = field(default_factory=list)
    most_expensive_sessions: list[SessionSummary] = field(default_factory=list)


@dataclass
class TokenSeries:
    """Parallel input/output series over the same buckets."""

    input: list[TimeSeriesPoint] = field(default_factory=list)
    output: list[TimeSeriesPoint] = field(default_factory=list)


@dataclass
class TokenEfficiencyPoint:
    date: str
    input_tokens: int
    output_tokens: int
    efficiency_ratio: float  # output / input, 0 when input is 0


@dataclass
class ThroughputPoint:
    date: str
    tokens_per_minute: float


@dataclass
class TokenAnalysis:
    daily_tokens: TokenSeries = field(default_factory=TokenSeries)
    weekly_tokens: TokenSeries = field(default_factory=TokenSeries)
    monthly_tokens: TokenSeries = field(default_factory=TokenSeries)
    tokens_by_model: list[TokenShare] = field(default_factory=list)
    tokens_by_project: list[TokenShare] = field(default_factory=list)
    token_efficiency: list[TokenEfficiencyPoint] = field(default_factory=list)
    tokens_per_minute: list[ThroughputPoint] = field(default_factory=list)


@dataclass
class DailyUsage:
    sessions: list[TimeSeriesPoint] = field(default_factory=list)
    tokens: list[TimeSeriesPoint] = field(default_factory=list)
    duration: list[TimeSeriesPoint] = field(default_factory=list)


@dataclass
class DashboardSummary:
    total_sessions: int = 0
    total_cost: float = 0.0
    total_tokens: int = 0
    average_cost_per_session: float = 0.0
    recent_sessions: list[SessionSummary] = field(default_factory=list)


# Distributions, heatmap, performance


@dataclass
class DistributionEntry:
    name: str
    value: int


@dataclass
class Distributions:
    model_usage: list[DistributionEntry] = field(default_factory=list)
    tool_usage: list[DistributionEntry] = field(default_factory=list)
    project_usage: list[DistributionEntry] = field(default_factory=list)


@dataclass
class HeatmapCell:
    """Session count for one (day-of-week, hour) cell. Only non-empty cells are returned."""

    day: str
    hour: int
    value: int


@dataclass
class LengthBucketCount:
    range: str
    count: int


@dataclass
class CacheStats:
    hit_rate: float = 0.0  # Share of sessions with at least one cache hit
    total_requests: int = 0


@dataclass
class PerformanceMetrics:
    session_length_distribution: list[LengthBucketCount] = field(default_factory=list)
    token_efficiency: list[ThroughputPoint] = field(default_factory=list)
    cache_stats: CacheStats = field(default_factory=CacheStats)


@dataclass
class SessionPage:
    sessions: list[SessionSummary] = field(default_factory=list)
    total: int = 0
    has_more: bool = False


# Data quality

QualityGrade = Literal["A", "B", "C", "D", "F"]
RecommendationType = Literal["warning", "error", "info"]


@dataclass
class MissingData:
    sessions_without_end_time: int = 0
    sessions_without_duration: int = 0
    sessions_without_tokens: int = 0
    sessions_without_cost: int = 0
    metrics_without_messages: int = 0


@dataclass
class DataIntegrity:
    negative_tokens: int = 0
    negative_costs: int = 0
    invalid_durations: int = 0
    future_timestamps: int = 0
    inconsistent_timestamps: int = 0  # ended_at earlier than started_at


@dataclass
class DataCompleteness:
    completeness_score: int = 100
    missing_fields: list[str] = field(default_factory=list)
    quality_grade: QualityGrade = "A"


@dataclass
class DuplicateGroup:
    session_id: str
    duplicate_count: int
    first_seen: str | None
    last_seen: str | None


@dataclass
class Recommendation:
    type: RecommendationType
    title: str
    description: str
    affected_records: int
    action: str | None = None


@dataclass
class DataQualityReport:
    total_sessions: int = 0
    complete_sessions: int = 0
    incomplete_sessions: int = 0
    duplicate_sessions: int = 0
    orphaned_metrics: int = 0
    missing_data: MissingData = field(default_factory=MissingData)
    data_integrity: DataIntegrity = field(default_factory=DataIntegrity)
    data_completeness: DataCompleteness = field(default_factory=DataCompleteness)
    duplicate_analysis: list[DuplicateGroup] = field(default_factory=list)
    recommendations: list[Recommendation] = field(default_factory=list)


@dataclass
class TableValidation:
    table: str
    total_records: int
    checks: dict[str, int] = field(default_factory=dict)


@dataclass
class CleanupResult:
    deleted_records: int
    message: str


# Data retention


@dataclass
class TableRetentionStats:
    """Age profile of one table against its retention window."""

    table: str
    retention_days: int
    cutoff: datetime
    total_records: int = 0
    eligible_for_deletion: int = 0  # Rows strictly older than the cutoff
    oldest_record: datetime | None = None
    newest_record: datetime | None = None


@dataclass
class RetentionStats:
    tables: list[TableRetentionStats] = field(default_factory=list)
    total_eligible_records: int = 0


@dataclass
class RetentionResult:
    """Rows removed per table, or rows that would be removed on a dry run."""

    dry_run: bool
    deleted: dict[str, int] = field(default_factory=dict)
    total_deleted: int = 0
    message: str = ""


@dataclass
class OldestRecord:
    table: str
    record_id: str
    date: datetime
    age_days: int


@dataclass
class RetentionPolicyCheck:
    is_valid: bool
    warnings: list[str] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)
