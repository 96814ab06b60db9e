"""Query implementations for usage analytics.

Every read operation compiles its Filter once, runs aggregate SQL against
``sessions s`` and maps the rows into the dataclasses in ``models``.
Empty selections produce zero-valued results, never errors.
"""

from __future__ import annotations

import sqlite3
from collections import Counter
from collections.abc import Iterable, Iterator
from decimal import ROUND_HALF_UP, Decimal

from usage_analytics.filters import Filter, Predicate, compile_filter
from usage_analytics.models import (
    CacheStats,
    CostAnalysis,
    CostShare,
    CountShare,
    DailyUsage,
    DashboardSummary,
    DistributionEntry,
    Distributions,
    HeatmapCell,
    LengthBucketCount,
    PerformanceMetrics,
    SessionDetail,
    SessionPage,
    SessionSummary,
    ThroughputPoint,
    TimeSeriesPoint,
    TokenAnalysis,
    TokenEfficiencyPoint,
    TokenSeries,
    TokenShare,
    UsageMetrics,
)
from usage_analytics.storage import SQLiteStorage, decode_tools

TOP_N = 10
RECENT_SESSIONS = 5
UNKNOWN = "Unknown"

# Bucket label expression and how many most-recent buckets to keep.
# Weeks start on Monday: jump to the week's Sunday, then back six days.
TIME_BUCKETS = {
    "day": ("DATE(s.started_at)", 30),
    "week": ("DATE(s.started_at, 'weekday 0', '-6 days')", 12),
    "month": ("DATE(s.started_at, 'start of month')", 6),
}

# Ordered, half-open duration buckets: (label, exclusive upper bound in seconds)
SESSION_LENGTH_BUCKETS: tuple[tuple[str, float], ...] = (
    ("<1min", 60),
    ("1-5min", 300),
    ("5-15min", 900),
    ("15-30min", 1800),
    ("30-60min", 3600),
    (">1hour", float("inf")),
)

# strftime('%w') numbering, 0 = Sunday
DAY_NAMES = ("Sun", "Mon", "Tue", "Wed", "Thu", "Fri", "Sat")

# Tokens per minute divides by at least this many minutes
MIN_DURATION_MINUTES = 0.1

SUMMARY_COLUMNS = """
    s.session_id, s.project_name, s.started_at, s.duration_seconds,
    s.total_cost_usd, s.total_input_tokens, s.total_output_tokens,
    s.model_name, s.tools_used
"""


def round_half_up(value: float, digits: int) -> float:
    """Round to ``digits`` decimals with halves away from zero.

    The built-in ``round`` rounds halves to even, so 3.125 would become 3.12.
    """
    quantum = Decimal(1).scaleb(-digits)
    return float(Decimal(str(value)).quantize(quantum, rounding=ROUND_HALF_UP))


def _percent(part: float, whole: float, digits: int = 2) -> float:
    """Percentage of ``whole``, 0 when the whole is zero."""
    if not whole:
        return 0.0
    return round_half_up(part / whole * 100, digits)


def _row_to_summary(row: sqlite3.Row) -> SessionSummary:
    """Convert a row selected with SUMMARY_COLUMNS to a SessionSummary."""
    return SessionSummary(
        session_id=row["session_id"],
        project_name=row["project_name"],
        started_at=row["started_at"],
        duration_seconds=row["duration_seconds"],
        total_cost_usd=row["total_cost_usd"] or 0.0,
        total_input_tokens=row["total_input_tokens"] or 0,
        total_output_tokens=row["total_output_tokens"] or 0,
        model_name=row["model_name"],
        tools_used=decode_tools(row["tools_used"]),
    )


def rank_shares(counts: Iterable[tuple[str, int]], limit: int = TOP_N) -> list[CountShare]:
    """Rank (name, count) pairs and attach each entry's share of the total.

    The percentage base is the sum over *all* pairs, before truncation to
    ``limit``, so the returned percentages sum to at most 100.
    """
    items = list(counts)
    total = sum(count for _, count in items)
    ranked = sorted(items, key=lambda item: (-item[1], item[0]))[:limit]
    return [
        CountShare(name=name, count=count, percentage=_percent(count, total))
        for name, count in ranked
    ]


def explode_tools(rows: Iterable[sqlite3.Row]) -> Iterator[tuple[int, str]]:
    """Fan out each session's tools_used list into (row id, tool) pairs.

    Sessions with an empty or missing list contribute nothing.
    """
    for row in rows:
        for tool in decode_tools(row["tools_used"]):
            yield row["id"], tool


def _tool_counts(storage: SQLiteStorage, predicate: Predicate) -> Counter:
    """Count tool occurrences across the filtered sessions."""
    rows = storage.execute_query(
        f"""
        SELECT s.id, s.tools_used
        FROM sessions s
        WHERE {predicate.and_("s.tools_used IS NOT NULL").sql}
        """,
        predicate.params,
    )
    return Counter(tool for _, tool in explode_tools(rows))


def _grouped_counts(
    storage: SQLiteStorage, predicate: Predicate, column: str
) -> list[tuple[str, int]]:
    """Session counts grouped by ``column``, NULL reported as 'Unknown'."""
    rows = storage.execute_query(
        f"""
        SELECT COALESCE({column}, '{UNKNOWN}') as name, COUNT(*) as count
        FROM sessions s
        WHERE {predicate.sql}
        GROUP BY name
        ORDER BY count DESC, name
        """,
        predicate.params,
    )
    return [(row["name"], row["count"]) for row in rows]


def _bucketed_rows(
    storage: SQLiteStorage,
    predicate: Predicate,
    granularity: str,
    aggregates: str,
) -> list[sqlite3.Row]:
    """Aggregate sessions into time buckets.

    Keeps the most recent N buckets for the granularity and returns them in
    ascending date order. Every row has ``bucket`` and ``count`` columns plus
    whatever ``aggregates`` selects.
    """
    bucket_expr, limit = TIME_BUCKETS[granularity]
    rows = storage.execute_query(
        f"""
        SELECT
            {bucket_expr} as bucket,
            {aggregates},
            COUNT(*) as count
        FROM sessions s
        WHERE {predicate.sql}
        GROUP BY bucket
        ORDER BY bucket DESC
        LIMIT ?
        """,
        (*predicate.params, limit),
    )
    return list(reversed(rows))


def _cost_series(
    storage: SQLiteStorage, predicate: Predicate, granularity: str
) -> list[TimeSeriesPoint]:
    rows = _bucketed_rows(
        storage, predicate, granularity, "COALESCE(SUM(s.total_cost_usd), 0) as value"
    )
    return [
        TimeSeriesPoint(date=row["bucket"], value=float(row["value"]), count=row["count"])
        for row in rows
    ]


def _token_rows(storage: SQLiteStorage, predicate: Predicate, granularity: str) -> list:
    return _bucketed_rows(
        storage,
        predicate,
        granularity,
        """COALESCE(SUM(s.total_input_tokens), 0) as input_tokens,
            COALESCE(SUM(s.total_output_tokens), 0) as output_tokens""",
    )


def _token_series(rows: list[sqlite3.Row]) -> TokenSeries:
    return TokenSeries(
        input=[
            TimeSeriesPoint(date=r["bucket"], value=r["input_tokens"], count=r["count"])
            for r in rows
        ],
        output=[
            TimeSeriesPoint(date=r["bucket"], value=r["output_tokens"], count=r["count"])
            for r in rows
        ],
    )


def _throughput_series(storage: SQLiteStorage, predicate: Predicate) -> list[ThroughputPoint]:
    """Daily average tokens per minute for the most recent 30 active days.

    Only sessions with a positive duration and at least one token count;
    durations under MIN_DURATION_MINUTES are clamped to it.
    """
    active = predicate.and_("s.duration_seconds > 0").and_(
        "(s.total_input_tokens + s.total_output_tokens) > 0"
    )
    rows = storage.execute_query(
        f"""
        SELECT
            DATE(s.started_at) as bucket,
            AVG(
                (s.total_input_tokens + s.total_output_tokens)
                / MAX(s.duration_seconds / 60.0, {MIN_DURATION_MINUTES})
            ) as tokens_per_minute
        FROM sessions s
        WHERE {active.sql}
        GROUP BY bucket
        ORDER BY bucket DESC
        LIMIT ?
        """,
        (*active.params, TIME_BUCKETS["day"][1]),
    )
    return [
        ThroughputPoint(date=row["bucket"], tokens_per_minute=row["tokens_per_minute"] or 0.0)
        for row in reversed(rows)
    ]


def _top_sessions(
    storage: SQLiteStorage, predicate: Predicate, order_by: str, limit: int
) -> list[SessionSummary]:
    rows = storage.execute_query(
        f"""
        SELECT {SUMMARY_COLUMNS}
        FROM sessions s
        WHERE {predicate.sql}
        ORDER BY {order_by}
        LIMIT ?
        """,
        (*predicate.params, limit),
    )
    return [_row_to_summary(row) for row in rows]


def query_usage_metrics(storage: SQLiteStorage, filters: Filter | None = None) -> UsageMetrics:
    """Get overall totals and top-N model/project/tool breakdowns.

    Each breakdown's percentages are relative to that breakdown's own total
    (a session with three tools adds three to the tool total), not to
    ``total_sessions``.

    Args:
        storage: Storage instance
        filters: Optional session filter

    Returns:
        UsageMetrics, all zeros and empty lists when nothing matches
    """
    predicate = compile_filter(filters)

    row = storage.execute_query(
        f"""
        SELECT
            COUNT(*) as total_sessions,
            COALESCE(SUM(s.total_cost_usd), 0) as total_cost,
            COALESCE(SUM(s.total_input_tokens), 0) as total_input_tokens,
            COALESCE(SUM(s.total_output_tokens), 0) as total_output_tokens,
            AVG(s.duration_seconds) as avg_duration
        FROM sessions s
        WHERE {predicate.sql}
        """,
        predicate.params,
    )[0]

    projects = _grouped_counts(
        storage, predicate.and_("s.project_name IS NOT NULL"), "s.project_name"
    )

    return UsageMetrics(
        total_sessions=row["total_sessions"],
        total_cost=float(row["total_cost"]),
        total_input_tokens=row["total_input_tokens"],
        total_output_tokens=row["total_output_tokens"],
        average_session_duration=float(row["avg_duration"] or 0),
        top_models=rank_shares(_grouped_counts(storage, predicate, "s.model_name")),
        top_projects=rank_shares(projects),
        top_tools=rank_shares(_tool_counts(storage, predicate).items()),
    )


def query_cost_analysis(storage: SQLiteStorage, filters: Filter | None = None) -> CostAnalysis:
    """Get cost over time, cost splits and the most expensive sessions.

    Model and project percentages are relative to the total cost of all
    filtered sessions, unlike the per-breakdown base used by
    ``query_usage_metrics``.

    Args:
        storage: Storage instance
        filters: Optional session filter

    Returns:
        CostAnalysis with daily (30), weekly (12) and monthly (6) series
    """
    predicate = compile_filter(filters)

    total_cost = storage.execute_query(
        f"SELECT COALESCE(SUM(s.total_cost_usd), 0) as total FROM sessions s WHERE {predicate.sql}",
        predicate.params,
    )[0]["total"]

    def cost_split(split_predicate: Predicate, column: str) -> list[CostShare]:
        rows = storage.execute_query(
            f"""
            SELECT
                COALESCE({column}, '{UNKNOWN}') as name,
                COALESCE(SUM(s.total_cost_usd), 0) as cost
            FROM sessions s
            WHERE {split_predicate.sql}
            GROUP BY name
            ORDER BY cost DESC, name
            LIMIT ?
            """,
            (*split_predicate.params, TOP_N),
        )
        return [
            CostShare(
                name=row["name"],
                cost=float(row["cost"]),
                percentage=_percent(row["cost"], total_cost),
            )
            for row in rows
        ]

    return CostAnalysis(
        daily_costs=_cost_series(storage, predicate, "day"),
        weekly_costs=_cost_series(storage, predicate, "week"),
        monthly_costs=_cost_series(storage, predicate, "month"),
        cost_by_model=cost_split(predicate, "s.model_name"),
        cost_by_project=cost_split(
            predicate.and_("s.project_name IS NOT NULL"), "s.project_name"
        ),
        most_expensive_sessions=_top_sessions(
            storage, predicate, "s.total_cost_usd DESC, s.id DESC", TOP_N
        ),
    )


def query_token_analysis(storage: SQLiteStorage, filters: Filter | None = None) -> TokenAnalysis:
    """Get token usage over time, token splits and efficiency series.

    ``token_efficiency`` is output/input per day rounded to 3 decimals (0 when
    a day has no input tokens). ``tokens_per_minute`` is the daily average
    throughput, same as in ``query_performance_metrics``.

    Args:
        storage: Storage instance
        filters: Optional session filter

    Returns:
        TokenAnalysis
    """
    predicate = compile_filter(filters)

    total_tokens = storage.execute_query(
        f"""
        SELECT COALESCE(SUM(s.total_input_tokens + s.total_output_tokens), 0) as total
        FROM sessions s
        WHERE {predicate.sql}
        """,
        predicate.params,
    )[0]["total"]

    def token_split(split_predicate: Predicate, column: str) -> list[TokenShare]:
        rows = storage.execute_query(
            f"""
            SELECT
                COALESCE({column}, '{UNKNOWN}') as name,
                COALESCE(SUM(s.total_input_tokens), 0) as input_tokens,
                COALESCE(SUM(s.total_output_tokens), 0) as output_tokens
            FROM sessions s
            WHERE {split_predicate.sql}
            GROUP BY name
            ORDER BY SUM(s.total_input_tokens) + SUM(s.total_output_tokens) DESC, name
            LIMIT ?
            """,
            (*split_predicate.params, TOP_N),
        )
        return [
            TokenShare(
                name=row["name"],
                input_tokens=row["input_tokens"],
                output_tokens=row["output_tokens"],
                percentage=_percent(row["input_tokens"] + row["output_tokens"], total_tokens),
            )
            for row in rows
        ]

    daily_rows = _token_rows(storage, predicate, "day")
    efficiency = [
        TokenEfficiencyPoint(
            date=row["bucket"],
            input_tokens=row["input_tokens"],
            output_tokens=row["output_tokens"],
            efficiency_ratio=(
                round_half_up(row["output_tokens"] / row["input_tokens"], 3)
                if row["input_tokens"] > 0
                else 0.0
            ),
        )
        for row in daily_rows
    ]

    return TokenAnalysis(
        daily_tokens=_token_series(daily_rows),
        weekly_tokens=_token_series(_token_rows(storage, predicate, "week")),
        monthly_tokens=_token_series(_token_rows(storage, predicate, "month")),
        tokens_by_model=token_split(predicate, "s.model_name"),
        tokens_by_project=token_split(
            predicate.and_("s.project_name IS NOT NULL"), "s.project_name"
        ),
        token_efficiency=efficiency,
        tokens_per_minute=_throughput_series(storage, predicate),
    )


def query_daily_usage(storage: SQLiteStorage, filters: Filter | None = None) -> DailyUsage:
    """Get per-day session count, token total and average duration.

    Args:
        storage: Storage instance
        filters: Optional session filter

    Returns:
        DailyUsage with three parallel ascending series
    """
    predicate = compile_filter(filters)
    rows = storage.execute_query(
        f"""
        SELECT
            DATE(s.started_at) as bucket,
            COUNT(*) as session_count,
            COALESCE(SUM(s.total_input_tokens + s.total_output_tokens), 0) as total_tokens,
            AVG(s.duration_seconds) as avg_duration
        FROM sessions s
        WHERE {predicate.sql}
        GROUP BY bucket
        ORDER BY bucket ASC
        """,
        predicate.params,
    )

    usage = DailyUsage()
    for row in rows:
        count = row["session_count"]
        usage.sessions.append(TimeSeriesPoint(date=row["bucket"], value=count, count=count))
        usage.tokens.append(
            TimeSeriesPoint(date=row["bucket"], value=row["total_tokens"], count=count)
        )
        usage.duration.append(
            TimeSeriesPoint(date=row["bucket"], value=float(row["avg_duration"] or 0), count=count)
        )
    return usage


def query_dashboard_summary(
    storage: SQLiteStorage, filters: Filter | None = None
) -> DashboardSummary:
    """Get headline totals and the most recent sessions."""
    predicate = compile_filter(filters)
    row = storage.execute_query(
        f"""
        SELECT
            COUNT(*) as total_sessions,
            COALESCE(SUM(s.total_cost_usd), 0) as total_cost,
            COALESCE(SUM(s.total_input_tokens + s.total_output_tokens), 0) as total_tokens
        FROM sessions s
        WHERE {predicate.sql}
        """,
        predicate.params,
    )[0]

    total_sessions = row["total_sessions"]
    total_cost = float(row["total_cost"])
    return DashboardSummary(
        total_sessions=total_sessions,
        total_cost=total_cost,
        total_tokens=row["total_tokens"],
        average_cost_per_session=total_cost / total_sessions if total_sessions else 0.0,
        recent_sessions=_top_sessions(
            storage, predicate, "s.started_at DESC, s.id DESC", RECENT_SESSIONS
        ),
    )


def query_distributions(storage: SQLiteStorage, filters: Filter | None = None) -> Distributions:
    """Get top-10 session counts by model, tool and project.

    Missing model or project names are counted under 'Unknown'.
    """
    predicate = compile_filter(filters)

    def entries(pairs: Iterable[tuple[str, int]]) -> list[DistributionEntry]:
        ranked = sorted(pairs, key=lambda item: (-item[1], item[0]))[:TOP_N]
        return [DistributionEntry(name=name, value=value) for name, value in ranked]

    return Distributions(
        model_usage=entries(_grouped_counts(storage, predicate, "s.model_name")),
        tool_usage=entries(_tool_counts(storage, predicate).items()),
        project_usage=entries(_grouped_counts(storage, predicate, "s.project_name")),
    )


def query_hourly_heatmap(
    storage: SQLiteStorage, filters: Filter | None = None
) -> list[HeatmapCell]:
    """Get session counts by day-of-week and hour-of-day.

    The result is sparse: cells without sessions are omitted. Use
    ``fill_heatmap`` for a dense grid.

    Returns:
        Cells ordered Sunday first, then by hour
    """
    predicate = compile_filter(filters)
    rows = storage.execute_query(
        f"""
        SELECT
            CAST(strftime('%w', s.started_at) AS INTEGER) as dow,
            CAST(strftime('%H', s.started_at) AS INTEGER) as hour,
            COUNT(*) as value
        FROM sessions s
        WHERE {predicate.sql}
        GROUP BY dow, hour
        ORDER BY dow, hour
        """,
        predicate.params,
    )
    return [
        HeatmapCell(day=DAY_NAMES[row["dow"]], hour=row["hour"], value=row["value"])
        for row in rows
    ]


def fill_heatmap(cells: Iterable[HeatmapCell]) -> dict[str, list[int]]:
    """Expand sparse heatmap cells into a dense day -> 24 hourly counts grid."""
    grid = {day: [0] * 24 for day in DAY_NAMES}
    for cell in cells:
        grid[cell.day][cell.hour] = cell.value
    return grid


def classify_session_length(duration_seconds: float) -> str:
    """Return the SESSION_LENGTH_BUCKETS label for a duration.

    Buckets are half-open: exactly 60 seconds is '1-5min'.
    """
    for label, upper in SESSION_LENGTH_BUCKETS:
        if duration_seconds < upper:
            return label
    return SESSION_LENGTH_BUCKETS[-1][0]


def query_performance_metrics(
    storage: SQLiteStorage, filters: Filter | None = None
) -> PerformanceMetrics:
    """Get session-length histogram, throughput series and cache stats.

    ``cache_stats.hit_rate`` is the fraction of sessions with at least one
    cache hit, not a hit/miss ratio.

    Args:
        storage: Storage instance
        filters: Optional session filter

    Returns:
        PerformanceMetrics; histogram sorted by count descending
    """
    predicate = compile_filter(filters)

    duration_rows = storage.execute_query(
        f"""
        SELECT s.duration_seconds as duration, COUNT(*) as count
        FROM sessions s
        WHERE {predicate.and_("s.duration_seconds IS NOT NULL").sql}
        GROUP BY s.duration_seconds
        """,
        predicate.params,
    )
    histogram: Counter = Counter()
    for row in duration_rows:
        histogram[classify_session_length(row["duration"])] += row["count"]

    order = {label: i for i, (label, _) in enumerate(SESSION_LENGTH_BUCKETS)}
    distribution = [
        LengthBucketCount(range=label, count=count)
        for label, count in sorted(histogram.items(), key=lambda kv: (-kv[1], order[kv[0]]))
    ]

    cache_row = storage.execute_query(
        f"""
        SELECT
            AVG(CASE WHEN s.cache_hit_count > 0 THEN 1.0 ELSE 0.0 END) as hit_rate,
            COUNT(*) as total_requests
        FROM sessions s
        WHERE {predicate.sql}
        """,
        predicate.params,
    )[0]

    return PerformanceMetrics(
        session_length_distribution=distribution,
        token_efficiency=_throughput_series(storage, predicate),
        cache_stats=CacheStats(
            hit_rate=float(cache_row["hit_rate"] or 0),
            total_requests=cache_row["total_requests"],
        ),
    )


def query_sessions(storage: SQLiteStorage, filters: Filter | None = None) -> SessionPage:
    """Get a page of session summaries, newest first.

    ``total`` counts every matching session regardless of paging.
    ``has_more`` is only computed when both limit and offset are given.

    Args:
        storage: Storage instance
        filters: Optional session filter, including limit/offset

    Returns:
        SessionPage
    """
    filters = filters or Filter()
    predicate = compile_filter(filters)

    params = list(predicate.params)
    page_clause = ""
    if filters.limit:
        page_clause = "LIMIT ?"
        params.append(filters.limit)
    if filters.offset:
        # SQLite requires a LIMIT before OFFSET; -1 means unbounded
        page_clause = f"{page_clause or 'LIMIT -1'} OFFSET ?"
        params.append(filters.offset)

    rows = storage.execute_query(
        f"""
        SELECT {SUMMARY_COLUMNS}
        FROM sessions s
        WHERE {predicate.sql}
        ORDER BY s.started_at DESC, s.id DESC
        {page_clause}
        """,
        params,
    )
    total = storage.execute_query(
        f"SELECT COUNT(*) as total FROM sessions s WHERE {predicate.sql}",
        predicate.params,
    )[0]["total"]

    has_more = False
    if filters.limit is not None and filters.offset is not None:
        has_more = filters.offset + filters.limit < total

    return SessionPage(
        sessions=[_row_to_summary(row) for row in rows], total=total, has_more=has_more
    )


def get_session_details(storage: SQLiteStorage, session_id: str) -> SessionDetail | None:
    """Look up one session by business key.

    When the key is duplicated, the most recently created row wins (the
    one deduplication keeps).

    Returns:
        SessionDetail with message_count, or None if no row has that key
    """
    rows = storage.execute_query(
        f"""
        SELECT
            {SUMMARY_COLUMNS},
            s.ended_at, s.cache_hit_count, s.cache_miss_count,
            (SELECT COUNT(*) FROM raw_messages m WHERE m.session_id = s.id) as message_count
        FROM sessions s
        WHERE s.session_id = ?
        ORDER BY s.created_at DESC, s.id DESC
        LIMIT 1
        """,
        (session_id,),
    )
    if not rows:
        return None

    row = rows[0]
    summary = _row_to_summary(row)
    return SessionDetail(
        **vars(summary),
        ended_at=row["ended_at"],
        cache_hit_count=row["cache_hit_count"] or 0,
        cache_miss_count=row["cache_miss_count"] or 0,
        message_count=row["message_count"],
    )
