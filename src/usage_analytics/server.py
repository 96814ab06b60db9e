"""MCP Usage Analytics Server.

Provides tools over recorded usage sessions:
- get_status: DB stats
- get_usage_metrics: Totals and top models/projects/tools
- get_dashboard_summary: Headline totals and recent sessions
- get_cost_analysis / get_token_analysis: Time-bucketed cost and token views
- get_daily_usage: Per-day sessions, tokens and duration
- get_distributions / get_hourly_heatmap: Categorical and time-of-week usage
- get_performance_metrics: Session lengths, throughput, cache stats
- list_sessions / get_session: Paged listing and single-session lookup
- get_data_quality / validate_data: Data-quality audit
- cleanup_duplicates / cleanup_orphaned_metrics: Safe remediation
- get_retention_stats / cleanup_old_data: Age-based retention (dry run by default)
- get_oldest_records / validate_retention_policy: Retention diagnostics
"""

import logging
import os
from dataclasses import asdict

from fastmcp import FastMCP

from usage_analytics import __version__, quality, queries, retention
from usage_analytics.filters import Filter, parse_filter
from usage_analytics.retention import RetentionPolicy
from usage_analytics.storage import SQLiteStorage

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("usage-analytics")
if os.environ.get("DEV_MODE"):
    logger.setLevel(logging.DEBUG)

# Initialize MCP server
mcp = FastMCP("usage-analytics")

# Initialize storage
storage = SQLiteStorage()


def _run_filtered(query, **filter_args) -> dict:
    """Parse filter arguments, run a filtered query and return a plain dict.

    Invalid filter arguments are reported as ``{"error": ...}``.
    """
    try:
        filters: Filter = parse_filter(**filter_args)
    except ValueError as e:
        return {"error": str(e)}
    return asdict(query(storage, filters))


@mcp.tool()
def get_status() -> dict:
    """Get database stats.

    Returns:
        Status info including row counts, date range and DB size
    """
    return {
        "status": "ok",
        "version": __version__,
        **storage.get_db_stats(),
    }


@mcp.tool()
def get_usage_metrics(
    date_from: str | None = None,
    date_to: str | None = None,
    project_name: str | None = None,
    model_name: str | None = None,
    session_ids: list[str] | None = None,
) -> dict:
    """Get total sessions, cost, tokens and top-10 models/projects/tools.

    Args:
        date_from: Inclusive ISO-8601 lower bound on session start
        date_to: Inclusive ISO-8601 upper bound on session start
        project_name: Exact project name
        model_name: Exact model name
        session_ids: Restrict to these session IDs

    Returns:
        Usage metrics; breakdown percentages are of each breakdown's own total
    """
    return _run_filtered(
        queries.query_usage_metrics,
        date_from=date_from,
        date_to=date_to,
        project_name=project_name,
        model_name=model_name,
        session_ids=session_ids,
    )


@mcp.tool()
def get_dashboard_summary(
    date_from: str | None = None,
    date_to: str | None = None,
    project_name: str | None = None,
    model_name: str | None = None,
    session_ids: list[str] | None = None,
) -> dict:
    """Get total sessions, cost, tokens, average cost and the 5 most recent sessions."""
    return _run_filtered(
        queries.query_dashboard_summary,
        date_from=date_from,
        date_to=date_to,
        project_name=project_name,
        model_name=model_name,
        session_ids=session_ids,
    )


@mcp.tool()
def get_cost_analysis(
    date_from: str | None = None,
    date_to: str | None = None,
    project_name: str | None = None,
    model_name: str | None = None,
    session_ids: list[str] | None = None,
) -> dict:
    """Get daily/weekly/monthly cost, cost by model and project, and the priciest sessions.

    Returns:
        Cost analysis; model/project percentages are of the overall cost
    """
    return _run_filtered(
        queries.query_cost_analysis,
        date_from=date_from,
        date_to=date_to,
        project_name=project_name,
        model_name=model_name,
        session_ids=session_ids,
    )


@mcp.tool()
def get_token_analysis(
    date_from: str | None = None,
    date_to: str | None = None,
    project_name: str | None = None,
    model_name: str | None = None,
    session_ids: list[str] | None = None,
) -> dict:
    """Get token series, token split by model and project, and efficiency series."""
    return _run_filtered(
        queries.query_token_analysis,
        date_from=date_from,
        date_to=date_to,
        project_name=project_name,
        model_name=model_name,
        session_ids=session_ids,
    )


@mcp.tool()
def get_daily_usage(
    date_from: str | None = None,
    date_to: str | None = None,
    project_name: str | None = None,
    model_name: str | None = None,
    session_ids: list[str] | None = None,
) -> dict:
    """Get per-day session counts, token totals and average durations."""
    return _run_filtered(
        queries.query_daily_usage,
        date_from=date_from,
        date_to=date_to,
        project_name=project_name,
        model_name=model_name,
        session_ids=session_ids,
    )


@mcp.tool()
def get_distributions(
    date_from: str | None = None,
    date_to: str | None = None,
    project_name: str | None = None,
    model_name: str | None = None,
    session_ids: list[str] | None = None,
) -> dict:
    """Get top-10 session counts by model, tool and project."""
    return _run_filtered(
        queries.query_distributions,
        date_from=date_from,
        date_to=date_to,
        project_name=project_name,
        model_name=model_name,
        session_ids=session_ids,
    )


@mcp.tool()
def get_hourly_heatmap(
    date_from: str | None = None,
    date_to: str | None = None,
    project_name: str | None = None,
    model_name: str | None = None,
    session_ids: list[str] | None = None,
) -> dict:
    """Get session counts by day-of-week and hour.

    Returns:
        Dict with sparse ``cells`` (empty cells omitted)
    """
    try:
        filters = parse_filter(
            date_from=date_from,
            date_to=date_to,
            project_name=project_name,
            model_name=model_name,
            session_ids=session_ids,
        )
    except ValueError as e:
        return {"error": str(e)}
    cells = queries.query_hourly_heatmap(storage, filters)
    return {"cells": [asdict(c) for c in cells]}


@mcp.tool()
def get_performance_metrics(
    date_from: str | None = None,
    date_to: str | None = None,
    project_name: str | None = None,
    model_name: str | None = None,
    session_ids: list[str] | None = None,
) -> dict:
    """Get session-length histogram, tokens-per-minute series and cache stats."""
    return _run_filtered(
        queries.query_performance_metrics,
        date_from=date_from,
        date_to=date_to,
        project_name=project_name,
        model_name=model_name,
        session_ids=session_ids,
    )


@mcp.tool()
def list_sessions(
    date_from: str | None = None,
    date_to: str | None = None,
    project_name: str | None = None,
    model_name: str | None = None,
    session_ids: list[str] | None = None,
    limit: int = 50,
    offset: int = 0,
) -> dict:
    """List sessions newest first.

    Args:
        date_from: Inclusive ISO-8601 lower bound on session start
        date_to: Inclusive ISO-8601 upper bound on session start
        project_name: Exact project name
        model_name: Exact model name
        session_ids: Restrict to these session IDs
        limit: Page size, 1-1000 (default: 50)
        offset: Sessions to skip (default: 0)

    Returns:
        Page of sessions with total and has_more
    """
    return _run_filtered(
        queries.query_sessions,
        date_from=date_from,
        date_to=date_to,
        project_name=project_name,
        model_name=model_name,
        session_ids=session_ids,
        limit=limit,
        offset=offset,
    )


@mcp.tool()
def get_session(session_id: str) -> dict:
    """Get one session with its message count.

    Returns:
        Session detail, or ``{"found": False}`` when no session has that ID
    """
    detail = queries.get_session_details(storage, session_id)
    if detail is None:
        return {"found": False, "session_id": session_id}
    return {"found": True, **asdict(detail)}


@mcp.tool()
def get_data_quality() -> dict:
    """Audit completeness and integrity of all stored sessions.

    Returns:
        Counts, completeness score, grade, duplicates and recommendations
    """
    return asdict(quality.audit_data_quality(storage))


@mcp.tool()
def validate_data() -> dict:
    """Count structural problems in the sessions and session_metrics tables."""
    return {"validation_results": [asdict(v) for v in quality.validate_data_integrity(storage)]}


@mcp.tool()
def cleanup_duplicates() -> dict:
    """Delete duplicate session rows, keeping the most recently created one per ID."""
    return asdict(quality.cleanup_duplicate_sessions(storage))


@mcp.tool()
def cleanup_orphaned_metrics() -> dict:
    """Delete session_metrics rows whose session no longer exists."""
    return asdict(quality.cleanup_orphaned_metrics(storage))


def _run_retention(operation, session_days, message_days, metrics_days, **kwargs) -> dict:
    """Build a retention policy from overrides and the environment, then run.

    An invalid policy is reported as ``{"error": ...}``.
    """
    batch_size = kwargs.pop("batch_size", None)
    try:
        policy = RetentionPolicy.from_env(
            session_days=session_days,
            message_days=message_days,
            metrics_days=metrics_days,
            batch_size=batch_size,
        )
    except ValueError as e:
        return {"error": str(e)}
    return asdict(operation(storage, policy, **kwargs))


@mcp.tool()
def get_retention_stats(
    session_retention_days: int | None = None,
    message_retention_days: int | None = None,
    metrics_retention_days: int | None = None,
) -> dict:
    """Get per-table row counts, rows past retention and oldest/newest timestamps.

    Args:
        session_retention_days: Window for sessions (default: from environment, 90)
        message_retention_days: Window for raw messages (default: from environment, 90)
        metrics_retention_days: Window for session metrics (default: from environment, 90)

    Returns:
        Per-table stats and the total eligible for deletion
    """
    return _run_retention(
        retention.retention_stats,
        session_retention_days,
        message_retention_days,
        metrics_retention_days,
    )


@mcp.tool()
def cleanup_old_data(
    dry_run: bool = True,
    session_retention_days: int | None = None,
    message_retention_days: int | None = None,
    metrics_retention_days: int | None = None,
    batch_size: int | None = None,
) -> dict:
    """Delete rows older than their retention window.

    Args:
        dry_run: Only count what would be deleted (default: True)
        session_retention_days: Window for sessions (default: from environment, 90)
        message_retention_days: Window for raw messages (default: from environment, 90)
        metrics_retention_days: Window for session metrics (default: from environment, 90)
        batch_size: Rows per delete batch (default: from environment, 1000)

    Returns:
        Per-table deleted (or would-be-deleted) counts
    """
    return _run_retention(
        retention.cleanup_old_data,
        session_retention_days,
        message_retention_days,
        metrics_retention_days,
        batch_size=batch_size,
        dry_run=dry_run,
    )


@mcp.tool()
def get_oldest_records(limit: int = 10) -> dict:
    """Get the oldest sessions, messages and metrics rows with their age in days."""
    try:
        records = retention.oldest_records(storage, limit)
    except ValueError as e:
        return {"error": str(e)}
    return {"oldest_records": [asdict(r) for r in records]}


@mcp.tool()
def validate_retention_policy(
    session_retention_days: int | None = None,
    message_retention_days: int | None = None,
    metrics_retention_days: int | None = None,
) -> dict:
    """Check retention windows for risky settings."""
    return _run_retention(
        retention.validate_retention_policy,
        session_retention_days,
        message_retention_days,
        metrics_retention_days,
    )


def create_app():
    """Create the ASGI app for uvicorn."""
    # stateless_http=True allows resilience to server restarts
    return mcp.http_app(stateless_http=True)


def main():
    """Run the MCP server."""
    import uvicorn

    port = int(os.environ.get("PORT", 8082))
    host = os.environ.get("HOST", "127.0.0.1")

    print(f"Starting Claude Usage Analytics on {host}:{port}")
    print(
        f"Add to Claude Code: claude mcp add --transport http --scope user usage-analytics http://{host}:{port}/mcp"
    )

    uvicorn.run(create_app(), host=host, port=port)


if __name__ == "__main__":
    main()
