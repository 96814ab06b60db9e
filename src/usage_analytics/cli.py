"""Command-line interface for usage analytics."""

import argparse
import json
from dataclasses import asdict

from usage_analytics import quality, queries, retention
from usage_analytics.filters import Filter, parse_filter
from usage_analytics.retention import RetentionPolicy
from usage_analytics.storage import SQLiteStorage

# Formatter registry: list of (predicate, formatter) tuples
# Each predicate checks if this formatter can handle the data
# Order matters - first match wins
_FORMATTERS: list[tuple[callable, callable]] = []


def _register_formatter(predicate: callable):
    """Decorator to register a formatter with its predicate."""

    def decorator(formatter: callable):
        _FORMATTERS.append((predicate, formatter))
        return formatter

    return decorator


def _session_line(session: dict) -> str:
    started = str(session.get("started_at") or "")[:16]
    project = session.get("project_name") or "-"
    return (
        f"  [{started}] {session['session_id']} ({project}, {session.get('model_name') or 'Unknown'})"
        f" ${session['total_cost_usd']:.4f}"
    )


@_register_formatter(lambda d: "db_path" in d)
def _format_status(data: dict) -> list[str]:
    lines = [
        f"Database: {data.get('db_path', 'unknown')}",
        f"Size: {data.get('db_size_bytes', 0) / 1024:.1f} KB",
        f"Sessions: {data['session_count']}",
        f"Metrics: {data.get('metrics_count', 0)}",
        f"Messages: {data.get('message_count', 0)}",
    ]
    if data.get("earliest_session"):
        lines.append(
            f"Date range: {str(data['earliest_session'])[:10]} to {str(data['latest_session'])[:10]}"
        )
    return lines


@_register_formatter(lambda d: "top_models" in d)
def _format_usage(data: dict) -> list[str]:
    lines = [
        f"Sessions: {data['total_sessions']}",
        f"Total cost: ${data['total_cost']:.2f}",
        f"Tokens: {data['total_input_tokens']} in / {data['total_output_tokens']} out",
        f"Average duration: {data['average_session_duration']:.0f}s",
    ]
    breakdowns = (("Models", "top_models"), ("Projects", "top_projects"), ("Tools", "top_tools"))
    for title, key in breakdowns:
        lines.append("")
        lines.append(f"{title}:")
        for item in data[key]:
            lines.append(f"  {item['name']}: {item['count']} ({item['percentage']}%)")
    return lines


@_register_formatter(lambda d: "recent_sessions" in d)
def _format_dashboard(data: dict) -> list[str]:
    lines = [
        f"Sessions: {data['total_sessions']}",
        f"Total cost: ${data['total_cost']:.2f}",
        f"Total tokens: {data['total_tokens']}",
        f"Average cost per session: ${data['average_cost_per_session']:.4f}",
        "",
        "Recent sessions:",
    ]
    lines.extend(_session_line(s) for s in data["recent_sessions"])
    return lines


@_register_formatter(lambda d: "daily_costs" in d)
def _format_costs(data: dict) -> list[str]:
    lines = ["Daily cost:"]
    for point in data["daily_costs"]:
        lines.append(f"  {point['date']}: ${point['value']:.2f} ({point['count']} sessions)")
    lines.append("")
    lines.append("Cost by model:")
    for item in data["cost_by_model"]:
        lines.append(f"  {item['name']}: ${item['cost']:.2f} ({item['percentage']}%)")
    lines.append("")
    lines.append("Cost by project:")
    for item in data["cost_by_project"]:
        lines.append(f"  {item['name']}: ${item['cost']:.2f} ({item['percentage']}%)")
    lines.append("")
    lines.append("Most expensive sessions:")
    lines.extend(_session_line(s) for s in data["most_expensive_sessions"])
    return lines


@_register_formatter(lambda d: "daily_tokens" in d)
def _format_tokens(data: dict) -> list[str]:
    lines = ["Daily tokens:"]
    for point in data["token_efficiency"]:
        lines.append(
            f"  {point['date']}: {point['input_tokens']} in / {point['output_tokens']} out"
            f" (ratio {point['efficiency_ratio']})"
        )
    lines.append("")
    lines.append("Tokens by model:")
    for item in data["tokens_by_model"]:
        lines.append(
            f"  {item['name']}: {item['input_tokens']} in / {item['output_tokens']} out"
            f" ({item['percentage']}%)"
        )
    return lines


@_register_formatter(lambda d: "has_more" in d)
def _format_session_page(data: dict) -> list[str]:
    lines = [f"Sessions: {len(data['sessions'])} of {data['total']}"]
    lines.extend(_session_line(s) for s in data["sessions"])
    if data["has_more"]:
        lines.append("  ... more available (use --offset)")
    return lines


@_register_formatter(lambda d: "sessions" in d and "duration" in d)
def _format_daily_usage(data: dict) -> list[str]:
    lines = ["Daily usage:"]
    for sessions, tokens, duration in zip(data["sessions"], data["tokens"], data["duration"]):
        lines.append(
            f"  {sessions['date']}: {sessions['value']} sessions, {tokens['value']} tokens,"
            f" avg {duration['value']:.0f}s"
        )
    return lines


@_register_formatter(lambda d: "model_usage" in d)
def _format_distributions(data: dict) -> list[str]:
    lines = []
    sections = (("Models", "model_usage"), ("Tools", "tool_usage"), ("Projects", "project_usage"))
    for title, key in sections:
        lines.append(f"{title}:")
        for entry in data[key]:
            lines.append(f"  {entry['name']}: {entry['value']}")
        lines.append("")
    return lines[:-1]


@_register_formatter(lambda d: "grid" in d)
def _format_heatmap(data: dict) -> list[str]:
    lines = ["     " + "".join(f"{h:>4}" for h in range(24))]
    for day, counts in data["grid"].items():
        lines.append(f"{day:<5}" + "".join(f"{c:>4}" for c in counts))
    return lines


@_register_formatter(lambda d: "session_length_distribution" in d)
def _format_performance(data: dict) -> list[str]:
    lines = ["Session lengths:"]
    for bucket in data["session_length_distribution"]:
        lines.append(f"  {bucket['range']}: {bucket['count']}")
    cache = data["cache_stats"]
    lines.append("")
    lines.append(
        f"Cache hit rate: {cache['hit_rate'] * 100:.1f}% of {cache['total_requests']} sessions"
    )
    lines.append("")
    lines.append("Tokens per minute:")
    for point in data["token_efficiency"]:
        lines.append(f"  {point['date']}: {point['tokens_per_minute']:.1f}")
    return lines


@_register_formatter(lambda d: "found" in d)
def _format_session_detail(data: dict) -> list[str]:
    if not data["found"]:
        return [f"Session not found: {data['session_id']}"]
    return [
        f"Session: {data['session_id']}",
        f"Project: {data.get('project_name') or '-'}",
        f"Model: {data.get('model_name') or 'Unknown'}",
        f"Started: {data['started_at']}",
        f"Ended: {data.get('ended_at') or '-'}",
        f"Duration: {data.get('duration_seconds')}s",
        f"Tokens: {data['total_input_tokens']} in / {data['total_output_tokens']} out",
        f"Cost: ${data['total_cost_usd']:.4f}",
        f"Messages: {data['message_count']}",
        f"Tools: {', '.join(data['tools_used']) or '-'}",
    ]


@_register_formatter(lambda d: "data_completeness" in d)
def _format_quality(data: dict) -> list[str]:
    completeness = data["data_completeness"]
    lines = [
        f"Quality grade: {completeness['quality_grade']} ({completeness['completeness_score']}/100)",
        f"Sessions: {data['total_sessions']} ({data['complete_sessions']} complete,"
        f" {data['incomplete_sessions']} incomplete)",
        f"Duplicate session IDs: {data['duplicate_sessions']}",
        f"Orphaned metrics: {data['orphaned_metrics']}",
    ]
    if completeness["missing_fields"]:
        lines.append(f"Missing fields: {', '.join(completeness['missing_fields'])}")
    if data["recommendations"]:
        lines.append("")
        lines.append("Recommendations:")
        for rec in data["recommendations"]:
            lines.append(f"  [{rec['type']}] {rec['title']}: {rec['description']}")
            if rec.get("action"):
                lines.append(f"    -> {rec['action']}")
    return lines


@_register_formatter(lambda d: "validation_results" in d)
def _format_validation(data: dict) -> list[str]:
    lines = []
    for result in data["validation_results"]:
        lines.append(f"{result['table']}: {result['total_records']} records")
        for check, count in result["checks"].items():
            lines.append(f"  {check}: {count}")
    return lines


@_register_formatter(lambda d: "deleted_records" in d)
def _format_cleanup(data: dict) -> list[str]:
    return [data["message"]]


@_register_formatter(lambda d: "total_eligible_records" in d)
def _format_retention_stats(data: dict) -> list[str]:
    lines = []
    for table in data["tables"]:
        lines.append(
            f"{table['table']}: {table['eligible_for_deletion']} of {table['total_records']}"
            f" older than {table['retention_days']} days"
        )
        if table["oldest_record"]:
            lines.append(
                f"  Range: {str(table['oldest_record'])[:10]} to {str(table['newest_record'])[:10]}"
            )
    lines.append(f"Total eligible: {data['total_eligible_records']}")
    return lines


@_register_formatter(lambda d: "dry_run" in d)
def _format_retention_cleanup(data: dict) -> list[str]:
    lines = [data["message"]]
    for table, count in data["deleted"].items():
        lines.append(f"  {table}: {count}")
    return lines


@_register_formatter(lambda d: "oldest_records" in d)
def _format_oldest_records(data: dict) -> list[str]:
    lines = ["Oldest records:"]
    for record in data["oldest_records"]:
        lines.append(
            f"  [{str(record['date'])[:16]}] {record['table']} {record['record_id']}"
            f" ({record['age_days']} days old)"
        )
    return lines


@_register_formatter(lambda d: "is_valid" in d)
def _format_policy_check(data: dict) -> list[str]:
    lines = [f"Retention policy: {'valid' if data['is_valid'] else 'has warnings'}"]
    lines.extend(f"  [warning] {w}" for w in data["warnings"])
    lines.extend(f"  [info] {r}" for r in data["recommendations"])
    return lines


def format_output(data: dict, json_output: bool = False) -> str:
    """Format output as JSON or human-readable."""
    if json_output:
        return json.dumps(data, indent=2, default=str)

    # Find matching formatter from registry
    for predicate, formatter in _FORMATTERS:
        if predicate(data):
            return "\n".join(formatter(data))

    # Fallback to JSON if no formatter matches
    return json.dumps(data, indent=2, default=str)


def _filters_from_args(args) -> Filter:
    """Build a Filter from the shared filter options.

    Raises:
        ValueError: If an option is malformed
    """
    return parse_filter(
        date_from=args.date_from,
        date_to=args.date_to,
        project_name=args.project,
        model_name=args.model,
        session_ids=args.session_id,
        limit=getattr(args, "limit", None),
        offset=getattr(args, "offset", None),
    )


def cmd_status(args):
    """Show database status."""
    storage = SQLiteStorage()
    print(format_output(storage.get_db_stats(), args.json))


def cmd_overview(args):
    """Show usage totals and top breakdowns."""
    storage = SQLiteStorage()
    result = queries.query_usage_metrics(storage, args.filters)
    print(format_output(asdict(result), args.json))


def cmd_summary(args):
    """Show dashboard summary."""
    storage = SQLiteStorage()
    result = queries.query_dashboard_summary(storage, args.filters)
    print(format_output(asdict(result), args.json))


def cmd_costs(args):
    """Show cost analysis."""
    storage = SQLiteStorage()
    result = queries.query_cost_analysis(storage, args.filters)
    print(format_output(asdict(result), args.json))


def cmd_tokens(args):
    """Show token analysis."""
    storage = SQLiteStorage()
    result = queries.query_token_analysis(storage, args.filters)
    print(format_output(asdict(result), args.json))


def cmd_usage(args):
    """Show daily usage."""
    storage = SQLiteStorage()
    result = queries.query_daily_usage(storage, args.filters)
    print(format_output(asdict(result), args.json))


def cmd_distribution(args):
    """Show model/tool/project distributions."""
    storage = SQLiteStorage()
    result = queries.query_distributions(storage, args.filters)
    print(format_output(asdict(result), args.json))


def cmd_heatmap(args):
    """Show day-of-week by hour heatmap."""
    storage = SQLiteStorage()
    cells = queries.query_hourly_heatmap(storage, args.filters)
    if args.json:
        print(format_output({"cells": [asdict(c) for c in cells]}, True))
    else:
        print(format_output({"grid": queries.fill_heatmap(cells)}))


def cmd_performance(args):
    """Show performance metrics."""
    storage = SQLiteStorage()
    result = queries.query_performance_metrics(storage, args.filters)
    print(format_output(asdict(result), args.json))


def cmd_sessions(args):
    """List sessions."""
    storage = SQLiteStorage()
    result = queries.query_sessions(storage, args.filters)
    print(format_output(asdict(result), args.json))


def cmd_session(args):
    """Show one session."""
    storage = SQLiteStorage()
    detail = queries.get_session_details(storage, args.session_id)
    if detail is None:
        result = {"found": False, "session_id": args.session_id}
    else:
        result = {"found": True, **asdict(detail)}
    print(format_output(result, args.json))


def cmd_quality(args):
    """Show data quality report."""
    storage = SQLiteStorage()
    result = quality.audit_data_quality(storage)
    print(format_output(asdict(result), args.json))


def cmd_validate(args):
    """Show per-table integrity checks."""
    storage = SQLiteStorage()
    results = quality.validate_data_integrity(storage)
    print(format_output({"validation_results": [asdict(r) for r in results]}, args.json))


def cmd_cleanup(args):
    """Run a cleanup operation."""
    storage = SQLiteStorage()
    if args.target == "duplicates":
        result = quality.cleanup_duplicate_sessions(storage)
    else:
        result = quality.cleanup_orphaned_metrics(storage)
    print(format_output(asdict(result), args.json))


def _policy_from_args(args) -> RetentionPolicy:
    """Build a RetentionPolicy from the retention options and the environment.

    Raises:
        ValueError: If an option or environment variable is invalid
    """
    return RetentionPolicy.from_env(
        session_days=args.session_days,
        message_days=args.message_days,
        metrics_days=args.metrics_days,
        batch_size=args.batch_size,
    )


def cmd_retention(args):
    """Inspect or apply age-based retention."""
    storage = SQLiteStorage()
    if args.action == "stats":
        result = asdict(retention.retention_stats(storage, args.policy))
    elif args.action == "cleanup":
        result = asdict(retention.cleanup_old_data(storage, args.policy, dry_run=args.dry_run))
    elif args.action == "oldest":
        records = retention.oldest_records(storage, args.limit)
        result = {"oldest_records": [asdict(r) for r in records]}
    else:
        result = asdict(retention.validate_retention_policy(storage, args.policy))
    print(format_output(result, args.json))


def _add_filter_args(sub, paging: bool = False):
    sub.add_argument("--from", dest="date_from", help="Start date, ISO 8601 (inclusive)")
    sub.add_argument("--to", dest="date_to", help="End date, ISO 8601 (inclusive)")
    sub.add_argument("--project", help="Project name filter")
    sub.add_argument("--model", help="Model name filter")
    sub.add_argument("--session-id", action="append", help="Session ID filter (repeatable)")
    if paging:
        sub.add_argument("--limit", type=int, default=50, help="Max sessions (default: 50)")
        sub.add_argument("--offset", type=int, default=0, help="Sessions to skip (default: 0)")


def main():
    """CLI entry point."""
    epilog = """
Examples:
  usage-analytics-cli status                    # Database stats
  usage-analytics-cli overview --from 2025-01-01  # Totals since January
  usage-analytics-cli costs --model claude-sonnet # Cost analysis for one model
  usage-analytics-cli quality                   # Data quality report
  usage-analytics-cli cleanup duplicates        # Remove duplicate sessions
  usage-analytics-cli retention cleanup --dry-run # Count rows past retention

All commands support --json for machine-readable output.
Data location: ~/.claude/contrib/usage-analytics/data.db
"""
    parser = argparse.ArgumentParser(
        description="Claude Usage Analytics CLI - Aggregate usage sessions and audit data quality",
        prog="usage-analytics-cli",
        epilog=epilog,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--json", action="store_true", help="Output as JSON")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # status
    sub = subparsers.add_parser("status", help="Show database status")
    sub.set_defaults(func=cmd_status)

    # overview
    sub = subparsers.add_parser("overview", help="Show usage totals and top breakdowns")
    _add_filter_args(sub)
    sub.set_defaults(func=cmd_overview)

    # summary
    sub = subparsers.add_parser("summary", help="Show dashboard summary")
    _add_filter_args(sub)
    sub.set_defaults(func=cmd_summary)

    # costs
    sub = subparsers.add_parser("costs", help="Show cost analysis")
    _add_filter_args(sub)
    sub.set_defaults(func=cmd_costs)

    # tokens
    sub = subparsers.add_parser("tokens", help="Show token analysis")
    _add_filter_args(sub)
    sub.set_defaults(func=cmd_tokens)

    # usage
    sub = subparsers.add_parser("usage", help="Show daily usage")
    _add_filter_args(sub)
    sub.set_defaults(func=cmd_usage)

    # distribution
    sub = subparsers.add_parser("distribution", help="Show model/tool/project distributions")
    _add_filter_args(sub)
    sub.set_defaults(func=cmd_distribution)

    # heatmap
    sub = subparsers.add_parser("heatmap", help="Show sessions by day-of-week and hour")
    _add_filter_args(sub)
    sub.set_defaults(func=cmd_heatmap)

    # performance
    sub = subparsers.add_parser("performance", help="Show session lengths, throughput, cache")
    _add_filter_args(sub)
    sub.set_defaults(func=cmd_performance)

    # sessions
    sub = subparsers.add_parser("sessions", help="List sessions, newest first")
    _add_filter_args(sub, paging=True)
    sub.set_defaults(func=cmd_sessions)

    # session
    sub = subparsers.add_parser("session", help="Show one session")
    sub.add_argument("session_id", help="Session ID")
    sub.set_defaults(func=cmd_session)

    # quality
    sub = subparsers.add_parser("quality", help="Show data quality report")
    sub.set_defaults(func=cmd_quality)

    # validate
    sub = subparsers.add_parser("validate", help="Run per-table integrity checks")
    sub.set_defaults(func=cmd_validate)

    # cleanup
    sub = subparsers.add_parser("cleanup", help="Remove duplicate sessions or orphaned metrics")
    sub.add_argument("target", choices=["duplicates", "orphans"], help="What to clean up")
    sub.set_defaults(func=cmd_cleanup)

    # retention
    sub = subparsers.add_parser("retention", help="Inspect or apply age-based data retention")
    sub.add_argument(
        "action", choices=["stats", "cleanup", "oldest", "check"], help="Retention action"
    )
    sub.add_argument("--session-days", type=int, help="Session retention window in days")
    sub.add_argument("--message-days", type=int, help="Raw message retention window in days")
    sub.add_argument("--metrics-days", type=int, help="Session metrics retention window in days")
    sub.add_argument("--batch-size", type=int, help="Rows per delete batch")
    sub.add_argument("--dry-run", action="store_true", help="Count without deleting (cleanup)")
    sub.add_argument("--limit", type=int, default=10, help="Records to show (oldest, default: 10)")
    sub.set_defaults(func=cmd_retention)

    args = parser.parse_args()

    # Only option parsing errors are usage errors; engine errors propagate
    try:
        if hasattr(args, "date_from"):
            args.filters = _filters_from_args(args)
        if args.command == "retention":
            args.policy = _policy_from_args(args)
            if args.limit < 1:
                raise ValueError(f"limit must be at least 1, got {args.limit}")
    except ValueError as e:
        parser.error(str(e))

    args.func(args)


if __name__ == "__main__":
    main()
