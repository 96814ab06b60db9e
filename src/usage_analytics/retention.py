"""Age-based data retention for usage analytics.

Each table has its own retention window in days. A row is eligible for
deletion when its timestamp is strictly older than ``now - window``.
Windows come from the environment unless given explicitly:

- USAGE_ANALYTICS_SESSION_RETENTION_DAYS (sessions.started_at, default 90)
- USAGE_ANALYTICS_MESSAGE_RETENTION_DAYS (raw_messages.timestamp, default 90)
- USAGE_ANALYTICS_METRICS_RETENTION_DAYS (session_metrics.created_at, default 90)
- USAGE_ANALYTICS_RETENTION_BATCH_SIZE (rows per delete batch, default 1000)
"""

import logging
import os
from dataclasses import dataclass
from datetime import datetime, timedelta

from usage_analytics.models import (
    OldestRecord,
    RetentionPolicyCheck,
    RetentionResult,
    RetentionStats,
    TableRetentionStats,
)
from usage_analytics.storage import SQLiteStorage

logger = logging.getLogger("usage-analytics")

DEFAULT_RETENTION_DAYS = 90
DEFAULT_BATCH_SIZE = 1000

# Policy checks
MIN_SAFE_RETENTION_DAYS = 7
LARGE_CLEANUP_THRESHOLD = 10000

# (table, timestamp column, policy attribute), parents first.
# Cleanup walks this in reverse so dependent rows go before their sessions.
RETENTION_TABLES = (
    ("sessions", "started_at", "session_days"),
    ("raw_messages", "timestamp", "message_days"),
    ("session_metrics", "created_at", "metrics_days"),
)


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


@dataclass
class RetentionPolicy:
    """Retention windows in days plus the delete batch size."""

    session_days: int = DEFAULT_RETENTION_DAYS
    message_days: int = DEFAULT_RETENTION_DAYS
    metrics_days: int = DEFAULT_RETENTION_DAYS
    batch_size: int = DEFAULT_BATCH_SIZE

    def __post_init__(self):
        for _, _, attr in RETENTION_TABLES:
            if getattr(self, attr) < 0:
                raise ValueError(f"{attr} must be non-negative, got {getattr(self, attr)}")
        if self.batch_size < 1:
            raise ValueError(f"batch_size must be at least 1, got {self.batch_size}")

    @classmethod
    def from_env(cls, **overrides) -> "RetentionPolicy":
        """Build a policy from USAGE_ANALYTICS_* variables.

        Keyword overrides that are not None win over the environment.

        Raises:
            ValueError: If a variable is not an integer or a value is out of range
        """
        values = {
            "session_days": _env_int(
                "USAGE_ANALYTICS_SESSION_RETENTION_DAYS", DEFAULT_RETENTION_DAYS
            ),
            "message_days": _env_int(
                "USAGE_ANALYTICS_MESSAGE_RETENTION_DAYS", DEFAULT_RETENTION_DAYS
            ),
            "metrics_days": _env_int(
                "USAGE_ANALYTICS_METRICS_RETENTION_DAYS", DEFAULT_RETENTION_DAYS
            ),
            "batch_size": _env_int("USAGE_ANALYTICS_RETENTION_BATCH_SIZE", DEFAULT_BATCH_SIZE),
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)

    def windows(self) -> list[tuple[str, str, int]]:
        """(table, column, days) for every table, parents first."""
        return [(table, column, getattr(self, attr)) for table, column, attr in RETENTION_TABLES]


def retention_stats(
    storage: SQLiteStorage,
    policy: RetentionPolicy | None = None,
    now: datetime | None = None,
) -> RetentionStats:
    """Report per-table totals, eligible rows and timestamp range.

    Read-only.

    Args:
        storage: Storage instance
        policy: Retention windows (default: from the environment)
        now: Reference time for cutoffs (default: now)

    Returns:
        RetentionStats with one entry per table
    """
    policy = policy or RetentionPolicy.from_env()
    now = now or datetime.now()

    stats = RetentionStats()
    for table, column, days in policy.windows():
        cutoff = now - timedelta(days=days)
        row = storage.execute_query(
            f"""
            SELECT
                COUNT(*) as total_records,
                COALESCE(SUM(CASE WHEN {column} < ? THEN 1 ELSE 0 END), 0) as eligible,
                MIN({column}) as "oldest [TIMESTAMP]",
                MAX({column}) as "newest [TIMESTAMP]"
            FROM {table}
            """,
            (cutoff,),
        )[0]
        stats.tables.append(
            TableRetentionStats(
                table=table,
                retention_days=days,
                cutoff=cutoff,
                total_records=row["total_records"],
                eligible_for_deletion=row["eligible"],
                oldest_record=row["oldest"],
                newest_record=row["newest"],
            )
        )
        stats.total_eligible_records += row["eligible"]

    return stats


def _delete_in_batches(
    storage: SQLiteStorage, table: str, column: str, cutoff: datetime, batch_size: int
) -> int:
    """Delete rows older than ``cutoff``, one short transaction per batch."""
    deleted = 0
    while True:
        with storage.transaction() as conn:
            batch = conn.execute(
                f"""
                DELETE FROM {table}
                WHERE id IN (
                    SELECT id FROM {table} WHERE {column} < ? LIMIT ?
                )
                """,
                (cutoff, batch_size),
            ).rowcount
        if batch == 0:
            return deleted
        deleted += batch
        logger.debug(f"Deleted batch of {batch} rows from {table} ({deleted} so far)")


def cleanup_old_data(
    storage: SQLiteStorage,
    policy: RetentionPolicy | None = None,
    dry_run: bool = False,
    now: datetime | None = None,
) -> RetentionResult:
    """Delete rows older than their table's retention window.

    Messages and metrics are removed before sessions. A dry run only counts.
    Each batch commits on its own, so an interrupted run keeps the batches
    already deleted and a re-run picks up the rest. Dependent rows newer than
    their own window are kept even when their session goes; the quality audit
    reports them as orphans.

    Args:
        storage: Storage instance
        policy: Retention windows (default: from the environment)
        dry_run: Count eligible rows without deleting anything
        now: Reference time for cutoffs (default: now)

    Returns:
        RetentionResult with per-table counts
    """
    policy = policy or RetentionPolicy.from_env()
    now = now or datetime.now()

    result = RetentionResult(dry_run=dry_run)
    for table, column, days in reversed(policy.windows()):
        cutoff = now - timedelta(days=days)
        if dry_run:
            count = storage.execute_query(
                f"SELECT COUNT(*) as count FROM {table} WHERE {column} < ?", (cutoff,)
            )[0]["count"]
        else:
            count = _delete_in_batches(storage, table, column, cutoff, policy.batch_size)
        result.deleted[table] = count

    result.total_deleted = sum(result.deleted.values())
    if dry_run:
        result.message = f"Dry run: would delete {result.total_deleted} records"
    else:
        result.message = f"Deleted {result.total_deleted} records"
        if result.total_deleted:
            storage.vacuum()
    logger.info(result.message)
    return result


def oldest_records(
    storage: SQLiteStorage, limit: int = 10, now: datetime | None = None
) -> list[OldestRecord]:
    """Get the oldest rows across sessions, messages and metrics.

    Sessions are identified by business key, other rows by internal ID.

    Raises:
        ValueError: If limit is below 1
    """
    if limit < 1:
        raise ValueError(f"limit must be at least 1, got {limit}")
    now = now or datetime.now()

    rows = storage.execute_query(
        """
        SELECT table_name, record_id, recorded_at as "recorded_at [TIMESTAMP]"
        FROM (
            SELECT * FROM (
                SELECT 'sessions' as table_name, session_id as record_id,
                       started_at as recorded_at
                FROM sessions ORDER BY started_at LIMIT ?
            )
            UNION ALL
            SELECT * FROM (
                SELECT 'raw_messages', CAST(id AS TEXT), timestamp
                FROM raw_messages ORDER BY timestamp LIMIT ?
            )
            UNION ALL
            SELECT * FROM (
                SELECT 'session_metrics', CAST(id AS TEXT), created_at
                FROM session_metrics WHERE created_at IS NOT NULL
                ORDER BY created_at LIMIT ?
            )
        )
        ORDER BY recorded_at, table_name, record_id
        LIMIT ?
        """,
        (limit, limit, limit, limit),
    )
    return [
        OldestRecord(
            table=row["table_name"],
            record_id=row["record_id"],
            date=row["recorded_at"],
            age_days=(now - row["recorded_at"]).days,
        )
        for row in rows
    ]


def validate_retention_policy(
    storage: SQLiteStorage,
    policy: RetentionPolicy | None = None,
    now: datetime | None = None,
) -> RetentionPolicyCheck:
    """Check a policy for risky windows and comment on the cleanup size."""
    policy = policy or RetentionPolicy.from_env()

    warnings = []
    if policy.session_days < MIN_SAFE_RETENTION_DAYS:
        warnings.append(
            f"Session retention period is less than {MIN_SAFE_RETENTION_DAYS} days; "
            "this may result in data loss"
        )
    if policy.message_days < policy.session_days:
        warnings.append(
            "Message retention is shorter than session retention; "
            "sessions may outlive their messages"
        )

    recommendations = []
    eligible = retention_stats(storage, policy, now).total_eligible_records
    if eligible > LARGE_CLEANUP_THRESHOLD:
        recommendations.append(
            "Large number of records eligible for deletion; "
            "consider a smaller batch size or a dry run first"
        )
    if eligible == 0:
        recommendations.append(
            "No records eligible for deletion; retention policy may be too generous"
        )

    return RetentionPolicyCheck(
        is_valid=not warnings, warnings=warnings, recommendations=recommendations
    )
