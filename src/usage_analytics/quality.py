"""Data quality auditing and cleanup for usage analytics.

The audit is whole-dataset and read-only. The two cleanup operations are
the only code paths that delete rows; each runs in a single transaction and
deletes nothing when re-run on already-clean data.
"""

import logging
from dataclasses import fields
from datetime import datetime

from usage_analytics.models import (
    CleanupResult,
    DataCompleteness,
    DataIntegrity,
    DataQualityReport,
    DuplicateGroup,
    MissingData,
    Recommendation,
    TableValidation,
)
from usage_analytics.storage import SQLiteStorage

logger = logging.getLogger("usage-analytics")

DUPLICATE_LIST_LIMIT = 50

# "Excellent" needs a large dataset with no duplicates and almost no issues
EXCELLENT_MIN_SESSIONS = 1000
EXCELLENT_MAX_ISSUES = 10

GRADE_THRESHOLDS = ((95, "A"), (85, "B"), (75, "C"), (60, "D"))

# Missing-data counter -> field reported in DataCompleteness.missing_fields
MISSING_FIELD_NAMES = {
    "sessions_without_end_time": "ended_at",
    "sessions_without_duration": "duration_seconds",
    "sessions_without_tokens": "tokens",
    "sessions_without_cost": "total_cost_usd",
    "metrics_without_messages": "message_count",
}


def _format_timestamp(ts) -> str | None:
    """Format a timestamp value for output.

    Handles both datetime objects and strings from SQLite.
    """
    if ts is None:
        return None
    if isinstance(ts, str):
        return ts  # Already a string
    return ts.isoformat()


def completeness_score(total_sessions: int, total_issues: int) -> int:
    """Score dataset health from 0 to 100.

    ``round((1 - issues / sessions) * 100)`` with halves rounded up, floored
    at 0. An empty dataset scores 100. Issues are per-counter, so one session
    can count more than once.
    """
    if total_sessions <= 0:
        return 100
    # Integer form of floor(100 * (sessions - issues) / sessions + 0.5)
    score = (200 * (total_sessions - total_issues) + total_sessions) // (2 * total_sessions)
    return max(0, score)


def quality_grade(score: int) -> str:
    """Map a completeness score to a letter grade."""
    for threshold, grade in GRADE_THRESHOLDS:
        if score >= threshold:
            return grade
    return "F"


def build_recommendations(
    total_sessions: int,
    duplicate_count: int,
    missing: MissingData,
    integrity: DataIntegrity,
    total_issues: int,
) -> list[Recommendation]:
    """Evaluate every recommendation rule, in order, without short-circuiting."""
    recommendations = []

    if duplicate_count > 0:
        recommendations.append(
            Recommendation(
                type="error",
                title="Duplicate Sessions Detected",
                description=(
                    f"Found {duplicate_count} session IDs with multiple records. "
                    "This may cause incorrect analytics."
                ),
                affected_records=duplicate_count,
                action="Review and merge duplicate sessions",
            )
        )

    if missing.sessions_without_end_time > 0:
        recommendations.append(
            Recommendation(
                type="warning",
                title="Incomplete Sessions",
                description=(
                    f"{missing.sessions_without_end_time} sessions are missing end times, "
                    "indicating incomplete data."
                ),
                affected_records=missing.sessions_without_end_time,
                action="Re-sync recent sessions",
            )
        )

    if integrity.negative_tokens > 0 or integrity.negative_costs > 0:
        recommendations.append(
            Recommendation(
                type="error",
                title="Invalid Data Values",
                description=(
                    "Found negative values in token counts or costs. "
                    "This indicates data corruption."
                ),
                affected_records=integrity.negative_tokens + integrity.negative_costs,
                action="Investigate and correct invalid records",
            )
        )

    if (
        total_sessions > EXCELLENT_MIN_SESSIONS
        and duplicate_count == 0
        and total_issues < EXCELLENT_MAX_ISSUES
    ):
        recommendations.append(
            Recommendation(
                type="info",
                title="Excellent Data Quality",
                description="Your data quality is excellent with minimal issues detected.",
                affected_records=0,
            )
        )

    return recommendations


def audit_data_quality(storage: SQLiteStorage, now: datetime | None = None) -> DataQualityReport:
    """Audit completeness and integrity of the whole dataset.

    Args:
        storage: Storage instance
        now: Reference time for future-timestamp checks (default: now)

    Returns:
        DataQualityReport with counts, score, grade and recommendations
    """
    now = now or datetime.now()

    row = storage.execute_query(
        """
        SELECT
            COUNT(*) as total_sessions,
            SUM(CASE WHEN ended_at IS NOT NULL AND duration_seconds IS NOT NULL
                     AND duration_seconds > 0 THEN 1 ELSE 0 END) as complete_sessions,
            SUM(CASE WHEN ended_at IS NULL THEN 1 ELSE 0 END) as without_end_time,
            SUM(CASE WHEN duration_seconds IS NULL OR duration_seconds <= 0
                     THEN 1 ELSE 0 END) as without_duration,
            SUM(CASE WHEN total_input_tokens = 0 AND total_output_tokens = 0
                     THEN 1 ELSE 0 END) as without_tokens,
            SUM(CASE WHEN total_cost_usd = 0 THEN 1 ELSE 0 END) as without_cost,
            SUM(CASE WHEN total_input_tokens < 0 OR total_output_tokens < 0
                     THEN 1 ELSE 0 END) as negative_tokens,
            SUM(CASE WHEN total_cost_usd < 0 THEN 1 ELSE 0 END) as negative_costs,
            SUM(CASE WHEN duration_seconds < 0 THEN 1 ELSE 0 END) as invalid_durations,
            SUM(CASE WHEN started_at > ? OR ended_at > ? THEN 1 ELSE 0 END) as future_timestamps,
            SUM(CASE WHEN ended_at < started_at THEN 1 ELSE 0 END) as inconsistent_timestamps
        FROM sessions
        """,
        (now, now),
    )[0]

    duplicate_count = storage.execute_query(
        """
        SELECT COUNT(*) as count FROM (
            SELECT session_id FROM sessions
            GROUP BY session_id
            HAVING COUNT(*) > 1
        )
        """
    )[0]["count"]

    duplicate_rows = storage.execute_query(
        """
        SELECT
            session_id,
            COUNT(*) as duplicate_count,
            MIN(created_at) as first_seen,
            MAX(created_at) as last_seen
        FROM sessions
        GROUP BY session_id
        HAVING COUNT(*) > 1
        ORDER BY duplicate_count DESC, session_id
        LIMIT ?
        """,
        (DUPLICATE_LIST_LIMIT,),
    )

    metrics_row = storage.execute_query(
        """
        SELECT
            (SELECT COUNT(*)
             FROM session_metrics sm
             LEFT JOIN sessions s ON sm.session_id = s.id
             WHERE s.id IS NULL) as orphaned_metrics,
            (SELECT COUNT(*)
             FROM session_metrics sm
             WHERE sm.message_count = 0
               AND EXISTS (SELECT 1 FROM sessions s WHERE s.id = sm.session_id)
            ) as metrics_without_messages
        """
    )[0]

    total_sessions = row["total_sessions"]
    complete_sessions = row["complete_sessions"] or 0

    missing = MissingData(
        sessions_without_end_time=row["without_end_time"] or 0,
        sessions_without_duration=row["without_duration"] or 0,
        sessions_without_tokens=row["without_tokens"] or 0,
        sessions_without_cost=row["without_cost"] or 0,
        metrics_without_messages=metrics_row["metrics_without_messages"],
    )
    integrity = DataIntegrity(
        negative_tokens=row["negative_tokens"] or 0,
        negative_costs=row["negative_costs"] or 0,
        invalid_durations=row["invalid_durations"] or 0,
        future_timestamps=row["future_timestamps"] or 0,
        inconsistent_timestamps=row["inconsistent_timestamps"] or 0,
    )

    # Every counter contributes, even when two counters flag the same session
    total_issues = sum(getattr(missing, f.name) for f in fields(missing)) + sum(
        getattr(integrity, f.name) for f in fields(integrity)
    )
    score = completeness_score(total_sessions, total_issues)
    grade = quality_grade(score)
    logger.debug(
        f"Data quality: {total_sessions} sessions, {total_issues} issues, "
        f"score {score} ({grade})"
    )

    return DataQualityReport(
        total_sessions=total_sessions,
        complete_sessions=complete_sessions,
        incomplete_sessions=total_sessions - complete_sessions,
        duplicate_sessions=duplicate_count,
        orphaned_metrics=metrics_row["orphaned_metrics"],
        missing_data=missing,
        data_integrity=integrity,
        data_completeness=DataCompleteness(
            completeness_score=score,
            missing_fields=[
                name for attr, name in MISSING_FIELD_NAMES.items() if getattr(missing, attr) > 0
            ],
            quality_grade=grade,
        ),
        duplicate_analysis=[
            DuplicateGroup(
                session_id=r["session_id"],
                duplicate_count=r["duplicate_count"],
                first_seen=_format_timestamp(r["first_seen"]),
                last_seen=_format_timestamp(r["last_seen"]),
            )
            for r in duplicate_rows
        ],
        recommendations=build_recommendations(
            total_sessions, duplicate_count, missing, integrity, total_issues
        ),
    )


def cleanup_duplicate_sessions(storage: SQLiteStorage) -> CleanupResult:
    """Keep only the most recently created row for each session_id.

    Runs in one transaction: either every surplus row is deleted or none is.
    Metrics rows of deleted sessions are left behind as orphans for
    ``cleanup_orphaned_metrics``.

    Returns:
        CleanupResult with the number of session rows deleted
    """
    with storage.transaction() as conn:
        cursor = conn.execute(
            """
            DELETE FROM sessions
            WHERE id IN (
                SELECT id FROM (
                    SELECT
                        id,
                        ROW_NUMBER() OVER (
                            PARTITION BY session_id
                            ORDER BY created_at DESC, id DESC
                        ) as rn
                    FROM sessions
                )
                WHERE rn > 1
            )
            """
        )
        deleted = cursor.rowcount

    logger.info(f"Removed {deleted} duplicate session rows")
    return CleanupResult(
        deleted_records=deleted,
        message=f"Successfully removed {deleted} duplicate sessions",
    )


def cleanup_orphaned_metrics(storage: SQLiteStorage) -> CleanupResult:
    """Delete session_metrics rows whose parent session does not exist.

    Rows with a NULL parent reference count as orphaned too. Session rows
    are never touched.

    Returns:
        CleanupResult with the number of metrics rows deleted
    """
    with storage.transaction() as conn:
        cursor = conn.execute(
            """
            DELETE FROM session_metrics
            WHERE NOT EXISTS (
                SELECT 1 FROM sessions s WHERE s.id = session_metrics.session_id
            )
            """
        )
        deleted = cursor.rowcount

    logger.info(f"Removed {deleted} orphaned metric rows")
    return CleanupResult(
        deleted_records=deleted,
        message=f"Successfully removed {deleted} orphaned metric records",
    )


def validate_data_integrity(storage: SQLiteStorage) -> list[TableValidation]:
    """Count structural problems per table.

    Returns:
        One TableValidation for ``sessions`` and one for ``session_metrics``
    """
    sessions = storage.execute_query(
        """
        SELECT
            COUNT(*) as total_records,
            SUM(CASE WHEN session_id IS NULL OR session_id = '' THEN 1 ELSE 0 END)
                as invalid_session_ids,
            SUM(CASE WHEN started_at IS NULL THEN 1 ELSE 0 END) as missing_start_times,
            SUM(CASE WHEN model_name IS NULL OR model_name = '' THEN 1 ELSE 0 END)
                as missing_models
        FROM sessions
        """
    )[0]
    metrics = storage.execute_query(
        """
        SELECT
            COUNT(*) as total_records,
            SUM(CASE WHEN session_id IS NULL THEN 1 ELSE 0 END) as invalid_session_refs,
            SUM(CASE WHEN date_bucket IS NULL THEN 1 ELSE 0 END) as missing_dates,
            SUM(CASE WHEN input_tokens < 0 OR output_tokens < 0 THEN 1 ELSE 0 END)
                as negative_tokens
        FROM session_metrics
        """
    )[0]

    def checks(row, names: tuple[str, ...]) -> dict[str, int]:
        return {name: row[name] or 0 for name in names}

    return [
        TableValidation(
            table="sessions",
            total_records=sessions["total_records"],
            checks=checks(sessions, ("invalid_session_ids", "missing_start_times", "missing_models")),
        ),
        TableValidation(
            table="session_metrics",
            total_records=metrics["total_records"],
            checks=checks(metrics, ("invalid_session_refs", "missing_dates", "negative_tokens")),
        ),
    ]
