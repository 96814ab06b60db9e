"""Tests for data quality auditing and cleanup."""

import sqlite3
from datetime import date, datetime, timedelta

import pytest

from usage_analytics.models import DataIntegrity, MissingData
from usage_analytics.quality import (
    audit_data_quality,
    build_recommendations,
    cleanup_duplicate_sessions,
    cleanup_orphaned_metrics,
    completeness_score,
    quality_grade,
    validate_data_integrity,
)
from usage_analytics.storage import Session, SessionMetrics

NOW = datetime(2025, 6, 1, 12, 0)


def _complete_session(session_id: str, **overrides) -> Session:
    """A session with every field the audit checks filled in."""
    started = overrides.pop("started_at", datetime(2025, 1, 1, 10, 0))
    values = {
        "id": None,
        "session_id": session_id,
        "project_name": "alpha",
        "started_at": started,
        "ended_at": started + timedelta(minutes=5),
        "duration_seconds": 300,
        "model_name": "claude-sonnet",
        "total_input_tokens": 100,
        "total_output_tokens": 50,
        "total_cost_usd": 0.25,
    }
    values.update(overrides)
    return Session(**values)


def _add_duplicates(storage, session_id: str, costs: list[float]) -> list[Session]:
    """Add one row per cost, created one minute apart in the given order."""
    base = datetime(2025, 1, 1)
    return [
        storage.add_session(
            _complete_session(session_id, total_cost_usd=cost, created_at=base + timedelta(minutes=i))
        )
        for i, cost in enumerate(costs)
    ]


def _titles(report) -> list[str]:
    return [r.title for r in report.recommendations]


class TestCompletenessScore:
    """Tests for the completeness score and grade."""

    def test_empty_dataset(self):
        """Test that no sessions scores 100."""
        assert completeness_score(0, 0) == 100

    @pytest.mark.parametrize(
        "total,issues,expected",
        [
            (10, 0, 100),
            (10, 1, 90),
            (8, 1, 88),  # 87.5 rounds up
            (3, 1, 67),
            (200, 1, 100),  # 99.5 rounds up
            (4, 4, 0),
            (1, 5, 0),  # more issues than sessions floors at zero
        ],
    )
    def test_score(self, total, issues, expected):
        """Test rounding and flooring."""
        assert completeness_score(total, issues) == expected

    def test_monotonic_in_issues(self):
        """Test that more issues never raise the score."""
        scores = [completeness_score(20, issues) for issues in range(30)]
        assert scores == sorted(scores, reverse=True)
        assert all(0 <= s <= 100 for s in scores)

    @pytest.mark.parametrize(
        "score,grade",
        [
            (100, "A"),
            (95, "A"),
            (94, "B"),
            (85, "B"),
            (84, "C"),
            (75, "C"),
            (74, "D"),
            (60, "D"),
            (59, "F"),
            (0, "F"),
        ],
    )
    def test_grade(self, score, grade):
        """Test grade thresholds."""
        assert quality_grade(score) == grade


class TestRecommendations:
    """Tests for recommendation rules."""

    def test_all_rules_evaluated(self):
        """Test that one rule firing does not stop the others."""
        recommendations = build_recommendations(
            total_sessions=10,
            duplicate_count=2,
            missing=MissingData(sessions_without_end_time=3),
            integrity=DataIntegrity(negative_tokens=1, negative_costs=1),
            total_issues=5,
        )
        assert [r.title for r in recommendations] == [
            "Duplicate Sessions Detected",
            "Incomplete Sessions",
            "Invalid Data Values",
        ]
        assert [r.type for r in recommendations] == ["error", "warning", "error"]
        assert [r.affected_records for r in recommendations] == [2, 3, 2]

    def test_excellent_needs_large_clean_dataset(self):
        """Test the thresholds for the excellent-quality note."""
        clean = MissingData()
        ok = DataIntegrity()
        assert build_recommendations(1000, 0, clean, ok, 0) == []
        assert build_recommendations(1001, 0, clean, ok, 10) == []
        assert build_recommendations(1001, 1, clean, ok, 0)[0].title == "Duplicate Sessions Detected"

        [excellent] = build_recommendations(1001, 0, clean, ok, 9)
        assert excellent.type == "info"
        assert excellent.affected_records == 0
        assert excellent.action is None


class TestAuditDataQuality:
    """Tests for audit_data_quality."""

    def test_empty_store(self, storage):
        """Test that an empty store is grade A with no recommendations."""
        report = audit_data_quality(storage, now=NOW)
        assert report.total_sessions == 0
        assert report.data_completeness.completeness_score == 100
        assert report.data_completeness.quality_grade == "A"
        assert report.data_completeness.missing_fields == []
        assert report.recommendations == []
        assert report.duplicate_analysis == []

    def test_clean_data(self, storage):
        """Test that complete sessions produce no issues."""
        storage.add_session(_complete_session("a"))
        storage.add_session(_complete_session("b"))
        report = audit_data_quality(storage, now=NOW)
        assert report.total_sessions == 2
        assert report.complete_sessions == 2
        assert report.incomplete_sessions == 0
        assert report.data_completeness.completeness_score == 100

    def test_populated_counts(self, populated_storage):
        """Test counters on the shared dataset."""
        report = audit_data_quality(populated_storage, now=NOW)
        assert report.total_sessions == 4
        assert report.complete_sessions == 3
        assert report.incomplete_sessions == 1
        assert report.missing_data.sessions_without_end_time == 1
        assert report.missing_data.sessions_without_duration == 1
        assert report.missing_data.sessions_without_tokens == 1
        assert report.missing_data.sessions_without_cost == 1
        assert report.missing_data.metrics_without_messages == 0
        assert report.orphaned_metrics == 0
        # One incomplete session trips four counters: round((1 - 4/4) * 100)
        assert report.data_completeness.completeness_score == 0
        assert report.data_completeness.quality_grade == "F"
        assert report.data_completeness.missing_fields == [
            "ended_at",
            "duration_seconds",
            "tokens",
            "total_cost_usd",
        ]
        assert _titles(report) == ["Incomplete Sessions"]

    def test_negative_cost(self, storage):
        """Test that a negative cost is reported as invalid data."""
        storage.add_session(_complete_session("a", total_cost_usd=-5.0))
        report = audit_data_quality(storage, now=NOW)
        assert report.data_integrity.negative_costs == 1
        assert "Invalid Data Values" in _titles(report)
        [invalid] = [r for r in report.recommendations if r.title == "Invalid Data Values"]
        assert invalid.type == "error"
        assert invalid.affected_records == 1

    def test_negative_tokens_and_durations(self, storage):
        """Test negative token and duration counters."""
        storage.add_session(_complete_session("a", total_output_tokens=-1, duration_seconds=-10))
        report = audit_data_quality(storage, now=NOW)
        assert report.data_integrity.negative_tokens == 1
        assert report.data_integrity.invalid_durations == 1
        assert report.missing_data.sessions_without_duration == 1

    def test_future_and_inconsistent_timestamps(self, storage):
        """Test timestamps after now and end times before start times."""
        storage.add_session(_complete_session("future", started_at=NOW + timedelta(days=1)))
        storage.add_session(
            _complete_session(
                "backwards",
                started_at=datetime(2025, 1, 1, 12, 0),
                ended_at=datetime(2025, 1, 1, 11, 0),
            )
        )
        report = audit_data_quality(storage, now=NOW)
        assert report.data_integrity.future_timestamps == 1
        assert report.data_integrity.inconsistent_timestamps == 1

    def test_duplicates(self, storage):
        """Test duplicate groups and the duplicate recommendation."""
        _add_duplicates(storage, "abc", [1.0, 2.0, 3.0])
        storage.add_session(_complete_session("unique"))
        report = audit_data_quality(storage, now=NOW)
        assert report.duplicate_sessions == 1
        [group] = report.duplicate_analysis
        assert group.session_id == "abc"
        assert group.duplicate_count == 3
        assert group.first_seen.startswith("2025-01-01T00:00")
        assert group.last_seen.startswith("2025-01-01T00:02")
        [dup] = [r for r in report.recommendations if r.title == "Duplicate Sessions Detected"]
        assert dup.affected_records == 1
        assert dup.action == "Review and merge duplicate sessions"

    def test_duplicate_count_not_capped(self, storage):
        """Test that the count covers every group while the list is capped."""
        for i in range(55):
            _add_duplicates(storage, f"dup-{i:02d}", [1.0, 2.0])
        report = audit_data_quality(storage, now=NOW)
        assert report.duplicate_sessions == 55
        assert len(report.duplicate_analysis) == 50

    def test_orphans_and_metrics_without_messages(self, storage):
        """Test metrics counters, including rows with a missing parent."""
        parent = storage.add_session(_complete_session("a"))
        storage.add_session_metrics(
            SessionMetrics(id=None, session_id=parent.id, date_bucket=date(2025, 1, 1))
        )
        storage.add_session_metrics(
            SessionMetrics(id=None, session_id=9999, date_bucket=date(2025, 1, 1))
        )
        storage.add_session_metrics(
            SessionMetrics(id=None, session_id=None, date_bucket=date(2025, 1, 1))
        )
        report = audit_data_quality(storage, now=NOW)
        assert report.orphaned_metrics == 2
        # Only the row whose parent exists counts as missing messages
        assert report.missing_data.metrics_without_messages == 1
        assert "message_count" in report.data_completeness.missing_fields

    def test_excellent_quality(self, storage):
        """Test the excellent-quality note on a large clean dataset."""
        start = datetime(2025, 1, 1)
        storage.add_sessions_batch(
            [_complete_session(f"s{i}", started_at=start + timedelta(minutes=i)) for i in range(1001)]
        )
        report = audit_data_quality(storage, now=NOW)
        assert report.data_completeness.quality_grade == "A"
        assert _titles(report) == ["Excellent Data Quality"]

    def test_read_only(self, populated_storage):
        """Test that auditing never changes row counts."""
        before = populated_storage.get_db_stats()
        audit_data_quality(populated_storage, now=NOW)
        after = populated_storage.get_db_stats()
        assert before["session_count"] == after["session_count"]
        assert before["metrics_count"] == after["metrics_count"]


class TestCleanupDuplicates:
    """Tests for cleanup_duplicate_sessions."""

    def test_keeps_most_recent(self, storage):
        """Test that only the most recently created row survives."""
        _add_duplicates(storage, "abc", [1.0, 2.0, 3.0])
        result = cleanup_duplicate_sessions(storage)
        assert result.deleted_records == 2
        assert result.message == "Successfully removed 2 duplicate sessions"
        [survivor] = storage.get_sessions("abc")
        assert survivor.total_cost_usd == 3.0

    def test_creation_tie_keeps_highest_id(self, storage):
        """Test that equal creation times keep the last inserted row."""
        created = datetime(2025, 1, 1)
        for cost in [1.0, 2.0]:
            storage.add_session(_complete_session("tie", total_cost_usd=cost, created_at=created))
        cleanup_duplicate_sessions(storage)
        [survivor] = storage.get_sessions("tie")
        assert survivor.total_cost_usd == 2.0

    def test_idempotent(self, storage):
        """Test that a second run deletes nothing."""
        _add_duplicates(storage, "abc", [1.0, 2.0, 3.0])
        cleanup_duplicate_sessions(storage)
        again = cleanup_duplicate_sessions(storage)
        assert again.deleted_records == 0
        assert audit_data_quality(storage, now=NOW).duplicate_sessions == 0

    def test_unique_sessions_untouched(self, populated_storage):
        """Test that data without duplicates is left alone."""
        result = cleanup_duplicate_sessions(populated_storage)
        assert result.deleted_records == 0
        assert populated_storage.get_session_count() == 4

    def test_leaves_orphaned_metrics(self, storage):
        """Test that metrics of removed rows become orphans."""
        older, _newer = _add_duplicates(storage, "abc", [1.0, 2.0])
        storage.add_session_metrics(
            SessionMetrics(id=None, session_id=older.id, date_bucket=date(2025, 1, 1))
        )
        cleanup_duplicate_sessions(storage)
        assert audit_data_quality(storage, now=NOW).orphaned_metrics == 1

    def test_rolls_back_on_failure(self, storage):
        """Test that a failure part-way through deletes nothing."""
        _add_duplicates(storage, "abc", [1.0, 2.0, 3.0])
        storage.execute_write(
            """
            CREATE TRIGGER block_delete BEFORE DELETE ON sessions
            WHEN OLD.total_cost_usd = 2.0
            BEGIN
                SELECT RAISE(ABORT, 'delete blocked');
            END
            """
        )
        with pytest.raises(sqlite3.DatabaseError):
            cleanup_duplicate_sessions(storage)
        assert storage.get_session_count() == 3


class TestCleanupOrphanedMetrics:
    """Tests for cleanup_orphaned_metrics."""

    def test_removes_only_orphans(self, storage):
        """Test that metrics with a live parent are kept."""
        parent = storage.add_session(_complete_session("a"))
        storage.add_session_metrics(
            SessionMetrics(id=None, session_id=parent.id, date_bucket=date(2025, 1, 1))
        )
        storage.add_session_metrics(
            SessionMetrics(id=None, session_id=parent.id + 100, date_bucket=date(2025, 1, 1))
        )
        result = cleanup_orphaned_metrics(storage)
        assert result.deleted_records == 1
        assert result.message == "Successfully removed 1 orphaned metric records"
        assert storage.get_metrics_count() == 1
        assert storage.get_session_count() == 1

    def test_removes_null_references(self, storage):
        """Test that rows without a parent reference are removed too."""
        storage.add_session_metrics(
            SessionMetrics(id=None, session_id=None, date_bucket=date(2025, 1, 1))
        )
        assert cleanup_orphaned_metrics(storage).deleted_records == 1

    def test_idempotent(self, storage):
        """Test that a second run deletes nothing."""
        storage.add_session_metrics(
            SessionMetrics(id=None, session_id=42, date_bucket=date(2025, 1, 1))
        )
        cleanup_orphaned_metrics(storage)
        assert cleanup_orphaned_metrics(storage).deleted_records == 0
        assert audit_data_quality(storage, now=NOW).orphaned_metrics == 0

    def test_after_duplicate_cleanup(self, storage):
        """Test the dedup then orphan cleanup sequence."""
        older, newer = _add_duplicates(storage, "abc", [1.0, 2.0])
        for session in (older, newer):
            storage.add_session_metrics(
                SessionMetrics(id=None, session_id=session.id, date_bucket=date(2025, 1, 1))
            )
        cleanup_duplicate_sessions(storage)
        assert cleanup_orphaned_metrics(storage).deleted_records == 1
        assert storage.get_metrics_count() == 1


class TestValidateDataIntegrity:
    """Tests for per-table structural checks."""

    def test_clean(self, populated_storage):
        """Test that the shared dataset only lacks one model name."""
        sessions, metrics = validate_data_integrity(populated_storage)
        assert sessions.table == "sessions"
        assert sessions.total_records == 4
        assert sessions.checks == {
            "invalid_session_ids": 0,
            "missing_start_times": 0,
            "missing_models": 1,
        }
        assert metrics.table == "session_metrics"
        assert metrics.total_records == 3
        assert metrics.checks == {"invalid_session_refs": 0, "missing_dates": 0, "negative_tokens": 0}

    def test_problems(self, storage):
        """Test that each check counts its own problem."""
        storage.add_session(_complete_session("", model_name=""))
        storage.add_session_metrics(
            SessionMetrics(id=None, session_id=None, date_bucket=None, input_tokens=-1)
        )
        sessions, metrics = validate_data_integrity(storage)
        assert sessions.checks["invalid_session_ids"] == 1
        assert sessions.checks["missing_models"] == 1
        assert metrics.checks == {"invalid_session_refs": 1, "missing_dates": 1, "negative_tokens": 1}

    def test_empty(self, storage):
        """Test that an empty store reports zero everywhere."""
        for result in validate_data_integrity(storage):
            assert result.total_records == 0
            assert set(result.checks.values()) == {0}
