"""Tests for the SQLite storage layer."""

import sqlite3
import tempfile
from datetime import date, datetime, timedelta
from pathlib import Path

import pytest

from usage_analytics.storage import (
    SCHEMA_VERSION,
    RawMessage,
    Session,
    SessionMetrics,
    SQLiteStorage,
    decode_tools,
)


@pytest.fixture
def sample_session():
    """Create a sample session for testing."""
    return Session(
        id=None,
        session_id="session-abc123",
        project_name="alpha",
        started_at=datetime(2025, 1, 1, 12, 0, 0),
        ended_at=datetime(2025, 1, 1, 12, 10, 0),
        duration_seconds=600,
        model_name="claude-sonnet",
        total_input_tokens=1200,
        total_output_tokens=300,
        total_cost_usd=0.42,
        tools_used=["Read", "Bash"],
        cache_hit_count=3,
    )


class TestInit:
    """Tests for database initialization."""

    def test_creates_tables(self, storage):
        """Test that all tables exist after init."""
        rows = storage.execute_query("SELECT name FROM sqlite_master WHERE type = 'table'")
        names = {row["name"] for row in rows}
        assert {"schema_version", "sessions", "session_metrics", "raw_messages"} <= names

    def test_schema_version_recorded(self, storage):
        """Test that the schema version is stored once."""
        rows = storage.execute_query("SELECT version FROM schema_version")
        assert [row["version"] for row in rows] == [SCHEMA_VERSION]

    def test_reopen_existing_db(self):
        """Test that opening an existing database keeps its data."""
        with tempfile.TemporaryDirectory() as tmpdir:
            db_path = Path(tmpdir) / "test.db"
            first = SQLiteStorage(db_path)
            first.add_session(Session(id=None, session_id="x", started_at=datetime(2025, 1, 1)))

            second = SQLiteStorage(db_path)
            assert second.get_session_count() == 1

    def test_db_path_from_env(self, monkeypatch):
        """Test that USAGE_ANALYTICS_DB overrides the default path."""
        with tempfile.TemporaryDirectory() as tmpdir:
            db_path = Path(tmpdir) / "nested" / "env.db"
            monkeypatch.setenv("USAGE_ANALYTICS_DB", str(db_path))
            storage = SQLiteStorage()
            assert storage.db_path == db_path
            assert db_path.exists()


class TestSessionOperations:
    """Tests for session rows."""

    def test_add_session(self, storage, sample_session):
        """Test adding a single session."""
        result = storage.add_session(sample_session)
        assert result.id is not None
        assert result.created_at is not None
        assert storage.get_session_count() == 1

    def test_round_trip_fields(self, storage, sample_session):
        """Test that stored sessions come back with the same values and types."""
        storage.add_session(sample_session)
        [loaded] = storage.get_sessions("session-abc123")
        assert loaded.started_at == datetime(2025, 1, 1, 12, 0, 0)
        assert loaded.ended_at == datetime(2025, 1, 1, 12, 10, 0)
        assert loaded.tools_used == ["Read", "Bash"]
        assert loaded.total_cost_usd == pytest.approx(0.42)
        assert loaded.cache_hit_count == 3

    def test_duplicate_session_ids_allowed(self, storage, sample_session):
        """Test that a repeated session_id is stored as a second row."""
        storage.add_session(sample_session)
        storage.add_session(
            Session(id=None, session_id="session-abc123", started_at=datetime(2025, 1, 2))
        )
        assert storage.get_session_count() == 2

    def test_get_sessions_newest_first(self, storage):
        """Test that rows under one key are ordered by creation time, newest first."""
        base = datetime(2025, 1, 1)
        for i in range(3):
            storage.add_session(
                Session(
                    id=None,
                    session_id="dup",
                    started_at=base,
                    total_cost_usd=float(i),
                    created_at=base + timedelta(minutes=i),
                )
            )
        costs = [s.total_cost_usd for s in storage.get_sessions("dup")]
        assert costs == [2.0, 1.0, 0.0]

    def test_add_sessions_batch(self, storage):
        """Test batch insert."""
        sessions = [
            Session(id=None, session_id=f"batch-{i}", started_at=datetime(2025, 1, 1, i))
            for i in range(5)
        ]
        assert storage.add_sessions_batch(sessions) == 5
        assert storage.get_session_count() == 5

    def test_delete_session_row(self, storage, sample_session):
        """Test deleting one row by internal ID."""
        storage.add_session(sample_session)
        assert storage.delete_session_row(sample_session.id) == 1
        assert storage.get_session_count() == 0


class TestMetricsAndMessages:
    """Tests for derived metrics and raw messages."""

    def test_add_session_metrics(self, storage, sample_session):
        """Test adding a metrics row."""
        storage.add_session(sample_session)
        metrics = storage.add_session_metrics(
            SessionMetrics(
                id=None,
                session_id=sample_session.id,
                date_bucket=date(2025, 1, 1),
                hour_bucket=12,
                message_count=4,
            )
        )
        assert metrics.id is not None
        assert storage.get_metrics_count() == 1

    def test_metrics_without_parent_accepted(self, storage):
        """Test that metrics may reference a session that does not exist."""
        storage.add_session_metrics(
            SessionMetrics(id=None, session_id=9999, date_bucket=date(2025, 1, 1))
        )
        assert storage.get_metrics_count() == 1

    def test_add_messages_batch(self, storage, sample_session):
        """Test batch insert of raw messages."""
        storage.add_session(sample_session)
        messages = [
            RawMessage(
                id=None,
                session_id=sample_session.id,
                message_index=i,
                role="user",
                timestamp=datetime(2025, 1, 1, 12, i),
            )
            for i in range(4)
        ]
        assert storage.add_messages_batch(messages) == 4


class TestTransaction:
    """Tests for the transaction context manager."""

    def test_commits_on_success(self, storage, sample_session):
        """Test that writes inside a transaction are committed."""
        storage.add_session(sample_session)
        with storage.transaction() as conn:
            conn.execute("DELETE FROM sessions")
        assert storage.get_session_count() == 0

    def test_rolls_back_on_error(self, storage, sample_session):
        """Test that an exception undoes every write in the block."""
        storage.add_session(sample_session)
        with pytest.raises(RuntimeError):
            with storage.transaction() as conn:
                conn.execute("DELETE FROM sessions")
                raise RuntimeError("boom")
        assert storage.get_session_count() == 1

    def test_rolls_back_on_database_error(self, storage, sample_session):
        """Test that a failing statement leaves earlier statements undone."""
        storage.add_session(sample_session)
        with pytest.raises(sqlite3.OperationalError):
            with storage.transaction() as conn:
                conn.execute("DELETE FROM sessions")
                conn.execute("DELETE FROM no_such_table")
        assert storage.get_session_count() == 1


class TestUtilities:
    """Tests for stats and helpers."""

    def test_db_stats_empty(self, storage):
        """Test stats on an empty database."""
        stats = storage.get_db_stats()
        assert stats["session_count"] == 0
        assert stats["metrics_count"] == 0
        assert stats["message_count"] == 0
        assert stats["earliest_session"] is None

    def test_db_stats_populated(self, populated_storage):
        """Test stats on the shared dataset."""
        stats = populated_storage.get_db_stats()
        assert stats["session_count"] == 4
        assert stats["metrics_count"] == 3
        assert stats["message_count"] == 3
        assert stats["earliest_session"].startswith("2025-01-06")
        assert stats["latest_session"].startswith("2025-01-12")
        assert stats["db_size_bytes"] > 0

    def test_decode_tools(self):
        """Test decoding of the tools_used column."""
        assert decode_tools('["Read", "Edit"]') == ["Read", "Edit"]
        assert decode_tools(None) == []
        assert decode_tools("") == []
        assert decode_tools("[]") == []

    def test_decode_tools_malformed(self):
        """Test that malformed values decode to an empty list."""
        assert decode_tools("not json") == []
        assert decode_tools('{"tool": "Read"}') == []
