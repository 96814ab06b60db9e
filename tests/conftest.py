"""Pytest configuration and shared fixtures."""

import os
import tempfile
from datetime import datetime, timedelta
from pathlib import Path

import pytest

# The server module opens its storage at import time; keep it off the real DB
os.environ.setdefault(
    "USAGE_ANALYTICS_DB", str(Path(tempfile.mkdtemp(prefix="usage-analytics-")) / "server.db")
)

from usage_analytics.storage import RawMessage, Session, SessionMetrics, SQLiteStorage  # noqa: E402


@pytest.fixture
def storage():
    """Create a temporary storage instance for testing.

    This is the base fixture for all storage-dependent tests.
    Use this when you need an empty database.
    """
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test.db"
        yield SQLiteStorage(db_path)


@pytest.fixture
def populated_storage(storage):
    """Storage instance with a small, fixed dataset for query tests.

    Contains:
    - s1: alpha / claude-sonnet, Mon 2025-01-06 10:00, 300s, 1000/500 tokens, $1.50,
      tools Read+Edit, 3 raw messages
    - s2: alpha / claude-opus, Mon 2025-01-06 14:00, 30s, 200/100 tokens, $3.00, tools Bash
    - s3: beta / claude-sonnet, Tue 2025-01-07 09:30, 1200s, 400/400 tokens, $0.50,
      tools Read+Bash
    - s4: no project, no model, Sun 2025-01-12 23:15, never ended, no tokens, no cost
    """
    sessions = [
        Session(
            id=None,
            session_id="s1",
            project_name="alpha",
            started_at=datetime(2025, 1, 6, 10, 0),
            ended_at=datetime(2025, 1, 6, 10, 5),
            duration_seconds=300,
            model_name="claude-sonnet",
            total_input_tokens=1000,
            total_output_tokens=500,
            total_cost_usd=1.5,
            tools_used=["Read", "Edit"],
            cache_hit_count=2,
            cache_miss_count=1,
        ),
        Session(
            id=None,
            session_id="s2",
            project_name="alpha",
            started_at=datetime(2025, 1, 6, 14, 0),
            ended_at=datetime(2025, 1, 6, 14, 0, 30),
            duration_seconds=30,
            model_name="claude-opus",
            total_input_tokens=200,
            total_output_tokens=100,
            total_cost_usd=3.0,
            tools_used=["Bash"],
            cache_miss_count=4,
        ),
        Session(
            id=None,
            session_id="s3",
            project_name="beta",
            started_at=datetime(2025, 1, 7, 9, 30),
            ended_at=datetime(2025, 1, 7, 9, 50),
            duration_seconds=1200,
            model_name="claude-sonnet",
            total_input_tokens=400,
            total_output_tokens=400,
            total_cost_usd=0.5,
            tools_used=["Read", "Bash"],
            cache_hit_count=1,
        ),
        Session(
            id=None,
            session_id="s4",
            project_name=None,
            started_at=datetime(2025, 1, 12, 23, 15),
        ),
    ]
    for session in sessions:
        storage.add_session(session)

    s1 = sessions[0]
    storage.add_messages_batch(
        [
            RawMessage(
                id=None,
                session_id=s1.id,
                message_index=i,
                role="user" if i % 2 == 0 else "assistant",
                timestamp=s1.started_at + timedelta(minutes=i),
                content=f"message {i}",
            )
            for i in range(3)
        ]
    )
    for session in sessions[:3]:
        storage.add_session_metrics(
            SessionMetrics(
                id=None,
                session_id=session.id,
                date_bucket=session.started_at.date(),
                hour_bucket=session.started_at.hour,
                input_tokens=session.total_input_tokens,
                output_tokens=session.total_output_tokens,
                cost_usd=session.total_cost_usd,
                duration_seconds=session.duration_seconds,
                message_count=3,
            )
        )

    return storage
