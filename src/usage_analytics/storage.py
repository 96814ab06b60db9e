"""SQLite storage backend for usage analytics."""

import json
import logging
import os
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, datetime
from pathlib import Path

logger = logging.getLogger("usage-analytics")

# Register date/datetime adapters/converters (required for Python 3.12+)


def _adapt_datetime(dt: datetime) -> str:
    """Convert datetime to ISO format string for SQLite storage."""
    return dt.isoformat()


def _adapt_date(d: date) -> str:
    return d.isoformat()


def _convert_datetime(data: bytes) -> datetime:
    """Convert ISO format string from SQLite to datetime."""
    return datetime.fromisoformat(data.decode())


def _convert_date(data: bytes) -> date:
    return date.fromisoformat(data.decode())


sqlite3.register_adapter(datetime, _adapt_datetime)
sqlite3.register_adapter(date, _adapt_date)
sqlite3.register_converter("TIMESTAMP", _convert_datetime)
sqlite3.register_converter("DATE", _convert_date)


@dataclass
class Session:
    """One recorded usage session.

    ``session_id`` is the business key. It is not unique in the store:
    duplicate rows are reported by the quality audit rather than rejected.
    """

    id: int | None
    session_id: str
    started_at: datetime
    project_name: str | None = None
    ended_at: datetime | None = None
    duration_seconds: int | None = None
    model_name: str | None = None
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    total_cost_usd: float = 0.0
    tools_used: list[str] = field(default_factory=list)
    cache_hit_count: int = 0
    cache_miss_count: int = 0
    created_at: datetime | None = None  # Filled on insert when missing


@dataclass
class SessionMetrics:
    """Derived per-session rollup, referencing ``sessions.id``."""

    id: int | None
    session_id: int | None  # Internal sessions.id, not the business key
    date_bucket: date
    hour_bucket: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0
    duration_seconds: int = 0
    message_count: int = 0
    created_at: datetime | None = None


@dataclass
class RawMessage:
    """A single message from a session's log."""

    id: int | None
    session_id: int  # Internal sessions.id
    message_index: int
    role: str
    timestamp: datetime
    content: str | None = None
    input_tokens: int = 0
    output_tokens: int = 0
    tool_name: str | None = None


# Default database path
DEFAULT_DB_PATH = Path.home() / ".claude" / "contrib" / "usage-analytics" / "data.db"

# Schema version, bumped whenever table layout changes
SCHEMA_VERSION = 1


class SQLiteStorage:
    """SQLite-backed storage for usage analytics."""

    def __init__(self, db_path: str | Path | None = None):
        """Initialize storage with optional custom DB path."""
        if db_path is None:
            db_path = os.environ.get("USAGE_ANALYTICS_DB", str(DEFAULT_DB_PATH))

        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._init_db()

    @contextmanager
    def _connect(self):
        """Context manager for database connections."""
        conn = sqlite3.connect(
            self.db_path,
            detect_types=sqlite3.PARSE_DECLTYPES | sqlite3.PARSE_COLNAMES,
        )
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    @contextmanager
    def transaction(self):
        """Run a block of writes atomically.

        Takes the write lock up front (BEGIN IMMEDIATE) so the statements
        inside see one consistent snapshot. Any exception rolls the whole
        block back and is re-raised.

        Yields:
            sqlite3.Connection bound to the open transaction
        """
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except Exception:
                conn.rollback()
                raise

    def execute_query(self, sql: str, params: tuple | list = ()) -> list[sqlite3.Row]:
        """Execute a SQL query and return all results.

        This is the public API for raw SQL queries. Use this instead of
        accessing _connect() directly.

        Args:
            sql: SQL query string
            params: Query parameters (tuple or list)

        Returns:
            List of sqlite3.Row objects
        """
        with self._connect() as conn:
            return conn.execute(sql, params).fetchall()

    def execute_write(self, sql: str, params: tuple | list = ()) -> int:
        """Execute a SQL write operation and return rows affected.

        This is the public API for INSERT/UPDATE/DELETE operations.

        Args:
            sql: SQL statement
            params: Query parameters (tuple or list)

        Returns:
            Number of rows affected
        """
        with self._connect() as conn:
            cursor = conn.execute(sql, params)
            return cursor.rowcount

    def _get_schema_version(self, conn: sqlite3.Connection) -> int:
        """Get current schema version from database."""
        try:
            row = conn.execute("SELECT version FROM schema_version LIMIT 1").fetchone()
            return row[0] if row else 0
        except sqlite3.OperationalError:
            # Table doesn't exist yet
            return 0

    def _init_db(self):
        """Create tables if they don't exist."""
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS schema_version (
                    version INTEGER PRIMARY KEY
                )
            """)

            # session_id is deliberately not UNIQUE: duplicates are audited, not rejected
            conn.execute("""
                CREATE TABLE IF NOT EXISTS sessions (
                    id INTEGER PRIMARY KEY,
                    session_id TEXT NOT NULL,
                    project_name TEXT,
                    started_at TIMESTAMP NOT NULL,
                    ended_at TIMESTAMP,
                    duration_seconds INTEGER,
                    model_name TEXT,
                    total_input_tokens INTEGER DEFAULT 0,
                    total_output_tokens INTEGER DEFAULT 0,
                    total_cost_usd REAL DEFAULT 0,
                    tools_used TEXT,
                    cache_hit_count INTEGER DEFAULT 0,
                    cache_miss_count INTEGER DEFAULT 0,
                    created_at TIMESTAMP
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_sessions_started_at ON sessions(started_at)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_sessions_session_id ON sessions(session_id)")
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_sessions_project_name ON sessions(project_name)"
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_sessions_model_name ON sessions(model_name)")

            # Foreign keys are not enforced, so deleting a session can orphan these rows
            conn.execute("""
                CREATE TABLE IF NOT EXISTS session_metrics (
                    id INTEGER PRIMARY KEY,
                    session_id INTEGER REFERENCES sessions(id),
                    date_bucket DATE,
                    hour_bucket INTEGER DEFAULT 0,
                    input_tokens INTEGER DEFAULT 0,
                    output_tokens INTEGER DEFAULT 0,
                    cost_usd REAL DEFAULT 0,
                    duration_seconds INTEGER DEFAULT 0,
                    message_count INTEGER DEFAULT 0,
                    created_at TIMESTAMP
                )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_session_metrics_session ON session_metrics(session_id)"
            )

            conn.execute("""
                CREATE TABLE IF NOT EXISTS raw_messages (
                    id INTEGER PRIMARY KEY,
                    session_id INTEGER REFERENCES sessions(id),
                    message_index INTEGER NOT NULL,
                    role TEXT NOT NULL,
                    content TEXT,
                    input_tokens INTEGER DEFAULT 0,
                    output_tokens INTEGER DEFAULT 0,
                    tool_name TEXT,
                    timestamp TIMESTAMP NOT NULL
                )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_raw_messages_session ON raw_messages(session_id)"
            )

            if self._get_schema_version(conn) < SCHEMA_VERSION:
                logger.debug(f"Initialized schema version {SCHEMA_VERSION} at {self.db_path}")
                conn.execute(
                    "INSERT OR REPLACE INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,)
                )

    # Session operations

    @staticmethod
    def _session_params(session: Session) -> tuple:
        return (
            session.session_id,
            session.project_name,
            session.started_at,
            session.ended_at,
            session.duration_seconds,
            session.model_name,
            session.total_input_tokens,
            session.total_output_tokens,
            session.total_cost_usd,
            json.dumps(session.tools_used or []),
            session.cache_hit_count,
            session.cache_miss_count,
            session.created_at or datetime.now(),
        )

    _INSERT_SESSION = """
        INSERT INTO sessions (
            session_id, project_name, started_at, ended_at, duration_seconds,
            model_name, total_input_tokens, total_output_tokens, total_cost_usd,
            tools_used, cache_hit_count, cache_miss_count, created_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
    """

    def add_session(self, session: Session) -> Session:
        """Insert a session row and return it with its assigned ID.

        Always inserts: a second row with the same ``session_id`` becomes a
        duplicate for the quality audit to find.
        """
        params = self._session_params(session)
        with self._connect() as conn:
            cursor = conn.execute(self._INSERT_SESSION, params)
            session.id = cursor.lastrowid
            session.created_at = params[-1]
            return session

    def add_sessions_batch(self, sessions: list[Session]) -> int:
        """Add multiple sessions in a single transaction. Returns count added."""
        with self._connect() as conn:
            cursor = conn.executemany(
                self._INSERT_SESSION, [self._session_params(s) for s in sessions]
            )
            return cursor.rowcount

    def get_sessions(self, session_id: str) -> list[Session]:
        """Get every row stored under a business key, newest first."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM sessions WHERE session_id = ? ORDER BY created_at DESC, id DESC",
                (session_id,),
            ).fetchall()
            return [self._row_to_session(row) for row in rows]

    def get_session_count(self) -> int:
        """Get total number of session rows (duplicates included)."""
        with self._connect() as conn:
            row = conn.execute("SELECT COUNT(*) as count FROM sessions").fetchone()
            return row["count"]

    def delete_session_row(self, row_id: int) -> int:
        """Delete one session row by internal ID without touching dependent rows."""
        return self.execute_write("DELETE FROM sessions WHERE id = ?", (row_id,))

    def _row_to_session(self, row: sqlite3.Row) -> Session:
        """Convert a database row to a Session object."""
        return Session(
            id=row["id"],
            session_id=row["session_id"],
            project_name=row["project_name"],
            started_at=row["started_at"],
            ended_at=row["ended_at"],
            duration_seconds=row["duration_seconds"],
            model_name=row["model_name"],
            total_input_tokens=row["total_input_tokens"],
            total_output_tokens=row["total_output_tokens"],
            total_cost_usd=row["total_cost_usd"],
            tools_used=decode_tools(row["tools_used"]),
            cache_hit_count=row["cache_hit_count"],
            cache_miss_count=row["cache_miss_count"],
            created_at=row["created_at"],
        )

    # Metrics operations

    def add_session_metrics(self, metrics: SessionMetrics) -> SessionMetrics:
        """Add a derived metrics row and return it with assigned ID."""
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO session_metrics (
                    session_id, date_bucket, hour_bucket, input_tokens, output_tokens,
                    cost_usd, duration_seconds, message_count, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    metrics.session_id,
                    metrics.date_bucket,
                    metrics.hour_bucket,
                    metrics.input_tokens,
                    metrics.output_tokens,
                    metrics.cost_usd,
                    metrics.duration_seconds,
                    metrics.message_count,
                    metrics.created_at or datetime.now(),
                ),
            )
            metrics.id = cursor.lastrowid
            return metrics

    def get_metrics_count(self) -> int:
        """Get total number of session_metrics rows."""
        with self._connect() as conn:
            row = conn.execute("SELECT COUNT(*) as count FROM session_metrics").fetchone()
            return row["count"]

    # Message operations

    def add_messages_batch(self, messages: list[RawMessage]) -> int:
        """Add multiple raw messages in a single transaction. Returns count added."""
        with self._connect() as conn:
            cursor = conn.executemany(
                """
                INSERT INTO raw_messages (
                    session_id, message_index, role, content,
                    input_tokens, output_tokens, tool_name, timestamp
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        m.session_id,
                        m.message_index,
                        m.role,
                        m.content,
                        m.input_tokens,
                        m.output_tokens,
                        m.tool_name,
                        m.timestamp,
                    )
                    for m in messages
                ],
            )
            return cursor.rowcount

    # Utility operations

    def vacuum(self):
        """Reclaim free pages after large deletes."""
        with self._connect() as conn:
            conn.execute("VACUUM")

    def get_db_stats(self) -> dict:
        """Get database statistics."""
        with self._connect() as conn:
            session_count = conn.execute("SELECT COUNT(*) FROM sessions").fetchone()[0]
            metrics_count = conn.execute("SELECT COUNT(*) FROM session_metrics").fetchone()[0]
            message_count = conn.execute("SELECT COUNT(*) FROM raw_messages").fetchone()[0]

            date_range = conn.execute(
                "SELECT MIN(started_at) as min_ts, MAX(started_at) as max_ts FROM sessions"
            ).fetchone()

            db_size = self.db_path.stat().st_size if self.db_path.exists() else 0

            return {
                "db_path": str(self.db_path),
                "db_size_bytes": db_size,
                "session_count": session_count,
                "metrics_count": metrics_count,
                "message_count": message_count,
                "earliest_session": date_range["min_ts"],
                "latest_session": date_range["max_ts"],
            }


def decode_tools(raw: str | None) -> list[str]:
    """Decode the JSON-encoded ``tools_used`` column.

    NULL and malformed values decode to an empty list.
    """
    if not raw:
        return []
    try:
        tools = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning(f"Ignoring malformed tools_used value: {raw[:50]!r}")
        return []
    if not isinstance(tools, list):
        return []
    return [str(t) for t in tools if t]
