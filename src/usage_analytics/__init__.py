"""Claude Usage Analytics - aggregation and data-quality engine for usage sessions."""

from importlib.metadata import version

try:
    __version__ = version("claude-usage-analytics")
except Exception:
    __version__ = "0.1.0"  # Fallback for development

# Re-export public API
from usage_analytics.filters import Filter, Predicate, compile_filter, parse_filter
from usage_analytics.retention import RetentionPolicy
from usage_analytics.storage import (
    RawMessage,
    Session,
    SessionMetrics,
    SQLiteStorage,
)

__all__ = [
    # Version
    "__version__",
    # Storage
    "SQLiteStorage",
    "Session",
    "SessionMetrics",
    "RawMessage",
    # Filters
    "Filter",
    "Predicate",
    "compile_filter",
    "parse_filter",
    # Retention
    "RetentionPolicy",
]
