"""Filter compilation for analytics queries.

A ``Filter`` describes which sessions a read operation looks at.
``compile_filter`` turns it into a ``Predicate``: a WHERE fragment over the
``sessions s`` alias plus its positional parameters. Callers extend a
predicate with ``and_()`` and append any trailing parameters (LIMIT, OFFSET)
after ``predicate.params``. Parameters are never reordered because ``?``
placeholders bind left to right.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

MAX_LIMIT = 1000


@dataclass(frozen=True)
class Filter:
    """Structured filter accepted by every read operation.

    ``date_from``/``date_to`` are inclusive bounds on ``started_at``.
    ``limit``/``offset`` only affect list-style results.
    """

    date_from: datetime | None = None
    date_to: datetime | None = None
    project_name: str | None = None
    model_name: str | None = None
    session_ids: frozenset[str] = field(default_factory=frozenset)
    limit: int | None = None
    offset: int | None = None

    def __post_init__(self):
        """Validate bounds on construction."""
        if not isinstance(self.session_ids, frozenset):
            object.__setattr__(self, "session_ids", frozenset(self.session_ids or ()))
        if self.date_from and self.date_to and self.date_from > self.date_to:
            raise ValueError("date_from must be earlier than date_to")
        if self.limit is not None and not (1 <= self.limit <= MAX_LIMIT):
            raise ValueError(f"limit must be a number between 1 and {MAX_LIMIT}")
        if self.offset is not None and self.offset < 0:
            raise ValueError("offset must be a non-negative number")


@dataclass(frozen=True)
class Predicate:
    """An immutable WHERE fragment and the values bound to its placeholders."""

    conditions: tuple[str, ...] = ()
    params: tuple = ()

    @property
    def sql(self) -> str:
        # Safe: conditions are hardcoded strings, values only travel in params
        return " AND ".join(self.conditions) if self.conditions else "1=1"

    def and_(self, condition: str, *params) -> Predicate:
        """Return a new predicate with ``condition`` appended.

        ``params`` bind to placeholders in ``condition`` and are appended
        after the existing ones.
        """
        return Predicate(self.conditions + (condition,), self.params + params)


def compile_filter(filters: Filter | None = None) -> Predicate:
    """Compile a Filter into a Predicate over the ``sessions s`` alias.

    Pure: builds SQL text and parameters, never touches the store. An empty
    filter compiles to an unconditioned predicate that matches every row.

    Args:
        filters: Filter to compile (None means no filtering)

    Returns:
        Predicate whose ``sql`` can be placed after WHERE
    """
    predicate = Predicate()
    if filters is None:
        return predicate

    if filters.date_from:
        predicate = predicate.and_("s.started_at >= ?", filters.date_from)
    if filters.date_to:
        predicate = predicate.and_("s.started_at <= ?", filters.date_to)
    if filters.project_name:
        predicate = predicate.and_("s.project_name = ?", filters.project_name)
    if filters.model_name:
        predicate = predicate.and_("s.model_name = ?", filters.model_name)
    if filters.session_ids:
        ids = sorted(filters.session_ids)
        placeholders = ",".join("?" * len(ids))
        predicate = predicate.and_(f"s.session_id IN ({placeholders})", *ids)

    return predicate


def _parse_datetime(value: str | datetime | None, name: str) -> datetime | None:
    """Parse an ISO-8601 date or datetime, dropping any timezone."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
        except ValueError:
            raise ValueError(
                f"Invalid {name} format. Use ISO 8601 format (YYYY-MM-DD or YYYY-MM-DDTHH:MM:SS)"
            ) from None
    # Stored timestamps are naive local time
    if parsed.tzinfo is not None:
        parsed = parsed.replace(tzinfo=None)
    return parsed


def _parse_int(value: int | str | None, name: str) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValueError(f"{name} must be an integer, got {value!r}") from None


def parse_filter(
    date_from: str | datetime | None = None,
    date_to: str | datetime | None = None,
    project_name: str | None = None,
    model_name: str | None = None,
    session_ids: list[str] | str | None = None,
    limit: int | str | None = None,
    offset: int | str | None = None,
) -> Filter:
    """Build a Filter from loosely-typed inputs (CLI args, tool arguments).

    Args:
        date_from: ISO-8601 lower bound on started_at
        date_to: ISO-8601 upper bound on started_at
        project_name: Exact project name
        model_name: Exact model name
        session_ids: List or comma-separated string of session IDs
        limit: Page size (1-1000)
        offset: Rows to skip

    Returns:
        Validated Filter

    Raises:
        ValueError: If any value is malformed or out of range
    """
    if isinstance(session_ids, str):
        session_ids = session_ids.split(",")
    ids = frozenset(str(s).strip() for s in session_ids or () if str(s).strip())

    return Filter(
        date_from=_parse_datetime(date_from, "date_from"),
        date_to=_parse_datetime(date_to, "date_to"),
        project_name=project_name or None,
        model_name=model_name or None,
        session_ids=ids,
        limit=_parse_int(limit, "limit"),
        offset=_parse_int(offset, "offset"),
    )
