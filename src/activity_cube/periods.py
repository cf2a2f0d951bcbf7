"""
Periods - Date ranges, granularities and partition windows

Every time range inside the engine is half-open: [start, end).
Query descriptors use inclusive bounds instead:
- "2023-05-11" as an end bound means the whole day (end = 2023-05-12 00:00)
- "2023-05-11T23:59:59.999" means up to and including that millisecond

Timestamps are naive UTC throughout.
"""

from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import List, Optional, Sequence, Union

from .errors import InvalidQuery

GRANULARITIES = ['day', 'week', 'month', 'quarter', 'year']

# Polars truncate strings for each granularity
POLARS_EVERY = {
    'day': '1d',
    'week': '1w',
    'month': '1mo',
    'quarter': '1q',
    'year': '1y',
}

# Granularities whose buckets are exact unions of the key's buckets.
# Weeks do not nest into months, so a week rollup only serves week queries.
DERIVABLE_GRANULARITIES = {
    'day': {'day', 'week', 'month', 'quarter', 'year'},
    'week': {'week'},
    'month': {'month', 'quarter', 'year'},
    'quarter': {'quarter', 'year'},
    'year': {'year'},
}

DateLike = Union[str, date, datetime]


def check_granularity(granularity: str) -> str:
    if granularity not in POLARS_EVERY:
        raise InvalidQuery(f"Unsupported granularity '{granularity}'. Use one of {GRANULARITIES}")
    return granularity


def can_derive(source: str, target: str) -> bool:
    """True if buckets of `target` granularity can be rebuilt from `source` buckets."""
    return target in DERIVABLE_GRANULARITIES.get(source, set())


def truncate(ts: datetime, granularity: str) -> datetime:
    """Start of the bucket containing ts."""
    day_start = datetime(ts.year, ts.month, ts.day)
    if granularity == 'day':
        return day_start
    if granularity == 'week':
        return day_start - timedelta(days=day_start.weekday())
    if granularity == 'month':
        return datetime(ts.year, ts.month, 1)
    if granularity == 'quarter':
        return datetime(ts.year, 3 * ((ts.month - 1) // 3) + 1, 1)
    if granularity == 'year':
        return datetime(ts.year, 1, 1)
    raise InvalidQuery(f"Unsupported granularity '{granularity}'")


def advance(ts: datetime, granularity: str, steps: int = 1) -> datetime:
    """Start of the bucket `steps` buckets after the one starting at ts."""
    if granularity == 'day':
        return ts + timedelta(days=steps)
    if granularity == 'week':
        return ts + timedelta(weeks=steps)
    months = {'month': 1, 'quarter': 3, 'year': 12}.get(granularity)
    if months is None:
        raise InvalidQuery(f"Unsupported granularity '{granularity}'")
    total = ts.year * 12 + (ts.month - 1) + months * steps
    return ts.replace(year=total // 12, month=total % 12 + 1)


def _to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def parse_bound(value: DateLike, is_end: bool) -> datetime:
    """
    Parse one inclusive date-range bound into a half-open boundary.

    Args:
        value: "YYYY-MM-DD", an ISO timestamp, a date or a datetime
        is_end: Whether this is the (inclusive) end bound

    Returns:
        Start boundary, or exclusive end boundary when is_end is True
    """
    if isinstance(value, datetime):
        ts = _to_naive_utc(value)
        return ts + timedelta(milliseconds=1) if is_end else ts
    if isinstance(value, date):
        ts = datetime(value.year, value.month, value.day)
        return ts + timedelta(days=1) if is_end else ts
    if not isinstance(value, str):
        raise InvalidQuery(f"Invalid date bound: {value!r}")

    text = value.strip()
    try:
        if len(text) == 10:
            ts = datetime.fromisoformat(text)
            return ts + timedelta(days=1) if is_end else ts
        ts = _to_naive_utc(datetime.fromisoformat(text.replace('Z', '+00:00')))
    except ValueError as e:
        raise InvalidQuery(f"Invalid date bound '{value}': {e}") from e
    return ts + timedelta(milliseconds=1) if is_end else ts


@dataclass(frozen=True)
class DateRange:
    """Half-open time window [start, end)."""
    start: datetime
    end: datetime

    def __post_init__(self):
        if self.end < self.start:
            raise InvalidQuery(f"Date range ends before it starts: {self.start} > {self.end}")

    @classmethod
    def parse(cls, bounds: Sequence[DateLike]) -> 'DateRange':
        """
        Build a range from a query's inclusive [startDate, endDate] pair.

        Example:
            >>> DateRange.parse(["2023-05-04", "2023-05-11"])
            DateRange(start=datetime(2023, 5, 4, 0, 0), end=datetime(2023, 5, 12, 0, 0))
        """
        if isinstance(bounds, str) or len(bounds) != 2:
            raise InvalidQuery(f"Date range must be [startDate, endDate], got: {bounds!r}")
        return cls(parse_bound(bounds[0], is_end=False), parse_bound(bounds[1], is_end=True))

    @property
    def length(self) -> timedelta:
        return self.end - self.start

    def previous(self) -> 'DateRange':
        """The immediately preceding window of equal length."""
        return DateRange(self.start - self.length, self.start)

    def contains(self, other: 'DateRange') -> bool:
        return self.start <= other.start and other.end <= self.end

    def intersects(self, other: 'DateRange') -> bool:
        return self.start < other.end and other.start < self.end

    def intersection(self, other: 'DateRange') -> 'DateRange':
        start = max(self.start, other.start)
        end = min(self.end, other.end)
        return DateRange(start, max(start, end))

    def is_aligned(self, granularity: str) -> bool:
        return truncate(self.start, granularity) == self.start and truncate(self.end, granularity) == self.end

    def as_bounds(self) -> List[str]:
        """Inclusive bounds in query format; whole days render as dates."""
        if self.is_aligned('day'):
            last = self.end - timedelta(days=1)
            return [self.start.date().isoformat(), last.date().isoformat()]
        last = self.end - timedelta(milliseconds=1)
        return [self.start.isoformat(timespec='milliseconds'), last.isoformat(timespec='milliseconds')]

    def __str__(self):
        return f"[{self.start.isoformat()}, {self.end.isoformat()})"


def partition_ranges(start: datetime, end: datetime, granularity: Optional[str]) -> List[DateRange]:
    """
    Split [truncate(start), end) into consecutive partition windows.

    With no partition granularity the whole span is a single partition.
    """
    if granularity is None:
        return [DateRange(start, end)] if start < end else []

    ranges = []
    cursor = truncate(start, granularity)
    while cursor < end:
        nxt = advance(cursor, granularity)
        ranges.append(DateRange(cursor, nxt))
        cursor = nxt
    return ranges


def partition_key(window: DateRange, granularity: Optional[str]) -> str:
    """Filesystem-safe, sortable key for a partition window."""
    if granularity is None:
        return 'all'
    return window.start.strftime('%Y%m%d')


def previous_period(start: DateLike, end: DateLike) -> List[str]:
    """
    Inclusive bounds of the period immediately before [start, end].

    Example:
        >>> previous_period("2023-05-04", "2023-05-11")
        ['2023-04-26', '2023-05-03']
    """
    return DateRange.parse([start, end]).previous().as_bounds()
