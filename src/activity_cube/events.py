"""
Events - Activity event schema and canonical contribution URLs

One row per activity (issue opened, PR comment, star, commit, ...).
Events are immutable once visible to the engine.

Derived columns added on load:
- contributionUrl: url with any '#fragment' removed, so every comment on a
  pull request maps back to the pull request itself
"""

from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional

import polars as pl

# Schema for the activities table (naive UTC timestamps)
EVENT_SCHEMA = {
    'id': pl.Utf8,
    'type': pl.Utf8,
    'timestamp': pl.Datetime('us'),
    'username': pl.Utf8,
    'objectMemberUsername': pl.Utf8,
    'objectMemberId': pl.Utf8,
    'platform': pl.Utf8,
    'sourceId': pl.Utf8,
    'channel': pl.Utf8,
    'tenantId': pl.Utf8,
    'memberId': pl.Utf8,
    'url': pl.Utf8,
    'isContribution': pl.Boolean,
}

TIMESTAMP_COLUMN = 'timestamp'
CONTRIBUTION_URL_COLUMN = 'contributionUrl'


def canonicalize_url(url: Optional[str]) -> Optional[str]:
    """
    Truncate a URL at its first '#'.

    Example:
        >>> canonicalize_url("https://github.com/org/repo/pull/1#issuecomment-9")
        'https://github.com/org/repo/pull/1'
    """
    if url is None:
        return None
    return url.split('#', 1)[0]


def contribution_url_expr() -> pl.Expr:
    """Vectorized canonicalize_url over the url column."""
    return pl.col('url').str.split('#').list.first().alias(CONTRIBUTION_URL_COLUMN)


def _coerce_record(record: Mapping[str, Any]) -> Dict[str, Any]:
    row = {name: record.get(name) for name in EVENT_SCHEMA}
    ts = row[TIMESTAMP_COLUMN]
    if isinstance(ts, str):
        ts = datetime.fromisoformat(ts.replace('Z', '+00:00'))
    if isinstance(ts, datetime) and ts.tzinfo is not None:
        ts = ts.astimezone(timezone.utc).replace(tzinfo=None)
    row[TIMESTAMP_COLUMN] = ts
    return row


def _timestamp_expr(dtype: pl.DataType) -> pl.Expr:
    col = pl.col(TIMESTAMP_COLUMN)
    if dtype == pl.Utf8:
        return col.str.to_datetime(time_unit='us', time_zone='UTC').dt.replace_time_zone(None)
    if isinstance(dtype, pl.Datetime) and dtype.time_zone is not None:
        return col.dt.convert_time_zone('UTC').dt.replace_time_zone(None).dt.cast_time_unit('us')
    return col.cast(EVENT_SCHEMA[TIMESTAMP_COLUMN])


def events_frame(records: Iterable[Mapping[str, Any]]) -> pl.DataFrame:
    """
    Build an event DataFrame from plain records.

    Missing attributes become nulls; ISO timestamp strings are parsed.

    Args:
        records: Iterable of dicts keyed by EVENT_SCHEMA column names

    Returns:
        DataFrame with EVENT_SCHEMA columns plus contributionUrl
    """
    rows: List[Dict[str, Any]] = [_coerce_record(r) for r in records]
    df = pl.DataFrame(rows, schema=EVENT_SCHEMA) if rows else pl.DataFrame(schema=EVENT_SCHEMA)
    return prepare_events(df)


def prepare_events(df: pl.DataFrame) -> pl.DataFrame:
    """
    Conform a raw frame to EVENT_SCHEMA and add derived columns.

    Columns missing from the source are added as typed nulls,
    extra columns are dropped.
    """
    exprs = []
    for name, dtype in EVENT_SCHEMA.items():
        if name == TIMESTAMP_COLUMN and name in df.columns:
            exprs.append(_timestamp_expr(df.schema[name]).alias(name))
        elif name in df.columns:
            exprs.append(pl.col(name).cast(dtype))
        else:
            exprs.append(pl.lit(None, dtype=dtype).alias(name))

    return df.select(exprs).with_columns(contribution_url_expr())
