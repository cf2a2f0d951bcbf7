"""
Data Loader - Raw activity event sources

Every source exposes the same scan contract: give it an optional time
range and an optional deadline, get back a polars DataFrame conforming to
EVENT_SCHEMA (plus contributionUrl). Rows come back in arbitrary order.

Sources:
- FrameEventSource:  in-memory polars frame (tests, small exports)
- CsvEventSource:    directory of CSV exports, streamed in pyarrow batches
- DuckDBEventSource: `activities` table in a DuckDB database

A scan that runs past its deadline raises Timeout; partial results are
never returned.
"""

import logging
import threading
import time
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

import duckdb
import polars as pl
import pyarrow as pa
import pyarrow.csv as pacsv

from .errors import Timeout
from .events import EVENT_SCHEMA, TIMESTAMP_COLUMN, events_frame, prepare_events
from .periods import DateRange
from .predicates import InRange

logger = logging.getLogger(__name__)

# CSV column types; timestamps stay strings so offsets are parsed by polars
CSV_ARROW_TYPES = {
    name: (pa.bool_() if dtype == pl.Boolean else pa.string())
    for name, dtype in EVENT_SCHEMA.items()
}


def _range_filter(df: pl.DataFrame, date_range: Optional[DateRange]) -> pl.DataFrame:
    if date_range is None:
        return df
    return df.filter(InRange(TIMESTAMP_COLUMN, date_range.start, date_range.end).to_expr())


class EventSource(ABC):
    """Scan contract shared by all raw event sources."""

    @abstractmethod
    def scan(self, date_range: Optional[DateRange] = None, timeout: Optional[float] = None) -> pl.DataFrame:
        """
        Return every event with timestamp in date_range (all events when None).

        Args:
            date_range: Half-open range on the event timestamp
            timeout: Seconds before the scan fails with Timeout

        Returns:
            DataFrame with EVENT_SCHEMA columns plus contributionUrl
        """

    def time_bounds(self) -> Optional[Tuple[datetime, datetime]]:
        """(earliest, latest) event timestamp, or None when the source is empty."""
        df = self.scan()
        if df.is_empty():
            return None
        row = df.select(
            pl.col(TIMESTAMP_COLUMN).min().alias('lo'),
            pl.col(TIMESTAMP_COLUMN).max().alias('hi'),
        ).row(0)
        if row[0] is None:
            return None
        return row[0], row[1]


class FrameEventSource(EventSource):
    """
    Events held in memory.

    extend() appends late-arriving events; scans started before an extend
    keep seeing the frame they started with.
    """

    def __init__(self, events: Union[pl.DataFrame, Iterable[Mapping[str, Any]], None] = None):
        self._lock = threading.Lock()
        self._df = self._conform(events)
        logger.info(f"Frame event source initialized: {len(self._df):,} events")

    @staticmethod
    def _conform(events) -> pl.DataFrame:
        if events is None:
            return events_frame([])
        if isinstance(events, pl.DataFrame):
            return prepare_events(events)
        return events_frame(events)

    def extend(self, events: Union[pl.DataFrame, Iterable[Mapping[str, Any]]]) -> int:
        new = self._conform(events)
        with self._lock:
            self._df = pl.concat([self._df, new], how='vertical')
        logger.debug(f"Appended {len(new):,} events")
        return len(new)

    def scan(self, date_range=None, timeout=None):
        start_time = time.time()
        with self._lock:
            df = self._df
        result = _range_filter(df, date_range)
        if timeout is not None and time.time() - start_time > timeout:
            raise Timeout(timeout, date_range)
        return result

    def __len__(self):
        return len(self._df)


class CsvEventSource(EventSource):
    """
    Directory of CSV exports with a header row.

    Files are streamed batch by batch with pyarrow and filtered as they are
    read, so only matching events are held in memory. The deadline is checked
    between batches.
    """

    def __init__(self, data_dir: Path, pattern: str = 'activities*.csv', block_size: int = 1 << 22):
        self.data_dir = Path(data_dir)
        self.csv_files = sorted(self.data_dir.glob(pattern))
        self.block_size = block_size

        if not self.csv_files:
            raise ValueError(f"No CSV files found in {data_dir}")

        logger.info(f"Found {len(self.csv_files)} CSV files in {data_dir}")

    def _batches(self, path: Path):
        reader = pacsv.open_csv(
            path,
            read_options=pacsv.ReadOptions(block_size=self.block_size),
            convert_options=pacsv.ConvertOptions(
                column_types=CSV_ARROW_TYPES,
                include_columns=list(EVENT_SCHEMA),
                include_missing_columns=True,
                strings_can_be_null=True,
            ),
        )
        for batch in reader:
            yield batch

    def scan(self, date_range=None, timeout=None):
        start_time = time.time()
        frames: List[pl.DataFrame] = []
        for path in self.csv_files:
            for batch in self._batches(path):
                if timeout is not None and time.time() - start_time > timeout:
                    raise Timeout(timeout, date_range)
                df = prepare_events(pl.from_arrow(pa.Table.from_batches([batch])))
                frames.append(_range_filter(df, date_range))

        if timeout is not None and time.time() - start_time > timeout:
            raise Timeout(timeout, date_range)
        if not frames:
            return events_frame([])

        result = pl.concat(frames, how='vertical')
        logger.debug(f"CSV scan: {len(result):,} events in {time.time() - start_time:.2f}s")
        return result


class DuckDBEventSource(EventSource):
    """
    `activities` table in a DuckDB database.

    The range filter is pushed into SQL. When the deadline passes the
    running query is interrupted and the scan raises Timeout.
    """

    def __init__(self, database: Union[str, Path, duckdb.DuckDBPyConnection] = ':memory:',
                 table: str = 'activities'):
        if isinstance(database, duckdb.DuckDBPyConnection):
            self._con = database
        else:
            self._con = duckdb.connect(str(database))
        self.table = table
        logger.info(f"DuckDB event source initialized: table {table}")

    @property
    def connection(self) -> duckdb.DuckDBPyConnection:
        return self._con

    def load_frame(self, df: pl.DataFrame, replace: bool = True) -> int:
        """Write events into the activities table (used by prepare.py --to-duckdb)."""
        events = prepare_events(df).drop('contributionUrl')
        cursor = self._con.cursor()
        try:
            cursor.register('incoming_events', events.to_arrow())
            verb = 'CREATE OR REPLACE TABLE' if replace else 'CREATE TABLE IF NOT EXISTS'
            cursor.execute(f'{verb} "{self.table}" AS SELECT * FROM incoming_events WHERE false')
            cursor.execute(f'INSERT INTO "{self.table}" SELECT * FROM incoming_events')
            cursor.unregister('incoming_events')
        finally:
            cursor.close()
        logger.info(f"Loaded {len(events):,} events into DuckDB table {self.table}")
        return len(events)

    def scan(self, date_range=None, timeout=None):
        sql = f'SELECT * FROM "{self.table}"'
        params: list = []
        if date_range is not None:
            sql += f' WHERE "{TIMESTAMP_COLUMN}" >= ? AND "{TIMESTAMP_COLUMN}" < ?'
            params = [date_range.start, date_range.end]

        cursor = self._con.cursor()
        timer = None
        if timeout is not None:
            timer = threading.Timer(timeout, cursor.interrupt)
            timer.daemon = True
            timer.start()

        start_time = time.time()
        try:
            df = cursor.execute(sql, params).pl()
        except duckdb.InterruptException as e:
            raise Timeout(timeout, date_range) from e
        finally:
            if timer is not None:
                timer.cancel()
            cursor.close()

        if timeout is not None and time.time() - start_time > timeout:
            raise Timeout(timeout, date_range)

        logger.debug(f"DuckDB scan: {len(df):,} events in {time.time() - start_time:.2f}s")
        return prepare_events(df)

    def time_bounds(self):
        cursor = self._con.cursor()
        try:
            row = cursor.execute(
                f'SELECT min("{TIMESTAMP_COLUMN}"), max("{TIMESTAMP_COLUMN}") FROM "{self.table}"'
            ).fetchone()
        finally:
            cursor.close()
        if row is None or row[0] is None:
            return None
        return row[0], row[1]


# Lookup name -> CSV export file name
LOOKUP_FILES = {
    'Members': 'members.csv',
    'Tenants': 'tenants.csv',
}


def load_lookup_frames(data_dir: Path) -> Dict[str, pl.DataFrame]:
    """
    Side tables exported next to the activity CSVs; every column is read as text.

    Missing files are skipped, their lookup dimensions then come back null.
    """
    frames = {}
    for name, filename in LOOKUP_FILES.items():
        path = Path(data_dir) / filename
        if path.exists():
            frames[name] = pl.read_csv(path, infer_schema_length=0)
            logger.info(f"Loaded {name} lookup: {len(frames[name]):,} rows from {path}")
    return frames
