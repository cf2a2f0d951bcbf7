"""
Rollup Builder - Materializes rollup partitions from raw events

A rollup row holds partial aggregates for one combination of:
- __bucket:           start of the time bucket (rollup granularity)
- dimension columns:  qualified member names ('Activities.username', 'Members.logo_url')
- segment columns:    'segment:<name>' booleans, one per rollup segment

and the partial state of each measure:
- count measures:          Int64 counts
- countDistinct measures:  sorted list of the distinct values seen
- __rows:                  number of events folded into the row

Because segments are grouping flags rather than filters, one rollup serves
every query using any subset of its segments.
"""

import logging
import time
from typing import Iterable, List, Mapping, Optional

import polars as pl

from .events import TIMESTAMP_COLUMN
from .periods import POLARS_EVERY
from .schema import CubeSchema, RollupDefinition

logger = logging.getLogger(__name__)

BUCKET_COLUMN = '__bucket'
ROWS_COLUMN = '__rows'
SEGMENT_PREFIX = 'segment:'


def segment_column(segment: str) -> str:
    return f"{SEGMENT_PREFIX}{segment}"


def bucket_expr(granularity: str, column: str = TIMESTAMP_COLUMN) -> pl.Expr:
    """Start of the bucket each timestamp falls in; weeks start on Monday."""
    return pl.col(column).dt.truncate(POLARS_EVERY[granularity])


def project_members(
    events: pl.DataFrame,
    schema: CubeSchema,
    dimensions: Iterable[str],
    lookup_frames: Optional[Mapping[str, pl.DataFrame]] = None,
) -> pl.DataFrame:
    """
    Add one column per requested dimension, named by its qualified member.

    Lookup dimensions are left-joined from their side table on the lookup key.
    Keys are de-duplicated first so the join never multiplies events. A lookup
    with no frame supplied yields null columns.

    Args:
        events: Event frame (EVENT_SCHEMA plus contributionUrl)
        schema: Cube schema
        dimensions: Qualified dimension names
        lookup_frames: Side tables by lookup name ('Members', 'Tenants')

    Returns:
        events with the dimension columns added (raw columns are kept)
    """
    lookup_frames = lookup_frames or {}
    df = events
    joined = set()
    exprs = []

    for name in dimensions:
        dim = schema.dimension(name)
        lookup = schema.lookup_for(name)
        if lookup is None:
            exprs.append(pl.col(dim.column).alias(name))
            continue
        if lookup.name in joined:
            continue
        joined.add(lookup.name)

        frame = lookup_frames.get(lookup.name)
        columns = [f"{lookup.name}.{c}" for c in lookup.columns]
        if frame is None:
            logger.warning(f"No {lookup.name} table supplied, {columns} will be null")
            df = df.with_columns([pl.lit(None, dtype=pl.Utf8).alias(c) for c in columns])
            continue

        side = (
            frame.select(
                [pl.col(lookup.key).cast(pl.Utf8).alias('__lookup_key')]
                + [pl.col(c).alias(f"{lookup.name}.{c}") if c in frame.columns
                   else pl.lit(None, dtype=pl.Utf8).alias(f"{lookup.name}.{c}")
                   for c in lookup.columns]
            )
            .unique(subset='__lookup_key', keep='first', maintain_order=True)
        )
        df = (
            df.with_columns(pl.col(lookup.foreign_key).cast(pl.Utf8).alias('__lookup_fk'))
            .join(side, left_on='__lookup_fk', right_on='__lookup_key', how='left')
        )
        df = df.drop([c for c in ('__lookup_fk', '__lookup_key') if c in df.columns])

    if exprs:
        df = df.with_columns(exprs)
    return df


def build_partition(
    schema: CubeSchema,
    rollup: RollupDefinition,
    events: pl.DataFrame,
    lookup_frames: Optional[Mapping[str, pl.DataFrame]] = None,
) -> pl.DataFrame:
    """
    Build one rollup partition.

    Args:
        schema: Cube schema the rollup belongs to
        rollup: Rollup definition
        events: Events of the partition window only
        lookup_frames: Side tables for lookup dimensions

    Returns:
        Materialized partition sorted by bucket and dimensions
    """
    start_time = time.time()

    dims = [schema.qualify(d) for d in rollup.dimensions]
    measures = [schema.measure(m) for m in rollup.measures]
    segments = {segment_column(s): schema.segment(s) for s in rollup.segments}

    df = project_members(events, schema, dims, lookup_frames)
    df = df.with_columns(
        [bucket_expr(rollup.granularity).alias(BUCKET_COLUMN)]
        + [pred.to_expr().alias(name) for name, pred in segments.items()]
    )

    keys = [BUCKET_COLUMN] + dims + list(segments)
    partition = (
        df.group_by(keys)
        .agg([pl.len().cast(pl.Int64).alias(ROWS_COLUMN)] + [m.rollup_expr() for m in measures])
        .sort(keys, nulls_last=True)
    )

    build_time = time.time() - start_time
    logger.debug(f"Built {rollup.name} partition: {len(events):,} events -> "
                 f"{len(partition):,} rows in {build_time:.2f}s")
    return partition


def rollup_columns(schema: CubeSchema, rollup: RollupDefinition) -> List[str]:
    """Column layout of a materialized partition."""
    return ([BUCKET_COLUMN]
            + [schema.qualify(d) for d in rollup.dimensions]
            + [segment_column(s) for s in rollup.segments]
            + [ROWS_COLUMN]
            + [schema.measure(m).name for m in rollup.measures])
