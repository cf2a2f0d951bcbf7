#!/usr/bin/env python3
"""
Prepare Phase: Build rollup tables from raw activity events

This script:
1. Opens the raw event source (CSV exports or a DuckDB database)
2. Optionally converts the CSV exports into a DuckDB `activities` table
3. Refreshes (or rebuilds) the configured rollups into Arrow IPC files
4. Prints storage statistics

Incremental rollups only recompute partitions inside their update window,
so running this daily is cheap once the first build is done.
"""

import sys
import time
from datetime import datetime
from pathlib import Path
import argparse
import logging

# Add src to path
sys.path.insert(0, str(Path(__file__).parent / 'src'))

from activity_cube import ActivityCube, CsvEventSource, DuckDBEventSource, EngineSettings, configure_logging
from activity_cube.data_loader import load_lookup_frames
from activity_cube.errors import CubeError
from activity_cube.settings import configure_threads

logger = logging.getLogger(__name__)


def convert_to_duckdb(data_dir: Path, duckdb_path: Path) -> DuckDBEventSource:
    """
    Load every CSV export into a DuckDB `activities` table.

    Args:
        data_dir: Directory containing activities*.csv exports
        duckdb_path: DuckDB database to (re)create

    Returns:
        Event source reading the new table
    """
    logger.info(f"Converting CSV exports to DuckDB: {duckdb_path}")
    start_time = time.time()

    if duckdb_path.exists():
        duckdb_path.unlink()

    events = CsvEventSource(data_dir).scan()
    target = DuckDBEventSource(duckdb_path)
    target.load_frame(events)

    size_mb = duckdb_path.stat().st_size / (1024 * 1024)
    logger.info(f"✅ DuckDB source ready: {len(events):,} events, {size_mb:.1f} MB "
                f"in {time.time() - start_time:.1f}s")
    return target


def main():
    parser = argparse.ArgumentParser(
        description="Prepare phase: Build rollup tables"
    )
    parser.add_argument(
        '--data-dir',
        type=Path,
        default=Path('data'),
        help='Directory containing activities*.csv exports (and members.csv / tenants.csv)'
    )
    parser.add_argument(
        '--duckdb',
        type=Path,
        default=None,
        help='Read events from this DuckDB database instead of CSV'
    )
    parser.add_argument(
        '--to-duckdb',
        type=Path,
        default=None,
        help='Convert the CSV exports into this DuckDB database first, then build from it'
    )
    parser.add_argument(
        '--rollup-dir',
        type=Path,
        default=Path('rollups'),
        help='Directory to write rollup files'
    )
    parser.add_argument(
        '--rollup',
        action='append',
        default=None,
        help='Rollup to build (repeatable, default: all)'
    )
    parser.add_argument(
        '--rebuild',
        action='store_true',
        help='Rebuild every partition instead of refreshing incrementally'
    )
    parser.add_argument(
        '--now',
        type=datetime.fromisoformat,
        default=None,
        help='Build as of this UTC timestamp (default: now)'
    )
    parser.add_argument('--log-level', default=None, help='Logging level (default: INFO)')

    args = parser.parse_args()

    settings = EngineSettings.from_env()
    settings.rollup_dir = args.rollup_dir
    configure_logging(args.log_level or settings.log_level)
    cores = configure_threads()
    logger.info(f"Configured {cores} threads for polars")

    print("="*70)
    print("PREPARE PHASE: Building Rollup Tables")
    print("="*70)
    print()
    print(f"Data directory:   {args.data_dir}")
    print(f"Rollup directory: {args.rollup_dir}")
    print()

    total_start = time.time()

    # Phase 1: Event source
    try:
        if args.to_duckdb:
            source = convert_to_duckdb(args.data_dir, args.to_duckdb)
        elif args.duckdb:
            source = DuckDBEventSource(args.duckdb)
        else:
            source = CsvEventSource(args.data_dir)
    except (ValueError, OSError) as e:
        logger.error(f"Could not open event source: {e}")
        sys.exit(1)

    lookups = load_lookup_frames(args.data_dir) if args.data_dir.exists() else {}
    cube = ActivityCube(source, lookup_frames=lookups, settings=settings)

    # Phase 2: Build rollups
    logger.info("")
    logger.info("="*70)
    logger.info("Building Rollups")
    logger.info("="*70)

    names = args.rollup or [r.name for r in cube.schema.rollups]
    build_start = time.time()
    failures = 0

    for name in names:
        try:
            if args.rebuild:
                result = cube.rebuild(name, now=args.now)
            else:
                result = cube.refresh(name, now=args.now)[name]
        except CubeError as e:
            logger.error(f"❌ {name}: {e}")
            failures += 1
            continue
        if result.stale:
            failures += 1

    build_time = time.time() - build_start

    # Summary
    stats = cube.storage.get_storage_stats()

    print()
    print("="*70)
    print("PREPARE PHASE COMPLETE")
    print("="*70)
    for table, info in stats['tables'].items():
        stale = " (stale)" if info['stale'] else ""
        print(f"  {table:40s} {info['partitions']:4d} partitions {info['rows']:>10,} rows "
              f"{info.get('size_mb', 0):8.2f} MB{stale}")
    print()
    print(f"Build time:    {build_time:.1f}s")
    print(f"Total time:    {time.time() - total_start:.1f}s")
    print(f"Disk usage:    {stats.get('total_size_mb', 0):.1f} MB")
    print("="*70)

    if failures:
        sys.exit(1)


if __name__ == "__main__":
    main()
