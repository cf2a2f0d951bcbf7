#!/usr/bin/env python3
"""
Run Phase: Execute cube queries against pre-built rollups

This script:
1. Opens the rollup directory written by prepare.py
2. Loads query descriptors (JSON file or queries/inputs.py)
3. Compiles each query and routes it to a covering rollup, or to the raw
   event source when no rollup covers it
4. Writes one CSV per query
5. Optionally prints a contributor leaderboard as JSON

Examples:
  python3 run.py --data-dir data
  python3 run.py --duckdb activities.duckdb --query-file queries.json
  python3 run.py --data-dir data --leaderboard tenant-1 --date-range 2023-05-04 2023-05-11
"""

import sys
import time
import json
from pathlib import Path
import argparse
import logging

# Add src to path
sys.path.insert(0, str(Path(__file__).parent / 'src'))

from activity_cube import ActivityCube, CsvEventSource, DuckDBEventSource, EngineSettings, configure_logging
from activity_cube.data_loader import load_lookup_frames
from activity_cube.errors import CubeError

logger = logging.getLogger(__name__)


def load_queries(query_file=None):
    """
    Load query descriptors.

    Priority order:
    1. --query-file <path.json> - JSON list of queries (or a single query)
    2. queries/inputs.py (default)

    Returns:
        List of query dictionaries
    """
    if query_file:
        logger.info(f"Loading queries from JSON: {query_file}")
        with open(query_file) as f:
            queries = json.load(f)
        if not isinstance(queries, list):
            queries = [queries]
        return queries

    logger.info("Loading queries from queries/inputs.py (default)")
    sys.path.insert(0, str(Path(__file__).parent))
    try:
        from queries.inputs import queries
        return queries
    except ImportError:
        logger.error("Could not load queries from queries/inputs.py")
        logger.error("Please provide --query-file")
        return []


def open_source(args):
    if args.duckdb:
        return DuckDBEventSource(args.duckdb)
    return CsvEventSource(args.data_dir)


def engine_settings(args) -> EngineSettings:
    """Environment settings with the command-line overrides applied."""
    settings = EngineSettings.from_env()
    # No rollup directory yet: keep storage in memory, every query scans raw events
    settings.rollup_dir = args.rollup_dir if args.rollup_dir.exists() else None
    if args.workers:
        settings.workers = args.workers
    return settings


def run_leaderboard(cube: ActivityCube, args) -> int:
    logger.info("")
    logger.info("="*70)
    logger.info("Contributor Leaderboard")
    logger.info("="*70)

    if not args.date_range:
        logger.error("--leaderboard needs --date-range START END")
        return 1

    try:
        board = cube.contributor_leaderboard(
            args.leaderboard,
            args.date_range,
            previous_date_range=args.previous_date_range,
            metric=args.metric,
        )
    except CubeError as e:
        logger.error(f"❌ Leaderboard FAILED: {e}")
        return 1

    print(json.dumps(board.to_dict(), indent=2, default=str))
    return 0


def main():
    parser = argparse.ArgumentParser(
        description="Run phase: Execute cube queries against rollup tables",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        '--rollup-dir',
        type=Path,
        default=Path('rollups'),
        help='Directory containing rollup files (default: ./rollups)'
    )
    parser.add_argument(
        '--data-dir',
        type=Path,
        default=Path('data'),
        help='Directory containing raw CSV exports for fallback scans (default: ./data)'
    )
    parser.add_argument(
        '--duckdb',
        type=Path,
        default=None,
        help='Use this DuckDB database as the raw event source'
    )
    parser.add_argument(
        '--query-file',
        type=Path,
        default=None,
        help='JSON file containing query list (e.g., queries.json)'
    )
    parser.add_argument(
        '--output-dir',
        type=Path,
        default=Path('results'),
        help='Directory to write result CSV files (default: ./results)'
    )
    parser.add_argument(
        '--leaderboard',
        nargs='+',
        metavar='TENANT',
        default=None,
        help='Print the contributor leaderboard for these tenant ids instead of running queries'
    )
    parser.add_argument('--date-range', nargs=2, metavar=('START', 'END'), default=None)
    parser.add_argument('--previous-date-range', nargs=2, metavar=('START', 'END'), default=None)
    parser.add_argument('--metric', default='metric_contributor_contributions')
    parser.add_argument('--workers', type=int, default=None, help='Threads for concurrent queries')
    parser.add_argument('--log-level', default=None, help='Logging level (default: INFO)')

    args = parser.parse_args()

    settings = engine_settings(args)
    configure_logging(args.log_level or settings.log_level)

    print("="*70)
    print("RUN PHASE: Executing Queries")
    print("="*70)
    print()
    print(f"Rollup directory: {args.rollup_dir}")
    print(f"Raw source:       {args.duckdb or args.data_dir}")
    if args.query_file:
        print(f"Query file:       {args.query_file}")
    print(f"Output directory: {args.output_dir}")
    print()

    if not args.rollup_dir.exists():
        logger.warning(f"Rollup directory not found: {args.rollup_dir}")
        logger.warning("Every query will scan raw events. Run prepare.py first to build rollups!")

    # Initialize query system
    init_start = time.time()
    try:
        source = open_source(args)
        lookups = load_lookup_frames(args.data_dir) if args.data_dir.exists() else {}
        cube = ActivityCube(source, lookup_frames=lookups, settings=settings)
    except (ValueError, OSError) as e:
        logger.error(f"Failed to initialize query system: {e}")
        sys.exit(1)
    logger.info(f"✅ Query system ready in {time.time() - init_start:.3f}s")

    if args.leaderboard:
        sys.exit(run_leaderboard(cube, args))

    args.output_dir.mkdir(parents=True, exist_ok=True)

    queries = load_queries(query_file=args.query_file)
    if not queries:
        logger.error("No queries loaded!")
        sys.exit(1)
    logger.info(f"✅ Loaded {len(queries)} queries")

    # Execute queries
    logger.info("")
    logger.info("="*70)
    logger.info("Executing Queries")
    logger.info("="*70)

    results = []
    total_query_time = 0

    for i, query in enumerate(queries, 1):
        logger.info(f"\nQuery {i}:")
        query_start = time.perf_counter()

        try:
            plan = cube.compiler.compile(query)
            target = plan.rollup.table if plan.rollup else 'RAW'
            logger.info(f"  Routed to: {target}")

            result = cube.executor.execute(plan)
            query_time = (time.perf_counter() - query_start) * 1000
            total_query_time += query_time

            out_path = args.output_dir / f"q{i}.csv"
            result.frame.write_csv(out_path)

            logger.info(f"  Total: {query_time:.3f}ms")
            logger.info(f"  Result: {len(result)} rows")
            logger.info(f"  ✅ Wrote results to: {out_path}")

            results.append({
                'query': i,
                'source': result.rollup or 'RAW',
                'rows': len(result),
                'total_ms': query_time,
                'status': 'success'
            })

        except CubeError as e:
            logger.error(f"  ❌ Query {i} FAILED: {e}")
            logger.error(f"     Query: {query}")

            results.append({
                'query': i,
                'source': 'N/A',
                'rows': 0,
                'total_ms': 0,
                'status': f'failed: {str(e)[:50]}'
            })

    # Summary
    print()
    print("="*70)
    print("QUERY EXECUTION SUMMARY")
    print("="*70)
    print()

    for r in results:
        status_icon = "✅" if r['status'] == 'success' else "❌"
        print(f"{status_icon} Q{r['query']}: {r['total_ms']:.3f}ms "
              f"({r['rows']} rows) → {r['source']}")

    print()
    print(f"Total query time: {total_query_time:.3f}ms ({total_query_time/1000:.3f}s)")
    print(f"Average per query: {total_query_time/len(queries):.3f}ms")

    successes = sum(1 for r in results if r['status'] == 'success')
    print(f"\nSuccess rate: {successes}/{len(queries)} queries")
    print()
    print(f"Results written to: {args.output_dir}")
    print("="*70)

    if successes < len(queries):
        sys.exit(1)


if __name__ == "__main__":
    main()
