"""
Storage - Rollup partition persistence

Rollup partitions are polars DataFrames; each materialized table keeps a
manifest describing which partitions exist and how far each was built.

Back-ends:
- MemoryRollupStorage: dict of frames (tests, ephemeral engines)
- IpcRollupStorage:    Arrow IPC files with LZ4 compression

Directory structure (IpcRollupStorage):
    rollups/
        contrlead_3f2a9c01b7de/
            _manifest.json
            20230101.arrow
            20230401.arrow
        issuesByMonth_91ac0e5d2f44/
            _manifest.json
            all.arrow

Overwriting a partition is atomic: the new file is written next to the old
one and moved into place with os.replace, so a reader sees either the old
or the new partition, never a mix.
"""

import json
import logging
import os
import shutil
import threading
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import polars as pl
import pyarrow as pa

from .errors import StorageError

# Errors raised by the IPC reader/writer on bad files or failed writes
IO_ERRORS = (OSError, pl.exceptions.PolarsError, pa.ArrowException)

logger = logging.getLogger(__name__)

MANIFEST_FILE = '_manifest.json'


@dataclass
class PartitionInfo:
    """One built partition: window [start, end), built up to built_until."""
    key: str
    start: datetime
    end: datetime
    built_until: datetime
    rows: int
    built_at: Optional[datetime] = None

    @property
    def complete(self) -> bool:
        return self.built_until >= self.end

    def to_dict(self) -> Dict[str, Any]:
        return {
            'key': self.key,
            'start': self.start.isoformat(),
            'end': self.end.isoformat(),
            'built_until': self.built_until.isoformat(),
            'rows': self.rows,
            'built_at': self.built_at.isoformat() if self.built_at else None,
        }

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> 'PartitionInfo':
        return cls(
            key=raw['key'],
            start=datetime.fromisoformat(raw['start']),
            end=datetime.fromisoformat(raw['end']),
            built_until=datetime.fromisoformat(raw['built_until']),
            rows=int(raw['rows']),
            built_at=datetime.fromisoformat(raw['built_at']) if raw.get('built_at') else None,
        )


@dataclass
class Manifest:
    """Partition index of one materialized rollup table."""
    table: str
    rollup: str
    partitions: Dict[str, PartitionInfo] = field(default_factory=dict)
    stale: bool = False
    last_refresh: Optional[datetime] = None

    @property
    def row_count(self) -> int:
        return sum(p.rows for p in self.partitions.values())

    def ordered(self) -> List[PartitionInfo]:
        return sorted(self.partitions.values(), key=lambda p: p.start)

    def copy(self) -> 'Manifest':
        return Manifest(self.table, self.rollup, dict(self.partitions), self.stale, self.last_refresh)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'table': self.table,
            'rollup': self.rollup,
            'stale': self.stale,
            'last_refresh': self.last_refresh.isoformat() if self.last_refresh else None,
            'partitions': [p.to_dict() for p in self.ordered()],
        }

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> 'Manifest':
        partitions = [PartitionInfo.from_dict(p) for p in raw.get('partitions', [])]
        return cls(
            table=raw['table'],
            rollup=raw['rollup'],
            partitions={p.key: p for p in partitions},
            stale=bool(raw.get('stale', False)),
            last_refresh=datetime.fromisoformat(raw['last_refresh']) if raw.get('last_refresh') else None,
        )


class RollupStorage(ABC):
    """Read-by-partition / atomic write-partition contract."""

    @abstractmethod
    def read_partition(self, table: str, key: str) -> pl.DataFrame:
        ...

    @abstractmethod
    def write_partition(self, table: str, key: str, df: pl.DataFrame) -> None:
        ...

    @abstractmethod
    def delete_partition(self, table: str, key: str) -> None:
        ...

    @abstractmethod
    def read_manifest(self, table: str) -> Optional[Manifest]:
        ...

    @abstractmethod
    def write_manifest(self, manifest: Manifest) -> None:
        ...

    @abstractmethod
    def tables(self) -> List[str]:
        ...

    @abstractmethod
    def drop_table(self, table: str) -> None:
        ...

    def get_storage_stats(self) -> Dict[str, Any]:
        stats = {'table_count': 0, 'partition_count': 0, 'total_rows': 0, 'tables': {}}
        for table in self.tables():
            manifest = self.read_manifest(table)
            partitions = len(manifest.partitions) if manifest else 0
            rows = manifest.row_count if manifest else 0
            stats['table_count'] += 1
            stats['partition_count'] += partitions
            stats['total_rows'] += rows
            stats['tables'][table] = {
                'partitions': partitions,
                'rows': rows,
                'stale': manifest.stale if manifest else False,
            }
        return stats


class MemoryRollupStorage(RollupStorage):
    """Frames kept in a dict; assignment under a lock is the atomic swap."""

    def __init__(self):
        self._lock = threading.Lock()
        self._partitions: Dict[str, Dict[str, pl.DataFrame]] = {}
        self._manifests: Dict[str, Dict[str, Any]] = {}

    def read_partition(self, table, key):
        with self._lock:
            try:
                return self._partitions[table][key]
            except KeyError:
                raise StorageError(f"Partition not found: {table}/{key}", table, key) from None

    def write_partition(self, table, key, df):
        with self._lock:
            self._partitions.setdefault(table, {})[key] = df

    def delete_partition(self, table, key):
        with self._lock:
            self._partitions.get(table, {}).pop(key, None)

    def read_manifest(self, table):
        with self._lock:
            raw = self._manifests.get(table)
        return Manifest.from_dict(raw) if raw is not None else None

    def write_manifest(self, manifest):
        with self._lock:
            self._manifests[manifest.table] = manifest.to_dict()

    def tables(self):
        with self._lock:
            return sorted(set(self._partitions) | set(self._manifests))

    def drop_table(self, table):
        with self._lock:
            self._partitions.pop(table, None)
            self._manifests.pop(table, None)


class IpcRollupStorage(RollupStorage):
    """
    Writes rollup partitions to Arrow IPC files.

    Uses LZ4 compression for fast load times.
    """

    def __init__(self, output_dir: Path, compression: str = 'lz4'):
        """
        Initialize IPC storage.

        Args:
            output_dir: Directory holding one sub-directory per rollup table
            compression: Compression algorithm ('lz4', 'zstd', or 'uncompressed')
        """
        self.output_dir = Path(output_dir)
        self.output_dir.mkdir(parents=True, exist_ok=True)
        self.compression = compression
        logger.info(f"IPC rollup storage initialized: {self.output_dir}")

    def _table_dir(self, table: str) -> Path:
        return self.output_dir / table

    def _partition_path(self, table: str, key: str) -> Path:
        return self._table_dir(table) / f"{key}.arrow"

    def _replace(self, target: Path, write, table: Optional[str] = None, key: Optional[str] = None) -> None:
        tmp = target.with_name(f".{target.name}.{uuid.uuid4().hex}.tmp")
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            write(tmp)
            os.replace(tmp, target)
        except IO_ERRORS as e:
            if tmp.exists():
                tmp.unlink()
            raise StorageError(f"Failed to write {target}: {e}", table, key) from e

    def read_partition(self, table, key):
        path = self._partition_path(table, key)
        if not path.exists():
            raise StorageError(f"Partition not found: {path}", table, key)

        start_time = time.time()
        try:
            df = pl.read_ipc(path)
        except IO_ERRORS as e:
            raise StorageError(f"Failed to read {path}: {e}", table, key) from e

        load_time = (time.time() - start_time) * 1000
        logger.debug(f"  Loaded {table}/{key}: {len(df):,} rows in {load_time:.1f}ms")
        return df

    def write_partition(self, table, key, df):
        start_time = time.time()
        path = self._partition_path(table, key)
        self._replace(path, lambda tmp: df.write_ipc(tmp, compression=self.compression), table, key)

        file_size_kb = path.stat().st_size / 1024
        write_time = (time.time() - start_time) * 1000
        logger.debug(f"✅ {table}/{key}: {len(df):,} rows, {file_size_kb:.1f} KB in {write_time:.1f}ms")

    def delete_partition(self, table, key):
        path = self._partition_path(table, key)
        if path.exists():
            path.unlink()

    def read_manifest(self, table):
        path = self._table_dir(table) / MANIFEST_FILE
        if not path.exists():
            return None
        try:
            with open(path) as f:
                return Manifest.from_dict(json.load(f))
        except (OSError, ValueError, KeyError) as e:
            raise StorageError(f"Unreadable manifest {path}: {e}", table) from e

    def write_manifest(self, manifest):
        path = self._table_dir(manifest.table) / MANIFEST_FILE
        payload = json.dumps(manifest.to_dict(), indent=2)
        self._replace(path, lambda tmp: tmp.write_text(payload), manifest.table)

    def tables(self):
        return sorted(p.name for p in self.output_dir.iterdir() if p.is_dir())

    def drop_table(self, table):
        table_dir = self._table_dir(table)
        if table_dir.exists():
            shutil.rmtree(table_dir)
            logger.info(f"Dropped rollup table {table}")

    def get_storage_stats(self):
        stats = super().get_storage_stats()
        total_size_mb = 0.0
        for table in stats['tables']:
            size_mb = sum(f.stat().st_size for f in self._table_dir(table).glob('*.arrow')) / (1024 * 1024)
            stats['tables'][table]['size_mb'] = size_mb
            total_size_mb += size_mb
        stats['total_size_mb'] = total_size_mb
        return stats
