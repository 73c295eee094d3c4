"""
The record inventory and its persisted cache.
"""
import os
import sqlite3
import logging
import time
from pathlib import Path
from typing import Callable, Dict, Iterable, Iterator, Optional, Set

from ..exceptions import CacheError
from ..models import VideoRecord
from .db import DBManager
from .ops import CacheOperations


class RecordStore:
    """
    Set of VideoRecords keyed by path.

    The instance is the engine's baseline. load/reconcile/save work on plain
    collections so the full scan can build a new baseline before swapping it in.
    """

    def __init__(self, records: Iterable[VideoRecord] = ()):
        self._records: Dict[VideoRecord, VideoRecord] = {}
        self.replace(records)

    # --- Baseline Access ---

    def add(self, record: VideoRecord) -> bool:
        """Adds record. Returns False if a record with the same path is already present."""
        if record in self._records:
            return False
        self._records[record] = record
        return True

    def remove(self, record_or_path) -> bool:
        key = self._as_record(record_or_path)
        return self._records.pop(key, None) is not None

    def get(self, record_or_path) -> Optional[VideoRecord]:
        return self._records.get(self._as_record(record_or_path))

    def replace(self, records: Iterable[VideoRecord]):
        self._records = {}
        for r in records:
            self._records.setdefault(r, r)

    def discard_thumbnails(self):
        for r in self._records:
            r.discard_thumbnails()

    def __contains__(self, record_or_path) -> bool:
        return self._as_record(record_or_path) in self._records

    def __iter__(self) -> Iterator[VideoRecord]:
        return iter(list(self._records))

    def __len__(self) -> int:
        return len(self._records)

    @staticmethod
    def _as_record(record_or_path) -> VideoRecord:
        if isinstance(record_or_path, VideoRecord):
            return record_or_path
        return VideoRecord(record_or_path)

    # --- Persistence ---

    @staticmethod
    def load(cache_path: Path) -> Set[VideoRecord]:
        """
        Reads the persisted cache.
        Fails soft: a missing, corrupt or foreign file yields an empty set.
        """
        cache_path = Path(cache_path)
        if not cache_path.is_file():
            logging.debug(f"No cache file at {cache_path}")
            return set()

        try:
            with DBManager(cache_path, read_only=True) as conn:
                records = CacheOperations(conn).fetch_records()
        except (CacheError, sqlite3.Error, OSError) as e:
            logging.warning(f"Ignoring unreadable cache {cache_path}: {e}")
            return set()

        logging.debug(f"Loaded {len(records)} cached records from {cache_path}")
        return set(records)

    @staticmethod
    def reconcile(cached: Iterable[VideoRecord],
                  found_paths: Iterable,
                  recursive: bool,
                  base_path: Path,
                  keep: Optional[Callable[[VideoRecord], bool]] = None) -> Set[VideoRecord]:
        """
        Merges the persisted cache with a fresh directory listing.

        Cached entries are dropped when their file is gone, when recursion is
        off and they live below the top directory, or when `keep` rejects them.
        Paths from the listing are then added unless already present; cached
        records win because they carry resolved metadata.
        """
        base = os.path.normcase(os.path.abspath(base_path))

        merged: Dict[VideoRecord, VideoRecord] = {}
        for record in cached:
            if not recursive and os.path.normcase(os.path.dirname(record.path)) != base:
                continue
            if keep is not None and not keep(record):
                continue
            if not os.path.isfile(record.path):
                continue
            merged.setdefault(record, record)

        for path in found_paths:
            record = VideoRecord(path)
            merged.setdefault(record, record)

        return set(merged)

    @staticmethod
    def save(records: Iterable[VideoRecord], cache_path: Path):
        """
        Writes `records` as the complete new cache content.

        The new database is built beside the old one and moved over it, so an
        interrupted save leaves the previous cache intact.
        """
        start = time.perf_counter()
        cache_path = Path(cache_path)
        cache_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = cache_path.with_name(cache_path.name + ".tmp")
        if tmp_path.exists():
            tmp_path.unlink()

        try:
            with DBManager(tmp_path) as conn:
                count = CacheOperations(conn).replace_records(records)
            os.replace(tmp_path, cache_path)
        finally:
            if tmp_path.exists():
                tmp_path.unlink()

        elapsed_ms = (time.perf_counter() - start) * 1000
        logging.debug(f"Writing cache file ({count} records) took {elapsed_ms:.0f} ms")
