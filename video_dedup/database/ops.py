import sqlite3
import logging
from typing import Iterable, List

from ..exceptions import CacheError
from ..models import VideoRecord
from .schema import CURRENT_SCHEMA_VERSION


class CacheOperations:
    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def fetch_records(self) -> List[VideoRecord]:
        """Reads every cached record. Raises CacheError if the file is not a usable cache."""
        cur = self.conn.cursor()
        try:
            cur.execute("SELECT version FROM schema_version")
            row = cur.fetchone()
            if row is None or row[0] != CURRENT_SCHEMA_VERSION:
                raise CacheError(f"Unsupported cache schema version: {row[0] if row else None}")

            cur.execute("SELECT path, duration_sec, size_bytes FROM videos")
            rows = cur.fetchall()
        except sqlite3.Error as e:
            raise CacheError(f"Unreadable cache: {e}") from e

        records = []
        for path, duration, size in rows:
            if not path:
                logging.debug("Skipping cache row without path")
                continue
            try:
                records.append(VideoRecord(
                    path,
                    duration=float(duration) if duration is not None else None,
                    file_size=int(size) if size is not None else None,
                ))
            except (TypeError, ValueError) as e:
                raise CacheError(f"Malformed cache row for {path}: {e}") from e
        return records

    def replace_records(self, records: Iterable[VideoRecord]) -> int:
        """Replaces the whole table with `records`. Returns the number written."""
        rows = [(r.path, r.duration, r.file_size) for r in records]
        with self.conn:
            self.conn.execute("DELETE FROM videos")
            self.conn.executemany(
                "INSERT OR REPLACE INTO videos (path, duration_sec, size_bytes) VALUES (?, ?, ?)",
                rows,
            )
        return len(rows)
