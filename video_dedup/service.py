"""
Server-side facade over the engine.

Collects the engine's log and duplicate reports so a client can poll them,
and executes the resolution a user picked for each duplicate pair.
"""
import logging
import os
import threading
import uuid
from collections import OrderedDict, deque
from itertools import islice
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import List, Optional, Set

from . import config
from .core import DedupEngine
from .events import DuplicateFound, Logged, OperationInfo
from .exceptions import ResolveError
from .models import DedupSettings, VideoRecord
from .resolution.resolver import DuplicateResolver


class ResolveOperation(Enum):
    CANCEL = "cancel"              # hand the pair back, resolve later
    SKIP = "skip"                  # not a duplicate, forget the pair
    DELETE_FILE1 = "delete_file1"
    DELETE_FILE2 = "delete_file2"


@dataclass(frozen=True)
class DuplicateEntry:
    duplicate_id: str
    file1: VideoRecord
    file2: VideoRecord
    base_path: Path


@dataclass(frozen=True)
class StatusSnapshot:
    operation: OperationInfo
    duplicate_count: int
    log_token: str
    log_count: int


class LogBuffer:
    """
    Append-only log with a token identifying its generation.

    Clients page through entries by index; a reset issues a new token so
    clients know to drop what they fetched before.

    Only the newest `max_entries` lines are kept. Indexes keep counting
    across dropped lines, and a request for a dropped index starts at the
    oldest line still held.
    """

    def __init__(self, max_entries: int = config.LOG_BUFFER_SIZE):
        self._lock = threading.Lock()
        self._entries: "deque[str]" = deque(maxlen=max_entries)
        self._dropped = 0
        self.token = str(uuid.uuid4())

    def append(self, message: str):
        with self._lock:
            if len(self._entries) == self._entries.maxlen:
                self._dropped += 1
            self._entries.append(message)

    def reset(self):
        with self._lock:
            self._entries.clear()
            self._dropped = 0
            self.token = str(uuid.uuid4())

    def __len__(self):
        with self._lock:
            return self._dropped + len(self._entries)

    def get(self, token: str, start: int, count: int) -> List[str]:
        with self._lock:
            if token != self.token or start < 0 or count <= 0:
                return []
            offset = max(start - self._dropped, 0)
            return list(islice(self._entries, offset, offset + count))


class DuplicateList:
    """Pending duplicate pairs, in the order they were found."""

    def __init__(self):
        self._lock = threading.Lock()
        self._entries: "OrderedDict[str, DuplicateEntry]" = OrderedDict()
        self._checked_out: Set[str] = set()

    @staticmethod
    def _pair_key(file1: VideoRecord, file2: VideoRecord) -> frozenset:
        return frozenset((os.path.normcase(file1.path), os.path.normcase(file2.path)))

    def add(self, file1: VideoRecord, file2: VideoRecord, base_path: Path) -> Optional[DuplicateEntry]:
        """Adds the pair unless it is already pending. Returns the new entry or None."""
        key = self._pair_key(file1, file2)
        with self._lock:
            if any(self._pair_key(e.file1, e.file2) == key for e in self._entries.values()):
                return None
            entry = DuplicateEntry(str(uuid.uuid4()), file1, file2, base_path)
            self._entries[entry.duplicate_id] = entry
            return entry

    def take(self) -> Optional[DuplicateEntry]:
        """Hands out the oldest pair nobody is currently resolving."""
        with self._lock:
            for duplicate_id, entry in self._entries.items():
                if duplicate_id not in self._checked_out:
                    self._checked_out.add(duplicate_id)
                    return entry
            return None

    def get(self, duplicate_id: str) -> Optional[DuplicateEntry]:
        with self._lock:
            return self._entries.get(duplicate_id)

    def release(self, duplicate_id: str):
        with self._lock:
            self._checked_out.discard(duplicate_id)

    def remove(self, duplicate_id: str) -> bool:
        with self._lock:
            self._checked_out.discard(duplicate_id)
            return self._entries.pop(duplicate_id, None) is not None

    def remove_involving(self, path) -> int:
        """Drops every pair containing path. Returns how many were dropped."""
        key = os.path.normcase(os.path.abspath(str(path)))
        with self._lock:
            doomed = [
                duplicate_id for duplicate_id, e in self._entries.items()
                if key in (os.path.normcase(e.file1.path), os.path.normcase(e.file2.path))
            ]
            for duplicate_id in doomed:
                del self._entries[duplicate_id]
                self._checked_out.discard(duplicate_id)
            return len(doomed)

    def clear(self):
        with self._lock:
            self._entries.clear()
            self._checked_out.clear()

    def __len__(self):
        with self._lock:
            return len(self._entries)


class DedupService:
    def __init__(self, engine: DedupEngine, resolver: Optional[DuplicateResolver] = None):
        self.engine = engine
        self.resolver = resolver or DuplicateResolver()
        self.log = LogBuffer()
        self.duplicates = DuplicateList()
        self._started = False

        engine.events.subscribe(Logged, lambda e: self.log.append(e.message))
        engine.events.subscribe(DuplicateFound, self._on_duplicate_found)

    # --- Lifecycle ---

    def start(self, settings: Optional[DedupSettings] = None):
        self.log.reset()
        self.duplicates.clear()
        self.engine.start(settings)
        self._started = True

    def stop(self):
        self.engine.stop()
        self._started = False

    def get_config(self) -> Optional[DedupSettings]:
        return self.engine.settings

    def set_config(self, settings: DedupSettings):
        """Applies new settings. A running engine is restarted so they take effect right away."""
        was_started = self._started
        if was_started:
            self.stop()
        self.engine.update_configuration(settings)
        if was_started:
            self.start()

    # --- Polling ---

    def get_status(self) -> StatusSnapshot:
        return StatusSnapshot(
            operation=self.engine.operation,
            duplicate_count=len(self.duplicates),
            log_token=self.log.token,
            log_count=len(self.log),
        )

    def get_log_entries(self, token: str, start: int, count: int) -> List[str]:
        return self.log.get(token, start, count)

    # --- Duplicates ---

    def get_duplicate(self) -> Optional[DuplicateEntry]:
        return self.duplicates.take()

    def resolve_duplicate(self, duplicate_id: str, operation: ResolveOperation):
        entry = self.duplicates.get(duplicate_id)
        if entry is None:
            raise ResolveError(f"Unknown duplicate: {duplicate_id}")

        if operation == ResolveOperation.CANCEL:
            self.duplicates.release(duplicate_id)
        elif operation == ResolveOperation.SKIP:
            self.duplicates.remove(duplicate_id)
        elif operation in (ResolveOperation.DELETE_FILE1, ResolveOperation.DELETE_FILE2):
            target = entry.file1 if operation == ResolveOperation.DELETE_FILE1 else entry.file2
            if not self.resolver.delete(target.path):
                self.duplicates.release(duplicate_id)
                raise ResolveError(f"Unable to delete {target.path}")
            dropped = self.duplicates.remove_involving(target.path)
            logging.info(f"Resolved duplicate by deleting {target.path} ({dropped} pairs closed)")
        else:
            raise ResolveError(f"Unsupported resolve operation: {operation!r}")

    def discard_duplicates(self):
        self.duplicates.clear()

    def _on_duplicate_found(self, event: DuplicateFound):
        settings = self.engine.settings
        base_path = settings.folder.base_path if settings else Path(os.path.dirname(event.file1.path))
        self.duplicates.add(event.file1, event.file2, base_path)
