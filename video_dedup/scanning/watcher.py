"""
Filesystem change source.

watch() returns a stream object: iterate it to receive FileEvents, call stop()
to end the iteration. The default implementation polls directory snapshots,
so it behaves the same on local disks and network shares.
"""
import os
import queue
import logging
import threading
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Dict, Iterator, Optional, Tuple

from .. import config
from ..exceptions import WatcherError


class FileEventType(Enum):
    CREATED = "created"
    MODIFIED = "modified"
    DELETED = "deleted"
    MOVED = "moved"
    ERROR = "error"


@dataclass(frozen=True)
class FileEvent:
    type: FileEventType
    path: str
    old_path: Optional[str] = None  # MOVED only
    error: Optional[Exception] = None  # ERROR only


_CLOSED = object()


class WatchStream:
    """Thread-safe event channel. Producers put(), one consumer iterates."""

    def __init__(self):
        self._queue: "queue.Queue" = queue.Queue()
        self._closed = threading.Event()

    def put(self, event: FileEvent):
        if not self._closed.is_set():
            self._queue.put(event)

    def stop(self):
        if not self._closed.is_set():
            self._closed.set()
            self._queue.put(_CLOSED)

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def __iter__(self) -> Iterator[FileEvent]:
        while True:
            item = self._queue.get()
            if item is _CLOSED:
                return
            yield item


# (inode, size, mtime_ns)
Signature = Tuple[int, int, int]


class PollingWatch(WatchStream):
    """Diffs successive snapshots of a directory tree and turns them into events."""

    def __init__(self, root, recursive: bool, interval: float = config.WATCH_POLL_INTERVAL, start: bool = True):
        super().__init__()
        self.root = Path(os.path.abspath(root))
        self.recursive = recursive
        self.interval = interval
        self._failed = False
        self._snapshot: Dict[str, Signature] = {}
        # Set once the baseline snapshot exists; changes before that are not reported
        self.ready = threading.Event()
        self._thread: Optional[threading.Thread] = None
        if start:
            # The first snapshot walks the whole tree, so it runs on the watch thread
            self._thread = threading.Thread(target=self._run, name="video-dedup-watch", daemon=True)
            self._thread.start()
        else:
            self._prime()

    def stop(self):
        super().stop()
        if self._thread and self._thread is not threading.current_thread():
            self._thread.join()

    def poll(self):
        """Takes one snapshot and emits the differences to the previous one."""
        if self._failed:
            return
        try:
            current = self._take_snapshot()
        except OSError as e:
            self._fail(e)
            return

        previous = self._snapshot
        self._snapshot = current

        created = sorted(current.keys() - previous.keys())
        deleted = sorted(previous.keys() - current.keys())

        # Same inode disappearing in one place and appearing in another is a rename
        deleted_by_inode = {previous[p][0]: p for p in deleted if previous[p][0]}
        for path in created:
            old_path = deleted_by_inode.pop(current[path][0], None)
            if old_path is not None:
                self.put(FileEvent(FileEventType.MOVED, path, old_path=old_path))
            else:
                self.put(FileEvent(FileEventType.CREATED, path))

        for path in sorted(deleted_by_inode.values()):
            self.put(FileEvent(FileEventType.DELETED, path))

        for path in sorted(current.keys() & previous.keys()):
            if current[path][1:] != previous[path][1:]:
                self.put(FileEvent(FileEventType.MODIFIED, path))

    def _prime(self):
        try:
            self._snapshot = self._take_snapshot()
        except OSError as e:
            self._fail(e)
        finally:
            self.ready.set()

    def _fail(self, error: OSError):
        # Losing the root means losing the watch; report once and go quiet
        self._failed = True
        self.put(FileEvent(FileEventType.ERROR, str(self.root),
                           error=WatcherError(f"Unable to read {self.root}: {error}")))

    def _run(self):
        self._prime()
        while not self._closed.wait(self.interval):
            self.poll()

    def _take_snapshot(self) -> Dict[str, Signature]:
        snapshot: Dict[str, Signature] = {}
        stack = [str(self.root)]
        is_root = True
        while stack:
            current = stack.pop()
            try:
                with os.scandir(current) as it:
                    entries = list(it)
            except OSError:
                if is_root:
                    raise
                continue
            finally:
                is_root = False

            for e in entries:
                try:
                    if e.is_dir(follow_symlinks=False):
                        if self.recursive:
                            stack.append(e.path)
                    elif e.is_file(follow_symlinks=False):
                        st = e.stat(follow_symlinks=False)
                        snapshot[e.path] = (st.st_ino, st.st_size, st.st_mtime_ns)
                except OSError:
                    # Vanished between listing and stat; next poll sorts it out
                    continue
        return snapshot


class PollingChangeSource:
    def __init__(self, interval: float = config.WATCH_POLL_INTERVAL):
        self.interval = interval

    def watch(self, root, recursive: bool) -> PollingWatch:
        logging.debug(f"Watching {root} (recursive={recursive}, every {self.interval}s)")
        return PollingWatch(root, recursive, interval=self.interval)
