import os
import queue
import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime
from typing import List, Optional

from .comparison.imagediff import ImageDifferencer
from .comparison.matcher import DuplicateMatcher
from .database.store import RecordStore
from .events import (
    DuplicateFound,
    EngineState,
    EventEmitter,
    Logged,
    OperationInfo,
    ProgressStyle,
    ProgressUpdate,
    Stopped,
)
from .exceptions import ConfigurationError
from .metadata.extract import MetadataExtractor
from .metadata.thumbnails import ThumbnailExtractor
from .models import DedupSettings, FolderSettings, VideoRecord, ZERO_DURATION
from .scanning.filesystem import DiskScanner, wait_for_file_access
from .scanning.watcher import FileEvent, FileEventType, PollingChangeSource


def format_duration(seconds: Optional[float]) -> str:
    total = int(seconds or 0)
    hours, rest = divmod(total, 3600)
    minutes, secs = divmod(rest, 60)
    return f"{hours}:{minutes:02d}:{secs:02d}" if hours else f"{minutes}:{secs:02d}"


class DedupEngine:
    """
    Keeps a duplicate report for a folder of videos up to date.

    start() runs one full pass in the background:
      1. Scan the folder and merge it with the persisted cache
      2. Preload durations, drop unreadable files, save the new baseline
      3. Compare every pair of duration-equal files
    and then keeps watching the folder. File events are queued and handled by
    an incremental pass that only compares the changed files.

    Only the background task touches the baseline. Watch events only feed the
    two queues and, if nothing is running, launch a task to drain them.
    """

    def __init__(self,
                 settings: Optional[DedupSettings] = None,
                 metadata=None,
                 thumbnails=None,
                 differ=None,
                 change_source=None):
        self.metadata = metadata or MetadataExtractor()
        self.thumbnails = thumbnails or ThumbnailExtractor()
        self.differ = differ or ImageDifferencer()
        self.change_source = change_source or PollingChangeSource()
        self.scanner = DiskScanner()
        self.events = EventEmitter()

        self._settings: Optional[DedupSettings] = None
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="video-dedup")
        self._task: Optional[Future] = None
        # Guards "is a task running / start one if not"
        self._lock = threading.Lock()
        self._idle = threading.Condition(self._lock)
        self._running = False
        self._cancel = threading.Event()

        self._new_files: "queue.SimpleQueue[str]" = queue.SimpleQueue()
        self._deleted_files: "queue.SimpleQueue[str]" = queue.SimpleQueue()
        self._baseline = RecordStore()

        self._watch = None
        self._dispatch_thread: Optional[threading.Thread] = None

        self._operation = OperationInfo()
        self._record_count = 0
        self._duplicate_count = 0

        if settings is not None:
            self.update_configuration(settings)

    # --- Public API ---

    @property
    def settings(self) -> Optional[DedupSettings]:
        return self._settings

    @property
    def state(self) -> EngineState:
        return self._operation.state

    @property
    def operation(self) -> OperationInfo:
        return self._operation

    @property
    def duplicate_count(self) -> int:
        return self._duplicate_count

    @property
    def record_count(self) -> int:
        return self._record_count

    @property
    def is_running(self) -> bool:
        with self._lock:
            return self._running

    def update_configuration(self, settings: DedupSettings):
        """Replaces the settings used by future passes. A running pass keeps its own."""
        if settings is None:
            raise ConfigurationError("No configuration given.")
        settings.comparison.validate()
        self._settings = settings

    def start(self, settings: Optional[DedupSettings] = None):
        if settings is not None:
            self.update_configuration(settings)
        settings = self._settings
        if settings is None:
            raise ConfigurationError("Unable to start. No configuration set.")
        settings.validate()

        with self._lock:
            if self._running:
                return
            self._running = True

        try:
            self._stop_watch()
            self._new_files = queue.SimpleQueue()
            self._deleted_files = queue.SimpleQueue()
            self._cancel = threading.Event()
            self._duplicate_count = 0
            if settings.folder.monitor_changes:
                self._start_watch(settings.folder)
        except Exception:
            self._release()
            raise

        with self._lock:
            self._task = self._executor.submit(self._run_task, True)

    def stop(self):
        """Cancels the running pass and blocks until it has returned."""
        self._stop_watch()
        self._cancel.set()

        task = self._task
        if task is None:
            return
        task.result()

        self._baseline.discard_thumbnails()
        self._set_progress(EngineState.STOPPED, 0, 0, ProgressStyle.NONE)
        self._log("Stopped.")
        self.events.emit(Stopped())

    def wait_for_idle(self, timeout: Optional[float] = None) -> bool:
        """Blocks until no pass is running. Returns False on timeout."""
        with self._idle:
            return self._idle.wait_for(lambda: not self._running, timeout)

    def close(self):
        self.stop()
        self._executor.shutdown(wait=True)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    # --- Watch Events ---

    def _start_watch(self, folder: FolderSettings):
        stream = self.change_source.watch(str(folder.base_path), folder.recursive)
        self._watch = stream
        self._dispatch_thread = threading.Thread(
            target=self._dispatch_events,
            args=(stream, folder),
            name="video-dedup-events",
            daemon=True,
        )
        self._dispatch_thread.start()

    def _stop_watch(self):
        stream, thread = self._watch, self._dispatch_thread
        self._watch = None
        self._dispatch_thread = None
        if stream is not None:
            stream.stop()
        if thread is not None and thread is not threading.current_thread():
            thread.join()

    def _dispatch_events(self, stream, folder: FolderSettings):
        for event in stream:
            try:
                self._handle_event(event, folder)
            except Exception:
                logging.exception(f"Failed to handle file event {event}")

    def _handle_event(self, event: FileEvent, folder: FolderSettings):
        if event.type == FileEventType.ERROR:
            self._log(f"File watcher failed! Unable to continue monitoring the source folder. ({event.error})")
        elif event.type == FileEventType.DELETED:
            self._enqueue(event.path, folder, deleted=True, label="File deleted")
        elif event.type == FileEventType.MOVED:
            self._enqueue(event.old_path, folder, deleted=True, label="File renamed from")
            self._enqueue(event.path, folder, deleted=False, label="File renamed to")
        elif event.type == FileEventType.MODIFIED:
            self._enqueue(event.path, folder, deleted=False, label="File modified")
        else:
            self._enqueue(event.path, folder, deleted=False, label="File created")

    def _enqueue(self, path: str, folder: FolderSettings, deleted: bool, label: str):
        reason = self.scanner.is_relevant(path, folder)
        if reason:
            logging.debug(reason)
            return

        path = os.path.abspath(path)
        if deleted:
            self._deleted_files.put(path)
        else:
            self._new_files.put(path)
        self._log(f"{label}: {path}")
        self._start_processing_changes()

    def _start_processing_changes(self):
        with self._lock:
            # A running task drains the queues before it finishes
            if self._running or self._cancel.is_set():
                return
            self._running = True
            self._task = self._executor.submit(self._run_task, False)

    # --- Background Task ---

    def _release(self):
        with self._lock:
            self._running = False
            self._idle.notify_all()

    def _run_task(self, full_scan: bool):
        cancel = self._cancel
        # Settings are fixed for the duration of this task
        settings = self._settings
        released = False
        try:
            if full_scan:
                self._process_folder(settings, cancel)

            while not cancel.is_set():
                with self._lock:
                    if self._new_files.empty() and self._deleted_files.empty():
                        self._running = False
                        self._idle.notify_all()
                        released = True
                        break
                self._process_changes(settings, cancel)

            if released:
                if settings.folder.monitor_changes:
                    self._set_progress(EngineState.MONITORING, 0, 0, ProgressStyle.INDETERMINATE)
                    self._log("Monitoring for file changes...")
                else:
                    self._set_progress(EngineState.IDLE, 0, 0, ProgressStyle.NONE)
                    self._log("Finished. File changes are not monitored.")
        except Exception as e:
            logging.exception("Dedup task failed")
            self._log(f"Processing aborted by unexpected error: {e}")
        finally:
            if not released:
                self._release()

    def _process_folder(self, settings: DedupSettings, cancel: threading.Event):
        folder = settings.folder

        # --- Step 1: Scanning ---
        candidates = self._discover(folder, cancel)
        if cancel.is_set():
            return

        # --- Step 2: Preloading ---
        # Only the duration is preloaded; the size is rarely needed
        total = len(candidates)
        for counter, record in enumerate(candidates, 1):
            if cancel.is_set():
                return
            self._set_progress(EngineState.PRELOADING, counter, total, ProgressStyle.BOUNDED)
            record.resolve_duration(self.metadata)
        if cancel.is_set():
            return

        baseline = [r for r in candidates if r.is_valid]
        if len(baseline) < total:
            self._log(f"Ignoring {total - len(baseline)} files without duration")
        self._baseline.replace(baseline)
        self._record_count = len(self._baseline)

        # --- Step 3: New Baseline ---
        self._save_baseline(folder)
        if cancel.is_set():
            return

        # --- Step 4: Comparing ---
        matcher = DuplicateMatcher(settings.comparison, self.thumbnails, self.differ)
        count = len(self._baseline)
        self._set_progress(EngineState.COMPARING, 0, count, ProgressStyle.BOUNDED)
        try:
            for file1, file2 in matcher.iter_full_pass(self._baseline, cancel, on_row=self._on_compare_row):
                self._report_duplicate(file1, file2)
        finally:
            self._baseline.discard_thumbnails()

        if not cancel.is_set():
            self._set_progress(EngineState.COMPARING, count, count, ProgressStyle.BOUNDED)

    def _discover(self, folder: FolderSettings, cancel: threading.Event) -> List[VideoRecord]:
        """Lists the folder and merges it with the cache. Result is in enumeration order."""
        self._set_progress(EngineState.SCANNING, 0, 0, ProgressStyle.INDETERMINATE)
        self._log(f"Searching video files in {folder.base_path}...")
        start = time.perf_counter()

        found = []
        for path in self.scanner.iter_video_files(folder):
            if cancel.is_set():
                return []
            found.append(path)

        cached = RecordStore.load(folder.cache_path)
        merged = RecordStore.reconcile(
            cached,
            found,
            folder.recursive,
            folder.base_path,
            keep=lambda r: self.scanner.is_relevant(r.path, folder) is None,
        )

        position = {os.path.normcase(str(p)): i for i, p in enumerate(found)}
        candidates = sorted(merged, key=lambda r: (position.get(os.path.normcase(r.path), len(position)), r.path))

        elapsed_ms = (time.perf_counter() - start) * 1000
        self._log(f"Found {len(candidates)} video files in {elapsed_ms:.0f} ms")
        return candidates

    def _process_changes(self, settings: DedupSettings, cancel: threading.Event):
        folder = settings.folder
        self._set_progress(EngineState.PROCESSING, 0, 0, ProgressStyle.INDETERMINATE)

        removed = 0
        while not cancel.is_set():
            try:
                path = self._deleted_files.get_nowait()
            except queue.Empty:
                break
            if self._baseline.remove(path):
                removed += 1
                self._log(f"Removed file: {path}")
            else:
                self._log(f"Deleted file not in baseline: {path}")

        if removed:
            self._record_count = len(self._baseline)
            self._save_baseline(folder)

        matcher = DuplicateMatcher(settings.comparison, self.thumbnails, self.differ)
        while not cancel.is_set():
            try:
                path = self._new_files.get_nowait()
            except queue.Empty:
                break
            try:
                self._process_new_file(path, folder, matcher, cancel)
            except Exception as e:
                logging.exception(f"Failed to process {path}")
                self._log(f"Failed to process new file {path}: {e}")
            finally:
                # Bound memory: nothing keeps frames between queued files
                self._baseline.discard_thumbnails()

    def _process_new_file(self,
                          path: str,
                          folder: FolderSettings,
                          matcher: DuplicateMatcher,
                          cancel: threading.Event):
        if not wait_for_file_access(path, cancel):
            if not cancel.is_set():
                self._log(f"Unable to access new file: {path}")
            return

        record = VideoRecord(path)
        if record.resolve_duration(self.metadata) == ZERO_DURATION:
            self._log(f"New file has no duration: {path}")
            return
        record.resolve_file_size(self.metadata)
        if cancel.is_set():
            return

        existing = self._baseline.get(record)
        if existing is not None:
            unchanged = existing.duration == record.duration and (
                existing.file_size is None or existing.file_size == record.file_size)
            if unchanged:
                self._log(f"New file already in baseline: {path}")
                return
            # Records never change; a modified file gets a fresh one
            self._baseline.remove(existing)
            self._log(f"File changed, replacing record: {path}")
        else:
            self._log(f"New file added to baseline: {path}")

        self._baseline.add(record)
        self._record_count = len(self._baseline)
        self._save_baseline(folder)
        if cancel.is_set():
            return

        self._log(f"Searching duplicates of {record.name}")
        for file1, file2 in matcher.iter_targeted(list(self._baseline), record, cancel):
            self._report_duplicate(file1, file2)

    # --- Helpers ---

    def _on_compare_row(self, index: int, total: int, record: VideoRecord):
        self._log(f"Checking: {record.path} - Duration: {format_duration(record.duration)}")
        self._set_progress(EngineState.COMPARING, index + 1, total, ProgressStyle.BOUNDED)

    def _save_baseline(self, folder: FolderSettings):
        try:
            RecordStore.save(self._baseline, folder.cache_path)
        except Exception as e:
            logging.error(f"Failed to write cache {folder.cache_path}: {e}")
            self._log(f"Unable to save cache file: {e}")

    def _report_duplicate(self, file1: VideoRecord, file2: VideoRecord):
        self._duplicate_count += 1
        self._log(f"Found duplicate of {file1.path} and {file2.path}")
        self.events.emit(DuplicateFound(file1, file2))

    def _set_progress(self, phase: EngineState, current: int, maximum: int, style: ProgressStyle):
        previous = self._operation
        start_time = previous.start_time if previous.state == phase else datetime.now()
        self._operation = OperationInfo(phase, current, maximum, style, start_time)
        self.events.emit(ProgressUpdate(phase, current, maximum, style))

    def _log(self, message: str):
        logging.info(message)
        self.events.emit(Logged(f"{datetime.now().isoformat(timespec='seconds')} {message}"))
