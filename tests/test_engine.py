import sqlite3
import threading

import pytest

from video_dedup.core import DedupEngine, format_duration
from video_dedup.database.store import RecordStore
from video_dedup.events import DuplicateFound, EngineState, Logged, ProgressUpdate, Stopped
from video_dedup.exceptions import ConfigurationError, WatcherError
from video_dedup.models import ComparisonPolicy
from video_dedup.scanning.watcher import FileEvent, FileEventType

from conftest import FakeChangeSource, FakeMetadata, FakeThumbnails


class Recorder:
    """Collects engine events by type."""

    def __init__(self, engine):
        self.logs = []
        self.progress = []
        self.duplicates = []
        self.stopped = []
        engine.events.subscribe(Logged, self.logs.append)
        engine.events.subscribe(ProgressUpdate, self.progress.append)
        engine.events.subscribe(DuplicateFound, self.duplicates.append)
        engine.events.subscribe(Stopped, self.stopped.append)

    def logged(self, text):
        return any(text in e.message for e in self.logs)


def write_videos(root, *names):
    for name in names:
        p = root / name
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_bytes(b"video data")


@pytest.fixture
def fakes():
    return FakeMetadata(), FakeThumbnails(), FakeChangeSource()


@pytest.fixture
def engine(fakes):
    metadata, thumbnails, source = fakes
    e = DedupEngine(metadata=metadata, thumbnails=thumbnails, change_source=source)
    try:
        yield e
    finally:
        e.close()


def test_format_duration():
    assert format_duration(75) == "1:15"
    assert format_duration(3725.9) == "1:02:05"
    assert format_duration(None) == "0:00"


# --- Configuration ---

def test_start_without_settings_fails(engine):
    with pytest.raises(ConfigurationError, match="No configuration"):
        engine.start()
    assert not engine.is_running


def test_start_with_missing_root_fails(engine, make_settings, tmp_path):
    with pytest.raises(ConfigurationError):
        engine.start(make_settings(root=tmp_path / "missing"))
    assert not engine.is_running


def test_invalid_policy_is_rejected(engine, make_settings):
    with pytest.raises(ConfigurationError):
        engine.update_configuration(make_settings(thumbnail_count=0))
    assert engine.settings is None


# --- Full Pass ---

def test_full_pass_finds_duplicates_and_saves_cache(engine, fakes, make_settings, video_root, wait_until):
    metadata, thumbnails, _ = fakes
    metadata.durations = {"a.mp4": 100, "b.mp4": 102, "c.mp4": 300}
    write_videos(video_root, "a.mp4", "b.mp4", "c.mp4", "broken.mp4", "readme.txt")
    rec = Recorder(engine)
    settings = make_settings()

    engine.start(settings)
    assert engine.wait_for_idle(timeout=10)

    assert engine.duplicate_count == 1
    assert {rec.duplicates[0].file1.name, rec.duplicates[0].file2.name} == {"a.mp4", "b.mp4"}
    assert engine.record_count == 3
    assert rec.logged("Ignoring 1 files without duration")
    assert "readme.txt" not in metadata.calls

    cached = {r.name: r.duration for r in RecordStore.load(settings.folder.cache_path)}
    assert cached == {"a.mp4": 100, "b.mp4": 102, "c.mp4": 300}

    assert wait_until(lambda: rec.logged("File changes are not monitored"))
    assert engine.state == EngineState.IDLE


def test_second_run_reuses_cached_durations(fakes, make_settings, video_root):
    metadata, thumbnails, source = fakes
    metadata.durations = {"a.mp4": 100, "b.mp4": 200}
    write_videos(video_root, "a.mp4", "b.mp4")
    settings = make_settings()

    with DedupEngine(metadata=metadata, thumbnails=thumbnails, change_source=source) as first:
        first.start(settings)
        first.wait_for_idle(timeout=10)

    fresh = FakeMetadata({"a.mp4": 100, "b.mp4": 200})
    with DedupEngine(metadata=fresh, thumbnails=thumbnails, change_source=source) as second:
        second.start(settings)
        second.wait_for_idle(timeout=10)
        assert second.record_count == 2

    assert fresh.calls == []


def test_start_is_idempotent_while_running(engine, fakes, make_settings, video_root):
    metadata, _, _ = fakes
    metadata.durations = {"a.mp4": 100}
    metadata.gate = threading.Event()
    write_videos(video_root, "a.mp4")
    rec = Recorder(engine)

    engine.start(make_settings())
    assert metadata.entered.wait(5)
    engine.start(make_settings())
    metadata.gate.set()
    assert engine.wait_for_idle(timeout=10)

    scans = [p for p in rec.progress if p.phase == EngineState.SCANNING]
    assert len(scans) == 1
    assert metadata.calls == ["a.mp4"]


def test_stop_during_preload_leaves_cache_untouched(engine, fakes, make_settings, video_root, wait_until):
    metadata, _, _ = fakes
    metadata.durations = {"a.mp4": 1, "b.mp4": 2, "c.mp4": 3}
    metadata.gate = threading.Event()
    write_videos(video_root, "a.mp4", "b.mp4", "c.mp4")
    settings = make_settings()
    rec = Recorder(engine)

    engine.start(settings)
    assert metadata.entered.wait(5)

    stopper = threading.Thread(target=engine.stop)
    stopper.start()
    assert wait_until(engine._cancel.is_set)
    metadata.gate.set()
    stopper.join(10)

    assert not stopper.is_alive()
    assert len(metadata.calls) == 1
    assert not settings.folder.cache_path.exists()
    assert engine.state == EngineState.STOPPED
    assert len(rec.stopped) == 1
    assert not engine.is_running


def test_stop_without_start_is_harmless(engine):
    engine.stop()
    assert engine.state == EngineState.IDLE


# --- File Events ---

@pytest.fixture
def monitored(engine, fakes, make_settings, video_root, wait_until):
    """Engine that finished its full pass over a.mp4 and is now watching."""
    metadata, _, source = fakes
    metadata.durations = {"a.mp4": 100, "b.mp4": 101, "c.mp4": 900}
    write_videos(video_root, "a.mp4")
    rec = Recorder(engine)

    engine.start(make_settings(monitor=True))
    assert engine.wait_for_idle(timeout=10)
    assert wait_until(lambda: engine.state == EngineState.MONITORING)
    return engine, source.stream, rec


def test_new_duplicate_is_reported_once(monitored, video_root, wait_until):
    engine, stream, rec = monitored
    write_videos(video_root, "b.mp4")

    stream.put(FileEvent(FileEventType.CREATED, str(video_root / "b.mp4")))

    assert wait_until(lambda: engine.duplicate_count == 1)
    assert engine.wait_for_idle(timeout=10)
    assert len(rec.duplicates) == 1
    found = rec.duplicates[0]
    assert (found.file1.name, found.file2.name) == ("b.mp4", "a.mp4")
    assert engine.record_count == 2


def test_new_unrelated_file_is_added_without_duplicate(monitored, video_root, wait_until):
    engine, stream, rec = monitored
    write_videos(video_root, "c.mp4")

    stream.put(FileEvent(FileEventType.CREATED, str(video_root / "c.mp4")))

    assert wait_until(lambda: engine.record_count == 2)
    assert engine.wait_for_idle(timeout=10)
    assert engine.duplicate_count == 0
    assert rec.logged("New file added to baseline")


def test_unchanged_file_event_is_ignored(monitored, video_root, wait_until):
    engine, stream, rec = monitored

    stream.put(FileEvent(FileEventType.MODIFIED, str(video_root / "a.mp4")))

    assert wait_until(lambda: rec.logged("New file already in baseline"))
    assert engine.record_count == 1
    assert rec.logged("File modified:")
    assert not rec.logged("File created:")


def test_unknown_deletion_is_logged(monitored, video_root, wait_until):
    engine, stream, rec = monitored

    stream.put(FileEvent(FileEventType.DELETED, str(video_root / "ghost.mp4")))

    assert wait_until(lambda: rec.logged("Deleted file not in baseline"))
    assert engine.wait_for_idle(timeout=10)
    assert engine.duplicate_count == 0
    assert engine.record_count == 1


def test_deletion_removes_record(monitored, video_root, wait_until):
    engine, stream, rec = monitored
    (video_root / "a.mp4").unlink()

    stream.put(FileEvent(FileEventType.DELETED, str(video_root / "a.mp4")))

    assert wait_until(lambda: engine.record_count == 0)
    assert wait_until(lambda: rec.logged("Removed file"))


def test_irrelevant_events_are_ignored(monitored, video_root, wait_until):
    engine, stream, rec = monitored
    write_videos(video_root, "notes.txt")

    stream.put(FileEvent(FileEventType.CREATED, str(video_root / "notes.txt")))
    stream.put(FileEvent(FileEventType.ERROR, str(video_root), error=WatcherError("gone")))

    assert wait_until(lambda: rec.logged("File watcher failed"))
    assert not rec.logged("notes.txt")
    assert engine.record_count == 1


def test_move_is_delete_plus_create(monitored, video_root, wait_until):
    engine, stream, rec = monitored
    (video_root / "a.mp4").rename(video_root / "b.mp4")

    stream.put(FileEvent(FileEventType.MOVED, str(video_root / "b.mp4"), old_path=str(video_root / "a.mp4")))

    assert wait_until(lambda: rec.logged("New file added to baseline"))
    assert engine.wait_for_idle(timeout=10)
    assert rec.logged("Removed file")
    assert engine.record_count == 1
    assert engine.duplicate_count == 0
    assert rec.logged("File renamed from:")
    assert rec.logged("File renamed to:")


def test_configuration_change_applies_to_next_start(engine, make_settings):
    settings = make_settings()
    engine.update_configuration(settings)
    assert engine.settings is settings

    other = make_settings(thumbnail_count=3)
    engine.update_configuration(other)
    assert engine.settings.comparison == ComparisonPolicy(thumbnail_count=3)


def test_changes_during_full_pass_are_processed_afterwards(engine, fakes, make_settings, video_root, wait_until):
    metadata, _, _ = fakes
    metadata.durations = {"a.mp4": 100, "b.mp4": 101}
    metadata.gate = threading.Event()
    write_videos(video_root, "a.mp4")
    rec = Recorder(engine)

    engine.start(make_settings(monitor=True))
    # Enumeration is over once preloading starts, so b.mp4 is only seen as an event
    assert metadata.entered.wait(5)
    write_videos(video_root, "b.mp4")
    fakes[2].stream.put(FileEvent(FileEventType.CREATED, str(video_root / "b.mp4")))
    assert wait_until(lambda: rec.logged("File created:"))
    metadata.gate.set()

    assert wait_until(lambda: engine.duplicate_count == 1)
    assert engine.wait_for_idle(timeout=10)
    assert len(rec.duplicates) == 1
    assert engine.record_count == 2
    assert wait_until(lambda: engine.state == EngineState.MONITORING)


def test_changed_file_gets_a_new_record(monitored, fakes, video_root, wait_until):
    engine, stream, rec = monitored
    metadata = fakes[0]
    write_videos(video_root, "c.mp4")
    stream.put(FileEvent(FileEventType.CREATED, str(video_root / "c.mp4")))
    assert wait_until(lambda: engine.record_count == 2)
    assert engine.wait_for_idle(timeout=10)
    assert engine.duplicate_count == 0

    # Re-encoded to match a.mp4
    metadata.durations["c.mp4"] = 100.5
    stream.put(FileEvent(FileEventType.MODIFIED, str(video_root / "c.mp4")))

    assert wait_until(lambda: engine.duplicate_count == 1)
    assert engine.wait_for_idle(timeout=10)
    assert rec.logged("File changed, replacing record")
    assert engine.record_count == 2
    found = rec.duplicates[0]
    assert (found.file1.name, found.file1.duration) == ("c.mp4", 100.5)
    assert found.file2.name == "a.mp4"

    cached = {r.name: r.duration for r in RecordStore.load(engine.settings.folder.cache_path)}
    assert cached == {"a.mp4": 100, "c.mp4": 100.5}


def test_malformed_cache_does_not_abort_full_pass(engine, fakes, make_settings, video_root):
    metadata, _, _ = fakes
    metadata.durations = {"a.mp4": 100}
    write_videos(video_root, "a.mp4")
    settings = make_settings()
    RecordStore.save([], settings.folder.cache_path)
    c = sqlite3.connect(settings.folder.cache_path)
    c.execute("INSERT INTO videos (path, duration_sec, size_bytes) VALUES (?, ?, ?)",
              (str(video_root / "a.mp4"), "abc", None))
    c.commit()
    c.close()

    engine.start(settings)
    assert engine.wait_for_idle(timeout=10)

    assert engine.record_count == 1
    assert metadata.calls == ["a.mp4"]
    cached = {r.name: r.duration for r in RecordStore.load(settings.folder.cache_path)}
    assert cached == {"a.mp4": 100}
