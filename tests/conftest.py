import os
import threading
import time

import pytest
from PIL import Image

from video_dedup.models import ComparisonPolicy, DedupSettings, FolderSettings
from video_dedup.scanning.watcher import WatchStream


class FakeMetadata:
    """Durations keyed by file name. Set `gate` to make get_duration block until it is set."""

    def __init__(self, durations=None, default=0.0):
        self.durations = dict(durations or {})
        self.default = default
        self.calls = []
        self.gate = None
        self.entered = threading.Event()
        self._lock = threading.Lock()

    def get_duration(self, path):
        name = os.path.basename(path)
        with self._lock:
            self.calls.append(name)
        self.entered.set()
        if self.gate is not None:
            self.gate.wait(5)
        return self.durations.get(name, self.default)

    def get_file_size(self, path):
        return os.path.getsize(path)


class FakeThumbnails:
    """Uniform gray frames, one shade per file name. Names in `failing` yield no frame."""

    def __init__(self, colors=None, default=128, failing=()):
        self.colors = dict(colors or {})
        self.default = default
        self.failing = set(failing)
        self.calls = []
        self._lock = threading.Lock()

    def extract(self, path, offset_seconds):
        name = os.path.basename(path)
        with self._lock:
            self.calls.append((name, offset_seconds))
        if name in self.failing:
            return None
        return Image.new("L", (16, 16), self.colors.get(name, self.default))

    def names(self):
        return {name for name, _ in self.calls}


class FakeChangeSource:
    """Hands out a plain WatchStream; tests push FileEvents into it."""

    def __init__(self):
        self.stream = None
        self.watched = []

    def watch(self, root, recursive):
        self.watched.append((root, recursive))
        self.stream = WatchStream()
        return self.stream


@pytest.fixture
def video_root(tmp_path):
    root = tmp_path / "videos"
    root.mkdir()
    return root


@pytest.fixture
def make_settings(tmp_path, video_root):
    """Returns a factory for DedupSettings rooted at video_root, caching under tmp_path."""
    def _make(root=None, monitor=False, recursive=True, excluded=(), **comparison):
        folder = FolderSettings(
            base_path=root or video_root,
            cache_path=tmp_path / "cache.db",
            recursive=recursive,
            excluded_dirs=tuple(excluded),
            monitor_changes=monitor,
        )
        return DedupSettings(folder=folder, comparison=ComparisonPolicy(**comparison))
    return _make


@pytest.fixture
def wait_until():
    def _wait(predicate, timeout=5.0):
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if predicate():
                return True
            time.sleep(0.01)
        return predicate()
    return _wait
