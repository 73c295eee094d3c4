import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, FrozenSet, Optional, Tuple, Union

from . import config
from .exceptions import ConfigurationError

# Sentinel for "duration could not be determined". Such records are never compared.
ZERO_DURATION = 0.0


class VideoRecord:
    """
    One video file in the inventory.

    Identity is the path: two records are equal iff their paths are equal
    (normalized with os.path.normcase, so case sensitivity follows the host).

    Duration and size start out unresolved (None). The resolve_* methods
    populate them once and they never change afterwards. If the file on disk
    changes, replace the record instead of touching it.
    """

    def __init__(self, path, duration: Optional[float] = None, file_size: Optional[int] = None):
        self.path = os.path.abspath(str(path))
        self.duration = duration
        self.file_size = file_size
        # frame index -> decoded image, or None when extraction failed
        self._thumbnails: Dict[int, Any] = {}

    @property
    def name(self) -> str:
        return os.path.basename(self.path)

    @property
    def is_valid(self) -> bool:
        """True once the duration is resolved to something other than the zero sentinel."""
        return self.duration is not None and self.duration != ZERO_DURATION

    def resolve_duration(self, provider) -> float:
        if self.duration is None:
            try:
                self.duration = float(provider.get_duration(self.path))
            except Exception as e:
                logging.debug(f"Duration probe failed for {self.path}: {e}")
                self.duration = ZERO_DURATION
        return self.duration

    def resolve_file_size(self, provider) -> int:
        if self.file_size is None:
            try:
                self.file_size = int(provider.get_file_size(self.path))
            except Exception as e:
                logging.debug(f"Size lookup failed for {self.path}: {e}")
                self.file_size = 0
        return self.file_size

    def get_thumbnail(self, index: int, count: int, provider):
        """
        Returns the frame at sample `index` of `count` evenly spaced samples.

        Frames are memoized until discard_thumbnails(). A failed extraction is
        memoized as None so it is not retried within the same pass.
        """
        if index < 0 or index >= count:
            raise ValueError(f"Thumbnail index {index} out of range for {count} samples")

        if index not in self._thumbnails:
            stepping = (self.duration or ZERO_DURATION) / (count + 1)
            try:
                self._thumbnails[index] = provider.extract(self.path, stepping * (index + 1))
            except Exception as e:
                logging.debug(f"Unable to load thumbnail index {index} for {self.path}: {e}")
                self._thumbnails[index] = None
        return self._thumbnails[index]

    @property
    def thumbnail_count(self) -> int:
        return len(self._thumbnails)

    def discard_thumbnails(self):
        self._thumbnails.clear()

    def _key(self) -> str:
        return os.path.normcase(self.path)

    def __eq__(self, other):
        if not isinstance(other, VideoRecord):
            return NotImplemented
        return self._key() == other._key()

    def __hash__(self):
        return hash(self._key())

    def __repr__(self):
        return f"VideoRecord({self.path!r}, duration={self.duration!r}, file_size={self.file_size!r})"


# --- Duration Rules ---
# A closed set: every rule answers is_equal() itself, so there is no fallback branch.

@dataclass(frozen=True)
class AbsoluteSeconds:
    max_seconds: float

    def is_equal(self, duration_a: float, duration_b: float) -> bool:
        return abs(duration_a - duration_b) < self.max_seconds

    def validate(self):
        if self.max_seconds < 0:
            raise ConfigurationError("Maximum duration difference in seconds must not be negative.")


@dataclass(frozen=True)
class RelativePercent:
    max_percent: float

    def is_equal(self, duration_a: float, duration_b: float) -> bool:
        # The allowed window is a percentage of the FIRST duration only.
        # is_equal(a, b) and is_equal(b, a) can disagree.
        return abs(duration_a - duration_b) < duration_a * self.max_percent / 100

    def validate(self):
        if not 0 <= self.max_percent <= 100:
            raise ConfigurationError("Maximum duration difference in percent must be between 0 and 100.")


DurationRule = Union[AbsoluteSeconds, RelativePercent]


@dataclass(frozen=True)
class ComparisonPolicy:
    """Thresholds for one comparison pass."""
    duration_rule: DurationRule = AbsoluteSeconds(config.DEFAULT_MAX_DURATION_SECONDS)
    thumbnail_count: int = config.DEFAULT_THUMBNAIL_COUNT
    max_difference_percent: float = config.DEFAULT_MAX_DIFFERENCE_PERCENT
    max_different_thumbnails: int = config.DEFAULT_MAX_DIFFERENT_THUMBNAILS

    def validate(self):
        if not isinstance(self.duration_rule, (AbsoluteSeconds, RelativePercent)):
            raise ConfigurationError(f"Unknown duration rule: {self.duration_rule!r}")
        self.duration_rule.validate()
        if self.thumbnail_count < 1:
            raise ConfigurationError("At least one thumbnail must be compared.")
        if not 0 <= self.max_difference_percent <= 100:
            raise ConfigurationError("Maximum thumbnail difference must be between 0 and 100 percent.")
        if self.max_different_thumbnails < 0:
            raise ConfigurationError("Number of tolerated different thumbnails must not be negative.")


@dataclass(frozen=True)
class FolderSettings:
    """Where to look and what counts as a video."""
    base_path: Path
    cache_path: Path
    recursive: bool = True
    excluded_dirs: Tuple[Path, ...] = ()
    extensions: FrozenSet[str] = config.VIDEO_EXTS
    monitor_changes: bool = True

    def __post_init__(self):
        # Normalize so path prefix checks and cache comparisons line up
        object.__setattr__(self, 'base_path', Path(os.path.abspath(self.base_path)))
        object.__setattr__(self, 'cache_path', Path(os.path.abspath(self.cache_path)))
        object.__setattr__(self, 'excluded_dirs',
                           tuple(Path(os.path.abspath(d)) for d in self.excluded_dirs))
        object.__setattr__(self, 'extensions',
                           frozenset(e.lower() if e.startswith('.') else f".{e.lower()}" for e in self.extensions))

    def validate(self):
        if not self.base_path.is_dir():
            raise ConfigurationError(f"Unable to start. Base path is not valid: {self.base_path}")
        if not self.extensions:
            raise ConfigurationError("No file extensions configured.")


@dataclass(frozen=True)
class DedupSettings:
    folder: FolderSettings
    comparison: ComparisonPolicy = field(default_factory=ComparisonPolicy)

    def validate(self):
        self.comparison.validate()
        self.folder.validate()
