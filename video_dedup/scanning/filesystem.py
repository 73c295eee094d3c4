import os
import logging
import threading
from pathlib import Path
from typing import Iterator, Optional

from .. import config
from ..models import FolderSettings


class DiskScanner:
    """Finds candidate video files under a root and filters paths reported by the watcher."""

    def iter_video_files(self, folder: FolderSettings) -> Iterator[Path]:
        """Yields every accessible file under folder.base_path with an allowed extension."""
        for path in self._iter_files(folder.base_path, folder):
            if path.suffix.lower() in folder.extensions:
                yield path

    def is_relevant(self, path, folder: FolderSettings) -> Optional[str]:
        """
        Checks a single path against the folder settings.

        Returns None when the path should be tracked, otherwise the reason it
        should not (suitable for logging).
        """
        path = Path(os.path.abspath(path))
        base = folder.base_path

        if path == base or base not in path.parents:
            return f"File not in source folder: {path}"

        if not folder.recursive and path.parent != base:
            return f"File not in top level of source folder: {path}"

        if any(d == path or d in path.parents for d in folder.excluded_dirs):
            return f"File is in excluded directory: {path}"

        rel_parts = path.relative_to(base).parts[:-1]
        if config.RECYCLE_DIR_NAME in rel_parts:
            return f"File is in recycle bin: {path}"

        if path.suffix.lower() not in folder.extensions:
            return f"File doesn't have proper file extension: {path}"

        return None

    def _iter_files(self, root: Path, folder: FolderSettings) -> Iterator[Path]:
        """Depth-first walker using os.scandir for speed."""
        excluded = set(folder.excluded_dirs)
        stack = [root]
        while stack:
            current = stack.pop()
            if current.name == config.RECYCLE_DIR_NAME or current in excluded:
                continue

            try:
                with os.scandir(current) as it:
                    entries = list(it)
            except OSError:
                logging.warning(f"Permission denied: {current}")
                continue

            # Sort for stable traversal order
            entries.sort(key=lambda e: e.name.lower())

            dirs = []
            for e in entries:
                try:
                    if e.is_dir(follow_symlinks=False):
                        dirs.append(Path(e.path))
                    elif e.is_file(follow_symlinks=False):
                        yield Path(e.path)
                except OSError:
                    logging.warning(f"Permission denied: {e.path}")

            if folder.recursive:
                # Push dirs to stack (reversed so we process A before Z)
                for d in reversed(dirs):
                    stack.append(d)


def wait_for_file_access(path,
                         cancel: threading.Event,
                         attempts: int = config.FILE_ACCESS_ATTEMPTS,
                         delay: float = config.FILE_ACCESS_DELAY) -> bool:
    """
    Waits until `path` can be opened for reading.

    Create and modify events can arrive while the writer still holds the file,
    so a freshly reported file gets a few short retries. Returns False when the
    file never became readable, is not a regular file, or `cancel` was set.
    """
    for _ in range(attempts):
        if cancel.is_set():
            return False
        try:
            with open(path, 'rb'):
                return True
        except (IsADirectoryError, NotADirectoryError):
            return False
        except OSError:
            pass

        # Returns True as soon as cancel is set instead of sleeping the full delay
        if cancel.wait(delay):
            return False
    return False
