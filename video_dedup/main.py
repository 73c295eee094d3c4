import argparse
import logging
import sys
import threading
import time
from pathlib import Path
from typing import Optional, Set

from tqdm import tqdm

from . import config
from .core import DedupEngine
from .events import DuplicateFound, EngineState, ProgressStyle, ProgressUpdate
from .exceptions import ConfigurationError
from .models import AbsoluteSeconds, ComparisonPolicy, DedupSettings, FolderSettings, RelativePercent


def setup_logging(log_dir: Path, verbose: bool):
    """Sets up logging to both console and a file next to the cache."""
    log_level = logging.DEBUG if verbose else logging.INFO

    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / config.LOG_FILE_NAME

    logging.basicConfig(
        level=log_level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        handlers=[
            logging.FileHandler(log_file, encoding='utf-8'),
            logging.StreamHandler(sys.stdout)
        ]
    )

    # Silence chatty libraries
    logging.getLogger("PIL").setLevel(logging.WARNING)


def parse_args(argv=None):
    p = argparse.ArgumentParser(description="Video Dedup: find near-duplicate videos and keep watching for new ones")

    p.add_argument("src", type=Path, help="Directory to scan")
    p.add_argument("--cache", type=Path, default=None,
                   help=f"Cache file (default: src/{config.DEFAULT_CACHE_NAME})")
    p.add_argument("--no-recursive", action="store_true", help="Only scan the top directory")
    p.add_argument("--no-monitor", action="store_true", help="Do not watch for file changes")
    p.add_argument("--exclude", type=Path, action="append", default=[], help="Directory to skip (repeatable)")
    p.add_argument("--exclude-file", type=Path, default=None, help="File containing directories to skip")
    p.add_argument("--ext", action="append", default=None, help="Video file extension (repeatable)")

    p.add_argument("--thumbnails", type=int, default=config.DEFAULT_THUMBNAIL_COUNT,
                   help="Frames compared per video")
    p.add_argument("--max-difference-percent", type=float, default=config.DEFAULT_MAX_DIFFERENCE_PERCENT,
                   help="Difference above which two frames count as different")
    p.add_argument("--max-different-thumbnails", type=int, default=config.DEFAULT_MAX_DIFFERENT_THUMBNAILS,
                   help="Different frames tolerated for a duplicate")

    duration = p.add_mutually_exclusive_group()
    duration.add_argument("--duration-seconds", type=float, default=None,
                          help=f"Max duration difference in seconds (default: {config.DEFAULT_MAX_DURATION_SECONDS})")
    duration.add_argument("--duration-percent", type=float, default=None,
                          help="Max duration difference in percent")

    p.add_argument("--once", action="store_true", help="Exit after the initial pass")
    p.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")

    return p.parse_args(argv)


def load_skip_dirs(skip_file: Optional[Path]) -> Set[Path]:
    if not skip_file or not skip_file.exists():
        return set()

    skips = set()
    with skip_file.open("r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if line and not line.startswith("#"):
                skips.add(Path(line))
    return skips


def build_settings(args) -> DedupSettings:
    src_root = args.src.resolve()
    cache_path = args.cache.resolve() if args.cache else src_root / config.DEFAULT_CACHE_NAME

    if args.duration_percent is not None:
        rule = RelativePercent(args.duration_percent)
    else:
        seconds = args.duration_seconds
        rule = AbsoluteSeconds(seconds if seconds is not None else config.DEFAULT_MAX_DURATION_SECONDS)

    excluded = set(args.exclude) | load_skip_dirs(args.exclude_file)

    folder = FolderSettings(
        base_path=src_root,
        cache_path=cache_path,
        recursive=not args.no_recursive,
        excluded_dirs=tuple(sorted(excluded)),
        extensions=frozenset(args.ext) if args.ext else config.VIDEO_EXTS,
        monitor_changes=not (args.no_monitor or args.once),
    )
    comparison = ComparisonPolicy(
        duration_rule=rule,
        thumbnail_count=args.thumbnails,
        max_difference_percent=args.max_difference_percent,
        max_different_thumbnails=args.max_different_thumbnails,
    )
    return DedupSettings(folder=folder, comparison=comparison)


class ProgressPrinter:
    """Shows engine progress as tqdm bars, one bar per bounded phase."""

    def __init__(self):
        self._bar: Optional[tqdm] = None
        self._phase: Optional[EngineState] = None
        self._lock = threading.Lock()

    def on_progress(self, event: ProgressUpdate):
        with self._lock:
            if event.style != ProgressStyle.BOUNDED:
                self._close()
                if event.phase != self._phase:
                    tqdm.write(f"{event.phase.value}...")
                self._phase = event.phase
                return

            if event.phase != self._phase or self._bar is None:
                self._close()
                self._bar = tqdm(total=event.maximum, desc=event.phase.value, unit="file")
                self._phase = event.phase
            self._bar.n = event.current
            self._bar.refresh()

    def on_duplicate(self, event: DuplicateFound):
        tqdm.write(f"DUPLICATE: {event.file1.path} <-> {event.file2.path}")

    def close(self):
        with self._lock:
            self._close()

    def _close(self):
        if self._bar is not None:
            self._bar.close()
            self._bar = None


def main(argv=None):
    args = parse_args(argv)

    settings = build_settings(args)

    setup_logging(settings.folder.cache_path.parent, args.verbose)

    logging.info("=== Video Dedup Started ===")
    logging.info(f"Source: {settings.folder.base_path}")
    logging.info(f"Cache:  {settings.folder.cache_path}")

    printer = ProgressPrinter()
    engine = DedupEngine()
    engine.events.subscribe(ProgressUpdate, printer.on_progress)
    engine.events.subscribe(DuplicateFound, printer.on_duplicate)

    try:
        engine.start(settings)
    except ConfigurationError as e:
        logging.error(str(e))
        engine.close()
        sys.exit(1)

    try:
        if args.once:
            engine.wait_for_idle()
        else:
            # Sleep in short steps so Ctrl+C is noticed on every platform
            while True:
                time.sleep(1)
    except KeyboardInterrupt:
        logging.warning("Stopping (cancelled by user)...")
    finally:
        engine.close()
        printer.close()

    logging.info(f"Done. {engine.duplicate_count} duplicate pairs found, {engine.record_count} videos tracked.")


if __name__ == "__main__":
    main()
