"""
Configuration constants for the video dedup engine.
"""

# --- File Type Definitions ---
VIDEO_EXTS = frozenset({
    '.mp4', '.mov', '.m4v', '.avi', '.mkv', '.wmv', '.flv', '.webm',
    '.mts', '.m2ts', '.3gp', '.mpg', '.mpeg', '.ts', '.vob',
})

# Windows keeps deleted files here; never worth scanning
RECYCLE_DIR_NAME = "$RECYCLE.BIN"

# --- Persistence ---
DEFAULT_CACHE_NAME = "video_dedup_cache.db"
LOG_FILE_NAME = "video_dedup.log"

# --- Comparison Defaults ---
DEFAULT_THUMBNAIL_COUNT = 5
DEFAULT_MAX_DIFFERENCE_PERCENT = 20
DEFAULT_MAX_DIFFERENT_THUMBNAILS = 0
DEFAULT_MAX_DURATION_SECONDS = 5
DEFAULT_MAX_DURATION_PERCENT = 5

# --- Image Difference ---
# Both images are reduced to a DIFF_SIZE x DIFF_SIZE grayscale grid before comparing
DIFF_SIZE = 16
PIXEL_DIFF_THRESHOLD = 3
# Decoded frames are shrunk to this bounding box before being kept in memory
THUMBNAIL_MAX_SIZE = (256, 256)
FFMPEG_TIMEOUT = 60  # seconds per frame grab

# --- File Events ---
# A create/modify event can fire before the writer closed the file.
# We retry opening it FILE_ACCESS_ATTEMPTS times, FILE_ACCESS_DELAY seconds apart (~1 s).
FILE_ACCESS_ATTEMPTS = 20
FILE_ACCESS_DELAY = 0.05

# --- Service ---
# Log lines kept for polling clients; older lines are dropped
LOG_BUFFER_SIZE = 10000

WATCH_POLL_INTERVAL = 2.0  # seconds between directory snapshots
