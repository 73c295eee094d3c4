"""
Custom exception hierarchy for the video dedup engine.

Only ConfigurationError and ResolveError ever reach a caller. The others are
raised by collaborators and recovered locally by the engine.
"""


class VideoDedupError(Exception):
    """Base exception for all video dedup errors."""
    pass


class ConfigurationError(VideoDedupError):
    """Raised when settings are missing or invalid, or the watched root does not exist."""
    pass


class MetadataExtractionError(VideoDedupError):
    """Raised when the duration of a file cannot be probed."""
    pass


class ThumbnailExtractionError(VideoDedupError):
    """Raised when a frame cannot be grabbed from a video."""
    pass


class CacheError(VideoDedupError):
    """Raised when the persisted record cache is unreadable or malformed."""
    pass


class WatcherError(VideoDedupError):
    """Reported when the file change source stops working."""
    pass


class ResolveError(VideoDedupError):
    """Raised when a duplicate cannot be resolved."""
    pass
