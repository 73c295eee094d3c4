"""
Events emitted by the dedup engine and a small thread-safe emitter for them.
"""
import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Type


class EngineState(Enum):
    IDLE = "Idle"
    SCANNING = "Searching for files"
    PRELOADING = "Loading media info"
    COMPARING = "Comparing files"
    MONITORING = "Monitoring for file changes"
    PROCESSING = "Processing file changes"
    STOPPED = "Stopped"


class ProgressStyle(Enum):
    INDETERMINATE = "indeterminate"
    BOUNDED = "bounded"
    NONE = "none"


@dataclass(frozen=True)
class Logged:
    message: str


@dataclass(frozen=True)
class ProgressUpdate:
    phase: EngineState
    current: int
    maximum: int
    style: ProgressStyle


@dataclass(frozen=True)
class DuplicateFound:
    file1: Any  # VideoRecord
    file2: Any


@dataclass(frozen=True)
class Stopped:
    pass


@dataclass(frozen=True)
class OperationInfo:
    """Snapshot of what the engine is doing, suitable for polling."""
    state: EngineState = EngineState.IDLE
    current: int = 0
    maximum: int = 0
    style: ProgressStyle = ProgressStyle.NONE
    start_time: Optional[datetime] = None


class EventEmitter:
    """
    Fan-out of engine events to subscribers.

    Handlers run on the emitting thread (usually the background worker).
    A handler that raises is logged and skipped; it never reaches the engine.
    """

    def __init__(self):
        self._handlers: Dict[Type, List[Callable]] = {}
        self._lock = threading.Lock()

    def subscribe(self, event_type: Type, handler: Callable) -> Callable[[], None]:
        """Registers handler for event_type. Returns a callable that unsubscribes it."""
        with self._lock:
            self._handlers.setdefault(event_type, []).append(handler)

        def unsubscribe():
            with self._lock:
                handlers = self._handlers.get(event_type, [])
                if handler in handlers:
                    handlers.remove(handler)

        return unsubscribe

    def emit(self, event):
        with self._lock:
            handlers = list(self._handlers.get(type(event), []))
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                logging.exception(f"Event handler failed for {type(event).__name__}")
