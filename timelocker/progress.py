"""Progress accounting and throttled reporting for archive operations.

``ProgressTracker`` is plain shared state: one producer thread mutates the
counters, any number of observers read them. ``ProgressEmitter`` is the
separate notifier that turns tracker snapshots into events for a sink
callable, at most once per throttle interval.
"""

from __future__ import annotations

import enum
import logging
import os
import threading
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Tuple, Union

from .constants import DEFAULT_EMIT_INTERVAL_MS
from .errors import OperationCancelled


logger = logging.getLogger(__name__)


class ProgressPhase(str, enum.Enum):
    SCANNING = "scanning"
    COMPRESSING = "compressing"
    ENCRYPTING = "encrypting"
    FINALIZING = "finalizing"
    EXTRACTING = "extracting"
    COMPLETE = "complete"


@dataclass
class ProgressPayload:
    percentage: Optional[float]
    bytes_written: int
    total_bytes: Optional[int]
    eta_seconds: Optional[float]
    current_file: Optional[str]
    files_processed: int
    total_files: Optional[int]
    phase: ProgressPhase

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["phase"] = self.phase.value
        return d


class ProgressTracker:
    """Thread-safe progress counters with a cooperative cancellation flag."""

    def __init__(self, emit_interval_ms: int = DEFAULT_EMIT_INTERVAL_MS):
        self._total_bytes = 0
        self._total_files = 0
        self._total_known = False
        self._bytes_done = 0
        self._files_done = 0
        self._cancelled = threading.Event()
        self._start = time.monotonic()
        self._emit_interval = emit_interval_ms / 1000.0
        self._emit_lock = threading.Lock()
        # None: the first emission check of an operation always passes
        self._last_emit: Optional[float] = None

    @classmethod
    def with_total(cls, total_bytes: int, total_files: int, **kwargs) -> "ProgressTracker":
        tracker = cls(**kwargs)
        tracker.set_total(total_bytes, total_files)
        return tracker

    # ---- producer side ----

    def set_total(self, total_bytes: int, total_files: int) -> None:
        self._total_bytes = int(total_bytes)
        self._total_files = int(total_files)
        self._total_known = True

    def add_bytes(self, n: int) -> None:
        self._bytes_done += n

    def set_bytes_done(self, n: int) -> None:
        self._bytes_done = n

    def increment_files(self) -> None:
        self._files_done += 1

    # ---- cancellation ----

    def cancel(self) -> None:
        self._cancelled.set()

    def is_cancelled(self) -> bool:
        return self._cancelled.is_set()

    def raise_if_cancelled(self) -> None:
        if self._cancelled.is_set():
            raise OperationCancelled()

    # ---- observer side ----

    @property
    def bytes_done(self) -> int:
        return self._bytes_done

    @property
    def files_done(self) -> int:
        return self._files_done

    @property
    def total_bytes(self) -> Optional[int]:
        return self._total_bytes if self._total_known else None

    @property
    def total_files(self) -> Optional[int]:
        return self._total_files if self._total_known else None

    def percentage(self) -> Optional[float]:
        if not self._total_known:
            return None
        total = self._total_bytes
        if total == 0:
            return 100.0
        return self._bytes_done / total * 100.0

    def eta_seconds(self) -> Optional[float]:
        pct = self.percentage()
        if pct is None or pct <= 0.0:
            return None
        if pct >= 100.0:
            return 0.0
        elapsed = time.monotonic() - self._start
        remaining = elapsed / (pct / 100.0) - elapsed
        if remaining != remaining or remaining in (float("inf"), float("-inf")) or remaining < 0:
            return None
        return remaining

    # ---- throttling ----

    def should_emit(self) -> bool:
        with self._emit_lock:
            now = time.monotonic()
            if self._last_emit is None or now - self._last_emit >= self._emit_interval:
                self._last_emit = now
                return True
            return False

    def force_next_emit(self) -> None:
        with self._emit_lock:
            self._last_emit = None

    def build_payload(self, current_file: Optional[str], phase: ProgressPhase) -> ProgressPayload:
        return ProgressPayload(
            percentage=self.percentage(),
            bytes_written=self._bytes_done,
            total_bytes=self.total_bytes,
            eta_seconds=self.eta_seconds(),
            current_file=current_file,
            files_processed=self._files_done,
            total_files=self.total_files,
            phase=phase,
        )


ProgressSink = Callable[[str, ProgressPayload], None]


class ProgressEmitter:
    """Delivers tracker snapshots to ``sink(event_name, payload)``."""

    def __init__(self, tracker: ProgressTracker, sink: Optional[ProgressSink] = None, event_name: str = "progress"):
        self.tracker = tracker
        self.sink = sink
        self.event_name = event_name

    def emit_progress(self, current_file: Optional[str], phase: ProgressPhase) -> bool:
        """Emit if the throttle allows; returns True when an event was delivered."""
        if not self.tracker.should_emit():
            return False
        return self.emit_progress_forced(current_file, phase)

    def emit_progress_forced(self, current_file: Optional[str], phase: ProgressPhase) -> bool:
        if self.sink is None:
            return False
        payload = self.tracker.build_payload(current_file, phase)
        try:
            self.sink(self.event_name, payload)
        except Exception:
            logger.exception("Failed to emit %s event", self.event_name)
            return False
        return True

    def emit_complete(self) -> None:
        self.tracker.force_next_emit()
        self.emit_progress(None, ProgressPhase.COMPLETE)

    def is_cancelled(self) -> bool:
        return self.tracker.is_cancelled()


def calculate_total_size(path: Union[str, Path]) -> Tuple[int, int]:
    """Return (bytes, files) for a file or a directory tree (symlinks not followed)."""
    p = Path(path)
    if p.is_symlink():
        return 0, 0
    if p.is_file():
        return p.stat().st_size, 1
    total_bytes = 0
    total_files = 0
    if p.is_dir():
        for root, dirnames, filenames in os.walk(str(p)):
            dirnames[:] = [d for d in dirnames if not os.path.islink(os.path.join(root, d))]
            for fn in filenames:
                full = os.path.join(root, fn)
                if os.path.islink(full):
                    continue
                try:
                    total_bytes += os.path.getsize(full)
                except OSError:
                    continue
                total_files += 1
    return total_bytes, total_files
