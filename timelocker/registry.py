from __future__ import annotations

import logging
import threading
from typing import Dict, List, Optional

from .progress import ProgressTracker


logger = logging.getLogger(__name__)


class OperationRegistry:
    """Maps operation ids to the trackers of operations still running.

    One mutex guards the map. It is held only for the lookup or mutation
    itself; cancelling sets the tracker flag after the lock is released.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._ops: Dict[str, ProgressTracker] = {}

    def register(self, operation_id: str, tracker: ProgressTracker) -> None:
        with self._lock:
            if operation_id in self._ops:
                raise ValueError(f"Operation already registered: {operation_id}")
            self._ops[operation_id] = tracker

    def unregister(self, operation_id: str) -> Optional[ProgressTracker]:
        with self._lock:
            return self._ops.pop(operation_id, None)

    def get(self, operation_id: str) -> Optional[ProgressTracker]:
        with self._lock:
            return self._ops.get(operation_id)

    def cancel(self, operation_id: str) -> bool:
        tracker = self.get(operation_id)
        if tracker is None:
            return False
        tracker.cancel()
        logger.info("Cancellation requested for operation %s", operation_id)
        return True

    def active(self) -> List[str]:
        with self._lock:
            return list(self._ops)

    def __len__(self) -> int:
        with self._lock:
            return len(self._ops)
