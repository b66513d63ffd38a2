"""
History Sink - Where non-clean detections are appended for audit and display
"""

import threading
from collections import deque
from typing import Deque, List, Protocol, Tuple

from callguard.schemas.events import DetectionType
from callguard.schemas.results import IntegratedResult


class HistorySink(Protocol):
    def append(self, result: IntegratedResult, kind: DetectionType) -> None:
        ...


class InMemoryHistorySink:
    """Bounded in-process detection history"""

    def __init__(self, capacity: int = 10000):
        self._lock = threading.Lock()
        self._entries: Deque[Tuple[IntegratedResult, DetectionType]] = deque(maxlen=capacity)

    def append(self, result: IntegratedResult, kind: DetectionType) -> None:
        with self._lock:
            self._entries.append((result, kind))

    def entries(self) -> List[Tuple[IntegratedResult, DetectionType]]:
        with self._lock:
            return list(self._entries)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
