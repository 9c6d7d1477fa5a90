from __future__ import annotations

import threading
from collections import deque
from dataclasses import dataclass

from catalog_import.domain.models import MemorySnapshot

HISTORY_SIZE = 10
RECENT_WINDOW = 3
GROW_FACTOR = 1.2
SHRINK_FACTOR = 0.8
PRESSURE_FACTOR = 0.7


@dataclass(frozen=True)
class BatchPerformance:
    batch_size: int
    duration_ms: int
    memory_used_mb: float
    throughput: float


class AdaptiveBatchSizer:
    """
    Назначение/ответственность:
        Выбирает размер следующего батча по недавней пропускной способности
        и давлению памяти.

    Алгоритм:
        - история последних 10 замеров throughput (строк/с);
        - при >= 3 замерах: среднее последних 3 > общего * 1.1 -> размер * 1.2,
          < общего * 0.9 -> размер * 0.8;
        - при backpressure отдаётся max(min, floor(текущий * 0.7)),
          при critical -> min.

    Инварианты/гарантии:
        - current_size() всегда в [min_size, max_size].
    """

    def __init__(self, initial_size: int = 50, min_size: int = 10, max_size: int = 250):
        if not 0 < min_size <= max_size:
            raise ValueError("batch sizer requires 0 < min_size <= max_size")
        self.min_size = min_size
        self.max_size = max_size
        self._size = self._clamp(initial_size)
        self._history: deque[BatchPerformance] = deque(maxlen=HISTORY_SIZE)
        self._lock = threading.Lock()

    def _clamp(self, value: float) -> int:
        return max(self.min_size, min(self.max_size, int(value)))

    def current_size(self, pressure: MemorySnapshot | None = None) -> int:
        with self._lock:
            size = self._size
        if pressure is not None:
            if pressure.is_critical:
                return self.min_size
            if pressure.should_apply_backpressure:
                return max(self.min_size, int(size * PRESSURE_FACTOR))
        return size

    def record_performance(self, batch_size: int, duration_ms: int, memory_used_mb: float) -> int:
        throughput = batch_size / (max(duration_ms, 1) / 1000.0)
        with self._lock:
            self._history.append(
                BatchPerformance(
                    batch_size=batch_size,
                    duration_ms=duration_ms,
                    memory_used_mb=memory_used_mb,
                    throughput=throughput,
                )
            )
            if len(self._history) >= RECENT_WINDOW:
                samples = [p.throughput for p in self._history]
                overall = sum(samples) / len(samples)
                recent = sum(samples[-RECENT_WINDOW:]) / RECENT_WINDOW
                if recent > overall * 1.1:
                    self._size = self._clamp(self._size * GROW_FACTOR)
                elif recent < overall * 0.9:
                    self._size = self._clamp(self._size * SHRINK_FACTOR)
            return self._size

    @property
    def history(self) -> list[BatchPerformance]:
        with self._lock:
            return list(self._history)
