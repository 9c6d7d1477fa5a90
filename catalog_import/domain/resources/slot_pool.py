from __future__ import annotations

import threading
from dataclasses import dataclass

HARD_CONCURRENCY_CAP = 20


@dataclass(frozen=True)
class SlotPoolState:
    pending: int
    processing: int
    completed: int
    failed: int
    max_concurrent: int


class SlotPool:
    """
    Назначение/ответственность:
        Пул слотов обработки: ограничивает число одновременных вызовов writer-а.

    Инварианты/гарантии:
        - 1 <= max_concurrent <= cap;
        - processing <= max_concurrent в момент каждого успешного reserve();
        - все счётчики меняются атомарно под одной блокировкой пула.

    Взаимодействия:
        - max_concurrent меняет только ResourceMonitor (set_max_concurrent);
        - остальные счётчики меняются только через reserve/release/add_pending.
    """

    def __init__(self, max_concurrent: int = 5, cap: int = HARD_CONCURRENCY_CAP):
        self.cap = max(1, min(cap, HARD_CONCURRENCY_CAP))
        self._lock = threading.Lock()
        self._pending = 0
        self._processing = 0
        self._completed = 0
        self._failed = 0
        self._max_concurrent = self._clamp(max_concurrent)

    def _clamp(self, value: int) -> int:
        return max(1, min(int(value), self.cap))

    def add_pending(self, count: int) -> None:
        with self._lock:
            self._pending += count

    def reserve(self, from_pending: bool = False) -> bool:
        """
        Неблокирующий захват слота. False, если все слоты заняты.
        from_pending=True: слот берёт строка батча из add_pending (первый проход),
        повторы pending не уменьшают.
        """
        with self._lock:
            if self._processing >= self._max_concurrent:
                return False
            self._processing += 1
            if from_pending and self._pending > 0:
                self._pending -= 1
            return True

    def release(self, success: bool) -> None:
        with self._lock:
            if self._processing <= 0:
                raise RuntimeError("release() without matching reserve()")
            self._processing -= 1
            if success:
                self._completed += 1
            else:
                self._failed += 1

    def cancel_reservation(self) -> None:
        """Возврат слота без учёта результата (работа не начиналась)."""
        with self._lock:
            if self._processing <= 0:
                raise RuntimeError("cancel_reservation() without matching reserve()")
            self._processing -= 1

    def has_free_slot(self) -> bool:
        with self._lock:
            return self._processing < self._max_concurrent

    @property
    def max_concurrent(self) -> int:
        with self._lock:
            return self._max_concurrent

    def set_max_concurrent(self, value: int) -> int:
        with self._lock:
            self._max_concurrent = self._clamp(value)
            return self._max_concurrent

    def snapshot(self) -> SlotPoolState:
        with self._lock:
            return SlotPoolState(
                pending=self._pending,
                processing=self._processing,
                completed=self._completed,
                failed=self._failed,
                max_concurrent=self._max_concurrent,
            )
