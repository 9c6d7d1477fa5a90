from __future__ import annotations

import heapq
import itertools
import threading
import time
from dataclasses import dataclass, field
from typing import Callable


@dataclass(order=True)
class _Task:
    due: float
    seq: int
    key: int = field(compare=False)
    callback: Callable[[], None] = field(compare=False)


class RetryScheduler:
    """
    Назначение/ответственность:
        Планировщик отложенных повторов (неблокирующие таймеры).

    Контракт:
        - schedule(key, delay_ms, callback): callback вызывается в потоке
          планировщика не раньше, чем через delay_ms;
        - ожидающая задача не занимает слот обработки;
        - cancel() снимает все ожидающие задачи и возвращает их ключи;
        - pending(): число ожидающих задач.

    Ограничения:
        callback должен быть коротким (постановка в пул воркеров) и не бросать исключений.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._heap: list[_Task] = []
        self._seq = itertools.count()
        self._cond = threading.Condition()
        self._closed = False
        self._thread = threading.Thread(target=self._loop, name="retry-scheduler", daemon=True)
        self._thread.start()

    def schedule(self, key: int, delay_ms: int, callback: Callable[[], None]) -> None:
        with self._cond:
            if self._closed:
                raise RuntimeError("scheduler is closed")
            heapq.heappush(self._heap, _Task(self._clock() + delay_ms / 1000.0, next(self._seq), key, callback))
            self._cond.notify()

    def pending(self) -> int:
        with self._cond:
            return len(self._heap)

    def cancel(self) -> list[int]:
        with self._cond:
            dropped = [task.key for task in self._heap]
            self._heap.clear()
            self._cond.notify()
            return dropped

    def close(self) -> list[int]:
        dropped = self.cancel()
        with self._cond:
            self._closed = True
            self._cond.notify()
        self._thread.join(timeout=5)
        return dropped

    def _loop(self) -> None:
        while True:
            with self._cond:
                while not self._closed:
                    if not self._heap:
                        self._cond.wait()
                        continue
                    wait_s = self._heap[0].due - self._clock()
                    if wait_s <= 0:
                        break
                    self._cond.wait(timeout=wait_s)
                if self._closed:
                    return
                task = heapq.heappop(self._heap)
            task.callback()
