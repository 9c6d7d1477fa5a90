from __future__ import annotations

import gc
import logging
import os
import threading
from typing import Callable

import psutil

from catalog_import.config.config import ImportConfig
from catalog_import.domain.models import MemorySnapshot
from catalog_import.domain.resources.slot_pool import SlotPool
from catalog_import.infra.logging.setup import getLibraryLogger, logEvent

MB = 1024 * 1024
RESUME_FACTOR = 0.8
SHRINK_FACTOR = 0.7


def process_rss_mb() -> float:
    """Текущий RSS процесса в мегабайтах (psutil)."""
    return psutil.Process(os.getpid()).memory_info().rss / MB


class ResourceMonitor:
    """
    Назначение/ответственность:
        Периодически снимает потребление памяти, классифицирует давление,
        открывает/закрывает приём новых батчей и подстраивает размер пула слотов.

    Алгоритм (tick):
        - percentage >= critical: пауза приёма, gc.collect(), событие critical;
        - warning <= percentage < critical: max_concurrent *= 0.7 (не ниже 1);
        - percentage >= backpressure: приём закрыт (backpressure);
        - percentage < warning * 0.8: приём возобновляется, max_concurrent += 1
          до оптимума.
        Между warning*0.8 и backpressure состояние ворот не меняется (гистерезис).

    Инварианты/гарантии:
        - gate() неблокирующий и отражает последний тик;
        - мониторинг только читает память и меняет max_concurrent пула.
    """

    def __init__(
        self,
        config: ImportConfig,
        pool: SlotPool | None = None,
        sampler: Callable[[], float] | None = None,
        observability=None,
        logger: logging.Logger | None = None,
        run_id: str = "-",
        cpu_count: int | None = None,
        collect: Callable[[], int] = gc.collect,
    ):
        self.config = config
        self.pool = pool or SlotPool(max_concurrent=max(2, (cpu_count or os.cpu_count() or 1)), cap=config.max_concurrency)
        self.sampler = sampler or process_rss_mb
        self.observability = observability
        self.logger = logger or getLibraryLogger()
        self.run_id = run_id
        self.cpu_count = cpu_count or os.cpu_count() or 1
        self.collect = collect

        self._lock = threading.Lock()
        self._paused = False
        self._last: MemorySnapshot | None = None
        self._peak_mb = 0.0
        self._gc_events = 0
        self._backpressure_events = 0
        self._listeners: list[Callable[[str, MemorySnapshot], None]] = []

        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def add_listener(self, listener: Callable[[str, MemorySnapshot], None]) -> None:
        self._listeners.append(listener)

    def sample(self) -> MemorySnapshot:
        used = float(self.sampler())
        max_mb = float(self.config.max_memory_mb)
        percentage = used / max_mb if max_mb > 0 else 1.0
        return MemorySnapshot(
            used_mb=used,
            max_mb=max_mb,
            percentage=percentage,
            is_warning=percentage >= self.config.warning_threshold,
            is_critical=percentage >= self.config.critical_threshold,
            should_apply_backpressure=percentage >= self.config.backpressure_threshold,
        )

    def optimal_concurrency(self, snapshot: MemorySnapshot) -> int:
        available = max(0.0, snapshot.max_mb - snapshot.used_mb)
        by_memory = max(1, int(available // self.config.per_operation_memory_mb))
        by_cpu = max(2, self.cpu_count * 2)
        return min(by_memory, by_cpu, self.pool.cap)

    def tick(self) -> MemorySnapshot:
        snapshot = self.sample()
        events: list[str] = []
        with self._lock:
            self._last = snapshot
            self._peak_mb = max(self._peak_mb, snapshot.used_mb)
            was_paused = self._paused

            if snapshot.is_critical:
                self._paused = True
                events.append("critical")
            elif snapshot.is_warning:
                events.append("warning")

            if snapshot.should_apply_backpressure:
                self._paused = True

            if snapshot.percentage < self.config.warning_threshold * RESUME_FACTOR:
                self._paused = False

            if self._paused and not was_paused:
                self._backpressure_events += 1
                events.append("backpressure")
            elif was_paused and not self._paused:
                events.append("resumed")

        if "critical" in events:
            self.collect()
            with self._lock:
                self._gc_events += 1
        if "warning" in events:
            current = self.pool.max_concurrent
            self.pool.set_max_concurrent(max(1, int(current * SHRINK_FACTOR)))
        elif snapshot.percentage < self.config.warning_threshold * RESUME_FACTOR:
            current = self.pool.max_concurrent
            optimal = self.optimal_concurrency(snapshot)
            if current < optimal:
                self.pool.set_max_concurrent(current + 1)

        self._report(snapshot, events)
        return snapshot

    def _report(self, snapshot: MemorySnapshot, events: list[str]) -> None:
        if self.observability is not None:
            self.observability.record_memory_event("usage", snapshot.used_mb)
            if "backpressure" in events:
                self.observability.record_memory_event("backpressure", snapshot.used_mb)
            if "critical" in events:
                self.observability.record_memory_event("gc", snapshot.used_mb)
        for event in events:
            level = logging.INFO
            if event == "critical":
                level = logging.ERROR
            elif event in ("warning", "backpressure"):
                level = logging.WARNING
            logEvent(
                self.logger,
                level,
                self.run_id,
                "monitor",
                f"Memory {event}: used={snapshot.used_mb:.1f}MB ({snapshot.percentage:.0%}) "
                f"max_concurrent={self.pool.max_concurrent}",
            )
            for listener in self._listeners:
                listener(event, snapshot)

    def gate(self) -> bool:
        """True, если приём новых батчей разрешён. Не блокирует."""
        with self._lock:
            return not self._paused

    def can_admit(self) -> bool:
        return self.gate() and self.pool.has_free_slot()

    @property
    def last_snapshot(self) -> MemorySnapshot | None:
        with self._lock:
            return self._last

    @property
    def peak_mb(self) -> float:
        with self._lock:
            return self._peak_mb

    @property
    def gc_events(self) -> int:
        with self._lock:
            return self._gc_events

    @property
    def backpressure_events(self) -> int:
        with self._lock:
            return self._backpressure_events

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self.tick()
        self._thread = threading.Thread(target=self._loop, name="resource-monitor", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None

    def _loop(self) -> None:
        interval = self.config.sample_interval_ms / 1000.0
        while not self._stop.wait(interval):
            try:
                self.tick()
            except Exception as exc:
                logEvent(self.logger, logging.ERROR, self.run_id, "monitor", f"Memory sampling failed: {exc}")
