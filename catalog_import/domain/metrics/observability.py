from __future__ import annotations

import logging
import math
import queue
import threading
import time
from collections import deque
from dataclasses import asdict, dataclass, field
from typing import Any, Callable

from catalog_import.common.time import getNowIso
from catalog_import.infra.logging.setup import getLibraryLogger, logEvent

RATE_SMOOTHING = 0.3
DURATION_WINDOW = 100

JOB_EVENTS = ("created", "started", "completed", "failed")
MEMORY_EVENTS = ("usage", "peak", "backpressure", "gc")
ERROR_KINDS = ("validation", "parsing", "db", "dlq")


@dataclass(frozen=True)
class ImportMetrics:
    """
    Назначение:
        Снимок метрик импорта. Счётчики только растут, остальное производные.
    """

    jobs_created: int = 0
    jobs_started: int = 0
    jobs_completed: int = 0
    jobs_failed: int = 0
    jobs_in_progress: int = 0
    jobs_queued: int = 0
    rows_processed_total: int = 0
    rows_valid_total: int = 0
    rows_invalid_total: int = 0
    rows_skipped_total: int = 0
    avg_processing_rate: float = 0.0
    avg_job_duration_ms: float = 0.0
    p95_job_duration_ms: float = 0.0
    p99_job_duration_ms: float = 0.0
    memory_usage_mb: float = 0.0
    memory_peak_mb: float = 0.0
    backpressure_events: int = 0
    gc_events: int = 0
    validation_errors_total: int = 0
    parsing_errors_total: int = 0
    db_errors_total: int = 0
    dlq_entries_total: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class AlertRule:
    """
    Назначение:
        Пороговое правило алерта.

    Контракт:
        - operator: gt | lt | gte | lte | eq;
        - lt срабатывает только на ненулевых значениях (ноль = «нет данных»);
        - условие должно держаться duration_s секунд, затем cooldown_s тишины.
    """

    metric: str
    operator: str
    threshold: float
    duration_s: float = 0.0
    cooldown_s: float = 300.0

    @property
    def key(self) -> str:
        return f"{self.metric}_{self.operator}_{self.threshold:g}"

    def matches(self, value: float) -> bool:
        if self.operator == "gt":
            return value > self.threshold
        if self.operator == "lt":
            return 0 < value < self.threshold
        if self.operator == "gte":
            return value >= self.threshold
        if self.operator == "lte":
            return value <= self.threshold
        if self.operator == "eq":
            return value == self.threshold
        raise ValueError(f"Unsupported alert operator: {self.operator}")


@dataclass(frozen=True)
class Alert:
    rule: AlertRule
    value: float
    timestamp: str
    message: str


DEFAULT_ALERT_RULES: tuple[AlertRule, ...] = (
    AlertRule("jobs_failed", "gt", 5, duration_s=300, cooldown_s=900),
    AlertRule("memory_usage_mb", "gt", 450, duration_s=60, cooldown_s=300),
    AlertRule("backpressure_events", "gt", 10, duration_s=120, cooldown_s=600),
    AlertRule("dlq_entries_total", "gt", 50, duration_s=180, cooldown_s=1800),
    AlertRule("avg_processing_rate", "lt", 5, duration_s=300, cooldown_s=600),
)


def percentile(values: list[float], p: float) -> float:
    """Перцентиль по ближайшему рангу: index = ceil(p/100 * n) - 1."""
    if not values:
        return 0.0
    ordered = sorted(values)
    index = math.ceil((p / 100.0) * len(ordered)) - 1
    return float(ordered[max(0, index)])


@dataclass
class _Event:
    kind: str
    name: str
    value: float = 0.0
    extra: dict[str, Any] = field(default_factory=dict)


_STOP = _Event("stop", "")


class ImportObservability:
    """
    Назначение/ответственность:
        Сбор метрик всех стадий импорта и пороговые алерты.

    Алгоритм:
        - record_* кладут событие в очередь и не блокируются;
        - один поток-агрегатор применяет события к счётчикам под блокировкой;
        - тик сбора (metrics_interval_ms) снимает память через sampler,
          проверяет правила алертов и рассылает снимок слушателям метрик.

    Инварианты/гарантии:
        - объект создаётся явно и передаётся компонентам, глобального экземпляра нет;
        - алерты только уведомляют (слушатели + лог) и не меняют состояние конвейера;
        - snapshot() сначала дожидается обработки уже поставленных событий.
    """

    def __init__(
        self,
        rules: tuple[AlertRule, ...] | list[AlertRule] = DEFAULT_ALERT_RULES,
        interval_ms: int = 30_000,
        memory_sampler: Callable[[], float] | None = None,
        logger: logging.Logger | None = None,
        run_id: str = "-",
        clock: Callable[[], float] = time.monotonic,
    ):
        self.rules = list(rules)
        self.interval_ms = interval_ms
        self.memory_sampler = memory_sampler
        self.logger = logger or getLibraryLogger()
        self.run_id = run_id
        self._clock = clock

        self._lock = threading.Lock()
        self._counters: dict[str, float] = {name: 0 for name in ImportMetrics.__dataclass_fields__}
        self._durations: deque[float] = deque(maxlen=DURATION_WINDOW)
        self._history: dict[str, deque[tuple[str, float, dict[str, Any]]]] = {}

        self._alert_lock = threading.Lock()
        self._condition_since: dict[str, float] = {}
        self._last_fired: dict[str, float] = {}
        self._alert_listeners: list[Callable[[Alert], None]] = []
        self._metrics_listeners: list[Callable[[ImportMetrics], None]] = []

        self._events: queue.Queue[_Event] = queue.Queue()
        self._aggregator = threading.Thread(target=self._consume, name="metrics-aggregator", daemon=True)
        self._aggregator.start()

        self._ticker_stop = threading.Event()
        self._ticker: threading.Thread | None = None
        self._closed = False
        self._post_lock = threading.Lock()

    # ------------------------------------------------------------- recording

    def record_job_event(self, event: str, job_id: str) -> None:
        if event not in JOB_EVENTS:
            raise ValueError(f"Unknown job event: {event}")
        self._post(_Event("job", event, 1, {"job_id": job_id}))

    def record_row_processing(self, valid: int = 0, invalid: int = 0, skipped: int = 0) -> None:
        self._post(_Event("rows", "rows", 0, {"valid": valid, "invalid": invalid, "skipped": skipped}))

    def record_memory_event(self, event: str, value_mb: float | None = None) -> None:
        if event not in MEMORY_EVENTS:
            raise ValueError(f"Unknown memory event: {event}")
        self._post(_Event("memory", event, float(value_mb or 0.0)))

    def record_error(self, kind: str, count: int = 1) -> None:
        if kind not in ERROR_KINDS:
            raise ValueError(f"Unknown error kind: {kind}")
        self._post(_Event("error", kind, count))

    def record_job_duration(self, duration_ms: float) -> None:
        self._post(_Event("duration", "job_duration_ms", float(duration_ms)))

    def record_processing_rate(self, rows_per_second: float) -> None:
        self._post(_Event("rate", "processing_rate", float(rows_per_second)))

    # ------------------------------------------------------------ aggregator

    def _post(self, event: _Event) -> None:
        # после close() агрегатор остановлен: событие применяется сразу
        with self._post_lock:
            if not self._closed:
                self._events.put(event)
                return
        with self._lock:
            self._apply(event)

    def _consume(self) -> None:
        while True:
            event = self._events.get()
            try:
                if event is _STOP:
                    return
                with self._lock:
                    self._apply(event)
            finally:
                self._events.task_done()

    def _apply(self, event: _Event) -> None:
        c = self._counters
        if event.kind == "job":
            if event.name == "created":
                c["jobs_created"] += 1
                c["jobs_queued"] += 1
            elif event.name == "started":
                c["jobs_started"] += 1
                c["jobs_queued"] = max(0, c["jobs_queued"] - 1)
                c["jobs_in_progress"] += 1
            elif event.name == "completed":
                c["jobs_completed"] += 1
                c["jobs_in_progress"] = max(0, c["jobs_in_progress"] - 1)
            else:
                c["jobs_failed"] += 1
                c["jobs_in_progress"] = max(0, c["jobs_in_progress"] - 1)
            self._remember("job_event", 1, {"event": event.name, **event.extra})
        elif event.kind == "rows":
            valid = event.extra["valid"]
            invalid = event.extra["invalid"]
            skipped = event.extra["skipped"]
            c["rows_valid_total"] += valid
            c["rows_invalid_total"] += invalid
            c["rows_skipped_total"] += skipped
            c["rows_processed_total"] += valid + invalid + skipped
        elif event.kind == "memory":
            if event.name == "usage":
                c["memory_usage_mb"] = event.value
                c["memory_peak_mb"] = max(c["memory_peak_mb"], event.value)
            elif event.name == "peak":
                c["memory_peak_mb"] = max(c["memory_peak_mb"], event.value)
            elif event.name == "backpressure":
                c["backpressure_events"] += 1
            else:
                c["gc_events"] += 1
            self._remember(f"memory_{event.name}", event.value, {})
        elif event.kind == "error":
            field_name = {
                "validation": "validation_errors_total",
                "parsing": "parsing_errors_total",
                "db": "db_errors_total",
                "dlq": "dlq_entries_total",
            }[event.name]
            c[field_name] += int(event.value)
        elif event.kind == "duration":
            self._durations.append(event.value)
            samples = list(self._durations)
            c["avg_job_duration_ms"] = sum(samples) / len(samples)
            c["p95_job_duration_ms"] = percentile(samples, 95)
            c["p99_job_duration_ms"] = percentile(samples, 99)
        elif event.kind == "rate":
            c["avg_processing_rate"] = (
                c["avg_processing_rate"] * (1 - RATE_SMOOTHING) + event.value * RATE_SMOOTHING
            )

    def _remember(self, name: str, value: float, labels: dict[str, Any]) -> None:
        history = self._history.setdefault(name, deque(maxlen=1000))
        history.append((getNowIso(), value, labels))

    def flush(self) -> None:
        """Дождаться обработки всех поставленных событий."""
        if self._closed:
            self._aggregator.join()
            return
        self._events.join()

    def snapshot(self) -> ImportMetrics:
        self.flush()
        with self._lock:
            values = dict(self._counters)
        return ImportMetrics(
            **{
                name: (int(value) if isinstance(ImportMetrics.__dataclass_fields__[name].default, int) else float(value))
                for name, value in values.items()
            }
        )

    def history(self, name: str, limit: int = 100) -> list[tuple[str, float, dict[str, Any]]]:
        self.flush()
        with self._lock:
            return list(self._history.get(name, ()))[-limit:]

    # ---------------------------------------------------------------- alerts

    def add_alert_listener(self, listener: Callable[[Alert], None]) -> None:
        with self._alert_lock:
            self._alert_listeners.append(listener)

    def add_metrics_listener(self, listener: Callable[[ImportMetrics], None]) -> None:
        with self._alert_lock:
            self._metrics_listeners.append(listener)

    def evaluate_alerts(self, now: float | None = None) -> list[Alert]:
        """
        Назначение:
            Проверить правила по текущему снимку.

        Алгоритм:
            - условие ложно -> отметка начала сбрасывается;
            - условие истинно -> отметка начала ставится при первом наблюдении;
            - алерт, если условие держится >= duration_s и с прошлого
              срабатывания прошло >= cooldown_s.
        """
        metrics = self.snapshot().to_dict()
        current = self._clock() if now is None else now
        fired: list[Alert] = []
        with self._alert_lock:
            for rule in self.rules:
                value = float(metrics.get(rule.metric, 0) or 0)
                if not rule.matches(value):
                    self._condition_since.pop(rule.key, None)
                    continue
                since = self._condition_since.setdefault(rule.key, current)
                if current - since < rule.duration_s:
                    continue
                last = self._last_fired.get(rule.key)
                if last is not None and current - last < rule.cooldown_s:
                    continue
                self._last_fired[rule.key] = current
                fired.append(
                    Alert(
                        rule=rule,
                        value=value,
                        timestamp=getNowIso(),
                        message=f"{rule.metric} {rule.operator} {rule.threshold:g} (current: {value:g})",
                    )
                )
            listeners = list(self._alert_listeners)

        for alert in fired:
            logEvent(self.logger, logging.WARNING, self.run_id, "metrics", f"Alert triggered: {alert.message}")
            for listener in listeners:
                try:
                    listener(alert)
                except Exception as exc:
                    logEvent(self.logger, logging.ERROR, self.run_id, "metrics", f"Alert listener failed: {exc}")
        return fired

    # ------------------------------------------------------------ collection

    def collect(self) -> ImportMetrics:
        """Один тик сбора: память, алерты, публикация снимка."""
        if self.memory_sampler is not None:
            self.record_memory_event("usage", self.memory_sampler())
        self.evaluate_alerts()
        metrics = self.snapshot()
        with self._alert_lock:
            listeners = list(self._metrics_listeners)
        for listener in listeners:
            try:
                listener(metrics)
            except Exception as exc:
                logEvent(self.logger, logging.ERROR, self.run_id, "metrics", f"Metrics listener failed: {exc}")
        logEvent(
            self.logger,
            logging.DEBUG,
            self.run_id,
            "metrics",
            f"Metrics: rows={metrics.rows_processed_total} rate={metrics.avg_processing_rate:.1f} "
            f"memory_mb={metrics.memory_usage_mb:.1f} dlq={metrics.dlq_entries_total}",
        )
        return metrics

    def start(self) -> None:
        if self._ticker is not None:
            return
        self._ticker_stop.clear()
        self._ticker = threading.Thread(target=self._tick_loop, name="metrics-collector", daemon=True)
        self._ticker.start()
        logEvent(self.logger, logging.INFO, self.run_id, "metrics", f"Metrics collection started (interval {self.interval_ms} ms)")

    def _tick_loop(self) -> None:
        while not self._ticker_stop.wait(self.interval_ms / 1000.0):
            try:
                self.collect()
            except Exception as exc:
                logEvent(self.logger, logging.ERROR, self.run_id, "metrics", f"Metrics collection failed: {exc}")

    def stop(self) -> None:
        if self._ticker is None:
            return
        self._ticker_stop.set()
        self._ticker.join(timeout=5)
        self._ticker = None

    def close(self) -> None:
        """Останавливает сбор и агрегатор; record_* после close() продолжают считать синхронно."""
        self.stop()
        with self._post_lock:
            if self._closed:
                return
            self._closed = True
            self._events.put(_STOP)
        self._aggregator.join(timeout=5)

    # ------------------------------------------------------------- dashboard

    def dashboard_data(self) -> dict[str, Any]:
        m = self.snapshot()

        def ratio(part: float, total: float) -> float:
            return round(part / total * 100, 1) if total > 0 else 0.0

        return {
            "overview": {
                "total_jobs": m.jobs_created,
                "success_rate": ratio(m.jobs_completed, m.jobs_created),
                "failure_rate": ratio(m.jobs_failed, m.jobs_created),
                "active_jobs": m.jobs_in_progress,
                "queued_jobs": m.jobs_queued,
            },
            "performance": {
                "avg_processing_rate": round(m.avg_processing_rate, 1),
                "avg_duration_seconds": round(m.avg_job_duration_ms / 1000, 1),
                "p95_duration_seconds": round(m.p95_job_duration_ms / 1000, 1),
                "p99_duration_seconds": round(m.p99_job_duration_ms / 1000, 1),
            },
            "resources": {
                "memory_usage_mb": round(m.memory_usage_mb, 1),
                "memory_peak_mb": round(m.memory_peak_mb, 1),
                "backpressure_events": m.backpressure_events,
                "gc_events": m.gc_events,
            },
            "quality": {
                "total_rows": m.rows_processed_total,
                "valid_rate": ratio(m.rows_valid_total, m.rows_processed_total),
                "error_rate": ratio(m.rows_invalid_total, m.rows_processed_total),
                "dlq_size": m.dlq_entries_total,
            },
        }
