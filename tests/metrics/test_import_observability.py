import threading
import time

import pytest

from catalog_import.domain.metrics.observability import (
    DEFAULT_ALERT_RULES,
    AlertRule,
    ImportObservability,
    percentile,
)


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def observability():
    created = []

    def factory(**kwargs):
        obs = ImportObservability(**kwargs)
        created.append(obs)
        return obs

    yield factory
    for obs in created:
        obs.close()


def test_job_lifecycle_counters(observability):
    obs = observability()
    obs.record_job_event("created", "j1")
    obs.record_job_event("created", "j2")
    obs.record_job_event("started", "j1")
    obs.record_job_event("completed", "j1")
    obs.record_job_event("started", "j2")
    obs.record_job_event("failed", "j2")

    m = obs.snapshot()

    assert (m.jobs_created, m.jobs_started, m.jobs_completed, m.jobs_failed) == (2, 2, 1, 1)
    assert (m.jobs_in_progress, m.jobs_queued) == (0, 0)
    assert [labels["job_id"] for _, _, labels in obs.history("job_event")][:2] == ["j1", "j2"]


def test_row_and_error_counters(observability):
    obs = observability()
    obs.record_row_processing(valid=8, invalid=2)
    obs.record_row_processing(skipped=3)
    obs.record_error("validation", 2)
    obs.record_error("db")
    obs.record_error("dlq", 4)

    m = obs.snapshot()

    assert (m.rows_processed_total, m.rows_valid_total, m.rows_invalid_total, m.rows_skipped_total) == (13, 8, 2, 3)
    assert (m.validation_errors_total, m.db_errors_total, m.dlq_entries_total) == (2, 1, 4)


def test_unknown_names_rejected(observability):
    obs = observability()
    with pytest.raises(ValueError):
        obs.record_job_event("exploded", "j1")
    with pytest.raises(ValueError):
        obs.record_memory_event("leak", 1)
    with pytest.raises(ValueError):
        obs.record_error("cosmic", 1)


def test_memory_usage_tracks_peak(observability):
    obs = observability()
    for value in (100, 300, 200):
        obs.record_memory_event("usage", value)
    obs.record_memory_event("backpressure", 290)
    obs.record_memory_event("gc", 280)

    m = obs.snapshot()

    assert m.memory_usage_mb == 200
    assert m.memory_peak_mb == 300
    assert (m.backpressure_events, m.gc_events) == (1, 1)


def test_processing_rate_is_exponential_average(observability):
    obs = observability()
    obs.record_processing_rate(100)
    obs.record_processing_rate(100)

    assert obs.snapshot().avg_processing_rate == pytest.approx(51.0)


def test_duration_percentiles(observability):
    obs = observability()
    for value in range(1, 101):
        obs.record_job_duration(value * 10)

    m = obs.snapshot()

    assert m.avg_job_duration_ms == pytest.approx(505.0)
    assert m.p95_job_duration_ms == 950
    assert m.p99_job_duration_ms == 990


def test_percentile_nearest_rank():
    assert percentile([], 95) == 0.0
    assert percentile([5], 99) == 5
    assert percentile([1, 2, 3, 4], 50) == 2


def test_alert_requires_sustained_condition_and_respects_cooldown(observability):
    clock = FakeClock()
    rule = AlertRule("dlq_entries_total", "gt", 50, duration_s=180, cooldown_s=1800)
    obs = observability(rules=[rule], clock=clock)
    fired = []
    obs.add_alert_listener(fired.append)

    obs.record_error("dlq", 60)
    assert obs.evaluate_alerts() == []

    clock.now += 179
    assert obs.evaluate_alerts() == []

    clock.now += 1
    (alert,) = obs.evaluate_alerts()
    assert alert.value == 60
    assert "dlq_entries_total gt 50" in alert.message
    assert fired == [alert]

    clock.now += 600
    assert obs.evaluate_alerts() == []

    clock.now += 1200
    assert len(obs.evaluate_alerts()) == 1


def test_condition_reset_restarts_duration(observability):
    clock = FakeClock()
    obs = observability(rules=[AlertRule("memory_usage_mb", "gt", 450, duration_s=60)], clock=clock)

    obs.record_memory_event("usage", 500)
    obs.evaluate_alerts()
    clock.now += 30
    obs.record_memory_event("usage", 100)
    obs.evaluate_alerts()
    clock.now += 10
    obs.record_memory_event("usage", 500)
    obs.evaluate_alerts()
    clock.now += 50

    assert obs.evaluate_alerts() == []
    clock.now += 10
    assert len(obs.evaluate_alerts()) == 1


def test_low_rate_alert_ignores_missing_data():
    rule = AlertRule("avg_processing_rate", "lt", 5)
    assert rule.matches(0) is False
    assert rule.matches(3) is True
    assert rule.matches(7) is False


def test_default_rules():
    keys = {(r.metric, r.operator, r.threshold, r.duration_s, r.cooldown_s) for r in DEFAULT_ALERT_RULES}
    assert keys == {
        ("jobs_failed", "gt", 5, 300, 900),
        ("memory_usage_mb", "gt", 450, 60, 300),
        ("backpressure_events", "gt", 10, 120, 600),
        ("dlq_entries_total", "gt", 50, 180, 1800),
        ("avg_processing_rate", "lt", 5, 300, 600),
    }


def test_failing_listener_does_not_break_evaluation(observability):
    obs = observability(rules=[AlertRule("jobs_failed", "gt", 0)])

    def broken(alert):
        raise RuntimeError("listener down")

    obs.add_alert_listener(broken)
    obs.record_job_event("failed", "j1")

    assert len(obs.evaluate_alerts()) == 1


def test_collect_uses_memory_sampler_and_notifies(observability):
    obs = observability(memory_sampler=lambda: 123.0, rules=[])
    published = []
    obs.add_metrics_listener(published.append)

    metrics = obs.collect()

    assert metrics.memory_usage_mb == 123.0
    assert published == [metrics]


def test_dashboard_data(observability):
    obs = observability()
    for _ in range(4):
        obs.record_job_event("created", "j")
    obs.record_job_event("started", "j")
    obs.record_job_event("completed", "j")
    obs.record_row_processing(valid=3, invalid=1)

    data = obs.dashboard_data()

    assert data["overview"]["total_jobs"] == 4
    assert data["overview"]["success_rate"] == 25.0
    assert data["overview"]["queued_jobs"] == 3
    assert data["quality"]["error_rate"] == 25.0


def test_start_and_stop_ticker(observability):
    obs = observability(interval_ms=10, memory_sampler=lambda: 5.0, rules=[])
    published = []
    obs.add_metrics_listener(published.append)

    obs.start()
    deadline = time.monotonic() + 2
    while not published and time.monotonic() < deadline:
        time.sleep(0.01)
    obs.stop()

    assert published


def test_recording_after_close_is_counted_without_blocking():
    obs = ImportObservability(rules=[])
    obs.record_row_processing(valid=2)
    obs.close()
    obs.record_row_processing(valid=1, invalid=1)

    snapshots = []
    reader = threading.Thread(target=lambda: snapshots.append(obs.snapshot()), daemon=True)
    reader.start()
    reader.join(timeout=2)

    assert not reader.is_alive()
    (m,) = snapshots
    assert (m.rows_valid_total, m.rows_invalid_total) == (3, 1)
    assert obs.dashboard_data()["quality"]["total_rows"] == 4
