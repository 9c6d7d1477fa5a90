from catalog_import.config.config import ImportConfig
from catalog_import.domain.resources.monitor import ResourceMonitor
from catalog_import.domain.resources.slot_pool import SlotPool


class FakeMemory:
    def __init__(self, value: float):
        self.value = value

    def __call__(self) -> float:
        return self.value


def make_monitor(sampler: FakeMemory, max_concurrent: int = 10, collected=None) -> ResourceMonitor:
    config = ImportConfig(max_memory_mb=100, per_operation_memory_mb=10, max_concurrency=20)
    pool = SlotPool(max_concurrent=max_concurrent, cap=20)
    calls = collected if collected is not None else []
    return ResourceMonitor(
        config,
        pool=pool,
        sampler=sampler,
        cpu_count=4,
        collect=lambda: calls.append(1) or 0,
    )


def test_warning_without_backpressure_at_72_percent():
    sampler = FakeMemory(72)
    monitor = make_monitor(sampler)

    snapshot = monitor.tick()

    assert snapshot.is_warning is True
    assert snapshot.is_critical is False
    assert snapshot.should_apply_backpressure is False
    assert monitor.gate() is True
    # warning -> max_concurrent * 0.7
    assert monitor.pool.max_concurrent == 7


def test_critical_at_90_percent_pauses_and_collects():
    collected = []
    sampler = FakeMemory(90)
    monitor = make_monitor(sampler, collected=collected)

    snapshot = monitor.tick()

    assert snapshot.is_critical is True
    assert snapshot.should_apply_backpressure is True
    assert monitor.gate() is False
    assert collected == [1]
    assert monitor.gc_events == 1
    assert monitor.backpressure_events == 1


def test_backpressure_hysteresis_until_below_resume_threshold():
    sampler = FakeMemory(82)
    monitor = make_monitor(sampler)

    monitor.tick()
    assert monitor.gate() is False

    # между warning*0.8 (56%) и backpressure ворота не открываются
    for value in (79, 65, 57):
        sampler.value = value
        monitor.tick()
        assert monitor.gate() is False

    sampler.value = 55
    monitor.tick()
    assert monitor.gate() is True
    assert monitor.backpressure_events == 1


def test_gate_never_open_while_usage_at_or_above_backpressure():
    sampler = FakeMemory(0)
    monitor = make_monitor(sampler)
    for value in (10, 80, 30, 95, 81, 50, 86, 40):
        sampler.value = value
        snapshot = monitor.tick()
        if snapshot.percentage >= 0.8:
            assert monitor.gate() is False


def test_low_usage_grows_concurrency_up_to_optimal():
    sampler = FakeMemory(10)
    monitor = make_monitor(sampler, max_concurrent=2)

    for _ in range(20):
        monitor.tick()

    # optimal = min(available 90MB / 10MB = 9, cpu*2 = 8, cap 20)
    assert monitor.pool.max_concurrent == 8


def test_can_admit_requires_free_slot():
    sampler = FakeMemory(10)
    monitor = make_monitor(sampler, max_concurrent=1)
    monitor.tick()
    monitor.pool.set_max_concurrent(1)

    assert monitor.pool.reserve() is True
    assert monitor.can_admit() is False
    monitor.pool.release(success=True)
    assert monitor.can_admit() is True


def test_listener_receives_events():
    sampler = FakeMemory(90)
    monitor = make_monitor(sampler)
    events = []
    monitor.add_listener(lambda event, snapshot: events.append(event))

    monitor.tick()
    sampler.value = 20
    monitor.tick()

    assert events == ["critical", "backpressure", "resumed"]
    assert monitor.peak_mb == 90
