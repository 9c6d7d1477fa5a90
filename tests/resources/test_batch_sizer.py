import random

import pytest

from catalog_import.domain.models import MemorySnapshot
from catalog_import.domain.resources.batch_sizer import AdaptiveBatchSizer
from catalog_import.domain.resources.slot_pool import SlotPool


def snapshot(percentage: float) -> MemorySnapshot:
    return MemorySnapshot(
        used_mb=percentage * 100,
        max_mb=100,
        percentage=percentage,
        is_warning=percentage >= 0.7,
        is_critical=percentage >= 0.85,
        should_apply_backpressure=percentage >= 0.8,
    )


def test_size_stays_within_bounds_for_random_performance():
    rng = random.Random(7)
    sizer = AdaptiveBatchSizer(initial_size=50, min_size=10, max_size=250)
    for _ in range(500):
        size = sizer.current_size()
        assert 10 <= size <= 250
        new_size = sizer.record_performance(size, rng.randint(1, 5000), rng.random() * 100)
        assert 10 <= new_size <= 250


def test_growing_throughput_increases_size():
    sizer = AdaptiveBatchSizer(initial_size=50, min_size=10, max_size=250)
    for duration in (1000, 1000, 1000, 1000, 1000, 200, 200, 200):
        sizer.record_performance(50, duration, 0.0)
    assert sizer.current_size() > 50


def test_falling_throughput_decreases_size():
    sizer = AdaptiveBatchSizer(initial_size=50, min_size=10, max_size=250)
    for duration in (100, 100, 100, 100, 100, 1000, 1000, 1000):
        sizer.record_performance(50, duration, 0.0)
    assert sizer.current_size() < 50


def test_no_adjustment_before_three_samples():
    sizer = AdaptiveBatchSizer(initial_size=50, min_size=10, max_size=250)
    sizer.record_performance(50, 1000, 0.0)
    assert sizer.record_performance(50, 10, 0.0) == 50


def test_pressure_overrides_size():
    sizer = AdaptiveBatchSizer(initial_size=100, min_size=10, max_size=250)
    assert sizer.current_size(snapshot(0.5)) == 100
    assert sizer.current_size(snapshot(0.82)) == 70
    assert sizer.current_size(snapshot(0.9)) == 10


def test_initial_size_is_clamped():
    assert AdaptiveBatchSizer(initial_size=1000, min_size=10, max_size=250).current_size() == 250
    assert AdaptiveBatchSizer(initial_size=1, min_size=10, max_size=250).current_size() == 10


def test_invalid_bounds_rejected():
    with pytest.raises(ValueError):
        AdaptiveBatchSizer(initial_size=10, min_size=20, max_size=10)


def test_slot_pool_counters():
    pool = SlotPool(max_concurrent=2, cap=20)
    pool.add_pending(3)

    assert pool.reserve(from_pending=True) is True
    assert pool.reserve(from_pending=True) is True
    assert pool.reserve(from_pending=True) is False

    pool.release(success=True)
    pool.release(success=False)
    state = pool.snapshot()
    assert (state.pending, state.processing, state.completed, state.failed) == (1, 0, 1, 1)


def test_slot_pool_clamps_max_concurrent():
    pool = SlotPool(max_concurrent=5, cap=8)
    assert pool.set_max_concurrent(100) == 8
    assert pool.set_max_concurrent(0) == 1
    with pytest.raises(RuntimeError):
        pool.release(success=True)


def test_retry_reservation_leaves_pending_untouched():
    pool = SlotPool(max_concurrent=3, cap=20)
    pool.add_pending(2)

    assert pool.reserve(from_pending=True) is True
    assert pool.reserve() is True

    state = pool.snapshot()
    assert (state.pending, state.processing) == (1, 2)
