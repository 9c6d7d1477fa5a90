import threading

import pytest

from catalog_import.common.cancellation import CancellationToken
from catalog_import.config.config import ImportConfig
from catalog_import.domain.error_codes import IssueSeverity
from catalog_import.domain.models import RawRecord
from catalog_import.domain.resources.batch_sizer import AdaptiveBatchSizer
from catalog_import.domain.resources.monitor import ResourceMonitor
from catalog_import.domain.resources.slot_pool import SlotPool
from catalog_import.domain.validation.product_rules import ProductRowValidator
from catalog_import.domain.validation.streaming import StreamingValidator, sanitize_record


class FakeMemory:
    def __init__(self, value: float):
        self.value = value

    def __call__(self) -> float:
        return self.value


def make_validator(initial_size: int = 2, sampler: FakeMemory | None = None, validator=None) -> StreamingValidator:
    config = ImportConfig(max_memory_mb=100)
    monitor = ResourceMonitor(config, pool=SlotPool(5), sampler=sampler or FakeMemory(10), cpu_count=2)
    sizer = AdaptiveBatchSizer(initial_size=initial_size, min_size=1, max_size=10)
    return StreamingValidator(
        validator or ProductRowValidator(),
        sizer,
        monitor,
        admission_initial_delay_ms=5,
        admission_max_delay_ms=20,
    )


def records(*titles):
    return [RawRecord(row_index=i, values={"title": t}) for i, t in enumerate(titles, start=1)]


def test_batches_follow_sizer_and_keep_row_order():
    stream = make_validator(initial_size=2)

    batches = list(stream.iter_batches(records("A", "B", "C", "D", "E")))

    assert [(b.start_row_index, b.end_row_index) for b in batches] == [(1, 2), (3, 4), (5, 5)]
    assert [b.batch_index for b in batches] == [0, 1, 2]
    assert [row.row_index for b in batches for row in b.rows] == [1, 2, 3, 4, 5]
    assert stream.consumed_records == 5
    assert stream.valid_rows == 5


def test_invalid_rows_excluded_but_issues_kept():
    stream = make_validator(initial_size=10)
    source = records("Shirt", "", "Hat")

    (batch,) = list(stream.iter_batches(source))

    assert [row.row_index for row in batch.rows] == [1, 3]
    assert batch.invalid_row_indices == [2]
    assert any(i.rule_id == "REQUIRED_FIELD_MISSING" and i.row_index == 2 for i in batch.issues)
    assert stream.invalid_rows == 1


def test_formula_values_are_blocked_as_critical():
    record = RawRecord(row_index=4, values={"title": "Shirt", "description": "=HYPERLINK(\"x\")"})

    cleaned, issues = sanitize_record(record)

    assert cleaned.values["description"] == 'HYPERLINK("x")'
    assert [(i.rule_id, i.severity) for i in issues] == [("CSV_INJECTION", IssueSeverity.CRITICAL)]

    stream = make_validator(initial_size=10)
    (batch,) = list(stream.iter_batches([record]))
    assert batch.rows == ()
    assert batch.invalid_row_indices == [4]


def test_warnings_do_not_exclude_rows():
    stream = make_validator(initial_size=10)
    source = [RawRecord(row_index=1, values={"title": "Shirt", "retail_price": "10"})]

    (batch,) = list(stream.iter_batches(source))

    assert len(batch.rows) == 1
    assert [i.rule_id for i in batch.issues] == ["CURRENCY_MISSING"]


def test_skip_predicate_drops_already_settled_rows():
    stream = make_validator(initial_size=10)

    (batch,) = list(stream.iter_batches(records("A", "B", "C"), skip=lambda idx: idx == 2, start_batch_index=4))

    assert batch.batch_index == 4
    assert [row.row_index for row in batch.rows] == [1, 3]
    assert batch.metadata.consumed_records == 2


def test_cancelled_before_start_emits_nothing():
    stream = make_validator()
    token = CancellationToken()
    token.cancel()

    assert list(stream.iter_batches(records("A", "B"), cancel=token)) == []


def test_cancellation_checked_between_batches():
    stream = make_validator(initial_size=1)
    token = CancellationToken()
    seen = []

    for batch in stream.iter_batches(records("A", "B", "C"), cancel=token):
        seen.append(batch.batch_index)
        token.cancel()

    assert seen == [0]


def test_batch_waits_for_gate_to_reopen():
    sampler = FakeMemory(90)
    stream = make_validator(initial_size=10, sampler=sampler)
    stream.monitor.tick()
    assert stream.monitor.gate() is False

    def relieve():
        sampler.value = 10
        stream.monitor.tick()

    timer = threading.Timer(0.1, relieve)
    timer.start()
    try:
        batches = list(stream.iter_batches(records("A")))
    finally:
        timer.join()

    assert len(batches) == 1
    assert stream.monitor.gate() is True


def test_validator_exception_propagates():
    class Boom:
        def validate(self, record):
            raise RuntimeError("validator crashed")

    stream = make_validator(validator=Boom())
    with pytest.raises(RuntimeError):
        list(stream.iter_batches(records("A")))


def test_source_is_not_buffered():
    pulled = []

    def source():
        for record in records("A", "B", "C", "D"):
            pulled.append(record.row_index)
            yield record

    stream = make_validator(initial_size=2)
    iterator = stream.iter_batches(source())
    first = next(iterator)

    assert [row.row_index for row in first.rows] == [1, 2]
    assert pulled == [1, 2]


def test_duplicate_sku_blocks_later_row_and_duplicate_handle_warns():
    stream = make_validator(initial_size=2)
    source = [
        RawRecord(row_index=1, values={"title": "Linen Shirt", "handle": "linen-shirt", "sku": "LS-M"}),
        RawRecord(row_index=2, values={"title": "Linen Shirt Blue", "handle": "linen-shirt-blue", "sku": "LS-M"}),
        RawRecord(row_index=3, values={"title": "Linen Shirt", "handle": "linen-shirt", "sku": "LS-L"}),
    ]

    batches = list(stream.iter_batches(source))

    assert [row.row_index for b in batches for row in b.rows] == [1, 3]
    issues = [(i.row_index, i.rule_id, i.severity) for b in batches for i in b.issues]
    assert issues == [
        (2, "DUPLICATE_SKU", IssueSeverity.ERROR),
        (3, "DUPLICATE_HANDLE", IssueSeverity.WARNING),
    ]
    assert stream.invalid_rows == 1


def test_rejected_row_does_not_claim_its_sku():
    stream = make_validator(initial_size=10)
    source = [
        RawRecord(row_index=1, values={"title": "=cmd", "sku": "HAT-1"}),
        RawRecord(row_index=2, values={"title": "Straw Hat", "sku": "HAT-1"}),
    ]

    (batch,) = list(stream.iter_batches(source))

    assert [row.row_index for row in batch.rows] == [2]
    assert all(i.row_index == 1 for i in batch.issues)


def test_skipped_rows_are_not_counted_as_duplicates():
    stream = make_validator(initial_size=10)
    source = [
        RawRecord(row_index=1, values={"title": "Straw Hat", "sku": "HAT-1"}),
        RawRecord(row_index=2, values={"title": "Straw Hat", "sku": "HAT-1"}),
    ]

    (batch,) = list(stream.iter_batches(source, skip=lambda idx: idx == 1))

    assert [row.row_index for row in batch.rows] == [2]
    assert batch.issues == ()


@pytest.mark.parametrize(
    "value, rule_id, cleaned",
    [
        ("Soft <script>alert(1)</script>linen", "SCRIPT_INJECTION", "Soft linen"),
        ("javascript:alert(1)", "SCRIPT_INJECTION", "alert(1)"),
        ("Hat $(rm -rf /)", "COMMAND_INJECTION", "Hat"),
        ("Hat `whoami`", "COMMAND_INJECTION", "Hat"),
        ("x' or 1=1", "SQL_INJECTION", "x"),
        ("Hat; DROP TABLE", "SQL_INJECTION", "Hat"),
        ("1 UNION SELECT", "SQL_INJECTION", "1"),
    ],
)
def test_injection_payloads_are_critical_and_stripped(value, rule_id, cleaned):
    record = RawRecord(row_index=7, values={"title": "Hat", "description": value})

    result, issues = sanitize_record(record)

    assert [(i.rule_id, i.severity, i.field) for i in issues] == [(rule_id, IssueSeverity.CRITICAL, "description")]
    assert result.values["description"] == cleaned


def test_control_characters_are_removed_silently():
    record = RawRecord(row_index=1, values={"title": "Straw\x00 Hat\x07", "description": "line one\nline\ttwo", "sku": None})

    result, issues = sanitize_record(record)

    assert issues == []
    assert result.values == {"title": "Straw Hat", "description": "line one\nline\ttwo", "sku": None}


def test_plain_product_text_passes_sanitizers():
    record = RawRecord(
        row_index=1,
        values={"title": "Men's shirt & tie", "description": "Cotton; machine wash (30C), 100% organic"},
    )

    result, issues = sanitize_record(record)

    assert issues == []
    assert result.values == record.values
