import httpx
import pytest

from catalog_import.domain.error_codes import ErrorType, FailureSeverity, RecoveryStrategy
from catalog_import.domain.exceptions import (
    DependencyNotSatisfiedError,
    DomainWriteError,
    RowStateError,
    WriterTimeoutError,
)
from catalog_import.domain.models import ValidatedRow
from catalog_import.domain.recovery.classification import (
    classify_error,
    compute_retry_delay_ms,
    select_strategy,
    severity_for,
)
from catalog_import.domain.recovery.dependencies import (
    dependency_keys,
    is_product_row,
    is_variant_row,
    missing_keys,
    plan_batch,
    provided_keys,
)
from catalog_import.domain.recovery.ledger import RowLedger, RowState
from catalog_import.domain.recovery.lookups import CompositeReferenceLookup, StaticReferenceLookup


@pytest.mark.parametrize(
    "message, expected",
    [
        ("Validation failed: sku is empty", ErrorType.VALIDATION),
        ("SQL constraint violated", ErrorType.DATABASE),
        ("request timed out", ErrorType.TIMEOUT),
        ("upstream timeout", ErrorType.TIMEOUT),
        ("connection reset by peer", ErrorType.NETWORK),
        ("ECONNRESET", ErrorType.NETWORK),
        ("JavaScript heap out of memory", ErrorType.MEMORY),
        ("business rule rejected the price", ErrorType.BUSINESS_LOGIC),
        ("unknown reference to collection", ErrorType.DEPENDENCY),
        ("something odd", ErrorType.UNKNOWN),
    ],
)
def test_classify_by_message(message, expected):
    assert classify_error(RuntimeError(message)) == expected


def test_classify_by_exception_type():
    assert classify_error(DomainWriteError("conflict", error_type="business_logic")) == ErrorType.BUSINESS_LOGIC
    assert classify_error(DependencyNotSatisfiedError(3, ["collection:x"])) == ErrorType.DEPENDENCY
    assert classify_error(WriterTimeoutError(3, 100)) == ErrorType.TIMEOUT
    assert classify_error(httpx.ReadTimeout("slow")) == ErrorType.TIMEOUT
    assert classify_error(httpx.ConnectError("refused")) == ErrorType.NETWORK
    assert classify_error(MemoryError()) == ErrorType.MEMORY
    # неизвестный тип writer-а -> по сообщению
    assert classify_error(DomainWriteError("network is down", error_type="weird")) == ErrorType.NETWORK


def test_severity_table():
    assert severity_for(ErrorType.NETWORK) == FailureSeverity.RECOVERABLE
    assert severity_for(ErrorType.TIMEOUT) == FailureSeverity.RECOVERABLE
    assert severity_for(ErrorType.MEMORY) == FailureSeverity.RECOVERABLE
    assert severity_for(ErrorType.DATABASE) == FailureSeverity.CRITICAL
    assert severity_for(ErrorType.DEPENDENCY) == FailureSeverity.CRITICAL
    assert severity_for(ErrorType.VALIDATION) == FailureSeverity.PERMANENT
    assert severity_for(ErrorType.BUSINESS_LOGIC) == FailureSeverity.PERMANENT
    assert severity_for(ErrorType.UNKNOWN) == FailureSeverity.CRITICAL


def test_strategy_table():
    assert select_strategy(ErrorType.NETWORK, 1) == RecoveryStrategy.IMMEDIATE_RETRY
    assert select_strategy(ErrorType.NETWORK, 2) == RecoveryStrategy.IMMEDIATE_RETRY
    assert select_strategy(ErrorType.NETWORK, 3) == RecoveryStrategy.DELAYED_RETRY
    assert select_strategy(ErrorType.DATABASE, 1) == RecoveryStrategy.IMMEDIATE_RETRY
    assert select_strategy(ErrorType.DATABASE, 2) == RecoveryStrategy.DELAYED_RETRY
    assert select_strategy(ErrorType.MEMORY, 1) == RecoveryStrategy.DELAYED_RETRY
    assert select_strategy(ErrorType.DEPENDENCY, 4) == RecoveryStrategy.DEPENDENCY_RETRY
    assert select_strategy(ErrorType.VALIDATION, 1) == RecoveryStrategy.PARTIAL_DATA_RECOVERY
    assert select_strategy(ErrorType.UNKNOWN, 1) == RecoveryStrategy.MANUAL_INTERVENTION


def test_exponential_backoff_delays():
    delays = [
        compute_retry_delay_ms(RecoveryStrategy.DELAYED_RETRY, attempt, 1000, 30000, True, 5000)
        for attempt in (1, 2, 3)
    ]
    assert delays == [1000, 2000, 4000]


def test_backoff_is_capped_and_dependency_delay_fixed():
    assert compute_retry_delay_ms(RecoveryStrategy.DELAYED_RETRY, 10, 1000, 30000, True, 5000) == 30000
    assert compute_retry_delay_ms(RecoveryStrategy.DELAYED_RETRY, 3, 1000, 30000, False, 5000) == 1000
    assert compute_retry_delay_ms(RecoveryStrategy.DEPENDENCY_RETRY, 3, 1000, 30000, True, 5000) == 5000


def product(idx, handle, **extra):
    return ValidatedRow(idx, {"title": handle.title(), "handle": handle, **extra})


def variant(idx, handle, sku):
    return ValidatedRow(
        idx, {"handle": handle, "sku": sku, "option_1_title": "Size", "option_1_value": "M"}
    )


def test_dependency_keys_and_provided_keys():
    row = product(1, "shirt", collection_handles=["summer", "linen"], sales_channel_handles=["web", "pos"])
    assert dependency_keys(row) == {"collection:summer", "collection:linen", "channel:web", "channel:pos"}
    assert provided_keys(row) == {"product:shirt"}

    v = variant(2, "shirt", "S-1")
    assert dependency_keys(v) == {"product:shirt"}
    assert provided_keys(v) == frozenset()


def test_plan_places_provider_before_dependent():
    rows = [variant(3, "shirt", "S-M"), product(1, "shirt"), product(2, "hat"), product(4, "bag"), product(5, "belt")]

    plan = plan_batch(rows)

    assert [r.row_index for r in plan.order] == [1, 3, 2, 4, 5]
    assert plan.in_batch_providers[3] == (1,)
    assert plan.unresolved == ()


def test_plan_keeps_order_without_dependencies():
    rows = [product(i, f"p-{i}") for i in (4, 2, 9)]
    assert [r.row_index for r in plan_batch(rows).order] == [4, 2, 9]


def test_missing_keys_uses_satisfied_then_lookup():
    lookup = CompositeReferenceLookup(StaticReferenceLookup(["collection:summer"]), StaticReferenceLookup())
    keys = {"collection:summer", "product:shirt", "category:tops"}

    assert missing_keys(keys, {"product:shirt"}, lookup) == ["category:tops"]
    assert missing_keys(keys, set(), None) == ["category:tops", "collection:summer", "product:shirt"]


def test_ledger_allows_only_legal_transitions():
    ledger = RowLedger()
    ledger.transition(1, RowState.PENDING)
    ledger.transition(1, RowState.IN_FLIGHT)
    ledger.transition(1, RowState.FAILED)
    assert ledger.try_transition(1, RowState.PENDING, RowState.IN_FLIGHT) is False
    assert ledger.try_transition(1, RowState.FAILED, RowState.IN_FLIGHT) is True
    ledger.transition(1, RowState.SUCCEEDED)

    assert ledger.state(1) is None
    assert ledger.succeeded == 1
    with pytest.raises(RowStateError):
        ledger.transition(2, RowState.IN_FLIGHT)

    ledger.transition(3, RowState.FAILED)
    ledger.transition(3, RowState.DEAD_LETTERED)
    with pytest.raises(RowStateError):
        ledger.transition(3, RowState.IN_FLIGHT)

    snapshot = ledger.snapshot()
    assert snapshot.dead_lettered == {3}
    assert snapshot.total == 2


def test_row_with_title_and_variant_fields_is_a_product_row():
    row = ValidatedRow(
        1,
        {"title": "Linen Shirt", "handle": "linen-shirt", "sku": "LS-M", "option_1_title": "Size", "option_1_value": "M"},
    )

    assert is_product_row(row) is True
    assert is_variant_row(row) is False
    assert provided_keys(row) == {"product:linen-shirt"}
    assert dependency_keys(row) == frozenset()
