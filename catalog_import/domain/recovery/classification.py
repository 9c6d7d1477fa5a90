from __future__ import annotations

import httpx

from catalog_import.common.backoff import computeBackoffMs
from catalog_import.domain.error_codes import ErrorType, FailureSeverity, RecoveryStrategy
from catalog_import.domain.exceptions import DependencyNotSatisfiedError, DomainWriteError, WriterTimeoutError

# Порядок значим: первое совпадение подстроки определяет тип.
_MESSAGE_RULES: tuple[tuple[ErrorType, tuple[str, ...]], ...] = (
    (ErrorType.VALIDATION, ("validation",)),
    (ErrorType.DATABASE, ("database", "sql")),
    (ErrorType.TIMEOUT, ("timeout", "timed out")),
    (ErrorType.NETWORK, ("network", "connection", "econnreset")),
    (ErrorType.MEMORY, ("memory", "heap")),
    (ErrorType.BUSINESS_LOGIC, ("business", "rule")),
    (ErrorType.DEPENDENCY, ("dependency", "reference")),
)

_SEVERITY: dict[ErrorType, FailureSeverity] = {
    ErrorType.NETWORK: FailureSeverity.RECOVERABLE,
    ErrorType.TIMEOUT: FailureSeverity.RECOVERABLE,
    ErrorType.MEMORY: FailureSeverity.RECOVERABLE,
    ErrorType.DATABASE: FailureSeverity.CRITICAL,
    ErrorType.DEPENDENCY: FailureSeverity.CRITICAL,
    ErrorType.VALIDATION: FailureSeverity.PERMANENT,
    ErrorType.BUSINESS_LOGIC: FailureSeverity.PERMANENT,
}

# (тип ошибки) -> (последняя попытка "быстрого" повтора, стратегия до неё, стратегия после)
_STRATEGY_TABLE: dict[ErrorType, tuple[int, RecoveryStrategy, RecoveryStrategy]] = {
    ErrorType.NETWORK: (2, RecoveryStrategy.IMMEDIATE_RETRY, RecoveryStrategy.DELAYED_RETRY),
    ErrorType.TIMEOUT: (2, RecoveryStrategy.IMMEDIATE_RETRY, RecoveryStrategy.DELAYED_RETRY),
    ErrorType.DATABASE: (1, RecoveryStrategy.IMMEDIATE_RETRY, RecoveryStrategy.DELAYED_RETRY),
    ErrorType.MEMORY: (0, RecoveryStrategy.DELAYED_RETRY, RecoveryStrategy.DELAYED_RETRY),
    ErrorType.DEPENDENCY: (0, RecoveryStrategy.DEPENDENCY_RETRY, RecoveryStrategy.DEPENDENCY_RETRY),
    ErrorType.VALIDATION: (0, RecoveryStrategy.PARTIAL_DATA_RECOVERY, RecoveryStrategy.PARTIAL_DATA_RECOVERY),
    ErrorType.BUSINESS_LOGIC: (0, RecoveryStrategy.PARTIAL_DATA_RECOVERY, RecoveryStrategy.PARTIAL_DATA_RECOVERY),
}


def classify_error(error: BaseException) -> ErrorType:
    """
    Назначение:
        Классифицирует ошибку записи строки.

    Алгоритм:
        1) по типу исключения (явный error_type writer-а, таймауты, транспорт, память);
        2) по подстрокам сообщения в фиксированном порядке;
        3) иначе UNKNOWN.
    """
    if isinstance(error, DomainWriteError):
        if error.error_type != ErrorType.UNKNOWN:
            return error.error_type
    elif isinstance(error, DependencyNotSatisfiedError):
        return ErrorType.DEPENDENCY
    elif isinstance(error, (WriterTimeoutError, httpx.TimeoutException, TimeoutError)):
        return ErrorType.TIMEOUT
    elif isinstance(error, httpx.TransportError):
        return ErrorType.NETWORK
    elif isinstance(error, MemoryError):
        return ErrorType.MEMORY

    message = str(error).lower()
    for error_type, needles in _MESSAGE_RULES:
        if any(needle in message for needle in needles):
            return error_type
    return ErrorType.UNKNOWN


def severity_for(error_type: ErrorType) -> FailureSeverity:
    return _SEVERITY.get(error_type, FailureSeverity.CRITICAL)


def select_strategy(error_type: ErrorType, attempt_number: int) -> RecoveryStrategy:
    """
    Назначение:
        Чистая таблица (тип ошибки, номер попытки 1-based) -> стратегия.
        Неизвестные ошибки требуют ручного вмешательства.
    """
    entry = _STRATEGY_TABLE.get(error_type)
    if entry is None:
        return RecoveryStrategy.MANUAL_INTERVENTION
    fast_until, early, late = entry
    return early if attempt_number <= fast_until else late


def compute_retry_delay_ms(
    strategy: RecoveryStrategy,
    attempt_number: int,
    base_delay_ms: int,
    max_backoff_delay_ms: int,
    exponential: bool,
    dependency_delay_ms: int,
) -> int:
    """
    Назначение:
        Задержка перед повтором после попытки attempt_number.

    Контракт:
        - dependency_retry -> фиксированная dependency_delay_ms;
        - иначе min(base * 2^(attempt-1), max_backoff) (или base без экспоненты).
    """
    if strategy == RecoveryStrategy.DEPENDENCY_RETRY:
        return dependency_delay_ms
    return computeBackoffMs(attempt_number, base_delay_ms, max_backoff_delay_ms, exponential)
