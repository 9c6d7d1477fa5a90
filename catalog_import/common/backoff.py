from __future__ import annotations

from typing import Callable

from catalog_import.common.cancellation import CancellationToken


def computeBackoffMs(
    attempt: int,
    base_delay_ms: int,
    max_delay_ms: int,
    exponential: bool = True,
) -> int:
    """
    Назначение:
        Задержка повтора для попытки attempt (1-based).

    Алгоритм:
        - exponential: min(base * 2^(attempt-1), max)
        - иначе: min(base, max)
    """
    if attempt < 1:
        attempt = 1
    if not exponential:
        return min(base_delay_ms, max_delay_ms)
    return min(base_delay_ms * (2 ** (attempt - 1)), max_delay_ms)


def waitUntil(
    predicate: Callable[[], bool],
    cancel: CancellationToken | None = None,
    initial_delay_ms: int = 50,
    max_delay_ms: int = 2000,
    sleep: Callable[[float], bool] | None = None,
) -> bool:
    """
    Назначение:
        Опрос условия с экспоненциальной паузой между попытками.

    Контракт:
        - возвращает True, как только predicate() == True;
        - возвращает False, если задание отменено;
        - пауза растёт вдвое до max_delay_ms.
    """
    token = cancel or CancellationToken()
    pause = sleep or token.wait
    delay_ms = max(1, initial_delay_ms)
    while True:
        if token.cancelled:
            return False
        if predicate():
            return True
        if pause(delay_ms / 1000.0) and token.cancelled:
            return False
        delay_ms = min(delay_ms * 2, max_delay_ms)
