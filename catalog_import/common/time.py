from __future__ import annotations

import time
from datetime import datetime, timezone


def getNowIso() -> str:
    """Локальное время с offset, ISO 8601 (meta отчёта, история метрик)."""
    return datetime.now().astimezone().isoformat()


def getUtcNowIso() -> str:
    """UTC, ISO 8601 (timestamp в JSON-артефактах задания)."""
    return datetime.now(timezone.utc).isoformat()


def getNowMs() -> int:
    # epoch ms: метки попыток, dead letter и чекпоинтов
    return time.time_ns() // 1_000_000


def getDurationMs(startMonotonic: float, endMonotonic: float) -> int:
    """Разница двух time.monotonic() в целых миллисекундах (с отбрасыванием дробной части)."""
    return int((endMonotonic - startMonotonic) * 1000)
