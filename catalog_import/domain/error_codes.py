from __future__ import annotations

from enum import Enum


class ErrorType(str, Enum):
    """
    Назначение:
        Таксономия ошибок записи строки, по которой выбирается стратегия восстановления.
    """

    VALIDATION = "validation"
    DATABASE = "database"
    NETWORK = "network"
    MEMORY = "memory"
    BUSINESS_LOGIC = "business_logic"
    DEPENDENCY = "dependency"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: "ErrorType | str | None") -> "ErrorType":
        if isinstance(value, ErrorType):
            return value
        try:
            return cls((value or "").strip().lower())
        except ValueError:
            return cls.UNKNOWN


class FailureSeverity(str, Enum):
    """
    Назначение:
        Серьёзность сбоя строки. Порядок значим для приоритизации восстановления.
    """

    RECOVERABLE = "recoverable"
    CRITICAL = "critical"
    PERMANENT = "permanent"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    FailureSeverity.RECOVERABLE: 0,
    FailureSeverity.CRITICAL: 1,
    FailureSeverity.PERMANENT: 2,
}


class RecoveryStrategy(str, Enum):
    IMMEDIATE_RETRY = "immediate_retry"
    DELAYED_RETRY = "delayed_retry"
    DEPENDENCY_RETRY = "dependency_retry"
    PARTIAL_DATA_RECOVERY = "partial_data_recovery"
    MANUAL_INTERVENTION = "manual_intervention"


class IssueSeverity(str, Enum):
    """Серьёзность замечания валидации строки."""

    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"

    @property
    def blocking(self) -> bool:
        return self in (IssueSeverity.ERROR, IssueSeverity.CRITICAL)
