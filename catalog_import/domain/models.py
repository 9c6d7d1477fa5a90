from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping

from catalog_import.domain.error_codes import IssueSeverity


@dataclass
class RawRecord:
    """
    Назначение:
        Сырая строка источника: колонка -> строковое значение.

    Инварианты/гарантии:
        - row_index 1-based, в порядке источника (строка данных, без заголовка).
    """

    row_index: int
    values: dict[str, str | None]


@dataclass(frozen=True)
class ValidationIssue:
    """
    Назначение:
        Замечание валидатора, привязанное к номеру строки.
    """

    row_index: int
    rule_id: str
    rule_name: str
    severity: IssueSeverity
    message: str
    field: str | None = None
    suggestion: str | None = None
    value: str | None = None

    @property
    def blocking(self) -> bool:
        return self.severity.blocking


class ValidatedRow:
    """
    Назначение/ответственность:
        Типизированная строка, прошедшая валидацию. Неизменяема.

    Инварианты/гарантии:
        - values доступны только на чтение (MappingProxyType).
        - row_index совпадает с исходным RawRecord.row_index.
    """

    __slots__ = ("_row_index", "_values")

    def __init__(self, row_index: int, values: Mapping[str, Any]):
        object.__setattr__(self, "_row_index", row_index)
        object.__setattr__(self, "_values", MappingProxyType(dict(values)))

    def __setattr__(self, name: str, value: Any) -> None:
        raise AttributeError("ValidatedRow is immutable")

    @property
    def row_index(self) -> int:
        return self._row_index

    @property
    def values(self) -> Mapping[str, Any]:
        return self._values

    def get(self, key: str, default: Any = None) -> Any:
        return self._values.get(key, default)

    def to_dict(self) -> dict[str, Any]:
        return dict(self._values)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ValidatedRow):
            return NotImplemented
        return self._row_index == other._row_index and dict(self._values) == dict(other._values)

    def __hash__(self) -> int:
        return hash(self._row_index)

    def __repr__(self) -> str:
        return f"ValidatedRow(row_index={self._row_index}, values={dict(self._values)!r})"


@dataclass(frozen=True)
class BatchMetadata:
    processing_time_ms: int
    memory_used_mb: float
    consumed_records: int = 0


@dataclass(frozen=True)
class Batch:
    """
    Назначение:
        Порция строк, выпущенная потоковым валидатором.

    Инварианты/гарантии:
        - rows содержит только строки без блокирующих замечаний (error/critical).
        - issues содержит замечания всех строк диапазона, включая исключённые.
        - start_row_index..end_row_index покрывает все потреблённые записи.
    """

    batch_index: int
    start_row_index: int
    end_row_index: int
    rows: tuple[ValidatedRow, ...]
    issues: tuple[ValidationIssue, ...]
    metadata: BatchMetadata

    @property
    def invalid_row_indices(self) -> list[int]:
        return sorted({issue.row_index for issue in self.issues if issue.blocking})


@dataclass(frozen=True)
class MemorySnapshot:
    """
    Назначение:
        Снимок потребления памяти процесса. Пересчитывается на каждом тике.
    """

    used_mb: float
    max_mb: float
    percentage: float
    is_warning: bool
    is_critical: bool
    should_apply_backpressure: bool


@dataclass(frozen=True)
class WriteResult:
    """Результат успешной записи строки доменным writer-ом."""

    entity_id: str | None = None
    handle: str | None = None
    status: str = "created"
    variant_skus: tuple[str, ...] = ()


class RowStatus(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    SKIPPED = "skipped"
    FAILED = "failed"
    DEAD_LETTERED = "dead_lettered"


@dataclass
class RowOutcome:
    """
    Назначение:
        Итоговый статус строки для result_summary.
    """

    row_index: int
    status: RowStatus
    entity_id: str | None = None
    handle: str | None = None
    message: str | None = None
    variant_skus: tuple[str, ...] = field(default_factory=tuple)
