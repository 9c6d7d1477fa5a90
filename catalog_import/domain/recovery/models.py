from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from catalog_import.domain.error_codes import ErrorType, FailureSeverity, RecoveryStrategy
from catalog_import.domain.models import ValidatedRow


@dataclass(frozen=True)
class AttemptRecord:
    attempt_number: int
    timestamp_ms: int
    error: str
    error_type: ErrorType
    strategy: RecoveryStrategy
    duration_ms: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "attempt_number": self.attempt_number,
            "timestamp_ms": self.timestamp_ms,
            "error": self.error,
            "error_type": self.error_type.value,
            "strategy": self.strategy.value,
            "duration_ms": self.duration_ms,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AttemptRecord":
        return cls(
            attempt_number=int(data["attempt_number"]),
            timestamp_ms=int(data["timestamp_ms"]),
            error=str(data.get("error") or ""),
            error_type=ErrorType.parse(data.get("error_type")),
            strategy=RecoveryStrategy(data["strategy"]),
            duration_ms=int(data.get("duration_ms") or 0),
        )


@dataclass
class FailedRow:
    """
    Назначение:
        Активная неудачная строка с историей попыток.

    Инварианты/гарантии:
        - attempts только дополняется;
        - error_type/severity/last_error отражают последнюю попытку.
    """

    row_index: int
    row: ValidatedRow
    dependencies: frozenset[str]
    attempts: list[AttemptRecord] = field(default_factory=list)
    last_error: str = ""
    error_type: ErrorType = ErrorType.UNKNOWN
    severity: FailureSeverity = FailureSeverity.CRITICAL

    @property
    def attempt_count(self) -> int:
        return len(self.attempts)

    @property
    def last_strategy(self) -> RecoveryStrategy | None:
        return self.attempts[-1].strategy if self.attempts else None

    def snapshot(self) -> "FailedRow":
        return FailedRow(
            row_index=self.row_index,
            row=self.row,
            dependencies=self.dependencies,
            attempts=list(self.attempts),
            last_error=self.last_error,
            error_type=self.error_type,
            severity=self.severity,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "row_index": self.row_index,
            "row": self.row.to_dict(),
            "dependencies": sorted(self.dependencies),
            "attempts": [a.to_dict() for a in self.attempts],
            "last_error": self.last_error,
            "error_type": self.error_type.value,
            "severity": self.severity.value,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FailedRow":
        row_index = int(data["row_index"])
        return cls(
            row_index=row_index,
            row=ValidatedRow(row_index, data.get("row") or {}),
            dependencies=frozenset(data.get("dependencies") or ()),
            attempts=[AttemptRecord.from_dict(a) for a in data.get("attempts") or []],
            last_error=str(data.get("last_error") or ""),
            error_type=ErrorType.parse(data.get("error_type")),
            severity=FailureSeverity(data.get("severity") or FailureSeverity.CRITICAL.value),
        )


@dataclass(frozen=True)
class DeadLetterEntry:
    """
    Назначение:
        Терминальная запись мёртвой очереди. Автоматически не повторяется.
    """

    failed_row: FailedRow
    dead_lettered_at_ms: int
    reason: str

    @property
    def row_index(self) -> int:
        return self.failed_row.row_index

    def to_dict(self) -> dict[str, Any]:
        data = self.failed_row.to_dict()
        data["dead_lettered_at_ms"] = self.dead_lettered_at_ms
        data["reason"] = self.reason
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DeadLetterEntry":
        return cls(
            failed_row=FailedRow.from_dict(data),
            dead_lettered_at_ms=int(data.get("dead_lettered_at_ms") or 0),
            reason=str(data.get("reason") or ""),
        )


@dataclass(frozen=True)
class RecoveryCheckpoint:
    """
    Назначение:
        Неизменяемый снимок прогресса задания.

    Контракт возобновления:
        - строки с индексом <= last_row_index и из settled_row_indices уже учтены
          и повторно из источника не читаются;
        - повторно исполняются только строки из failed_rows;
        - successful_rows никогда не исполняются повторно.
    """

    id: str
    job_id: str
    timestamp_ms: int
    batch_index: int
    processed_rows: int
    successful_rows: int
    invalid_rows: int
    last_row_index: int
    failed_rows: tuple[FailedRow, ...] = ()
    dependencies: dict[int, list[str]] = field(default_factory=dict)
    satisfied_keys: tuple[str, ...] = ()
    dead_letter: tuple[DeadLetterEntry, ...] = ()
    settled_row_indices: tuple[int, ...] = ()
    status_counts: dict[str, int] = field(default_factory=dict)
    error_distribution: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "job_id": self.job_id,
            "timestamp_ms": self.timestamp_ms,
            "batch_index": self.batch_index,
            "processed_rows": self.processed_rows,
            "successful_rows": self.successful_rows,
            "invalid_rows": self.invalid_rows,
            "last_row_index": self.last_row_index,
            "failed_rows": [r.to_dict() for r in self.failed_rows],
            "dependencies": {str(k): list(v) for k, v in self.dependencies.items()},
            "satisfied_keys": list(self.satisfied_keys),
            "dead_letter": [d.to_dict() for d in self.dead_letter],
            "settled_row_indices": list(self.settled_row_indices),
            "status_counts": dict(self.status_counts),
            "metadata": {"error_distribution": dict(self.error_distribution)},
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RecoveryCheckpoint":
        metadata = data.get("metadata") or {}
        return cls(
            id=str(data["id"]),
            job_id=str(data["job_id"]),
            timestamp_ms=int(data["timestamp_ms"]),
            batch_index=int(data["batch_index"]),
            processed_rows=int(data["processed_rows"]),
            successful_rows=int(data["successful_rows"]),
            invalid_rows=int(data.get("invalid_rows") or 0),
            last_row_index=int(data.get("last_row_index") or 0),
            failed_rows=tuple(FailedRow.from_dict(r) for r in data.get("failed_rows") or []),
            dependencies={int(k): list(v) for k, v in (data.get("dependencies") or {}).items()},
            satisfied_keys=tuple(data.get("satisfied_keys") or ()),
            dead_letter=tuple(DeadLetterEntry.from_dict(d) for d in data.get("dead_letter") or []),
            settled_row_indices=tuple(int(i) for i in data.get("settled_row_indices") or ()),
            status_counts={str(k): int(v) for k, v in (data.get("status_counts") or {}).items()},
            error_distribution={str(k): int(v) for k, v in (metadata.get("error_distribution") or {}).items()},
        )


@dataclass
class RecoveryResult:
    """
    Назначение:
        Итог вызова process_batch / recover_from_checkpoint.

    Поля:
        recovered_rows: строки, успешно записанные в рамках вызова
        permanent_failures: строки, оставшиеся failed без дальнейших повторов
        dead_letter_rows: индексы строк, переведённых в мёртвую очередь
        retry_pending: строки, ожидающие повтора в планировщике на момент возврата
    """

    recovered_rows: int = 0
    permanent_failures: int = 0
    dead_letter_rows: list[int] = field(default_factory=list)
    retry_pending: int = 0
    duration_ms: int = 0

    @property
    def success(self) -> bool:
        return self.permanent_failures == 0 and not self.dead_letter_rows

    def merge(self, other: "RecoveryResult") -> None:
        self.recovered_rows += other.recovered_rows
        self.permanent_failures += other.permanent_failures
        self.dead_letter_rows.extend(other.dead_letter_rows)
        self.retry_pending = other.retry_pending
        self.duration_ms += other.duration_ms
