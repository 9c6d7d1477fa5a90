from __future__ import annotations

from typing import Any, Iterable, Iterator, Mapping, Protocol, Sequence

from catalog_import.domain.models import RawRecord, ValidatedRow, ValidationIssue, WriteResult
from catalog_import.domain.recovery.models import RecoveryCheckpoint


class RecordSourceProtocol(Protocol):
    """
    Назначение:
        Упорядоченный одноразовый поток сырых записей.
    Контракт:
        - row_index возрастает, начиная с 1;
        - ошибки открытия/декодирования источника пробрасываются (фатальны для задания).
    """

    def __iter__(self) -> Iterator[RawRecord]: ...


class RowValidatorProtocol(Protocol):
    """
    Контракт (вход/выход):
        - validate(record) -> (ValidatedRow | None, issues)
        - ValidatedRow is None, если есть блокирующие замечания.
    """

    def validate(self, record: RawRecord) -> tuple[ValidatedRow | None, list[ValidationIssue]]: ...


class RowCheckProtocol(Protocol):
    """
    Контракт:
        Дополнительная проверка валидной строки перед записью.
        Замечание severity=critical делает запись строки невозможной (ошибка validation).
    """

    def check(self, row: ValidatedRow) -> list[ValidationIssue]: ...


class ColumnMappingResolverProtocol(Protocol):
    def resolve(
        self,
        headers: Sequence[str],
        sample_rows: Sequence[Mapping[str, str | None]],
        profile_id: str | None = None,
    ) -> dict[str, str]: ...


class DomainWriterProtocol(Protocol):
    """
    Контракт (вход/выход):
        - write(row) -> WriteResult при успехе;
        - иначе бросает классифицируемое исключение (DomainWriteError или любое
          исключение, тип/сообщение которого распознаёт classify_error).
        - writer должен быть потокобезопасным: вызывается из пула воркеров.
    """

    def write(self, row: ValidatedRow) -> WriteResult: ...


class ReferenceLookupProtocol(Protocol):
    """
    Контракт:
        exists(key) -> True, если внешняя сущность (collection:/category:/channel:/product:)
        уже существует в каталоге.
    """

    def exists(self, key: str) -> bool: ...


class ArtifactSinkProtocol(Protocol):
    """
    Контракт:
        publish(job_id, kind, payload) -> url артефакта задания job_id.
        kind: validation_report, error_rows, result_summary или dead_letter;
        payload: ArtifactPayload, формат (json|csv) задан в payload.fmt.
        Ошибка публикации пробрасывается вызывающему.
    """

    def publish(self, job_id: str, kind: str, payload: Any) -> str: ...


class CheckpointStoreProtocol(Protocol):
    def save(self, checkpoint: RecoveryCheckpoint) -> None: ...

    def get(self, checkpoint_id: str) -> RecoveryCheckpoint | None: ...

    def latest(self, job_id: str) -> RecoveryCheckpoint | None: ...

    def list(self, job_id: str | None = None) -> Iterable[RecoveryCheckpoint]: ...
