from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Iterable, Iterator

from catalog_import.common.cancellation import CancellationToken
from catalog_import.common.run_id import generate_run_id
from catalog_import.common.time import getDurationMs
from catalog_import.config.config import ImportConfig
from catalog_import.domain.mapping.column_mapper import ColumnMappingResolver, MappedRecordSource
from catalog_import.domain.metrics.observability import ImportObservability
from catalog_import.domain.models import Batch, RawRecord, RowStatus, ValidatedRow, ValidationIssue, WriteResult
from catalog_import.domain.ports.import_ports import (
    ArtifactSinkProtocol,
    CheckpointStoreProtocol,
    DomainWriterProtocol,
    RecordSourceProtocol,
    ReferenceLookupProtocol,
    RowCheckProtocol,
    RowValidatorProtocol,
)
from catalog_import.domain.recovery.manager import RecoveryManager
from catalog_import.domain.recovery.models import RecoveryCheckpoint
from catalog_import.domain.reporting.artifacts import (
    DEAD_LETTER,
    ERROR_ROWS,
    RESULT_SUMMARY,
    VALIDATION_REPORT,
    IssueCollector,
    OutcomeCollector,
    build_dead_letter,
    build_error_rows,
    build_result_summary,
    build_validation_report,
)
from catalog_import.domain.resources.batch_sizer import AdaptiveBatchSizer
from catalog_import.domain.resources.monitor import ResourceMonitor
from catalog_import.domain.resources.slot_pool import SlotPool
from catalog_import.domain.validation.product_rules import ProductRowValidator
from catalog_import.domain.validation.streaming import StreamingValidator
from catalog_import.errors import AppError, ConfigError, ImportFatalError
from catalog_import.infra.logging.setup import getLibraryLogger, logEvent
from catalog_import.infra.sources.csv_reader import CsvFormatError

INITIAL_CONCURRENCY = 5


@dataclass
class ImportJobResult:
    """
    Назначение:
        Итог задания импорта. Всегда содержит счётчики; ссылки на опубликованные
        артефакты в artifacts, причины неопубликованных в artifact_errors.
    """

    job_id: str
    processed_rows: int = 0
    valid_rows: int = 0
    invalid_rows: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    dead_lettered: int = 0
    cancelled: bool = False
    duration_ms: int = 0
    artifacts: dict[str, str] = field(default_factory=dict)
    artifact_errors: dict[str, str] = field(default_factory=dict)
    error_distribution: dict[str, int] = field(default_factory=dict)
    last_checkpoint_id: str | None = None

    @property
    def has_row_failures(self) -> bool:
        return bool(self.invalid_rows or self.failed or self.dead_lettered)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class DryRunWriter:
    """Writer режима dry_run: ничего не пишет, строка считается пропущенной."""

    def write(self, row: ValidatedRow) -> WriteResult:
        return WriteResult(handle=row.get("handle"), status=RowStatus.SKIPPED.value)


@dataclass
class ImportDependencies:
    """
    Назначение:
        Внешние зависимости задания. Всё, кроме writer в режиме execute, опционально.
    """

    writer: DomainWriterProtocol | None = None
    validator: RowValidatorProtocol | None = None
    row_check: RowCheckProtocol | None = None
    lookup: ReferenceLookupProtocol | None = None
    artifact_sink: ArtifactSinkProtocol | None = None
    checkpoint_store: CheckpointStoreProtocol | None = None
    observability: ImportObservability | None = None
    mapping_resolver: ColumnMappingResolver | None = None
    memory_sampler: Callable[[], float] | None = None


class _GuardedValidator:
    """Сбой самого валидатора (а не замечания по строке) фатален для задания."""

    def __init__(self, inner: RowValidatorProtocol):
        self.inner = inner

    def validate(self, record: RawRecord) -> tuple[ValidatedRow | None, list[ValidationIssue]]:
        try:
            return self.inner.validate(record)
        except AppError:
            raise
        except Exception as exc:
            raise ImportFatalError(
                f"Row validator failed on row {record.row_index}: {exc}",
                code="VALIDATOR_ERROR",
                details={"row_index": record.row_index},
            ) from exc


def _guarded_source(source: Iterable[RawRecord], max_rows: int | None) -> Iterator[RawRecord]:
    """
    Назначение:
        Переводит ошибки чтения источника в ImportFatalError и применяет лимит max_rows.
    """
    try:
        for seen, record in enumerate(source, start=1):
            if max_rows is not None and seen > max_rows:
                raise ImportFatalError(
                    f"Row limit exceeded: source has more than {max_rows} rows",
                    code="MAX_ROWS_EXCEEDED",
                    details={"max_rows": max_rows},
                )
            yield record
    except CsvFormatError as exc:
        raise ImportFatalError(f"CSV format error: {exc}", code="SOURCE_FORMAT") from exc
    except UnicodeDecodeError as exc:
        raise ImportFatalError(f"Source decoding error: {exc}", code="SOURCE_DECODE") from exc
    except OSError as exc:
        raise ImportFatalError(f"Source read error: {exc}", code="SOURCE_READ") from exc


class ImportRunUseCase:
    """
    Назначение/ответственность:
        Исполнение одного задания импорта: маппинг колонок -> потоковая валидация
        под контролем монитора ресурсов -> менеджер восстановления -> артефакты.

    Контракт:
        - ошибки строк не прерывают задание, они попадают в счётчики и артефакты;
        - фатальные ошибки (источник, валидатор, конфигурация, max_rows) -> ImportFatalError/ConfigError;
        - при resume_from строки, учтённые чекпоинтом, из источника повторно не обрабатываются,
          а failed_rows чекпоинта исполняются заново до чтения новых строк.

    Взаимодействия:
        - report (ReportCollector CLI), если передан, получает невалидные и неудачные строки.
    """

    def __init__(
        self,
        config: ImportConfig,
        deps: ImportDependencies | None = None,
        logger: logging.Logger | None = None,
    ):
        self.config = config
        self.deps = deps or ImportDependencies()
        self.logger = logger or getLibraryLogger()

    def run(
        self,
        source: RecordSourceProtocol | Iterable[RawRecord],
        job_id: str | None = None,
        cancel: CancellationToken | None = None,
        report=None,
        resume_from: RecoveryCheckpoint | None = None,
    ) -> ImportJobResult:
        config = self.config.validate()
        job_id = job_id or generate_run_id()
        token = cancel or CancellationToken()
        started = time.monotonic()

        writer: DomainWriterProtocol | None = DryRunWriter() if config.dry_run else self.deps.writer
        if writer is None:
            raise ImportFatalError("Domain writer is required in execute mode", code="WRITER_MISSING")
        resolver = self.deps.mapping_resolver or ColumnMappingResolver(explicit=config.column_mapping)
        if config.mapping_profile_id and config.mapping_profile_id not in resolver.profiles:
            raise ConfigError(f"Unknown mapping profile: {config.mapping_profile_id}", "mapping_profile_id")

        own_observability = self.deps.observability is None
        observability = self.deps.observability or ImportObservability(
            interval_ms=config.metrics_interval_ms,
            logger=self.logger,
            run_id=job_id,
        )
        if own_observability:
            observability.start()
        observability.record_job_event("created", job_id)

        pool = SlotPool(max_concurrent=min(INITIAL_CONCURRENCY, config.max_concurrency), cap=config.max_concurrency)
        monitor = ResourceMonitor(
            config,
            pool=pool,
            sampler=self.deps.memory_sampler,
            observability=observability,
            logger=self.logger,
            run_id=job_id,
        )
        sizer = AdaptiveBatchSizer(config.batch_initial_size, config.batch_min_size, config.batch_max_size)
        issues = IssueCollector(items_limit=config.report_items_limit)
        outcomes = OutcomeCollector(items_limit=config.report_items_limit)
        manager = RecoveryManager(
            config,
            job_id,
            pool,
            lookup=self.deps.lookup,
            checkpoint_store=self.deps.checkpoint_store,
            observability=observability,
            logger=self.logger,
            cancel=token,
            outcome_sink=outcomes,
        )
        validator = StreamingValidator(
            _GuardedValidator(self.deps.validator or ProductRowValidator()),
            sizer,
            monitor,
            observability=observability,
            logger=self.logger,
            run_id=job_id,
        )
        mapped = MappedRecordSource(_guarded_source(source, config.max_rows), resolver, config.mapping_profile_id)

        if report is not None:
            report.meta.job_id = job_id
            report.meta.mode = config.mode.value
            report.meta.items_limit = config.report_items_limit

        logEvent(
            self.logger,
            logging.INFO,
            job_id,
            "import",
            f"Import started: mode={config.mode.value} max_memory_mb={config.max_memory_mb} "
            f"resume_from={resume_from.id if resume_from else None}",
        )

        skip = None
        start_batch_index = 0
        try:
            monitor.tick()
            monitor.start()
            observability.record_job_event("started", job_id)

            if resume_from is not None:
                manager.restore(resume_from)
                settled = set(resume_from.settled_row_indices)
                last_row_index = resume_from.last_row_index
                skip = lambda idx: idx <= last_row_index or idx in settled
                start_batch_index = resume_from.batch_index + 1
                manager.recover_from_checkpoint(resume_from.id, writer, self.deps.row_check)

            for batch in validator.iter_batches(mapped, cancel=token, start_batch_index=start_batch_index, skip=skip):
                self._process_batch(batch, manager, writer, issues, observability, report)

            if token.cancelled:
                manager.cancel()
            manager.drain()
            if token.cancelled:
                manager.create_checkpoint()
        except Exception as exc:
            if isinstance(exc, ImportFatalError) and exc.code.startswith("SOURCE_"):
                observability.record_error("parsing")
            observability.record_job_event("failed", job_id)
            manager.cancel()
            if own_observability:
                observability.close()
            raise
        finally:
            monitor.stop()
            manager.close()

        result = self._build_result(job_id, manager, outcomes, token, started)
        self._publish_artifacts(job_id, config, issues, outcomes, manager, result)
        self._fill_report(report, result, outcomes)

        observability.record_job_duration(result.duration_ms)
        observability.record_job_event("completed", job_id)
        if own_observability:
            observability.close()

        logEvent(
            self.logger,
            logging.INFO,
            job_id,
            "import",
            f"Import finished: processed={result.processed_rows} valid={result.valid_rows} "
            f"invalid={result.invalid_rows} created={result.created} updated={result.updated} "
            f"skipped={result.skipped} failed={result.failed} dead_lettered={result.dead_lettered} "
            f"cancelled={result.cancelled} duration_ms={result.duration_ms}",
        )
        return result

    def _process_batch(
        self,
        batch: Batch,
        manager: RecoveryManager,
        writer: DomainWriterProtocol,
        issues: IssueCollector,
        observability: ImportObservability,
        report,
    ) -> None:
        issues.add(batch.issues)
        if report is not None:
            by_row: dict[int, list[ValidationIssue]] = {}
            for issue in batch.issues:
                by_row.setdefault(issue.row_index, []).append(issue)
            for row_index in batch.invalid_row_indices:
                report.add_item(status="INVALID", row_index=row_index, issues=by_row.get(row_index, []))

        started = time.monotonic()
        result = manager.process_batch(batch, writer, self.deps.row_check)
        elapsed_ms = getDurationMs(started, time.monotonic())
        consumed = batch.metadata.consumed_records or len(batch.rows)
        if elapsed_ms > 0:
            observability.record_processing_rate(consumed * 1000.0 / elapsed_ms)
        logEvent(
            self.logger,
            logging.DEBUG,
            manager.job_id,
            "import",
            f"Batch {batch.batch_index} done in {elapsed_ms} ms: ok={result.recovered_rows} "
            f"failed={result.permanent_failures} dead_letter={len(result.dead_letter_rows)}",
        )

    @staticmethod
    def _build_result(
        job_id: str,
        manager: RecoveryManager,
        outcomes: OutcomeCollector,
        token: CancellationToken,
        started: float,
    ) -> ImportJobResult:
        totals = manager.totals()
        checkpoints = manager.checkpoints()
        return ImportJobResult(
            job_id=job_id,
            processed_rows=totals.processed_rows,
            valid_rows=totals.processed_rows - totals.invalid_rows,
            invalid_rows=totals.invalid_rows,
            created=totals.created,
            updated=totals.updated,
            skipped=totals.skipped,
            failed=totals.failed,
            dead_lettered=totals.dead_lettered,
            cancelled=token.cancelled,
            duration_ms=getDurationMs(started, time.monotonic()),
            error_distribution=totals.error_distribution,
            last_checkpoint_id=checkpoints[-1].id if checkpoints else None,
        )

    def _publish_artifacts(
        self,
        job_id: str,
        config: ImportConfig,
        issues: IssueCollector,
        outcomes: OutcomeCollector,
        manager: RecoveryManager,
        result: ImportJobResult,
    ) -> None:
        """
        Публикует четыре артефакта задания. Сбой одного артефакта не отменяет
        остальные и итог задания: URL не попадает в result.artifacts,
        причина пишется в result.artifact_errors и в лог.
        """
        sink = self.deps.artifact_sink
        if sink is None:
            return
        configuration = {
            "dry_run": config.dry_run,
            "mode": config.mode.value,
            "max_retries": config.max_retries,
            "dead_letter_threshold": config.dead_letter_threshold,
            "mapping_profile_id": config.mapping_profile_id,
        }
        builders = (
            (VALIDATION_REPORT, lambda: build_validation_report(job_id, issues, result.processed_rows, configuration)),
            (ERROR_ROWS, lambda: build_error_rows(issues)),
            (RESULT_SUMMARY, lambda: build_result_summary(outcomes)),
            (DEAD_LETTER, lambda: build_dead_letter(job_id, manager.dead_letter_entries(), config.report_items_limit)),
        )
        for kind, build in builders:
            try:
                result.artifacts[f"{kind}_url"] = sink.publish(job_id, kind, build())
            except Exception as exc:
                result.artifact_errors[kind] = f"{exc.__class__.__name__}: {exc}"
                logEvent(self.logger, logging.ERROR, job_id, "artifacts", f"Artifact {kind} not published: {exc}")

    @staticmethod
    def _fill_report(report, result: ImportJobResult, outcomes: OutcomeCollector) -> None:
        if report is None:
            return
        for outcome in outcomes.outcomes():
            if outcome.status in (RowStatus.FAILED, RowStatus.DEAD_LETTERED):
                report.add_item(
                    status=outcome.status.value.upper(),
                    row_index=outcome.row_index,
                    message=outcome.message,
                )
        report.summary.rows_total = result.processed_rows
        report.summary.rows_ok = result.created + result.updated + result.skipped
        report.summary.rows_failed = result.invalid_rows + result.failed + result.dead_lettered
        report.add_op("write", ok=report.summary.rows_ok, failed=result.failed + result.dead_lettered)
        report.set_context("result", result.to_dict())


def run_import(
    source: Iterable[RawRecord],
    config: ImportConfig,
    deps: ImportDependencies | None = None,
    job_id: str | None = None,
    cancel: CancellationToken | None = None,
    logger: logging.Logger | None = None,
) -> ImportJobResult:
    """Точка входа библиотеки: одно задание импорта из потока сырых записей."""
    return ImportRunUseCase(config, deps, logger).run(source, job_id=job_id, cancel=cancel)
