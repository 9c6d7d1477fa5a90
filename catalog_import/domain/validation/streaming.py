from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from functools import partial
from typing import Callable, Iterable, Iterator

from catalog_import.common.backoff import waitUntil
from catalog_import.common.cancellation import CancellationToken
from catalog_import.common.sanitize import (
    COMMAND_RE,
    SCRIPT_RE,
    SQL_RE,
    looksLikeFormula,
    stripControlChars,
    stripFormulaPrefix,
    stripPattern,
    truncateText,
)
from catalog_import.common.time import getDurationMs
from catalog_import.domain.error_codes import IssueSeverity
from catalog_import.domain.models import Batch, BatchMetadata, RawRecord, ValidatedRow, ValidationIssue
from catalog_import.domain.ports.import_ports import RowValidatorProtocol
from catalog_import.domain.recovery.dependencies import is_product_row
from catalog_import.domain.resources.batch_sizer import AdaptiveBatchSizer
from catalog_import.domain.resources.monitor import ResourceMonitor
from catalog_import.infra.logging.setup import getLibraryLogger, logEvent

FORMULA_RULE_ID = "CSV_INJECTION"
DUPLICATE_SKU_RULE_ID = "DUPLICATE_SKU"
DUPLICATE_HANDLE_RULE_ID = "DUPLICATE_HANDLE"


@dataclass(frozen=True)
class SanitizeRule:
    """Угроза в значении ячейки: detect находит, clean вырезает; замечание всегда critical."""

    rule_id: str
    rule_name: str
    message: str
    suggestion: str
    detect: Callable[[str], bool]
    clean: Callable[[str], str]


def _matches(pattern) -> Callable[[str], bool]:
    return lambda value: pattern.search(value) is not None


SANITIZE_RULES: tuple[SanitizeRule, ...] = (
    SanitizeRule(
        FORMULA_RULE_ID,
        "csv_injection",
        "Potential CSV injection detected",
        "Remove leading =, +, - or @ characters",
        looksLikeFormula,
        stripFormulaPrefix,
    ),
    SanitizeRule(
        "SCRIPT_INJECTION",
        "script_injection",
        "Script content detected",
        "Remove <script> blocks and javascript:/vbscript: links",
        _matches(SCRIPT_RE),
        partial(stripPattern, SCRIPT_RE),
    ),
    SanitizeRule(
        "COMMAND_INJECTION",
        "command_injection",
        "Shell command substitution detected",
        "Remove $(...) and backtick expressions",
        _matches(COMMAND_RE),
        partial(stripPattern, COMMAND_RE),
    ),
    SanitizeRule(
        "SQL_INJECTION",
        "sql_injection",
        "Potential SQL injection detected",
        "Remove SQL statements from the value",
        _matches(SQL_RE),
        partial(stripPattern, SQL_RE),
    ),
)


def sanitize_record(record: RawRecord) -> tuple[RawRecord, list[ValidationIssue]]:
    """
    Назначение:
        Очистка ячеек перед валидацией.

    Алгоритм:
        - управляющие символы (кроме \\t, \\n, \\r) удаляются без замечаний;
        - правила SANITIZE_RULES применяются по очереди к уже очищенному значению:
          формула, <script>/javascript:, $(...) и `...`, SQL-вставки;
        - каждое срабатывание даёт замечание critical, значение очищается.
    """
    issues: list[ValidationIssue] = []
    cleaned: dict[str, str | None] = {}
    for key, value in record.values.items():
        if value is None:
            cleaned[key] = None
            continue
        value = stripControlChars(value)
        for rule in SANITIZE_RULES:
            if not rule.detect(value):
                continue
            issues.append(
                ValidationIssue(
                    row_index=record.row_index,
                    rule_id=rule.rule_id,
                    rule_name=rule.rule_name,
                    severity=IssueSeverity.CRITICAL,
                    message=rule.message,
                    field=key,
                    suggestion=rule.suggestion,
                    value=truncateText(value, 200),
                )
            )
            value = rule.clean(value)
        cleaned[key] = value
    return RawRecord(row_index=record.row_index, values=cleaned), issues


class StreamingValidator:
    """
    Назначение/ответственность:
        Потоковая валидация: читает записи по порядку, санитизирует, валидирует
        и выпускает батчи, соблюдая давление памяти и свободные слоты.

    Контракт:
        - источник читается один раз, без полной буферизации;
        - батч закрывается, когда число потреблённых записей достигает размера
          от AdaptiveBatchSizer (размер фиксируется в начале батча), либо источник исчерпан;
        - строки с error/critical исключаются из Batch.rows, их замечания остаются в Batch.issues;
        - повтор SKU или handle товара среди принятых строк задания -> DUPLICATE_SKU / DUPLICATE_HANDLE,
          строки, пропущенные через skip, не учитываются;
        - перед выпуском батча ожидание (backoff) открытых ворот монитора и свободного слота;
        - отмена проверяется на границах батчей;
        - ошибки источника и валидатора пробрасываются вызывающему.

    Взаимодействия:
        - AdaptiveBatchSizer.record_performance вызывается после обработки батча потребителем.
    """

    def __init__(
        self,
        validator: RowValidatorProtocol,
        sizer: AdaptiveBatchSizer,
        monitor: ResourceMonitor,
        observability=None,
        logger: logging.Logger | None = None,
        run_id: str = "-",
        admission_initial_delay_ms: int = 50,
        admission_max_delay_ms: int = 2000,
    ):
        self.validator = validator
        self.sizer = sizer
        self.monitor = monitor
        self.observability = observability
        self.logger = logger or getLibraryLogger()
        self.run_id = run_id
        self.admission_initial_delay_ms = admission_initial_delay_ms
        self.admission_max_delay_ms = admission_max_delay_ms
        self.consumed_records = 0
        self.valid_rows = 0
        self.invalid_rows = 0
        # ключи принятых строк задания: sku -> row_index, handle товара -> row_index
        self._seen_skus: dict[str, int] = {}
        self._seen_handles: dict[str, int] = {}

    def iter_batches(
        self,
        source: Iterable[RawRecord],
        cancel: CancellationToken | None = None,
        start_batch_index: int = 0,
        skip: Callable[[int], bool] | None = None,
    ) -> Iterator[Batch]:
        token = cancel or CancellationToken()
        iterator = iter(source)
        batch_index = start_batch_index
        exhausted = False

        while not exhausted:
            if token.cancelled:
                logEvent(self.logger, logging.WARNING, self.run_id, "validate", "Validation stopped: job cancelled")
                return

            target_size = self.sizer.current_size(self.monitor.last_snapshot)
            started = time.monotonic()
            rows: list[ValidatedRow] = []
            issues: list[ValidationIssue] = []
            first_index: int | None = None
            last_index = 0
            consumed = 0
            invalid = 0

            while consumed < target_size:
                try:
                    record = next(iterator)
                except StopIteration:
                    exhausted = True
                    break
                if skip is not None and skip(record.row_index):
                    continue
                consumed += 1
                if first_index is None:
                    first_index = record.row_index
                last_index = record.row_index

                cleaned, row_issues = sanitize_record(record)
                validated, validation_issues = self.validator.validate(cleaned)
                row_issues.extend(validation_issues)
                accepted = validated is not None and not any(i.blocking for i in row_issues)
                if accepted:
                    duplicates = self._duplicate_issues(validated)
                    row_issues.extend(duplicates)
                    accepted = not any(i.blocking for i in duplicates)
                issues.extend(row_issues)
                if accepted:
                    self._register_keys(validated)
                    rows.append(validated)
                else:
                    invalid += 1

            if consumed == 0:
                return

            snapshot = self.monitor.last_snapshot
            batch = Batch(
                batch_index=batch_index,
                start_row_index=first_index or 0,
                end_row_index=last_index,
                rows=tuple(rows),
                issues=tuple(issues),
                metadata=BatchMetadata(
                    processing_time_ms=getDurationMs(started, time.monotonic()),
                    memory_used_mb=snapshot.used_mb if snapshot else 0.0,
                    consumed_records=consumed,
                ),
            )
            admitted = waitUntil(
                self.monitor.can_admit,
                cancel=token,
                initial_delay_ms=self.admission_initial_delay_ms,
                max_delay_ms=self.admission_max_delay_ms,
            )
            if not admitted:
                logEvent(
                    self.logger,
                    logging.WARNING,
                    self.run_id,
                    "validate",
                    f"Batch {batch_index} not admitted: job cancelled (rows {batch.start_row_index}-{batch.end_row_index})",
                )
                return

            self.consumed_records += consumed
            self.valid_rows += len(rows)
            self.invalid_rows += invalid
            if self.observability is not None:
                self.observability.record_row_processing(valid=len(rows), invalid=invalid)
                if invalid:
                    self.observability.record_error("validation", invalid)

            logEvent(
                self.logger,
                logging.DEBUG,
                self.run_id,
                "batch",
                f"Batch {batch_index} emitted: rows {batch.start_row_index}-{batch.end_row_index} "
                f"valid={len(rows)} invalid={invalid} size={target_size}",
            )
            yield batch

            duration_ms = getDurationMs(started, time.monotonic())
            self.sizer.record_performance(consumed, duration_ms, batch.metadata.memory_used_mb)
            batch_index += 1

    def _duplicate_issues(self, row: ValidatedRow) -> list[ValidationIssue]:
        """
        Назначение:
            Повторы внутри задания среди уже принятых строк.

        Контракт:
            - SKU, уже принятый другой строкой -> DUPLICATE_SKU (error, строка исключается);
            - handle строки товара, уже принятый другой строкой товара ->
              DUPLICATE_HANDLE (warning, строка обновит тот же товар).
        """
        issues: list[ValidationIssue] = []
        sku = row.get("sku")
        if sku and str(sku) in self._seen_skus:
            issues.append(
                ValidationIssue(
                    row_index=row.row_index,
                    rule_id=DUPLICATE_SKU_RULE_ID,
                    rule_name="duplicate_sku",
                    severity=IssueSeverity.ERROR,
                    message=f"SKU {sku} already used by row {self._seen_skus[str(sku)]}",
                    field="sku",
                    suggestion="Use a unique SKU per variant",
                    value=truncateText(str(sku), 200),
                )
            )
        handle = row.get("handle")
        if handle and is_product_row(row) and str(handle) in self._seen_handles:
            issues.append(
                ValidationIssue(
                    row_index=row.row_index,
                    rule_id=DUPLICATE_HANDLE_RULE_ID,
                    rule_name="duplicate_handle",
                    severity=IssueSeverity.WARNING,
                    message=f"Handle {handle} already used by row {self._seen_handles[str(handle)]}",
                    field="handle",
                    suggestion="Merge product rows or give each product its own handle",
                    value=truncateText(str(handle), 200),
                )
            )
        return issues

    def _register_keys(self, row: ValidatedRow) -> None:
        sku = row.get("sku")
        if sku:
            self._seen_skus.setdefault(str(sku), row.row_index)
        handle = row.get("handle")
        if handle and is_product_row(row):
            self._seen_handles.setdefault(str(handle), row.row_index)
