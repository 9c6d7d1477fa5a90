from __future__ import annotations

from dataclasses import asdict
from typing import Any, Iterable

from catalog_import.common.time import getNowIso
from catalog_import.domain.models import ValidationIssue
from catalog_import.domain.reporting.models import (
    REPORT_STATUS_FAILED,
    REPORT_STATUS_PARTIAL,
    REPORT_STATUS_SUCCESS,
    JobReport,
    JobReportSummary,
    ReportMeta,
    ReportRow,
    RowDiagnostic,
)

# строки с этими статусами не дошли до каталога
FAILED_ROW_STATUSES = frozenset({"FAILED", "INVALID", "DEAD_LETTERED"})
WRITE_FAILURE_STATUSES = frozenset({"FAILED", "DEAD_LETTERED"})


class ReportCollector:
    """
    Назначение/ответственность:
        Накопление отчёта одного запуска CLI (reports/report_<command>_<runId>.json).

    Контракт:
        - add_item считает каждую строку в summary, даже если сама строка
          не попала в items из-за items_limit (тогда meta.items_truncated=True);
        - успешные строки без предупреждений в items не сохраняются;
        - итоговый статус: SUCCESS без отказов, PARTIAL при смеси,
          FAILED когда ни одна строка не прошла.
    """

    def __init__(self, run_id: str, command: str, started_at: str | None = None) -> None:
        self.meta = ReportMeta(run_id=run_id, command=command, started_at=started_at or getNowIso())
        self.summary = JobReportSummary()
        self.items: list[ReportRow] = []
        self.context: dict[str, Any] = {}
        self.status: str | None = None

    def set_context(self, name: str, value: dict[str, Any]) -> None:
        self.context[name] = value

    def add_op(self, name: str, *, ok: int = 0, failed: int = 0, count: int = 0) -> None:
        self.summary.bump_op(name, ok, failed, count)

    def add_item(
        self,
        *,
        status: str,
        row_index: int | None = None,
        issues: Iterable[ValidationIssue] | None = None,
        message: str | None = None,
        meta: dict[str, Any] | None = None,
    ) -> None:
        issues = list(issues or ())
        blocking = sum(1 for i in issues if i.blocking)
        warnings = len(issues) - blocking
        failed = status in FAILED_ROW_STATUSES

        summary = self.summary
        summary.rows_total += 1
        summary.bump_status(status)
        if failed:
            summary.rows_failed += 1
        else:
            summary.rows_ok += 1
        summary.errors_total += blocking
        summary.warnings_total += warnings
        if warnings:
            summary.rows_with_warnings += 1
        # ошибка записи без issues валидации считается одной ошибкой
        if message and not blocking and status in WRITE_FAILURE_STATUSES:
            summary.errors_total += 1

        if not failed and not warnings:
            return
        limit = self.meta.items_limit
        if limit is not None and len(self.items) >= limit:
            self.meta.items_truncated = True
            return

        diagnostics = [
            RowDiagnostic(severity=i.severity.value, code=i.rule_id, field=i.field, message=i.message) for i in issues
        ]
        if not diagnostics and message:
            diagnostics = [RowDiagnostic(severity="error", code=status, field=None, message=message)]
        self.items.append(ReportRow(status=status, row_index=row_index, diagnostics=diagnostics, meta=dict(meta or {})))

    def finish(self, finished_at: str | None = None, duration_ms: int | None = None) -> None:
        self.meta.finished_at = finished_at or getNowIso()
        self.meta.duration_ms = duration_ms
        if self.status is None:
            self.status = self.overall_status()

    def overall_status(self) -> str:
        if not self.summary.rows_failed:
            return REPORT_STATUS_SUCCESS
        return REPORT_STATUS_PARTIAL if self.summary.rows_ok else REPORT_STATUS_FAILED

    def build(self) -> JobReport:
        return JobReport(
            status=self.status or self.overall_status(),
            meta=self.meta,
            summary=self.summary,
            items=self.items,
            context=self.context,
        )


def asdict_report(report: JobReport) -> dict[str, Any]:
    """JobReport -> dict для json.dump; порядок ключей: status, meta, summary, items, context."""
    return asdict(report)
