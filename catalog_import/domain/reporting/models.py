from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

REPORT_STATUS_SUCCESS = "SUCCESS"
REPORT_STATUS_PARTIAL = "PARTIAL"
REPORT_STATUS_FAILED = "FAILED"


@dataclass
class ReportMeta:
    """
    Назначение:
        Шапка отчёта команды: кто, когда и над каким CSV работал.

    Поля items_limit/items_truncated описывают усечение списка rows,
    счётчики в JobReportSummary при этом полные.
    """

    run_id: str
    command: str
    started_at: str
    job_id: str | None = None
    csv_path: str | None = None
    mode: str | None = None
    finished_at: str | None = None
    duration_ms: int | None = None
    items_limit: int | None = None
    items_truncated: bool = False


@dataclass
class JobReportSummary:
    rows_total: int = 0
    rows_ok: int = 0
    rows_failed: int = 0
    rows_with_warnings: int = 0
    errors_total: int = 0
    warnings_total: int = 0
    by_status: dict[str, int] = field(default_factory=dict)
    # имя операции -> {"ok", "failed", "count"}
    ops: dict[str, dict[str, int]] = field(default_factory=dict)

    def bump_status(self, status: str) -> None:
        self.by_status[status] = self.by_status.get(status, 0) + 1

    def bump_op(self, name: str, ok: int, failed: int, count: int) -> None:
        counters = self.ops.setdefault(name, {"ok": 0, "failed": 0, "count": 0})
        counters["ok"] += ok
        counters["failed"] += failed
        counters["count"] += count


@dataclass(frozen=True)
class RowDiagnostic:
    severity: str
    code: str
    field: str | None
    message: str


@dataclass
class ReportRow:
    """Строка CSV, попавшая в отчёт: отклонённая, упавшая при записи или с предупреждениями."""

    status: str
    row_index: int | None = None
    diagnostics: list[RowDiagnostic] = field(default_factory=list)
    meta: dict[str, Any] = field(default_factory=dict)


@dataclass
class JobReport:
    status: str
    meta: ReportMeta
    summary: JobReportSummary
    items: list[ReportRow]
    context: dict[str, Any] = field(default_factory=dict)
