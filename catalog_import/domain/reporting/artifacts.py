from __future__ import annotations

import json
import threading
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Iterable

from catalog_import.common.time import getUtcNowIso
from catalog_import.domain.error_codes import IssueSeverity
from catalog_import.domain.models import RowOutcome, RowStatus, ValidationIssue
from catalog_import.domain.recovery.models import DeadLetterEntry

VALIDATION_REPORT = "validation_report"
ERROR_ROWS = "error_rows"
RESULT_SUMMARY = "result_summary"
DEAD_LETTER = "dead_letter"

ERROR_ROWS_COLUMNS = ("original_row_index", "field", "error", "error_code", "suggestion", "original_value")
RESULT_SUMMARY_COLUMNS = ("row_index", "status", "product_id", "product_handle", "variant_skus", "message")

COMMON_ISSUES_LIMIT = 10
AFFECTED_ROWS_LIMIT = 10


@dataclass(frozen=True)
class ArtifactPayload:
    """
    Назначение:
        Готовое к публикации содержимое артефакта.

    Контракт:
        - fmt == "json": data: сериализуемый в JSON объект;
        - fmt == "csv": columns + rows (список словарей по columns).
    """

    kind: str
    fmt: str
    data: Any = None
    columns: tuple[str, ...] = ()
    rows: tuple[dict[str, Any], ...] = ()
    truncated: bool = False

    @property
    def file_name(self) -> str:
        return f"{self.kind}.{self.fmt}"


@dataclass
class _IssueTracker:
    count: int = 0
    rows: list[int] = field(default_factory=list)


class IssueCollector:
    """
    Назначение/ответственность:
        Потоковая агрегация замечаний валидации для validation_report и error_rows.

    Инварианты/гарантии:
        - счётчики точные при любом объёме;
        - списки замечаний ограничены items_limit (дальше только счётчики, truncated=True);
        - в common_issues на тип хранятся первые AFFECTED_ROWS_LIMIT строк.
    """

    def __init__(self, items_limit: int = 1000):
        self.items_limit = items_limit
        self._lock = threading.Lock()
        self._stored: list[ValidationIssue] = []
        self._by_severity: Counter[str] = Counter()
        self._trackers: dict[str, _IssueTracker] = {}
        self._invalid_rows: set[int] = set()
        self.truncated = False

    def add(self, issues: Iterable[ValidationIssue]) -> None:
        with self._lock:
            for issue in issues:
                self._by_severity[issue.severity.value] += 1
                if issue.blocking:
                    self._invalid_rows.add(issue.row_index)
                tracker = self._trackers.setdefault(f"{issue.rule_name}:{issue.severity.value}", _IssueTracker())
                tracker.count += 1
                if len(tracker.rows) < AFFECTED_ROWS_LIMIT:
                    tracker.rows.append(issue.row_index)
                if len(self._stored) < self.items_limit:
                    self._stored.append(issue)
                else:
                    self.truncated = True

    @property
    def invalid_rows(self) -> int:
        with self._lock:
            return len(self._invalid_rows)

    def counts(self) -> dict[str, int]:
        with self._lock:
            return {severity.value: self._by_severity[severity.value] for severity in IssueSeverity}

    def issues(self) -> list[ValidationIssue]:
        with self._lock:
            return list(self._stored)

    def common_issues(self) -> list[dict[str, Any]]:
        with self._lock:
            ranked = sorted(self._trackers.items(), key=lambda item: item[1].count, reverse=True)
            return [
                {"issue_type": key, "count": tracker.count, "affected_rows": list(tracker.rows)}
                for key, tracker in ranked[:COMMON_ISSUES_LIMIT]
            ]


class OutcomeCollector:
    """Потокобезопасный сборщик итоговых статусов строк (result_summary)."""

    def __init__(self, items_limit: int = 1000):
        self.items_limit = items_limit
        self._lock = threading.Lock()
        self._outcomes: list[RowOutcome] = []
        self._counts: Counter[str] = Counter()
        self.truncated = False

    def __call__(self, outcome: RowOutcome) -> None:
        self.add(outcome)

    def add(self, outcome: RowOutcome) -> None:
        with self._lock:
            self._counts[outcome.status.value] += 1
            if len(self._outcomes) < self.items_limit:
                self._outcomes.append(outcome)
            else:
                self.truncated = True

    def counts(self) -> dict[str, int]:
        with self._lock:
            return {status.value: self._counts[status.value] for status in RowStatus}

    def outcomes(self) -> list[RowOutcome]:
        with self._lock:
            return sorted(self._outcomes, key=lambda o: o.row_index)


def _issue_to_dict(issue: ValidationIssue) -> dict[str, Any]:
    return {
        "row_index": issue.row_index,
        "rule_id": issue.rule_id,
        "rule_name": issue.rule_name,
        "severity": issue.severity.value,
        "message": issue.message,
        "field": issue.field,
        "suggestion": issue.suggestion,
    }


def build_validation_report(
    job_id: str,
    issues: IssueCollector,
    total_rows: int,
    configuration: dict[str, Any],
) -> ArtifactPayload:
    """
    Назначение:
        validation_report.json: сводка, замечания по severity, топ-10 типов, конфигурация.

    Алгоритм:
        - invalid_rows: строки с хотя бы одним error/critical;
        - valid_rows = total_rows - invalid_rows;
        - тип замечания: "<rule_name>:<severity>", сортировка по убыванию count.
    """
    counts = issues.counts()
    invalid = issues.invalid_rows
    by_severity: dict[str, list[dict[str, Any]]] = {severity.value: [] for severity in IssueSeverity}
    for issue in issues.issues():
        by_severity[issue.severity.value].append(_issue_to_dict(issue))

    report = {
        "job_id": job_id,
        "trace_id": job_id,
        "timestamp": getUtcNowIso(),
        "summary": {
            "total_rows": total_rows,
            "valid_rows": max(0, total_rows - invalid),
            "invalid_rows": invalid,
            "warnings_count": counts[IssueSeverity.WARNING.value],
            "errors_count": counts[IssueSeverity.ERROR.value],
            "critical_count": counts[IssueSeverity.CRITICAL.value],
        },
        "issues_by_severity": by_severity,
        "common_issues": issues.common_issues(),
        "configuration": dict(configuration),
        "truncated": issues.truncated,
    }
    return ArtifactPayload(kind=VALIDATION_REPORT, fmt="json", data=report, truncated=issues.truncated)


def build_error_rows(issues: IssueCollector) -> ArtifactPayload:
    rows = []
    for issue in issues.issues():
        if not issue.blocking:
            continue
        rows.append(
            {
                "original_row_index": issue.row_index,
                "field": issue.field or "",
                "error": issue.message,
                "error_code": issue.rule_id or "",
                "suggestion": issue.suggestion or "",
                "original_value": json.dumps(issue.value, ensure_ascii=False) if issue.value else "",
            }
        )
    return ArtifactPayload(
        kind=ERROR_ROWS, fmt="csv", columns=ERROR_ROWS_COLUMNS, rows=tuple(rows), truncated=issues.truncated
    )


def build_result_summary(outcomes: OutcomeCollector) -> ArtifactPayload:
    rows = [
        {
            "row_index": outcome.row_index,
            "status": outcome.status.value,
            "product_id": outcome.entity_id or "",
            "product_handle": outcome.handle or "",
            "variant_skus": ";".join(outcome.variant_skus),
            "message": outcome.message or "",
        }
        for outcome in outcomes.outcomes()
    ]
    return ArtifactPayload(
        kind=RESULT_SUMMARY,
        fmt="csv",
        columns=RESULT_SUMMARY_COLUMNS,
        rows=tuple(rows),
        truncated=outcomes.truncated,
    )


def build_dead_letter(job_id: str, entries: list[DeadLetterEntry], items_limit: int = 1000) -> ArtifactPayload:
    kept = entries[:items_limit]
    data = {
        "job_id": job_id,
        "timestamp": getUtcNowIso(),
        "total": len(entries),
        "entries": [entry.to_dict() for entry in kept],
    }
    return ArtifactPayload(kind=DEAD_LETTER, fmt="json", data=data, truncated=len(entries) > len(kept))
