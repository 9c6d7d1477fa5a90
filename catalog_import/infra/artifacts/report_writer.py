from __future__ import annotations

import json
from pathlib import Path

from catalog_import.domain.reporting.collector import ReportCollector, asdict_report


def createEmptyReport(runId: str, command: str, configSources: list[str]) -> ReportCollector:
    """Отчёт команды до начала работы; источники конфигурации кладутся в context.config."""
    report = ReportCollector(run_id=runId, command=command)
    if configSources:
        report.set_context("config", {"sources": list(configSources)})
    return report


def finalizeReport(
    report: ReportCollector,
    durationMs: int,
    logFile: str | None,
    checkpointDir: str,
    artifactDir: str,
    reportDir: str,
) -> None:
    """
    Назначение:
        Закрывает отчёт перед записью: длительность, итоговый статус
        и каталоги, куда команда писала лог, чекпоинты и артефакты.
    """
    runtime = dict(
        log_file=logFile,
        checkpoint_dir=checkpointDir,
        artifact_dir=artifactDir,
        report_dir=reportDir,
    )
    report.set_context("runtime", runtime)
    report.finish(duration_ms=durationMs)


def writeReportJson(report: ReportCollector, reportDir: str, fileBaseName: str) -> str:
    """Пишет <reportDir>/<fileBaseName>.json (UTF-8, indent=2) и возвращает путь."""
    target = Path(reportDir) / f"{fileBaseName}.json"
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(json.dumps(asdict_report(report.build()), ensure_ascii=False, indent=2), encoding="utf-8")
    return str(target)
