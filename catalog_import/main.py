from __future__ import annotations

import json
import logging
import signal
import sqlite3
import sys
import threading
import time
from pathlib import Path

import typer

from catalog_import.common.cancellation import CancellationToken
from catalog_import.common.run_id import generate_run_id
from catalog_import.common.sanitize import maskSecret
from catalog_import.common.time import getDurationMs
from catalog_import.config.config import ImportConfig, ImportMode, Settings, load_settings
from catalog_import.domain.mapping.column_mapper import ColumnMappingResolver
from catalog_import.domain.recovery.lookups import CompositeReferenceLookup, StaticReferenceLookup
from catalog_import.errors import AppError, ConfigError
from catalog_import.infra.artifacts.file_sink import FileArtifactSink
from catalog_import.infra.artifacts.report_writer import createEmptyReport, finalizeReport, writeReportJson
from catalog_import.infra.checkpoints.sqlite_store import SqliteCheckpointStore
from catalog_import.infra.db.sqlite_engine import SqliteEngine, getCheckpointDbPath, openDb
from catalog_import.infra.http.catalog_client import CatalogApiClient
from catalog_import.infra.http.catalog_writer import HttpCatalogWriter
from catalog_import.infra.http.reference_lookup import HttpReferenceLookup
from catalog_import.infra.logging.setup import (
    StdStreamToLogger,
    TeeStream,
    closeLogger,
    createCommandLogger,
    logEvent,
)
from catalog_import.infra.sources.csv_reader import CsvRecordSource
from catalog_import.usecases.import_run_usecase import ImportDependencies, ImportJobResult, ImportRunUseCase
from catalog_import.usecases.resume_usecase import ResumeImportUseCase

app = typer.Typer(no_args_is_help=True, add_completion=False, help="Bulk product import into the catalog from CSV.")

EXIT_OK = 0
EXIT_ROW_FAILURES = 1
EXIT_FATAL = 2

WRITER_HTTP_TIMEOUT_SHARE = 0.9


def csvPathProblem(csvPath: str | None) -> str | None:
    """Текст ошибки для отсутствующего или нечитаемого --csv; None, если файл на месте."""
    if not csvPath:
        return "--csv is required"
    if not Path(csvPath).is_file():
        return f"CSV file not found: {csvPath}"
    return None


def printRunHeader(runId: str, command: str, settings: Settings, sources: list[str]) -> None:
    # токен API в stdout только маской
    typer.echo(
        f"run_id={runId} command={command} "
        f"api_url={settings.api_url} api_token={maskSecret(settings.api_token)} "
        f"mode={settings.import_config.mode.value} sources={sources} log_level={settings.log_level}"
    )


def printJobSummary(result: ImportJobResult) -> None:
    typer.echo(
        f"job_id={result.job_id} processed={result.processed_rows} valid={result.valid_rows} "
        f"invalid={result.invalid_rows} created={result.created} updated={result.updated} "
        f"skipped={result.skipped} failed={result.failed} dead_letter={result.dead_lettered} "
        f"cancelled={result.cancelled} duration_ms={result.duration_ms}"
    )
    for name, url in sorted(result.artifacts.items()):
        typer.echo(f"{name}={url}")
    for kind, error in sorted(result.artifact_errors.items()):
        typer.echo(f"WARN: artifact {kind} not published: {error}", err=True)


class CommandSession:
    """
    Назначение:
        Окружение одной команды CLI: лог-файл, отчёт и зеркалирование
        stdout/stderr в лог на время выполнения.

    Контракт:
        - на выходе из with отчёт reports/report_<command>_<runId>.json
          записан всегда, даже при исключении;
        - потоки sys.stdout/sys.stderr восстанавливаются до закрытия логгера.
    """

    def __init__(self, ctx: typer.Context, commandName: str, csvPath: str | None):
        self.commandName = commandName
        self.runId: str = ctx.obj["runId"]
        self.settings: Settings = ctx.obj["settings"]
        self.sources: list[str] = ctx.obj["sources"]
        self.csvPath = csvPath
        self.logger: logging.Logger | None = None
        self.logFile: str | None = None
        self.report = None
        self._streams = None
        self._started = 0.0

    def log(self, level: int, component: str, message: str) -> None:
        logEvent(self.logger, level, self.runId, component, message)

    def fail(self, component: str, message: str) -> int:
        self.log(logging.ERROR, component, message)
        typer.echo(f"ERROR: {message}", err=True)
        return EXIT_FATAL

    def __enter__(self) -> "CommandSession":
        self._started = time.monotonic()
        self.logger, self.logFile = createCommandLogger(
            commandName=self.commandName,
            logDir=self.settings.log_dir,
            runId=self.runId,
            logLevel=self.settings.log_level,
        )
        self.report = createEmptyReport(runId=self.runId, command=self.commandName, configSources=self.sources)
        self.report.meta.csv_path = self.csvPath

        self._streams = (sys.stdout, sys.stderr)
        sys.stdout = TeeStream(sys.stdout, StdStreamToLogger(self.logger, logging.INFO, self.runId, "stdout"))
        sys.stderr = TeeStream(sys.stderr, StdStreamToLogger(self.logger, logging.ERROR, self.runId, "stderr"))

        self.log(logging.INFO, "core", f"Command {self.commandName} started")
        printRunHeader(self.runId, self.commandName, self.settings, self.sources)
        return self

    def __exit__(self, *exc) -> None:
        settings = self.settings
        try:
            finalizeReport(
                report=self.report,
                durationMs=getDurationMs(self._started, time.monotonic()),
                logFile=self.logFile,
                checkpointDir=settings.checkpoint_dir,
                artifactDir=settings.artifact_dir,
                reportDir=settings.report_dir,
            )
            reportPath = writeReportJson(self.report, settings.report_dir, f"report_{self.commandName}_{self.runId}")
            self.log(logging.INFO, "report", f"Report saved to {reportPath}")
        finally:
            sys.stdout, sys.stderr = self._streams
            closeLogger(self.logger)


def runInSession(ctx: typer.Context, commandName: str, csvPath: str | None, requiresCsv: bool, runner) -> None:
    """runner(session) -> exit code; выход из процесса с этим кодом после записи отчёта."""
    with CommandSession(ctx, commandName, csvPath) as session:
        problem = csvPathProblem(csvPath) if requiresCsv else None
        exitCode = session.fail("csv", problem) if problem else runner(session)
    raise typer.Exit(code=exitCode)


def resolveImportConfig(settings: Settings, overrides: dict) -> ImportConfig:
    """Параметры команды, переданные явно, поверх import-секции настроек."""
    explicit = {name: value for name, value in overrides.items() if value is not None}
    return settings.import_config.with_overrides(explicit).validate()


def readMappingFile(path: str | None) -> dict[str, str] | None:
    """JSON-объект {колонка CSV: поле товара} из --mapping-file."""
    if not path:
        return None
    try:
        mapping = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ConfigError(f"Cannot read column mapping file {path}: {exc}", "column_mapping") from exc
    if not isinstance(mapping, dict):
        raise ConfigError("Column mapping file must contain a JSON object", "column_mapping")
    return {str(column): str(field) for column, field in mapping.items()}


def writerHttpTimeoutSeconds(settings: Settings, config: ImportConfig) -> float:
    """HTTP-таймаут клиента записи: не больше timeout_seconds и меньше writer_timeout_ms менеджера."""
    return min(settings.timeout_seconds, config.writer_timeout_ms * WRITER_HTTP_TIMEOUT_SHARE / 1000)


def buildDependencies(settings: Settings, config: ImportConfig, logger: logging.Logger) -> tuple[ImportDependencies, list]:
    """
    Назначение:
        Собирает внешние зависимости задания по итоговым настройкам.

    Выходные данные:
        (ImportDependencies, closers): closers закрываются вызывающей стороной.

    Поведение:
        - execute без api_url -> ConfigError;
        - dry_run с api_url использует API только для проверки ссылок;
        - клиент записи без HTTP-повторов, его таймаут короче writer_timeout_ms.
    """
    if not config.dry_run and not settings.api_url:
        raise ConfigError("api_url is required in execute mode", "api_url")

    engine = SqliteEngine(openDb(getCheckpointDbPath(settings.checkpoint_dir)))
    closers: list = [engine]

    lookups = [StaticReferenceLookup(settings.known_references)]
    writer = None
    if settings.api_url:
        lookupClient = CatalogApiClient(
            baseUrl=settings.api_url,
            token=settings.api_token,
            timeoutSeconds=settings.timeout_seconds,
            tlsSkipVerify=settings.tls_skip_verify,
            retries=settings.retries,
            retryBackoffSeconds=settings.retry_backoff_seconds,
        )
        closers.append(lookupClient)
        lookups.append(HttpReferenceLookup(lookupClient))
        if not config.dry_run:
            # повторами записи управляет RecoveryManager: у клиента записи своих нет
            writerClient = CatalogApiClient(
                baseUrl=settings.api_url,
                token=settings.api_token,
                timeoutSeconds=writerHttpTimeoutSeconds(settings, config),
                tlsSkipVerify=settings.tls_skip_verify,
                retries=0,
            )
            closers.append(writerClient)
            writer = HttpCatalogWriter(writerClient)

    deps = ImportDependencies(
        writer=writer,
        lookup=CompositeReferenceLookup(*lookups),
        artifact_sink=FileArtifactSink(settings.artifact_dir, logger),
        checkpoint_store=SqliteCheckpointStore(engine),
        mapping_resolver=ColumnMappingResolver(profiles=settings.mapping_profiles, explicit=config.column_mapping),
    )
    return deps, closers


class _InterruptToCancel:
    """Ctrl+C переводит задание в отмену вместо аварийного выхода."""

    def __init__(self, token: CancellationToken, session: CommandSession):
        self.token = token
        self.session = session
        self._previous = None

    def __enter__(self) -> "_InterruptToCancel":
        if threading.current_thread() is threading.main_thread():
            self._previous = signal.signal(signal.SIGINT, self._handle)
        return self

    def _handle(self, signum, frame) -> None:
        self.session.log(logging.WARNING, "core", "Interrupt received, cancelling job")
        self.token.cancel()

    def __exit__(self, *exc) -> None:
        if self._previous is not None:
            signal.signal(signal.SIGINT, self._previous)


def runJobCommand(
    ctx: typer.Context,
    commandName: str,
    csvPath: str | None,
    overrides: dict,
    mappingFile: str | None,
    jobId: str | None,
    resumeCheckpointId: str | None = None,
) -> None:
    resuming = commandName == "resume"

    def execute(session: CommandSession) -> int:
        settings = session.settings
        closers: list = []
        try:
            explicit = readMappingFile(mappingFile)
            if explicit is not None:
                overrides["column_mapping"] = explicit
            config = resolveImportConfig(settings, overrides)
            deps, closers = buildDependencies(settings, config, session.logger)
        except (ConfigError, sqlite3.Error) as exc:
            return session.fail("config", f"{commandName} setup failed: {exc}")

        Path(settings.artifact_dir).mkdir(parents=True, exist_ok=True)
        source = CsvRecordSource(csvPath or "")
        token = CancellationToken()
        try:
            with _InterruptToCancel(token, session):
                if resuming:
                    result = ResumeImportUseCase(config, deps, session.logger).run(
                        jobId or "",
                        source,
                        checkpoint_id=resumeCheckpointId,
                        cancel=token,
                        report=session.report,
                    )
                else:
                    result = ImportRunUseCase(config, deps, session.logger).run(
                        source,
                        job_id=jobId or session.runId,
                        cancel=token,
                        report=session.report,
                    )
        except AppError as exc:
            return session.fail("import", f"{commandName} failed: {exc.code}: {exc.message}")
        finally:
            for closer in closers:
                closer.close()

        printJobSummary(result)
        if result.cancelled:
            typer.echo(f"Job cancelled; resume with: resume --job-id {result.job_id}")
        return EXIT_ROW_FAILURES if result.has_row_failures else EXIT_OK

    runInSession(ctx, commandName, csvPath, requiresCsv=True, runner=execute)


def runCheckpointsCommand(ctx: typer.Context, jobId: str | None) -> None:
    def execute(session: CommandSession) -> int:
        try:
            engine = SqliteEngine(openDb(getCheckpointDbPath(session.settings.checkpoint_dir)))
        except sqlite3.Error as exc:
            return session.fail("checkpoints", f"cannot open checkpoint db: {exc}")
        try:
            found = SqliteCheckpointStore(engine).list(jobId)
        finally:
            engine.close()

        for checkpoint in found:
            typer.echo(
                f"{checkpoint.id} job_id={checkpoint.job_id} batch={checkpoint.batch_index} "
                f"processed={checkpoint.processed_rows} failed={len(checkpoint.failed_rows)} "
                f"dead_letter={len(checkpoint.dead_letter)} timestamp_ms={checkpoint.timestamp_ms}"
            )
        session.report.meta.job_id = jobId
        session.report.add_op("checkpoints_list", count=len(found))
        session.log(logging.INFO, "checkpoints", f"{len(found)} checkpoint(s) listed")
        return EXIT_OK

    runInSession(ctx, "checkpoints", None, requiresCsv=False, runner=execute)


def runCleanupArtifactsCommand(ctx: typer.Context, retentionDays: float, dryRun: bool) -> None:
    def execute(session: CommandSession) -> int:
        sink = FileArtifactSink(session.settings.artifact_dir, session.logger)
        result = sink.cleanup(retentionDays, dry_run=dryRun)
        typer.echo(
            f"scanned={result.scanned} deleted={result.deleted} retained={result.retained} "
            f"errors={result.errors} freed_bytes={result.freed_bytes} dry_run={dryRun}"
        )
        session.report.add_op("artifacts_cleanup", ok=result.deleted, failed=result.errors, count=result.scanned)
        if result.errors:
            return session.fail("artifacts", f"{result.errors} artifact dir(s) could not be removed")
        return EXIT_OK

    runInSession(ctx, "cleanup-artifacts", None, requiresCsv=False, runner=execute)


@app.callback()
def main(
    ctx: typer.Context,
    config: str | None = typer.Option(None, "--config", help="YAML settings file."),
    runId: str | None = typer.Option(None, "--run-id", help="Run id for logs and reports (generated when omitted)."),
    logLevel: str | None = typer.Option(None, "--log-level", help="ERROR, WARN, INFO or DEBUG."),
    logDir: str | None = typer.Option(None, "--log-dir", help="Where command log files go."),
    reportDir: str | None = typer.Option(None, "--report-dir", help="Where report_<command>_<run>.json goes."),
    checkpointDir: str | None = typer.Option(None, "--checkpoint-dir", help="Directory for the checkpoint database."),
    artifactDir: str | None = typer.Option(None, "--artifact-dir", help="Directory for job artifacts."),
    apiUrl: str | None = typer.Option(None, "--api-url", help="Catalog admin API base URL."),
    apiToken: str | None = typer.Option(None, "--api-token", help="Catalog API token (prefer CATALOG_IMPORT_API_TOKEN)."),
    tlsSkipVerify: bool | None = typer.Option(None, "--tls-skip-verify", help="Do not verify the API TLS certificate."),
    timeoutSeconds: float | None = typer.Option(None, "--timeout-seconds", help="Per-request API timeout."),
    retries: int | None = typer.Option(None, "--retries", help="HTTP-level retries per API call."),
):
    """
    Назначение:
        Общие опции всех команд: итоговые настройки (CLI > ENV > YAML > defaults)
        и run_id складываются в ctx.obj, рабочие каталоги создаются заранее.
    """
    cliOverrides = {
        "api_url": apiUrl,
        "api_token": apiToken,
        "log_level": logLevel,
        "log_dir": logDir,
        "report_dir": reportDir,
        "checkpoint_dir": checkpointDir,
        "artifact_dir": artifactDir,
        "tls_skip_verify": tlsSkipVerify,
        "timeout_seconds": timeoutSeconds,
        "retries": retries,
    }
    try:
        loaded = load_settings(config_path=config, cli_overrides=cliOverrides)
    except ConfigError as exc:
        typer.echo(f"ERROR: invalid configuration: {exc.message}", err=True)
        raise typer.Exit(code=EXIT_FATAL)

    settings = loaded.settings
    for directory in (settings.log_dir, settings.report_dir, settings.checkpoint_dir):
        Path(directory).mkdir(parents=True, exist_ok=True)

    ctx.obj = {
        "runId": runId or generate_run_id(),
        "settings": settings,
        "sources": loaded.sources_used,
        "configPath": config,
    }


@app.command("run")
def run(
    ctx: typer.Context,
    csv: str | None = typer.Option(None, "--csv", help="Product CSV to import."),
    jobId: str | None = typer.Option(None, "--job-id", help="Job id for checkpoints and artifacts (defaults to run id)."),
    dryRun: bool | None = typer.Option(None, "--dry-run/--no-dry-run", help="Validate only, do not write."),
    profile: str | None = typer.Option(None, "--profile", help="Column mapping profile id."),
    mappingFile: str | None = typer.Option(None, "--mapping-file", help="JSON file: source column -> field."),
    maxRows: int | None = typer.Option(None, "--max-rows", help="Fail the job if the source has more rows."),
    maxMemoryMb: int | None = typer.Option(None, "--max-memory-mb", help="Memory budget for the job."),
    maxRetries: int | None = typer.Option(None, "--max-retries", help="Retries for a failed row."),
    reportItemsLimit: int | None = typer.Option(None, "--report-items-limit", help="Max failed rows listed in the report."),
):
    """Validate and import a product CSV."""
    runJobCommand(
        ctx=ctx,
        commandName="run",
        csvPath=csv,
        overrides={
            "mode": _modeOverride(dryRun),
            "mapping_profile_id": profile,
            "max_rows": maxRows,
            "max_memory_mb": maxMemoryMb,
            "max_retries": maxRetries,
            "report_items_limit": reportItemsLimit,
        },
        mappingFile=mappingFile,
        jobId=jobId,
    )


@app.command("resume")
def resume(
    ctx: typer.Context,
    jobId: str = typer.Option(..., "--job-id", help="Job to resume."),
    csv: str | None = typer.Option(None, "--csv", help="The CSV the job was started with."),
    checkpointId: str | None = typer.Option(None, "--checkpoint-id", help="Checkpoint to resume from (default: latest)."),
    dryRun: bool | None = typer.Option(None, "--dry-run/--no-dry-run", help="Validate only, do not write."),
    profile: str | None = typer.Option(None, "--profile", help="Column mapping profile id."),
    mappingFile: str | None = typer.Option(None, "--mapping-file", help="JSON file: source column -> field."),
    reportItemsLimit: int | None = typer.Option(None, "--report-items-limit", help="Max failed rows listed in the report."),
):
    """Re-run the rows a checkpointed job has not finished."""
    runJobCommand(
        ctx=ctx,
        commandName="resume",
        csvPath=csv,
        overrides={
            "mode": _modeOverride(dryRun),
            "mapping_profile_id": profile,
            "report_items_limit": reportItemsLimit,
        },
        mappingFile=mappingFile,
        jobId=jobId,
        resumeCheckpointId=checkpointId,
    )


@app.command("checkpoints")
def checkpoints(
    ctx: typer.Context,
    jobId: str | None = typer.Option(None, "--job-id", help="Only checkpoints of this job."),
):
    """List saved checkpoints."""
    runCheckpointsCommand(ctx, jobId)


@app.command("cleanup-artifacts")
def cleanupArtifacts(
    ctx: typer.Context,
    retentionDays: float = typer.Option(7.0, "--retention-days", min=0, help="Remove job artifacts older than this."),
    dryRun: bool = typer.Option(False, "--dry-run", help="Only report what would be removed."),
):
    """Remove artifacts of old jobs."""
    runCleanupArtifactsCommand(ctx, retentionDays, dryRun)


def _modeOverride(dryRun: bool | None) -> str | None:
    if dryRun is None:
        return None
    return (ImportMode.DRY_RUN if dryRun else ImportMode.EXECUTE).value
