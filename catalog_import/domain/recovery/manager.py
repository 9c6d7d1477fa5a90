from __future__ import annotations

import itertools
import logging
import threading
import time
from collections import Counter, deque
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from typing import Callable

from catalog_import.common.backoff import waitUntil
from catalog_import.common.cancellation import CancellationToken
from catalog_import.common.sanitize import truncateText
from catalog_import.common.time import getDurationMs, getNowMs
from catalog_import.config.config import ImportConfig
from catalog_import.domain.error_codes import ErrorType, FailureSeverity, IssueSeverity, RecoveryStrategy
from catalog_import.domain.exceptions import DependencyNotSatisfiedError, DomainWriteError, WriterTimeoutError
from catalog_import.domain.models import Batch, RowOutcome, RowStatus, ValidatedRow, WriteResult
from catalog_import.domain.ports.import_ports import (
    CheckpointStoreProtocol,
    DomainWriterProtocol,
    ReferenceLookupProtocol,
    RowCheckProtocol,
)
from catalog_import.domain.recovery.classification import (
    classify_error,
    compute_retry_delay_ms,
    select_strategy,
    severity_for,
)
from catalog_import.domain.recovery.dependencies import missing_keys, plan_batch, provided_keys
from catalog_import.domain.recovery.ledger import RowLedger, RowState
from catalog_import.domain.recovery.models import (
    AttemptRecord,
    DeadLetterEntry,
    FailedRow,
    RecoveryCheckpoint,
    RecoveryResult,
)
from catalog_import.domain.recovery.scheduler import RetryScheduler
from catalog_import.domain.resources.slot_pool import SlotPool
from catalog_import.errors import CheckpointNotFoundError
from catalog_import.infra.logging.setup import getLibraryLogger, logEvent

SLOT_RETRY_DELAY_MS = 50
KEPT_CHECKPOINTS = 10

_DECISION_SUCCESS = "success"
_DECISION_RETRY = "retry"
_DECISION_FAILED = "failed"
_DECISION_DEAD = "dead"


@dataclass
class RecoveryTotals:
    """Сводные счётчики менеджера восстановления на текущий момент."""

    processed_rows: int = 0
    invalid_rows: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    dead_lettered: int = 0
    retry_pending: int = 0
    error_distribution: dict[str, int] = field(default_factory=dict)


def failed_row_priority(row: FailedRow) -> tuple[int, int, int, int]:
    """Меньше зависимостей, меньше попыток, recoverable < critical < permanent."""
    return (len(row.dependencies), row.attempt_count, row.severity.rank, row.row_index)


class RecoveryManager:
    """
    Назначение/ответственность:
        Исполняет строки батча через writer в ограниченном пуле воркеров,
        классифицирует сбои, планирует повторы, ведёт мёртвую очередь и
        сохраняет чекпоинты прогресса.

    Алгоритм process_batch:
        1) устойчивая сортировка батча по зависимостям;
        2) для каждой строки: дождаться поставщиков из батча, занять слот,
           проверить выполнимость зависимостей и (опционально) доп. проверку,
           вызвать writer с таймаутом;
        3) успех -> учёт, FailedRow удаляется;
        4) сбой -> классификация, AttemptRecord, решение:
           attempts >= dead_letter_threshold -> мёртвая очередь;
           severity != permanent, attempts < max_retries, стратегия != manual,
           задание не отменено -> отложенный повтор;
           иначе строка остаётся failed и попадает в отчёт как failed;
        5) чекпоинт после батча и каждые checkpoint_interval_rows строк.

    Инварианты/гарантии:
        - строка всегда ровно в одном состоянии RowLedger;
        - не более одного вызова writer на строку одновременно (повтор после
          таймаута ждёт завершения предыдущего вызова);
        - строка из мёртвой очереди больше не исполняется;
        - у каждой общей структуры своя блокировка; при захвате нескольких
          порядок фиксирован: progress -> failed -> dead -> satisfied -> ledger.

    Взаимодействия:
        - SlotPool: резерв слота перед каждым вызовом writer;
        - RetryScheduler: отложенные повторы без занятого слота;
        - CheckpointStore: запись чекпоинтов в фоне (fire-and-forget);
        - outcome_sink: итоговые статусы строк для отчёта result_summary.
    """

    def __init__(
        self,
        config: ImportConfig,
        job_id: str,
        pool: SlotPool,
        lookup: ReferenceLookupProtocol | None = None,
        checkpoint_store: CheckpointStoreProtocol | None = None,
        observability=None,
        logger: logging.Logger | None = None,
        cancel: CancellationToken | None = None,
        outcome_sink: Callable[[RowOutcome], None] | None = None,
        scheduler: RetryScheduler | None = None,
    ):
        self.config = config
        self.job_id = job_id
        self.pool = pool
        self.lookup = lookup
        self.checkpoint_store = checkpoint_store
        self.observability = observability
        self.logger = logger or getLibraryLogger()
        self.cancel_token = cancel or CancellationToken()
        self.outcome_sink = outcome_sink

        self.ledger = RowLedger()
        self.scheduler = scheduler or RetryScheduler()
        self._executor = ThreadPoolExecutor(max_workers=pool.cap, thread_name_prefix="import-worker")
        self._call_executor = ThreadPoolExecutor(max_workers=pool.cap * 2, thread_name_prefix="writer-call")
        self._checkpoint_executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="checkpoint-writer")

        # progress
        self._progress_lock = threading.Lock()
        self._processed_rows = 0
        self._invalid_rows = 0
        self._status_counts: Counter[str] = Counter()
        self._error_distribution: Counter[str] = Counter()
        self._last_row_index = 0
        self._batch_index = 0
        self._batch_settled: set[int] = set()
        self._rows_since_checkpoint = 0
        self._checkpoint_seq = itertools.count(1)
        self._restored = False

        # failed-row map
        self._failed_lock = threading.Lock()
        self._failed: dict[int, FailedRow] = {}

        # dead letter
        self._dead_lock = threading.Lock()
        self._dead: list[DeadLetterEntry] = []

        # ключи, созданные успешными строками задания
        self._satisfied_lock = threading.Lock()
        self._satisfied: set[str] = set()

        # активные вызовы writer (в т.ч. после таймаута)
        self._calls_lock = threading.Lock()
        self._running_calls: dict[int, Future] = {}

        # повторы: запланированные + исполняемые
        self._outstanding_cond = threading.Condition()
        self._outstanding = 0

        self._checkpoints_lock = threading.Lock()
        self._checkpoints: deque[RecoveryCheckpoint] = deque(maxlen=KEPT_CHECKPOINTS)

    # ------------------------------------------------------------------ batch

    def process_batch(
        self,
        batch: Batch,
        writer: DomainWriterProtocol,
        validator: RowCheckProtocol | None = None,
    ) -> RecoveryResult:
        started = time.monotonic()
        plan = plan_batch(batch.rows)
        invalid = batch.invalid_row_indices

        with self._progress_lock:
            self._batch_index = batch.batch_index
            self._batch_settled = set(invalid)
            self._invalid_rows += len(invalid)
            self._processed_rows += len(invalid)

        for row in plan.order:
            self.ledger.transition(row.row_index, RowState.PENDING)
        self.pool.add_pending(len(plan.order))
        if plan.unresolved:
            logEvent(
                self.logger,
                logging.WARNING,
                self.job_id,
                "recovery",
                f"Batch {batch.batch_index}: dependency cycle among rows {list(plan.unresolved)}",
            )

        futures: dict[int, Future] = {}
        for row in plan.order:
            for provider in plan.in_batch_providers.get(row.row_index, ()):
                provider_future = futures.get(provider)
                if provider_future is not None:
                    provider_future.result()
            futures[row.row_index] = self._submit(
                row, plan.dependencies[row.row_index], writer, validator, RowState.PENDING, first_pass=True
            )

        result = RecoveryResult()
        for row_index, future in futures.items():
            decision = future.result()
            if decision == _DECISION_SUCCESS:
                result.recovered_rows += 1
            elif decision == _DECISION_FAILED:
                result.permanent_failures += 1
            elif decision == _DECISION_DEAD:
                result.dead_letter_rows.append(row_index)

        with self._progress_lock:
            self._last_row_index = max(self._last_row_index, batch.end_row_index)
            self._batch_settled = set()
            self._rows_since_checkpoint = 0
        self._checkpoint(batch.batch_index)

        result.retry_pending = self.scheduler.pending()
        result.duration_ms = getDurationMs(started, time.monotonic())
        logEvent(
            self.logger,
            logging.INFO,
            self.job_id,
            "recovery",
            f"Batch {batch.batch_index} processed: ok={result.recovered_rows} failed={result.permanent_failures} "
            f"dead_letter={len(result.dead_letter_rows)} invalid={len(invalid)} retry_pending={result.retry_pending}",
        )
        return result

    def _submit(
        self,
        row: ValidatedRow,
        dependencies: frozenset[str],
        writer: DomainWriterProtocol,
        validator: RowCheckProtocol | None,
        expected: RowState,
        first_pass: bool,
    ) -> Future:
        waitUntil(lambda: self.pool.reserve(from_pending=first_pass), initial_delay_ms=5, max_delay_ms=200)
        if not self.ledger.try_transition(row.row_index, expected, RowState.IN_FLIGHT):
            self.pool.cancel_reservation()
            done: Future = Future()
            done.set_result(None)
            return done
        return self._executor.submit(self._execute, row, dependencies, writer, validator, first_pass)

    # --------------------------------------------------------------- attempts

    def _execute(
        self,
        row: ValidatedRow,
        dependencies: frozenset[str],
        writer: DomainWriterProtocol,
        validator: RowCheckProtocol | None,
        first_pass: bool,
    ) -> str:
        started = time.monotonic()
        try:
            with self._satisfied_lock:
                satisfied = set(self._satisfied)
            missing = missing_keys(dependencies, satisfied, self.lookup)
            if missing:
                raise DependencyNotSatisfiedError(row.row_index, missing)
            if validator is not None:
                critical = [i for i in validator.check(row) if i.severity == IssueSeverity.CRITICAL]
                if critical:
                    raise DomainWriteError(
                        f"Row validation failed: {critical[0].message}", error_type=ErrorType.VALIDATION
                    )
            result = self._call_writer(row, writer)
        except Exception as exc:
            self.pool.release(success=False)
            return self._handle_failure(
                row, dependencies, exc, getDurationMs(started, time.monotonic()), writer, validator, first_pass
            )
        self.pool.release(success=True)
        self._handle_success(row, result or WriteResult(), first_pass)
        return _DECISION_SUCCESS

    def _call_writer(self, row: ValidatedRow, writer: DomainWriterProtocol) -> WriteResult:
        future = self._call_executor.submit(writer.write, row)
        with self._calls_lock:
            self._running_calls[row.row_index] = future
        future.add_done_callback(lambda f, idx=row.row_index: self._call_finished(idx, f))
        try:
            return future.result(timeout=self.config.writer_timeout_ms / 1000.0)
        except FutureTimeoutError as exc:
            raise WriterTimeoutError(row.row_index, self.config.writer_timeout_ms) from exc

    def _call_finished(self, row_index: int, future: Future) -> None:
        with self._calls_lock:
            if self._running_calls.get(row_index) is future:
                del self._running_calls[row_index]

    def _handle_success(self, row: ValidatedRow, result: WriteResult, first_pass: bool) -> None:
        status = _status_of(result)
        with self._progress_lock, self._failed_lock, self._satisfied_lock:
            self._failed.pop(row.row_index, None)
            self._satisfied.update(provided_keys(row))
            self._status_counts[status.value] += 1
            if first_pass:
                self._settle_first_pass(row.row_index)
            self.ledger.transition(row.row_index, RowState.SUCCEEDED)
            checkpoint_due = self._checkpoint_due()

        self._emit(
            RowOutcome(
                row_index=row.row_index,
                status=status,
                entity_id=result.entity_id,
                handle=result.handle or row.get("handle"),
                message=_default_message(status),
                variant_skus=result.variant_skus,
            )
        )
        if checkpoint_due:
            self._checkpoint(None)

    def _handle_failure(
        self,
        row: ValidatedRow,
        dependencies: frozenset[str],
        error: BaseException,
        duration_ms: int,
        writer: DomainWriterProtocol,
        validator: RowCheckProtocol | None,
        first_pass: bool,
    ) -> str:
        error_type = classify_error(error)
        severity = severity_for(error_type)
        message = truncateText(str(error) or error.__class__.__name__, 500) or ""
        dead_entry: DeadLetterEntry | None = None

        with self._progress_lock, self._failed_lock, self._dead_lock:
            failed = self._failed.get(row.row_index) or FailedRow(
                row_index=row.row_index, row=row, dependencies=dependencies
            )
            attempt_number = failed.attempt_count + 1
            strategy = select_strategy(error_type, attempt_number)
            failed.attempts.append(
                AttemptRecord(
                    attempt_number=attempt_number,
                    timestamp_ms=getNowMs(),
                    error=message,
                    error_type=error_type,
                    strategy=strategy,
                    duration_ms=duration_ms,
                )
            )
            failed.last_error = message
            failed.error_type = error_type
            failed.severity = severity
            self._failed[row.row_index] = failed
            self._error_distribution[error_type.value] += 1
            self.ledger.transition(row.row_index, RowState.FAILED)

            if failed.attempt_count >= self.config.dead_letter_threshold:
                del self._failed[row.row_index]
                dead_entry = DeadLetterEntry(
                    failed_row=failed.snapshot(),
                    dead_lettered_at_ms=getNowMs(),
                    reason=f"attempts {failed.attempt_count} >= dead letter threshold {self.config.dead_letter_threshold}",
                )
                self._dead.append(dead_entry)
                self.ledger.transition(row.row_index, RowState.DEAD_LETTERED)
                decision = _DECISION_DEAD
            elif self._should_retry(failed):
                decision = _DECISION_RETRY
                with self._outstanding_cond:
                    self._outstanding += 1
            else:
                decision = _DECISION_FAILED

            if first_pass:
                self._settle_first_pass(row.row_index)
            checkpoint_due = self._checkpoint_due()

        logEvent(
            self.logger,
            logging.WARNING,
            self.job_id,
            "recovery",
            f"Row {row.row_index} failed (attempt {attempt_number}, {error_type.value}/{severity.value}, "
            f"strategy={strategy.value}, decision={decision}): {message}",
        )
        if self.observability is not None:
            if error_type == ErrorType.DATABASE:
                self.observability.record_error("db", 1)
            if decision == _DECISION_DEAD:
                self.observability.record_error("dlq", 1)

        if decision == _DECISION_RETRY:
            delay_ms = compute_retry_delay_ms(
                strategy,
                attempt_number,
                self.config.base_retry_delay_ms,
                self.config.max_backoff_delay_ms,
                self.config.exponential_backoff,
                self.config.dependency_retry_delay_ms,
            )
            self.scheduler.schedule(
                row.row_index, delay_ms, lambda: self._dispatch_retry(row.row_index, writer, validator)
            )
        elif decision == _DECISION_DEAD and dead_entry is not None:
            self._emit(
                RowOutcome(
                    row_index=row.row_index,
                    status=RowStatus.DEAD_LETTERED,
                    handle=row.get("handle"),
                    message=message,
                )
            )
        else:
            self._emit(
                RowOutcome(row_index=row.row_index, status=RowStatus.FAILED, handle=row.get("handle"), message=message)
            )

        if checkpoint_due:
            self._checkpoint(None)
        return decision

    def _should_retry(self, failed: FailedRow) -> bool:
        if self.cancel_token.cancelled:
            return False
        if failed.severity == FailureSeverity.PERMANENT:
            return False
        if failed.attempt_count >= self.config.max_retries:
            return False
        return failed.last_strategy != RecoveryStrategy.MANUAL_INTERVENTION

    def _dispatch_retry(
        self,
        row_index: int,
        writer: DomainWriterProtocol,
        validator: RowCheckProtocol | None,
    ) -> None:
        try:
            if self.cancel_token.cancelled:
                self._drop_retry(row_index, "job cancelled before retry")
                return

            with self._calls_lock:
                prior = self._running_calls.get(row_index)
            if prior is not None and not prior.done():
                # предыдущий вызов ещё идёт (таймаут): повтор после его завершения
                prior.add_done_callback(lambda _f: self._dispatch_retry(row_index, writer, validator))
                return

            with self._failed_lock:
                failed = self._failed.get(row_index)
            if failed is None:
                self._finish_retry()
                return

            if not self.pool.reserve():
                self.scheduler.schedule(
                    row_index, SLOT_RETRY_DELAY_MS, lambda: self._dispatch_retry(row_index, writer, validator)
                )
                return
            if not self.ledger.try_transition(row_index, RowState.FAILED, RowState.IN_FLIGHT):
                self.pool.cancel_reservation()
                self._finish_retry()
                return
            self._executor.submit(self._run_retry, failed.row, failed.dependencies, writer, validator)
        except Exception as exc:
            logEvent(self.logger, logging.ERROR, self.job_id, "recovery", f"Retry dispatch failed for row {row_index}: {exc}")
            self._finish_retry()

    def _run_retry(
        self,
        row: ValidatedRow,
        dependencies: frozenset[str],
        writer: DomainWriterProtocol,
        validator: RowCheckProtocol | None,
    ) -> None:
        try:
            self._execute(row, dependencies, writer, validator, first_pass=False)
        finally:
            self._finish_retry()

    def _drop_retry(self, row_index: int, reason: str) -> None:
        with self._failed_lock:
            failed = self._failed.get(row_index)
        self._finish_retry()
        if failed is None:
            return
        logEvent(self.logger, logging.WARNING, self.job_id, "recovery", f"Retry dropped for row {row_index}: {reason}")
        self._emit(
            RowOutcome(
                row_index=row_index,
                status=RowStatus.FAILED,
                handle=failed.row.get("handle"),
                message=f"{failed.last_error} ({reason})",
            )
        )

    def _finish_retry(self) -> None:
        with self._outstanding_cond:
            self._outstanding -= 1
            if self._outstanding <= 0:
                self._outstanding = 0
                self._outstanding_cond.notify_all()

    def _settle_first_pass(self, row_index: int) -> None:
        self._processed_rows += 1
        self._rows_since_checkpoint += 1
        self._batch_settled.add(row_index)

    def _checkpoint_due(self) -> bool:
        if self._rows_since_checkpoint >= self.config.checkpoint_interval_rows:
            self._rows_since_checkpoint = 0
            return True
        return False

    def _emit(self, outcome: RowOutcome) -> None:
        if self.outcome_sink is not None:
            self.outcome_sink(outcome)

    # ------------------------------------------------------------ checkpoints

    def _checkpoint(self, batch_index: int | None) -> RecoveryCheckpoint:
        with self._progress_lock, self._failed_lock, self._dead_lock, self._satisfied_lock:
            timestamp = getNowMs()
            index = self._batch_index if batch_index is None else batch_index
            failed_rows = tuple(row.snapshot() for row in sorted(self._failed.values(), key=lambda r: r.row_index))
            checkpoint = RecoveryCheckpoint(
                id=f"checkpoint_{index}_{timestamp}_{next(self._checkpoint_seq)}",
                job_id=self.job_id,
                timestamp_ms=timestamp,
                batch_index=index,
                processed_rows=self._processed_rows,
                successful_rows=sum(self._status_counts.values()),
                invalid_rows=self._invalid_rows,
                last_row_index=self._last_row_index,
                failed_rows=failed_rows,
                dependencies={row.row_index: sorted(row.dependencies) for row in failed_rows},
                satisfied_keys=tuple(sorted(self._satisfied)),
                dead_letter=tuple(self._dead),
                settled_row_indices=tuple(sorted(self._batch_settled)),
                status_counts=dict(self._status_counts),
                error_distribution=dict(self._error_distribution),
            )
        with self._checkpoints_lock:
            self._checkpoints.append(checkpoint)
        if self.checkpoint_store is not None:
            self._checkpoint_executor.submit(self._save_checkpoint, checkpoint)
        return checkpoint

    def _save_checkpoint(self, checkpoint: RecoveryCheckpoint) -> None:
        try:
            self.checkpoint_store.save(checkpoint)
        except Exception as exc:
            logEvent(
                self.logger,
                logging.ERROR,
                self.job_id,
                "checkpoint",
                f"Checkpoint {checkpoint.id} was not saved: {exc}",
            )
            return
        logEvent(
            self.logger,
            logging.DEBUG,
            self.job_id,
            "checkpoint",
            f"Checkpoint saved: {checkpoint.id} processed={checkpoint.processed_rows} failed={len(checkpoint.failed_rows)}",
        )

    def create_checkpoint(self) -> RecoveryCheckpoint:
        """Внеочередной чекпоинт (например, при отмене задания)."""
        return self._checkpoint(None)

    def checkpoints(self) -> list[RecoveryCheckpoint]:
        with self._checkpoints_lock:
            return list(self._checkpoints)

    def _find_checkpoint(self, checkpoint_id: str) -> RecoveryCheckpoint:
        with self._checkpoints_lock:
            for checkpoint in self._checkpoints:
                if checkpoint.id == checkpoint_id:
                    return checkpoint
        if self.checkpoint_store is not None:
            self.flush_checkpoints()
            stored = self.checkpoint_store.get(checkpoint_id)
            if stored is not None:
                return stored
        raise CheckpointNotFoundError(checkpoint_id)

    def flush_checkpoints(self) -> None:
        """Дождаться записи уже поставленных в очередь чекпоинтов."""
        self._checkpoint_executor.submit(lambda: None).result()

    def restore(self, checkpoint: RecoveryCheckpoint) -> None:
        """
        Назначение:
            Засеять состояние нового менеджера из чекпоинта (возобновление задания).

        Контракт:
            - только для «чистого» менеджера; повторный вызов игнорируется;
            - failed_rows попадают в журнал как failed, мёртвая очередь переносится как есть.
        """
        with self._progress_lock, self._failed_lock, self._dead_lock, self._satisfied_lock:
            if self._restored or self._processed_rows or self._failed or self._dead:
                return
            self._restored = True
            self._processed_rows = checkpoint.processed_rows
            self._invalid_rows = checkpoint.invalid_rows
            self._status_counts = Counter(checkpoint.status_counts)
            if not checkpoint.status_counts and checkpoint.successful_rows:
                self._status_counts[RowStatus.CREATED.value] = checkpoint.successful_rows
            self._error_distribution = Counter(checkpoint.error_distribution)
            self._last_row_index = checkpoint.last_row_index
            self._batch_index = checkpoint.batch_index
            self._batch_settled = set(checkpoint.settled_row_indices)
            self._satisfied = set(checkpoint.satisfied_keys)
            self._dead = list(checkpoint.dead_letter)
            for failed in checkpoint.failed_rows:
                self._failed[failed.row_index] = failed.snapshot()
                self.ledger.transition(failed.row_index, RowState.FAILED)
            self.ledger.seed_succeeded(sum(self._status_counts.values()))
        with self._checkpoints_lock:
            if all(c.id != checkpoint.id for c in self._checkpoints):
                self._checkpoints.append(checkpoint)

    def recover_from_checkpoint(
        self,
        checkpoint_id: str,
        writer: DomainWriterProtocol,
        validator: RowCheckProtocol | None = None,
    ) -> RecoveryResult:
        """
        Назначение:
            Повторно исполнить неудачные строки чекпоинта.

        Алгоритм:
            - строки сортируются: меньше зависимостей, меньше попыток, severity;
            - permanent строки не исполняются и учитываются как permanent_failures;
            - строки, уже не находящиеся в состоянии failed, пропускаются;
            - остальные проходят шаги 3–7 process_batch (повторы, мёртвая очередь).
        """
        started = time.monotonic()
        checkpoint = self._find_checkpoint(checkpoint_id)
        self.restore(checkpoint)

        result = RecoveryResult()
        candidates: list[FailedRow] = []
        for snapshot in sorted(checkpoint.failed_rows, key=failed_row_priority):
            with self._failed_lock:
                current = self._failed.get(snapshot.row_index)
            if current is None or self.ledger.state(snapshot.row_index) != RowState.FAILED:
                continue
            if current.severity == FailureSeverity.PERMANENT:
                result.permanent_failures += 1
                self._emit(
                    RowOutcome(
                        row_index=current.row_index,
                        status=RowStatus.FAILED,
                        handle=current.row.get("handle"),
                        message=current.last_error,
                    )
                )
                continue
            candidates.append(current)

        plan = plan_batch([failed.row for failed in candidates])
        by_index = {failed.row_index: failed for failed in candidates}
        futures: dict[int, Future] = {}
        for row in plan.order:
            if self.cancel_token.cancelled:
                break
            for provider in plan.in_batch_providers.get(row.row_index, ()):
                provider_future = futures.get(provider)
                if provider_future is not None:
                    provider_future.result()
            futures[row.row_index] = self._submit(
                row, by_index[row.row_index].dependencies, writer, validator, RowState.FAILED, first_pass=False
            )

        for row_index, future in futures.items():
            decision = future.result()
            if decision == _DECISION_SUCCESS:
                result.recovered_rows += 1
            elif decision == _DECISION_FAILED:
                result.permanent_failures += 1
            elif decision == _DECISION_DEAD:
                result.dead_letter_rows.append(row_index)

        result.retry_pending = self.scheduler.pending()
        result.duration_ms = getDurationMs(started, time.monotonic())
        logEvent(
            self.logger,
            logging.INFO,
            self.job_id,
            "recovery",
            f"Recovery from {checkpoint_id}: recovered={result.recovered_rows} "
            f"failed={result.permanent_failures} dead_letter={len(result.dead_letter_rows)}",
        )
        return result

    # -------------------------------------------------------------- lifecycle

    def drain(self, timeout: float | None = None) -> bool:
        """Ждать, пока не останется запланированных и исполняемых повторов."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._outstanding_cond:
            while self._outstanding > 0:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return False
                self._outstanding_cond.wait(timeout=remaining)
        return True

    def cancel(self) -> list[int]:
        """
        Отмена: запланированные повторы снимаются, строки остаются failed
        (и попадают в чекпоинт). Исполняемые вызовы завершаются.
        """
        self.cancel_token.cancel()
        dropped = self.scheduler.cancel()
        for row_index in dropped:
            self._drop_retry(row_index, "job cancelled before retry")
        return dropped

    def close(self) -> None:
        for row_index in self.scheduler.close():
            self._drop_retry(row_index, "recovery manager closed")
        self._executor.shutdown(wait=True)
        self._call_executor.shutdown(wait=False)
        self._checkpoint_executor.shutdown(wait=True)

    # -------------------------------------------------------------- accessors

    def failed_rows(self) -> list[FailedRow]:
        with self._failed_lock:
            return [row.snapshot() for row in sorted(self._failed.values(), key=lambda r: r.row_index)]

    def dead_letter_entries(self) -> list[DeadLetterEntry]:
        with self._dead_lock:
            return list(self._dead)

    def error_distribution(self) -> dict[str, int]:
        with self._progress_lock:
            return dict(self._error_distribution)

    def totals(self) -> RecoveryTotals:
        with self._progress_lock, self._failed_lock, self._dead_lock:
            return RecoveryTotals(
                processed_rows=self._processed_rows,
                invalid_rows=self._invalid_rows,
                created=self._status_counts[RowStatus.CREATED.value],
                updated=self._status_counts[RowStatus.UPDATED.value],
                skipped=self._status_counts[RowStatus.SKIPPED.value],
                failed=len(self._failed),
                dead_lettered=len(self._dead),
                retry_pending=self.scheduler.pending(),
                error_distribution=dict(self._error_distribution),
            )


def _status_of(result: WriteResult) -> RowStatus:
    try:
        status = RowStatus(result.status)
    except ValueError:
        return RowStatus.CREATED
    if status in (RowStatus.FAILED, RowStatus.DEAD_LETTERED):
        return RowStatus.CREATED
    return status


def _default_message(status: RowStatus) -> str | None:
    if status == RowStatus.SKIPPED:
        return "Dry-run: would create product"
    return None
