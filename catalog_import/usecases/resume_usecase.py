from __future__ import annotations

import logging
from typing import Iterable

from catalog_import.common.cancellation import CancellationToken
from catalog_import.config.config import ImportConfig
from catalog_import.domain.models import RawRecord
from catalog_import.domain.recovery.models import RecoveryCheckpoint
from catalog_import.errors import CheckpointNotFoundError, ImportFatalError
from catalog_import.infra.logging.setup import getLibraryLogger, logEvent
from catalog_import.usecases.import_run_usecase import ImportDependencies, ImportJobResult, ImportRunUseCase


class ResumeImportUseCase:
    """
    Назначение/ответственность:
        Возобновление задания по последнему (или указанному) чекпоинту.

    Алгоритм:
        1) найти чекпоинт в хранилище: checkpoint_id или latest(job_id);
        2) повторно исполнить failed_rows чекпоинта;
        3) дочитать источник, пропуская строки, уже учтённые чекпоинтом.

    Ограничения:
        Источник должен отдавать те же записи с теми же row_index, что и при первом запуске.
    """

    def __init__(
        self,
        config: ImportConfig,
        deps: ImportDependencies,
        logger: logging.Logger | None = None,
    ):
        if deps.checkpoint_store is None:
            raise ImportFatalError("Checkpoint store is required to resume a job", code="CHECKPOINT_STORE_MISSING")
        self.config = config
        self.deps = deps
        self.logger = logger or getLibraryLogger()

    def find_checkpoint(self, job_id: str, checkpoint_id: str | None = None) -> RecoveryCheckpoint:
        store = self.deps.checkpoint_store
        if checkpoint_id:
            checkpoint = store.get(checkpoint_id)
            if checkpoint is None or checkpoint.job_id != job_id:
                raise CheckpointNotFoundError(checkpoint_id)
            return checkpoint
        checkpoint = store.latest(job_id)
        if checkpoint is None:
            raise CheckpointNotFoundError(f"latest for job {job_id}")
        return checkpoint

    def run(
        self,
        job_id: str,
        source: Iterable[RawRecord],
        checkpoint_id: str | None = None,
        cancel: CancellationToken | None = None,
        report=None,
    ) -> ImportJobResult:
        checkpoint = self.find_checkpoint(job_id, checkpoint_id)
        logEvent(
            self.logger,
            logging.INFO,
            job_id,
            "resume",
            f"Resuming from {checkpoint.id}: processed={checkpoint.processed_rows} "
            f"last_row_index={checkpoint.last_row_index} failed={len(checkpoint.failed_rows)} "
            f"dead_letter={len(checkpoint.dead_letter)}",
        )
        return ImportRunUseCase(self.config, self.deps, self.logger).run(
            source,
            job_id=job_id,
            cancel=cancel,
            report=report,
            resume_from=checkpoint,
        )


def resume_import(
    job_id: str,
    source: Iterable[RawRecord],
    config: ImportConfig,
    deps: ImportDependencies,
    checkpoint_id: str | None = None,
    logger: logging.Logger | None = None,
) -> ImportJobResult:
    return ResumeImportUseCase(config, deps, logger).run(job_id, source, checkpoint_id=checkpoint_id)
