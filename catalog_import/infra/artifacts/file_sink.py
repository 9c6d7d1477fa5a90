from __future__ import annotations

import csv
import json
import logging
import shutil
import time
from dataclasses import dataclass
from pathlib import Path

from catalog_import.domain.reporting.artifacts import ArtifactPayload
from catalog_import.infra.logging.setup import getLibraryLogger, logEvent

SECONDS_PER_DAY = 24 * 60 * 60


@dataclass
class ArtifactCleanupResult:
    scanned: int = 0
    deleted: int = 0
    retained: int = 0
    errors: int = 0
    freed_bytes: int = 0


class FileArtifactSink:
    """
    Назначение/ответственность:
        Публикация артефактов задания в локальный каталог: <artifact_dir>/<job_id>/<kind>.<fmt>.

    Контракт:
        - publish(job_id, kind, payload) -> file:// URL записанного файла;
        - json пишется с indent=2, csv с заголовком payload.columns;
        - повторная публикация того же kind перезаписывает файл;
        - cleanup удаляет каталоги заданий старше срока хранения.
    """

    def __init__(self, artifact_dir: str, logger: logging.Logger | None = None):
        self.artifact_dir = Path(artifact_dir)
        self.logger = logger or getLibraryLogger()

    def publish(self, job_id: str, kind: str, payload: ArtifactPayload) -> str:
        job_dir = self.artifact_dir / job_id
        job_dir.mkdir(parents=True, exist_ok=True)
        path = job_dir / f"{kind}.{payload.fmt}"

        if payload.fmt == "json":
            with open(path, "w", encoding="utf-8") as f:
                json.dump(payload.data, f, ensure_ascii=False, indent=2, default=str)
        elif payload.fmt == "csv":
            with open(path, "w", encoding="utf-8", newline="") as f:
                writer = csv.DictWriter(f, fieldnames=list(payload.columns), extrasaction="ignore")
                writer.writeheader()
                for row in payload.rows:
                    writer.writerow(row)
        else:
            raise ValueError(f"Unsupported artifact format: {payload.fmt}")

        url = path.resolve().as_uri()
        logEvent(
            self.logger,
            logging.INFO,
            job_id,
            "artifacts",
            f"Artifact published: kind={kind} url={url} truncated={payload.truncated}",
        )
        return url

    def cleanup(self, retention_days: float, dry_run: bool = False, now: float | None = None) -> ArtifactCleanupResult:
        """
        Назначение:
            Удаление артефактов заданий старше retention_days.

        Алгоритм:
            - возраст каталога задания считается по самому свежему mtime
              среди каталога и его файлов;
            - dry_run только считает, что было бы удалено;
            - ошибка на одном каталоге логируется и учитывается в errors,
              обход продолжается.
        """
        result = ArtifactCleanupResult()
        if not self.artifact_dir.is_dir():
            return result
        cutoff = (time.time() if now is None else now) - retention_days * SECONDS_PER_DAY

        for job_dir in sorted(p for p in self.artifact_dir.iterdir() if p.is_dir()):
            result.scanned += 1
            try:
                files = [p for p in job_dir.rglob("*") if p.is_file()]
                newest = max([job_dir.stat().st_mtime, *(p.stat().st_mtime for p in files)])
                if newest >= cutoff:
                    result.retained += 1
                    continue
                size = sum(p.stat().st_size for p in files)
                if not dry_run:
                    shutil.rmtree(job_dir)
            except OSError as exc:
                result.errors += 1
                logEvent(self.logger, logging.ERROR, job_dir.name, "artifacts", f"Artifact cleanup failed: {exc}")
                continue
            result.deleted += 1
            result.freed_bytes += size
            verb = "would be removed" if dry_run else "removed"
            logEvent(
                self.logger,
                logging.INFO,
                job_dir.name,
                "artifacts",
                f"Artifacts {verb}: dir={job_dir} bytes={size}",
            )
        return result
