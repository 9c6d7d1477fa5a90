from __future__ import annotations

import threading

from catalog_import.domain.recovery.models import RecoveryCheckpoint


class InMemoryCheckpointStore:
    """Хранилище чекпоинтов в памяти процесса (библиотечное использование и тесты)."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._items: dict[str, RecoveryCheckpoint] = {}
        self._order: list[str] = []

    def save(self, checkpoint: RecoveryCheckpoint) -> None:
        with self._lock:
            if checkpoint.id in self._items:
                self._order.remove(checkpoint.id)
            self._items[checkpoint.id] = checkpoint
            self._order.append(checkpoint.id)

    def get(self, checkpoint_id: str) -> RecoveryCheckpoint | None:
        with self._lock:
            return self._items.get(checkpoint_id)

    def latest(self, job_id: str) -> RecoveryCheckpoint | None:
        with self._lock:
            for checkpoint_id in reversed(self._order):
                checkpoint = self._items[checkpoint_id]
                if checkpoint.job_id == job_id:
                    return checkpoint
        return None

    def list(self, job_id: str | None = None) -> list[RecoveryCheckpoint]:
        with self._lock:
            items = [self._items[checkpoint_id] for checkpoint_id in self._order]
        if job_id is None:
            return items
        return [c for c in items if c.job_id == job_id]
