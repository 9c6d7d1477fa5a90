from __future__ import annotations

import json

from catalog_import.domain.recovery.models import RecoveryCheckpoint
from catalog_import.infra.db.sqlite_engine import SqliteEngine

SCHEMA_VERSION = 1

_DDL = (
    """
    CREATE TABLE IF NOT EXISTS meta (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS checkpoints (
        id TEXT PRIMARY KEY,
        job_id TEXT NOT NULL,
        timestamp_ms INTEGER NOT NULL,
        seq INTEGER NOT NULL,
        batch_index INTEGER NOT NULL,
        processed_rows INTEGER NOT NULL,
        failed_rows INTEGER NOT NULL,
        payload TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_checkpoints_job ON checkpoints(job_id, seq)",
)


def ensure_schema(engine: SqliteEngine) -> None:
    """
    Назначение:
        Создаёт таблицы хранилища чекпоинтов и фиксирует версию схемы.
    """
    for ddl in _DDL:
        engine.execute(ddl)
    with engine.transaction():
        engine.execute(
            "INSERT OR IGNORE INTO meta(key, value) VALUES ('schema_version', ?)",
            (str(SCHEMA_VERSION),),
        )


class SqliteCheckpointStore:
    """
    Назначение/ответственность:
        Хранилище RecoveryCheckpoint в SQLite (payload: JSON снимка).

    Контракт:
        - save идемпотентен по id (повторная запись заменяет строку);
        - latest(job_id): чекпоинт с наибольшим порядковым номером записи;
        - list(job_id): в порядке записи.
    """

    def __init__(self, engine: SqliteEngine):
        self.engine = engine
        ensure_schema(engine)

    def save(self, checkpoint: RecoveryCheckpoint) -> None:
        payload = json.dumps(checkpoint.to_dict(), ensure_ascii=False)
        with self.engine.transaction():
            row = self.engine.fetchone(
                "SELECT COALESCE(MAX(seq), 0) AS seq FROM checkpoints WHERE job_id = ?",
                (checkpoint.job_id,),
            )
            seq = int(row["seq"]) + 1 if row else 1
            self.engine.execute(
                """
                INSERT OR REPLACE INTO checkpoints
                    (id, job_id, timestamp_ms, seq, batch_index, processed_rows, failed_rows, payload)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    checkpoint.id,
                    checkpoint.job_id,
                    checkpoint.timestamp_ms,
                    seq,
                    checkpoint.batch_index,
                    checkpoint.processed_rows,
                    len(checkpoint.failed_rows),
                    payload,
                ),
            )

    def get(self, checkpoint_id: str) -> RecoveryCheckpoint | None:
        row = self.engine.fetchone("SELECT payload FROM checkpoints WHERE id = ?", (checkpoint_id,))
        if row is None:
            return None
        return RecoveryCheckpoint.from_dict(json.loads(row["payload"]))

    def latest(self, job_id: str) -> RecoveryCheckpoint | None:
        row = self.engine.fetchone(
            "SELECT payload FROM checkpoints WHERE job_id = ? ORDER BY seq DESC LIMIT 1",
            (job_id,),
        )
        if row is None:
            return None
        return RecoveryCheckpoint.from_dict(json.loads(row["payload"]))

    def list(self, job_id: str | None = None) -> list[RecoveryCheckpoint]:
        if job_id is None:
            rows = self.engine.fetchall("SELECT payload FROM checkpoints ORDER BY job_id, seq")
        else:
            rows = self.engine.fetchall(
                "SELECT payload FROM checkpoints WHERE job_id = ? ORDER BY seq",
                (job_id,),
            )
        return [RecoveryCheckpoint.from_dict(json.loads(row["payload"])) for row in rows]
