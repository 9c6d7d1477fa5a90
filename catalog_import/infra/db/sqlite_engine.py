from __future__ import annotations

import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

CHECKPOINT_DB_FILE = "catalog_import_checkpoints.sqlite3"
MEMORY_DB = ":memory:"
BUSY_TIMEOUT_MS = 5000

_PRAGMAS = (
    "PRAGMA journal_mode = WAL",
    "PRAGMA synchronous = NORMAL",
    f"PRAGMA busy_timeout = {BUSY_TIMEOUT_MS}",
)

Params = tuple | dict | None


def getCheckpointDbPath(checkpointDir: str) -> str:
    return str(Path(checkpointDir) / CHECKPOINT_DB_FILE)


def openDb(dbPath: str) -> sqlite3.Connection:
    """
    Назначение:
        Соединение с базой чекпоинтов (файл создаётся вместе с каталогом).

    Контракт:
        - autocommit (isolation_level=None): транзакции только через
          SqliteEngine.transaction();
        - соединение можно передавать между потоками, доступ сериализует SqliteEngine.
    """
    if dbPath != MEMORY_DB:
        Path(dbPath).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(dbPath, timeout=BUSY_TIMEOUT_MS / 1000, check_same_thread=False, isolation_level=None)
    conn.row_factory = sqlite3.Row
    for pragma in _PRAGMAS:
        conn.execute(pragma)
    return conn


class SqliteEngine:
    """Общий sqlite3.Connection под одной RLock: execute/fetch* и транзакции из любого потока."""

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn
        self._lock = threading.RLock()

    def execute(self, sql: str, params: Params = None) -> sqlite3.Cursor:
        with self._lock:
            return self.conn.execute(sql, () if params is None else params)

    def fetchone(self, sql: str, params: Params = None) -> sqlite3.Row | None:
        with self._lock:
            return self.execute(sql, params).fetchone()

    def fetchall(self, sql: str, params: Params = None) -> list[sqlite3.Row]:
        with self._lock:
            return self.execute(sql, params).fetchall()

    @contextmanager
    def transaction(self) -> Iterator[None]:
        # RLock держится до COMMIT/ROLLBACK, чужие запросы ждут
        with self._lock:
            self.conn.execute("BEGIN")
            try:
                yield
            except BaseException:
                self.conn.execute("ROLLBACK")
                raise
            self.conn.execute("COMMIT")

    def close(self) -> None:
        with self._lock:
            self.conn.close()
