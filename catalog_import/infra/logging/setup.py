from __future__ import annotations

import logging
from pathlib import Path

LOGGER_ROOT = "catalogImport"

LOG_LINE_FORMAT = "%(asctime)s %(levelname)s runId=%(runId)s comp=%(component)s msg=%(message)s"
LOG_DATE_FORMAT = "%Y-%m-%dT%H:%M:%S%z"

_LEVELS_BY_NAME = {
    "ERROR": logging.ERROR,
    "WARN": logging.WARNING,
    "WARNING": logging.WARNING,
    "INFO": logging.INFO,
    "DEBUG": logging.DEBUG,
}


class EnsureFieldsFilter(logging.Filter):
    """
    Назначение:
        Подставляет runId/component в запись, пришедшую без extra
        (сторонние библиотеки, прямые logger.info из кода импорта).
    """

    def __init__(self, runId: str, defaultComponent: str = "core"):
        super().__init__()
        self.runId = runId
        self.defaultComponent = defaultComponent

    def filter(self, record: logging.LogRecord) -> bool:
        record.__dict__.setdefault("runId", self.runId)
        record.__dict__.setdefault("component", self.defaultComponent)
        return True


class StdStreamToLogger:
    """
    Назначение:
        File-like объект: копит вывод print() и отправляет в лог
        законченными строками. Пустые строки отбрасываются.
    """

    def __init__(self, logger: logging.Logger, level: int, runId: str, component: str):
        self.logger = logger
        self.level = level
        self.extra = {"runId": runId, "component": component}
        self.pending: list[str] = []

    def _emit(self, text: str) -> None:
        text = text.rstrip()
        if text.strip():
            self.logger.log(self.level, text, extra=self.extra)

    def write(self, s: str) -> int:
        if not s:
            return 0
        *complete, tail = s.split("\n")
        if complete:
            complete[0] = "".join(self.pending) + complete[0]
            self.pending = []
            for line in complete:
                self._emit(line)
        if tail:
            self.pending.append(tail)
        return len(s)

    def flush(self) -> None:
        if self.pending:
            self._emit("".join(self.pending))
            self.pending = []


class TeeStream:
    """Пишет одновременно в терминал и в лог команды."""

    def __init__(self, primary, secondary):
        self.primary = primary
        self.secondary = secondary

    def write(self, s: str) -> int:
        written = self.primary.write(s)
        self.secondary.write(s)
        return written

    def flush(self) -> None:
        for stream in (self.primary, self.secondary):
            stream.flush()


def mapLogLevel(levelName: str) -> int:
    """ERROR|WARN|INFO|DEBUG -> числовой уровень logging; иное -> ValueError."""
    level = _LEVELS_BY_NAME.get((levelName or "").strip().upper())
    if level is None:
        raise ValueError(f"Unsupported log level: {levelName}")
    return level


def createCommandLogger(commandName: str, logDir: str, runId: str, logLevel: str) -> tuple[logging.Logger, str]:
    """
    Назначение:
        Отдельный логгер на каждый запуск команды CLI с файлом
        <logDir>/<command>_<runId>.log.

    Контракт:
        - логгер не распространяет записи в root;
        - повторный вызов с тем же runId пересоздаёт обработчики;
        - закрывать через closeLogger().

    Выходные данные:
        (logger, путь к log-файлу)
    """
    directory = Path(logDir)
    directory.mkdir(parents=True, exist_ok=True)
    logFile = directory / f"{commandName}_{runId}.log"

    level = mapLogLevel(logLevel)
    logger = logging.getLogger(".".join((LOGGER_ROOT, commandName, runId)))
    closeLogger(logger)
    logger.propagate = False
    logger.setLevel(level)

    handler = logging.FileHandler(logFile, encoding="utf-8")
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(fmt=LOG_LINE_FORMAT, datefmt=LOG_DATE_FORMAT))
    handler.addFilter(EnsureFieldsFilter(runId=runId))
    logger.addHandler(handler)
    return logger, str(logFile)


def getLibraryLogger() -> logging.Logger:
    """Корневой логгер пакета для компонентов, собранных без CLI (тесты, встраивание)."""
    return logging.getLogger(LOGGER_ROOT)


def logEvent(logger: logging.Logger, level: int, runId: str, component: str, message: str) -> None:
    logger.log(level, message, extra={"runId": runId, "component": component})


def closeLogger(logger: logging.Logger) -> None:
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)
        handler.close()
