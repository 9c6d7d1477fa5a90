from __future__ import annotations

import csv
from typing import Iterator

from catalog_import.domain.models import RawRecord

NULL_MARKERS = frozenset({"", "null"})


class CsvFormatError(Exception):
    """Файл нельзя читать дальше: нет заголовка или строка с лишними колонками."""


def parseNull(value: str | None) -> str | None:
    """Обрезает пробелы; пустая ячейка и NULL (в любом регистре) -> None."""
    if value is None:
        return None
    value = value.strip()
    return None if value.lower() in NULL_MARKERS else value


class CsvRecordSource:
    """
    Назначение/ответственность:
        Потоковый CSV-источник: читает файл построчно и отдаёт RawRecord.

    Контракт:
        - первая строка файла: заголовок; headers доступны после начала итерации
          (или через read_headers());
        - row_index строк данных начинается с 1, пустые строки пропускаются без
          сдвига нумерации следующих записей;
        - лишние колонки в строке -> CsvFormatError (фатально для задания),
          недостающие читаются как None.
    """

    def __init__(self, path: str, delimiter: str = ",", encoding: str = "utf-8-sig") -> None:
        self.path = path
        self.delimiter = delimiter
        self.encoding = encoding
        self.headers: list[str] | None = None

    def _open(self):
        return open(self.path, "r", encoding=self.encoding, newline="")

    def read_headers(self) -> list[str]:
        with self._open() as f:
            header = next(csv.reader(f, delimiter=self.delimiter), None)
        if not header:
            raise CsvFormatError("Missing header in source CSV")
        self.headers = [h.strip() for h in header]
        return self.headers

    def __iter__(self) -> Iterator[RawRecord]:
        with self._open() as f:
            reader = csv.DictReader(f, delimiter=self.delimiter)
            if reader.fieldnames is None:
                raise CsvFormatError("Missing header in source CSV")
            expected = len(reader.fieldnames)
            self.headers = [h.strip() for h in reader.fieldnames]
            row_index = 0
            for row in reader:
                extra = row.pop(None, None)
                if extra is not None:
                    raise CsvFormatError(
                        f"Invalid column count at line {reader.line_num}: expected {expected}, got {expected + len(extra)}"
                    )
                if not any((v or "").strip() for v in row.values()):
                    continue
                row_index += 1
                yield RawRecord(row_index=row_index, values={k.strip(): parseNull(v) for k, v in row.items()})
