from __future__ import annotations

from dataclasses import dataclass, field

from catalog_import.domain.error_codes import ErrorType


@dataclass
class DomainWriteError(Exception):
    """
    Назначение:
        Ошибка записи строки в каталог с явно указанным типом ошибки.
    Инварианты/гарантии:
        - error_type приводится к ErrorType (неизвестные значения -> UNKNOWN).
    """

    message: str
    error_type: ErrorType | str = ErrorType.UNKNOWN
    status_code: int | None = None

    def __post_init__(self) -> None:
        self.error_type = ErrorType.parse(self.error_type)
        super().__init__(self.message)

    def __str__(self) -> str:
        return self.message


@dataclass
class DependencyNotSatisfiedError(Exception):
    """
    Назначение:
        Строка ссылается на ключи, которые не существуют в каталоге и не созданы
        ранее в рамках задания.
    """

    row_index: int
    missing: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        super().__init__(str(self))

    def __str__(self) -> str:
        return f"Dependency not satisfied for row {self.row_index}: missing reference {', '.join(self.missing)}"


@dataclass
class WriterTimeoutError(Exception):
    """Вызов writer не уложился в отведённое время."""

    row_index: int
    timeout_ms: int

    def __post_init__(self) -> None:
        super().__init__(str(self))

    def __str__(self) -> str:
        return f"Writer call timeout after {self.timeout_ms}ms (row {self.row_index})"


@dataclass
class RowStateError(Exception):
    """
    Назначение:
        Недопустимый переход состояния строки в журнале строк.
    """

    row_index: int
    current: str
    target: str

    def __post_init__(self) -> None:
        super().__init__(str(self))

    def __str__(self) -> str:
        return f"Illegal row state transition for row {self.row_index}: {self.current} -> {self.target}"


__all__ = ["DomainWriteError", "DependencyNotSatisfiedError", "WriterTimeoutError", "RowStateError"]
