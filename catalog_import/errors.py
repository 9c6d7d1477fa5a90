from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict


@dataclass
class AppError(Exception):
    """
    Унифицированная ошибка приложения.
    """

    category: str
    code: str
    message: str
    retryable: bool = False
    details: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "category": self.category,
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
            "details": self.details or {},
        }


class ConfigError(AppError):
    def __init__(self, message: str, field_name: str | None = None):
        """
        Назначение:
            Некорректная конфигурация импорта (пороги, лимиты, профили).
        """
        super().__init__(
            category="config",
            code="INVALID_CONFIG",
            message=message,
            details={"field": field_name} if field_name else {},
        )
        self.field_name = field_name


class ImportFatalError(AppError):
    def __init__(self, message: str, code: str = "IMPORT_FATAL", details: dict | None = None):
        """
        Назначение:
            Фатальная ошибка уровня задания: источник не читается, валидатор не
            инициализируется, превышен лимит строк. Прерывает задание целиком.
        """
        super().__init__(category="import", code=code, message=message, details=details or {})


class CheckpointNotFoundError(AppError):
    def __init__(self, checkpoint_id: str):
        super().__init__(
            category="checkpoint",
            code="CHECKPOINT_NOT_FOUND",
            message=f"Checkpoint not found: {checkpoint_id}",
            details={"checkpoint_id": checkpoint_id},
        )
        self.checkpoint_id = checkpoint_id


__all__ = ["AppError", "ConfigError", "ImportFatalError", "CheckpointNotFoundError"]
