from __future__ import annotations

import re

SECRET_MASK = "***"
ELLIPSIS = "..."

# символы, с которых табличный редактор начинает формулу
FORMULA_LEAD_RE = re.compile(r"^\s*[=+\-@]+")


def maskSecret(value: str | None) -> str | None:
    """Токен API для печати в stdout и лог: любое значение -> '***', None остаётся None."""
    return None if value is None else SECRET_MASK


def truncateText(value: str | None, limit: int = 500) -> str | None:
    """
    Назначение:
        Обрезка сообщений об ошибках и значений ячеек перед записью
        в отчёт или артефакт.

    Контракт:
        - результат не длиннее limit символов, включая '...';
        - при limit <= 3 многоточие не добавляется.
    """
    if value is None or len(value) <= limit:
        return value
    if limit <= len(ELLIPSIS):
        return value[:limit]
    return value[: limit - len(ELLIPSIS)] + ELLIPSIS


def looksLikeFormula(value: str | None) -> bool:
    """Ячейка CSV начинается (после пробелов) с '=', '+', '-' или '@'."""
    return bool(value) and FORMULA_LEAD_RE.match(value) is not None


def stripFormulaPrefix(value: str) -> str:
    """'=SUM(A1)' -> 'SUM(A1)', '  @@cmd' -> 'cmd'."""
    return FORMULA_LEAD_RE.sub("", value, count=1)


CONTROL_CHARS_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
SCRIPT_RE = re.compile(r"<script\b[\s\S]*?</script\s*>|\b(?:java|vb)script\s*:", re.IGNORECASE)
COMMAND_RE = re.compile(r"\$\([^)]*\)|`[^`]*`")
SQL_RE = re.compile(
    r"'\s*(?:or|and)\s+['\w]+\s*=\s*['\w]+"
    r"|;\s*(?:drop|truncate|alter|delete\s+from)\s+\w+"
    r"|\bunion\s+(?:all\s+)?select\b",
    re.IGNORECASE,
)


def stripControlChars(value: str) -> str:
    """Удаляет NUL и управляющие символы, кроме \\t, \\n и \\r."""
    return CONTROL_CHARS_RE.sub("", value)


def stripPattern(pattern: re.Pattern[str], value: str) -> str:
    return pattern.sub("", value).strip()
