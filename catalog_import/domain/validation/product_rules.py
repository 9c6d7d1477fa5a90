from __future__ import annotations

import json
import math
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from catalog_import.domain.error_codes import IssueSeverity
from catalog_import.domain.models import RawRecord, ValidatedRow, ValidationIssue

HANDLE_RE = re.compile(r"^[a-z0-9]+(?:-[a-z0-9]+)*$")
CURRENCY_RE = re.compile(r"^[a-z]{3}$")
URL_RE = re.compile(r"^https?://[^\s/$.?#][^\s]*$", re.IGNORECASE)

TRUE_VALUES = ("true", "1", "yes", "y")
FALSE_VALUES = ("false", "0", "no", "n")
UOM_VALUES = ("yard", "meter", "metre", "yd", "m")
BACKORDER_POLICIES = ("deny", "allow_date", "allow_any")
STATUS_VALUES = ("published", "draft")

PRICE_FIELDS = (
    "retail_price",
    "swatch_price",
    "price_usd",
    "price_eur",
    "price_gbp",
    "price_cad",
    "price_aud",
    "variant_price",
    "variant_price_usd",
    "variant_price_eur",
)
DIMENSION_FIELDS = ("weight", "length", "width", "height", "reorder_point", "safety_stock", "low_stock_threshold")
BOOLEAN_FIELDS = ("manage_inventory", "allow_backorder", "is_discountable", "is_giftcard")
TEXT_FIELDS = (
    "external_id",
    "sku",
    "option_1_title",
    "option_1_value",
    "option_2_title",
    "option_2_value",
    "option_3_title",
    "option_3_value",
    "description",
    "subtitle",
)


def slugify(value: str) -> str:
    """'Linen Blend 01' -> 'linen-blend-01'."""
    slug = re.sub(r"[^a-z0-9]+", "-", value.strip().lower())
    return slug.strip("-")


class IssueSink:
    """
    Назначение:
        Накопитель замечаний валидации для одной строки.
    """

    def __init__(self, row_index: int):
        self.row_index = row_index
        self.issues: list[ValidationIssue] = []

    def add(
        self,
        field_name: str | None,
        code: str,
        message: str,
        severity: IssueSeverity = IssueSeverity.ERROR,
        suggestion: str | None = None,
        value: Any = None,
    ) -> None:
        self.issues.append(
            ValidationIssue(
                row_index=self.row_index,
                rule_id=code,
                rule_name=code.lower(),
                severity=severity,
                message=message,
                field=field_name,
                suggestion=suggestion,
                value=None if value is None else str(value),
            )
        )

    @property
    def has_blocking(self) -> bool:
        return any(issue.blocking for issue in self.issues)


Parser = Callable[[str, str, IssueSink], Any]
Check = Callable[[str, Any, IssueSink], None]


@dataclass
class FieldRule:
    """
    Назначение:
        Общее правило поля: берёт значение по имени колонки, парсит, валидирует.

    Контракт:
        - apply(values, sink) -> parsed_value | None
        - парсер при ошибке добавляет замечание и возвращает None.
    """

    name: str
    required: bool = False
    parser: Optional[Parser] = None
    validators: tuple[Check, ...] = field(default_factory=tuple)

    def apply(self, values: dict[str, str | None], sink: IssueSink) -> Any:
        raw = values.get(self.name)
        if raw is not None:
            raw = raw.strip()
            if raw == "":
                raw = None
        if raw is None:
            if self.required:
                sink.add(self.name, "REQUIRED_FIELD_MISSING", f"{self.name} is required")
            return None
        parsed: Any = raw
        if self.parser:
            parsed = self.parser(self.name, raw, sink)
        if parsed is None:
            return None
        for validator in self.validators:
            validator(self.name, parsed, sink)
        return parsed


def parse_number(name: str, raw: str, sink: IssueSink) -> float | None:
    try:
        value = float(raw)
        if not math.isfinite(value):
            raise ValueError(raw)
        return value
    except ValueError:
        sink.add(name, "INVALID_NUMBER", f"{name} must be a number", value=raw, suggestion="Use digits, e.g. 12.50")
        return None


def parse_int(name: str, raw: str, sink: IssueSink) -> int | None:
    try:
        return int(raw)
    except ValueError:
        sink.add(name, "INVALID_INTEGER", f"{name} must be an integer", value=raw)
        return None


def parse_boolean_like(name: str, raw: str, sink: IssueSink) -> bool | None:
    normalized = raw.lower()
    if normalized in TRUE_VALUES:
        return True
    if normalized in FALSE_VALUES:
        return False
    sink.add(name, "INVALID_BOOLEAN", f"{name} must be true/false", value=raw, suggestion="Use true or false")
    return None


def parse_lower(name: str, raw: str, sink: IssueSink) -> str:
    return raw.lower()


def comma_list(name: str, raw: str, sink: IssueSink) -> list[str]:
    return [item.strip() for item in raw.split(",") if item.strip()]


def semicolon_list(name: str, raw: str, sink: IssueSink) -> list[str]:
    return [item.strip() for item in raw.split(";") if item.strip()]


def parse_json_object(name: str, raw: str, sink: IssueSink) -> dict | None:
    try:
        parsed = json.loads(raw)
    except ValueError:
        sink.add(name, "INVALID_JSON", f"{name} must be valid JSON", value=raw)
        return None
    if not isinstance(parsed, dict):
        sink.add(name, "INVALID_JSON", f"{name} must be a JSON object", value=raw)
        return None
    return parsed


def non_negative(name: str, value: Any, sink: IssueSink) -> None:
    if value < 0:
        sink.add(name, "NEGATIVE_VALUE", f"{name} must be >= 0", value=value)


def positive(name: str, value: Any, sink: IssueSink) -> None:
    if value <= 0:
        sink.add(name, "NON_POSITIVE_VALUE", f"{name} must be > 0", value=value)


def one_of(*allowed: str) -> Check:
    def _inner(name: str, value: Any, sink: IssueSink) -> None:
        if value not in allowed:
            sink.add(name, "INVALID_ENUM", f"{name} must be one of {'|'.join(allowed)}", value=value)

    return _inner


def currency_code(name: str, value: Any, sink: IssueSink) -> None:
    if not CURRENCY_RE.match(value):
        sink.add(name, "INVALID_CURRENCY", f"{name} must be a 3-letter currency code", value=value, suggestion="e.g. usd")


def handle_format(name: str, value: Any, sink: IssueSink) -> None:
    if not HANDLE_RE.match(value):
        sink.add(
            name,
            "INVALID_HANDLE",
            f"{name} must contain lowercase letters, digits and dashes",
            value=value,
            suggestion=slugify(value) or None,
        )


def url_format(name: str, value: Any, sink: IssueSink) -> None:
    values = value if isinstance(value, list) else [value]
    for item in values:
        if not URL_RE.match(item):
            sink.add(name, "INVALID_URL", f"{name} must be an http(s) URL", value=item)


def _build_rules() -> tuple[FieldRule, ...]:
    rules: list[FieldRule] = [
        FieldRule("title", required=True),
        FieldRule("handle", parser=parse_lower, validators=(handle_format,)),
        FieldRule("status", parser=parse_lower, validators=(one_of(*STATUS_VALUES),)),
        FieldRule("currency_code", parser=parse_lower, validators=(currency_code,)),
        FieldRule("thumbnail_url", validators=(url_format,)),
        FieldRule("image_urls", parser=comma_list, validators=(url_format,)),
        FieldRule("tags", parser=comma_list),
        FieldRule("collection_handles", parser=comma_list),
        FieldRule("category_handles", parser=comma_list),
        FieldRule("sales_channel_handles", parser=semicolon_list),
        FieldRule("inventory_quantity", parser=parse_int, validators=(non_negative,)),
        FieldRule("uom", parser=parse_lower, validators=(one_of(*UOM_VALUES),)),
        FieldRule("min_increment", parser=parse_number, validators=(positive,)),
        FieldRule("min_cut", parser=parse_number, validators=(positive,)),
        FieldRule("backorder_policy", parser=parse_lower, validators=(one_of(*BACKORDER_POLICIES),)),
        FieldRule("metadata_json", parser=parse_json_object),
    ]
    rules.extend(FieldRule(name) for name in TEXT_FIELDS)
    rules.extend(FieldRule(name, parser=parse_number, validators=(non_negative,)) for name in PRICE_FIELDS)
    rules.extend(FieldRule(name, parser=parse_number, validators=(non_negative,)) for name in DIMENSION_FIELDS)
    rules.extend(FieldRule(name, parser=parse_boolean_like) for name in BOOLEAN_FIELDS)
    return tuple(rules)


PRODUCT_FIELD_RULES = _build_rules()
PRODUCT_FIELDS = tuple(rule.name for rule in PRODUCT_FIELD_RULES)


class ProductRowValidator:
    """
    Назначение/ответственность:
        Валидатор строки товара/варианта: парсинг типов, перечисления,
        межполевые проверки.

    Выходные данные:
        (ValidatedRow | None, issues): ValidatedRow только при отсутствии
        блокирующих замечаний.

    Межполевые правила:
        - handle по умолчанию выводится из title;
        - status по умолчанию published;
        - min_cut кратен min_increment;
        - option_N_value без option_N_title -> предупреждение;
        - цена без currency_code -> предупреждение.
    """

    def __init__(self, rules: tuple[FieldRule, ...] = PRODUCT_FIELD_RULES):
        self.rules = rules

    def validate(self, record: RawRecord) -> tuple[ValidatedRow | None, list[ValidationIssue]]:
        sink = IssueSink(record.row_index)
        parsed: dict[str, Any] = {}
        for rule in self.rules:
            value = rule.apply(record.values, sink)
            if value is not None:
                parsed[rule.name] = value

        self._apply_defaults(parsed)
        self._cross_field_checks(parsed, sink)

        if sink.has_blocking:
            return None, sink.issues
        return ValidatedRow(record.row_index, parsed), sink.issues

    def _apply_defaults(self, parsed: dict[str, Any]) -> None:
        parsed.setdefault("status", "published")
        if "handle" not in parsed and parsed.get("title"):
            generated = slugify(str(parsed["title"]))
            if generated:
                parsed["handle"] = generated

    def _cross_field_checks(self, parsed: dict[str, Any], sink: IssueSink) -> None:
        min_cut = parsed.get("min_cut")
        min_increment = parsed.get("min_increment")
        if min_cut is not None and min_increment is not None:
            quotient = min_cut / min_increment
            if abs(quotient - round(quotient)) > 1e-9:
                sink.add(
                    "min_cut",
                    "MIN_CUT_NOT_MULTIPLE",
                    "min_cut must be a multiple of min_increment",
                    value=min_cut,
                    suggestion=f"Use a multiple of {min_increment:g}",
                )

        for n in (1, 2, 3):
            if parsed.get(f"option_{n}_value") and not parsed.get(f"option_{n}_title"):
                sink.add(
                    f"option_{n}_title",
                    "OPTION_TITLE_MISSING",
                    f"option_{n}_value is set without option_{n}_title",
                    severity=IssueSeverity.WARNING,
                )

        has_price = any(parsed.get(name) is not None for name in ("retail_price", "variant_price"))
        if has_price and not parsed.get("currency_code"):
            sink.add(
                "currency_code",
                "CURRENCY_MISSING",
                "price is set without currency_code; store default currency will be used",
                severity=IssueSeverity.WARNING,
            )
