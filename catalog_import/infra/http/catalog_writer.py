from __future__ import annotations

from typing import Any

from catalog_import.domain.error_codes import ErrorType
from catalog_import.domain.exceptions import DomainWriteError
from catalog_import.domain.models import ValidatedRow, WriteResult
from catalog_import.domain.recovery.dependencies import is_variant_row
from catalog_import.infra.http.catalog_client import ApiError, CatalogApiClient

PRODUCTS_PATH = "/admin/products/import"
VARIANTS_PATH = "/admin/products/{handle}/variants/import"

_PRODUCT_FIELDS = (
    "title",
    "subtitle",
    "handle",
    "status",
    "description",
    "external_id",
    "is_giftcard",
    "is_discountable",
    "weight",
    "length",
    "width",
    "height",
)
_VARIANT_FIELDS = (
    "sku",
    "manage_inventory",
    "allow_backorder",
    "inventory_quantity",
    "backorder_policy",
    "uom",
    "min_increment",
    "min_cut",
    "reorder_point",
    "safety_stock",
    "low_stock_threshold",
)
_CURRENCY_PRICE_FIELDS = {
    "price_usd": "usd",
    "price_eur": "eur",
    "price_gbp": "gbp",
    "price_cad": "cad",
    "price_aud": "aud",
    "variant_price_usd": "usd",
    "variant_price_eur": "eur",
}


def status_error_type(status_code: int | None) -> ErrorType:
    """
    Назначение:
        Классификация HTTP-статуса ответа writer-а.

    Контракт:
        409 -> business_logic; 400/422 -> validation; 500 -> database;
        502/503/504 -> network; прочее -> unknown.
    """
    if status_code == 409:
        return ErrorType.BUSINESS_LOGIC
    if status_code in (400, 422):
        return ErrorType.VALIDATION
    if status_code == 500:
        return ErrorType.DATABASE
    if status_code in (502, 503, 504):
        return ErrorType.NETWORK
    return ErrorType.UNKNOWN


def _prices(values: dict[str, Any]) -> list[dict[str, Any]]:
    prices: list[dict[str, Any]] = []
    default_currency = values.get("currency_code")
    for field_name in ("variant_price", "retail_price"):
        amount = values.get(field_name)
        if amount is not None:
            price: dict[str, Any] = {"amount": amount}
            if default_currency:
                price["currency_code"] = default_currency
            prices.append(price)
            break
    for field_name, currency in _CURRENCY_PRICE_FIELDS.items():
        amount = values.get(field_name)
        if amount is not None and all(p.get("currency_code") != currency for p in prices):
            prices.append({"amount": amount, "currency_code": currency})
    return prices


def _options(values: dict[str, Any]) -> dict[str, str]:
    options: dict[str, str] = {}
    for n in (1, 2, 3):
        value = values.get(f"option_{n}_value")
        if value:
            options[str(values.get(f"option_{n}_title") or f"Option {n}")] = str(value)
    return options


def build_product_payload(row: ValidatedRow) -> dict[str, Any]:
    values = row.to_dict()
    payload: dict[str, Any] = {name: values[name] for name in _PRODUCT_FIELDS if values.get(name) is not None}
    if values.get("thumbnail_url"):
        payload["thumbnail"] = values["thumbnail_url"]
    if values.get("image_urls"):
        payload["images"] = [{"url": url} for url in values["image_urls"]]
    if values.get("tags"):
        payload["tags"] = [{"value": tag} for tag in values["tags"]]
    for source, target in (
        ("collection_handles", "collection_handles"),
        ("category_handles", "category_handles"),
        ("sales_channel_handles", "sales_channel_handles"),
    ):
        if values.get(source):
            payload[target] = list(values[source])
    if values.get("metadata_json"):
        payload["metadata"] = values["metadata_json"]
    prices = _prices(values)
    options = _options(values)
    if options:
        payload["options"] = [{"title": title, "values": [value]} for title, value in options.items()]
    if prices or values.get("sku") or options:
        variant = {name: values[name] for name in _VARIANT_FIELDS if values.get(name) is not None}
        if options:
            variant["options"] = options
            variant["title"] = " / ".join(options.values())
        variant["prices"] = prices
        payload["variants"] = [variant]
    return payload


def build_variant_payload(row: ValidatedRow) -> dict[str, Any]:
    values = row.to_dict()
    payload: dict[str, Any] = {name: values[name] for name in _VARIANT_FIELDS if values.get(name) is not None}
    payload["options"] = _options(values)
    payload["prices"] = _prices(values)
    payload["title"] = " / ".join(payload["options"].values()) or values.get("sku")
    return payload


class HttpCatalogWriter:
    """
    Назначение/ответственность:
        Доменный writer: upsert товара или варианта через admin API каталога.

    Контракт:
        - строка товара (с title) -> POST /admin/products/import, вариант строки вложен в товар;
        - строка только варианта -> POST /admin/products/<handle>/variants/import;
        - ответ {"product": {...}, "action": "created"|"updated"} -> WriteResult;
        - ошибки API -> DomainWriteError с error_type по HTTP-статусу или коду клиента.
    """

    def __init__(self, client: CatalogApiClient):
        self.client = client

    def write(self, row: ValidatedRow) -> WriteResult:
        handle = row.get("handle")
        if is_variant_row(row):
            path = VARIANTS_PATH.format(handle=handle)
            payload = build_variant_payload(row)
        else:
            path = PRODUCTS_PATH
            payload = build_product_payload(row)

        try:
            _, body = self.client.requestJson("POST", path, jsonBody=payload)
        except ApiError as exc:
            raise self._to_domain_error(row, exc) from exc

        body = body if isinstance(body, dict) else {}
        product = body.get("product") if isinstance(body.get("product"), dict) else {}
        variants = product.get("variants") if isinstance(product.get("variants"), list) else []
        action = body.get("action") if body.get("action") in ("created", "updated") else "created"
        return WriteResult(
            entity_id=product.get("id"),
            handle=product.get("handle") or handle,
            status=action,
            variant_skus=tuple(str(v["sku"]) for v in variants if isinstance(v, dict) and v.get("sku")),
        )

    @staticmethod
    def _to_domain_error(row: ValidatedRow, exc: ApiError) -> DomainWriteError:
        if exc.code == "TIMEOUT":
            error_type = ErrorType.TIMEOUT
        elif exc.code == "NETWORK_ERROR":
            error_type = ErrorType.NETWORK
        else:
            error_type = status_error_type(exc.status_code)
        detail = f": {exc.body_snippet}" if exc.body_snippet else ""
        return DomainWriteError(
            f"Write failed for row {row.row_index} ({exc.code}){detail}",
            error_type=error_type,
            status_code=exc.status_code,
        )
