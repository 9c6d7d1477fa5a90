from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Iterable, Iterator, Mapping, Sequence

from catalog_import.domain.models import RawRecord
from catalog_import.domain.ports.import_ports import ColumnMappingResolverProtocol

SAMPLE_ROWS = 10

# target field -> aliases (заголовки источника в нормализованном виде)
FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "title": ("name", "product_name", "product_title"),
    "handle": ("slug", "url_handle", "product_handle"),
    "external_id": ("ext_id", "external_product_id"),
    "status": ("product_status", "state", "visibility"),
    "description": ("product_description", "desc", "details"),
    "subtitle": ("product_subtitle",),
    "retail_price": ("price", "cost", "base_price", "selling_price"),
    "currency_code": ("currency", "price_currency"),
    "swatch_price": ("sample_price", "swatch_cost"),
    "price_usd": ("usd_price", "price_us"),
    "price_eur": ("eur_price", "price_eu"),
    "price_gbp": ("gbp_price", "price_uk"),
    "price_cad": ("cad_price",),
    "price_aud": ("aud_price",),
    "sku": ("product_sku", "variant_sku", "item_code"),
    "variant_price": ("variant_cost",),
    "option_1_title": ("option1_title", "first_option", "option_title_1"),
    "option_1_value": ("option1_value", "first_option_value", "option_value_1"),
    "option_2_title": ("option2_title", "second_option", "option_title_2"),
    "option_2_value": ("option2_value", "second_option_value", "option_value_2"),
    "option_3_title": ("option3_title", "third_option", "option_title_3"),
    "option_3_value": ("option3_value", "third_option_value", "option_value_3"),
    "thumbnail_url": ("thumbnail", "main_image", "featured_image", "primary_image"),
    "image_urls": ("images", "additional_images", "gallery_images"),
    "tags": ("product_tags", "keywords", "labels"),
    "collection_handles": ("collections", "product_collections"),
    "category_handles": ("categories", "product_categories", "cat_handles"),
    "sales_channel_handles": ("sales_channels", "channels", "store_channels"),
    "manage_inventory": ("track_inventory", "inventory_managed"),
    "allow_backorder": ("backorder_allowed", "allow_backorders"),
    "inventory_quantity": ("quantity", "stock", "qty", "stock_quantity"),
    "weight": ("product_weight", "weight_kg"),
    "length": ("product_length", "length_cm"),
    "width": ("product_width", "width_cm"),
    "height": ("product_height", "height_cm"),
    "metadata_json": ("metadata", "custom_data"),
}

KNOWN_FIELDS: tuple[str, ...] = (
    *FIELD_ALIASES.keys(),
    "is_discountable",
    "is_giftcard",
    "variant_price_usd",
    "variant_price_eur",
    "uom",
    "min_increment",
    "min_cut",
    "reorder_point",
    "safety_stock",
    "low_stock_threshold",
    "backorder_policy",
)


def normalize_header(header: str) -> str:
    """' Product Name ' -> 'product_name'."""
    return re.sub(r"[^a-z0-9]+", "_", (header or "").strip().lower()).strip("_")


def _build_alias_index() -> dict[str, str]:
    index: dict[str, str] = {name: name for name in KNOWN_FIELDS}
    for target, aliases in FIELD_ALIASES.items():
        for alias in aliases:
            index.setdefault(normalize_header(alias), target)
    return index


ALIAS_INDEX = _build_alias_index()


class ColumnMappingResolver:
    """
    Назначение/ответственность:
        Сопоставляет заголовки источника с полями товара.

    Алгоритм:
        1) явное сопоставление (column_mapping) имеет наивысший приоритет;
        2) затем сопоставление из профиля (profile_id);
        3) затем точное совпадение или алиас по нормализованному заголовку.
        При конфликте (два заголовка -> одно поле) выигрывает заголовок с
        большим числом непустых значений в образце строк, при равенстве первый.

    Выходные данные:
        dict: заголовок источника -> целевое поле. Несопоставленные заголовки
        в результат не попадают.
    """

    def __init__(
        self,
        profiles: Mapping[str, Mapping[str, str]] | None = None,
        explicit: Mapping[str, str] | None = None,
    ):
        self.profiles = {k: dict(v) for k, v in (profiles or {}).items()}
        self.explicit = dict(explicit or {})

    def resolve(
        self,
        headers: Sequence[str],
        sample_rows: Sequence[Mapping[str, str | None]],
        profile_id: str | None = None,
    ) -> dict[str, str]:
        if profile_id is not None and profile_id not in self.profiles:
            raise KeyError(f"Unknown mapping profile: {profile_id}")
        profile = self.profiles.get(profile_id or "", {})

        candidates: dict[str, list[str]] = {}
        forced: dict[str, str] = {}
        for header in headers:
            if header in self.explicit:
                forced[header] = self.explicit[header]
                continue
            if header in profile:
                forced[header] = profile[header]
                continue
            target = ALIAS_INDEX.get(normalize_header(header))
            if target is not None:
                candidates.setdefault(target, []).append(header)

        mapping: dict[str, str] = dict(forced)
        taken = set(forced.values())
        for target, sources in candidates.items():
            if target in taken:
                continue
            best = max(sources, key=lambda h: (_filled(h, sample_rows), -headers.index(h)))
            mapping[best] = target
        return mapping

    def unmapped(self, headers: Sequence[str], mapping: Mapping[str, str]) -> list[str]:
        return [h for h in headers if h not in mapping]


def _filled(header: str, sample_rows: Sequence[Mapping[str, str | None]]) -> int:
    return sum(1 for row in sample_rows if (row.get(header) or "").strip())


@dataclass
class MappingSummary:
    mapping: dict[str, str] = field(default_factory=dict)
    unmapped_headers: list[str] = field(default_factory=list)


class MappedRecordSource:
    """
    Назначение/ответственность:
        Обёртка над источником: буферизует до 10 строк для образца, один раз
        определяет сопоставление колонок и отдаёт записи с ключами-полями товара.

    Инварианты/гарантии:
        - порядок и row_index записей сохраняются;
        - источник читается один раз.
    """

    def __init__(
        self,
        source: Iterable[RawRecord],
        resolver: ColumnMappingResolverProtocol,
        profile_id: str | None = None,
        sample_size: int = SAMPLE_ROWS,
    ):
        self.source = source
        self.resolver = resolver
        self.profile_id = profile_id
        self.sample_size = sample_size
        self.summary: MappingSummary | None = None

    def __iter__(self) -> Iterator[RawRecord]:
        iterator = iter(self.source)
        buffered: list[RawRecord] = []
        for record in iterator:
            buffered.append(record)
            if len(buffered) >= self.sample_size:
                break

        headers: list[str] = list(getattr(self.source, "headers", None) or [])
        if not headers:
            for record in buffered:
                for key in record.values:
                    if key not in headers:
                        headers.append(key)

        mapping = self.resolver.resolve(headers, [r.values for r in buffered], self.profile_id)
        self.summary = MappingSummary(mapping=mapping, unmapped_headers=self.resolver.unmapped(headers, mapping))

        for record in buffered:
            yield self._apply(record, mapping)
        for record in iterator:
            yield self._apply(record, mapping)

    @staticmethod
    def _apply(record: RawRecord, mapping: Mapping[str, str]) -> RawRecord:
        values = {target: record.values.get(source) for source, target in mapping.items()}
        return RawRecord(row_index=record.row_index, values=values)
