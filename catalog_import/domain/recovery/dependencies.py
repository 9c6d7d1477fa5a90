from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from typing import Iterable, Sequence

from catalog_import.domain.models import ValidatedRow

OPTION_VALUE_FIELDS = ("option_1_value", "option_2_value", "option_3_value")
# поля, по которым строка описывает сам товар, а не только его вариант
PRODUCT_DEFINING_FIELDS = ("title",)


def _as_list(value) -> list[str]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [str(v).strip() for v in value if str(v).strip()]
    return [part.strip() for part in str(value).split(",") if part.strip()]


def is_product_row(row: ValidatedRow) -> bool:
    """Строка несёт поля товара: товар создаётся из неё вместе с вариантом."""
    return any(row.get(name) for name in PRODUCT_DEFINING_FIELDS)


def is_variant_row(row: ValidatedRow) -> bool:
    """
    Строка только варианта: есть sku и значение опции, но нет полей товара.
    Такая строка дописывает вариант к товару с тем же handle.
    """
    if is_product_row(row):
        return False
    return bool(row.get("sku")) and any(row.get(name) for name in OPTION_VALUE_FIELDS)


def product_key(handle: str) -> str:
    return f"product:{handle}"


def provided_keys(row: ValidatedRow) -> frozenset[str]:
    """Строка товара с handle даёт product:<handle>; строка только варианта не даёт ничего."""
    handle = row.get("handle")
    if handle and not is_variant_row(row):
        return frozenset({product_key(str(handle))})
    return frozenset()


def dependency_keys(row: ValidatedRow) -> frozenset[str]:
    """
    Назначение:
        Ключи, от которых зависит строка.

    Алгоритм:
        - collection:<h> / category:<h> из списков через запятую;
        - channel:<h> из sales_channel_handles (разделитель ';');
        - строка только варианта (без полей товара) зависит от product:<handle>.
    """
    keys: set[str] = set()
    for handle in _as_list(row.get("collection_handles")):
        keys.add(f"collection:{handle}")
    for handle in _as_list(row.get("category_handles")):
        keys.add(f"category:{handle}")
    channels = row.get("sales_channel_handles")
    if isinstance(channels, str):
        channels = [c.strip() for c in channels.split(";") if c.strip()]
    for handle in _as_list(channels):
        keys.add(f"channel:{handle}")
    handle = row.get("handle")
    if handle and is_variant_row(row):
        keys.add(product_key(str(handle)))
    return frozenset(keys)


@dataclass(frozen=True)
class DependencyPlan:
    """
    Назначение:
        Порядок обработки батча и зависимости внутри батча.

    Поля:
        order: строки в порядке обработки
        dependencies: row_index -> все ключи строки
        in_batch_providers: row_index -> индексы строк батча, создающих нужные ключи
        unresolved: строки, попавшие в цикл (добавлены в конец в исходном порядке)
    """

    order: tuple[ValidatedRow, ...]
    dependencies: dict[int, frozenset[str]]
    in_batch_providers: dict[int, tuple[int, ...]]
    unresolved: tuple[int, ...] = ()


def plan_batch(rows: Sequence[ValidatedRow]) -> DependencyPlan:
    """
    Назначение:
        Устойчивая сортировка батча по зависимостям.

    Алгоритм:
        - строки идут в исходном порядке;
        - строка, чей поставщик в батче ещё не размещён, откладывается и
          размещается сразу после размещения последнего из её поставщиков;
        - пример: вход 3,1,2,4,5, где 3 зависит от 1 -> 1,3,2,4,5.

    Ограничения:
        Циклы не поддерживаются: оставшиеся строки добавляются в конец в
        исходном порядке и не пройдут проверку выполнимости зависимостей.
    """
    providers_by_key: dict[str, list[int]] = defaultdict(list)
    for row in rows:
        for key in provided_keys(row):
            providers_by_key[key].append(row.row_index)

    dependencies: dict[int, frozenset[str]] = {}
    in_batch: dict[int, tuple[int, ...]] = {}
    for row in rows:
        deps = dependency_keys(row)
        dependencies[row.row_index] = deps
        providers = sorted(
            {p for key in deps for p in providers_by_key.get(key, ()) if p != row.row_index}
        )
        in_batch[row.row_index] = tuple(providers)

    placed: set[int] = set()
    order: list[ValidatedRow] = []
    waiting: dict[int, list[ValidatedRow]] = defaultdict(list)
    remaining: dict[int, set[int]] = {}

    def place(row: ValidatedRow) -> None:
        stack = [row]
        while stack:
            current = stack.pop()
            order.append(current)
            placed.add(current.row_index)
            released: list[ValidatedRow] = []
            for dependent in waiting.pop(current.row_index, []):
                pending = remaining[dependent.row_index]
                pending.discard(current.row_index)
                if not pending and dependent.row_index not in placed:
                    released.append(dependent)
            # первым снимается со стека более ранний в исходном порядке
            stack.extend(reversed(released))

    for row in rows:
        pending = {p for p in in_batch[row.row_index] if p not in placed}
        if not pending:
            place(row)
            continue
        remaining[row.row_index] = pending
        for provider in pending:
            waiting[provider].append(row)

    leftovers = [row for row in rows if row.row_index not in placed]
    order.extend(leftovers)
    return DependencyPlan(
        order=tuple(order),
        dependencies=dependencies,
        in_batch_providers=in_batch,
        unresolved=tuple(row.row_index for row in leftovers),
    )


def missing_keys(keys: Iterable[str], satisfied: set[str], lookup) -> list[str]:
    """
    Назначение:
        Проверка выполнимости: ключ выполним, если создан успешной строкой
        задания или существует во внешнем каталоге (lookup.exists).
    """
    missing: list[str] = []
    for key in sorted(keys):
        if key in satisfied:
            continue
        if lookup is not None and lookup.exists(key):
            continue
        missing.append(key)
    return missing
