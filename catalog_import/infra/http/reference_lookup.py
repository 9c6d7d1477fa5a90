from __future__ import annotations

import threading

from catalog_import.infra.http.catalog_client import CatalogApiClient

_LOOKUP_PATHS = {
    "collection": "/admin/collections",
    "category": "/admin/product-categories",
    "channel": "/admin/sales-channels",
    "product": "/admin/products",
}


class HttpReferenceLookup:
    """
    Назначение/ответственность:
        Проверка существования внешних сущностей каталога по ключу <kind>:<handle>.

    Контракт:
        - exists(key) -> True, если список ответа по handle не пуст;
        - положительные ответы кэшируются на время задания (сущности не удаляются во время импорта);
        - ошибки API пробрасываются: вызывающая сторона классифицирует их как сбой строки.
    """

    def __init__(self, client: CatalogApiClient):
        self.client = client
        self._lock = threading.Lock()
        self._known: set[str] = set()

    def exists(self, key: str) -> bool:
        with self._lock:
            if key in self._known:
                return True
        kind, _, handle = key.partition(":")
        path = _LOOKUP_PATHS.get(kind)
        if path is None or not handle:
            return False

        body = self.client.getJson(path, params={"handle": handle, "limit": 1})
        items: list = []
        if isinstance(body, list):
            items = body
        elif isinstance(body, dict):
            for value in body.values():
                if isinstance(value, list):
                    items = value
                    break
        if items:
            with self._lock:
                self._known.add(key)
            return True
        return False
