from __future__ import annotations

import threading
from typing import Iterable


class StaticReferenceLookup:
    """
    Назначение:
        Справочник заранее известных ключей каталога (из конфига known_references).

    Контракт:
        - exists(key) -> True, если ключ известен;
        - add(key) потокобезопасно пополняет справочник.
    """

    def __init__(self, keys: Iterable[str] = ()):
        self._keys = set(keys)
        self._lock = threading.Lock()

    def exists(self, key: str) -> bool:
        with self._lock:
            return key in self._keys

    def add(self, key: str) -> None:
        with self._lock:
            self._keys.add(key)


class CompositeReferenceLookup:
    """Ключ существует, если его знает хотя бы один из справочников."""

    def __init__(self, *lookups):
        self.lookups = [lookup for lookup in lookups if lookup is not None]

    def exists(self, key: str) -> bool:
        return any(lookup.exists(key) for lookup in self.lookups)
