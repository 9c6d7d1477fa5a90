from __future__ import annotations

import threading


class CancellationToken:
    """
    Назначение/ответственность:
        Кооперативная отмена задания импорта.

    Контракт:
        - cancel() идемпотентен.
        - wait(seconds) спит не дольше seconds и просыпается сразу при отмене;
          возвращает True, если задание отменено.
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, seconds: float) -> bool:
        return self._event.wait(max(0.0, seconds))
