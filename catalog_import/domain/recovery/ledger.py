from __future__ import annotations

import threading
from dataclasses import dataclass
from enum import Enum

from catalog_import.domain.exceptions import RowStateError


class RowState(str, Enum):
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    FAILED = "failed"
    DEAD_LETTERED = "dead_lettered"
    SUCCEEDED = "succeeded"


_ALLOWED: dict[RowState | None, tuple[RowState, ...]] = {
    None: (RowState.PENDING, RowState.FAILED),
    RowState.PENDING: (RowState.IN_FLIGHT,),
    RowState.IN_FLIGHT: (RowState.SUCCEEDED, RowState.FAILED),
    RowState.FAILED: (RowState.IN_FLIGHT, RowState.DEAD_LETTERED),
    RowState.DEAD_LETTERED: (),
    RowState.SUCCEEDED: (),
}


@dataclass(frozen=True)
class LedgerSnapshot:
    pending: frozenset[int]
    in_flight: frozenset[int]
    failed: frozenset[int]
    dead_lettered: frozenset[int]
    succeeded: int

    @property
    def total(self) -> int:
        return len(self.pending) + len(self.in_flight) + len(self.failed) + len(self.dead_lettered) + self.succeeded


class RowLedger:
    """
    Назначение/ответственность:
        Журнал состояний строк задания.

    Инварианты/гарантии:
        - каждая строка находится ровно в одном состоянии
          {pending, in_flight, failed, dead_lettered, succeeded};
        - допустимые переходы: pending->in_flight->{succeeded|failed},
          failed->{in_flight|dead_lettered}; из succeeded/dead_lettered выхода нет;
        - недопустимый переход -> RowStateError.

    Ограничения:
        Успешные строки хранятся только счётчиком, чтобы не расти по памяти.
        FAILED без предыдущего состояния допускается при восстановлении из чекпоинта.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._states: dict[int, RowState] = {}
        self._succeeded = 0

    def transition(self, row_index: int, target: RowState) -> None:
        with self._lock:
            current = self._states.get(row_index)
            if target not in _ALLOWED[current]:
                raise RowStateError(row_index, current.value if current else "unseen", target.value)
            if target == RowState.SUCCEEDED:
                del self._states[row_index]
                self._succeeded += 1
            else:
                self._states[row_index] = target

    def try_transition(self, row_index: int, expected: RowState, target: RowState) -> bool:
        """Атомарный переход, только если строка в состоянии expected."""
        with self._lock:
            if self._states.get(row_index) != expected:
                return False
            if target not in _ALLOWED[expected]:
                raise RowStateError(row_index, expected.value, target.value)
            if target == RowState.SUCCEEDED:
                del self._states[row_index]
                self._succeeded += 1
            else:
                self._states[row_index] = target
            return True

    def state(self, row_index: int) -> RowState | None:
        with self._lock:
            return self._states.get(row_index)

    @property
    def succeeded(self) -> int:
        with self._lock:
            return self._succeeded

    def seed_succeeded(self, count: int) -> None:
        with self._lock:
            self._succeeded += count

    def snapshot(self) -> LedgerSnapshot:
        with self._lock:
            buckets: dict[RowState, set[int]] = {state: set() for state in RowState}
            for row_index, state in self._states.items():
                buckets[state].add(row_index)
            return LedgerSnapshot(
                pending=frozenset(buckets[RowState.PENDING]),
                in_flight=frozenset(buckets[RowState.IN_FLIGHT]),
                failed=frozenset(buckets[RowState.FAILED]),
                dead_lettered=frozenset(buckets[RowState.DEAD_LETTERED]),
                succeeded=self._succeeded,
            )
