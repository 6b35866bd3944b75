import itertools
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from schema import CartSnapshot, SessionIdentity

logger = logging.getLogger(__name__)

# Компенсация получает текущий снимок и возвращает исправленный
Compensation = Callable[[CartSnapshot], CartSnapshot]


@dataclass
class PendingMutation:
    """Мутация, отправленная в удаленное хранилище и еще не подтвержденная"""
    mutation_id: int
    kind: str
    item_id: Optional[str]
    identity: SessionIdentity
    compensate: Compensation
    started_at: float = field(default_factory=time.monotonic)


class InFlightLog:
    """
    Журнал незавершенных удаленных мутаций.

    Каждая запись хранит компенсирующее действие, которое откатывает только
    дельту своей мутации поверх актуального снимка.
    """

    def __init__(self):
        self._counter = itertools.count(1)
        self._pending: Dict[int, PendingMutation] = {}

    def record(
        self,
        kind: str,
        item_id: Optional[str],
        identity: SessionIdentity,
        compensate: Compensation,
    ) -> PendingMutation:
        mutation = PendingMutation(
            mutation_id=next(self._counter),
            kind=kind,
            item_id=item_id,
            identity=identity,
            compensate=compensate,
        )
        self._pending[mutation.mutation_id] = mutation
        logger.debug("Мутация #%d (%s %s) ожидает подтверждения", mutation.mutation_id, kind, item_id)
        return mutation

    def complete(self, mutation: PendingMutation) -> None:
        """Убирает мутацию из журнала (подтверждена или скомпенсирована)"""
        self._pending.pop(mutation.mutation_id, None)

    def pending(self, item_id: Optional[str] = None) -> List[PendingMutation]:
        """Незавершенные мутации в порядке запуска, опционально по одной позиции"""
        mutations = sorted(self._pending.values(), key=lambda m: m.mutation_id)
        if item_id is None:
            return mutations
        return [m for m in mutations if m.item_id == item_id]

    def __len__(self) -> int:
        return len(self._pending)
