"""Локальный кэш корзины: единственный источник истины внутри процесса."""

import asyncio
import logging
from typing import AsyncIterator, Callable, List, Optional, Tuple

from config import settings
from schema import CartBreakdownSchema, CartItemSchema, CartSnapshot, SessionIdentity
from storage import SnapshotStorage

# Настраиваем логирование
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("cart_store")

SnapshotListener = Callable[[CartSnapshot], None]


def calculate_breakdown(snapshot: CartSnapshot, handling_fee: float) -> CartBreakdownSchema:
    """
    Рассчитывает стоимость корзины

    Args:
        snapshot: Снимок корзины
        handling_fee: Фиксированный сбор, взимается только с непустой корзины

    Returns:
        CartBreakdownSchema: Подытог, сбор, итог и число единиц товара
    """
    subtotal = sum(item.line_total for item in snapshot)
    fee = handling_fee if snapshot else 0
    return CartBreakdownSchema(
        subtotal=subtotal,
        handling_fee=fee,
        total=subtotal + fee,
        total_items=sum(item.quantity for item in snapshot),
    )


def find_item(snapshot: CartSnapshot, item_id: str) -> Tuple[int, Optional[CartItemSchema]]:
    """Возвращает (индекс, позиция) или (-1, None), если позиции нет"""
    for index, item in enumerate(snapshot):
        if item.id == item_id:
            return index, item
    return -1, None


class CartStore:
    """
    Хранилище снимка корзины с синхронным чтением и подпиской на изменения

    Для гостя каждая замена снимка сразу записывается в локальное
    хранилище под ключом гостевой корзины. Для авторизованного пользователя
    локальной записи нет: источником истины служит удаленное хранилище.
    """

    def __init__(
        self,
        snapshot_storage: SnapshotStorage,
        identity: Optional[SessionIdentity] = None,
        guest_key: Optional[str] = None,
    ):
        self.snapshot_storage = snapshot_storage
        self.guest_key = guest_key or settings.GUEST_CART_KEY
        self._identity = identity or SessionIdentity.anonymous()
        self._snapshot: CartSnapshot = ()
        self._listeners: List[SnapshotListener] = []

    @property
    def identity(self) -> SessionIdentity:
        return self._identity

    def read(self) -> CartSnapshot:
        """Возвращает текущий снимок. Никогда не блокирует и не бросает исключений"""
        return self._snapshot

    def find(self, item_id: str) -> Optional[CartItemSchema]:
        return find_item(self._snapshot, item_id)[1]

    def replace(self, snapshot) -> CartSnapshot:
        """
        Атомарно заменяет снимок корзины

        Args:
            snapshot: Новые позиции корзины (любая итерируемая коллекция)

        Returns:
            CartSnapshot: Сохраненный снимок

        Raises:
            ValueError: Если ID позиций не уникальны или количество меньше 1
        """
        snapshot = tuple(snapshot)
        seen = set()
        for item in snapshot:
            if item.id in seen:
                raise ValueError(f"Дублирующийся ID позиции в снимке корзины: {item.id}")
            if item.quantity < 1:
                raise ValueError(f"Количество позиции {item.id} меньше 1")
            seen.add(item.id)

        self._snapshot = snapshot

        if not self._identity.is_authenticated:
            if not self.snapshot_storage.save(self.guest_key, snapshot):
                logger.warning("Не удалось сохранить гостевую корзину в локальное хранилище")

        self._notify()
        return snapshot

    def switch_identity(self, identity: SessionIdentity, snapshot=None) -> None:
        """Переключает область видимости кэша и, если передан снимок, заменяет содержимое"""
        if identity != self._identity:
            logger.info("Смена идентичности корзины: %s -> %s", self._identity, identity)
        self._identity = identity
        if snapshot is not None:
            self.replace(snapshot)

    def erase_local(self) -> None:
        """Удаляет долговременную гостевую копию корзины"""
        if not self.snapshot_storage.erase(self.guest_key):
            logger.warning("Не удалось удалить гостевую корзину из локального хранилища")

    def breakdown(self, handling_fee: Optional[float] = None) -> CartBreakdownSchema:
        fee = settings.HANDLING_FEE if handling_fee is None else handling_fee
        return calculate_breakdown(self._snapshot, fee)

    def total_price(self) -> float:
        return sum(item.line_total for item in self._snapshot)

    def subscribe(self, listener: SnapshotListener) -> Callable[[], None]:
        """
        Подписывает слушателя на изменения снимка

        Returns:
            Callable[[], None]: Функция отписки
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def watch(self) -> AsyncIterator[CartSnapshot]:
        """Асинхронно отдает текущий снимок, а затем каждый следующий"""
        queue: asyncio.Queue = asyncio.Queue()
        unsubscribe = self.subscribe(queue.put_nowait)
        try:
            yield self._snapshot
            while True:
                yield await queue.get()
        finally:
            unsubscribe()

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self._snapshot)
            except Exception:
                # Ошибка одного слушателя не должна ломать мутацию и остальных слушателей
                logger.exception("Ошибка в слушателе изменений корзины")
