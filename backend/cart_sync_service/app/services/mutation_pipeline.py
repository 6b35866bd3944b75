import logging
from functools import partial
from typing import Awaitable, Callable, Optional

from cart_store import CartStore, find_item
from exceptions import RemoteStoreError
from identity import derive_item_id, is_guest_item
from remote_store import RemoteStore
from schema import CartItemSchema, CartProductSchema, CartSnapshot, SessionIdentity

from .inflight_log import Compensation, InFlightLog, PendingMutation

logger = logging.getLogger(__name__)


def _replace_at(snapshot: CartSnapshot, index: int, item: CartItemSchema) -> CartSnapshot:
    return snapshot[:index] + (item,) + snapshot[index + 1:]


def _drop_at(snapshot: CartSnapshot, index: int) -> CartSnapshot:
    return snapshot[:index] + snapshot[index + 1:]


class MutationPipeline:
    """
    Мутации корзины: оптимистичное локальное изменение, затем удаленная запись.

    Локальный снимок меняется синхронно до первого await. Для авторизованной
    сессии изменение отправляется в удаленное хранилище; при ошибке к текущему
    снимку применяется компенсация этой мутации, а ошибка пробрасывается
    вызывающему коду. Автоматических повторов нет.
    """

    def __init__(self, store: CartStore, remote: RemoteStore, log: Optional[InFlightLog] = None):
        self.store = store
        self.remote = remote
        self.log = log or InFlightLog()

    async def add(self, product: CartProductSchema, quantity: int = 1) -> CartItemSchema:
        """
        Добавляет товар в корзину или увеличивает количество существующей позиции

        Args:
            product: Данные каталога о товаре
            quantity: На сколько увеличить количество (не меньше 1)

        Returns:
            CartItemSchema: Позиция после добавления

        Raises:
            ValueError: Если quantity меньше 1
            RemoteStoreError: Если удаленная запись не удалась (уже скомпенсировано)
        """
        if quantity < 1:
            raise ValueError(f"Количество для добавления должно быть не меньше 1, получено: {quantity}")

        identity = self.store.identity
        item_id = derive_item_id(identity, product.product_id, product.variant)
        snapshot = self.store.read()
        index, existing = find_item(snapshot, item_id)

        if existing is not None:
            item = existing.model_copy(update={"quantity": existing.quantity + quantity})
            self.store.replace(_replace_at(snapshot, index, item))
        else:
            item = CartItemSchema(id=item_id, quantity=quantity, **product.model_dump())
            self.store.replace(snapshot + (item,))
        logger.info("Товар %s добавлен в корзину (+%d, итого %d)", item_id, quantity, item.quantity)

        created = existing is None

        def compensate(current: CartSnapshot) -> CartSnapshot:
            idx, current_item = find_item(current, item_id)
            if current_item is None:
                return current
            remaining = current_item.quantity - quantity
            if remaining >= 1:
                return _replace_at(current, idx, current_item.model_copy(update={"quantity": remaining}))
            if created:
                return _drop_at(current, idx)
            # Более новая мутация уже уменьшила позицию. Удаленное хранилище хранит
            # абсолютное количество последней успешной записи и может разойтись
            # с локальным до следующей пересинхронизации.
            return _replace_at(current, idx, current_item.model_copy(update={"quantity": 1}))

        await self._push(identity, "add", item_id, compensate, partial(self.remote.upsert_item, identity.user_id, item))
        return item

    async def remove(self, item_id: str) -> None:
        """Удаляет позицию из корзины. Неизвестный ID игнорируется"""
        identity = self.store.identity
        snapshot = self.store.read()
        index, existing = find_item(snapshot, item_id)
        if existing is None:
            logger.info("Позиция %s не найдена в корзине, удаление пропущено", item_id)
            return

        self.store.replace(_drop_at(snapshot, index))
        logger.info("Позиция %s удалена из корзины", item_id)

        if self._is_pending_guest_item(identity, item_id):
            self._update_guest_copy(item_id, None)
            return

        def compensate(current: CartSnapshot) -> CartSnapshot:
            # Позиция могла быть создана заново, пока удаление было в пути
            if find_item(current, item_id)[1] is not None:
                return current
            position = min(index, len(current))
            return current[:position] + (existing,) + current[position:]

        await self._push(identity, "remove", item_id, compensate, partial(self.remote.delete_item, item_id, identity.user_id))

    async def set_quantity(self, item_id: str, quantity: int) -> Optional[CartItemSchema]:
        """
        Устанавливает абсолютное количество позиции

        Количество меньше 1 означает удаление позиции.

        Returns:
            Optional[CartItemSchema]: Обновленная позиция или None
        """
        if quantity < 1:
            await self.remove(item_id)
            return None

        identity = self.store.identity
        snapshot = self.store.read()
        index, existing = find_item(snapshot, item_id)
        if existing is None:
            logger.info("Позиция %s не найдена в корзине, изменение количества пропущено", item_id)
            return None

        item = existing.model_copy(update={"quantity": quantity})
        self.store.replace(_replace_at(snapshot, index, item))
        logger.info("Количество позиции %s изменено: %d -> %d", item_id, existing.quantity, quantity)

        if self._is_pending_guest_item(identity, item_id):
            self._update_guest_copy(item_id, quantity)
            return item

        def compensate(current: CartSnapshot) -> CartSnapshot:
            idx, current_item = find_item(current, item_id)
            # Более новая мутация уже изменила позицию
            if current_item is None or current_item.quantity != quantity:
                return current
            return _replace_at(current, idx, current_item.model_copy(update={"quantity": existing.quantity}))

        await self._push(identity, "set_quantity", item_id, compensate, partial(self.remote.upsert_item, identity.user_id, item))
        return item

    async def clear(self) -> None:
        """Очищает корзину (локально и, для авторизованной сессии, удаленно)"""
        identity = self.store.identity
        snapshot = self.store.read()
        self.store.replace(())

        if not identity.is_authenticated:
            self.store.erase_local()
            logger.info("Гостевая корзина очищена")
            return

        logger.info("Корзина пользователя %s очищена локально", identity.user_id)

        def compensate(current: CartSnapshot) -> CartSnapshot:
            present = {item.id for item in current}
            return tuple(item for item in snapshot if item.id not in present) + current

        await self._push(identity, "clear", None, compensate, partial(self.remote.delete_all_items, identity.user_id))
        if any(self._is_pending_guest_item(identity, item.id) for item in snapshot):
            self.store.erase_local()

    async def subtract(self, item: CartItemSchema) -> None:
        """
        Уменьшает позицию на количество из переданного снимка позиции

        Если в корзине не больше, чем в снимке, позиция удаляется. Количество,
        добавленное после снимка, остается в корзине.
        """
        current = self.store.find(item.id)
        if current is None:
            return
        if current.quantity > item.quantity:
            await self.set_quantity(item.id, current.quantity - item.quantity)
        else:
            await self.remove(item.id)

    def _is_pending_guest_item(self, identity: SessionIdentity, item_id: str) -> bool:
        # Гостевая позиция в корзине пользователя ждет переноса и в удаленное хранилище не пишется
        return identity.is_authenticated and is_guest_item(item_id)

    def _update_guest_copy(self, item_id: str, quantity: Optional[int]) -> None:
        """Применяет изменение к гостевому слоту, откуда позицию потом перенесет GuestMergeEngine"""
        storage = self.store.snapshot_storage
        snapshot = storage.load(self.store.guest_key)
        index, item = find_item(snapshot, item_id)
        if item is None:
            return
        if quantity is None:
            snapshot = _drop_at(snapshot, index)
        else:
            snapshot = _replace_at(snapshot, index, item.model_copy(update={"quantity": quantity}))
        if not storage.save(self.store.guest_key, snapshot):
            logger.warning("Не удалось обновить гостевую корзину для позиции %s", item_id)
        logger.info("Позиция %s ожидает переноса, изменение сохранено только локально", item_id)

    async def _push(
        self,
        identity: SessionIdentity,
        kind: str,
        item_id: Optional[str],
        compensate: Compensation,
        call: Callable[[], Awaitable[None]],
    ) -> None:
        if not identity.is_authenticated:
            return

        mutation = self.log.record(kind, item_id, identity, compensate)
        try:
            await call()
        except RemoteStoreError as e:
            logger.error("Удаленная запись '%s' для %s не удалась: %s", kind, item_id or identity.user_id, str(e))
            self._compensate(mutation)
            raise
        finally:
            self.log.complete(mutation)

    def _compensate(self, mutation: PendingMutation) -> None:
        if self.store.identity != mutation.identity:
            logger.warning(
                "Идентичность сменилась с %s на %s, компенсация мутации #%d пропущена",
                mutation.identity, self.store.identity, mutation.mutation_id,
            )
            return
        self.store.replace(mutation.compensate(self.store.read()))
        logger.info("Мутация #%d (%s) скомпенсирована", mutation.mutation_id, mutation.kind)
