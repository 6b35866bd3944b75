import logging
from typing import Dict, Optional

from cart_store import CartStore
from config import settings
from exceptions import InvalidState
from schema import CartItemSchema, CartSnapshot, SessionIdentity
from storage import SnapshotStorage

from .mutation_pipeline import MutationPipeline

logger = logging.getLogger(__name__)


def _combine(*snapshots: CartSnapshot) -> CartSnapshot:
    """Объединяет снимки, суммируя количество позиций с одинаковым ID"""
    combined: Dict[str, CartItemSchema] = {}
    for snapshot in snapshots:
        for item in snapshot:
            existing = combined.get(item.id)
            if existing is None:
                combined[item.id] = item
            else:
                combined[item.id] = existing.model_copy(update={"quantity": existing.quantity + item.quantity})
    return tuple(combined.values())


class GuestMergeEngine:
    """
    Перенос гостевой корзины в корзину пользователя после входа.

    Перед переносом позиции записываются в маркер незавершенного объединения
    под ID пользователя, а гостевая копия сразу удаляется. Запись маркера
    уменьшается после каждой перенесенной позиции и удаляется после полного
    успеха, поэтому прерванное объединение продолжается при следующей загрузке
    корзины того же пользователя, а каждая позиция переносится не более одного
    раза. Другой пользователь на том же устройстве чужие позиции не получает.
    """

    def __init__(
        self,
        store: CartStore,
        snapshot_storage: SnapshotStorage,
        pipeline: MutationPipeline,
        guest_key: Optional[str] = None,
        merge_key: Optional[str] = None,
    ):
        self.store = store
        self.snapshot_storage = snapshot_storage
        self.pipeline = pipeline
        self.guest_key = guest_key or settings.GUEST_CART_KEY
        self.merge_key = merge_key or settings.GUEST_MERGE_KEY

    def has_pending(self, identity: SessionIdentity) -> bool:
        """Есть ли гостевые позиции или незавершенное объединение этого пользователя"""
        if self.snapshot_storage.has_data(self.guest_key):
            return True
        return identity.is_authenticated and identity.user_id in self.snapshot_storage.load_pending(self.merge_key)

    def _save_remaining(self, user_id: str, remaining: CartSnapshot) -> bool:
        pending = self.snapshot_storage.load_pending(self.merge_key)
        pending[user_id] = remaining
        return self.snapshot_storage.save_pending(self.merge_key, pending)

    async def merge(self, identity: SessionIdentity) -> int:
        """
        Переносит гостевые позиции в корзину авторизованного пользователя

        Args:
            identity: Авторизованная идентичность, в которую идет перенос

        Returns:
            int: Количество перенесенных позиций

        Raises:
            InvalidState: Если идентичность не авторизована
            RemoteStoreError: Если перенос позиции не удался (маркер сохранен)
        """
        if not identity.is_authenticated:
            raise InvalidState("Объединение корзин возможно только для авторизованного пользователя")
        if self.store.identity != identity:
            logger.warning("Идентичность уже сменилась на %s, объединение для %s пропущено", self.store.identity, identity)
            return 0

        user_id = identity.user_id
        guest = self.snapshot_storage.load(self.guest_key)
        interrupted = self.snapshot_storage.load_pending(self.merge_key).get(user_id, ())
        remaining = _combine(interrupted, guest)
        if not remaining:
            return 0

        if guest:
            if not self._save_remaining(user_id, remaining):
                logger.error("Не удалось записать маркер объединения, гостевая корзина оставлена для следующей попытки")
                return 0
            self.snapshot_storage.erase(self.guest_key)

        logger.info("Перенос %d гостевых позиций в корзину пользователя %s", len(remaining), user_id)

        replayed = 0
        while remaining:
            if self.store.identity != identity:
                logger.warning("Идентичность сменилась во время объединения, осталось позиций: %d", len(remaining))
                return replayed

            item = remaining[0]
            try:
                await self.pipeline.add(item.as_product(), item.quantity)
            except Exception:
                logger.error("Перенос позиции %s прерван, осталось позиций: %d", item.id, len(remaining))
                raise

            remaining = remaining[1:]
            replayed += 1
            if not self._save_remaining(user_id, remaining):
                logger.warning("Не удалось обновить маркер объединения")

        logger.info("Гостевая корзина перенесена: %d позиций", replayed)
        return replayed
