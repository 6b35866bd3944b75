import logging
from typing import Optional

from cart_store import CartStore
from config import settings
from exceptions import RemoteStoreError
from identity import belongs_to, is_guest_item
from remote_store import RemoteStore
from schema import SessionIdentity, SyncStateEnum, SyncStatusSchema
from storage import SnapshotStorage

from .guest_merge import GuestMergeEngine

logger = logging.getLogger(__name__)


class SessionTracker:
    """
    Реакция на смену идентичности сессии и возврат приложения на передний план.

    Для гостя корзина загружается из локального хранилища, для пользователя -
    из удаленного. Повторная загрузка для того же пользователя пропускается,
    кроме явной пересинхронизации.
    """

    def __init__(
        self,
        store: CartStore,
        remote: RemoteStore,
        snapshot_storage: SnapshotStorage,
        merge_engine: GuestMergeEngine,
        guest_key: Optional[str] = None,
    ):
        self.store = store
        self.remote = remote
        self.snapshot_storage = snapshot_storage
        self.merge_engine = merge_engine
        self.guest_key = guest_key or settings.GUEST_CART_KEY
        self._tracked_user_id: Optional[str] = None
        self._generation = 0
        self._status = SyncStatusSchema(state=SyncStateEnum.LOCAL)

    @property
    def tracked_user_id(self) -> Optional[str]:
        """ID пользователя, для которого корзина последний раз успешно загружена"""
        return self._tracked_user_id

    @property
    def status(self) -> SyncStatusSchema:
        return self._status

    async def identity_changed(self, identity: SessionIdentity) -> None:
        """Обрабатывает смену идентичности (вход, выход, смена пользователя)"""
        self._generation += 1

        if not identity.is_authenticated:
            self._tracked_user_id = None
            self.store.switch_identity(identity, self.snapshot_storage.load(self.guest_key))
            self._set_status(SyncStateEnum.LOCAL)
            logger.info("Загружена гостевая корзина: %d позиций", len(self.store.read()))
            return

        if self._tracked_user_id == identity.user_id and self.store.identity == identity:
            logger.debug("Корзина пользователя %s уже загружена, запрос пропущен", identity.user_id)
            return

        await self._load(identity)

    async def foreground_regained(self) -> None:
        """Принудительно перечитывает корзину пользователя из удаленного хранилища"""
        identity = self.store.identity
        if not identity.is_authenticated:
            return
        await self._load(identity)

    async def resync(self) -> None:
        await self.foreground_regained()

    async def _load(self, identity: SessionIdentity) -> None:
        generation = self._generation
        # Мутации во время загрузки должны идти уже от имени нового пользователя.
        # Позиции другого пользователя сразу убираются; гостевые остаются видимыми
        # до переноса, их изменения MutationPipeline направляет в гостевой слот.
        current = self.store.read()
        visible = tuple(item for item in current if belongs_to(identity, item.id) or is_guest_item(item.id))
        self.store.switch_identity(identity, visible if len(visible) != len(current) else None)

        try:
            items = await self.remote.list_items(identity.user_id)
        except RemoteStoreError as e:
            if generation != self._generation:
                return
            logger.warning("Не удалось загрузить корзину пользователя %s, показываем прежнее содержимое: %s",
                           identity.user_id, str(e))
            self._set_status(SyncStateEnum.STALE, str(e))
            return

        if generation != self._generation or self.store.identity != identity:
            logger.debug("Идентичность сменилась во время загрузки корзины %s, результат отброшен", identity.user_id)
            return

        self.store.replace(items)
        self._tracked_user_id = identity.user_id
        self._set_status(SyncStateEnum.SYNCED)
        logger.info("Корзина пользователя %s загружена: %d позиций", identity.user_id, len(items))

        if self.merge_engine.has_pending(identity):
            try:
                await self.merge_engine.merge(identity)
            except RemoteStoreError as e:
                logger.warning("Объединение гостевой корзины прервано, продолжим при следующей загрузке: %s", str(e))
                self._set_status(SyncStateEnum.STALE, str(e))

    def _set_status(self, state: SyncStateEnum, error: Optional[str] = None) -> None:
        self._status = SyncStatusSchema(state=state, user_id=self.store.identity.user_id, error=error)
