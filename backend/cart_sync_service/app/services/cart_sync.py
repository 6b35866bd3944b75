import logging
from typing import AsyncIterator, Callable, List, Optional

from cart_store import CartStore, SnapshotListener
from config import settings, get_storage_keys
from models import PaymentMethodEnum
from remote_store import RemoteStore
from schema import (
    CartBreakdownSchema,
    CartItemSchema,
    CartProductSchema,
    CartSnapshot,
    OrderLineItemSchema,
    ProvisionalOrderSchema,
    SessionIdentity,
    ShippingDetailsSchema,
    SyncStatusSchema,
)
from storage import SnapshotStorage

from .guest_merge import GuestMergeEngine
from .inflight_log import InFlightLog
from .mutation_pipeline import MutationPipeline
from .order_finalization import OrderFinalizationPipeline
from .session_tracker import SessionTracker

logger = logging.getLogger(__name__)


class CartSyncEngine:
    """Единая точка входа движка синхронизации корзины"""

    def __init__(
        self,
        remote: RemoteStore,
        snapshot_storage: SnapshotStorage,
        handling_fee: Optional[float] = None,
    ):
        keys = get_storage_keys()
        self.remote = remote
        self.snapshot_storage = snapshot_storage
        self.handling_fee = settings.HANDLING_FEE if handling_fee is None else handling_fee

        self.store = CartStore(snapshot_storage, guest_key=keys["guest_cart"])
        self.log = InFlightLog()
        self.pipeline = MutationPipeline(self.store, remote, self.log)
        self.merge_engine = GuestMergeEngine(
            self.store, snapshot_storage, self.pipeline, guest_key=keys["guest_cart"], merge_key=keys["guest_merge"]
        )
        self.tracker = SessionTracker(self.store, remote, snapshot_storage, self.merge_engine, guest_key=keys["guest_cart"])
        self.orders = OrderFinalizationPipeline(self.store, remote, self.pipeline, self.handling_fee)

        # До первого события сессии показываем гостевую корзину
        self.store.replace(snapshot_storage.load(keys["guest_cart"]))

    # Чтение и подписка

    def read(self) -> CartSnapshot:
        return self.store.read()

    def subscribe(self, listener: SnapshotListener) -> Callable[[], None]:
        return self.store.subscribe(listener)

    def watch(self) -> AsyncIterator[CartSnapshot]:
        return self.store.watch()

    def get_cart_total(self) -> float:
        return self.store.total_price()

    def get_cart_breakdown(self) -> CartBreakdownSchema:
        return self.store.breakdown(self.handling_fee)

    @property
    def identity(self) -> SessionIdentity:
        return self.store.identity

    @property
    def status(self) -> SyncStatusSchema:
        return self.tracker.status

    # Мутации

    async def add_to_cart(self, product: CartProductSchema, quantity: int = 1) -> CartItemSchema:
        return await self.pipeline.add(product, quantity)

    async def remove_from_cart(self, item_id: str) -> None:
        await self.pipeline.remove(item_id)

    async def update_quantity(self, item_id: str, quantity: int) -> Optional[CartItemSchema]:
        return await self.pipeline.set_quantity(item_id, quantity)

    async def clear_cart(self) -> None:
        await self.pipeline.clear()

    # События сессии

    async def identity_changed(self, identity: SessionIdentity) -> None:
        await self.tracker.identity_changed(identity)

    async def foreground_regained(self) -> None:
        await self.tracker.foreground_regained()

    # Заказы

    async def create_provisional_order(
        self,
        shipping_details: Optional[ShippingDetailsSchema] = None,
        payment_method: PaymentMethodEnum = PaymentMethodEnum.COD,
    ) -> str:
        return await self.orders.create_provisional_order(shipping_details, payment_method)

    async def finalize(self, order_id: str, payment_confirmed: bool = False) -> List[OrderLineItemSchema]:
        return await self.orders.finalize(order_id, payment_confirmed)

    async def confirm_online_payment(self, order_id: str) -> List[OrderLineItemSchema]:
        return await self.orders.confirm_online_payment(order_id)

    async def place_order(
        self,
        shipping_details: ShippingDetailsSchema,
        payment_method: PaymentMethodEnum = PaymentMethodEnum.COD,
    ) -> str:
        """
        Оформляет заказ из текущей корзины

        Заказ с оплатой при получении завершается сразу. Для онлайн-оплаты
        возвращается предварительный заказ: после ответа платежного шлюза
        нужно вызвать confirm_online_payment.

        Returns:
            str: ID заказа
        """
        payment_method = PaymentMethodEnum(payment_method)
        order_id = await self.orders.create_provisional_order(shipping_details, payment_method)
        if payment_method == PaymentMethodEnum.COD:
            await self.orders.finalize_cash_on_delivery(order_id)
        else:
            logger.info("Заказ %s ожидает онлайн-оплаты", order_id)
        return order_id

    async def list_orders(self) -> List[ProvisionalOrderSchema]:
        return await self.orders.list_orders()

    async def close(self) -> None:
        """Освобождает ресурсы удаленного хранилища"""
        await self.remote.close()
        logger.info("Движок синхронизации корзины остановлен")
