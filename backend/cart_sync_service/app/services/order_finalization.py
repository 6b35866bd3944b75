import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from cart_store import CartStore
from config import settings
from exceptions import InvalidState
from models import OrderStatusEnum, PaymentMethodEnum, PaymentStatusEnum
from remote_store import RemoteStore
from schema import CartSnapshot, OrderLineItemSchema, ProvisionalOrderSchema, SessionIdentity, ShippingDetailsSchema

from .mutation_pipeline import MutationPipeline

logger = logging.getLogger(__name__)


@dataclass
class _Checkout:
    identity: SessionIdentity
    line_items: List[OrderLineItemSchema]
    unconsumed: CartSnapshot


class OrderFinalizationPipeline:
    """
    Двухфазное оформление заказа.

    Сначала создается заказ в статусе pending (корзина не меняется), затем
    после подтверждения оплаты позиции корзины превращаются в позиции заказа,
    заказ переводится в processing, а вошедшие в заказ позиции вычитаются из
    корзины.
    """

    def __init__(
        self,
        store: CartStore,
        remote: RemoteStore,
        pipeline: MutationPipeline,
        handling_fee: Optional[float] = None,
    ):
        self.store = store
        self.remote = remote
        self.pipeline = pipeline
        self.handling_fee = settings.HANDLING_FEE if handling_fee is None else handling_fee
        # Заказы, позиции которых уже сохранены этим экземпляром, и еще не вычтенные позиции корзины
        self._checkouts: Dict[str, _Checkout] = {}

    def _require_user(self) -> SessionIdentity:
        identity = self.store.identity
        if not identity.is_authenticated:
            raise InvalidState("Для оформления заказа необходимо войти в систему")
        return identity

    def _require_checkout(self) -> SessionIdentity:
        identity = self._require_user()
        if not self.store.read():
            raise InvalidState("Корзина пуста")
        return identity

    async def create_provisional_order(
        self,
        shipping_details: Optional[ShippingDetailsSchema] = None,
        payment_method: PaymentMethodEnum = PaymentMethodEnum.COD,
    ) -> str:
        """
        Создает заказ в статусе pending на сумму корзины с учетом сбора

        Returns:
            str: ID созданного заказа

        Raises:
            InvalidState: Гость или пустая корзина
            RemoteStoreError: Ошибка удаленного хранилища
        """
        identity = self._require_checkout()
        breakdown = self.store.breakdown(self.handling_fee)
        order_id = await self.remote.create_order(
            identity.user_id, breakdown.total, PaymentMethodEnum(payment_method), shipping_details
        )
        logger.info("Создан предварительный заказ %s на сумму %s", order_id, breakdown.total)
        return order_id

    async def finalize(self, order_id: str, payment_confirmed: bool = False) -> List[OrderLineItemSchema]:
        """
        Завершает оформление заказа

        Позиции заказа берутся из снимка корзины на момент первого вызова. После
        смены статуса из корзины вычитаются только позиции этого снимка: товары,
        добавленные пока запросы были в пути, остаются в корзине. Если сохранить
        позиции не удалось, заказ остается в pending без позиций, а корзина не
        меняется. Повторный вызов для того же заказа не дублирует уже сохраненные
        позиции и довычитает то, что не успело удалиться.

        Args:
            order_id: ID предварительного заказа
            payment_confirmed: Оплата подтверждена платежным шлюзом

        Returns:
            List[OrderLineItemSchema]: Позиции заказа
        """
        identity = self._require_user()
        checkout = self._checkouts.get(order_id)

        if checkout is None:
            self._require_checkout()
            snapshot = self.store.read()
            line_items = [
                OrderLineItemSchema(
                    order_id=order_id,
                    product_id=item.product_id,
                    variant=item.variant,
                    quantity=item.quantity,
                    price_at_time=item.price,
                )
                for item in snapshot
            ]
            await self.remote.insert_order_line_items(order_id, line_items)
            checkout = _Checkout(identity, line_items, snapshot)
            self._checkouts[order_id] = checkout
        else:
            logger.info("Позиции заказа %s уже сохранены, повторная запись пропущена", order_id)

        await self.remote.update_order_status(
            order_id,
            OrderStatusEnum.PROCESSING,
            PaymentStatusEnum.PAID if payment_confirmed else None,
        )
        await self._consume(order_id, checkout)
        logger.info("Заказ %s оформлен: %d позиций", order_id, len(checkout.line_items))
        return list(checkout.line_items)

    async def _consume(self, order_id: str, checkout: _Checkout) -> None:
        """Вычитает из корзины позиции, вошедшие в заказ, по одной"""
        while checkout.unconsumed:
            if self.store.identity != checkout.identity:
                logger.warning("Идентичность сменилась, вычитание позиций заказа %s отложено", order_id)
                return
            await self.pipeline.subtract(checkout.unconsumed[0])
            checkout.unconsumed = checkout.unconsumed[1:]

    async def finalize_cash_on_delivery(self, order_id: str) -> List[OrderLineItemSchema]:
        return await self.finalize(order_id, payment_confirmed=False)

    async def confirm_online_payment(self, order_id: str) -> List[OrderLineItemSchema]:
        """Завершает заказ после успешной онлайн-оплаты"""
        return await self.finalize(order_id, payment_confirmed=True)

    async def list_orders(self) -> List[ProvisionalOrderSchema]:
        """История заказов пользователя, новые первыми"""
        identity = self._require_user()
        return await self.remote.list_orders(identity.user_id)
