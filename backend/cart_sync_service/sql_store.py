"""Удаленное хранилище корзины поверх SQLAlchemy."""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, List, Optional, Sequence

from sqlalchemy import delete
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from exceptions import RemoteRejected
from models import (
    CartItemModel,
    OrderItemModel,
    OrderModel,
    OrderStatusEnum,
    PaymentMethodEnum,
    PaymentStatusEnum,
)
from remote_store import RemoteStore
from schema import (
    CartItemSchema,
    OrderLineItemSchema,
    ProvisionalOrderSchema,
    ShippingDetailsSchema,
)

# Настраиваем логирование
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("cart_sql_store")


class SqlRemoteStore(RemoteStore):
    """Реализация удаленного хранилища на таблицах cart_items, orders и order_items"""

    def __init__(self, session_factory: async_sessionmaker, engine: Optional[AsyncEngine] = None):
        self.session_factory = session_factory
        self.engine = engine

    @asynccontextmanager
    async def _session(self, operation: str) -> AsyncIterator[AsyncSession]:
        """Сессия с коммитом при успехе; ошибки БД превращаются в RemoteRejected"""
        async with self.session_factory() as session:
            try:
                yield session
                await session.commit()
            except SQLAlchemyError as e:
                await session.rollback()
                logger.error("Ошибка БД при выполнении '%s': %s", operation, str(e))
                raise RemoteRejected(operation, str(e)) from e

    async def list_items(self, user_id: str) -> List[CartItemSchema]:
        async with self._session("list_items") as session:
            rows = await CartItemModel.get_user_items(session, user_id)
            return [CartItemSchema.model_validate(row) for row in rows]

    async def upsert_item(self, user_id: str, item: CartItemSchema) -> None:
        async with self._session("upsert_item") as session:
            existing = await session.get(CartItemModel, item.id)
            if existing is None:
                session.add(CartItemModel(
                    id=item.id,
                    user_id=user_id,
                    product_id=item.product_id,
                    variant=item.variant,
                    name=item.name,
                    price=item.price,
                    image_ref=item.image_ref,
                    quantity=item.quantity,
                ))
                logger.debug("Позиция %s добавлена", item.id)
                return

            if existing.user_id != user_id:
                raise RemoteRejected("upsert_item", f"позиция {item.id} принадлежит другому пользователю")

            existing.name = item.name
            existing.price = item.price
            existing.image_ref = item.image_ref
            existing.quantity = item.quantity
            logger.debug("Позиция %s обновлена (количество %d)", item.id, item.quantity)

    async def delete_item(self, item_id: str, user_id: str) -> None:
        async with self._session("delete_item") as session:
            await session.execute(
                delete(CartItemModel).where(CartItemModel.id == item_id, CartItemModel.user_id == user_id)
            )

    async def delete_all_items(self, user_id: str) -> None:
        async with self._session("delete_all_items") as session:
            await session.execute(delete(CartItemModel).where(CartItemModel.user_id == user_id))
        logger.info("Корзина пользователя %s очищена", user_id)

    async def create_order(
        self,
        user_id: str,
        total: float,
        payment_method: PaymentMethodEnum,
        shipping_details: Optional[ShippingDetailsSchema] = None,
    ) -> str:
        async with self._session("create_order") as session:
            order = OrderModel(
                user_id=user_id,
                status=OrderStatusEnum.PENDING.value,
                payment_method=PaymentMethodEnum(payment_method).value,
                payment_status=PaymentStatusEnum.PENDING.value,
                total_amount=total,
                shipping_address=shipping_details.model_dump() if shipping_details else None,
            )
            session.add(order)
            await session.flush()
            order_id = order.id
        logger.info("Создан заказ %s пользователя %s на сумму %s", order_id, user_id, total)
        return order_id

    async def insert_order_line_items(self, order_id: str, items: Sequence[OrderLineItemSchema]) -> None:
        async with self._session("insert_order_line_items") as session:
            if await session.get(OrderModel, order_id) is None:
                raise RemoteRejected("insert_order_line_items", f"заказ {order_id} не найден")
            session.add_all([
                OrderItemModel(
                    order_id=order_id,
                    product_id=item.product_id,
                    variant=item.variant,
                    quantity=item.quantity,
                    price_at_time=item.price_at_time,
                )
                for item in items
            ])
        logger.info("Сохранено %d позиций заказа %s", len(items), order_id)

    async def update_order_status(
        self,
        order_id: str,
        status: OrderStatusEnum,
        payment_status: Optional[PaymentStatusEnum] = None,
    ) -> None:
        async with self._session("update_order_status") as session:
            order = await session.get(OrderModel, order_id)
            if order is None:
                raise RemoteRejected("update_order_status", f"заказ {order_id} не найден")
            order.status = OrderStatusEnum(status).value
            if payment_status is not None:
                order.payment_status = PaymentStatusEnum(payment_status).value
        logger.info("Статус заказа %s изменен на %s", order_id, OrderStatusEnum(status).value)

    async def get_order(self, order_id: str) -> Optional[ProvisionalOrderSchema]:
        async with self._session("get_order") as session:
            order = await OrderModel.get_by_id(session, order_id)
            if order is None:
                return None
            return ProvisionalOrderSchema.model_validate(order)

    async def list_orders(self, user_id: str) -> List[ProvisionalOrderSchema]:
        async with self._session("list_orders") as session:
            orders = await OrderModel.get_by_user(session, user_id)
            return [ProvisionalOrderSchema.model_validate(order) for order in orders]

    async def close(self) -> None:
        if self.engine is not None:
            await self.engine.dispose()
            logger.info("Соединения с базой данных закрыты")
