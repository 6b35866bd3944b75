"""Контракт удаленного хранилища корзины и ограничение времени вызовов."""

import asyncio
import logging
from abc import ABC, abstractmethod
from functools import partial
from typing import Awaitable, List, Optional, Sequence, TypeVar

from config import settings
from exceptions import RemoteTimeout
from schema import (
    CartItemSchema,
    OrderLineItemSchema,
    ProvisionalOrderSchema,
    ShippingDetailsSchema,
)
from models import OrderStatusEnum, PaymentMethodEnum, PaymentStatusEnum

# Настраиваем логирование
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("cart_remote_store")

T = TypeVar("T")


class RemoteStore(ABC):
    """
    Удаленное авторитетное хранилище корзины и заказов

    Все методы при ошибке бросают RemoteRejected или RemoteTimeout.
    """

    @abstractmethod
    async def list_items(self, user_id: str) -> List[CartItemSchema]:
        """Все позиции корзины пользователя в порядке добавления"""

    @abstractmethod
    async def upsert_item(self, user_id: str, item: CartItemSchema) -> None:
        """Вставка или обновление позиции по её ID (количество абсолютное)"""

    @abstractmethod
    async def delete_item(self, item_id: str, user_id: str) -> None:
        """Удаление позиции пользователя"""

    @abstractmethod
    async def delete_all_items(self, user_id: str) -> None:
        """Удаление всех позиций корзины пользователя"""

    @abstractmethod
    async def create_order(
        self,
        user_id: str,
        total: float,
        payment_method: PaymentMethodEnum,
        shipping_details: Optional[ShippingDetailsSchema] = None,
    ) -> str:
        """Создает заказ в статусе pending и возвращает его ID"""

    @abstractmethod
    async def insert_order_line_items(self, order_id: str, items: Sequence[OrderLineItemSchema]) -> None:
        """Сохраняет позиции заказа"""

    @abstractmethod
    async def update_order_status(
        self,
        order_id: str,
        status: OrderStatusEnum,
        payment_status: Optional[PaymentStatusEnum] = None,
    ) -> None:
        """Меняет статус заказа и, если указан, статус оплаты"""

    @abstractmethod
    async def get_order(self, order_id: str) -> Optional[ProvisionalOrderSchema]:
        """Заказ с позициями или None, если не найден"""

    @abstractmethod
    async def list_orders(self, user_id: str) -> List[ProvisionalOrderSchema]:
        """Заказы пользователя, новые первыми"""

    async def close(self) -> None:
        """Освобождает ресурсы адаптера"""


def _discard_late_result(operation: str, task: asyncio.Future) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.debug("Запоздавший вызов '%s' завершился ошибкой, результат отброшен: %s", operation, str(exc))
    else:
        logger.debug("Запоздавший вызов '%s' завершился успешно, результат отброшен", operation)


async def call_with_timeout(operation: str, awaitable: Awaitable[T], timeout: Optional[float]) -> T:
    """
    Ожидает вызов удаленного хранилища не дольше timeout секунд

    Сам вызов не отменяется: он может завершиться позже, но его результат
    отбрасывается.

    Raises:
        RemoteTimeout: Если вызов не завершился за отведенное время
    """
    if timeout is None:
        return await awaitable

    task = asyncio.ensure_future(awaitable)
    try:
        return await asyncio.wait_for(asyncio.shield(task), timeout)
    except asyncio.TimeoutError:
        logger.error("Вызов '%s' не завершился за %s с", operation, timeout)
        task.add_done_callback(partial(_discard_late_result, operation))
        raise RemoteTimeout(operation, timeout) from None


class TimeBoundRemoteStore(RemoteStore):
    """Обертка над адаптером, ограничивающая время каждого вызова"""

    def __init__(self, inner: RemoteStore, timeout: Optional[float] = None):
        self.inner = inner
        self.timeout = settings.REMOTE_CALL_TIMEOUT if timeout is None else timeout

    async def list_items(self, user_id: str) -> List[CartItemSchema]:
        return await call_with_timeout("list_items", self.inner.list_items(user_id), self.timeout)

    async def upsert_item(self, user_id: str, item: CartItemSchema) -> None:
        await call_with_timeout("upsert_item", self.inner.upsert_item(user_id, item), self.timeout)

    async def delete_item(self, item_id: str, user_id: str) -> None:
        await call_with_timeout("delete_item", self.inner.delete_item(item_id, user_id), self.timeout)

    async def delete_all_items(self, user_id: str) -> None:
        await call_with_timeout("delete_all_items", self.inner.delete_all_items(user_id), self.timeout)

    async def create_order(self, user_id, total, payment_method, shipping_details=None) -> str:
        return await call_with_timeout(
            "create_order",
            self.inner.create_order(user_id, total, payment_method, shipping_details),
            self.timeout,
        )

    async def insert_order_line_items(self, order_id, items) -> None:
        await call_with_timeout(
            "insert_order_line_items", self.inner.insert_order_line_items(order_id, items), self.timeout
        )

    async def update_order_status(self, order_id, status, payment_status=None) -> None:
        await call_with_timeout(
            "update_order_status", self.inner.update_order_status(order_id, status, payment_status), self.timeout
        )

    async def get_order(self, order_id: str) -> Optional[ProvisionalOrderSchema]:
        return await call_with_timeout("get_order", self.inner.get_order(order_id), self.timeout)

    async def list_orders(self, user_id: str) -> List[ProvisionalOrderSchema]:
        return await call_with_timeout("list_orders", self.inner.list_orders(user_id), self.timeout)

    async def close(self) -> None:
        await self.inner.close()
