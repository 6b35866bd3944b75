"""Конфигурационный файл pytest с общими фикстурами для тестов cart_sync_service."""

import asyncio
import os
import sys
import uuid
from datetime import datetime
from typing import Dict, List, Optional, Tuple

import pytest

# Добавляем пути импорта для тестирования
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from cart_store import CartStore
from exceptions import RemoteRejected, RemoteStoreError
from models import OrderStatusEnum, PaymentStatusEnum
from remote_store import RemoteStore
from schema import (
    CartItemSchema,
    CartProductSchema,
    ProvisionalOrderSchema,
    SessionIdentity,
    ShippingDetailsSchema,
)
from storage import MemoryLocalStorage, SnapshotStorage
from app.services.cart_sync import CartSyncEngine
from app.services.mutation_pipeline import MutationPipeline


class FakeRemoteStore(RemoteStore):
    """
    Удаленное хранилище в памяти.

    Поддерживает внедрение ошибок (fail) и удержание вызовов до сигнала (hold),
    чтобы проверять завершение удаленных вызовов в произвольном порядке.
    """

    def __init__(self):
        self.items: Dict[str, Dict[str, CartItemSchema]] = {}
        self.orders: Dict[str, ProvisionalOrderSchema] = {}
        self.calls: List[Tuple] = []
        self.closed = False
        self._failures: Dict[str, Tuple[RemoteStoreError, bool]] = {}
        self._holds: Dict[str, List[asyncio.Event]] = {}

    def fail(self, operation: str, exc: Optional[RemoteStoreError] = None, once: bool = False) -> None:
        """Следующие вызовы операции завершатся ошибкой"""
        self._failures[operation] = (exc or RemoteRejected(operation, "injected failure", status_code=500), once)

    def recover(self, operation: str) -> None:
        self._failures.pop(operation, None)

    def hold(self, operation: str) -> asyncio.Event:
        """Следующий вызов операции будет ждать установки события"""
        event = asyncio.Event()
        self._holds.setdefault(operation, []).append(event)
        return event

    def calls_of(self, operation: str) -> List[Tuple]:
        return [call for call in self.calls if call[0] == operation]

    async def _enter(self, operation: str, *args) -> None:
        self.calls.append((operation,) + args)
        holds = self._holds.get(operation)
        if holds:
            await holds.pop(0).wait()
        failure = self._failures.get(operation)
        if failure is not None:
            exc, once = failure
            if once:
                del self._failures[operation]
            raise exc

    def user_items(self, user_id: str) -> List[CartItemSchema]:
        return list(self.items.get(user_id, {}).values())

    async def list_items(self, user_id):
        await self._enter("list_items", user_id)
        return self.user_items(user_id)

    async def upsert_item(self, user_id, item):
        await self._enter("upsert_item", user_id, item)
        self.items.setdefault(user_id, {})[item.id] = item

    async def delete_item(self, item_id, user_id):
        await self._enter("delete_item", item_id, user_id)
        self.items.get(user_id, {}).pop(item_id, None)

    async def delete_all_items(self, user_id):
        await self._enter("delete_all_items", user_id)
        self.items.pop(user_id, None)

    async def create_order(self, user_id, total, payment_method, shipping_details=None):
        await self._enter("create_order", user_id, total, payment_method, shipping_details)
        order_id = str(uuid.uuid4())
        self.orders[order_id] = ProvisionalOrderSchema(
            id=order_id,
            user_id=user_id,
            payment_method=payment_method,
            total_amount=total,
            shipping_address=shipping_details,
            created_at=datetime.now(),
        )
        return order_id

    async def insert_order_line_items(self, order_id, items):
        await self._enter("insert_order_line_items", order_id, list(items))
        order = self.orders.get(order_id)
        if order is None:
            raise RemoteRejected("insert_order_line_items", "order not found", status_code=404)
        order.items = order.items + list(items)

    async def update_order_status(self, order_id, status, payment_status=None):
        await self._enter("update_order_status", order_id, status, payment_status)
        order = self.orders[order_id]
        order.status = OrderStatusEnum(status)
        if payment_status is not None:
            order.payment_status = PaymentStatusEnum(payment_status)

    async def get_order(self, order_id):
        await self._enter("get_order", order_id)
        return self.orders.get(order_id)

    async def list_orders(self, user_id):
        await self._enter("list_orders", user_id)
        orders = [order for order in self.orders.values() if order.user_id == user_id]
        return sorted(orders, key=lambda order: order.created_at, reverse=True)

    async def close(self):
        self.closed = True


# Фикстуры для тестирования
@pytest.fixture
def remote():
    """Удаленное хранилище в памяти."""
    return FakeRemoteStore()


@pytest.fixture
def local_storage():
    """Локальное хранилище в памяти."""
    return MemoryLocalStorage()


@pytest.fixture
def snapshot_storage(local_storage):
    return SnapshotStorage(local_storage)


@pytest.fixture
def store(snapshot_storage):
    """Кэш корзины гостя."""
    return CartStore(snapshot_storage)


@pytest.fixture
def pipeline(store, remote):
    return MutationPipeline(store, remote)


@pytest.fixture
def user():
    return SessionIdentity.authenticated("u1")


@pytest.fixture
def user_store(snapshot_storage, user):
    """Кэш корзины авторизованного пользователя."""
    return CartStore(snapshot_storage, identity=user)


@pytest.fixture
def user_pipeline(user_store, remote):
    return MutationPipeline(user_store, remote)


@pytest.fixture
def rice():
    """Товар каталога с фасовкой."""
    return CartProductSchema(product_id="P1", variant="5kg", name="Рис басмати", price=500, image_ref="img/rice.png")


@pytest.fixture
def lentils():
    return CartProductSchema(product_id="P2", variant="1kg", name="Чечевица", price=120)


@pytest.fixture
def shipping_details():
    """Данные доставки из формы оформления."""
    return ShippingDetailsSchema(
        full_name="Иван Петров",
        address="ул. Ленина, 1",
        city="Казань",
        zip_code="420000",
        phone="+79990000000",
    )


@pytest.fixture
def engine(remote, snapshot_storage):
    """Движок синхронизации корзины на хранилищах в памяти."""
    return CartSyncEngine(remote, snapshot_storage, handling_fee=50)


# Настройка для работы с асинхронными тестами
def pytest_configure(config):
    """Конфигурация pytest."""
    # Регистрируем asyncio как плагин
    config.addinivalue_line("markers", "asyncio: mark test as an asyncio test")
