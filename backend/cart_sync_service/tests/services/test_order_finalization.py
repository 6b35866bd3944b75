"""Тесты для двухфазного оформления заказа (order_finalization.py)."""

import asyncio

import pytest

from exceptions import InvalidState, RemoteRejected
from models import OrderStatusEnum, PaymentMethodEnum, PaymentStatusEnum
from app.services.order_finalization import OrderFinalizationPipeline


@pytest.fixture
def orders(user_store, remote, user_pipeline):
    return OrderFinalizationPipeline(user_store, remote, user_pipeline, handling_fee=50)


@pytest.fixture
def guest_orders(store, remote, pipeline):
    return OrderFinalizationPipeline(store, remote, pipeline, handling_fee=50)


@pytest.mark.asyncio
async def test_provisional_order_requires_user(guest_orders, pipeline, rice):
    await pipeline.add(rice)
    with pytest.raises(InvalidState):
        await guest_orders.create_provisional_order()


@pytest.mark.asyncio
async def test_provisional_order_requires_items(orders, remote):
    with pytest.raises(InvalidState):
        await orders.create_provisional_order()
    assert remote.calls_of("create_order") == []


@pytest.mark.asyncio
async def test_provisional_order_is_pending(orders, user_pipeline, user_store, remote, rice, lentils, shipping_details):
    await user_pipeline.add(rice)
    await user_pipeline.add(lentils, 2)

    order_id = await orders.create_provisional_order(shipping_details, PaymentMethodEnum.ONLINE)

    order = remote.orders[order_id]
    assert order.status == OrderStatusEnum.PENDING
    assert order.payment_status == PaymentStatusEnum.PENDING
    assert order.payment_method == PaymentMethodEnum.ONLINE
    # 500 + 2 * 120 + сбор 50
    assert order.total_amount == 790
    assert order.shipping_address == shipping_details
    assert order.items == []
    # Корзина не меняется до финализации
    assert len(user_store.read()) == 2


@pytest.mark.asyncio
async def test_finalize_materializes_line_items(orders, user_pipeline, user_store, remote, rice, lentils):
    await user_pipeline.add(rice)
    await user_pipeline.add(lentils, 3)
    order_id = await orders.create_provisional_order()

    line_items = await orders.finalize(order_id)

    assert [(item.product_id, item.variant, item.quantity, item.price_at_time) for item in line_items] == [
        ("P1", "5kg", 1, 500), ("P2", "1kg", 3, 120),
    ]
    order = remote.orders[order_id]
    assert order.items == line_items
    assert order.status == OrderStatusEnum.PROCESSING
    assert order.payment_status == PaymentStatusEnum.PENDING
    assert user_store.read() == ()
    assert remote.user_items("u1") == []


@pytest.mark.asyncio
async def test_confirm_online_payment_marks_paid(orders, user_pipeline, remote, rice):
    await user_pipeline.add(rice)
    order_id = await orders.create_provisional_order(payment_method=PaymentMethodEnum.ONLINE)

    await orders.confirm_online_payment(order_id)

    assert remote.orders[order_id].payment_status == PaymentStatusEnum.PAID
    assert remote.orders[order_id].status == OrderStatusEnum.PROCESSING


@pytest.mark.asyncio
async def test_failed_line_items_leave_order_pending(orders, user_pipeline, user_store, remote, rice):
    """Если позиции не сохранились, заказ остается pending, а корзина не меняется."""
    await user_pipeline.add(rice)
    order_id = await orders.create_provisional_order()
    before = user_store.read()
    remote.fail("insert_order_line_items")

    with pytest.raises(RemoteRejected):
        await orders.finalize(order_id)

    assert remote.orders[order_id].status == OrderStatusEnum.PENDING
    assert remote.orders[order_id].items == []
    assert user_store.read() == before
    assert remote.calls_of("update_order_status") == []
    assert remote.calls_of("delete_item") == []


@pytest.mark.asyncio
async def test_retry_after_failed_cart_cleanup_does_not_duplicate(orders, user_pipeline, user_store, remote, rice):
    await user_pipeline.add(rice, 2)
    order_id = await orders.create_provisional_order()
    remote.fail("delete_item", once=True)

    with pytest.raises(RemoteRejected):
        await orders.finalize_cash_on_delivery(order_id)

    # Удаление позиции откатилось, корзина на месте
    assert len(user_store.read()) == 1

    await orders.finalize_cash_on_delivery(order_id)

    assert len(remote.calls_of("insert_order_line_items")) == 1
    assert len(remote.orders[order_id].items) == 1
    assert user_store.read() == ()


@pytest.mark.asyncio
async def test_items_added_during_finalize_stay_in_cart(orders, user_pipeline, user_store, remote, rice, lentils):
    """Товары, добавленные пока сохранялись позиции заказа, не теряются."""
    await user_pipeline.add(rice)
    order_id = await orders.create_provisional_order()
    release = remote.hold("insert_order_line_items")
    finalizing = asyncio.create_task(orders.finalize(order_id))
    await asyncio.sleep(0)

    await user_pipeline.add(lentils)
    await user_pipeline.add(rice, 2)
    release.set()
    line_items = await finalizing

    assert [(item.product_id, item.quantity) for item in line_items] == [("P1", 1)]
    assert {item.id: item.quantity for item in user_store.read()} == {"u1-P1-5kg": 2, "u1-P2-1kg": 1}
    assert {item.id: item.quantity for item in remote.user_items("u1")} == {"u1-P1-5kg": 2, "u1-P2-1kg": 1}
    assert remote.calls_of("delete_all_items") == []


@pytest.mark.asyncio
async def test_finalize_requires_items(orders):
    with pytest.raises(InvalidState):
        await orders.finalize("order-1")


@pytest.mark.asyncio
async def test_list_orders(orders, user_pipeline, rice):
    await user_pipeline.add(rice)
    first = await orders.create_provisional_order()
    second = await orders.create_provisional_order()

    listed = await orders.list_orders()

    assert {order.id for order in listed} == {first, second}


@pytest.mark.asyncio
async def test_list_orders_requires_user(guest_orders):
    with pytest.raises(InvalidState):
        await guest_orders.list_orders()
