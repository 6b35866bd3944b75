"""Тесты для SQL-адаптера удаленного хранилища (sql_store.py) на SQLite."""

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from database import get_session_factory, setup_database
from exceptions import RemoteRejected
from models import OrderStatusEnum, PaymentMethodEnum, PaymentStatusEnum
from schema import CartItemSchema, OrderLineItemSchema
from sql_store import SqlRemoteStore


@pytest_asyncio.fixture
async def sql_store():
    """Адаптер поверх SQLite в памяти."""
    engine = create_async_engine("sqlite+aiosqlite://", poolclass=StaticPool)
    await setup_database(engine)
    store = SqlRemoteStore(get_session_factory(engine), engine=engine)
    yield store
    await store.close()


def make_item(item_id, quantity=1, price=500.0):
    user_id, product_id, variant = item_id.split("-")
    return CartItemSchema(id=item_id, product_id=product_id, variant=variant, name=f"Товар {product_id}",
                          price=price, quantity=quantity)


@pytest.mark.asyncio
async def test_upsert_inserts_and_updates(sql_store):
    await sql_store.upsert_item("u1", make_item("u1-P1-5kg", quantity=1))
    await sql_store.upsert_item("u1", make_item("u1-P1-5kg", quantity=4))

    items = await sql_store.list_items("u1")

    assert len(items) == 1
    assert items[0].quantity == 4
    assert items[0].variant == "5kg"


@pytest.mark.asyncio
async def test_list_items_scoped_to_user(sql_store):
    await sql_store.upsert_item("u1", make_item("u1-P1-"))
    await sql_store.upsert_item("u2", make_item("u2-P1-"))

    assert [item.id for item in await sql_store.list_items("u1")] == ["u1-P1-"]
    assert await sql_store.list_items("u3") == []


@pytest.mark.asyncio
async def test_upsert_foreign_item_rejected(sql_store):
    await sql_store.upsert_item("u1", make_item("u1-P1-"))
    with pytest.raises(RemoteRejected):
        await sql_store.upsert_item("u2", make_item("u1-P1-", quantity=9))
    assert (await sql_store.list_items("u1"))[0].quantity == 1


@pytest.mark.asyncio
async def test_delete_item_and_all(sql_store):
    await sql_store.upsert_item("u1", make_item("u1-P1-"))
    await sql_store.upsert_item("u1", make_item("u1-P2-"))
    await sql_store.upsert_item("u2", make_item("u2-P1-"))

    # Чужую позицию удалить нельзя
    await sql_store.delete_item("u2-P1-", "u1")
    await sql_store.delete_item("u1-P1-", "u1")
    assert [item.id for item in await sql_store.list_items("u1")] == ["u1-P2-"]

    await sql_store.delete_all_items("u1")
    assert await sql_store.list_items("u1") == []
    assert len(await sql_store.list_items("u2")) == 1


@pytest.mark.asyncio
async def test_order_lifecycle(sql_store, shipping_details):
    order_id = await sql_store.create_order("u1", 550, PaymentMethodEnum.COD, shipping_details)

    order = await sql_store.get_order(order_id)
    assert order.status == OrderStatusEnum.PENDING
    assert order.payment_status == PaymentStatusEnum.PENDING
    assert order.items == []
    assert order.shipping_address == shipping_details

    await sql_store.insert_order_line_items(order_id, [
        OrderLineItemSchema(order_id=order_id, product_id="P1", variant="5kg", quantity=1, price_at_time=500),
    ])
    await sql_store.update_order_status(order_id, OrderStatusEnum.PROCESSING, PaymentStatusEnum.PAID)

    order = await sql_store.get_order(order_id)
    assert order.status == OrderStatusEnum.PROCESSING
    assert order.payment_status == PaymentStatusEnum.PAID
    assert [(item.product_id, item.price_at_time) for item in order.items] == [("P1", 500)]

    orders = await sql_store.list_orders("u1")
    assert [o.id for o in orders] == [order_id]


@pytest.mark.asyncio
async def test_missing_order(sql_store):
    assert await sql_store.get_order("missing") is None
    with pytest.raises(RemoteRejected):
        await sql_store.update_order_status("missing", OrderStatusEnum.PROCESSING)
    with pytest.raises(RemoteRejected):
        await sql_store.insert_order_line_items("missing", [])


@pytest.mark.asyncio
async def test_database_error_is_rejected(sql_store):
    """Ошибки БД превращаются в RemoteRejected."""
    async with sql_store.engine.begin() as conn:
        await conn.exec_driver_sql("DROP TABLE cart_items")

    with pytest.raises(RemoteRejected) as exc_info:
        await sql_store.list_items("u1")
    assert exc_info.value.operation == "list_items"
