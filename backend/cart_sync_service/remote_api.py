"""API для взаимодействия с удаленным хранилищем корзины (PostgREST / Supabase REST)."""

import logging
from typing import Any, Dict, List, Optional, Sequence

import httpx

from config import settings
from exceptions import RemoteRejected, RemoteTimeout
from models import OrderStatusEnum, PaymentMethodEnum, PaymentStatusEnum
from remote_store import RemoteStore
from schema import (
    CartItemSchema,
    OrderLineItemSchema,
    ProvisionalOrderSchema,
    ShippingDetailsSchema,
)

# Настраиваем логирование
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("cart_remote_api")

# Вложенная выборка позиций заказа
ORDER_SELECT = "*,order_items(*)"


def _item_from_row(row: Dict[str, Any]) -> CartItemSchema:
    row = dict(row)
    row["variant"] = row.get("variant") or ""
    return CartItemSchema.model_validate(row)


def _order_from_row(row: Dict[str, Any]) -> ProvisionalOrderSchema:
    row = dict(row)
    items = row.pop("order_items", None) or []
    for item in items:
        item["variant"] = item.get("variant") or ""
    row["items"] = items
    return ProvisionalOrderSchema.model_validate(row)


class RemoteCartAPI(RemoteStore):
    """Класс для взаимодействия с REST API удаленного хранилища"""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 10.0,
    ):
        self.base_url = base_url or settings.REMOTE_STORE_URL
        self.api_key = settings.REMOTE_STORE_API_KEY if api_key is None else api_key
        self.transport = transport
        self.timeout = timeout

        logger.info("Инициализирован RemoteCartAPI с base_url: %s", self.base_url)

    def _headers(self, prefer: Optional[str] = None) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["apikey"] = self.api_key
            headers["Authorization"] = f"Bearer {self.api_key}"
        if prefer:
            headers["Prefer"] = prefer
        return headers

    async def _request(
        self,
        operation: str,
        method: str,
        path: str,
        params: Optional[Dict[str, str]] = None,
        json: Any = None,
        prefer: Optional[str] = None,
    ) -> httpx.Response:
        """
        Выполняет запрос к REST API

        Raises:
            RemoteTimeout: Если истекло время ожидания ответа
            RemoteRejected: При ошибке соединения или статусе ответа >= 400
        """
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url, transport=self.transport, timeout=self.timeout
            ) as client:
                response = await client.request(
                    method, path, params=params, json=json, headers=self._headers(prefer)
                )
        except httpx.TimeoutException as e:
            logger.error("Таймаут при выполнении '%s': %s", operation, str(e))
            raise RemoteTimeout(operation, self.timeout) from e
        except httpx.RequestError as e:
            logger.error("Ошибка соединения при выполнении '%s': %s", operation, str(e))
            raise RemoteRejected(operation, str(e)) from e

        if response.status_code >= 400:
            logger.error("Ошибка при выполнении '%s': %d - %s", operation, response.status_code, response.text)
            raise RemoteRejected(operation, response.text, status_code=response.status_code)
        return response

    async def list_items(self, user_id: str) -> List[CartItemSchema]:
        response = await self._request(
            "list_items",
            "GET",
            "/cart_items",
            params={"select": "*", "user_id": f"eq.{user_id}", "order": "added_at.asc,id.asc"},
        )
        items = [_item_from_row(row) for row in response.json()]
        logger.info("Получено %d позиций корзины пользователя %s", len(items), user_id)
        return items

    async def upsert_item(self, user_id: str, item: CartItemSchema) -> None:
        row = item.model_dump(mode="json")
        row["user_id"] = user_id
        await self._request(
            "upsert_item",
            "POST",
            "/cart_items",
            params={"on_conflict": "id"},
            json=row,
            prefer="resolution=merge-duplicates,return=minimal",
        )
        logger.debug("Позиция %s сохранена (количество %d)", item.id, item.quantity)

    async def delete_item(self, item_id: str, user_id: str) -> None:
        await self._request(
            "delete_item",
            "DELETE",
            "/cart_items",
            params={"id": f"eq.{item_id}", "user_id": f"eq.{user_id}"},
        )
        logger.debug("Позиция %s удалена", item_id)

    async def delete_all_items(self, user_id: str) -> None:
        await self._request("delete_all_items", "DELETE", "/cart_items", params={"user_id": f"eq.{user_id}"})
        logger.info("Корзина пользователя %s очищена", user_id)

    async def create_order(
        self,
        user_id: str,
        total: float,
        payment_method: PaymentMethodEnum,
        shipping_details: Optional[ShippingDetailsSchema] = None,
    ) -> str:
        payload = {
            "user_id": user_id,
            "status": OrderStatusEnum.PENDING.value,
            "total_amount": total,
            "payment_method": PaymentMethodEnum(payment_method).value,
            "payment_status": PaymentStatusEnum.PENDING.value,
            "shipping_address": shipping_details.model_dump() if shipping_details else None,
        }
        response = await self._request(
            "create_order", "POST", "/orders", json=payload, prefer="return=representation"
        )
        rows = response.json()
        if not rows:
            raise RemoteRejected("create_order", "ответ не содержит созданный заказ")
        order_id = str(rows[0]["id"])
        logger.info("Создан заказ %s пользователя %s на сумму %s", order_id, user_id, total)
        return order_id

    async def insert_order_line_items(self, order_id: str, items: Sequence[OrderLineItemSchema]) -> None:
        if not items:
            return
        await self._request(
            "insert_order_line_items",
            "POST",
            "/order_items",
            json=[item.model_dump(mode="json") for item in items],
            prefer="return=minimal",
        )
        logger.info("Сохранено %d позиций заказа %s", len(items), order_id)

    async def update_order_status(
        self,
        order_id: str,
        status: OrderStatusEnum,
        payment_status: Optional[PaymentStatusEnum] = None,
    ) -> None:
        payload = {"status": OrderStatusEnum(status).value}
        if payment_status is not None:
            payload["payment_status"] = PaymentStatusEnum(payment_status).value
        await self._request(
            "update_order_status", "PATCH", "/orders", params={"id": f"eq.{order_id}"}, json=payload
        )
        logger.info("Статус заказа %s изменен на %s", order_id, payload["status"])

    async def get_order(self, order_id: str) -> Optional[ProvisionalOrderSchema]:
        response = await self._request(
            "get_order", "GET", "/orders", params={"select": ORDER_SELECT, "id": f"eq.{order_id}"}
        )
        rows = response.json()
        if not rows:
            logger.warning("Заказ %s не найден", order_id)
            return None
        return _order_from_row(rows[0])

    async def list_orders(self, user_id: str) -> List[ProvisionalOrderSchema]:
        response = await self._request(
            "list_orders",
            "GET",
            "/orders",
            params={"select": ORDER_SELECT, "user_id": f"eq.{user_id}", "order": "created_at.desc"},
        )
        return [_order_from_row(row) for row in response.json()]
