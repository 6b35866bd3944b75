from pydantic import BaseModel, ConfigDict, Field, RootModel, model_validator
from typing import Dict, Optional, List, Tuple
from datetime import datetime
import enum

from models import OrderStatusEnum, PaymentStatusEnum, PaymentMethodEnum


class SessionIdentity(BaseModel):
    """Идентичность сессии: гость (user_id=None) или авторизованный пользователь"""
    user_id: Optional[str] = None

    model_config = ConfigDict(frozen=True)

    @classmethod
    def anonymous(cls) -> "SessionIdentity":
        return cls()

    @classmethod
    def authenticated(cls, user_id: str) -> "SessionIdentity":
        if not user_id:
            raise ValueError("Для авторизованной сессии нужен user_id")
        return cls(user_id=str(user_id))

    @property
    def is_authenticated(self) -> bool:
        return self.user_id is not None

    def __str__(self) -> str:
        return f"Authenticated({self.user_id})" if self.is_authenticated else "Anonymous"


class CartProductSchema(BaseModel):
    """Данные каталога, передаваемые при добавлении товара в корзину"""
    product_id: str
    variant: str = ""  # Например, фасовка: "5kg"
    name: str
    price: float = Field(ge=0)
    image_ref: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class CartItemSchema(BaseModel):
    """Позиция корзины: товар + вариант в рамках одной сессии"""
    id: str
    product_id: str
    variant: str = ""
    name: str
    price: float = Field(ge=0)
    image_ref: Optional[str] = None
    quantity: int = Field(ge=1)

    model_config = ConfigDict(frozen=True, from_attributes=True)

    @property
    def line_total(self) -> float:
        return self.price * self.quantity

    def as_product(self) -> CartProductSchema:
        """Возвращает данные каталога, захваченные при добавлении"""
        return CartProductSchema(
            product_id=self.product_id,
            variant=self.variant,
            name=self.name,
            price=self.price,
            image_ref=self.image_ref,
        )


# Снимок корзины в памяти - неизменяемый кортеж позиций
CartSnapshot = Tuple[CartItemSchema, ...]


class CartSnapshotSchema(RootModel[List[CartItemSchema]]):
    """Сериализованный снимок корзины (JSON-массив позиций)"""

    @model_validator(mode="after")
    def check_unique_ids(self):
        ids = [item.id for item in self.root]
        if len(ids) != len(set(ids)):
            raise ValueError("Идентификаторы позиций в снимке корзины должны быть уникальны")
        return self


class GuestMergeMarkerSchema(RootModel[Dict[str, CartSnapshotSchema]]):
    """Маркер незавершенного объединения: ID пользователя -> позиции, ожидающие переноса"""


class CartBreakdownSchema(BaseModel):
    """Расчет стоимости корзины"""
    subtotal: float
    handling_fee: float
    total: float
    total_items: int = 0


class ShippingDetailsSchema(BaseModel):
    """Данные доставки из формы оформления заказа"""
    full_name: str
    address: str
    city: str
    zip_code: str
    phone: str

    model_config = ConfigDict(from_attributes=True)


class OrderLineItemSchema(BaseModel):
    """Неизменяемый снимок позиции корзины в момент оформления заказа"""
    order_id: str
    product_id: str
    variant: str = ""
    quantity: int = Field(ge=1)
    price_at_time: float

    model_config = ConfigDict(frozen=True, from_attributes=True)


class ProvisionalOrderSchema(BaseModel):
    """Заказ: создается в статусе pending, после финализации - processing"""
    id: str
    user_id: str
    status: OrderStatusEnum = OrderStatusEnum.PENDING
    payment_method: PaymentMethodEnum
    payment_status: PaymentStatusEnum = PaymentStatusEnum.PENDING
    total_amount: float
    shipping_address: Optional[ShippingDetailsSchema] = None
    created_at: Optional[datetime] = None
    items: List[OrderLineItemSchema] = []

    model_config = ConfigDict(from_attributes=True)

    @property
    def short_id(self) -> str:
        """Короткий номер заказа для отображения"""
        return self.id[:8]


class SyncStateEnum(enum.Enum):
    """Состояние синхронизации корзины с удаленным хранилищем"""
    LOCAL = "local"  # Гость, корзина только в локальном хранилище
    SYNCED = "synced"
    STALE = "stale"  # Последняя загрузка не удалась, показываем прежнее содержимое


class SyncStatusSchema(BaseModel):
    """Некритичный статус синхронизации, который интерфейс может показать"""
    state: SyncStateEnum = SyncStateEnum.LOCAL
    user_id: Optional[str] = None
    error: Optional[str] = None
    updated_at: datetime = Field(default_factory=datetime.now)
