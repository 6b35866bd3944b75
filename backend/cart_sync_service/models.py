"""Модели удаленного хранилища корзины и заказов."""

import enum
import uuid
from datetime import datetime
from typing import Optional, List

from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship, selectinload
from sqlalchemy import Integer, Float, String, ForeignKey, CheckConstraint, DateTime, JSON, func, select
from sqlalchemy.ext.asyncio import AsyncSession


class Base(DeclarativeBase):
    """Базовый класс для всех моделей SQLAlchemy."""
    pass


class OrderStatusEnum(enum.Enum):
    """Перечисление статусов заказа."""
    PENDING = "pending"
    PROCESSING = "processing"


class PaymentStatusEnum(enum.Enum):
    """Перечисление статусов оплаты."""
    PENDING = "pending"
    PAID = "paid"


class PaymentMethodEnum(enum.Enum):
    """Способ оплаты."""
    COD = "cod"  # Оплата при получении
    ONLINE = "online"


class CartItemModel(Base):
    """Модель позиции корзины авторизованного пользователя"""
    __tablename__ = 'cart_items'
    __table_args__ = (
        CheckConstraint('quantity > 0', name='cart_item_quantity_positive'),
    )

    # ID позиции выводится из (user_id, product_id, variant), поэтому уникален глобально
    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    product_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    variant: Mapped[str] = mapped_column(String(50), nullable=False, default="")
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    price: Mapped[float] = mapped_column(Float, nullable=False)
    image_ref: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    added_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=func.now(), onupdate=func.now())

    @classmethod
    async def get_user_items(cls, session: AsyncSession, user_id: str) -> List["CartItemModel"]:
        """Получить все позиции корзины пользователя в порядке добавления"""
        query = select(cls).filter(cls.user_id == user_id).order_by(cls.added_at.asc(), cls.id.asc())
        result = await session.execute(query)
        return list(result.scalars().all())


class OrderModel(Base):
    """Модель заказа."""
    __tablename__ = 'orders'

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=OrderStatusEnum.PENDING.value)
    payment_method: Mapped[str] = mapped_column(String(20), nullable=False)
    payment_status: Mapped[str] = mapped_column(String(20), nullable=False, default=PaymentStatusEnum.PENDING.value)
    total_amount: Mapped[float] = mapped_column(Float, nullable=False)
    shipping_address: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=func.now(), onupdate=func.now())

    # Связь с позициями заказа
    items = relationship(
        "OrderItemModel", back_populates="order", cascade="all, delete-orphan", order_by="OrderItemModel.id"
    )

    @classmethod
    async def get_by_id(cls, session: AsyncSession, order_id: str) -> Optional["OrderModel"]:
        """Получить заказ по ID вместе с позициями"""
        query = select(cls).options(selectinload(cls.items)).filter(cls.id == order_id)
        result = await session.execute(query)
        return result.scalars().first()

    @classmethod
    async def get_by_user(cls, session: AsyncSession, user_id: str) -> List["OrderModel"]:
        """Получить заказы пользователя, новые первыми"""
        query = select(cls).options(
            selectinload(cls.items)
        ).filter(cls.user_id == user_id).order_by(cls.created_at.desc())
        result = await session.execute(query)
        return list(result.scalars().all())


class OrderItemModel(Base):
    """Модель позиции заказа"""
    __tablename__ = 'order_items'
    __table_args__ = (
        CheckConstraint('quantity > 0', name='order_item_quantity_positive'),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id: Mapped[str] = mapped_column(String(100), nullable=False)
    variant: Mapped[str] = mapped_column(String(50), nullable=False, default="")
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    price_at_time: Mapped[float] = mapped_column(Float, nullable=False)  # Цена на момент оформления

    order = relationship("OrderModel", back_populates="items")
