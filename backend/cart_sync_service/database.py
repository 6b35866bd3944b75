"""Модуль для работы с базой данных удаленного хранилища корзины."""
from typing import Optional
import logging

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from models import Base
from config import settings, get_db_url

# Настройка логирования
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("cart_database")

_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker] = None


def get_engine() -> AsyncEngine:
    """Создает движок SQLAlchemy при первом обращении"""
    global _engine
    if _engine is None:
        database_url = get_db_url()
        logger.info("URL базы данных: %s", database_url)
        _engine = create_async_engine(
            database_url,
            echo=settings.DATABASE_ECHO,  # Вывод SQL-запросов в консоль
        )
    return _engine


def get_session_factory(engine: Optional[AsyncEngine] = None) -> async_sessionmaker:
    """Возвращает асинхронную фабрику сессий"""
    global _session_factory
    if engine is not None:
        return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    if _session_factory is None:
        _session_factory = async_sessionmaker(
            get_engine(),
            class_=AsyncSession,
            expire_on_commit=False  # Чтобы объекты не истекали после commit
        )
    return _session_factory


async def setup_database(engine: Optional[AsyncEngine] = None):
    """Создает все таблицы в базе данных"""
    engine = engine or get_engine()
    logger.info("Создание таблиц в базе данных...")
    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Таблицы успешно созданы")
    except Exception as e:
        logger.error("Ошибка при создании таблиц: %s", str(e))
        raise


async def dispose_engine():
    """Закрывает пул соединений"""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
        logger.info("Соединения с базой данных закрыты")
    _engine = None
    _session_factory = None
