"""Модуль для сборки зависимостей движка синхронизации корзины."""

import logging
from typing import Optional

from config import settings
from database import get_engine, get_session_factory
from remote_api import RemoteCartAPI
from remote_store import RemoteStore, TimeBoundRemoteStore
from sql_store import SqlRemoteStore
from storage import LocalStorage, SnapshotStorage, get_local_storage
from app.services.cart_sync import CartSyncEngine

# Настройка логирования
logger = logging.getLogger("cart_dependencies")


def get_remote_store(backend: Optional[str] = None) -> RemoteStore:
    """
    Создает адаптер удаленного хранилища с ограничением времени вызовов

    Args:
        backend: "rest" или "sql" (по умолчанию из настроек)
    """
    backend = backend or settings.REMOTE_BACKEND
    if backend == "rest":
        inner: RemoteStore = RemoteCartAPI()
    elif backend == "sql":
        engine = get_engine()
        inner = SqlRemoteStore(get_session_factory(), engine=engine)
    else:
        raise ValueError(f"Неизвестный тип удаленного хранилища: {backend}")

    logger.info("Удаленное хранилище корзины: %s, таймаут вызова %s с", backend, settings.REMOTE_CALL_TIMEOUT)
    return TimeBoundRemoteStore(inner, settings.REMOTE_CALL_TIMEOUT)


def get_snapshot_storage(storage: Optional[LocalStorage] = None) -> SnapshotStorage:
    """Создает хранилище снимков поверх локального хранилища из настроек"""
    return SnapshotStorage(storage or get_local_storage())


def build_cart_sync_engine(
    remote: Optional[RemoteStore] = None,
    storage: Optional[LocalStorage] = None,
) -> CartSyncEngine:
    """Собирает движок синхронизации корзины со всеми зависимостями"""
    engine = CartSyncEngine(
        remote=remote or get_remote_store(),
        snapshot_storage=get_snapshot_storage(storage),
    )
    logger.info("Движок синхронизации корзины собран")
    return engine
