"""Локальное долговременное хранилище корзины гостя."""

import logging
import os
import re
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Optional

import redis
from pydantic import ValidationError

from config import settings, get_redis_url
from exceptions import StorageCorrupt
from schema import CartSnapshot, CartSnapshotSchema, GuestMergeMarkerSchema

# Настраиваем логирование
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("cart_storage")

# Допустимые символы ключа слота (ключ становится именем файла)
_KEY_PATTERN = re.compile(r"^[A-Za-z0-9_.@-]+$")


class LocalStorage(ABC):
    """Строковые слоты по ключу, аналог localStorage браузера"""

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        """Возвращает значение слота или None, если слота нет"""

    @abstractmethod
    def set(self, key: str, value: str) -> bool:
        """Сохраняет значение слота, возвращает True при успехе"""

    @abstractmethod
    def remove(self, key: str) -> bool:
        """Удаляет слот, возвращает True при успехе"""


class MemoryLocalStorage(LocalStorage):
    """Хранилище в памяти процесса (для тестов и одноразовых сессий)"""

    def __init__(self):
        self._slots: Dict[str, str] = {}

    def get(self, key: str) -> Optional[str]:
        return self._slots.get(key)

    def set(self, key: str, value: str) -> bool:
        self._slots[key] = value
        return True

    def remove(self, key: str) -> bool:
        self._slots.pop(key, None)
        return True


class FileLocalStorage(LocalStorage):
    """Хранилище на диске: один JSON-файл на слот"""

    def __init__(self, directory: Optional[str] = None):
        self.directory = Path(directory or settings.LOCAL_STORAGE_DIR)
        logger.info("Локальное хранилище корзины в каталоге: %s", self.directory)

    def _path(self, key: str) -> Path:
        if not _KEY_PATTERN.match(key):
            raise ValueError(f"Недопустимый ключ локального хранилища: {key!r}")
        return self.directory / f"{key}.json"

    def get(self, key: str) -> Optional[str]:
        path = self._path(key)
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError) as e:
            logger.warning("Ошибка чтения слота %s: %s", key, str(e))
            return None

    def set(self, key: str, value: str) -> bool:
        path = self._path(key)
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            # Пишем во временный файл и атомарно подменяем, чтобы не оставить полузаписанный слот
            fd, tmp_path = tempfile.mkstemp(dir=self.directory, prefix=f".{key}.", suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as tmp_file:
                    tmp_file.write(value)
                os.replace(tmp_path, path)
            except OSError:
                if os.path.exists(tmp_path):
                    os.unlink(tmp_path)
                raise
            logger.debug("Слот %s сохранен", key)
            return True
        except OSError as e:
            logger.error("Ошибка записи слота %s: %s", key, str(e))
            return False

    def remove(self, key: str) -> bool:
        path = self._path(key)
        try:
            path.unlink(missing_ok=True)
            logger.debug("Слот %s удален", key)
            return True
        except OSError as e:
            logger.warning("Ошибка удаления слота %s: %s", key, str(e))
            return False


class RedisLocalStorage(LocalStorage):
    """Хранилище слотов в Redis"""

    def __init__(self, client: Optional[redis.Redis] = None):
        self.redis = client
        if self.redis is None:
            self.redis = redis.Redis.from_url(get_redis_url(), decode_responses=True, socket_timeout=3)
            logger.info("Локальное хранилище корзины в Redis: %s:%d/%d", settings.REDIS_HOST, settings.REDIS_PORT, settings.REDIS_DB)

    def get(self, key: str) -> Optional[str]:
        try:
            return self.redis.get(key)
        except (redis.ConnectionError, redis.TimeoutError, redis.ResponseError) as e:
            logger.warning("Ошибка при получении слота из Redis (%s): %s", key, str(e))
            return None

    def set(self, key: str, value: str) -> bool:
        try:
            self.redis.set(key, value)
            logger.debug("Слот сохранен в Redis: %s", key)
            return True
        except (redis.ConnectionError, redis.TimeoutError, redis.ResponseError) as e:
            logger.warning("Ошибка при сохранении слота в Redis (%s): %s", key, str(e))
            return False

    def remove(self, key: str) -> bool:
        try:
            self.redis.delete(key)
            logger.debug("Слот удален из Redis: %s", key)
            return True
        except (redis.ConnectionError, redis.TimeoutError, redis.ResponseError) as e:
            logger.warning("Ошибка при удалении слота из Redis (%s): %s", key, str(e))
            return False

    def close(self):
        """Закрывает соединение с Redis"""
        self.redis.close()
        logger.info("Соединение с Redis закрыто")


def dump_snapshot(snapshot: CartSnapshot) -> str:
    """Сериализует снимок корзины в JSON-массив"""
    return CartSnapshotSchema(list(snapshot)).model_dump_json()


def load_snapshot(raw: str) -> CartSnapshot:
    """
    Разбирает снимок корзины из JSON

    Raises:
        StorageCorrupt: Если данные не являются корректным снимком
    """
    try:
        return tuple(CartSnapshotSchema.model_validate_json(raw).root)
    except ValidationError as e:
        raise StorageCorrupt(f"Поврежденный снимок корзины: {e.error_count()} ошибок разбора") from e


class SnapshotStorage:
    """Снимки корзины поверх строковых слотов LocalStorage"""

    def __init__(self, storage: LocalStorage):
        self.storage = storage

    def load(self, key: str) -> CartSnapshot:
        """
        Загружает снимок из слота

        Отсутствующие и поврежденные данные считаются пустой корзиной:
        повреждение логируется и не пробрасывается.
        """
        raw = self.storage.get(key)
        if raw is None:
            return ()
        try:
            return load_snapshot(raw)
        except StorageCorrupt as e:
            logger.warning("Слот %s поврежден, считаем корзину пустой: %s", key, str(e))
            return ()

    def save(self, key: str, snapshot: CartSnapshot) -> bool:
        return self.storage.set(key, dump_snapshot(snapshot))

    def erase(self, key: str) -> bool:
        return self.storage.remove(key)

    def has_data(self, key: str) -> bool:
        return bool(self.load(key))

    def load_pending(self, key: str) -> Dict[str, CartSnapshot]:
        """
        Загружает маркер незавершенных объединений по пользователям

        Поврежденный маркер считается пустым, как и поврежденный снимок.
        """
        raw = self.storage.get(key)
        if raw is None:
            return {}
        try:
            marker = GuestMergeMarkerSchema.model_validate_json(raw)
        except ValidationError as e:
            logger.warning("Маркер %s поврежден, считаем его пустым: %d ошибок разбора", key, e.error_count())
            return {}
        return {user_id: tuple(snapshot.root) for user_id, snapshot in marker.root.items() if snapshot.root}

    def save_pending(self, key: str, pending: Dict[str, CartSnapshot]) -> bool:
        """Сохраняет маркер; пустые записи отбрасываются, пустой маркер удаляется"""
        pending = {user_id: snapshot for user_id, snapshot in pending.items() if snapshot}
        if not pending:
            return self.erase(key)
        marker = GuestMergeMarkerSchema(
            {user_id: CartSnapshotSchema(list(snapshot)) for user_id, snapshot in pending.items()}
        )
        return self.storage.set(key, marker.model_dump_json())


def get_local_storage(backend: Optional[str] = None) -> LocalStorage:
    """Создает локальное хранилище согласно настройкам"""
    backend = backend or settings.LOCAL_STORAGE_BACKEND
    if backend == "file":
        return FileLocalStorage()
    if backend == "redis":
        return RedisLocalStorage()
    if backend == "memory":
        return MemoryLocalStorage()
    raise ValueError(f"Неизвестный тип локального хранилища: {backend}")
