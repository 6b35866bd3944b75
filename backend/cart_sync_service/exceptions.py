"""Исключения движка синхронизации корзины."""

from typing import Optional


class CartSyncError(Exception):
    """Базовая ошибка движка. Любая из них восстановима на границе операции."""


class RemoteStoreError(CartSyncError):
    """Ошибка при обращении к удаленному хранилищу."""

    def __init__(self, operation: str, detail: str = ""):
        self.operation = operation
        self.detail = detail
        message = f"Операция '{operation}' удаленного хранилища завершилась ошибкой"
        if detail:
            message += f": {detail}"
        super().__init__(message)


class RemoteTimeout(RemoteStoreError):
    """Удаленное хранилище не ответило за отведенное время."""

    def __init__(self, operation: str, timeout: Optional[float] = None):
        self.timeout = timeout
        detail = f"превышено время ожидания ({timeout} с)" if timeout is not None else "превышено время ожидания"
        super().__init__(operation, detail)


class RemoteRejected(RemoteStoreError):
    """Удаленное хранилище вернуло ошибку."""

    def __init__(self, operation: str, detail: str = "", status_code: Optional[int] = None):
        self.status_code = status_code
        if status_code is not None:
            detail = f"HTTP {status_code} {detail}".strip()
        super().__init__(operation, detail)


class InvalidState(CartSyncError):
    """Операция недопустима в текущем состоянии (пустая корзина, гость и т.п.)."""


class StorageCorrupt(CartSyncError):
    """Данные локального хранилища не удалось разобрать."""
