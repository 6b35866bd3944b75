"""Вывод стабильных идентификаторов позиций корзины."""

from schema import SessionIdentity

# Префикс идентификаторов гостевой корзины
GUEST_PREFIX = "guest"
# Разделитель частей идентификатора; внутри частей экранируется
ITEM_ID_DELIMITER = "-"


def _escape(part: str) -> str:
    # Сначала экранируем сам символ экранирования, затем разделитель
    return part.replace("%", "%25").replace(ITEM_ID_DELIMITER, "%2D")


def derive_item_id(identity: SessionIdentity, product_id: str, variant: str) -> str:
    """
    Формирует идентификатор позиции корзины из сессии, товара и варианта

    Одна и та же тройка в рамках одной идентичности всегда дает один и тот же
    ID, а разные тройки никогда не совпадают. Это позволяет делать идемпотентный
    upsert в удаленное хранилище.

    Args:
        identity: Текущая идентичность сессии
        product_id: ID товара в каталоге
        variant: Вариант товара (например, фасовка "5kg")

    Returns:
        str: Идентификатор вида "guest-P1-5kg" или "<user_id>-P1-5kg"

    Raises:
        ValueError: При некорректных аргументах (ошибка программиста)
    """
    if not isinstance(product_id, str) or not product_id:
        raise ValueError(f"product_id должен быть непустой строкой, получено: {product_id!r}")
    if not isinstance(variant, str):
        raise ValueError(f"variant должен быть строкой, получено: {variant!r}")

    if identity.is_authenticated:
        if not identity.user_id:
            raise ValueError("user_id авторизованной сессии не может быть пустым")
        if identity.user_id == GUEST_PREFIX:
            raise ValueError(f"user_id '{GUEST_PREFIX}' зарезервирован для гостевой корзины")
        prefix = _escape(identity.user_id)
    else:
        prefix = GUEST_PREFIX

    return ITEM_ID_DELIMITER.join((prefix, _escape(product_id), _escape(variant)))


def _scope(identity: SessionIdentity) -> str:
    return (_escape(identity.user_id) if identity.is_authenticated else GUEST_PREFIX) + ITEM_ID_DELIMITER


def belongs_to(identity: SessionIdentity, item_id: str) -> bool:
    """Принадлежит ли позиция области видимости данной идентичности"""
    return item_id.startswith(_scope(identity))


def is_guest_item(item_id: str) -> bool:
    """Позиция гостевой корзины (ID пользователя 'guest' зарезервирован, поэтому префикс однозначен)"""
    return item_id.startswith(GUEST_PREFIX + ITEM_ID_DELIMITER)
