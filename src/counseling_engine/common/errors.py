"""
Единые ошибки и коды ошибок.

Назначение:
- предсказуемые коды для HTTP/WS/воркеров
- единый стиль исключений по проекту
"""

from __future__ import annotations

from dataclasses import dataclass


class ErrCode:
    # Общие
    UNKNOWN = "unknown"
    VALIDATION = "validation"
    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"

    # Жизненный цикл встречи
    INVALID_STATE = "invalid_state"
    EXPIRED = "expired"

    # Провайдеры
    VIDEO_PROVIDER_ERROR = "video_provider_error"
    DELIVERY_PROVIDER_ERROR = "delivery_provider_error"

    # Инфра/хранилища
    DB_ERROR = "db_error"
    REDIS_ERROR = "redis_error"


@dataclass
class AppError(Exception):
    """
    Базовая ошибка приложения.
    - code: стабильный код ошибки
    - message: безопасное сообщение
    - details: доп. данные (без секретов/PII)
    """

    code: str
    message: str
    details: dict | None = None

    def __str__(self) -> str:  # pragma: no cover
        return f"{self.code}: {self.message}"


class ValidationError(AppError):
    def __init__(self, message: str = "Ошибка валидации", details: dict | None = None) -> None:
        super().__init__(ErrCode.VALIDATION, message, details)


class UnauthorizedError(AppError):
    def __init__(self, message: str = "Не авторизован", details: dict | None = None) -> None:
        super().__init__(ErrCode.UNAUTHORIZED, message, details)


class ForbiddenError(AppError):
    def __init__(self, message: str = "Доступ запрещён", details: dict | None = None) -> None:
        super().__init__(ErrCode.FORBIDDEN, message, details)


class NotFoundError(AppError):
    def __init__(self, message: str = "Не найдено", details: dict | None = None) -> None:
        super().__init__(ErrCode.NOT_FOUND, message, details)


class ConflictError(AppError):
    def __init__(self, message: str = "Конфликт", details: dict | None = None) -> None:
        super().__init__(ErrCode.CONFLICT, message, details)


class InvalidStateError(AppError):
    def __init__(
        self, message: str = "Переход из текущего статуса запрещён", details: dict | None = None
    ) -> None:
        super().__init__(ErrCode.INVALID_STATE, message, details)


class ExpiredError(AppError):
    def __init__(self, message: str = "Срок действия истёк", details: dict | None = None) -> None:
        super().__init__(ErrCode.EXPIRED, message, details)


class ProviderError(AppError):
    def __init__(self, code: str, message: str, details: dict | None = None) -> None:
        super().__init__(code, message, details)
