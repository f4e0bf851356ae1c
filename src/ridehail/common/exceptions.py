"""
Типизированные ошибки ядра.

Все ошибки, кроме InvariantViolation, восстанавливаются на границе
(HTTP-слой, воркер) в структурированный ответ через to_error_response().
InvariantViolation означает программную ошибку и не перехватывается.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel


class ErrorResponse(BaseModel):
    """Стандартный ответ с ошибкой."""

    error_code: str
    message: str
    details: dict[str, Any] | None = None


class RideHailError(Exception):
    """Базовая ошибка предметной области."""

    code: str = "internal_error"

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class NotFound(RideHailError):
    """Поездка, водитель, пользователь или платёж не найдены."""

    code = "not_found"


class InvalidState(RideHailError):
    """Переход недопустим из текущего статуса."""

    code = "invalid_state"


class AlreadyAccepted(InvalidState):
    """Поездку уже принял другой водитель."""

    code = "already_accepted"


class Unauthorized(RideHailError):
    """Вызывающий не является допустимым участником перехода."""

    code = "unauthorized"


class DriverUnavailable(RideHailError):
    """Водитель не онлайн, занят, не верифицирован или без активного ТС."""

    code = "driver_unavailable"


class InsufficientFunds(RideHailError):
    """Списание превышает баланс кошелька."""

    code = "insufficient_funds"


class AlreadyProcessed(RideHailError):
    """Повторный расчёт или повторная оценка."""

    code = "already_processed"


class ValidationError(RideHailError):
    """Некорректные координаты или значения вне допустимого диапазона."""

    code = "validation_error"


class PaymentGatewayError(RideHailError):
    """Платёжный шлюз отклонил операцию или недоступен."""

    code = "payment_gateway_error"


class InvariantViolation(AssertionError):
    """Нарушен внутренний инвариант (программная ошибка)."""


def to_error_response(exc: RideHailError) -> ErrorResponse:
    """
    Преобразует ошибку ядра в структурированный ответ.

    Args:
        exc: Ошибка ядра

    Returns:
        ErrorResponse
    """
    return ErrorResponse(
        error_code=exc.code,
        message=exc.message,
        details=exc.details or None,
    )
