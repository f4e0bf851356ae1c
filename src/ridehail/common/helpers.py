"""
Вспомогательные функции: генерация идентификаторов, округление денег.
"""

from __future__ import annotations

import math
import secrets
import time
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"

MONEY_QUANT = Decimal("0.01")


def _to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def generate_ride_id() -> str:
    """
    Генерирует публичный идентификатор поездки.

    Формат: RIDE_<время в мс, base36>_<8 hex>, в верхнем регистре.
    """
    timestamp = _to_base36(int(time.time() * 1000))
    return f"RIDE_{timestamp}_{secrets.token_hex(4)}".upper()


def generate_payment_id() -> str:
    """Генерирует идентификатор платежа (PAY_XXXXXXXX)."""
    return f"PAY_{secrets.token_hex(4).upper()}"


def generate_transaction_id() -> str:
    """Генерирует идентификатор проводки (TXN_XXXXXXXX)."""
    return f"TXN_{secrets.token_hex(4).upper()}"


def round_half_up(value: float) -> int:
    """Округляет неотрицательное число до целого (0.5 вверх)."""
    return int(math.floor(value + 0.5))


def to_money(value: float | int | str | Decimal) -> Decimal:
    """Приводит сумму к Decimal с точностью до копеек."""
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(MONEY_QUANT, rounding=ROUND_HALF_UP)


def utc_now() -> datetime:
    """Текущее время в UTC (aware)."""
    return datetime.now(timezone.utc)
