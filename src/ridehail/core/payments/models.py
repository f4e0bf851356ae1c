"""
Модели платежей и кошельков.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field

from ridehail.common.constants import (
    PaymentMethod,
    PaymentStatus,
    ReferenceType,
    TransactionType,
)


class Wallet(BaseModel):
    """Кошелёк пользователя."""

    user_id: str
    balance: Decimal = Decimal("0.00")
    total_earnings: Decimal = Decimal("0.00")
    total_spent: Decimal = Decimal("0.00")

    class Config:
        frozen = True
        from_attributes = True


class WalletTransaction(BaseModel):
    """Проводка по кошельку. balance_after: баланс сразу после неё."""

    transaction_id: str
    user_id: str
    type: TransactionType
    amount: Decimal = Field(..., gt=0)
    reference_type: ReferenceType
    reference_id: str | None = None
    description: str | None = None
    balance_after: Decimal
    created_at: datetime

    class Config:
        frozen = True
        from_attributes = True

    @property
    def signed_amount(self) -> Decimal:
        return self.amount if self.type == TransactionType.CREDIT else -self.amount


class Payment(BaseModel):
    """Расчёт по поездке. Для одной поездки существует не больше одной записи."""

    payment_id: str
    ride_id: str
    payer_id: str
    payee_id: str
    amount: Decimal
    driver_share: Decimal
    commission: Decimal
    method: PaymentMethod
    status: PaymentStatus = PaymentStatus.COMPLETED
    gateway_transaction_id: str | None = None
    refunded_amount: Decimal = Decimal("0.00")
    refund_reason: str | None = None
    created_at: datetime
    refunded_at: datetime | None = None

    class Config:
        frozen = True
        from_attributes = True


@dataclass(frozen=True)
class SettlementSplit:
    """Раздел стоимости: доля водителя и комиссия платформы."""
    driver_share: Decimal
    commission: Decimal


@dataclass(frozen=True)
class LedgerEntry:
    """Проводка к применению (ещё без баланса и идентификатора)."""
    user_id: str
    type: TransactionType
    amount: Decimal
    reference_type: ReferenceType
    reference_id: str | None = None
    description: str | None = None
