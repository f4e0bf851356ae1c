"""
Модуль платежей: кошельки, проводки, расчёт по поездкам.
"""

from ridehail.core.payments.gateway import GatewayResult, HttpPaymentGateway, PaymentGateway
from ridehail.core.payments.models import (
    LedgerEntry,
    Payment,
    SettlementSplit,
    Wallet,
    WalletTransaction,
)
from ridehail.core.payments.repository import (
    InMemoryLedgerRepository,
    LedgerRepository,
    PostgresLedgerRepository,
)
from ridehail.core.payments.settlement import SettlementEngine

__all__ = [
    "Wallet",
    "WalletTransaction",
    "Payment",
    "LedgerEntry",
    "SettlementSplit",
    "LedgerRepository",
    "PostgresLedgerRepository",
    "InMemoryLedgerRepository",
    "PaymentGateway",
    "HttpPaymentGateway",
    "GatewayResult",
    "SettlementEngine",
]
