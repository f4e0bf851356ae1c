"""
Общие константы и перечисления.
Значения перечислений сохраняются в БД и передаются по сети как есть.
"""

from enum import Enum


class TypeMsg(str, Enum):
    """Типы сообщений для логирования."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class UserRole(str, Enum):
    """Роли пользователей."""
    RIDER = "rider"
    DRIVER = "driver"
    ADMIN = "admin"


class RideStatus(str, Enum):
    """Статусы поездки."""
    REQUESTED = "requested"
    ACCEPTED = "accepted"
    STARTED = "started"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class RideClass(str, Enum):
    """Класс обслуживания (влияет на множитель тарифа)."""
    ECONOMY = "economy"
    COMFORT = "comfort"
    PREMIUM = "premium"


class PaymentMethod(str, Enum):
    """Способы оплаты."""
    CASH = "cash"
    WALLET = "wallet"
    CARD = "card"
    UPI = "upi"


class RidePaymentStatus(str, Enum):
    """Статус оплаты, хранимый в поездке."""
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class PaymentStatus(str, Enum):
    """Статусы платёжной записи."""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class TransactionType(str, Enum):
    """Направление проводки по кошельку."""
    CREDIT = "credit"
    DEBIT = "debit"


class ReferenceType(str, Enum):
    """Основание проводки по кошельку."""
    RIDE_PAYMENT = "ride_payment"
    RIDE_REFUND = "ride_refund"
    WALLET_TOPUP = "wallet_topup"
    EARNINGS = "earnings"


class RatingType(str, Enum):
    """Направление оценки."""
    RIDER_TO_DRIVER = "rider_to_driver"
    DRIVER_TO_RIDER = "driver_to_rider"


class VehicleType(str, Enum):
    """Типы транспортных средств."""
    CAR = "car"
    BIKE = "bike"
    AUTO = "auto"
