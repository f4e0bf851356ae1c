"""
Общие утилиты, константы, ошибки и логгер.
"""

from ridehail.common.logger import get_logger, log_info, log_error, log_warning, log_debug
from ridehail.common.constants import TypeMsg
from ridehail.common.exceptions import (
    AlreadyAccepted,
    AlreadyProcessed,
    DriverUnavailable,
    ErrorResponse,
    InsufficientFunds,
    InvalidState,
    InvariantViolation,
    NotFound,
    PaymentGatewayError,
    RideHailError,
    Unauthorized,
    ValidationError,
    to_error_response,
)

__all__ = [
    "get_logger",
    "log_info",
    "log_error",
    "log_warning",
    "log_debug",
    "TypeMsg",
    "RideHailError",
    "NotFound",
    "InvalidState",
    "AlreadyAccepted",
    "Unauthorized",
    "DriverUnavailable",
    "InsufficientFunds",
    "AlreadyProcessed",
    "ValidationError",
    "PaymentGatewayError",
    "InvariantViolation",
    "ErrorResponse",
    "to_error_response",
]
