"""
Домен поездок.
Модели, таблица переходов, репозитории и сервис.
"""

from ridehail.core.rides.models import (
    ACTIVE_STATUSES,
    ASSIGNED_STATUSES,
    TERMINAL_STATUSES,
    Ride,
    TrackingPoint,
)
from ridehail.core.rides.repository import (
    InMemoryRideRepository,
    PostgresRideRepository,
    RideRepository,
)
from ridehail.core.rides.state_machine import (
    ALLOWED_TRANSITIONS,
    RideTransition,
    can_transition,
    ensure_transition,
)
from ridehail.core.rides.service import RideService, ride_cache_key, ride_location_key

__all__ = [
    "Ride",
    "TrackingPoint",
    "ASSIGNED_STATUSES",
    "ACTIVE_STATUSES",
    "TERMINAL_STATUSES",
    "RideRepository",
    "PostgresRideRepository",
    "InMemoryRideRepository",
    "RideTransition",
    "ALLOWED_TRANSITIONS",
    "can_transition",
    "ensure_transition",
    "RideService",
    "ride_cache_key",
    "ride_location_key",
]
