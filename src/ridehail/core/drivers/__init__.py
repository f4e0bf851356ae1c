"""
Модуль водителей.
"""

from ridehail.core.drivers.models import DriverAvailability, DriverStatistics, Vehicle
from ridehail.core.drivers.repository import (
    DriverRepository,
    InMemoryDriverRepository,
    PostgresDriverRepository,
)
from ridehail.core.drivers.service import DriverService, driver_location_key

__all__ = [
    "Vehicle",
    "DriverAvailability",
    "DriverStatistics",
    "DriverRepository",
    "PostgresDriverRepository",
    "InMemoryDriverRepository",
    "DriverService",
    "driver_location_key",
]
