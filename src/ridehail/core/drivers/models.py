"""
Модели водителя: снимок доступности для подбора и транспортное средство.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, Field, model_validator

from ridehail.common.constants import VehicleType
from ridehail.core.geo.models import LocationFix


class Vehicle(BaseModel):
    """Транспортное средство водителя."""

    vehicle_id: str
    vehicle_type: VehicleType = VehicleType.CAR
    vehicle_number: str | None = None
    brand: str | None = None
    model: str | None = None
    color: str | None = None
    is_active: bool = True
    is_verified: bool = False

    class Config:
        frozen = True
        from_attributes = True

    @property
    def is_ready(self) -> bool:
        """ТС можно назначать на поездки."""
        return self.is_active and self.is_verified


class DriverAvailability(BaseModel):
    """
    Снимок доступности водителя.

    Инвариант: available => online.
    """

    driver_id: str
    is_online: bool = False
    is_available: bool = False
    is_verified: bool = False
    user_active: bool = Field(True, description="Учётная запись пользователя не заблокирована")
    location: LocationFix | None = None
    vehicle: Vehicle | None = None
    total_rides: int = 0
    total_earnings: Decimal = Decimal("0.00")
    average_rating: Decimal = Decimal("5.00")

    class Config:
        frozen = True
        from_attributes = True

    @model_validator(mode="after")
    def _available_requires_online(self) -> "DriverAvailability":
        if self.is_available and not self.is_online:
            raise ValueError(f"Водитель {self.driver_id} доступен, но не в сети")
        return self

    def evolve(self, **changes: Any) -> "DriverAvailability":
        """Новый снимок с изменёнными полями (с повторной валидацией)."""
        return DriverAvailability.model_validate({**self.model_dump(), **changes})

    @property
    def has_ready_vehicle(self) -> bool:
        return self.vehicle is not None and self.vehicle.is_ready

    def is_eligible(self) -> bool:
        """Может принять поездку прямо сейчас (без учёта свежести координат)."""
        return (
            self.is_online
            and self.is_available
            and self.is_verified
            and self.user_active
            and self.has_ready_vehicle
        )

    def unavailable_reason(self) -> str | None:
        """Причина, по которой водитель не может принять поездку, или None."""
        if not self.user_active:
            return "учётная запись заблокирована"
        if not self.is_verified:
            return "водитель не верифицирован"
        if not self.is_online:
            return "водитель не в сети"
        if not self.is_available:
            return "водитель занят"
        if not self.has_ready_vehicle:
            return "нет активного верифицированного ТС"
        return None

    def has_fresh_location(self, now: datetime, staleness_seconds: int) -> bool:
        """Координаты известны и не старше порога."""
        if self.location is None:
            return False
        return now - self.location.recorded_at <= timedelta(seconds=staleness_seconds)


class DriverStatistics(BaseModel):
    """Сводная статистика водителя."""

    driver_id: str
    total_rides: int
    total_earnings: Decimal
    average_rating: Decimal
    completed_rides: int
    cancelled_rides: int
    is_online: bool
    is_available: bool
