"""
Модели поездки.

Ride: неизменяемый снимок. Любое изменение создаёт новый снимок через
evolve(), который заново проверяет инварианты статуса.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, model_validator

from ridehail.common.constants import (
    PaymentMethod,
    RideClass,
    RidePaymentStatus,
    RideStatus,
    UserRole,
)
from ridehail.core.geo.models import GeoPoint

# Статусы, в которых у поездки обязан быть водитель и ТС
ASSIGNED_STATUSES = frozenset({RideStatus.ACCEPTED, RideStatus.STARTED, RideStatus.COMPLETED})
ACTIVE_STATUSES = frozenset({RideStatus.ACCEPTED, RideStatus.STARTED})
TERMINAL_STATUSES = frozenset({RideStatus.COMPLETED, RideStatus.CANCELLED})


class Ride(BaseModel):
    """Поездка."""

    ride_id: str = Field(..., description="Публичный идентификатор RIDE_...")
    rider_id: str
    driver_id: str | None = None
    vehicle_id: str | None = None
    ride_class: RideClass = RideClass.ECONOMY
    status: RideStatus = RideStatus.REQUESTED

    pickup: GeoPoint
    drop: GeoPoint

    estimated_distance_km: float = Field(..., ge=0)
    estimated_duration_sec: int = Field(..., ge=0)
    estimated_fare: int = Field(..., ge=0)
    actual_distance_km: float | None = Field(None, ge=0)
    actual_duration_sec: int | None = Field(None, ge=0)
    actual_fare: int | None = Field(None, ge=0)

    payment_method: PaymentMethod = PaymentMethod.CASH
    payment_status: RidePaymentStatus = RidePaymentStatus.PENDING

    requested_at: datetime
    accepted_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    cancelled_at: datetime | None = None
    cancellation_reason: str | None = None
    cancelled_by: UserRole | None = None
    cancelled_by_id: str | None = None

    class Config:
        frozen = True
        from_attributes = True

    @model_validator(mode="after")
    def _check_status_invariants(self) -> "Ride":
        assigned = self.status in ASSIGNED_STATUSES
        if assigned != (self.driver_id is not None) or assigned != (self.vehicle_id is not None):
            raise ValueError(
                f"Поездка {self.ride_id}: водитель и ТС задаются только в статусах "
                f"accepted/started/completed (статус {self.status.value})"
            )
        if (self.status == RideStatus.COMPLETED) != (self.actual_fare is not None):
            raise ValueError(f"Поездка {self.ride_id}: actual_fare задаётся только для completed")
        if self.status in (RideStatus.STARTED, RideStatus.COMPLETED) and self.started_at is None:
            raise ValueError(f"Поездка {self.ride_id}: нет времени начала")
        return self

    def evolve(self, **changes: Any) -> "Ride":
        """Новый снимок с изменёнными полями (с проверкой инвариантов)."""
        return Ride.model_validate({**self.model_dump(), **changes})

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def fare(self) -> int:
        """Итоговая стоимость, если поездка завершена, иначе оценка."""
        return self.actual_fare if self.actual_fare is not None else self.estimated_fare

    def to_cache(self) -> dict[str, Any]:
        """JSON-совместимое представление для key-value кэша."""
        return self.model_dump(mode="json")


class TrackingPoint(BaseModel):
    """Точка трека поездки."""

    ride_id: str
    lat: float = Field(..., ge=-90, le=90)
    lon: float = Field(..., ge=-180, le=180)
    accuracy: float | None = Field(None, ge=0, description="Точность, м")
    heading: float | None = Field(None, ge=0, lt=360, description="Курс, градусы")
    speed: float | None = Field(None, ge=0, description="Скорость, км/ч")
    recorded_at: datetime

    class Config:
        frozen = True
        allow_inf_nan = False
