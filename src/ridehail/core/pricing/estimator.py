"""
Расчёт стоимости поездки.

Одна и та же формула используется для предварительной оценки и для
итогового расчёта (с фактическими расстоянием и длительностью).
"""

from __future__ import annotations

import math
from dataclasses import dataclass

from ridehail.common.constants import RideClass
from ridehail.common.exceptions import InvariantViolation
from ridehail.common.helpers import round_half_up
from ridehail.core.geo.distance import distance_between
from ridehail.core.geo.models import GeoPoint


@dataclass(frozen=True)
class FareEstimate:
    """Предварительная оценка поездки."""
    distance_km: float
    duration_sec: int
    fare: int


class FareEstimator:
    """Тарификатор: расстояние + длительность + класс -> стоимость."""

    def __init__(
        self,
        base_fare: float | None = None,
        per_km_rate: float | None = None,
        per_minute_rate: float | None = None,
        class_multipliers: dict[str, float] | None = None,
        average_speed_kmh: float | None = None,
    ) -> None:
        """
        Параметры, не переданные явно, берутся из секции fares конфига.
        """
        if None in (base_fare, per_km_rate, per_minute_rate, class_multipliers, average_speed_kmh):
            from ridehail.config import settings
            fares = settings.fares
            base_fare = fares.BASE_FARE if base_fare is None else base_fare
            per_km_rate = fares.PER_KM_RATE if per_km_rate is None else per_km_rate
            per_minute_rate = fares.PER_MINUTE_RATE if per_minute_rate is None else per_minute_rate
            class_multipliers = fares.CLASS_MULTIPLIERS if class_multipliers is None else class_multipliers
            average_speed_kmh = fares.AVERAGE_SPEED_KMH if average_speed_kmh is None else average_speed_kmh

        missing = {c.value for c in RideClass} - set(class_multipliers)
        if missing:
            raise ValueError(f"Нет множителя для классов: {sorted(missing)}")
        if average_speed_kmh <= 0:
            raise ValueError("Средняя скорость должна быть положительной")

        self.base_fare = base_fare
        self.per_km_rate = per_km_rate
        self.per_minute_rate = per_minute_rate
        self.class_multipliers = dict(class_multipliers)
        self.average_speed_kmh = average_speed_kmh

    def multiplier(self, ride_class: RideClass) -> float:
        return self.class_multipliers[RideClass(ride_class).value]

    def estimate(self, distance_km: float, duration_sec: float, ride_class: RideClass) -> int:
        """
        fare = round(base*m + km*perKm*m + (sec/60)*perMin*m)

        Args:
            distance_km: Расстояние, км (>= 0)
            duration_sec: Длительность, секунды (>= 0)
            ride_class: Класс поездки

        Returns:
            Стоимость, целое число в валюте тарифа
        """
        for name, value in (("distance_km", distance_km), ("duration_sec", duration_sec)):
            if not math.isfinite(value) or value < 0:
                raise InvariantViolation(f"{name} должно быть конечным и неотрицательным: {value}")

        m = self.multiplier(ride_class)
        fare = (
            self.base_fare * m
            + distance_km * self.per_km_rate * m
            + (duration_sec / 60) * self.per_minute_rate * m
        )
        return round_half_up(fare)

    def estimate_duration(self, distance_km: float) -> int:
        """Ожидаемая длительность при средней городской скорости, секунды."""
        return round_half_up(distance_km / self.average_speed_kmh * 3600)

    def quote(self, pickup: GeoPoint, drop: GeoPoint, ride_class: RideClass) -> FareEstimate:
        """Оценка поездки между двумя точками по прямой."""
        distance_km = distance_between(pickup, drop)
        duration_sec = self.estimate_duration(distance_km)
        return FareEstimate(
            distance_km=distance_km,
            duration_sec=duration_sec,
            fare=self.estimate(distance_km, duration_sec, ride_class),
        )
