"""
Гео-индекс водителей: кто из подходящих водителей находится в радиусе R от точки.

Индекс только читает: координаты пишет DriverService. Устаревшие координаты
(старше порога свежести) считаются неизвестными, такой водитель не попадает
в выдачу.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Callable, Iterable

from ridehail.common.constants import RideClass
from ridehail.common.helpers import utc_now
from ridehail.core.geo.distance import calculate_distance
from ridehail.core.geo.models import GeoPoint, LocationFix

if TYPE_CHECKING:
    from ridehail.core.drivers.models import DriverAvailability
    from ridehail.core.drivers.repository import DriverRepository
    from ridehail.infra.redis_client import RedisClient


@dataclass(frozen=True)
class GeoHit:
    """Водитель в радиусе поиска."""
    driver_id: str
    distance_km: float


def rank_hits(hits: Iterable[GeoHit]) -> list[GeoHit]:
    """Сортирует по расстоянию, при равенстве по driver_id."""
    return sorted(hits, key=lambda h: (h.distance_km, h.driver_id))


class GeoIndex(ABC):
    """Поиск подходящих водителей рядом с точкой."""

    def __init__(
        self,
        drivers: DriverRepository,
        staleness_seconds: int | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        """
        Args:
            drivers: Репозиторий снимков доступности
            staleness_seconds: Максимальный возраст координат (если None, из конфига)
            clock: Источник текущего времени (UTC)
        """
        if staleness_seconds is None:
            from ridehail.config import settings
            staleness_seconds = settings.matching.LOCATION_STALENESS_SEC

        self._drivers = drivers
        self._staleness_seconds = staleness_seconds
        self._clock = clock

    async def update(self, driver_id: str, fix: LocationFix) -> None:
        """Сообщает индексу новые координаты водителя."""

    async def remove(self, driver_id: str) -> None:
        """Убирает водителя из индекса (ушёл оффлайн)."""

    @abstractmethod
    async def query(
        self,
        point: GeoPoint,
        radius_km: float,
        ride_class: RideClass | None = None,
    ) -> list[GeoHit]:
        """
        Подходящие водители в радиусе, ближайшие первыми.

        Args:
            point: Центр поиска
            radius_km: Радиус, км
            ride_class: Класс поездки (любое активное верифицированное ТС обслуживает все классы)

        Returns:
            Отсортированный список GeoHit
        """

    def _filter(self, point: GeoPoint, radius_km: float, drivers: Iterable[DriverAvailability]) -> list[GeoHit]:
        """Оставляет подходящих водителей со свежими координатами в радиусе."""
        now = self._clock()
        hits = []
        for driver in drivers:
            if not driver.is_eligible() or not driver.has_fresh_location(now, self._staleness_seconds):
                continue
            location = driver.location
            distance = calculate_distance(point.lat, point.lon, location.lat, location.lon)
            if distance <= radius_km:
                hits.append(GeoHit(driver_id=driver.driver_id, distance_km=distance))
        return rank_hits(hits)


class DirectoryGeoIndex(GeoIndex):
    """
    Индекс поверх репозитория водителей.
    Берёт предфильтрованный набор (online+available+verified) и считает точные расстояния.
    """

    async def query(
        self,
        point: GeoPoint,
        radius_km: float,
        ride_class: RideClass | None = None,
    ) -> list[GeoHit]:
        return self._filter(point, radius_km, await self._drivers.list_matchable())


class RedisGeoIndex(GeoIndex):
    """
    Индекс на Redis GEO.
    GEORADIUS отбирает кандидатов без полного скана, затем снимки проверяются
    по репозиторию и расстояние пересчитывается гаверсинусом.
    """

    LOCATIONS_KEY = "drivers:locations"
    RADIUS_MARGIN = 1.01

    def __init__(
        self,
        redis: RedisClient,
        drivers: DriverRepository,
        staleness_seconds: int | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        super().__init__(drivers, staleness_seconds=staleness_seconds, clock=clock)
        self._redis = redis

    async def update(self, driver_id: str, fix: LocationFix) -> None:
        await self._redis.geoadd(self.LOCATIONS_KEY, fix.lon, fix.lat, driver_id)

    async def remove(self, driver_id: str) -> None:
        await self._redis.georem(self.LOCATIONS_KEY, driver_id)

    async def query(
        self,
        point: GeoPoint,
        radius_km: float,
        ride_class: RideClass | None = None,
    ) -> list[GeoHit]:
        # Redis считает по радиусу Земли 6372.8 км, запас не теряет кандидатов на границе
        nearby = await self._redis.georadius(
            self.LOCATIONS_KEY, point.lon, point.lat, radius_km * self.RADIUS_MARGIN
        )
        if not nearby:
            return []
        snapshots = await self._drivers.get_many(member for member, _ in nearby)
        return self._filter(point, radius_km, snapshots)
