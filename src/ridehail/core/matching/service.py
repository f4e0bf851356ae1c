# src/ridehail/core/matching/service.py
"""
Сервис подбора водителей.
Формирует упорядоченный список кандидатов и публикует его на короткое время,
чтобы при принятии заказа можно было проверить, кому он предлагался.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from ridehail.common.constants import RideClass, TypeMsg
from ridehail.common.logger import log_info

if TYPE_CHECKING:
    from ridehail.core.geo.index import GeoHit, GeoIndex
    from ridehail.core.geo.models import GeoPoint
    from ridehail.infra.kv_store import KeyValueStore


def candidates_key(ride_id: str) -> str:
    """Ключ списка предложенных водителей."""
    return f"ride_drivers_{ride_id}"


class DriverMatcher:
    """
    Подбор водителей для поездки.

    Пустой результат не ошибка: поездка остаётся в поиске.
    """

    def __init__(
        self,
        geo_index: GeoIndex,
        cache: KeyValueStore,
        max_distance_km: float | None = None,
        max_candidates: int | None = None,
        candidates_ttl: int | None = None,
    ) -> None:
        """
        Args:
            geo_index: Гео-индекс водителей
            cache: Key-value хранилище для списка кандидатов
            max_distance_km: Радиус поиска по умолчанию (из конфига если None)
            max_candidates: Сколько водителей получают предложение
            candidates_ttl: Время жизни списка кандидатов, секунды
        """
        from ridehail.config import settings

        self._geo_index = geo_index
        self._cache = cache
        self._max_distance_km = (
            settings.matching.MAX_MATCHING_DISTANCE_KM if max_distance_km is None else max_distance_km
        )
        self._max_candidates = settings.matching.MAX_CANDIDATES if max_candidates is None else max_candidates
        self._candidates_ttl = (
            settings.redis_ttl.RIDE_CANDIDATES_TTL if candidates_ttl is None else candidates_ttl
        )

    async def nearby(
        self,
        pickup: GeoPoint,
        ride_class: RideClass,
        max_distance_km: float | None = None,
    ) -> list[GeoHit]:
        """Кандидаты с расстояниями, ближайшие первыми."""
        radius = self._max_distance_km if max_distance_km is None else max_distance_km
        return await self._geo_index.query(pickup, radius, ride_class)

    async def find_candidates(
        self,
        pickup: GeoPoint,
        ride_class: RideClass,
        max_distance_km: float | None = None,
    ) -> list[str]:
        """
        Ищет подходящих водителей рядом с точкой подачи.

        Args:
            pickup: Точка подачи
            ride_class: Класс поездки
            max_distance_km: Радиус поиска, км

        Returns:
            ID водителей по возрастанию расстояния (при равенстве по ID)
        """
        hits = await self.nearby(pickup, ride_class, max_distance_km)
        return [hit.driver_id for hit in hits]

    async def publish_candidates(self, ride_id: str, driver_ids: list[str]) -> list[str]:
        """
        Сохраняет первых N кандидатов под ключом поездки.

        Returns:
            Сохранённый список (ему и рассылаются предложения)
        """
        offered = list(driver_ids[: self._max_candidates])
        await self._cache.set_json(candidates_key(ride_id), offered, ttl=self._candidates_ttl)
        await log_info(
            f"Поездка {ride_id}: предложена {len(offered)} водителям",
            type_msg=TypeMsg.DEBUG,
        )
        return offered

    async def offered_drivers(self, ride_id: str) -> list[str] | None:
        """Список, которому предлагалась поездка (None если истёк или не публиковался)."""
        return await self._cache.get_json(candidates_key(ride_id))

    async def was_offered(self, ride_id: str, driver_id: str) -> bool:
        offered = await self.offered_drivers(ride_id)
        return offered is not None and driver_id in offered

    async def forget(self, ride_id: str) -> None:
        """Удаляет список кандидатов (поездка принята или отменена)."""
        await self._cache.delete(candidates_key(ride_id))
