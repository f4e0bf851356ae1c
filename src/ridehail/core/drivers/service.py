# src/ridehail/core/drivers/service.py
"""
Сервис водителей: координаты, онлайн/доступность, статистика.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any, Callable, Mapping

from ridehail.common.constants import RideStatus, TypeMsg
from ridehail.common.exceptions import InvalidState, NotFound
from ridehail.common.helpers import utc_now
from ridehail.common.logger import log_debug, log_info
from ridehail.core.drivers.models import DriverAvailability, DriverStatistics
from ridehail.core.geo.models import GeoPoint, LocationFix, parse_point

if TYPE_CHECKING:
    from ridehail.core.drivers.repository import DriverRepository
    from ridehail.core.geo.index import GeoIndex
    from ridehail.core.rides.repository import RideRepository
    from ridehail.infra.kv_store import KeyValueStore


def driver_location_key(driver_id: str) -> str:
    """Ключ живых координат водителя."""
    return f"driver_location_{driver_id}"


class DriverService:
    """Сервис водителей."""

    def __init__(
        self,
        drivers: DriverRepository,
        rides: RideRepository,
        geo_index: GeoIndex,
        cache: KeyValueStore,
        clock: Callable[[], datetime] = utc_now,
        location_ttl: int | None = None,
    ) -> None:
        """
        Args:
            drivers: Репозиторий водителей
            rides: Репозиторий поездок (активная поездка, статистика)
            geo_index: Гео-индекс, получает каждое обновление координат
            cache: Key-value хранилище живых координат
            clock: Источник текущего времени
            location_ttl: TTL координат в кэше (из конфига если None)
        """
        if location_ttl is None:
            from ridehail.config import settings
            location_ttl = settings.redis_ttl.DRIVER_LOCATION_TTL

        self._drivers = drivers
        self._rides = rides
        self._geo_index = geo_index
        self._cache = cache
        self._clock = clock
        self._location_ttl = location_ttl

    async def get_driver(self, driver_id: str) -> DriverAvailability:
        """
        Raises:
            NotFound: водитель не найден
        """
        driver = await self._drivers.get(driver_id)
        if driver is None:
            raise NotFound(f"Водитель {driver_id} не найден", driver_id=driver_id)
        return driver

    # =========================================================================
    # КООРДИНАТЫ
    # =========================================================================

    async def update_driver_location(
        self,
        driver_id: str,
        point: GeoPoint | Mapping[str, Any],
    ) -> LocationFix:
        """
        Сохраняет текущие координаты водителя.

        Пишет снимок в репозиторий (и историю), гео-индекс и кэш.

        Args:
            driver_id: ID водителя
            point: Координаты {"lat", "lon"}

        Returns:
            Сохранённая отметка

        Raises:
            ValidationError: некорректные координаты
            NotFound: водитель не найден
        """
        location = parse_point(point, "location")
        fix = LocationFix(lat=location.lat, lon=location.lon, recorded_at=self._clock())

        if not await self._drivers.set_location(driver_id, fix):
            raise NotFound(f"Водитель {driver_id} не найден", driver_id=driver_id)

        await self._geo_index.update(driver_id, fix)
        await self._cache.set_json(
            driver_location_key(driver_id),
            fix.model_dump(mode="json"),
            ttl=self._location_ttl,
        )
        await log_debug(f"Координаты водителя {driver_id}: {fix.lat}, {fix.lon}")
        return fix

    async def current_location(self, driver_id: str) -> LocationFix | None:
        """Последние координаты: из кэша, иначе из снимка водителя."""
        cached = await self._cache.get_json(driver_location_key(driver_id))
        if cached is not None:
            return LocationFix.model_validate(cached)
        driver = await self.get_driver(driver_id)
        return driver.location

    async def location_history(self, driver_id: str, limit: int = 100) -> list[LocationFix]:
        await self.get_driver(driver_id)
        return await self._drivers.location_history(driver_id, limit)

    # =========================================================================
    # ОНЛАЙН / ДОСТУПНОСТЬ
    # =========================================================================

    async def toggle_online(self, driver_id: str) -> DriverAvailability:
        """
        Переключает онлайн-статус.

        Выход в сеть делает водителя доступным (если у него нет активной
        поездки). Уход из сети снимает доступность и удаляет живые координаты.

        Raises:
            NotFound: водитель не найден
        """
        driver = await self.get_driver(driver_id)
        online = not driver.is_online
        available = online and await self._rides.find_active_for_driver(driver_id) is None

        updated = await self._drivers.set_online(driver_id, online, available)
        if updated is None:
            raise NotFound(f"Водитель {driver_id} не найден", driver_id=driver_id)

        if not online:
            await self._geo_index.remove(driver_id)
            await self._cache.delete(driver_location_key(driver_id))

        await log_info(
            f"Водитель {driver_id} {'в сети' if online else 'не в сети'}",
            type_msg=TypeMsg.INFO,
        )
        return updated

    async def toggle_available(self, driver_id: str) -> DriverAvailability:
        """
        Переключает доступность.

        Raises:
            NotFound: водитель не найден
            InvalidState: водитель не в сети или выполняет поездку
        """
        driver = await self.get_driver(driver_id)
        if not driver.is_online:
            raise InvalidState(
                f"Водитель {driver_id} не в сети, доступность не меняется",
                driver_id=driver_id,
            )

        active = await self._rides.find_active_for_driver(driver_id)
        if active is not None:
            raise InvalidState(
                f"У водителя {driver_id} активная поездка {active.ride_id}",
                driver_id=driver_id,
                ride_id=active.ride_id,
            )

        available = not driver.is_available
        if not await self._drivers.set_available(driver_id, available):
            raise InvalidState(f"Водитель {driver_id} ушёл из сети", driver_id=driver_id)

        await log_info(
            f"Водитель {driver_id} {'доступен' if available else 'недоступен'}",
            type_msg=TypeMsg.INFO,
        )
        return await self.get_driver(driver_id)

    # =========================================================================
    # СТАТИСТИКА
    # =========================================================================

    async def driver_statistics(self, driver_id: str) -> DriverStatistics:
        """Сводка по водителю: поездки, заработок, рейтинг."""
        driver = await self.get_driver(driver_id)
        counts = await self._rides.count_by_status_for_driver(driver_id)
        return DriverStatistics(
            driver_id=driver_id,
            total_rides=driver.total_rides,
            total_earnings=driver.total_earnings,
            average_rating=driver.average_rating,
            completed_rides=counts.get(RideStatus.COMPLETED, 0),
            cancelled_rides=counts.get(RideStatus.CANCELLED, 0),
            is_online=driver.is_online,
            is_available=driver.is_available,
        )
