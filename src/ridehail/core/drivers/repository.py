"""
Репозитории доступности водителей.

Все изменения флагов доступности выполняются условными обновлениями:
занять водителя можно только если он сейчас онлайн, свободен и верифицирован.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any, Iterable

from ridehail.core.drivers.models import DriverAvailability, Vehicle
from ridehail.core.geo.models import LocationFix
from ridehail.infra.database import DatabaseManager, affected_rows
from ridehail.infra.locks import KeyedLocks


class DriverRepository(ABC):
    """Хранилище снимков доступности водителей."""

    @abstractmethod
    async def get(self, driver_id: str) -> DriverAvailability | None:
        """Снимок водителя или None."""

    @abstractmethod
    async def get_many(self, driver_ids: Iterable[str]) -> list[DriverAvailability]:
        """Снимки найденных водителей (отсутствующие пропускаются)."""

    @abstractmethod
    async def list_matchable(self) -> list[DriverAvailability]:
        """Водители онлайн, свободные и верифицированные (предфильтр для подбора)."""

    @abstractmethod
    async def save(self, driver: DriverAvailability) -> None:
        """Создаёт или полностью перезаписывает снимок (регистрация, административные правки)."""

    @abstractmethod
    async def set_location(self, driver_id: str, fix: LocationFix) -> bool:
        """Обновляет текущие координаты и пишет их в историю."""

    @abstractmethod
    async def location_history(self, driver_id: str, limit: int = 100) -> list[LocationFix]:
        """Последние координаты водителя, новые первыми."""

    @abstractmethod
    async def set_online(self, driver_id: str, online: bool, available: bool) -> DriverAvailability | None:
        """Устанавливает online и available одновременно."""

    @abstractmethod
    async def set_available(self, driver_id: str, available: bool) -> bool:
        """Меняет available, только если водитель онлайн."""

    @abstractmethod
    async def claim(self, driver_id: str) -> bool:
        """Атомарно занимает водителя: available true -> false при online и verified."""

    @abstractmethod
    async def release(self, driver_id: str) -> None:
        """Освобождает водителя: available = online."""

    @abstractmethod
    async def record_completion(self, driver_id: str, earnings: Decimal) -> None:
        """Освобождает водителя и обновляет счётчики поездок и заработка."""

    @abstractmethod
    async def set_average_rating(self, driver_id: str, rating: Decimal) -> None:
        """Сохраняет пересчитанный средний рейтинг."""


# =============================================================================
# POSTGRESQL
# =============================================================================

_DRIVER_SELECT = """
    SELECT d.driver_id, d.is_online, d.is_available, d.is_verified,
           d.current_lat, d.current_lon, d.location_recorded_at,
           d.total_rides, d.total_earnings, d.average_rating,
           u.is_active AS user_active,
           v.vehicle_id, v.vehicle_type, v.vehicle_number, v.brand, v.model, v.color,
           v.is_active AS vehicle_active, v.is_verified AS vehicle_verified
    FROM drivers d
    JOIN users u ON u.user_id = d.driver_id
    LEFT JOIN LATERAL (
        SELECT * FROM vehicles
        WHERE vehicles.driver_id = d.driver_id
        ORDER BY is_active DESC, is_verified DESC, created_at
        LIMIT 1
    ) v ON TRUE
"""


class PostgresDriverRepository(DriverRepository):
    """Репозиторий водителей в PostgreSQL."""

    def __init__(self, db: DatabaseManager) -> None:
        """
        Args:
            db: Менеджер базы данных
        """
        self._db = db

    async def get(self, driver_id: str) -> DriverAvailability | None:
        row = await self._db.fetchrow(f"{_DRIVER_SELECT} WHERE d.driver_id = $1", driver_id)
        return self._row_to_driver(row) if row else None

    async def get_many(self, driver_ids: Iterable[str]) -> list[DriverAvailability]:
        ids = list(driver_ids)
        if not ids:
            return []
        rows = await self._db.fetch(f"{_DRIVER_SELECT} WHERE d.driver_id = ANY($1::text[])", ids)
        return [self._row_to_driver(row) for row in rows]

    async def list_matchable(self) -> list[DriverAvailability]:
        rows = await self._db.fetch(
            f"{_DRIVER_SELECT} WHERE d.is_online AND d.is_available AND d.is_verified"
        )
        return [self._row_to_driver(row) for row in rows]

    async def save(self, driver: DriverAvailability) -> None:
        location = driver.location
        await self._db.execute(
            """
            INSERT INTO drivers (
                driver_id, is_online, is_available, is_verified,
                current_lat, current_lon, location_recorded_at,
                total_rides, total_earnings, average_rating
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
            ON CONFLICT (driver_id) DO UPDATE SET
                is_online = EXCLUDED.is_online,
                is_available = EXCLUDED.is_available,
                is_verified = EXCLUDED.is_verified,
                current_lat = EXCLUDED.current_lat,
                current_lon = EXCLUDED.current_lon,
                location_recorded_at = EXCLUDED.location_recorded_at,
                total_rides = EXCLUDED.total_rides,
                total_earnings = EXCLUDED.total_earnings,
                average_rating = EXCLUDED.average_rating
            """,
            driver.driver_id,
            driver.is_online,
            driver.is_available,
            driver.is_verified,
            location.lat if location else None,
            location.lon if location else None,
            location.recorded_at if location else None,
            driver.total_rides,
            driver.total_earnings,
            driver.average_rating,
        )

    async def set_location(self, driver_id: str, fix: LocationFix) -> bool:
        async with self._db.transaction() as conn:
            status = await conn.execute(
                """
                UPDATE drivers
                SET current_lat = $2, current_lon = $3, location_recorded_at = $4
                WHERE driver_id = $1
                """,
                driver_id, fix.lat, fix.lon, fix.recorded_at,
            )
            if not affected_rows(status):
                return False
            await conn.execute(
                """
                INSERT INTO driver_locations (driver_id, lat, lon, recorded_at)
                VALUES ($1, $2, $3, $4)
                """,
                driver_id, fix.lat, fix.lon, fix.recorded_at,
            )
        return True

    async def location_history(self, driver_id: str, limit: int = 100) -> list[LocationFix]:
        rows = await self._db.fetch(
            """
            SELECT lat, lon, recorded_at FROM driver_locations
            WHERE driver_id = $1
            ORDER BY recorded_at DESC
            LIMIT $2
            """,
            driver_id, limit,
        )
        return [LocationFix(lat=row["lat"], lon=row["lon"], recorded_at=row["recorded_at"]) for row in rows]

    async def set_online(self, driver_id: str, online: bool, available: bool) -> DriverAvailability | None:
        status = await self._db.execute(
            "UPDATE drivers SET is_online = $2, is_available = $3 WHERE driver_id = $1",
            driver_id, online, available and online,
        )
        if not affected_rows(status):
            return None
        return await self.get(driver_id)

    async def set_available(self, driver_id: str, available: bool) -> bool:
        status = await self._db.execute(
            "UPDATE drivers SET is_available = $2 WHERE driver_id = $1 AND is_online",
            driver_id, available,
        )
        return affected_rows(status) > 0

    async def claim(self, driver_id: str) -> bool:
        claimed = await self._db.fetchval(
            """
            UPDATE drivers SET is_available = FALSE
            WHERE driver_id = $1 AND is_online AND is_available AND is_verified
            RETURNING driver_id
            """,
            driver_id,
        )
        return claimed is not None

    async def release(self, driver_id: str) -> None:
        await self._db.execute(
            "UPDATE drivers SET is_available = is_online WHERE driver_id = $1",
            driver_id,
        )

    async def record_completion(self, driver_id: str, earnings: Decimal) -> None:
        await self._db.execute(
            """
            UPDATE drivers
            SET is_available = is_online,
                total_rides = total_rides + 1,
                total_earnings = total_earnings + $2
            WHERE driver_id = $1
            """,
            driver_id, earnings,
        )

    async def set_average_rating(self, driver_id: str, rating: Decimal) -> None:
        await self._db.execute(
            "UPDATE drivers SET average_rating = $2 WHERE driver_id = $1",
            driver_id, rating,
        )

    @staticmethod
    def _row_to_driver(row: Any) -> DriverAvailability:
        """Преобразует строку БД в снимок водителя."""
        location = None
        if row["current_lat"] is not None and row["location_recorded_at"] is not None:
            location = LocationFix(
                lat=row["current_lat"],
                lon=row["current_lon"],
                recorded_at=row["location_recorded_at"],
            )

        vehicle = None
        if row["vehicle_id"] is not None:
            vehicle = Vehicle(
                vehicle_id=row["vehicle_id"],
                vehicle_type=row["vehicle_type"],
                vehicle_number=row["vehicle_number"],
                brand=row["brand"],
                model=row["model"],
                color=row["color"],
                is_active=row["vehicle_active"],
                is_verified=row["vehicle_verified"],
            )

        return DriverAvailability(
            driver_id=row["driver_id"],
            is_online=row["is_online"],
            is_available=row["is_available"],
            is_verified=row["is_verified"],
            user_active=row["user_active"],
            location=location,
            vehicle=vehicle,
            total_rides=row["total_rides"],
            total_earnings=row["total_earnings"],
            average_rating=row["average_rating"],
        )


# =============================================================================
# IN-PROCESS
# =============================================================================

class InMemoryDriverRepository(DriverRepository):
    """Репозиторий водителей в памяти процесса (по одному asyncio.Lock на водителя)."""

    def __init__(self) -> None:
        self._drivers: dict[str, DriverAvailability] = {}
        self._history: dict[str, list[LocationFix]] = {}
        self._locks = KeyedLocks()

    async def get(self, driver_id: str) -> DriverAvailability | None:
        return self._drivers.get(driver_id)

    async def get_many(self, driver_ids: Iterable[str]) -> list[DriverAvailability]:
        return [self._drivers[i] for i in driver_ids if i in self._drivers]

    async def list_matchable(self) -> list[DriverAvailability]:
        return [
            d for d in self._drivers.values()
            if d.is_online and d.is_available and d.is_verified
        ]

    async def save(self, driver: DriverAvailability) -> None:
        async with self._locks.get(driver.driver_id):
            self._drivers[driver.driver_id] = driver

    async def set_location(self, driver_id: str, fix: LocationFix) -> bool:
        async with self._locks.get(driver_id):
            driver = self._drivers.get(driver_id)
            if driver is None:
                return False
            self._drivers[driver_id] = driver.evolve(location=fix)
            self._history.setdefault(driver_id, []).append(fix)
        return True

    async def location_history(self, driver_id: str, limit: int = 100) -> list[LocationFix]:
        history = sorted(self._history.get(driver_id, []), key=lambda f: f.recorded_at, reverse=True)
        return history[:limit]

    async def set_online(self, driver_id: str, online: bool, available: bool) -> DriverAvailability | None:
        async with self._locks.get(driver_id):
            driver = self._drivers.get(driver_id)
            if driver is None:
                return None
            updated = driver.evolve(is_online=online, is_available=available and online)
            self._drivers[driver_id] = updated
            return updated

    async def set_available(self, driver_id: str, available: bool) -> bool:
        async with self._locks.get(driver_id):
            driver = self._drivers.get(driver_id)
            if driver is None or not driver.is_online:
                return False
            self._drivers[driver_id] = driver.evolve(is_available=available)
            return True

    async def claim(self, driver_id: str) -> bool:
        async with self._locks.get(driver_id):
            driver = self._drivers.get(driver_id)
            if driver is None or not (driver.is_online and driver.is_available and driver.is_verified):
                return False
            self._drivers[driver_id] = driver.evolve(is_available=False)
            return True

    async def release(self, driver_id: str) -> None:
        await self._update(driver_id, lambda d: {"is_available": d.is_online})

    async def record_completion(self, driver_id: str, earnings: Decimal) -> None:
        await self._update(driver_id, lambda d: {
            "is_available": d.is_online,
            "total_rides": d.total_rides + 1,
            "total_earnings": d.total_earnings + earnings,
        })

    async def set_average_rating(self, driver_id: str, rating: Decimal) -> None:
        await self._update(driver_id, lambda d: {"average_rating": rating})

    async def _update(self, driver_id: str, changes: Any) -> None:
        async with self._locks.get(driver_id):
            driver = self._drivers.get(driver_id)
            if driver is not None:
                self._drivers[driver_id] = driver.evolve(**changes(driver))
