"""
Репозитории поездок и точек трека.

conditional_update является единственным способом сменить статус поездки: запись
применяется, только если текущий статус совпадает с ожидаемым. Так из
нескольких одновременных accept выигрывает ровно один.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections import Counter
from enum import Enum
from typing import Any

from ridehail.common.constants import RidePaymentStatus, RideStatus
from ridehail.core.geo.models import GeoPoint
from ridehail.core.rides.models import ACTIVE_STATUSES, Ride, TrackingPoint
from ridehail.infra.database import DatabaseManager
from ridehail.infra.locks import KeyedLocks


class RideRepository(ABC):
    """Хранилище поездок."""

    @abstractmethod
    async def create(self, ride: Ride) -> Ride:
        """Сохраняет новую поездку."""

    @abstractmethod
    async def get(self, ride_id: str) -> Ride | None:
        """Поездка или None."""

    @abstractmethod
    async def conditional_update(
        self,
        ride_id: str,
        expected_status: RideStatus,
        changes: dict[str, Any],
        require_unassigned: bool = False,
    ) -> bool:
        """
        Атомарно применяет изменения, если статус равен ожидаемому.

        Args:
            ride_id: Идентификатор поездки
            expected_status: Ожидаемый текущий статус
            changes: Новые значения полей Ride
            require_unassigned: Дополнительно требовать driver_id IS NULL

        Returns:
            True, если изменения применены
        """

    @abstractmethod
    async def set_payment_status(self, ride_id: str, status: RidePaymentStatus) -> None:
        """Обновляет статус оплаты поездки."""

    @abstractmethod
    async def find_active_for_driver(self, driver_id: str) -> Ride | None:
        """Принятая или начатая поездка водителя."""

    @abstractmethod
    async def count_by_status_for_driver(self, driver_id: str) -> dict[RideStatus, int]:
        """Количество поездок водителя по статусам (отменённые учитываются по cancelled_by_id)."""

    @abstractmethod
    async def add_tracking_point(self, point: TrackingPoint) -> None:
        """Добавляет точку трека."""

    @abstractmethod
    async def list_tracking_points(self, ride_id: str) -> list[TrackingPoint]:
        """Точки трека в порядке времени фиксации."""


# =============================================================================
# POSTGRESQL
# =============================================================================

_RIDE_COLUMNS = """
    ride_id, rider_id, driver_id, vehicle_id, ride_class, status,
    pickup_lat, pickup_lon, pickup_address, drop_lat, drop_lon, drop_address,
    estimated_distance_km, estimated_duration_sec, estimated_fare,
    actual_distance_km, actual_duration_sec, actual_fare,
    payment_method, payment_status,
    requested_at, accepted_at, started_at, completed_at, cancelled_at,
    cancellation_reason, cancelled_by, cancelled_by_id
"""

# Поля Ride, которые можно менять через conditional_update
_UPDATABLE_FIELDS = frozenset({
    "driver_id", "vehicle_id", "status",
    "actual_distance_km", "actual_duration_sec", "actual_fare",
    "payment_status",
    "accepted_at", "started_at", "completed_at", "cancelled_at",
    "cancellation_reason", "cancelled_by", "cancelled_by_id",
})


def _db_value(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


class PostgresRideRepository(RideRepository):
    """Репозиторий поездок в PostgreSQL."""

    def __init__(self, db: DatabaseManager) -> None:
        """
        Args:
            db: Менеджер базы данных
        """
        self._db = db

    async def create(self, ride: Ride) -> Ride:
        await self._db.execute(
            f"""
            INSERT INTO rides ({_RIDE_COLUMNS})
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14,
                    $15, $16, $17, $18, $19, $20, $21, $22, $23, $24, $25, $26, $27, $28)
            """,
            ride.ride_id, ride.rider_id, ride.driver_id, ride.vehicle_id,
            ride.ride_class.value, ride.status.value,
            ride.pickup.lat, ride.pickup.lon, ride.pickup.address,
            ride.drop.lat, ride.drop.lon, ride.drop.address,
            ride.estimated_distance_km, ride.estimated_duration_sec, ride.estimated_fare,
            ride.actual_distance_km, ride.actual_duration_sec, ride.actual_fare,
            ride.payment_method.value, ride.payment_status.value,
            ride.requested_at, ride.accepted_at, ride.started_at, ride.completed_at, ride.cancelled_at,
            ride.cancellation_reason, _db_value(ride.cancelled_by), ride.cancelled_by_id,
        )
        return ride

    async def get(self, ride_id: str) -> Ride | None:
        row = await self._db.fetchrow(f"SELECT {_RIDE_COLUMNS} FROM rides WHERE ride_id = $1", ride_id)
        return self._row_to_ride(row) if row else None

    async def conditional_update(
        self,
        ride_id: str,
        expected_status: RideStatus,
        changes: dict[str, Any],
        require_unassigned: bool = False,
    ) -> bool:
        unknown = set(changes) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Поля нельзя менять: {sorted(unknown)}")

        columns = list(changes)
        assignments = ", ".join(f"{column} = ${i}" for i, column in enumerate(columns, start=3))
        query = f"UPDATE rides SET {assignments} WHERE ride_id = $1 AND status = $2"
        if require_unassigned:
            query += " AND driver_id IS NULL"
        query += " RETURNING ride_id"

        updated = await self._db.fetchval(
            query,
            ride_id,
            expected_status.value,
            *(_db_value(changes[column]) for column in columns),
        )
        return updated is not None

    async def set_payment_status(self, ride_id: str, status: RidePaymentStatus) -> None:
        await self._db.execute(
            "UPDATE rides SET payment_status = $2 WHERE ride_id = $1",
            ride_id, status.value,
        )

    async def find_active_for_driver(self, driver_id: str) -> Ride | None:
        row = await self._db.fetchrow(
            f"""
            SELECT {_RIDE_COLUMNS} FROM rides
            WHERE driver_id = $1 AND status = ANY($2::text[])
            ORDER BY requested_at DESC
            LIMIT 1
            """,
            driver_id,
            [s.value for s in ACTIVE_STATUSES],
        )
        return self._row_to_ride(row) if row else None

    async def count_by_status_for_driver(self, driver_id: str) -> dict[RideStatus, int]:
        rows = await self._db.fetch(
            """
            SELECT status, COUNT(*) AS total FROM rides
            WHERE driver_id = $1 OR (status = 'cancelled' AND cancelled_by_id = $1)
            GROUP BY status
            """,
            driver_id,
        )
        return {RideStatus(row["status"]): row["total"] for row in rows}

    async def add_tracking_point(self, point: TrackingPoint) -> None:
        await self._db.execute(
            """
            INSERT INTO ride_tracking (ride_id, lat, lon, accuracy, heading, speed, recorded_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7)
            """,
            point.ride_id, point.lat, point.lon, point.accuracy, point.heading, point.speed, point.recorded_at,
        )

    async def list_tracking_points(self, ride_id: str) -> list[TrackingPoint]:
        rows = await self._db.fetch(
            """
            SELECT ride_id, lat, lon, accuracy, heading, speed, recorded_at
            FROM ride_tracking
            WHERE ride_id = $1
            ORDER BY recorded_at, id
            """,
            ride_id,
        )
        return [TrackingPoint.model_validate(dict(row)) for row in rows]

    @staticmethod
    def _row_to_ride(row: Any) -> Ride:
        """Преобразует строку БД в снимок поездки."""
        data = dict(row)
        data["pickup"] = GeoPoint(
            lat=data.pop("pickup_lat"), lon=data.pop("pickup_lon"), address=data.pop("pickup_address")
        )
        data["drop"] = GeoPoint(
            lat=data.pop("drop_lat"), lon=data.pop("drop_lon"), address=data.pop("drop_address")
        )
        return Ride.model_validate(data)


# =============================================================================
# IN-PROCESS
# =============================================================================

class InMemoryRideRepository(RideRepository):
    """Репозиторий поездок в памяти процесса (по одному asyncio.Lock на поездку)."""

    def __init__(self) -> None:
        self._rides: dict[str, Ride] = {}
        self._tracking: dict[str, list[TrackingPoint]] = {}
        self._locks = KeyedLocks()

    async def create(self, ride: Ride) -> Ride:
        async with self._locks.get(ride.ride_id):
            if ride.ride_id in self._rides:
                raise ValueError(f"Поездка {ride.ride_id} уже существует")
            self._rides[ride.ride_id] = ride
        return ride

    async def get(self, ride_id: str) -> Ride | None:
        return self._rides.get(ride_id)

    async def conditional_update(
        self,
        ride_id: str,
        expected_status: RideStatus,
        changes: dict[str, Any],
        require_unassigned: bool = False,
    ) -> bool:
        async with self._locks.get(ride_id):
            ride = self._rides.get(ride_id)
            if ride is None or ride.status != expected_status:
                return False
            if require_unassigned and ride.driver_id is not None:
                return False
            self._rides[ride_id] = ride.evolve(**changes)
            return True

    async def set_payment_status(self, ride_id: str, status: RidePaymentStatus) -> None:
        async with self._locks.get(ride_id):
            ride = self._rides.get(ride_id)
            if ride is not None:
                self._rides[ride_id] = ride.evolve(payment_status=status)

    async def find_active_for_driver(self, driver_id: str) -> Ride | None:
        active = [
            r for r in self._rides.values()
            if r.driver_id == driver_id and r.status in ACTIVE_STATUSES
        ]
        return max(active, key=lambda r: r.requested_at, default=None)

    async def count_by_status_for_driver(self, driver_id: str) -> dict[RideStatus, int]:
        return dict(Counter(
            r.status for r in self._rides.values()
            if r.driver_id == driver_id
            or (r.status == RideStatus.CANCELLED and r.cancelled_by_id == driver_id)
        ))

    async def add_tracking_point(self, point: TrackingPoint) -> None:
        self._tracking.setdefault(point.ride_id, []).append(point)

    async def list_tracking_points(self, ride_id: str) -> list[TrackingPoint]:
        # sorted() устойчив: точки с одинаковым временем остаются в порядке поступления
        return sorted(self._tracking.get(ride_id, []), key=lambda p: p.recorded_at)
