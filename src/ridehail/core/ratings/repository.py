"""
Хранилище оценок. Одна оценка на поездку в каждом направлении.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from ridehail.common.constants import RatingType
from ridehail.common.exceptions import AlreadyProcessed
from ridehail.core.ratings.models import Rating
from ridehail.infra.database import DatabaseManager
from ridehail.infra.locks import KeyedLocks


class RatingRepository(ABC):
    """Оценки поездок."""

    @abstractmethod
    async def add(self, rating: Rating) -> Rating:
        """
        Сохраняет оценку.

        Raises:
            AlreadyProcessed: оценка поездки в этом направлении уже есть
        """

    @abstractmethod
    async def get(self, ride_id: str, rating_type: RatingType) -> Rating | None:
        """Оценка поездки в заданном направлении."""

    @abstractmethod
    async def list_for_ride(self, ride_id: str) -> list[Rating]:
        """Обе оценки поездки (если есть)."""

    @abstractmethod
    async def list_for_user(self, rated_id: str, rating_type: RatingType) -> list[Rating]:
        """Оценки, полученные пользователем, новые первыми."""


_RATING_COLUMNS = "ride_id, rater_id, rated_id, rating, feedback, rating_type, created_at"


class PostgresRatingRepository(RatingRepository):
    """Оценки в PostgreSQL (UNIQUE (ride_id, rating_type))."""

    def __init__(self, db: DatabaseManager) -> None:
        self._db = db

    async def add(self, rating: Rating) -> Rating:
        inserted = await self._db.fetchval(
            f"""
            INSERT INTO ratings ({_RATING_COLUMNS})
            VALUES ($1, $2, $3, $4, $5, $6, $7)
            ON CONFLICT (ride_id, rating_type) DO NOTHING
            RETURNING id
            """,
            rating.ride_id, rating.rater_id, rating.rated_id, rating.rating,
            rating.feedback, rating.rating_type.value, rating.created_at,
        )
        if inserted is None:
            raise AlreadyProcessed(
                f"Поездка {rating.ride_id} уже оценена ({rating.rating_type.value})",
                ride_id=rating.ride_id,
            )
        return rating

    async def get(self, ride_id: str, rating_type: RatingType) -> Rating | None:
        row = await self._db.fetchrow(
            f"SELECT {_RATING_COLUMNS} FROM ratings WHERE ride_id = $1 AND rating_type = $2",
            ride_id, rating_type.value,
        )
        return Rating.model_validate(dict(row)) if row else None

    async def list_for_ride(self, ride_id: str) -> list[Rating]:
        rows = await self._db.fetch(
            f"SELECT {_RATING_COLUMNS} FROM ratings WHERE ride_id = $1 ORDER BY id",
            ride_id,
        )
        return [Rating.model_validate(dict(row)) for row in rows]

    async def list_for_user(self, rated_id: str, rating_type: RatingType) -> list[Rating]:
        rows = await self._db.fetch(
            f"""
            SELECT {_RATING_COLUMNS} FROM ratings
            WHERE rated_id = $1 AND rating_type = $2
            ORDER BY created_at DESC, id DESC
            """,
            rated_id, rating_type.value,
        )
        return [Rating.model_validate(dict(row)) for row in rows]


class InMemoryRatingRepository(RatingRepository):
    """Оценки в памяти процесса."""

    def __init__(self) -> None:
        self._ratings: dict[tuple[str, RatingType], Rating] = {}
        self._locks = KeyedLocks()

    async def add(self, rating: Rating) -> Rating:
        key = (rating.ride_id, rating.rating_type)
        async with self._locks.get(rating.ride_id):
            if key in self._ratings:
                raise AlreadyProcessed(
                    f"Поездка {rating.ride_id} уже оценена ({rating.rating_type.value})",
                    ride_id=rating.ride_id,
                )
            self._ratings[key] = rating
        return rating

    async def get(self, ride_id: str, rating_type: RatingType) -> Rating | None:
        return self._ratings.get((ride_id, rating_type))

    async def list_for_ride(self, ride_id: str) -> list[Rating]:
        return [r for (rid, _), r in self._ratings.items() if rid == ride_id]

    async def list_for_user(self, rated_id: str, rating_type: RatingType) -> list[Rating]:
        ratings = [
            r for r in self._ratings.values()
            if r.rated_id == rated_id and r.rating_type == rating_type
        ]
        return sorted(ratings, key=lambda r: r.created_at, reverse=True)
