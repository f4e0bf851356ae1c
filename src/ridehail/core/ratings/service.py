# src/ridehail/core/ratings/service.py
"""
Сервис оценок.
Пассажир оценивает водителя, водитель пассажира; только завершённые поездки.
"""

from __future__ import annotations

from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import TYPE_CHECKING, Callable

from ridehail.common.constants import RatingType, RideStatus, TypeMsg
from ridehail.common.exceptions import (
    AlreadyProcessed,
    InvalidState,
    NotFound,
    Unauthorized,
    ValidationError,
)
from ridehail.common.helpers import MONEY_QUANT, utc_now
from ridehail.common.logger import log_info
from ridehail.core.ratings.models import Rating, RatingStatistics
from ridehail.core.ratings.repository import RatingRepository

if TYPE_CHECKING:
    from ridehail.core.drivers.repository import DriverRepository
    from ridehail.core.rides.repository import RideRepository


class RatingService:
    """Сервис оценок поездок."""

    def __init__(
        self,
        ratings: RatingRepository,
        rides: RideRepository,
        drivers: DriverRepository,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._ratings = ratings
        self._rides = rides
        self._drivers = drivers
        self._clock = clock

    async def submit_rating(
        self,
        ride_id: str,
        rater_id: str,
        rating: int,
        feedback: str | None = None,
        rating_type: RatingType = RatingType.RIDER_TO_DRIVER,
    ) -> Rating:
        """
        Сохраняет оценку поездки.

        Args:
            ride_id: ID поездки
            rater_id: Кто оценивает
            rating: Оценка 1..5
            feedback: Комментарий
            rating_type: Направление оценки

        Returns:
            Сохранённая оценка

        Raises:
            ValidationError: оценка вне 1..5
            NotFound: поездка не найдена
            InvalidState: поездка не завершена
            Unauthorized: оценивающий не участник поездки в этой роли
            AlreadyProcessed: оценка уже оставлена
        """
        if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
            raise ValidationError("Оценка должна быть целым числом от 1 до 5", rating=rating)

        rating_type = RatingType(rating_type)
        ride = await self._rides.get(ride_id)
        if ride is None:
            raise NotFound(f"Поездка {ride_id} не найдена", ride_id=ride_id)
        if ride.status != RideStatus.COMPLETED:
            raise InvalidState(
                f"Поездка {ride_id} не завершена, оценка невозможна",
                ride_id=ride_id,
                status=ride.status.value,
            )

        if rating_type == RatingType.RIDER_TO_DRIVER:
            expected_rater, rated_id = ride.rider_id, ride.driver_id
        else:
            expected_rater, rated_id = ride.driver_id, ride.rider_id
        if rater_id != expected_rater:
            raise Unauthorized(
                f"Пользователь {rater_id} не может оценить поездку {ride_id}",
                ride_id=ride_id,
                rating_type=rating_type.value,
            )

        if await self._ratings.get(ride_id, rating_type) is not None:
            raise AlreadyProcessed(f"Поездка {ride_id} уже оценена", ride_id=ride_id)

        saved = await self._ratings.add(Rating(
            ride_id=ride_id,
            rater_id=rater_id,
            rated_id=rated_id,
            rating=rating,
            feedback=feedback,
            rating_type=rating_type,
            created_at=self._clock(),
        ))

        if rating_type == RatingType.RIDER_TO_DRIVER:
            stats = await self.rating_statistics(rated_id, rating_type)
            await self._drivers.set_average_rating(rated_id, stats.average_rating)

        await log_info(
            f"Оценка {rating} для поездки {ride_id} от {rater_id} ({rating_type.value})",
            type_msg=TypeMsg.INFO,
        )
        return saved

    async def rating_statistics(
        self,
        user_id: str,
        rating_type: RatingType = RatingType.RIDER_TO_DRIVER,
    ) -> RatingStatistics:
        """Средняя оценка (2 знака), количество и распределение 1..5."""
        ratings = await self._ratings.list_for_user(user_id, RatingType(rating_type))
        stats = RatingStatistics(user_id=user_id, rating_type=rating_type)
        if not ratings:
            return stats

        for r in ratings:
            stats.distribution[r.rating] += 1
        average = Decimal(sum(r.rating for r in ratings)) / len(ratings)
        return stats.model_copy(update={
            "total_ratings": len(ratings),
            "average_rating": average.quantize(MONEY_QUANT, rounding=ROUND_HALF_UP),
        })

    async def ride_ratings(self, ride_id: str) -> dict[RatingType, Rating | None]:
        """Обе оценки поездки."""
        found = {r.rating_type: r for r in await self._ratings.list_for_ride(ride_id)}
        return {t: found.get(t) for t in RatingType}

    async def user_ratings(
        self,
        user_id: str,
        rating_type: RatingType = RatingType.RIDER_TO_DRIVER,
    ) -> list[Rating]:
        return await self._ratings.list_for_user(user_id, RatingType(rating_type))
