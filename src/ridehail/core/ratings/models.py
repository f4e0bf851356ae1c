"""
Модели оценок поездок.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field

from ridehail.common.constants import RatingType


class Rating(BaseModel):
    """Оценка поездки одним участником другого."""

    ride_id: str
    rater_id: str
    rated_id: str
    rating: int = Field(..., ge=1, le=5)
    feedback: str | None = Field(None, max_length=1000)
    rating_type: RatingType
    created_at: datetime

    class Config:
        frozen = True
        from_attributes = True


class RatingStatistics(BaseModel):
    """Сводка оценок пользователя."""

    user_id: str
    rating_type: RatingType
    total_ratings: int = 0
    average_rating: Decimal = Decimal("0.00")
    distribution: dict[int, int] = Field(default_factory=lambda: {i: 0 for i in range(5, 0, -1)})
