"""
Модуль оценок.
"""

from ridehail.core.ratings.models import Rating, RatingStatistics
from ridehail.core.ratings.repository import (
    InMemoryRatingRepository,
    PostgresRatingRepository,
    RatingRepository,
)
from ridehail.core.ratings.service import RatingService

__all__ = [
    "Rating",
    "RatingStatistics",
    "RatingRepository",
    "PostgresRatingRepository",
    "InMemoryRatingRepository",
    "RatingService",
]
